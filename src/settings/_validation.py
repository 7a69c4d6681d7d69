"""Validation functions for Settings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from src.settings._types import AGENT_ROLES, IMAGE_PROVIDERS, LOG_LEVELS

if TYPE_CHECKING:
    from src.settings._settings import Settings

logger = logging.getLogger(__name__)


def validate(settings: Settings) -> bool:
    """Validate all settings fields.

    Delegates to individual validation functions for each category of settings.

    Returns:
        True if any settings were mutated during validation (e.g. missing
        roles backfilled), False otherwise.

    Raises:
        ValueError: If any field contains an invalid value.
    """
    _validate_log_level(settings)
    _validate_url(settings.ollama_url, "ollama_url")
    _validate_numeric_ranges(settings)
    changed = _validate_agent_models(settings)
    changed = _validate_temperatures(settings) or changed
    _validate_timeouts(settings)
    _validate_llm_request_limits(settings)
    _validate_generation_limits(settings)
    _validate_image_settings(settings)
    return changed


def _validate_log_level(settings: Settings) -> None:
    """Validate log_level is a known logging level."""
    if settings.log_level not in LOG_LEVELS:
        raise ValueError(
            f"log_level must be one of {list(LOG_LEVELS.keys())}, got {settings.log_level}"
        )


def _validate_url(url: str, field_name: str) -> None:
    """Validate that *url* is an absolute http(s) URL."""
    try:
        parsed = urlparse(url)
    except (AttributeError, TypeError) as e:
        raise ValueError(f"Invalid {field_name}: {url} - {e}") from e
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"Invalid URL scheme in {field_name}: {url}")
    if not parsed.netloc:
        raise ValueError(f"Invalid URL (missing host) in {field_name}: {url}")


def _validate_numeric_ranges(settings: Settings) -> None:
    """Validate numeric range constraints."""
    if not 1024 <= settings.context_size <= 128000:
        raise ValueError(
            f"context_size must be between 1024 and 128000, got {settings.context_size}"
        )

    if not 64 <= settings.max_tokens <= 32000:
        raise ValueError(f"max_tokens must be between 64 and 32000, got {settings.max_tokens}")

    if not settings.default_model.strip():
        raise ValueError("default_model cannot be empty")


def _backfill_roles(settings: Settings, field_name: str) -> bool:
    """Reject unknown roles and add missing ones from defaults.

    Returns:
        True if any role was backfilled.
    """
    from src.settings._settings import Settings as _Settings

    current = getattr(settings, field_name)
    expected = set(AGENT_ROLES)

    unknown = set(current) - expected
    if unknown:
        raise ValueError(
            f"Unknown agent(s) in {field_name}: {sorted(unknown)}; "
            f"expected only: {sorted(expected)}"
        )

    defaults = getattr(_Settings(), field_name)
    missing = expected - set(current)
    for role in sorted(missing):
        current[role] = defaults[role]
        logger.warning("Added missing %s entry: %s=%r", field_name, role, defaults[role])
    return bool(missing)


def _validate_agent_models(settings: Settings) -> bool:
    """Validate per-role model overrides."""
    changed = _backfill_roles(settings, "agent_models")
    for role, model in settings.agent_models.items():
        if not isinstance(model, str):
            raise ValueError(f"agent_models[{role}] must be a string, got {type(model).__name__}")
    return changed


def _validate_temperatures(settings: Settings) -> bool:
    """Validate per-role temperatures."""
    changed = _backfill_roles(settings, "agent_temperatures")
    for role, temp in settings.agent_temperatures.items():
        if not 0.0 <= temp <= 2.0:
            raise ValueError(f"Temperature for {role} must be between 0.0 and 2.0, got {temp}")
    return changed


def _validate_timeouts(settings: Settings) -> None:
    """Validate timeout settings."""
    if not 10 <= settings.ollama_timeout <= 600:
        raise ValueError(
            f"ollama_timeout must be between 10 and 600 seconds, got {settings.ollama_timeout}"
        )

    if not 5 <= settings.stream_inter_chunk_timeout <= 600:
        raise ValueError(
            f"stream_inter_chunk_timeout must be between 5 and 600 seconds, "
            f"got {settings.stream_inter_chunk_timeout}"
        )

    if settings.stream_wall_clock_timeout < settings.stream_inter_chunk_timeout:
        raise ValueError(
            f"stream_wall_clock_timeout ({settings.stream_wall_clock_timeout}) must be >= "
            f"stream_inter_chunk_timeout ({settings.stream_inter_chunk_timeout})"
        )


def _validate_llm_request_limits(settings: Settings) -> None:
    """Validate LLM concurrency and retry settings."""
    if not 1 <= settings.llm_max_concurrent_requests <= 10:
        raise ValueError(
            f"llm_max_concurrent_requests must be between 1 and 10, "
            f"got {settings.llm_max_concurrent_requests}"
        )

    if not 1 <= settings.llm_max_retries <= 10:
        raise ValueError(
            f"llm_max_retries must be between 1 and 10, got {settings.llm_max_retries}"
        )

    if not 0.0 <= settings.llm_retry_backoff_cap <= 60.0:
        raise ValueError(
            f"llm_retry_backoff_cap must be between 0 and 60 seconds, "
            f"got {settings.llm_retry_backoff_cap}"
        )


def _validate_generation_limits(settings: Settings) -> None:
    """Validate narrative, retrieval and suggestion limits."""
    if not 1 <= settings.narrative_max_attempts <= 5:
        raise ValueError(
            f"narrative_max_attempts must be between 1 and 5, "
            f"got {settings.narrative_max_attempts}"
        )

    for name in (
        "narrative_history_entries",
        "retrieval_recent_entries",
        "lorebook_max_entries",
        "suggestion_history_entries",
    ):
        value = getattr(settings, name)
        if not 1 <= value <= 200:
            raise ValueError(f"{name} must be between 1 and 200, got {value}")

    if not 1 <= settings.suggestion_max_count <= 3:
        raise ValueError(
            f"suggestion_max_count must be between 1 and 3, got {settings.suggestion_max_count}"
        )

    if not 1 <= settings.action_choice_max_count <= 4:
        raise ValueError(
            f"action_choice_max_count must be between 1 and 4, "
            f"got {settings.action_choice_max_count}"
        )


def _validate_image_settings(settings: Settings) -> None:
    """Validate image provider settings."""
    if settings.image_provider not in IMAGE_PROVIDERS:
        raise ValueError(
            f"image_provider must be one of {list(IMAGE_PROVIDERS)}, "
            f"got {settings.image_provider}"
        )

    if settings.image_provider != "none":
        _validate_url(settings.image_provider_url, "image_provider_url")

    for name in ("image_width", "image_height"):
        value = getattr(settings, name)
        if not 64 <= value <= 4096:
            raise ValueError(f"{name} must be between 64 and 4096, got {value}")

    if not 5.0 <= settings.image_timeout <= 600.0:
        raise ValueError(
            f"image_timeout must be between 5 and 600 seconds, got {settings.image_timeout}"
        )

    if not 0 <= settings.image_max_per_narration <= 5:
        raise ValueError(
            f"image_max_per_narration must be between 0 and 5, "
            f"got {settings.image_max_per_narration}"
        )
