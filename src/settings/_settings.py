"""Main Settings dataclass for Narrator.

Settings are stored in settings.json next to the settings package.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, ClassVar

from src.settings import _validation as _validation_mod
from src.settings._backup import (
    _create_settings_backup,
    _log_settings_changes,
    _recover_from_backup,
)
from src.settings._paths import IMAGES_DIR, SETTINGS_FILE

logger = logging.getLogger(__name__)

# Dict fields with fixed expected sub-keys, merged on load so that
# new sub-keys get defaults and removed ones are cleaned up.
_STRUCTURED_DICT_FIELDS = ("agent_models", "agent_temperatures")


def _merge_with_defaults(data: dict[str, Any], settings_cls: type[Settings]) -> bool:
    """Merge loaded JSON data with dataclass defaults.

    - Adds missing top-level keys with their default values
    - Removes top-level keys that no longer exist in the dataclass
    - For dict fields with fixed sub-keys, adds missing and removes obsolete sub-keys

    Modifies *data* in place.

    Returns:
        True if any changes were made, False otherwise.
    """
    default_dict = asdict(settings_cls())
    known_fields = {f.name for f in fields(settings_cls)}
    changed = False

    for key in list(data):
        if key not in known_fields:
            logger.info("Removing obsolete setting: %s", key)
            del data[key]
            changed = True

    for key in known_fields:
        if key not in data:
            logger.info("Adding new setting with default: %s", key)
            data[key] = default_dict[key]
            changed = True

    for field_name in _STRUCTURED_DICT_FIELDS:
        default_sub = default_dict[field_name]
        current_sub = data[field_name]
        if not isinstance(current_sub, dict):
            logger.warning(
                "Resetting %s to default (expected dict, got %s)",
                field_name,
                type(current_sub).__name__,
            )
            data[field_name] = default_sub
            changed = True
            continue
        for sub_key in list(current_sub):
            if sub_key not in default_sub:
                logger.info("Removing obsolete %s[%s]", field_name, sub_key)
                del current_sub[sub_key]
                changed = True
        for sub_key, sub_value in default_sub.items():
            if sub_key not in current_sub:
                logger.info("Adding new %s[%s] = %r", field_name, sub_key, sub_value)
                current_sub[sub_key] = sub_value
                changed = True

    return changed


def _atomic_write_json(path: Path | str, data: dict[str, Any]) -> None:
    """Write JSON to *path* atomically via a temp file + rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError as cleanup_err:
            logger.warning("Failed to remove temp settings file %s: %s", tmp_path, cleanup_err)
        raise


@dataclass
class Settings:
    """Application settings, stored as JSON."""

    # General
    ollama_url: str = "http://localhost:11434"
    context_size: int = 16384
    max_tokens: int = 2048
    log_level: str = "INFO"

    # Model used by every role whose entry in agent_models is empty
    default_model: str = "qwen3:8b"

    # Per-role model overrides ("" = use default_model)
    agent_models: dict[str, str] = field(
        default_factory=lambda: {
            "narrator": "",
            "classifier": "",
            "translator": "",
            "suggestion": "",
            "retrieval": "",
            "image_prompt": "",
        }
    )

    agent_temperatures: dict[str, float] = field(
        default_factory=lambda: {
            "narrator": 0.9,
            "classifier": 0.1,  # Deterministic extraction
            "translator": 0.3,
            "suggestion": 0.8,
            "retrieval": 0.2,
            "image_prompt": 0.6,
        }
    )

    # Timeout settings (in seconds)
    ollama_timeout: int = 180  # Per-request timeout for the Ollama client
    stream_inter_chunk_timeout: int = 120  # Max silence between streamed chunks
    stream_wall_clock_timeout: int = 600  # Absolute max for one streamed response

    # LLM request limits
    llm_max_concurrent_requests: int = 2
    llm_max_retries: int = 3
    llm_retry_backoff_cap: float = 10.0  # Max seconds between transient-error retries

    # Narrative generation
    narrative_max_attempts: int = 3  # Attempts when the model returns empty text
    narrative_history_entries: int = 20  # Recent entries sent to the narrator

    # Retrieval
    retrieval_recent_entries: int = 10  # Recent entries used for lorebook matching
    lorebook_max_entries: int = 12  # Max lorebook entries injected per turn

    # Suggestions / action choices
    suggestion_history_entries: int = 6
    suggestion_max_count: int = 3
    action_choice_max_count: int = 4

    # Image generation
    image_provider: str = "pollinations"
    image_provider_url: str = "https://image.pollinations.ai/prompt"
    image_width: int = 1024
    image_height: int = 768
    image_timeout: float = 120.0
    image_max_per_narration: int = 2
    image_output_dir: str = field(default_factory=lambda: str(IMAGES_DIR))

    def save(self) -> None:
        """Save settings to JSON file."""
        self.validate()
        _create_settings_backup(SETTINGS_FILE)
        _atomic_write_json(SETTINGS_FILE, asdict(self))

    def validate(self) -> bool:
        """Validate all settings fields. Delegates to _validation module.

        Returns:
            True if any settings were mutated during validation, False otherwise.

        Raises:
            ValueError: If any field contains an invalid value.
        """
        return _validation_mod.validate(self)

    # Class-level cache for settings (speeds up repeated load() calls)
    _cached_instance: ClassVar[Settings | None] = None

    @classmethod
    def load(cls, use_cache: bool = True) -> Settings:
        """Load settings from JSON file, or create defaults.

        New settings get default values, removed settings are cleaned up,
        and dict sub-keys are merged. Customized values are preserved.

        Args:
            use_cache: If True, return cached instance if available.

        Returns:
            Settings instance.

        Raises:
            ValueError: If a stored setting has an invalid type or value.
        """
        if use_cache and cls._cached_instance is not None:
            return cls._cached_instance

        loaded_from_file = False
        data: dict[str, Any] = {}

        if SETTINGS_FILE.exists():
            try:
                with open(SETTINGS_FILE, encoding="utf-8") as f:
                    raw = json.load(f)
                if isinstance(raw, dict):
                    data = raw
                    loaded_from_file = bool(data)
                else:
                    logger.error(
                        "Corrupted settings file (expected JSON object, got %s)",
                        type(raw).__name__,
                    )
                    cls._backup_corrupt_file()
            except json.JSONDecodeError as e:
                logger.error("Corrupted settings file (invalid JSON): %s", e)
                cls._backup_corrupt_file()
            except OSError as e:
                logger.error("Cannot read settings file: %s", e)

        recovered_from_backup = False
        if not data:
            recovered = _recover_from_backup(SETTINGS_FILE)
            if recovered is not None:
                data = recovered
                loaded_from_file = True
                recovered_from_backup = True
            else:
                logger.info("No stored settings found, using defaults")

        original_data = copy.deepcopy(data)
        changed = _merge_with_defaults(data, cls)

        try:
            settings = cls(**data)
            # validate() on the left so it always runs
            changed = settings.validate() or changed
        except TypeError as e:
            raise ValueError(f"A setting has an invalid type: {e}") from e

        final_data = asdict(settings)
        _log_settings_changes(original_data, final_data, "load")

        if changed or not loaded_from_file:
            if loaded_from_file and not recovered_from_backup:
                _create_settings_backup(SETTINGS_FILE)
            try:
                _atomic_write_json(SETTINGS_FILE, final_data)
            except OSError as write_err:
                logger.warning("Could not persist settings to disk: %s", write_err)

        cls._cached_instance = settings
        return settings

    @staticmethod
    def _backup_corrupt_file() -> None:
        """Keep a copy of an unreadable settings file for inspection."""
        backup_path = SETTINGS_FILE.with_suffix(".json.corrupt")
        try:
            shutil.copy(SETTINGS_FILE, backup_path)
            logger.info("Backed up corrupted settings to %s", backup_path)
        except OSError as copy_err:
            logger.warning("Failed to backup corrupted settings: %s", copy_err)

    @classmethod
    def clear_cache(cls) -> None:
        """Clear the cached settings instance.

        Use this in tests that need to verify settings loading behavior,
        or after programmatically modifying settings files.
        """
        cls._cached_instance = None

    def get_model_for_role(self, role: str) -> str:
        """Return the model to use for an LLM role.

        Raises:
            ValueError: If role is not configured in agent_models.
        """
        if role not in self.agent_models:
            raise ValueError(
                f"Unknown agent role '{role}' - must be one of: {sorted(self.agent_models)}"
            )
        return self.agent_models[role] or self.default_model

    def get_temperature_for_role(self, role: str) -> float:
        """Return the sampling temperature for an LLM role.

        Raises:
            ValueError: If role is not configured in agent_temperatures.
        """
        if role not in self.agent_temperatures:
            raise ValueError(
                f"Unknown agent role '{role}' - must be one of: "
                f"{sorted(self.agent_temperatures)}"
            )
        return float(self.agent_temperatures[role])
