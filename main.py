#!/usr/bin/env python3
"""Narrator - multi-phase story generation.

Runs one generation request through the pipeline and prints its events.
The request is a JSON document matching ``GenerationRequest``.

Usage:
    python main.py request.json
    python main.py request.json --log-level DEBUG --timeout 120
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from pathlib import Path

from pydantic import ValidationError

from src.services.generation import (
    AbortedEvent,
    ClassificationCompleteEvent,
    ErrorEvent,
    GenerationEvent,
    GenerationRequest,
    NarrativeChunkEvent,
    PhaseCompleteEvent,
    PhaseStartEvent,
    PipelineResult,
)
from src.utils.cancellation import CancellationSource, CancellationToken
from src.utils.exceptions import ConfigError
from src.utils.logging_config import log_context, setup_logging

logger = logging.getLogger(__name__)


def load_request(path: Path, cancel_token: CancellationToken) -> GenerationRequest:
    """Load a generation request from a JSON file.

    Raises:
        ConfigError: If the file cannot be read or is not a valid request.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read request file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Request file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Request file {path} must contain a JSON object")
    try:
        return GenerationRequest.model_validate({**data, "cancel_token": cancel_token})
    except ValidationError as e:
        raise ConfigError(f"Invalid generation request in {path}: {e}") from e


def print_event(event: GenerationEvent) -> None:
    """Write one event to stdout. Narrative chunks stream inline."""
    match event:
        case NarrativeChunkEvent(content=content):
            print(content, end="", flush=True)
        case PhaseStartEvent(phase=phase):
            print(f"\n[{phase}] started", flush=True)
        case PhaseCompleteEvent(phase=phase):
            print(f"\n[{phase}] complete", flush=True)
        case ClassificationCompleteEvent(result=result):
            scene = result.scene
            print(
                f"\n[classification] location={scene.current_location_name} "
                f"present={', '.join(scene.present_character_names) or '-'}",
                flush=True,
            )
        case AbortedEvent(phase=phase):
            print(f"\n[{phase}] aborted", flush=True)
        case ErrorEvent(phase=phase, error=error, fatal=fatal):
            kind = "fatal error" if fatal else "error"
            print(f"\n[{phase}] {kind}: {error}", file=sys.stderr, flush=True)


def print_summary(result: PipelineResult) -> None:
    """Print what the run produced after the narration."""
    print("\n" + "-" * 40)
    if result.translation is not None and result.translation.translated:
        print(f"Translation ({result.translation.target_language}):")
        print(result.translation.translated_content)
    if result.translation is not None and result.translation.world_state_translations:
        print("World state:")
        for entry in result.translation.world_state_translations:
            print(f"  - {entry.entity_name} [{entry.field}]: {entry.text}")
    post = result.post_generation
    if post is not None and post.suggestions:
        print("Suggestions:")
        for suggestion in post.suggestions:
            print(f"  - [{suggestion.type}] {suggestion.text}")
    if post is not None and post.action_choices:
        print("Choices:")
        for index, choice in enumerate(post.action_choices, start=1):
            print(f"  {index}. {choice.text}")
    status = "aborted" if result.aborted else "failed" if result.fatal_error else "complete"
    print(f"Run {status}: {', '.join(result.executed_phases)}")


async def run_request(path: Path, timeout: float | None) -> int:
    """Run the pipeline for the request at *path*.

    Returns:
        Process exit code: 0 on completion, 1 on a fatal error, 130 if aborted.
    """
    from src.services import ServiceContainer

    source = CancellationSource()
    request = load_request(path, source.token)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, source.cancel, "interrupted")
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")
    if timeout is not None:
        loop.call_later(timeout, source.cancel, f"timed out after {timeout:.0f}s")

    services = ServiceContainer()
    run = services.pipeline().run(request)
    with log_context():
        t0 = time.perf_counter()
        async for event in run:
            print_event(event)
        logger.info("Request %s finished in %.2fs", path.name, time.perf_counter() - t0)

    result = run.result
    print_summary(result)
    if result.aborted:
        return 130
    return 1 if result.fatal_error is not None else 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Narrator - multi-phase story generation")
    parser.add_argument("request", type=Path, help="Path to a generation request JSON file")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Cancel the generation after this many seconds",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: the persisted setting)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default="default",
        help="Log file path (default: logs/narrator.log, use 'none' to disable)",
    )
    args = parser.parse_args()

    from src.settings import Settings

    log_file = None if args.log_file.lower() == "none" else args.log_file
    level = args.log_level
    if level is None:
        try:
            level = Settings.load().log_level
        except ValueError as e:
            print(f"Warning: could not load settings ({e}), using INFO", file=sys.stderr)
            level = "INFO"
    setup_logging(level=level, log_file=log_file)

    try:
        exit_code = asyncio.run(run_request(args.request, args.timeout))
    except ConfigError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
