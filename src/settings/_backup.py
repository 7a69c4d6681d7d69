"""Backup and diagnostic helpers for settings persistence.

Provides:
- Pre-save backup creation (.bak file)
- Recovery from backup when primary file is missing/corrupt
- Change logging for audit trail during load/save
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _read_json_dict(path: Path) -> dict[str, Any] | None:
    """Read a JSON object from *path*; None when missing, empty or not a dict.

    Raises:
        json.JSONDecodeError: If the file is not valid JSON.
        OSError: If the file cannot be read.
    """
    if not path.exists() or path.stat().st_size == 0:
        return None
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        logger.warning("%s is not a JSON object (got %s)", path, type(data).__name__)
        return None
    return data


def _create_settings_backup(settings_path: Path) -> bool:
    """Copy settings.json to settings.json.bak before writing.

    Skips backup if the source file is missing, empty, or contains invalid JSON
    so a known-good .bak is never overwritten with corrupt data.
    Failures are logged but never raised.

    Returns:
        True if a backup was created, False otherwise.
    """
    try:
        if _read_json_dict(settings_path) is None:
            logger.debug("No usable settings file to back up at %s", settings_path)
            return False
        backup_path = settings_path.with_suffix(".json.bak")
        shutil.copy2(settings_path, backup_path)
        logger.debug("Created settings backup at %s", backup_path)
        return True
    except json.JSONDecodeError:
        logger.warning("Settings file contains invalid JSON, skipping backup")
        return False
    except OSError as e:
        logger.warning("Failed to create settings backup: %s", e)
        return False


def _recover_from_backup(settings_path: Path) -> dict[str, Any] | None:
    """Attempt to recover settings from the .bak file.

    Returns:
        Parsed settings dict if recovery succeeded, None otherwise.
    """
    backup_path = settings_path.with_suffix(".json.bak")
    try:
        data = _read_json_dict(backup_path)
    except json.JSONDecodeError as e:
        logger.error("Backup file at %s is corrupted (invalid JSON): %s", backup_path, e)
        return None
    except OSError as e:
        logger.error("Cannot read backup file at %s: %s", backup_path, e)
        return None

    if data is None:
        logger.debug("No usable backup file at %s", backup_path)
        return None
    logger.info("Recovered %d settings from backup file %s", len(data), backup_path)
    return data


def _log_settings_changes(original: dict[str, Any], final: dict[str, Any], label: str) -> int:
    """Log every top-level key that changed between two settings snapshots.

    Args:
        original: Settings dict before the operation.
        final: Settings dict after the operation.
        label: Label for the log messages (e.g. "load").

    Returns:
        Number of changes detected.
    """
    changes = 0
    for key in sorted(set(original) | set(final)):
        if key not in original:
            logger.info("[%s] added %s = %r", label, key, final[key])
        elif key not in final:
            logger.info("[%s] removed %s (was %r)", label, key, original[key])
        elif original[key] != final[key]:
            logger.info("[%s] changed %s: %r -> %r", label, key, original[key], final[key])
        else:
            continue
        changes += 1

    if changes:
        logger.info("[%s] total changes: %d", label, changes)
    else:
        logger.debug("[%s] no changes detected", label)
    return changes
