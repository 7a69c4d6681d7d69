"""Settings package for Narrator.

This package provides application settings management.

Modules:
- _paths.py: Path constants for settings and output directories
- _types.py: TypedDicts, role definitions and choice tables
- _validation.py: Settings validation functions
- _backup.py: Backup, recovery and change logging for settings.json
- _settings.py: Main Settings dataclass
"""

from src.settings._paths import IMAGES_DIR, OUTPUT_DIR, SETTINGS_FILE
from src.settings._settings import Settings
from src.settings._types import AGENT_ROLES, IMAGE_PROVIDERS, LOG_LEVELS, AgentRoleInfo

__all__ = [
    "AGENT_ROLES",
    "IMAGES_DIR",
    "IMAGE_PROVIDERS",
    "LOG_LEVELS",
    "OUTPUT_DIR",
    "SETTINGS_FILE",
    "AgentRoleInfo",
    "Settings",
]
