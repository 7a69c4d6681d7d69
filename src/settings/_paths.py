"""Path constants for Narrator settings and output directories."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path(__file__).parent.parent / "settings.json"

# Go up from src/settings to src/, then up to project root, then into output/
OUTPUT_DIR = Path(__file__).parent.parent.parent / "output"
IMAGES_DIR = OUTPUT_DIR / "images"

__all__ = [
    "IMAGES_DIR",
    "OUTPUT_DIR",
    "SETTINGS_FILE",
]
