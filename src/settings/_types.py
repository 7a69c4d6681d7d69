"""Type definitions and constants for Narrator settings."""

import logging
from typing import TypedDict

logger = logging.getLogger(__name__)


class AgentRoleInfo(TypedDict):
    """Type definition for LLM role information."""

    name: str
    description: str


# Log level options for settings UI
LOG_LEVELS: dict[str, str] = {
    "DEBUG": "Debug",
    "INFO": "Info",
    "WARNING": "Warning",
    "ERROR": "Error",
}

# Image providers the image service knows how to call
IMAGE_PROVIDERS: dict[str, str] = {
    "none": "Disabled",
    "pollinations": "Pollinations",
}

# LLM roles used by the generation services
AGENT_ROLES: dict[str, AgentRoleInfo] = {
    "narrator": {
        "name": "Narrator",
        "description": "Streams story narration",
    },
    "classifier": {
        "name": "Classifier",
        "description": "Extracts world state changes from narration",
    },
    "translator": {
        "name": "Translator",
        "description": "Translates narration, suggestions and choices",
    },
    "suggestion": {
        "name": "Suggestion Assistant",
        "description": "Suggests story directions and action choices",
    },
    "retrieval": {
        "name": "Memory Retriever",
        "description": "Answers questions about earlier chapters",
    },
    "image_prompt": {
        "name": "Image Prompter",
        "description": "Turns scenes into image prompts",
    },
}
