"""Generation phases, one module per phase."""

from src.services.generation.phases._background_image import (
    BackgroundImageInput,
    BackgroundImagePhase,
)
from src.services.generation.phases._base import Phase, PhaseExecution
from src.services.generation.phases._classification import (
    ClassificationInput,
    ClassificationPhase,
)
from src.services.generation.phases._image import ImageInput, ImagePhase
from src.services.generation.phases._narrative import NarrativeInput, NarrativePhase
from src.services.generation.phases._post_generation import (
    PostGenerationInput,
    PostGenerationPhase,
)
from src.services.generation.phases._pre_generation import (
    PreGenerationInput,
    PreGenerationPhase,
)
from src.services.generation.phases._retrieval import RetrievalInput, RetrievalPhase
from src.services.generation.phases._translation import TranslationInput, TranslationPhase

__all__ = [
    "BackgroundImageInput",
    "BackgroundImagePhase",
    "ClassificationInput",
    "ClassificationPhase",
    "ImageInput",
    "ImagePhase",
    "NarrativeInput",
    "NarrativePhase",
    "Phase",
    "PhaseExecution",
    "PostGenerationInput",
    "PostGenerationPhase",
    "PreGenerationInput",
    "PreGenerationPhase",
    "RetrievalInput",
    "RetrievalPhase",
    "TranslationInput",
    "TranslationPhase",
]
