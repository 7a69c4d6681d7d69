"""Multi-phase generation pipeline.

A generation request runs through an ordered list of phases. Each phase
streams typed events and produces a typed result; the pipeline forwards the
events, folds the results into a ``PipelineResult``, and stops on
cancellation or a fatal error.
"""

from src.services.generation._dependencies import (
    BackgroundImageDependencies,
    ClassificationDependencies,
    ImageDependencies,
    ImageGenerationContext,
    ImageKind,
    NarrativeDependencies,
    PipelineDependencies,
    PostGenerationDependencies,
    RetrievalDependencies,
    TranslationDependencies,
)
from src.services.generation._events import (
    AbortedEvent,
    ClassificationCompleteEvent,
    ErrorEvent,
    GenerationEvent,
    GenerationPhase,
    NarrativeChunkEvent,
    PhaseCompleteEvent,
    PhaseStartEvent,
    is_terminal,
)
from src.services.generation._pipeline import (
    GenerationPipeline,
    PipelineResult,
    PipelineRun,
    PipelineStep,
)
from src.services.generation._request import GenerationRequest
from src.services.generation._results import (
    BackgroundImageResult,
    ClassificationPhaseResult,
    ImageResult,
    NarrativeResult,
    PostGenerationResult,
    PreGenerationResult,
    RetrievalResult,
    RetryBackupData,
    TranslationPhaseResult,
)

__all__ = [
    "AbortedEvent",
    "BackgroundImageDependencies",
    "BackgroundImageResult",
    "ClassificationCompleteEvent",
    "ClassificationDependencies",
    "ClassificationPhaseResult",
    "ErrorEvent",
    "GenerationEvent",
    "GenerationPhase",
    "GenerationPipeline",
    "GenerationRequest",
    "ImageDependencies",
    "ImageGenerationContext",
    "ImageKind",
    "ImageResult",
    "NarrativeChunkEvent",
    "NarrativeDependencies",
    "NarrativeResult",
    "PhaseCompleteEvent",
    "PhaseStartEvent",
    "PipelineDependencies",
    "PipelineResult",
    "PipelineRun",
    "PipelineStep",
    "PostGenerationDependencies",
    "PostGenerationResult",
    "PreGenerationResult",
    "RetrievalDependencies",
    "RetrievalResult",
    "RetryBackupData",
    "TranslationDependencies",
    "TranslationPhaseResult",
    "is_terminal",
]
