"""Services layer - LLM-backed operations used by the generation pipeline.

This module wires the services together and exposes them, and the pipeline
built on top of them, through one container.
"""

import logging
import time
from dataclasses import dataclass

from src.services.generation import GenerationPipeline
from src.settings import Settings

from .classifier_service import ClassifierService
from .image_service import ImageService
from .narration_service import NarrationService
from .pipeline_dependencies import OllamaPipelineDependencies
from .retrieval_service import RetrievalService
from .suggestion_service import SuggestionService
from .translation_service import TranslationService

logger = logging.getLogger(__name__)

__all__ = [
    "ClassifierService",
    "ImageService",
    "NarrationService",
    "OllamaPipelineDependencies",
    "RetrievalService",
    "ServiceContainer",
    "SuggestionService",
    "TranslationService",
]


@dataclass
class ServiceContainer:
    """Dependency injection container for all services.

    Usage:
        settings = Settings.load()
        services = ServiceContainer(settings)

        run = services.pipeline().run(request)
        async for event in run:
            ...
    """

    settings: Settings
    narration: NarrationService
    retrieval: RetrievalService
    classifier: ClassifierService
    translation: TranslationService
    suggestion: SuggestionService
    image: ImageService

    def __init__(self, settings: Settings | None = None):
        """Create service instances that share one Settings object.

        Args:
            settings: Application settings. Loaded via Settings.load() if omitted.
        """
        t0 = time.perf_counter()
        logger.info("Initializing ServiceContainer...")
        self.settings = settings or Settings.load()
        self.narration = NarrationService(self.settings)
        self.retrieval = RetrievalService(self.settings)
        self.classifier = ClassifierService(self.settings)
        self.translation = TranslationService(self.settings)
        self.suggestion = SuggestionService(self.settings)
        self.image = ImageService(self.settings)
        service_count = len(self.__class__.__annotations__) - 1  # exclude 'settings'
        logger.info(
            "ServiceContainer initialized: %d services in %.2fs",
            service_count,
            time.perf_counter() - t0,
        )

    def pipeline_dependencies(self) -> OllamaPipelineDependencies:
        """Bundle the services into the pipeline's dependency protocols."""
        return OllamaPipelineDependencies(
            narration=self.narration,
            retrieval=self.retrieval,
            classifier=self.classifier,
            translation=self.translation,
            suggestion=self.suggestion,
            image=self.image,
        )

    def pipeline(self) -> GenerationPipeline:
        """Build a generation pipeline over these services."""
        return GenerationPipeline(
            self.pipeline_dependencies(),
            narrative_max_attempts=self.settings.narrative_max_attempts,
            recent_entry_count=self.settings.retrieval_recent_entries,
        )
