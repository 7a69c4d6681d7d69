"""Translation service - narration, suggestions, action choices and new world-state entities."""

import logging
from collections.abc import Sequence

from pydantic import BaseModel

from src.memory.generation_schemas import (
    ActionChoice,
    EntityField,
    EntityTranslation,
    EntityType,
    EntryUpdates,
    Suggestion,
    TranslatedItemsResult,
    TranslatedText,
)
from src.services.llm_client import generate_structured
from src.settings import Settings
from src.utils.exceptions import LLMGenerationError
from src.utils.validation import validate_not_empty

logger = logging.getLogger(__name__)

_ROLE = "translator"

_NARRATION_SYSTEM_PROMPT = """You are a literary translator. Translate the passage \
into the language with code "{language}". Keep paragraph breaks, dialogue punctuation \
and the narrative voice. Do not add, summarize or explain anything."""

_VISUAL_PROSE_NOTE = """The passage contains HTML/CSS markup. Translate only the \
visible text and leave every tag, attribute and style untouched."""

_ITEMS_SYSTEM_PROMPT = """Translate each item's text into the language with code \
"{language}". Return exactly one item per input item, in the same order, and copy \
each item's type unchanged."""

_ENTITIES_SYSTEM_PROMPT = """Translate each world-building field into the language \
with code "{language}". Items of type "name" or "title" are proper names: keep them \
unless the language has an established form. Return exactly one item per input item, \
in the same order, and copy each item's type unchanged."""


class TranslationService:
    """Translates generated text into the story's display language."""

    def __init__(self, settings: Settings) -> None:
        """Create the service with the translator model from *settings*."""
        self.settings = settings

    async def translate_narration(
        self, content: str, target_language: str, is_visual_prose: bool
    ) -> TranslatedText:
        """Translate one narration.

        Raises:
            ValueError: If target_language is empty.
            LLMError: If the model call fails.
        """
        validate_not_empty(target_language, "target_language")
        system_prompt = _NARRATION_SYSTEM_PROMPT.format(language=target_language)
        if is_visual_prose:
            system_prompt = f"{system_prompt}\n\n{_VISUAL_PROSE_NOTE}"

        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            content,
            TranslatedText,
            system_prompt=system_prompt,
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        logger.info(
            "Translated narration to %s (%d -> %d chars)",
            target_language,
            len(content),
            len(result.translated_content),
        )
        return result

    async def translate_suggestions(
        self, suggestions: Sequence[Suggestion], target_language: str
    ) -> list[Suggestion]:
        """Translate suggestion texts, keeping their types."""
        return await self._translate_items(suggestions, target_language)

    async def translate_action_choices(
        self, choices: Sequence[ActionChoice], target_language: str
    ) -> list[ActionChoice]:
        """Translate action choice texts, keeping their types."""
        return await self._translate_items(choices, target_language)

    async def translate_world_state(
        self, entry_updates: EntryUpdates, target_language: str
    ) -> list[EntityTranslation]:
        """Translate the entities a narration introduced.

        Covers new characters, locations, items and story beats. Entities
        are identified by their untranslated name or title so the caller can
        apply each field when it stores them.

        Raises:
            ValueError: If target_language is empty.
            LLMError: If the model call fails or returns the wrong item count.
        """
        validate_not_empty(target_language, "target_language")
        fields = _entity_fields(entry_updates)
        if not fields:
            return []

        prompt = "\n".join(
            f"{index}. [{kind}] {text}"
            for index, (_, _, _, kind, text) in enumerate(fields, start=1)
        )
        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            prompt,
            TranslatedItemsResult,
            system_prompt=_ENTITIES_SYSTEM_PROMPT.format(language=target_language),
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        if len(result.items) != len(fields):
            raise LLMGenerationError(
                f"Translation returned {len(result.items)} items for {len(fields)} fields"
            )

        translations = [
            EntityTranslation(
                entity_type=entity_type,
                entity_name=name,
                field=field,
                text=item.text.strip() or text,
            )
            for (entity_type, name, field, _, text), item in zip(
                fields, result.items, strict=True
            )
        ]
        logger.info(
            "Translated %d world-state fields to %s", len(translations), target_language
        )
        return translations

    async def _translate_items[T: (Suggestion, ActionChoice)](
        self, items: Sequence[T], target_language: str
    ) -> list[T]:
        validate_not_empty(target_language, "target_language")
        if not items:
            return []

        prompt = "\n".join(
            f"{index}. [{item.type}] {item.text}" for index, item in enumerate(items, start=1)
        )
        result = await generate_structured(
            self.settings,
            self.settings.get_model_for_role(_ROLE),
            prompt,
            TranslatedItemsResult,
            system_prompt=_ITEMS_SYSTEM_PROMPT.format(language=target_language),
            temperature=self.settings.get_temperature_for_role(_ROLE),
        )
        if len(result.items) != len(items):
            raise LLMGenerationError(
                f"Translation returned {len(result.items)} items for {len(items)} inputs"
            )

        translated: list[T] = []
        for original, item in zip(items, result.items, strict=True):
            translated.append(_with_text(original, item.text))
        logger.debug("Translated %d items to %s", len(translated), target_language)
        return translated


def _with_text[M: BaseModel](original: M, text: str) -> M:
    return original.model_copy(update={"text": text.strip() or original.text})


type _EntityField = tuple[EntityType, str, EntityField, str, str]


def _entity_fields(updates: EntryUpdates) -> list[_EntityField]:
    """(entity type, name, field, item kind, text) for every translatable field."""
    fields: list[_EntityField] = []
    for character in updates.new_characters:
        name = character.name
        fields.append(("character", name, "name", "name", name))
        if character.description:
            fields.append(("character", name, "description", "description", character.description))
        if character.relationship:
            fields.append(
                ("character", name, "relationship", "description", character.relationship)
            )
        if character.traits:
            fields.append(("character", name, "traits", "description", ", ".join(character.traits)))
        looks = character.visual_descriptors.describe() if character.visual_descriptors else ""
        if looks:
            fields.append(("character", name, "visual_descriptors", "description", looks))
    for location in updates.new_locations:
        fields.append(("location", location.name, "name", "name", location.name))
        if location.description:
            fields.append(
                ("location", location.name, "description", "description", location.description)
            )
    for item in updates.new_items:
        fields.append(("item", item.name, "name", "name", item.name))
        if item.description:
            fields.append(("item", item.name, "description", "description", item.description))
    for beat in updates.new_story_beats:
        fields.append(("story_beat", beat.title, "title", "title", beat.title))
        if beat.description:
            fields.append(
                ("story_beat", beat.title, "description", "description", beat.description)
            )
    return fields
