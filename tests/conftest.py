"""Pytest fixtures for Narrator tests."""

import logging
from collections.abc import Iterator

import pytest

from src.memory.generation_settings import PromptContext
from src.memory.story_state import (
    Character,
    Location,
    Story,
    StoryEntry,
    UserAction,
    WorldState,
)
from src.services.generation import GenerationRequest
from src.settings import Settings
from src.utils.cancellation import CancellationSource


@pytest.fixture(autouse=True, scope="function")
def cleanup_production_log_handlers() -> Iterator[None]:
    """Remove file handlers pointing to the production log after each test.

    Tests that call setup_logging() with the default file would otherwise
    leave a handler writing to logs/narrator.log.
    """
    yield

    root_logger = logging.getLogger()
    production_log_name = "narrator.log"

    handlers_to_remove = [
        handler
        for handler in root_logger.handlers
        if isinstance(handler, logging.FileHandler)
        and production_log_name in getattr(handler, "baseFilename", "")
    ]
    for handler in handlers_to_remove:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def clear_settings_cache_per_test() -> Iterator[None]:
    """Clear Settings cache before each test to ensure isolation.

    This is autouse because caching can cause test pollution when tests
    modify settings or patch SETTINGS_FILE to different paths.
    """
    Settings.clear_cache()
    yield
    Settings.clear_cache()


@pytest.fixture(autouse=True)
def isolate_settings_file(tmp_path, monkeypatch) -> Iterator[None]:
    """Redirect settings.json and its backups into the test's temp directory.

    Without this, any test that calls Settings.load() or ServiceContainer()
    would read and rewrite the developer's real settings file.
    """
    import src.settings._settings as settings_module

    monkeypatch.setattr(settings_module, "SETTINGS_FILE", tmp_path / "settings.json")
    yield


@pytest.fixture(scope="session")
def cached_settings() -> Settings:
    """Default settings created once per session, without touching settings.json."""
    return Settings()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Fresh default settings with images written under tmp_path."""
    return Settings(image_output_dir=str(tmp_path / "images"))


@pytest.fixture
def cancel_source() -> CancellationSource:
    """A fresh, unsignaled cancellation source."""
    return CancellationSource()


@pytest.fixture
def story() -> Story:
    """An adventure story with default settings."""
    return Story(id="story-1", title="The Sunken Keep", genre="fantasy")


@pytest.fixture
def entries() -> list[StoryEntry]:
    """A short history ending with the user's latest action."""
    return [
        StoryEntry(
            id="e1",
            story_id="story-1",
            type="narration",
            content="You stand before the gates of the Sunken Keep.",
            position=0,
        ),
        StoryEntry(
            id="e2",
            story_id="story-1",
            type="user_action",
            content="I push the gate open.",
            position=1,
        ),
    ]


@pytest.fixture
def world_state() -> WorldState:
    """A small world with a protagonist, a companion and a current location."""
    gate = Location(name="Keep Gate", description="Rusted iron gates", current=True)
    return WorldState(
        characters=[
            Character(name="Aria", description="A wandering knight", relationship="self"),
            Character(name="Bram", description="An old ferryman", relationship="companion"),
        ],
        locations=[gate],
        current_location=gate,
    )


@pytest.fixture
def make_request(story, entries, world_state, cancel_source):
    """Build a GenerationRequest with sensible defaults; override any field."""

    def _make(**overrides) -> GenerationRequest:
        fields = {
            "story": story,
            "visible_entries": entries,
            "all_entries": entries,
            "world_state": world_state,
            "user_action": UserAction(entry_id="e2", content="I push the gate open."),
            "prompt_context": PromptContext(protagonist_name="Aria"),
            "cancel_token": cancel_source.token,
        }
        fields.update(overrides)
        return GenerationRequest(**fields)

    return _make
