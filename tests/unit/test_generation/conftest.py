"""Fixtures for generation phase and pipeline tests."""

import pytest

from tests.shared.generation_fakes import FakeDependencies


@pytest.fixture
def deps() -> FakeDependencies:
    """A fresh fake dependency bundle."""
    return FakeDependencies()
