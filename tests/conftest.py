"""Shared fixtures for the article pipeline tests."""

import pytest

from fakes import FakeLLM, FakeProvider, GAME, RecordingSleep, make_settings
from models.requests import ArticleContext


@pytest.fixture
def cfg():
    """Valid settings with fake credentials and no database."""
    return make_settings()


@pytest.fixture
def sleep():
    """Non-blocking sleep that records requested delays."""
    return RecordingSleep()


@pytest.fixture
def llm():
    """Fake LLM that answers every call with empty text."""
    return FakeLLM()


@pytest.fixture
def provider():
    """Fake Tavily provider."""
    return FakeProvider()


@pytest.fixture
def context():
    """A typical guide request."""
    return ArticleContext(
        game_name=GAME,
        genres=["Action RPG", "Open World"],
        platforms=["PC", "PlayStation 5"],
        developer="FromSoftware",
        publisher="Bandai Namco",
        release_date="2022-02-25",
        instruction="beginner tips for the first 10 hours",
        target_word_count=1200,
    )


@pytest.fixture
def db_path(tmp_path):
    """Path to a fresh sqlite cache file."""
    return str(tmp_path / "article_cache.db")
