"""Tests for the cleaning pipeline between providers and the research pool."""

import asyncio
import re

import pytest

from database import SourceStore
from fakes import FakeLLM, make_settings
from models.research import SearchHit, SearchResponse
from models.sources import StoredSourceContent
from services.background import BackgroundWriter
from services.content_pipeline import CleaningPipeline, PassthroughPipeline
from services.source_cache import LEGACY_RELEVANCE_DEFAULT, SourceCache

PAGE = "Margit, the Fell Omen guards Stormveil Castle. Use Spirit Ashes and jump attacks. " * 4

GOOD = "https://gamewiki.example.com/margit"
OFFTOPIC = "https://recipes.example.com/soup"
SHORT = "https://thin.example.com/stub"
SOCIAL = "https://www.reddit.com/r/Eldenring/comments/1"
FAILS = "https://fails.example.com/page"
VIDEO = "https://www.youtube.com/watch?v=margit"

_URL_RE = re.compile(r"^URL: (.+)$", re.MULTILINE)


def _cleaner(call):
    url = _URL_RE.search(call.prompt).group(1)
    if url == FAILS:
        return RuntimeError("model overloaded")
    relevance = 10 if url == OFFTOPIC else 90
    return {
        "cleaned_content": PAGE,
        "summary": f"Summary of {url}",
        "quality_score": 80,
        "relevance_score": relevance,
        "quality_notes": "",
        "content_type": "guide",
    }


def _response():
    return SearchResponse(
        query="margit strategy",
        answer="Use jump attacks.",
        results=[
            SearchHit(title="Margit", url=GOOD, content=PAGE),
            SearchHit(title="Soup", url=OFFTOPIC, content=PAGE),
            SearchHit(title="Stub", url=SHORT, content="Loading..."),
            SearchHit(title="Thread", url=SOCIAL, content=PAGE),
            SearchHit(title="Fails", url=FAILS, content=PAGE),
            SearchHit(title="Video", url=VIDEO, content=PAGE),
        ],
    )


@pytest.fixture
def pipeline(db_path):
    cfg = make_settings(retry_max_attempts=1)
    cache = SourceCache(SourceStore(db_path), cfg, BackgroundWriter())
    return CleaningPipeline(cache, FakeLLM(_cleaner), cfg)


@pytest.mark.asyncio
async def test_passthrough_only_normalizes():
    """Test that the passthrough pipeline keeps every valid hit unscored."""
    outcome = await PassthroughPipeline().process("margit strategy", "section-specific", _response(), "tavily", 0.01)

    assert len(outcome.result.results) == 6
    assert outcome.result.results[0].relevance_score is None
    assert outcome.filtered == []
    assert outcome.result.cost == 0.01


@pytest.mark.asyncio
async def test_cleaning_filters_and_falls_back(pipeline):
    """Test that each source takes the right path: kept, filtered, or raw fallback."""
    outcome = await pipeline.process("margit strategy", "section-specific", _response(), "tavily", game_name="Elden Ring")

    kept = outcome.result.results
    assert [i.url for i in kept] == [GOOD, FAILS]
    assert kept[0].relevance_score == 90
    assert kept[0].summary == f"Summary of {GOOD}"
    assert kept[1].relevance_score is None
    assert kept[1].content == PAGE

    reasons = {f.url: f.reason for f in outcome.filtered}
    assert reasons == {
        OFFTOPIC: "low_relevance",
        SHORT: "scrape_failure",
        SOCIAL: "pre_filter",
        VIDEO: "excluded_domain",
    }
    assert outcome.cleaned == 2
    assert outcome.clean_failures == 1
    assert outcome.scrape_failures == 1
    assert outcome.cache_misses == 6
    # the failed cleaner call reports no usage
    assert outcome.usage.total == 2 * 150
    await pipeline.cache.background.drain()


@pytest.mark.asyncio
async def test_background_stores_then_cache_hits(pipeline):
    """Test that cleaned sources are stored in the background and served from cache next time."""
    await pipeline.process("margit strategy", "section-specific", _response(), "tavily")
    await pipeline.cache.background.drain()

    rows = pipeline.cache.store.find_by_urls([GOOD, OFFTOPIC, SHORT])
    assert rows[GOOD].scrape_succeeded is True
    assert OFFTOPIC not in rows
    assert rows[SHORT].scrape_succeeded is False

    llm = pipeline.llm
    before = len(llm.calls)
    second = await pipeline.process("margit strategy", "section-specific", _response(), "tavily")

    cleaned_urls = [_URL_RE.search(c.prompt).group(1) for c in llm.calls[before:]]
    assert GOOD not in cleaned_urls
    assert second.cache_hits == 2
    good = next(i for i in second.result.results if i.url == GOOD)
    assert good.from_cache is True
    assert {f.url: f.reason for f in second.filtered}[SHORT] == "scrape_failure"
    await pipeline.cache.background.drain()


@pytest.mark.asyncio
async def test_legacy_hit_served_then_repaired_in_background(db_path):
    """Test that a cached row without relevance is served as-is and re-scored after the response."""
    gate = asyncio.Event()

    async def gated(call):
        await gate.wait()
        return _cleaner(call)

    cfg = make_settings(retry_max_attempts=1)
    pipeline = CleaningPipeline(SourceCache(SourceStore(db_path), cfg, BackgroundWriter()), FakeLLM(gated), cfg)
    pipeline.cache.store.insert_source(StoredSourceContent(
        url=GOOD, domain="gamewiki.example.com", title="Margit", cleaned_content=PAGE, quality_score=70,
    ))
    response = SearchResponse(query="margit strategy", results=[SearchHit(title="Margit", url=GOOD, content=PAGE)])

    outcome = await pipeline.process("margit strategy", "section-specific", response, "tavily", game_name="Elden Ring")

    item = outcome.result.results[0]
    assert item.from_cache is True
    assert item.relevance_score == LEGACY_RELEVANCE_DEFAULT
    assert outcome.cleaned == 0
    assert outcome.usage.total == 0
    assert pipeline.cache.store.find_by_urls([GOOD])[GOOD].relevance_score is None

    gate.set()
    await pipeline.cache.background.drain()

    assert len(pipeline.llm.calls) == 1
    row = pipeline.cache.store.find_by_urls([GOOD])[GOOD]
    assert row.relevance_score == 90
