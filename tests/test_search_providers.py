"""Tests for the Tavily and Exa clients against a mocked HTTP transport."""

import json

import httpx
import pytest

from services.search_providers import EXA_URL, TAVILY_URL, ExaProvider, TavilyProvider


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_tavily_search(cfg):
    """Test that Tavily requests are built from the arguments and hits parsed."""
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={
            "answer": "  Margit is the first major boss.  ",
            "results": [
                {"title": "Margit Guide", "url": "https://gamewiki.example.com/margit",
                 "content": "Fight notes", "raw_content": "Full page", "score": 0.92},
                {"title": "", "url": "https://no-title.example.com"},
                {"title": "No URL"},
                "junk",
            ],
        })

    async with _client(handler) as client:
        provider = TavilyProvider("tv-key", cfg, client=client)
        response = await provider.search(
            "  elden ring margit  ", max_results=50, depth="advanced", include_raw_content=True,
        )

    body = json.loads(requests[0].content)
    assert str(requests[0].url) == TAVILY_URL
    assert body == {
        "api_key": "tv-key",
        "query": "elden ring margit",
        "search_depth": "advanced",
        "max_results": 10,
        "include_answer": True,
        "include_raw_content": True,
    }
    assert response.answer == "Margit is the first major boss."
    assert response.cost is None
    assert len(response.results) == 1
    hit = response.results[0]
    assert (hit.title, hit.raw_content, hit.score) == ("Margit Guide", "Full page", 0.92)


@pytest.mark.asyncio
async def test_empty_query_skips_request(cfg):
    """Test that a blank query returns an empty response without any HTTP call."""
    def handler(request):
        raise AssertionError("no request expected")

    async with _client(handler) as client:
        response = await TavilyProvider("k", cfg, client=client).search("   ")

    assert response.results == []


@pytest.mark.asyncio
async def test_tavily_http_error_raises(cfg):
    """Test that non-2xx responses raise so retries can see them."""
    async with _client(lambda request: httpx.Response(502, json={})) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await TavilyProvider("k", cfg, client=client).search("elden ring")


def test_cost_estimates(cfg):
    assert TavilyProvider("k", cfg).estimate_cost("advanced") == cfg.tavily_advanced_cost
    assert TavilyProvider("k", cfg).estimate_cost("basic") == cfg.tavily_basic_cost
    assert ExaProvider("k", cfg).estimate_cost("advanced") == cfg.exa_search_cost


@pytest.mark.asyncio
async def test_exa_search(cfg):
    """Test that Exa sends the key header, reads text content and reports its own cost."""
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={
            "results": [{"title": "How Spirit Ashes Work", "url": "https://guides.example.net/ashes",
                         "text": "Summon near Rebirth Monuments."}],
            "costDollars": {"total": 0.005},
        })

    async with _client(handler) as client:
        response = await ExaProvider("exa-key", cfg, client=client).search("how do spirit ashes work", max_results=7)

    request = requests[0]
    body = json.loads(request.content)
    assert str(request.url) == EXA_URL
    assert request.headers["x-api-key"] == "exa-key"
    assert body["numResults"] == 7
    assert body["type"] == "neural"
    assert response.cost == 0.005
    assert response.answer is None
    assert response.results[0].content == "Summon near Rebirth Monuments."
