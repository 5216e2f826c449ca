"""
Web search providers.

Tavily is the keyword provider and always required; Exa is the optional
semantic (neural) provider. Both return the same SearchResponse shape and
raise on HTTP failure so retry and failure accounting see the error.
"""
import httpx
import logging
from typing import Any, Dict, Optional, Protocol
from config import Settings
from models.research import SearchHit, SearchResponse, SearchSource

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"
EXA_URL = "https://api.exa.ai/search"


class SearchProvider(Protocol):
    name: SearchSource

    async def search(
        self,
        query: str,
        max_results: int = 5,
        depth: str = "basic",
        include_answer: bool = True,
        include_raw_content: bool = False,
    ) -> SearchResponse:
        ...

    def estimate_cost(self, depth: str) -> float:
        ...


def _clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(value)))


def _text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _parse_hits(raw_results: Any, content_key: str, raw_key: Optional[str]) -> list:
    hits = []
    for r in raw_results if isinstance(raw_results, list) else []:
        if not isinstance(r, dict):
            continue
        title = _text(r.get("title"))
        url = _text(r.get("url"))
        if not title or not url:
            continue
        score = r.get("score")
        hits.append(SearchHit(
            title=title,
            url=url,
            content=_text(r.get(content_key)),
            raw_content=_text(r.get(raw_key)) if raw_key else None,
            score=float(score) if isinstance(score, (int, float)) else None,
        ))
    return hits


class TavilyProvider:
    name: SearchSource = "tavily"

    def __init__(self, api_key: str, cfg: Settings, client: Optional[httpx.AsyncClient] = None):
        self._api_key = api_key
        self._cfg = cfg
        self._client = client

    def estimate_cost(self, depth: str) -> float:
        return self._cfg.tavily_advanced_cost if depth == "advanced" else self._cfg.tavily_basic_cost

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._client is not None:
            response = await self._client.post(TAVILY_URL, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self._cfg.search_timeout_sec) as client:
                response = await client.post(TAVILY_URL, json=payload)
        response.raise_for_status()
        return response.json()

    async def search(
        self,
        query: str,
        max_results: int = 5,
        depth: str = "basic",
        include_answer: bool = True,
        include_raw_content: bool = False,
    ) -> SearchResponse:
        cleaned = query.strip()
        if not cleaned:
            return SearchResponse(query=cleaned)

        data = await self._post({
            "api_key": self._api_key,
            "query": cleaned,
            "search_depth": depth,
            "max_results": _clamp(max_results, 1, 10),
            "include_answer": include_answer,
            "include_raw_content": include_raw_content,
        })
        results = _parse_hits(data.get("results"), "content", "raw_content")
        logger.info(f"Tavily '{cleaned[:60]}' -> {len(results)} result(s)")
        # Tavily reports no cost; callers fall back to estimate_cost()
        return SearchResponse(query=cleaned, answer=_text(data.get("answer")), results=results)


class ExaProvider:
    name: SearchSource = "exa"

    def __init__(self, api_key: str, cfg: Settings, client: Optional[httpx.AsyncClient] = None):
        self._api_key = api_key
        self._cfg = cfg
        self._client = client

    def estimate_cost(self, depth: str) -> float:
        return self._cfg.exa_search_cost

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"x-api-key": self._api_key, "Content-Type": "application/json"}
        if self._client is not None:
            response = await self._client.post(EXA_URL, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._cfg.search_timeout_sec) as client:
                response = await client.post(EXA_URL, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    async def search(
        self,
        query: str,
        max_results: int = 5,
        depth: str = "basic",
        include_answer: bool = True,
        include_raw_content: bool = False,
    ) -> SearchResponse:
        cleaned = query.strip()
        if not cleaned:
            return SearchResponse(query=cleaned)

        data = await self._post({
            "query": cleaned,
            "numResults": _clamp(max_results, 1, 25),
            "type": "neural",
            "contents": {"text": {"maxCharacters": self._cfg.max_cleaner_input_chars}},
        })
        results = _parse_hits(data.get("results"), "text", None)
        cost_info = data.get("costDollars")
        cost = None
        if isinstance(cost_info, dict) and isinstance(cost_info.get("total"), (int, float)):
            cost = float(cost_info["total"])
        logger.info(f"Exa '{cleaned[:60]}' -> {len(results)} result(s)")
        return SearchResponse(query=cleaned, results=results, cost=cost)
