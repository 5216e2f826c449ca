"""
Research pool: the deduplicated store of search results gathered during one
article run, keyed by normalized query and normalized URL.

A ResearchPoolBuilder accumulates results while a stage runs; build() freezes
a snapshot for handoff to the next stage.
"""
import re
import logging
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import urlsplit, urlunsplit
from models.research import (
    CategorizedSearchResult,
    ResearchPool,
    SearchCategory,
    SearchResponse,
    SearchResultItem,
    SearchSource,
)

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    return _WS_RE.sub(" ", query.strip().lower())


def normalize_url(url: str) -> Optional[str]:
    """http(s) URL without its fragment, or None if it is not one."""
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def create_empty_research_pool() -> ResearchPool:
    return ResearchPool()


def deduplicate_queries(queries: Iterable[str]) -> List[str]:
    """Drop case/whitespace duplicates, keeping the first spelling and order."""
    seen: Set[str] = set()
    unique: List[str] = []
    for q in queries:
        key = normalize_query(q)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(q)
    return unique


class ResearchPoolBuilder:
    def __init__(self, initial: Optional[ResearchPool] = None):
        self._overview: List[CategorizedSearchResult] = []
        self._category_specific: List[CategorizedSearchResult] = []
        self._recent: List[CategorizedSearchResult] = []
        self._urls: Set[str] = set()
        self._queries: Dict[str, CategorizedSearchResult] = {}
        if initial is not None:
            self._overview.extend(initial.overview)
            self._category_specific.extend(initial.category_specific)
            self._recent.extend(initial.recent)
            self._urls.update(initial.all_urls)
            self._queries.update(initial.query_cache)

    def add(self, result: CategorizedSearchResult) -> "ResearchPoolBuilder":
        key = normalize_query(result.query)
        if key in self._queries:
            return self

        for item in result.results:
            normalized = normalize_url(item.url)
            if normalized:
                self._urls.add(normalized)

        self._queries[key] = result
        if result.category == "overview":
            self._overview.append(result)
        elif result.category == "category-specific":
            self._category_specific.append(result)
        elif result.category == "recent":
            self._recent.append(result)
        # section-specific results are reachable through the query map only
        return self

    def add_all(self, results: Iterable[CategorizedSearchResult]) -> "ResearchPoolBuilder":
        for r in results:
            self.add(r)
        return self

    def has(self, query: str) -> bool:
        return normalize_query(query) in self._queries

    def find(self, query: str) -> Optional[CategorizedSearchResult]:
        return self._queries.get(normalize_query(query))

    @property
    def url_count(self) -> int:
        return len(self._urls)

    @property
    def query_count(self) -> int:
        return len(self._queries)

    def build(self) -> ResearchPool:
        return ResearchPool(
            overview=tuple(self._overview),
            category_specific=tuple(self._category_specific),
            recent=tuple(self._recent),
            all_urls=set(self._urls),
            query_cache=dict(self._queries),
        )


def collect_urls(pool: ResearchPool) -> List[str]:
    """Every normalized URL in the pool, in the order results were gathered."""
    seen: Set[str] = set()
    urls: List[str] = []
    for result in pool.query_cache.values():
        for item in result.results:
            normalized = normalize_url(item.url)
            if normalized and normalized not in seen:
                seen.add(normalized)
                urls.append(normalized)
    return urls


def extract_research_for_queries(
    queries: Iterable[str],
    pool: ResearchPool,
    include_overview: bool = True,
) -> List[CategorizedSearchResult]:
    """
    Results for the given queries, plus every overview result when
    include_overview is set (overview is background for every section).
    """
    found: List[CategorizedSearchResult] = []
    seen_ids: Set[int] = set()
    for q in queries:
        result = pool.query_cache.get(normalize_query(q))
        if result is not None and id(result) not in seen_ids:
            seen_ids.add(id(result))
            found.append(result)

    if include_overview:
        for result in pool.overview:
            if id(result) not in seen_ids:
                seen_ids.add(id(result))
                found.append(result)
    return found


def process_search_results(
    query: str,
    category: SearchCategory,
    response: SearchResponse,
    search_source: SearchSource = "tavily",
    cost: Optional[float] = None,
) -> CategorizedSearchResult:
    """Convert a provider response into a CategorizedSearchResult with normalized, valid URLs."""
    items: List[SearchResultItem] = []
    seen: Set[str] = set()
    for hit in response.results:
        normalized = normalize_url(hit.url)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        items.append(SearchResultItem(
            title=hit.title,
            url=normalized,
            content=hit.raw_content or hit.content or "",
        ))

    dropped = len(response.results) - len(items)
    if dropped:
        logger.debug(f"Dropped {dropped} invalid/duplicate URL(s) for query '{query[:60]}'")

    return CategorizedSearchResult(
        query=query,
        answer=response.answer,
        results=items,
        category=category,
        search_source=search_source,
        cost=cost if cost is not None else response.cost,
    )
