"""
Batched execution of the research queries an article plan needs.

Queries already in the incoming pool are skipped and the rest deduplicated.
Each provider's list runs in fixed-size batches: queries inside a batch run
concurrently, batches run one after another with a short courtesy delay.
A failed query becomes a QueryFailure instead of failing the article.
"""
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from config import Settings
from errors import OperationCancelled
from models.research import (
    BatchResearchResult,
    CategorizedSearchResult,
    QueryFailure,
    ResearchPool,
    SearchCategory,
    SearchSource,
)
from models.sources import CleaningOutcome
from services.content_pipeline import ContentPipeline, PassthroughPipeline
from services.research_pool import ResearchPoolBuilder, deduplicate_queries
from services.retry import retry_kwargs, with_retry
from services.search_providers import SearchProvider
from utils.cancellation import CancellationToken
import asyncio
import logging

logger = logging.getLogger(__name__)

ResearchProgress = Callable[[int, int], None]

# Explanatory / how-to phrasing reads better to a neural index than to keyword search
SEMANTIC_QUERY_MARKERS = (
    "how to",
    "how does",
    "how do",
    "guide to",
    "what is the",
    "what are the",
    "explain",
    "why does",
    "best way to",
    "tips for",
    "strategy for",
    "beginner",
)


def classify_query(query: str) -> SearchSource:
    lowered = query.lower()
    return "exa" if any(marker in lowered for marker in SEMANTIC_QUERY_MARKERS) else "tavily"


def route_queries(queries: Iterable[str], semantic_available: bool) -> Dict[SearchSource, List[str]]:
    """Split queries per provider, keeping order. Everything goes to Tavily without semantic routing."""
    routed: Dict[SearchSource, List[str]] = {"tavily": [], "exa": []}
    for q in queries:
        routed[classify_query(q) if semantic_available else "tavily"].append(q)
    return routed


def plan_new_queries(queries: Iterable[str], pool: ResearchPool) -> Tuple[List[str], int]:
    """Queries not yet in the pool, deduplicated. Also returns how many the pool already held."""
    builder = ResearchPoolBuilder(pool)
    queries = list(queries)
    missing = [q for q in queries if q.strip() and not builder.has(q)]
    return deduplicate_queries(missing), len(queries) - len(missing)


async def _search_one(
    query: str,
    provider: SearchProvider,
    pipeline: ContentPipeline,
    cfg: Settings,
    category: SearchCategory,
    game_name: Optional[str],
    cancel: Optional[CancellationToken],
    sleep: Callable[[float], Awaitable[None]],
) -> Tuple[CleaningOutcome, float]:
    async def call():
        search = provider.search(
            query,
            max_results=cfg.max_search_results,
            depth=cfg.search_depth,
            include_answer=True,
            include_raw_content=True,
        )
        return await cancel.guard(search) if cancel is not None else await search

    response = await with_retry(
        call, **retry_kwargs(cfg, cancel, f"{provider.name} search '{query[:50]}'", sleep),
    )
    cost = response.cost if response.cost is not None else provider.estimate_cost(cfg.search_depth)
    outcome = await pipeline.process(
        query, category, response, provider.name, cost, game_name=game_name, cancel=cancel,
    )
    return outcome, cost


async def batch_research(
    queries: Iterable[str],
    pool: ResearchPool,
    providers: Dict[SearchSource, SearchProvider],
    cfg: Settings,
    *,
    pipeline: Optional[ContentPipeline] = None,
    category: SearchCategory = "section-specific",
    semantic_routing: bool = False,
    game_name: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    on_progress: Optional[ResearchProgress] = None,
    graceful_degradation: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BatchResearchResult:
    pipeline = pipeline or PassthroughPipeline()
    new_queries, already_in_pool = plan_new_queries(queries, pool)
    total = len(new_queries)
    if on_progress:
        on_progress(0, total)
    if not new_queries:
        logger.debug("All research queries already satisfied by the pool")
        return BatchResearchResult(pool=pool)

    semantic_available = semantic_routing and "exa" in providers
    routed = route_queries(new_queries, semantic_available)
    batches: List[Tuple[SearchSource, List[str]]] = []
    for source in ("tavily", "exa"):
        items = routed[source]
        for i in range(0, len(items), cfg.batch_concurrency):
            batches.append((source, items[i:i + cfg.batch_concurrency]))

    logger.info(
        f"Executing {total} research quer{'y' if total == 1 else 'ies'} in {len(batches)} batch(es) "
        f"({already_in_pool} already in pool; tavily={len(routed['tavily'])}, exa={len(routed['exa'])})"
    )

    builder = ResearchPoolBuilder(pool)
    result = BatchResearchResult(pool=pool)
    costs: Dict[str, float] = {}
    completed = 0

    for index, (source, batch) in enumerate(batches):
        if cancel is not None:
            cancel.raise_if_cancelled()
        provider = providers[source]

        outcomes = await asyncio.gather(
            *[_search_one(q, provider, pipeline, cfg, category, game_name, cancel, sleep) for q in batch],
            return_exceptions=True,
        )
        for query, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, (OperationCancelled, asyncio.CancelledError)):
                    raise outcome
                if not graceful_degradation:
                    raise outcome
                logger.warning(f"Research query failed ({source}): '{query[:60]}': {outcome}")
                result.failures.append(QueryFailure(query=query, message=str(outcome), provider=source))
                continue
            cleaning, cost = outcome
            builder.add(cleaning.result)
            costs[source] = costs.get(source, 0.0) + cost
            result.cleaning_usage = result.cleaning_usage + cleaning.usage
            result.cleaning_cost += cleaning.cost
            result.filtered_sources += len(cleaning.filtered)
            result.success_count += 1

        completed += len(batch)
        if on_progress:
            on_progress(completed, total)
        if cfg.batch_delay_sec > 0 and index < len(batches) - 1:
            await sleep(cfg.batch_delay_sec)

    result.failure_count = len(result.failures)
    result.failed_queries = [f.query for f in result.failures]
    result.cost_by_provider = costs
    result.pool = builder.build()
    logger.info(
        f"Batch research: {result.success_count} succeeded, {result.failure_count} failed, "
        f"pool now {builder.query_count} queries / {builder.url_count} URLs"
    )
    return result


async def search_categorized(
    query: str,
    category: SearchCategory,
    provider: SearchProvider,
    cfg: Settings,
    *,
    max_results: int,
    pipeline: Optional[ContentPipeline] = None,
    game_name: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[CategorizedSearchResult, CleaningOutcome, float]:
    """One retried search through the content pipeline; used by the scout for its fixed queries."""
    pipeline = pipeline or PassthroughPipeline()

    async def call():
        search = provider.search(
            query, max_results=max_results, depth="basic", include_answer=True, include_raw_content=True,
        )
        return await cancel.guard(search) if cancel is not None else await search

    response = await with_retry(call, **retry_kwargs(cfg, cancel, f"Scout search '{query[:50]}'", sleep))
    cost = response.cost if response.cost is not None else provider.estimate_cost("basic")
    outcome = await pipeline.process(
        query, category, response, provider.name, cost, game_name=game_name, cancel=cancel,
    )
    return outcome.result, outcome, cost
