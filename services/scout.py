"""
Scout: broad research that seeds the research pool, plus three briefings
(overview, category insights, recent developments) for the later stages.
"""
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional
from config import Settings
from errors import OperationCancelled
from models.articles import ResearchConfidence, ScoutBriefing, ScoutOutput
from models.requests import ArticleContext
from models.research import CategorizedSearchResult, SearchCategory
from models.usage import StageUsage, TokenUsage
from services.batch_research import search_categorized
from services.content_pipeline import ContentPipeline
from services.llm import LLMClient, LLMResult
from services.research_pool import ResearchPoolBuilder, collect_urls, deduplicate_queries
from services.retry import retry_kwargs, with_retry
from services.search_providers import SearchProvider
from utils.cancellation import CancellationToken, gather_or_cancel
from utils.text import truncate
import asyncio
import logging

logger = logging.getLogger(__name__)

ScoutProgress = Callable[[str, int, int], None]

_OVERVIEW_SYSTEM = """You are a research scout for a video game publication.
Write a factual briefing (3-5 paragraphs) about the game from the search results:
what it is, core gameplay, setting, reception so far. Only facts present in the
results. Write in English."""

_CATEGORY_SYSTEM = """You are a research scout for a video game publication.
Summarize what the search results say that matters for the requested article angle:
key mechanics, common player questions, standout opinions. Bullet points are fine.
Write in English."""

_RECENT_SYSTEM = """You are a research scout for a video game publication.
Summarize recent news, patches and updates from the search results, newest first,
with dates where given. If nothing recent is present, say so in one sentence.
Write in English."""


def build_scout_queries(context: ArticleContext, max_category: int, year: Optional[int] = None) -> Dict[str, List[str]]:
    game = context.game_name.strip()
    genres = " ".join(context.genres[:2])
    overview = f'"{game}" game overview gameplay mechanics {genres}'.strip()

    if context.instruction and context.instruction.strip():
        category = [f'"{game}" {context.instruction.strip()}']
    else:
        category = [f'"{game}" review analysis opinion', f'"{game}" guide tips strategies']
    for hint in context.category_hints:
        category.append(f'"{game}" {hint.slug}')

    year = year or datetime.now(timezone.utc).year
    recent = f'"{game}" latest news updates patches {year}'
    return {
        "overview": [overview],
        "category": deduplicate_queries(category)[:max_category],
        "recent": [recent],
    }


def build_search_context(results: List[CategorizedSearchResult], per_context: int, snippet: int) -> str:
    blocks = []
    for search in results:
        lines = "\n".join(
            f"  - {r.title} ({r.url})\n    {truncate(r.content, snippet)}" for r in search.results[:per_context]
        )
        blocks.append(
            f'Query: "{search.query}"\nCategory: {search.category}\n'
            f"AI Summary: {search.answer or '(none)'}\nResults:\n{lines}"
        )
    return "\n\n---\n\n".join(blocks)


def build_full_context(context: ArticleContext, briefing: ScoutBriefing) -> str:
    lines = [
        "=== OVERVIEW ===", briefing.overview, "",
        "=== CATEGORY INSIGHTS ===", briefing.category_insights, "",
        "=== RECENT DEVELOPMENTS ===", briefing.recent_developments, "",
        "=== METADATA ===",
        f"Game: {context.game_name}",
        f"Developer: {context.developer or 'unknown'}",
        f"Publisher: {context.publisher or 'unknown'}",
        f"Release: {context.release_date or 'unknown'}",
        f"Genres: {', '.join(context.genres) or 'unknown'}",
        f"Platforms: {', '.join(context.platforms) or 'unknown'}",
    ]
    if context.description:
        lines.append(f"Catalog: {context.description}")
    if context.instruction:
        lines.append(f"Directive: {context.instruction}")
    return "\n".join(lines)


def calculate_research_confidence(source_count: int, query_count: int, overview_length: int, cfg: Settings) -> ResearchConfidence:
    """Score sources, queries and overview length 0-2 each; 5+ is high, 3+ medium."""
    score = 0
    for value, medium, high in (
        (source_count, cfg.scout_min_sources_warning, cfg.scout_min_sources_warning * 2),
        (query_count, cfg.scout_min_queries_warning, cfg.scout_min_queries_warning * 2),
        (overview_length, cfg.scout_min_overview_length, cfg.scout_min_overview_length * 4),
    ):
        if value >= high:
            score += 2
        elif value >= medium:
            score += 1
    if score >= 5:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


async def run_scout(
    context: ArticleContext,
    *,
    llm: LLMClient,
    provider: SearchProvider,
    cfg: Settings,
    pipeline: Optional[ContentPipeline] = None,
    cancel: Optional[CancellationToken] = None,
    on_progress: Optional[ScoutProgress] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ScoutOutput:
    queries = build_scout_queries(context, cfg.scout_max_category_searches)
    planned = (
        [(q, "overview", cfg.scout_overview_results) for q in queries["overview"]]
        + [(q, "category-specific", cfg.scout_category_results) for q in queries["category"]]
        + [(q, "recent", cfg.scout_recent_results) for q in queries["recent"]]
    )
    total = len(planned)
    done = 0
    if on_progress:
        on_progress("search", 0, total)

    async def tracked(query: str, category: SearchCategory, max_results: int):
        nonlocal done
        result = await search_categorized(
            query, category, provider, cfg,
            max_results=max_results, pipeline=pipeline, game_name=context.game_name, cancel=cancel, sleep=sleep,
        )
        done += 1
        if on_progress:
            on_progress("search", done, total)
        return result

    logger.info(f"Scout: {total} searches for '{context.game_name}'")
    outcomes = await asyncio.gather(*[tracked(*p) for p in planned], return_exceptions=True)

    warnings: List[str] = []
    builder = ResearchPoolBuilder()
    search_cost = 0.0
    cleaning_tokens = TokenUsage()
    cleaning_cost = 0.0
    for (query, _, _), outcome in zip(planned, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, (OperationCancelled, asyncio.CancelledError)):
                raise outcome
            logger.warning(f"Scout search failed: '{query[:60]}': {outcome}")
            warnings.append(f'Search failed: "{query}"')
            continue
        result, cleaning, cost = outcome
        builder.add(result)
        search_cost += cost
        cleaning_tokens = cleaning_tokens + cleaning.usage
        cleaning_cost += cleaning.cost
        if not result.results:
            warnings.append(f'Search returned no results: "{query}"')
    pool = builder.build()

    if cancel is not None:
        cancel.raise_if_cancelled()

    all_results = [*pool.overview, *pool.category_specific, *pool.recent]
    search_context = build_search_context(all_results, cfg.scout_results_per_context, cfg.scout_max_snippet_length)
    category_context = "\n\n".join(
        f'Query: "{s.query}"\nSummary: {s.answer or "(none)"}\nKey findings: '
        + "; ".join(r.title for r in s.results[:cfg.scout_results_per_context])
        for s in pool.category_specific
    )
    recent_context = "\n".join(
        f"- {r.title}: {truncate(r.content, cfg.scout_max_snippet_length)}"
        for s in pool.recent for r in s.results[:cfg.scout_results_per_context]
    )

    metadata = (
        f"Game: {context.game_name}\n"
        f"Genres: {', '.join(context.genres) or 'unknown'}\n"
        f"Platforms: {', '.join(context.platforms) or 'unknown'}\n"
        f"Developer: {context.developer or 'unknown'} / Publisher: {context.publisher or 'unknown'}\n"
        f"Release: {context.release_date or 'unknown'}"
    )
    directive = f"\nArticle directive: {context.instruction}" if context.instruction else ""
    briefings = [
        ("Scout overview briefing", _OVERVIEW_SYSTEM, f"{metadata}{directive}\n\nSEARCH RESULTS:\n{search_context}"),
        ("Scout category briefing", _CATEGORY_SYSTEM,
         f"Game: {context.game_name}{directive}\n\nFINDINGS:\n{category_context or '(none)'}"),
        ("Scout recent briefing", _RECENT_SYSTEM,
         f"Game: {context.game_name}\n\nRECENT RESULTS:\n{recent_context or '(none)'}"),
    ]

    briefed = 0
    if on_progress:
        on_progress("briefing", 0, len(briefings))

    async def brief(label: str, system: str, prompt: str) -> LLMResult:
        nonlocal briefed
        result = await with_retry(
            lambda: llm.generate(
                model=cfg.scout_model,
                system=system,
                prompt=prompt,
                temperature=cfg.scout_temperature,
                max_output_tokens=cfg.scout_max_output_tokens,
                cancel=cancel,
            ),
            **retry_kwargs(cfg, cancel, label, sleep),
        )
        briefed += 1
        if on_progress:
            on_progress("briefing", briefed, len(briefings))
        return result

    overview, category, recent = await gather_or_cancel(*[brief(*b) for b in briefings])

    briefing = ScoutBriefing(
        overview=overview.text.strip(),
        category_insights=category.text.strip(),
        recent_developments=recent.text.strip(),
    )
    briefing.full_context = build_full_context(context, briefing)

    source_urls = collect_urls(pool)
    if len(source_urls) < cfg.scout_min_sources_warning:
        warnings.append(f"Only {len(source_urls)} sources found (recommended: {cfg.scout_min_sources_warning})")
    if len(pool.query_cache) < cfg.scout_min_queries_warning:
        warnings.append(f"Only {len(pool.query_cache)} queries executed (recommended: {cfg.scout_min_queries_warning})")
    if len(briefing.overview) < cfg.scout_min_overview_length:
        warnings.append(f"Overview briefing is only {len(briefing.overview)} characters")

    confidence = calculate_research_confidence(len(source_urls), len(pool.query_cache), len(briefing.overview), cfg)
    for w in warnings:
        logger.warning(f"Scout: {w}")
    if confidence == "low":
        logger.warning(f"Research confidence is LOW for '{context.game_name}'")

    tokens = overview.usage + category.usage + recent.usage + cleaning_tokens
    return ScoutOutput(
        briefing=briefing,
        pool=pool,
        source_urls=source_urls,
        confidence=confidence,
        warnings=warnings,
        usage=StageUsage(
            tokens=tokens,
            llm_cost_usd=overview.cost + category.cost + recent.cost + cleaning_cost,
            search_cost_usd=search_cost,
        ),
    )
