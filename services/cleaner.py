"""
Source cleaning.

Raw scraped content goes through two cheap programmatic checks (URL/title
patterns, known-bad domains) before the cleaner model strips page junk and
scores what is left for quality and relevance. A source that cannot be
cleaned comes back as None; callers fall back to the raw content.
"""
from pydantic import BaseModel
from typing import Dict, List, Optional, Tuple
from config import Settings
from models.usage import TokenUsage
from models.sources import CleanedSource, DomainQuality, RawSourceInput
from services.llm import LLMClient
from services.retry import retry_kwargs, with_retry
from utils.cancellation import CancellationToken
from utils.text import extract_domain, strip_html
import asyncio
import logging
import re

logger = logging.getLogger(__name__)

_IRRELEVANT_PATTERNS = [
    # adult
    re.compile(r"\bporn\b"),
    re.compile(r"\bxxx\b"),
    re.compile(r"\badult\b"),
    re.compile(r"\bnsfw\b"),
    re.compile(r"xhamster|pornhub|xvideos"),
    # shopping
    re.compile(r"\bamazon\.com/(?!.*game)"),
    re.compile(r"\bebay\.com"),
    re.compile(r"\baliexpress"),
    # social / forums
    re.compile(r"\breddit\.com"),
    re.compile(r"twitter\.com/\w+$"),
    re.compile(r"facebook\.com/\w+$"),
    re.compile(r"instagram\.com/\w+$"),
    re.compile(r"fextralife\.com/forums"),
    # programming docs
    re.compile(r"docs\.python\.org"),
    re.compile(r"docs\.oracle\.com"),
    re.compile(r"flask\.palletsprojects"),
    re.compile(r"django\.readthedocs"),
    re.compile(r"\bstackoverflow\.com"),
    # real estate / interior design
    re.compile(r"\bhouzz\.com|\bzillow\.com|\brealtor\.com|\bcoohom\.com"),
]

_SYSTEM_PROMPT = """You are a content cleaning specialist for a video game publication.
Extract the valuable content from one scraped web page and remove all junk.

REMOVE: navigation, headers, footers, cookie banners, ads, share buttons,
related-article blocks, comments, newsletter and login prompts, breadcrumbs,
legal boilerplate.

KEEP: the main article or guide text, tables, lists and steps, headings,
image captions as [Image: caption]. Do not summarize the cleaned content.
Preserve structure as markdown. When in doubt, keep it.

Return a JSON object:
{
  "cleaned_content": "the page with junk removed, markdown",
  "summary": "1-2 sentences on what the page covers",
  "quality_score": 0-100,
  "relevance_score": 0-100,
  "quality_notes": "one short sentence explaining the scores",
  "content_type": "e.g. wiki article, strategy guide, walkthrough, news article, forum discussion"
}

quality_score: depth, authority and how much survived cleaning.
relevance_score: how useful the page is for an article about the named game.
A page about a different game, or not about games at all, scores below 20."""


class CleanResult(BaseModel):
    source: Optional[CleanedSource] = None
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0


class BatchCleanResult(BaseModel):
    sources: List[CleanedSource] = []
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0
    failures: int = 0


def quick_relevance_check(url: str, title: str) -> Tuple[bool, Optional[str]]:
    """Pattern match on URL + title. Returns (is_irrelevant, reason)."""
    combined = f"{url} {title}".lower()
    for pattern in _IRRELEVANT_PATTERNS:
        if pattern.search(combined):
            return True, f"Matched pattern: {pattern.pattern}"
    return False, None


def is_known_bad_domain(dq: Optional[DomainQuality], cfg: Settings, provider: Optional[str] = None) -> bool:
    if dq is None:
        return False
    if dq.is_excluded or (provider and dq.provider_excluded.get(provider)):
        return True
    # domains with only scrape failures carry no scores yet
    if dq.avg_relevance_score is None:
        return False
    return (
        dq.avg_quality_score < cfg.min_quality_for_results
        or dq.avg_relevance_score < cfg.auto_exclude_relevance_threshold
    )


def pre_filter_sources(
    sources: List[RawSourceInput],
    domains: Dict[str, DomainQuality],
    cfg: Settings,
) -> Tuple[List[RawSourceInput], List[Tuple[RawSourceInput, str]]]:
    """Split sources into (to_clean, skipped-with-reason) without any model call."""
    to_clean: List[RawSourceInput] = []
    skipped: List[Tuple[RawSourceInput, str]] = []
    for source in sources:
        irrelevant, reason = quick_relevance_check(source.url, source.title)
        if irrelevant:
            skipped.append((source, f"Quick filter: {reason}"))
            continue
        domain = extract_domain(source.url)
        dq = domains.get(domain)
        if is_known_bad_domain(dq, cfg, source.search_source):
            skipped.append((
                source,
                f"Known bad domain: {domain} (Q:{dq.avg_quality_score:.0f}, "
                f"R:{dq.avg_relevance_score if dq.avg_relevance_score is not None else 'n/a'})",
            ))
            continue
        to_clean.append(source)

    if skipped:
        logger.info(f"Pre-filter skipped {len(skipped)} of {len(sources)} source(s)")
    return to_clean, skipped


def junk_ratio(original_length: int, cleaned_length: int) -> float:
    if original_length <= 0:
        return 0.0
    return max(0.0, min(1.0, 1 - cleaned_length / original_length))


def _score(value, default: int = 0) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return default


def _build_prompt(source: RawSourceInput, text: str, game_name: Optional[str], cfg: Settings) -> str:
    game_line = f'\nContext: this page is being evaluated for an article about "{game_name}".' if game_name else ""
    return (
        f"Clean the following web content and rate it.{game_line}\n\n"
        f"URL: {source.url}\n"
        f"Title: {source.title}\n\n"
        f"=== RAW CONTENT START ===\n{text[:cfg.max_cleaner_input_chars]}\n=== RAW CONTENT END ==="
    )


async def clean_source(
    source: RawSourceInput,
    llm: LLMClient,
    cfg: Settings,
    game_name: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
) -> CleanResult:
    """Clean and score one source. Never raises except on cancellation."""
    text = strip_html(source.content or "")
    if len(text.strip()) < cfg.min_content_length:
        logger.debug(f"Skipping short content ({len(text)} chars): {source.url}")
        return CleanResult()

    original_length = len(source.content)
    try:
        result = await with_retry(
            lambda: llm.generate(
                model=cfg.cleaner_model,
                system=_SYSTEM_PROMPT,
                prompt=_build_prompt(source, text, game_name, cfg),
                temperature=cfg.cleaner_temperature,
                max_output_tokens=cfg.cleaner_max_output_tokens,
                json_output=True,
                cancel=cancel,
            ),
            **retry_kwargs(cfg, cancel, f"Cleaner: {source.url[:50]}"),
        )
    except Exception as e:
        if cancel is not None and cancel.cancelled:
            raise
        logger.warning(f"Failed to clean source {source.url}: {e}")
        return CleanResult()

    data = result.data if isinstance(result.data, dict) else {}
    cleaned = (data.get("cleaned_content") or "").strip()
    if len(cleaned) < cfg.min_content_length:
        logger.debug(f"Cleaned content too short ({len(cleaned)} chars): {source.url}")
        return CleanResult(usage=result.usage, cost=result.cost)

    return CleanResult(
        source=CleanedSource(
            url=source.url,
            domain=extract_domain(source.url),
            title=source.title,
            summary=(data.get("summary") or "").strip(),
            cleaned_content=cleaned,
            original_content_length=original_length,
            quality_score=_score(data.get("quality_score")),
            relevance_score=_score(data.get("relevance_score")),
            quality_notes=(data.get("quality_notes") or "").strip(),
            content_type=(data.get("content_type") or "other").strip()[:100],
            junk_ratio=junk_ratio(original_length, len(cleaned)),
            search_source=source.search_source,
        ),
        usage=result.usage,
        cost=result.cost,
    )


async def clean_sources_batch(
    sources: List[RawSourceInput],
    llm: LLMClient,
    cfg: Settings,
    game_name: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
) -> BatchCleanResult:
    """Clean in batches of cfg.cleaner_batch_size; stops between batches once cancelled."""
    out = BatchCleanResult()
    if not sources:
        return out

    logger.info(f"Cleaning {len(sources)} source(s) in batches of {cfg.cleaner_batch_size}")
    for i in range(0, len(sources), cfg.cleaner_batch_size):
        if cancel is not None:
            cancel.raise_if_cancelled()
        batch = sources[i:i + cfg.cleaner_batch_size]
        results = await asyncio.gather(*[
            clean_source(s, llm, cfg, game_name, cancel) for s in batch
        ])
        for r in results:
            out.usage = out.usage + r.usage
            out.cost += r.cost
            if r.source is not None:
                out.sources.append(r.source)
            else:
                out.failures += 1

    rate = len(out.sources) / len(sources) * 100
    logger.info(f"Cleaned {len(out.sources)}/{len(sources)} source(s) ({rate:.1f}% success, ${out.cost:.4f})")
    return out
