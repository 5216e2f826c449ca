"""
Source cache and domain quality engine.

Cleaned web content is cached per normalized URL in source_contents. Every
store recomputes the domain's aggregate row in domain_qualities from all of
its historical rows, which drives tiers, global auto-exclusion (low quality
or low relevance) and per-provider exclusion (scrape failure rate).
"""
import asyncio
import contextvars
import functools
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple
from config import Settings
from database import SourceStore
from models.research import SearchSource
from models.sources import (
    CacheCheckResult,
    CachedSource,
    CleanedSource,
    DomainQuality,
    DomainTier,
    DomainType,
    RawSourceInput,
    StoredSourceContent,
)
from services.background import BackgroundWriter
from services.research_pool import normalize_url
from utils.text import extract_domain

logger = logging.getLogger(__name__)

BELOW_THRESHOLD_PLACEHOLDER = "[Content not stored - below quality/relevance threshold]"
LEGACY_RELEVANCE_DEFAULT = 100

# Never worth fetching for game coverage, whatever their stats say
STATIC_EXCLUDED_DOMAINS = frozenset({
    # video platforms
    "youtube.com", "youtu.be", "tiktok.com", "twitch.tv", "vimeo.com", "dailymotion.com",
    # social
    "facebook.com", "twitter.com", "x.com", "instagram.com", "pinterest.com",
    "linkedin.com", "threads.net", "quora.com",
    # key resellers and storefront aggregators
    "g2a.com", "cdkeys.com", "fanatical.com", "eneba.com", "kinguin.net",
    "instant-gaming.com", "greenmangaming.com", "humblebundle.com",
    # mod hosting
    "nexusmods.com", "moddb.com", "curseforge.com",
    # programming / off-topic
    "stackoverflow.com", "github.com", "docs.python.org", "developer.mozilla.org",
    "boardgamegeek.com",
})


def scrape_failure_placeholder(length: int) -> str:
    return f"[Scrape failed - content too short: {length} chars]"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def tier_for_score(score: float, cfg: Settings) -> DomainTier:
    if score >= cfg.tier_excellent:
        return "excellent"
    if score >= cfg.tier_good:
        return "good"
    if score >= cfg.tier_average:
        return "average"
    if score >= cfg.tier_poor:
        return "poor"
    return "excluded"


_MAJOR_GAMING = ("ign.com", "gamespot.com", "kotaku.com", "polygon.com", "eurogamer.", "pcgamer.com", "rockpapershotgun.com")
_GUIDE_SITES = ("gamefaqs.", "neoseeker.", "gamerguides.", "powerpyx.")
_FORUMS = ("reddit.com", "resetera.com", "neogaf.com")
_NEWS = ("theverge.com", "arstechnica.com", "gamesindustry.biz")
_OFFICIAL = ("playstation.com", "xbox.com", "nintendo.", "steampowered.com", "ea.com", "ubisoft.com")


def infer_domain_type(domain: str) -> DomainType:
    d = domain.lower()
    if "wiki" in d or "fandom.com" in d or "fextralife" in d:
        return "wiki"
    if any(m in d for m in _MAJOR_GAMING):
        return "major_gaming"
    if "guide" in d or "walkthrough" in d or any(m in d for m in _GUIDE_SITES):
        return "guide_site"
    if "forum" in d or any(m in d for m in _FORUMS):
        return "forum"
    if "news" in d or "press" in d or any(m in d for m in _NEWS):
        return "news"
    if any(m in d for m in _OFFICIAL):
        return "official"
    return "other"


def evaluate_auto_exclusion(
    avg_quality: Optional[float],
    quality_samples: int,
    avg_relevance: Optional[float],
    relevance_samples: int,
    cfg: Settings,
) -> Tuple[bool, Optional[str]]:
    """
    Global exclusion: low average quality (needs quality_min_samples scored
    rows) or low average relevance (needs relevance_min_samples). Either alone
    is enough; the reason names whichever fired.
    """
    reasons = []
    if (
        avg_quality is not None
        and quality_samples >= cfg.quality_min_samples
        and avg_quality < cfg.auto_exclude_quality_threshold
    ):
        reasons.append(f"quality {avg_quality:.1f} < {cfg.auto_exclude_quality_threshold:g}")
    if (
        avg_relevance is not None
        and relevance_samples >= cfg.relevance_min_samples
        and avg_relevance < cfg.auto_exclude_relevance_threshold
    ):
        reasons.append(f"relevance {avg_relevance:.1f} < {cfg.auto_exclude_relevance_threshold:g}")
    if not reasons:
        return False, None
    samples = max(quality_samples, relevance_samples)
    return True, f"Auto-excluded: {', '.join(reasons)} ({samples} samples)"


def evaluate_provider_exclusion(attempts: int, failures: int, cfg: Settings) -> Tuple[bool, Optional[str]]:
    if attempts < cfg.scrape_failure_min_attempts or attempts <= 0:
        return False, None
    rate = failures / attempts
    if rate <= cfg.scrape_failure_rate_threshold:
        return False, None
    return True, f"Scrape failure rate: {rate * 100:.0f}% ({failures}/{attempts} failed)"


def compute_domain_quality(
    domain: str,
    aggregate: Dict[str, Optional[float]],
    provider_stats: Dict[str, Dict[str, int]],
    cfg: Settings,
) -> DomainQuality:
    """Full recompute of a domain row from its aggregate stats. Pure."""
    avg_quality = aggregate.get("avg_quality")
    avg_relevance = aggregate.get("avg_relevance")
    quality_samples = int(aggregate.get("quality_samples") or 0)
    relevance_samples = int(aggregate.get("relevance_samples") or 0)

    excluded, reason = evaluate_auto_exclusion(
        avg_quality, quality_samples, avg_relevance, relevance_samples, cfg,
    )

    attempts: Dict[str, int] = {}
    failures: Dict[str, int] = {}
    provider_excluded: Dict[str, bool] = {}
    provider_reasons: Dict[str, Optional[str]] = {}
    for provider, stats in provider_stats.items():
        a = int(stats.get("attempts", 0))
        f = int(stats.get("failures", 0))
        attempts[provider] = a
        failures[provider] = f
        provider_excluded[provider], provider_reasons[provider] = evaluate_provider_exclusion(a, f, cfg)

    quality = float(avg_quality) if avg_quality is not None else 0.0
    return DomainQuality(
        domain=domain,
        avg_quality_score=quality,
        avg_relevance_score=float(avg_relevance) if avg_relevance is not None else None,
        total_sources=int(aggregate.get("total_rows") or 0),
        tier=tier_for_score(quality, cfg),
        is_excluded=excluded,
        exclude_reason=reason,
        domain_type=infer_domain_type(domain),
        provider_attempts=attempts,
        provider_failures=failures,
        provider_excluded=provider_excluded,
        provider_exclude_reasons=provider_reasons,
    )


def is_domain_excluded(dq: Optional[DomainQuality], provider: Optional[SearchSource] = None) -> bool:
    if dq is None:
        return False
    if dq.is_excluded:
        return True
    return bool(provider and dq.provider_excluded.get(provider))


class SourceCache:
    """
    Async facade over SourceStore. sqlite work runs on the default executor;
    writes the pipeline does not wait on go through the BackgroundWriter.
    """

    def __init__(self, store: SourceStore, cfg: Settings, background: Optional[BackgroundWriter] = None):
        self.store = store
        self.cfg = cfg
        self.background = background or BackgroundWriter()

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        return await loop.run_in_executor(None, functools.partial(ctx.run, fn, *args))

    # ── Read path ───────────────────────────────────────────────────────

    async def get_domain_quality(self, domain: str) -> Optional[DomainQuality]:
        return await self._run(self.store.get_domain_quality, domain)

    async def get_domain_qualities(self, domains: Iterable[str]) -> Dict[str, DomainQuality]:
        return await self._run(self.store.find_domain_qualities, list(domains))

    async def get_excluded_domains(self, provider: Optional[SearchSource] = None) -> Set[str]:
        """Static list, globally excluded domains, and domains excluded for `provider`."""
        rows = await self._run(self.store.list_domain_qualities)
        excluded = set(STATIC_EXCLUDED_DOMAINS)
        excluded.update(dq.domain for dq in rows if is_domain_excluded(dq, provider))
        return excluded

    async def check_source_cache(
        self,
        raw_sources: Iterable[RawSourceInput],
        provider: Optional[SearchSource] = None,
    ) -> CacheCheckResult:
        raw_sources = list(raw_sources)
        result = CacheCheckResult()
        if not raw_sources:
            return result

        normalized: List[Tuple[RawSourceInput, Optional[str], str]] = []
        for raw in raw_sources:
            url = normalize_url(raw.url)
            normalized.append((raw, url, extract_domain(url) if url else ""))

        domains = {d for _, url, d in normalized if d}
        known = await self._run(self.store.find_domain_qualities, domains)
        excluded = {
            d for d in domains
            if d in STATIC_EXCLUDED_DOMAINS or is_domain_excluded(known.get(d), provider or None)
        }
        if excluded:
            logger.debug(f"Excluding {len(excluded)} domain(s): {', '.join(sorted(excluded))}")

        lookup_urls = [url for _, url, d in normalized if url and d not in excluded]
        cached_rows = await self._run(self.store.find_by_urls, lookup_urls)

        hit_urls: List[str] = []
        for raw, url, domain in normalized:
            if url is None:
                result.misses.append(CachedSource(url=raw.url, hit=False, raw=raw))
                continue
            if domain in excluded:
                result.misses.append(CachedSource(url=url, hit=False, raw=None, excluded_domain=True))
                continue

            cached = cached_rows.get(url)
            if cached is None:
                result.misses.append(CachedSource(url=url, hit=False, raw=raw))
                continue

            if not cached.scrape_succeeded:
                if len(raw.content) >= self.cfg.min_content_length:
                    # the page scrapes now; re-clean and upgrade the failure row
                    result.misses.append(CachedSource(
                        url=url, hit=False, raw=raw, cached=cached, retrying_failed_scrape=True,
                    ))
                    continue
                result.hits.append(CachedSource(url=url, hit=True, cached=cached, raw=raw))
                hit_urls.append(url)
                continue

            if cached.quality_score is not None and cached.relevance_score is None:
                result.hits.append(CachedSource(
                    url=url,
                    hit=True,
                    cached=cached.model_copy(update={"relevance_score": LEGACY_RELEVANCE_DEFAULT}),
                    raw=raw,
                    needs_reprocessing=True,
                ))
            else:
                result.hits.append(CachedSource(url=url, hit=True, cached=cached, raw=raw))
            hit_urls.append(url)

        if hit_urls:
            stamp = _now_iso()
            self.background.submit(
                functools.partial(self._run, self.store.touch_sources, hit_urls, stamp),
                "touch cache hits",
            )

        logger.info(
            f"Cache check: {len(result.hits)} hit(s), {len(result.misses)} miss(es), "
            f"{len(excluded)} excluded domain(s)"
        )
        return result

    # ── Write path ──────────────────────────────────────────────────────

    async def store_scrape_failures(self, failures: Iterable[RawSourceInput]) -> int:
        """Record content below the scrape floor. Returns the number of new rows."""
        failures = list(failures)
        if not failures:
            return 0

        domains: Set[str] = set()
        stored = 0
        now = _now_iso()
        for failure in failures:
            url = normalize_url(failure.url)
            if not url:
                continue
            domain = extract_domain(url)
            existing = await self._run(self.store.find_by_urls, [url])
            if url in existing:
                logger.debug(f"Scrape failure already recorded: {url}")
                continue

            length = len(failure.content)
            row = StoredSourceContent(
                url=url,
                domain=domain,
                title=failure.title,
                cleaned_content=scrape_failure_placeholder(length),
                original_content_length=length,
                quality_notes=f"Scrape failure: only {length} chars extracted (min: {self.cfg.min_content_length})",
                content_type="scrape_failure",
                junk_ratio=1.0,
                access_count=1,
                last_accessed_at=now,
                search_source=failure.search_source,
                scrape_succeeded=False,
            )
            if await self._run(self.store.insert_source, row):
                stored += 1
                domains.add(domain)

        for domain in domains:
            await self.update_domain_quality(domain)
        if stored:
            logger.info(f"Stored {stored} scrape failure(s) across {len(domains)} domain(s)")
        return stored

    async def store_cleaned_sources(self, sources: Iterable[CleanedSource]) -> int:
        """
        Store cleaned sources by threshold band:
        below storage -> not stored; below display -> content-less stub; else full row.
        """
        sources = list(sources)
        if not sources:
            return 0

        domains: Set[str] = set()
        stored = 0
        now = _now_iso()
        for source in sources:
            url = normalize_url(source.url)
            if not url:
                continue
            if (
                source.relevance_score < self.cfg.min_relevance_for_storage
                or source.quality_score < self.cfg.min_quality_for_storage
            ):
                logger.debug(
                    f"Not storing {url} (Q:{source.quality_score}, R:{source.relevance_score}) below storage thresholds"
                )
                continue

            existing = await self._run(self.store.find_by_urls, [url])
            if url in existing:
                continue

            displayable = (
                source.relevance_score >= self.cfg.min_relevance_for_results
                and source.quality_score >= self.cfg.min_quality_for_results
            )
            row = StoredSourceContent(
                url=url,
                domain=source.domain,
                title=source.title,
                summary=source.summary if displayable else None,
                cleaned_content=source.cleaned_content if displayable else BELOW_THRESHOLD_PLACEHOLDER,
                original_content_length=source.original_content_length,
                quality_score=source.quality_score,
                relevance_score=source.relevance_score,
                quality_notes=source.quality_notes,
                content_type=source.content_type,
                junk_ratio=source.junk_ratio,
                access_count=1,
                last_accessed_at=now,
                search_source=source.search_source,
                scrape_succeeded=True,
            )
            if await self._run(self.store.insert_source, row):
                stored += 1
                domains.add(source.domain)

        for domain in domains:
            await self.update_domain_quality(domain)
        if stored:
            logger.info(f"Stored {stored} cleaned source(s) across {len(domains)} domain(s)")
        return stored

    async def _replace_content(self, url: str, source: CleanedSource, extra: Dict[str, object]) -> None:
        fields: Dict[str, object] = {
            "title": source.title,
            "summary": source.summary or None,
            "cleaned_content": source.cleaned_content,
            "original_content_length": source.original_content_length,
            "quality_score": source.quality_score,
            "relevance_score": source.relevance_score,
            "quality_notes": source.quality_notes or None,
            "content_type": source.content_type,
            "junk_ratio": source.junk_ratio,
        }
        fields.update(extra)
        await self._run(self.store.update_source, url, fields)
        await self._run(self.store.touch_sources, [url], _now_iso())

    async def update_scrape_failure_to_success(self, url: str, source: CleanedSource) -> bool:
        normalized = normalize_url(url)
        if not normalized:
            return False
        existing = (await self._run(self.store.find_by_urls, [normalized])).get(normalized)
        if existing is None or existing.scrape_succeeded:
            logger.debug(f"No scrape failure to upgrade for {normalized}")
            return False

        await self._replace_content(normalized, source, {"scrape_succeeded": True})
        logger.info(
            f"Upgraded scrape failure to success (Q:{source.quality_score}, R:{source.relevance_score}): {normalized}"
        )
        await self.update_domain_quality(existing.domain)
        return True

    async def update_legacy_source_relevance(self, url: str, source: CleanedSource) -> bool:
        normalized = normalize_url(url)
        if not normalized:
            return False
        existing = (await self._run(self.store.find_by_urls, [normalized])).get(normalized)
        if existing is None or existing.relevance_score is not None:
            logger.debug(f"No legacy row to repair for {normalized}")
            return False

        await self._replace_content(normalized, source, {})
        logger.info(
            f"Repaired legacy source relevance (Q:{source.quality_score}, R:{source.relevance_score}): {normalized}"
        )
        await self.update_domain_quality(existing.domain)
        return True

    async def update_domain_quality(self, domain: str) -> Optional[DomainQuality]:
        """Recompute the domain row from every stored source for the domain."""
        aggregate = await self._run(self.store.aggregate_domain, domain)
        if not aggregate or not aggregate.get("total_rows"):
            return None
        provider_stats = await self._run(self.store.provider_scrape_stats, domain)
        dq = compute_domain_quality(domain, aggregate, provider_stats, self.cfg)
        await self._run(self.store.upsert_domain_quality, dq)

        if dq.is_excluded:
            logger.info(f"Auto-excluded domain (global): {domain}: {dq.exclude_reason}")
        for provider, flagged in dq.provider_excluded.items():
            if flagged:
                logger.info(f"Auto-excluded domain for {provider}: {domain}: {dq.provider_exclude_reasons[provider]}")
        return dq
