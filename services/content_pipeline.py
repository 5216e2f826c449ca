"""
Search response -> CategorizedSearchResult, with or without content cleaning.

CleaningPipeline runs the full path: cache check (with domain exclusion),
scrape floor, programmatic pre-filter, LLM cleaning, background stores and
the post-clean display filter. PassthroughPipeline only normalizes, for runs
without a configured store.
"""
from typing import Dict, List, Optional, Protocol
from config import Settings
from models.research import CategorizedSearchResult, SearchCategory, SearchResponse, SearchResultItem, SearchSource
from models.sources import CleanedSource, CleaningOutcome, FilteredSource, RawSourceInput, StoredSourceContent
from services.cleaner import clean_source, clean_sources_batch, pre_filter_sources
from services.llm import LLMClient
from services.research_pool import process_search_results
from services.source_cache import SourceCache
from utils.cancellation import CancellationToken
from utils.text import extract_domain
import logging

logger = logging.getLogger(__name__)


class ContentPipeline(Protocol):
    async def process(
        self,
        query: str,
        category: SearchCategory,
        response: SearchResponse,
        search_source: SearchSource = "tavily",
        cost: Optional[float] = None,
        *,
        game_name: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> CleaningOutcome:
        ...


class PassthroughPipeline:
    """No cache, no cleaning: raw provider content, unscored."""

    async def process(
        self,
        query: str,
        category: SearchCategory,
        response: SearchResponse,
        search_source: SearchSource = "tavily",
        cost: Optional[float] = None,
        *,
        game_name: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> CleaningOutcome:
        return CleaningOutcome(result=process_search_results(query, category, response, search_source, cost))


def _item_from_cache(cached: StoredSourceContent) -> SearchResultItem:
    return SearchResultItem(
        title=cached.title,
        url=cached.url,
        content=cached.cleaned_content,
        summary=cached.summary,
        relevance_score=cached.relevance_score,
        quality_score=cached.quality_score,
        from_cache=True,
    )


def _item_from_cleaned(source: CleanedSource, url: str) -> SearchResultItem:
    return SearchResultItem(
        title=source.title,
        url=url,
        content=source.cleaned_content,
        summary=source.summary or None,
        relevance_score=source.relevance_score,
        quality_score=source.quality_score,
    )


class CleaningPipeline:
    def __init__(self, cache: SourceCache, llm: LLMClient, cfg: Settings):
        self.cache = cache
        self.llm = llm
        self.cfg = cfg

    def _display_filter(
        self, url: str, title: str, quality: Optional[int], relevance: Optional[int], search_source: SearchSource,
    ) -> Optional[FilteredSource]:
        """FilteredSource when the scores fall below the display thresholds, else None."""
        if relevance is not None and relevance < self.cfg.min_relevance_for_results:
            reason, details = "low_relevance", f"Relevance {relevance} < {self.cfg.min_relevance_for_results}"
        elif quality is not None and quality < self.cfg.min_quality_for_results:
            reason, details = "low_quality", f"Quality {quality} < {self.cfg.min_quality_for_results}"
        else:
            return None
        return FilteredSource(
            url=url, domain=extract_domain(url), title=title, reason=reason, details=details,
            quality_score=quality, relevance_score=relevance, search_source=search_source,
        )

    def _schedule_legacy_repair(self, raw: RawSourceInput, game_name: Optional[str]) -> None:
        async def job():
            result = await clean_source(raw, self.llm, self.cfg, game_name)
            if result.source is not None:
                await self.cache.update_legacy_source_relevance(raw.url, result.source)

        self.cache.background.submit(job, f"reprocess legacy source {raw.url[:60]}")

    async def process(
        self,
        query: str,
        category: SearchCategory,
        response: SearchResponse,
        search_source: SearchSource = "tavily",
        cost: Optional[float] = None,
        *,
        game_name: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> CleaningOutcome:
        base = process_search_results(query, category, response, search_source, cost)
        raws = [
            RawSourceInput(url=item.url, title=item.title, content=item.content, search_source=search_source)
            for item in base.results
        ]
        check = await self.cache.check_source_cache(raws, search_source)

        kept: Dict[str, SearchResultItem] = {}
        filtered: List[FilteredSource] = []
        to_clean: List[RawSourceInput] = []
        scrape_failures: List[RawSourceInput] = []
        retry_urls = set()

        for hit in check.hits:
            cached = hit.cached
            if not cached.scrape_succeeded:
                filtered.append(FilteredSource(
                    url=hit.url, domain=cached.domain, title=cached.title, reason="scrape_failure",
                    details=f"Cached scrape failure ({cached.original_content_length} chars)",
                    search_source=cached.search_source,
                ))
                continue
            if hit.needs_reprocessing and hit.raw is not None and len(hit.raw.content) >= self.cfg.min_content_length:
                self._schedule_legacy_repair(hit.raw, game_name)
            rejected = self._display_filter(
                hit.url, cached.title, cached.quality_score, cached.relevance_score, cached.search_source,
            )
            if rejected:
                filtered.append(rejected)
            else:
                kept[hit.url] = _item_from_cache(cached)

        for miss in check.misses:
            if miss.excluded_domain or miss.raw is None:
                filtered.append(FilteredSource(
                    url=miss.url, domain=extract_domain(miss.url), reason="excluded_domain",
                    details="Domain excluded before fetch", search_source=search_source,
                ))
                continue
            raw = miss.raw
            if len(raw.content) < self.cfg.min_content_length:
                scrape_failures.append(raw)
                filtered.append(FilteredSource(
                    url=miss.url, domain=extract_domain(miss.url), title=raw.title, reason="scrape_failure",
                    details=f"Content too short: {len(raw.content)} chars (min: {self.cfg.min_content_length})",
                    search_source=raw.search_source,
                ))
                continue
            if miss.retrying_failed_scrape:
                retry_urls.add(miss.url)
            to_clean.append(raw)

        if scrape_failures:
            logger.info(f"Skipping {len(scrape_failures)} source(s) below the scrape floor")
            self.cache.background.submit(
                lambda: self.cache.store_scrape_failures(scrape_failures), "store scrape failures",
            )

        domains = await self.cache.get_domain_qualities({extract_domain(r.url) for r in to_clean})
        to_clean, skipped = pre_filter_sources(to_clean, domains, self.cfg)
        for raw, reason in skipped:
            filtered.append(FilteredSource(
                url=raw.url, domain=extract_domain(raw.url), title=raw.title, reason="pre_filter",
                details=reason, search_source=raw.search_source,
            ))

        batch = await clean_sources_batch(to_clean, self.llm, self.cfg, game_name, cancel)
        cleaned_by_url = {s.url: s for s in batch.sources}

        retried = [s for s in batch.sources if s.url in retry_urls]
        fresh = [s for s in batch.sources if s.url not in retry_urls]
        if fresh:
            self.cache.background.submit(lambda: self.cache.store_cleaned_sources(fresh), "store cleaned sources")
        for source in retried:
            self.cache.background.submit(
                lambda s=source: self.cache.update_scrape_failure_to_success(s.url, s),
                f"upgrade scrape failure {source.url[:60]}",
            )

        for raw in to_clean:
            source = cleaned_by_url.get(raw.url)
            if source is None:
                # cleaning failed: fall back to the raw, unscored content
                kept[raw.url] = SearchResultItem(title=raw.title, url=raw.url, content=raw.content)
                continue
            rejected = self._display_filter(
                raw.url, source.title, source.quality_score, source.relevance_score, source.search_source,
            )
            if rejected:
                filtered.append(rejected)
            else:
                kept[raw.url] = _item_from_cleaned(source, raw.url)

        results = [kept[item.url] for item in base.results if item.url in kept]
        if filtered:
            logger.info(f"'{query[:60]}': kept {len(results)}, filtered {len(filtered)}")

        return CleaningOutcome(
            result=base.model_copy(update={"results": results}),
            filtered=filtered,
            cache_hits=len(check.hits),
            cache_misses=len(check.misses),
            cleaned=len(batch.sources),
            clean_failures=batch.failures,
            scrape_failures=len(scrape_failures),
            usage=batch.usage,
            cost=batch.cost,
        )
