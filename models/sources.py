from pydantic import BaseModel
from typing import Dict, List, Literal, Optional
from models.usage import TokenUsage
from models.research import CategorizedSearchResult, SearchSource

DomainTier = Literal["excellent", "good", "average", "poor", "excluded"]
DomainType = Literal["wiki", "major_gaming", "guide_site", "forum", "news", "official", "other"]


class StoredSourceContent(BaseModel):
    """Row of the source_contents table."""
    id: Optional[int] = None
    url: str
    domain: str
    title: str = ""
    summary: Optional[str] = None
    cleaned_content: str = ""
    original_content_length: int = 0
    quality_score: Optional[int] = None  # None for an unscored scrape failure
    relevance_score: Optional[int] = None  # None for legacy rows and scrape failures
    quality_notes: Optional[str] = None
    content_type: str = "other"
    junk_ratio: float = 0.0
    access_count: int = 0
    last_accessed_at: Optional[str] = None
    search_source: SearchSource = "tavily"
    scrape_succeeded: bool = True


class DomainQuality(BaseModel):
    """Row of the domain_qualities table; always recomputed from source_contents."""
    domain: str
    avg_quality_score: float = 0.0
    avg_relevance_score: Optional[float] = None
    total_sources: int = 0
    tier: DomainTier = "average"
    is_excluded: bool = False
    exclude_reason: Optional[str] = None
    domain_type: DomainType = "other"
    provider_attempts: Dict[str, int] = {}
    provider_failures: Dict[str, int] = {}
    provider_excluded: Dict[str, bool] = {}
    provider_exclude_reasons: Dict[str, Optional[str]] = {}


class RawSourceInput(BaseModel):
    """Uncleaned candidate handed to the cleaner."""
    url: str
    title: str
    content: str
    search_source: SearchSource = "tavily"


class CleanedSource(BaseModel):
    url: str
    domain: str
    title: str
    summary: str = ""
    cleaned_content: str
    original_content_length: int
    quality_score: int
    relevance_score: int
    quality_notes: str = ""
    content_type: str = "other"
    junk_ratio: float = 0.0
    search_source: SearchSource = "tavily"


class CachedSource(BaseModel):
    url: str
    hit: bool
    cached: Optional[StoredSourceContent] = None
    raw: Optional[RawSourceInput] = None  # None for excluded-domain misses
    excluded_domain: bool = False
    needs_reprocessing: bool = False
    retrying_failed_scrape: bool = False


class CacheCheckResult(BaseModel):
    hits: List[CachedSource] = []
    misses: List[CachedSource] = []


FilterReason = Literal["excluded_domain", "pre_filter", "low_relevance", "low_quality", "scrape_failure"]


class FilteredSource(BaseModel):
    url: str
    domain: str
    title: str = ""
    reason: FilterReason
    details: str = ""
    quality_score: Optional[int] = None
    relevance_score: Optional[int] = None
    search_source: SearchSource = "tavily"


class CleaningOutcome(BaseModel):
    """What the cleaning pipeline returns for one search response."""
    result: CategorizedSearchResult
    filtered: List[FilteredSource] = []
    cache_hits: int = 0
    cache_misses: int = 0
    cleaned: int = 0
    clean_failures: int = 0
    scrape_failures: int = 0
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0
