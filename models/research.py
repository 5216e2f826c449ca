from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional, Set, Tuple
from models.usage import TokenUsage
from datetime import datetime, timezone

SearchCategory = Literal["overview", "category-specific", "recent", "section-specific"]
SearchSource = Literal["tavily", "exa"]


class SearchHit(BaseModel):
    """One provider result, normalized at the provider boundary."""
    title: str
    url: str
    content: Optional[str] = None
    raw_content: Optional[str] = None
    score: Optional[float] = None


class SearchResponse(BaseModel):
    query: str
    answer: Optional[str] = None
    results: List[SearchHit] = []
    cost: Optional[float] = None  # USD, when the provider reports it


class SearchResultItem(BaseModel):
    title: str
    url: str  # normalized
    content: str
    summary: Optional[str] = None
    key_facts: List[str] = []
    data_points: List[str] = []
    relevance_score: Optional[int] = None
    quality_score: Optional[int] = None
    from_cache: bool = False


class CategorizedSearchResult(BaseModel):
    query: str
    answer: Optional[str] = None
    results: List[SearchResultItem] = []
    category: SearchCategory
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    search_source: SearchSource = "tavily"
    cost: Optional[float] = None


class ResearchPool(BaseModel):
    """
    Snapshot handed between stages. Top-level lists are tuples; the URL set,
    query map and contained results are shared, not copied, and must not be
    mutated after handoff.
    """
    overview: Tuple[CategorizedSearchResult, ...] = ()
    category_specific: Tuple[CategorizedSearchResult, ...] = ()
    recent: Tuple[CategorizedSearchResult, ...] = ()
    all_urls: Set[str] = set()
    query_cache: Dict[str, CategorizedSearchResult] = {}

    model_config = {"frozen": True}


class QueryFailure(BaseModel):
    query: str
    message: str
    provider: SearchSource = "tavily"


class BatchResearchResult(BaseModel):
    pool: ResearchPool
    success_count: int = 0
    failure_count: int = 0
    failed_queries: List[str] = []
    failures: List[QueryFailure] = []
    cost_by_provider: Dict[str, float] = {}
    cleaning_usage: TokenUsage = TokenUsage()
    cleaning_cost: float = 0.0
    filtered_sources: int = 0
