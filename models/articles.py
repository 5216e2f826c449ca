from pydantic import BaseModel
from typing import Dict, List, Literal, Optional
from models.requests import ArticleCategory
from models.research import ResearchPool
from models.usage import AggregatedUsage, StageUsage, TokenUsage


class SectionPlan(BaseModel):
    headline: str
    goal: str
    research_queries: List[str] = []
    must_cover: List[str] = []


class ArticlePlan(BaseModel):
    game_name: str = ""
    title: str
    category_slug: ArticleCategory
    excerpt: str
    tags: List[str] = []
    sections: List[SectionPlan]
    required_elements: List[str] = []
    no_prices: bool = True
    no_scores_unless_review: bool = True


class EditorOutput(BaseModel):
    plan: ArticlePlan
    attempts: int = 1
    usage: StageUsage = StageUsage()


ResearchConfidence = Literal["high", "medium", "low"]


class ScoutBriefing(BaseModel):
    overview: str = ""
    category_insights: str = ""
    recent_developments: str = ""
    full_context: str = ""


class ScoutOutput(BaseModel):
    briefing: ScoutBriefing
    pool: ResearchPool
    source_urls: List[str] = []
    confidence: ResearchConfidence = "low"
    warnings: List[str] = []
    usage: StageUsage = StageUsage()


class SectionDraft(BaseModel):
    index: int
    headline: str
    text: str
    thin_research: bool = False
    tokens: TokenUsage = TokenUsage()
    cost: float = 0.0


class SpecialistOutput(BaseModel):
    markdown: str
    sections: List[SectionDraft] = []
    sources: List[str] = []
    pool: ResearchPool
    queries_executed: int = 0
    failed_queries: List[str] = []
    usage: StageUsage = StageUsage()


Severity = Literal["critical", "major", "minor"]
IssueCategory = Literal["checklist", "structure", "redundancy", "coverage", "factual", "style", "seo"]
FixStrategy = Literal["regenerate", "add_section", "inline_insert", "direct_edit", "expand", "no_action"]


class ReviewIssue(BaseModel):
    severity: Severity
    category: IssueCategory
    location: Optional[str] = None
    message: str
    suggestion: Optional[str] = None
    fix_strategy: FixStrategy = "no_action"
    fix_instruction: Optional[str] = None


class ReviewerOutput(BaseModel):
    approved: bool
    issues: List[ReviewIssue] = []
    suggestions: List[str] = []
    tokens: TokenUsage = TokenUsage()
    cost_usd: float = 0.0


class FixApplied(BaseModel):
    iteration: int
    strategy: FixStrategy
    target: str
    reason: str
    success: bool


class FixResult(BaseModel):
    markdown: str
    success: bool
    description: str = ""
    tokens: TokenUsage = TokenUsage()
    cost: float = 0.0


class FixerOutput(BaseModel):
    markdown: str
    iterations: int = 0
    fixes_applied: List[FixApplied] = []
    review: Optional[ReviewerOutput] = None  # last review seen
    usage: StageUsage = StageUsage()
    review_usage: StageUsage = StageUsage()  # re-reviews between iterations


class ValidationIssue(BaseModel):
    severity: Literal["error", "warning"]
    message: str


class GenerationMetadata(BaseModel):
    generated_at: str
    correlation_id: str
    total_duration_sec: float
    phase_durations: Dict[str, float] = {}
    queries_executed: int = 0
    sources_collected: int = 0
    research_confidence: ResearchConfidence = "low"
    usage: AggregatedUsage = AggregatedUsage()
    fixer_iterations: int = 0
    fixes_applied: List[FixApplied] = []


class ArticleDraft(BaseModel):
    title: str
    category_slug: ArticleCategory
    excerpt: str
    tags: List[str] = []
    markdown: str
    sources: List[str] = []
    plan: ArticlePlan
    approved: Optional[bool] = None
    review_issues: List[ReviewIssue] = []
    validation_issues: List[ValidationIssue] = []
    models: Dict[str, str] = {}
    metadata: GenerationMetadata
