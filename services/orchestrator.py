"""
Article pipeline: Scout -> Editor -> Specialist -> Reviewer -> Fixer.

generate_article() validates settings and input, builds (or takes) the
dependencies, arms the optional deadline on the run's cancellation token and
runs the stages in order under one correlation id. Every stage is timed on
the injected clock and its token usage and cost collected into the draft's
metadata.
"""
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional
from config import Settings, ensure_valid_settings
from database import SourceStore
from errors import ArticleGenerationError, ErrorKind
from models.articles import ArticleDraft, GenerationMetadata, ReviewerOutput
from models.requests import ArticleContext
from models.research import SearchSource
from models.usage import AggregatedUsage, StageUsage, TokenUsage
from services.background import BackgroundWriter
from services.content_pipeline import CleaningPipeline, ContentPipeline, PassthroughPipeline
from services.editor import run_editor
from services.fixer import FixerContext, run_fixer
from services.llm import GeminiClient, LLMClient
from services.reviewer import count_issues_by_severity, run_reviewer
from services.scout import run_scout
from services.search_providers import ExaProvider, SearchProvider, TavilyProvider
from services.source_cache import SourceCache
from services.specialist import run_specialist
from services.validation import errors_of, validate_article_context, validate_article_draft
from utils.cancellation import CancellationToken
from utils.log_context import correlation_scope
from utils.timing import Clock, PhaseTimer, SystemClock
import asyncio
import logging
import uuid

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, Optional[str]], None]

SCOUT_PROGRESS = 0
EDITOR_PROGRESS = 5
REVIEWER_PROGRESS = 90
FIXER_PROGRESS = 95


class PipelineDeps:
    """Everything the stages talk to. Tests build this from fakes."""

    def __init__(
        self,
        llm: LLMClient,
        providers: Dict[SearchSource, SearchProvider],
        pipeline: Optional[ContentPipeline] = None,
        background: Optional[BackgroundWriter] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.llm = llm
        self.providers = providers
        self.pipeline = pipeline or PassthroughPipeline()
        self.background = background or BackgroundWriter()
        self.clock = clock or SystemClock()
        self.sleep = sleep


def build_default_deps(cfg: Settings, database_path: Optional[str] = None) -> PipelineDeps:
    """Gemini + Tavily (+ Exa when keyed) with the sqlite-backed cleaning pipeline."""
    missing = [name for name in ("gemini_api_key", "tavily_api_key") if not getattr(cfg, name)]
    if missing:
        raise ArticleGenerationError(
            ErrorKind.CONFIG_ERROR,
            f"Missing required credentials: {', '.join(missing)}",
        )

    llm = GeminiClient(cfg.gemini_api_key, cfg)
    providers: Dict[SearchSource, SearchProvider] = {"tavily": TavilyProvider(cfg.tavily_api_key, cfg)}
    if cfg.exa_api_key:
        providers["exa"] = ExaProvider(cfg.exa_api_key, cfg)
    else:
        logger.info("No Exa key configured; semantic query routing disabled")

    background = BackgroundWriter()
    path = database_path if database_path is not None else cfg.database_path
    pipeline: ContentPipeline
    if path:
        cache = SourceCache(SourceStore(path), cfg, background)
        pipeline = CleaningPipeline(cache, llm, cfg)
    else:
        pipeline = PassthroughPipeline()
    return PipelineDeps(llm=llm, providers=providers, pipeline=pipeline, background=background)


def aggregate_usage(stages: Dict[str, StageUsage]) -> AggregatedUsage:
    total = TokenUsage()
    cost = 0.0
    for usage in stages.values():
        total = total + usage.tokens
        cost += usage.llm_cost_usd + usage.search_cost_usd
    return AggregatedUsage(stages=dict(stages), total=total, estimated_cost_usd=round(cost, 6))


def _window(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return start
    return start + int((end - start) * min(done, total) / total)


async def _run_stages(
    context: ArticleContext,
    cfg: Settings,
    deps: PipelineDeps,
    token: CancellationToken,
    timer: PhaseTimer,
    correlation_id: str,
    emit: ProgressCallback,
) -> ArticleDraft:
    stages: Dict[str, StageUsage] = {}

    # ── Scout ──
    token.raise_if_cancelled()
    emit("scout", SCOUT_PROGRESS, "Researching the game")
    timer.start("scout")
    scout = await run_scout(
        context,
        llm=deps.llm,
        provider=deps.providers["tavily"],
        cfg=cfg,
        pipeline=deps.pipeline,
        cancel=token,
        sleep=deps.sleep,
    )
    timer.end("scout")
    stages["scout"] = scout.usage

    # ── Editor ──
    token.raise_if_cancelled()
    emit("editor", EDITOR_PROGRESS, "Planning the article")
    timer.start("editor")
    editor = await run_editor(context, scout, llm=deps.llm, cfg=cfg, cancel=token, sleep=deps.sleep)
    timer.end("editor")
    stages["editor"] = editor.usage
    plan = editor.plan

    # ── Specialist ──
    token.raise_if_cancelled()
    start, end = cfg.specialist_progress_start, cfg.specialist_progress_end
    middle = start + (end - start) // 2
    emit("specialist", start, f"Researching {len(plan.sections)} sections")

    def on_research(done: int, total: int) -> None:
        emit("specialist", _window(start, middle, done, total), f"Research {done}/{total}")

    def on_section(done: int, total: int, label: str) -> None:
        emit("specialist", _window(middle, end, done, total), f"Section {done}/{total}: {label}")

    timer.start("specialist")
    specialist = await run_specialist(
        context,
        scout,
        plan,
        llm=deps.llm,
        providers=deps.providers,
        cfg=cfg,
        pipeline=deps.pipeline,
        cancel=token,
        on_section_progress=on_section,
        on_research_progress=on_research,
        sleep=deps.sleep,
    )
    timer.end("specialist")
    stages["specialist"] = specialist.usage
    markdown = specialist.markdown

    # ── Reviewer + Fixer ──
    review: Optional[ReviewerOutput] = None
    fixer_iterations = 0
    fixes_applied = []
    if context.enable_review:
        token.raise_if_cancelled()
        emit("reviewer", REVIEWER_PROGRESS, "Reviewing the draft")
        timer.start("reviewer")
        review = await run_reviewer(markdown, plan, scout, llm=deps.llm, cfg=cfg, cancel=token, sleep=deps.sleep)
        timer.end("reviewer")
        stages["reviewer"] = StageUsage(tokens=review.tokens, llm_cost_usd=review.cost_usd)

        token.raise_if_cancelled()
        emit("fixer", FIXER_PROGRESS, "Applying fixes")
        timer.start("fixer")
        fixed = await run_fixer(
            markdown,
            review,
            FixerContext(context=context, scout=scout, plan=plan, pool=specialist.pool),
            llm=deps.llm,
            cfg=cfg,
            cancel=token,
            sleep=deps.sleep,
        )
        timer.end("fixer")
        markdown = fixed.markdown
        review = fixed.review
        fixer_iterations = fixed.iterations
        fixes_applied = fixed.fixes_applied
        stages["fixer"] = fixed.usage
        stages["reviewer"] = stages["reviewer"] + fixed.review_usage

    validation = validate_article_draft(plan.title, plan.excerpt, plan.tags, markdown, specialist.sources, cfg)
    for issue in validation:
        log = logger.warning if issue.severity == "error" else logger.info
        log(f"Draft validation {issue.severity}: {issue.message}")

    usage = aggregate_usage(stages)
    metadata = GenerationMetadata(
        generated_at=datetime.now(timezone.utc).isoformat(),
        correlation_id=correlation_id,
        total_duration_sec=round(timer.total(), 3),
        phase_durations={k: round(v, 3) for k, v in timer.durations().items()},
        queries_executed=len(specialist.pool.query_cache),
        sources_collected=len(specialist.sources),
        research_confidence=scout.confidence,
        usage=usage,
        fixer_iterations=fixer_iterations,
        fixes_applied=fixes_applied,
    )

    counts = count_issues_by_severity(review.issues) if review else None
    logger.info(
        f"Article complete: '{plan.title}' ({len(markdown)} chars, {len(specialist.sources)} sources, "
        f"{len(errors_of(validation))} validation error(s), "
        f"review: {'skipped' if review is None else ('approved' if review.approved else f'not approved {counts}')}, "
        f"{usage.total.total} tokens, ${usage.estimated_cost_usd:.4f})"
    )
    emit("complete", 100, None)

    return ArticleDraft(
        title=plan.title,
        category_slug=plan.category_slug,
        excerpt=plan.excerpt,
        tags=plan.tags,
        markdown=markdown,
        sources=specialist.sources,
        plan=plan,
        approved=review.approved if review else None,
        review_issues=review.issues if review else [],
        validation_issues=validation,
        models={
            "scout": cfg.scout_model,
            "editor": cfg.editor_model,
            "specialist": cfg.specialist_model,
            "reviewer": cfg.reviewer_model,
            "cleaner": cfg.cleaner_model,
        },
        metadata=metadata,
    )


async def generate_article(
    context: ArticleContext,
    cfg: Settings,
    *,
    deps: Optional[PipelineDeps] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancellationToken] = None,
    correlation_id: Optional[str] = None,
) -> ArticleDraft:
    """
    Run the whole pipeline for one article.

    Raises ArticleGenerationError: CONFIG_ERROR / CONTEXT_INVALID before any
    network call, EDITOR_FAILED when no valid plan is produced, TIMEOUT or
    CANCELLED when the token fires, UPSTREAM_FAILED when a required call
    exhausts its retries.
    """
    ensure_valid_settings(cfg)
    validate_article_context(context)
    deps = deps or build_default_deps(cfg)

    token = cancel or CancellationToken()
    correlation_id = correlation_id or uuid.uuid4().hex[:12]
    timer = PhaseTimer(deps.clock)

    def emit(stage: str, percent: int, detail: Optional[str] = None) -> None:
        if on_progress is None:
            return
        try:
            on_progress(stage, percent, detail)
        except Exception as e:
            logger.warning(f"Progress callback failed at {stage}: {e}")

    with correlation_scope(correlation_id):
        logger.info(f"Generating article for '{context.game_name}'")
        deadline = None
        if cfg.pipeline_timeout_sec > 0:
            deadline = asyncio.get_running_loop().call_later(cfg.pipeline_timeout_sec, token.cancel, "timeout")
        try:
            return await _run_stages(context, cfg, deps, token, timer, correlation_id, emit)
        except ArticleGenerationError as e:
            logger.error(f"Article generation failed: {e}")
            raise
        finally:
            if deadline is not None:
                deadline.cancel()
