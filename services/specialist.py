"""
Specialist: batch research for every section, then section drafting.

Sequential mode hands each section the tail of the previous one (and, for
categories that want it, the cross-reference state); parallel mode writes
every section independently. Either way the article is assembled in plan
order with a trailing, length-capped source list.
"""
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from config import Settings
from models.articles import ArticlePlan, ScoutOutput, SectionDraft, SectionPlan, SpecialistOutput
from models.requests import ArticleContext, WriteMode
from models.research import CategorizedSearchResult, ResearchPool, SearchSource
from models.usage import StageUsage, TokenUsage
from services.batch_research import ResearchProgress, batch_research
from services.content_pipeline import ContentPipeline
from services.llm import LLMClient
from services.research_pool import collect_urls, extract_research_for_queries
from services.retry import retry_kwargs, with_retry
from services.search_providers import SearchProvider
from services.section_context import (
    SectionWriteState,
    build_cross_reference_context,
    build_required_elements_reminder,
    create_initial_section_write_state,
    detect_covered_elements,
    update_section_write_state,
)
from utils.cancellation import CancellationToken, gather_or_cancel
from utils.text import truncate
import asyncio
import logging

logger = logging.getLogger(__name__)

SectionProgress = Callable[[int, int, str], None]

_TONE_GUIDES = {
    "news": "Factual and timely. Lead with what happened, then why it matters. No speculation beyond sources.",
    "reviews": "Critical and balanced. Support every judgement with specifics from play or sources.",
    "guides": "Practical and direct. Second person, concrete steps, exact names of items, areas and mechanics.",
    "lists": "Punchy and scannable. Each entry earns its place with one clear reason.",
}

_SYSTEM_PROMPT = """You are a specialist writer for a video game publication.
You write one section of a larger article at a time, in English, in clean markdown prose.

{tone}

RULES:
- Only state facts that appear in the research provided
- No pricing, purchase links or "buy now" language
- No numeric review scores unless the article is a review
- No marketing superlatives unless quoted from a source
- Use **bold** sparingly for key mechanics or terms
- Output only the section body: no heading, no code fences, no meta-commentary"""


def compute_paragraph_range(target_word_count: Optional[int], section_count: int, cfg: Settings) -> Tuple[int, int]:
    """
    Per-section (min, max) paragraph counts for a total word target, clamped
    to the global paragraph floor and ceiling.
    """
    if not target_word_count or section_count <= 0:
        return cfg.min_paragraphs, cfg.max_paragraphs

    words_per_section = target_word_count / section_count
    ideal = max(1, round(words_per_section / cfg.words_per_paragraph))
    lo = min(max(ideal - cfg.paragraph_lower_offset, cfg.min_paragraphs), cfg.max_paragraphs)
    hi = min(max(ideal + cfg.paragraph_upper_offset, cfg.min_paragraphs), cfg.max_paragraphs)
    return lo, max(lo, hi)


def research_content_length(research: List[CategorizedSearchResult]) -> int:
    return sum(len(item.content) for r in research for item in r.results)


def build_research_context(research: List[CategorizedSearchResult], max_results: int, per_result: int) -> str:
    blocks = []
    for r in research:
        if not r.results and not r.answer:
            continue
        lines = [f'Query: "{r.query}"']
        if r.answer:
            lines.append(f"Summary: {truncate(r.answer, per_result)}")
        for item in r.results[:max_results]:
            body = item.summary if item.summary and len(item.content) > per_result * 2 else item.content
            lines.append(f"- {item.title} ({item.url})\n  {truncate(body.strip(), per_result)}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def resolve_write_mode(context: ArticleContext, plan: ArticlePlan, cfg: Settings) -> WriteMode:
    if context.write_mode:
        return context.write_mode
    return "sequential" if plan.category_slug.value in cfg.sequential_categories else "parallel"


def _section_prompt(
    context: ArticleContext,
    plan: ArticlePlan,
    index: int,
    section: SectionPlan,
    scout: ScoutOutput,
    research_context: str,
    thin: bool,
    research_length: int,
    paragraphs: Tuple[int, int],
    previous_context: str,
    cross_reference: str,
    reminder: str,
    feedback: Optional[str],
    cfg: Settings,
) -> str:
    total = len(plan.sections)
    if index == 0:
        position = "Opening section: set the stage, no preamble."
    elif index == total - 1:
        position = "Closing section: give closure without 'In conclusion'."
    else:
        position = "Middle section: develop the key points."
    lo, hi = paragraphs

    parts = [
        f"Write section {index + 1} of {total}.",
        "",
        "=== ARTICLE ===",
        f"Title: {plan.title}",
        f"Category: {plan.category_slug.value}",
        f"Game: {context.game_name}",
        "Outline: " + ", ".join(f"{i + 1}. {s.headline}" for i, s in enumerate(plan.sections)),
        "",
        "=== THIS SECTION ===",
        f"Headline: {section.headline}",
        f"Goal: {section.goal}",
        f"Position: {position}",
    ]
    if section.must_cover:
        parts.append("Must cover: " + ", ".join(section.must_cover))
    parts += [
        "",
        "=== RESEARCH ===",
        "Scout overview:",
        truncate(scout.briefing.overview, cfg.max_scout_overview_length, "\n...(truncated)"),
    ]
    if scout.briefing.category_insights:
        parts += ["", "Category insights:", scout.briefing.category_insights]
    parts += ["", "Section research:", research_context or "(Scout research only for this section)"]

    if previous_context:
        parts += ["", "=== PREVIOUS SECTION ENDED WITH ===", previous_context, "Transition naturally from it."]
    if cross_reference:
        parts += ["", cross_reference]
    if reminder:
        parts += ["", reminder]

    parts += ["", "=== LENGTH ==="]
    if thin:
        parts.append(
            f"Research is thin ({research_length} chars). Write a concise {lo}-paragraph section; "
            "do not pad or speculate."
        )
    else:
        parts.append(f"Write {lo}-{hi} paragraphs, one clear idea each.")
    if plan.no_prices:
        parts.append("Never mention prices.")
    if plan.no_scores_unless_review and plan.category_slug.value != "reviews":
        parts.append("Never give numeric scores.")
    if feedback:
        parts += ["", "=== EDITOR FEEDBACK TO ADDRESS ===", feedback]
    parts += ["", "Write the section now:"]
    return "\n".join(parts)


async def write_section(
    context: ArticleContext,
    plan: ArticlePlan,
    index: int,
    scout: ScoutOutput,
    pool: ResearchPool,
    llm: LLMClient,
    cfg: Settings,
    *,
    paragraphs: Optional[Tuple[int, int]] = None,
    previous_context: str = "",
    state: Optional[SectionWriteState] = None,
    feedback: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    section: Optional[SectionPlan] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SectionDraft:
    """
    Draft one section. `section` overrides plan.sections[index] so the fixer
    can write a section the plan does not hold yet.
    """
    section = section or plan.sections[index]
    research = extract_research_for_queries(section.research_queries, pool, include_overview=True)
    length = research_content_length(research)
    thin = length < cfg.thin_research_threshold
    if thin:
        logger.info(f"Thin research for '{section.headline}' ({length} chars)")
    if not any(r.results for r in research) and not scout.briefing.overview:
        logger.warning(f"Section '{section.headline}' has no research and no scout overview")

    cross_reference = build_cross_reference_context(state) if state is not None else ""
    reminder = (
        build_required_elements_reminder(state, plan.required_elements, section.must_cover) if state is not None else ""
    )

    prompt = _section_prompt(
        context, plan, index, section, scout,
        build_research_context(research, cfg.results_per_research_context, cfg.research_context_per_result),
        thin, length,
        paragraphs or compute_paragraph_range(context.target_word_count, len(plan.sections), cfg),
        previous_context, cross_reference, reminder, feedback, cfg,
    )
    system = _SYSTEM_PROMPT.format(tone=_TONE_GUIDES.get(plan.category_slug.value, ""))

    result = await with_retry(
        lambda: llm.generate(
            model=cfg.specialist_model,
            system=system,
            prompt=prompt,
            temperature=cfg.specialist_temperature,
            max_output_tokens=cfg.max_output_tokens_per_section,
            cancel=cancel,
        ),
        **retry_kwargs(cfg, cancel, f"Specialist section '{section.headline[:40]}'", sleep),
    )
    return SectionDraft(
        index=index,
        headline=section.headline,
        text=result.text.strip(),
        thin_research=thin,
        tokens=result.usage,
        cost=result.cost,
    )


def format_sources(urls: List[str]) -> str:
    if not urls:
        return ""
    return "\n".join(["## Sources", *[f"- {u}" for u in urls]])


def assemble_markdown(title: str, sections: List[SectionDraft], sources: List[str]) -> str:
    parts = [f"# {title}"]
    for draft in sorted(sections, key=lambda d: d.index):
        parts.append(f"## {draft.headline}\n\n{draft.text}")
    sources_block = format_sources(sources)
    if sources_block:
        parts.append(sources_block)
    return "\n\n".join(parts).strip() + "\n"


def select_sources(pool: ResearchPool, max_sources: int) -> List[str]:
    return collect_urls(pool)[:max_sources]


async def run_specialist(
    context: ArticleContext,
    scout: ScoutOutput,
    plan: ArticlePlan,
    *,
    llm: LLMClient,
    providers: Dict[SearchSource, SearchProvider],
    cfg: Settings,
    pipeline: Optional[ContentPipeline] = None,
    cancel: Optional[CancellationToken] = None,
    on_section_progress: Optional[SectionProgress] = None,
    on_research_progress: Optional[ResearchProgress] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SpecialistOutput:
    category = plan.category_slug.value
    all_queries = [q for s in plan.sections for q in s.research_queries]

    logger.info(f"Specialist: batch research for {len(plan.sections)} section(s)")
    research = await batch_research(
        all_queries,
        scout.pool,
        providers,
        cfg,
        pipeline=pipeline,
        category="section-specific",
        semantic_routing=category in cfg.semantic_routing_categories,
        game_name=context.game_name,
        cancel=cancel,
        on_progress=on_research_progress,
        sleep=sleep,
    )
    pool = research.pool
    if cancel is not None:
        cancel.raise_if_cancelled()

    mode = resolve_write_mode(context, plan, cfg)
    paragraphs = compute_paragraph_range(context.target_word_count, len(plan.sections), cfg)
    total = len(plan.sections)
    drafts: List[SectionDraft] = []

    if mode == "parallel":
        logger.info(f"Writing {total} section(s) in parallel ({paragraphs[0]}-{paragraphs[1]} paragraphs each)")
        if on_section_progress:
            on_section_progress(0, total, "Starting parallel write")
        done = 0

        async def write_one(i: int) -> SectionDraft:
            nonlocal done
            draft = await write_section(
                context, plan, i, scout, pool, llm, cfg,
                paragraphs=paragraphs, cancel=cancel, sleep=sleep,
            )
            done += 1
            if on_section_progress:
                on_section_progress(done, total, draft.headline)
            return draft

        drafts = await gather_or_cancel(*[write_one(i) for i in range(total)])
    else:
        track_references = category in cfg.cross_reference_categories
        logger.info(
            f"Writing {total} section(s) sequentially"
            f"{' with cross-references' if track_references else ''} ({paragraphs[0]}-{paragraphs[1]} paragraphs each)"
        )
        state = create_initial_section_write_state() if track_references else None
        previous = ""
        for i, section in enumerate(plan.sections):
            if cancel is not None:
                cancel.raise_if_cancelled()
            if on_section_progress:
                on_section_progress(i + 1, total, section.headline)
            draft = await write_section(
                context, plan, i, scout, pool, llm, cfg,
                paragraphs=paragraphs, previous_context=previous, state=state, cancel=cancel, sleep=sleep,
            )
            drafts.append(draft)
            previous = draft.text[-cfg.context_tail_length:]
            if state is not None:
                covered = detect_covered_elements(draft.text, [*plan.required_elements, *section.must_cover])
                state = update_section_write_state(state, draft.text, section.headline, covered)

    sources = select_sources(pool, cfg.max_sources)
    markdown = assemble_markdown(plan.title, drafts, sources)

    tokens = TokenUsage()
    llm_cost = 0.0
    for d in drafts:
        tokens = tokens + d.tokens
        llm_cost += d.cost
    usage = StageUsage(
        tokens=tokens + research.cleaning_usage,
        llm_cost_usd=llm_cost + research.cleaning_cost,
        search_cost_usd=sum(research.cost_by_provider.values()),
    )
    logger.info(
        f"Specialist done: {len(markdown)} chars, {len(sources)} source(s), "
        f"{research.success_count} quer{'y' if research.success_count == 1 else 'ies'} executed, "
        f"{research.failure_count} failed"
    )
    return SpecialistOutput(
        markdown=markdown,
        sections=sorted(drafts, key=lambda d: d.index),
        sources=sources,
        pool=pool,
        queries_executed=research.success_count,
        failed_queries=research.failed_queries,
        usage=usage,
    )
