"""
Editor: turns the scout briefing into a structured article plan.

The plan comes back as JSON, is normalized (category aliases, blank tags)
and validated against the plan constraints. Invalid plans are retried with
the validation errors fed into the next prompt; once the attempts run out
the run fails with EDITOR_FAILED.
"""
from pydantic import ValidationError
from typing import Any, Awaitable, Callable, List, Optional, Tuple
from config import Settings
from errors import ArticleGenerationError, ErrorKind, OperationCancelled, RetryExhaustedError
from models.articles import ArticlePlan, EditorOutput, ScoutOutput
from models.requests import ArticleCategory, ArticleContext
from models.usage import StageUsage, TokenUsage
from services.llm import LLMClient
from services.retry import retry_kwargs, with_retry
from utils.cancellation import CancellationToken
from utils.text import truncate
import asyncio
import logging

logger = logging.getLogger(__name__)

CATEGORY_ALIASES = {
    "guide": "guides",
    "review": "reviews",
    "list": "lists",
    "listicle": "lists",
    "article": "news",
}

_SYSTEM_PROMPT = """You are the editor-in-chief of a video game publication.
Plan one article from the research briefing you are given. Write every string in English.

Return a JSON object:
{
  "title": "headline, {title_min}-{title_max} characters",
  "category_slug": "news | reviews | guides | lists",
  "excerpt": "meta description, {excerpt_min}-{excerpt_max} characters",
  "tags": ["up to {max_tags} short tags"],
  "required_elements": ["named mechanics, items, places or characters the article must mention"],
  "sections": [
    {
      "headline": "section heading, unique within the article",
      "goal": "what this section must accomplish",
      "research_queries": ["{min_queries}-{max_queries} specific web search queries"],
      "must_cover": ["required elements assigned to this section"]
    }
  ],
  "no_scores_unless_review": true
}

RULES:
- {min_sections}-{max_sections} sections, ordered the way a reader should meet them
- Research queries name the game and are specific enough to find one page that answers them
- Do not repeat queries listed as already researched
- Never plan pricing content"""


def normalize_category_slug(value: Any) -> Optional[ArticleCategory]:
    slug = str(value or "").strip().lower()
    slug = CATEGORY_ALIASES.get(slug, slug)
    try:
        return ArticleCategory(slug)
    except ValueError:
        return None


def validate_article_plan(plan: ArticlePlan, cfg: Settings) -> List[str]:
    """Every structural problem with the plan; an empty list means it is usable."""
    errors: List[str] = []

    title_len = len(plan.title.strip())
    if not cfg.title_min_length <= title_len <= cfg.title_max_length:
        errors.append(
            f"Title must be {cfg.title_min_length}-{cfg.title_max_length} characters (got {title_len})"
        )
    excerpt_len = len(plan.excerpt.strip())
    if not cfg.excerpt_min_length <= excerpt_len <= cfg.excerpt_max_length:
        errors.append(
            f"Excerpt must be {cfg.excerpt_min_length}-{cfg.excerpt_max_length} characters (got {excerpt_len})"
        )

    if len(plan.tags) > cfg.max_tags:
        errors.append(f"Too many tags: {len(plan.tags)} (maximum {cfg.max_tags})")
    for tag in plan.tags:
        if not tag.strip():
            errors.append("Tags must not be blank")
        elif len(tag) > cfg.max_tag_length:
            errors.append(f'Tag "{tag[:20]}..." is longer than {cfg.max_tag_length} characters')

    count = len(plan.sections)
    if not cfg.min_sections <= count <= cfg.max_sections:
        errors.append(f"Plan must have {cfg.min_sections}-{cfg.max_sections} sections (got {count})")

    seen = {}
    for i, section in enumerate(plan.sections, 1):
        headline = section.headline.strip()
        if not headline:
            errors.append(f"Section {i} has an empty headline")
        else:
            key = headline.lower()
            if key in seen:
                errors.append(f'Section {i} duplicates the headline of section {seen[key]}: "{headline}"')
            else:
                seen[key] = i
        if not section.goal.strip():
            errors.append(f'Section {i} ("{headline}") has a blank goal')
        queries = [q for q in section.research_queries if q.strip()]
        if len(queries) != len(section.research_queries):
            errors.append(f'Section {i} ("{headline}") has blank research queries')
        if not cfg.min_queries_per_section <= len(queries) <= cfg.max_queries_per_section:
            errors.append(
                f'Section {i} ("{headline}") needs {cfg.min_queries_per_section}-'
                f"{cfg.max_queries_per_section} research queries (got {len(queries)})"
            )
    return errors


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def parse_article_plan(data: Any, context: ArticleContext) -> Tuple[Optional[ArticlePlan], List[str]]:
    """Build an ArticlePlan from the model's JSON. Returns (plan, errors); plan is None when unusable."""
    if not isinstance(data, dict):
        return None, ["Response was not a JSON object"]

    category = normalize_category_slug(data.get("category_slug") or data.get("categorySlug"))
    if category is None:
        return None, [f"Unknown category_slug: {data.get('category_slug')!r} (use news, reviews, guides or lists)"]

    sections = []
    for raw in data.get("sections") or []:
        if not isinstance(raw, dict):
            continue
        sections.append({
            "headline": str(raw.get("headline") or "").strip(),
            "goal": str(raw.get("goal") or "").strip(),
            # blank entries are kept so validation can report them
            "research_queries": [str(q) for q in (raw.get("research_queries") or raw.get("researchQueries") or [])],
            "must_cover": _string_list(raw.get("must_cover") or raw.get("mustCover")),
        })

    try:
        plan = ArticlePlan(
            game_name=context.game_name,
            title=str(data.get("title") or "").strip(),
            category_slug=category,
            excerpt=str(data.get("excerpt") or "").strip(),
            tags=[str(t).strip() for t in (data.get("tags") or []) if t is not None],
            sections=sections,
            required_elements=_string_list(data.get("required_elements") or data.get("requiredElements")),
            no_prices=True,
            no_scores_unless_review=bool(data.get("no_scores_unless_review", True)),
        )
    except ValidationError as e:
        return None, [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
    return plan, []


def build_existing_research_summary(scout: ScoutOutput, max_overview_lines: int = 8) -> str:
    queries = [r.query for r in scout.pool.query_cache.values()]
    overview_lines = [line for line in scout.briefing.overview.splitlines() if line.strip()][:max_overview_lines]
    parts = []
    if queries:
        parts.append("Already researched (do not repeat):\n" + "\n".join(f"- {q}" for q in queries))
    if overview_lines:
        parts.append("Overview excerpt:\n" + "\n".join(overview_lines))
    return "\n\n".join(parts)


def _user_prompt(context: ArticleContext, scout: ScoutOutput, feedback: List[str]) -> str:
    lines = [
        f"Game: {context.game_name}",
        f"Release: {context.release_date or 'unknown'}",
        f"Genres: {', '.join(context.genres) or 'unknown'}",
        f"Platforms: {', '.join(context.platforms) or 'unknown'}",
        f"Developer: {context.developer or 'unknown'}",
        f"Publisher: {context.publisher or 'unknown'}",
    ]
    if context.instruction:
        lines.append(f"Article directive: {context.instruction}")
    if context.target_word_count:
        lines.append(f"Target length: about {context.target_word_count} words")
    if context.category_hints:
        lines.append("")
        lines.append("Preferred categories:")
        for hint in context.category_hints:
            lines.append(f"- {hint.slug}" + (f": {hint.system_prompt}" if hint.system_prompt else ""))

    lines += [
        "",
        "=== SCOUT BRIEFING ===",
        truncate(scout.briefing.full_context or scout.briefing.overview, 6000, "\n...(truncated)"),
    ]
    existing = build_existing_research_summary(scout)
    if existing:
        lines += ["", "=== EXISTING RESEARCH ===", existing]
    if feedback:
        lines += [
            "",
            "=== YOUR PREVIOUS PLAN WAS REJECTED ===",
            *[f"- {err}" for err in feedback],
            "Fix every problem above.",
        ]
    lines += ["", "Return the plan as JSON."]
    return "\n".join(lines)


async def run_editor(
    context: ArticleContext,
    scout: ScoutOutput,
    *,
    llm: LLMClient,
    cfg: Settings,
    cancel: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> EditorOutput:
    system = _SYSTEM_PROMPT
    for key, value in {
        "title_min": cfg.title_min_length, "title_max": cfg.title_max_length,
        "excerpt_min": cfg.excerpt_min_length, "excerpt_max": cfg.excerpt_max_length,
        "max_tags": cfg.max_tags, "min_sections": cfg.min_sections, "max_sections": cfg.max_sections,
        "min_queries": cfg.min_queries_per_section, "max_queries": cfg.max_queries_per_section,
    }.items():
        system = system.replace("{" + key + "}", str(value))

    tokens = TokenUsage()
    cost = 0.0
    feedback: List[str] = []
    for attempt in range(1, cfg.editor_max_plan_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        prompt = _user_prompt(context, scout, feedback)
        try:
            result = await with_retry(
                lambda: llm.generate(
                    model=cfg.editor_model,
                    system=system,
                    prompt=prompt,
                    temperature=cfg.editor_temperature,
                    max_output_tokens=cfg.editor_max_output_tokens,
                    json_output=True,
                    cancel=cancel,
                ),
                **retry_kwargs(cfg, cancel, "Editor article plan generation", sleep),
            )
        except OperationCancelled:
            raise
        except RetryExhaustedError as e:
            raise ArticleGenerationError(
                ErrorKind.EDITOR_FAILED, f"Editor could not produce a plan: {e.message}"
            ) from e
        tokens = tokens + result.usage
        cost += result.cost

        plan, errors = parse_article_plan(result.data, context)
        if plan is not None:
            errors = validate_article_plan(plan, cfg)
        if not errors:
            logger.info(
                f"Plan accepted on attempt {attempt}: {plan.category_slug.value} article, "
                f"{len(plan.sections)} sections, {sum(len(s.research_queries) for s in plan.sections)} queries"
            )
            return EditorOutput(plan=plan, attempts=attempt, usage=StageUsage(tokens=tokens, llm_cost_usd=cost))

        logger.warning(f"Plan attempt {attempt}/{cfg.editor_max_plan_attempts} rejected: {'; '.join(errors)}")
        feedback = errors

    raise ArticleGenerationError(
        ErrorKind.EDITOR_FAILED,
        f"Article plan failed validation after {cfg.editor_max_plan_attempts} attempt(s): {'; '.join(feedback)}",
    )
