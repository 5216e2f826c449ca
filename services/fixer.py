"""
Fixer: applies the reviewer's issues to the draft.

Issues are grouped per target (section headline, or "global"); each
iteration applies at most one fix per target, chosen by strategy priority,
and caps the number of direct edits. After every iteration the draft is
reviewed again. The loop stops at max_fixer_iterations unless critical
issues remain, in which case it may continue to max_critical_fix_iterations.

A failed strategy never raises: it comes back as an unsuccessful FixResult
and the draft is left as it was. Cancellation still propagates.
"""
from pydantic import BaseModel
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from config import Settings
from errors import OperationCancelled
from models.articles import (
    ArticlePlan,
    FixApplied,
    FixerOutput,
    FixResult,
    ReviewerOutput,
    ReviewIssue,
    ScoutOutput,
    SectionPlan,
)
from models.requests import ArticleContext
from models.research import ResearchPool
from models.usage import StageUsage, TokenUsage
from services.llm import LLMClient
from services.retry import retry_kwargs, with_retry
from services.reviewer import run_reviewer, should_reject
from services.specialist import write_section
from utils.cancellation import CancellationToken
from utils.markdown import parse_h2_sections
import asyncio
import logging
import re

logger = logging.getLogger(__name__)

STRATEGY_PRIORITY = ("regenerate", "add_section", "inline_insert", "direct_edit", "expand")
GLOBAL_TARGET = "global"
DEFAULT_NEW_SECTION = "Additional Information"

_DIRECT_EDIT_SYSTEM = """You are a precise text editor. Apply specific edits to text while preserving all other content exactly as-is.

Rules:
1. Apply ONLY the requested edit - do not make other changes
2. Preserve all formatting, structure, and whitespace
3. If the edit cannot be applied (text not found), return the original text unchanged
4. Be surgical - change as little as possible to accomplish the goal

Return a JSON object: {"edited_text": "the full corrected text", "explanation": "what was changed"}"""

_INLINE_INSERT_SYSTEM = """You are a gaming content specialist adding a missing detail to an article section.
Write 1-3 sentences that supply exactly what is missing, in the section's tone.
Only use facts from the section or the research. No headings.

Return a JSON object:
{"insert_text": "the new sentences", "after_sentence": "the existing sentence they should follow, copied exactly, or empty to append"}"""

_EXPAND_SYSTEM = """You are a gaming content specialist expanding an article section.
ADD 1-2 paragraphs of new content to an existing section.

Rules:
1. Preserve ALL existing content exactly as-is
2. Add new paragraphs AFTER the existing content
3. Maintain the same tone, style, and formatting
4. Focus on the specific expansion requested
5. Do not repeat information already covered
6. Output ONLY the expanded section content (no headings)"""


class FixerContext(BaseModel):
    context: ArticleContext
    scout: ScoutOutput
    plan: ArticlePlan
    pool: ResearchPool


# ═══════════════════════════════════════════════════════════
#  Markdown section helpers
# ═══════════════════════════════════════════════════════════

def _find_section(markdown: str, headline: str) -> Optional[Tuple[int, int]]:
    """(content_start, content_end) of the H2 section with this headline."""
    heading = re.search(rf"^## {re.escape(headline.strip())}[ \t]*\n", markdown, re.IGNORECASE | re.MULTILINE)
    if heading is None:
        return None
    start = heading.end()
    following = re.search(r"^## ", markdown[start:], re.MULTILINE)
    end = start + following.start() if following else len(markdown)
    return start, end


def replace_section(markdown: str, headline: str, new_content: str) -> Optional[str]:
    """Swap a section's body; None when the headline is not in the draft."""
    location = _find_section(markdown, headline)
    if location is None:
        return None
    start, end = location
    body = "\n" + new_content.strip() + "\n"
    if end < len(markdown):
        body += "\n"
    return markdown[:start] + body + markdown[end:]


def insert_section(markdown: str, after_headline: Optional[str], headline: str, content: str) -> str:
    """Insert after `after_headline`, or before the Sources section (appending when there is none)."""
    block = f"## {headline}\n\n{content.strip()}\n\n"
    if after_headline is not None:
        location = _find_section(markdown, after_headline)
        if location is not None:
            end = location[1]
            if end == len(markdown):
                return markdown.rstrip() + "\n\n" + block.rstrip() + "\n"
            return markdown[:end] + block + markdown[end:]

    sources = re.search(r"^## Sources[ \t]*\n", markdown, re.IGNORECASE | re.MULTILINE)
    if sources is not None:
        return markdown[:sources.start()] + block + markdown[sources.start():]
    return markdown.rstrip() + "\n\n" + block.rstrip() + "\n"


def get_section_content(markdown: str, headline: str) -> Optional[str]:
    wanted = headline.strip().lower()
    for section in parse_h2_sections(markdown):
        if section.heading.lower() == wanted:
            return section.content
    return None


# ═══════════════════════════════════════════════════════════
#  Strategy selection
# ═══════════════════════════════════════════════════════════

def group_issues_by_section(issues: List[ReviewIssue]) -> Dict[str, List[ReviewIssue]]:
    groups: Dict[str, List[ReviewIssue]] = {}
    for issue in issues:
        groups.setdefault(issue.location or GLOBAL_TARGET, []).append(issue)
    return groups


def select_best_strategy(issues: List[ReviewIssue]) -> Optional[ReviewIssue]:
    """Highest-priority actionable issue; ties keep reviewer order."""
    actionable = [i for i in issues if i.fix_strategy != "no_action"]
    if not actionable:
        return None

    def rank(issue: ReviewIssue) -> int:
        return STRATEGY_PRIORITY.index(issue.fix_strategy) if issue.fix_strategy in STRATEGY_PRIORITY else len(STRATEGY_PRIORITY)

    return min(actionable, key=rank)


def needs_fixing(review: ReviewerOutput) -> bool:
    actionable = [i for i in review.issues if i.fix_strategy != "no_action"]
    if not actionable:
        return False
    return not review.approved or any(i.severity in ("critical", "major") for i in actionable)


# ═══════════════════════════════════════════════════════════
#  Strategies
# ═══════════════════════════════════════════════════════════

def _failed(markdown: str, description: str, tokens: TokenUsage = TokenUsage(), cost: float = 0.0) -> FixResult:
    return FixResult(markdown=markdown, success=False, description=description, tokens=tokens, cost=cost)


def _plan_index(plan: ArticlePlan, headline: str) -> int:
    wanted = headline.strip().lower()
    for i, section in enumerate(plan.sections):
        if section.headline.strip().lower() == wanted:
            return i
    return -1


async def apply_direct_edit(
    markdown: str, issue: ReviewIssue, ctx: FixerContext, llm: LLMClient, cfg: Settings,
    cancel: Optional[CancellationToken], sleep,
) -> FixResult:
    if not issue.fix_instruction:
        return _failed(markdown, "No fix instruction provided")

    target = markdown
    section_only = False
    if issue.location and issue.location != GLOBAL_TARGET:
        content = get_section_content(markdown, issue.location)
        if content:
            target = content
            section_only = True

    result = await with_retry(
        lambda: llm.generate(
            model=cfg.reviewer_model,
            system=_DIRECT_EDIT_SYSTEM,
            prompt=f"Apply this edit to the text below:\n\nEDIT INSTRUCTION: {issue.fix_instruction}\n\n"
                   f"ORIGINAL TEXT:\n{target}\n\nReturn the edited text with the change applied.",
            temperature=cfg.fixer_temperature,
            max_output_tokens=cfg.fixer_max_output_tokens,
            json_output=True,
            cancel=cancel,
        ),
        **retry_kwargs(cfg, cancel, f"Direct edit: {issue.message[:50]}", sleep),
    )
    data = result.data if isinstance(result.data, dict) else {}
    edited = data.get("edited_text") or data.get("editedText") or ""
    explanation = data.get("explanation") or "Direct edit"
    if not edited.strip():
        return _failed(markdown, "Editor returned no text", result.usage, result.cost)

    if section_only:
        new_markdown = replace_section(markdown, issue.location, edited) or markdown
    else:
        new_markdown = edited
    success = new_markdown != markdown
    return FixResult(
        markdown=new_markdown,
        success=success,
        description=explanation if success else "Direct edit had no effect",
        tokens=result.usage,
        cost=result.cost,
    )


async def apply_inline_insert(
    markdown: str, issue: ReviewIssue, ctx: FixerContext, llm: LLMClient, cfg: Settings,
    cancel: Optional[CancellationToken], sleep,
) -> FixResult:
    if not issue.location:
        return _failed(markdown, "No section location specified")
    content = get_section_content(markdown, issue.location)
    if content is None:
        return _failed(markdown, f'Section "{issue.location}" not found')

    instruction = issue.fix_instruction or issue.suggestion or issue.message
    result = await with_retry(
        lambda: llm.generate(
            model=cfg.specialist_model,
            system=_INLINE_INSERT_SYSTEM,
            prompt=f"GAME: {ctx.context.game_name}\nSECTION: {issue.location}\n\n"
                   f"MISSING: {instruction}\n\nRESEARCH:\n{ctx.scout.briefing.overview[:cfg.max_scout_overview_length]}\n\n"
                   f"SECTION CONTENT:\n{content}",
            temperature=cfg.fixer_temperature,
            max_output_tokens=cfg.fixer_max_output_tokens,
            json_output=True,
            cancel=cancel,
        ),
        **retry_kwargs(cfg, cancel, f'Inline insert "{issue.location[:40]}"', sleep),
    )
    data = result.data if isinstance(result.data, dict) else {}
    insert_text = str(data.get("insert_text") or data.get("insertText") or "").strip()
    anchor = str(data.get("after_sentence") or data.get("afterSentence") or "").strip()
    if not insert_text:
        return _failed(markdown, "Nothing to insert", result.usage, result.cost)

    if anchor and anchor in content:
        cut = content.index(anchor) + len(anchor)
        updated = content[:cut] + " " + insert_text + content[cut:]
    else:
        updated = content.rstrip() + "\n\n" + insert_text
    new_markdown = replace_section(markdown, issue.location, updated)
    if new_markdown is None or new_markdown == markdown:
        return _failed(markdown, f'Could not insert into "{issue.location}"', result.usage, result.cost)
    return FixResult(
        markdown=new_markdown,
        success=True,
        description=f'Inserted missing detail into "{issue.location}"',
        tokens=result.usage,
        cost=result.cost,
    )


async def regenerate_section(
    markdown: str, issue: ReviewIssue, ctx: FixerContext, llm: LLMClient, cfg: Settings,
    cancel: Optional[CancellationToken], sleep,
) -> FixResult:
    if not issue.location:
        return _failed(markdown, "No section location specified")
    index = _plan_index(ctx.plan, issue.location)
    if index == -1:
        return _failed(markdown, f'Section "{issue.location}" not found in plan')

    feedback = "\n".join(x for x in (issue.message, issue.fix_instruction) if x)
    draft = await write_section(
        ctx.context, ctx.plan, index, ctx.scout, ctx.pool, llm, cfg,
        feedback=feedback, cancel=cancel, sleep=sleep,
    )
    new_markdown = replace_section(markdown, issue.location, draft.text)
    if new_markdown is None:
        return _failed(markdown, f'Failed to replace section "{issue.location}"', draft.tokens, draft.cost)
    return FixResult(
        markdown=new_markdown,
        success=True,
        description=f'Regenerated section "{issue.location}"',
        tokens=draft.tokens,
        cost=draft.cost,
    )


async def add_section(
    markdown: str, issue: ReviewIssue, ctx: FixerContext, llm: LLMClient, cfg: Settings,
    cancel: Optional[CancellationToken], sleep,
) -> FixResult:
    if not issue.fix_instruction:
        return _failed(markdown, "No section description provided")
    headline = (issue.location or DEFAULT_NEW_SECTION).strip()
    if get_section_content(markdown, headline) is not None:
        return _failed(markdown, f'Section "{headline}" already exists')

    section = SectionPlan(headline=headline, goal=issue.fix_instruction, research_queries=[])
    extended = ctx.plan.model_copy(update={"sections": [*ctx.plan.sections, section]})
    draft = await write_section(
        ctx.context, extended, len(extended.sections) - 1, ctx.scout, ctx.pool, llm, cfg,
        section=section, cancel=cancel, sleep=sleep,
    )
    return FixResult(
        markdown=insert_section(markdown, None, headline, draft.text),
        success=True,
        description=f'Added new section "{headline}"',
        tokens=draft.tokens,
        cost=draft.cost,
    )


async def expand_section(
    markdown: str, issue: ReviewIssue, ctx: FixerContext, llm: LLMClient, cfg: Settings,
    cancel: Optional[CancellationToken], sleep,
) -> FixResult:
    if not issue.location:
        return _failed(markdown, "No section location specified")
    existing = get_section_content(markdown, issue.location)
    if not existing:
        return _failed(markdown, f'Section "{issue.location}" not found')

    request = issue.fix_instruction or issue.suggestion or "Add more depth and detail"
    index = _plan_index(ctx.plan, issue.location)
    goal = f"SECTION GOAL: {ctx.plan.sections[index].goal}\n" if index != -1 else ""
    result = await with_retry(
        lambda: llm.generate(
            model=cfg.specialist_model,
            system=_EXPAND_SYSTEM,
            prompt=f"Expand this section with more detail:\n\nGAME: {ctx.context.game_name}\n"
                   f"SECTION: {issue.location}\n{goal}\nEXPANSION REQUEST: {request}\n\n"
                   f"EXISTING CONTENT:\n{existing}\n\n"
                   "Write the expanded section with the original content followed by 1-2 new paragraphs.",
            temperature=cfg.fixer_temperature,
            max_output_tokens=cfg.fixer_max_output_tokens,
            cancel=cancel,
        ),
        **retry_kwargs(cfg, cancel, f'Expand section "{issue.location[:40]}"', sleep),
    )
    new_markdown = replace_section(markdown, issue.location, result.text)
    if new_markdown is None:
        return _failed(markdown, f'Failed to replace section "{issue.location}"', result.usage, result.cost)
    if len(new_markdown) <= len(markdown):
        return _failed(markdown, "Expansion did not add content", result.usage, result.cost)
    return FixResult(
        markdown=new_markdown,
        success=True,
        description=f'Expanded section "{issue.location}" (+{len(new_markdown) - len(markdown)} chars)',
        tokens=result.usage,
        cost=result.cost,
    )


_STRATEGIES = {
    "direct_edit": apply_direct_edit,
    "inline_insert": apply_inline_insert,
    "regenerate": regenerate_section,
    "add_section": add_section,
    "expand": expand_section,
}


async def apply_fix(
    markdown: str,
    issue: ReviewIssue,
    ctx: FixerContext,
    *,
    llm: LLMClient,
    cfg: Settings,
    cancel: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FixResult:
    strategy = _STRATEGIES.get(issue.fix_strategy)
    if strategy is None:
        return FixResult(markdown=markdown, success=issue.fix_strategy == "no_action", description="No action needed")
    try:
        return await strategy(markdown, issue, ctx, llm, cfg, cancel, sleep)
    except OperationCancelled:
        raise
    except Exception as e:
        logger.error(f"{issue.fix_strategy} failed for '{issue.location or GLOBAL_TARGET}': {e}")
        return _failed(markdown, f"{issue.fix_strategy} failed: {e}")


# ═══════════════════════════════════════════════════════════
#  Loop
# ═══════════════════════════════════════════════════════════

async def run_fixer_iteration(
    markdown: str,
    issues: List[ReviewIssue],
    ctx: FixerContext,
    iteration: int,
    *,
    llm: LLMClient,
    cfg: Settings,
    cancel: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[str, List[FixApplied], StageUsage]:
    groups = group_issues_by_section([i for i in issues if i.fix_strategy != "no_action"])
    logger.info(f"Fixer iteration {iteration}: {sum(len(g) for g in groups.values())} actionable issue(s) in {len(groups)} target(s)")

    current = markdown
    applied: List[FixApplied] = []
    usage = StageUsage()
    direct_edits = 0
    for target, target_issues in groups.items():
        if cancel is not None:
            cancel.raise_if_cancelled()
        issue = select_best_strategy(target_issues)
        if issue is None:
            continue
        if issue.fix_strategy == "direct_edit" and direct_edits >= cfg.max_direct_edits_per_iteration:
            logger.debug(f"Skipping direct edit for '{target}': limit reached")
            continue

        logger.info(f"Applying {issue.fix_strategy} to '{target}': {issue.message[:50]}")
        result = await apply_fix(current, issue, ctx, llm=llm, cfg=cfg, cancel=cancel, sleep=sleep)
        usage = usage + StageUsage(tokens=result.tokens, llm_cost_usd=result.cost)
        applied.append(FixApplied(
            iteration=iteration, strategy=issue.fix_strategy, target=target,
            reason=issue.message, success=result.success,
        ))
        if result.success:
            current = result.markdown
            if issue.fix_strategy == "direct_edit":
                direct_edits += 1
        else:
            logger.warning(f"Fix failed for '{target}': {result.description}")

    logger.info(f"Fixer iteration {iteration}: {sum(1 for f in applied if f.success)}/{len(applied)} fix(es) applied")
    return current, applied, usage


async def run_fixer(
    markdown: str,
    review: ReviewerOutput,
    ctx: FixerContext,
    *,
    llm: LLMClient,
    cfg: Settings,
    cancel: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FixerOutput:
    out = FixerOutput(markdown=markdown, review=review)
    iteration = 0
    while needs_fixing(review):
        limit = cfg.max_critical_fix_iterations if should_reject(review.issues) else cfg.max_fixer_iterations
        if iteration >= limit:
            logger.info(f"Fixer stopping after {iteration} iteration(s) (limit {limit})")
            break
        if cancel is not None:
            cancel.raise_if_cancelled()
        iteration += 1

        current, applied, usage = await run_fixer_iteration(
            out.markdown, review.issues, ctx, iteration, llm=llm, cfg=cfg, cancel=cancel, sleep=sleep,
        )
        out.fixes_applied.extend(applied)
        out.usage = out.usage + usage
        out.iterations = iteration
        if current == out.markdown:
            logger.info("Fixer made no progress; stopping")
            break
        out.markdown = current

        if cancel is not None:
            cancel.raise_if_cancelled()
        review = await run_reviewer(out.markdown, ctx.plan, ctx.scout, llm=llm, cfg=cfg, cancel=cancel, sleep=sleep)
        out.review = review
        out.review_usage = out.review_usage + StageUsage(tokens=review.tokens, llm_cost_usd=review.cost_usd)

    return out
