"""
Reviewer: scores the assembled draft against its plan and returns issues
the fixer can act on. Issues the fixer could never target are dropped here.
"""
from pydantic import ValidationError
from typing import Any, Awaitable, Callable, Dict, List, Optional
from config import Settings
from models.articles import ArticlePlan, ReviewerOutput, ReviewIssue, ScoutOutput
from services.llm import LLMClient
from services.retry import retry_kwargs, with_retry
from utils.cancellation import CancellationToken
from utils.text import truncate
import asyncio
import logging

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n\n...(article truncated for review)"
INVALID_LOCATIONS = ("throughout article", "multiple sections", "various", "general")

_SYSTEM_PROMPT = """You are a senior editor reviewing a {category} article for a video game publication.
Check the draft against its plan and the research. Look for:
- checklist: required elements that are missing
- structure: sections out of order, missing, or not matching their headline
- redundancy: the same point made in several sections
- coverage: thin sections, unanswered obvious questions
- factual: claims not supported by the research
- style: clichés, filler, tone problems
- seo: title or excerpt problems

For every issue pick one fix strategy:
- regenerate: the section must be rewritten (location = section headline)
- add_section: a whole section is missing (location = the new headline)
- inline_insert: a specific fact or element is missing from a section
- direct_edit: a precise wording change
- expand: the section is too thin
- no_action: informational only

Return a JSON object:
{{
  "approved": true | false,
  "issues": [
    {{
      "severity": "critical | major | minor",
      "category": "checklist | structure | redundancy | coverage | factual | style | seo",
      "location": "exact section headline, or omit",
      "message": "what is wrong",
      "suggestion": "optional",
      "fix_strategy": "regenerate | add_section | inline_insert | direct_edit | expand | no_action",
      "fix_instruction": "exactly what the fixer should do"
    }}
  ],
  "suggestions": ["optional general notes"]
}}
Use exact section headlines as locations. Mark an issue critical only if the article
must not be published with it."""


def truncate_article(markdown: str, max_chars: int) -> str:
    if len(markdown) <= max_chars:
        return markdown
    return markdown[:max_chars] + TRUNCATION_NOTICE


def default_fix_instruction(issue: ReviewIssue) -> str:
    location = issue.location or "the appropriate section"
    if issue.category == "checklist" or "CHECKLIST FAILURE" in issue.message:
        return (
            f'Add paragraph in "{location}" covering the missing element. '
            f"Based on issue: {issue.message[:200]}. "
            "Include: name, location, how to obtain/use, and relevance."
        )
    if issue.category == "structure":
        return f'Fix structural issue in "{location}": {issue.message[:150]}'
    if issue.category == "coverage" or issue.fix_strategy == "inline_insert":
        return f'In section "{location}", add the missing information: {issue.message[:150]}'
    return f'Fix in "{location}": {issue.message[:150]}'


def filter_valid_issues(issues: List[ReviewIssue]) -> List[ReviewIssue]:
    """
    Critical/major issues without a fix instruction get a generated one;
    minor ones are dropped. Issues located "throughout" the article are dropped
    because no single section can be fixed for them.
    """
    valid: List[ReviewIssue] = []
    missing = 0
    bad_location = 0
    for issue in issues:
        if issue.fix_strategy != "no_action" and not (issue.fix_instruction or "").strip():
            if issue.severity in ("critical", "major"):
                issue = issue.model_copy(update={"fix_instruction": default_fix_instruction(issue)})
                logger.warning(
                    f"Issue missing fix instruction (generated default): '{issue.message[:60]}' "
                    f"[strategy: {issue.fix_strategy}]"
                )
            else:
                missing += 1
                continue
        if issue.location and any(bad in issue.location.lower() for bad in INVALID_LOCATIONS):
            logger.warning(f"Skipping issue (invalid location '{issue.location}'): '{issue.message[:60]}'")
            bad_location += 1
            continue
        valid.append(issue)

    if missing or bad_location:
        logger.info(
            f"Filtered out {missing + bad_location} issue(s) "
            f"({missing} missing fix instruction, {bad_location} invalid location)"
        )
    return valid


def count_issues_by_severity(issues: List[ReviewIssue]) -> Dict[str, int]:
    counts = {"critical": 0, "major": 0, "minor": 0}
    for issue in issues:
        counts[issue.severity] += 1
    return counts


def should_reject(issues: List[ReviewIssue]) -> bool:
    return any(i.severity == "critical" for i in issues)


def parse_issues(raw_issues: Any) -> List[ReviewIssue]:
    issues = []
    for raw in raw_issues or []:
        if not isinstance(raw, dict):
            continue
        fields = {
            "severity": str(raw.get("severity") or "minor").lower(),
            "category": str(raw.get("category") or "style").lower(),
            "location": raw.get("location") or None,
            "message": str(raw.get("message") or "").strip(),
            "suggestion": raw.get("suggestion") or None,
            "fix_strategy": str(raw.get("fix_strategy") or raw.get("fixStrategy") or "no_action").lower(),
            "fix_instruction": raw.get("fix_instruction") or raw.get("fixInstruction") or None,
        }
        if not fields["message"]:
            continue
        try:
            issues.append(ReviewIssue(**fields))
        except ValidationError as e:
            logger.warning(f"Dropping malformed review issue: {e.errors()[0]['msg']}")
    return issues


def _user_prompt(markdown: str, plan: ArticlePlan, scout: ScoutOutput, cfg: Settings) -> str:
    outline = "\n".join(
        f"{i}. {s.headline}: {s.goal}" + (f" (must cover: {', '.join(s.must_cover)})" if s.must_cover else "")
        for i, s in enumerate(plan.sections, 1)
    )
    research = truncate(
        f"{scout.briefing.overview}\n\n{scout.briefing.category_insights}".strip(),
        cfg.reviewer_max_research_chars,
    )
    parts = [
        f"Title: {plan.title}",
        f"Category: {plan.category_slug.value}",
        f"Excerpt: {plan.excerpt}",
        "",
        "=== PLAN ===",
        outline,
    ]
    if plan.required_elements:
        parts += ["", "Required elements: " + ", ".join(plan.required_elements)]
    parts += [
        "",
        "=== RESEARCH SUMMARY ===",
        research or "(none)",
        "",
        "=== DRAFT ===",
        truncate_article(markdown, cfg.reviewer_max_article_chars),
        "",
        "Review the draft and return JSON.",
    ]
    return "\n".join(parts)


async def run_reviewer(
    markdown: str,
    plan: ArticlePlan,
    scout: ScoutOutput,
    *,
    llm: LLMClient,
    cfg: Settings,
    cancel: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ReviewerOutput:
    logger.info(f"Reviewing '{plan.title}'")
    result = await with_retry(
        lambda: llm.generate(
            model=cfg.reviewer_model,
            system=_SYSTEM_PROMPT.format(category=plan.category_slug.value),
            prompt=_user_prompt(markdown, plan, scout, cfg),
            temperature=cfg.reviewer_temperature,
            max_output_tokens=cfg.reviewer_max_output_tokens,
            json_output=True,
            cancel=cancel,
        ),
        **retry_kwargs(cfg, cancel, "Reviewer analysis", sleep),
    )

    data = result.data if isinstance(result.data, dict) else {}
    issues = filter_valid_issues(parse_issues(data.get("issues")))
    suggestions = [str(s) for s in data.get("suggestions") or [] if s]
    approved = bool(data.get("approved", False))

    counts = count_issues_by_severity(issues)
    logger.info(
        f"Review complete: {'APPROVED' if approved else 'NEEDS REVISION'} "
        f"({counts['critical']} critical, {counts['major']} major, {counts['minor']} minor)"
    )
    return ReviewerOutput(
        approved=approved,
        issues=issues,
        suggestions=suggestions,
        tokens=result.usage,
        cost_usd=result.cost,
    )
