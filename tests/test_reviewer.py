"""Tests for the reviewer stage."""

import pytest

from errors import RetryExhaustedError
from fakes import FakeLLM, make_plan_dict, make_settings
from models.articles import ArticlePlan, ReviewIssue, ScoutBriefing, ScoutOutput
from services.research_pool import create_empty_research_pool
from services.reviewer import (
    TRUNCATION_NOTICE,
    count_issues_by_severity,
    default_fix_instruction,
    filter_valid_issues,
    parse_issues,
    run_reviewer,
    should_reject,
    truncate_article,
)


def _issue(severity="major", strategy="expand", location="Early Bosses", instruction="Add detail", **kwargs):
    return ReviewIssue(
        severity=severity,
        category=kwargs.pop("category", "coverage"),
        location=location,
        message=kwargs.pop("message", "Section is thin"),
        fix_strategy=strategy,
        fix_instruction=instruction,
        **kwargs,
    )


def _plan():
    return ArticlePlan(game_name="Elden Ring", **make_plan_dict())


def _scout():
    return ScoutOutput(briefing=ScoutBriefing(overview="Overview text"), pool=create_empty_research_pool())


def test_truncate_article():
    """Test that long drafts are cut with a notice and short ones left alone."""
    assert truncate_article("short", 100) == "short"
    assert truncate_article("x" * 50, 10) == "x" * 10 + TRUNCATION_NOTICE


def test_major_issue_without_instruction_gets_default():
    """Test that critical and major issues keep a generated fix instruction."""
    issue = _issue(category="checklist", strategy="inline_insert", instruction=None, message="Torrent never mentioned")
    valid = filter_valid_issues([issue])

    assert len(valid) == 1
    assert valid[0].fix_instruction.startswith('Add paragraph in "Early Bosses"')
    assert "Torrent never mentioned" in valid[0].fix_instruction


def test_minor_issue_without_instruction_dropped():
    """Test that minor actionable issues with no instruction are filtered out."""
    assert filter_valid_issues([_issue(severity="minor", instruction="  ")]) == []


def test_no_action_issue_kept_without_instruction():
    """Test that informational issues need no fix instruction."""
    issue = _issue(severity="minor", strategy="no_action", instruction=None)
    assert filter_valid_issues([issue]) == [issue]


@pytest.mark.parametrize("location", ["Throughout article", "multiple sections", "Various places"])
def test_untargetable_locations_dropped(location):
    """Test that issues no single section can fix are dropped."""
    assert filter_valid_issues([_issue(location=location)]) == []


def test_default_instruction_by_category():
    """Test that generated instructions depend on the issue category."""
    structure = _issue(category="structure", message="Sections out of order")
    assert default_fix_instruction(structure).startswith('Fix structural issue in "Early Bosses"')
    style = _issue(category="style", strategy="direct_edit", location=None, message="Cliché")
    assert default_fix_instruction(style) == 'Fix in "the appropriate section": Cliché'


def test_counts_and_rejection():
    """Test that severities are counted and any critical issue rejects."""
    issues = [_issue("critical"), _issue("major"), _issue("major"), _issue("minor")]
    assert count_issues_by_severity(issues) == {"critical": 1, "major": 2, "minor": 1}
    assert should_reject(issues)
    assert not should_reject(issues[1:])


def test_parse_issues_tolerates_bad_entries():
    """Test that malformed issues are dropped and camelCase keys accepted."""
    issues = parse_issues([
        {"severity": "MAJOR", "category": "Coverage", "location": "Early Bosses", "message": "Thin",
         "fixStrategy": "expand", "fixInstruction": "Add Margit tips"},
        {"severity": "catastrophic", "category": "style", "message": "Bad severity"},
        {"severity": "minor", "category": "style", "message": ""},
        "not a dict",
    ])

    assert len(issues) == 1
    assert issues[0].severity == "major"
    assert issues[0].fix_strategy == "expand"
    assert issues[0].fix_instruction == "Add Margit tips"


@pytest.mark.asyncio
async def test_run_reviewer_parses_response(cfg, sleep):
    """Test that the review JSON becomes a ReviewerOutput with usage."""
    llm = FakeLLM(lambda call: {
        "approved": False,
        "issues": [
            {"severity": "major", "category": "coverage", "location": "Early Bosses",
             "message": "Margit strategy missing", "fix_strategy": "expand", "fix_instruction": "Add Margit tips"},
            {"severity": "minor", "category": "style", "location": "throughout article",
             "message": "Repetitive", "fix_strategy": "direct_edit", "fix_instruction": "Vary wording"},
        ],
        "suggestions": ["Add a summary table", None],
    })

    out = await run_reviewer("# Title\n\n## Early Bosses\n\nText", _plan(), _scout(), llm=llm, cfg=cfg, sleep=sleep)

    assert out.approved is False
    assert [i.message for i in out.issues] == ["Margit strategy missing"]
    assert out.suggestions == ["Add a summary table"]
    assert out.tokens.total == 150
    call = llm.calls[0]
    assert call.json_output
    assert "reviewing a guides article" in call.system
    assert "=== DRAFT ===" in call.prompt
    assert "Required elements: Torrent" in call.prompt


@pytest.mark.asyncio
async def test_run_reviewer_truncates_long_drafts(sleep):
    """Test that drafts over the limit reach the model truncated."""
    cfg = make_settings(reviewer_max_article_chars=200)
    llm = FakeLLM(lambda call: {"approved": True})

    await run_reviewer("# T\n\n" + "word " * 500, _plan(), _scout(), llm=llm, cfg=cfg, sleep=sleep)
    assert "article truncated for review" in llm.calls[0].prompt


@pytest.mark.asyncio
async def test_run_reviewer_failure_propagates(sleep):
    """Test that a reviewer the model cannot answer raises after retries."""
    cfg = make_settings(retry_max_attempts=2)
    llm = FakeLLM(lambda call: TimeoutError("slow"))

    with pytest.raises(RetryExhaustedError):
        await run_reviewer("# T", _plan(), _scout(), llm=llm, cfg=cfg, sleep=sleep)
    assert len(llm.calls) == 2
