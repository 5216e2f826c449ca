"""Tests for the fixer stage."""

import itertools

import pytest

from errors import OperationCancelled
from fakes import EXPANSION, HEADLINES, FakeLLM, PipelineLLM, make_plan_dict, make_settings, section_text
from models.articles import ArticlePlan, ReviewerOutput, ReviewIssue, ScoutBriefing, ScoutOutput, SectionDraft
from services.fixer import (
    FixerContext,
    apply_fix,
    get_section_content,
    group_issues_by_section,
    insert_section,
    needs_fixing,
    replace_section,
    run_fixer,
    run_fixer_iteration,
    select_best_strategy,
)
from services.research_pool import create_empty_research_pool
from services.specialist import assemble_markdown
from utils.cancellation import CancellationToken
from utils.markdown import parse_h2_sections

TITLE = "Elden Ring Beginner Guide: Surviving the Lands Between"


def _markdown():
    drafts = [SectionDraft(index=i, headline=h, text=section_text(h)) for i, h in enumerate(HEADLINES)]
    return assemble_markdown(TITLE, drafts, ["https://gamewiki.example.com/margit"])


def _issue(strategy, location="Early Bosses", severity="major", instruction="Fix it", message="Problem"):
    return ReviewIssue(
        severity=severity, category="coverage", location=location, message=message,
        fix_strategy=strategy, fix_instruction=instruction,
    )


def _review(*issues, approved=False):
    return ReviewerOutput(approved=approved, issues=list(issues))


def _review_json(*issues, approved=False):
    return {"approved": approved, "issues": [i.model_dump() for i in issues], "suggestions": []}


@pytest.fixture
def ctx(context):
    return FixerContext(
        context=context,
        scout=ScoutOutput(briefing=ScoutBriefing(overview="Elden Ring overview"), pool=create_empty_research_pool()),
        plan=ArticlePlan(game_name="Elden Ring", **make_plan_dict()),
        pool=create_empty_research_pool(),
    )


def _headings(markdown):
    return [s.heading for s in parse_h2_sections(markdown)]


# ── markdown helpers ──

def test_replace_section_middle_and_last():
    """Test that only the targeted section body changes."""
    markdown = "# T\n\n## A\n\nold a\n\n## B\n\nold b\n"
    assert replace_section(markdown, "A", "new a") == "# T\n\n## A\n\nnew a\n\n## B\n\nold b\n"
    assert replace_section(markdown, "b", "new b") == "# T\n\n## A\n\nold a\n\n## B\n\nnew b\n"
    assert replace_section(markdown, "Missing", "x") is None


def test_insert_section_before_sources():
    """Test that new sections land before Sources, after a named section, or at the end."""
    markdown = _markdown()
    inserted = insert_section(markdown, None, "Secret Bosses", "Hidden content.")
    assert _headings(inserted) == [*HEADLINES, "Secret Bosses", "Sources"]

    after = insert_section(markdown, "Exploring Limgrave", "Torrent", "Ride.")
    assert _headings(after)[2] == "Torrent"

    plain = insert_section("# T\n\n## A\n\nbody\n", None, "B", "more")
    assert plain == "# T\n\n## A\n\nbody\n\n## B\n\nmore\n"


def test_get_section_content_case_insensitive():
    """Test that section lookup ignores headline case."""
    assert get_section_content(_markdown(), "early bosses") == section_text("Early Bosses")
    assert get_section_content(_markdown(), "Nope") is None


# ── strategy selection ──

def test_group_issues_by_section():
    """Test that issues without a location are grouped as global."""
    groups = group_issues_by_section([_issue("expand"), _issue("direct_edit", location=None), _issue("regenerate")])
    assert list(groups) == ["Early Bosses", "global"]
    assert len(groups["Early Bosses"]) == 2


def test_select_best_strategy_by_priority():
    """Test that the highest-priority strategy wins and no_action is ignored."""
    issues = [_issue("direct_edit"), _issue("expand"), _issue("regenerate"), _issue("no_action")]
    assert select_best_strategy(issues).fix_strategy == "regenerate"
    assert select_best_strategy([_issue("no_action")]) is None


@pytest.mark.parametrize("review,expected", [
    (_review(_issue("expand", severity="minor"), approved=True), False),
    (_review(_issue("expand", severity="major"), approved=True), True),
    (_review(_issue("expand", severity="minor"), approved=False), True),
    (_review(_issue("no_action", severity="critical"), approved=False), False),
    (_review(approved=False), False),
])
def test_needs_fixing(review, expected):
    """Test that fixing runs for rejected drafts or serious actionable issues."""
    assert needs_fixing(review) is expected


# ── strategies ──

@pytest.mark.asyncio
async def test_direct_edit_replaces_only_its_section(ctx, cfg, sleep):
    """Test that a located direct edit rewrites that section and nothing else."""
    llm = FakeLLM(lambda call: {"edited_text": "Margit is the first real wall.", "explanation": "Tightened"})
    markdown = _markdown()

    result = await apply_fix(markdown, _issue("direct_edit"), ctx, llm=llm, cfg=cfg, sleep=sleep)

    assert result.success
    assert result.description == "Tightened"
    assert get_section_content(result.markdown, "Early Bosses") == "Margit is the first real wall."
    assert get_section_content(result.markdown, "Exploring Limgrave") == section_text("Exploring Limgrave")
    assert section_text("Early Bosses") in llm.calls[0].prompt


@pytest.mark.asyncio
async def test_inline_insert_after_anchor(ctx, cfg, sleep):
    """Test that inserted text follows the anchor sentence."""
    anchor = "Players who take time here tend to progress faster through the opening areas."
    llm = FakeLLM(lambda call: {"insert_text": "Torrent unlocks after the third grace.", "after_sentence": anchor})

    result = await apply_fix(_markdown(), _issue("inline_insert"), ctx, llm=llm, cfg=cfg, sleep=sleep)

    content = get_section_content(result.markdown, "Early Bosses")
    assert result.success
    assert f"{anchor} Torrent unlocks after the third grace." in content


@pytest.mark.asyncio
async def test_add_section_inserts_before_sources(ctx, cfg, sleep):
    """Test that a missing section is drafted and inserted before Sources."""
    llm = PipelineLLM()

    result = await apply_fix(
        _markdown(), _issue("add_section", location="Spirit Ashes", instruction="Explain Spirit Ashes"),
        ctx, llm=llm, cfg=cfg, sleep=sleep,
    )

    assert result.success
    assert _headings(result.markdown) == [*HEADLINES, "Spirit Ashes", "Sources"]
    assert "Headline: Spirit Ashes" in llm.calls[0].prompt
    assert "Goal: Explain Spirit Ashes" in llm.calls[0].prompt


@pytest.mark.asyncio
async def test_add_existing_section_fails_without_model_call(ctx, cfg, sleep):
    """Test that adding a section that already exists is refused."""
    llm = PipelineLLM()
    result = await apply_fix(_markdown(), _issue("add_section"), ctx, llm=llm, cfg=cfg, sleep=sleep)

    assert not result.success
    assert llm.calls == []


@pytest.mark.asyncio
async def test_expand_must_grow_section(ctx, cfg, sleep):
    """Test that an expansion returning no new text counts as a failure."""
    markdown = _markdown()
    grown = await apply_fix(markdown, _issue("expand"), ctx, llm=PipelineLLM(), cfg=cfg, sleep=sleep)
    assert grown.success
    assert EXPANSION in get_section_content(grown.markdown, "Early Bosses")

    same = FakeLLM(lambda call: section_text("Early Bosses"))
    result = await apply_fix(markdown, _issue("expand"), ctx, llm=same, cfg=cfg, sleep=sleep)
    assert not result.success
    assert result.markdown == markdown


@pytest.mark.asyncio
async def test_fix_errors_become_failed_results(ctx, sleep):
    """Test that a strategy error is reported as an unsuccessful fix, not raised."""
    cfg = make_settings(retry_max_attempts=1)
    llm = FakeLLM(lambda call: RuntimeError("model down"))
    markdown = _markdown()

    result = await apply_fix(markdown, _issue("regenerate"), ctx, llm=llm, cfg=cfg, sleep=sleep)

    assert not result.success
    assert result.markdown == markdown
    assert "regenerate failed" in result.description


@pytest.mark.asyncio
async def test_fix_cancellation_propagates(ctx, cfg, sleep):
    """Test that cancellation inside a strategy is not swallowed."""
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        await apply_fix(_markdown(), _issue("expand"), ctx, llm=PipelineLLM(), cfg=cfg, cancel=token, sleep=sleep)


# ── loop ──

@pytest.mark.asyncio
async def test_direct_edit_cap_per_iteration(ctx, sleep):
    """Test that direct edits beyond the per-iteration cap are skipped."""
    cfg = make_settings(max_direct_edits_per_iteration=2)
    counter = itertools.count()
    llm = FakeLLM(lambda call: {"edited_text": f"Edited {next(counter)}", "explanation": "edit"})
    issues = [_issue("direct_edit", location=h) for h in HEADLINES]

    markdown, applied, usage = await run_fixer_iteration(_markdown(), issues, ctx, 1, llm=llm, cfg=cfg, sleep=sleep)

    assert [f.target for f in applied] == HEADLINES[:2]
    assert all(f.success for f in applied)
    assert len(llm.calls) == 2
    assert usage.tokens.total == 2 * 150
    assert get_section_content(markdown, HEADLINES[3]) == section_text(HEADLINES[3])


@pytest.mark.asyncio
async def test_fixer_stops_when_review_approves(ctx, cfg, sleep):
    """Test that the loop re-reviews after fixing and stops once approved."""
    llm = PipelineLLM(reviews=[{"approved": True, "issues": [], "suggestions": []}])

    out = await run_fixer(
        _markdown(), _review(_issue("expand")), ctx, llm=llm, cfg=cfg, sleep=sleep,
    )

    assert out.iterations == 1
    assert out.review.approved is True
    assert EXPANSION in out.markdown
    assert [(f.strategy, f.success) for f in out.fixes_applied] == [("expand", True)]
    assert out.usage.tokens.total == 150
    assert out.review_usage.tokens.total == 150


@pytest.mark.asyncio
async def test_critical_issues_extend_iterations(ctx, sleep):
    """Test that critical issues keep the loop going past the normal limit."""
    cfg = make_settings(max_fixer_iterations=1, max_critical_fix_iterations=3)
    critical = _issue("regenerate", severity="critical")
    counter = itertools.count()

    def respond(call):
        if "senior editor reviewing" in call.system:
            return _review_json(critical)
        return f"Rewritten boss section, version {next(counter)}, with concrete Margit advice for new players."

    llm = FakeLLM(respond)
    out = await run_fixer(_markdown(), _review(critical), ctx, llm=llm, cfg=cfg, sleep=sleep)

    assert out.iterations == 3
    assert len(llm.calls_for("senior editor reviewing")) == 3
    assert "version 2" in get_section_content(out.markdown, "Early Bosses")


@pytest.mark.asyncio
async def test_major_issues_respect_normal_limit(ctx, sleep):
    """Test that without critical issues the loop stops at max_fixer_iterations."""
    cfg = make_settings(max_fixer_iterations=1, max_critical_fix_iterations=3)
    major = _issue("regenerate", severity="major")
    counter = itertools.count()

    def respond(call):
        if "senior editor reviewing" in call.system:
            return _review_json(major)
        return f"Rewritten boss section, version {next(counter)}, with concrete Margit advice for new players."

    out = await run_fixer(_markdown(), _review(major), ctx, llm=FakeLLM(respond), cfg=cfg, sleep=sleep)
    assert out.iterations == 1


@pytest.mark.asyncio
async def test_no_progress_stops_without_rereview(ctx, cfg, sleep):
    """Test that an iteration changing nothing ends the loop without another review."""
    llm = FakeLLM(lambda call: section_text("Early Bosses"))
    markdown = _markdown()

    out = await run_fixer(markdown, _review(_issue("expand")), ctx, llm=llm, cfg=cfg, sleep=sleep)

    assert out.iterations == 1
    assert out.markdown == markdown
    assert out.fixes_applied[0].success is False
    assert llm.calls_for("senior editor reviewing") == []


@pytest.mark.asyncio
async def test_nothing_to_fix(ctx, cfg, sleep):
    """Test that an approved draft without serious issues passes through untouched."""
    llm = FakeLLM()
    review = _review(_issue("direct_edit", severity="minor"), approved=True)

    out = await run_fixer(_markdown(), review, ctx, llm=llm, cfg=cfg, sleep=sleep)

    assert out.iterations == 0
    assert out.review is review
    assert llm.calls == []
