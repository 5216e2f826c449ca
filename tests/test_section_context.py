"""Tests for the cross-reference memory used in sequential writing."""

from services.section_context import (
    build_cross_reference_context,
    build_required_elements_reminder,
    create_initial_section_write_state,
    detect_covered_elements,
    extract_covered_topics,
    extract_defined_terms,
    get_uncovered_elements,
    update_section_write_state,
)

FIRST = (
    "Summon **Spirit Ashes** near a Rebirth Monument. The **Flask of Wondrous Physick** is optional. "
    "Ride Torrent across Stormhill. Stormhill Shack sits at the start, and Stormhill Shack has a grace."
)


def test_extract_defined_terms_reads_bold():
    """Test that bold terms within the length limits are collected."""
    assert extract_defined_terms("**A** and **Torrent** and __Runes__") == {"Torrent", "Runes"}


def test_covered_topics_need_repeated_proper_nouns():
    """Test that proper nouns count only when repeated, bold terms always."""
    topics = extract_covered_topics(FIRST)
    assert "Spirit Ashes" in topics
    assert "Stormhill Shack" in topics
    assert "Rebirth Monument" not in topics


def test_detect_covered_elements_case_insensitive():
    """Test that required elements are matched regardless of case."""
    assert detect_covered_elements(FIRST, ["torrent", "Margit", " "]) == ["torrent"]


def test_update_state_first_mention_wins():
    """Test that a topic keeps the section that introduced it."""
    state = create_initial_section_write_state()
    state = update_section_write_state(state, FIRST, "Getting Started", ["Torrent"])
    state = update_section_write_state(state, "More on **Spirit Ashes** later.", "Bosses")

    assert state.sections_written == 2
    assert state.covered_topics["spirit ashes"].section_headline == "Getting Started"
    assert "torrent" in state.covered_elements
    assert "spirit ashes" in state.defined_terms


def test_state_updates_return_new_objects():
    """Test that updating leaves the previous state unchanged."""
    initial = create_initial_section_write_state()
    update_section_write_state(initial, FIRST, "Getting Started")
    assert initial.sections_written == 0
    assert initial.covered_topics == {}


def test_cross_reference_context():
    """Test that the context lists covered topics per section and bolded terms."""
    assert build_cross_reference_context(create_initial_section_write_state()) == ""

    state = update_section_write_state(create_initial_section_write_state(), FIRST, "Getting Started")
    text = build_cross_reference_context(state)
    assert "ALREADY COVERED" in text
    assert 'Section "Getting Started"' in text
    assert "spirit ashes" in text


def test_required_elements_reminder_splits_now_and_later():
    """Test that the reminder separates this section's priorities from later ones."""
    state = update_section_write_state(create_initial_section_write_state(), FIRST, "Start", ["Torrent"])
    required = ["Torrent", "Margit", "Golden Seeds"]

    assert get_uncovered_elements(state, required) == ["Margit", "Golden Seeds"]
    reminder = build_required_elements_reminder(state, required, ["margit"])
    assert "MUST COVER IN THIS SECTION ===\nMargit" in reminder
    assert "later sections) ===\nGolden Seeds" in reminder
    assert build_required_elements_reminder(state, ["Torrent"]) == ""
