"""
Cross-reference memory for sequential section writing.

After each section the state records the topics it covered, the terms it
bolded (defined) and which required elements it mentioned, so later sections
can reference instead of re-explaining. Parallel writing never uses it.
"""
from pydantic import BaseModel
from typing import Dict, Iterable, List, Set
import re


class CoveredTopic(BaseModel):
    topic: str
    section_headline: str
    section_index: int


class SectionWriteState(BaseModel):
    covered_topics: Dict[str, CoveredTopic] = {}
    covered_elements: Set[str] = set()
    defined_terms: Set[str] = set()
    sections_written: int = 0

    model_config = {"frozen": True}


_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*|__([^_]+)__")
_QUOTED_RE = re.compile(r'"([A-Z][a-zA-Z\s]{2,30})"')
_PROPER_NOUN_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+){1,3})\b")

_COMMON_PHRASES = {
    "The Game", "This Guide", "The Player", "The First", "The Last", "The Best",
    "The Most", "The Next", "The Same", "In This", "For Example", "For Instance",
    "On The", "At The", "To The", "From The", "With The", "As The", "By The",
    "After The", "Before The", "During The",
}


def _norm(term: str) -> str:
    return term.lower().strip()


def create_initial_section_write_state() -> SectionWriteState:
    return SectionWriteState()


def extract_defined_terms(markdown: str) -> Set[str]:
    """Bold terms of 2-50 characters."""
    terms = set()
    for match in _BOLD_RE.finditer(markdown):
        term = (match.group(1) or match.group(2)).strip()
        if 2 <= len(term) <= 50:
            terms.add(term)
    return terms


def extract_covered_topics(markdown: str) -> Set[str]:
    """Bold terms, quoted capitalized phrases, and proper nouns seen at least twice."""
    topics = extract_defined_terms(markdown)
    topics.update(m.group(1).strip() for m in _QUOTED_RE.finditer(markdown))

    counts: Dict[str, int] = {}
    for match in _PROPER_NOUN_RE.finditer(markdown):
        term = match.group(1).strip()
        if term not in _COMMON_PHRASES:
            counts[term] = counts.get(term, 0) + 1
    topics.update(noun for noun, count in counts.items() if count >= 2)
    return topics


def detect_covered_elements(markdown: str, elements: Iterable[str]) -> List[str]:
    lowered = markdown.lower()
    return [e for e in elements if _norm(e) and _norm(e) in lowered]


def update_section_write_state(
    state: SectionWriteState,
    section_markdown: str,
    section_headline: str,
    covered_elements: Iterable[str] = (),
) -> SectionWriteState:
    """New state with the section's topics, terms and elements added. First mention wins."""
    index = state.sections_written + 1

    topics = dict(state.covered_topics)
    for topic in extract_covered_topics(section_markdown):
        key = _norm(topic)
        if key not in topics:
            topics[key] = CoveredTopic(topic=topic, section_headline=section_headline, section_index=index)

    return SectionWriteState(
        covered_topics=topics,
        covered_elements=state.covered_elements | {_norm(e) for e in covered_elements},
        defined_terms=state.defined_terms | {_norm(t) for t in extract_defined_terms(section_markdown)},
        sections_written=index,
    )


def get_uncovered_elements(state: SectionWriteState, required_elements: Iterable[str]) -> List[str]:
    return [e for e in required_elements if _norm(e) not in state.covered_elements]


def build_cross_reference_context(state: SectionWriteState) -> str:
    if state.sections_written == 0 or not state.covered_topics:
        return ""

    by_section: Dict[int, List[CoveredTopic]] = {}
    for topic in state.covered_topics.values():
        by_section.setdefault(topic.section_index, []).append(topic)

    lines = [
        "=== ALREADY COVERED (DO NOT RE-EXPLAIN) ===",
        "These were explained in earlier sections. Reference them briefly:",
        "",
    ]
    for index in sorted(by_section):
        topics = by_section[index]
        names = ", ".join(t.topic for t in topics[:10])
        lines.append(f'- Section "{topics[0].section_headline}": {names}')

    if state.defined_terms:
        lines.append("")
        lines.append("Previously bolded terms (do not bold again): " + ", ".join(sorted(state.defined_terms)[:15]))
    return "\n".join(lines)


def build_required_elements_reminder(
    state: SectionWriteState,
    required_elements: Iterable[str],
    section_priorities: Iterable[str] = (),
) -> str:
    uncovered = get_uncovered_elements(state, required_elements)
    if not uncovered:
        return ""

    priorities = {_norm(p) for p in section_priorities}
    now = [e for e in uncovered if _norm(e) in priorities]
    later = [e for e in uncovered if _norm(e) not in priorities]

    blocks = []
    if now:
        blocks.append("=== MUST COVER IN THIS SECTION ===\n" + ", ".join(now))
    if later and len(later) <= 5:
        blocks.append("=== STILL NEEDS COVERAGE (later sections) ===\n" + ", ".join(later))
    return "\n\n".join(blocks)
