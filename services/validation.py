"""
Input and output checks that need no model call.

validate_article_context guards the run's input and reports every violation
in a single CONTEXT_INVALID error. validate_article_draft inspects the
finished article and returns error / warning issues; it never raises.
"""
from typing import Iterable, List
from urllib.parse import urlparse
from config import Settings
from errors import ArticleGenerationError, ErrorKind
from models.articles import ValidationIssue
from models.requests import ArticleContext
from utils.markdown import content_h2_sections, strip_sources_section
import re

AI_CLICHES = [
    ("in conclusion", "conclusion cliché"),
    ("let's dive into", "conversational filler"),
    ("without further ado", "unnecessary preamble"),
    ("it's worth noting", "hedging phrase"),
    ("game-changing", "marketing hyperbole"),
    ("truly revolutionary", "marketing hyperbole"),
    ("seamlessly", "overused modifier"),
    ("unparalleled", "marketing hyperbole"),
    ("delve into", "academic formality"),
    ("utilize", 'unnecessarily formal (use "use")'),
    ("at the end of the day", "filler phrase"),
    ("needless to say", "redundant phrase"),
]

PLACEHOLDER_PATTERNS = ["TODO", "TBD", "PLACEHOLDER", "FIXME", "[INSERT", "XXX"]

ALLOWED_SENTENCE_START_REPEATS = {
    "the", "a", "an", "this", "that", "it", "and", "but", "or",
    "if", "as", "in", "on", "for", "to", "with",
}

MAX_SENTENCE_START_REPEATS = 6
MIN_SECTION_CHARS = 100

_CURRENCY_RE = re.compile(r"[$€£¥]\s*\d+")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def _issue(severity: str, message: str) -> ValidationIssue:
    return ValidationIssue(severity=severity, message=message)


def _placeholder_re(placeholder: str) -> re.Pattern:
    # "[INSERT" starts with a non-word char, so \b only applies where it can match
    lead = r"\b" if placeholder[0].isalnum() else ""
    return re.compile(f"{lead}{re.escape(placeholder)}\\b", re.IGNORECASE)


_PLACEHOLDER_RES = [(p, _placeholder_re(p)) for p in PLACEHOLDER_PATTERNS]


def validate_structure(
    title: str, excerpt: str, tags: List[str], markdown: str, sources: List[str], cfg: Settings,
) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []

    if len(excerpt) < cfg.excerpt_min_length:
        issues.append(_issue("error", f"Excerpt too short: {len(excerpt)} characters (minimum {cfg.excerpt_min_length})"))
    if len(excerpt) > cfg.excerpt_max_length:
        issues.append(_issue("error", f"Excerpt too long: {len(excerpt)} characters (maximum {cfg.excerpt_max_length})"))

    if not title or len(title) < cfg.title_min_length:
        issues.append(_issue("error", "Title is too short or missing"))
    if len(title) > cfg.title_max_length:
        issues.append(_issue("warning", f"Title is quite long: {len(title)} characters (recommended: 50-70)"))

    sections = content_h2_sections(markdown)
    if len(sections) < cfg.min_sections:
        issues.append(_issue("warning", f"Only {len(sections)} sections found (recommended: 4-8)"))
    for i, section in enumerate(sections, 1):
        if len(section.content) < MIN_SECTION_CHARS:
            issues.append(_issue("warning", f"Section {i} appears very short ({len(section.content)} characters)"))

    if len(markdown) < cfg.min_markdown_length:
        issues.append(_issue("warning", f"Article content is short: {len(markdown)} characters"))

    if not tags:
        issues.append(_issue("warning", "No tags were generated"))
    if len(tags) > cfg.max_tags:
        issues.append(_issue("error", f"Too many tags: {len(tags)} (maximum {cfg.max_tags})"))

    if not sources:
        issues.append(_issue("warning", "No sources were collected"))
    for i, url in enumerate(sources):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            issues.append(_issue("error", f"Invalid source URL at index {i}: {url}"))

    return issues


def find_repetitive_sentence_starts(text: str) -> List[str]:
    counts = {}
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        words = sentence.split()
        if not words:
            continue
        first = words[0].lower()
        if len(first) > 2:
            counts[first] = counts.get(first, 0) + 1
    return [
        f'"{word}" ({count}x)'
        for word, count in counts.items()
        if count > MAX_SENTENCE_START_REPEATS and word not in ALLOWED_SENTENCE_START_REPEATS
    ]


def validate_content_quality(markdown: str) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    content = strip_sources_section(markdown)

    if "```" in content:
        issues.append(_issue("warning", "Article contains code fences (usually undesirable for prose)"))
    if _CURRENCY_RE.search(content):
        issues.append(_issue("warning", "Article contains pricing information or currency figures (verify policy compliance)"))

    for placeholder, pattern in _PLACEHOLDER_RES:
        if pattern.search(content):
            issues.append(_issue("error", f"Article contains placeholder text: {placeholder}"))

    lowered = content.lower()
    found = [f'"{phrase}" ({context})' for phrase, context in AI_CLICHES if phrase in lowered]
    if found:
        issues.append(_issue("warning", f"Article contains {len(found)} AI cliché(s): {', '.join(found)}"))

    repetitive = find_repetitive_sentence_starts(content)
    if repetitive:
        issues.append(_issue("warning", f"Repetitive sentence starts detected: {', '.join(repetitive)}"))

    return issues


def validate_article_draft(
    title: str, excerpt: str, tags: List[str], markdown: str, sources: List[str], cfg: Settings,
) -> List[ValidationIssue]:
    return [
        *validate_structure(title, excerpt, tags, markdown, sources, cfg),
        *validate_content_quality(markdown),
    ]


def errors_of(issues: Iterable[ValidationIssue]) -> List[ValidationIssue]:
    return [i for i in issues if i.severity == "error"]


def warnings_of(issues: Iterable[ValidationIssue]) -> List[ValidationIssue]:
    return [i for i in issues if i.severity == "warning"]


def validate_article_context(context: ArticleContext) -> ArticleContext:
    """Raise CONTEXT_INVALID listing every problem with the caller's input."""
    problems: List[str] = []

    if not (context.game_name or "").strip():
        problems.append("game_name is required and cannot be empty")
    if any(not g.strip() for g in context.genres):
        problems.append("genres must not contain blank entries")
    if any(not p.strip() for p in context.platforms):
        problems.append("platforms must not contain blank entries")
    for i, hint in enumerate(context.category_hints):
        if not (hint.slug or "").strip():
            problems.append(f"category_hints[{i}] must have a slug")
    if context.target_word_count is not None and context.target_word_count <= 0:
        problems.append(f"target_word_count must be positive (got {context.target_word_count})")
    if context.instruction is not None and len(context.instruction) > 2000:
        problems.append(f"instruction is too long ({len(context.instruction)} characters, maximum 2000)")

    if problems:
        raise ArticleGenerationError(
            ErrorKind.CONTEXT_INVALID,
            "Invalid article context: " + "; ".join(problems),
        )
    return context
