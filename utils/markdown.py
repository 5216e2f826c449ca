import re
from typing import List, NamedTuple

_SOURCES_HEADING_RE = re.compile(r"^##\s+Sources\s*$", re.IGNORECASE | re.MULTILINE)


class H2Section(NamedTuple):
    heading: str
    content: str


def normalize_heading(heading: str) -> str:
    return re.sub(r"\s+", " ", heading.strip()).lower()


def is_sources_heading(heading: str) -> bool:
    return normalize_heading(heading) == "sources"


def parse_h2_sections(markdown: str) -> List[H2Section]:
    """Split on '## ' lines. Text before the first H2 (the title) is ignored."""
    sections: List[H2Section] = []
    heading = None
    body: List[str] = []
    for line in markdown.split("\n"):
        if line.startswith("## "):
            if heading is not None:
                sections.append(H2Section(heading, "\n".join(body).strip()))
            heading = line[3:].strip()
            body = []
        elif heading is not None:
            body.append(line)
    if heading is not None:
        sections.append(H2Section(heading, "\n".join(body).strip()))
    return sections


def content_h2_sections(markdown: str) -> List[H2Section]:
    return [s for s in parse_h2_sections(markdown) if not is_sources_heading(s.heading)]


def strip_sources_section(markdown: str) -> str:
    match = _SOURCES_HEADING_RE.search(markdown)
    return markdown[:match.start()].rstrip() if match else markdown
