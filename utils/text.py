import re
from bs4 import BeautifulSoup

_HTML_HINT_RE = re.compile(r"<(?:html|body|div|p|span|article|section|a|br|table|ul|li)\b", re.IGNORECASE)


def truncate(text: str, max_chars: int, suffix: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - len(suffix))] + suffix


def extract_domain(url: str) -> str:
    match = re.search(r"https?://(?:www\.)?([^/?#:]+)", url, re.IGNORECASE)
    return match.group(1).lower() if match else url


def strip_html(text: str) -> str:
    """Reduce scraped HTML to readable text. Plain text / markdown passes through."""
    if not text or not _HTML_HINT_RE.search(text):
        return text
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "form", "noscript"]):
        tag.decompose()
    lines = [line.strip() for line in soup.get_text(separator="\n").splitlines()]
    return "\n".join(line for line in lines if line)
