"""Dry-run rendering of a fetched legal text for the admin preview."""

import re
from typing import Tuple

from bs4 import BeautifulSoup, Comment
from markdownify import markdownify

# Tags whose entire subtree is dropped before rendering
_REMOVE_TAGS = {"script", "style", "noscript", "iframe", "object", "embed", "template"}

_JUNK_ATTRS = re.compile(r"^(style|on\w+)$", re.IGNORECASE)

_BLANK_LINES_RE = re.compile(r"\n{3,}")


def sanitize(html: str) -> BeautifulSoup:
    """Parse *html* and strip scripting, styling and comments."""
    soup = BeautifulSoup(html, "lxml")

    for tag in soup.find_all(_REMOVE_TAGS):
        tag.decompose()

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        for attr in [a for a in tag.attrs if _JUNK_ATTRS.match(a)]:
            del tag[attr]

    return soup


def _extract_title(soup: BeautifulSoup, fallback: str) -> str:
    for name in ("h1", "h2"):
        heading = soup.find(name)
        if heading and heading.get_text(strip=True):
            return heading.get_text(strip=True)
    return fallback


def render_preview(html: str, fallback_title: str = "") -> Tuple[str, str, str, int]:
    """Render legal-text HTML for preview.

    Returns:
        (title, sanitized_html, content_markdown, word_count)
    """
    soup = sanitize(html)
    body = soup.find("body") or soup
    title = _extract_title(body, fallback_title)

    content_markdown = markdownify(body.decode_contents(), heading_style="ATX").strip()
    content_markdown = _BLANK_LINES_RE.sub("\n\n", content_markdown)
    word_count = len(body.get_text(separator=" ", strip=True).split())

    return title, body.decode_contents(), content_markdown, word_count
