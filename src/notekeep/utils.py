"""Utility functions for the notekeep storage engine."""

import html
import re
from datetime import datetime

import bleach

# Tags whose boundaries separate words when the markup is flattened
_BLOCK_BOUNDARY = re.compile(
    r"<\s*(?:br|hr)\s*/?>|<\s*/\s*(?:p|div|li|h[1-6]|blockquote|pre|tr|td|th)\s*>",
    re.IGNORECASE,
)
_WHITESPACE = re.compile(r"\s+")


def strip_html(markup: str) -> str:
    """Reduce rich note markup to its plain text content.

    Block-level boundaries become single spaces so that words from adjacent
    paragraphs do not run together. Entities are decoded.

    Examples:
        "<p>Hello <b>world</b></p><p>again</p>" -> "Hello world again"
        "a &amp; b" -> "a & b"

    Args:
        markup: HTML fragment as stored in a note's content.

    Returns:
        Plain text with collapsed whitespace.
    """
    if not markup:
        return ""
    spaced = _BLOCK_BOUNDARY.sub(" ", markup)
    text = bleach.clean(spaced, tags=set(), attributes={}, strip=True)
    return _WHITESPACE.sub(" ", html.unescape(text)).strip()


def count_words(markup: str) -> int:
    """Count whitespace-separated words in the plain text of some markup."""
    text = strip_html(markup)
    return len(text.split()) if text else 0


def format_date(value: datetime) -> str:
    """Format a timestamp as a short calendar date for exports."""
    return value.strftime("%Y-%m-%d")
