"""Helpers that make caller-supplied HTML and engine error text safe to log or return."""

import re

_LINE_BREAKS = re.compile(r"\r|\n")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
TRUNCATION_MARKER = "...[truncated]"


def sanitize_for_logging(text: str, max_length: int = 1000) -> str:
    """Flatten `text` to a single printable line of at most `max_length` characters.

    Line breaks become spaces, remaining control characters are dropped and
    over-long text is cut and marked with ``...[truncated]``. Non-string input
    is converted with ``str()``.
    """
    flattened = _CONTROL_CHARS.sub("", _LINE_BREAKS.sub(" ", str(text)))
    if len(flattened) <= max_length:
        return flattened
    return flattened[:max_length] + TRUNCATION_MARKER


def first_line(text: str, max_length: int = 300) -> str:
    """First non-empty line of an engine error, sanitized.

    Playwright appends a multi-line call log to its error messages; only the
    headline is meant for API callers.
    """
    for line in str(text).splitlines():
        if line.strip():
            return sanitize_for_logging(line.strip(), max_length=max_length)
    return ""


def describe_html_for_logging(html: str, preview_length: int = 80) -> str:
    """Size plus a sanitized preview of an HTML payload, e.g. ``"1234 chars: <html><body>...[truncated]"``."""
    return f"{len(html)} chars: {sanitize_for_logging(html, max_length=preview_length)}"
