"""Tests for the sanitization module."""

import pytest

from pdf_service.sanitization import describe_html_for_logging, first_line, sanitize_for_logging


class TestSanitizeForLogging:
    """Test cases for sanitize_for_logging function."""

    def test_normal_text(self) -> None:
        assert sanitize_for_logging("normal text") == "normal text"

    def test_mixed_line_endings(self) -> None:
        """Newlines and carriage returns become spaces."""
        assert sanitize_for_logging("line1\nline2\r\nline3\rline4") == "line1 line2  line3 line4"

    def test_control_character_removal(self) -> None:
        assert sanitize_for_logging("test\x00\x01\x02\x1f\x7fdata") == "testdata"

    def test_non_string_input(self) -> None:
        assert sanitize_for_logging(123) == "123"  # type: ignore[arg-type]
        assert sanitize_for_logging(None) == "None"  # type: ignore[arg-type]

    def test_unicode_preserved(self) -> None:
        assert sanitize_for_logging("Grüezi: ñáéíóú") == "Grüezi: ñáéíóú"

    def test_truncation_custom_length(self) -> None:
        result = sanitize_for_logging("b" * 200, max_length=50)
        assert result == "b" * 50 + "...[truncated]"


@pytest.mark.parametrize(
    "input_text,max_length,expected_length",
    [
        ("a" * 50, 100, 50),
        ("b" * 150, 100, 100 + len("...[truncated]")),
        ("d" * 2000, 1000, 1000 + len("...[truncated]")),
    ],
)
def test_sanitize_for_logging_truncation_parametrized(input_text: str, max_length: int, expected_length: int) -> None:
    assert len(sanitize_for_logging(input_text, max_length=max_length)) == expected_length


class TestDescribeHtmlForLogging:
    """Test cases for describe_html_for_logging function."""

    def test_short_document(self) -> None:
        assert describe_html_for_logging("<p>Hi</p>") == "9 chars: <p>Hi</p>"

    def test_long_document_is_previewed(self) -> None:
        html = "<html>\n<head>\n<title>Test</title>\n</head>\n<body>" + "x" * 500 + "</body></html>"

        description = describe_html_for_logging(html, preview_length=40)

        assert description.startswith(f"{len(html)} chars: <html> <head> <title>Test</title>")
        assert description.endswith("...[truncated]")
        assert "\n" not in description


class TestFirstLine:
    """Test cases for first_line function."""

    def test_playwright_call_log_is_dropped(self) -> None:
        message = "Timeout 30000ms exceeded.\n=========================== logs ===========================\n  navigating to about:blank"

        assert first_line(message) == "Timeout 30000ms exceeded."

    def test_leading_blank_lines_are_skipped(self) -> None:
        assert first_line("\n   \n  Target page, context or browser has been closed  \nCall log:") == "Target page, context or browser has been closed"

    def test_sanitized_and_bounded(self) -> None:
        assert first_line("bad\x00input") == "badinput"
        assert first_line("x" * 500, max_length=20) == "x" * 20 + "...[truncated]"

    @pytest.mark.parametrize("text", ["", "  \n ", "\r\n"])
    def test_blank_text(self, text: str) -> None:
        assert first_line(text) == ""
