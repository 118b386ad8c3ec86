"""Tests for the HTML to PDF request pipeline."""

import asyncio
import base64
import logging

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pdf_service.errors import CleanupError, LaunchError, LoadTimeoutError, PdfServiceError, RenderError, ValidationError
from pdf_service.pdf_generator import DEFAULT_MARGIN, UNEXPECTED_ERROR_MESSAGE, PdfGenerator, build_print_options
from pdf_service.render_engine import A4_VIEWPORT_HEIGHT, A4_VIEWPORT_WIDTH
from pdf_service.schemas import PdfMargin, PdfOptions, PdfRequest
from tests.fake_engine import MINIMAL_PDF

SIMPLE_HTML = "<html><body><h1>Invoice 42</h1></body></html>"


@pytest.fixture
def generator(browser_manager):
    return PdfGenerator(browser_manager)


@pytest.mark.asyncio
async def test_generate_returns_pdf_with_timing(generator, fake_engine):
    result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert result.success
    assert result.error is None
    assert result.status_code == 200
    assert result.pdf == MINIMAL_PDF
    assert result.pdf.startswith(b"%PDF")

    timing = result.timing
    assert timing.engine_acquisition is not None
    assert timing.page_load is not None
    assert timing.pdf_generation is not None
    assert timing.total >= timing.page_load + timing.pdf_generation

    assert fake_engine.open_surfaces == 0
    assert fake_engine.open_contexts == 0


@pytest.mark.asyncio
async def test_result_schema_carries_base64_pdf(generator):
    result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    schema = result.to_schema()

    assert schema.success is True
    assert schema.error is None
    assert base64.b64decode(schema.pdf) == MINIMAL_PDF


@pytest.mark.asyncio
@pytest.mark.parametrize("html", [None, ""])
async def test_missing_html_is_rejected_without_launching(generator, fake_engine, html):
    result = await generator.generate(PdfRequest(html=html))

    assert not result.success
    assert isinstance(result.error, ValidationError)
    assert result.status_code == 400
    assert result.error_message == "HTML content is required"
    assert result.pdf is None
    assert result.timing.engine_acquisition is None
    assert result.timing.total >= 0
    assert fake_engine.launch_attempts == 0


@pytest.mark.asyncio
async def test_whitespace_html_is_rendered(generator):
    result = await generator.generate(PdfRequest(html="   "))

    assert result.success


@pytest.mark.asyncio
async def test_content_loaded_with_network_idle_and_timeout(generator, fake_engine):
    await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert fake_engine.set_content_calls == [{"html": SIMPLE_HTML, "wait_until": "networkidle", "timeout": 30_000}]


@pytest.mark.asyncio
async def test_surface_uses_a4_viewport_and_scale_factor(generator, fake_engine):
    await generator.generate(PdfRequest(html=SIMPLE_HTML, options=PdfOptions(format="Letter", landscape=True)))

    context_kwargs = fake_engine.context_calls[0]
    assert context_kwargs["viewport"] == {"width": A4_VIEWPORT_WIDTH, "height": A4_VIEWPORT_HEIGHT}
    assert context_kwargs["device_scale_factor"] == 2.0


@pytest.mark.asyncio
async def test_default_print_options(generator, fake_engine):
    await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert fake_engine.pdf_calls == [
        {
            "format": "A4",
            "margin": DEFAULT_MARGIN,
            "print_background": True,
            "landscape": False,
            "scale": 1.0,
            "prefer_css_page_size": False,
        }
    ]


@pytest.mark.asyncio
async def test_caller_print_options_are_forwarded(generator, fake_engine):
    options = PdfOptions(
        format="Letter",
        margin=PdfMargin(top="1in", right="0.5in", bottom="1in", left="0.5in"),
        print_background=False,
        landscape=True,
        scale=0.8,
    )

    await generator.generate(PdfRequest(html=SIMPLE_HTML, options=options))

    assert fake_engine.pdf_calls[0] == {
        "format": "Letter",
        "margin": {"top": "1in", "right": "0.5in", "bottom": "1in", "left": "0.5in"},
        "print_background": False,
        "landscape": True,
        "scale": 0.8,
        "prefer_css_page_size": False,
    }


@pytest.mark.asyncio
async def test_each_request_gets_its_own_surface(generator, fake_engine):
    await generator.generate(PdfRequest(html=SIMPLE_HTML))
    await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert len(fake_engine.context_calls) == 2
    assert fake_engine.launches == 1
    assert fake_engine.open_contexts == 0


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_launch(generator, fake_engine, browser_manager):
    fake_engine.launch_delay = 0.05

    results = await asyncio.gather(*(generator.generate(PdfRequest(html=f"<p>{i}</p>")) for i in range(10)))

    assert all(result.success for result in results)
    assert fake_engine.launch_attempts == 1
    assert fake_engine.open_surfaces == 0
    assert browser_manager.in_flight == 0


@pytest.mark.asyncio
async def test_launch_failure_is_reported(generator, fake_engine):
    fake_engine.launch_error = LaunchError("Browser launch failed: missing libnss3")

    result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert not result.success
    assert isinstance(result.error, LaunchError)
    assert result.status_code == 500
    assert result.error_message == "Browser launch failed: missing libnss3"
    assert result.timing.engine_acquisition is None
    assert result.timing.page_load is None
    assert result.timing.total >= 0


@pytest.mark.asyncio
async def test_load_timeout_is_reported_and_surface_closed(generator, fake_engine, browser_manager):
    fake_engine.load_error = PlaywrightTimeoutError("Timeout 30000ms exceeded.")

    result = await generator.generate(PdfRequest(html='<img src="http://10.255.255.1/slow.png">'))

    assert not result.success
    assert isinstance(result.error, LoadTimeoutError)
    assert result.status_code == 504
    assert "30 seconds" in result.error_message
    assert result.timing.engine_acquisition is not None
    assert result.timing.page_load is None
    assert fake_engine.open_surfaces == 0
    assert fake_engine.open_contexts == 0
    assert browser_manager.in_flight == 0
    assert browser_manager.is_running()


@pytest.mark.asyncio
async def test_export_failure_reports_first_line_only(generator, fake_engine):
    fake_engine.export_error = PlaywrightError("Protocol error (Page.printToPDF): Printing failed\nCall log:\n  - waiting for page")

    result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert not result.success
    assert isinstance(result.error, RenderError)
    assert result.status_code == 500
    assert result.error_message == "PDF export failed: Protocol error (Page.printToPDF): Printing failed"
    assert result.timing.page_load is not None
    assert result.timing.pdf_generation is None
    assert fake_engine.open_surfaces == 0


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_mask_render_error(generator, fake_engine, caplog):
    fake_engine.export_error = PlaywrightError("Printing failed")
    fake_engine.close_error = PlaywrightError("Target closed")

    with caplog.at_level(logging.WARNING):
        result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert isinstance(result.error, RenderError)
    assert "Failed to close rendering surface" in caplog.text


@pytest.mark.asyncio
async def test_cleanup_failure_after_success_keeps_result(generator, fake_engine, caplog):
    fake_engine.close_error = PlaywrightError("Target closed")

    with caplog.at_level(logging.WARNING):
        result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert result.success
    assert result.pdf == MINIMAL_PDF
    assert "Failed to close rendering surface" in caplog.text


@pytest.mark.asyncio
async def test_failed_page_close_still_closes_context(generator, fake_engine, caplog):
    fake_engine.page_close_error = PlaywrightError("Target closed")

    with caplog.at_level(logging.WARNING):
        result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert result.success
    assert fake_engine.open_contexts == 0
    assert fake_engine.open_surfaces == 0
    assert "Failed to close rendering surface: Target closed" in caplog.text


@pytest.mark.asyncio
async def test_failed_page_close_does_not_mask_load_timeout(generator, fake_engine):
    fake_engine.load_error = PlaywrightTimeoutError("Timeout 30000ms exceeded.")
    fake_engine.page_close_error = RuntimeError("connection reset")

    result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert isinstance(result.error, LoadTimeoutError)
    assert fake_engine.open_contexts == 0
    assert fake_engine.open_surfaces == 0


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_generic_failure(generator, fake_engine):
    fake_engine.export_error = ValueError("something odd")

    result = await generator.generate(PdfRequest(html=SIMPLE_HTML))

    assert not result.success
    assert type(result.error) is PdfServiceError
    assert result.error_message == UNEXPECTED_ERROR_MESSAGE
    assert result.status_code == 500
    assert fake_engine.open_surfaces == 0


@pytest.mark.asyncio
async def test_cancelled_request_closes_surface_and_releases_lease(generator, fake_engine, browser_manager):
    fake_engine.load_delay = 10

    task = asyncio.create_task(generator.generate(PdfRequest(html=SIMPLE_HTML)))
    while fake_engine.open_surfaces == 0:
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert fake_engine.open_surfaces == 0
    assert fake_engine.open_contexts == 0
    assert browser_manager.in_flight == 0


@pytest.mark.asyncio
async def test_metrics_recorded_for_success_and_failure(generator, fake_engine, browser_manager):
    await generator.generate(PdfRequest(html=SIMPLE_HTML))
    fake_engine.export_error = PlaywrightError("Printing failed")
    await generator.generate(PdfRequest(html=SIMPLE_HTML))

    metrics = browser_manager.metrics
    assert metrics.total_generations == 1
    assert metrics.failed_generations == 1
    assert metrics.get_error_rate() == 50.0


@pytest.mark.asyncio
async def test_html_preview_is_sanitized_in_logs(generator, caplog):
    html = "<p>line one\nline two</p>" + "x" * 500

    with caplog.at_level(logging.INFO, logger="pdf_service.pdf_generator"):
        await generator.generate(PdfRequest(html=html))

    start_messages = [record.getMessage() for record in caplog.records if record.getMessage().startswith("Generating PDF")]
    assert len(start_messages) == 1
    assert "\n" not in start_messages[0]
    assert "...[truncated]" in start_messages[0]


class TestBuildPrintOptions:
    """Resolution of caller options into Chromium print settings."""

    def test_no_options(self):
        options = build_print_options(None)

        assert options.format == "A4"
        assert options.margin == DEFAULT_MARGIN
        assert options.print_background is True
        assert options.landscape is False
        assert options.scale == 1.0
        assert options.prefer_css_page_size is False

    def test_empty_options_match_defaults(self):
        assert build_print_options(PdfOptions()) == build_print_options(None)

    def test_partial_margin_replaces_default(self):
        options = build_print_options(PdfOptions(margin=PdfMargin(top="20mm")))

        assert options.margin == {"top": "20mm"}

    def test_print_background_can_be_disabled(self):
        options = build_print_options(PdfOptions(print_background=False))

        assert options.print_background is False

    def test_camel_case_alias(self):
        options = build_print_options(PdfOptions.model_validate({"printBackground": False, "format": "Legal"}))

        assert options.print_background is False
        assert options.format == "Legal"

    def test_default_margin_not_shared_between_calls(self):
        first = build_print_options(None)
        first.margin["top"] = "99mm"

        assert build_print_options(None).margin["top"] == "10mm"


def test_cleanup_error_is_a_service_error():
    assert issubclass(CleanupError, PdfServiceError)
