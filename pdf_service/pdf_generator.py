"""
HTML to PDF request pipeline.

Each request validates its input, leases the shared browser, opens its own
rendering surface, loads the HTML, exports the PDF and closes the surface.
Every stage is timed. Failures are returned as unsuccessful results rather
than raised, and the surface is closed on every exit path.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pdf_service import prometheus_metrics
from pdf_service.errors import PdfServiceError, ValidationError
from pdf_service.render_engine import PrintOptions, Viewport
from pdf_service.sanitization import describe_html_for_logging
from pdf_service.schemas import PdfOptions, PdfRequest, PdfResultSchema, PdfTiming

if TYPE_CHECKING:
    from pdf_service.browser_manager import BrowserManager

DEFAULT_MARGIN = {"top": "10mm", "right": "10mm", "bottom": "10mm", "left": "10mm"}

# Wait until there has been no network activity for a short settling window
WAIT_UNTIL = "networkidle"

UNEXPECTED_ERROR_MESSAGE = "Unexpected error during PDF generation"


@dataclass
class PdfResult:
    """Outcome of one PDF request."""

    success: bool
    timing: PdfTiming
    pdf: bytes | None = None
    error: PdfServiceError | None = None

    @property
    def status_code(self) -> int:
        return 200 if self.error is None else self.error.status_code

    @property
    def error_message(self) -> str | None:
        return None if self.error is None else self.error.to_user_message()

    def to_schema(self) -> PdfResultSchema:
        return PdfResultSchema(
            success=self.success,
            pdf=base64.b64encode(self.pdf).decode("ascii") if self.pdf is not None else None,
            error=self.error_message,
            timing=self.timing,
        )


def build_print_options(options: PdfOptions | None) -> PrintOptions:
    """
    Resolve caller options into print settings.

    A caller-supplied margin replaces the default as a whole: sides it leaves
    out are printed without margin. CSS-declared page sizes never win.
    """
    if options is None:
        options = PdfOptions()

    margin = dict(DEFAULT_MARGIN) if options.margin is None else options.margin.model_dump(exclude_none=True)
    return PrintOptions(
        format=options.format or "A4",
        margin=margin,
        print_background=True if options.print_background is None else options.print_background,
        landscape=bool(options.landscape),
        scale=options.scale or 1.0,
        prefer_css_page_size=False,
    )


class PdfGenerator:
    """Turns a PdfRequest into a PdfResult using the browser owned by a BrowserManager."""

    def __init__(self, browser_manager: BrowserManager, logger: logging.Logger | None = None) -> None:
        self._browser_manager = browser_manager
        self.log = logger or logging.getLogger(__name__)

    async def generate(self, request: PdfRequest) -> PdfResult:
        """
        Generate a PDF for ``request``.

        Never raises for pipeline failures: validation, launch, load, export and
        unexpected errors all produce ``success=False`` with whatever timing was
        collected. Cancellation propagates after the surface has been closed.
        """
        total_start = time.perf_counter()
        timing = PdfTiming()

        try:
            html = self._validate(request)
            print_options = build_print_options(request.options)
            self.log.info("Generating PDF (%s)", describe_html_for_logging(html))

            acquisition_start = time.perf_counter()
            async with self._browser_manager.lease() as handle:
                timing.engine_acquisition = _elapsed_ms(acquisition_start)

                load_start = time.perf_counter()
                async with handle.open_surface(self._viewport()) as surface:
                    await surface.set_content(html, wait_until=WAIT_UNTIL, timeout_ms=self._browser_manager.page_load_timeout * 1000)
                    timing.page_load = _elapsed_ms(load_start)

                    export_start = time.perf_counter()
                    pdf = await surface.export_pdf(print_options)
                    timing.pdf_generation = _elapsed_ms(export_start)

        except PdfServiceError as e:
            timing.total = _elapsed_ms(total_start)
            return self._failure(e, timing)
        except Exception as e:
            timing.total = _elapsed_ms(total_start)
            self.log.error("Unexpected error in PDF generation: %s", e, exc_info=True)
            return self._failure(PdfServiceError(UNEXPECTED_ERROR_MESSAGE), timing)

        timing.total = _elapsed_ms(total_start)
        self._record_success(timing)
        self.log.info(
            "PDF generated in %.0fms (browser: %.0fms, load: %.0fms, pdf: %.0fms), size: %d bytes",
            timing.total,
            timing.engine_acquisition,
            timing.page_load,
            timing.pdf_generation,
            len(pdf),
        )
        return PdfResult(success=True, timing=timing, pdf=pdf)

    @staticmethod
    def _validate(request: PdfRequest) -> str:
        if not request.html:
            raise ValidationError("HTML content is required")
        return request.html

    def _viewport(self) -> Viewport:
        # A4-shaped regardless of the requested paper format
        return Viewport(device_scale_factor=self._browser_manager.device_scale_factor)

    def _failure(self, error: PdfServiceError, timing: PdfTiming) -> PdfResult:
        error_type = type(error).__name__
        if isinstance(error, ValidationError):
            self.log.warning("Rejected PDF request: %s", error.to_user_message())
        else:
            self.log.error("PDF generation failed after %.0fms (%s): %s", timing.total, error_type, error.to_user_message())

        self._browser_manager.metrics.record_failure()
        prometheus_metrics.increment_pdf_generation_failure(error_type)
        return PdfResult(success=False, timing=timing, error=error)

    def _record_success(self, timing: PdfTiming) -> None:
        acquisition = timing.engine_acquisition or 0.0
        page_load = timing.page_load or 0.0
        pdf_generation = timing.pdf_generation or 0.0
        self._browser_manager.metrics.record_success(timing.total, acquisition, page_load, pdf_generation)
        prometheus_metrics.increment_pdf_generation_success(
            timing.total / 1000,
            {"engine_acquisition": acquisition / 1000, "page_load": page_load / 1000, "pdf_generation": pdf_generation / 1000},
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)
