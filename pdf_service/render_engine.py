"""
Headless Chromium rendering engine accessed through Playwright.

This module is the only place that talks to Playwright. It launches Chromium
with a hardened flag set, hands out short-lived rendering surfaces (one
browser context and page per PDF request) and converts Playwright failures
into the service's own error types.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import psutil
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import ViewportSize, async_playwright

from pdf_service.errors import CleanupError, LaunchError, LoadTimeoutError, RenderError
from pdf_service.sanitization import first_line

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from playwright.async_api import Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)

# Browser isolation is traded for compatibility inside restricted containers
CHROMIUM_FLAGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
    "--disable-extensions",
    "--disable-web-security",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-component-extensions-with-background-pages",
    "--disable-renderer-backgrounding",
    "--enable-features=NetworkService,NetworkServiceInProcess",
)

# A4 at 96 DPI
A4_VIEWPORT_WIDTH = 794
A4_VIEWPORT_HEIGHT = 1123

_CHROMIUM_PROCESS_NAMES = ("chrome", "chromium", "headless_shell")


@dataclass(frozen=True)
class Viewport:
    """Viewport applied to a rendering surface when it is opened."""

    width: int = A4_VIEWPORT_WIDTH
    height: int = A4_VIEWPORT_HEIGHT
    device_scale_factor: float = 2.0


@dataclass(frozen=True)
class PrintOptions:
    """
    Print settings passed to Chromium's PDF export.

    Attributes:
        format: Paper format name (A4, Letter or Legal).
        margin: CSS lengths keyed by side; sides that are missing default to zero.
        print_background: Print CSS backgrounds.
        landscape: Rotate the paper.
        scale: Rendering scale (0.1 - 2).
        prefer_css_page_size: Let an @page size declared by the document win over ``format``.
    """

    format: str = "A4"
    margin: dict[str, str] = field(default_factory=lambda: {"top": "10mm", "right": "10mm", "bottom": "10mm", "left": "10mm"})
    print_background: bool = True
    landscape: bool = False
    scale: float = 1.0
    prefer_css_page_size: bool = False

    def to_playwright(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "margin": dict(self.margin),
            "print_background": self.print_background,
            "landscape": self.landscape,
            "scale": self.scale,
            "prefer_css_page_size": self.prefer_css_page_size,
        }


class RenderSurface:
    """A single browser context and page, scoped to exactly one PDF request."""

    def __init__(self, handle: EngineHandle, context: BrowserContext, page: Page) -> None:
        self._handle = handle
        self._context = context
        self._page = page
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def set_content(self, html: str, wait_until: str = "networkidle", timeout_ms: float = 30_000) -> None:
        """
        Load ``html`` as the document of this surface.

        Raises:
            LoadTimeoutError: If the network did not go idle within ``timeout_ms``.
            RenderError: If the content could not be loaded for any other reason.
        """
        try:
            await self._page.set_content(html, wait_until=wait_until, timeout=timeout_ms)  # type: ignore[arg-type]
        except PlaywrightTimeoutError as e:
            raise LoadTimeoutError(f"HTML content did not finish loading within {timeout_ms / 1000:g} seconds") from e
        except PlaywrightError as e:
            raise RenderError(f"Failed to load HTML content: {first_line(e.message)}") from e

    async def export_pdf(self, options: PrintOptions) -> bytes:
        """
        Render the loaded document to PDF.

        Raises:
            RenderError: If Chromium fails to produce the PDF.
        """
        try:
            return await self._page.pdf(**options.to_playwright())
        except PlaywrightError as e:
            raise RenderError(f"PDF export failed: {first_line(e.message)}") from e

    async def close(self) -> None:
        """
        Close the page and its context. Calling it again is a no-op.

        The context is closed even when closing the page fails, and the surface
        counts as closed afterwards either way.

        Raises:
            CleanupError: Carrying the first failure, if the page or the context could not be closed.
        """
        if self._closed:
            return
        self._closed = True
        failures: list[Exception] = []
        try:
            for closable in (self._page, self._context):
                try:
                    await closable.close()
                except Exception as e:  # noqa: BLE001
                    failures.append(e)
        finally:
            self._handle._surface_closed()
        if failures:
            raise CleanupError(f"Failed to close rendering surface: {first_line(str(failures[0]))}") from failures[0]


class EngineHandle:
    """
    Live reference to one running Chromium instance.

    Only the browser manager may close a handle; request code opens surfaces from it.
    """

    def __init__(self, playwright: Playwright, browser: Browser, process: psutil.Process | None = None) -> None:
        self._playwright = playwright
        self._browser = browser
        self._closed = False
        self.process = process
        self.open_surfaces = 0

    def is_alive(self) -> bool:
        try:
            return not self._closed and self._browser.is_connected()
        except Exception:  # noqa: BLE001
            return False

    @property
    def version(self) -> str | None:
        """Chromium version, e.g. ``131.0.6778.69`` from ``HeadlessChrome/131.0.6778.69``."""
        if self._closed:
            return None
        version_string = self._browser.version
        if "/" in version_string:
            return version_string.split("/")[1]
        return version_string

    @asynccontextmanager
    async def open_surface(self, viewport: Viewport) -> AsyncGenerator[RenderSurface]:
        """
        Open a fresh rendering surface and close it when the block exits.

        The surface is closed on every exit path, including cancellation.
        A failing close is logged and never replaces the error raised inside the block.
        """
        surface = await self._new_surface(viewport)
        try:
            yield surface
        finally:
            try:
                await surface.close()
            except CleanupError as e:
                logger.warning("%s", e.message)
            except Exception as e:  # noqa: BLE001
                logger.warning("Unexpected error closing rendering surface: %s", first_line(str(e)))

    async def _new_surface(self, viewport: Viewport) -> RenderSurface:
        if self._closed:
            raise RenderError("Browser has been closed")

        context: BrowserContext | None = None
        try:
            context = await self._browser.new_context(
                viewport=ViewportSize(width=viewport.width, height=viewport.height),
                device_scale_factor=viewport.device_scale_factor,
            )
            page = await context.new_page()
        except PlaywrightError as e:
            if context is not None:
                try:
                    await context.close()
                except PlaywrightError as close_error:
                    logger.warning("Error closing context after failed page creation: %s", first_line(close_error.message))
            raise RenderError(f"Failed to open a new page: {first_line(e.message)}") from e

        self.open_surfaces += 1
        return RenderSurface(self, context, page)

    def _surface_closed(self) -> None:
        self.open_surfaces = max(0, self.open_surfaces - 1)

    async def close(self) -> None:
        """Close the browser and stop Playwright. Errors are logged, not raised."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._browser.close()
        except Exception as e:  # noqa: BLE001
            logger.error("Error closing browser: %s", e)
        try:
            await self._playwright.stop()
        except Exception as e:  # noqa: BLE001
            logger.error("Error stopping Playwright: %s", e)
        self.process = None


class PlaywrightEngine:
    """Launches headless Chromium instances through Playwright."""

    def __init__(self, headless: bool = True) -> None:
        self.headless = headless

    async def launch(self, flags: tuple[str, ...] = CHROMIUM_FLAGS) -> EngineHandle:
        """
        Start Playwright and launch Chromium.

        Raises:
            LaunchError: If Playwright or Chromium cannot be started.
        """
        playwright: Playwright | None = None
        try:
            playwright = await async_playwright().start()
            browser = await playwright.chromium.launch(headless=self.headless, args=list(flags))
        except Exception as e:
            if playwright is not None:
                try:
                    await playwright.stop()
                except Exception as stop_error:  # noqa: BLE001
                    logger.error("Error stopping Playwright after failed launch: %s", stop_error)
            raise LaunchError(f"Browser launch failed: {first_line(str(e))}") from e

        return EngineHandle(playwright, browser, find_chromium_process())


def find_chromium_process() -> psutil.Process | None:
    """
    Find the root Chromium process among this process' descendants.

    Playwright does not expose the browser PID, so the process tree is searched
    for the first Chromium process whose parent is not itself Chromium.
    """
    try:
        for child in psutil.Process().children(recursive=True):
            if not _is_chromium(child):
                continue
            parent = child.parent()
            if parent is None or not _is_chromium(parent):
                logger.debug("Found Chromium process PID: %d", child.pid)
                return child
    except psutil.Error as e:
        logger.warning("Could not attach to Chromium process for resource monitoring: %s", e)
    return None


def _is_chromium(process: psutil.Process) -> bool:
    try:
        name = process.name().lower()
    except psutil.Error:
        return False
    return any(candidate in name for candidate in _CHROMIUM_PROCESS_NAMES)
