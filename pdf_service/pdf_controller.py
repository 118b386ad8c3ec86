import asyncio
import contextlib
import logging
import os
import platform
import time
from collections.abc import AsyncGenerator
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Annotated

import psutil
from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError

from pdf_service.browser_manager import BrowserManager, get_browser_manager
from pdf_service.errors import LaunchError
from pdf_service.metrics_server import MetricsServer, get_metrics_port, is_metrics_server_enabled
from pdf_service.pdf_generator import PdfGenerator
from pdf_service.sanitization import first_line
from pdf_service.schemas import BrowserMetricsSchema, HealthSchema, PdfRequest, PdfResultSchema, PdfTiming, VersionSchema, WarmupSchema

logger = logging.getLogger(__name__)

STARTUP_WARMUP_DELAY_SECONDS = 1.0

GENERATE_PDF_PATH = "/generate-pdf"


def _resolve_browser_manager(app_instance: FastAPI) -> BrowserManager:
    provider = app_instance.dependency_overrides.get(get_browser_manager, get_browser_manager)
    return provider()


async def _warmup_on_startup(browser_manager: BrowserManager) -> None:
    await asyncio.sleep(STARTUP_WARMUP_DELAY_SECONDS)
    try:
        logger.info("Warming up browser on startup...")
        await browser_manager.ensure_ready()
        logger.info("Browser ready for requests")
    except LaunchError as e:
        logger.error("Startup warmup failed: %s", e.message)


@contextlib.asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncGenerator[None]:
    """
    Manage the lifecycle of the browser and the metrics server.

    The browser is launched lazily; with warmup enabled a background task
    launches it shortly after startup so the first request does not pay for
    the launch. A failing warmup is logged and does not stop the service.
    On shutdown the browser is closed once in-flight requests have finished
    or the grace period has elapsed.
    """
    browser_manager = _resolve_browser_manager(app_instance)

    metrics_server: MetricsServer | None = None
    if is_metrics_server_enabled():
        metrics_server = MetricsServer(browser_manager, port=get_metrics_port())
        await metrics_server.start()

    warmup_task: asyncio.Task[None] | None = None
    if browser_manager.warmup_on_startup:
        warmup_task = asyncio.create_task(_warmup_on_startup(browser_manager))

    yield  # Application runs here

    if warmup_task is not None and not warmup_task.done():
        warmup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await warmup_task

    try:
        logger.info("Stopping Chromium browser...")
        await browser_manager.stop()
    except Exception as e:  # noqa: BLE001
        logger.error("Error stopping Chromium browser: %s", e)

    if metrics_server is not None:
        await metrics_server.stop()


app = FastAPI(
    title="PDF Service API",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    openapi_version="3.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    """Report malformed /generate-pdf bodies in the same shape as any other failed generation."""
    if request.url.path != GENERATE_PDF_PATH:
        return await request_validation_exception_handler(request, exc)

    logger.warning("Rejected malformed PDF request body")
    result = PdfResultSchema(success=False, error=_describe_validation_error(exc), timing=PdfTiming())
    return Response(
        content=result.model_dump_json(by_alias=True, exclude_none=True),
        media_type="application/json",
        status_code=status.HTTP_400_BAD_REQUEST,
    )


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "invalid value")
    return first_line(f"Invalid request body: {location}: {message}" if location else f"Invalid request body: {message}")


@app.get(
    "/health",
    response_model=HealthSchema,
    summary="Health check",
    description="Reports service uptime and browser state. Always returns 200, also before the browser has been launched. Use ?detailed=true to include metrics.",
    operation_id="getHealth",
    tags=["meta"],
)
async def health(
    browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)],
    detailed: bool = Query(False, description="Include browser and generation metrics"),
) -> Response:
    """
    Health check endpoint reporting service and browser state.
    """
    last_used = browser_manager.last_used_at
    health_response = HealthSchema(
        status="healthy",
        uptime_seconds=round(_process_uptime_seconds(), 2),
        engine_active=browser_manager.is_running(),
        last_used=last_used.isoformat() if last_used else None,
    )

    if detailed:
        try:
            health_response.metrics = BrowserMetricsSchema(**browser_manager.get_metrics())  # type: ignore[arg-type]
        except Exception as e:  # noqa: BLE001
            logger.error("Failed to collect metrics for health check: %s", e)

    return Response(
        content=health_response.model_dump_json(by_alias=True, exclude=None if detailed else {"metrics"}),
        media_type="application/json",
        status_code=200,
    )


def _process_uptime_seconds() -> float:
    try:
        return time.time() - psutil.Process().create_time()
    except psutil.Error:
        return 0.0


@app.get(
    "/version",
    response_model=VersionSchema,
    summary="Service version information",
    description="Returns versions of Python, Playwright, the service itself, build timestamp, and Chromium.",
    operation_id="getVersion",
    tags=["meta"],
)
async def version(browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)]) -> dict[str, str | None]:
    """
    Get version information
    """
    logger.info("Version endpoint called")
    try:
        playwright_version: str | None = package_version("playwright")
    except PackageNotFoundError:
        playwright_version = None
    version_info = {
        "python": platform.python_version(),
        "playwright": playwright_version,
        "pdfService": os.environ.get("PDF_SERVICE_VERSION"),
        "timestamp": os.environ.get("PDF_SERVICE_BUILD_TIMESTAMP"),
        "chromium": browser_manager.get_version(),
    }
    logger.debug("Version info: %s", version_info)
    return version_info


@app.post(
    "/warmup",
    response_model=WarmupSchema,
    responses={500: {"model": WarmupSchema, "description": "Browser could not be launched"}},
    summary="Pre-launch the browser",
    description="Launches the browser if it is not running yet so the next PDF request does not pay the launch latency.",
    operation_id="warmup_post",
    tags=["browser"],
)
async def warmup(browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)]) -> Response:
    start_time = time.perf_counter()
    try:
        await browser_manager.ensure_ready()
    except LaunchError as e:
        logger.error("Warmup failed: %s", e.message)
        failure = WarmupSchema(success=False, error=e.to_user_message())
        return Response(
            content=failure.model_dump_json(by_alias=True, exclude_none=True),
            media_type="application/json",
            status_code=e.status_code,
        )

    duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
    logger.info("Browser warmed up in %.0fms", duration_ms)
    success = WarmupSchema(success=True, message="Browser warmed up", duration_ms=duration_ms, engine_active=browser_manager.is_running())
    return Response(content=success.model_dump_json(by_alias=True, exclude_none=True), media_type="application/json", status_code=200)


@app.post(
    GENERATE_PDF_PATH,
    response_model=PdfResultSchema,
    responses={
        400: {"model": PdfResultSchema, "description": "Invalid Input"},
        500: {"model": PdfResultSchema, "description": "Browser launch or PDF rendering failed"},
        504: {"model": PdfResultSchema, "description": "HTML content did not finish loading in time"},
    },
    summary="Convert HTML to PDF",
    description="Renders the HTML document from the JSON body with headless Chromium and returns the PDF base64-encoded together with a timing breakdown.",
    operation_id="generate_pdf_post",
    tags=["convert"],
)
async def generate_pdf(
    pdf_request: PdfRequest,
    browser_manager: Annotated[BrowserManager, Depends(get_browser_manager)],
) -> Response:
    """
    Convert the HTML document of the request body to a PDF.
    """
    logger.info("HTML to PDF conversion requested")
    result = await PdfGenerator(browser_manager).generate(pdf_request)
    return Response(
        content=result.to_schema().model_dump_json(by_alias=True, exclude_none=True),
        media_type="application/json",
        status_code=result.status_code,
    )
