"""
Dedicated metrics server for the Prometheus metrics endpoint.

The /metrics endpoint is served by its own small FastAPI application on a
separate port so it can be kept off the network segment that reaches the
PDF API. Only one metrics server can bind the port, so it is disabled when
the service runs several gunicorn workers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os

import uvicorn
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pdf_service.browser_manager import BrowserManager
from pdf_service.prometheus_metrics import update_gauges_from_browser_manager

logger = logging.getLogger(__name__)

MIN_VALID_PORT = 1024
MAX_VALID_PORT = 65535
DEFAULT_METRICS_PORT = 9180
STARTUP_TIMEOUT_SECONDS = 10.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

TRUTHY_VALUES = ("true", "1", "yes", "on")


def create_metrics_app(browser_manager: BrowserManager) -> FastAPI:
    """Build the metrics-only application reporting on the given browser manager."""
    metrics_app = FastAPI(title="PDF Service Metrics", version="1.0.0", docs_url=None, redoc_url=None, openapi_url=None)

    @metrics_app.get("/metrics")
    async def metrics() -> Response:
        # Counters move when events happen; scraping only refreshes the gauges
        update_gauges_from_browser_manager(browser_manager)
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return metrics_app


def get_metrics_port() -> int:
    """METRICS_PORT, or 9180 when unset, unparsable or outside the unprivileged port range."""
    raw_port = os.environ.get("METRICS_PORT")
    if raw_port is None:
        return DEFAULT_METRICS_PORT
    try:
        port = int(raw_port)
    except ValueError:
        logger.warning("Invalid METRICS_PORT value '%s', using default: %d", raw_port, DEFAULT_METRICS_PORT)
        return DEFAULT_METRICS_PORT
    if not MIN_VALID_PORT <= port <= MAX_VALID_PORT:
        logger.warning("METRICS_PORT must be between %d and %d, using default: %d", MIN_VALID_PORT, MAX_VALID_PORT, DEFAULT_METRICS_PORT)
        return DEFAULT_METRICS_PORT
    return port


def is_metrics_server_enabled() -> bool:
    return os.environ.get("METRICS_SERVER_ENABLED", "true").strip().lower() in TRUTHY_VALUES


class MetricsServer:
    """Runs the metrics application in a background uvicorn server on the current event loop."""

    def __init__(self, browser_manager: BrowserManager, port: int = DEFAULT_METRICS_PORT) -> None:
        self.port = port
        self.app = create_metrics_app(browser_manager)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Metrics server already started")
            return

        self._server = uvicorn.Server(uvicorn.Config(app=self.app, host="", port=self.port, log_level="warning"))
        self._task = asyncio.create_task(self._server.serve())

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT_SECONDS
        while not self._server.started:
            if self._task.done() or loop.time() > deadline:
                logger.error("Metrics server failed to start on port %d", self.port)
                await self.stop()
                raise TimeoutError(f"Metrics server failed to start within {STARTUP_TIMEOUT_SECONDS} seconds")
            await asyncio.sleep(0.01)

        logger.info("Metrics server started on port %d", self.port)

    async def stop(self) -> None:
        if self._task is None:
            return

        if self._server is not None:
            self._server.should_exit = True

        try:
            await asyncio.wait_for(self._task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except TimeoutError:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        except Exception as e:  # noqa: BLE001
            logger.error("Metrics server terminated with error: %s", e)

        self._task = None
        self._server = None
        logger.info("Metrics server stopped")
