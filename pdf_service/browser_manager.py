"""
Browser lifecycle management for HTML to PDF rendering.

This module provides a BrowserManager that owns at most one headless Chromium
instance per process. The browser is launched lazily on the first request,
reused by every following request and evicted once it has been idle for
longer than the configured threshold. Eviction is checked at the start of
every acquisition (there is no background timer) and is deferred while any
request still holds a lease on the browser.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import psutil

from pdf_service import prometheus_metrics
from pdf_service.errors import LaunchError
from pdf_service.render_engine import CHROMIUM_FLAGS, PlaywrightEngine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from pdf_service.render_engine import EngineHandle

# Upper bound for closing the browser once shutdown has started
CLOSE_TIMEOUT_SECONDS = 10.0


@dataclass
class BrowserConfig:
    """
    Configuration settings for BrowserManager.

    Every attribute left as None is read from its environment variable.

    Attributes:
        idle_timeout: Seconds without a request after which the browser is evicted (1-86400, default 300).
        page_load_timeout: Seconds to wait for HTML content to settle (1-300, default 30).
        device_scale_factor: Device pixel ratio of the rendering viewport (1.0-10.0, default 2.0).
        shutdown_grace_period: Seconds shutdown waits for in-flight requests (0-120, default 10).
        warmup_on_startup: Launch the browser in the background when the service starts (default True).
    """

    idle_timeout: int | None = None
    page_load_timeout: int | None = None
    device_scale_factor: float | None = None
    shutdown_grace_period: int | None = None
    warmup_on_startup: bool | None = None


@dataclass
class BrowserMetrics:
    """
    Counters and averages describing the browser and the requests it served.

    Attributes:
        total_launches: Browsers launched since start.
        failed_launches: Launch attempts that raised.
        total_evictions: Browsers closed because they were idle for too long.
        deferred_evictions: Evictions postponed because requests were still in flight.
        total_generations: Successful PDF generations.
        failed_generations: Failed PDF generations (any stage).
        avg_generation_time_ms: Average end-to-end time of successful generations.
        avg_acquisition_time_ms: Average time spent obtaining the browser.
        avg_page_load_time_ms: Average time spent loading HTML content.
        avg_pdf_export_time_ms: Average time spent exporting the PDF.
        last_launch_time_ms: Duration of the most recent launch.
        current_cpu_percent: CPU usage of the Chromium process at the last sample.
        current_chromium_memory_mb: Resident memory of the Chromium process at the last sample.
        avg_chromium_memory_mb: Average resident memory over all samples.
    """

    total_launches: int = 0
    failed_launches: int = 0
    total_evictions: int = 0
    deferred_evictions: int = 0
    last_launch_time_ms: float = 0.0

    total_generations: int = 0
    failed_generations: int = 0
    total_generation_time_ms: float = 0.0
    avg_generation_time_ms: float = 0.0
    total_acquisition_time_ms: float = 0.0
    avg_acquisition_time_ms: float = 0.0
    total_page_load_time_ms: float = 0.0
    avg_page_load_time_ms: float = 0.0
    total_pdf_export_time_ms: float = 0.0
    avg_pdf_export_time_ms: float = 0.0

    current_cpu_percent: float = 0.0
    current_chromium_memory_mb: float = 0.0
    avg_chromium_memory_mb: float = 0.0
    total_memory_samples: int = 0
    total_memory_sum: float = 0.0

    start_time: float = field(default_factory=time.time)

    def record_launch(self, duration_ms: float) -> None:
        self.total_launches += 1
        self.last_launch_time_ms = duration_ms

    def record_launch_failure(self) -> None:
        self.failed_launches += 1

    def record_eviction(self) -> None:
        self.total_evictions += 1

    def record_deferred_eviction(self) -> None:
        self.deferred_evictions += 1

    def record_success(self, total_ms: float, acquisition_ms: float, page_load_ms: float, pdf_export_ms: float) -> None:
        """Record a successful HTML to PDF generation and its stage timings."""
        self.total_generations += 1
        self.total_generation_time_ms += total_ms
        self.total_acquisition_time_ms += acquisition_ms
        self.total_page_load_time_ms += page_load_ms
        self.total_pdf_export_time_ms += pdf_export_ms
        self.avg_generation_time_ms = self.total_generation_time_ms / self.total_generations
        self.avg_acquisition_time_ms = self.total_acquisition_time_ms / self.total_generations
        self.avg_page_load_time_ms = self.total_page_load_time_ms / self.total_generations
        self.avg_pdf_export_time_ms = self.total_pdf_export_time_ms / self.total_generations

    def record_failure(self) -> None:
        self.failed_generations += 1

    def get_error_rate(self) -> float:
        """Failed generations as a percentage of all generation attempts."""
        total_attempts = self.total_generations + self.failed_generations
        if total_attempts == 0:
            return 0.0
        return (self.failed_generations / total_attempts) * 100.0

    def record_resource_usage(self, browser_process: psutil.Process | None) -> None:
        """
        Record CPU and memory usage for the browser process.

        Args:
            browser_process: psutil.Process object for the browser, or None if not available.
        """
        if browser_process is None:
            return

        try:
            cpu_percent = browser_process.cpu_percent()
            memory_mb = browser_process.memory_info().rss / (1024 * 1024)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return

        self.current_cpu_percent = cpu_percent
        self.current_chromium_memory_mb = memory_mb
        self.total_memory_samples += 1
        self.total_memory_sum += memory_mb
        self.avg_chromium_memory_mb = self.total_memory_sum / self.total_memory_samples


class BrowserManager:
    """
    Owner of the single Chromium instance shared by all requests of a process.

    Requests obtain the browser through ``lease()``; warmup uses ``ensure_ready()``.
    Both serialize on one lock, so concurrent callers against a cold process
    trigger exactly one launch and all observe the same handle.
    """

    def __init__(
        self,
        config: BrowserConfig | None = None,
        engine: PlaywrightEngine | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize BrowserManager.

        Args:
            config: Configuration settings. If None, creates default config from environment variables.
            engine: Engine used to launch browsers. Defaults to Playwright Chromium.
            logger: Optional logger; if None, a module-level logger is used.
            clock: Monotonic clock in seconds, used for idle tracking.
        """
        self.log = logger or logging.getLogger(__name__)

        if config is None:
            config = BrowserConfig()

        self.idle_timeout = self._validate_idle_timeout(config.idle_timeout)
        self.page_load_timeout = self._validate_page_load_timeout(config.page_load_timeout)
        self.device_scale_factor = self._validate_device_scale_factor(config.device_scale_factor)
        self.shutdown_grace_period = self._validate_shutdown_grace_period(config.shutdown_grace_period)
        self.warmup_on_startup = self._validate_warmup_on_startup(config.warmup_on_startup)

        self._engine = engine or PlaywrightEngine()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._handle: EngineHandle | None = None
        # Handles replaced while leased; closed once no lease is outstanding
        self._retired: list[EngineHandle] = []
        self._in_flight = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._eviction_pending = False
        self._last_used: float | None = None
        self._last_used_at: datetime | None = None

        self._metrics = BrowserMetrics()

    @property
    def in_flight(self) -> int:
        """Number of requests currently holding a lease on the browser."""
        return self._in_flight

    @property
    def last_used_at(self) -> datetime | None:
        """UTC time of the most recent successful acquisition, None before the first one."""
        return self._last_used_at

    @property
    def metrics(self) -> BrowserMetrics:
        return self._metrics

    async def ensure_ready(self) -> EngineHandle:
        """
        Return a live browser handle, launching or replacing it when needed.

        Idempotent and safe to call concurrently.

        Raises:
            LaunchError: If a browser had to be launched and could not be.
        """
        async with self._lock:
            return await self._acquire_locked()

    @asynccontextmanager
    async def lease(self) -> AsyncGenerator[EngineHandle]:
        """
        Obtain the browser for the duration of one request.

        While any lease is held the browser is never evicted or closed by
        idle handling; an eviction that falls due in the meantime is applied
        on the first acquisition after the last lease has been returned.

        Raises:
            LaunchError: If a browser had to be launched and could not be.
        """
        async with self._lock:
            handle = await self._acquire_locked()
            self._in_flight += 1
            self._drained.clear()

        try:
            yield handle
        finally:
            self._release()

    def _release(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._drained.set()

    async def _acquire_locked(self) -> EngineHandle:
        if self._in_flight == 0 and self._retired:
            await self._close_retired()

        if self._handle is not None:
            if not self._handle.is_alive():
                self.log.warning("Browser is no longer connected, discarding it")
                await self._discard_handle()
            elif self._eviction_pending or self._is_idle_expired():
                if self._in_flight == 0:
                    idle_seconds = self._idle_seconds()
                    self.log.info("Closing idle browser instance (idle for %.1fs)", idle_seconds)
                    await self._discard_handle()
                    self._metrics.record_eviction()
                    prometheus_metrics.increment_browser_eviction()
                elif not self._eviction_pending:
                    self.log.info("Browser idle timeout reached but %d request(s) in flight, deferring eviction", self._in_flight)
                    self._eviction_pending = True
                    self._metrics.record_deferred_eviction()

        if self._handle is None:
            self._handle = await self._launch()

        self._last_used = self._clock()
        self._last_used_at = datetime.now(UTC)
        return self._handle

    async def _launch(self) -> EngineHandle:
        self.log.info("Launching new Chromium browser...")
        launch_start = time.perf_counter()
        try:
            handle = await self._engine.launch(CHROMIUM_FLAGS)
        except LaunchError as e:
            self._record_launch_failure()
            self.log.error("Failed to launch Chromium: %s", e.message)
            raise
        except Exception as e:
            self._record_launch_failure()
            self.log.error("Failed to launch Chromium: %s", e)
            raise LaunchError(f"Browser launch failed: {e}") from e

        launch_ms = (time.perf_counter() - launch_start) * 1000
        self._metrics.record_launch(launch_ms)
        prometheus_metrics.increment_browser_launch(launch_ms / 1000)
        self.log.info("Browser launched in %.0fms", launch_ms)
        return handle

    def _record_launch_failure(self) -> None:
        self._metrics.record_launch_failure()
        prometheus_metrics.increment_browser_launch_failure()

    async def _discard_handle(self) -> None:
        """Drop the current handle, closing it now or once outstanding leases are returned."""
        handle = self._handle
        self._handle = None
        self._eviction_pending = False
        if handle is None:
            return
        if self._in_flight == 0:
            await handle.close()
        else:
            self._retired.append(handle)

    async def _close_retired(self) -> None:
        retired, self._retired = self._retired, []
        for handle in retired:
            await handle.close()

    def _is_idle_expired(self) -> bool:
        return self._last_used is not None and self._idle_seconds() > self.idle_timeout

    def _idle_seconds(self) -> float:
        if self._last_used is None:
            return 0.0
        return self._clock() - self._last_used

    async def stop(self) -> None:
        """
        Close the browser on shutdown.

        Waits up to ``shutdown_grace_period`` seconds for in-flight requests to
        return their leases, then closes the browser regardless. The browser
        is closed exactly once; a later acquisition launches a new one.
        """
        if self._in_flight:
            self.log.info("Waiting up to %ds for %d in-flight request(s)...", self.shutdown_grace_period, self._in_flight)
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=self.shutdown_grace_period)
            except TimeoutError:
                self.log.warning("%d request(s) still in flight after %ds, closing browser anyway", self._in_flight, self.shutdown_grace_period)

        async with self._lock:
            handles = self._retired
            if self._handle is not None:
                handles.append(self._handle)
            self._handle = None
            self._retired = []
            self._eviction_pending = False

            for handle in handles:
                try:
                    await asyncio.wait_for(handle.close(), timeout=CLOSE_TIMEOUT_SECONDS)
                except TimeoutError:
                    self.log.error("Browser did not close within %.0fs, abandoning it", CLOSE_TIMEOUT_SECONDS)

        if handles:
            self.log.info("Chromium browser stopped successfully")

    def is_running(self) -> bool:
        """Check if a browser is launched and connected."""
        return self._handle is not None and self._handle.is_alive()

    def health_check(self) -> bool:
        """
        Report whether the manager can serve requests.

        A manager that has not launched a browser yet is healthy; one whose
        browser dropped its connection is not (it relaunches on the next request).
        """
        try:
            return self._handle is None or self._handle.is_alive()
        except Exception as e:  # noqa: BLE001
            self.log.error("Health check failed: %s", e)
            return False

    def get_version(self) -> str | None:
        """
        Get the Chromium browser version.

        Returns:
            Chromium version string (e.g., "131.0.6778.69") or None if no browser is running.
        """
        try:
            if self._handle is None:
                return None
            return self._handle.version
        except Exception as e:  # noqa: BLE001
            self.log.error("Failed to get Chromium version: %s", e)
            return None

    def get_metrics(self) -> dict[str, float | int | bool | str | None]:
        """
        Get current metrics for monitoring and observability.

        Samples the Chromium process' CPU and memory usage as a side effect.
        """
        if self._handle is not None:
            self._metrics.record_resource_usage(self._handle.process)

        system_memory = psutil.virtual_memory()
        return {
            "browser_active": self._handle is not None,
            "in_flight": self._in_flight,
            "eviction_pending": self._eviction_pending,
            "idle_seconds": round(self._idle_seconds(), 2),
            "idle_timeout_seconds": self.idle_timeout,
            "last_used": self._last_used_at.isoformat() if self._last_used_at else None,
            "total_launches": self._metrics.total_launches,
            "failed_launches": self._metrics.failed_launches,
            "total_evictions": self._metrics.total_evictions,
            "deferred_evictions": self._metrics.deferred_evictions,
            "last_launch_time_ms": round(self._metrics.last_launch_time_ms, 2),
            "total_generations": self._metrics.total_generations,
            "failed_generations": self._metrics.failed_generations,
            "error_rate_percent": round(self._metrics.get_error_rate(), 2),
            "avg_generation_time_ms": round(self._metrics.avg_generation_time_ms, 2),
            "avg_acquisition_time_ms": round(self._metrics.avg_acquisition_time_ms, 2),
            "avg_page_load_time_ms": round(self._metrics.avg_page_load_time_ms, 2),
            "avg_pdf_export_time_ms": round(self._metrics.avg_pdf_export_time_ms, 2),
            "current_cpu_percent": round(self._metrics.current_cpu_percent, 2),
            "current_chromium_memory_mb": round(self._metrics.current_chromium_memory_mb, 2),
            "avg_chromium_memory_mb": round(self._metrics.avg_chromium_memory_mb, 2),
            "total_memory_mb": round(system_memory.total / (1024 * 1024), 2),
            "available_memory_mb": round(system_memory.available / (1024 * 1024), 2),
            "uptime_seconds": round(time.time() - self._metrics.start_time, 2),
        }

    def _validate_int_config(
        self,
        value: int | None,
        env_var: str,
        default: int,
        min_value: int,
        max_value: int,
    ) -> int:
        """
        Validate integer configuration parameters.

        Args:
            value: Value to validate or None to read from env.
            env_var: Environment variable name.
            default: Default value if env var not set or invalid.
            min_value: Minimum valid value (inclusive).
            max_value: Maximum valid value (inclusive).

        Returns:
            Validated integer configuration value.
        """
        if value is None:
            value = self._parse_int(os.environ.get(env_var), default)
        else:
            value = int(value)

        if not (min_value <= value <= max_value):
            self.log.warning("%s must be between %s and %s, using default: %s", env_var, min_value, max_value, default)
            return default

        return value

    def _validate_idle_timeout(self, value: int | None) -> int:
        return self._validate_int_config(value=value, env_var="BROWSER_IDLE_TIMEOUT", default=300, min_value=1, max_value=86400)

    def _validate_page_load_timeout(self, value: int | None) -> int:
        return self._validate_int_config(value=value, env_var="PAGE_LOAD_TIMEOUT", default=30, min_value=1, max_value=300)

    def _validate_shutdown_grace_period(self, value: int | None) -> int:
        return self._validate_int_config(value=value, env_var="BROWSER_SHUTDOWN_GRACE_PERIOD", default=10, min_value=0, max_value=120)

    def _validate_device_scale_factor(self, value: float | None) -> float:
        """
        Validate device scale factor.

        Args:
            value: Device scale factor or None to read from env.

        Returns:
            Validated device scale factor (1.0 - 10.0).
        """
        if value is None:
            value = self._parse_float(os.environ.get("DEVICE_SCALE_FACTOR"), 2.0)
        else:
            value = float(value)

        if not (1.0 <= value <= 10.0):
            self.log.warning("DEVICE_SCALE_FACTOR must be between 1.0 and 10.0, using default: 2.0")
            return 2.0

        return value

    def _validate_warmup_on_startup(self, value: bool | None) -> bool:
        if value is not None:
            return bool(value)

        env_value = os.environ.get("BROWSER_WARMUP_ON_STARTUP")
        if env_value is None:
            return True

        return env_value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    def _parse_float(value: str | None, default: float) -> float:
        """Parse a string to float with a default fallback."""
        try:
            return float(value) if value is not None else default
        except (ValueError, TypeError):
            return default

    @staticmethod
    def _parse_int(value: str | None, default: int) -> int:
        """Parse a string to int with a default fallback."""
        try:
            return int(value) if value is not None else default
        except (ValueError, TypeError):
            return default


_browser_manager: BrowserManager | None = None


def get_browser_manager() -> BrowserManager:
    """
    Get the process-wide BrowserManager.

    Note:
        This is intended for dependency injection in FastAPI endpoints; tests
        substitute their own manager through ``app.dependency_overrides``.
    """
    global _browser_manager  # noqa: PLW0603
    if _browser_manager is None:
        _browser_manager = BrowserManager()
    return _browser_manager
