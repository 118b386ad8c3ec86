"""
Prometheus metrics collectors for the PDF service.

This module defines custom Prometheus metrics that expose BrowserManager
and PDF pipeline metrics for monitoring and observability.

Note: Counters are incremented when events occur (not synced from external state).
      Gauges are updated from the BrowserManager when metrics are scraped.
"""

import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, Info

if TYPE_CHECKING:
    from pdf_service.browser_manager import BrowserManager


logger = logging.getLogger(__name__)


# PDF pipeline counters - use the increment functions below
pdf_generations_total = Counter(
    "pdf_generations_total",
    "Total number of successful HTML to PDF generations",
)

pdf_generation_failures_total = Counter(
    "pdf_generation_failures_total",
    "Total number of failed HTML to PDF generations",
    ["error_type"],
)

pdf_generation_duration_seconds = Histogram(
    "pdf_generation_duration_seconds",
    "End-to-end HTML to PDF generation duration in seconds",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

pdf_stage_duration_seconds = Histogram(
    "pdf_stage_duration_seconds",
    "Duration of a single PDF pipeline stage in seconds",
    ["stage"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 30.0],
)

# Browser lifecycle counters
browser_launches_total = Counter(
    "browser_launches_total",
    "Total number of Chromium browser launches",
)

browser_launch_failures_total = Counter(
    "browser_launch_failures_total",
    "Total number of failed Chromium browser launches",
)

browser_evictions_total = Counter(
    "browser_evictions_total",
    "Total number of Chromium browsers closed after being idle",
)

browser_launch_duration_seconds = Histogram(
    "browser_launch_duration_seconds",
    "Chromium browser launch duration in seconds",
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Gauges reflecting current state
browser_active = Gauge(
    "browser_active",
    "Whether a Chromium browser is currently launched (1) or not (0)",
)

in_flight_requests = Gauge(
    "in_flight_requests",
    "Current number of requests holding the browser",
)

browser_idle_seconds = Gauge(
    "browser_idle_seconds",
    "Seconds since the browser was last acquired",
)

chromium_memory_bytes = Gauge(
    "chromium_memory_bytes",
    "Current Chromium memory usage in bytes",
)

cpu_percent = Gauge(
    "cpu_percent",
    "Current Chromium CPU usage percentage",
)

system_memory_available_bytes = Gauge(
    "system_memory_available_bytes",
    "Available system memory in bytes",
)

pdf_generation_error_rate_percent = Gauge(
    "pdf_generation_error_rate_percent",
    "PDF generation error rate as percentage",
)

service_uptime_seconds = Gauge(
    "service_uptime_seconds",
    "Seconds since the PDF service started",
)

chromium_info = Info(
    "chromium",
    "Chromium browser information",
)


def increment_pdf_generation_success(total_seconds: float, stage_seconds: dict[str, float]) -> None:
    """Increment successful PDF generation counter and record end-to-end and per-stage durations."""
    pdf_generations_total.inc()
    pdf_generation_duration_seconds.observe(total_seconds)
    for stage, seconds in stage_seconds.items():
        pdf_stage_duration_seconds.labels(stage=stage).observe(seconds)


def increment_pdf_generation_failure(error_type: str) -> None:
    """Increment failed PDF generation counter for the given error type."""
    pdf_generation_failures_total.labels(error_type=error_type).inc()


def increment_browser_launch(duration_seconds: float) -> None:
    browser_launches_total.inc()
    browser_launch_duration_seconds.observe(duration_seconds)


def increment_browser_launch_failure() -> None:
    browser_launch_failures_total.inc()


def increment_browser_eviction() -> None:
    browser_evictions_total.inc()


def update_gauges_from_browser_manager(browser_manager: "BrowserManager") -> None:
    """
    Update Prometheus gauges from BrowserManager current state.

    This function should be called before serving metrics to ensure
    gauges reflect the current state. It ONLY updates gauges, not counters.

    Args:
        browser_manager: BrowserManager instance to collect metrics from
    """
    try:
        metrics = browser_manager.get_metrics()

        browser_active.set(1.0 if metrics["browser_active"] else 0.0)
        in_flight_requests.set(float(metrics["in_flight"]))  # type: ignore[arg-type]
        browser_idle_seconds.set(float(metrics["idle_seconds"]))  # type: ignore[arg-type]
        chromium_memory_bytes.set(float(metrics["current_chromium_memory_mb"]) * 1024 * 1024)  # type: ignore[arg-type]
        cpu_percent.set(float(metrics["current_cpu_percent"]))  # type: ignore[arg-type]
        system_memory_available_bytes.set(float(metrics["available_memory_mb"]) * 1024 * 1024)  # type: ignore[arg-type]
        pdf_generation_error_rate_percent.set(float(metrics["error_rate_percent"]))  # type: ignore[arg-type]
        service_uptime_seconds.set(float(metrics["uptime_seconds"]))  # type: ignore[arg-type]

        chromium_version = browser_manager.get_version()
        if chromium_version:
            chromium_info.info({"version": chromium_version})

        logger.debug("Prometheus gauges updated from BrowserManager")

    except Exception as e:
        logger.error("Failed to update Prometheus gauges: %s", e, exc_info=True)
