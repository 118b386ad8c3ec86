from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PdfMargin(BaseModel):
    """Page margins as CSS lengths (e.g. ``10mm``, ``0.5in``)"""

    top: str | None = Field(None, title="Top", description="Top margin as a CSS length")
    right: str | None = Field(None, title="Right", description="Right margin as a CSS length")
    bottom: str | None = Field(None, title="Bottom", description="Bottom margin as a CSS length")
    left: str | None = Field(None, title="Left", description="Left margin as a CSS length")


class PdfOptions(BaseModel):
    """Print options for /generate-pdf"""

    model_config = ConfigDict(populate_by_name=True)

    format: Literal["A4", "Letter", "Legal"] | None = Field(None, title="Format", description="Paper format, A4 when omitted")
    margin: PdfMargin | None = Field(None, title="Margin", description="Page margins, 10mm on every side when omitted")
    print_background: bool | None = Field(None, alias="printBackground", title="Print Background", description="Print CSS backgrounds, true when omitted")
    landscape: bool | None = Field(None, title="Landscape", description="Landscape orientation, false when omitted")
    scale: float | None = Field(None, ge=0.1, le=2.0, title="Scale", description="Rendering scale between 0.1 and 2, 1 when omitted")


class PdfRequest(BaseModel):
    """Request body for /generate-pdf"""

    html: str | None = Field(None, title="HTML", description="HTML document to render (required)")
    options: PdfOptions | None = Field(None, title="Options", description="Print options")


class PdfTiming(BaseModel):
    """Per-stage timing breakdown in milliseconds"""

    model_config = ConfigDict(populate_by_name=True)

    engine_acquisition: float | None = Field(None, alias="engineAcquisition", title="Engine Acquisition (ms)", description="Time spent obtaining the browser, including a launch if one was needed")
    page_load: float | None = Field(None, alias="pageLoad", title="Page Load (ms)", description="Time spent opening a page and loading the HTML content")
    pdf_generation: float | None = Field(None, alias="pdfGeneration", title="PDF Generation (ms)", description="Time spent exporting the PDF")
    total: float = Field(0.0, title="Total (ms)", description="End-to-end request time")


class PdfResultSchema(BaseModel):
    """Schema for response /generate-pdf"""

    success: bool = Field(title="Success", description="Whether the PDF was generated")
    pdf: str | None = Field(None, title="PDF", description="Base64-encoded PDF document")
    error: str | None = Field(None, title="Error", description="Human-readable error message on failure")
    timing: PdfTiming = Field(title="Timing", description="Per-stage timing breakdown")


class WarmupSchema(BaseModel):
    """Schema for response /warmup"""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = Field(title="Success", description="Whether the browser is ready")
    message: str | None = Field(None, title="Message", description="Status message")
    duration_ms: float | None = Field(None, alias="durationMs", title="Duration (ms)", description="Time taken to make the browser ready")
    engine_active: bool | None = Field(None, alias="engineActive", title="Engine Active", description="Whether a browser is running")
    error: str | None = Field(None, title="Error", description="Human-readable error message on failure")


class BrowserMetricsSchema(BaseModel):
    """Schema for browser lifecycle and PDF generation metrics"""

    browser_active: bool = Field(title="Browser Active", description="Whether a browser is currently launched")
    in_flight: int = Field(title="In Flight", description="Requests currently holding the browser")
    eviction_pending: bool = Field(title="Eviction Pending", description="Idle eviction deferred until in-flight requests finish")
    idle_seconds: float = Field(title="Idle (seconds)", description="Seconds since the browser was last acquired")
    idle_timeout_seconds: int = Field(title="Idle Timeout (seconds)", description="Idle time after which the browser is closed")
    last_used: str | None = Field(title="Last Used", description="ISO 8601 time of the last acquisition")
    total_launches: int = Field(title="Total Launches", description="Browsers launched since startup")
    failed_launches: int = Field(title="Failed Launches", description="Browser launch attempts that failed")
    total_evictions: int = Field(title="Total Evictions", description="Browsers closed after being idle")
    deferred_evictions: int = Field(title="Deferred Evictions", description="Idle evictions postponed because requests were in flight")
    last_launch_time_ms: float = Field(title="Last Launch Time (ms)", description="Duration of the most recent browser launch")
    total_generations: int = Field(title="PDF Generations", description="Total successful HTML to PDF generations")
    failed_generations: int = Field(title="Failed PDF Generations", description="Total failed HTML to PDF generation attempts")
    error_rate_percent: float = Field(title="Error Rate (%)", description="Failed generations as a percentage of all attempts")
    avg_generation_time_ms: float = Field(title="Avg PDF Generation Time (ms)", description="Average end-to-end generation time")
    avg_acquisition_time_ms: float = Field(title="Avg Acquisition Time (ms)", description="Average time spent obtaining the browser")
    avg_page_load_time_ms: float = Field(title="Avg Page Load Time (ms)", description="Average time spent loading HTML content")
    avg_pdf_export_time_ms: float = Field(title="Avg PDF Export Time (ms)", description="Average time spent exporting PDFs")
    current_cpu_percent: float = Field(title="Current CPU (%)", description="Current Chromium CPU usage percentage")
    current_chromium_memory_mb: float = Field(title="Current Chromium Memory (MB)", description="Current Chromium physical memory usage in MB")
    avg_chromium_memory_mb: float = Field(title="Avg Chromium Memory (MB)", description="Average Chromium physical memory usage in MB")
    total_memory_mb: float = Field(title="Total Memory (MB)", description="Total system memory in MB")
    available_memory_mb: float = Field(title="Available Memory (MB)", description="Available system memory in MB")
    uptime_seconds: float = Field(title="Uptime (seconds)", description="Seconds since the browser manager was created")


class HealthSchema(BaseModel):
    """Schema for response /health"""

    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(title="Status", description="Always 'healthy' while the process serves requests")
    uptime_seconds: float = Field(alias="uptimeSeconds", title="Uptime (seconds)", description="Service process uptime")
    engine_active: bool = Field(alias="engineActive", title="Engine Active", description="Whether a browser is currently launched")
    last_used: str | None = Field(alias="lastUsed", title="Last Used", description="ISO 8601 time of the last browser acquisition, null before the first one")
    metrics: BrowserMetricsSchema | None = Field(None, title="Metrics", description="Browser and generation metrics (only with ?detailed=true)")


class VersionSchema(BaseModel):
    """Schema for response /version"""

    python: str = Field(title="Python", description="Python version")
    playwright: str | None = Field(title="Playwright", description="Playwright version")
    pdfService: str | None = Field(title="PDF Service", description="Service version")
    timestamp: str | None = Field(title="Build Timestamp", description="Build timestamp")
    chromium: str | None = Field(title="Chromium", description="Chromium version, null while no browser is running")
