"""Error taxonomy for the PDF generation pipeline."""

from pdf_service.sanitization import first_line


class PdfServiceError(Exception):
    """
    Base class for errors raised while producing a PDF.

    Attributes:
        message: Human-readable description of the failure.
        status_code: HTTP status the front door reports for this failure.
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_user_message(self) -> str:
        """First line of the message, safe to hand back to API callers."""
        return first_line(self.message)


class ValidationError(PdfServiceError):
    """The request is missing required input."""

    status_code = 400


class LaunchError(PdfServiceError):
    """The browser could not be started."""

    status_code = 500


class LoadTimeoutError(PdfServiceError):
    """The HTML content did not settle within the load timeout."""

    status_code = 504


class RenderError(PdfServiceError):
    """Loading the content or exporting the PDF failed."""

    status_code = 500


class CleanupError(PdfServiceError):
    """A rendering surface could not be closed. Logged only."""
