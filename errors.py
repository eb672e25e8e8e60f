"""
Error taxonomy for Aparto.

Each error carries the HTTP status the Flask layer maps it to. Parsing
failures are mostly absorbed where they occur (degraded, empty output);
fetch and enrichment failures propagate to the caller.
"""


class AppError(Exception):
    """Base class for expected, typed failures."""

    status_code = 500


class UpstreamUnavailable(AppError):
    """The listing site could not be fetched or answered non-2xx."""

    status_code = 502

    def __init__(self, message: str, status: int = 0, reason: str = ""):
        super().__init__(message)
        self.status = status
        self.reason = reason


class MalformedInput(AppError):
    """Embedded payload could not be located, balanced, or decoded."""

    status_code = 502


class EnrichmentUnavailable(AppError):
    """Every scoring/commute upstream failed after retries."""

    status_code = 503


class ValidationError(AppError):
    """Caller-supplied input was rejected."""

    status_code = 400
