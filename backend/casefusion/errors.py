"""
Shared error types for the case analysis service.

Kept in their own module so the pipeline, the HTTP layer and the tests all
import the same exception classes.
"""


class CaseFusionError(Exception):
    """Base class for all service errors."""


class NoEvidenceError(CaseFusionError):
    """Raised when a case has no evidence to analyze. Terminates the run."""


class FusionError(CaseFusionError):
    """Raised when the fusion call itself fails. Terminates the run."""


class ModelUnavailableError(CaseFusionError):
    """Raised when the reasoning model is not configured."""


class ModelOutputError(CaseFusionError):
    """Raised when a model response does not decode into the expected schema."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text or ""


class FrameExtractionError(CaseFusionError):
    """Raised when frames cannot be extracted from a video."""


class AnalysisNotFoundError(CaseFusionError):
    """Raised when no completed analysis exists for a case."""


class AnalysisAlreadyRunningError(CaseFusionError):
    """Raised when a second pipeline is requested for a case that has one in flight."""
