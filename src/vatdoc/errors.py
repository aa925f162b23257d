"""
Exception hierarchy and issue codes for the VAT extraction core.

Strategies raise these errors; the pipeline catches them per strategy, records
the code as an issue and falls through to the next strategy.
"""

from typing import Any, Dict, Optional


class IssueCode:
    """Machine-readable issue codes shared by all stages."""

    TEXT_EXTRACTION_FAILED = "TEXT_EXTRACTION_FAILED"
    NO_TAX_FOUND = "NO_TAX_FOUND"
    NEGATIVE_AMOUNT = "NEGATIVE_AMOUNT"
    RATE_NOT_IN_JURISDICTION_SET = "RATE_NOT_IN_JURISDICTION_SET"
    TOTAL_MISMATCH = "TOTAL_MISMATCH"
    DUPLICATE_AMOUNTS = "DUPLICATE_AMOUNTS"
    VISION_SERVICE_UNAVAILABLE = "VISION_SERVICE_UNAVAILABLE"
    PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"

    # Extraction flags
    EXCLUDED_PAYMENT_AMOUNT = "EXCLUDED_PAYMENT_AMOUNT"
    CATEGORY_FROM_CLASSIFIER = "CATEGORY_FROM_CLASSIFIER"
    DERIVED_FROM_TOTAL_AND_RATE = "DERIVED_FROM_TOTAL_AND_RATE"
    INSUFFICIENT_RESULTS = "INSUFFICIENT_RESULTS"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class VATExtractionError(Exception):
    """Base error for the extraction core."""

    def __init__(
        self,
        message: str,
        code: str = IssueCode.TEXT_EXTRACTION_FAILED,
        recoverable: bool = True,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.recoverable = recoverable
        self.context = context or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class TextExtractionError(VATExtractionError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, IssueCode.TEXT_EXTRACTION_FAILED, False, context)


class VisionServiceUnavailableError(VATExtractionError):
    def __init__(self, message: str, recoverable: bool = True, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, IssueCode.VISION_SERVICE_UNAVAILABLE, recoverable, context)


class ProcessingTimeoutError(VATExtractionError):
    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Operation {operation} timed out after {timeout_seconds}s",
            IssueCode.PROCESSING_TIMEOUT,
            True,
            {"operation": operation, "timeout_seconds": timeout_seconds}
        )


class InsufficientResultsError(VATExtractionError):
    def __init__(self, count: int):
        super().__init__(
            f"Cross-validation needs at least 2 results, got {count}",
            IssueCode.INSUFFICIENT_RESULTS,
            False,
            {"count": count}
        )


class ConfigurationError(VATExtractionError):
    def __init__(self, message: str):
        super().__init__(message, IssueCode.CONFIGURATION_ERROR, False)
