"""VAT extraction pipeline and its strategies."""

from .extraction_pipeline import ExtractionPipeline
from .strategies import (
    DeepScanStrategy,
    DocumentContext,
    ExtractionStrategy,
    PatternStrategy,
    SpreadsheetStrategy,
    TemplateStrategy,
    VisionStrategy,
    build_strategies,
)

__all__ = [
    "ExtractionPipeline",
    "DeepScanStrategy",
    "DocumentContext",
    "ExtractionStrategy",
    "PatternStrategy",
    "SpreadsheetStrategy",
    "TemplateStrategy",
    "VisionStrategy",
    "build_strategies",
]
