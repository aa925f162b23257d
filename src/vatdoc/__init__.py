"""
VATDoc: VAT extraction from invoices, receipts and sales reports

Extracts sales and purchase VAT amounts from document text and spreadsheets
through a chain of strategies, validates them against a jurisdiction's rules
and scores how far each result can be trusted.
"""

__version__ = "1.0.0"
__author__ = "VATDoc Team"

from .config import JurisdictionConfig, PipelineConfig, load_config
from .models import Category, ExtractedAmounts, ExtractionMethod, ExtractionResult
from .patterns.pattern_library import PatternLibrary
from .extraction.text_extractor import TextExtractor
from .extraction.spreadsheet_aggregator import Grid, SpreadsheetAggregator
from .validation.compliance_validator import ComplianceValidator
from .scoring.quality_scorer import QualityScorer
from .scoring.cross_validation import CrossValidationEngine
from .pipeline.extraction_pipeline import ExtractionPipeline

__all__ = [
    "JurisdictionConfig",
    "PipelineConfig",
    "load_config",
    "Category",
    "ExtractedAmounts",
    "ExtractionMethod",
    "ExtractionResult",
    "PatternLibrary",
    "TextExtractor",
    "Grid",
    "SpreadsheetAggregator",
    "ComplianceValidator",
    "QualityScorer",
    "CrossValidationEngine",
    "ExtractionPipeline"
]
