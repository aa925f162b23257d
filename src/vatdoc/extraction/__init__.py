"""Text, template and spreadsheet VAT extraction."""

from .text_extractor import TextExtractor, derive_vat
from .spreadsheet_aggregator import Grid, SpreadsheetAggregator, SpreadsheetFormat, detect_format
from .templates import DocumentTemplate, TemplateMatcher
from .grid_reader import read_grid

__all__ = [
    "TextExtractor",
    "derive_vat",
    "Grid",
    "SpreadsheetAggregator",
    "SpreadsheetFormat",
    "detect_format",
    "DocumentTemplate",
    "TemplateMatcher",
    "read_grid",
]
