"""Evaluation module for the VAT extraction pipeline."""

from .evaluator import PipelineEvaluator
from .metrics import CategoryMetrics, ExtractionMetrics

__all__ = ["PipelineEvaluator", "CategoryMetrics", "ExtractionMetrics"]
