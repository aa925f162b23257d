"""Quality scoring and cross-validation module."""

from .quality_scorer import QualityAssessment, QualityScorer, confidence_boost, grade
from .cross_validation import CrossValidationEngine, CrossValidationResult

__all__ = [
    "QualityAssessment",
    "QualityScorer",
    "confidence_boost",
    "grade",
    "CrossValidationEngine",
    "CrossValidationResult",
]
