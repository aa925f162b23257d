"""
Cross-validation of independent extraction results.

When more than one strategy produced amounts for the same document (for
example the pattern extractor and the vision service), this module measures
how far they agree, picks the primary result and decides how a conflict should
be resolved.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import numpy as np

from ..config import JurisdictionConfig
from ..errors import InsufficientResultsError
from ..models import ConflictResolution, ExtractedAmounts, ExtractionMethod, _clamp
from ..validation.compliance_validator import ComplianceValidator, ValidationResult
from .quality_scorer import QualityAssessment, QualityScorer

logger = logging.getLogger(__name__)

METHOD_BONUS = {
    ExtractionMethod.AI_VISION: 0.2,
    ExtractionMethod.ENHANCED: 0.2,
    ExtractionMethod.SPREADSHEET: 0.15,
    ExtractionMethod.OCR_TEXT: 0.1,
    ExtractionMethod.FALLBACK: -0.2,
}
VISION_METHODS = (ExtractionMethod.AI_VISION, ExtractionMethod.ENHANCED)

COMPLIANT_BONUS = 0.1
NO_ERRORS_BONUS = 0.05
MIN_WEIGHT = 0.1
MAX_WEIGHT = 1.0

RELATIVE_TOLERANCE = 0.05
ABSOLUTE_TOLERANCE = 1.0
OUTLIER_SIGMAS = 2.0

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.98


@dataclass
class AmountStatistics:
    mean: float = 0.0
    median: float = 0.0
    std: float = 0.0
    outliers: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean": round(self.mean, 4),
            "median": round(self.median, 4),
            "std": round(self.std, 4),
            "outliers": list(self.outliers),
        }


@dataclass
class MethodComparison:
    method: ExtractionMethod
    confidence: float
    weight: float
    amounts: List[Decimal]

    @property
    def total(self) -> Decimal:
        return sum(self.amounts, Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "confidence": round(self.confidence, 4),
            "weight": round(self.weight, 4),
            "amounts": [float(a) for a in self.amounts],
            "total": float(self.total),
        }


@dataclass
class CrossValidationResult:
    """
    Outcome of reconciling several extraction results.

    Attributes:
        agreement: Fraction of amount comparisons that matched, in [0, 1]
        primary_result: Result chosen to represent the document
        alternative_results: Every other result, in input order
        conflict_resolution: How disagreement should be resolved
        confidence: Cross-validated confidence in [0.1, 0.98]
        statistics: Mean, median, population std and outliers of all amounts
        method_comparison: Per-result method, confidence, weight and amounts
        primary_index: Position of the primary result in the input list
    """

    agreement: float
    primary_result: ExtractedAmounts
    alternative_results: List[ExtractedAmounts]
    conflict_resolution: ConflictResolution
    confidence: float
    statistics: AmountStatistics
    method_comparison: List[MethodComparison]
    primary_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agreement": round(self.agreement, 4),
            "primary_method": self.primary_result.method.value,
            "primary_index": self.primary_index,
            "alternative_methods": [r.method.value for r in self.alternative_results],
            "conflict_resolution": self.conflict_resolution.value,
            "confidence": round(self.confidence, 4),
            "statistics": self.statistics.to_dict(),
            "method_comparison": [m.to_dict() for m in self.method_comparison],
        }


def amounts_match(a: float, b: float) -> bool:
    """Two amounts agree when within 5% of the larger or 1.00, whichever is wider."""
    tolerance = max(ABSOLUTE_TOLERANCE, RELATIVE_TOLERANCE * max(a, b))
    return abs(a - b) <= tolerance


class CrossValidationEngine:
    """
    Reconciles two or more ExtractedAmounts for the same document.

    Args:
        jurisdiction: Rules used when validation or quality results are not supplied
        validator: Compliance validator (built from jurisdiction when omitted)
        scorer: Quality scorer (built from jurisdiction when omitted)
    """

    def __init__(
        self,
        jurisdiction: Optional[JurisdictionConfig] = None,
        validator: Optional[ComplianceValidator] = None,
        scorer: Optional[QualityScorer] = None
    ):
        self.jurisdiction = jurisdiction or JurisdictionConfig()
        self.validator = validator or ComplianceValidator(self.jurisdiction)
        self.scorer = scorer or QualityScorer(self.jurisdiction)

    def cross_validate(
        self,
        results: List[ExtractedAmounts],
        validations: Optional[List[ValidationResult]] = None,
        assessments: Optional[List[QualityAssessment]] = None,
        weights: Optional[List[float]] = None
    ) -> CrossValidationResult:
        """
        Cross-validate independent extraction results.

        Args:
            results: At least two extraction results
            validations: Compliance results aligned with results (computed when omitted)
            assessments: Quality assessments aligned with results (computed when omitted)
            weights: Explicit per-result weights overriding the computed ones

        Returns:
            CrossValidationResult

        Raises:
            InsufficientResultsError: If fewer than two results are given
        """
        if len(results) < 2:
            raise InsufficientResultsError(len(results))

        validations = validations or [self.validator.validate(r) for r in results]
        assessments = assessments or [self.scorer.assess(r) for r in results]
        weights = weights or self.method_weights(results, validations, assessments)

        comparison = [
            MethodComparison(r.method, r.confidence, w, r.all_amounts)
            for r, w in zip(results, weights)
        ]
        statistics = self.statistics(results)
        agreement = self.agreement(results)
        primary_index = self.select_primary(results, weights, agreement)
        resolution = self.conflict_resolution(agreement)
        confidence = self.final_confidence(results, agreement, statistics)

        logger.info(
            f"Cross-validated {len(results)} results: agreement {agreement:.2f}, "
            f"{resolution.value}, primary {results[primary_index].method.value}"
        )
        return CrossValidationResult(
            agreement=agreement,
            primary_result=results[primary_index],
            alternative_results=[r for i, r in enumerate(results) if i != primary_index],
            conflict_resolution=resolution,
            confidence=confidence,
            statistics=statistics,
            method_comparison=comparison,
            primary_index=primary_index,
        )

    def method_weights(
        self,
        results: List[ExtractedAmounts],
        validations: List[ValidationResult],
        assessments: List[QualityAssessment]
    ) -> List[float]:
        weights = []
        for result, validation, assessment in zip(results, validations, assessments):
            weight = result.confidence + METHOD_BONUS.get(result.method, 0.0)
            if assessment.compliant:
                weight += COMPLIANT_BONUS
            if not validation.errors:
                weight += NO_ERRORS_BONUS
            weights.append(round(max(MIN_WEIGHT, min(MAX_WEIGHT, weight)), 6))
        return weights

    def agreement(self, results: List[ExtractedAmounts]) -> float:
        """
        Fraction of matching amount comparisons across every pair of results.

        Each amount of one result is compared with the closest amount of the
        other result, in both directions, so identical result sets agree fully.
        """
        amounts = [[float(a) for a in r.all_amounts] for r in results]
        matches = 0
        comparisons = 0

        for i in range(len(amounts)):
            for j in range(i + 1, len(amounts)):
                for left, right in ((amounts[i], amounts[j]), (amounts[j], amounts[i])):
                    for a in left:
                        comparisons += 1
                        if right:
                            closest = min(right, key=lambda b: abs(a - b))
                            if amounts_match(a, closest):
                                matches += 1

        return round(matches / comparisons, 6) if comparisons else 0.0

    def statistics(self, results: List[ExtractedAmounts]) -> AmountStatistics:
        values = np.array([float(a) for r in results for a in r.all_amounts], dtype=float)
        if values.size == 0:
            return AmountStatistics()

        mean = float(np.mean(values))
        std = float(np.std(values))
        outliers = [float(v) for v in values if abs(v - mean) > OUTLIER_SIGMAS * std]
        return AmountStatistics(mean=mean, median=float(np.median(values)), std=std, outliers=outliers)

    def select_primary(self, results: List[ExtractedAmounts], weights: List[float], agreement: float) -> int:
        if agreement > 0.8:
            return int(np.argmax(weights))

        for index, result in enumerate(results):
            if result.method in VISION_METHODS and result.confidence > 0.7:
                return index

        return int(np.argmax([r.confidence for r in results]))

    @staticmethod
    def conflict_resolution(agreement: float) -> ConflictResolution:
        if agreement > 0.9:
            return ConflictResolution.CONSENSUS
        if agreement > 0.7:
            return ConflictResolution.WEIGHTED_AVERAGE
        if agreement > 0.4:
            return ConflictResolution.PRIMARY
        return ConflictResolution.MANUAL_REVIEW

    def final_confidence(
        self,
        results: List[ExtractedAmounts],
        agreement: float,
        statistics: AmountStatistics
    ) -> float:
        confidence = 0.5 + 0.3 * agreement

        if statistics.std < 5:
            confidence += 0.1
        if statistics.std < 1:
            confidence += 0.1

        confident = sum(1 for r in results if r.confidence > 0.8)
        confidence += min(0.2, 0.05 * confident)

        methods = {r.method for r in results}
        if methods & set(VISION_METHODS) and ExtractionMethod.SPREADSHEET in methods:
            confidence += 0.1

        return _clamp(confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
