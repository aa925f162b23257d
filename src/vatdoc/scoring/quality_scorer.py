"""
Quality scoring for extracted VAT amounts.

This module rates an extraction on five factors (amount plausibility, document
structure, jurisdiction compliance, method reliability and internal
consistency), blends them into a 0-100 score and derives the confidence boost
the pipeline applies to the extraction's own confidence.
"""

import re
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ..config import JurisdictionConfig
from ..errors import IssueCode
from ..models import (
    DocumentType, ExtractedAmounts, ExtractionMethod, Issue, IssueSeverity, LineItem
)
from ..patterns.pattern_library import decimal_places
from ..utils.logger import AuditPort, LoggingAuditPort

logger = logging.getLogger(__name__)

FACTOR_WEIGHTS = {
    "amount_quality": 0.30,
    "structure": 0.20,
    "compliance": 0.25,
    "reliability": 0.15,
    "consistency": 0.10,
}

METHOD_RELIABILITY = {
    ExtractionMethod.ENHANCED: 95,
    ExtractionMethod.AI_VISION: 85,
    ExtractionMethod.SPREADSHEET: 80,
    ExtractionMethod.OCR_TEXT: 65,
    ExtractionMethod.PATTERN: 65,
    ExtractionMethod.TEMPLATE: 65,
}
UNKNOWN_RELIABILITY = 50

VISION_METHODS = (ExtractionMethod.ENHANCED, ExtractionMethod.AI_VISION)

COMPLIANCE_THRESHOLD = 70
VERY_SMALL_AMOUNT = Decimal("0.01")
VERY_LARGE_AMOUNT = Decimal("50000")
TOTAL_TOLERANCE = Decimal("0.01")
LINE_ITEM_TOLERANCE = Decimal("1.00")

GRADES = [(90, "A"), (80, "B"), (70, "C"), (60, "D")]


@dataclass
class QualityAssessment:
    """Data class representing a quality assessment of one extraction."""

    overall_score: int
    confidence_boost: float
    compliant: bool
    factors: Dict[str, int]
    issues: List[Issue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def grade(self) -> str:
        return grade(self.overall_score)

    @property
    def critical_issues(self) -> List[Issue]:
        return [i for i in self.issues if i.severity == IssueSeverity.CRITICAL]

    @property
    def has_blocking_issues(self) -> bool:
        return any(i.is_blocking for i in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "grade": self.grade,
            "confidence_boost": self.confidence_boost,
            "compliant": self.compliant,
            "factors": dict(self.factors),
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": list(self.recommendations),
        }


def grade(score: float) -> str:
    """Letter grade for a 0-100 quality score."""
    for threshold, letter in GRADES:
        if score >= threshold:
            return letter
    return "F"


def confidence_boost(overall_score: float, critical_count: int) -> float:
    """
    Confidence multiplier for an overall quality score.

    Args:
        overall_score: Blended 0-100 score
        critical_count: Number of critical issues found

    Returns:
        Multiplier in [0.5, 1.3]
    """
    if overall_score >= 90:
        boost = 1.15
    elif overall_score >= 80:
        boost = 1.10
    elif overall_score >= 70:
        boost = 1.05
    elif overall_score < 30:
        boost = 0.70
    elif overall_score < 50:
        boost = 0.85
    else:
        boost = 1.0

    if critical_count:
        boost *= 1 - 0.1 * critical_count

    return round(max(0.5, min(1.3, boost)), 6)


class QualityScorer:
    """
    Weighted five-factor quality scorer.

    The scorer only reads the ExtractedAmounts it is given; it never changes
    amounts, flags or confidence.
    """

    def __init__(
        self,
        jurisdiction: Optional[JurisdictionConfig] = None,
        weights: Optional[Dict[str, float]] = None,
        audit: Optional[AuditPort] = None
    ):
        self.jurisdiction = jurisdiction or JurisdictionConfig()
        self.audit = audit or LoggingAuditPort()
        self.weights = weights or dict(FACTOR_WEIGHTS)

        total_weight = sum(self.weights.values())
        if abs(total_weight - 1.0) > 0.01:
            logger.warning(f"Quality weights sum to {total_weight}, normalizing to 1.0")
            self.weights = {k: v / total_weight for k, v in self.weights.items()}

    def assess(self, amounts: ExtractedAmounts) -> QualityAssessment:
        """
        Assess the quality of one extraction.

        Args:
            amounts: Extraction output

        Returns:
            QualityAssessment with factor scores, issues and recommendations
        """
        issues: List[Issue] = []
        recommendations: List[str] = []

        factors = {
            "amount_quality": self._amount_quality(amounts, issues, recommendations),
            "structure": self._structure(amounts, issues),
            "compliance": self._compliance(amounts, issues, recommendations),
            "reliability": self._reliability(amounts, issues),
            "consistency": self._consistency(amounts, issues),
        }

        overall = int(round(sum(factors[name] * self.weights[name] for name in factors)))
        overall = max(0, min(100, overall))

        critical_count = sum(1 for i in issues if i.severity == IssueSeverity.CRITICAL)
        compliant = factors["compliance"] >= COMPLIANCE_THRESHOLD and critical_count == 0
        boost = confidence_boost(overall, critical_count)

        if not compliant:
            recommendations.append("Manual review recommended before filing")

        logger.debug(
            f"Quality {overall}/100 (grade {grade(overall)}), boost {boost}, "
            f"compliant={compliant}, {len(issues)} issue(s)"
        )
        if not compliant:
            self.audit.warn(
                "Extraction not compliant",
                score=overall,
                critical=[i.code for i in issues if i.severity == IssueSeverity.CRITICAL],
            )
        return QualityAssessment(
            overall_score=overall,
            confidence_boost=boost,
            compliant=compliant,
            factors=factors,
            issues=issues,
            recommendations=recommendations,
        )

    def _amount_quality(self, amounts: ExtractedAmounts, issues: List[Issue], recommendations: List[str]) -> int:
        values = amounts.all_amounts
        symbol = self.jurisdiction.currency_symbol
        # Stored amounts are quantised to cents; precision comes from the captured text
        imprecise = {e.amount for e in amounts.provenance if decimal_places(e.raw) > 2}

        if not values:
            if amounts.is_tax_exempt:
                issues.append(Issue(IssueSeverity.LOW, "ZERO_VAT", "No VAT on a VAT-exempt document", 5))
                return 95
            issues.append(Issue(
                IssueSeverity.CRITICAL, IssueCode.NO_TAX_FOUND,
                "No VAT amounts detected in document", 60
            ))
            recommendations.append("Check the document is a VAT invoice or receipt and re-upload a clearer copy")
            return 10

        score = 100
        for amount in values:
            if amount < 0:
                issues.append(Issue(
                    IssueSeverity.CRITICAL, IssueCode.NEGATIVE_AMOUNT,
                    f"Negative VAT amount detected: {symbol}{amount}", 30
                ))
                score -= 30
            elif amount == 0:
                issues.append(Issue(
                    IssueSeverity.LOW, "ZERO_VAT",
                    "Zero VAT amount found (acceptable for exempt items)", 5
                ))
                score -= 5
            elif amount < VERY_SMALL_AMOUNT:
                issues.append(Issue(
                    IssueSeverity.MEDIUM, "VERY_SMALL_VAT",
                    f"Very small VAT amount: {symbol}{amount}", 10
                ))
                score -= 10
            elif amount > VERY_LARGE_AMOUNT:
                issues.append(Issue(
                    IssueSeverity.MEDIUM, "VERY_LARGE_VAT",
                    f"Very large VAT amount: {symbol}{amount} - please verify", 15
                ))
                score -= 15

            if amount > 0 and (-amount.as_tuple().exponent > 2 or amount in imprecise):
                issues.append(Issue(
                    IssueSeverity.LOW, "PRECISION_ISSUE",
                    f"VAT amount has unusual precision: {symbol}{amount}", 3
                ))
                score -= 3

        if len(set(values)) < len(values):
            issues.append(Issue(
                IssueSeverity.HIGH, IssueCode.DUPLICATE_AMOUNTS,
                "Potential duplicate VAT amounts detected", 20
            ))
            recommendations.append("Review document for double-counting of VAT amounts")
            score -= 20

        return max(0, min(100, score))

    def _structure(self, amounts: ExtractedAmounts, issues: List[Issue]) -> int:
        score = 100

        if amounts.document_type == DocumentType.OTHER:
            issues.append(Issue(
                IssueSeverity.MEDIUM, "UNKNOWN_DOCUMENT_TYPE",
                "Document type could not be determined", 15, "document_type"
            ))
            score -= 15

        if not amounts.business_name:
            issues.append(Issue(IssueSeverity.LOW, "NO_BUSINESS_NAME", "Business name not detected", 10, "business_name"))
            score -= 10

        if not amounts.vat_number:
            issues.append(Issue(IssueSeverity.MEDIUM, "NO_VAT_NUMBER", "VAT number not detected", 15, "vat_number"))
            score -= 15

        if not amounts.document_date:
            issues.append(Issue(IssueSeverity.LOW, "NO_DATE", "Transaction date not detected", 8, "document_date"))
            score -= 8

        if amounts.method in VISION_METHODS:
            score += 10

        return max(0, min(100, score))

    def _rated_items(self, amounts: ExtractedAmounts) -> List[LineItem]:
        items = [i for i in amounts.line_items if i.vat_rate is not None]
        if not items and amounts.tax_rate is not None:
            items = [LineItem(description="document rate", vat_rate=amounts.tax_rate)]
        return items

    def _compliance(self, amounts: ExtractedAmounts, issues: List[Issue], recommendations: List[str]) -> int:
        score = 100
        code = self.jurisdiction.code

        if amounts.all_amounts:
            for item in self._rated_items(amounts):
                if not self.jurisdiction.is_valid_rate(item.vat_rate):
                    issues.append(Issue(
                        IssueSeverity.HIGH, "INVALID_VAT_RATE",
                        f"Non-standard {code} VAT rate detected: {item.vat_rate}%", 25, "vat_rate"
                    ))
                    score -= 25

        if amounts.vat_number:
            number = amounts.vat_number.upper().replace(" ", "")
            prefix = self.jurisdiction.vat_number_prefix
            if not number.startswith(prefix):
                issues.append(Issue(
                    IssueSeverity.MEDIUM, "NON_LOCAL_VAT_NUMBER",
                    f"VAT number format suggests non-{code} entity", 15, "vat_number"
                ))
                score -= 15
            elif not re.match(self.jurisdiction.vat_number_pattern, number):
                issues.append(Issue(
                    IssueSeverity.LOW, "VAT_NUMBER_FORMAT_WARNING",
                    "VAT number format may be incomplete or non-standard", 8, "vat_number"
                ))
                score -= 8

        if amounts.currency and amounts.currency != self.jurisdiction.currency:
            issues.append(Issue(
                IssueSeverity.MEDIUM, "NON_LOCAL_CURRENCY",
                f"Non-{self.jurisdiction.currency} currency detected: {amounts.currency}", 20, "currency"
            ))
            recommendations.append(f"Verify currency conversion to {self.jurisdiction.currency} if applicable")
            score -= 20

        return max(0, min(100, score))

    def _reliability(self, amounts: ExtractedAmounts, issues: List[Issue]) -> int:
        score = METHOD_RELIABILITY.get(amounts.method, UNKNOWN_RELIABILITY)

        if amounts.processing_failed:
            issues.append(Issue(
                IssueSeverity.CRITICAL, "PROCESSING_FAILED",
                "Document processing encountered errors", 40
            ))
            score -= 40

        if amounts.used_fallback:
            issues.append(Issue(
                IssueSeverity.MEDIUM, "FALLBACK_PROCESSING_USED",
                "Fallback processing method used", 20
            ))
            score -= 20

        return max(0, min(100, score))

    def _consistency(self, amounts: ExtractedAmounts, issues: List[Issue]) -> int:
        score = 100
        symbol = self.jurisdiction.currency_symbol
        total_tax = amounts.total_tax

        if amounts.total_amount is not None and amounts.subtotal is not None and total_tax:
            expected = amounts.subtotal + total_tax
            if abs(expected - amounts.total_amount) > TOTAL_TOLERANCE:
                issues.append(Issue(
                    IssueSeverity.HIGH, IssueCode.TOTAL_MISMATCH,
                    f"Total amount mismatch: expected {symbol}{expected}, found {symbol}{amounts.total_amount}",
                    25, "total_amount"
                ))
                score -= 25

        item_taxes = [i.vat_amount for i in amounts.line_items if i.vat_amount is not None]
        if item_taxes:
            item_total = sum(item_taxes, Decimal("0"))
            if abs(item_total - total_tax) > LINE_ITEM_TOLERANCE:
                issues.append(Issue(
                    IssueSeverity.MEDIUM, "LINE_ITEM_MISMATCH",
                    f"VAT total from line items ({symbol}{item_total}) differs from extracted total ({symbol}{total_tax})",
                    15, "line_items"
                ))
                score -= 15

        return max(0, min(100, score))
