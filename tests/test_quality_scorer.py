"""
Tests for the five-factor quality scorer.
"""

import pytest
import sys
from decimal import Decimal
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc.errors import IssueCode
from vatdoc.models import (
    Category, DocumentType, ExtractedAmounts, ExtractionMethod, IssueSeverity, PatternTier, ProvenanceEntry
)
from vatdoc.extraction.text_extractor import TextExtractor
from vatdoc.scoring.quality_scorer import QualityScorer, confidence_boost, grade


def make_amounts(values=(), **kwargs) -> ExtractedAmounts:
    kwargs.setdefault("category", Category.PURCHASES)
    amounts = ExtractedAmounts(confidence=0.7, **kwargs)
    for value in values:
        amount = Decimal(str(value))
        amounts.add_amount(amount, Category.PURCHASES, ProvenanceEntry(amount, "VAT Label", PatternTier.GENERIC, 0.3))
    return amounts


def codes(assessment):
    return {issue.code for issue in assessment.issues}


class TestQualityScorer:
    """Test cases for QualityScorer."""

    @pytest.fixture
    def scorer(self):
        return QualityScorer()

    def test_complete_vision_invoice(self, scorer):
        amounts = make_amounts(
            ["23.00"],
            method=ExtractionMethod.AI_VISION,
            document_type=DocumentType.PURCHASE_INVOICE,
            business_name="Acme Supplies Ltd",
            vat_number="IE1234567T",
            document_date="2024-03-01",
            currency="EUR",
            tax_rate=Decimal("23"),
            subtotal=Decimal("100.00"),
            total_amount=Decimal("123.00"),
        )
        assessment = scorer.assess(amounts)

        assert assessment.overall_score == 98
        assert assessment.grade == "A"
        assert assessment.confidence_boost == 1.15
        assert assessment.compliant
        assert assessment.issues == []

    def test_bare_pattern_receipt(self, scorer):
        amounts = make_amounts(["23.00"], document_type=DocumentType.PURCHASE_RECEIPT)
        assessment = scorer.assess(amounts)

        assert assessment.factors["structure"] == 67
        assert assessment.factors["reliability"] == 65
        assert assessment.overall_score == 88
        assert assessment.confidence_boost == 1.10
        assert codes(assessment) == {"NO_BUSINESS_NAME", "NO_VAT_NUMBER", "NO_DATE"}

    def test_scorer_does_not_modify_amounts(self, scorer):
        amounts = make_amounts(["23.00"])
        before = amounts.to_dict()
        scorer.assess(amounts)

        assert amounts.to_dict() == before

    def test_no_amounts_is_critical(self, scorer):
        assessment = scorer.assess(make_amounts())

        assert IssueCode.NO_TAX_FOUND in codes(assessment)
        assert assessment.factors["amount_quality"] == 10
        assert assessment.overall_score == 58
        assert assessment.grade == "F"
        assert not assessment.compliant
        assert assessment.confidence_boost == 0.9
        assert "Manual review recommended before filing" in assessment.recommendations

    def test_exempt_document_without_amounts(self, scorer):
        assessment = scorer.assess(make_amounts(is_tax_exempt=True))

        zero = [i for i in assessment.issues if i.code == "ZERO_VAT"]
        assert zero and zero[0].severity == IssueSeverity.LOW
        assert not assessment.critical_issues

    def test_negative_amount(self, scorer):
        assessment = scorer.assess(make_amounts(["-5.00"]))

        assert IssueCode.NEGATIVE_AMOUNT in codes(assessment)
        assert assessment.factors["amount_quality"] == 70
        assert assessment.has_blocking_issues

    def test_duplicates(self, scorer):
        assessment = scorer.assess(make_amounts(["23.00", "23.00"]))

        assert IssueCode.DUPLICATE_AMOUNTS in codes(assessment)
        assert assessment.factors["amount_quality"] == 80

    def test_precision_issue(self, scorer):
        assessment = scorer.assess(make_amounts(["23.456"]))

        assert "PRECISION_ISSUE" in codes(assessment)

    def test_precision_issue_from_captured_text(self, scorer):
        """Extracted amounts are rounded to cents, so the captured text carries the precision"""
        amounts = ExtractedAmounts(confidence=0.7, category=Category.PURCHASES)
        amounts.add_amount(Decimal("23.46"), Category.PURCHASES, ProvenanceEntry(
            Decimal("23.46"), "VAT Label", PatternTier.GENERIC, 0.3, raw="23.456"
        ))
        amounts.add_amount(Decimal("1234.56"), Category.PURCHASES, ProvenanceEntry(
            Decimal("1234.56"), "VAT Label", PatternTier.GENERIC, 0.3, raw="1.234,56"
        ))

        issues = [i for i in scorer.assess(amounts).issues if i.code == "PRECISION_ISSUE"]

        assert len(issues) == 1
        assert "23.46" in issues[0].message

    def test_extracted_text_precision(self, scorer):
        amounts = TextExtractor().extract("VAT: €23.456", Category.PURCHASES)

        assert amounts.purchase_tax == [Decimal("23.46")]
        assert amounts.provenance[0].raw == "23.456"
        assert "PRECISION_ISSUE" in codes(scorer.assess(amounts))

    def test_invalid_rate(self, scorer):
        assessment = scorer.assess(make_amounts(["17.00"], tax_rate=Decimal("17")))

        assert "INVALID_VAT_RATE" in codes(assessment)
        assert assessment.factors["compliance"] == 75
        assert assessment.compliant

    def test_foreign_document_not_compliant(self, scorer):
        assessment = scorer.assess(make_amounts(["23.00"], vat_number="DE123456789", currency="USD"))

        assert {"NON_LOCAL_VAT_NUMBER", "NON_LOCAL_CURRENCY"} <= codes(assessment)
        assert assessment.factors["compliance"] == 65
        assert not assessment.compliant

    def test_fallback_reliability(self, scorer):
        amounts = make_amounts(["23.00"], method=ExtractionMethod.FALLBACK, used_fallback=True)
        assessment = scorer.assess(amounts)

        assert assessment.factors["reliability"] == 30
        assert "FALLBACK_PROCESSING_USED" in codes(assessment)

    def test_total_mismatch(self, scorer):
        amounts = make_amounts(["23.00"], subtotal=Decimal("100.00"), total_amount=Decimal("150.00"))
        assessment = scorer.assess(amounts)

        assert IssueCode.TOTAL_MISMATCH in codes(assessment)
        assert assessment.factors["consistency"] == 75

    def test_weights_are_normalized(self):
        scorer = QualityScorer(weights={
            "amount_quality": 1, "structure": 1, "compliance": 1, "reliability": 1, "consistency": 1
        })

        assert sum(scorer.weights.values()) == pytest.approx(1.0)
        assert scorer.weights["structure"] == pytest.approx(0.2)


class TestConfidenceBoost:
    """Test cases for the score-to-boost mapping."""

    def test_buckets(self):
        assert confidence_boost(95, 0) == 1.15
        assert confidence_boost(85, 0) == 1.10
        assert confidence_boost(72, 0) == 1.05
        assert confidence_boost(60, 0) == 1.0
        assert confidence_boost(40, 0) == 0.85
        assert confidence_boost(20, 0) == 0.70

    def test_critical_issues_reduce_boost(self):
        assert confidence_boost(95, 2) == pytest.approx(0.92)

    def test_boost_floor(self):
        assert confidence_boost(20, 3) == 0.5

    def test_grades(self):
        assert grade(90) == "A"
        assert grade(89.9) == "B"
        assert grade(70) == "C"
        assert grade(59) == "F"
