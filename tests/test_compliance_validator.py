"""
Tests for jurisdiction compliance validation.
"""

import pytest
import sys
from decimal import Decimal
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc.config import get_jurisdiction
from vatdoc.errors import IssueCode
from vatdoc.models import (
    Category, ExtractedAmounts, IssueSeverity, LineItem, PatternTier, ProvenanceEntry
)
from vatdoc.validation.compliance_validator import ComplianceValidator


def make_amounts(purchases=(), sales=(), **kwargs) -> ExtractedAmounts:
    """Build ExtractedAmounts with provenance for every amount."""
    kwargs.setdefault("category", Category.PURCHASES if purchases else Category.SALES)
    amounts = ExtractedAmounts(confidence=0.7, **kwargs)
    for category, values in ((Category.PURCHASES, purchases), (Category.SALES, sales)):
        for value in values:
            amount = Decimal(str(value))
            amounts.add_amount(amount, category, ProvenanceEntry(amount, "VAT Label", PatternTier.GENERIC, 0.3))
    return amounts


class TestComplianceValidator:
    """Test cases for ComplianceValidator."""

    @pytest.fixture
    def validator(self):
        return ComplianceValidator()

    @pytest.fixture
    def valid_invoice(self):
        return make_amounts(
            purchases=["23.00"],
            tax_rate=Decimal("23"),
            subtotal=Decimal("100.00"),
            total_amount=Decimal("123.00"),
            vat_number="IE1234567T",
            currency="EUR",
        )

    def test_valid_invoice(self, validator, valid_invoice):
        result = validator.validate(valid_invoice)

        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []
        assert result.confidence == 1.0
        assert result.corrected_data is None

    def test_input_not_modified(self, validator, valid_invoice):
        before = valid_invoice.to_dict()
        validator.validate(valid_invoice)

        assert valid_invoice.to_dict() == before

    def test_no_amounts(self, validator):
        result = validator.validate(make_amounts())

        assert not result.is_valid
        assert IssueCode.NO_TAX_FOUND in result.error_codes
        assert "NO_VAT_RATES" in result.warning_codes
        assert result.confidence == pytest.approx(0.45)

    def test_exempt_document_without_amounts(self, validator):
        result = validator.validate(make_amounts(is_tax_exempt=True))

        assert IssueCode.NO_TAX_FOUND not in result.error_codes
        assert any("exempt" in s for s in result.suggestions)

    def test_negative_values(self, validator):
        result = validator.validate(make_amounts(purchases=["-5.00"]))

        assert not result.is_valid
        assert IssueCode.NEGATIVE_AMOUNT in result.error_codes

    def test_missing_and_negative_amounts_are_critical(self, validator):
        """Both conditions share the quality scorer's codes and severity"""
        empty = validator.validate(make_amounts())
        negative = validator.validate(make_amounts(purchases=["-5.00"]))

        for result, code in ((empty, IssueCode.NO_TAX_FOUND), (negative, IssueCode.NEGATIVE_AMOUNT)):
            issue = next(e for e in result.errors if e.code == code)
            assert issue.severity == IssueSeverity.CRITICAL

    def test_rate_outside_jurisdiction(self, validator):
        result = validator.validate(make_amounts(purchases=["17.00"], tax_rate=Decimal("17")))

        assert IssueCode.RATE_NOT_IN_JURISDICTION_SET in result.error_codes
        assert result.is_valid

    def test_uk_rate_under_irish_rules(self, validator):
        result = validator.validate(make_amounts(purchases=["20.00"], tax_rate=Decimal("20")))

        assert IssueCode.RATE_NOT_IN_JURISDICTION_SET in result.error_codes
        assert "UK_VAT_RATE_DETECTED" in result.warning_codes

    def test_uk_rate_under_uk_rules(self):
        validator = ComplianceValidator(get_jurisdiction("GB"))
        result = validator.validate(make_amounts(purchases=["20.00"], tax_rate=Decimal("20"), currency="GBP"))

        assert result.errors == []
        assert "UK_VAT_RATE_DETECTED" not in result.warning_codes

    def test_line_item_rates_checked(self, validator):
        amounts = make_amounts(purchases=["10.00"], line_items=[LineItem("Fuel", vat_rate=Decimal("15"))])
        result = validator.validate(amounts)

        assert IssueCode.RATE_NOT_IN_JURISDICTION_SET in result.error_codes

    def test_total_mismatch(self, validator):
        amounts = make_amounts(purchases=["23.00"], subtotal=Decimal("100.00"), total_amount=Decimal("130.00"))
        result = validator.validate(amounts)

        assert not result.is_valid
        assert IssueCode.TOTAL_MISMATCH in result.error_codes

    def test_line_item_mismatch(self, validator):
        amounts = make_amounts(purchases=["23.00"], line_items=[LineItem("Widgets", vat_amount=Decimal("10.00"))])
        result = validator.validate(amounts)

        mismatch = [e for e in result.errors if e.code == "LINE_ITEM_MISMATCH"]
        assert mismatch and mismatch[0].severity == IssueSeverity.MEDIUM

    def test_duplicates_are_auto_corrected(self, validator):
        amounts = make_amounts(purchases=["23.00", "23.00"])
        result = validator.validate(amounts)

        assert IssueCode.DUPLICATE_AMOUNTS in result.warning_codes
        assert result.corrected_data is not None
        assert result.corrected_data.purchase_tax == [Decimal("23.00")]
        assert "Removed duplicate purchase VAT values" in result.corrections
        assert amounts.purchase_tax == [Decimal("23.00"), Decimal("23.00")]

    def test_auto_correct_keeps_provenance(self, validator):
        amounts = make_amounts(sales=["0.00", "46.00", "46.00"])
        corrected = validator.auto_correct(amounts)

        assert corrected.sales_tax == [Decimal("46.00")]
        assert len(corrected.provenance) == 1
        assert corrected.orphan_amounts() == []
        assert "AUTO_CORRECTED" in corrected.validation_flags
        assert "AUTO_CORRECTED" not in amounts.validation_flags

    def test_mixed_document(self, validator):
        result = validator.validate(make_amounts(purchases=["23.00"], sales=["46.00"]))

        assert "MIXED_VAT_DOCUMENT" in result.warning_codes

    def test_invalid_local_vat_number(self, validator):
        result = validator.validate(make_amounts(purchases=["23.00"], vat_number="IE12345"))

        assert "INVALID_VAT_NUMBER_FORMAT" in result.error_codes

    def test_foreign_supplier(self, validator):
        result = validator.validate(make_amounts(purchases=["23.00"], vat_number="DE123456789"))

        assert "INVALID_VAT_NUMBER_FORMAT" not in result.error_codes
        assert "POTENTIAL_REVERSE_CHARGE" in result.warning_codes

    def test_currency_mismatch(self, validator):
        result = validator.validate(make_amounts(purchases=["23.00"], currency="GBP"))

        assert "CURRENCY_MISMATCH" in result.error_codes

    def test_credit_note_with_positive_vat(self, validator):
        result = validator.validate(make_amounts(purchases=["23.00"], is_credit_note=True))

        issue = [e for e in result.errors if e.code == "CREDIT_NOTE_WITH_POSITIVE_VAT"][0]
        assert issue.severity == IssueSeverity.LOW
        assert result.is_valid

    def test_round_values(self, validator):
        result = validator.validate(make_amounts(sales=["500.00"]))

        assert "ROUND_VAT_VALUES" in result.warning_codes

    def test_registration_threshold_needs_period(self, validator):
        amounts = make_amounts(sales=["4000.50"])

        assert "VAT_REGISTRATION_THRESHOLD" not in validator.validate(amounts).warning_codes
        assert "VAT_REGISTRATION_THRESHOLD" in validator.validate(amounts, period_months=1).warning_codes

    def test_quick_validate(self, validator):
        assert validator.quick_validate("23.00") == (True, "VAT amount appears valid")
        assert validator.quick_validate(-1)[0] is False
        assert validator.quick_validate(0)[0] is False
        assert validator.quick_validate(200000)[1] == "VAT amount seems unusually large"
        assert validator.quick_validate(150, total=100)[1] == "VAT amount exceeds document total"

    def test_suggest_rate(self, validator):
        assert validator.suggest_rate("Hotel accommodation, 2 nights") == Decimal("9")
        assert validator.suggest_rate("Heating fuel delivery") == Decimal("13.5")
        assert validator.suggest_rate("Consulting services") == Decimal("23")

    def test_suggest_rate_uses_jurisdiction(self):
        validator = ComplianceValidator(get_jurisdiction("GB"))

        assert validator.suggest_rate("Hotel accommodation") == Decimal("20")
