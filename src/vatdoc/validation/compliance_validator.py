"""
Jurisdiction compliance validation for extracted VAT amounts.

Checks extracted amounts against the configured jurisdiction's rate set,
VAT-number format and currency, verifies that totals add up, and applies the
business rules that decide whether a document may proceed without review.
"""

import re
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ..config import JurisdictionConfig
from ..errors import IssueCode
from ..models import (
    Category, DocumentType, ExtractedAmounts, Issue, IssueSeverity,
    PatternTier, ProvenanceEntry, _clamp, to_amount
)
from ..utils.logger import AuditPort, LoggingAuditPort

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.8
TOTAL_TOLERANCE = Decimal("0.01")
LINE_ITEM_TOLERANCE = Decimal("1.00")
SMALL_VALUE = Decimal("0.01")
HIGH_VAT_PERCENTAGE = Decimal("30")
UK_RATE = Decimal("20")
NORDIC_RATE = Decimal("25")
GENERIC_VAT_NUMBER = re.compile(r"^[A-Z]{2}[0-9A-Z]{2,12}$")

HOSPITALITY_KEYWORDS = ("hotel", "restaurant", "accommodation", "catering", "hospitality")
REDUCED_KEYWORDS = ("fuel", "energy", "building", "electricity", "gas")


@dataclass
class ValidationWarning:
    code: str
    message: str
    field: str
    recommendation: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "code": self.code,
            "message": self.message,
            "field": self.field,
            "recommendation": self.recommendation,
        }


@dataclass
class ValidationResult:
    """
    Outcome of a compliance check.

    Attributes:
        is_valid: False when any HIGH or CRITICAL error was raised
        confidence: Validation confidence in [0, 1]
        errors: Rule violations with severities
        warnings: Non-blocking observations with recommendations
        suggestions: Human-readable next steps
        corrected_data: Auto-corrected copy of the amounts, when corrections apply
        corrections: Descriptions of the corrections made
    """

    is_valid: bool
    confidence: float
    errors: List[Issue] = field(default_factory=list)
    warnings: List[ValidationWarning] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    corrected_data: Optional[ExtractedAmounts] = None
    corrections: List[str] = field(default_factory=list)

    @property
    def error_codes(self) -> Set[str]:
        return {e.code for e in self.errors}

    @property
    def warning_codes(self) -> Set[str]:
        return {w.code for w in self.warnings}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": round(self.confidence, 4),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "suggestions": list(self.suggestions),
            "corrections": list(self.corrections),
            "corrected_data": self.corrected_data.to_dict() if self.corrected_data else None,
        }


class ComplianceValidator:
    """
    Validates ExtractedAmounts against one jurisdiction's VAT rules.

    Args:
        jurisdiction: Rate set, VAT-number format, currency and thresholds
        audit: Receives one audit event per validation
    """

    def __init__(self, jurisdiction: Optional[JurisdictionConfig] = None, audit: Optional[AuditPort] = None):
        self.jurisdiction = jurisdiction or JurisdictionConfig()
        self.audit = audit or LoggingAuditPort()
        self._vat_number_re = re.compile(self.jurisdiction.vat_number_pattern)

    def validate(self, amounts: ExtractedAmounts, period_months: Optional[int] = None) -> ValidationResult:
        """
        Run every compliance check over a set of extracted amounts.

        Args:
            amounts: Extraction output; it is not modified
            period_months: Length of the period the amounts cover, enables the
                registration-threshold check

        Returns:
            ValidationResult
        """
        errors: List[Issue] = []
        warnings: List[ValidationWarning] = []
        suggestions: List[str] = []

        self._check_basic(amounts, errors, warnings)
        rates = self._check_rates(amounts, errors, warnings)
        self._check_consistency(amounts, errors, warnings)
        self._check_business_logic(amounts, errors, warnings, suggestions)
        self._check_compliance(amounts, warnings, period_months)

        confidence = self._confidence(amounts, rates, errors, warnings)
        self._suggest(amounts, errors, warnings, suggestions)
        corrected, corrections = self._correct(amounts)

        result = ValidationResult(
            is_valid=not any(e.is_blocking for e in errors),
            confidence=confidence,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            corrected_data=corrected if corrections else None,
            corrections=corrections,
        )
        logger.debug(
            f"Validation for {self.jurisdiction.code}: valid={result.is_valid}, "
            f"{len(errors)} error(s), {len(warnings)} warning(s), confidence {confidence:.2f}"
        )
        self.audit.audit(
            "vat_validation_completed",
            jurisdiction=self.jurisdiction.code,
            is_valid=result.is_valid,
            errors=sorted(result.error_codes),
            confidence=round(confidence, 4),
        )
        return result

    def _check_basic(self, amounts: ExtractedAmounts, errors: List[Issue], warnings: List[ValidationWarning]):
        values = amounts.all_amounts
        symbol = self.jurisdiction.currency_symbol

        if amounts.total_tax == 0 and not any(v != 0 for v in values):
            if not amounts.is_tax_exempt:
                errors.append(Issue(
                    IssueSeverity.CRITICAL, IssueCode.NO_TAX_FOUND,
                    "No VAT amounts detected in document", field="vat_amounts"
                ))

        negatives = [v for v in values if v < 0]
        if negatives:
            errors.append(Issue(
                IssueSeverity.CRITICAL, IssueCode.NEGATIVE_AMOUNT,
                f"Negative VAT values detected: {', '.join(str(v) for v in negatives)}",
                field="vat_amounts"
            ))

        large = [v for v in values if v > self.jurisdiction.large_amount_threshold]
        if large:
            errors.append(Issue(
                IssueSeverity.MEDIUM, "LARGE_VAT_VALUES",
                f"Unusually large VAT values: {symbol}{', '.join(str(v) for v in large)}",
                field="vat_amounts"
            ))

        small = [v for v in values if 0 < v < SMALL_VALUE]
        if small:
            warnings.append(ValidationWarning(
                "SMALL_VAT_VALUES",
                f"Very small VAT values: {', '.join(str(v) for v in small)}",
                "vat_amounts",
                "Check if these are correctly extracted"
            ))

    def _collect_rates(self, amounts: ExtractedAmounts) -> List[Decimal]:
        rates = []
        if amounts.tax_rate is not None:
            rates.append(amounts.tax_rate)
        for item in amounts.line_items:
            if item.vat_rate is not None and item.vat_rate not in rates:
                rates.append(item.vat_rate)
        return rates

    def _check_rates(self, amounts: ExtractedAmounts, errors: List[Issue], warnings: List[ValidationWarning]) -> List[Decimal]:
        rates = self._collect_rates(amounts)
        if not rates:
            warnings.append(ValidationWarning(
                "NO_VAT_RATES", "No VAT rates specified", "vat_rates",
                "Consider extracting VAT rates for better validation"
            ))
            return rates

        invalid = [r for r in rates if not self.jurisdiction.is_valid_rate(r)]
        if invalid:
            errors.append(Issue(
                IssueSeverity.MEDIUM, IssueCode.RATE_NOT_IN_JURISDICTION_SET,
                f"Rates not valid in {self.jurisdiction.code}: {', '.join(str(r) for r in invalid)}%",
                field="vat_rates"
            ))

        standard = self.jurisdiction.standard_rate
        if UK_RATE in rates and standard != UK_RATE:
            warnings.append(ValidationWarning(
                "UK_VAT_RATE_DETECTED",
                f"UK VAT rate (20%) detected - {self.jurisdiction.code} standard rate is {standard}%",
                "vat_rates", "Verify this is not a UK document"
            ))
        if NORDIC_RATE in rates and standard != NORDIC_RATE:
            warnings.append(ValidationWarning(
                "NORDIC_VAT_RATE_DETECTED",
                f"Nordic VAT rate (25%) detected - {self.jurisdiction.code} standard rate is {standard}%",
                "vat_rates", f"Verify this is a {self.jurisdiction.code} document"
            ))
        return rates

    def _check_consistency(self, amounts: ExtractedAmounts, errors: List[Issue], warnings: List[ValidationWarning]):
        total_tax = amounts.total_tax

        if amounts.subtotal is not None and amounts.total_amount is not None:
            difference = abs(amounts.subtotal + total_tax - amounts.total_amount)
            if difference > TOTAL_TOLERANCE:
                errors.append(Issue(
                    IssueSeverity.HIGH, IssueCode.TOTAL_MISMATCH,
                    f"Subtotal {amounts.subtotal} + VAT {total_tax} does not equal total {amounts.total_amount}",
                    field="total_amount"
                ))

        item_taxes = [i.vat_amount for i in amounts.line_items if i.vat_amount is not None]
        if item_taxes:
            item_total = sum(item_taxes, Decimal("0"))
            if abs(item_total - total_tax) > LINE_ITEM_TOLERANCE:
                errors.append(Issue(
                    IssueSeverity.MEDIUM, "LINE_ITEM_MISMATCH",
                    f"Line-item VAT {item_total} does not match extracted VAT {total_tax}",
                    field="line_items"
                ))

        values = amounts.all_amounts
        duplicates = sorted({v for v in values if values.count(v) > 1})
        if duplicates:
            warnings.append(ValidationWarning(
                IssueCode.DUPLICATE_AMOUNTS,
                f"Duplicate VAT values detected: {', '.join(str(v) for v in duplicates)}",
                "vat_amounts",
                "Check if values were extracted multiple times"
            ))

        if amounts.total_amount and amounts.total_amount > 0 and total_tax > 0:
            percentage = total_tax / amounts.total_amount * 100
            if percentage > HIGH_VAT_PERCENTAGE:
                warnings.append(ValidationWarning(
                    "HIGH_VAT_PERCENTAGE",
                    f"VAT represents {percentage:.1f}% of total amount",
                    "vat_amounts",
                    "Verify this is correct - usually VAT is 0-25% of total"
                ))

    def _check_business_logic(
        self,
        amounts: ExtractedAmounts,
        errors: List[Issue],
        warnings: List[ValidationWarning],
        suggestions: List[str]
    ):
        sales = sum(amounts.sales_tax, Decimal("0"))
        purchases = sum(amounts.purchase_tax, Decimal("0"))

        if sales > 0 and purchases > 0:
            warnings.append(ValidationWarning(
                "MIXED_VAT_DOCUMENT", "Document contains both sales and purchase VAT",
                "document_type", "Verify document type and VAT categorization"
            ))

        if sales == 0 and purchases == 0 and amounts.is_tax_exempt:
            suggestions.append("Document is marked VAT exempt; confirm no VAT should be recorded")

        if amounts.vat_number:
            number = re.sub(r"\s", "", amounts.vat_number).upper()
            is_local = number.startswith(self.jurisdiction.vat_number_prefix)
            pattern = self._vat_number_re if is_local else GENERIC_VAT_NUMBER
            if not pattern.match(number):
                errors.append(Issue(
                    IssueSeverity.MEDIUM, "INVALID_VAT_NUMBER_FORMAT",
                    f"Invalid VAT number format: {amounts.vat_number}",
                    field="vat_number"
                ))

        if amounts.currency and amounts.currency != self.jurisdiction.currency:
            errors.append(Issue(
                IssueSeverity.MEDIUM, "CURRENCY_MISMATCH",
                f"Currency {amounts.currency} does not match {self.jurisdiction.currency}",
                field="currency"
            ))

        if amounts.is_credit_note and any(v > 0 for v in amounts.all_amounts):
            errors.append(Issue(
                IssueSeverity.LOW, "CREDIT_NOTE_WITH_POSITIVE_VAT",
                "Credit note with positive VAT amounts",
                field="vat_amounts"
            ))

        threshold = self.jurisdiction.round_value_threshold
        if any(v == v.to_integral_value() and v > threshold for v in amounts.all_amounts):
            warnings.append(ValidationWarning(
                "ROUND_VAT_VALUES", "VAT amounts appear to be round numbers",
                "vat_amounts", "Verify these are exact amounts, not estimates"
            ))

    def _check_compliance(
        self,
        amounts: ExtractedAmounts,
        warnings: List[ValidationWarning],
        period_months: Optional[int]
    ):
        sales = sum(amounts.sales_tax, Decimal("0"))
        if period_months and period_months > 0 and sales > 0:
            annualised = sales / Decimal(period_months) * 12
            if annualised > self.jurisdiction.registration_threshold and not amounts.vat_number:
                warnings.append(ValidationWarning(
                    "VAT_REGISTRATION_THRESHOLD",
                    f"Annualised sales VAT {annualised:.2f} suggests the registration threshold is exceeded",
                    "vat_number", "Business may need VAT registration"
                ))

        is_purchase = (
            amounts.category == Category.PURCHASES
            or amounts.document_type in (DocumentType.PURCHASE_INVOICE, DocumentType.PURCHASE_RECEIPT)
        )
        if is_purchase and amounts.vat_number:
            if not amounts.vat_number.upper().startswith(self.jurisdiction.vat_number_prefix):
                warnings.append(ValidationWarning(
                    "POTENTIAL_REVERSE_CHARGE", "International supplier detected",
                    "vat_number", "Check if reverse charge VAT applies"
                ))

    def _confidence(
        self,
        amounts: ExtractedAmounts,
        rates: List[Decimal],
        errors: List[Issue],
        warnings: List[ValidationWarning]
    ) -> float:
        high = sum(1 for e in errors if e.is_blocking)
        medium = sum(1 for e in errors if e.severity == IssueSeverity.MEDIUM)

        confidence = BASE_CONFIDENCE - high * 0.3 - medium * 0.15 - len(warnings) * 0.05
        if rates:
            confidence += 0.1
        if amounts.vat_number and self.is_valid_vat_number(amounts.vat_number):
            confidence += 0.1
        if amounts.total_amount and amounts.total_amount > 0:
            confidence += 0.05
        return _clamp(confidence)

    def _suggest(
        self,
        amounts: ExtractedAmounts,
        errors: List[Issue],
        warnings: List[ValidationWarning],
        suggestions: List[str]
    ):
        if errors:
            suggestions.append("Review and correct validation errors before submission")
        if warnings:
            suggestions.append("Consider reviewing warnings to improve accuracy")
        if amounts.total_tax == 0 and not amounts.is_tax_exempt:
            suggestions.append("If document should contain VAT, try re-uploading with better quality")
        if not amounts.vat_number:
            suggestions.append("Include VAT number if available for better validation")

    def is_valid_vat_number(self, vat_number: str) -> bool:
        return bool(self._vat_number_re.match(re.sub(r"\s", "", vat_number).upper()))

    def auto_correct(self, amounts: ExtractedAmounts) -> ExtractedAmounts:
        """
        Return a corrected copy with duplicate and zero amounts removed.

        The input is left untouched; provenance entries follow their amounts
        so the copy still has exactly one entry per amount.
        """
        corrected, _ = self._correct(amounts)
        return corrected

    def _correct(self, amounts: ExtractedAmounts) -> Tuple[ExtractedAmounts, List[str]]:
        corrections: List[str] = []
        pool: Dict[Decimal, List[ProvenanceEntry]] = {}
        for entry in amounts.provenance:
            pool.setdefault(entry.amount, []).append(entry)

        corrected = replace(
            amounts,
            sales_tax=[],
            purchase_tax=[],
            provenance=[],
            validation_flags=set(amounts.validation_flags),
            line_items=list(amounts.line_items),
            breakdown=dict(amounts.breakdown),
            column_details=list(amounts.column_details),
            confidence_history=list(amounts.confidence_history),
        )

        for category, values, label in (
            (Category.SALES, amounts.sales_tax, "sales"),
            (Category.PURCHASES, amounts.purchase_tax, "purchase"),
        ):
            seen = set()
            removed_duplicates = removed_zeros = 0
            for value in values:
                entries = pool.get(value) or []
                entry = entries.pop(0) if entries else None
                if value == 0:
                    removed_zeros += 1
                    continue
                if value in seen:
                    removed_duplicates += 1
                    continue
                seen.add(value)
                corrected.add_amount(value, category, entry or ProvenanceEntry(
                    amount=value,
                    source_pattern="auto_correct",
                    tier=PatternTier.GENERIC,
                    local_confidence=0.0,
                    method="Auto-correction"
                ))
            if removed_duplicates:
                corrections.append(f"Removed duplicate {label} VAT values")
            if removed_zeros:
                corrections.append(f"Removed zero {label} VAT values")

        if corrections:
            corrected.validation_flags.add("AUTO_CORRECTED")
            logger.info(f"Auto-corrected amounts: {'; '.join(corrections)}")
        return corrected, corrections

    def quick_validate(
        self,
        amount: Union[Decimal, float, int, str],
        total: Union[Decimal, float, int, str, None] = None
    ) -> Tuple[bool, str]:
        """
        Check a single VAT amount.

        Args:
            amount: VAT amount to check
            total: Optional document total the amount must not exceed

        Returns:
            Tuple of (ok, reason)
        """
        value = to_amount(amount)
        if value is None:
            return False, "VAT amount is not a number"
        if value < 0:
            return False, "VAT amounts cannot be negative"
        if value == 0:
            return False, "No VAT amount provided"
        if value > self.jurisdiction.large_amount_threshold:
            return False, "VAT amount seems unusually large"
        total_value = to_amount(total) if total is not None else None
        if total_value is not None and value > total_value:
            return False, "VAT amount exceeds document total"
        return True, "VAT amount appears valid"

    def suggest_rate(self, description: str) -> Decimal:
        """
        Suggest the applicable VAT rate for a goods or service description.

        Hospitality maps to the 9% rate and fuel, energy or building work to
        13.5% where the jurisdiction has those rates; everything else gets the
        standard rate.
        """
        lowered = (description or "").lower()
        if any(k in lowered for k in HOSPITALITY_KEYWORDS) and self.jurisdiction.is_valid_rate(9):
            return Decimal("9")
        if any(k in lowered for k in REDUCED_KEYWORDS) and self.jurisdiction.is_valid_rate(Decimal("13.5")):
            return Decimal("13.5")
        return self.jurisdiction.standard_rate
