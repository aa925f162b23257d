"""
Pattern-tier VAT extraction from plain document text.

The extractor walks the PatternLibrary tiers in priority order and stops at
the first tier that yields a new amount. Amounts attached to payment, lease
or rental labels are excluded up front, repeated values are kept once, and
every kept amount is recorded with its provenance.
"""

import re
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Set, Tuple, Union

from ..classifiers.document_classifier import DocumentTypeClassifier, SUPPLIER_INVOICE_CONFIDENCE
from ..errors import IssueCode
from ..models import (
    CENT, Category, ExtractedAmounts, ExtractionMethod, PatternTier, ProvenanceEntry
)
from ..patterns.pattern_library import PatternLibrary, TIER_CONFIDENCE, TIER_LABELS

logger = logging.getLogger(__name__)

BASELINE_CONFIDENCE = 0.1
MULTI_AMOUNT_BONUS = 0.1
TOTAL_PRESENT_BONUS = 0.1
RECONCILED_BONUS = 0.1
RECONCILE_TOLERANCE = Decimal("0.02")

VAT_NUMBER_PATTERN = re.compile(r"\b([A-Z]{2}[ \t]?[0-9]{7}[A-Z]{1,2}|GB[ \t]?[0-9]{9})\b")
DATE_PATTERN = re.compile(
    r"\b(\d{4}-\d{2}-\d{2}"
    r"|\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}"
    r"|\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+\d{4})\b",
    re.IGNORECASE
)
INVOICE_NUMBER_PATTERN = re.compile(r"\binvoice\s*(?:no\.?|number|#)\s*[:\-]?\s*([A-Z0-9][A-Z0-9\-/]*)", re.IGNORECASE)
BUSINESS_SUFFIX_PATTERN = re.compile(r"\b(?:ltd|limited|teoranta|plc|llc|inc|gmbh|dac|uc)\b\.?", re.IGNORECASE)
EXEMPT_PATTERN = re.compile(
    r"\b(?:vat[\s\-]+exempt|exempt\s+from\s+vat|zero[\s\-]+rated|reverse\s+charge|no\s+vat\s+charged)\b",
    re.IGNORECASE
)
CREDIT_NOTE_PATTERN = re.compile(r"\bcredit\s+note\b", re.IGNORECASE)


class TextExtractor:
    """
    Applies the pattern tiers to document text.

    Args:
        library: Pattern rules (defaults to the reference rule set)
        classifier: Category classifier used to confirm or override the caller's hint
        default_category: Category used when neither classifier nor hint decide
    """

    def __init__(
        self,
        library: Optional[PatternLibrary] = None,
        classifier: Optional[DocumentTypeClassifier] = None,
        default_category: Category = Category.PURCHASES
    ):
        self.library = library or PatternLibrary.default()
        self.classifier = classifier or DocumentTypeClassifier()
        self.default_category = default_category

    def extract(
        self,
        text: str,
        category: Union[Category, str, None] = None,
        file_name: str = ""
    ) -> ExtractedAmounts:
        """
        Extract VAT amounts from plain text.

        Args:
            text: Document text
            category: Caller's SALES/PURCHASES hint
            file_name: Source file name, for logging only

        Returns:
            ExtractedAmounts with provenance for every kept amount
        """
        result = ExtractedAmounts(confidence=BASELINE_CONFIDENCE, method=ExtractionMethod.PATTERN)
        text = text or ""
        target = self._resolve_category(text, Category.parse(category), result)
        result.category = target
        result.document_type = self.classifier.document_type_for(target, text)

        if not text.strip():
            result.validation_flags.add(IssueCode.NO_TAX_FOUND)
            logger.info(f"No text to extract from for {file_name or 'document'}")
            return result

        excluded = self.library.find_exclusions(text)
        self._apply_tiers(text, target, excluded, result)

        result.total_amount = self.library.find_total(text)
        result.subtotal = self.library.find_subtotal(text)
        if result.tax_rate is None:
            result.tax_rate = self.library.find_rate(text)

        if result.total_amount is not None and result.all_amounts:
            result.adjust_confidence(TOTAL_PRESENT_BONUS, "total_present")
            if self._reconciles(result):
                result.adjust_confidence(RECONCILED_BONUS, "reconciled_with_total")
                result.validation_flags.add("RECONCILED_WITH_TOTAL")

        if not result.all_amounts:
            self._derive_from_total(result, target)

        if len(result.all_amounts) >= 2:
            result.adjust_confidence(MULTI_AMOUNT_BONUS, "multiple_amounts")

        if not result.all_amounts:
            result.validation_flags.add(IssueCode.NO_TAX_FOUND)

        self._extract_details(text, result)

        logger.info(
            f"Extracted {len(result.all_amounts)} VAT amount(s) from {file_name or 'document'} "
            f"with confidence {result.confidence:.2f}"
        )
        return result

    def _resolve_category(self, text: str, hint: Category, result: ExtractedAmounts) -> Category:
        predicted, confidence = self.classifier.classify(text)
        if predicted != Category.UNKNOWN and confidence >= SUPPLIER_INVOICE_CONFIDENCE:
            if hint not in (Category.UNKNOWN, predicted):
                result.validation_flags.add(IssueCode.CATEGORY_FROM_CLASSIFIER)
                logger.info(f"Classifier overrides category hint {hint.value} -> {predicted.value} ({confidence:.2f})")
            return predicted
        if hint != Category.UNKNOWN:
            return hint
        result.validation_flags.add("CATEGORY_UNRESOLVED")
        return self.default_category

    def _apply_tiers(
        self,
        text: str,
        target: Category,
        excluded: Dict[Decimal, str],
        result: ExtractedAmounts
    ):
        seen: Set[Decimal] = set()
        spans: Dict[Decimal, Set[Tuple[int, int]]] = {}

        for tier in self.library.tiers:
            added = 0
            for match in self.library.find_amounts(text, tier):
                amount = match.amount
                if amount is None:
                    logger.debug(f"Rejected malformed amount '{match.raw}' from {match.rule.name}")
                    continue
                if amount <= 0:
                    continue
                if amount in excluded:
                    result.validation_flags.add(IssueCode.EXCLUDED_PAYMENT_AMOUNT)
                    logger.debug(f"Excluded {amount} matching '{excluded[amount]}'")
                    continue

                span = (match.start, match.end)
                known_spans = spans.setdefault(amount, set())
                if amount in seen:
                    # Same value at a new position is a genuine repetition
                    if span not in known_spans:
                        result.validation_flags.add(IssueCode.DUPLICATE_AMOUNTS)
                    known_spans.add(span)
                    continue

                seen.add(amount)
                known_spans.add(span)
                result.add_amount(amount, target, ProvenanceEntry(
                    amount=amount,
                    source_pattern=match.rule.name,
                    tier=tier,
                    local_confidence=match.rule.confidence,
                    method=match.rule.method,
                    raw=match.raw
                ))
                result.adjust_confidence(match.rule.confidence, f"tier{int(tier)}:{match.rule.name}")
                if match.rate is not None and result.tax_rate is None:
                    result.tax_rate = match.rate
                added += 1

            if added:
                logger.debug(f"Tier {int(tier)} yielded {added} amount(s); lower tiers skipped")
                break

    def _reconciles(self, result: ExtractedAmounts) -> bool:
        if result.tax_rate is None or result.tax_rate <= 0:
            return False
        expected = derive_vat(result.total_amount, result.tax_rate)
        return any(abs(a - expected) <= RECONCILE_TOLERANCE for a in result.all_amounts)

    def _derive_from_total(self, result: ExtractedAmounts, target: Category):
        if result.total_amount is None or result.tax_rate is None or result.tax_rate <= 0:
            return
        derived = derive_vat(result.total_amount, result.tax_rate)
        if derived <= 0:
            return
        result.add_amount(derived, target, ProvenanceEntry(
            amount=derived,
            source_pattern=f"total {result.total_amount} at {result.tax_rate}%",
            tier=PatternTier.DERIVED,
            local_confidence=TIER_CONFIDENCE[PatternTier.DERIVED],
            method=f"{TIER_LABELS[PatternTier.DERIVED]}: total x rate / (100 + rate)"
        ))
        result.adjust_confidence(TIER_CONFIDENCE[PatternTier.DERIVED], "derived_from_total")
        result.validation_flags.add(IssueCode.DERIVED_FROM_TOTAL_AND_RATE)
        logger.info(f"Derived VAT {derived} from total {result.total_amount} at {result.tax_rate}%")

    def _extract_details(self, text: str, result: ExtractedAmounts):
        result.vat_number = extract_vat_number(text)
        result.document_date = extract_date(text)
        result.business_name = extract_business_name(text)
        result.currency = detect_currency(text)
        invoice_match = INVOICE_NUMBER_PATTERN.search(text)
        if invoice_match:
            result.invoice_number = invoice_match.group(1)
        result.is_tax_exempt = bool(EXEMPT_PATTERN.search(text))
        result.is_credit_note = bool(CREDIT_NOTE_PATTERN.search(text))


def derive_vat(total: Decimal, rate: Decimal) -> Decimal:
    """VAT contained in a VAT-inclusive total: total x rate / (100 + rate)."""
    return (total * rate / (Decimal("100") + rate)).quantize(CENT, rounding=ROUND_HALF_UP)


def extract_vat_number(text: str) -> Optional[str]:
    match = VAT_NUMBER_PATTERN.search(text or "")
    if not match:
        return None
    return re.sub(r"\s", "", match.group(1)).upper()


def extract_date(text: str) -> Optional[str]:
    match = DATE_PATTERN.search(text or "")
    return match.group(1) if match else None


def extract_business_name(text: str) -> Optional[str]:
    """First line carrying a company suffix such as Ltd or Teoranta."""
    for line in (text or "").splitlines():
        line = line.strip()
        if line and BUSINESS_SUFFIX_PATTERN.search(line) and len(line) <= 80:
            return line
    return None


def detect_currency(text: str) -> Optional[str]:
    text = text or ""
    if "€" in text or re.search(r"\bEUR\b", text):
        return "EUR"
    if "£" in text or re.search(r"\bGBP\b", text):
        return "GBP"
    if "$" in text or re.search(r"\bUSD\b", text):
        return "USD"
    return None
