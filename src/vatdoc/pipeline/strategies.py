"""
Extraction strategies run by the ExtractionPipeline.

Every strategy turns a DocumentContext into a tagged ExtractionResult. A
strategy that cannot produce amounts returns a failure result explaining
why; collaborator errors (vision service down, unreadable grid) are raised as
VATExtractionError and handled by the pipeline.
"""

import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from ..classifiers.document_classifier import DocumentTypeClassifier
from ..config import PipelineConfig
from ..errors import IssueCode
from ..extraction.spreadsheet_aggregator import Grid, SpreadsheetAggregator, detect_format
from ..extraction.templates import TemplateMatcher
from ..extraction.text_extractor import TextExtractor
from ..models import (
    Category, ExtractedAmounts, ExtractionMethod, ExtractionResult, PatternTier, ProvenanceEntry
)
from ..patterns.pattern_library import PatternLibrary, parse_amount
from ..utils.logger import AuditPort, LoggingAuditPort
from ..vision.vision_service import BaseVisionService, vision_payload_to_amounts

logger = logging.getLogger(__name__)

DEEP_SCAN_KEYWORDS = ("vat", "tax", "levy", "duty", "cáin", "cois")
# Below the fallback floor: a deep scan only ever feeds the manual-review result
DEEP_SCAN_CONFIDENCE = 0.3
DEEP_SCAN_AMOUNT = re.compile(
    r"(?:(?P<symbol>[€£$])[ \t]*)?(?<![\d.])(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+\.\d{2}|\d+)(?![\d.]|[ \t]*%)"
)
TEMPLATE_REVIEW_BELOW = 0.7


@dataclass
class DocumentContext:
    """Input handed to every strategy for one document."""

    text: str
    file_name: str = ""
    category: Category = Category.UNKNOWN
    grid: Optional[Grid] = None
    image_data_url: Optional[str] = None


def failure_result(method: ExtractionMethod, reason: str, context: DocumentContext, code: Optional[str] = None) -> ExtractionResult:
    """Structured failure for a strategy that produced nothing usable."""
    issue = f"{code}: {reason}" if code else reason
    return ExtractionResult(
        success=False,
        confidence=0.0,
        method=method,
        extracted_text=context.text,
        issues=[issue],
        requires_manual_review=True,
        user_message=f"{method.value} extraction failed: {reason}",
        file_name=context.file_name,
    )


def success_result(
    amounts: ExtractedAmounts,
    context: DocumentContext,
    issues: List[str],
    user_message: str,
    requires_manual_review: bool = False
) -> ExtractionResult:
    return ExtractionResult(
        success=True,
        confidence=amounts.confidence,
        method=amounts.method,
        sales_tax=list(amounts.sales_tax),
        purchase_tax=list(amounts.purchase_tax),
        extracted_text=context.text,
        issues=list(issues),
        requires_manual_review=requires_manual_review,
        user_message=user_message,
        amounts=amounts,
        file_name=context.file_name,
    )


class ExtractionStrategy(ABC):
    """Abstract base class for extraction strategies."""

    method: ExtractionMethod = ExtractionMethod.PATTERN

    def __init__(self, floor: float, audit: Optional[AuditPort] = None):
        self.floor = floor
        self.audit = audit or LoggingAuditPort()

    @property
    def name(self) -> str:
        return type(self).__name__

    def applies_to(self, context: DocumentContext) -> bool:
        return bool(context.text and context.text.strip())

    def clears_floor(self, result: ExtractionResult) -> bool:
        return result.success and result.confidence >= self.floor

    @abstractmethod
    def extract(self, context: DocumentContext) -> ExtractionResult:
        pass


class VisionStrategy(ExtractionStrategy):
    """Single attempt against the external vision service."""

    method = ExtractionMethod.AI_VISION

    def __init__(
        self,
        service: Optional[BaseVisionService],
        floor: float,
        review_below: float = 0.8,
        library: Optional[PatternLibrary] = None,
        audit: Optional[AuditPort] = None
    ):
        super().__init__(floor, audit)
        self.service = service
        self.review_below = review_below
        self.library = library or PatternLibrary.default()

    def applies_to(self, context: DocumentContext) -> bool:
        return super().applies_to(context) or bool(context.image_data_url)

    def extract(self, context: DocumentContext) -> ExtractionResult:
        if self.service is None:
            return failure_result(self.method, "Vision service not available", context, IssueCode.VISION_SERVICE_UNAVAILABLE)

        response = self.service.analyze(context.text, context.file_name, context.category, context.image_data_url)
        if not response.get("success") or not response.get("extractedData"):
            reason = response.get("error") or "AI processing failed to extract VAT data"
            self.audit.warn("Vision service returned no VAT data", file_name=context.file_name, reason=reason)
            return failure_result(self.method, reason, context, IssueCode.NO_TAX_FOUND)

        amounts = vision_payload_to_amounts(response["extractedData"], context.category, context.text, self.library)
        if not amounts.all_amounts:
            return failure_result(self.method, "AI processing failed to extract VAT data", context, IssueCode.NO_TAX_FOUND)

        percent = round(amounts.confidence * 100)
        if amounts.confidence > self.review_below:
            message = f"AI successfully extracted VAT amounts with {percent}% confidence"
        else:
            message = f"AI extracted VAT amounts but confidence is {percent}%. Please verify the amounts."
        return success_result(
            amounts, context,
            issues=["Low confidence extraction"] if amounts.confidence < 0.5 else [],
            user_message=message,
            requires_manual_review=amounts.confidence < self.review_below,
        )


class SpreadsheetStrategy(ExtractionStrategy):
    """Structured aggregation of a spreadsheet grid."""

    method = ExtractionMethod.SPREADSHEET

    def __init__(
        self,
        aggregator: SpreadsheetAggregator,
        floor: float,
        currency_symbol: str = "€",
        audit: Optional[AuditPort] = None
    ):
        super().__init__(floor, audit)
        self.aggregator = aggregator
        self.currency_symbol = currency_symbol

    def applies_to(self, context: DocumentContext) -> bool:
        return context.grid is not None

    def extract(self, context: DocumentContext) -> ExtractionResult:
        amounts = self.aggregator.aggregate(context.grid, context.category, context.file_name)
        if not amounts.all_amounts:
            return failure_result(self.method, "No VAT columns with positive amounts found in spreadsheet", context, IssueCode.NO_TAX_FOUND)

        report_format = detect_format(context.grid.headers)
        issues = []
        if "AMBIGUOUS_COUNTRY_SUBTOTAL" in amounts.validation_flags:
            issues.append("Country subtotal could not be identified for every country - verify the total")
        if "MULTIPLE_TAX_COLUMNS" in amounts.validation_flags:
            issues.append("Several tax columns found - only the highest-ranked column is totalled")
        if "REPORT_TOTAL_MISMATCH" in amounts.validation_flags:
            issues.append("Report grand total does not match the sum of country subtotals")
        if issues:
            self.audit.warn("Spreadsheet total needs review", file_name=context.file_name, issues=issues)
        return success_result(
            amounts, context,
            issues=issues,
            user_message=(
                f"Spreadsheet processed as {report_format.value.lower().replace('_', ' ')}: "
                f"total VAT {self.currency_symbol}{amounts.total_tax}"
            ),
            requires_manual_review=bool(issues),
        )


class PatternStrategy(ExtractionStrategy):
    """Tiered pattern extraction over plain text."""

    method = ExtractionMethod.PATTERN

    def __init__(self, extractor: TextExtractor, floor: float, audit: Optional[AuditPort] = None):
        super().__init__(floor, audit)
        self.extractor = extractor

    def extract(self, context: DocumentContext) -> ExtractionResult:
        amounts = self.extractor.extract(context.text, context.category, context.file_name)
        if not amounts.all_amounts:
            return failure_result(self.method, "No VAT patterns found in document text", context, IssueCode.NO_TAX_FOUND)

        issues = ["Pattern matching used - please verify amounts"]
        if IssueCode.DERIVED_FROM_TOTAL_AND_RATE in amounts.validation_flags:
            issues.append("VAT derived from document total and rate")
            self.audit.info("VAT derived from document total and rate", file_name=context.file_name)
        found = len(amounts.all_amounts)
        return success_result(
            amounts, context,
            issues=issues,
            user_message=f"Found {found} VAT amount(s) using pattern matching. Please verify these amounts are correct.",
        )


class TemplateStrategy(ExtractionStrategy):
    """Known document layouts."""

    method = ExtractionMethod.TEMPLATE

    def __init__(self, matcher: TemplateMatcher, floor: float, audit: Optional[AuditPort] = None):
        super().__init__(floor, audit)
        self.matcher = matcher

    def extract(self, context: DocumentContext) -> ExtractionResult:
        template, amounts, issues = self.matcher.extract(context.text, context.category)
        if template is None or amounts is None:
            return failure_result(self.method, "Document does not match any known templates", context)

        self.audit.info("Document matched template", template=template.name, file_name=context.file_name)
        return success_result(
            amounts, context,
            issues=issues,
            user_message=f"Document matched {template.name} template. VAT amounts extracted.",
            requires_manual_review=amounts.confidence < TEMPLATE_REVIEW_BELOW,
        )


class DeepScanStrategy(ExtractionStrategy):
    """
    Last automatic attempt: any monetary figure in a plausible range in a
    document that mentions a tax keyword. Results always need review.
    """

    method = ExtractionMethod.FALLBACK

    def __init__(
        self,
        floor: float,
        min_amount: float = 0.01,
        max_amount: float = 10000.0,
        library: Optional[PatternLibrary] = None,
        default_category: Category = Category.PURCHASES,
        audit: Optional[AuditPort] = None
    ):
        super().__init__(floor, audit)
        self.min_amount = Decimal(str(min_amount))
        self.max_amount = Decimal(str(max_amount))
        self.library = library or PatternLibrary.default()
        self.default_category = default_category

    def candidate_amounts(self, text: str) -> List[Decimal]:
        excluded = set(self.library.find_exclusions(text))
        excluded.update(v for v in (self.library.find_total(text), self.library.find_subtotal(text)) if v is not None)
        candidates: List[Decimal] = []
        for match in DEEP_SCAN_AMOUNT.finditer(text):
            raw = match.group("amount")
            if not match.group("symbol") and "." not in raw:
                continue
            amount = parse_amount(raw)
            if amount is None or amount in excluded or amount in candidates:
                continue
            if self.min_amount < amount < self.max_amount:
                candidates.append(amount)
        return candidates

    def extract(self, context: DocumentContext) -> ExtractionResult:
        lowered = context.text.lower()
        if not any(keyword in lowered for keyword in DEEP_SCAN_KEYWORDS):
            return failure_result(self.method, "Document does not appear to contain VAT information", context)

        candidates = self.candidate_amounts(context.text)
        if not candidates:
            return failure_result(self.method, "Could not identify VAT amounts in document", context, IssueCode.NO_TAX_FOUND)

        target = context.category if context.category != Category.UNKNOWN else self.default_category
        amounts = ExtractedAmounts(
            confidence=DEEP_SCAN_CONFIDENCE,
            method=self.method,
            category=target,
            used_fallback=True,
        )
        for amount in candidates:
            amounts.add_amount(amount, target, ProvenanceEntry(
                amount=amount,
                source_pattern="deep_scan",
                tier=PatternTier.GENERIC,
                local_confidence=DEEP_SCAN_CONFIDENCE,
                method="Fallback: keyword and plausible amount"
            ))
        amounts.validation_flags.add("FALLBACK_PROCESSING_USED")
        self.audit.warn("Deep scan amounts need review", file_name=context.file_name, candidates=len(candidates))

        return success_result(
            amounts, context,
            issues=["VAT amounts identified but method unclear", "Manual verification required"],
            user_message=(
                "Document contains VAT-related information but automatic extraction was uncertain. "
                f"Found {len(candidates)} potential VAT amount(s). Please review and verify."
            ),
            requires_manual_review=True,
        )


def build_strategies(
    config: PipelineConfig,
    vision_service: Optional[BaseVisionService] = None,
    library: Optional[PatternLibrary] = None,
    classifier: Optional[DocumentTypeClassifier] = None,
    audit: Optional[AuditPort] = None
) -> List[ExtractionStrategy]:
    """Strategies in the order the pipeline tries them."""
    library = library or PatternLibrary.default()
    audit = audit or LoggingAuditPort()
    return [
        VisionStrategy(vision_service, config.vision_floor, config.vision_review_below, library, audit),
        SpreadsheetStrategy(
            SpreadsheetAggregator(config.subtotal_dominance_ratio, config.subtotal_keywords),
            config.pattern_floor,
            config.jurisdiction.currency_symbol,
            audit,
        ),
        PatternStrategy(TextExtractor(library, classifier), config.pattern_floor, audit),
        TemplateStrategy(TemplateMatcher(config.jurisdiction), config.template_floor, audit),
        DeepScanStrategy(config.fallback_floor, config.deep_scan_min, config.deep_scan_max, library, audit=audit),
    ]
