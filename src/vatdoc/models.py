"""
Core data model for VAT extraction results.

These types travel through every stage of the pipeline: the extractors create
an ExtractedAmounts, the validator and scorer derive reports from it, and the
orchestrator wraps the winner in an ExtractionResult for the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Set, Tuple, Union


CENT = Decimal("0.01")


class ExtractionMethod(str, Enum):
    """Method that produced a set of amounts."""

    AI_VISION = "AI_VISION"
    ENHANCED = "ENHANCED"
    PATTERN = "PATTERN"
    SPREADSHEET = "SPREADSHEET"
    TEMPLATE = "TEMPLATE"
    OCR_TEXT = "OCR_TEXT"
    FALLBACK = "FALLBACK"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class ConflictResolution(str, Enum):
    CONSENSUS = "CONSENSUS"
    WEIGHTED_AVERAGE = "WEIGHTED_AVERAGE"
    PRIMARY = "PRIMARY"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class IssueSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class DocumentType(str, Enum):
    SALES_INVOICE = "SALES_INVOICE"
    PURCHASE_INVOICE = "PURCHASE_INVOICE"
    SALES_RECEIPT = "SALES_RECEIPT"
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    OTHER = "OTHER"


class Category(str, Enum):
    SALES = "SALES"
    PURCHASES = "PURCHASES"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Union[str, "Category", None]) -> "Category":
        """Parse loose category strings such as 'sales', 'PURCHASE' or 'purchases'."""
        if isinstance(value, Category):
            return value
        if not value:
            return cls.UNKNOWN
        upper = str(value).strip().upper()
        if upper.startswith("SALE"):
            return cls.SALES
        if upper.startswith("PURCHASE"):
            return cls.PURCHASES
        return cls.UNKNOWN


class PatternTier(IntEnum):
    """Priority class of the rule that produced an amount (lower is more trusted)."""

    STRUCTURED = 0
    HIGH_PRIORITY = 1
    STANDARD = 2
    GENERIC = 3
    DERIVED = 4


def to_amount(value: Any) -> Optional[Decimal]:
    """
    Convert a raw value to a 2-place Decimal.

    Args:
        value: int, float, Decimal or numeric string

    Returns:
        Quantised Decimal, or None when the value is not numeric
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, float):
            value = repr(value)
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ProvenanceEntry:
    """Why an amount was kept: the rule, its tier and its local confidence."""

    amount: Decimal
    source_pattern: str
    tier: PatternTier
    local_confidence: float
    method: str = ""
    raw: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": float(self.amount),
            "source_pattern": self.source_pattern,
            "tier": int(self.tier),
            "local_confidence": self.local_confidence,
            "method": self.method,
            "raw": self.raw,
        }


@dataclass
class LineItem:
    description: str = ""
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    vat_rate: Optional[Decimal] = None
    vat_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": _num(self.quantity),
            "unit_price": _num(self.unit_price),
            "vat_rate": _num(self.vat_rate),
            "vat_amount": _num(self.vat_amount),
            "total_amount": _num(self.total_amount),
        }


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class ExtractedAmounts:
    """
    Canonical unit moving through the pipeline.

    Amounts must only be appended through add_amount() so that every value has
    exactly one provenance entry, and confidence must only change through
    adjust_confidence()/scale_confidence() so every change is recorded.
    """

    sales_tax: List[Decimal] = field(default_factory=list)
    purchase_tax: List[Decimal] = field(default_factory=list)
    total_amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    confidence: float = 0.0
    document_type: DocumentType = DocumentType.OTHER
    provenance: List[ProvenanceEntry] = field(default_factory=list)
    validation_flags: Set[str] = field(default_factory=set)

    # Document details consumed by validation and scoring
    method: ExtractionMethod = ExtractionMethod.PATTERN
    category: Category = Category.UNKNOWN
    business_name: Optional[str] = None
    vat_number: Optional[str] = None
    document_date: Optional[str] = None
    invoice_number: Optional[str] = None
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    line_items: List[LineItem] = field(default_factory=list)
    is_tax_exempt: bool = False
    is_credit_note: bool = False
    used_fallback: bool = False
    processing_failed: bool = False
    breakdown: Dict[str, Decimal] = field(default_factory=dict)
    column_details: List[Any] = field(default_factory=list)
    confidence_history: List[Tuple[str, float]] = field(default_factory=list)

    def __post_init__(self):
        self.confidence = _clamp(self.confidence)
        if not self.confidence_history:
            self.confidence_history.append(("initial", self.confidence))

    @property
    def all_amounts(self) -> List[Decimal]:
        return list(self.sales_tax) + list(self.purchase_tax)

    @property
    def total_tax(self) -> Decimal:
        return sum(self.all_amounts, Decimal("0"))

    def add_amount(self, amount: Decimal, category: Category, entry: ProvenanceEntry):
        """
        Append a tax amount together with its provenance entry.

        Args:
            amount: Tax amount, already quantised
            category: SALES or PURCHASES list to append to
            entry: Provenance explaining why the amount was kept
        """
        if category == Category.SALES:
            self.sales_tax.append(amount)
        elif category == Category.PURCHASES:
            self.purchase_tax.append(amount)
        else:
            raise ValueError(f"Cannot file amount {amount} under category {category}")
        self.provenance.append(entry)

    def adjust_confidence(self, delta: float, stage: str) -> float:
        self.confidence = _clamp(self.confidence + delta)
        self.confidence_history.append((stage, self.confidence))
        return self.confidence

    def scale_confidence(self, factor: float, stage: str) -> float:
        self.confidence = _clamp(self.confidence * factor)
        self.confidence_history.append((stage, self.confidence))
        return self.confidence

    def orphan_amounts(self) -> List[Decimal]:
        """Amounts that do not have exactly one provenance entry."""
        counts: Dict[Decimal, int] = {}
        for entry in self.provenance:
            counts[entry.amount] = counts.get(entry.amount, 0) + 1
        expected: Dict[Decimal, int] = {}
        for amount in self.all_amounts:
            expected[amount] = expected.get(amount, 0) + 1
        return [amount for amount, n in expected.items() if counts.get(amount, 0) != n]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sales_tax": [float(a) for a in self.sales_tax],
            "purchase_tax": [float(a) for a in self.purchase_tax],
            "total_amount": _num(self.total_amount),
            "tax_rate": _num(self.tax_rate),
            "confidence": round(self.confidence, 4),
            "document_type": self.document_type.value,
            "method": self.method.value,
            "category": self.category.value,
            "provenance": [p.to_dict() for p in self.provenance],
            "validation_flags": sorted(self.validation_flags),
            "business_name": self.business_name,
            "vat_number": self.vat_number,
            "document_date": self.document_date,
            "currency": self.currency,
            "subtotal": _num(self.subtotal),
            "line_items": [item.to_dict() for item in self.line_items],
            "breakdown": {k: float(v) for k, v in self.breakdown.items()},
            "column_details": [c.to_dict() for c in self.column_details],
        }


@dataclass
class Issue:
    severity: IssueSeverity
    code: str
    message: str
    impact: int = 0
    field: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity in (IssueSeverity.HIGH, IssueSeverity.CRITICAL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "impact": self.impact,
            "field": self.field,
        }


@dataclass
class ExtractionResult:
    """Tagged result returned by every strategy and by the pipeline itself."""

    success: bool
    confidence: float
    method: ExtractionMethod
    sales_tax: List[Decimal] = field(default_factory=list)
    purchase_tax: List[Decimal] = field(default_factory=list)
    extracted_text: str = ""
    issues: List[str] = field(default_factory=list)
    requires_manual_review: bool = False
    user_message: str = ""
    processing_time_ms: int = 0
    amounts: Optional[ExtractedAmounts] = None
    quality: Optional[Any] = None
    validation: Optional[Any] = None
    cross_validation: Optional[Any] = None
    file_name: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def total_tax(self) -> Decimal:
        return sum(list(self.sales_tax) + list(self.purchase_tax), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "confidence": round(self.confidence, 4),
            "method": self.method.value,
            "sales_tax": [float(a) for a in self.sales_tax],
            "purchase_tax": [float(a) for a in self.purchase_tax],
            "issues": list(self.issues),
            "requires_manual_review": self.requires_manual_review,
            "user_message": self.user_message,
            "processing_time_ms": self.processing_time_ms,
            "file_name": self.file_name,
            "timestamp": self.timestamp,
            "amounts": self.amounts.to_dict() if self.amounts else None,
            "quality": self.quality.to_dict() if self.quality else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "cross_validation": self.cross_validation.to_dict() if self.cross_validation else None,
        }


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return round(max(low, min(high, float(value))), 6)
