"""
Known document layouts for template-based VAT extraction.

Each template recognises a layout by keyword evidence and reads VAT amounts
from the places that layout puts them (VAT3 boxes, Revenue payments on a bank
statement, order exports, invoice VAT lines).
"""

import re
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional, Pattern, Sequence, Tuple

from ..config import JurisdictionConfig
from ..models import Category, ExtractedAmounts, ExtractionMethod, PatternTier, ProvenanceEntry
from ..patterns.pattern_library import parse_amount

logger = logging.getLogger(__name__)

MONEY = r"[€£$]?[ \t]*(?P<amount>\d[\d,]*(?:\.\d{1,2})?)"
MONEY_WITH_CENTS = r"[€£$]?[ \t]*(?P<amount>\d[\d,]*\.\d{2})\b"
PLAUSIBLE_MAX = Decimal("10000")


@dataclass
class TemplateHit:
    amount: Decimal
    category: Category
    label: str
    confidence: float


@dataclass
class DocumentTemplate:
    """
    A named document layout.

    Attributes:
        name: Human-readable template name
        template_type: REVENUE_FORM, BANK_STATEMENT, ECOMMERCE or INVOICE
        match_patterns: Any match marks the document as this layout
        extractor: Reads (hits, issues) from text
        base_confidence: Confidence when the layout matches
    """

    name: str
    template_type: str
    match_patterns: Sequence[str]
    extractor: Callable[[str, Category, JurisdictionConfig], Tuple[List[TemplateHit], List[str]]]
    base_confidence: float
    require_all: bool = False
    compiled: List[Pattern] = field(init=False, repr=False)

    def __post_init__(self):
        self.compiled = [re.compile(p, re.IGNORECASE) for p in self.match_patterns]

    def matches(self, text: str) -> bool:
        checks = (p.search(text) for p in self.compiled)
        return all(checks) if self.require_all else any(checks)


def _scan(pattern: str, text: str) -> List[Tuple[Decimal, re.Match]]:
    hits = []
    for m in re.finditer(pattern, text, re.IGNORECASE):
        amount = parse_amount(m.group("amount"))
        if amount is not None and amount > 0:
            hits.append((amount, m))
    return hits


def extract_revenue_form(text: str, category: Category, jurisdiction: JurisdictionConfig):
    hits: List[TemplateHit] = []
    issues: List[str] = []
    boxes = {}
    for box in ("T1", "T2", "T3", "T4"):
        found = _scan(rf"\b(?:box[ \t]*)?{box}\b[^\n\d]*?{MONEY}", text)
        if found:
            boxes[box] = found[0][0]

    if "T1" in boxes:
        hits.append(TemplateHit(boxes["T1"], Category.SALES, "VAT3 box T1 (VAT on sales)", 0.9))
    if "T2" in boxes:
        hits.append(TemplateHit(boxes["T2"], Category.PURCHASES, "VAT3 box T2 (VAT on purchases)", 0.9))

    if not boxes:
        for amount, _ in _scan(rf"\bvat[ \t]+due\b[^\n\d]*?{MONEY}", text):
            hits.append(TemplateHit(amount, Category.SALES, "VAT due", 0.9))
        for amount, _ in _scan(rf"\bvat[ \t]+reclaim(?:ed|able)?\b[^\n\d]*?{MONEY}", text):
            hits.append(TemplateHit(amount, Category.PURCHASES, "VAT reclaim", 0.9))

    if "T1" in boxes and "T2" in boxes:
        net = boxes["T1"] - boxes["T2"]
        stated = boxes.get("T3") if net >= 0 else boxes.get("T4")
        if stated is not None and stated != abs(net):
            issues.append(f"VAT3 net box {stated} does not equal T1 - T2 ({abs(net)})")

    prefix = jurisdiction.vat_number_prefix
    if not re.search(rf"\b{prefix}[ \t]?[0-9]{{7}}[A-Z]{{1,2}}\b", text, re.IGNORECASE):
        issues.append(f"No {prefix} VAT number found on Revenue form")
    return hits, issues


def extract_bank_statement(text: str, category: Category, jurisdiction: JurisdictionConfig):
    hits: List[TemplateHit] = []
    patterns = [
        rf"\b(?:revenue|collector[ \t\-]+general)\b[^\n]*?\bvat\b[^\n\d]*?{MONEY}",
        rf"\bvat\b[^\n]*?\bpayment\b[^\n\d]*?{MONEY}",
    ]
    seen = set()
    for pattern in patterns:
        for amount, _ in _scan(pattern, text):
            if amount not in seen:
                seen.add(amount)
                hits.append(TemplateHit(amount, Category.PURCHASES, "VAT payment to Revenue", 0.7))
    issues = [] if re.search(r"statement", text, re.IGNORECASE) else ["Document not clearly identified as statement"]
    return hits, issues


def extract_ecommerce(text: str, category: Category, jurisdiction: JurisdictionConfig):
    target = category if category != Category.UNKNOWN else Category.SALES
    hits: List[TemplateHit] = []
    seen = set()
    for amount, _ in _scan(rf"\b(?:total_tax|tax|vat)\b[^\n\d]*?{MONEY}", text):
        if amount not in seen:
            seen.add(amount)
            hits.append(TemplateHit(amount, target, "e-commerce tax column", 0.8))
    return hits, []


def extract_invoice(text: str, category: Category, jurisdiction: JurisdictionConfig):
    target = category if category != Category.UNKNOWN else Category.SALES
    hits: List[TemplateHit] = []
    issues: List[str] = []
    seen = set()
    pattern = (
        r"\bvat\b(?:[ \t]*@?[ \t]*\(?[ \t]*(?P<rate>\d{1,2}(?:\.\d{1,2})?)[ \t]*%[ \t]*\)?)?"
        rf"[^\n\d]*?{MONEY_WITH_CENTS}"
    )
    for amount, m in _scan(pattern, text):
        if amount >= PLAUSIBLE_MAX or amount in seen:
            continue
        seen.add(amount)
        rate = m.group("rate")
        qualified = rate is not None and jurisdiction.is_valid_rate(Decimal(rate))
        hits.append(TemplateHit(amount, target, "invoice VAT line" + (f" @ {rate}%" if rate else ""), 0.8 if qualified else 0.6))
    if "invoice" not in text.lower():
        issues.append("Document not clearly identified as invoice")
    return hits, issues


DEFAULT_TEMPLATES = [
    DocumentTemplate(
        name="Revenue VAT Return",
        template_type="REVENUE_FORM",
        match_patterns=[r"revenue\.ie", r"\bvat[ \t]*3\b(?![ \t]*%)", r"\bform[ \t]*11\b"],
        extractor=extract_revenue_form,
        base_confidence=0.9,
    ),
    DocumentTemplate(
        name="Bank Statement",
        template_type="BANK_STATEMENT",
        match_patterns=[
            r"\b(?:bank|account)[ \t]+statement\b",
            r"\b(?:aib|bank[ \t]+of[ \t]+ireland|permanent[ \t]+tsb|ulster[ \t]+bank)\b",
            r"\biban[ \t]*:?[ \t]*ie\d{2}",
        ],
        extractor=extract_bank_statement,
        base_confidence=0.5,
    ),
    DocumentTemplate(
        name="E-commerce Export",
        template_type="ECOMMERCE",
        match_patterns=[r"\bshopify\b", r"\bwoocommerce\b", r"\border[ \t]*#[ \t]*\d+"],
        extractor=extract_ecommerce,
        base_confidence=0.8,
    ),
    DocumentTemplate(
        name="Standard Invoice",
        template_type="INVOICE",
        match_patterns=[r"\binvoice\b", r"\bvat\b"],
        extractor=extract_invoice,
        base_confidence=0.6,
        require_all=True,
    ),
]


class TemplateMatcher:
    """Tries the known layouts in order and extracts with the first that yields amounts."""

    def __init__(
        self,
        jurisdiction: Optional[JurisdictionConfig] = None,
        templates: Optional[List[DocumentTemplate]] = None
    ):
        self.jurisdiction = jurisdiction or JurisdictionConfig()
        self.templates = list(templates if templates is not None else DEFAULT_TEMPLATES)

    def match(self, text: str) -> Optional[DocumentTemplate]:
        for template in self.templates:
            if template.matches(text or ""):
                return template
        return None

    def extract(self, text: str, category: Category = Category.UNKNOWN) -> Tuple[Optional[DocumentTemplate], Optional[ExtractedAmounts], List[str]]:
        """
        Extract VAT with the first matching template that finds amounts.

        Args:
            text: Document text
            category: Caller's category hint

        Returns:
            Tuple of (template, amounts, issues); template and amounts are None
            when no layout matched or no amounts were found
        """
        for template in self.templates:
            if not template.matches(text or ""):
                continue

            hits, issues = template.extractor(text, category, self.jurisdiction)
            if not hits:
                logger.debug(f"Template {template.name} matched but found no VAT amounts")
                continue

            confidence = max(template.base_confidence, max(h.confidence for h in hits))
            amounts = ExtractedAmounts(
                confidence=confidence,
                method=ExtractionMethod.TEMPLATE,
                category=category,
            )
            amounts.validation_flags.add(f"TEMPLATE_{template.template_type}")
            seen = set()
            for hit in hits:
                key = (hit.category, hit.amount)
                if key in seen:
                    continue
                seen.add(key)
                amounts.add_amount(hit.amount, hit.category, ProvenanceEntry(
                    amount=hit.amount,
                    source_pattern=f"template:{template.name}:{hit.label}",
                    tier=PatternTier.STRUCTURED if template.template_type == "REVENUE_FORM" else PatternTier.GENERIC,
                    local_confidence=hit.confidence,
                    method=f"Template: {template.name}"
                ))
            logger.info(f"Template {template.name} extracted {len(amounts.all_amounts)} amount(s) at {confidence:.2f}")
            return template, amounts, issues

        return None, None, []
