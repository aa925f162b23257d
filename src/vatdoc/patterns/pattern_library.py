"""
Tiered pattern library for locating VAT amounts in plain text.

Rules are grouped into three priority tiers. Tier 1 holds explicit labelled
totals ("Total Amount VAT"), tier 2 rate-qualified lines and rate-category
codes, tier 3 generic "VAT:"/"Tax:" mentions, currency-first amounts and
localised labels. A separate exclusion set recognises recurring payment
figures (lease, rental, instalments) that must never be read as tax.
"""

import re
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Pattern

from ..models import CENT, PatternTier

logger = logging.getLogger(__name__)

CURRENCY = r"(?:[€£$]|EUR|GBP|USD)?"
AMOUNT = r"(?P<amount>-?\d(?:[\d,.]*\d)?)"
CURRENCY_TAG = r"(?:[ \t]*\((?:EUR|GBP|USD|€|£|\$)\))?"
OPTIONAL_SEP = r"[ \t]*[:\-=]?[ \t]*"
REQUIRED_SEP = r"[ \t]*[:=][ \t]*"

# 1,234.56 / 1234.56 / 1,234 and 1.234,56 / 19,00
DOT_DECIMAL = re.compile(r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?")
COMMA_DECIMAL = re.compile(r"(?:\d{1,3}(?:\.\d{3})+|\d+),\d{2}")

TIER_CONFIDENCE = {
    PatternTier.HIGH_PRIORITY: 0.6,
    PatternTier.STANDARD: 0.4,
    PatternTier.GENERIC: 0.3,
    PatternTier.DERIVED: 0.2,
}

TIER_LABELS = {
    PatternTier.STRUCTURED: "Structured",
    PatternTier.HIGH_PRIORITY: "Priority 1",
    PatternTier.STANDARD: "Priority 2",
    PatternTier.GENERIC: "Priority 3",
    PatternTier.DERIVED: "Derived",
}


def labelled(label: str, separator: str = OPTIONAL_SEP) -> str:
    """Build '<label> [(EUR)] <sep> [currency] <amount>' with the label kept on one line."""
    return label + CURRENCY_TAG + separator + CURRENCY + r"[ \t]*" + AMOUNT


def parse_amount(raw: str, allow_negative: bool = False) -> Optional[Decimal]:
    """
    Parse a captured amount string.

    Both '1,234.56' and the continental '1.234,56' are accepted. A lone comma
    is a decimal separator only when exactly two digits follow it ('19,00');
    other ambiguous groupings are rejected.

    Args:
        raw: Captured text such as '1,230.00', '19,00' or '92'
        allow_negative: Keep a leading minus sign instead of rejecting the value

    Returns:
        Decimal quantised to cents, or None when malformed
    """
    if raw is None:
        return None
    value = raw.strip().rstrip(",")
    negative = value.startswith("-")
    if negative:
        if not allow_negative:
            return None
        value = value[1:]

    if DOT_DECIMAL.fullmatch(value):
        value = value.replace(",", "")
    elif COMMA_DECIMAL.fullmatch(value):
        value = value.replace(".", "").replace(",", ".")
    else:
        return None

    try:
        amount = Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return -amount if negative else amount


def decimal_places(raw: str) -> int:
    """Decimal places written in a captured amount: '23.456' -> 3, '1.234,56' -> 2, '1,234' -> 0."""
    match = re.search(r"[.,](\d+)$", (raw or "").strip())
    if not match:
        return 0
    if match.group(0).startswith(",") and len(match.group(1)) != 2:
        return 0
    return len(match.group(1))


@dataclass
class PatternRule:
    """A named regex rule; its regex must capture a named 'amount' group."""

    name: str
    tier: PatternTier
    regex: str
    confidence: Optional[float] = None
    enabled: bool = True
    case_sensitive: bool = False
    description: str = ""
    compiled: Pattern = field(init=False, repr=False)

    def __post_init__(self):
        flags = 0 if self.case_sensitive else re.IGNORECASE
        self.compiled = re.compile(self.regex, flags)
        if "amount" not in self.compiled.groupindex:
            raise ValueError(f"Pattern rule {self.name} has no 'amount' group")
        if self.confidence is None:
            self.confidence = TIER_CONFIDENCE.get(self.tier, 0.3)

    @property
    def method(self) -> str:
        return f"{TIER_LABELS.get(self.tier, 'Rule')}: {self.name}"


@dataclass
class PatternMatch:
    rule: PatternRule
    raw: str
    amount: Optional[Decimal]
    start: int
    end: int
    rate: Optional[Decimal] = None


class PatternLibrary:
    """
    Ordered, tiered collection of VAT amount rules plus exclusion and total rules.

    Use PatternLibrary.default() for the reference (Irish) rule set; rules can
    be added or disabled per jurisdiction.
    """

    def __init__(
        self,
        rules: Optional[List[PatternRule]] = None,
        exclusions: Optional[List[PatternRule]] = None,
        totals: Optional[List[PatternRule]] = None,
        subtotals: Optional[List[PatternRule]] = None
    ):
        self.rules: List[PatternRule] = list(rules or [])
        self.exclusions: List[PatternRule] = list(exclusions or [])
        self.totals: List[PatternRule] = list(totals or [])
        self.subtotals: List[PatternRule] = list(subtotals or [])
        self.rate_patterns = [
            re.compile(r"\bvat[ \t]*@?[ \t]*\(?[ \t]*(?P<rate>\d{1,2}(?:\.\d{1,2})?)[ \t]*%", re.IGNORECASE),
            re.compile(r"(?P<rate>\d{1,2}(?:\.\d{1,2})?)[ \t]*%[ \t]*vat\b", re.IGNORECASE),
        ]

    @classmethod
    def default(cls) -> "PatternLibrary":
        high = PatternTier.HIGH_PRIORITY
        standard = PatternTier.STANDARD
        generic = PatternTier.GENERIC

        rules = [
            # Tier 1: explicit labelled totals
            PatternRule("Total Amount VAT", high, labelled(r"\btotal[ \t]+amount[ \t]+(?:of[ \t]+)?vat")),
            PatternRule("VAT Total", high, labelled(r"\bvat[ \t]+total")),
            PatternRule("Total VAT", high, labelled(r"\btotal[ \t]+vat(?:[ \t]+amount)?(?:[ \t]+(?:due|payable))?")),
            PatternRule("Total Tax", high, labelled(r"\btotal[ \t]+tax(?:[ \t]+amount)?(?:[ \t]+(?:due|payable))?")),
            PatternRule(
                "VAT Breakdown Total",
                high,
                labelled(r"\b(?:vat|tax)[ \t]+(?:summary|breakdown|analysis)[ \t]+total")
            ),

            # Tier 2: rate-qualified lines and rate-category codes
            PatternRule(
                "VAT At Rate",
                standard,
                labelled(r"\bvat[ \t]*@?[ \t]*\(?[ \t]*(?P<rate>\d{1,2}(?:\.\d{1,2})?)[ \t]*%[ \t]*\)?")
            ),
            PatternRule(
                "Rate Category Code",
                standard,
                labelled(r"\b(?P<code>STD[ \t]?23|RED[ \t]?13\.5|TOU[ \t]?9|MIN|NIL)\b"),
                case_sensitive=True
            ),

            # Tier 3: generic mentions
            PatternRule("VAT Amount", generic, labelled(r"\bvat[ \t]+amount")),
            PatternRule("VAT Label", generic, labelled(r"\bvat", REQUIRED_SEP)),
            PatternRule("Tax Label", generic, labelled(r"\btax", REQUIRED_SEP)),
            PatternRule(
                "Currency First",
                generic,
                r"[€£$][ \t]*" + AMOUNT + r"[ \t]+(?:vat|tax)\b"
            ),
            PatternRule("Cáin Bhreisluacha", generic, labelled(r"\bc[áa]in[ \t]+bhreisluacha")),
            PatternRule("Continental VAT Label", generic, labelled(r"\b(?:mwst|ust|tva|iva)\b", REQUIRED_SEP)),
        ]

        exclusions = [
            PatternRule(name, generic, labelled(label))
            for name, label in [
                ("Monthly Payment", r"\bmonthly[ \t]+payment"),
                ("Lease Payment", r"\blease[ \t]+payment"),
                ("Finance Payment", r"\b(?:finance|hire[ \t]+purchase)[ \t]+payment"),
                ("Rental", r"\brental(?:[ \t]+(?:payment|charge|fee))?"),
                ("Rent", r"\brent\b"),
                ("Instalment", r"\binstall?ments?"),
                ("Payment Due", r"\bpayment[ \t]+due"),
                ("Amount Due", r"\bamount[ \t]+due"),
            ]
        ]

        totals = [
            PatternRule(
                "Total",
                generic,
                labelled(
                    r"(?<!sub )(?<!sub-)\b(?:grand[ \t]+)?total(?:[ \t]+amount)?"
                    r"(?:[ \t]+(?:due|payable|inc(?:l\.?|luding)?[ \t]+vat))?"
                )
            ),
            PatternRule("Amount Due", generic, labelled(r"\bamount[ \t]+due")),
            PatternRule("Balance Due", generic, labelled(r"\bbalance[ \t]+due")),
        ]

        subtotals = [
            PatternRule("Subtotal", generic, labelled(r"\bsub[ \t\-]?total")),
            PatternRule("Net Amount", generic, labelled(r"\bnet[ \t]+(?:amount|total)")),
            PatternRule("Net", generic, labelled(r"\bnet\b")),
        ]

        return cls(rules, exclusions, totals, subtotals)

    def rules_for_tier(self, tier: PatternTier) -> List[PatternRule]:
        return [r for r in self.rules if r.tier == tier and r.enabled]

    @property
    def tiers(self) -> List[PatternTier]:
        return sorted({r.tier for r in self.rules if r.enabled})

    def add_rule(self, rule: PatternRule):
        """Register an extra rule, e.g. a jurisdiction-specific label."""
        if any(r.name == rule.name for r in self.rules):
            raise ValueError(f"Duplicate pattern rule name: {rule.name}")
        self.rules.append(rule)
        logger.debug(f"Added pattern rule {rule.name} to tier {int(rule.tier)}")

    def disable_rule(self, name: str):
        for rule in self.rules:
            if rule.name == name:
                rule.enabled = False
                return
        raise KeyError(f"Unknown pattern rule: {name}")

    def _scan(self, rules: List[PatternRule], text: str, allow_negative: bool = False) -> List[PatternMatch]:
        matches = []
        for rule in rules:
            if not rule.enabled:
                continue
            for m in rule.compiled.finditer(text):
                groups = m.groupdict()
                rate = parse_amount(groups["rate"]) if groups.get("rate") else None
                matches.append(PatternMatch(
                    rule=rule,
                    raw=m.group("amount"),
                    amount=parse_amount(m.group("amount"), allow_negative=allow_negative),
                    start=m.start("amount"),
                    end=m.end("amount"),
                    rate=rate
                ))
        return matches

    def find_amounts(self, text: str, tier: PatternTier) -> List[PatternMatch]:
        """Matches for one tier, in rule order then text order."""
        return self._scan(self.rules_for_tier(tier), text)

    def find_exclusions(self, text: str) -> Dict[Decimal, str]:
        """Amounts attached to payment/lease/rental labels, keyed by value."""
        excluded = {}
        for match in self._scan(self.exclusions, text):
            if match.amount is not None:
                excluded.setdefault(match.amount, match.rule.name)
        return excluded

    def find_total(self, text: str) -> Optional[Decimal]:
        """Largest labelled document total, if any."""
        values = [m.amount for m in self._scan(self.totals, text) if m.amount is not None and m.amount > 0]
        return max(values) if values else None

    def find_subtotal(self, text: str) -> Optional[Decimal]:
        values = [m.amount for m in self._scan(self.subtotals, text) if m.amount is not None and m.amount > 0]
        return values[0] if values else None

    def find_rate(self, text: str) -> Optional[Decimal]:
        for pattern in self.rate_patterns:
            m = pattern.search(text)
            if m:
                return Decimal(m.group("rate"))
        return None

    def test_rule(self, name: str, sample: str) -> List[Decimal]:
        """Run a single rule against sample text and return the parsed amounts."""
        for rule in self.rules + self.exclusions + self.totals + self.subtotals:
            if rule.name == name:
                return [m.amount for m in self._scan([rule], sample) if m.amount is not None]
        raise KeyError(f"Unknown pattern rule: {name}")
