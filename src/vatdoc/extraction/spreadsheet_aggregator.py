"""
VAT aggregation over spreadsheet exports (header row + cell grid).

Three layouts are recognised from the header row:

1. Country summary: a "net total tax" column and a country column. Exports of
   this kind interleave per-country subtotal rows with the transaction rows
   they summarise, so only one row per country may be counted.
2. Order detail: shipping/item tax columns and an order identifier. Every row
   is a distinct order, so all rows are summed.
3. Generic: any tax-like column, ranked by a fixed priority list.
"""

import re
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..models import (
    CENT, Category, DocumentType, ExtractedAmounts, ExtractionMethod, PatternTier, ProvenanceEntry
)

logger = logging.getLogger(__name__)

NET_TAX_COLUMNS = ["Net Total Tax", "net_total_tax", "Tax Total", "Total Tax", "tax_total"]
COUNTRY_COLUMNS = ["Country", "billing_country", "shipping_country", "country_code", "Region"]
SHIPPING_TAX_COLUMNS = ["Shipping Tax Amt.", "shipping_tax_amt", "Shipping Tax", "shipping_tax_amount"]
ITEM_TAX_COLUMNS = ["Item Tax Amt.", "item_tax_amt", "Item Tax", "item_tax_amount", "Product Tax"]
ORDER_TAX_COLUMNS = ["Order Tax", "order_tax", "order_tax_amount", "Order Tax Amount"]
ORDER_ID_COLUMNS = ["Order", "Order ID", "order_id", "Order Number", "order_number", "Order #"]

# (header fragments, column type, priority); lower priority number wins
TAX_COLUMN_PRIORITIES = [
    (["net total tax", "net_total_tax"], "net_total_tax", 1),
    (["shipping tax", "shipping_tax"], "shipping_tax", 2),
    (["item tax", "item_tax"], "item_tax", 2),
    (["order tax", "order_tax"], "order_tax", 2),
    (["tax total", "total tax", "tax_total", "total_tax"], "tax_total", 3),
    (["tax amount", "tax_amount"], "tax_amount", 3),
    (["vat"], "vat", 4),
    (["tax"], "generic_tax", 5),
]

CONFIDENCE = {
    "country_summary": 0.85,
    "order_detail": 0.80,
    "generic": 0.75,
}
EMPTY_CONFIDENCE = 0.3

# Headers holding a rate rather than an amount
RATE_HEADER = re.compile(r"(?<![a-z])rate(?![a-z])|%|percent")


class SpreadsheetFormat(str, Enum):
    COUNTRY_SUMMARY = "country_summary"
    ORDER_DETAIL = "order_detail"
    GENERIC = "generic"


@dataclass
class Grid:
    """Header row plus a 2-D array of raw cell values."""

    headers: List[str]
    rows: List[List[Any]] = field(default_factory=list)

    def column(self, index: int) -> List[Any]:
        return [row[index] if index < len(row) else None for row in self.rows]


@dataclass
class TaxColumn:
    index: int
    name: str
    type: str
    priority: int


@dataclass
class ColumnDetail:
    name: str
    type: str
    total: Decimal
    rows: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "total": float(self.total), "rows": self.rows}


def parse_cell(value: Any) -> Optional[Decimal]:
    """
    Parse a spreadsheet cell as a money amount.

    Args:
        value: Raw cell (number, numeric string with currency symbols, blank)

    Returns:
        Decimal quantised to cents, or None for blank/non-numeric cells
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        if isinstance(value, float) and value != value:  # NaN from pandas
            return None
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

    text = str(value).strip()
    if not text:
        return None
    negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
    cleaned = re.sub(r"[€£$\s,()]|EUR|GBP|USD", "", text, flags=re.IGNORECASE).lstrip("-")
    if not re.fullmatch(r"\d+(?:\.\d+)?", cleaned):
        return None
    try:
        amount = Decimal(cleaned).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return -amount if negative else amount


def find_column_index(headers: Sequence[str], possible_names: Sequence[str], exclude: Sequence[str] = ()) -> int:
    """
    Find a column by synonym list: exact (case-insensitive) match first, then substring.

    Args:
        headers: Header row
        possible_names: Synonyms, in preference order
        exclude: Fragments that disqualify a header from substring matching

    Returns:
        Column index, or -1 when no header matches
    """
    normalized = [str(h).lower().strip() for h in headers]
    names = [n.lower() for n in possible_names]

    for name in names:
        if name in normalized:
            return normalized.index(name)

    for i, header in enumerate(normalized):
        if any(fragment in header for fragment in exclude):
            continue
        if any(name in header for name in names):
            return i
    return -1


def find_all_tax_columns(headers: Sequence[str]) -> List[TaxColumn]:
    """Every tax-like column, ordered by priority then position."""
    columns = []
    for i, raw in enumerate(headers):
        header = str(raw).lower().strip()
        if RATE_HEADER.search(header):
            continue
        for fragments, column_type, priority in TAX_COLUMN_PRIORITIES:
            if any(header == f or f in header for f in fragments):
                columns.append(TaxColumn(index=i, name=str(raw), type=column_type, priority=priority))
                break
    return sorted(columns, key=lambda c: (c.priority, c.index))


def detect_format(headers: Sequence[str]) -> SpreadsheetFormat:
    """Classify an export layout from its header row."""
    lowered = [str(h).lower().strip() for h in headers]
    has_net_total_tax = any("net total tax" in h or "net_total_tax" in h for h in lowered)
    has_country = find_column_index(headers, COUNTRY_COLUMNS) >= 0

    if has_net_total_tax and has_country:
        return SpreadsheetFormat.COUNTRY_SUMMARY

    has_shipping_or_item = (
        find_column_index(headers, SHIPPING_TAX_COLUMNS) >= 0
        or find_column_index(headers, ITEM_TAX_COLUMNS) >= 0
    )
    has_order_id = find_column_index(headers, ORDER_ID_COLUMNS, exclude=("tax",)) >= 0
    if has_shipping_or_item and has_order_id:
        return SpreadsheetFormat.ORDER_DETAIL

    return SpreadsheetFormat.GENERIC


class SpreadsheetAggregator:
    """
    Aggregates VAT from spreadsheet grids.

    Args:
        dominance_ratio: A country's largest row counts as its subtotal when it
            exceeds this multiple of the country's remaining rows
        subtotal_keywords: Row text marking an explicit subtotal row
    """

    def __init__(
        self,
        dominance_ratio: float = 1.5,
        subtotal_keywords: Optional[Sequence[str]] = None
    ):
        self.dominance_ratio = Decimal(str(dominance_ratio))
        self.subtotal_keywords = [k.lower() for k in (subtotal_keywords or ["subtotal", "total", "summary"])]

    def aggregate(
        self,
        grid: Grid,
        category: Union[Category, str] = Category.SALES,
        file_name: str = ""
    ) -> ExtractedAmounts:
        """
        Detect the layout and aggregate the grid's VAT.

        Args:
            grid: Header row and data rows
            category: Category the total is filed under
            file_name: Source file name, for logging only

        Returns:
            ExtractedAmounts holding a single aggregated amount (when positive)
        """
        category = Category.parse(category)
        if category == Category.UNKNOWN:
            category = Category.SALES

        report_format = detect_format(grid.headers)
        logger.info(f"Spreadsheet {file_name or '<grid>'} detected as {report_format.value} ({len(grid.rows)} rows)")

        if report_format == SpreadsheetFormat.COUNTRY_SUMMARY:
            total, breakdown, details, flags = self._aggregate_country_summary(grid)
            source = "country_subtotal_only"
        elif report_format == SpreadsheetFormat.ORDER_DETAIL:
            total, breakdown, details, flags = self._aggregate_order_detail(grid)
            source = "order_detail_sum"
        else:
            total, breakdown, details, flags = self._aggregate_generic(grid)
            source = "generic_column_sum"

        confidence = CONFIDENCE[report_format.value] if total > 0 else EMPTY_CONFIDENCE
        result = ExtractedAmounts(
            confidence=confidence,
            method=ExtractionMethod.SPREADSHEET,
            category=category,
            document_type=DocumentType.OTHER,
            breakdown=breakdown,
            column_details=details,
        )
        result.validation_flags.add(f"SPREADSHEET_{report_format.name}")
        result.validation_flags.update(flags)

        if total > 0:
            result.add_amount(total, category, ProvenanceEntry(
                amount=total,
                source_pattern=source,
                tier=PatternTier.STRUCTURED,
                local_confidence=confidence,
                method=f"Structured: {source}"
            ))
        else:
            result.validation_flags.add("NO_TAX_FOUND")

        logger.info(f"Spreadsheet VAT total {total} via {source}")
        return result

    def _aggregate_country_summary(self, grid: Grid) -> Tuple[Decimal, Dict[str, Decimal], List[ColumnDetail], List[str]]:
        tax_idx = find_column_index(grid.headers, NET_TAX_COLUMNS)
        country_idx = find_column_index(grid.headers, COUNTRY_COLUMNS)

        groups: "OrderedDict[str, List[Tuple[Decimal, str]]]" = OrderedDict()
        report_totals: List[Decimal] = []
        for row in grid.rows:
            value = parse_cell(row[tax_idx]) if tax_idx < len(row) else None
            if value is None or value <= 0:
                continue
            country = str(row[country_idx]).strip() if country_idx < len(row) and row[country_idx] is not None else ""
            row_text = " ".join(str(c) for c in row if c is not None).lower()
            if not country and self._is_subtotal_row(row_text):
                # Report-level total: only used to cross-check the country sum
                report_totals.append(value)
                continue
            groups.setdefault(country or "UNKNOWN", []).append((value, row_text))

        breakdown: Dict[str, Decimal] = OrderedDict()
        flags = []
        for country, entries in groups.items():
            subtotal, ambiguous = self._select_subtotal(entries)
            breakdown[country] = subtotal
            if ambiguous:
                flags.append("AMBIGUOUS_COUNTRY_SUBTOTAL")
                logger.warning(f"No clear subtotal row for {country}; using largest value {subtotal}")

        total = sum(breakdown.values(), Decimal("0"))
        if report_totals and abs(max(report_totals) - total) > CENT:
            flags.append("REPORT_TOTAL_MISMATCH")
            logger.warning(f"Report total {max(report_totals)} differs from country subtotals {total}")

        rows_used = sum(len(e) for e in groups.values())
        details = [ColumnDetail(grid.headers[tax_idx], "net_total_tax", total, rows_used)]
        return total, dict(breakdown), details, flags

    def _is_subtotal_row(self, row_text: str) -> bool:
        return any(re.search(rf"\b\w*{re.escape(k)}\b", row_text) for k in self.subtotal_keywords)

    def _select_subtotal(self, entries: List[Tuple[Decimal, str]]) -> Tuple[Decimal, bool]:
        """Pick one subtotal value for a country; returns (value, ambiguous)."""
        if len(entries) == 1:
            return entries[0][0], False

        keyword_rows = [value for value, text in entries if self._is_subtotal_row(text)]
        if keyword_rows:
            return max(keyword_rows), False

        values = sorted((value for value, _ in entries), reverse=True)
        largest, rest = values[0], sum(values[1:], Decimal("0"))
        if largest > self.dominance_ratio * rest:
            return largest, False
        return largest, True

    def _aggregate_order_detail(self, grid: Grid) -> Tuple[Decimal, Dict[str, Decimal], List[ColumnDetail], List[str]]:
        used = set()
        columns = []
        for names, column_type in (
            (SHIPPING_TAX_COLUMNS, "shipping_tax"),
            (ITEM_TAX_COLUMNS, "item_tax"),
            (ORDER_TAX_COLUMNS, "order_tax"),
        ):
            idx = find_column_index(grid.headers, names)
            if idx >= 0 and idx not in used:
                used.add(idx)
                columns.append((idx, column_type))

        breakdown: Dict[str, Decimal] = {}
        details = []
        for idx, column_type in columns:
            column_total = Decimal("0")
            rows = 0
            for cell in grid.column(idx):
                value = parse_cell(cell)
                if value is not None and value >= 0:
                    column_total += value
                    rows += 1
            breakdown[grid.headers[idx]] = column_total
            details.append(ColumnDetail(grid.headers[idx], column_type, column_total, rows))

        total = sum(breakdown.values(), Decimal("0"))
        return total, breakdown, details, []

    def _aggregate_generic(self, grid: Grid) -> Tuple[Decimal, Dict[str, Decimal], List[ColumnDetail], List[str]]:
        tax_columns = find_all_tax_columns(grid.headers)
        if not tax_columns:
            logger.warning("No tax columns found in spreadsheet")
            return Decimal("0"), {}, [], ["NO_TAX_COLUMNS"]

        breakdown: Dict[str, Decimal] = {}
        details = []
        for column in tax_columns:
            column_total = Decimal("0")
            rows = 0
            for cell in grid.column(column.index):
                value = parse_cell(cell)
                if value is not None and value > 0:
                    column_total += value
                    rows += 1
            if column_total > 0:
                breakdown[column.name] = column_total
                details.append(ColumnDetail(column.name, column.type, column_total, rows))

        # Total only the best-ranked column class
        best = min((c.priority for c in tax_columns if c.name in breakdown), default=None)
        total = sum(
            (breakdown[c.name] for c in tax_columns if c.priority == best and c.name in breakdown),
            Decimal("0")
        )
        flags = ["MULTIPLE_TAX_COLUMNS"] if len(breakdown) > 1 else []
        return total, breakdown, details, flags
