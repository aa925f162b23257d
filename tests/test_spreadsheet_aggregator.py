"""
Tests for spreadsheet VAT aggregation and grid reading.
"""

import pytest
import sys
from decimal import Decimal
from pathlib import Path

import pandas as pd

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc.errors import TextExtractionError
from vatdoc.extraction.grid_reader import dataframe_to_grid, is_spreadsheet, read_grid
from vatdoc.extraction.spreadsheet_aggregator import (
    Grid, SpreadsheetAggregator, SpreadsheetFormat, detect_format, find_all_tax_columns, parse_cell
)
from vatdoc.models import Category, ExtractionMethod, PatternTier


@pytest.fixture
def country_grid():
    """Country export with interleaved subtotal rows."""
    return Grid(
        headers=["Country", "Order", "Net Total Tax"],
        rows=[
            ["Ireland", "1001", "3.50"],
            ["Ireland", "1002", "4.05"],
            ["Ireland", "Subtotal", "7.55"],
            ["UK", "1003", "40.76"],
            ["Germany", "2001", "5000.00"],
            ["Germany", "2002", "333.62"],
            ["Germany", "Summary", "5333.62"],
            ["France", "2003", "58.37"],
            ["Spain", "2004", "14.26"],
            ["Italy", "Total", "20.68"],
            ["Italy", "3001", "20.68"],
        ]
    )


@pytest.fixture
def order_grid():
    return Grid(
        headers=["Order #", "Shipping Tax Amt.", "Item Tax Amt.", "Order Tax"],
        rows=[
            [1, 1.15, 4.60, 0],
            [2, 2.30, 9.20, 0.50],
            [3, None, 2.30, ""],
        ]
    )


class TestParseCell:
    """Test cases for parse_cell."""

    def test_numbers(self):
        assert parse_cell(23) == Decimal("23.00")
        assert parse_cell(1.15) == Decimal("1.15")

    def test_currency_strings(self):
        assert parse_cell("€1,234.50") == Decimal("1234.50")
        assert parse_cell("(12.50)") == Decimal("-12.50")

    def test_blank_and_non_numeric(self):
        assert parse_cell(None) is None
        assert parse_cell("") is None
        assert parse_cell("n/a") is None
        assert parse_cell(float("nan")) is None
        assert parse_cell(True) is None


class TestFormatDetection:
    """Test cases for layout detection."""

    def test_country_summary(self, country_grid):
        assert detect_format(country_grid.headers) == SpreadsheetFormat.COUNTRY_SUMMARY

    def test_order_detail(self, order_grid):
        assert detect_format(order_grid.headers) == SpreadsheetFormat.ORDER_DETAIL

    def test_generic(self):
        assert detect_format(["Date", "VAT"]) == SpreadsheetFormat.GENERIC

    def test_tax_column_priority(self):
        columns = find_all_tax_columns(["VAT", "Description", "Tax Amount"])
        assert [c.name for c in columns] == ["Tax Amount", "VAT"]

    def test_rate_columns_are_not_tax_columns(self):
        columns = find_all_tax_columns(["VAT Rate", "VAT %", "Tax Percent", "VAT Amount", "Corporate Tax"])
        assert [c.name for c in columns] == ["VAT Amount", "Corporate Tax"]


class TestSpreadsheetAggregator:
    """Test cases for SpreadsheetAggregator."""

    @pytest.fixture
    def aggregator(self):
        return SpreadsheetAggregator()

    def test_country_summary_counts_one_row_per_country(self, aggregator, country_grid):
        result = aggregator.aggregate(country_grid, Category.SALES, "amazon_vat.csv")

        assert result.sales_tax == [Decimal("5475.24")]
        assert result.method == ExtractionMethod.SPREADSHEET
        assert result.confidence == 0.85
        assert result.breakdown["Ireland"] == Decimal("7.55")
        assert result.breakdown["Germany"] == Decimal("5333.62")
        assert result.breakdown["Italy"] == Decimal("20.68")
        assert "SPREADSHEET_COUNTRY_SUMMARY" in result.validation_flags
        assert "AMBIGUOUS_COUNTRY_SUBTOTAL" not in result.validation_flags

    def test_grand_total_row_is_not_a_country(self, aggregator, country_grid):
        """A blank-country grand total only cross-checks the country subtotals"""
        country_grid.rows.append(["", "Grand Total", "5475.24"])
        result = aggregator.aggregate(country_grid, Category.SALES)

        assert result.sales_tax == [Decimal("5475.24")]
        assert "UNKNOWN" not in result.breakdown
        assert "REPORT_TOTAL_MISMATCH" not in result.validation_flags

    def test_grand_total_mismatch_flagged(self, aggregator, country_grid):
        country_grid.rows.append([None, "Grand Total", "6000.00"])
        result = aggregator.aggregate(country_grid, Category.SALES)

        assert result.sales_tax == [Decimal("5475.24")]
        assert "REPORT_TOTAL_MISMATCH" in result.validation_flags

    def test_single_provenance_entry(self, aggregator, country_grid):
        result = aggregator.aggregate(country_grid)

        assert len(result.provenance) == 1
        assert result.provenance[0].source_pattern == "country_subtotal_only"
        assert result.provenance[0].tier == PatternTier.STRUCTURED
        assert result.orphan_amounts() == []

    def test_dominant_row_used_without_keyword(self, aggregator):
        grid = Grid(["Country", "Net Total Tax"], [["Ireland", 3.50], ["Ireland", 4.05], ["Ireland", 100.00]])
        result = aggregator.aggregate(grid)

        assert result.sales_tax == [Decimal("100.00")]
        assert "AMBIGUOUS_COUNTRY_SUBTOTAL" not in result.validation_flags

    def test_ambiguous_country_flagged(self, aggregator):
        grid = Grid(["Country", "Net Total Tax"], [["Ireland", 10], ["Ireland", 9]])
        result = aggregator.aggregate(grid)

        assert result.sales_tax == [Decimal("10.00")]
        assert "AMBIGUOUS_COUNTRY_SUBTOTAL" in result.validation_flags

    def test_order_detail_sums_all_rows(self, aggregator, order_grid):
        result = aggregator.aggregate(order_grid, "sales")

        assert result.sales_tax == [Decimal("20.05")]
        assert result.confidence == 0.80
        assert result.breakdown["Shipping Tax Amt."] == Decimal("3.45")
        assert result.breakdown["Item Tax Amt."] == Decimal("16.10")
        assert result.breakdown["Order Tax"] == Decimal("0.50")

    def test_generic_skips_negative_cells(self, aggregator):
        grid = Grid(["Date", "VAT"], [["01/03", 23], ["02/03", "11.50"], ["03/03", -5]])
        result = aggregator.aggregate(grid, Category.PURCHASES)

        assert result.purchase_tax == [Decimal("34.50")]
        assert result.sales_tax == []
        assert result.confidence == 0.75

    def test_generic_ignores_rate_column(self, aggregator):
        grid = Grid(
            ["Date", "Net", "VAT Rate", "VAT Amount"],
            [["01/03", 100, 23, 23.00], ["02/03", 50, 23, 11.50]]
        )
        result = aggregator.aggregate(grid, Category.PURCHASES)

        assert result.purchase_tax == [Decimal("34.50")]
        assert "MULTIPLE_TAX_COLUMNS" not in result.validation_flags

    def test_generic_multiple_columns_totals_best_class(self, aggregator):
        grid = Grid(["VAT", "Tax Amount"], [[10, 12], [10, 12]])
        result = aggregator.aggregate(grid)

        assert result.sales_tax == [Decimal("24.00")]
        assert "MULTIPLE_TAX_COLUMNS" in result.validation_flags

    def test_no_tax_columns(self, aggregator):
        grid = Grid(["Date", "Description"], [["01/03", "Coffee"]])
        result = aggregator.aggregate(grid)

        assert result.all_amounts == []
        assert result.confidence == 0.3
        assert "NO_TAX_COLUMNS" in result.validation_flags
        assert "NO_TAX_FOUND" in result.validation_flags

    def test_unknown_category_files_as_sales(self, aggregator, order_grid):
        result = aggregator.aggregate(order_grid, Category.UNKNOWN)

        assert result.category == Category.SALES
        assert result.sales_tax == [Decimal("20.05")]


class TestGridReader:
    """Test cases for reading spreadsheet files into grids."""

    def test_is_spreadsheet(self):
        assert is_spreadsheet("report.CSV")
        assert is_spreadsheet("report.xlsx")
        assert not is_spreadsheet("invoice.txt")

    def test_dataframe_to_grid_maps_nan_to_none(self):
        df = pd.DataFrame({"Country": ["Ireland", "UK"], "Net Total Tax": [7.55, None]})
        grid = dataframe_to_grid(df)

        assert grid.headers == ["Country", "Net Total Tax"]
        assert grid.rows[0] == ["Ireland", 7.55]
        assert grid.rows[1][1] is None

    def test_read_csv_bytes(self):
        data = b"Country,Net Total Tax\nIreland,7.55\nUK,40.76\n"
        grid = read_grid(data, file_name="export.csv")

        assert grid.headers == ["Country", "Net Total Tax"]
        assert len(grid.rows) == 2

    def test_read_csv_path(self, tmp_path):
        path = tmp_path / "orders.csv"
        path.write_text("Order #,Item Tax Amt.\n1,4.60\n2,9.20\n")

        grid = read_grid(path)
        result = SpreadsheetAggregator().aggregate(grid)

        assert result.sales_tax == [Decimal("13.80")]

    def test_empty_csv_raises(self):
        with pytest.raises(TextExtractionError):
            read_grid(b"", file_name="empty.csv")
