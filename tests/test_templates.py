"""
Tests for template-based extraction.
"""

import pytest
import sys
from decimal import Decimal
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc.models import Category, ExtractionMethod
from vatdoc.extraction.templates import TemplateMatcher

VAT3_RETURN = """Revenue.ie VAT3 Return
Registration: IE1234567T
T1 VAT on sales: €4,600.00
T2 VAT on purchases: €1,150.00
T3 Net payable: €3,450.00
"""

BANK_STATEMENT = """AIB Bank Statement
12/03 Revenue Commissioners VAT 1,234.56
"""


class TestTemplateMatcher:
    """Test cases for TemplateMatcher."""

    @pytest.fixture
    def matcher(self):
        return TemplateMatcher()

    def test_revenue_return(self, matcher):
        template, amounts, issues = matcher.extract(VAT3_RETURN)

        assert template.name == "Revenue VAT Return"
        assert amounts.sales_tax == [Decimal("4600.00")]
        assert amounts.purchase_tax == [Decimal("1150.00")]
        assert amounts.confidence == 0.9
        assert amounts.method == ExtractionMethod.TEMPLATE
        assert issues == []

    def test_revenue_return_net_box_mismatch(self, matcher):
        text = VAT3_RETURN.replace("3,450.00", "3,000.00")
        _, _, issues = matcher.extract(text)

        assert any("does not equal" in issue for issue in issues)

    def test_bank_statement(self, matcher):
        template, amounts, issues = matcher.extract(BANK_STATEMENT)

        assert template.template_type == "BANK_STATEMENT"
        assert amounts.purchase_tax == [Decimal("1234.56")]
        assert amounts.confidence == 0.7
        assert issues == []

    def test_invoice_with_rate(self, matcher):
        template, amounts, _ = matcher.extract("Invoice INV-1\nVAT @ 23%: €23.00\nTotal: €123.00", Category.PURCHASES)

        assert template.name == "Standard Invoice"
        assert amounts.purchase_tax == [Decimal("23.00")]
        assert amounts.confidence == 0.8

    def test_invoice_needs_vat_mention(self, matcher):
        assert matcher.match("Invoice INV-1\nTotal: €123.00") is None

    def test_matched_layout_without_amounts(self, matcher):
        assert matcher.extract("Invoice\nVAT registered supplier") == (None, None, [])

    def test_no_templates(self):
        matcher = TemplateMatcher(templates=[])

        assert matcher.extract(VAT3_RETURN) == (None, None, [])
