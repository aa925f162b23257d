"""
Tests for the main VAT extraction pipeline.
"""

import pytest
import sys
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock, patch

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc.config import PipelineConfig
from vatdoc.errors import IssueCode, VisionServiceUnavailableError
from vatdoc.extraction.spreadsheet_aggregator import Grid
from vatdoc.models import Category, ConflictResolution, ExtractionMethod
from vatdoc.pipeline.extraction_pipeline import MANUAL_REVIEW_MESSAGE, ExtractionPipeline
from vatdoc.pipeline.strategies import DeepScanStrategy, DocumentContext
from vatdoc.utils.logger import NullAuditPort

SUPPLIER_INVOICE = """Acme Supplies Ltd
Invoice
Subtotal: €100.00
VAT @ 23%: €23.00
Total: €123.00
"""


def vision_reply(total_vat: float, confidence: float = 0.9) -> dict:
    return {
        "success": True,
        "extractedData": {
            "documentType": "INVOICE",
            "businessDetails": {"businessName": "Acme Supplies Ltd", "vatNumber": "IE1234567T"},
            "transactionData": {"date": "2024-03-01", "currency": "EUR"},
            "vatData": {"totalVatAmount": total_vat},
            "classification": {"category": "PURCHASES", "confidence": confidence},
        },
    }


@pytest.fixture
def audit():
    return NullAuditPort()


@pytest.fixture
def pipeline(audit):
    return ExtractionPipeline(PipelineConfig(), audit=audit)


class TestExtractionPipeline:
    """Test cases for ExtractionPipeline."""

    def test_initialization(self, pipeline):
        """Test pipeline initialization without a vision key."""
        assert pipeline.vision_service is None
        assert pipeline.validator is not None
        assert pipeline.scorer is not None
        assert pipeline.cross_validator is not None
        assert len(pipeline.strategies) == 5

    @patch("vatdoc.pipeline.extraction_pipeline.VisionServiceFactory")
    def test_vision_service_initialization(self, mock_factory):
        """Test that the configured API key is passed to the vision factory."""
        mock_service = Mock()
        mock_factory.create_with_fallback.return_value = mock_service

        pipeline = ExtractionPipeline(PipelineConfig(vision_api_key="test_key"))

        assert pipeline.vision_service == mock_service
        assert mock_factory.create_with_fallback.call_args[1]["api_key"] == "test_key"

    def test_pattern_extraction_without_vision(self, pipeline):
        """Test that pattern extraction wins when no vision service is configured."""
        result = pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases")

        assert result.success
        assert result.method == ExtractionMethod.PATTERN
        assert result.purchase_tax == [Decimal("134.96")]
        assert result.confidence > 0.6
        assert not result.requires_manual_review
        assert result.file_name == "lease.pdf"
        assert "Pattern matching used - please verify amounts" in result.issues
        assert result.quality is not None and result.validation is not None

    def test_quality_boost_applied(self, pipeline):
        """Test that the quality boost is recorded in the confidence history."""
        result = pipeline.process_document("Total Amount VAT: €134.96", category="purchases")

        stages = [stage for stage, _ in result.amounts.confidence_history]
        assert "quality_boost" in stages
        assert result.confidence == pytest.approx(0.77)

    def test_manual_review_when_nothing_found(self, pipeline):
        """Test the manual-review terminal result."""
        result = pipeline.process_document("Hello world, nothing here", "note.txt")

        assert not result.success
        assert result.method == ExtractionMethod.MANUAL_REVIEW
        assert result.confidence == 0.0
        assert result.requires_manual_review
        assert result.user_message == MANUAL_REVIEW_MESSAGE
        assert result.issues[:2] == ["Automatic VAT extraction failed", "Document requires manual review"]
        assert len(result.issues) == 6
        assert result.amounts is None

    def test_empty_text(self, pipeline):
        """Test that empty text ends in manual review without raising."""
        result = pipeline.process_document("", "blank.pdf")

        assert result.method == ExtractionMethod.MANUAL_REVIEW
        assert result.requires_manual_review

    def test_deep_scan_fallback(self, pipeline, audit):
        """Test that deep-scan amounts only reach the manual-review result."""
        text = "Receipt\nDuty free shop\nPaid €45.50 by card\nRef 12345"
        result = pipeline.process_document(text, "receipt.jpg", "purchases")

        assert not result.success
        assert result.method == ExtractionMethod.MANUAL_REVIEW
        assert result.requires_manual_review
        assert result.purchase_tax == []
        assert result.amounts.method == ExtractionMethod.FALLBACK
        assert result.amounts.purchase_tax == [Decimal("45.50")]
        assert ("warn", "Deep scan amounts need review") in [(kind, name) for kind, name, _ in audit.events]

    def test_receipt_totals_are_not_vat(self, pipeline):
        """Test that net and gross totals are never offered as VAT amounts."""
        text = "Receipt\nNet 100.00\nTax included\nTotal 123.00"
        result = pipeline.process_document(text, "receipt.jpg", "purchases")

        assert result.method == ExtractionMethod.MANUAL_REVIEW
        assert result.amounts is None
        assert pipeline.aggregate_vat([result])["total_purchase_vat"] == 0.0

    def test_spreadsheet_runs_first(self, pipeline):
        """Test that a supplied grid is aggregated before the text strategies."""
        grid = Grid(
            ["Country", "Order", "Net Total Tax"],
            [["Ireland", "1001", 3.50], ["Ireland", "1002", 4.05], ["Ireland", "Subtotal", 7.55], ["UK", "1003", 40.76]]
        )
        result = pipeline.process_document("", "amazon_vat.csv", "sales", spreadsheet_grid=grid)

        assert result.success
        assert result.method == ExtractionMethod.SPREADSHEET
        assert result.sales_tax == [Decimal("48.31")]
        assert result.cross_validation is None

    def test_vision_corroborated_by_patterns(self, audit):
        """Test that a vision result is cross-validated against pattern extraction."""
        vision = Mock()
        vision.analyze.return_value = vision_reply(23.0)
        pipeline = ExtractionPipeline(PipelineConfig(), vision_service=vision, audit=audit)

        result = pipeline.process_document(SUPPLIER_INVOICE, "invoice.pdf", "purchases")

        vision.analyze.assert_called_once()
        assert result.success
        assert result.method == ExtractionMethod.AI_VISION
        assert result.purchase_tax == [Decimal("23.00")]
        assert result.cross_validation is not None
        assert result.cross_validation.conflict_resolution == ConflictResolution.CONSENSUS
        assert result.cross_validation.agreement == 1.0
        assert result.confidence == pytest.approx(0.98)
        assert not result.requires_manual_review

    def test_vision_disagreement_needs_review(self, audit):
        """Test that disagreeing methods are flagged for manual review."""
        vision = Mock()
        vision.analyze.return_value = vision_reply(500.0)
        pipeline = ExtractionPipeline(PipelineConfig(), vision_service=vision, audit=audit)

        result = pipeline.process_document(SUPPLIER_INVOICE, "invoice.pdf", "purchases")

        assert result.method == ExtractionMethod.AI_VISION
        assert result.cross_validation.conflict_resolution == ConflictResolution.MANUAL_REVIEW
        assert result.requires_manual_review
        assert any("disagree" in issue for issue in result.issues)

    @pytest.mark.parametrize("error", [
        VisionServiceUnavailableError("Vision API returned HTTP 503"),
        RuntimeError("unexpected"),
    ])
    def test_vision_failure_falls_through(self, audit, error):
        """Test that a failing vision service does not stop pattern extraction."""
        vision = Mock()
        vision.analyze.side_effect = error
        pipeline = ExtractionPipeline(PipelineConfig(), vision_service=vision, audit=audit)

        result = pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases")

        assert result.success
        assert result.method == ExtractionMethod.PATTERN
        assert any(kind in ("warn", "error") for kind, _, _ in audit.events)

    def test_unsuccessful_vision_reply(self, audit):
        """Test a vision reply without data falls through to the next strategy."""
        vision = Mock()
        vision.analyze.return_value = {"success": False, "error": "No JSON object in vision reply"}
        pipeline = ExtractionPipeline(PipelineConfig(), vision_service=vision, audit=audit)

        result = pipeline.process_document("Hello world, nothing here")

        assert result.method == ExtractionMethod.MANUAL_REVIEW
        assert f"{IssueCode.NO_TAX_FOUND}: No JSON object in vision reply" in result.issues

    def test_audit_event_emitted(self, pipeline, audit):
        """Test that every processed document produces an audit event."""
        pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases")

        events = [(name, context) for kind, name, context in audit.events if kind == "audit"]
        assert events[-1][0] == "vat_extraction_completed"
        assert events[-1][1]["method"] == "PATTERN"

    @patch("vatdoc.pipeline.extraction_pipeline.time.sleep")
    def test_process_batch(self, mock_sleep, pipeline):
        """Test batch processing in windows with a pause between them."""
        documents = [
            {"text": "Total Amount VAT: €134.96", "file_name": "a.pdf", "category": "purchases"},
            {"text": "VAT Total: €46.00", "file_name": "b.pdf", "category": "sales"},
            {"text": "Hello world", "file_name": "c.pdf"},
        ]

        results = pipeline.process_batch(documents, batch_size=2, pause_seconds=0.5)

        assert [r.file_name for r in results] == ["a.pdf", "b.pdf", "c.pdf"]
        assert results[2].method == ExtractionMethod.MANUAL_REVIEW
        mock_sleep.assert_called_once_with(0.5)

    def test_aggregate_vat(self, pipeline):
        """Test period totals over processed documents."""
        results = [
            pipeline.process_document("VAT Total: €46.00", "sale.pdf", "sales"),
            pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases"),
            pipeline.process_document("Hello world", "note.txt"),
        ]
        totals = pipeline.aggregate_vat(results)

        assert totals["document_count"] == 3
        assert totals["successful_documents"] == 2
        assert totals["total_sales_vat"] == 46.0
        assert totals["total_purchase_vat"] == 134.96
        assert totals["net_vat_payable"] == -88.96
        assert totals["documents_needing_review"] == 1
        assert totals["method_breakdown"] == {"PATTERN": 2, "MANUAL_REVIEW": 1}
        assert totals["pending_review_purchase_vat"] == 0.0

    def test_aggregate_vat_keeps_review_amounts_out_of_totals(self, pipeline):
        """Test that amounts waiting for review are reported but not filed."""
        results = [
            pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases"),
            pipeline.process_document("Receipt\nDuty free shop\nPaid €45.50 by card", "receipt.jpg", "purchases"),
        ]
        totals = pipeline.aggregate_vat(results)

        assert totals["total_purchase_vat"] == 134.96
        assert totals["pending_review_purchase_vat"] == 45.5
        assert totals["documents_needing_review"] == 1
        assert totals["successful_documents"] == 1

    def test_audit_port_shared_by_components(self, pipeline, audit):
        """Test that strategies, validator and scorer report to the pipeline's audit port."""
        assert pipeline.validator.audit is audit
        assert pipeline.scorer.audit is audit
        assert all(strategy.audit is audit for strategy in pipeline.strategies)

        pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases")

        names = [name for kind, name, _ in audit.events if kind == "audit"]
        assert names == ["vat_validation_completed", "vat_extraction_completed"]

    def test_summarize(self, pipeline):
        """Test the audit summary of one result."""
        result = pipeline.process_document("Total Amount VAT: €134.96", "lease.pdf", "purchases")
        summary = pipeline.summarize(result)

        assert summary["file_name"] == "lease.pdf"
        assert summary["method"] == "PATTERN"
        assert summary["total_purchase_vat"] == 134.96
        assert summary["quality_grade"] == "B"
        assert "timestamp" in summary

    def test_get_processing_stats(self, pipeline):
        """Test getting processing statistics."""
        stats = pipeline.get_processing_stats()

        assert stats["jurisdiction"] == "IE"
        assert stats["vision_service"] is None
        assert [s["method"] for s in stats["strategies"]] == [
            "AI_VISION", "SPREADSHEET", "PATTERN", "TEMPLATE", "FALLBACK"
        ]
        assert stats["pattern_rules"] == 13
        assert "quality_weights" in stats

    def test_validate_document(self, pipeline):
        """Test document validation against a known total."""
        validation = pipeline.validate_document(
            "Total Amount VAT: €134.96", "lease.pdf", "purchases", expected_total=134.96
        )

        assert validation["is_valid"]
        assert validation["issues"] == []
        assert validation["confidence_score"] > 0.6

    def test_validate_document_wrong_total(self, pipeline):
        validation = pipeline.validate_document(
            "Total Amount VAT: €134.96", "lease.pdf", "purchases", expected_total=100.0
        )

        assert not validation["is_valid"]
        assert "Expected total VAT 100.00, extracted 134.96" in validation["issues"]

    def test_validate_document_manual_review(self, pipeline):
        validation = pipeline.validate_document("Hello world")

        assert not validation["is_valid"]
        assert "Document flagged for manual review" in validation["warnings"]


class TestDeepScanStrategy:
    """Test cases for the last-resort deep scan."""

    @pytest.fixture
    def strategy(self, audit):
        return DeepScanStrategy(floor=0.4, audit=audit)

    def test_totals_and_subtotals_excluded(self, strategy):
        text = "Receipt\nSubtotal: €100.00\nTax paid €23.00\nTotal: €123.00"

        assert strategy.candidate_amounts(text) == [Decimal("23.00")]

    def test_result_stays_below_floor(self, strategy, audit):
        result = strategy.extract(DocumentContext(text="Duty free\nPaid €45.50", category=Category.PURCHASES))

        assert result.success
        assert result.confidence == 0.3
        assert not strategy.clears_floor(result)
        assert result.requires_manual_review
        assert audit.events[-1][:2] == ("warn", "Deep scan amounts need review")
