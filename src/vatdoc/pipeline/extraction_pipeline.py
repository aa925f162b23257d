"""
Main VAT Extraction Pipeline.

This module implements the orchestrator that runs the extraction strategies in
order, validates and scores every candidate, reconciles competing candidates
and always hands back a structured, explained ExtractionResult.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import numpy as np

from ..classifiers.document_classifier import DocumentTypeClassifier
from ..config import PipelineConfig
from ..errors import IssueCode, VATExtractionError
from ..extraction.spreadsheet_aggregator import Grid
from ..models import Category, ConflictResolution, ExtractionMethod, ExtractionResult
from ..patterns.pattern_library import PatternLibrary
from ..scoring.cross_validation import CrossValidationEngine
from ..scoring.quality_scorer import QualityScorer
from ..utils.logger import AuditPort, LoggingAuditPort
from ..validation.compliance_validator import ComplianceValidator
from ..vision.vision_service import BaseVisionService, VisionServiceFactory
from .strategies import (
    DocumentContext, ExtractionStrategy, PatternStrategy, SpreadsheetStrategy, VisionStrategy,
    build_strategies, failure_result
)

logger = logging.getLogger(__name__)

MANUAL_REVIEW_MESSAGE = (
    "Unable to automatically extract VAT from this document. Our team will review it manually "
    "within 24 hours. You can also check if the document contains clear VAT amounts and contact support."
)


class ExtractionPipeline:
    """
    Main pipeline for extracting VAT from documents.

    This class orchestrates the extraction strategies:
    1. Spreadsheet aggregation (when a grid is supplied)
    2. Vision service
    3. Tiered pattern extraction
    4. Template matching
    5. Deep fallback scan
    and terminates in a manual-review result when none clears its floor.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        vision_service: Optional[BaseVisionService] = None,
        audit: Optional[AuditPort] = None
    ):
        """
        Initialize the ExtractionPipeline.

        Args:
            config: Pipeline configuration (defaults to the Irish profile)
            vision_service: Vision collaborator; built from the config's API key when omitted
            audit: Audit port for business events
        """
        self.config = config or PipelineConfig()
        self.audit = audit or LoggingAuditPort()

        self._initialize_components(vision_service)

        logger.info("ExtractionPipeline initialized successfully")

    def _initialize_components(self, vision_service: Optional[BaseVisionService] = None):
        """Initialize all pipeline components."""
        try:
            if vision_service is None:
                vision_service = VisionServiceFactory.create_with_fallback(
                    api_key=self.config.vision_api_key,
                    base_url=self.config.vision_base_url,
                    model=self.config.vision_model,
                    timeout=self.config.vision_timeout,
                    max_retries=self.config.vision_max_retries,
                    requests_per_minute=self.config.vision_requests_per_minute,
                )
            self.vision_service = vision_service

            jurisdiction = self.config.jurisdiction
            self.library = PatternLibrary.default()
            self.classifier = DocumentTypeClassifier()
            self.validator = ComplianceValidator(jurisdiction, audit=self.audit)
            self.scorer = QualityScorer(jurisdiction, audit=self.audit)
            self.cross_validator = CrossValidationEngine(jurisdiction, self.validator, self.scorer)
            self.strategies = build_strategies(
                self.config, self.vision_service, self.library, self.classifier, self.audit
            )

        except Exception as e:
            logger.error(f"Failed to initialize components: {e}")
            raise

    def _ordered_strategies(self, context: DocumentContext) -> List[ExtractionStrategy]:
        if context.grid is None:
            return list(self.strategies)
        structured = [s for s in self.strategies if isinstance(s, SpreadsheetStrategy)]
        return structured + [s for s in self.strategies if not isinstance(s, SpreadsheetStrategy)]

    def process_document(
        self,
        text: str,
        file_name: str = "",
        category: Union[Category, str, None] = None,
        spreadsheet_grid: Optional[Grid] = None,
        image_data_url: Optional[str] = None
    ) -> ExtractionResult:
        """
        Extract VAT amounts from a single document.

        Args:
            text: Plain text of the document
            file_name: Original file name, used for logging and classification
            category: SALES or PURCHASES hint (string or Category)
            spreadsheet_grid: Header row and cells when the document is a spreadsheet
            image_data_url: Optional base64 data URL passed to the vision service

        Returns:
            ExtractionResult; a MANUAL_REVIEW result when no strategy succeeds
        """
        start_time = time.time()
        context = DocumentContext(
            text=text or "",
            file_name=file_name,
            category=Category.parse(category),
            grid=spreadsheet_grid,
            image_data_url=image_data_url,
        )
        attempts: List[ExtractionResult] = []
        candidates: List[ExtractionResult] = []

        try:
            logger.info(f"Processing document: {file_name or '<text>'}")
            winner = None
            for strategy in self._ordered_strategies(context):
                if not strategy.applies_to(context):
                    continue

                result = self._run_strategy(strategy, context)
                attempts.append(result)
                if not result.success:
                    continue

                raw_confidence = result.confidence
                self._assess(result)
                candidates.append(result)
                if raw_confidence >= strategy.floor:
                    winner = result
                    if isinstance(strategy, VisionStrategy):
                        self._corroborate(context, candidates)
                    break
                logger.info(
                    f"{strategy.name} confidence {raw_confidence:.2f} below floor {strategy.floor:.2f}, trying next strategy"
                )

            if winner is None:
                final = self._manual_review(context, attempts, candidates)
            else:
                final = self._reconcile(winner, candidates)

        except Exception as e:
            logger.error(f"Error processing document {file_name}: {e}")
            self.audit.error("Pipeline failure", error=e, file_name=file_name)
            attempts.append(ExtractionResult(
                success=False,
                confidence=0.0,
                method=ExtractionMethod.MANUAL_REVIEW,
                issues=[f"{IssueCode.TEXT_EXTRACTION_FAILED}: {e}"],
            ))
            final = self._manual_review(context, attempts, [])

        final.processing_time_ms = int((time.time() - start_time) * 1000)
        final.file_name = file_name
        self.audit.audit(
            "vat_extraction_completed",
            file_name=file_name,
            method=final.method.value,
            success=final.success,
            confidence=round(final.confidence, 4),
            requires_manual_review=final.requires_manual_review,
            processing_time_ms=final.processing_time_ms,
        )
        logger.info(
            f"Document processed in {final.processing_time_ms} ms: {final.method.value} "
            f"(confidence {final.confidence:.2f})"
        )
        return final

    def _run_strategy(self, strategy: ExtractionStrategy, context: DocumentContext) -> ExtractionResult:
        """Run one strategy, converting raised errors into failure results."""
        try:
            result = strategy.extract(context)
        except VATExtractionError as e:
            logger.warning(f"{strategy.name} failed: {e}")
            self.audit.warn(f"{strategy.name} failed", code=e.code, file_name=context.file_name)
            return failure_result(strategy.method, e.message, context, e.code)
        except Exception as e:
            logger.error(f"{strategy.name} raised unexpectedly: {e}")
            self.audit.error(f"{strategy.name} raised unexpectedly", error=e, file_name=context.file_name)
            return failure_result(strategy.method, str(e), context, IssueCode.TEXT_EXTRACTION_FAILED)

        if result.success:
            self.audit.info(
                f"{strategy.name} succeeded",
                file_name=context.file_name,
                confidence=round(result.confidence, 4),
                amounts=len(result.amounts.all_amounts) if result.amounts else 0,
            )
        else:
            logger.info(f"{strategy.name} found nothing: {'; '.join(result.issues)}")
        return result

    def _assess(self, result: ExtractionResult):
        """Validate and score a successful candidate, applying the quality boost."""
        amounts = result.amounts
        validation = self.validator.validate(amounts)
        quality = self.scorer.assess(amounts)

        amounts.scale_confidence(quality.confidence_boost, "quality_boost")
        result.confidence = amounts.confidence
        result.validation = validation
        result.quality = quality

        for issue in validation.errors + quality.issues:
            if not issue.is_blocking:
                continue
            message = f"{issue.code}: {issue.message}"
            if message not in result.issues:
                result.issues.append(message)
            result.requires_manual_review = True

    def _corroborate(self, context: DocumentContext, candidates: List[ExtractionResult]):
        """Run pattern extraction next to a vision winner so the two can be cross-validated."""
        pattern = next((s for s in self.strategies if isinstance(s, PatternStrategy)), None)
        if pattern is None or any(c.method == ExtractionMethod.PATTERN for c in candidates):
            return

        result = self._run_strategy(pattern, context)
        if result.success:
            self._assess(result)
            candidates.append(result)

    def _reconcile(self, winner: ExtractionResult, candidates: List[ExtractionResult]) -> ExtractionResult:
        """Cross-validate when several candidates produced amounts."""
        usable = [c for c in candidates if c.amounts is not None and c.amounts.all_amounts]
        if len(usable) < 2:
            return winner

        cross = self.cross_validator.cross_validate(
            [c.amounts for c in usable],
            validations=[c.validation for c in usable],
            assessments=[c.quality for c in usable],
        )
        final = usable[cross.primary_index]
        final.amounts.adjust_confidence(cross.confidence - final.amounts.confidence, "cross_validation")
        final.confidence = final.amounts.confidence
        final.cross_validation = cross

        if cross.conflict_resolution == ConflictResolution.MANUAL_REVIEW:
            final.requires_manual_review = True
            final.issues.append(
                f"Extraction methods disagree (agreement {cross.agreement:.0%}) - manual review required"
            )
            self.audit.warn(
                "Cross-validation conflict",
                agreement=cross.agreement,
                methods=[c.method.value for c in usable],
            )
        return final

    def _manual_review(
        self,
        context: DocumentContext,
        attempts: List[ExtractionResult],
        candidates: List[ExtractionResult]
    ) -> ExtractionResult:
        """Terminal result when no strategy cleared its floor."""
        previous = [issue for attempt in attempts for issue in attempt.issues]
        best = max(candidates, key=lambda c: c.confidence) if candidates else None

        logger.warning(f"Document flagged for manual review: {context.file_name or '<text>'}")
        self.audit.warn("Document flagged for manual review", file_name=context.file_name, attempts=len(attempts))

        return ExtractionResult(
            success=False,
            confidence=0.0,
            method=ExtractionMethod.MANUAL_REVIEW,
            extracted_text=context.text,
            issues=["Automatic VAT extraction failed", "Document requires manual review"] + previous,
            requires_manual_review=True,
            user_message=MANUAL_REVIEW_MESSAGE,
            amounts=best.amounts if best else None,
            quality=best.quality if best else None,
            validation=best.validation if best else None,
            file_name=context.file_name,
        )

    def process_batch(
        self,
        documents: List[Dict[str, Any]],
        batch_size: Optional[int] = None,
        pause_seconds: Optional[float] = None
    ) -> List[ExtractionResult]:
        """
        Process multiple documents in fixed-size concurrent windows.

        Args:
            documents: Dicts with 'text' and optional 'file_name', 'category',
                'spreadsheet_grid' and 'image_data_url'
            batch_size: Documents processed concurrently per window
            pause_seconds: Pause between windows, for external rate limits

        Returns:
            List of results in input order
        """
        batch_size = max(1, batch_size or self.config.batch_size)
        pause_seconds = self.config.pause_seconds if pause_seconds is None else pause_seconds
        results: List[ExtractionResult] = []

        for start in range(0, len(documents), batch_size):
            window = documents[start:start + batch_size]
            logger.info(
                f"Processing documents {start + 1}-{start + len(window)} of {len(documents)}"
            )
            with ThreadPoolExecutor(max_workers=len(window)) as executor:
                results.extend(executor.map(self._process_batch_item, window))

            if start + batch_size < len(documents) and pause_seconds > 0:
                time.sleep(pause_seconds)

        return results

    def _process_batch_item(self, document: Dict[str, Any]) -> ExtractionResult:
        return self.process_document(
            document.get("text", ""),
            file_name=document.get("file_name", ""),
            category=document.get("category"),
            spreadsheet_grid=document.get("spreadsheet_grid"),
            image_data_url=document.get("image_data_url"),
        )

    def summarize(self, result: ExtractionResult) -> Dict[str, Any]:
        """
        JSON-ready audit summary of one result.

        Args:
            result: Pipeline result

        Returns:
            Dictionary with method, confidence, totals, validation counts and timestamp
        """
        validation = result.validation
        quality = result.quality
        return {
            "file_name": result.file_name,
            "method": result.method.value,
            "success": result.success,
            "confidence": round(result.confidence, 4),
            "total_sales_vat": float(sum(result.sales_tax, Decimal("0"))),
            "total_purchase_vat": float(sum(result.purchase_tax, Decimal("0"))),
            "requires_manual_review": result.requires_manual_review,
            "validation_errors": len(validation.errors) if validation else 0,
            "validation_warnings": len(validation.warnings) if validation else 0,
            "quality_score": quality.overall_score if quality else None,
            "quality_grade": quality.grade if quality else None,
            "issue_count": len(result.issues),
            "processing_time_ms": result.processing_time_ms,
            "timestamp": datetime.now().isoformat(),
        }

    def aggregate_vat(self, results: List[ExtractionResult]) -> Dict[str, Any]:
        """
        Period totals over several processed documents.

        Amounts of results waiting for manual review are reported separately
        and never counted in the period totals.

        Args:
            results: Pipeline results for the period

        Returns:
            Dictionary with sales and purchase VAT, net VAT payable, pending
            review amounts, average confidence, review counts and a per-method
            breakdown
        """
        successful = [r for r in results if r.success]
        accepted = [r for r in successful if not r.requires_manual_review]
        # Manual-review terminals carry the best rejected candidate in amounts
        pending = [r.amounts for r in results if r.requires_manual_review and r.amounts is not None]

        total_sales = sum((a for r in accepted for a in r.sales_tax), Decimal("0"))
        total_purchases = sum((a for r in accepted for a in r.purchase_tax), Decimal("0"))
        pending_sales = sum((a for p in pending for a in p.sales_tax), Decimal("0"))
        pending_purchases = sum((a for p in pending for a in p.purchase_tax), Decimal("0"))

        methods: Dict[str, int] = {}
        for result in results:
            methods[result.method.value] = methods.get(result.method.value, 0) + 1

        return {
            "document_count": len(results),
            "successful_documents": len(successful),
            "total_sales_vat": float(total_sales),
            "total_purchase_vat": float(total_purchases),
            "net_vat_payable": float(total_sales - total_purchases),
            "pending_review_sales_vat": float(pending_sales),
            "pending_review_purchase_vat": float(pending_purchases),
            "average_confidence": float(np.mean([r.confidence for r in accepted])) if accepted else 0.0,
            "documents_needing_review": sum(1 for r in results if r.requires_manual_review),
            "method_breakdown": methods,
        }

    def get_processing_stats(self) -> Dict[str, Any]:
        """Get statistics about the processing pipeline."""
        return {
            "jurisdiction": self.config.jurisdiction.code,
            "vision_service": type(self.vision_service).__name__ if self.vision_service else None,
            "strategies": [
                {"name": s.name, "method": s.method.value, "floor": s.floor} for s in self.strategies
            ],
            "quality_weights": dict(self.scorer.weights),
            "pattern_rules": sum(len(self.library.rules_for_tier(t)) for t in self.library.tiers),
            "batch_size": self.config.batch_size,
            "pause_seconds": self.config.pause_seconds,
        }

    def validate_document(
        self,
        text: str,
        file_name: str = "",
        category: Union[Category, str, None] = None,
        spreadsheet_grid: Optional[Grid] = None,
        expected_total: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Validate document processing results.

        Args:
            text: Plain text of the document
            file_name: Original file name
            category: SALES or PURCHASES hint
            spreadsheet_grid: Optional spreadsheet grid
            expected_total: Known total VAT for the document (optional)

        Returns:
            Validation results
        """
        result = self.process_document(text, file_name, category, spreadsheet_grid)

        validation = {
            "is_valid": True,
            "issues": [],
            "warnings": [],
            "confidence_score": result.confidence,
        }

        if not result.success:
            validation["issues"].append("No VAT amounts could be extracted automatically")

        if result.validation is not None:
            validation["issues"].extend(e.message for e in result.validation.errors if e.is_blocking)
            validation["warnings"].extend(w.message for w in result.validation.warnings)

        if expected_total is not None and result.success:
            extracted = float(result.total_tax)
            if abs(extracted - expected_total) > 0.01:
                validation["issues"].append(
                    f"Expected total VAT {expected_total:.2f}, extracted {extracted:.2f}"
                )

        if result.success and validation["confidence_score"] < 0.5:
            validation["warnings"].append("Low overall confidence score")

        if result.requires_manual_review:
            validation["warnings"].append("Document flagged for manual review")

        if result.processing_time_ms > 10000:
            validation["warnings"].append(f"Slow processing time: {result.processing_time_ms / 1000:.2f}s")

        validation["is_valid"] = len(validation["issues"]) == 0

        return validation
