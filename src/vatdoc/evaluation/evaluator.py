"""
Evaluator for the VAT extraction pipeline.

Runs the pipeline over labelled documents and reports category accuracy and
amount extraction quality, saving JSON summaries and CSV details.
"""

import os
import json
import time
import logging
from typing import Any, Dict, List

import pandas as pd

from ..models import Category
from ..pipeline.extraction_pipeline import ExtractionPipeline
from .metrics import CategoryMetrics, ExtractionMetrics, match_amounts

logger = logging.getLogger(__name__)


class PipelineEvaluator:
    """
    Evaluator for the VAT extraction pipeline.

    This class provides evaluation of:
    1. Document category classification
    2. End-to-end VAT amount extraction
    """

    def __init__(self, pipeline: ExtractionPipeline):
        """
        Initialize the evaluator.

        Args:
            pipeline: ExtractionPipeline instance to evaluate
        """
        self.pipeline = pipeline

        self.category_metrics = CategoryMetrics([Category.SALES.value, Category.PURCHASES.value, Category.UNKNOWN.value])
        self.extraction_metrics = ExtractionMetrics()

        self.evaluation_results = {}

    def evaluate_classification(
        self,
        test_data: List[Dict[str, Any]],
        save_results: bool = True,
        output_dir: str = "./evaluation_results"
    ) -> Dict[str, Any]:
        """
        Evaluate category classification.

        Args:
            test_data: Samples with 'text' and 'true_category' keys
            save_results: Whether to save results to file
            output_dir: Directory to save results

        Returns:
            Classification evaluation results
        """
        logger.info(f"Evaluating classification on {len(test_data)} samples")

        self.category_metrics.reset()

        for i, sample in enumerate(test_data):
            try:
                predicted, confidence = self.pipeline.classifier.classify(sample['text'])
                self.category_metrics.update(
                    prediction=predicted.value,
                    true_label=Category.parse(sample['true_category']).value,
                    confidence=confidence
                )
            except (KeyError, TypeError) as e:
                logger.error(f"Error processing sample {i}: {e}")
                continue

        results = self.category_metrics.compute_metrics()

        if save_results:
            os.makedirs(output_dir, exist_ok=True)
            with open(os.path.join(output_dir, "classification_evaluation.json"), 'w') as f:
                json.dump(results, f, indent=2)

        self.evaluation_results['classification'] = results
        logger.info(f"Classification evaluation completed. Accuracy: {results.get('accuracy', 0):.4f}")

        return results

    def evaluate(
        self,
        test_data: List[Dict[str, Any]],
        save_results: bool = True,
        output_dir: str = "./evaluation_results"
    ) -> Dict[str, Any]:
        """
        Evaluate end-to-end extraction.

        Args:
            test_data: Samples with 'text' and optional 'file_name', 'category',
                'spreadsheet_grid', 'expected_sales' and 'expected_purchases' keys
            save_results: Whether to save results to file
            output_dir: Directory to save results

        Returns:
            Extraction evaluation results
        """
        logger.info(f"Evaluating pipeline on {len(test_data)} samples")

        self.extraction_metrics.reset()
        details = []

        for i, sample in enumerate(test_data):
            start_time = time.time()
            result = self.pipeline.process_document(
                sample.get('text', ''),
                file_name=sample.get('file_name', f"sample_{i}"),
                category=sample.get('category'),
                spreadsheet_grid=sample.get('spreadsheet_grid')
            )
            processing_time = time.time() - start_time

            expected_sales = sample.get('expected_sales', [])
            expected_purchases = sample.get('expected_purchases', [])
            self.extraction_metrics.update(result, expected_sales, expected_purchases, processing_time)

            metrics = self.extraction_metrics
            sales, purchases = metrics.expected[-1]
            tp_s, fp_s, fn_s = match_amounts(result.sales_tax, sales)
            tp_p, fp_p, fn_p = match_amounts(result.purchase_tax, purchases)
            details.append({
                'sample_id': i,
                'file_name': result.file_name,
                'method': result.method.value,
                'confidence': result.confidence,
                'extracted_sales': ";".join(str(a) for a in result.sales_tax),
                'extracted_purchases': ";".join(str(a) for a in result.purchase_tax),
                'expected_sales': ";".join(str(a) for a in sales),
                'expected_purchases': ";".join(str(a) for a in purchases),
                'correct': fp_s + fn_s + fp_p + fn_p == 0,
                'requires_manual_review': result.requires_manual_review
            })

            if (i + 1) % 10 == 0:
                logger.info(f"Processed {i + 1}/{len(test_data)} documents")

        results = self.extraction_metrics.compute_metrics()

        if save_results:
            os.makedirs(output_dir, exist_ok=True)
            with open(os.path.join(output_dir, "extraction_evaluation.json"), 'w') as f:
                json.dump(results, f, indent=2)

            df = pd.DataFrame(details)
            df.to_csv(os.path.join(output_dir, "extraction_details.csv"), index=False)

        self.evaluation_results['extraction'] = results
        f1 = results.get('amount_metrics', {}).get('f1', 0)
        logger.info(f"Pipeline evaluation completed. Amount F1: {f1:.4f}")

        return results

    def evaluate_all(
        self,
        test_data: Dict[str, List[Dict[str, Any]]],
        save_results: bool = True,
        output_dir: str = "./evaluation_results"
    ) -> Dict[str, Any]:
        """
        Run classification and extraction evaluation.

        Args:
            test_data: Dictionary with 'classification' and/or 'extraction' keys
            save_results: Whether to save results to file
            output_dir: Directory to save results

        Returns:
            Complete evaluation results with a summary
        """
        results = {}

        if 'classification' in test_data:
            results['classification'] = self.evaluate_classification(
                test_data['classification'], save_results, output_dir
            )

        if 'extraction' in test_data:
            results['extraction'] = self.evaluate(
                test_data['extraction'], save_results, output_dir
            )

        results['summary'] = {
            'evaluation_timestamp': time.strftime('%Y-%m-%d %H:%M:%S'),
            'classification_accuracy': results.get('classification', {}).get('accuracy'),
            'amount_f1': results.get('extraction', {}).get('amount_metrics', {}).get('f1'),
            'manual_review_rate': results.get('extraction', {}).get('manual_review_rate')
        }

        if save_results:
            os.makedirs(output_dir, exist_ok=True)
            with open(os.path.join(output_dir, "complete_evaluation.json"), 'w') as f:
                json.dump(results, f, indent=2)

        return results
