"""
Evaluation metrics for the VAT extraction pipeline.

This module implements metrics for category classification and for
end-to-end amount extraction over labelled documents.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics import accuracy_score, confusion_matrix, precision_recall_fscore_support

from ..models import ExtractionResult

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


class CategoryMetrics:
    """Metrics for SALES/PURCHASES category classification."""

    def __init__(self, class_names: List[str]):
        self.class_names = class_names
        self.reset()

    def reset(self):
        """Reset all metrics."""
        self.predictions = []
        self.true_labels = []
        self.confidences = []

    def update(self, prediction: str, true_label: str, confidence: float):
        """Update metrics with new prediction."""
        self.predictions.append(prediction)
        self.true_labels.append(true_label)
        self.confidences.append(confidence)

    def compute_metrics(self) -> Dict[str, Any]:
        """Compute accuracy, weighted and per-class precision/recall and the confusion matrix."""
        if not self.predictions:
            return {}

        labels = list(self.class_names)
        accuracy = accuracy_score(self.true_labels, self.predictions)
        precision, recall, f1, _ = precision_recall_fscore_support(
            self.true_labels, self.predictions, labels=labels, average='weighted', zero_division=0
        )

        # Per-class metrics
        precision_per_class, recall_per_class, f1_per_class, support_per_class = precision_recall_fscore_support(
            self.true_labels, self.predictions, labels=labels, average=None, zero_division=0
        )

        per_class_metrics = {}
        for i, class_name in enumerate(labels):
            per_class_metrics[class_name] = {
                'precision': float(precision_per_class[i]),
                'recall': float(recall_per_class[i]),
                'f1': float(f1_per_class[i]),
                'support': int(support_per_class[i])
            }

        # Rows are true labels, columns predictions, both in class_names order
        cm = confusion_matrix(self.true_labels, self.predictions, labels=labels)

        return {
            'accuracy': float(accuracy),
            'precision': float(precision),
            'recall': float(recall),
            'f1': float(f1),
            'per_class_metrics': per_class_metrics,
            'confusion_matrix': cm.tolist(),
            'confidence_metrics': {
                'average_confidence': float(np.mean(self.confidences)),
                'confidence_std': float(np.std(self.confidences))
            },
            'total_samples': len(self.predictions)
        }


class ExtractionMetrics:
    """Metrics for end-to-end VAT amount extraction."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics."""
        self.results: List[ExtractionResult] = []
        self.expected: List[Tuple[List[Decimal], List[Decimal]]] = []
        self.processing_times: List[float] = []

    def update(
        self,
        result: ExtractionResult,
        expected_sales: Sequence[Any],
        expected_purchases: Sequence[Any],
        processing_time: Optional[float] = None
    ):
        """Update metrics with one pipeline result and its labels."""
        self.results.append(result)
        self.expected.append((_decimals(expected_sales), _decimals(expected_purchases)))
        self.processing_times.append(
            processing_time if processing_time is not None else result.processing_time_ms / 1000
        )

    def compute_metrics(self) -> Dict[str, Any]:
        """Compute amount precision/recall, method mix and review rates."""
        if not self.results:
            return {}

        total_tp = total_fp = total_fn = 0
        exact_matches = 0
        total_errors = []
        methods = defaultdict(int)

        for result, (sales, purchases) in zip(self.results, self.expected):
            tp_s, fp_s, fn_s = match_amounts(result.sales_tax, sales)
            tp_p, fp_p, fn_p = match_amounts(result.purchase_tax, purchases)
            total_tp += tp_s + tp_p
            total_fp += fp_s + fp_p
            total_fn += fn_s + fn_p

            if fp_s + fn_s + fp_p + fn_p == 0:
                exact_matches += 1

            expected_total = sum(sales + purchases, Decimal("0"))
            total_errors.append(float(abs(result.total_tax - expected_total)))
            methods[result.method.value] += 1

        precision, recall, f1 = _prf(total_tp, total_fp, total_fn)
        confidences = [r.confidence for r in self.results]

        return {
            'amount_metrics': {
                'precision': precision,
                'recall': recall,
                'f1': f1,
                'true_positives': total_tp,
                'false_positives': total_fp,
                'false_negatives': total_fn
            },
            'exact_match_accuracy': exact_matches / len(self.results),
            'total_error_metrics': {
                'mean_absolute_error': float(np.mean(total_errors)),
                'max_absolute_error': float(np.max(total_errors))
            },
            'method_distribution': dict(methods),
            'success_rate': sum(1 for r in self.results if r.success) / len(self.results),
            'manual_review_rate': sum(1 for r in self.results if r.requires_manual_review) / len(self.results),
            'confidence_metrics': {
                'average_confidence': float(np.mean(confidences)),
                'confidence_std': float(np.std(confidences)),
                'min_confidence': float(np.min(confidences)),
                'max_confidence': float(np.max(confidences))
            },
            'processing_time_metrics': {
                'average_time': float(np.mean(self.processing_times)),
                'time_std': float(np.std(self.processing_times)),
                'min_time': float(np.min(self.processing_times)),
                'max_time': float(np.max(self.processing_times))
            },
            'total_documents': len(self.results)
        }


def match_amounts(predicted: Sequence[Decimal], expected: Sequence[Decimal]) -> Tuple[int, int, int]:
    """
    Greedy one-to-one matching of predicted to expected amounts.

    Returns:
        Tuple of (true positives, false positives, false negatives)
    """
    remaining = list(expected)
    tp = 0
    for amount in predicted:
        for i, target in enumerate(remaining):
            if abs(amount - target) <= AMOUNT_TOLERANCE:
                tp += 1
                del remaining[i]
                break
    return tp, len(predicted) - tp, len(remaining)


def _decimals(values: Sequence[Any]) -> List[Decimal]:
    return [Decimal(str(v)) for v in values or []]


def _prf(tp: int, fp: int, fn: int) -> Tuple[float, float, float]:
    precision = tp / (tp + fp) if (tp + fp) > 0 else 0.0
    recall = tp / (tp + fn) if (tp + fn) > 0 else 0.0
    f1 = 2 * precision * recall / (precision + recall) if (precision + recall) > 0 else 0.0
    return precision, recall, f1
