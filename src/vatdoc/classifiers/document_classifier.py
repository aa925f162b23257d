"""
Keyword classifier for VAT document categories.

Decides whether a document records sales VAT or purchase VAT from lightweight
keyword evidence (lease and vehicle-finance wording, financial-services
issuers, supplier invoices addressed to the business) and maps the category to
a document type.
"""

import re
import logging
from typing import Dict, List, Tuple, Union

from ..models import Category, DocumentType

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = [t.value for t in DocumentType]

LEASE_PATTERNS = [
    r"\blease\b",
    r"\brental\b",
    r"\bmonthly\s+payment",
    r"\bvehicle\s+finance",
    r"\bcar\s+finance",
    r"\bfinance\s+agreement",
    r"\bhire\s+agreement",
]

FINANCIAL_SERVICES_PATTERNS = [
    r"\bfinancial\s+services\b",
    r"\bvolkswagen\s+financial",
    r"\bvw\s+financial",
    r"\bbank\b",
    r"\bfinance\s+(?:limited|ltd)\b",
    r"\bcredit\b",
    r"\blending\b",
]

DEFAULT_CONFIDENCE = 0.5
LEASE_CONFIDENCE = 0.8
SUPPLIER_INVOICE_CONFIDENCE = 0.7


class DocumentTypeClassifier:
    """
    Keyword-based document category classifier.

    Returns Category.UNKNOWN with the default confidence when no evidence is
    found, so callers can fall back to their own category hint.
    """

    def __init__(self):
        self.lease_patterns = [re.compile(p, re.IGNORECASE) for p in LEASE_PATTERNS]
        self.financial_patterns = [re.compile(p, re.IGNORECASE) for p in FINANCIAL_SERVICES_PATTERNS]

    def classify(self, text: str) -> Tuple[Category, float]:
        """
        Classify document text.

        Args:
            text: Plain document text

        Returns:
            Tuple of (category, confidence)
        """
        if not text:
            return Category.UNKNOWN, DEFAULT_CONFIDENCE

        category = Category.UNKNOWN
        confidence = DEFAULT_CONFIDENCE
        lowered = text.lower()

        is_lease = any(p.search(text) for p in self.lease_patterns)
        is_financial = any(p.search(text) for p in self.financial_patterns)

        if is_lease or is_financial:
            category = Category.PURCHASES
            confidence = LEASE_CONFIDENCE
            logger.debug(f"Lease/financial-services wording found (lease={is_lease}, financial={is_financial})")

        if "invoice" in lowered and re.search(r"\bbill\s+to\b", lowered):
            category = Category.PURCHASES
            confidence = max(confidence, SUPPLIER_INVOICE_CONFIDENCE)

        return category, confidence

    def predict(self, text: str) -> Category:
        return self.classify(text)[0]

    def predict_batch(self, texts: List[str]) -> List[Category]:
        return [self.predict(text) for text in texts]

    def get_confidence_score(self, text: str) -> float:
        return self.classify(text)[1]

    @staticmethod
    def document_type_for(category: Category, text: str) -> DocumentType:
        """Map a category to an invoice or receipt document type."""
        is_invoice = "invoice" in (text or "").lower()
        if category == Category.SALES:
            return DocumentType.SALES_INVOICE if is_invoice else DocumentType.SALES_RECEIPT
        if category == Category.PURCHASES:
            return DocumentType.PURCHASE_INVOICE if is_invoice else DocumentType.PURCHASE_RECEIPT
        return DocumentType.OTHER

    def get_model_info(self) -> Dict[str, Union[str, int, float]]:
        return {
            "classifier": type(self).__name__,
            "lease_patterns": len(self.lease_patterns),
            "financial_patterns": len(self.financial_patterns),
            "default_confidence": DEFAULT_CONFIDENCE,
        }
