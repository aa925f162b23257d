"""
Vision/AI service collaborator for VAT extraction.

This module provides the client side of the external vision service:
1. HTTPVisionService - chat-completion style JSON API, requires an API key
2. vision_payload_to_amounts - converts the structured reply into ExtractedAmounts

The service itself (model, prompt tuning, OCR) is external; the pipeline only
sees a ``{"success": bool, "extractedData": {...}}`` dictionary or an error.
"""

import re
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import requests

from ..classifiers.document_classifier import DocumentTypeClassifier, SUPPLIER_INVOICE_CONFIDENCE
from ..errors import ProcessingTimeoutError, VisionServiceUnavailableError
from ..models import (
    Category, DocumentType, ExtractedAmounts, ExtractionMethod, LineItem,
    PatternTier, ProvenanceEntry, to_amount
)
from ..patterns.pattern_library import PatternLibrary
from .resilience import RateLimiter, retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

VISION_PROMPT = """You are a VAT compliance assistant analysing a business document.
Extract the VAT information and reply with a single JSON object:
{
  "documentType": "INVOICE" | "RECEIPT" | "CREDIT_NOTE" | "STATEMENT" | "OTHER",
  "businessDetails": {"businessName": string|null, "vatNumber": string|null, "address": string|null},
  "transactionData": {"date": "YYYY-MM-DD"|null, "invoiceNumber": string|null, "currency": "EUR"|"GBP"|"USD"|"OTHER"},
  "vatData": {
    "lineItems": [{"description": string, "quantity": number, "unitPrice": number,
                   "vatRate": number, "vatAmount": number, "totalAmount": number}],
    "subtotal": number|null, "totalVatAmount": number|null, "grandTotal": number|null
  },
  "classification": {"category": "SALES"|"PURCHASES"|"MIXED", "confidence": number, "reasoning": string},
  "validationFlags": [string],
  "extractedText": string
}
Report the TOTAL VAT amount. Never report lease, rental, instalment or monthly
payment amounts as VAT."""

# Vision confidence rule
DEFAULT_CLASSIFICATION_CONFIDENCE = 0.5
AMOUNTS_FOUND_MINIMUM = 0.7
MULTI_AMOUNT_BONUS = 0.15
MULTI_AMOUNT_CAP = 0.95
RECONCILED_BONUS = 0.1
RECONCILED_CAP = 0.98
RECONCILE_TOLERANCE = Decimal("0.02")
FLAG_PENALTY = 0.05
FLAG_FLOOR = 0.3


class BaseVisionService(ABC):
    """Abstract base class for vision services."""

    @abstractmethod
    def analyze(
        self,
        text: str,
        file_name: str = "",
        category: Union[Category, str, None] = None,
        image_data_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Analyse a document.

        Returns:
            ``{"success": True, "extractedData": {...}}`` or ``{"success": False, "error": str}``

        Raises:
            VisionServiceUnavailableError: Service unreachable or refused the request
            ProcessingTimeoutError: Service did not answer within the timeout
        """
        pass


class HTTPVisionService(BaseVisionService):
    """
    Vision service reached over a chat-completion style HTTP API.

    Args:
        api_key: Bearer token for the API
        base_url: Chat-completions endpoint
        model: Model name sent with every request
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json"
        }

    def _build_payload(self, text: str, file_name: str, category: Category, image_data_url: Optional[str]) -> Dict[str, Any]:
        user_text = f"File: {file_name or 'document'}\nCategory hint: {category.value}\n\nDocument text:\n{text}"
        content: Any = user_text
        if image_data_url:
            content = [
                {"type": "text", "text": user_text},
                {"type": "image_url", "image_url": {"url": image_data_url}},
            ]
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": VISION_PROMPT},
                {"role": "user", "content": content},
            ],
            "max_tokens": 2048,
            "temperature": 0.1
        }

    def analyze(
        self,
        text: str,
        file_name: str = "",
        category: Union[Category, str, None] = None,
        image_data_url: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = self._build_payload(text or "", file_name, Category.parse(category), image_data_url)

        try:
            response = requests.post(self.base_url, headers=self.headers, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout:
            logger.error(f"Vision API timed out after {self.timeout}s for {file_name or 'document'}")
            raise ProcessingTimeoutError("vision_analyze", self.timeout)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(f"Vision API returned HTTP {status}: {e}")
            raise VisionServiceUnavailableError(
                f"Vision API returned HTTP {status}",
                recoverable=status in RETRYABLE_STATUS_CODES,
                context={"status_code": status}
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Vision API request failed: {e}")
            raise VisionServiceUnavailableError(f"Vision API request failed: {e}")

        try:
            result = response.json()
            content = result["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected vision API response shape: {e}")
            raise VisionServiceUnavailableError(f"Unexpected vision API response: {e}", recoverable=False)

        match = JSON_OBJECT.search(content or "")
        if not match:
            logger.warning("Vision API reply contained no JSON object")
            return {"success": False, "error": "No JSON object in vision reply"}

        try:
            extracted = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Vision API reply JSON could not be parsed: {e}")
            return {"success": False, "error": f"Invalid JSON in vision reply: {e}"}

        logger.info(f"Vision API analysed {file_name or 'document'}: {len(content)} characters returned")
        return {"success": True, "extractedData": extracted}


class VisionServiceFactory:
    """Factory class for creating vision services."""

    @staticmethod
    def create(
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 30.0,
        max_retries: int = 2,
        requests_per_minute: int = 50
    ) -> BaseVisionService:
        """
        Create an HTTP vision service with retry and rate limiting applied.

        Args:
            api_key: API key for the vision service
            base_url: Chat-completions endpoint
            model: Model name
            timeout: Per-request timeout in seconds
            max_retries: Retries for recoverable failures
            requests_per_minute: Client-side rate limit

        Returns:
            Vision service instance
        """
        if not api_key:
            raise ValueError("HTTP vision service requires 'api_key' parameter")

        service = HTTPVisionService(api_key=api_key, base_url=base_url, model=model, timeout=timeout)
        limiter = RateLimiter(requests_per_minute)
        service.analyze = limiter(retry_with_backoff(max_retries=max_retries)(service.analyze))
        return service

    @staticmethod
    def create_with_fallback(api_key: Optional[str] = None, **kwargs) -> Optional[BaseVisionService]:
        """
        Create a vision service when one is configured.

        Returns:
            Vision service, or None when no API key is available; the pipeline
            then skips the vision strategy
        """
        if not api_key:
            logger.info("No vision API key configured, vision strategy disabled")
            return None
        try:
            return VisionServiceFactory.create(api_key=api_key, **kwargs)
        except ValueError as e:
            logger.warning(f"Failed to initialize vision service, continuing without it: {e}")
            return None


def _resolve_category(payload: Dict[str, Any], hint: Category, text: str) -> Category:
    predicted, confidence = DocumentTypeClassifier().classify(text)
    if predicted != Category.UNKNOWN and confidence >= SUPPLIER_INVOICE_CONFIDENCE:
        return predicted
    classified = Category.parse((payload.get("classification") or {}).get("category"))
    if classified != Category.UNKNOWN:
        return classified
    return hint if hint != Category.UNKNOWN else Category.PURCHASES


def _document_type(raw: Optional[str], category: Category) -> DocumentType:
    raw = (raw or "").upper()
    if raw in ("INVOICE", "CREDIT_NOTE"):
        return DocumentType.SALES_INVOICE if category == Category.SALES else DocumentType.PURCHASE_INVOICE
    if raw == "RECEIPT":
        return DocumentType.SALES_RECEIPT if category == Category.SALES else DocumentType.PURCHASE_RECEIPT
    return DocumentType.OTHER


def _line_items(raw_items: List[Dict[str, Any]]) -> List[LineItem]:
    items = []
    for raw in raw_items or []:
        if not isinstance(raw, dict):
            continue
        items.append(LineItem(
            description=str(raw.get("description") or ""),
            quantity=to_amount(raw.get("quantity")),
            unit_price=to_amount(raw.get("unitPrice")),
            vat_rate=to_amount(raw.get("vatRate")),
            vat_amount=to_amount(raw.get("vatAmount")),
            total_amount=to_amount(raw.get("totalAmount")),
        ))
    return items


def vision_payload_to_amounts(
    payload: Dict[str, Any],
    category: Union[Category, str, None] = None,
    text: str = "",
    library: Optional[PatternLibrary] = None
) -> ExtractedAmounts:
    """
    Convert a structured vision reply into ExtractedAmounts.

    Line-item VAT amounts are used when present, otherwise the total VAT
    amount. Amounts that the document text labels as lease, rental or
    instalment payments are dropped.

    Args:
        payload: The ``extractedData`` dictionary from the vision service
        category: Caller's SALES/PURCHASES hint
        text: Document text used for exclusions and category evidence
        library: Pattern library providing the exclusion rules

    Returns:
        ExtractedAmounts with method AI_VISION
    """
    library = library or PatternLibrary.default()
    source_text = text or str(payload.get("extractedText") or "")
    target = _resolve_category(payload, Category.parse(category), source_text)
    excluded = library.find_exclusions(source_text)

    business = payload.get("businessDetails") or {}
    transaction = payload.get("transactionData") or {}
    vat_data = payload.get("vatData") or {}
    classification = payload.get("classification") or {}
    flags = [str(f) for f in payload.get("validationFlags") or []]

    try:
        base = float(classification.get("confidence") or DEFAULT_CLASSIFICATION_CONFIDENCE)
    except (TypeError, ValueError):
        base = DEFAULT_CLASSIFICATION_CONFIDENCE

    raw_items = [r for r in vat_data.get("lineItems") or [] if isinstance(r, dict)]
    items = _line_items(raw_items)
    total_vat = to_amount(vat_data.get("totalVatAmount"))
    result = ExtractedAmounts(
        confidence=base,
        method=ExtractionMethod.AI_VISION,
        category=target,
        document_type=_document_type(payload.get("documentType"), target),
        business_name=business.get("businessName"),
        vat_number=business.get("vatNumber"),
        document_date=transaction.get("date"),
        invoice_number=transaction.get("invoiceNumber"),
        currency=transaction.get("currency"),
        subtotal=to_amount(vat_data.get("subtotal")),
        total_amount=to_amount(vat_data.get("grandTotal")),
        tax_rate=items[0].vat_rate if items else None,
        line_items=items,
        is_credit_note=str(payload.get("documentType") or "").upper() == "CREDIT_NOTE",
    )

    for index, item in enumerate(items):
        if item.vat_amount is None or item.vat_amount <= 0:
            continue
        if item.vat_amount in excluded:
            logger.info(f"Excluding vision amount {item.vat_amount} labelled '{excluded[item.vat_amount]}'")
            result.validation_flags.add("EXCLUDED_PAYMENT_AMOUNT")
            continue
        result.add_amount(item.vat_amount, target, ProvenanceEntry(
            amount=item.vat_amount,
            source_pattern=f"vision:lineItems[{index}]",
            tier=PatternTier.STRUCTURED,
            local_confidence=base,
            method="AI vision line item",
            raw=str(raw_items[index].get("vatAmount"))
        ))

    if not result.all_amounts and total_vat is not None and total_vat > 0:
        if total_vat in excluded:
            result.validation_flags.add("EXCLUDED_PAYMENT_AMOUNT")
        else:
            result.add_amount(total_vat, target, ProvenanceEntry(
                amount=total_vat,
                source_pattern="vision:totalVatAmount",
                tier=PatternTier.STRUCTURED,
                local_confidence=base,
                method="AI vision total VAT",
                raw=str(vat_data.get("totalVatAmount"))
            ))

    found = len(result.all_amounts)
    if found:
        if result.confidence < AMOUNTS_FOUND_MINIMUM:
            result.adjust_confidence(AMOUNTS_FOUND_MINIMUM - result.confidence, "vision_amounts_found")
        if found > 1:
            target_value = min(result.confidence + MULTI_AMOUNT_BONUS, MULTI_AMOUNT_CAP)
            result.adjust_confidence(target_value - result.confidence, "vision_multiple_amounts")
        item_taxes = [i.vat_amount for i in items if i.vat_amount is not None]
        if item_taxes and total_vat is not None:
            if abs(sum(item_taxes, Decimal("0")) - total_vat) <= RECONCILE_TOLERANCE:
                target_value = min(result.confidence + RECONCILED_BONUS, RECONCILED_CAP)
                result.adjust_confidence(target_value - result.confidence, "vision_line_items_reconciled")

    if flags:
        target_value = max(result.confidence - FLAG_PENALTY * len(flags), FLAG_FLOOR)
        result.adjust_confidence(target_value - result.confidence, "vision_validation_flags")
        result.validation_flags.update(f"VISION:{flag}" for flag in flags)

    logger.debug(f"Vision payload converted: {found} amount(s), confidence {result.confidence:.2f}")
    return result
