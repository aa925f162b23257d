"""Document category classification module."""

from .document_classifier import DocumentTypeClassifier, DOCUMENT_TYPES

__all__ = ["DocumentTypeClassifier", "DOCUMENT_TYPES"]
