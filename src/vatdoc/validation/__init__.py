"""Jurisdiction compliance validation."""

from .compliance_validator import ComplianceValidator, ValidationResult, ValidationWarning

__all__ = ["ComplianceValidator", "ValidationResult", "ValidationWarning"]
