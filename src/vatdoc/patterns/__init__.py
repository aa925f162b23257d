"""Tiered VAT pattern rules."""

from .pattern_library import PatternLibrary, PatternMatch, PatternRule, parse_amount

__all__ = ["PatternLibrary", "PatternMatch", "PatternRule", "parse_amount"]
