"""Live-page validation of recommendations."""

from recunlock.validation.engine import ValidationEngine, classify, normalize_findings

__all__ = ["ValidationEngine", "classify", "normalize_findings"]
