"""Offline configuration validation and template dry-runs."""

from .validator import AdminValidator, ValidationReport

__all__ = ["AdminValidator", "ValidationReport"]
