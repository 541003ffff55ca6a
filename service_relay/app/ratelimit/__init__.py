"""Admission control for in-flight dispatches."""

from .limiter import ConcurrencyLimiter, Permit

__all__ = ["ConcurrencyLimiter", "Permit"]
