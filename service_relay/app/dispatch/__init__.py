"""
Dispatch package: renders payloads and delivers them to endpoint targets
with per-target retry and a per-request deadline.
"""

from .dispatcher import (
    Classification,
    DeliveryStatus,
    DispatchOutcome,
    DispatchResult,
    Dispatcher,
)

__all__ = [
    "Classification",
    "DeliveryStatus",
    "DispatchOutcome",
    "DispatchResult",
    "Dispatcher",
]
