"""
Request-handling entry point of the relay.

Resolves the endpoint, takes a concurrency permit, runs the dispatcher and
turns the aggregated result into a caller-facing response.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from hermes_shared.errors import EndpointNotFound, LimiterRejection, RelayException
from hermes_shared.logging import get_logger

from .dispatch.dispatcher import Classification, DispatchResult, Dispatcher
from .ratelimit.limiter import ConcurrencyLimiter
from .registry import EndpointRegistry
from .templates.store import RenderContext

_STATUS_BY_CLASSIFICATION = {
    Classification.ALL_SUCCEEDED: (200, "success"),
    Classification.PARTIAL: (200, "partial"),
    Classification.ALL_FAILED: (502, "delivery_failed"),
    Classification.RENDER_FAILED: (422, "render_failed"),
}


@dataclass
class GatewayResponse:
    """What the HTTP layer writes back to the webhook caller."""

    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    result: Optional[DispatchResult] = None

    @property
    def status(self) -> str:
        return self.body.get("status", "")

    @classmethod
    def from_error(cls, status: str, error: RelayException, headers: Optional[Dict[str, str]] = None) -> "GatewayResponse":
        body = {"status": status}
        body.update(error.to_response().model_dump())
        return cls(status_code=error.status_code, body=body, headers=headers or {})

    @classmethod
    def from_result(cls, result: DispatchResult) -> "GatewayResponse":
        status_code, status = _STATUS_BY_CLASSIFICATION[result.classification]
        body: Dict[str, Any] = {"status": status}
        body.update(result.to_dict())
        if result.classification is Classification.PARTIAL:
            body["warnings"] = [
                f"target {o.target_index} ({o.target.url}) failed: {o.last_error}"
                for o in result.failed
            ]
        if result.classification is Classification.RENDER_FAILED and result.render_error is not None:
            body["code"] = result.render_error.code
            body["message"] = result.render_error.message
        return cls(status_code=status_code, body=body, result=result)


class GatewayRouter:
    """Lookup, admission, dispatch and response mapping."""

    def __init__(self, registry: EndpointRegistry, limiter: ConcurrencyLimiter, dispatcher: Dispatcher):
        self.registry = registry
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.logger = get_logger("relay.router")
        self._abort_handle: Optional[asyncio.TimerHandle] = None

    @property
    def draining(self) -> bool:
        return self.limiter.closed

    async def handle(self, method: str, path: str, context: RenderContext) -> GatewayResponse:
        endpoint = self.registry.lookup(method, path)
        if endpoint is None:
            self.logger.info("Endpoint not found", method=method, path=path)
            return GatewayResponse.from_error("not_found", EndpointNotFound(method, path))

        try:
            permit = self.limiter.acquire()
        except LimiterRejection as e:
            return GatewayResponse.from_error("overloaded", e, headers={"Retry-After": "1"})

        try:
            result = await self.dispatcher.dispatch(endpoint, context)
        finally:
            self.limiter.release(permit)

        return GatewayResponse.from_result(result)

    def begin_shutdown(self, grace_period: float) -> None:
        """Stop admitting now; abort whatever is still in flight after the grace period."""
        if self.limiter.closed:
            return
        self.limiter.close()
        self.logger.info(
            "Shutdown started",
            in_flight=self.limiter.in_flight,
            grace_period=grace_period
        )
        loop = asyncio.get_running_loop()
        self._abort_handle = loop.call_later(grace_period, self._abort_if_busy)

    def _abort_if_busy(self) -> None:
        if self.limiter.in_flight:
            self.logger.warning("Grace period elapsed", in_flight=self.limiter.in_flight)
            self.dispatcher.abort_inflight()

    async def drain(self, grace_period: float) -> bool:
        """Graceful shutdown. Returns True if in-flight work finished within the grace period."""
        self.begin_shutdown(grace_period)
        finished = await self.limiter.wait_idle(grace_period)
        if self._abort_handle is not None:
            self._abort_handle.cancel()
            self._abort_handle = None
        if not finished:
            self.dispatcher.abort_inflight()
            await self.limiter.wait_idle(timeout=5.0)
        self.logger.info("Shutdown drained", forced=not finished)
        return finished
