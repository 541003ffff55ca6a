"""
Outbound dispatch: render once, deliver to every target with retry.

Targets are delivered independently. Each runs in its own task with its
own retry loop, so a slow or failing target never delays or rolls back a
sibling. The whole fan-out is bounded by a per-request deadline; targets
still pending when it expires are cancelled and reported as failed with the
attempts they managed to make.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from hermes_shared.errors import DispatchError, RenderError
from hermes_shared.logging import get_logger
from hermes_shared.metrics import MetricsCollector
from hermes_shared.retry import RetryPolicy

from ..models import EndpointDefinition, TargetSpec
from ..templates.store import RenderContext, RenderedPayload, TemplateStore

DEADLINE_EXCEEDED = "deadline exceeded"
SHUTTING_DOWN = "gateway shutting down"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class Classification(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"
    RENDER_FAILED = "render_failed"


@dataclass
class DispatchOutcome:
    """Delivery outcome for one target."""

    target_index: int
    target: TargetSpec
    attempts: int = 0
    status: DeliveryStatus = DeliveryStatus.FAILED
    elapsed: float = 0.0
    last_error: Optional[str] = None
    error_kind: Optional[str] = None
    status_code: Optional[int] = None
    response: Any = None
    finished: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is DeliveryStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.target_index,
            "url": self.target.url,
            "method": self.target.method,
            "status": self.status.value,
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed * 1000, 2),
            "status_code": self.status_code,
            "error": self.last_error,
            "response": self.response,
        }


@dataclass
class DispatchResult:
    """Per-request aggregate of target outcomes."""

    endpoint: EndpointDefinition
    classification: Classification
    outcomes: List[DispatchOutcome] = field(default_factory=list)
    rendered: Optional[RenderedPayload] = None
    render_error: Optional[RenderError] = None
    elapsed: float = 0.0
    deadline_exceeded: bool = False
    aborted: bool = False

    @property
    def succeeded(self) -> List[DispatchOutcome]:
        return [o for o in self.outcomes if o.succeeded]

    @property
    def failed(self) -> List[DispatchOutcome]:
        return [o for o in self.outcomes if not o.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "endpoint": self.endpoint.describe(),
            "classification": self.classification.value,
            "elapsed_ms": round(self.elapsed * 1000, 2),
            "targets": [o.to_dict() for o in self.outcomes],
        }
        if self.deadline_exceeded:
            data["deadline_exceeded"] = True
        if self.aborted:
            data["aborted"] = True
        if self.render_error is not None:
            data["render_error"] = self.render_error.message
        return data


def classify(outcomes: List[DispatchOutcome]) -> Classification:
    succeeded = sum(1 for o in outcomes if o.succeeded)
    if outcomes and succeeded == len(outcomes):
        return Classification.ALL_SUCCEEDED
    if succeeded == 0:
        return Classification.ALL_FAILED
    return Classification.PARTIAL


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class Dispatcher:
    """Renders payloads and fans them out to endpoint targets."""

    def __init__(
        self,
        templates: TemplateStore,
        client: Optional[httpx.AsyncClient] = None,
        *,
        default_timeout: float = 30.0,
        default_retry: Optional[RetryPolicy] = None,
        request_deadline: float = 120.0,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.templates = templates
        self.default_timeout = default_timeout
        self.default_retry = default_retry or RetryPolicy()
        self.request_deadline = request_deadline
        self.metrics = metrics
        self.logger = get_logger("relay.dispatcher")
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._abort = asyncio.Event()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def close(self):
        """Close the HTTP client if this dispatcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def abort_inflight(self):
        """Finalize every in-flight dispatch now, cancelling pending targets."""
        self.logger.warning("Aborting in-flight dispatches")
        self._abort.set()

    def effective_timeout(self, endpoint: EndpointDefinition, target: TargetSpec) -> float:
        return target.timeout or endpoint.timeout or self.default_timeout

    async def dispatch(self, endpoint: EndpointDefinition, context: RenderContext) -> DispatchResult:
        started = time.monotonic()
        label = endpoint.describe()

        try:
            rendered = self.templates.render(endpoint.template, context)
        except RenderError as e:
            self.logger.warning(
                "Template render failed",
                endpoint=label,
                template=endpoint.template,
                error=e.message
            )
            self._record_result(label, Classification.RENDER_FAILED, time.monotonic() - started)
            return DispatchResult(
                endpoint=endpoint,
                classification=Classification.RENDER_FAILED,
                render_error=e,
                elapsed=time.monotonic() - started,
            )

        policy = endpoint.retry or self.default_retry
        client = await self._get_client()
        outcomes = [DispatchOutcome(index, target) for index, target in enumerate(endpoint.targets)]
        tasks = [
            asyncio.ensure_future(self._deliver(client, endpoint, outcome, rendered, policy))
            for outcome in outcomes
        ]

        deadline_exceeded, aborted = await self._await_targets(tasks)

        now = time.monotonic()
        for outcome, task in zip(outcomes, tasks):
            if outcome.finished:
                continue
            outcome.status = DeliveryStatus.FAILED
            outcome.elapsed = now - started
            if not task.cancelled() and task.exception() is not None:
                outcome.last_error = f"internal error: {task.exception()!r}"
                self.logger.error(
                    "Delivery task crashed",
                    endpoint=label,
                    target=outcome.target.describe(),
                    exc_info=task.exception()
                )
            elif deadline_exceeded:
                outcome.last_error = DEADLINE_EXCEEDED
            else:
                outcome.last_error = SHUTTING_DOWN
            outcome.finished = True

        classification = classify(outcomes)
        elapsed = time.monotonic() - started
        self._record_result(label, classification, elapsed)
        self.logger.info(
            "Dispatch complete",
            endpoint=label,
            classification=classification.value,
            targets=len(outcomes),
            succeeded=sum(1 for o in outcomes if o.succeeded),
            elapsed_ms=round(elapsed * 1000, 2),
            deadline_exceeded=deadline_exceeded
        )
        return DispatchResult(
            endpoint=endpoint,
            classification=classification,
            outcomes=outcomes,
            rendered=rendered,
            elapsed=elapsed,
            deadline_exceeded=deadline_exceeded,
            aborted=aborted,
        )

    async def _await_targets(self, tasks: List["asyncio.Future[None]"]):
        """Wait for delivery tasks until done, deadline or abort.

        Returns (deadline_exceeded, aborted). Pending tasks are cancelled and
        awaited before returning, including when the caller is cancelled.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_deadline
        pending = set(tasks)
        abort_waiter = asyncio.ensure_future(self._abort.wait())
        deadline_exceeded = False
        aborted = False

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    deadline_exceeded = True
                    break
                done, _ = await asyncio.wait(
                    pending | {abort_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done
                if abort_waiter in done:
                    aborted = bool(pending)
                    break
        finally:
            abort_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if deadline_exceeded:
            self.logger.warning(
                "Dispatch deadline exceeded",
                deadline_seconds=self.request_deadline,
                cancelled_targets=len(pending)
            )
        return deadline_exceeded, aborted

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        endpoint: EndpointDefinition,
        outcome: DispatchOutcome,
        rendered: RenderedPayload,
        policy: RetryPolicy,
    ) -> None:
        """Attempt delivery to one target under the retry policy."""
        target = outcome.target
        label = endpoint.describe()
        timeout = self.effective_timeout(endpoint, target)
        headers = {"Content-Type": "application/json"}
        headers.update(target.headers)
        started = time.monotonic()

        for attempt in range(1, policy.max_attempts + 1):
            outcome.attempts = attempt
            try:
                response = await asyncio.wait_for(
                    client.request(
                        target.method,
                        target.url,
                        content=rendered.content,
                        headers=headers,
                        timeout=timeout,
                    ),
                    timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                error = DispatchError(DispatchError.TIMEOUT, f"attempt timed out after {timeout}s")
                retryable = policy.retry_on_timeout
            except httpx.RequestError as e:
                error = DispatchError(DispatchError.NETWORK, f"{type(e).__name__}: {e}")
                retryable = policy.retry_on_network_error
            else:
                outcome.status_code = response.status_code
                outcome.response = _response_body(response)
                if 200 <= response.status_code < 300:
                    outcome.status = DeliveryStatus.SUCCESS
                    outcome.last_error = None
                    outcome.error_kind = None
                    outcome.elapsed = time.monotonic() - started
                    outcome.finished = True
                    self._record_attempt(label, "success")
                    if attempt > 1:
                        self.logger.info(
                            "Delivery succeeded after retry",
                            endpoint=label,
                            target=target.describe(),
                            attempt=attempt
                        )
                    return
                error = DispatchError(
                    DispatchError.STATUS,
                    f"target responded with HTTP {response.status_code}",
                    status_code=response.status_code,
                )
                retryable = policy.is_retryable_status(response.status_code)

            outcome.last_error = error.message
            outcome.error_kind = error.kind

            if not retryable or attempt == policy.max_attempts:
                self._record_attempt(label, "terminal")
                self.logger.error(
                    "Delivery failed",
                    endpoint=label,
                    target=target.describe(),
                    attempts=attempt,
                    retryable=retryable,
                    error=error.message
                )
                break

            self._record_attempt(label, "retryable")
            delay = policy.delay_for(attempt)
            self.logger.warning(
                "Delivery attempt failed, waiting before next attempt",
                endpoint=label,
                target=target.describe(),
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=error.message
            )
            await self._sleep(delay)

        outcome.status = DeliveryStatus.FAILED
        outcome.elapsed = time.monotonic() - started
        outcome.finished = True

    def _record_attempt(self, endpoint: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("dispatch_attempts_total", endpoint=endpoint, outcome=outcome)

    def _record_result(self, endpoint: str, classification: Classification, elapsed: float):
        if self.metrics:
            self.metrics.increment_counter(
                "dispatch_results_total",
                endpoint=endpoint,
                classification=classification.value
            )
            self.metrics.observe_histogram("dispatch_duration_seconds", elapsed, endpoint=endpoint)
