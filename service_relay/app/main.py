"""
Webhook relay service for Hermes.

Receives webhooks on configured endpoints, renders each payload through the
endpoint's template and fans the result out to every target.
"""

import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import uvicorn
from fastapi import Request
from fastapi.responses import JSONResponse

from hermes_shared.base_service import BaseService
from hermes_shared.config import RelaySettings, get_config
from hermes_shared.errors import ConfigError, InvalidPayload
from hermes_shared.logging import configure_logging, get_logger

from .config_loader import RESERVED_PATHS, GatewaySnapshot, load_gateway
from .dispatch.dispatcher import Dispatcher
from .models import HTTP_METHODS
from .ratelimit.limiter import ConcurrencyLimiter
from .router import GatewayResponse, GatewayRouter
from .templates.store import RenderContext, parse_json


class RelayService(BaseService):
    """Webhook relay service implementation."""

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        snapshot: Optional[GatewaySnapshot] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = settings or get_config()
        super().__init__(settings.service_name, settings)

        self.snapshot = snapshot or load_gateway(self.config.config_path)
        self.limiter = ConcurrencyLimiter(self.config.max_concurrent_requests, metrics=self.metrics)
        self.dispatcher = Dispatcher(
            self.snapshot.templates,
            client,
            default_timeout=self.config.request_timeout,
            default_retry=self.snapshot.config.default_retry,
            request_deadline=self.config.request_deadline,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.router = GatewayRouter(self.snapshot.registry, self.limiter, self.dispatcher)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        @self.app.on_event("startup")
        async def _startup():
            self._loop = asyncio.get_running_loop()
            self.logger.info(
                "Relay started",
                endpoints=len(self.snapshot.registry),
                max_concurrent=self.limiter.max_concurrent,
                metrics_enabled=self.snapshot.config.enable_metrics
            )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.router.drain(self.config.shutdown_grace_period)
            await self.dispatcher.close()

        if self.snapshot.config.enable_metrics:
            self._setup_metrics_route()
        if self.config.debug_endpoint_enabled:
            self._setup_debug_route()
        self._setup_relay_routes()

        self.app.state.relay_service = self

    def _setup_debug_route(self):

        @self.app.post("/debug")
        async def debug_webhook(request: Request):
            """Log whatever was received and acknowledge it."""
            payload = await self._read_payload(request)
            self.logger.info(
                "Debug webhook received",
                headers=dict(request.headers),
                payload=payload
            )
            return {"status": "received", "payload": payload}

    def _setup_relay_routes(self):
        """Catch-all webhook route. Must be registered last."""

        @self.app.api_route("/{path:path}", methods=list(HTTP_METHODS))
        async def relay_webhook(path: str, request: Request):
            """Relay a webhook to the targets of the matching endpoint."""
            try:
                payload = await self._read_payload(request)
            except InvalidPayload as e:
                response = GatewayResponse.from_error("invalid_payload", e)
            else:
                context = RenderContext(
                    payload=payload,
                    method=request.method,
                    path=request.url.path,
                    headers=dict(request.headers),
                    query=dict(request.query_params),
                )
                response = await self.router.handle(request.method, request.url.path, context)

            return JSONResponse(
                status_code=response.status_code,
                content=response.body,
                headers=response.headers
            )

    async def _read_payload(self, request: Request) -> Any:
        body = await request.body()
        if not body.strip():
            return {}
        try:
            return parse_json(body)
        except ValueError as e:
            raise InvalidPayload(f"Invalid JSON payload: {e}") from e

    def _metrics_endpoint_label(self, request: Request) -> str:
        path = request.url.path
        if path in RESERVED_PATHS or self.snapshot.registry.lookup(request.method, path) is not None:
            return path
        return "unmatched"

    async def _check_readiness(self) -> Dict[str, str]:
        return {
            "config": "ok",
            "admission": "draining" if self.router.draining else "ok",
        }

    def request_shutdown(self):
        """Begin graceful shutdown from outside the event loop, e.g. a signal handler."""
        grace = self.config.shutdown_grace_period
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.router.begin_shutdown, grace)


def create_app(settings: Optional[RelaySettings] = None, **kwargs):
    """Build the FastAPI application."""
    return RelayService(settings, **kwargs).app


class RelayServer(uvicorn.Server):
    """uvicorn server that stops admission before uvicorn starts closing connections."""

    def __init__(self, config: uvicorn.Config, service: RelayService):
        super().__init__(config)
        self.service = service

    def handle_exit(self, sig, frame):
        if not self.should_exit:
            self.service.logger.info("Shutdown signal received", signal=sig)
            self.service.request_shutdown()
        super().handle_exit(sig, frame)


def main() -> int:
    settings = get_config()
    try:
        service = RelayService(settings)
    except ConfigError as e:
        configure_logging(settings.service_name, settings.log_level, settings.log_format)
        get_logger("relay").error("Invalid configuration", error=e.message, path=str(settings.config_path))
        return 1

    config = uvicorn.Config(
        service.app,
        host=settings.bind_address,
        port=settings.port,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=int(settings.shutdown_grace_period) or None,
    )
    RelayServer(config, service).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
