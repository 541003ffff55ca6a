"""
Shared utilities for the Hermes webhook relay.

This package aggregates common building blocks consumed by the relay service
and its admin tooling:

- config: Runtime settings via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry policy and backoff calculation
- base_service: FastAPI scaffolding shared by services

Do not import from service_relay into hermes_shared.
"""
