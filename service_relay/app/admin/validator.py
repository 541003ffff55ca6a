"""
Offline configuration checks and template dry-runs.

Reuses the registry and template store; never performs network sends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from hermes_shared.errors import ConfigError, TemplateError

from ..config_loader import (
    RESERVED_PATHS,
    GatewayDocument,
    GatewaySnapshot,
    build_config,
    build_snapshot,
)
from ..registry import EndpointRegistry
from ..templates.store import RenderContext, RenderedPayload, TemplateStore


@dataclass
class ValidationReport:
    """Result of validating a configuration document."""

    errors: List[str] = field(default_factory=list)
    endpoint_count: int = 0
    template_count: int = 0

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "endpoints": self.endpoint_count,
            "templates": self.template_count,
        }


class AdminValidator:
    """Dry-run surface over a loaded configuration."""

    def __init__(self, snapshot: Optional[GatewaySnapshot] = None):
        self.snapshot = snapshot

    @staticmethod
    def validate_config(document: GatewayDocument) -> ValidationReport:
        """Check a whole document, collecting every error rather than the first."""
        report = ValidationReport()
        try:
            config = build_config(document)
        except ConfigError as e:
            report.errors.append(e.message)
            return report

        report.endpoint_count = len(config.definitions)
        report.template_count = len(config.templates)

        problem = config.default_retry.validate()
        if problem:
            report.errors.append(f"settings: {problem}")

        store = TemplateStore()
        for template_id, source in config.templates.items():
            try:
                store.compile(template_id, source)
            except TemplateError as e:
                report.errors.append(e.message)
        store.seal()

        for error in EndpointRegistry.check(config.definitions, store, reserved_paths=RESERVED_PATHS):
            # A template that failed to compile is already reported above.
            if _is_failed_template(error, config.templates, store):
                continue
            report.errors.append(error.message)
        return report

    @classmethod
    def from_document(cls, document: GatewayDocument) -> "AdminValidator":
        return cls(build_snapshot(build_config(document)))

    def _require_snapshot(self) -> GatewaySnapshot:
        if self.snapshot is None:
            raise ConfigError("no configuration loaded")
        return self.snapshot

    def test_template(self, template_id: str, sample_payload: Any) -> RenderedPayload:
        """Render a template against a sample payload. Raises RenderError."""
        snapshot = self._require_snapshot()
        context = RenderContext(payload=sample_payload)
        return snapshot.templates.render(template_id, context)

    def test_endpoint(self, path: str, sample_payload: Any, method: Optional[str] = None) -> RenderedPayload:
        """Render the template of the endpoint registered at path."""
        snapshot = self._require_snapshot()
        for endpoint in snapshot.registry.endpoints():
            if endpoint.path == path and (method is None or endpoint.method == method.upper()):
                context = RenderContext(payload=sample_payload, method=endpoint.method, path=endpoint.path)
                return snapshot.templates.render(endpoint.template, context)
        described = f"{method.upper()} {path}" if method else path
        raise ConfigError(f"endpoint '{described}' not found")

    def list_endpoints(self) -> List[Dict[str, Any]]:
        snapshot = self._require_snapshot()
        rows = []
        for endpoint in snapshot.registry.endpoints():
            for target in endpoint.targets:
                rows.append({
                    "method": endpoint.method,
                    "endpoint": endpoint.path,
                    "template": endpoint.template,
                    "target_method": target.method,
                    "url": target.url,
                })
        return rows


def _is_failed_template(error: ConfigError, sources: Dict[str, str], store: TemplateStore) -> bool:
    return any(
        template_id not in store and f"unknown template '{template_id}'" in error.message
        for template_id in sources
    )
