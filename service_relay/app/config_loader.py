"""
Loads the relay configuration document and builds the runtime snapshot.

The document is YAML with three sections: ``settings`` (process-wide
delivery defaults), ``templates`` (id -> jinja2 source) and ``endpoints``.
The older ``registers`` layout, with one inline template and a single
target per entry, is normalized into the same definitions.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hermes_shared.errors import ConfigError
from hermes_shared.logging import get_logger
from hermes_shared.retry import DEFAULT_RETRYABLE_STATUSES, RetryPolicy, parse_status_ranges

from .models import EndpointDefinition, TargetSpec
from .registry import EndpointRegistry
from .templates.store import TemplateStore

logger = get_logger("relay.config")

RESERVED_PATHS = ("/health", "/ready", "/metrics", "/debug")

StatusSpec = Union[str, int]


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RetrySection(_Section):
    attempts: Optional[int] = None
    delay_ms: Optional[float] = None
    backoff_multiplier: Optional[float] = None
    max_delay_ms: Optional[float] = None
    retry_on_status: Optional[List[StatusSpec]] = None
    retry_on_network_error: Optional[bool] = None
    retry_on_timeout: Optional[bool] = None


class TargetSection(_Section):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None


class EndpointSection(_Section):
    method: str = "POST"
    path: str
    template: str
    targets: List[TargetSection] = Field(default_factory=list)
    timeout_seconds: Optional[float] = None
    retry: Optional[RetrySection] = None


class LegacyRetrySection(_Section):
    attempts: int
    delay_ms: float
    backoff_multiplier: float = 1.0


class LegacyRegisterSection(_Section):
    endpoint: str
    method: str = "POST"
    target: TargetSection
    template: str
    retry_config: Optional[LegacyRetrySection] = None


class SettingsSection(_Section):
    retry_attempts: int = 3
    retry_delay_ms: float = 1000
    backoff_multiplier: float = 2.0
    max_backoff_ms: float = 30000
    retry_on_status: List[StatusSpec] = Field(default_factory=lambda: list(DEFAULT_RETRYABLE_STATUSES))
    retry_on_network_error: bool = True
    retry_on_timeout: bool = True
    enable_metrics: bool = False


class GatewayDocument(_Section):
    settings: SettingsSection = Field(default_factory=SettingsSection)
    templates: Dict[str, str] = Field(default_factory=dict)
    endpoints: List[EndpointSection] = Field(default_factory=list)
    registers: List[LegacyRegisterSection] = Field(default_factory=list)


@dataclass(frozen=True)
class GatewayConfig:
    """Normalized configuration: template sources plus endpoint definitions."""

    settings: SettingsSection
    default_retry: RetryPolicy
    templates: Dict[str, str]
    definitions: Tuple[EndpointDefinition, ...]

    @property
    def enable_metrics(self) -> bool:
        return self.settings.enable_metrics


@dataclass(frozen=True)
class GatewaySnapshot:
    """An immutable, fully validated view of the configuration."""

    config: GatewayConfig
    templates: TemplateStore
    registry: EndpointRegistry


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys, such as a template id defined twice."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                continue
            if duplicate:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping", node.start_mark,
                    f"found duplicate key '{key}'", key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _format_location(loc: Sequence[Any]) -> str:
    text = ""
    for part in loc:
        if isinstance(part, int):
            text += f"[{part}]"
        else:
            text += f".{part}" if text else str(part)
    return text or "document"


def parse_document(data: Any) -> GatewayDocument:
    """Validate the raw document shape."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("configuration document must be a mapping", entry="document")
    try:
        return GatewayDocument.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        raise ConfigError(
            first["msg"],
            entry=_format_location(first["loc"]),
            details={"errors": len(e.errors())}
        ) from e


def read_document(path: Union[str, Path]) -> GatewayDocument:
    """Read and parse a YAML configuration file."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read configuration file: {e}", entry=str(path)) from e
    try:
        data = yaml.load(content, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}", entry=str(path)) from e
    return parse_document(data)


def _default_policy(settings: SettingsSection) -> RetryPolicy:
    try:
        statuses = parse_status_ranges(settings.retry_on_status)
    except ValueError as e:
        raise ConfigError(str(e), entry="settings.retry_on_status") from e
    return RetryPolicy(
        max_attempts=settings.retry_attempts,
        base_delay=settings.retry_delay_ms / 1000.0,
        multiplier=settings.backoff_multiplier,
        max_delay=settings.max_backoff_ms / 1000.0,
        retry_on_network_error=settings.retry_on_network_error,
        retry_on_timeout=settings.retry_on_timeout,
        retryable_statuses=statuses,
    )


def _override_policy(base: RetryPolicy, section: RetrySection, entry: str) -> RetryPolicy:
    changes: Dict[str, Any] = {}
    if section.attempts is not None:
        changes["max_attempts"] = section.attempts
    if section.delay_ms is not None:
        changes["base_delay"] = section.delay_ms / 1000.0
    if section.backoff_multiplier is not None:
        changes["multiplier"] = section.backoff_multiplier
    if section.max_delay_ms is not None:
        changes["max_delay"] = section.max_delay_ms / 1000.0
    if section.retry_on_network_error is not None:
        changes["retry_on_network_error"] = section.retry_on_network_error
    if section.retry_on_timeout is not None:
        changes["retry_on_timeout"] = section.retry_on_timeout
    if section.retry_on_status is not None:
        try:
            changes["retryable_statuses"] = parse_status_ranges(section.retry_on_status)
        except ValueError as e:
            raise ConfigError(str(e), entry=f"{entry}.retry.retry_on_status") from e
    return dataclasses.replace(base, **changes)


def _target(section: TargetSection) -> TargetSpec:
    return TargetSpec(
        url=section.url,
        method=section.method.upper(),
        headers=dict(section.headers),
        timeout=section.timeout_seconds,
    )


def build_config(document: GatewayDocument) -> GatewayConfig:
    """Normalize a parsed document into endpoint definitions."""
    default_retry = _default_policy(document.settings)
    templates = dict(document.templates)
    definitions: List[EndpointDefinition] = []

    for index, endpoint in enumerate(document.endpoints):
        entry = f"endpoints[{index}]"
        retry = None
        if endpoint.retry is not None:
            retry = _override_policy(default_retry, endpoint.retry, entry)
        definitions.append(EndpointDefinition(
            method=endpoint.method.upper(),
            path=endpoint.path,
            targets=tuple(_target(t) for t in endpoint.targets),
            template=endpoint.template,
            timeout=endpoint.timeout_seconds,
            retry=retry,
            source=entry,
        ))

    for index, register in enumerate(document.registers):
        entry = f"registers[{index}]"
        template_id = f"register_{index}"
        if template_id in templates:
            raise ConfigError(
                f"template id '{template_id}' is reserved for inline register templates",
                entry=f"templates[{template_id}]"
            )
        templates[template_id] = register.template
        retry = None
        if register.retry_config is not None:
            retry = dataclasses.replace(
                default_retry,
                max_attempts=register.retry_config.attempts,
                base_delay=register.retry_config.delay_ms / 1000.0,
                multiplier=register.retry_config.backoff_multiplier,
            )
        definitions.append(EndpointDefinition(
            method=register.method.upper(),
            path=register.endpoint,
            targets=(_target(register.target),),
            template=template_id,
            retry=retry,
            source=entry,
        ))

    return GatewayConfig(
        settings=document.settings,
        default_retry=default_retry,
        templates=templates,
        definitions=tuple(definitions),
    )


def build_snapshot(config: GatewayConfig) -> GatewaySnapshot:
    """Compile every template and build the registry. Fails fast."""
    problem = config.default_retry.validate()
    if problem:
        raise ConfigError(problem, entry="settings")
    templates = TemplateStore.from_sources(config.templates)
    registry = EndpointRegistry.load(config.definitions, templates, reserved_paths=RESERVED_PATHS)
    logger.info(
        "Configuration loaded",
        endpoints=len(registry),
        templates=len(templates),
    )
    return GatewaySnapshot(config=config, templates=templates, registry=registry)


def load_gateway(path: Union[str, Path]) -> GatewaySnapshot:
    """Read, validate and compile a configuration file."""
    return build_snapshot(build_config(read_document(path)))
