"""
Endpoint registry: maps (method, path) to an endpoint definition.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx

from hermes_shared.errors import ConfigError

from .models import HTTP_METHODS, EndpointDefinition, TargetSpec
from .templates.store import TemplateStore


def _check_target(target: TargetSpec) -> Optional[str]:
    if target.method.upper() not in HTTP_METHODS:
        return f"invalid target method '{target.method}'"
    if not target.url:
        return "target URL cannot be empty"
    try:
        url = httpx.URL(target.url)
    except (httpx.InvalidURL, TypeError) as e:
        return f"invalid target URL '{target.url}': {e}"
    if url.scheme not in ("http", "https") or not url.host:
        return f"target URL '{target.url}' must be an absolute http(s) URL"
    if target.timeout is not None and target.timeout <= 0:
        return "target timeout must be positive"
    return None


class EndpointRegistry:
    """Immutable lookup table of configured endpoints."""

    def __init__(self, endpoints: Mapping[Tuple[str, str], EndpointDefinition]):
        self._endpoints = MappingProxyType(dict(endpoints))
        self._ordered = tuple(self._endpoints.values())

    @staticmethod
    def check(
        definitions: Iterable[EndpointDefinition],
        templates: TemplateStore,
        reserved_paths: Sequence[str] = (),
    ) -> List[ConfigError]:
        """Return every problem found in the definitions."""
        errors: List[ConfigError] = []
        seen: Dict[Tuple[str, str], str] = {}

        for index, definition in enumerate(definitions):
            entry = definition.entry_name() if definition.source else f"endpoints[{index}] ({definition.describe()})"

            if definition.method.upper() not in HTTP_METHODS:
                errors.append(ConfigError(f"invalid HTTP method '{definition.method}'", entry=entry))
            if not definition.path.startswith("/"):
                errors.append(ConfigError("endpoint path must start with '/'", entry=entry))
            elif definition.path in reserved_paths:
                errors.append(ConfigError(f"path '{definition.path}' is reserved", entry=entry))

            previous = seen.get(definition.key)
            if previous is not None:
                errors.append(ConfigError(f"duplicate endpoint, already defined by {previous}", entry=entry))
            else:
                seen[definition.key] = entry

            if not definition.targets:
                errors.append(ConfigError("endpoint must define at least one target", entry=entry))
            for position, target in enumerate(definition.targets):
                problem = _check_target(target)
                if problem:
                    errors.append(ConfigError(problem, entry=f"{entry} targets[{position}]"))

            if definition.template not in templates:
                errors.append(ConfigError(f"unknown template '{definition.template}'", entry=entry))
            if definition.timeout is not None and definition.timeout <= 0:
                errors.append(ConfigError("timeout must be positive", entry=entry))
            if definition.retry is not None:
                problem = definition.retry.validate()
                if problem:
                    errors.append(ConfigError(f"retry: {problem}", entry=entry))

        return errors

    @classmethod
    def load(
        cls,
        definitions: Iterable[EndpointDefinition],
        templates: TemplateStore,
        reserved_paths: Sequence[str] = (),
    ) -> "EndpointRegistry":
        """Build a registry, or raise ConfigError for the first invalid entry."""
        definitions = list(definitions)
        errors = cls.check(definitions, templates, reserved_paths)
        if errors:
            raise errors[0]
        return cls({definition.key: definition for definition in definitions})

    def lookup(self, method: str, path: str) -> Optional[EndpointDefinition]:
        return self._endpoints.get((method.upper(), path))

    def endpoints(self) -> Tuple[EndpointDefinition, ...]:
        return self._ordered

    def __len__(self) -> int:
        return len(self._endpoints)

    def __contains__(self, key: object) -> bool:
        return key in self._endpoints
