"""
Domain types shared by the registry, dispatcher and admin tooling.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from hermes_shared.retry import RetryPolicy

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")


@dataclass(frozen=True)
class TargetSpec:
    """One downstream destination for a rendered payload."""

    url: str
    method: str = "POST"
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None

    def describe(self) -> str:
        return f"{self.method} {self.url}"


@dataclass(frozen=True)
class EndpointDefinition:
    """A configured (method, path) webhook endpoint."""

    method: str
    path: str
    targets: Tuple[TargetSpec, ...]
    template: str
    timeout: Optional[float] = None
    retry: Optional[RetryPolicy] = None
    # Location in the source document, used in error messages.
    source: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.method.upper(), self.path)

    def describe(self) -> str:
        return f"{self.method.upper()} {self.path}"

    def entry_name(self) -> str:
        if self.source:
            return f"{self.source} ({self.describe()})"
        return self.describe()
