"""
Template compilation and rendering.

Templates are jinja2 sources that must render to a JSON document. They run
in an immutable sandbox with strict undefined handling: a template can read
the request context but never mutate it, and any reference to a missing
field fails the render instead of producing an empty string.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from jinja2 import StrictUndefined, Template, TemplateSyntaxError
from jinja2.exceptions import TemplateRuntimeError, UndefinedError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from hermes_shared.errors import RenderError, TemplateError

_MISSING = object()

# Names accepted by field(path, type).
FIELD_TYPES: Dict[str, Any] = {
    "str": str,
    "string": str,
    "int": int,
    "integer": int,
    "float": float,
    "number": (int, float),
    "bool": bool,
    "boolean": bool,
    "list": list,
    "array": list,
    "object": dict,
    "dict": dict,
}


@dataclass(frozen=True)
class RenderContext:
    """The inbound payload plus request metadata exposed to templates.

    Template variables:

    * top-level keys of an object payload (a non-object payload is ``data``)
    * ``payload``: the whole payload
    * ``request``: ``method``, ``path``, ``headers`` (lower-cased names), ``query``

    ``payload`` and ``request`` take precedence over payload keys of the
    same name.
    """

    payload: Any = None
    method: str = "POST"
    path: str = "/"
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)

    def request_metadata(self) -> Dict[str, Any]:
        return {
            "method": self.method.upper(),
            "path": self.path,
            "headers": {k.lower(): v for k, v in self.headers.items()},
            "query": dict(self.query),
        }

    def variables(self) -> Dict[str, Any]:
        if isinstance(self.payload, dict):
            variables = dict(self.payload)
        else:
            variables = {"data": self.payload}
        variables["payload"] = self.payload
        variables["request"] = self.request_metadata()
        return variables

    def lookup(self, path: str, expected: Optional[str] = None) -> Any:
        """Resolve a dotted path such as ``repository.owner.login`` or ``commits.0.id``.

        Raises LookupError on a missing field and TypeError on a shape or
        type mismatch.
        """
        current: Any = self.variables()
        walked = []
        for part in path.split("."):
            if isinstance(current, dict):
                current = current.get(part, _MISSING)
            elif isinstance(current, list):
                if not part.lstrip("-").isdigit():
                    raise TypeError(f"'{'.'.join(walked)}' is a list, cannot read '{part}'")
                index = int(part)
                current = current[index] if -len(current) <= index < len(current) else _MISSING
            else:
                where = ".".join(walked) or "context"
                raise TypeError(f"'{where}' is a {type(current).__name__}, cannot read '{part}'")
            walked.append(part)
            if current is _MISSING:
                raise LookupError(f"missing field '{'.'.join(walked)}'")

        if expected is not None:
            wanted = FIELD_TYPES.get(expected)
            if wanted is None:
                raise TypeError(f"unknown field type '{expected}'")
            # bool is an int subclass; a number field never accepts a boolean.
            if isinstance(current, bool) and bool not in _as_tuple(wanted):
                raise TypeError(f"field '{path}' is a bool, expected {expected}")
            if not isinstance(current, wanted):
                raise TypeError(f"field '{path}' is a {type(current).__name__}, expected {expected}")
        return current


def _reject_constant(name: str) -> Any:
    raise ValueError(f"'{name}' is not valid JSON")


def parse_json(data: Union[str, bytes]) -> Any:
    """Strict JSON parse: NaN and Infinity are rejected."""
    return json.loads(data, parse_constant=_reject_constant)


def _as_tuple(value: Any) -> tuple:
    return value if isinstance(value, tuple) else (value,)


@dataclass(frozen=True)
class RenderedPayload:
    """Output of a successful render."""

    template_id: str
    text: str
    body: Any

    @property
    def content(self) -> bytes:
        return json.dumps(self.body, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


class _FieldAccessor:
    """The ``field(path, type)`` template global."""

    def __init__(self, context: RenderContext, template_id: str):
        self._context = context
        self._template_id = template_id

    def __call__(self, path: str, expected: Optional[str] = None) -> Any:
        try:
            return self._context.lookup(path, expected)
        except (LookupError, TypeError) as e:
            raise RenderError(self._template_id, str(e)) from e


class TemplateStore:
    """Named, pre-compiled templates. Read-only once sealed."""

    def __init__(self):
        self._env = ImmutableSandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._templates: Dict[str, Template] = {}
        self._sources: Dict[str, str] = {}
        self._sealed = False

    @classmethod
    def from_sources(cls, sources: Mapping[str, str]) -> "TemplateStore":
        """Compile every template, failing on the first error, then seal."""
        store = cls()
        for template_id, source in sources.items():
            store.compile(template_id, source)
        store.seal()
        return store

    def compile(self, template_id: str, source: str) -> None:
        if self._sealed:
            raise TemplateError(template_id, "template store is sealed")
        if not template_id:
            raise TemplateError(template_id, "template id must not be empty")
        if template_id in self._templates:
            raise TemplateError(template_id, "duplicate template id")
        if not isinstance(source, str) or not source.strip():
            raise TemplateError(template_id, "template source is empty")
        try:
            compiled = self._env.from_string(source)
        except TemplateSyntaxError as e:
            raise TemplateError(template_id, f"syntax error on line {e.lineno}: {e.message}") from e
        self._templates[template_id] = compiled
        self._sources[template_id] = source

    def seal(self) -> None:
        self._sealed = True
        self._templates = MappingProxyType(self._templates)  # type: ignore[assignment]
        self._sources = MappingProxyType(self._sources)  # type: ignore[assignment]

    @property
    def sealed(self) -> bool:
        return self._sealed

    def render(self, template_id: str, context: RenderContext) -> RenderedPayload:
        template = self._templates.get(template_id)
        if template is None:
            raise RenderError(template_id, f"unknown template '{template_id}'")

        variables = context.variables()
        variables["field"] = _FieldAccessor(context, template_id)
        try:
            text = template.render(variables)
        except RenderError:
            raise
        except UndefinedError as e:
            raise RenderError(template_id, f"undefined field: {e.message}") from e
        except (TypeError, ValueError, LookupError, AttributeError, ArithmeticError, TemplateRuntimeError) as e:
            raise RenderError(template_id, f"{type(e).__name__}: {e}") from e

        try:
            body = parse_json(text)
        except ValueError as e:
            raise RenderError(template_id, f"rendered output is not valid JSON: {e}") from e
        return RenderedPayload(template_id=template_id, text=text, body=body)

    def has(self, template_id: str) -> bool:
        return template_id in self._templates

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def ids(self) -> Iterator[str]:
        return iter(self._templates)

    def source(self, template_id: str) -> Optional[str]:
        return self._sources.get(template_id)
