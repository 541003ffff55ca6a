"""
Unit tests for template compilation and rendering.
"""

import pytest

from hermes_shared.errors import RenderError, TemplateError
from service_relay.app.templates import RenderContext, TemplateStore

GITHUB_TEMPLATE = """
{
  "text": "Push to {{ repository.name }} by {{ pusher.name }}",
  "commits": {{ field("commits", "list") | length }},
  "ref": {{ ref | tojson }}
}
"""


class TestTemplateStore:
    """Test cases for TemplateStore."""

    @pytest.fixture
    def store(self):
        """Create a sealed store with a few templates."""
        return TemplateStore.from_sources({
            "github": GITHUB_TEMPLATE,
            "echo": '{"payload": {{ payload | tojson }}}',
            "request": '{"method": "{{ request.method }}", "path": "{{ request.path }}", '
                       '"agent": {{ request.headers["user-agent"] | tojson }}}',
            "typed": '{"count": {{ field("count", "int") }}}',
            "broken_json": '{"text": {{ message }}}',
        })

    @pytest.fixture
    def push_context(self):
        """Render context for a GitHub-style push event."""
        return RenderContext(
            payload={
                "ref": "refs/heads/main",
                "repository": {"name": "hermes"},
                "pusher": {"name": "octo"},
                "commits": [{"id": "a1"}, {"id": "b2"}],
            },
            method="POST",
            path="/webhook/github",
        )

    def test_render_success(self, store, push_context):
        """Test rendering a payload into JSON."""
        rendered = store.render("github", push_context)

        assert rendered.template_id == "github"
        assert rendered.body == {
            "text": "Push to hermes by octo",
            "commits": 2,
            "ref": "refs/heads/main",
        }
        assert rendered.content == b'{"text":"Push to hermes by octo","commits":2,"ref":"refs/heads/main"}'

    def test_render_is_deterministic(self, store, push_context):
        """Test that the same input renders identically."""
        first = store.render("github", push_context)
        second = store.render("github", push_context)
        assert first.text == second.text

    def test_render_whole_payload(self, store, push_context):
        """Test the payload variable exposes the whole body."""
        rendered = store.render("echo", push_context)
        assert rendered.body["payload"]["repository"] == {"name": "hermes"}

    def test_render_request_metadata(self, store):
        """Test request metadata is available with lower-cased header names."""
        context = RenderContext(
            payload={},
            method="post",
            path="/hooks",
            headers={"User-Agent": "curl/8"},
        )
        rendered = store.render("request", context)
        assert rendered.body == {"method": "POST", "path": "/hooks", "agent": "curl/8"}

    def test_missing_field_fails(self, store):
        """Test that a missing field fails the render instead of rendering empty."""
        context = RenderContext(payload={"repository": {"name": "hermes"}})
        with pytest.raises(RenderError) as exc_info:
            store.render("github", context)
        assert exc_info.value.template_id == "github"

    def test_field_type_mismatch_fails(self, store):
        """Test the typed accessor rejects the wrong type."""
        with pytest.raises(RenderError) as exc_info:
            store.render("typed", RenderContext(payload={"count": "three"}))
        assert "expected int" in exc_info.value.message

    def test_field_rejects_bool_for_number(self, store):
        """Test that a boolean is not accepted as an int."""
        with pytest.raises(RenderError):
            store.render("typed", RenderContext(payload={"count": True}))

    def test_non_json_output_fails(self, store):
        """Test that output which is not JSON is a render error."""
        with pytest.raises(RenderError) as exc_info:
            store.render("broken_json", RenderContext(payload={"message": "hello world"}))
        assert "not valid JSON" in exc_info.value.message

    def test_division_by_zero_fails(self):
        """Test that arithmetic errors from payload data are render errors."""
        store = TemplateStore.from_sources({"ratio": '{"x": {{ a / b }}}'})
        with pytest.raises(RenderError) as exc_info:
            store.render("ratio", RenderContext(payload={"a": 1, "b": 0}))
        assert "ZeroDivisionError" in exc_info.value.message

    def test_oversized_range_fails(self):
        """Test that the sandbox range limit is a render error."""
        store = TemplateStore.from_sources({"range": '{"n": {{ range(count) | length }}}'})
        with pytest.raises(RenderError):
            store.render("range", RenderContext(payload={"count": 10 ** 6}))

    def test_nan_output_fails(self):
        """Test that NaN in rendered output is not accepted as JSON."""
        store = TemplateStore.from_sources({"nan": '{"v": NaN}'})
        with pytest.raises(RenderError) as exc_info:
            store.render("nan", RenderContext(payload={}))
        assert "not valid JSON" in exc_info.value.message

    def test_unknown_template(self, store, push_context):
        """Test rendering an id that was never compiled."""
        with pytest.raises(RenderError):
            store.render("missing", push_context)

    def test_non_object_payload(self):
        """Test that a list payload is exposed as data."""
        store = TemplateStore.from_sources({"list": '{"first": {{ data[0] | tojson }}}'})
        rendered = store.render("list", RenderContext(payload=["a", "b"]))
        assert rendered.body == {"first": "a"}

    def test_sandbox_blocks_mutation(self):
        """Test that templates cannot mutate the context."""
        store = TemplateStore.from_sources({"mutate": '{"x": {{ items.append(1) }}}'})
        payload = {"items": []}
        with pytest.raises(RenderError):
            store.render("mutate", RenderContext(payload=payload))
        assert payload["items"] == []

    def test_introspection(self, store):
        """Test ids, membership and stored source."""
        assert len(store) == 5
        assert "github" in store
        assert store.has("echo")
        assert "missing" not in store
        assert store.source("github") == GITHUB_TEMPLATE
        assert store.sealed


class TestTemplateCompilation:
    """Test cases for template compile failures."""

    def test_syntax_error(self):
        """Test that a syntax error fails compilation with the template id."""
        with pytest.raises(TemplateError) as exc_info:
            TemplateStore.from_sources({"bad": '{"x": {{ name }'})
        assert exc_info.value.template_id == "bad"
        assert "templates[bad]" in exc_info.value.message

    def test_empty_source(self):
        """Test that an empty template is rejected."""
        with pytest.raises(TemplateError):
            TemplateStore.from_sources({"empty": "   "})

    def test_duplicate_id(self):
        """Test that an id cannot be compiled twice."""
        store = TemplateStore()
        store.compile("one", '{"a": 1}')
        with pytest.raises(TemplateError):
            store.compile("one", '{"a": 2}')

    def test_sealed_store_rejects_compile(self):
        """Test that a sealed store is read-only."""
        store = TemplateStore.from_sources({"one": '{"a": 1}'})
        with pytest.raises(TemplateError):
            store.compile("two", '{"b": 2}')


class TestRenderContext:
    """Test cases for RenderContext lookups."""

    @pytest.fixture
    def context(self):
        """Context with nested objects and lists."""
        return RenderContext(payload={
            "repository": {"owner": {"login": "octo"}},
            "commits": [{"id": "a1"}, {"id": "b2"}],
            "payload": "shadowed",
        })

    def test_nested_lookup(self, context):
        """Test dotted path lookup."""
        assert context.lookup("repository.owner.login") == "octo"

    def test_list_index_lookup(self, context):
        """Test list indexes in a path."""
        assert context.lookup("commits.1.id") == "b2"
        assert context.lookup("commits.-1.id") == "b2"

    def test_missing_lookup(self, context):
        """Test that a missing key raises LookupError."""
        with pytest.raises(LookupError):
            context.lookup("repository.name")
        with pytest.raises(LookupError):
            context.lookup("commits.5")

    def test_shape_mismatch(self, context):
        """Test reading a key from a scalar raises TypeError."""
        with pytest.raises(TypeError):
            context.lookup("repository.owner.login.first")

    def test_reserved_names_take_precedence(self, context):
        """Test payload and request win over payload keys of the same name."""
        variables = context.variables()
        assert variables["payload"] is context.payload
        assert variables["request"]["method"] == "POST"
