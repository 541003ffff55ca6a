"""
Webhook relay service package for Hermes.

The relay accepts webhooks on configured endpoints, enforcing:
- Routing: exact (method, path) lookup in an immutable registry
- Admission: a gateway-wide concurrency bound with immediate rejection
- Rendering: sandboxed jinja2 templates that must produce JSON
- Delivery: independent per-target retries under a request deadline

Structure:
- app.main: FastAPI app, catch-all route and lifecycle wiring.
- app.config_loader: YAML document parsing and snapshot building.
- app.templates: Template store and render context.
- app.dispatch: Fan-out delivery with retry.
- app.ratelimit: Concurrency limiter.
- app.admin: Offline validation and the admin CLI.
"""
