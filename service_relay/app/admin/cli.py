#!/usr/bin/env python3
"""
Administrative tools for the Hermes relay.

    hermes-admin validate-config [-c config.yml]
    hermes-admin test-template -e /webhook/github -p '{"repository": {"name": "demo"}}'
    hermes-admin list-endpoints [-c config.yml]

None of the commands send anything over the network.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from hermes_shared.errors import ConfigError, RenderError

from ..config_loader import read_document
from .validator import AdminValidator


def _default_config_path() -> Path:
    return Path(os.getenv("HERMES_CONFIG_PATH", "config.yml"))


def validate_config(config_path: Path) -> int:
    """Validate configuration file."""
    try:
        document = read_document(config_path)
    except ConfigError as e:
        print(f"❌ {e.message}")
        return 1

    report = AdminValidator.validate_config(document)
    if not report.valid:
        print(f"❌ Configuration has {len(report.errors)} error(s):")
        for error in report.errors:
            print(f"  - {error}")
        return 1

    print(
        f"✅ Configuration is valid "
        f"({report.endpoint_count} endpoints, {report.template_count} templates)"
    )
    return 0


def test_template(config_path: Path, endpoint: str, payload: str, method: Optional[str] = None) -> int:
    """Render an endpoint's template against a JSON payload."""
    try:
        sample = json.loads(payload)
    except json.JSONDecodeError as e:
        print(f"❌ Payload is not valid JSON: {e}")
        return 1

    try:
        validator = AdminValidator.from_document(read_document(config_path))
        rendered = validator.test_endpoint(endpoint, sample, method=method)
    except ConfigError as e:
        print(f"❌ {e.message}")
        return 1
    except RenderError as e:
        print(f"❌ Render failed ({e.template_id}): {e.message}")
        return 1

    print("📝 Template rendered successfully:")
    print(json.dumps(rendered.body, indent=2, ensure_ascii=False))
    print("✅ Rendered output is valid JSON")
    return 0


def list_endpoints(config_path: Path) -> int:
    """List all registered endpoints."""
    try:
        validator = AdminValidator.from_document(read_document(config_path))
    except ConfigError as e:
        print(f"❌ {e.message}")
        return 1

    print("📋 Registered webhook endpoints:")
    print(f"{'METHOD':<8} {'ENDPOINT':<30} {'TARGET':<8} URL")
    print("-" * 80)
    for row in validator.list_endpoints():
        print(f"{row['method']:<8} {row['endpoint']:<30} {row['target_method']:<8} {row['url']}")
    return 0


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="hermes-admin", description="Administrative tools for the Hermes relay.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_config_arg(sub: argparse.ArgumentParser):
        sub.add_argument("-c", "--config", type=Path, default=_default_config_path(), help="Path to configuration file")

    validate = subparsers.add_parser("validate-config", help="Validate configuration file")
    add_config_arg(validate)

    render = subparsers.add_parser("test-template", help="Test webhook template rendering")
    add_config_arg(render)
    render.add_argument("-e", "--endpoint", required=True, help="Endpoint path to test")
    render.add_argument("-p", "--payload", required=True, help="JSON payload to test with")
    render.add_argument("-m", "--method", default=None, help="Endpoint method, when a path has several")

    listing = subparsers.add_parser("list-endpoints", help="List all registered endpoints")
    add_config_arg(listing)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.command == "validate-config":
        return validate_config(args.config)
    if args.command == "test-template":
        return test_template(args.config, args.endpoint, args.payload, args.method)
    return list_endpoints(args.config)


if __name__ == "__main__":
    sys.exit(main())
