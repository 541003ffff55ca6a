"""
Unit tests for the hermes-admin command line.
"""

import json
import textwrap

import pytest

from service_relay.app.admin.cli import main

CONFIG_YAML = """
templates:
  github: |
    {"text": "Push to {{ repository.name }}"}
endpoints:
  - path: /webhook/github
    template: github
    targets:
      - url: https://hooks.slack.example.com/T1
      - url: https://discord.example.com/api/1
        method: PUT
"""

BROKEN_YAML = """
templates:
  github: '{"text": {{ name }'
endpoints:
  - path: /webhook/github
    template: github
    targets: []
"""


class TestAdminCli:
    """Test cases for the admin CLI."""

    @pytest.fixture
    def config_path(self, tmp_path):
        """Valid configuration file."""
        path = tmp_path / "config.yml"
        path.write_text(textwrap.dedent(CONFIG_YAML))
        return path

    @pytest.fixture
    def broken_path(self, tmp_path):
        """Invalid configuration file."""
        path = tmp_path / "broken.yml"
        path.write_text(textwrap.dedent(BROKEN_YAML))
        return path

    def test_validate_config_ok(self, config_path, capsys):
        """Test a valid file exits 0."""
        assert main(["validate-config", "-c", str(config_path)]) == 0
        out = capsys.readouterr().out
        assert "Configuration is valid" in out
        assert "1 endpoints" in out

    def test_validate_config_errors(self, broken_path, capsys):
        """Test that every error is printed and the exit code is 1."""
        assert main(["validate-config", "--config", str(broken_path)]) == 1
        out = capsys.readouterr().out
        assert "2 error(s)" in out
        assert "templates[github]" in out
        assert "at least one target" in out

    def test_validate_config_missing_file(self, tmp_path, capsys):
        """Test that an unreadable file exits 1."""
        assert main(["validate-config", "-c", str(tmp_path / "absent.yml")]) == 1
        assert "cannot read configuration file" in capsys.readouterr().out

    def test_validate_config_uses_env_default(self, config_path, monkeypatch, capsys):
        """Test that HERMES_CONFIG_PATH supplies the default path."""
        monkeypatch.setenv("HERMES_CONFIG_PATH", str(config_path))
        assert main(["validate-config"]) == 0

    def test_test_template(self, config_path, capsys):
        """Test rendering an endpoint's template."""
        payload = json.dumps({"repository": {"name": "hermes"}})
        code = main(["test-template", "-c", str(config_path), "-e", "/webhook/github", "-p", payload])

        out = capsys.readouterr().out
        assert code == 0
        assert '"text": "Push to hermes"' in out
        assert "valid JSON" in out

    def test_test_template_render_error(self, config_path, capsys):
        """Test that a render failure exits 1."""
        code = main(["test-template", "-c", str(config_path), "-e", "/webhook/github", "-p", "{}"])
        assert code == 1
        assert "Render failed (github)" in capsys.readouterr().out

    def test_test_template_invalid_payload(self, config_path, capsys):
        """Test that a payload which is not JSON exits 1."""
        code = main(["test-template", "-c", str(config_path), "-e", "/webhook/github", "-p", "{nope"])
        assert code == 1
        assert "not valid JSON" in capsys.readouterr().out

    def test_test_template_unknown_endpoint(self, config_path, capsys):
        """Test that an unknown endpoint exits 1."""
        code = main(["test-template", "-c", str(config_path), "-e", "/nope", "-p", "{}"])
        assert code == 1
        assert "not found" in capsys.readouterr().out

    def test_list_endpoints(self, config_path, capsys):
        """Test the endpoint table has one row per target."""
        assert main(["list-endpoints", "-c", str(config_path)]) == 0
        lines = capsys.readouterr().out.splitlines()
        header = next(i for i, line in enumerate(lines) if line.startswith("METHOD"))

        assert lines[header].split() == ["METHOD", "ENDPOINT", "TARGET", "URL"]
        rows = [line.split() for line in lines[header + 2:]]
        assert rows == [
            ["POST", "/webhook/github", "POST", "https://hooks.slack.example.com/T1"],
            ["POST", "/webhook/github", "PUT", "https://discord.example.com/api/1"],
        ]

    def test_list_endpoints_invalid_config(self, broken_path):
        """Test that listing a broken configuration exits 1."""
        assert main(["list-endpoints", "-c", str(broken_path)]) == 1
