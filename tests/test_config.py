"""Tests for actiongate.config — actiongate.yaml and environment overrides."""

import textwrap

import pytest

from actiongate.config import load_settings, resolve_project_dir
from actiongate.errors import GateReason, GateSettingsError


def _write_settings(project, text, name="actiongate.yaml"):
    path = project / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


class TestDefaults:

    def test_defaults_without_settings_file(self, project):
        settings = load_settings(project_dir=project)
        root = project.resolve()
        assert settings.project_dir == root
        assert settings.key_path == root / ".claude" / "protection-key"
        assert settings.policy_path == root / ".claude" / "hooks" / "protected-actions.json"
        assert settings.ledger_path == root / ".claude" / "protected-action-approvals.json"
        assert settings.approval_ttl_seconds == 300
        assert settings.default_protect is True
        assert settings.tool_prefix == "mcp"
        assert settings.escalation.type == "log"
        assert settings.source is None

    def test_project_dir_from_environment(self, tmp_path):
        env = {"CLAUDE_PROJECT_DIR": str(tmp_path)}
        assert resolve_project_dir(env) == tmp_path.resolve()
        env["ACTIONGATE_PROJECT_DIR"] = str(tmp_path / "other")
        assert resolve_project_dir(env) == (tmp_path / "other").resolve()

    def test_path_overrides_from_environment(self, project, tmp_path):
        env = {
            "ACTIONGATE_PROJECT_DIR": str(project),
            "ACTIONGATE_KEY_PATH": str(tmp_path / "keys" / "k"),
            "ACTIONGATE_LEDGER_PATH": "state/ledger.json",
        }
        settings = load_settings(environ=env)
        assert settings.key_path == tmp_path / "keys" / "k"
        assert settings.ledger_path == project.resolve() / "state" / "ledger.json"


class TestSettingsFile:

    def test_reads_yaml(self, project):
        path = _write_settings(project, """\
            approval_ttl_seconds: 120
            default_protect: false
            tool_prefix: plugin
            escalation:
              type: queue
        """)
        settings = load_settings(project_dir=project)
        assert settings.source == path
        assert settings.approval_ttl_seconds == 120
        assert settings.default_protect is False
        assert settings.tool_prefix == "plugin"
        assert settings.escalation.type == "queue"
        assert settings.escalation.queue_path == project.resolve() / ".claude" / "review-queue.json"

    def test_claude_dir_location(self, project):
        _write_settings(project, "approval_ttl_seconds: 60\n", ".claude/actiongate.yaml")
        assert load_settings(project_dir=project).approval_ttl_seconds == 60

    def test_unknown_field_warns(self, project, caplog):
        _write_settings(project, "approval_ttl: 60\n")
        with caplog.at_level("WARNING", logger="actiongate.config"):
            load_settings(project_dir=project)
        assert "approval_ttl" in caplog.text

    @pytest.mark.parametrize("body, match", [
        ("approval_ttl_seconds: 0\n", "positive"),
        ("approval_ttl_seconds: true\n", "positive"),
        ("default_protect: 'no'\n", "true or false"),
        ("tool_prefix: a__b\n", "tool_prefix"),
        ("escalation:\n  type: email\n", "escalation.type"),
        ("escalation:\n  type: webhook\n", "escalation.url"),
        ("escalation:\n  type: callback\n", "handler"),
        ("escalation:\n  type: [queue]\n", "escalation.type"),
        ("escalation:\n  type: {name: log}\n", "escalation.type"),
        ("escalation:\n  type: webhook\n  url: [x]\n", "escalation.url"),
        ("escalation:\n  type: queue\n  queue_path: {a: 1}\n", "escalation.queue_path"),
        ("? [a, b]\n: 1\n", "Invalid settings"),
        ("- just\n- a list\n", "mapping"),
        ("key: [unclosed\n", "Invalid settings"),
        ("default_protect: true\ndefault_protect: false\n", "Duplicate"),
    ])
    def test_invalid_settings(self, project, body, match):
        _write_settings(project, body)
        with pytest.raises(GateSettingsError, match=match) as exc_info:
            load_settings(project_dir=project)
        assert exc_info.value.reason is GateReason.CONFIG_CORRUPT
