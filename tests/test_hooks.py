"""Tests for actiongate.hooks — the gate and confirm process entry points.

The hooks are driven in-process through ``run_gate`` / ``run_confirm`` with
an explicit environment, stdin and stderr; exit codes are the whole
contract with the host.
"""

import io
import json
import re

import pytest

from actiongate.hooks import EXIT_ALLOW, EXIT_BLOCK, run_confirm, run_gate

from conftest import write_policy

CODE_RE = re.compile(r"APPROVE DB ([A-Z0-9]{6})")


def _gate(env, tool_name=None, tool_input=None, stdin_text=""):
    env = dict(env)
    if tool_name is not None:
        env["ACTIONGATE_TOOL_NAME"] = tool_name
    if tool_input is not None:
        env["ACTIONGATE_TOOL_INPUT"] = tool_input
    stderr = io.StringIO()
    code = run_gate(environ=env, stdin=io.StringIO(stdin_text), stderr=stderr)
    return code, stderr.getvalue()


def _confirm(env, prompt=None, stdin_text=""):
    env = dict(env)
    if prompt is not None:
        env["ACTIONGATE_USER_PROMPT"] = prompt
    stderr = io.StringIO()
    code = run_confirm(environ=env, stdin=io.StringIO(stdin_text), stderr=stderr)
    return code, stderr.getvalue()


class TestGateHook:

    def test_builtin_tool_allowed_silently(self, project_env):
        code, err = _gate(project_env, "Bash", '{"command": "ls"}')
        assert code == EXIT_ALLOW
        assert err == ""

    def test_protected_call_blocked_with_challenge(self, project_env):
        code, err = _gate(project_env, "mcp__db__drop_table", '{"table": "users"}')
        assert code == EXIT_BLOCK
        assert CODE_RE.search(err)
        assert "expires in 5 minutes" in err
        assert all(line.startswith("[ACTIONGATE]") for line in err.splitlines())

    def test_full_approval_flow(self, project_env):
        """Block, approve via the confirm hook, allow once, block again."""
        code, err = _gate(project_env, "mcp__db__drop_table", "{}")
        assert code == EXIT_BLOCK
        approval = CODE_RE.search(err).group(0)

        code, err = _confirm(project_env, f"ok go ahead\n{approval}")
        assert code == EXIT_ALLOW
        assert "PROTECTED ACTION APPROVED" in err

        code, err = _gate(project_env, "mcp__db__drop_table", "{}")
        assert code == EXIT_ALLOW
        assert "one-time use" in err

        code, _ = _gate(project_env, "mcp__db__drop_table", "{}")
        assert code == EXIT_BLOCK

    def test_stdin_payload(self, configured_project):
        payload = {
            "tool_name": "mcp__db__drop_table",
            "tool_input": {"table": "users"},
            "cwd": str(configured_project),
        }
        code, err = _gate({}, stdin_text=json.dumps(payload))
        assert code == EXIT_BLOCK
        assert CODE_RE.search(err)

    def test_unreadable_payload_blocks(self, project_env):
        code, err = _gate(project_env, stdin_text="not json")
        assert code == EXIT_BLOCK
        assert "unreadable hook payload" in err

    def test_missing_tool_name_blocks(self, project_env):
        code, _ = _gate(project_env)
        assert code == EXIT_BLOCK

    def test_missing_key_blocks_and_escalates(self, project_env, configured_project):
        (configured_project / ".claude" / "protection-key").unlink()
        (configured_project / "actiongate.yaml").write_text("escalation:\n  type: queue\n")

        code, err = _gate(project_env, "mcp__db__drop_table", "{}")
        assert code == EXIT_BLOCK
        assert "actiongate keygen" in err

        queue = json.loads((configured_project / ".claude" / "review-queue.json").read_text())
        assert queue["items"][0]["reason"] == "key_missing"
        assert not (configured_project / ".claude" / "protection-key").exists()

    def test_corrupt_ledger_blocks(self, project_env, configured_project):
        ledger = configured_project / ".claude" / "protected-action-approvals.json"
        ledger.write_text("{ corrupt")
        code, err = _gate(project_env, "mcp__db__drop_table", "{}")
        assert code == EXIT_BLOCK
        assert "ledger" in err
        assert ledger.read_text() == "{ corrupt"

    def test_invalid_settings_still_allow_builtins(self, project_env, configured_project):
        (configured_project / "actiongate.yaml").write_text("approval_ttl_seconds: -1\n")
        assert _gate(project_env, "Read")[0] == EXIT_ALLOW
        code, err = _gate(project_env, "mcp__db__drop_table")
        assert code == EXIT_BLOCK
        assert "settings invalid" in err

    def test_non_string_settings_values_fail_closed(self, project_env, configured_project):
        """Wrong-typed settings never crash the hook."""
        (configured_project / "actiongate.yaml").write_text("escalation:\n  type: [a]\n")
        assert _gate(project_env, "Bash")[0] == EXIT_ALLOW
        code, err = _gate(project_env, "mcp__db__drop_table")
        assert code == EXIT_BLOCK
        assert "escalation.type" in err

    def test_wrong_typed_policy_value_blocks(self, project_env, configured_project):
        write_policy(configured_project, {
            "servers": {"db": {"phrase": "APPROVE DB", "protection": []}},
        })
        assert _gate(project_env, "Bash")[0] == EXIT_ALLOW
        code, err = _gate(project_env, "mcp__db__drop_table")
        assert code == EXIT_BLOCK
        assert "protection" in err

    def test_other_provider_blocked(self, project_env):
        code, err = _gate(project_env, "plugin__db__drop_table", "{}")
        assert code == EXIT_BLOCK
        assert "Unrecognized tool provider" in err

    def test_unexpected_settings_error(self, project_env, monkeypatch):
        def explode(**kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr("actiongate.hooks.load_settings", explode)
        assert _gate(project_env, "Bash")[0] == EXIT_ALLOW
        code, err = _gate(project_env, "mcp__db__drop_table")
        assert code == EXIT_BLOCK
        assert "internal error while loading gate settings" in err

    def test_payload_with_duplicate_keys_blocks(self, project_env):
        payload = '{"tool_name": "Bash", "tool_name": "mcp__db__drop_table"}'
        code, err = _gate(project_env, stdin_text=payload)
        assert code == EXIT_BLOCK
        assert "Duplicate JSON key" in err

    def test_unknown_server_blocked(self, project_env):
        code, err = _gate(project_env, "mcp__shadow__anything")
        assert code == EXIT_BLOCK
        assert "Unrecognized server" in err

    def test_no_policy_blocks(self, project):
        code, _ = _gate({"ACTIONGATE_PROJECT_DIR": str(project)}, "mcp__db__x")
        assert code == EXIT_BLOCK

    def test_internal_error_blocks(self, project_env, monkeypatch):
        def explode(self, tool_name, raw_args):
            raise RuntimeError("unexpected")

        monkeypatch.setattr("actiongate.hooks.GateEnforcer.check", explode)
        code, err = _gate(project_env, "mcp__db__drop_table")
        assert code == EXIT_BLOCK
        assert "internal gate error" in err


class TestConfirmHook:

    def test_ordinary_prompt_passes_silently(self, project_env):
        code, err = _confirm(project_env, "please drop the users table")
        assert code == EXIT_ALLOW
        assert err == ""

    def test_rejection_is_reported_but_prompt_passes(self, project_env):
        code, err = _confirm(project_env, "APPROVE DB ZZZZZZ")
        assert code == EXIT_ALLOW
        assert "Approval rejected" in err

    def test_stdin_prompt(self, project_env, configured_project):
        _, err = _gate(project_env, "mcp__db__drop_table")
        approval = CODE_RE.search(err).group(0)
        payload = {"prompt": approval, "cwd": str(configured_project)}
        code, err = _confirm({}, stdin_text=json.dumps(payload))
        assert code == EXIT_ALLOW
        assert "PROTECTED ACTION APPROVED" in err

    def test_empty_stdin(self, project_env):
        assert _confirm(project_env)[0] == EXIT_ALLOW

    def test_internal_error_exit_code(self, project_env, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr("actiongate.hooks.process_confirmation", explode)
        code, err = _confirm(project_env, "APPROVE DB ABCDEF")
        assert code == 1
        assert "internal error" in err


@pytest.fixture()
def corrupt_policy_env(project):
    write_policy(project, "{ broken")
    return {"ACTIONGATE_PROJECT_DIR": str(project)}


def test_corrupt_policy_blocks(corrupt_policy_env):
    code, err = _gate(corrupt_policy_env, "mcp__db__drop_table")
    assert code == EXIT_BLOCK
    assert "not valid JSON" in err
