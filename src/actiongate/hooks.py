"""
Process entry points run by the agent host.

``actiongate-gate`` runs before every tool call::

    ACTIONGATE_TOOL_NAME=mcp__db__drop_table \\
    ACTIONGATE_TOOL_INPUT='{"table": "users"}' \\
    ACTIONGATE_PROJECT_DIR=/path/to/project actiongate-gate

Exit status is the whole decision: ``0`` allows the call, ``2`` blocks it.
Diagnostics go to stderr; stdout is never written.

``actiongate-confirm`` runs on every prompt the human submits
(``ACTIONGATE_USER_PROMPT``). It exits ``0`` so the prompt itself is never
held back, or ``1`` if processing crashed; approval results go to stderr.

When the environment variables are absent, both read the host's JSON hook
payload from stdin (``tool_name`` / ``tool_input`` / ``prompt`` / ``cwd``).
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO, Any, Mapping, Optional

from .config import ENV_HOST_PROJECT_DIR, ENV_PROJECT_DIR, GateSettings, load_settings
from .confirm import process_confirmation
from .errors import ActionGateError, GateReason
from .escalation import escalate
from .gate import GateDecision, GateEnforcer
from .keystore import ProtectionKeyStore
from .ledger import JsonFileLedgerStore
from .policy import load_policy_document
from .utils.safe_json import safe_json_loads

logger = logging.getLogger("actiongate.hooks")

EXIT_ALLOW = 0
EXIT_BLOCK = 2
EXIT_ERROR = 1

ENV_TOOL_NAME = "ACTIONGATE_TOOL_NAME"
ENV_TOOL_INPUT = "ACTIONGATE_TOOL_INPUT"
ENV_USER_PROMPT = "ACTIONGATE_USER_PROMPT"

_PREFIX = "[ACTIONGATE]"


def _emit(stream: IO[str], text: str) -> None:
    for line in text.splitlines() or [""]:
        print(f"{_PREFIX} {line}", file=stream, flush=True)


def _read_payload(stdin: IO[str]) -> dict:
    """Decode the host's JSON hook payload. Empty or tty stdin yields ``{}``.

    Raises:
        ValueError: If stdin holds something other than a JSON object.
    """
    if stdin.isatty():
        return {}
    text = stdin.read()
    if not text.strip():
        return {}
    payload = safe_json_loads(text)
    if not isinstance(payload, dict):
        raise ValueError("hook payload must be a JSON object")
    return payload


def _project_environ(environ: Mapping[str, str], payload: dict) -> dict[str, str]:
    """Environment with the payload's ``cwd`` as a last-resort project root."""
    env = dict(environ)
    cwd = payload.get("cwd")
    if isinstance(cwd, str) and cwd and not (
        env.get(ENV_PROJECT_DIR) or env.get(ENV_HOST_PROJECT_DIR)
    ):
        env[ENV_PROJECT_DIR] = cwd
    return env


def _escalate_decision(settings: GateSettings, decision: GateDecision, stderr: IO[str]) -> None:
    event = {
        "reason": decision.reason.value,
        "title": f"Protected action gate cannot evaluate calls: {decision.reason.value}",
        "tool": decision.call.qualified_name if decision.call else "",
        "detail": decision.message,
        "project_dir": str(settings.project_dir),
    }
    result = escalate(settings.escalation, event)
    if not result.success:
        _emit(stderr, f"Operator escalation via {result.target_type} failed.")


def run_gate(
    environ: Optional[Mapping[str, str]] = None,
    stdin: Optional[IO[str]] = None,
    stderr: Optional[IO[str]] = None,
) -> int:
    """Evaluate one tool call and return the process exit status."""
    environ = os.environ if environ is None else environ
    stdin = sys.stdin if stdin is None else stdin
    stderr = sys.stderr if stderr is None else stderr

    tool_name = environ.get(ENV_TOOL_NAME)
    raw_args: Any = environ.get(ENV_TOOL_INPUT)
    payload: dict = {}
    if not tool_name:
        try:
            payload = _read_payload(stdin)
        except ValueError as exc:
            _emit(stderr, f"Blocked: unreadable hook payload ({exc}).")
            return EXIT_BLOCK
        tool_name = payload.get("tool_name")
        raw_args = payload.get("tool_input")
    if not isinstance(tool_name, str) or not tool_name:
        _emit(stderr, "Blocked: no tool name supplied to the gate.")
        return EXIT_BLOCK

    env = _project_environ(environ, payload)
    try:
        settings = load_settings(environ=env)
    except ActionGateError as exc:
        # Settings are only needed for namespaced calls; built-ins still run.
        if "__" not in tool_name:
            return EXIT_ALLOW
        _emit(stderr, f"Blocked: gate settings invalid ({exc}).")
        return EXIT_BLOCK
    except Exception:
        logger.exception("Loading gate settings failed")
        if "__" not in tool_name:
            return EXIT_ALLOW
        _emit(stderr, "Blocked: internal error while loading gate settings.")
        return EXIT_BLOCK

    try:
        decision = GateEnforcer(settings).check(tool_name, raw_args)
    except Exception:
        logger.exception("Gate check failed for %s", tool_name)
        _emit(stderr, f"Blocked: internal gate error while checking {tool_name}.")
        return EXIT_BLOCK

    if decision.allowed:
        if decision.reason is GateReason.APPROVED:
            _emit(stderr, decision.message)
        return EXIT_ALLOW

    _emit(stderr, decision.message)
    if decision.needs_escalation:
        _escalate_decision(settings, decision, stderr)
    return EXIT_BLOCK


def run_confirm(
    environ: Optional[Mapping[str, str]] = None,
    stdin: Optional[IO[str]] = None,
    stderr: Optional[IO[str]] = None,
) -> int:
    """Process one human prompt and return the process exit status."""
    environ = os.environ if environ is None else environ
    stdin = sys.stdin if stdin is None else stdin
    stderr = sys.stderr if stderr is None else stderr

    prompt = environ.get(ENV_USER_PROMPT)
    payload: dict = {}
    if prompt is None:
        try:
            payload = _read_payload(stdin)
        except ValueError as exc:
            logger.warning("Ignoring unreadable prompt payload: %s", exc)
            return EXIT_ALLOW
        prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return EXIT_ALLOW

    env = _project_environ(environ, payload)
    try:
        settings = load_settings(environ=env)
        outcome = process_confirmation(
            prompt,
            load_policies=lambda: load_policy_document(settings.policy_path),
            load_key=ProtectionKeyStore(settings.key_path).load,
            store=JsonFileLedgerStore(settings.ledger_path),
            ttl_seconds=settings.approval_ttl_seconds,
        )
    except Exception:
        logger.exception("Confirmation processing failed")
        _emit(stderr, "Approval could not be processed due to an internal error.")
        return EXIT_ERROR

    if outcome.message:
        _emit(stderr, outcome.message)
    return EXIT_ALLOW


def _configure_logging() -> None:
    level = os.environ.get("ACTIONGATE_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        stream=sys.stderr,
        format=f"{_PREFIX} %(levelname)s %(name)s: %(message)s",
    )


def gate_main() -> None:
    """Entry point for ``actiongate-gate``."""
    _configure_logging()
    sys.exit(run_gate())


def confirm_main() -> None:
    """Entry point for ``actiongate-confirm``."""
    _configure_logging()
    sys.exit(run_confirm())
