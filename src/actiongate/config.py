"""Gate settings loader (``actiongate.yaml`` + environment).

All settings are optional; without a settings file the gate uses the
project layout below. Settings shape::

    key_path: .claude/protection-key
    policy_path: .claude/hooks/protected-actions.json
    ledger_path: .claude/protected-action-approvals.json
    vault_mappings_path: .claude/vault-mappings.json
    approval_ttl_seconds: 300
    default_protect: true      # unknown servers are blocked
    tool_prefix: mcp           # namespaced ids look like mcp__server__tool
    escalation:
      type: queue              # log | webhook | callback | queue
      queue_path: .claude/review-queue.json
      url: https://ops.example.com/hooks/actiongate
      handler: my_callback

Relative paths resolve against the project root. The settings file is
looked up at ``<root>/actiongate.yaml`` then ``<root>/.claude/actiongate.yaml``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import yaml

from .errors import GateReason, GateSettingsError
from .utils.safe_yaml import safe_yaml_load

logger = logging.getLogger("actiongate.config")

ENV_PROJECT_DIR = "ACTIONGATE_PROJECT_DIR"
ENV_HOST_PROJECT_DIR = "CLAUDE_PROJECT_DIR"
ENV_KEY_PATH = "ACTIONGATE_KEY_PATH"
ENV_POLICY_PATH = "ACTIONGATE_POLICY_PATH"
ENV_LEDGER_PATH = "ACTIONGATE_LEDGER_PATH"

SETTINGS_FILENAMES = ("actiongate.yaml", ".claude/actiongate.yaml")

_DEFAULT_KEY_PATH = ".claude/protection-key"
_DEFAULT_POLICY_PATH = ".claude/hooks/protected-actions.json"
_DEFAULT_LEDGER_PATH = ".claude/protected-action-approvals.json"
_DEFAULT_VAULT_MAPPINGS_PATH = ".claude/vault-mappings.json"
_DEFAULT_QUEUE_PATH = ".claude/review-queue.json"

_VALID_ESCALATION_TYPES = frozenset({"log", "webhook", "callback", "queue"})

_KNOWN_FIELDS = frozenset({
    "key_path", "policy_path", "ledger_path", "vault_mappings_path",
    "approval_ttl_seconds", "default_protect", "tool_prefix", "escalation",
})


@dataclass
class EscalationSettings:
    """Where gate-level failures are escalated for an operator."""
    type: str = "log"
    url: str = ""
    handler: str = ""
    queue_path: Optional[Path] = None


@dataclass
class GateSettings:
    """Resolved gate settings. All paths are absolute."""
    project_dir: Path
    key_path: Path
    policy_path: Path
    ledger_path: Path
    vault_mappings_path: Path
    approval_ttl_seconds: int = 300
    default_protect: bool = True
    tool_prefix: str = "mcp"
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    source: Optional[Path] = None


def resolve_project_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Project root from ``ACTIONGATE_PROJECT_DIR``, ``CLAUDE_PROJECT_DIR`` or cwd."""
    env = os.environ if environ is None else environ
    raw = env.get(ENV_PROJECT_DIR) or env.get(ENV_HOST_PROJECT_DIR)
    return Path(raw).expanduser().resolve() if raw else Path.cwd().resolve()


def _resolve_path(raw: str, base: Path) -> Path:
    p = Path(os.path.expanduser(raw))
    return p if p.is_absolute() else (base / p)


def load_settings(
    project_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> GateSettings:
    """Build :class:`GateSettings` for *project_dir*.

    Raises:
        GateSettingsError: If a settings file exists but is invalid. The
            gate treats this as ``CONFIG_CORRUPT``.
    """
    env = os.environ if environ is None else environ
    root = Path(project_dir).resolve() if project_dir else resolve_project_dir(env)

    raw: dict = {}
    source = None
    for name in SETTINGS_FILENAMES:
        candidate = root / name
        if candidate.is_file():
            raw = _read_settings_file(candidate)
            source = candidate
            break

    for name in sorted(str(k) for k in set(raw) - _KNOWN_FIELDS):
        logger.warning("Unknown setting '%s' in %s will be ignored", name, source)

    def path_setting(name: str, env_name: Optional[str], default: str) -> Path:
        value = (env.get(env_name) if env_name else None) or raw.get(name) or default
        if not isinstance(value, str):
            raise GateSettingsError(
                f"Setting '{name}' must be a path string", GateReason.CONFIG_CORRUPT,
            )
        return _resolve_path(value, root)

    ttl = raw.get("approval_ttl_seconds", 300)
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
        raise GateSettingsError(
            "approval_ttl_seconds must be a positive integer",
            GateReason.CONFIG_CORRUPT,
        )

    default_protect = raw.get("default_protect", True)
    if not isinstance(default_protect, bool):
        raise GateSettingsError(
            "default_protect must be true or false", GateReason.CONFIG_CORRUPT,
        )
    if not default_protect:
        logger.warning(
            "default_protect is disabled: servers missing from the policy "
            "document will be allowed"
        )

    tool_prefix = raw.get("tool_prefix", "mcp")
    if not isinstance(tool_prefix, str) or not tool_prefix or "__" in tool_prefix:
        raise GateSettingsError(
            "tool_prefix must be a non-empty name without '__'",
            GateReason.CONFIG_CORRUPT,
        )

    return GateSettings(
        project_dir=root,
        key_path=path_setting("key_path", ENV_KEY_PATH, _DEFAULT_KEY_PATH),
        policy_path=path_setting("policy_path", ENV_POLICY_PATH, _DEFAULT_POLICY_PATH),
        ledger_path=path_setting("ledger_path", ENV_LEDGER_PATH, _DEFAULT_LEDGER_PATH),
        vault_mappings_path=path_setting(
            "vault_mappings_path", None, _DEFAULT_VAULT_MAPPINGS_PATH,
        ),
        approval_ttl_seconds=ttl,
        default_protect=default_protect,
        tool_prefix=tool_prefix,
        escalation=_parse_escalation(raw.get("escalation"), root),
        source=source,
    )


def _read_settings_file(path: Path) -> dict:
    try:
        data = safe_yaml_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError, ValueError, TypeError) as exc:
        raise GateSettingsError(
            f"Invalid settings file {path}: {exc}", GateReason.CONFIG_CORRUPT,
        ) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise GateSettingsError(
            f"Settings file {path} must contain a YAML mapping "
            f"(got {type(data).__name__})",
            GateReason.CONFIG_CORRUPT,
        )
    return data


def _string_field(raw: dict, name: str) -> str:
    value = raw.get(name) or ""
    if not isinstance(value, str):
        raise GateSettingsError(
            f"escalation.{name} must be a string", GateReason.CONFIG_CORRUPT,
        )
    return value


def _parse_escalation(raw, root: Path) -> EscalationSettings:
    if raw is None:
        return EscalationSettings()
    if not isinstance(raw, dict):
        raise GateSettingsError(
            "escalation must be a mapping", GateReason.CONFIG_CORRUPT,
        )
    esc_type = raw.get("type", "log")
    if not isinstance(esc_type, str) or esc_type not in _VALID_ESCALATION_TYPES:
        raise GateSettingsError(
            f"escalation.type must be one of {sorted(_VALID_ESCALATION_TYPES)}",
            GateReason.CONFIG_CORRUPT,
        )
    url = _string_field(raw, "url")
    if esc_type == "webhook" and not url.startswith(("https://", "http://")):
        raise GateSettingsError(
            "escalation.url must be an http(s) URL for webhook escalation",
            GateReason.CONFIG_CORRUPT,
        )
    handler = _string_field(raw, "handler")
    if esc_type == "callback" and not handler:
        raise GateSettingsError(
            "escalation.handler is required for callback escalation",
            GateReason.CONFIG_CORRUPT,
        )
    queue_path = None
    if esc_type == "queue":
        queue_path = _resolve_path(
            _string_field(raw, "queue_path") or _DEFAULT_QUEUE_PATH, root,
        )
    return EscalationSettings(
        type=esc_type, url=url, handler=handler, queue_path=queue_path,
    )
