"""
Protection policy document loader and policy resolver.

Policy document shape (``.claude/hooks/protected-actions.json``)::

    {
      "version": "1.0.0",
      "servers": {
        "supabase": {
          "phrase": "APPROVE PROD",
          "tools": "*",
          "credentialKeys": ["SUPABASE_SERVICE_ROLE_KEY"],
          "protection": "credential-isolated",
          "description": "Production database"
        },
        "github": {
          "phrase": "APPROVE GIT",
          "tools": ["delete_repository", "update_branch_protection"]
        }
      },
      "allowedUnprotectedServers": ["docs", "todo-db"]
    }

Resolution is fail-closed: a server that is neither configured nor on the
allow-list is reported as unrecognized and the gate blocks it.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .errors import GateReason, PolicyConfigError
from .utils.safe_json import load_json_object

logger = logging.getLogger("actiongate.policy")

WILDCARD = "*"

# Reserved: separates provider, server and tool in namespaced tool names.
NAMESPACE_SEPARATOR = "__"

_VALID_PROTECTION_MODES = frozenset({"approval-only", "credential-isolated"})

_APPROVE_KEYWORD = "APPROVE"


def normalize_phrase(phrase: str) -> str:
    """Canonical form of an approval phrase for comparison.

    Upper-cases, collapses whitespace and drops a leading ``APPROVE``
    keyword, so ``"approve  db"``, ``"APPROVE DB"`` and ``"db"`` compare
    equal.
    """
    words = phrase.upper().split()
    if len(words) > 1 and words[0] == _APPROVE_KEYWORD:
        words = words[1:]
    return " ".join(words)


def approval_command(phrase: str, code: str) -> str:
    """The exact line a human types to approve *code*, e.g. ``APPROVE DB K7XM2P``."""
    return f"{_APPROVE_KEYWORD} {normalize_phrase(phrase)} {code}"


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass(frozen=True)
class ProtectionPolicy:
    """Protection requirement for one logical server.

    Attributes:
        server_id: Server name as it appears in namespaced tool ids.
        phrase: Approval phrase the human types before the code.
        tools: Protected tool names, or ``None`` when every tool is
            protected (``"tools": "*"``).
        credential_keys: Credential names this server needs.
        protection: ``"approval-only"`` or ``"credential-isolated"``.
        description: Free text shown in listings.
    """
    server_id: str
    phrase: str
    tools: Optional[frozenset[str]] = None
    credential_keys: tuple[str, ...] = ()
    protection: str = "approval-only"
    description: str = ""

    @property
    def protects_all_tools(self) -> bool:
        return self.tools is None

    def protects(self, tool: str) -> bool:
        return self.tools is None or tool in self.tools

    def to_dict(self) -> dict:
        data: dict = {
            "phrase": self.phrase,
            "tools": WILDCARD if self.tools is None else sorted(self.tools),
            "credentialKeys": list(self.credential_keys),
            "protection": self.protection,
        }
        if self.description:
            data["description"] = self.description
        return data


@dataclass
class PolicyDocument:
    """Parsed policy document."""
    version: str = ""
    servers: dict[str, ProtectionPolicy] = field(default_factory=dict)
    allowed_unprotected: frozenset[str] = frozenset()

    def policy_for_phrase(self, phrase: str) -> Optional[ProtectionPolicy]:
        """Return the policy whose phrase matches *phrase*, if any."""
        wanted = normalize_phrase(phrase)
        for policy in self.servers.values():
            if normalize_phrase(policy.phrase) == wanted:
                return policy
        return None


class ResolutionKind(enum.Enum):
    PROTECTED = "protected"
    UNPROTECTED = "unprotected"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class PolicyResolution:
    """Result of resolving a (server, tool) pair."""
    kind: ResolutionKind
    reason: str
    policy: Optional[ProtectionPolicy] = None

    @property
    def protected(self) -> bool:
        return self.kind is ResolutionKind.PROTECTED


# =============================================================================
# LOADING
# =============================================================================

def load_policy_document(path: Union[str, Path]) -> PolicyDocument:
    """Load and validate the policy document at *path*.

    Raises:
        PolicyConfigError: ``CONFIG_MISSING`` if the file does not exist,
            ``CONFIG_CORRUPT`` if it is unreadable or invalid.
    """
    p = Path(path)
    if not p.is_file():
        raise PolicyConfigError(
            f"Policy document not found: {p}", GateReason.CONFIG_MISSING,
        )
    try:
        raw = load_json_object(p)
    except (OSError, UnicodeDecodeError, ValueError) as exc:
        raise PolicyConfigError(
            f"Policy document {p} is not valid JSON: {exc}",
            GateReason.CONFIG_CORRUPT,
        ) from exc
    return parse_policy_document(raw, source=str(p))


def parse_policy_document(raw: dict, source: str = "<policy>") -> PolicyDocument:
    """Validate an already-decoded policy document.

    Raises:
        PolicyConfigError: ``CONFIG_CORRUPT`` on any structural problem,
            including duplicate approval phrases.
    """
    def corrupt(message: str) -> PolicyConfigError:
        return PolicyConfigError(f"{source}: {message}", GateReason.CONFIG_CORRUPT)

    version = raw.get("version", "")
    if not isinstance(version, (str, int)):
        raise corrupt("'version' must be a string")

    servers_raw = raw.get("servers", {})
    if not isinstance(servers_raw, dict):
        raise corrupt("'servers' must be an object")

    allowed_raw = raw.get("allowedUnprotectedServers", [])
    if not isinstance(allowed_raw, list) or not all(
        isinstance(s, str) and s for s in allowed_raw
    ):
        raise corrupt("'allowedUnprotectedServers' must be a list of names")

    servers: dict[str, ProtectionPolicy] = {}
    phrases: dict[str, str] = {}
    for server_id, entry in servers_raw.items():
        policy = _parse_server_entry(server_id, entry, corrupt)
        key = normalize_phrase(policy.phrase)
        if key in phrases:
            raise corrupt(
                f"approval phrase '{policy.phrase}' is used by both "
                f"'{phrases[key]}' and '{server_id}'"
            )
        phrases[key] = server_id
        servers[server_id] = policy

    overlap = sorted(set(servers) & set(allowed_raw))
    if overlap:
        raise corrupt(
            f"servers listed as both protected and unprotected: {', '.join(overlap)}"
        )

    return PolicyDocument(
        version=str(version),
        servers=servers,
        allowed_unprotected=frozenset(allowed_raw),
    )


def _parse_server_entry(server_id, entry, corrupt) -> ProtectionPolicy:
    if not server_id or NAMESPACE_SEPARATOR in server_id:
        raise corrupt(
            f"server id '{server_id}' must be non-empty and must not "
            f"contain '{NAMESPACE_SEPARATOR}'"
        )
    if not isinstance(entry, dict):
        raise corrupt(f"servers.{server_id} must be an object")

    phrase = entry.get("phrase")
    if not isinstance(phrase, str) or not normalize_phrase(phrase):
        raise corrupt(f"servers.{server_id}.phrase must be a non-empty string")

    tools_raw = entry.get("tools", WILDCARD)
    if tools_raw == WILDCARD:
        tools = None
    elif isinstance(tools_raw, list) and all(
        isinstance(t, str) and t for t in tools_raw
    ):
        tools = frozenset(tools_raw)
    else:
        raise corrupt(
            f"servers.{server_id}.tools must be \"*\" or a list of tool names"
        )

    cred_raw = entry.get("credentialKeys", [])
    if not isinstance(cred_raw, list) or not all(
        isinstance(k, str) and k for k in cred_raw
    ):
        raise corrupt(f"servers.{server_id}.credentialKeys must be a list of names")

    protection = entry.get("protection", "approval-only")
    if not isinstance(protection, str) or protection not in _VALID_PROTECTION_MODES:
        raise corrupt(
            f"servers.{server_id}.protection must be one of "
            f"{sorted(_VALID_PROTECTION_MODES)}"
        )

    description = entry.get("description", "")
    if not isinstance(description, str):
        raise corrupt(f"servers.{server_id}.description must be a string")

    return ProtectionPolicy(
        server_id=server_id,
        phrase=phrase.strip(),
        tools=tools,
        credential_keys=tuple(cred_raw),
        protection=protection,
        description=description,
    )


# =============================================================================
# RESOLUTION
# =============================================================================

def resolve_policy(
    server: str,
    tool: str,
    document: PolicyDocument,
    *,
    default_protect: bool = True,
) -> PolicyResolution:
    """Map a (server, tool) pair to its protection requirement.

    Order:

    1. Configured server whose selector covers *tool* → ``PROTECTED``.
    2. Configured server, tool outside its explicit list → ``UNPROTECTED``.
    3. Server on the allow-list → ``UNPROTECTED``.
    4. Anything else → ``UNRECOGNIZED`` when *default_protect* is set,
       otherwise ``UNPROTECTED``.
    """
    policy = document.servers.get(server)
    if policy is not None:
        if policy.protects(tool):
            return PolicyResolution(
                kind=ResolutionKind.PROTECTED,
                reason=f"'{server}__{tool}' is protected by phrase '{policy.phrase}'",
                policy=policy,
            )
        return PolicyResolution(
            kind=ResolutionKind.UNPROTECTED,
            reason=f"Tool '{tool}' is not in the protected list for '{server}'",
        )

    if server in document.allowed_unprotected:
        return PolicyResolution(
            kind=ResolutionKind.UNPROTECTED,
            reason=f"Server '{server}' is allow-listed as unprotected",
        )

    if default_protect:
        return PolicyResolution(
            kind=ResolutionKind.UNRECOGNIZED,
            reason=(
                f"Unrecognized server '{server}': not in the policy document "
                f"and not allow-listed as unprotected"
            ),
        )

    logger.warning(
        "Server '%s' is not configured; allowing because default_protect is off",
        server,
    )
    return PolicyResolution(
        kind=ResolutionKind.UNPROTECTED,
        reason=f"Server '{server}' is not configured (default-pass)",
    )
