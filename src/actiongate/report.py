"""Read-only views over the policy document and ledger.

Used by the admin CLI and the MCP server. Nothing here can approve or
consume a request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional

from .credentials import VAULT_REFERENCE_PREFIX, is_encrypted
from .gate import format_ttl
from .ledger import ApprovalLedger, ApprovalRequest
from .policy import PolicyDocument, WILDCARD, approval_command


def list_protections(document: PolicyDocument) -> list[dict]:
    """One summary dict per protected server, sorted by server id."""
    rows = []
    for server_id in sorted(document.servers):
        policy = document.servers[server_id]
        rows.append({
            "server": server_id,
            "phrase": policy.phrase,
            "tools": WILDCARD if policy.tools is None else sorted(policy.tools),
            "protection": policy.protection,
            "credential_keys": list(policy.credential_keys),
            "description": policy.description,
            "approve_with": approval_command(policy.phrase, "<CODE>"),
        })
    return rows


def describe_request(request: ApprovalRequest, now: Optional[datetime] = None) -> dict:
    """Public view of a ledger entry. Signatures are never included."""
    now = now or datetime.now(timezone.utc)
    expired = request.is_expired(now)
    return {
        "code": request.code,
        "server": request.server,
        "tool": request.tool,
        "status": "expired" if expired else request.status.value,
        "phrase": request.phrase,
        "approve_with": approval_command(request.phrase, request.code),
        "created_at": request.created_at,
        "expires_at": request.expires_at,
        "approved_at": request.approved_at,
        "seconds_remaining": 0 if expired else request.seconds_remaining(now),
    }


def request_status(ledger: ApprovalLedger, code: str) -> dict:
    """Status of one request, or ``{"code": ..., "status": "not_found"}``."""
    request = ledger.get_request(code)
    if request is None:
        return {"code": code.strip().upper(), "status": "not_found"}
    return describe_request(request, ledger.now())


def render_reference_doc(
    document: PolicyDocument,
    ttl_seconds: int = 300,
    generated_at: Optional[datetime] = None,
) -> str:
    """Markdown reference of protected actions for agents and operators."""
    stamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    ttl = format_ttl(ttl_seconds)
    out = [
        "# Protected Actions",
        "",
        f"> Generated from the protection policy document on {stamp}",
        "",
        "## Overview",
        "",
        "The MCP tools listed below require explicit human approval before",
        "they run. Calling one without approval blocks the call and issues a",
        "6-character approval code.",
        "",
        "## Approval workflow",
        "",
        "1. **Call the protected tool**: it is blocked and a code is issued (e.g. `K7XM2P`).",
        "2. **Stop and ask the user** to type the approval line shown in the block message.",
        "3. **The user types the approval**, e.g. `APPROVE PROD K7XM2P`.",
        f"4. **Retry the call**: it succeeds once. Codes expire after {ttl}.",
        "",
        "## Protected servers",
        "",
    ]

    if not document.servers:
        out.extend(["_No servers are protected._", ""])

    for row in list_protections(document):
        tools = "All tools" if row["tools"] == WILDCARD else ", ".join(row["tools"])
        out.extend([
            f"### {row['server']}",
            "",
            "| Property | Value |",
            "|----------|-------|",
            f"| **Protection** | {row['protection']} |",
            f"| **Approval phrase** | `{row['phrase']}` |",
            f"| **Protected tools** | {tools} |",
        ])
        if row["description"]:
            out.append(f"| **Description** | {row['description']} |")
        out.extend([
            "",
            f"**To approve:** the user types `{row['approve_with']}`",
            "",
            "---",
            "",
        ])

    if document.allowed_unprotected:
        out.extend([
            "## Unprotected servers",
            "",
            *(f"- {name}" for name in sorted(document.allowed_unprotected)),
            "",
            "Any other server is blocked until it is added to the policy document.",
            "",
        ])

    out.extend([
        "## Security notes",
        "",
        "- **One-time use**: each approval authorizes exactly one call.",
        f"- **Expiry**: codes expire {ttl} after they are issued.",
        "- **Human-only**: approvals are accepted only from the user's own input.",
        "- **Tamper-evident**: ledger entries are HMAC-signed; edited entries are discarded.",
        "",
    ])
    return "\n".join(out)


@dataclass
class CredentialHealth:
    """Coverage of policy credential keys by the vault mapping document."""
    required: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    encrypted: list[str] = field(default_factory=list)
    vault_references: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing

    def summary(self) -> str:
        if not self.required:
            return "No credential keys are required by the protection policy."
        if self.missing:
            return (
                f"{len(self.missing)} of {len(self.required)} credential mapping(s) "
                f"not configured: {', '.join(self.missing)}"
            )
        return f"All {len(self.required)} credential mapping(s) configured."


def check_credential_mappings(
    document: PolicyDocument,
    mappings: Mapping[str, str],
) -> CredentialHealth:
    required = sorted({
        name
        for policy in document.servers.values()
        for name in policy.credential_keys
    })
    health = CredentialHealth(required=required)
    for name in required:
        value = mappings.get(name)
        if not value:
            health.missing.append(name)
        elif is_encrypted(value):
            health.encrypted.append(name)
        elif value.startswith(VAULT_REFERENCE_PREFIX):
            health.vault_references.append(name)
    return health
