"""
ActionGate MCP server — lets an agent discover which actions need human
approval and check on a request it was issued, over stdio transport.

Usage:
    python -m actiongate.mcp     # stdio transport
    actiongate-mcp               # via entry point

Tools:
    list_protections              — Protected servers, phrases and tool selectors
    get_protected_action_request  — Status of one approval request by code

Both tools are read-only. Nothing reachable from here can create, approve
or consume an approval; approvals only come from the human's own prompt.
The project is located through ``ACTIONGATE_PROJECT_DIR`` /
``CLAUDE_PROJECT_DIR`` (falling back to the working directory).
"""

from __future__ import annotations

import json
import logging

from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import BaseModel, Field, ValidationError

from ..config import load_settings
from ..errors import ActionGateError
from ..keystore import ProtectionKeyStore
from ..ledger import CODE_LENGTH, ApprovalLedger, JsonFileLedgerStore
from ..policy import load_policy_document
from ..report import list_protections as _list_protections
from ..report import request_status

logger = logging.getLogger("actiongate.mcp")

# =============================================================================
# SERVER
# =============================================================================

mcp = FastMCP("actiongate_mcp")


# =============================================================================
# PYDANTIC INPUT MODELS
# =============================================================================

class RequestLookupInput(BaseModel):
    """Input for get_protected_action_request tool."""
    code: str = Field(
        min_length=CODE_LENGTH,
        max_length=CODE_LENGTH,
        pattern=r"^[A-Za-z0-9]+$",
        description="The 6-character approval code from the block message.",
    )


# =============================================================================
# TOOL: list_protections
# =============================================================================

@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
    ),
)
def list_protections() -> str:
    """List the MCP servers whose tools require human approval.

    For each protected server returns the approval phrase, the protected
    tools (``"*"`` for all), the protection mode and the exact line the
    user must type. Also lists servers explicitly allowed without
    protection; any other server is blocked.

    Returns:
        JSON string with ``servers`` and ``allowed_unprotected``.
    """
    try:
        settings = load_settings()
        document = load_policy_document(settings.policy_path)
        return json.dumps({
            "servers": _list_protections(document),
            "allowed_unprotected": sorted(document.allowed_unprotected),
        }, indent=2)
    except ActionGateError as e:
        return json.dumps({"error": str(e), "reason": e.reason.value})
    except Exception as e:
        logger.exception("list_protections failed")
        return json.dumps({"error": f"Internal error: {e}"})


# =============================================================================
# TOOL: get_protected_action_request
# =============================================================================

@mcp.tool(
    annotations=ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
    ),
)
def get_protected_action_request(code: str) -> str:
    """Look up an approval request by its 6-character code.

    Reports whether the request is pending, approved (retry the call now)
    or expired, and how long it has left. Requests whose signatures do not
    verify are reported as not found. This tool cannot approve anything:
    only the user can, by typing the approval line themselves.

    Args:
        code: Approval code from the block message, e.g. ``K7XM2P``.

    Returns:
        JSON string with the request status, or ``{"status": "not_found"}``.
    """
    try:
        params = RequestLookupInput(code=code)
    except ValidationError:
        return json.dumps({
            "error": f"Invalid approval code: must be {CODE_LENGTH} letters or digits",
            "status": None,
        })

    try:
        settings = load_settings()
        key = ProtectionKeyStore(settings.key_path).load()
        if key is None:
            return json.dumps({
                "error": "Protection key is missing",
                "reason": "key_missing",
                "status": None,
            })
        ledger = ApprovalLedger(
            JsonFileLedgerStore(settings.ledger_path),
            key,
            ttl_seconds=settings.approval_ttl_seconds,
        )
        return json.dumps(request_status(ledger, params.code))
    except ActionGateError as e:
        return json.dumps({"error": str(e), "reason": e.reason.value, "status": None})
    except Exception as e:
        logger.exception("get_protected_action_request failed")
        return json.dumps({"error": f"Internal error: {e}", "status": None})


# =============================================================================
# SERVER RUNNER
# =============================================================================

def run_server() -> None:
    """Run the ActionGate MCP server with stdio transport."""
    mcp.run(transport="stdio")
