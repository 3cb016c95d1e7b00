"""
Gate enforcer — the choke point evaluated before every tool call.

Decision flow for one call::

    tool id not namespaced ("a__b__c")        → allow   (NOT_APPLICABLE)
    malformed id or unrecognized provider     → block   (CONFIG_MISSING)
    policy document missing / invalid         → block   (CONFIG_MISSING / CONFIG_CORRUPT)
    server unknown and not allow-listed       → block   (CONFIG_MISSING)
    tool not protected for this server        → allow   (UNPROTECTED)
    protection key missing / unusable         → block   (KEY_MISSING)
    ledger unreadable                         → block   (CONFIG_CORRUPT)
    verified approval for (server, tool)      → allow   (APPROVED, approval consumed)
    otherwise                                 → block   (APPROVAL_REQUIRED, new code issued)

There is no path from an error to *allow*. :func:`evaluate_tool_call` is a
pure function over injected loaders and a :class:`~actiongate.ledger.LedgerStore`;
:class:`GateEnforcer` wires it to the files named in :class:`GateSettings`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config import GateSettings
from .errors import (
    ActionGateError,
    GateReason,
    KeyStoreError,
    LedgerCorruptError,
    PolicyConfigError,
    StorageWriteError,
)
from .keystore import ProtectionKeyStore
from .ledger import (
    DEFAULT_APPROVAL_TTL,
    FIELD_SEPARATOR,
    ApprovalGrant,
    ApprovalLedger,
    ApprovalRequest,
    Clock,
    JsonFileLedgerStore,
    LedgerStore,
)
from .policy import (
    NAMESPACE_SEPARATOR,
    PolicyDocument,
    ResolutionKind,
    approval_command,
    load_policy_document,
    resolve_policy,
)
from .utils.safe_json import safe_json_loads

logger = logging.getLogger("actiongate.gate")

# Failures the gate cannot recover from without an operator.
_ESCALATED_REASONS = frozenset({
    GateReason.CONFIG_CORRUPT,
    GateReason.KEY_MISSING,
})


# =============================================================================
# TOOL IDS AND ARGUMENTS
# =============================================================================

@dataclass(frozen=True)
class ToolCall:
    """A parsed namespaced tool id."""
    provider: str
    server: str
    tool: str

    @property
    def qualified_name(self) -> str:
        return NAMESPACE_SEPARATOR.join((self.provider, self.server, self.tool))


def parse_tool_name(name: str) -> Optional[ToolCall]:
    """Parse ``<provider>__<server>__<tool>``.

    Returns ``None`` only for built-in (non-namespaced) tools. Everything
    after the second separator is the tool name.
    """
    parts = name.split(NAMESPACE_SEPARATOR, 2)
    if len(parts) != 3 or not all(parts):
        return None
    provider, server, tool = parts
    return ToolCall(provider=provider, server=server, tool=tool)


def snapshot_arguments(raw: Any) -> Any:
    """Best-effort copy of the call arguments for the ledger.

    JSON text is decoded; anything that fails to decode is kept as the raw
    string. Never raises.
    """
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            return safe_json_loads(raw)
        except ValueError:
            logger.warning("Tool arguments are not valid JSON; storing raw text")
            return raw
    return raw


# =============================================================================
# DECISION
# =============================================================================

@dataclass
class GateDecision:
    """Outcome of one gate check.

    Attributes:
        allowed: ``True`` only for NOT_APPLICABLE, UNPROTECTED and APPROVED.
        reason: The :class:`GateReason` for the outcome.
        message: Human-readable diagnostic (printed on stderr by the hook).
        call: Parsed tool id, when the name was namespaced.
        request: The freshly issued challenge, when one was created.
        grant: The consumed approval, when the call was approved.
        persisted: ``False`` when the challenge could not be saved.
    """
    allowed: bool
    reason: GateReason
    message: str
    call: Optional[ToolCall] = None
    request: Optional[ApprovalRequest] = None
    grant: Optional[ApprovalGrant] = None
    persisted: bool = True

    @property
    def needs_escalation(self) -> bool:
        return not self.allowed and self.reason in _ESCALATED_REASONS


def _allow(reason: GateReason, message: str, call=None, grant=None) -> GateDecision:
    return GateDecision(allowed=True, reason=reason, message=message, call=call, grant=grant)


def _block(reason: GateReason, message: str, call=None) -> GateDecision:
    logger.warning("Blocked %s: %s", call.qualified_name if call else "call", message)
    return GateDecision(allowed=False, reason=reason, message=message, call=call)


def format_ttl(seconds: int) -> str:
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds} seconds"


def format_challenge(
    call: ToolCall,
    request: ApprovalRequest,
    ttl_seconds: int,
    *,
    persisted: bool = True,
) -> str:
    """Text shown to the agent and the human when a call is held for approval."""
    lines = [
        "=" * 60,
        "PROTECTED ACTION BLOCKED: human approval required",
        "=" * 60,
        f"Server:  {call.server}",
        f"Tool:    {call.tool}",
        "",
        "Ask the user to type exactly:",
        "",
        f"    {approval_command(request.phrase, request.code)}",
        "",
        f"The code expires in {format_ttl(ttl_seconds)} "
        f"(at {request.expires_at}) and can be used once.",
        "Do not retry this call until the user has typed the approval.",
    ]
    if not persisted:
        lines.extend([
            "",
            "WARNING: the approval request could not be saved; if the "
            "approval is rejected, retry the call for a new code.",
        ])
    lines.append("=" * 60)
    return "\n".join(lines)


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate_tool_call(
    tool_name: str,
    raw_args: Any,
    *,
    load_policies: Callable[[], PolicyDocument],
    load_key: Callable[[], Optional[bytes]],
    store: LedgerStore,
    default_protect: bool = True,
    tool_prefix: str = "mcp",
    ttl_seconds: int = DEFAULT_APPROVAL_TTL,
    clock: Optional[Clock] = None,
) -> GateDecision:
    """Decide whether *tool_name* may run now.

    Configuration is only loaded for namespaced calls, so built-in tools
    are never affected by a broken policy document or key.
    """
    call = parse_tool_name(tool_name)
    if call is None:
        if NAMESPACE_SEPARATOR in tool_name:
            return _block(
                GateReason.CONFIG_MISSING,
                f"Malformed namespaced tool id '{tool_name}'",
            )
        return _allow(GateReason.NOT_APPLICABLE, f"'{tool_name}' is not a namespaced tool")

    if call.provider != tool_prefix:
        return _block(
            GateReason.CONFIG_MISSING,
            f"Unrecognized tool provider '{call.provider}' (expected '{tool_prefix}')",
            call,
        )
    if FIELD_SEPARATOR in call.server or FIELD_SEPARATOR in call.tool:
        return _block(
            GateReason.CONFIG_MISSING,
            f"Server and tool names may not contain '{FIELD_SEPARATOR}'",
            call,
        )

    try:
        document = load_policies()
    except PolicyConfigError as exc:
        return _block(exc.reason, f"Protection policy unavailable: {exc}", call)

    resolution = resolve_policy(
        call.server, call.tool, document, default_protect=default_protect,
    )
    if resolution.kind is ResolutionKind.UNRECOGNIZED:
        return _block(GateReason.CONFIG_MISSING, resolution.reason, call)
    if resolution.kind is ResolutionKind.UNPROTECTED:
        return _allow(GateReason.UNPROTECTED, resolution.reason, call)

    policy = resolution.policy
    if policy is None:
        return _block(GateReason.CONFIG_CORRUPT, resolution.reason, call)

    try:
        key = load_key()
    except KeyStoreError as exc:
        return _block(GateReason.KEY_MISSING, f"Protection key unusable: {exc}", call)
    if key is None:
        return _block(
            GateReason.KEY_MISSING,
            "Protection key is missing; protected actions are disabled until "
            "an administrator provisions one (actiongate keygen)",
            call,
        )

    ledger = ApprovalLedger(store, key, ttl_seconds=ttl_seconds, clock=clock)

    try:
        grant = ledger.check_and_consume(call.server, call.tool)
    except (LedgerCorruptError, StorageWriteError) as exc:
        return _block(exc.reason, f"Approval ledger unavailable: {exc}", call)

    if grant is not None:
        return _allow(
            GateReason.APPROVED,
            f"Approval {grant.code} consumed for {call.server}/{call.tool} "
            f"(one-time use)",
            call,
            grant,
        )

    args = snapshot_arguments(raw_args)
    try:
        request = ledger.create_request(call.server, call.tool, args, policy.phrase)
        persisted = True
    except StorageWriteError as exc:
        if exc.request is None:
            return _block(exc.reason, f"Approval ledger unavailable: {exc}", call)
        request = exc.request
        persisted = False
    except LedgerCorruptError as exc:
        return _block(exc.reason, f"Approval ledger unavailable: {exc}", call)

    decision = GateDecision(
        allowed=False,
        reason=GateReason.APPROVAL_REQUIRED if persisted else GateReason.STORAGE_WRITE_FAILURE,
        message=format_challenge(call, request, ttl_seconds, persisted=persisted),
        call=call,
        request=request,
        persisted=persisted,
    )
    logger.info(
        "Issued approval code %s for %s", request.code, call.qualified_name,
    )
    return decision


class GateEnforcer:
    """File-backed gate. One instance per hook invocation."""

    def __init__(
        self,
        settings: GateSettings,
        *,
        store: Optional[LedgerStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._settings = settings
        self._key_store = ProtectionKeyStore(settings.key_path)
        self._store = store or JsonFileLedgerStore(settings.ledger_path)
        self._clock = clock

    @property
    def settings(self) -> GateSettings:
        return self._settings

    def check(self, tool_name: str, raw_args: Any) -> GateDecision:
        try:
            return evaluate_tool_call(
                tool_name,
                raw_args,
                load_policies=lambda: load_policy_document(self._settings.policy_path),
                load_key=self._key_store.load,
                store=self._store,
                default_protect=self._settings.default_protect,
                tool_prefix=self._settings.tool_prefix,
                ttl_seconds=self._settings.approval_ttl_seconds,
                clock=self._clock,
            )
        except ActionGateError as exc:
            return _block(exc.reason, str(exc), parse_tool_name(tool_name))
