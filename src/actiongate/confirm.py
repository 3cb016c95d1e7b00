"""
Confirmation processor — turns a human's typed approval into a signed grant.

This entry point must only ever be fed text proven to come from the human
(the host's prompt-submission hook), never agent output. It is the only
code path that writes ``approved_hmac``.

Input is parsed into a tagged variant::

    parse_approval_input("APPROVE DB K7XM2P")  -> ApprovalAttempt(phrase="DB", code="K7XM2P")
    parse_approval_input("looks good, ship it") -> Unmatched(...)

Each line is examined separately; the first line of the form
``APPROVE <PHRASE> <CODE>`` (case-insensitive, ``<CODE>`` exactly six ASCII
letters or digits) wins. Anything else passes through untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .errors import GateReason, KeyStoreError, LedgerCorruptError, PolicyConfigError, StorageWriteError
from .ledger import (
    CODE_LENGTH,
    DEFAULT_APPROVAL_TTL,
    ApprovalLedger,
    Clock,
    ConfirmationResult,
    LedgerStore,
)
from .policy import PolicyDocument, ProtectionPolicy, approval_command

logger = logging.getLogger("actiongate.confirm")

_KEYWORD = "APPROVE"


# =============================================================================
# PARSING
# =============================================================================

@dataclass(frozen=True)
class Unmatched:
    """Input that is not an approval command."""
    text: str


@dataclass(frozen=True)
class ApprovalAttempt:
    """An ``APPROVE <PHRASE> <CODE>`` line. Both fields are upper-cased."""
    phrase: str
    code: str


ParsedInput = Union[Unmatched, ApprovalAttempt]


def _is_code(token: str) -> bool:
    return len(token) == CODE_LENGTH and token.isascii() and token.isalnum()


def parse_approval_input(text: str) -> ParsedInput:
    for line in text.splitlines():
        tokens = line.split()
        if len(tokens) < 3 or tokens[0].upper() != _KEYWORD:
            continue
        if not _is_code(tokens[-1]):
            continue
        return ApprovalAttempt(
            phrase=" ".join(tokens[1:-1]).upper(),
            code=tokens[-1].upper(),
        )
    return Unmatched(text=text)


# =============================================================================
# PROCESSING
# =============================================================================

@dataclass
class ConfirmationOutcome:
    """What the confirmation hook did with one piece of human input.

    Attributes:
        matched: Whether the input was an approval command for a known phrase.
        approved: Whether a request was promoted to approved.
        reason: Failure or success reason; ``None`` for pass-through input.
        message: Text for the human (empty for pass-through input).
        policy: Policy the phrase resolved to, if any.
        result: Ledger result, when validation ran.
    """
    matched: bool
    approved: bool = False
    reason: Optional[GateReason] = None
    message: str = ""
    policy: Optional[ProtectionPolicy] = None
    result: Optional[ConfirmationResult] = None


_FAILURE_MESSAGES = {
    GateReason.NO_SUCH_CODE: "No pending request has code {code}. Check the code, or retry the action for a new one.",
    GateReason.FORGED_SIGNATURE: "Request {code} failed integrity verification and was discarded. Retry the action for a new code.",
    GateReason.WRONG_PHRASE: "Code {code} belongs to a different server. To approve it, type: {expected}",
    GateReason.ALREADY_USED: "Code {code} is already approved. Let the agent retry the action.",
    GateReason.EXPIRED: "Code {code} has expired. Retry the action for a new code.",
}


def format_approval(result: ConfirmationResult) -> str:
    request = result.request
    return "\n".join([
        "=" * 60,
        "PROTECTED ACTION APPROVED",
        "=" * 60,
        f"Server:  {request.server}",
        f"Tool:    {request.tool}",
        f"Code:    {request.code}",
        f"Expires: {request.expires_at}",
        "",
        "This approval is ONE-TIME USE: it authorizes exactly one call of",
        "this tool and is deleted when the call goes through.",
        "=" * 60,
    ])


def process_confirmation(
    text: str,
    *,
    load_policies: Callable[[], PolicyDocument],
    load_key: Callable[[], Optional[bytes]],
    store: LedgerStore,
    ttl_seconds: int = DEFAULT_APPROVAL_TTL,
    clock: Optional[Clock] = None,
) -> ConfirmationOutcome:
    """Validate an approval typed by the human and sign it into the ledger."""
    parsed = parse_approval_input(text)
    if isinstance(parsed, Unmatched):
        return ConfirmationOutcome(matched=False)

    try:
        document = load_policies()
    except PolicyConfigError as exc:
        return ConfirmationOutcome(
            matched=True, reason=exc.reason,
            message=f"Cannot process approval: protection policy unavailable ({exc})",
        )

    policy = document.policy_for_phrase(parsed.phrase)
    if policy is None:
        logger.warning(
            "Approval phrase '%s' does not match any protected server", parsed.phrase,
        )
        return ConfirmationOutcome(matched=False)

    try:
        key = load_key()
    except KeyStoreError as exc:
        key = None
        logger.warning("Protection key unusable: %s", exc)
    if key is None:
        return ConfirmationOutcome(
            matched=True, reason=GateReason.KEY_MISSING, policy=policy,
            message="Cannot process approval: the protection key is missing.",
        )

    ledger = ApprovalLedger(store, key, ttl_seconds=ttl_seconds, clock=clock)
    try:
        result = ledger.validate_confirmation(parsed.phrase, parsed.code)
    except (LedgerCorruptError, StorageWriteError) as exc:
        return ConfirmationOutcome(
            matched=True, reason=exc.reason, policy=policy,
            message=f"Cannot process approval: approval ledger unavailable ({exc})",
        )

    if result.ok:
        return ConfirmationOutcome(
            matched=True, approved=True, reason=result.reason, policy=policy,
            result=result, message=format_approval(result),
        )

    expected = ""
    if result.request is not None:
        expected = approval_command(result.request.phrase, result.request.code)
    template = _FAILURE_MESSAGES.get(result.reason, "{code}: approval rejected.")
    message = "Approval rejected: " + template.format(code=parsed.code, expected=expected)
    logger.warning("Approval of %s rejected: %s", parsed.code, result.reason.value)
    return ConfirmationOutcome(
        matched=True, reason=result.reason, policy=policy, result=result,
        message=message,
    )
