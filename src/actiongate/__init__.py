"""ActionGate — human approval gate for protected agent tool calls.

Blocks calls to protected MCP servers until the human types a one-time,
HMAC-signed approval code, and keeps their credentials encrypted at rest.
"""

from .version import __version__
from .errors import ActionGateError, GateReason
from .config import GateSettings, load_settings
from .gate import GateDecision, GateEnforcer, evaluate_tool_call
from .confirm import ConfirmationOutcome, parse_approval_input, process_confirmation
from .ledger import ApprovalLedger, JsonFileLedgerStore, MemoryLedgerStore
from .keystore import ProtectionKeyStore
from .policy import PolicyDocument, ProtectionPolicy, load_policy_document, resolve_policy
from .credentials import decrypt, encrypt, is_encrypted, resolve_server_credentials

__all__ = [
    "__version__",
    "ActionGateError",
    "GateReason",
    "GateSettings",
    "load_settings",
    "GateDecision",
    "GateEnforcer",
    "evaluate_tool_call",
    "ConfirmationOutcome",
    "parse_approval_input",
    "process_confirmation",
    "ApprovalLedger",
    "JsonFileLedgerStore",
    "MemoryLedgerStore",
    "ProtectionKeyStore",
    "PolicyDocument",
    "ProtectionPolicy",
    "load_policy_document",
    "resolve_policy",
    "decrypt",
    "encrypt",
    "is_encrypted",
    "resolve_server_credentials",
]
