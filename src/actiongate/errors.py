"""
Reason codes and exceptions for the protected action gate.

Every failure the gate can observe maps to a :class:`GateReason`. Inside
the gate enforcer all failure reasons resolve to *block*; the remaining
members describe the non-failure outcomes of a gate check.
"""

from __future__ import annotations

import enum
from typing import Any


class GateReason(enum.Enum):
    """Why a gate check or confirmation ended the way it did."""

    # Failures (always block inside the gate)
    CONFIG_MISSING = "config_missing"
    CONFIG_CORRUPT = "config_corrupt"
    KEY_MISSING = "key_missing"
    FORGED_SIGNATURE = "forged_signature"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    WRONG_PHRASE = "wrong_phrase"
    NO_SUCH_CODE = "no_such_code"
    STORAGE_WRITE_FAILURE = "storage_write_failure"

    # Outcomes
    NOT_APPLICABLE = "not_applicable"
    UNPROTECTED = "unprotected"
    APPROVED = "approved"
    APPROVAL_REQUIRED = "approval_required"

    @property
    def is_failure(self) -> bool:
        return self not in _OUTCOMES


_OUTCOMES = frozenset({
    GateReason.NOT_APPLICABLE,
    GateReason.UNPROTECTED,
    GateReason.APPROVED,
    GateReason.APPROVAL_REQUIRED,
})


class ActionGateError(Exception):
    """Base class for gate errors. Carries the :class:`GateReason` it maps to."""

    reason: GateReason = GateReason.CONFIG_CORRUPT

    def __init__(self, message: str, reason: GateReason | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class PolicyConfigError(ActionGateError):
    """The policy document is missing or invalid."""


class GateSettingsError(PolicyConfigError):
    """``actiongate.yaml`` is invalid."""


class KeyStoreError(ActionGateError):
    """The protection key file exists but cannot be used."""

    reason = GateReason.KEY_MISSING


class LedgerCorruptError(ActionGateError):
    """The approval ledger cannot be parsed."""


class StorageWriteError(ActionGateError):
    """Persisting the approval ledger failed.

    When raised while creating a request, ``request`` holds the request
    that could not be saved.
    """

    reason = GateReason.STORAGE_WRITE_FAILURE
    request: Any = None
