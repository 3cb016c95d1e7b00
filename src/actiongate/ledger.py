"""
Approval ledger — persistent, HMAC-signed, one-time approval requests.

Ledger document shape (``.claude/protected-action-approvals.json``)::

    {
      "approvals": {
        "K7XM2P": {
          "code": "K7XM2P",
          "server": "supabase",
          "tool": "delete_project",
          "args": {"project_id": "prod"},
          "phrase": "APPROVE PROD",
          "status": "pending",
          "created_at": "2026-01-01T12:00:00+00:00",
          "expires_at": "2026-01-01T12:05:00+00:00",
          "pending_hmac": "…",
          "approved_at": null,
          "approved_hmac": null
        }
      }
    }

Each entry carries two signatures made with the protection key:

- ``pending_hmac = HMAC(key, code|server|tool|expires_at)``, written by the
  gate when it creates the request;
- ``approved_hmac = HMAC(key, code|server|tool|approved|expires_at)``,
  written only by the confirmation processor.

Someone who can edit the ledger file but cannot read the key can neither
fabricate an approved entry nor promote a pending one. Any entry whose
signatures do not verify is deleted on sight.

Every mutation runs inside :meth:`LedgerStore.transaction`; the ledger sweeps
expired entries as part of each mutation.
"""

from __future__ import annotations

import contextlib
import copy
import enum
import hashlib
import hmac
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from .errors import GateReason, LedgerCorruptError, StorageWriteError
from .policy import normalize_phrase
from .utils.safe_io import (
    LockTimeoutError,
    SecurityError,
    atomic_write_sync,
    ensure_secure_dir,
    exclusive_lock,
)
from .utils.safe_json import safe_json_loads

logger = logging.getLogger("actiongate.ledger")

# Uppercase letters and digits without 0/O, 1/I/L.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6

DEFAULT_APPROVAL_TTL = 300  # 5 minutes

_APPROVED_MARKER = "approved"

# Joins the signed fields; no field may contain it.
FIELD_SEPARATOR = "|"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"


# =============================================================================
# CODES AND SIGNATURES
# =============================================================================

def generate_code() -> str:
    """Return a fresh 6-character approval code from :data:`CODE_ALPHABET`."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _hmac_hex(key: bytes, *parts: str) -> str:
    if any(FIELD_SEPARATOR in part for part in parts):
        raise ValueError(f"Signed fields may not contain {FIELD_SEPARATOR!r}")
    message = FIELD_SEPARATOR.join(parts).encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def _digest_equal(expected: str, stored: str) -> bool:
    return hmac.compare_digest(expected.encode("ascii"), stored.encode("utf-8"))


def sign_pending(key: bytes, code: str, server: str, tool: str, expires_at: str) -> str:
    return _hmac_hex(key, code, server, tool, expires_at)


def sign_approved(key: bytes, code: str, server: str, tool: str, expires_at: str) -> str:
    return _hmac_hex(key, code, server, tool, _APPROVED_MARKER, expires_at)


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass
class ApprovalRequest:
    """One approval request as stored in the ledger."""
    code: str
    server: str
    tool: str
    args: Any
    phrase: str
    status: RequestStatus
    created_at: str
    expires_at: str
    pending_hmac: str
    approved_at: Optional[str] = None
    approved_hmac: Optional[str] = None

    def expires_datetime(self) -> datetime:
        return _parse_timestamp(self.expires_at)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_datetime()

    def seconds_remaining(self, now: datetime) -> int:
        return max(0, int((self.expires_datetime() - now).total_seconds()))

    def has_valid_pending_signature(self, key: bytes) -> bool:
        try:
            expected = sign_pending(key, self.code, self.server, self.tool, self.expires_at)
        except ValueError:
            return False
        return _digest_equal(expected, self.pending_hmac)

    def has_valid_approved_signature(self, key: bytes) -> bool:
        if not self.approved_hmac:
            return False
        try:
            expected = sign_approved(key, self.code, self.server, self.tool, self.expires_at)
        except ValueError:
            return False
        return _digest_equal(expected, self.approved_hmac)

    def is_authentic(self, key: bytes) -> bool:
        """Both signatures that the entry's status requires verify."""
        if not self.has_valid_pending_signature(key):
            return False
        if self.status is RequestStatus.APPROVED:
            return self.has_valid_approved_signature(key)
        return self.approved_hmac is None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "server": self.server,
            "tool": self.tool,
            "args": self.args,
            "phrase": self.phrase,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "pending_hmac": self.pending_hmac,
            "approved_at": self.approved_at,
            "approved_hmac": self.approved_hmac,
        }

    @classmethod
    def from_dict(cls, data: Any) -> ApprovalRequest:
        """Build a request from its stored form.

        Raises:
            ValueError: If any required field is missing or mistyped.
        """
        if not isinstance(data, dict):
            raise ValueError("ledger entry must be an object")
        for name in ("code", "server", "tool", "phrase", "created_at",
                     "expires_at", "pending_hmac"):
            if not isinstance(data.get(name), str) or not data[name]:
                raise ValueError(f"ledger entry field '{name}' is missing")
        for name in ("approved_at", "approved_hmac"):
            if data.get(name) is not None and not isinstance(data[name], str):
                raise ValueError(f"ledger entry field '{name}' must be a string")
        status = RequestStatus(data.get("status"))
        request = cls(
            code=data["code"],
            server=data["server"],
            tool=data["tool"],
            args=data.get("args"),
            phrase=data["phrase"],
            status=status,
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            pending_hmac=data["pending_hmac"],
            approved_at=data.get("approved_at"),
            approved_hmac=data.get("approved_hmac"),
        )
        request.expires_datetime()
        return request


@dataclass(frozen=True)
class ApprovalGrant:
    """A verified, consumed approval. Authorises exactly one call."""
    code: str
    server: str
    tool: str
    args: Any
    approved_at: Optional[str]


@dataclass
class ConfirmationResult:
    """Outcome of :meth:`ApprovalLedger.validate_confirmation`."""
    ok: bool
    reason: GateReason
    request: Optional[ApprovalRequest] = None
    detail: str = ""


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# STORES
# =============================================================================

class LedgerStore(ABC):
    """Transactional storage for the ledger's ``approvals`` mapping."""

    @abstractmethod
    def read(self) -> dict[str, Any]:
        """Return a copy of the ``approvals`` mapping.

        Raises:
            LedgerCorruptError: If the stored document cannot be parsed.
        """

    @abstractmethod
    @contextlib.contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        """Yield the mutable ``approvals`` mapping under an exclusive lock.

        Changes are persisted when the block exits normally and discarded
        when it raises.

        Raises:
            LedgerCorruptError: If the stored document cannot be parsed.
            StorageWriteError: If the lock or the write fails.
        """


class MemoryLedgerStore(LedgerStore):
    """In-process store. Used by tests and by embedders without a filesystem."""

    def __init__(self, approvals: Optional[dict[str, Any]] = None) -> None:
        self._approvals: dict[str, Any] = copy.deepcopy(approvals or {})

    def read(self) -> dict[str, Any]:
        return copy.deepcopy(self._approvals)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        working = copy.deepcopy(self._approvals)
        yield working
        self._approvals = working


class JsonFileLedgerStore(LedgerStore):
    """Ledger persisted as one JSON file.

    Writers hold an exclusive ``<ledger>.lock`` for the whole
    read-modify-write cycle and replace the file atomically, so concurrent
    hook processes cannot lose each other's updates.
    """

    def __init__(self, path: Union[str, Path], lock_timeout: float = 10.0) -> None:
        self._path = Path(path)
        self._lock_timeout = lock_timeout

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> dict[str, Any]:
        return self._load()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        with contextlib.ExitStack() as stack:
            try:
                ensure_secure_dir(self._path.parent)
                stack.enter_context(
                    exclusive_lock(self._path, timeout=self._lock_timeout)
                )
            except (OSError, SecurityError, LockTimeoutError) as exc:
                raise StorageWriteError(
                    f"Cannot lock approval ledger {self._path}: {exc}"
                ) from exc
            approvals = self._load()
            before = json.dumps(approvals, sort_keys=True)
            yield approvals
            if json.dumps(approvals, sort_keys=True) != before:
                self._write(approvals)

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerCorruptError(
                f"Cannot read approval ledger {self._path}: {exc}",
                GateReason.CONFIG_CORRUPT,
            ) from exc
        if not text.strip():
            return {}
        try:
            doc = safe_json_loads(text)
        except ValueError as exc:
            raise LedgerCorruptError(
                f"Approval ledger {self._path} is not valid JSON: {exc}",
                GateReason.CONFIG_CORRUPT,
            ) from exc
        approvals = doc.get("approvals", {}) if isinstance(doc, dict) else None
        if not isinstance(approvals, dict):
            raise LedgerCorruptError(
                f"Approval ledger {self._path} has no 'approvals' object",
                GateReason.CONFIG_CORRUPT,
            )
        return approvals

    def _write(self, approvals: dict[str, Any]) -> None:
        payload = json.dumps({"approvals": approvals}, indent=2, sort_keys=True)
        try:
            atomic_write_sync(self._path, payload + "\n", mode=0o600)
        except (OSError, SecurityError) as exc:
            raise StorageWriteError(
                f"Cannot write approval ledger {self._path}: {exc}"
            ) from exc


# =============================================================================
# LEDGER
# =============================================================================

class ApprovalLedger:
    """Request lifecycle over a :class:`LedgerStore`, signed with *key*.

    Usage::

        ledger = ApprovalLedger(JsonFileLedgerStore(path), key)
        request = ledger.create_request("db", "drop_table", {}, "APPROVE DB")
        ledger.validate_confirmation("APPROVE DB", request.code)
        grant = ledger.check_and_consume("db", "drop_table")
    """

    def __init__(
        self,
        store: LedgerStore,
        key: bytes,
        *,
        ttl_seconds: int = DEFAULT_APPROVAL_TTL,
        clock: Optional[Clock] = None,
    ) -> None:
        if not key:
            raise ValueError("ApprovalLedger requires the protection key")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store = store
        self._key = key
        self._ttl = ttl_seconds
        self._clock = clock or _utc_now

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def now(self) -> datetime:
        return self._clock()

    # -- creation -------------------------------------------------------------

    def create_request(
        self,
        server: str,
        tool: str,
        args: Any,
        phrase: str,
    ) -> ApprovalRequest:
        """Create, sign and persist a pending request.

        Raises:
            StorageWriteError: If the request could not be persisted. The
                unsaved request is attached as ``exc.request`` so the caller
                can still show the challenge.
            LedgerCorruptError: If the existing ledger cannot be parsed.
            ValueError: If *server* or *tool* contains :data:`FIELD_SEPARATOR`.
        """
        now = self.now()
        created_at = now.isoformat()
        expires_at = (now + timedelta(seconds=self._ttl)).isoformat()
        code = generate_code()
        request = ApprovalRequest(
            code=code,
            server=server,
            tool=tool,
            args=args,
            phrase=phrase,
            status=RequestStatus.PENDING,
            created_at=created_at,
            expires_at=expires_at,
            pending_hmac=sign_pending(self._key, code, server, tool, expires_at),
        )

        try:
            with self._store.transaction() as approvals:
                self._sweep(approvals, now)
                approvals[code] = request.to_dict()
        except StorageWriteError as exc:
            logger.warning("Approval request %s was not persisted: %s", code, exc)
            exc.request = request
            raise

        logger.info("Created approval request %s for %s__%s", code, server, tool)
        return request

    # -- confirmation -----------------------------------------------------------

    def validate_confirmation(self, phrase: str, code: str) -> ConfirmationResult:
        """Promote a pending request to approved.

        Failure reasons are checked in order: ``NO_SUCH_CODE``,
        ``FORGED_SIGNATURE`` (the entry is deleted), ``WRONG_PHRASE``,
        ``ALREADY_USED``, ``EXPIRED`` (the entry is deleted).
        """
        code = code.strip().upper()
        now = self.now()

        with self._store.transaction() as approvals:
            raw = approvals.get(code)
            if raw is None:
                return ConfirmationResult(
                    ok=False, reason=GateReason.NO_SUCH_CODE,
                    detail=f"No approval request with code {code}",
                )

            request = self._authentic_entry(approvals, code, raw)
            if request is None:
                return ConfirmationResult(
                    ok=False, reason=GateReason.FORGED_SIGNATURE,
                    detail=f"Request {code} failed signature verification and was removed",
                )

            if normalize_phrase(phrase) != normalize_phrase(request.phrase):
                return ConfirmationResult(
                    ok=False, reason=GateReason.WRONG_PHRASE, request=request,
                    detail=f"Code {code} requires phrase '{request.phrase}'",
                )

            if request.status is RequestStatus.APPROVED:
                return ConfirmationResult(
                    ok=False, reason=GateReason.ALREADY_USED, request=request,
                    detail=f"Code {code} is already approved",
                )

            if request.is_expired(now):
                del approvals[code]
                return ConfirmationResult(
                    ok=False, reason=GateReason.EXPIRED, request=request,
                    detail=f"Code {code} expired at {request.expires_at}",
                )

            request.status = RequestStatus.APPROVED
            request.approved_at = now.isoformat()
            request.approved_hmac = sign_approved(
                self._key, request.code, request.server, request.tool,
                request.expires_at,
            )
            approvals[code] = request.to_dict()
            self._sweep(approvals, now)

        logger.info(
            "Approved request %s for %s__%s", code, request.server, request.tool,
        )
        return ConfirmationResult(ok=True, reason=GateReason.APPROVED, request=request)

    # -- consumption ------------------------------------------------------------

    def check_and_consume(self, server: str, tool: str) -> Optional[ApprovalGrant]:
        """Consume one verified approval for exactly (*server*, *tool*).

        Candidates are approved, unexpired entries for the pair. Candidates
        whose signatures do not verify are deleted and the scan continues.
        The first verified candidate is deleted and returned.
        """
        now = self.now()
        with self._store.transaction() as approvals:
            self._sweep(approvals, now)
            for code in sorted(approvals):
                raw = approvals[code]
                if not isinstance(raw, dict):
                    continue
                if raw.get("server") != server or raw.get("tool") != tool:
                    continue
                if raw.get("status") != RequestStatus.APPROVED.value:
                    continue

                request = self._authentic_entry(approvals, code, raw)
                if request is None:
                    continue
                if request.is_expired(now):
                    continue

                del approvals[code]
                logger.info("Consumed approval %s for %s__%s", code, server, tool)
                return ApprovalGrant(
                    code=request.code,
                    server=request.server,
                    tool=request.tool,
                    args=request.args,
                    approved_at=request.approved_at,
                )
        return None

    # -- queries ------------------------------------------------------------------

    def get_request(self, code: str) -> Optional[ApprovalRequest]:
        """Read-only lookup. Entries that fail verification read as absent."""
        raw = self._store.read().get(code.strip().upper())
        if raw is None:
            return None
        try:
            request = ApprovalRequest.from_dict(raw)
        except (ValueError, TypeError):
            return None
        return request if request.is_authentic(self._key) else None

    def list_requests(self, *, include_expired: bool = False) -> list[ApprovalRequest]:
        """All verified requests, oldest first."""
        now = self.now()
        requests = []
        for raw in self._store.read().values():
            try:
                request = ApprovalRequest.from_dict(raw)
            except (ValueError, TypeError):
                continue
            if not request.is_authentic(self._key):
                continue
            if not include_expired and request.is_expired(now):
                continue
            requests.append(request)
        return sorted(requests, key=lambda r: r.created_at)

    # -- internals --------------------------------------------------------------

    def _authentic_entry(
        self, approvals: dict[str, Any], code: str, raw: Any,
    ) -> Optional[ApprovalRequest]:
        """Parse and verify one entry; delete it if forged or malformed."""
        try:
            request = ApprovalRequest.from_dict(raw)
        except (ValueError, TypeError) as exc:
            logger.warning("Removing malformed ledger entry %s: %s", code, exc)
            del approvals[code]
            return None
        if request.code != code or not request.is_authentic(self._key):
            logger.warning(
                "Removing ledger entry %s for %s__%s: signature mismatch "
                "(entry was modified outside the gate)",
                code, request.server, request.tool,
            )
            del approvals[code]
            return None
        return request

    @staticmethod
    def _sweep(approvals: dict[str, Any], now: datetime) -> int:
        """Drop entries past their expiry. Unparseable expiries are dropped too."""
        stale = []
        for code, raw in approvals.items():
            try:
                expires = _parse_timestamp(raw["expires_at"])
            except (KeyError, TypeError, ValueError, AttributeError):
                stale.append(code)
                continue
            if now >= expires:
                stale.append(code)
        for code in stale:
            del approvals[code]
        if stale:
            logger.debug("Swept %d expired approval(s)", len(stale))
        return len(stale)
