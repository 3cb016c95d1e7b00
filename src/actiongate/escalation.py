"""
Operator escalation for gate failures the gate cannot resolve itself.

When the gate blocks because its own state is broken (corrupt policy
document or ledger, missing protection key) no amount of agent retrying
will help; an operator has to act. These targets deliver that event:

- **log**: Python logging at WARNING (default)
- **webhook**: POST JSON to a URL via httpx
- **callback**: call a function registered with
  :func:`register_escalation_callback`
- **queue**: append an item to the operator review queue JSON file

Escalation is best-effort. It never changes the gate decision, and a
failed delivery is reported on the returned :class:`EscalationResult`.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .config import EscalationSettings
from .utils.safe_io import (
    LockTimeoutError,
    SecurityError,
    atomic_write_sync,
    ensure_secure_dir,
    exclusive_lock,
)
from .utils.safe_json import load_json_object

logger = logging.getLogger("actiongate.escalation")

# Oldest resolved-or-not items are dropped beyond this many.
MAX_QUEUE_ITEMS = 500


# =============================================================================
# CALLBACK REGISTRY
# =============================================================================

_CALLBACK_REGISTRY: dict[str, Callable] = {}


def register_escalation_callback(name: str, handler: Callable) -> None:
    """Register *handler* under *name* for ``escalation.type: callback``."""
    _CALLBACK_REGISTRY[name] = handler


def clear_escalation_callbacks() -> None:
    _CALLBACK_REGISTRY.clear()


def get_escalation_callback(name: str) -> Optional[Callable]:
    return _CALLBACK_REGISTRY.get(name)


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class EscalationResult:
    """Result of delivering one escalation.

    Attributes:
        success: Whether delivery completed.
        target_type: ``"log"``, ``"webhook"``, ``"callback"`` or ``"queue"``.
        details: Delivered payload, or error information.
    """
    success: bool
    target_type: str
    details: dict


# =============================================================================
# EXECUTION
# =============================================================================

def escalate(settings: EscalationSettings, event_details: dict) -> EscalationResult:
    """Deliver *event_details* to the configured target.

    Webhook, callback and queue targets with missing configuration fall
    back to the log target.
    """
    timestamp = datetime.now(timezone.utc).isoformat()

    if settings.type == "webhook" and settings.url:
        return _execute_webhook(settings.url, event_details, timestamp)
    if settings.type == "callback" and settings.handler:
        return _execute_callback(settings.handler, event_details, timestamp)
    if settings.type == "queue" and settings.queue_path is not None:
        return _execute_queue(settings.queue_path, event_details, timestamp)
    if settings.type != "log":
        logger.warning(
            "Escalation target '%s' is not fully configured, falling back to log",
            settings.type,
        )
    return _execute_log(event_details, timestamp)


def _execute_log(event_details: dict, timestamp: str) -> EscalationResult:
    log_entry = {"timestamp": timestamp, "type": "escalation", **event_details}
    logger.warning("Escalation event: %s", log_entry)
    return EscalationResult(success=True, target_type="log", details=log_entry)


def _execute_webhook(url: str, event_details: dict, timestamp: str) -> EscalationResult:
    try:
        import httpx
    except ImportError:
        return EscalationResult(
            success=False,
            target_type="webhook",
            details={
                "url": url,
                "error": "httpx is not installed. Install it with: pip install actiongate[webhook]",
            },
        )

    payload = {"timestamp": timestamp, "type": "escalation", **event_details}
    try:
        with httpx.Client(timeout=5.0, follow_redirects=False) as client:
            resp = client.post(url, json=payload)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Webhook escalation failed: %s", e)
        return EscalationResult(
            success=False,
            target_type="webhook",
            details={"url": url, "error": str(e), "payload": payload},
        )
    return EscalationResult(
        success=True,
        target_type="webhook",
        details={"url": url, "status_code": resp.status_code, "payload": payload},
    )


def _execute_callback(name: str, event_details: dict, timestamp: str) -> EscalationResult:
    handler = get_escalation_callback(name)
    if handler is None:
        logger.warning("Escalation callback '%s' is not registered, falling back to log", name)
        return _execute_log(event_details, timestamp)
    try:
        result = handler({"timestamp": timestamp, **event_details})
    except Exception as e:
        logger.error("Callback escalation '%s' failed: %s", name, e)
        return EscalationResult(
            success=False,
            target_type="callback",
            details={"error": str(e), "event": event_details},
        )
    return EscalationResult(
        success=True,
        target_type="callback",
        details={"callback_result": result, "event": event_details},
    )


def _execute_queue(path: Path, event_details: dict, timestamp: str) -> EscalationResult:
    """Append a pending item to ``{"items": [...]}`` at *path*.

    An identical unresolved item (same reason and title) is not duplicated;
    its ``occurrences`` counter is bumped instead.
    """
    title = str(event_details.get("title") or event_details.get("reason", "escalation"))
    try:
        ensure_secure_dir(path.parent)
        with exclusive_lock(path):
            items = _read_queue_items(path)
            existing = next(
                (
                    item for item in items
                    if item.get("status") == "pending"
                    and item.get("reason") == event_details.get("reason")
                    and item.get("title") == title
                ),
                None,
            )
            if existing is not None:
                existing["occurrences"] = int(existing.get("occurrences", 1)) + 1
                existing["last_seen_at"] = timestamp
                item = existing
            else:
                item = {
                    "id": f"esc_{uuid.uuid4().hex}",
                    "type": "escalation",
                    "source": "actiongate",
                    "status": "pending",
                    "title": title,
                    "created_at": timestamp,
                    "last_seen_at": timestamp,
                    "occurrences": 1,
                    **event_details,
                }
                items.append(item)
            items = items[-MAX_QUEUE_ITEMS:]
            atomic_write_sync(path, json.dumps({"items": items}, indent=2) + "\n")
    except (OSError, ValueError, SecurityError, LockTimeoutError) as e:
        logger.error("Review queue escalation to %s failed: %s", path, e)
        return EscalationResult(
            success=False,
            target_type="queue",
            details={"path": str(path), "error": str(e), "event": event_details},
        )
    return EscalationResult(
        success=True,
        target_type="queue",
        details={"path": str(path), "item": item},
    )


def _read_queue_items(path: Path) -> list:
    if not path.exists():
        return []
    doc = load_json_object(path)
    items = doc.get("items", [])
    if not isinstance(items, list):
        raise ValueError(f"'items' in {path} must be a list")
    return [item for item in items if isinstance(item, dict)]
