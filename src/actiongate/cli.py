"""
CLI entry point for the ``actiongate`` admin command.

Subcommands::

    actiongate keygen [--force]          provision the protection key
    actiongate encrypt [--value V]       encrypt a credential for the vault mappings
    actiongate decrypt VALUE             decrypt an encrypted credential
    actiongate list                      protected servers and their phrases
    actiongate status CODE               status of one approval request
    actiongate pending                   outstanding approval requests
    actiongate spec-doc [--output PATH]  markdown reference of protected actions
    actiongate health                    key, policy and credential mapping checks

There is no ``approve`` subcommand: approvals are only accepted
from the human's own prompt via ``actiongate-confirm``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Optional

from .config import GateSettings, load_settings
from .credentials import decrypt, encrypt, is_encrypted, load_vault_mappings
from .errors import ActionGateError, KeyStoreError
from .keystore import ProtectionKeyStore
from .ledger import ApprovalLedger, JsonFileLedgerStore
from .policy import load_policy_document
from .report import (
    check_credential_mappings,
    describe_request,
    list_protections,
    render_reference_doc,
    request_status,
)
from .utils.safe_io import atomic_write_sync
from .version import __version__

logger = logging.getLogger("actiongate.cli")


# =============================================================================
# HELPERS
# =============================================================================

def _fail(message: str, code: int = 1) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return code


def _require_key(settings: GateSettings) -> bytes:
    """Load the protection key or raise :class:`KeyStoreError`."""
    key = ProtectionKeyStore(settings.key_path).load()
    if key is None:
        raise KeyStoreError(
            f"No protection key at {settings.key_path}. Run: actiongate keygen"
        )
    return key


def _open_ledger(settings: GateSettings) -> ApprovalLedger:
    return ApprovalLedger(
        JsonFileLedgerStore(settings.ledger_path),
        _require_key(settings),
        ttl_seconds=settings.approval_ttl_seconds,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def format_request_summary(view: dict) -> str:
    """Format one request view (see :func:`describe_request`) for the terminal."""
    if view.get("status") == "not_found":
        return f"No approval request with code {view['code']}."
    lines = [
        f"Code:      {view['code']}",
        f"Server:    {view['server']}",
        f"Tool:      {view['tool']}",
        f"Status:    {view['status'].upper()}",
        f"Created:   {view['created_at']}",
        f"Expires:   {view['expires_at']} ({view['seconds_remaining']}s left)",
    ]
    if view.get("approved_at"):
        lines.append(f"Approved:  {view['approved_at']}")
    if view["status"] == "pending":
        lines.append(f"Approve:   {view['approve_with']}")
    return "\n".join(lines)


# =============================================================================
# SUBCOMMANDS
# =============================================================================

def cmd_keygen(args, settings: GateSettings) -> int:
    store = ProtectionKeyStore(settings.key_path)
    if store.exists() and not args.force:
        print(f"Error: Protection key already exists: {store.path}", file=sys.stderr)
        print(
            "Regenerating it invalidates every encrypted credential and "
            "outstanding approval. Pass --force to replace it.",
            file=sys.stderr,
        )
        return 1
    store.generate(overwrite=args.force)
    print(f"Protection key written to {store.path} (mode 0600)")
    print()
    print("Next steps:")
    print("  1. Keep this file out of version control")
    print("  2. Encrypt credentials:  actiongate encrypt --env-var NAME")
    print("  3. Check the setup:      actiongate health")
    return 0


def cmd_encrypt(args, settings: GateSettings) -> int:
    key = _require_key(settings)
    value = args.value
    if value is None:
        value = sys.stdin.readline().rstrip("\n")
    if not value:
        return _fail("Nothing to encrypt (pass --value or pipe the value on stdin)")
    if is_encrypted(value):
        return _fail("Value is already encrypted")
    sealed = encrypt(value, key)
    if args.env_var:
        print(f"{args.env_var}={sealed}")
    else:
        print(sealed)
    return 0


def cmd_decrypt(args, settings: GateSettings) -> int:
    key = _require_key(settings)
    if not is_encrypted(args.value):
        return _fail("Value is not an encrypted credential")
    plaintext = decrypt(args.value, key)
    if plaintext is None:
        return _fail("Decryption failed (wrong key or tampered value)")
    print(plaintext)
    return 0


def cmd_list(args, settings: GateSettings) -> int:
    document = load_policy_document(settings.policy_path)
    rows = list_protections(document)
    if args.json:
        _print_json({
            "servers": rows,
            "allowed_unprotected": sorted(document.allowed_unprotected),
        })
        return 0

    print("=" * 60)
    print("PROTECTED SERVERS")
    print("=" * 60)
    if not rows:
        print("  (none)")
    for row in rows:
        tools = row["tools"] if isinstance(row["tools"], str) else ", ".join(row["tools"])
        print(f"  {row['server']}")
        print(f"      Phrase:     {row['phrase']}")
        print(f"      Tools:      {tools}")
        print(f"      Protection: {row['protection']}")
        if row["description"]:
            print(f"      About:      {row['description']}")
    if document.allowed_unprotected:
        print()
        print("Unprotected: " + ", ".join(sorted(document.allowed_unprotected)))
    print("=" * 60)
    return 0


def cmd_status(args, settings: GateSettings) -> int:
    view = request_status(_open_ledger(settings), args.code)
    if args.json:
        _print_json(view)
    else:
        print(format_request_summary(view))
    return 1 if view["status"] == "not_found" else 0


def cmd_pending(args, settings: GateSettings) -> int:
    ledger = _open_ledger(settings)
    now = ledger.now()
    views = [describe_request(r, now) for r in ledger.list_requests()]
    if args.json:
        _print_json(views)
        return 0
    if not views:
        print("No outstanding approval requests.")
        return 0
    for view in views:
        print("-" * 60)
        print(format_request_summary(view))
    print("-" * 60)
    return 0


def cmd_spec_doc(args, settings: GateSettings) -> int:
    document = load_policy_document(settings.policy_path)
    text = render_reference_doc(document, ttl_seconds=settings.approval_ttl_seconds)
    if args.output:
        atomic_write_sync(args.output, text, mode=0o644)
        print(f"Reference written to {args.output}")
    else:
        print(text)
    return 0


def cmd_health(args, settings: GateSettings) -> int:
    problems = 0

    print("=" * 60)
    print("ACTIONGATE HEALTH")
    print("=" * 60)

    try:
        key = ProtectionKeyStore(settings.key_path).load()
    except KeyStoreError as e:
        key = None
        print(f"  [✗] Protection key: {e}")
        problems += 1
    else:
        if key is None:
            print(f"  [✗] Protection key: missing ({settings.key_path})")
            problems += 1
        else:
            print(f"  [✓] Protection key: {settings.key_path}")

    try:
        document = load_policy_document(settings.policy_path)
    except ActionGateError as e:
        print(f"  [✗] Policy: {e}")
        print("=" * 60)
        return 1
    print(f"  [✓] Policy: {len(document.servers)} protected server(s)")

    try:
        mappings = load_vault_mappings(settings.vault_mappings_path)
    except (OSError, ValueError) as e:
        print(f"  [✗] Credential mappings: {e}")
        print("=" * 60)
        return 1

    health = check_credential_mappings(document, mappings)
    icon = "✓" if health.ok else "✗"
    print(f"  [{icon}] Credentials: {health.summary()}")
    if not health.ok:
        problems += 1
    if health.encrypted and key is not None:
        undecryptable = [
            name for name in health.encrypted if decrypt(mappings[name], key) is None
        ]
        if undecryptable:
            print(f"      └─ cannot decrypt: {', '.join(undecryptable)}")
            problems += 1
    if health.vault_references:
        print(f"      └─ external vault references: {', '.join(health.vault_references)}")

    print("=" * 60)
    return 1 if problems else 0


# =============================================================================
# PARSER
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="actiongate",
        description="Administer the protected action approval gate",
        epilog="Exit codes: 0=ok, 1=error or problem found, 2=invalid configuration",
    )
    parser.add_argument("--project-dir", help="Project root (default: $ACTIONGATE_PROJECT_DIR or cwd)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"actiongate {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("keygen", help="Generate the protection key")
    p.add_argument("--force", action="store_true",
                   help="Replace an existing key (invalidates encrypted values)")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("encrypt", help="Encrypt a credential value")
    p.add_argument("--value", help="Plaintext value (default: read one line from stdin)")
    p.add_argument("--env-var", help="Print as NAME=<encrypted> for the given name")
    p.set_defaults(func=cmd_encrypt)

    p = sub.add_parser("decrypt", help="Decrypt an encrypted credential value")
    p.add_argument("value", help="Encrypted value")
    p.set_defaults(func=cmd_decrypt)

    p = sub.add_parser("list", help="List protected servers")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("status", help="Show one approval request")
    p.add_argument("code", help="6-character approval code")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("pending", help="List outstanding approval requests")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(func=cmd_pending)

    p = sub.add_parser("spec-doc", help="Generate the protected actions reference")
    p.add_argument("--output", "-o", help="Output file (default: stdout)")
    p.set_defaults(func=cmd_spec_doc)

    p = sub.add_parser("health", help="Check key, policy and credential mappings")
    p.set_defaults(func=cmd_health)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the actiongate command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(project_dir=args.project_dir)
    except ActionGateError as e:
        return _fail(str(e), 2)

    try:
        return args.func(args, settings)
    except ActionGateError as e:
        return _fail(str(e))


if __name__ == "__main__":
    sys.exit(main())
