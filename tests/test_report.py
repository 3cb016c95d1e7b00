"""Tests for actiongate.report — read-only listings and the reference doc."""

import copy
from datetime import datetime, timezone

import pytest

from actiongate.credentials import encrypt
from actiongate.ledger import ApprovalLedger, MemoryLedgerStore
from actiongate.policy import parse_policy_document
from actiongate.report import (
    check_credential_mappings,
    describe_request,
    list_protections,
    render_reference_doc,
    request_status,
)

from conftest import SAMPLE_POLICY, TEST_KEY


@pytest.fixture()
def document():
    return parse_policy_document(copy.deepcopy(SAMPLE_POLICY))


@pytest.fixture()
def ledger(clock):
    return ApprovalLedger(MemoryLedgerStore(), TEST_KEY, clock=clock)


class TestListProtections:

    def test_rows_sorted_by_server(self, document):
        rows = list_protections(document)
        assert [r["server"] for r in rows] == ["db", "git"]
        assert rows[0]["tools"] == "*"
        assert rows[1]["tools"] == ["delete_repository", "force_push"]
        assert rows[0]["approve_with"] == "APPROVE DB <CODE>"
        assert rows[0]["credential_keys"] == ["DB_PASSWORD"]


class TestRequestViews:

    def test_describe_hides_signatures(self, ledger, clock):
        request = ledger.create_request("db", "drop_table", {"t": 1}, "APPROVE DB")
        clock.tick(60)
        view = describe_request(request, clock())
        assert view["status"] == "pending"
        assert view["seconds_remaining"] == 240
        assert view["approve_with"] == f"APPROVE DB {request.code}"
        assert "pending_hmac" not in view
        assert "approved_hmac" not in view
        assert "args" not in view

    def test_expired_status(self, ledger, clock):
        request = ledger.create_request("db", "drop_table", {}, "APPROVE DB")
        clock.tick(400)
        view = describe_request(request, clock())
        assert view["status"] == "expired"
        assert view["seconds_remaining"] == 0

    def test_request_status(self, ledger):
        request = ledger.create_request("db", "drop_table", {}, "APPROVE DB")
        assert request_status(ledger, request.code)["status"] == "pending"
        ledger.validate_confirmation("APPROVE DB", request.code)
        assert request_status(ledger, request.code.lower())["status"] == "approved"

    def test_request_status_not_found(self, ledger):
        assert request_status(ledger, " zzzzzz ") == {"code": "ZZZZZZ", "status": "not_found"}


class TestReferenceDoc:

    def test_render(self, document):
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
        text = render_reference_doc(document, ttl_seconds=120, generated_at=stamp)
        assert text.startswith("# Protected Actions")
        assert "2026-01-01T00:00:00+00:00" in text
        assert "### db" in text
        assert "| **Protected tools** | All tools |" in text
        assert "delete_repository, force_push" in text
        assert "`APPROVE GIT <CODE>`" in text
        assert "## Unprotected servers" in text
        assert "- docs" in text
        assert "2 minutes" in text

    def test_render_empty(self):
        text = render_reference_doc(parse_policy_document({}))
        assert "_No servers are protected._" in text
        assert "## Unprotected servers" not in text


class TestCredentialHealth:

    def test_missing_mapping(self, document):
        health = check_credential_mappings(document, {})
        assert not health.ok
        assert health.missing == ["DB_PASSWORD"]
        assert "1 of 1" in health.summary()

    def test_classifies_values(self):
        doc = parse_policy_document({"servers": {
            "a": {"phrase": "A", "credentialKeys": ["ENC", "VAULT", "PLAIN"]},
        }})
        health = check_credential_mappings(doc, {
            "ENC": encrypt("x", TEST_KEY),
            "VAULT": "op://vault/item/field",
            "PLAIN": "value",
        })
        assert health.ok
        assert health.encrypted == ["ENC"]
        assert health.vault_references == ["VAULT"]
        assert health.summary() == "All 3 credential mapping(s) configured."

    def test_no_requirements(self):
        health = check_credential_mappings(parse_policy_document({}), {})
        assert health.ok
        assert "No credential keys" in health.summary()
