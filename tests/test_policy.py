"""Tests for actiongate.policy — document loading and (server, tool) resolution."""

import copy
import json

import pytest

from actiongate.errors import GateReason, PolicyConfigError
from actiongate.policy import (
    ResolutionKind,
    approval_command,
    load_policy_document,
    normalize_phrase,
    parse_policy_document,
    resolve_policy,
)

from conftest import SAMPLE_POLICY, write_policy


@pytest.fixture()
def document():
    return parse_policy_document(copy.deepcopy(SAMPLE_POLICY))


class TestPhrases:

    @pytest.mark.parametrize("raw", ["APPROVE DB", "approve  db", "DB", " db "])
    def test_normalize(self, raw):
        assert normalize_phrase(raw) == "DB"

    def test_lone_approve_is_kept(self):
        """A phrase that is only the keyword is not reduced to nothing."""
        assert normalize_phrase("approve") == "APPROVE"

    def test_approval_command(self):
        assert approval_command("APPROVE PROD", "K7XM2P") == "APPROVE PROD K7XM2P"
        assert approval_command("prod", "K7XM2P") == "APPROVE PROD K7XM2P"


class TestLoadPolicyDocument:

    def test_missing_file_is_config_missing(self, tmp_path):
        with pytest.raises(PolicyConfigError) as exc_info:
            load_policy_document(tmp_path / "protected-actions.json")
        assert exc_info.value.reason is GateReason.CONFIG_MISSING

    def test_invalid_json_is_config_corrupt(self, project):
        path = write_policy(project, "{ not json")
        with pytest.raises(PolicyConfigError) as exc_info:
            load_policy_document(path)
        assert exc_info.value.reason is GateReason.CONFIG_CORRUPT

    def test_duplicate_keys_are_corrupt(self, project):
        path = write_policy(project, '{"servers": {}, "servers": {}}')
        with pytest.raises(PolicyConfigError, match="Duplicate"):
            load_policy_document(path)

    def test_loads_sample(self, project):
        doc = load_policy_document(write_policy(project))
        assert doc.version == "1.0.0"
        assert set(doc.servers) == {"db", "git"}
        assert doc.allowed_unprotected == frozenset({"docs"})
        assert doc.servers["db"].protects_all_tools
        assert doc.servers["git"].tools == frozenset({"delete_repository", "force_push"})
        assert doc.servers["db"].credential_keys == ("DB_PASSWORD",)


class TestParseValidation:

    def _corrupt(self, raw, match):
        with pytest.raises(PolicyConfigError, match=match) as exc_info:
            parse_policy_document(raw)
        assert exc_info.value.reason is GateReason.CONFIG_CORRUPT

    def test_duplicate_phrases_rejected(self):
        """Phrases must be unique after normalization."""
        self._corrupt({"servers": {
            "a": {"phrase": "APPROVE PROD"},
            "b": {"phrase": "prod"},
        }}, "used by both")

    def test_separator_in_server_id_rejected(self):
        self._corrupt({"servers": {"a__b": {"phrase": "X"}}}, "must not contain")

    def test_bad_tools_selector(self):
        self._corrupt({"servers": {"a": {"phrase": "X", "tools": "all"}}}, "tools")

    def test_missing_phrase(self):
        self._corrupt({"servers": {"a": {"tools": "*"}}}, "phrase")

    def test_unknown_protection_mode(self):
        self._corrupt({"servers": {"a": {"phrase": "X", "protection": "vault"}}}, "protection")

    @pytest.mark.parametrize("mode", [[], {"kind": "vault"}, 1])
    def test_non_string_protection_mode(self, mode):
        """Unhashable values fail validation instead of raising TypeError."""
        self._corrupt({"servers": {"a": {"phrase": "X", "protection": mode}}}, "protection")

    def test_allow_list_must_be_names(self):
        self._corrupt({"allowedUnprotectedServers": "docs"}, "allowedUnprotectedServers")

    def test_server_both_protected_and_allowed(self):
        self._corrupt({
            "servers": {"docs": {"phrase": "X"}},
            "allowedUnprotectedServers": ["docs"],
        }, "both protected and unprotected")

    def test_empty_document_is_valid(self):
        doc = parse_policy_document({})
        assert doc.servers == {}
        assert doc.allowed_unprotected == frozenset()

    def test_to_dict_roundtrips(self, document):
        raw = {"servers": {k: p.to_dict() for k, p in document.servers.items()}}
        again = parse_policy_document(json.loads(json.dumps(raw)))
        assert again.servers == document.servers

    def test_policy_for_phrase(self, document):
        assert document.policy_for_phrase("approve git").server_id == "git"
        assert document.policy_for_phrase("APPROVE NOPE") is None


class TestResolvePolicy:

    def test_wildcard_server_protects_every_tool(self, document):
        res = resolve_policy("db", "anything", document)
        assert res.kind is ResolutionKind.PROTECTED
        assert res.policy.server_id == "db"

    def test_listed_tool_protected(self, document):
        assert resolve_policy("git", "force_push", document).protected

    def test_unlisted_tool_unprotected(self, document):
        res = resolve_policy("git", "list_branches", document)
        assert res.kind is ResolutionKind.UNPROTECTED
        assert res.policy is None

    def test_allow_listed_server(self, document):
        assert resolve_policy("docs", "search", document).kind is ResolutionKind.UNPROTECTED

    def test_unknown_server_is_unrecognized(self, document):
        """Fail-closed default: servers outside the document are not allowed."""
        res = resolve_policy("shadow", "run", document)
        assert res.kind is ResolutionKind.UNRECOGNIZED
        assert "shadow" in res.reason

    def test_unknown_server_default_pass(self, document, caplog):
        with caplog.at_level("WARNING", logger="actiongate.policy"):
            res = resolve_policy("shadow", "run", document, default_protect=False)
        assert res.kind is ResolutionKind.UNPROTECTED
        assert "default_protect" in caplog.text
