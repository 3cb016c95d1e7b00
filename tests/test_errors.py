"""Tests for actiongate.errors — reason taxonomy and exception defaults."""

from actiongate.errors import (
    ActionGateError,
    GateReason,
    KeyStoreError,
    PolicyConfigError,
    StorageWriteError,
)


class TestGateReason:

    def test_failures(self):
        failures = {r for r in GateReason if r.is_failure}
        assert failures == {
            GateReason.CONFIG_MISSING,
            GateReason.CONFIG_CORRUPT,
            GateReason.KEY_MISSING,
            GateReason.FORGED_SIGNATURE,
            GateReason.EXPIRED,
            GateReason.ALREADY_USED,
            GateReason.WRONG_PHRASE,
            GateReason.NO_SUCH_CODE,
            GateReason.STORAGE_WRITE_FAILURE,
        }

    def test_outcomes_are_not_failures(self):
        assert not GateReason.APPROVED.is_failure
        assert not GateReason.NOT_APPLICABLE.is_failure


class TestExceptionReasons:

    def test_defaults(self):
        assert ActionGateError("x").reason is GateReason.CONFIG_CORRUPT
        assert KeyStoreError("x").reason is GateReason.KEY_MISSING
        assert StorageWriteError("x").reason is GateReason.STORAGE_WRITE_FAILURE
        assert StorageWriteError("x").request is None

    def test_explicit_reason(self):
        err = PolicyConfigError("gone", GateReason.CONFIG_MISSING)
        assert err.reason is GateReason.CONFIG_MISSING
        assert str(err) == "gone"
