"""Shared fixtures for the ActionGate test suite.

Every test gets an isolated project directory: the ``ACTIONGATE_*`` and
``CLAUDE_PROJECT_DIR`` environment variables are cleared so a developer's
real project can never leak into a test run.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from actiongate.config import load_settings
from actiongate.keystore import ProtectionKeyStore

TEST_KEY = bytes(range(32))
OTHER_KEY = bytes(range(100, 132))

START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

SAMPLE_POLICY = {
    "version": "1.0.0",
    "servers": {
        "db": {
            "phrase": "APPROVE DB",
            "tools": "*",
            "credentialKeys": ["DB_PASSWORD"],
            "protection": "credential-isolated",
            "description": "Production database",
        },
        "git": {
            "phrase": "APPROVE GIT",
            "tools": ["delete_repository", "force_push"],
        },
    },
    "allowedUnprotectedServers": ["docs"],
}


class FakeClock:
    """Injectable clock; advance it explicitly with :meth:`tick`."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def tick(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    for name in list(os.environ):
        if name.startswith("ACTIONGATE_") or name == "CLAUDE_PROJECT_DIR":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def project(tmp_path) -> Path:
    """Empty project root with a ``.claude/hooks`` directory."""
    (tmp_path / ".claude" / "hooks").mkdir(parents=True)
    return tmp_path


def write_policy(project_dir: Path, policy=None) -> Path:
    path = project_dir / ".claude" / "hooks" / "protected-actions.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    body = policy if isinstance(policy, str) else json.dumps(policy or SAMPLE_POLICY)
    path.write_text(body)
    return path


@pytest.fixture()
def configured_project(project) -> Path:
    """Project with the sample policy and a freshly generated key."""
    write_policy(project)
    ProtectionKeyStore(project / ".claude" / "protection-key").generate()
    return project


@pytest.fixture()
def settings(configured_project):
    return load_settings(project_dir=configured_project)


@pytest.fixture()
def project_env(configured_project) -> dict:
    return {"ACTIONGATE_PROJECT_DIR": str(configured_project)}
