"""
Protection key store.

The protection key is 32 random bytes stored base64-encoded in a single
owner-only file. It signs every ledger entry and encrypts stored
credentials, so it is the root of trust for the whole gate.

:meth:`ProtectionKeyStore.load` never creates a key. An absent key is a
distinct fail-closed condition; provisioning happens only through
:meth:`ProtectionKeyStore.generate`, called by the ``actiongate keygen``
administrative command.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import stat
import sys
from pathlib import Path
from typing import Optional, Union

from .errors import GateReason, KeyStoreError
from .utils.safe_io import SecurityError, atomic_write_sync, ensure_secure_dir

logger = logging.getLogger("actiongate.keystore")

KEY_LENGTH = 32


class ProtectionKeyStore:
    """Reads (and, on explicit request, provisions) the protection key file."""

    def __init__(self, key_path: Union[str, Path]) -> None:
        self._path = Path(key_path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> Optional[bytes]:
        """Return the key, or ``None`` if no key file is present.

        Raises:
            KeyStoreError: If the file exists but is a symlink, unreadable,
                not base64, or not exactly 32 bytes. Callers in the gate
                treat this the same as a missing key.
        """
        if self._path.is_symlink():
            raise KeyStoreError(
                f"Protection key path is a symlink: {self._path}",
                GateReason.KEY_MISSING,
            )
        if not self._path.is_file():
            logger.debug("No protection key at %s", self._path)
            return None

        try:
            text = self._path.read_text(encoding="ascii").strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise KeyStoreError(
                f"Cannot read protection key {self._path}: {exc}",
                GateReason.KEY_MISSING,
            ) from exc

        try:
            key = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise KeyStoreError(
                f"Protection key {self._path} is not valid base64",
                GateReason.KEY_MISSING,
            ) from exc

        if len(key) != KEY_LENGTH:
            raise KeyStoreError(
                f"Protection key {self._path} has {len(key)} bytes, "
                f"expected {KEY_LENGTH}",
                GateReason.KEY_MISSING,
            )

        self._warn_if_permissive()
        return key

    def generate(self, *, overwrite: bool = False) -> bytes:
        """Create and persist a new random key with mode ``0o600``.

        Replacing an existing key invalidates every outstanding approval
        and every credential encrypted under the old key, so *overwrite*
        must be passed explicitly.

        Raises:
            KeyStoreError: If a key already exists and *overwrite* is false.
        """
        if self._path.exists() and not overwrite:
            raise KeyStoreError(
                f"Protection key already exists: {self._path}",
                GateReason.CONFIG_CORRUPT,
            )
        key = os.urandom(KEY_LENGTH)
        try:
            ensure_secure_dir(self._path.parent)
            atomic_write_sync(
                self._path,
                base64.b64encode(key).decode("ascii") + "\n",
                mode=0o600,
            )
        except (OSError, SecurityError) as exc:
            raise KeyStoreError(
                f"Cannot write protection key {self._path}: {exc}",
                GateReason.STORAGE_WRITE_FAILURE,
            ) from exc
        logger.info("Generated new protection key at %s", self._path)
        return key

    def _warn_if_permissive(self) -> None:
        if sys.platform == "win32":
            return
        try:
            mode = stat.S_IMODE(os.stat(self._path).st_mode)
        except OSError:
            return
        if mode & 0o077:
            logger.warning(
                "Protection key %s is accessible by group/other (mode %o); "
                "restrict it to the owner with chmod 600",
                self._path, mode,
            )
