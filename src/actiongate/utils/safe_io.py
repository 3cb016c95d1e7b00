"""Safe file I/O for gate state: atomic replace, owner-only modes, ledger lock.

Every file the gate trusts (protection key, approval ledger, review queue)
is rewritten through :func:`atomic_write_sync`:

* the target must not be a symlink, so a planted link cannot redirect the
  write to an arbitrary file;
* data goes to a randomly-named sibling created by ``tempfile.mkstemp``,
  is fsync'd, then moved into place with ``os.replace``;
* files default to ``0o600`` and directories to ``0o700``.

Read-modify-write cycles on the approval ledger are additionally serialised
through :func:`exclusive_lock`, so two hook processes never interleave.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Iterator, Union

from filelock import FileLock, Timeout

logger = logging.getLogger("actiongate.safe_io")

# Seconds a hook process waits for another writer to release the ledger.
DEFAULT_LOCK_TIMEOUT = 10.0


class SecurityError(Exception):
    """Raised when a file operation would follow a symlink or is otherwise unsafe."""


class LockTimeoutError(Exception):
    """Raised when the ledger lock could not be acquired in time."""


def _reject_symlink(path: Path) -> None:
    if path.is_symlink():
        raise SecurityError(
            f"Refusing to use symlink: {path} -> {os.readlink(str(path))}"
        )


def atomic_write_sync(
    target_path: Union[str, Path],
    data: Union[bytes, str],
    mode: int = 0o600,
) -> None:
    """Replace *target_path* with *data* in a single atomic rename.

    Readers observe either the previous content or the new content, never
    a truncated file. ``str`` data is encoded as UTF-8.

    Raises:
        SecurityError: If *target_path* is a symlink.
        OSError: If the temp file cannot be created, written or renamed.
            The temp file is removed on any failure.
    """
    target = Path(target_path)
    _reject_symlink(target)

    raw = data.encode("utf-8") if isinstance(data, str) else data

    fd: int | None = None
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(target.parent),
            prefix=f".{target.name}.",
            suffix=".tmp",
        )
        view = memoryview(raw)
        while view:
            written = os.write(fd, view)
            if written == 0:
                raise OSError("os.write returned 0 bytes")
            view = view[written:]
        os.fsync(fd)
        os.close(fd)
        fd = None

        if sys.platform != "win32":
            os.chmod(tmp_path, mode)

        os.replace(tmp_path, str(target))
        tmp_path = None

        # Make the rename itself durable
        try:
            dir_fd = os.open(str(target.parent), os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except (OSError, AttributeError):
            pass
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)


def ensure_secure_dir(
    dir_path: Union[str, Path],
    mode: int = 0o700,
) -> None:
    """Create *dir_path* (and parents) with restricted permissions.

    An existing directory is left in place; its mode is only tightened when
    it is owned by the current user.

    Raises:
        SecurityError: If *dir_path* is a symlink.
    """
    d = Path(dir_path)
    _reject_symlink(d)
    os.makedirs(str(d), mode=mode, exist_ok=True)

    if sys.platform == "win32":
        return
    try:
        st = os.stat(str(d), follow_symlinks=False)
        if st.st_uid == os.getuid() and (st.st_mode & 0o777) != mode:
            os.chmod(str(d), mode)
    except OSError as exc:
        logger.debug("Could not tighten permissions on %s: %s", d, exc)


@contextlib.contextmanager
def exclusive_lock(
    target_path: Union[str, Path],
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> Iterator[None]:
    """Hold an exclusive inter-process lock for *target_path*.

    The lock lives in a sibling ``<name>.lock`` file, so the data file
    itself can still be replaced atomically while the lock is held.

    Raises:
        LockTimeoutError: If another process holds the lock for longer
            than *timeout* seconds.
    """
    target = Path(target_path)
    lock = FileLock(str(target.with_name(target.name + ".lock")), timeout=timeout)
    try:
        lock.acquire()
    except Timeout as exc:
        raise LockTimeoutError(
            f"Timed out after {timeout}s waiting for lock on {target}"
        ) from exc
    try:
        yield
    finally:
        lock.release()
