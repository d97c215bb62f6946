"""Advisory file locks and atomic file replacement.

The index cache and the lock file are shared between processes: readers
take a shared ``flock``, writers an exclusive one. Writers always go
through ``atomic_write_bytes`` so an interrupted write never leaves a
partial file behind.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import tempfile
from pathlib import Path
from typing import Iterator, Union

PathLike = Union[str, "os.PathLike[str]"]


def _lock_path(target: Path) -> Path:
    return target.with_name(f".{target.name}.lock")


@contextlib.contextmanager
def _flock(target: PathLike, mode: int) -> Iterator[None]:
    path = _lock_path(Path(target))
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = path.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), mode)
        yield
    finally:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        handle.close()


def shared_lock(target: PathLike):
    """Hold a shared (reader) lock on ``target`` for the ``with`` block."""
    return _flock(target, fcntl.LOCK_SH)


def exclusive_lock(target: PathLike):
    """Hold an exclusive (writer) lock on ``target`` for the ``with`` block."""
    return _flock(target, fcntl.LOCK_EX)


def atomic_write_bytes(target: PathLike, data: bytes) -> None:
    """Write ``data`` to a temp file next to ``target`` and rename it over.

    The caller is expected to hold ``exclusive_lock(target)``.
    """
    path = Path(target)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise
