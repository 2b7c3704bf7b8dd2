"""lock.py — one discovery pass at a time per group and command.

The lock is an ``flock`` advisory lock on a fixed path.  It is taken with
``LOCK_NB`` so a second invocation fails immediately instead of queueing,
and the kernel drops it if the holder dies.

Typical usage::

    from ngs_launcher.lock import acquire_lock

    with acquire_lock(config.lock_file("concordance")):
        run_concordance(config)
"""
from __future__ import annotations

__all__ = ["acquire_lock"]

import fcntl
import logging
import os
import signal
import socket
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ngs_launcher.errors import LockHeldError

logger = logging.getLogger(__name__)

_RELEASE_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def _raise_exit(signum, _frame) -> None:
    raise SystemExit(128 + signum)


@contextmanager
def acquire_lock(lock_path: str | Path) -> Iterator[Path]:
    """Hold an exclusive lock on *lock_path* for the duration of the block.

    While the lock is held, SIGTERM and SIGHUP raise :class:`SystemExit` so
    the ``with`` block unwinds and the lock is released; the previous
    handlers are restored afterwards.

    Raises
    ------
    LockHeldError
        If another process already holds the lock.  Nothing is written in
        that case.
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o640)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        holder = _read_holder(fd)
        os.close(fd)
        raise LockHeldError(lock_path, holder) from None

    previous = {}
    try:
        for signum in _RELEASE_SIGNALS:
            previous[signum] = signal.signal(signum, _raise_exit)
    except ValueError:
        # signal.signal only works in the main thread
        previous = {}

    try:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}@{socket.gethostname()}\n".encode())
        logger.debug("Got exclusive access to lock file %s", lock_path)
        yield lock_path
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Released lock file %s", lock_path)


def _read_holder(fd: int) -> str:
    try:
        return os.pread(fd, 256, 0).decode(errors="replace").strip()
    except OSError:
        return ""
