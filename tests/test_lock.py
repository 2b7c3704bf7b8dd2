"""Tests for lock.py — flock-based single-instance guard."""
import os
import signal

import pytest

from ngs_launcher.errors import LockHeldError
from ngs_launcher.lock import acquire_lock


def test_acquire_creates_lock_file(tmp_path):
    lock = tmp_path / "logs" / "concordance.lock"
    with acquire_lock(lock) as path:
        assert path == lock
        assert lock.exists()


def test_lock_file_records_holder(tmp_path):
    lock = tmp_path / "a.lock"
    with acquire_lock(lock):
        assert lock.read_text().startswith(f"{os.getpid()}@")


def test_second_acquire_fails_fast(tmp_path):
    lock = tmp_path / "a.lock"
    with acquire_lock(lock):
        with pytest.raises(LockHeldError) as excinfo:
            with acquire_lock(lock):
                pytest.fail("second holder entered the block")
    assert excinfo.value.lock_path == lock
    assert str(os.getpid()) in excinfo.value.holder


def test_failed_acquire_does_not_touch_holder_record(tmp_path):
    lock = tmp_path / "a.lock"
    with acquire_lock(lock):
        before = lock.read_text()
        with pytest.raises(LockHeldError):
            with acquire_lock(lock):
                pass
        assert lock.read_text() == before


def test_released_after_normal_exit(tmp_path):
    lock = tmp_path / "a.lock"
    with acquire_lock(lock):
        pass
    with acquire_lock(lock):
        pass


def test_released_after_exception(tmp_path):
    lock = tmp_path / "a.lock"
    with pytest.raises(RuntimeError):
        with acquire_lock(lock):
            raise RuntimeError("boom")
    with acquire_lock(lock):
        pass


def test_sigterm_unwinds_and_releases(tmp_path):
    lock = tmp_path / "a.lock"
    with pytest.raises(SystemExit) as excinfo:
        with acquire_lock(lock):
            os.kill(os.getpid(), signal.SIGTERM)
    assert excinfo.value.code == 128 + signal.SIGTERM
    with acquire_lock(lock):
        pass


def test_signal_handlers_restored(tmp_path):
    before = signal.getsignal(signal.SIGTERM)
    with acquire_lock(tmp_path / "a.lock"):
        assert signal.getsignal(signal.SIGTERM) is not before
    assert signal.getsignal(signal.SIGTERM) is before
