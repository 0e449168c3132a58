"""Unit tests for LockManager."""

import os
from unittest.mock import patch

import pytest

from hostupgrade.models.errors import AlreadyRunning, LockContention
from hostupgrade.services.lock import LockManager, pid_alive


@pytest.mark.unit
class TestLockManager:
    """Single-instance exclusion via PID lock file."""

    @pytest.fixture
    def lock_path(self, tmp_path):
        return tmp_path / "run" / "hostupgrade.lock"

    def test_acquire_writes_own_pid(self, lock_path):
        lock = LockManager(str(lock_path), pid=4242)
        lock.acquire()
        assert lock_path.read_text().strip() == "4242"
        assert lock.holder() == 4242

    def test_second_instance_with_live_holder_fails(self, lock_path):
        LockManager(str(lock_path), pid=1111).acquire()
        second = LockManager(str(lock_path), pid=2222)

        with patch("hostupgrade.services.lock.pid_alive", return_value=True):
            with pytest.raises(AlreadyRunning) as exc_info:
                second.acquire()

        assert exc_info.value.pid == 1111
        assert lock_path.read_text().strip() == "1111"

    def test_dead_holder_is_reclaimed(self, lock_path):
        LockManager(str(lock_path), pid=1111).acquire()
        second = LockManager(str(lock_path), pid=2222)

        with patch("hostupgrade.services.lock.pid_alive", return_value=False):
            second.acquire()

        assert lock_path.read_text().strip() == "2222"

    def test_garbage_lock_is_reclaimed(self, lock_path):
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text("not-a-pid\n")

        LockManager(str(lock_path), pid=3333).acquire()
        assert lock_path.read_text().strip() == "3333"

    def test_reacquire_by_same_pid(self, lock_path):
        lock = LockManager(str(lock_path), pid=os.getpid())
        lock.acquire()
        lock.acquire()
        assert lock.holder() == os.getpid()

    def test_release_is_unconditional(self, lock_path):
        LockManager(str(lock_path), pid=1111).acquire()
        LockManager(str(lock_path), pid=2222).release()
        assert not lock_path.exists()

    def test_context_manager_releases_on_error(self, lock_path):
        with pytest.raises(RuntimeError):
            with LockManager(str(lock_path)):
                assert lock_path.exists()
                raise RuntimeError("boom")
        assert not lock_path.exists()

    def test_lock_file_created_exclusively(self, lock_path):
        lock = LockManager(str(lock_path), pid=4242)

        with patch("hostupgrade.services.lock.os.open", wraps=os.open) as opener:
            lock.acquire()

        flags = opener.call_args.args[1]
        assert flags & os.O_EXCL
        assert flags & os.O_CREAT

    def test_competitor_created_lock_between_attempts(self, lock_path):
        """两个实例同时启动时只有一个能拿到锁。"""
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text("1111\n")
        second = LockManager(str(lock_path), pid=2222)

        def competitor_wins(path, *args, **kwargs):
            if not lock_path.exists():
                lock_path.write_text("3333\n")
            raise FileExistsError(path)

        alive = {1111: False, 3333: True}
        with patch("hostupgrade.services.lock.os.open", side_effect=competitor_wins), patch(
            "hostupgrade.services.lock.pid_alive", side_effect=lambda pid: alive[pid]
        ):
            with pytest.raises(LockContention) as exc_info:
                second.acquire()

        assert exc_info.value.pid == 3333
        assert lock_path.read_text().strip() == "3333"

    def test_reclaims_at_most_once(self, lock_path):
        lock = LockManager(str(lock_path), pid=2222)

        with patch.object(LockManager, "_create", return_value=False), patch.object(
            LockManager, "holder", return_value=1111
        ), patch("hostupgrade.services.lock.pid_alive", return_value=False):
            with pytest.raises(LockContention):
                lock.acquire()

    def test_alias(self):
        assert AlreadyRunning is LockContention


@pytest.mark.unit
class TestPidAlive:
    def test_own_pid_is_alive(self):
        assert pid_alive(os.getpid()) is True

    def test_invalid_pid(self):
        assert pid_alive(0) is False
        assert pid_alive(-5) is False

    def test_missing_process(self):
        with patch("os.kill", side_effect=ProcessLookupError):
            assert pid_alive(999999) is False

    def test_permission_error_means_alive(self):
        with patch("os.kill", side_effect=PermissionError):
            assert pid_alive(1) is True
