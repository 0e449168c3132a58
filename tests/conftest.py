"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hostupgrade.models.config import UpgradeConfig  # noqa: E402
from hostupgrade.services.process import CommandResult  # noqa: E402


def write_os_release(root: Path, version: str = "24.04", codename: str = "noble", os_id: str = "ubuntu") -> Path:
    """Write a minimal /etc/os-release under a fake root."""
    path = root / "etc" / "os-release"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f'NAME="Ubuntu"\n'
        f'VERSION_ID="{version}"\n'
        f"ID={os_id}\n"
        f"VERSION_CODENAME={codename}\n"
        f"UBUNTU_CODENAME={codename}\n"
    )
    return path


def ok_result(stdout: str = "", returncode: int = 0, stderr: str = "") -> CommandResult:
    return CommandResult(argv=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_root(tmp_path):
    """Empty filesystem root for marker files."""
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path):
    """UpgradeConfig with every path inside tmp_path."""
    return UpgradeConfig(
        resume_dir=str(tmp_path / "var" / "lib" / "hostupgrade"),
        log_dir=str(tmp_path / "var" / "log" / "hostupgrade"),
        lock_file=str(tmp_path / "run" / "hostupgrade.lock"),
        systemd_dir=str(tmp_path / "etc" / "systemd" / "system"),
        motd_file=str(tmp_path / "etc" / "update-motd.d" / "00-hostupgrade"),
        retry_initial_delay=0,
        dpkg_lock_timeout=10,
    )


@pytest.fixture
def mock_process_manager():
    """ProcessManager with every command succeeding."""
    manager = MagicMock()
    manager.command_exists = MagicMock(return_value=True)
    manager.run = AsyncMock(return_value=ok_result())
    manager.run_quiet = AsyncMock(return_value=True)
    manager.systemctl = AsyncMock(return_value=ok_result())
    manager.daemon_reload = AsyncMock()
    manager.enable_service = AsyncMock()
    manager.disable_service = AsyncMock()
    manager.get_service_status = AsyncMock()
    return manager


@pytest.fixture
def mock_package_manager():
    """PackageManager with a healthy apt/dpkg."""
    manager = MagicMock()
    for name in (
        "update",
        "dist_upgrade",
        "autoremove",
        "autoclean",
        "clean",
        "configure_pending",
        "fix_broken",
        "install",
        "is_consistent",
    ):
        setattr(manager, name, AsyncMock(return_value=True))
    manager.is_locked = AsyncMock(return_value=False)
    manager.held_packages = AsyncMock(return_value=[])
    manager.query_available_upgrade = AsyncMock(return_value=None)
    return manager


@pytest.fixture
def make_os_release():
    """Factory writing /etc/os-release under a root directory."""
    return write_os_release
