"""Unit tests for ProcessManager."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hostupgrade.services.process import CommandResult, ProcessManager, ServiceStatus, format_argv


def _process(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
    process = AsyncMock()
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.returncode = returncode
    process.kill = MagicMock()
    return process


@pytest.mark.unit
class TestProcessManager:
    """Test ProcessManager in isolation."""

    @pytest.fixture
    def process_manager(self):
        """Create ProcessManager instance."""
        return ProcessManager()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "output,expected",
        [
            (b"active\n", ServiceStatus.ACTIVE),
            (b"inactive\n", ServiceStatus.INACTIVE),
            (b"failed\n", ServiceStatus.FAILED),
            (b"activating\n", ServiceStatus.ACTIVATING),
            (b"reloading\n", ServiceStatus.UNKNOWN),
        ],
    )
    async def test_get_service_status(self, process_manager, output, expected):
        mock_process = _process(stdout=output, returncode=3)

        with patch("asyncio.create_subprocess_exec", return_value=mock_process) as spawn:
            status = await process_manager.get_service_status("hostupgrade-resume.service")

        assert status == expected
        assert spawn.call_args.args[:3] == ("systemctl", "is-active", "hostupgrade-resume.service")

    @pytest.mark.asyncio
    async def test_get_service_status_exception(self, process_manager):
        """systemctl 不存在时返回 UNKNOWN 而不是抛出异常。"""
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("systemctl")):
            status = await process_manager.get_service_status("test.service")

        assert status == ServiceStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_run_captures_output(self, process_manager):
        mock_process = _process(stdout=b"VERSION_ID=24.04\n", stderr=b"warn\n")

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            result = await process_manager.run(["cat", "/etc/os-release"])

        assert isinstance(result, CommandResult)
        assert result.ok
        assert result.stdout == "VERSION_ID=24.04\n"
        assert result.stderr == "warn\n"

    @pytest.mark.asyncio
    async def test_run_passes_umask_cwd_and_env(self, process_manager):
        mock_process = _process()

        with patch("asyncio.create_subprocess_exec", return_value=mock_process) as spawn:
            await process_manager.run(
                ["./install.sh", "--yes"],
                cwd="/opt/installer",
                env={"DEBIAN_FRONTEND": "noninteractive"},
                umask=0o022,
            )

        kwargs = spawn.call_args.kwargs
        assert spawn.call_args.args == ("./install.sh", "--yes")
        assert kwargs["cwd"] == "/opt/installer"
        assert kwargs["umask"] == 0o022
        assert kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"
        assert "PATH" in kwargs["env"]

    @pytest.mark.asyncio
    async def test_run_without_umask_leaves_it_unset(self, process_manager):
        with patch("asyncio.create_subprocess_exec", return_value=_process()) as spawn:
            await process_manager.run(["true"])

        assert "umask" not in spawn.call_args.kwargs

    @pytest.mark.asyncio
    async def test_run_uncaptured_inherits_output(self, process_manager):
        with patch("asyncio.create_subprocess_exec", return_value=_process(stdout=None, stderr=None)) as spawn:
            result = await process_manager.run(["do-release-upgrade"], capture=False)

        assert spawn.call_args.kwargs["stdout"] is None
        assert result.stdout == ""

    @pytest.mark.asyncio
    async def test_run_check_raises_on_failure(self, process_manager):
        mock_process = _process(stderr=b"E: Could not get lock\n", returncode=100)

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            with pytest.raises(RuntimeError) as exc_info:
                await process_manager.run(["apt-get", "update"], check=True)

        assert "(100)" in str(exc_info.value)
        assert "Could not get lock" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_run_failure_without_check(self, process_manager):
        with patch("asyncio.create_subprocess_exec", return_value=_process(returncode=1)):
            result = await process_manager.run(["false"])

        assert not result.ok
        assert result.returncode == 1

    @pytest.mark.asyncio
    async def test_run_timeout_kills_child(self, process_manager):
        mock_process = _process()
        mock_process.communicate = AsyncMock(side_effect=asyncio.TimeoutError())

        with patch("asyncio.create_subprocess_exec", return_value=mock_process):
            with pytest.raises(RuntimeError, match="timed out"):
                await process_manager.run(["sleep", "100"], timeout=1)

        mock_process.kill.assert_called_once()
        mock_process.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_quiet(self, process_manager):
        with patch("asyncio.create_subprocess_exec", return_value=_process()):
            assert await process_manager.run_quiet(["apt-get", "clean"]) is True

        with patch("asyncio.create_subprocess_exec", return_value=_process(returncode=2)):
            assert await process_manager.run_quiet(["apt-get", "clean"]) is False

    @pytest.mark.asyncio
    async def test_run_quiet_missing_binary(self, process_manager):
        """缺少可执行文件时 run_quiet 返回 False。"""
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("journalctl")):
            assert await process_manager.run_quiet(["journalctl", "--vacuum-size=100M"]) is False

    @pytest.mark.asyncio
    async def test_enable_service_raises_on_failure(self, process_manager):
        with patch("asyncio.create_subprocess_exec", return_value=_process(returncode=1)):
            with pytest.raises(RuntimeError):
                await process_manager.enable_service("hostupgrade-resume.service")

    @pytest.mark.asyncio
    async def test_disable_service_never_stops(self, process_manager):
        """disable 不得 stop：调用方可能就是该服务本身。"""
        with patch("asyncio.create_subprocess_exec", return_value=_process(returncode=1)) as spawn:
            await process_manager.disable_service("hostupgrade-resume.service")

        argvs = [c.args for c in spawn.call_args_list]
        assert argvs == [("systemctl", "disable", "hostupgrade-resume.service")]

    @pytest.mark.asyncio
    async def test_daemon_reload(self, process_manager):
        with patch("asyncio.create_subprocess_exec", return_value=_process()) as spawn:
            await process_manager.daemon_reload()

        assert spawn.call_args.args == ("systemctl", "daemon-reload")

    def test_command_exists(self, process_manager):
        with patch("shutil.which", return_value="/usr/bin/fuser"):
            assert process_manager.command_exists("fuser") is True
        with patch("shutil.which", return_value=None):
            assert process_manager.command_exists("fuser") is False

    def test_format_argv_quotes(self):
        assert format_argv(["echo", "a b", "c"]) == "echo 'a b' c"
