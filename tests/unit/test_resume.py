"""Unit tests for ResumeInfrastructure."""

import shlex
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import InfrastructureFailure
from hostupgrade.models.state import UpgradeState
from hostupgrade.models.status import StageEnum
from hostupgrade.services.reboot import RebootController
from hostupgrade.services.resume import CONTINUE_UNIT, ResumeInfrastructure


def _state(stage: StageEnum) -> UpgradeState:
    return UpgradeState(
        original_version="24.04",
        target_version="25.10",
        upgrade_path=["25.04", "25.10"],
        current_stage=stage,
    )


@pytest.mark.unit
class TestResumeInfrastructure:
    """Boot-durable payload and unit registration."""

    @pytest.fixture
    def infra(self, config, mock_process_manager):
        reboot = RebootController(config, mock_process_manager)
        return ResumeInfrastructure(config, mock_process_manager, reboot, python="/usr/bin/python3")

    @pytest.fixture
    def expected_dir(self, config):
        with patch("hostupgrade.services.resume.EXPECTED_RESUME_DIR", config.resume_dir):
            yield

    def test_skip_flag_appended_after_checkpoint(self, infra):
        args = infra.continuation_args(["--yes", "--mode", "vibe"], _state(StageEnum.PREFLIGHT))
        assert args == ["--yes", "--mode", "vibe", "--skip-ubuntu-upgrade"]

    def test_skip_flag_omitted_before_any_hop(self, infra):
        """预升级重启阶段：续跑时仍需执行系统升级。"""
        args = infra.continuation_args(["--yes"], _state(StageEnum.NOT_STARTED))
        assert args == ["--yes"]

    def test_skip_flag_not_duplicated(self, infra):
        args = infra.continuation_args(["--skip-ubuntu-upgrade"], _state(StageEnum.PENDING_REBOOT))
        assert args.count("--skip-ubuntu-upgrade") == 1

    def test_continuation_quotes_arguments(self, infra, config):
        hostile = "it's; rm -rf /"
        script = infra.render_continuation("/opt/my installer", ["--name", hostile])

        assert "SOURCE_DIR='/opt/my installer'" in script
        assert f"INSTALL_ARGS=(--name {shlex.quote(hostile)})" in script
        assert config.pinned_installer_url in script
        assert "{ref}" not in script
        assert "proto '=https'" in script

    def test_unit_definition(self, infra):
        unit = infra.render_unit()
        assert "After=network-online.target" in unit
        assert "Type=oneshot" in unit
        assert "Restart=no" in unit
        assert "TimeoutStartSec=7200" in unit
        assert f"ExecStart=/bin/bash {infra.resume_script}" in unit
        assert "User=root" in unit

    @pytest.mark.asyncio
    async def test_setup_writes_payload_and_enables_unit(self, infra, mock_process_manager):
        state = _state(StageEnum.PREFLIGHT)

        await infra.setup("/opt/installer", ["--yes"], state)

        assert (infra.lib_dir / "hostupgrade" / "services" / "resume.py").exists()
        resume_script = infra.resume_script.read_text()
        assert "-m hostupgrade.cli resume" in resume_script
        assert "/usr/bin/python3" in resume_script
        assert "HOSTUPGRADE_TARGET_VERSION=25.10" in resume_script
        assert infra.continue_script.stat().st_mode & 0o111
        assert "--skip-ubuntu-upgrade" in infra.continue_script.read_text()
        assert infra.unit_path.read_text() == infra.render_unit()
        mock_process_manager.daemon_reload.assert_awaited_once()
        mock_process_manager.enable_service.assert_awaited_once_with("hostupgrade-resume.service")

    @pytest.mark.asyncio
    async def test_setup_failure_is_infrastructure_failure(self, infra, mock_process_manager):
        mock_process_manager.enable_service.side_effect = RuntimeError("systemctl failed")

        with pytest.raises(InfrastructureFailure):
            await infra.setup("/opt/installer", [], _state(StageEnum.PREFLIGHT))

    @pytest.mark.asyncio
    async def test_teardown_refuses_unexpected_dir(self, infra, mock_process_manager):
        with pytest.raises(InfrastructureFailure):
            await infra.teardown()
        mock_process_manager.disable_service.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_teardown_removes_everything_but_logs(self, infra, config, expected_dir, mock_process_manager):
        await infra.setup("/opt/installer", [], _state(StageEnum.PREFLIGHT))
        infra.state_snapshot.write_text("{}")
        infra.reboot.update_motd("Upgrading")

        await infra.teardown()

        assert not infra.unit_path.exists()
        assert not infra.lib_dir.exists()
        assert not infra.resume_script.exists()
        assert not infra.continue_script.exists()
        assert not infra.state_snapshot.exists()
        assert not infra.reboot.motd_path.exists()
        mock_process_manager.disable_service.assert_awaited_with("hostupgrade-resume.service")

    @pytest.mark.asyncio
    async def test_teardown_keeps_continuation_and_state(self, infra, expected_dir):
        await infra.setup("/opt/installer", [], _state(StageEnum.PREFLIGHT))
        infra.state_snapshot.write_text("{}")

        await infra.teardown(keep_continuation=True, keep_state=True)

        assert infra.continue_script.exists()
        assert infra.state_snapshot.exists()

    @pytest.mark.asyncio
    async def test_launch_continuation_without_script(self, infra, mock_process_manager):
        assert await infra.launch_continuation() is False
        mock_process_manager.run_quiet.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_launch_continuation_with_systemd_run(self, infra, mock_process_manager):
        infra.resume_dir.mkdir(parents=True)
        infra.continue_script.write_text("#!/bin/bash\n")

        assert await infra.launch_continuation() is True

        argv = mock_process_manager.run_quiet.await_args.args[0]
        assert argv[0] == "systemd-run"
        assert f"--unit={CONTINUE_UNIT}" in argv
        assert argv[-1] == str(infra.continue_script)

    @pytest.mark.asyncio
    async def test_launch_continuation_falls_back_to_detached_process(self, infra, config, mock_process_manager):
        infra.resume_dir.mkdir(parents=True)
        infra.continue_script.write_text("#!/bin/bash\n")
        Path(config.log_dir).mkdir(parents=True, exist_ok=True)
        mock_process_manager.command_exists.return_value = False

        process = MagicMock(pid=4321)
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            assert await infra.launch_continuation() is True

        assert spawn.await_args.kwargs["start_new_session"] is True
        assert spawn.await_args.args == ("/bin/bash", str(infra.continue_script))

    def test_resume_script_carries_sequence_settings(self, config, mock_process_manager):
        """重启后 from_env 必须得到与启动时相同的模式与覆盖项。"""
        started = config.model_copy(
            update={"fallback_mode": True, "assume_yes": True, "archive_url": "https://mirror.local", "reboot_delay_minutes": 5}
        )
        infra = ResumeInfrastructure(started, mock_process_manager, python="/usr/bin/python3")

        infra.write_payload("/opt/installer", [], _state(StageEnum.PENDING_REBOOT))

        env = {}
        for line in infra.resume_script.read_text().splitlines():
            if line.startswith("export HOSTUPGRADE_"):
                name, _, value = line[len("export "):].partition("=")
                env[name] = shlex.split(value)[0]
        booted = UpgradeConfig.from_env(env)

        assert booted.fallback_mode is True
        assert booted.assume_yes is True
        assert booted.skip_upgrade is False
        assert booted.archive_url == "https://mirror.local"
        assert booted.reboot_delay_minutes == 5
        assert booted.resume_dir == started.resume_dir
        assert booted.log_dir == started.log_dir
        assert booted.target_version == "25.10"
