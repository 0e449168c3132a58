"""Unit tests for HopExecutor."""

from unittest.mock import AsyncMock

import pytest

from hostupgrade.models.errors import HopFailure, NoPathError
from hostupgrade.models.state import UpgradeHop
from hostupgrade.services.hop import HopExecutor
from hostupgrade.services.process import CommandResult
from hostupgrade.services.version_model import VersionModel

DEB822_CONTENT = """\
Types: deb
URIs: http://archive.ubuntu.com/ubuntu/
Suites: noble noble-updates noble-backports
Components: main restricted universe multiverse
Signed-By: /usr/share/keyrings/ubuntu-archive-keyring.gpg
"""


@pytest.mark.unit
class TestHopExecutor:
    """prepare → workaround → invoke → cleanup → verify."""

    @pytest.fixture
    def executor(self, config, mock_package_manager, mock_process_manager, fake_root):
        return HopExecutor(
            config,
            package_manager=mock_package_manager,
            process_manager=mock_process_manager,
            version_model=VersionModel(release_probe=AsyncMock(return_value=None)),
            root=str(fake_root),
        )

    @pytest.fixture
    def deb822(self, fake_root):
        sources = fake_root / "etc" / "apt" / "sources.list.d" / "ubuntu.sources"
        sources.parent.mkdir(parents=True)
        sources.write_text(DEB822_CONTENT)
        return sources

    @pytest.mark.asyncio
    async def test_workaround_noop_without_deb822(self, executor):
        assert await executor.apply_workaround() is False
        assert not executor.legacy_sources_file.exists()

    @pytest.mark.asyncio
    async def test_workaround_noop_for_non_deb822_file(self, executor, deb822):
        deb822.write_text("deb http://archive.ubuntu.com/ubuntu noble main\n")
        assert await executor.apply_workaround() is False
        assert deb822.exists()

    @pytest.mark.asyncio
    async def test_workaround_swaps_in_legacy_sources(self, executor, deb822):
        assert await executor.apply_workaround() is True

        assert not deb822.exists()
        assert executor.disabled_sources_file.read_text() == DEB822_CONTENT
        legacy = executor.legacy_sources_file.read_text()
        assert "deb http://archive.ubuntu.com/ubuntu noble main" in legacy
        assert "noble-security" in legacy

    @pytest.mark.asyncio
    async def test_cleanup_restores_original_when_not_regenerated(self, executor, deb822, mock_process_manager):
        await executor.apply_workaround()
        await executor.cleanup_workaround(applied=True)

        assert deb822.read_text() == DEB822_CONTENT
        assert not executor.disabled_sources_file.exists()
        assert not executor.legacy_sources_file.exists()
        mock_process_manager.run_quiet.assert_awaited()

    @pytest.mark.asyncio
    async def test_cleanup_keeps_regenerated_sources(self, executor, deb822):
        await executor.apply_workaround()
        deb822.write_text(DEB822_CONTENT.replace("noble", "plucky"))

        await executor.cleanup_workaround(applied=True)

        assert "plucky" in deb822.read_text()
        assert not executor.legacy_sources_file.exists()

    @pytest.mark.asyncio
    async def test_invoke_uses_world_readable_dir_and_umask(self, executor, config, mock_process_manager):
        assert await executor.invoke() is True

        kwargs = mock_process_manager.run.await_args.kwargs
        argv = mock_process_manager.run.await_args.args[0]
        assert argv == ["do-release-upgrade", "-f", "DistUpgradeViewNonInteractive"]
        assert kwargs["umask"] == 0o022
        assert kwargs["cwd"] == config.resume_dir
        assert kwargs["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    @pytest.mark.asyncio
    async def test_run_hop_success(self, executor, mock_package_manager):
        target = await executor.run_hop(UpgradeHop(from_version="24.04", to_version="25.04"))

        assert target == "25.04"
        mock_package_manager.update.assert_awaited()
        mock_package_manager.dist_upgrade.assert_awaited()

    @pytest.mark.asyncio
    async def test_run_hop_cleans_up_on_failure(self, executor, deb822, mock_process_manager):
        mock_process_manager.run.return_value = CommandResult(argv=[], returncode=1, stdout="", stderr="")

        with pytest.raises(HopFailure):
            await executor.run_hop(UpgradeHop(from_version="24.04", to_version="25.04"))

        assert deb822.read_text() == DEB822_CONTENT
        assert not executor.legacy_sources_file.exists()

    @pytest.mark.asyncio
    async def test_run_hop_prepare_failure(self, executor, mock_package_manager, mock_process_manager):
        mock_package_manager.dist_upgrade.return_value = False

        with pytest.raises(HopFailure):
            await executor.run_hop(UpgradeHop(from_version="24.04", to_version="25.04"))

        mock_process_manager.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_hop_rejects_downgrade_offer(self, executor, mock_process_manager):
        executor.version_model = VersionModel(release_probe=AsyncMock(return_value="24.04"))

        with pytest.raises(NoPathError):
            await executor.run_hop(UpgradeHop(from_version="24.04", to_version="25.04"))

        mock_process_manager.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_hop_reports_eol_skip(self, executor):
        executor.version_model = VersionModel(release_probe=AsyncMock(return_value="25.10"))
        target = await executor.run_hop(UpgradeHop(from_version="24.04", to_version="25.04"))
        assert target == "25.10"


@pytest.mark.unit
class TestReleasePrompt:
    """Prompt=lts toggling in /etc/update-manager/release-upgrades."""

    @pytest.fixture
    def release_config(self, fake_root):
        path = fake_root / "etc" / "update-manager" / "release-upgrades"
        path.parent.mkdir(parents=True)
        path.write_text("[DEFAULT]\nPrompt=lts\n")
        return path

    def test_enable_and_restore(self, config, fake_root, release_config):
        executor = HopExecutor(config, root=str(fake_root))

        executor.enable_normal_releases()
        assert "Prompt=normal" in release_config.read_text()

        executor.restore_lts_only()
        assert "Prompt=lts" in release_config.read_text()
        assert not release_config.with_name("release-upgrades.disabled").exists()

    def test_enable_is_noop_when_already_normal(self, config, fake_root, release_config):
        release_config.write_text("[DEFAULT]\nPrompt=normal\n")
        executor = HopExecutor(config, root=str(fake_root))

        executor.enable_normal_releases()

        assert not release_config.with_name("release-upgrades.disabled").exists()
