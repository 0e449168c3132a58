"""Hop executor: one release-to-release upgrade step."""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import HopFailure
from hostupgrade.models.state import UpgradeHop
from hostupgrade.services.apt import NONINTERACTIVE_ENV, PackageManager
from hostupgrade.services.process import ProcessManager
from hostupgrade.services.version_model import VersionModel
from hostupgrade.utils.os_release import current_codename

DEB822_SOURCES = "/etc/apt/sources.list.d/ubuntu.sources"
LEGACY_SOURCES = "/etc/apt/sources.list.d/ubuntu-hostupgrade-temp.list"
RELEASE_UPGRADES_CONFIG = "/etc/update-manager/release-upgrades"

LEGACY_SOURCES_TEMPLATE = """\
# Temporary legacy format sources for release upgrade
# Created by hostupgrade - removed after the upgrade
deb http://archive.ubuntu.com/ubuntu {codename} main restricted universe multiverse
deb http://archive.ubuntu.com/ubuntu {codename}-updates main restricted universe multiverse
deb http://archive.ubuntu.com/ubuntu {codename}-backports main restricted universe multiverse
deb http://security.ubuntu.com/ubuntu {codename}-security main restricted universe multiverse
"""

_SUITE_SUFFIX_RE = re.compile(r"-(updates|backports|security|proposed)$")


class HopExecutor:
    """Runs prepare → workaround-apply → invoke → workaround-cleanup → verify.

    The non-interactive upgrader (do-release-upgrade) fails on DEB822
    ubuntu.sources ("property 'suites' of 'ExplodedDeb822SourceEntry' object
    has no setter"), so a legacy .list equivalent is swapped in for the
    duration of the invocation.
    """

    def __init__(
        self,
        config: UpgradeConfig,
        package_manager: Optional[PackageManager] = None,
        process_manager: Optional[ProcessManager] = None,
        version_model: Optional[VersionModel] = None,
        root: str = "/",
    ):
        self.logger = logging.getLogger("hostupgrade.hop")
        self.config = config
        self.process = process_manager or ProcessManager()
        self.package_manager = package_manager or PackageManager(self.process)
        self.version_model = version_model or VersionModel(
            release_probe=self.package_manager.query_available_upgrade
        )
        self.root = Path(root)

    def _path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    @property
    def sources_file(self) -> Path:
        return self._path(DEB822_SOURCES)

    @property
    def disabled_sources_file(self) -> Path:
        return self._path(DEB822_SOURCES + ".disabled")

    @property
    def legacy_sources_file(self) -> Path:
        return self._path(LEGACY_SOURCES)

    async def run_hop(self, hop: UpgradeHop) -> str:
        """Upgrade from hop.from_version towards hop.to_version.

        Returns:
            Version the upgrader installed (active after reboot)

        Raises:
            HopFailure: If preparation or the upgrader fails
            NoPathError: If the upgrader offers a downgrade or no-op
        """
        target = await self.version_model.next_available_upgrade(hop.from_version, hop.to_version)
        self.logger.info(f"Upgrading {hop.from_version} → {target} (this takes 15-30 minutes)")

        if not await self.prepare():
            raise HopFailure(f"System preparation failed before upgrade to {target}")

        applied = await self.apply_workaround()
        try:
            succeeded = await self.invoke()
        finally:
            await self.cleanup_workaround(applied)

        self.verify(succeeded, target)
        return target

    async def prepare(self) -> bool:
        """Sync and fully upgrade the current release first."""
        self.logger.info("Preparing system for upgrade...")
        if not await self.package_manager.update():
            return False
        if not await self.package_manager.dist_upgrade():
            return False
        await self.package_manager.autoremove()
        await self.package_manager.autoclean()
        self.logger.info("System prepared for upgrade")
        return True

    def _detect_codename(self, sources_text: str) -> Optional[str]:
        for line in sources_text.splitlines():
            if line.startswith("Suites:"):
                suites = line.split()[1:]
                if suites:
                    return _SUITE_SUFFIX_RE.sub("", suites[0])
        return current_codename(self._path("/etc/os-release"))

    async def apply_workaround(self) -> bool:
        """Swap DEB822 sources for a legacy .list. No-op when not DEB822.

        Returns:
            True if the workaround was applied
        """
        if not self.sources_file.exists():
            self.logger.debug("No DEB822 sources file found - skipping workaround")
            return False

        text = self.sources_file.read_text(encoding="utf-8")
        if not re.search(r"^Types:", text, re.MULTILINE):
            self.logger.debug("Sources file not in DEB822 format - skipping workaround")
            return False

        codename = self._detect_codename(text)
        if not codename:
            self.logger.warning("Cannot determine current codename - skipping DEB822 workaround")
            return False

        self.logger.info(f"Applying DEB822 workaround (codename: {codename})")
        self.legacy_sources_file.parent.mkdir(parents=True, exist_ok=True)
        self.legacy_sources_file.write_text(LEGACY_SOURCES_TEMPLATE.format(codename=codename), encoding="utf-8")
        self.sources_file.rename(self.disabled_sources_file)

        await self.process.run_quiet(["apt-get", "update", "-qq"], env=NONINTERACTIVE_ENV)
        return True

    async def cleanup_workaround(self, applied: bool = True) -> None:
        """Always runs after invoke, success or failure.

        Removes the legacy file. If the upgrader did not regenerate
        ubuntu.sources, the original is restored from the .disabled copy.
        """
        if self.legacy_sources_file.exists():
            try:
                self.legacy_sources_file.unlink()
                self.logger.debug("Removed temporary legacy sources file")
            except OSError as e:
                self.logger.warning(f"Failed to remove {self.legacy_sources_file}: {e}")

        if self.sources_file.exists():
            if self.disabled_sources_file.exists():
                self.logger.debug(
                    f"ubuntu.sources regenerated; leaving backup at {self.disabled_sources_file}"
                )
            return

        if self.disabled_sources_file.exists():
            try:
                self.disabled_sources_file.rename(self.sources_file)
            except OSError as e:
                self.logger.warning(f"Failed to restore ubuntu.sources from backup: {e}")
                return
            await self.process.run_quiet(["apt-get", "update", "-qq"], env=NONINTERACTIVE_ENV)
            self.logger.warning("Restored ubuntu.sources from backup (upgrade did not write new sources)")
        elif applied:
            self.logger.warning("DEB822 workaround was applied but no backup was found to restore")

    def _work_dir(self) -> str:
        """World-readable directory for the upgrader to run from."""
        work_dir = self.config.resume_dir
        try:
            os.makedirs(work_dir, exist_ok=True)
            os.chmod(work_dir, 0o755)
        except OSError:
            work_dir = "/tmp"
        return work_dir

    async def invoke(self) -> bool:
        """Run do-release-upgrade non-interactively under umask 022.

        A restrictive root umask or working directory makes the _apt user
        fail to read downloaded release artifacts.
        """
        work_dir = self._work_dir()
        self.logger.info(f"Starting do-release-upgrade from: {work_dir}")
        try:
            result = await self.process.run(
                ["do-release-upgrade", "-f", "DistUpgradeViewNonInteractive"],
                cwd=work_dir,
                env=NONINTERACTIVE_ENV,
                umask=0o022,
                capture=False,
            )
        except OSError as e:
            self.logger.error(f"Cannot run do-release-upgrade: {e}")
            return False
        if not result.ok:
            self.logger.error(f"do-release-upgrade failed (exit {result.returncode})")
        return result.ok

    def verify(self, succeeded: bool, target: str) -> None:
        if not succeeded:
            raise HopFailure(f"do-release-upgrade failed for upgrade to {target}")
        self.logger.info(f"Upgrade to {target} complete; reboot required to activate it")

    def enable_normal_releases(self) -> None:
        """Allow interim releases (LTS installs default to Prompt=lts)."""
        config = self._path(RELEASE_UPGRADES_CONFIG)
        if not config.exists():
            self.logger.warning(f"Release upgrade config not found: {config}")
            return
        text = config.read_text(encoding="utf-8")
        if not re.search(r"^Prompt=lts$", text, re.MULTILINE):
            return
        backup = config.with_name(config.name + ".disabled")
        backup.write_text(text, encoding="utf-8")
        config.write_text(re.sub(r"^Prompt=lts$", "Prompt=normal", text, flags=re.MULTILINE), encoding="utf-8")
        self.logger.info("Enabled normal release upgrades (was LTS-only)")

    def restore_lts_only(self) -> None:
        config = self._path(RELEASE_UPGRADES_CONFIG)
        backup = config.with_name(config.name + ".disabled")
        if not backup.exists():
            return
        try:
            backup.replace(config)
            self.logger.info("Restored LTS-only release setting")
        except OSError as e:
            self.logger.warning(f"Failed to restore LTS-only release setting (backup at {backup}): {e}")
