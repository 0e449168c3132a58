"""Narrow interface over apt, dpkg and the release upgrader.

All text parsing of package-manager output lives here so callers can be
tested against a mocked PackageManager.
"""

import logging
from typing import List, Optional

from hostupgrade.services.process import CommandResult, ProcessManager
from hostupgrade.services.version_model import parse_release_probe

NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
DPKG_OPTIONS = ["-o", "Dpkg::Options::=--force-confdef", "-o", "Dpkg::Options::=--force-confold"]
DPKG_FRONTEND_LOCK = "/var/lib/dpkg/lock-frontend"
PACKAGE_MANAGER_PROCESSES = ("apt", "apt-get", "dpkg", "aptitude", "unattended-upgr")


class PackageManager:
    """apt/dpkg operations used by the upgrade orchestrator."""

    def __init__(self, process_manager: Optional[ProcessManager] = None):
        self.logger = logging.getLogger("hostupgrade.apt")
        self.process = process_manager or ProcessManager()

    async def _apt_get(self, *args: str, capture: bool = True) -> CommandResult:
        return await self.process.run(["apt-get", *args], env=NONINTERACTIVE_ENV, capture=capture)

    async def update(self) -> bool:
        result = await self._apt_get("update", "-y", capture=False)
        if not result.ok:
            self.logger.error("apt-get update failed")
        return result.ok

    async def dist_upgrade(self) -> bool:
        result = await self._apt_get("dist-upgrade", "-y", *DPKG_OPTIONS, capture=False)
        if not result.ok:
            self.logger.error("apt-get dist-upgrade failed")
        return result.ok

    async def autoremove(self) -> bool:
        return await self.process.run_quiet(["apt-get", "autoremove", "-y"], env=NONINTERACTIVE_ENV)

    async def autoclean(self) -> bool:
        return await self.process.run_quiet(["apt-get", "autoclean", "-y"], env=NONINTERACTIVE_ENV)

    async def clean(self) -> bool:
        return await self.process.run_quiet(["apt-get", "clean"], env=NONINTERACTIVE_ENV)

    async def configure_pending(self) -> bool:
        """dpkg --configure -a for half-installed packages."""
        return await self.process.run_quiet(["dpkg", "--configure", "-a"], env=NONINTERACTIVE_ENV)

    async def fix_broken(self) -> bool:
        return await self.process.run_quiet(["apt-get", "-f", "install", "-y"], env=NONINTERACTIVE_ENV)

    async def install(self, *packages: str) -> bool:
        return await self.process.run_quiet(["apt-get", "install", "-y", *packages], env=NONINTERACTIVE_ENV)

    async def audit(self) -> CommandResult:
        """dpkg --audit; clean when exit 0 with no output."""
        return await self.process.run(["dpkg", "--audit"])

    async def is_consistent(self) -> bool:
        try:
            result = await self.audit()
        except OSError as e:
            self.logger.error(f"dpkg --audit unavailable: {e}")
            return False
        return result.ok and not result.stdout.strip()

    async def held_packages(self) -> List[str]:
        try:
            result = await self.process.run(["apt-mark", "showhold"])
        except OSError:
            return []
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def is_locked(self) -> bool:
        """True while another apt/dpkg process holds the frontend lock.

        Uses fuser, then lsof, then a process-name scan.
        """
        for tool in ("fuser", "lsof"):
            if self.process.command_exists(tool):
                result = await self.process.run([tool, DPKG_FRONTEND_LOCK])
                return result.ok

        for name in PACKAGE_MANAGER_PROCESSES:
            if not self.process.command_exists("pgrep"):
                break
            result = await self.process.run(["pgrep", "-x", name])
            if result.ok:
                return True
        return False

    async def query_available_upgrade(self) -> Optional[str]:
        """Ask do-release-upgrade which release it would install next.

        Returns:
            Normalized version string (e.g. "25.04") or None if nothing
            parseable is offered
        """
        if not self.process.command_exists("do-release-upgrade"):
            self.logger.warning("do-release-upgrade not found, installing ubuntu-release-upgrader-core")
            if not await self.install("ubuntu-release-upgrader-core"):
                return None

        try:
            result = await self.process.run(["do-release-upgrade", "-c"], timeout=120)
        except (OSError, RuntimeError) as e:
            self.logger.warning(f"Release upgrade probe failed: {e}")
            return None

        offered = parse_release_probe(result.stdout + "\n" + result.stderr)
        self.logger.info(f"Release upgrade probe offered: {offered or 'nothing'}")
        return offered
