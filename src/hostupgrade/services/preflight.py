"""Preflight go/no-go checks run before any destructive action."""

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import httpx

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import ValidationFailure
from hostupgrade.services.apt import PackageManager
from hostupgrade.utils.os_release import current_os_id, current_version_string

STABILIZATION_SECONDS = 60


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


class PreflightValidator:
    """Independent checks; every one runs and all failures are reported.

    Checks:
    - ubuntu: host runs Ubuntu
    - root: running with full privilege
    - not_container / not_wsl: reboots and release upgrades are possible
    - disk_space: at least min_disk_mb free on /
    - network: package archive reachable
    - package_manager: no broken or half-installed packages
    - reboot_required: no reboot already pending (do-release-upgrade refuses)

    A recent boot (uptime under a minute) only produces a warning and a wait.
    """

    def __init__(
        self,
        config: UpgradeConfig,
        package_manager: Optional[PackageManager] = None,
        root: str = "/",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize validator.

        Args:
            config: Orchestrator configuration
            package_manager: Package manager interface
            root: Filesystem root for marker files (tests point this at a tmp dir)
            sleep: Async sleep used for the stabilization wait
        """
        self.logger = logging.getLogger("hostupgrade.preflight")
        self.config = config
        self.package_manager = package_manager or PackageManager()
        self.root = Path(root)
        self.sleep = sleep

    def _path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def _read(self, absolute: str) -> str:
        try:
            return self._path(absolute).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    async def run_checks(self) -> List[CheckResult]:
        """Run every check and return the full pass/fail list."""
        checks = [
            self.check_ubuntu,
            self.check_root,
            self.check_not_container,
            self.check_not_wsl,
            self.check_disk_space,
            self.check_network,
            self.check_package_manager,
            self.check_reboot_required,
        ]
        results = []
        for check in checks:
            try:
                result = await check()
            except Exception as e:
                result = CheckResult(check.__name__.replace("check_", ""), False, f"check crashed: {e}")
            log = self.logger.info if result.passed else self.logger.error
            log(f"[{'PASS' if result.passed else 'FAIL'}] {result.name}: {result.detail}")
            results.append(result)

        await self.wait_for_stabilization()
        return results

    async def validate(self) -> List[CheckResult]:
        """Run checks and raise if any failed.

        Raises:
            ValidationFailure: With every failing check
        """
        self.logger.info("Running upgrade preflight checks...")
        results = await self.run_checks()
        failures = [r for r in results if not r.passed]
        if failures:
            raise ValidationFailure(failures)
        self.logger.info("All preflight checks passed")
        return results

    async def check_ubuntu(self) -> CheckResult:
        os_release = self._path("/etc/os-release")
        version = current_version_string(os_release)
        if version is None:
            detected = current_os_id(os_release) or "unknown"
            return CheckResult("ubuntu", False, f"Not running Ubuntu (detected: {detected}) - upgrade not supported")
        return CheckResult("ubuntu", True, f"Ubuntu {version}")

    async def check_root(self) -> CheckResult:
        if os.geteuid() != 0:
            return CheckResult("root", False, "Must run as root for distribution upgrade")
        return CheckResult("root", True, "running as root")

    async def check_not_container(self) -> CheckResult:
        if self._path("/.dockerenv").exists() or "docker" in self._read("/proc/1/cgroup"):
            return CheckResult(
                "not_container", False, "Running in Docker - distribution upgrades not supported in containers"
            )
        return CheckResult("not_container", True, "not a container")

    async def check_not_wsl(self) -> CheckResult:
        if "microsoft" in self._read("/proc/version").lower():
            return CheckResult("not_wsl", False, "Running in WSL - Ubuntu upgrades not supported in WSL")
        return CheckResult("not_wsl", True, "not WSL")

    def available_disk_mb(self) -> int:
        return shutil.disk_usage(str(self.root)).free // (1024 * 1024)

    async def check_disk_space(self) -> CheckResult:
        available = self.available_disk_mb()
        needed = self.config.min_disk_mb
        if available < needed:
            return CheckResult(
                "disk_space", False, f"Insufficient disk space: {available}MB available, need {needed}MB"
            )
        return CheckResult("disk_space", True, f"{available}MB available (need {needed}MB)")

    async def check_network(self) -> CheckResult:
        url = self.config.archive_url
        try:
            async with httpx.AsyncClient(timeout=self.config.network_timeout, follow_redirects=True) as client:
                response = await client.head(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            return CheckResult("network", False, f"Cannot reach {url} - check network connectivity ({e})")
        return CheckResult("network", True, f"can reach {url}")

    async def check_package_manager(self) -> CheckResult:
        held = await self.package_manager.held_packages()
        if held:
            self.logger.warning(f"Held packages detected (may block upgrade): {' '.join(held)}")
        if not await self.package_manager.is_consistent():
            return CheckResult("package_manager", False, "dpkg audit failed - run 'sudo dpkg --configure -a'")
        return CheckResult("package_manager", True, "APT state healthy")

    async def check_reboot_required(self) -> CheckResult:
        if self._path("/var/run/reboot-required").exists():
            pkgs = " ".join(self._read("/var/run/reboot-required.pkgs").split())
            detail = "System requires reboot before upgrade"
            if pkgs:
                detail += f" (packages: {pkgs})"
            return CheckResult("reboot_required", False, detail)
        return CheckResult("reboot_required", True, "no pending reboot")

    def uptime_seconds(self) -> Optional[float]:
        raw = self._read("/proc/uptime").split()
        try:
            return float(raw[0])
        except (IndexError, ValueError):
            return None

    async def wait_for_stabilization(self) -> None:
        """Warn and wait out the grace period right after boot. Never fails."""
        uptime = self.uptime_seconds()
        if uptime is None:
            return
        if uptime < STABILIZATION_SECONDS:
            remaining = STABILIZATION_SECONDS - uptime
            self.logger.warning(
                f"System just booted (uptime {uptime:.0f}s). "
                f"Waiting {remaining:.0f}s for services to stabilize..."
            )
            await self.sleep(remaining)
        else:
            self.logger.debug(f"System stability: uptime {uptime:.0f}s")
