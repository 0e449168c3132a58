"""Failed-hop recovery, bounded retry and graceful degradation."""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

import aiofiles

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import HopFailure
from hostupgrade.models.state import UpgradeHop
from hostupgrade.services.apt import NONINTERACTIVE_ENV, PackageManager
from hostupgrade.services.hop import DEB822_SOURCES, LEGACY_SOURCES, HopExecutor
from hostupgrade.services.process import ProcessManager
from hostupgrade.services.state_manager import StateStore

T = TypeVar("T")

APT_HISTORY_LOG = "/var/log/apt/history.log"
DPKG_LOCK_POLL_SECONDS = 5
APT_HISTORY_LINES = 50
LOG_TAIL_LINES = 100


@dataclass(frozen=True)
class GracefulDegradation:
    """Outcome of a hop that failed while the system stayed usable.

    Not an exception: the caller continues on the current release.
    """

    hop: UpgradeHop
    current_version: str
    dump_path: Optional[str] = None

    @property
    def message(self) -> str:
        return (
            f"Release upgrade to {self.hop.to_version} failed; "
            f"continuing on Ubuntu {self.current_version}"
        )


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 5,
    initial_delay: float = 30,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call fn until it succeeds, doubling the delay between attempts.

    Args:
        fn: Async callable to attempt
        max_retries: Total number of attempts
        initial_delay: Seconds to wait after the first failure
        retry_on: Exception types that trigger another attempt
        sleep: Async sleep (injected by tests)

    Returns:
        Result of the first successful call

    Raises:
        The last exception once attempts are exhausted
    """
    logger = logging.getLogger("hostupgrade.recovery")
    delay = initial_delay
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(f"Failed after {max_retries} attempts: {e}")
                raise
            logger.warning(f"Attempt {attempt} failed, retrying in {delay:.0f}s... ({e})")
            await sleep(delay)
            delay *= 2
    raise ValueError("max_retries must be at least 1")


class RecoveryManager:
    """Repairs the package system after a failed hop and retries it."""

    def __init__(
        self,
        config: UpgradeConfig,
        state_store: StateStore,
        hop_executor: HopExecutor,
        package_manager: Optional[PackageManager] = None,
        process_manager: Optional[ProcessManager] = None,
        root: str = "/",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize recovery manager.

        Args:
            config: Orchestrator configuration
            state_store: Checkpoint store (degradation is recorded there)
            hop_executor: Executor used to re-attempt the hop
            package_manager: Package manager interface
            process_manager: Command runner
            root: Filesystem root (tests point this at a tmp dir)
            sleep: Async sleep for lock polling and backoff
        """
        self.logger = logging.getLogger("hostupgrade.recovery")
        self.config = config
        self.state_store = state_store
        self.hop_executor = hop_executor
        self.process = process_manager or ProcessManager()
        self.package_manager = package_manager or PackageManager(self.process)
        self.root = Path(root)
        self.sleep = sleep

    def _path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def available_disk_mb(self) -> int:
        return shutil.disk_usage(str(self.root)).free // (1024 * 1024)

    async def restore_sources(self) -> bool:
        """Put ubuntu.sources back if the DEB822 workaround left it disabled."""
        sources = self._path(DEB822_SOURCES)
        disabled = self._path(DEB822_SOURCES + ".disabled")
        if not disabled.exists() or sources.exists():
            return False

        self.logger.warning("Restoring ubuntu.sources from backup...")
        try:
            disabled.rename(sources)
        except OSError as e:
            self.logger.error(f"Failed to restore ubuntu.sources: {e}")
            return False
        self._path(LEGACY_SOURCES).unlink(missing_ok=True)
        await self.process.run_quiet(["apt-get", "update", "-qq"], env=NONINTERACTIVE_ENV)
        self.logger.info("Restored ubuntu.sources")
        return True

    async def wait_for_dpkg_lock(self) -> bool:
        """Poll until no other apt/dpkg holds the frontend lock.

        Returns:
            False if the lock is still held after dpkg_lock_timeout seconds
        """
        waited = 0
        while await self.package_manager.is_locked():
            if waited >= self.config.dpkg_lock_timeout:
                self.logger.error("Timeout waiting for dpkg lock")
                return False
            if waited == 0:
                self.logger.info("Waiting for another package manager to finish...")
            await self.sleep(DPKG_LOCK_POLL_SECONDS)
            waited += DPKG_LOCK_POLL_SECONDS
        return True

    async def fix_dpkg(self) -> bool:
        """Finish interrupted dpkg operations."""
        self.logger.warning("Fixing interrupted dpkg operations...")
        if not await self.wait_for_dpkg_lock():
            return False
        await self.package_manager.configure_pending()
        await self.package_manager.fix_broken()
        self.logger.info("dpkg state fixed")
        return True

    async def emergency_cleanup(self) -> int:
        """Free space on /. Returns megabytes available afterwards."""
        self.logger.warning("Attempting emergency disk cleanup...")
        await self.package_manager.clean()
        await self.package_manager.autoremove()
        await self.process.run_quiet(["journalctl", "--vacuum-size=100M"])
        available = self.available_disk_mb()
        self.logger.info(f"Available space after cleanup: {available}MB")
        return available

    async def recover(self) -> bool:
        """Bring apt/dpkg back to a consistent state after a failed hop.

        Returns:
            True if the finishing dist-upgrade succeeded, False when it
            failed or the dpkg lock never became free
        """
        self.logger.warning("Attempting to recover from failed upgrade...")
        await self.restore_sources()
        if not await self.fix_dpkg():
            self.logger.error("dpkg lock still held - skipping recovery dist-upgrade")
            return False

        available = self.available_disk_mb()
        if available < self.config.critical_disk_mb:
            self.logger.warning(f"Low disk space: {available}MB")
            available = await self.emergency_cleanup()
            if available < self.config.critical_disk_mb:
                self.logger.error(f"Still only {available}MB free after cleanup")

        if await self.package_manager.dist_upgrade():
            self.logger.info("Recovery dist-upgrade succeeded")
            return True

        self.logger.error("Recovery failed - manual intervention may be required")
        return False

    async def recover_and_retry(self, hop: UpgradeHop) -> str:
        """Recover, then re-attempt the hop with exponential backoff.

        Raises:
            HopFailure: If recovery fails or every retry fails
        """
        if not await self.recover():
            raise HopFailure(f"Recovery failed after upgrade to {hop.to_version} failed")

        self.logger.info("Recovery successful - retrying upgrade")
        return await retry_with_backoff(
            lambda: self.hop_executor.run_hop(hop),
            max_retries=self.config.hop_retries,
            initial_delay=self.config.retry_initial_delay,
            retry_on=(HopFailure,),
            sleep=self.sleep,
        )

    async def run_with_recovery(self, hop: UpgradeHop) -> str:
        """Run a hop; on failure recover and retry, then dump diagnostics.

        Returns:
            Version installed by the hop

        Raises:
            HopFailure: Carrying the diagnostic dump path when all attempts fail
        """
        try:
            return await self.hop_executor.run_hop(hop)
        except HopFailure as e:
            self.logger.error(f"Ubuntu upgrade failed: {e}")

        try:
            return await self.recover_and_retry(hop)
        except HopFailure as e:
            dump_path = await self.create_diagnostic_dump()
            raise HopFailure(str(e), dump_path=dump_path) from e

    async def upgrade_with_fallback(self, hop: UpgradeHop) -> Union[str, GracefulDegradation]:
        """Hop with recovery; degrade gracefully when the system stays usable.

        Returns:
            Installed version, or GracefulDegradation when the hop could not
            be completed but apt still works

        Raises:
            HopFailure: If apt itself is unusable (manual recovery needed)
        """
        try:
            return await self.run_with_recovery(hop)
        except HopFailure as e:
            failure = e

        if await self.package_manager.update():
            self.logger.warning(
                f"System is functional. Continuing on Ubuntu {hop.from_version}. "
                "Some features may not work optimally on an older release."
            )
            self.state_store.mark_degraded()
            return GracefulDegradation(hop=hop, current_version=hop.from_version, dump_path=failure.dump_path)

        self.logger.error("System may be in inconsistent state. Manual recovery needed.")
        self.logger.error(f"Check {failure.dump_path or 'the diagnostic dump'} and {self.config.log_file}")
        raise failure

    async def _command_output(self, argv: list, fallback: str) -> str:
        try:
            result = await self.process.run(argv)
        except (OSError, RuntimeError):
            return fallback
        output = (result.stdout or "").rstrip()
        if not result.ok and not output:
            return fallback
        return output

    async def _read_text(self, path: Path, fallback: str, tail: Optional[int] = None) -> str:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
                content = await f.read()
        except OSError:
            return fallback
        if tail is not None:
            content = "\n".join(content.splitlines()[-tail:])
        return content.rstrip()

    async def create_diagnostic_dump(self) -> Optional[str]:
        """Write a diagnostic report for manual recovery.

        Returns:
            Path to the dump, or None if it could not be written
        """
        log_dir = Path(self.config.log_dir)
        dump_path = log_dir / f"upgrade_diagnostic_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"

        sections = [
            ("Ubuntu Version", await self._read_text(self._path("/etc/os-release"), "Cannot read /etc/os-release")),
            ("Disk Space", await self._command_output(["df", "-h"], "df failed")),
            ("Memory", await self._command_output(["free", "-h"], "free failed")),
            ("dpkg Status", await self._command_output(["dpkg", "--audit"], "dpkg audit failed")),
            ("Held Packages", await self._command_output(["apt-mark", "showhold"], "Cannot list held packages")),
            (
                f"APT History (last {APT_HISTORY_LINES} lines)",
                await self._read_text(self._path(APT_HISTORY_LOG), "No apt history", tail=APT_HISTORY_LINES),
            ),
            ("Upgrade State", await self._read_text(Path(self.config.state_file), "No state file")),
            (
                f"Last {LOG_TAIL_LINES} lines of upgrade log",
                await self._read_text(Path(self.config.log_file), "No upgrade log", tail=LOG_TAIL_LINES),
            ),
        ]

        lines = ["=== hostupgrade Diagnostic Dump ===", f"Timestamp: {datetime.now().isoformat()}", ""]
        for title, body in sections:
            lines.extend([f"=== {title} ===", body, ""])

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(dump_path, "w", encoding="utf-8") as f:
                await f.write("\n".join(lines))
        except OSError as e:
            self.logger.error(f"Cannot write diagnostic dump {dump_path}: {e}")
            return None

        self.logger.warning(f"Diagnostic dump saved to: {dump_path}")
        return str(dump_path)
