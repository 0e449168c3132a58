"""Upgrade orchestrator: start, resume, status and needs-upgrade entry points.

A reboot ends the process that scheduled it. All progress is recovered from
the state checkpoint by a fresh process started by the resume unit, so every
checkpoint is written before the side effect it describes.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import InfrastructureFailure, UpgradeError, ValidationFailure
from hostupgrade.models.state import UpgradeState
from hostupgrade.models.status import SequenceOutcome, StageEnum
from hostupgrade.services.apt import PackageManager
from hostupgrade.services.hop import HopExecutor
from hostupgrade.services.lock import LockManager
from hostupgrade.services.preflight import CheckResult, PreflightValidator
from hostupgrade.services.process import ProcessManager
from hostupgrade.services.reboot import RebootController
from hostupgrade.services.recovery import GracefulDegradation, RecoveryManager
from hostupgrade.services.resume import ResumeInfrastructure
from hostupgrade.services.state_manager import StateStore
from hostupgrade.services.version_model import (
    VersionModel,
    compare,
    format_version,
    normalize_version,
)
from hostupgrade.utils.os_release import OS_RELEASE_PATH, current_version_string

_IN_PROGRESS_STAGES = (StageEnum.PREFLIGHT, StageEnum.HOP_RUNNING, StageEnum.PENDING_REBOOT)


class Orchestrator:
    """Drives the multi-hop, multi-reboot release upgrade."""

    def __init__(
        self,
        config: UpgradeConfig,
        state_store: Optional[StateStore] = None,
        lock_manager: Optional[LockManager] = None,
        process_manager: Optional[ProcessManager] = None,
        package_manager: Optional[PackageManager] = None,
        version_model: Optional[VersionModel] = None,
        preflight_validator: Optional[PreflightValidator] = None,
        hop_executor: Optional[HopExecutor] = None,
        recovery_manager: Optional[RecoveryManager] = None,
        resume_infrastructure: Optional[ResumeInfrastructure] = None,
        reboot_controller: Optional[RebootController] = None,
        os_release_path: Path = OS_RELEASE_PATH,
    ):
        self.logger = logging.getLogger("hostupgrade.orchestrator")
        self.config = config
        self.os_release_path = Path(os_release_path)

        self.process = process_manager or ProcessManager()
        self.package_manager = package_manager or PackageManager(self.process)
        self.state_store = state_store or StateStore(config.state_file)
        self.lock = lock_manager or LockManager(config.lock_file)
        self.version_model = version_model or VersionModel(
            release_probe=self.package_manager.query_available_upgrade
        )
        self.preflight_validator = preflight_validator or PreflightValidator(config, self.package_manager)
        self.hop_executor = hop_executor or HopExecutor(
            config, self.package_manager, self.process, self.version_model
        )
        self.recovery = recovery_manager or RecoveryManager(
            config, self.state_store, self.hop_executor, self.package_manager, self.process
        )
        self.reboot = reboot_controller or RebootController(config, self.process)
        self.resume_infrastructure = resume_infrastructure or ResumeInfrastructure(
            config, self.process, self.reboot
        )

    # Read-only queries

    def current_version(self) -> str:
        """Running Ubuntu release, normalized (e.g. "24.04").

        Raises:
            ValidationFailure: If the host is not Ubuntu
        """
        raw = current_version_string(self.os_release_path)
        if raw is None:
            raise ValidationFailure([CheckResult("ubuntu", False, "Not running Ubuntu - upgrade not supported")])
        return format_version(normalize_version(raw))

    def needs_upgrade(self) -> bool:
        """True when the running release is below the target."""
        try:
            current = self.current_version()
        except UpgradeError:
            return False
        return compare(current, self.config.target_version) < 0

    async def preflight(self) -> List[CheckResult]:
        """Full pass/fail list without raising."""
        return await self.preflight_validator.run_checks()

    async def status(self) -> str:
        """Human-readable summary of the upgrade sequence."""
        try:
            current: Optional[str] = self.current_version()
        except UpgradeError:
            current = None

        lines = ["Ubuntu release upgrade status", ""]
        lines.append(f"  Current version: {current or 'unknown (not Ubuntu)'}")
        lines.append(f"  Target version:  {self.config.target_version}")

        state = self.state_store.peek_state()
        if state is None:
            if self.needs_upgrade():
                lines.append("  No upgrade in progress (upgrade available)")
            else:
                lines.append("  No upgrade in progress")
            return "\n".join(lines)

        done = len(state.completed_upgrades)
        lines.append(f"  Original version: {state.original_version}")
        lines.append(f"  Upgrade path:    {' → '.join(state.upgrade_path) or '(none)'}")
        lines.append(f"  Stage:           {state.current_stage.value}")
        lines.append(f"  Progress:        {done}/{len(state.upgrade_path)} hop(s) complete")
        for entry in state.completed_upgrades:
            lines.append(f"    ✓ {entry} ({entry.completed_at.isoformat(timespec='seconds')})")
        if state.current_upgrade is not None:
            lines.append(f"    … {state.current_upgrade} (started {state.current_upgrade.started_at.isoformat(timespec='seconds')})")
        if state.pending_reboot:
            lines.append("  Reboot pending to activate the last hop")
        if state.is_gracefully_degraded():
            lines.append(
                f"  WARNING: upgrade failed; installation continued on Ubuntu {current or 'the current release'}"
            )
        elif state.last_error:
            lines.append(f"  Last error: {state.last_error}")

        service = await self.process.get_service_status(self.resume_infrastructure.unit_name)
        lines.append(f"  Resume service:  {service.value}")
        lines.append(f"  Log file:        {self.config.log_file}")
        return "\n".join(lines)

    # Mutating entry points

    async def start_sequence(self, source_location: str, args: Sequence[str] = ()) -> SequenceOutcome:
        """Begin a new upgrade sequence and run its first hop.

        Args:
            source_location: Directory of the outer installer (for continuation)
            args: Original installer arguments, carried into the continuation

        Raises:
            LockContention: If another instance is running
            ValidationFailure: If preflight fails
            NoPathError: If the target is unreachable
            InfrastructureFailure: If the resume payload cannot be written
            HopFailure: If the first hop fails in strict mode
        """
        if self.config.skip_upgrade:
            self.logger.info("Skipping Ubuntu upgrade (skip flag set)")
            return SequenceOutcome.SKIPPED

        with self.lock:
            current = self.current_version()
            target = self.config.target_version
            if compare(current, target) >= 0:
                self.logger.info(f"Ubuntu {current} is at or above target version {target}")
                return SequenceOutcome.UP_TO_DATE

            existing = self.state_store.load_state()
            if existing is not None and existing.current_stage in _IN_PROGRESS_STAGES:
                raise UpgradeError(
                    f"An upgrade sequence is already in progress (stage={existing.current_stage.value}); "
                    "it resumes automatically after reboot"
                )

            self.logger.info(f"Starting Ubuntu upgrade sequence: {current} → {target}")
            path = self.version_model.compute_path(current, target)
            if not path:
                return SequenceOutcome.UP_TO_DATE
            self.logger.info(f"Upgrade path: {' → '.join([current] + path)} ({len(path)} hop(s))")

            try:
                await self.preflight_validator.validate()
            except ValidationFailure as e:
                if self._only_reboot_pending(e) and self.config.assume_yes:
                    return await self._pre_upgrade_reboot(source_location, args, current, target, path)
                raise

            state = self.state_store.init_sequence(current, target, path)
            await self._setup_resume(source_location, args, state)
            self.reboot.update_motd(f"Starting upgrade: {current} → {target}")

            try:
                return await self._advance(current, in_resume=False)
            except Exception as e:
                await self._fail(str(e))
                raise

    async def resume(self) -> SequenceOutcome:
        """Boot-time entry point: continue from the checkpoint.

        Raises:
            LockContention: If another instance is running
            UpgradeError: If the running OS disagrees with the checkpoint or
                the next hop fails in strict mode
        """
        with self.lock:
            state = self.state_store.load_state()
            if state is None:
                self.logger.warning("No upgrade state found - nothing to resume")
                await self.resume_infrastructure.disable_service()
                return SequenceOutcome.NOTHING_TO_RESUME

            if state.is_gracefully_degraded():
                self.logger.warning("Upgrade was abandoned with graceful degradation - nothing to resume")
                await self.resume_infrastructure.disable_service()
                return SequenceOutcome.DEGRADED

            if state.current_stage == StageEnum.NOT_STARTED:
                self.logger.info("Pre-upgrade reboot done. Continuing installer after reboot...")
                await self.resume_infrastructure.disable_service()
                launched = await self.resume_infrastructure.launch_continuation()
                await self.resume_infrastructure.teardown(keep_continuation=launched)
                return SequenceOutcome.HANDED_OFF

            try:
                if state.current_stage == StageEnum.COMPLETED:
                    return await self._complete()

                state = self.state_store.mark_resumed()
                current = self.current_version()
                self._verify_running_version(state, current)

                if state.is_path_exhausted():
                    self.logger.info("All upgrades complete per state file")
                    return await self._complete()

                await self.preflight_validator.validate()
                return await self._advance(current, in_resume=True)
            except Exception as e:
                await self._fail(str(e))
                raise

    # Internals

    @staticmethod
    def _only_reboot_pending(failure: ValidationFailure) -> bool:
        return [f.name for f in failure.failures] == ["reboot_required"]

    async def _pre_upgrade_reboot(
        self, source_location: str, args: Sequence[str], current: str, target: str, path: List[str]
    ) -> SequenceOutcome:
        """Reboot to apply pending updates, then rerun the installer unchanged."""
        self.logger.warning("A reboot is pending; rebooting before the release upgrade")
        state = self.state_store.init_sequence(current, target, path, stage=StageEnum.NOT_STARTED)
        await self._setup_resume(source_location, args, state)
        await self.reboot.trigger_reboot(message="Rebooting to apply updates before the release upgrade")
        return SequenceOutcome.REBOOT_SCHEDULED

    async def _setup_resume(self, source_location: str, args: Sequence[str], state: UpgradeState) -> None:
        """Install the resume payload; a failed setup leaves no checkpoint behind."""
        try:
            await self.resume_infrastructure.setup(source_location, args, state)
        except InfrastructureFailure:
            # Nothing would resume this checkpoint, so a rerun must start fresh
            self.state_store.delete_state()
            raise

    def _verify_running_version(self, state: UpgradeState, current: str) -> None:
        expected = state.last_completed_version() or state.original_version
        if compare(current, expected) != 0:
            raise UpgradeError(
                f"Running Ubuntu {current} but the checkpoint expects {expected}; "
                "the last upgrade did not take effect"
            )
        self.logger.info(f"Running Ubuntu {current} matches checkpoint")

    async def _advance(self, current: str, in_resume: bool) -> SequenceOutcome:
        """Run the next hop of the path and schedule the activating reboot."""
        state = self.state_store.state
        hop = state.next_hop(current)
        step = len(state.completed_upgrades) + 1
        total = len(state.upgrade_path)

        self.hop_executor.enable_normal_releases()
        self.reboot.update_motd(f"Upgrading {hop} (step {step}/{total})")
        self.state_store.mark_hop_started(hop.from_version, hop.to_version)

        if self.config.fallback_mode:
            result = await self.recovery.upgrade_with_fallback(hop)
            if isinstance(result, GracefulDegradation):
                return await self._degrade(result, in_resume)
            installed = result
        else:
            installed = await self.recovery.run_with_recovery(hop)

        state = self.state_store.mark_hop_completed(installed)
        remaining = len(state.remaining_path())
        self.logger.info(f"Hop to {installed} recorded; {remaining} hop(s) remaining")
        await self.reboot.trigger_reboot(message=f"Rebooting to activate Ubuntu {installed} ({step}/{total})")
        return SequenceOutcome.REBOOT_SCHEDULED

    async def _complete(self) -> SequenceOutcome:
        self.state_store.mark_completed()
        self.hop_executor.restore_lts_only()
        await self.resume_infrastructure.disable_service()
        self.reboot.remove_motd()

        launched = await self.resume_infrastructure.launch_continuation()
        await self.resume_infrastructure.teardown(keep_continuation=launched)
        self.logger.info("=== Ubuntu release upgrade complete ===")
        return SequenceOutcome.COMPLETED

    async def _degrade(self, outcome: GracefulDegradation, in_resume: bool) -> SequenceOutcome:
        self.logger.warning(outcome.message)
        if outcome.dump_path:
            self.logger.warning(f"Diagnostics: {outcome.dump_path}")
        self.hop_executor.restore_lts_only()
        await self.resume_infrastructure.disable_service()

        launched = False
        if in_resume:
            # The installer is not running after a reboot; hand control back
            launched = await self.resume_infrastructure.launch_continuation()
        await self.resume_infrastructure.teardown(keep_continuation=launched, keep_state=True)
        return SequenceOutcome.DEGRADED

    async def _fail(self, message: str) -> None:
        """Record a strict failure: error state, unit disabled, no reboot."""
        self.logger.error(f"Upgrade failed: {message}")
        if self.state_store.state is not None and not self.state_store.state.is_gracefully_degraded():
            self.state_store.set_error(message)
        try:
            await self.resume_infrastructure.disable_service()
        except (OSError, RuntimeError) as e:
            self.logger.warning(f"Cannot disable resume service: {e}")
        self.reboot.write_failure_motd(message)
