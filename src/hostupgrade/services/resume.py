"""Reboot-durable resume payload and boot-time service registration.

Directory structure:
    /var/lib/hostupgrade/
    ├── lib/hostupgrade/       # copy of this package, importable after reboot
    ├── upgrade_resume.sh      # boot-time entry point (ExecStart)
    ├── continue_install.sh    # hands control back to the outer installer
    ├── check_status.sh        # read-only status helper for operators
    └── state.json             # UpgradeState checkpoint
"""

import asyncio
import logging
import shlex
import shutil
import sys
from pathlib import Path
from typing import Optional, Sequence

from hostupgrade.models.config import EXPECTED_RESUME_DIR, UpgradeConfig
from hostupgrade.models.errors import InfrastructureFailure
from hostupgrade.models.state import UpgradeState
from hostupgrade.models.status import StageEnum
from hostupgrade.services.process import ProcessManager
from hostupgrade.services.reboot import RebootController

PACKAGE_DIR = Path(__file__).resolve().parent.parent
CONTINUE_UNIT = "hostupgrade-continue-install"

# Checkpoint written for a reboot scheduled before the first hop: the
# continuation must still run the release upgrade
_PRE_HOP_STAGES = (StageEnum.NOT_STARTED,)

SERVICE_TEMPLATE = """\
[Unit]
Description=hostupgrade release upgrade resume service
After=network-online.target
Wants=network-online.target
ConditionPathExists={resume_script}

[Service]
Type=oneshot
ExecStart=/bin/bash {resume_script}
TimeoutStartSec={timeout}
Restart=no
RemainAfterExit=no
StandardOutput=journal+console
StandardError=journal+console
User=root
Group=root

[Install]
WantedBy=multi-user.target
"""

RESUME_TEMPLATE = """\
#!/usr/bin/env bash
# Auto-generated: resumes the release upgrade after each reboot
set -euo pipefail
export HOME="${{HOME:-/root}}"
export PYTHONPATH={lib_dir}${{PYTHONPATH:+:$PYTHONPATH}}
{environment}
exec {python} -m hostupgrade.cli resume
"""

STATUS_TEMPLATE = """\
#!/usr/bin/env bash
# Auto-generated: prints release upgrade status (read-only)
export PYTHONPATH={lib_dir}${{PYTHONPATH:+:$PYTHONPATH}}
export HOSTUPGRADE_RESUME_DIR={resume_dir}
exec {python} -m hostupgrade.cli status
"""

CONTINUE_TEMPLATE = """\
#!/usr/bin/env bash
# Auto-generated: continues the installation after the release upgrade
set -euo pipefail
trap 'rm -f -- "$0"' EXIT
export HOME="${{HOME:-/root}}"

echo "Release upgrade complete. Resuming installation..."

SOURCE_DIR={source_dir}
INSTALL_URL={install_url}
INSTALL_ARGS=({args})

if [[ -f "${{SOURCE_DIR}}/install.sh" ]]; then
    echo "Using local installer: ${{SOURCE_DIR}}/install.sh"
    (cd "${{SOURCE_DIR}}" && bash ./install.sh "${{INSTALL_ARGS[@]}}")
else
    echo "Fetching installer: ${{INSTALL_URL}}"
    curl --proto '=https' --proto-redir '=https' -fsSL "${{INSTALL_URL}}" | bash -s -- "${{INSTALL_ARGS[@]}}"
fi
"""


def render_args(args: Sequence[str]) -> str:
    """Shell-quote a structured argument list for a bash array literal."""
    return " ".join(shlex.quote(str(a)) for a in args)


class ResumeInfrastructure:
    """Materializes and removes everything needed to resume after reboot."""

    def __init__(
        self,
        config: UpgradeConfig,
        process_manager: Optional[ProcessManager] = None,
        reboot_controller: Optional[RebootController] = None,
        python: str = sys.executable,
    ):
        self.logger = logging.getLogger("hostupgrade.resume")
        self.config = config
        self.process = process_manager or ProcessManager()
        self.reboot = reboot_controller or RebootController(config, self.process)
        self.python = python

        self.resume_dir = Path(config.resume_dir)
        self.lib_dir = self.resume_dir / "lib"
        self.resume_script = self.resume_dir / "upgrade_resume.sh"
        self.continue_script = self.resume_dir / "continue_install.sh"
        self.status_script = self.resume_dir / "check_status.sh"
        self.state_snapshot = self.resume_dir / "state.json"
        self.unit_path = Path(config.systemd_dir) / f"{config.service_name}.service"

    @property
    def unit_name(self) -> str:
        return f"{self.config.service_name}.service"

    def continuation_args(self, install_args: Sequence[str], state: Optional[UpgradeState]) -> list:
        """Original arguments plus the skip flag once a hop has run."""
        args = [str(a) for a in install_args]
        stage = state.current_stage if state is not None else StageEnum.NOT_STARTED
        if stage not in _PRE_HOP_STAGES and self.config.skip_upgrade_flag not in args:
            args.append(self.config.skip_upgrade_flag)
        return args

    def render_continuation(self, source_location: str, args: Sequence[str]) -> str:
        return CONTINUE_TEMPLATE.format(
            source_dir=shlex.quote(str(source_location)),
            install_url=shlex.quote(self.config.pinned_installer_url),
            args=render_args(args),
        )

    def render_environment(self, state: Optional[UpgradeState]) -> str:
        """export lines carrying this sequence's configuration across reboots."""
        env = self.config.to_env()
        env["HOSTUPGRADE_RESUME_DIR"] = str(self.resume_dir)
        if state is not None:
            env["HOSTUPGRADE_TARGET_VERSION"] = state.target_version
        return "\n".join(f"export {name}={shlex.quote(value)}" for name, value in sorted(env.items()))

    def render_unit(self) -> str:
        return SERVICE_TEMPLATE.format(
            resume_script=self.resume_script,
            timeout=self.config.service_timeout_seconds,
        )

    def _write_executable(self, path: Path, content: str) -> None:
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)

    def _copy_package(self) -> None:
        destination = self.lib_dir / PACKAGE_DIR.name
        if destination.resolve() == PACKAGE_DIR:
            # Already running from the durable copy
            return
        shutil.copytree(
            PACKAGE_DIR,
            destination,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
        )

    def write_payload(self, source_location: str, install_args: Sequence[str], state: Optional[UpgradeState]) -> None:
        """Write scripts and the package copy (no systemd calls).

        The state checkpoint already lives in resume_dir, so it survives
        reboots without a separate copy.
        """
        self.lib_dir.mkdir(parents=True, exist_ok=True)
        Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)

        self.logger.debug("Copying library files...")
        self._copy_package()

        quoted = {
            "lib_dir": shlex.quote(str(self.lib_dir)),
            "resume_dir": shlex.quote(str(self.resume_dir)),
            "python": shlex.quote(self.python),
        }
        self._write_executable(
            self.resume_script,
            RESUME_TEMPLATE.format(environment=self.render_environment(state), **quoted),
        )
        self._write_executable(self.status_script, STATUS_TEMPLATE.format(**quoted))

        self.logger.debug("Creating continuation script...")
        args = self.continuation_args(install_args, state)
        self._write_executable(self.continue_script, self.render_continuation(source_location, args))

    async def setup(
        self,
        source_location: str,
        install_args: Sequence[str] = (),
        state: Optional[UpgradeState] = None,
    ) -> None:
        """Materialize the resume payload and register the boot-time unit.

        Raises:
            InfrastructureFailure: If any part cannot be written or enabled
        """
        self.logger.info("Setting up upgrade resume infrastructure...")
        try:
            self.write_payload(source_location, install_args, state)
            self.unit_path.parent.mkdir(parents=True, exist_ok=True)
            self.unit_path.write_text(self.render_unit(), encoding="utf-8")
            await self.process.daemon_reload()
            await self.process.enable_service(self.unit_name)
        except (OSError, RuntimeError) as e:
            self.logger.error(f"Resume infrastructure setup failed: {e}", exc_info=True)
            raise InfrastructureFailure(f"Cannot set up resume infrastructure: {e}") from e
        self.logger.info(f"Upgrade infrastructure setup complete ({self.unit_name})")

    async def disable_service(self) -> None:
        """Disable the resume unit so a finished or failed run never loops."""
        await self.process.disable_service(self.unit_name)

    async def launch_continuation(self) -> bool:
        """Start continue_install.sh detached from the resume unit.

        Uses a transient systemd unit so it outlives this process; falls
        back to a detached child in its own session.
        """
        if not self.continue_script.exists():
            self.logger.warning(
                f"No continuation script found - run the installer manually: {self.config.pinned_installer_url}"
            )
            return False

        self.logger.info("Launching continuation script to resume installation")
        if self.process.command_exists("systemd-run"):
            await self.process.run_quiet(["systemctl", "reset-failed", CONTINUE_UNIT])
            launched = await self.process.run_quiet(
                [
                    "systemd-run",
                    "--collect",
                    "--no-block",
                    f"--unit={CONTINUE_UNIT}",
                    "--description=Installation continuation after release upgrade",
                    "--property=Type=oneshot",
                    f"--property=TimeoutStartSec={self.config.service_timeout_seconds}",
                    "--setenv=HOME=/root",
                    "/bin/bash",
                    str(self.continue_script),
                ]
            )
            if launched:
                self.logger.info(f"Continuation launched; monitor with: journalctl -u {CONTINUE_UNIT} -f")
                return True
            self.logger.warning("systemd-run failed, falling back to a detached process")

        log_handle = open(self.config.log_file, "ab")
        try:
            process = await asyncio.create_subprocess_exec(
                "/bin/bash",
                str(self.continue_script),
                stdout=log_handle,
                stderr=log_handle,
                start_new_session=True,
            )
        finally:
            log_handle.close()
        self.logger.info(f"Continuation launched (PID: {process.pid})")
        return True

    async def teardown(self, keep_continuation: bool = False, keep_state: bool = False) -> None:
        """Remove the unit, MOTD and transient payload. Logs are kept.

        Args:
            keep_continuation: Leave continue_install.sh for a just-launched run
            keep_state: Leave state.json (graceful degradation stays on record)

        Raises:
            InfrastructureFailure: If resume_dir is not the expected path
        """
        if str(self.resume_dir) != EXPECTED_RESUME_DIR:
            self.logger.error(
                f"Refusing to tear down unexpected resume dir: {self.resume_dir} (expected: {EXPECTED_RESUME_DIR})"
            )
            raise InfrastructureFailure(f"Refusing to tear down unexpected resume dir: {self.resume_dir}")

        self.logger.info("Tearing down upgrade infrastructure...")
        await self.process.disable_service(self.unit_name)
        self.unit_path.unlink(missing_ok=True)
        await self.process.run_quiet(["systemctl", "daemon-reload"])

        self.reboot.remove_motd()

        shutil.rmtree(self.lib_dir, ignore_errors=True)
        for path in (self.resume_script, self.status_script):
            path.unlink(missing_ok=True)
        if not keep_state:
            self.state_snapshot.unlink(missing_ok=True)
        if not keep_continuation:
            self.continue_script.unlink(missing_ok=True)

        self.logger.info("Upgrade infrastructure removed")
