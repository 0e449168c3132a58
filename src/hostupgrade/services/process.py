"""Process management: external commands and systemd service control."""

import asyncio
import logging
import os
import shlex
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Sequence


class ServiceStatus(str, Enum):
    """systemctl is-active results."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CommandResult:
    argv: list
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


class ProcessManager:
    """Runs external tools and manages systemd units."""

    def __init__(self):
        """Initialize process manager."""
        self.logger = logging.getLogger("hostupgrade.process")

    @staticmethod
    def command_exists(name: str) -> bool:
        return shutil.which(name) is not None

    async def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = False,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        umask: Optional[int] = None,
        timeout: Optional[float] = None,
        capture: bool = True,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            argv: Command and arguments (never passed through a shell)
            check: Raise RuntimeError on non-zero exit
            cwd: Working directory
            env: Extra environment variables merged over os.environ
            umask: File-creation mask for the child
            timeout: Seconds before the child is killed
            capture: Capture output; otherwise it is inherited (journal/console)

        Returns:
            CommandResult with exit code and decoded output

        Raises:
            RuntimeError: If check is set and the command fails, or on timeout
            FileNotFoundError: If the executable does not exist
        """
        argv = list(argv)
        self.logger.info(f"CMD {format_argv(argv)}")

        kwargs = {}
        if umask is not None:
            kwargs["umask"] = umask
        pipe = asyncio.subprocess.PIPE if capture else None

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=pipe,
            stderr=pipe,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            **kwargs,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise RuntimeError(f"Command timed out after {timeout}s: {format_argv(argv)}")

        result = CommandResult(
            argv=argv,
            returncode=process.returncode,
            stdout=(stdout or b"").decode(errors="replace"),
            stderr=(stderr or b"").decode(errors="replace"),
        )
        if result.stderr:
            self.logger.debug(f"STDERR {result.stderr.strip()}")

        if check and not result.ok:
            raise RuntimeError(
                f"Command failed ({result.returncode}): {format_argv(argv)}\n{result.stderr}"
            )
        return result

    async def run_quiet(self, argv: Sequence[str], **kwargs) -> bool:
        """Best-effort run: True on exit 0, False on failure or missing binary."""
        try:
            result = await self.run(argv, **kwargs)
        except (OSError, RuntimeError) as e:
            self.logger.warning(f"{format_argv(argv)} failed: {e}")
            return False
        return result.ok

    async def systemctl(self, *args: str, check: bool = True) -> CommandResult:
        return await self.run(["systemctl", *args], check=check)

    async def daemon_reload(self) -> None:
        await self.systemctl("daemon-reload")

    async def enable_service(self, service_name: str) -> None:
        self.logger.info(f"Enabling service: {service_name}")
        await self.systemctl("enable", service_name)

    async def disable_service(self, service_name: str) -> None:
        """Disable a unit. Never stops it: the caller may be that unit."""
        self.logger.info(f"Disabling service: {service_name}")
        result = await self.systemctl("disable", service_name, check=False)
        if not result.ok:
            self.logger.warning(f"Failed to disable {service_name}: {result.stderr.strip()}")

    async def get_service_status(self, service_name: str) -> ServiceStatus:
        try:
            result = await self.systemctl("is-active", service_name, check=False)
        except Exception as e:
            self.logger.warning(f"Cannot query {service_name}: {e}")
            return ServiceStatus.UNKNOWN
        try:
            return ServiceStatus(result.stdout.strip())
        except ValueError:
            return ServiceStatus.UNKNOWN
