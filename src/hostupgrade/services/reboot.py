"""Delayed reboot scheduling and login-banner (MOTD) status."""

import logging
import shlex
from pathlib import Path
from typing import Optional

from hostupgrade.models.config import UpgradeConfig
from hostupgrade.services.process import ProcessManager

# Box content width between the borders
_STATUS_WIDTH = 51
_HINT_WIDTH = 60

_MOTD_HEADER = r"""#!/bin/bash
# hostupgrade MOTD - shows release upgrade status at login
C='\033[0;36m'
Y='\033[1;33m'
G='\033[0;32m'
R='\033[0;31m'
B='\033[1m'
D='\033[2m'
N='\033[0m'

echo ""
echo -e "${C}╔══════════════════════════════════════════════════════════════╗${N}"
"""

_MOTD_PROGRESS_TITLE = (
    'echo -e "${C}║${N}          ${Y}${B}>>> UBUNTU RELEASE UPGRADE IN PROGRESS <<<${N}          ${C}║${N}"\n'
)
_MOTD_FAILURE_TITLE = (
    'echo -e "${C}║${N}            ${R}${B}*** UBUNTU RELEASE UPGRADE FAILED ***${N}             ${C}║${N}"\n'
)

_MOTD_FOOTER = """echo -e "${{C}}╠══════════════════════════════════════════════════════════════╣${{N}}"
echo -e "${{C}}║${{N}}  {hint}${{C}}║${{N}}"
echo -e "${{C}}║${{N}}    ${{G}}{status_script:<58}${{N}}${{C}}║${{N}}"
echo -e "${{C}}║${{N}}    ${{D}}tail -f {log_file:<50}${{N}}${{C}}║${{N}}"
echo -e "${{C}}║${{N}}    ${{D}}journalctl -u {service:<44}${{N}}${{C}}║${{N}}"
echo -e "${{C}}╚══════════════════════════════════════════════════════════════╝${{N}}"
echo ""
"""


def clamp_message(message: str, width: int = _STATUS_WIDTH) -> str:
    """Single line, truncated with an ellipsis, padded to width."""
    message = " ".join(message.replace("\r", " ").replace("\n", " ").replace("\t", " ").split())
    if len(message) > width:
        message = message[: width - 3] + "..."
    return message.ljust(width)


class RebootController:
    """Schedules graceful reboots and keeps the login banner current."""

    def __init__(self, config: UpgradeConfig, process_manager: Optional[ProcessManager] = None):
        self.logger = logging.getLogger("hostupgrade.reboot")
        self.config = config
        self.process = process_manager or ProcessManager()
        self.motd_path = Path(config.motd_file)

    def _render(self, title: str, label: str, message: str, hint: str) -> str:
        status = shlex.quote(clamp_message(message))
        body = (
            _MOTD_HEADER
            + title
            + 'echo -e "${C}╠══════════════════════════════════════════════════════════════╣${N}"\n'
            + f"STATUS_MSG={status}\n"
            + f'echo -e "${{C}}║${{N}}  ${{B}}{label}${{N}} ${{STATUS_MSG}} ${{C}}║${{N}}"\n'
        )
        return body + _MOTD_FOOTER.format(
            hint=clamp_message(hint, _HINT_WIDTH),
            status_script=str(Path(self.config.resume_dir) / "check_status.sh"),
            log_file=self.config.log_file,
            service=self.config.service_name,
        )

    def _write(self, content: str) -> None:
        try:
            self.motd_path.parent.mkdir(parents=True, exist_ok=True)
            self.motd_path.write_text(content, encoding="utf-8")
            self.motd_path.chmod(0o755)
        except OSError as e:
            self.logger.warning(f"Cannot update MOTD {self.motd_path}: {e}")

    def update_motd(self, message: str) -> None:
        """Show upgrade progress to users logging in."""
        self._write(
            self._render(
                _MOTD_PROGRESS_TITLE,
                "Status:",
                message,
                "Runs automatically; reboots after each step. Do NOT interrupt.",
            )
        )
        self.logger.debug(f"MOTD updated: {message}")

    def write_failure_motd(self, error: str) -> None:
        self._write(
            self._render(
                _MOTD_FAILURE_TITLE,
                "Error: ",
                error,
                f"Fix, then retry: systemctl enable --now {self.config.service_name}",
            )
        )

    def remove_motd(self) -> None:
        self.motd_path.unlink(missing_ok=True)

    async def trigger_reboot(self, delay_minutes: Optional[int] = None, message: Optional[str] = None) -> None:
        """Schedule a graceful reboot in delay_minutes (shutdown -r +N).

        The delay lets interactive SSH sessions disconnect cleanly.
        """
        delay = self.config.reboot_delay_minutes if delay_minutes is None else delay_minutes
        if message:
            self.update_motd(message)

        self.logger.warning(f"System will reboot in {delay} minute(s)...")
        self.logger.info(
            f"After reconnecting, the upgrade continues automatically. "
            f"Monitor with: journalctl -u {self.config.service_name} -f "
            f"or tail -f {self.config.log_file}"
        )
        await self.process.run(
            ["shutdown", "-r", f"+{delay}", "hostupgrade: release upgrade requires reboot"],
            check=True,
        )
