"""Immutable orchestrator configuration."""

import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TARGET_VERSION = "25.10"
EXPECTED_RESUME_DIR = "/var/lib/hostupgrade"

_TRUE_VALUES = {"1", "true", "yes", "on"}

_ENV_OVERRIDES = {
    "target_version": "HOSTUPGRADE_TARGET_VERSION",
    "resume_dir": "HOSTUPGRADE_RESUME_DIR",
    "log_dir": "HOSTUPGRADE_LOG_DIR",
    "installer_url": "HOSTUPGRADE_INSTALLER_URL",
    "installer_ref": "HOSTUPGRADE_INSTALLER_REF",
    "archive_url": "HOSTUPGRADE_ARCHIVE_URL",
    "reboot_delay_minutes": "HOSTUPGRADE_REBOOT_DELAY",
}


def _env_flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


class UpgradeConfig(BaseModel):
    """Configuration passed explicitly into every component.

    Built once per process from the environment (see from_env) and never
    mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    target_version: str = Field(
        default=DEFAULT_TARGET_VERSION,
        pattern=r"^\d+\.\d+(\.\d+)?$",
        description="Release to upgrade to",
    )
    assume_yes: bool = Field(default=False, description="Confirm without prompting")
    skip_upgrade: bool = Field(default=False, description="Skip the OS upgrade phase")
    fallback_mode: bool = Field(
        default=False,
        description="Continue on the current release when recovery is exhausted",
    )

    resume_dir: str = Field(default=EXPECTED_RESUME_DIR)
    log_dir: str = Field(default="/var/log/hostupgrade")
    lock_file: str = Field(default="/var/run/hostupgrade.lock")
    service_name: str = Field(default="hostupgrade-resume")
    systemd_dir: str = Field(default="/etc/systemd/system")
    motd_file: str = Field(default="/etc/update-motd.d/00-hostupgrade")

    min_disk_mb: int = Field(default=5000, gt=0)
    critical_disk_mb: int = Field(default=1000, gt=0)
    archive_url: str = Field(default="https://archive.ubuntu.com", pattern=r"^https?://.+")
    network_timeout: float = Field(default=10.0, gt=0)
    reboot_delay_minutes: int = Field(default=1, ge=0)
    service_timeout_seconds: int = Field(default=7200, gt=0)
    dpkg_lock_timeout: int = Field(default=300, ge=0)
    hop_retries: int = Field(default=2, ge=1)
    retry_initial_delay: float = Field(default=30.0, ge=0)

    installer_url: str = Field(
        default="https://raw.githubusercontent.com/Dicklesworthstone/agentic_coding_flywheel_setup/{ref}/install.sh",
        description="Pinned installer URL; {ref} is replaced by installer_ref",
    )
    installer_ref: str = Field(default="main")
    skip_upgrade_flag: str = Field(default="--skip-ubuntu-upgrade")

    @property
    def state_file(self) -> str:
        return os.path.join(self.resume_dir, "state.json")

    @property
    def log_file(self) -> str:
        return os.path.join(self.log_dir, "upgrade_resume.log")

    @property
    def pinned_installer_url(self) -> str:
        return self.installer_url.format(ref=self.installer_ref)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "UpgradeConfig":
        """Build configuration from HOSTUPGRADE_* environment variables.

        Args:
            env: Mapping to read from (defaults to os.environ)

        Returns:
            Frozen UpgradeConfig
        """
        env = os.environ if env is None else env
        values = {
            "assume_yes": _env_flag(env, "HOSTUPGRADE_YES"),
            "skip_upgrade": _env_flag(env, "HOSTUPGRADE_SKIP_UPGRADE"),
            "fallback_mode": _env_flag(env, "HOSTUPGRADE_FALLBACK"),
        }
        for field_name, var in _ENV_OVERRIDES.items():
            if env.get(var):
                values[field_name] = env[var]
        return cls(**values)

    def to_env(self) -> Dict[str, str]:
        """Environment that makes from_env rebuild this sequence's settings.

        Written into the boot-time resume script so every later hop runs
        with the mode and overrides the sequence was started with. The skip
        flag is left out: it only applies to the first invocation.
        """
        env = {
            "HOSTUPGRADE_YES": "1" if self.assume_yes else "0",
            "HOSTUPGRADE_FALLBACK": "1" if self.fallback_mode else "0",
        }
        for field_name, var in _ENV_OVERRIDES.items():
            env[var] = str(getattr(self, field_name))
        return env
