"""Persistent upgrade state model."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hostupgrade.models.status import StageEnum
from hostupgrade.services.version_model import version_number

STATE_SCHEMA_VERSION = 1
GRACEFUL_DEGRADATION_MARKER = "upgrade_failed_graceful_degradation"

_VERSION_PATTERN = r"^\d+\.\d+(\.\d+)?$"


class UpgradeHop(BaseModel):
    """A single version-to-version step. Never persisted on its own."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_version: str = Field(..., alias="from", pattern=_VERSION_PATTERN)
    to_version: str = Field(..., alias="to", pattern=_VERSION_PATTERN)

    def __str__(self) -> str:
        return f"{self.from_version} → {self.to_version}"


class CurrentUpgrade(UpgradeHop):
    """Hop in flight, recorded before the upgrade tool is invoked."""

    started_at: datetime = Field(default_factory=datetime.now)


class CompletedUpgrade(UpgradeHop):
    """Entry appended to completed_upgrades once a hop finished."""

    completed_at: datetime = Field(default_factory=datetime.now)


class UpgradeState(BaseModel):
    """Persistent state at /var/lib/hostupgrade/state.json.

    Single source of truth for hop progress across reboots. The running OS
    version can lag behind it during the reboot window.
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=STATE_SCHEMA_VERSION, ge=1)
    original_version: str = Field(..., pattern=_VERSION_PATTERN, description="OS version at sequence start")
    target_version: str = Field(..., pattern=_VERSION_PATTERN, description="Final OS version")
    upgrade_path: list[str] = Field(default_factory=list, description="Versions to pass through, in order")
    completed_upgrades: list[CompletedUpgrade] = Field(default_factory=list)
    current_upgrade: Optional[CurrentUpgrade] = None
    current_stage: StageEnum = Field(default=StageEnum.NOT_STARTED)
    pending_reboot: bool = False
    degraded: bool = False
    last_error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @field_validator("schema_version")
    @classmethod
    def reject_future_schema(cls, v: int) -> int:
        """Refuse state written by a newer release of this tool."""
        if v > STATE_SCHEMA_VERSION:
            raise ValueError(
                f"State schema v{v} is newer than supported v{STATE_SCHEMA_VERSION}"
            )
        return v

    @model_validator(mode="after")
    def check_progress_invariants(self) -> "UpgradeState":
        if len(self.completed_upgrades) > len(self.upgrade_path):
            raise ValueError("completed_upgrades cannot exceed upgrade_path")
        if self.current_stage == StageEnum.COMPLETED and not self.is_path_exhausted():
            raise ValueError("Stage 'completed' requires every hop in upgrade_path to be done")
        return self

    def remaining_path(self) -> list[str]:
        """Path entries past the last completed hop.

        A hop may land beyond its planned entry when the upgrader skips an
        EOL release, so remaining entries are those above the last
        completed version rather than a plain index into upgrade_path.
        """
        reached = self.last_completed_version()
        if reached is None:
            return list(self.upgrade_path)
        reached_num = version_number(reached)
        return [v for v in self.upgrade_path if version_number(v) > reached_num]

    def is_path_exhausted(self) -> bool:
        """True when completed_upgrades covers the whole upgrade_path."""
        return not self.remaining_path()

    def next_hop(self, current_version: str) -> Optional[UpgradeHop]:
        """Next hop derived from upgrade_path, or None when the path is done."""
        remaining = self.remaining_path()
        if not remaining:
            return None
        return UpgradeHop(from_version=current_version, to_version=remaining[0])

    def last_completed_version(self) -> Optional[str]:
        """Version the system should be running after the latest hop."""
        if not self.completed_upgrades:
            return None
        return self.completed_upgrades[-1].to_version

    def is_gracefully_degraded(self) -> bool:
        return self.degraded and self.last_error == GRACEFUL_DEGRADATION_MARKER
