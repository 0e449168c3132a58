"""Pydantic models for the read-only HTTP status API."""

from typing import List, Optional

from pydantic import BaseModel, Field

from hostupgrade.models.state import UpgradeState
from hostupgrade.models.status import StageEnum


class HopData(BaseModel):
    """One finished hop."""

    from_version: str = Field(..., description="Release the hop started from")
    to_version: str = Field(..., description="Release the hop installed")
    completed_at: str = Field(..., description="ISO-8601 completion time")


class StatusData(BaseModel):
    """Upgrade sequence status nested in response."""

    current_version: Optional[str] = Field(None, description="Running Ubuntu release, null if not Ubuntu")
    target_version: str = Field(..., description="Configured target release")
    stage: StageEnum = Field(StageEnum.NOT_STARTED, description="Current sequence stage")
    progress: int = Field(0, ge=0, le=100, description="Percentage of hops completed")
    original_version: Optional[str] = Field(None, description="Release at sequence start")
    upgrade_path: List[str] = Field(default_factory=list, description="Releases to pass through")
    completed_upgrades: List[HopData] = Field(default_factory=list)
    pending_reboot: bool = Field(False, description="A reboot is needed to activate the last hop")
    degraded: bool = Field(False, description="Upgrade abandoned, continuing on current release")
    last_error: Optional[str] = Field(None, description="Diagnostic text when stage == error")

    @classmethod
    def from_state(
        cls, state: Optional[UpgradeState], current_version: Optional[str], target_version: str
    ) -> "StatusData":
        if state is None:
            return cls(current_version=current_version, target_version=target_version)

        total = len(state.upgrade_path)
        done = total - len(state.remaining_path())
        return cls(
            current_version=current_version,
            target_version=state.target_version,
            stage=state.current_stage,
            progress=int(done * 100 / total) if total else 100,
            original_version=state.original_version,
            upgrade_path=list(state.upgrade_path),
            completed_upgrades=[
                HopData(
                    from_version=entry.from_version,
                    to_version=entry.to_version,
                    completed_at=entry.completed_at.isoformat(),
                )
                for entry in state.completed_upgrades
            ],
            pending_reboot=state.pending_reboot,
            degraded=state.degraded,
            last_error=state.last_error,
        )


class StatusResponse(BaseModel):
    """GET /api/v1.0/status response.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level status code (200/500)")
    msg: str = Field(..., description="Status message or error description")
    data: StatusData = Field(..., description="Status data")


class NeedsUpgradeData(BaseModel):
    current_version: Optional[str] = None
    target_version: str
    needs_upgrade: bool


class NeedsUpgradeResponse(BaseModel):
    """GET /api/v1.0/needs-upgrade response."""

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success")
    data: NeedsUpgradeData
