"""Read-only API route handlers for upgrade status.

Handlers only observe the state file; all mutation happens in the
orchestrator process started by the CLI or the resume unit.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from hostupgrade.api.models import (
    NeedsUpgradeData,
    NeedsUpgradeResponse,
    StatusData,
    StatusResponse,
)
from hostupgrade.models.config import UpgradeConfig
from hostupgrade.models.errors import UpgradeError
from hostupgrade.models.status import StageEnum
from hostupgrade.services.orchestrator import Orchestrator

router = APIRouter(prefix="/api/v1.0")


def get_orchestrator() -> Orchestrator:
    """Orchestrator built from the environment (overridden in tests)."""
    return Orchestrator(UpgradeConfig.from_env())


def _current_version(orchestrator: Orchestrator) -> Optional[str]:
    try:
        return orchestrator.current_version()
    except UpgradeError:
        return None


@router.get("/status", response_model=StatusResponse)
async def get_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """GET /api/v1.0/status - Query the release upgrade sequence.

    Response format (in progress):
        {
            "code": 200,
            "msg": "success",
            "data": {
                "current_version": "24.04",
                "target_version": "25.10",
                "stage": "pending_reboot",
                "progress": 33,
                ...
            }
        }

    Response format (error stage):
        {
            "code": 500,
            "msg": "Upgrade failed: do-release-upgrade failed for upgrade to 25.04",
            "data": {"stage": "error", ...}
        }
    """
    state = orchestrator.state_store.peek_state()
    data = StatusData.from_state(state, _current_version(orchestrator), orchestrator.config.target_version)

    if state is not None and state.is_gracefully_degraded():
        return StatusResponse(code=200, msg="Upgrade abandoned; running on current release", data=data)
    if data.stage == StageEnum.ERROR:
        msg = f"Upgrade failed: {data.last_error}" if data.last_error else "Upgrade failed"
        return StatusResponse(code=500, msg=msg, data=data)
    return StatusResponse(code=200, msg="success", data=data)


@router.get("/needs-upgrade", response_model=NeedsUpgradeResponse)
async def get_needs_upgrade(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """GET /api/v1.0/needs-upgrade - Is the running release below target?"""
    return NeedsUpgradeResponse(
        data=NeedsUpgradeData(
            current_version=_current_version(orchestrator),
            target_version=orchestrator.config.target_version,
            needs_upgrade=orchestrator.needs_upgrade(),
        )
    )
