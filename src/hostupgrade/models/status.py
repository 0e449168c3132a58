"""Stage enum for the release-upgrade sequence."""

from enum import Enum


class StageEnum(str, Enum):
    """Upgrade sequence stages.

    State transitions:
    not_started → preflight → hop_running → pending_reboot → hop_running → ... → completed
                      ↓            ↓
                    error ←────────┘
    """

    NOT_STARTED = "not_started"
    PREFLIGHT = "preflight"
    HOP_RUNNING = "hop_running"
    PENDING_REBOOT = "pending_reboot"
    COMPLETED = "completed"
    ERROR = "error"


class SequenceOutcome(str, Enum):
    """Result of a start or resume invocation."""

    UP_TO_DATE = "up_to_date"
    SKIPPED = "skipped"
    REBOOT_SCHEDULED = "reboot_scheduled"
    COMPLETED = "completed"
    DEGRADED = "degraded"
    HANDED_OFF = "handed_off"
    NOTHING_TO_RESUME = "nothing_to_resume"
