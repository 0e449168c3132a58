"""Error taxonomy for the upgrade orchestrator."""

from typing import Optional, Sequence


class UpgradeError(Exception):
    """Base class for orchestrator errors."""


class ParseError(UpgradeError, ValueError):
    """Version identifier is not of the form major.minor[.patch]."""


class NoPathError(UpgradeError):
    """No route from the current release to the target."""


class ValidationFailure(UpgradeError):
    """One or more preflight checks failed.

    Carries every failing check so the operator sees all problems at once.
    """

    def __init__(self, failures: Sequence):
        self.failures = list(failures)
        names = ", ".join(f.name for f in self.failures)
        super().__init__(f"Preflight checks failed: {len(self.failures)} issue(s) ({names})")


class HopFailure(UpgradeError):
    """The package-manager level upgrade of a hop failed."""

    def __init__(self, message: str, dump_path: Optional[str] = None):
        self.dump_path = dump_path
        if dump_path:
            message = f"{message} (diagnostics: {dump_path})"
        super().__init__(message)


class LockContention(UpgradeError):
    """Another orchestrator instance holds the lock (AlreadyRunning)."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Another upgrade is in progress (PID: {pid})")


AlreadyRunning = LockContention


class InfrastructureFailure(UpgradeError):
    """Resume payload or boot-time service could not be written."""
