"""State store for the persistent upgrade checkpoint."""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from hostupgrade.models.state import (
    GRACEFUL_DEGRADATION_MARKER,
    CompletedUpgrade,
    CurrentUpgrade,
    UpgradeState,
)
from hostupgrade.models.status import StageEnum


class StateStore:
    """Owns the UpgradeState checkpoint file.

    Every mutation is written to disk before the caller triggers the side
    effect it describes (starting a hop, scheduling a reboot), so a crash
    never leaves a state claiming more progress than actually happened.
    """

    def __init__(self, state_file_path: str = "/var/lib/hostupgrade/state.json"):
        """Initialize state store.

        Args:
            state_file_path: Location of the JSON checkpoint
        """
        self.logger = logging.getLogger("hostupgrade.state_manager")
        self.state_file_path = Path(state_file_path)
        self._state: Optional[UpgradeState] = None

    @property
    def state(self) -> Optional[UpgradeState]:
        """Cached state without reloading from disk."""
        return self._state

    def load_state(self) -> Optional[UpgradeState]:
        """Load persistent state.

        Returns:
            UpgradeState if exists and valid, None otherwise
        """
        if not self.state_file_path.exists():
            self.logger.debug("No state file found")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = UpgradeState.model_validate(data)
        except (OSError, ValueError) as e:
            # Corrupted state is quarantined, never silently deleted
            self.logger.error(f"Failed to load state file: {e}", exc_info=True)
            self._quarantine()
            return None

        self._state = state
        self.logger.info(
            f"Loaded state: {state.original_version} -> {state.target_version}, "
            f"stage={state.current_stage.value}, "
            f"done={len(state.completed_upgrades)}/{len(state.upgrade_path)}"
        )
        return state

    def peek_state(self) -> Optional[UpgradeState]:
        """Read state for observers (status, API). Never moves or caches anything."""
        try:
            return self.deserialize(self.state_file_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self.logger.warning(f"Cannot read state file {self.state_file_path}: {e}")
            return None

    def save_state(self, state: UpgradeState) -> None:
        """Durably write state (temp file, fsync, atomic rename).

        Args:
            state: UpgradeState to persist
        """
        tmp_path = self.state_file_path.with_name(f".{self.state_file_path.name}.tmp")
        try:
            self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(self.serialize(state))
                f.flush()
                os.fsync(f.fileno())
            tmp_path.replace(self.state_file_path)
            self._state = state
            self.logger.debug(
                f"Saved state: stage={state.current_stage.value}, "
                f"done={len(state.completed_upgrades)}/{len(state.upgrade_path)}"
            )
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            self.logger.error(f"Failed to save state file: {e}", exc_info=True)
            raise

    def delete_state(self) -> None:
        """Delete the state file (teardown after completion)."""
        if self.state_file_path.exists():
            self.state_file_path.unlink()
            self.logger.info("Deleted state file")
        self._state = None

    @staticmethod
    def serialize(state: UpgradeState) -> str:
        return json.dumps(state.model_dump(mode="json", by_alias=True), indent=2) + "\n"

    @staticmethod
    def deserialize(text: str) -> UpgradeState:
        return UpgradeState.model_validate(json.loads(text))

    def _quarantine(self) -> None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup = self.state_file_path.with_name(f"{self.state_file_path.name}.corrupt.{timestamp}")
        try:
            self.state_file_path.replace(backup)
            self.logger.warning(f"Moved corrupted state file to {backup}")
        except OSError as e:
            self.logger.error(f"Cannot move corrupted state file aside: {e}")

    def _require(self) -> UpgradeState:
        if self._state is None:
            raise RuntimeError("No upgrade state loaded")
        return self._state

    # Checkpoints

    def init_sequence(
        self,
        original_version: str,
        target_version: str,
        upgrade_path: List[str],
        stage: StageEnum = StageEnum.PREFLIGHT,
    ) -> UpgradeState:
        """Create a fresh state for a new upgrade sequence.

        Overwrites an existing state only when it is finished or absent.
        """
        existing = self._state or self.load_state()
        if existing is not None and existing.current_stage not in (
            StageEnum.COMPLETED,
            StageEnum.ERROR,
            StageEnum.NOT_STARTED,
        ):
            raise RuntimeError(
                f"Refusing to overwrite in-progress upgrade state (stage={existing.current_stage.value})"
            )

        state = UpgradeState(
            original_version=original_version,
            target_version=target_version,
            upgrade_path=list(upgrade_path),
            current_stage=stage,
        )
        self.save_state(state)
        self.logger.info(
            f"Initialized upgrade state: {original_version} -> {target_version} via {upgrade_path}"
        )
        return state

    def mark_hop_started(self, from_version: str, to_version: str) -> UpgradeState:
        state = self._require().model_copy(
            update={
                "current_stage": StageEnum.HOP_RUNNING,
                "current_upgrade": CurrentUpgrade(from_version=from_version, to_version=to_version),
                "pending_reboot": False,
                "last_error": None,
            }
        )
        self.save_state(state)
        return state

    def mark_hop_completed(self, to_version: str) -> UpgradeState:
        """Append the finished hop and flag the reboot window."""
        current = self._require()
        from_version = (
            current.current_upgrade.from_version
            if current.current_upgrade
            else (current.last_completed_version() or current.original_version)
        )
        completed = list(current.completed_upgrades) + [
            CompletedUpgrade(from_version=from_version, to_version=to_version)
        ]
        state = current.model_copy(
            update={
                "completed_upgrades": completed,
                "current_upgrade": None,
                "current_stage": StageEnum.PENDING_REBOOT,
                "pending_reboot": True,
            }
        )
        # model_copy skips validation
        state = UpgradeState.model_validate(state.model_dump(by_alias=True))
        self.save_state(state)
        return state

    def mark_resumed(self) -> UpgradeState:
        state = self._require().model_copy(update={"pending_reboot": False})
        self.save_state(state)
        return state

    def mark_completed(self) -> UpgradeState:
        current = self._require()
        state = UpgradeState.model_validate(
            current.model_copy(
                update={
                    "current_stage": StageEnum.COMPLETED,
                    "pending_reboot": False,
                    "current_upgrade": None,
                    "completed_at": datetime.now(),
                }
            ).model_dump(by_alias=True)
        )
        self.save_state(state)
        return state

    def set_error(self, message: str) -> UpgradeState:
        state = self._require().model_copy(
            update={"current_stage": StageEnum.ERROR, "last_error": message, "pending_reboot": False}
        )
        self.save_state(state)
        return state

    def mark_degraded(self) -> UpgradeState:
        """Record graceful degradation: continue on the current release."""
        state = self._require().model_copy(
            update={
                "current_stage": StageEnum.ERROR,
                "last_error": GRACEFUL_DEGRADATION_MARKER,
                "degraded": True,
                "pending_reboot": False,
                "current_upgrade": None,
            }
        )
        self.save_state(state)
        return state
