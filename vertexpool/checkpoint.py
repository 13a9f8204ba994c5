"""
Checkpoint store for resuming interrupted reconcile runs.

This module persists the pool membership after every unit of work. Checkpoints
are advisory: a later save supersedes an earlier one, and a missing or corrupt
file only means the reconciler re-derives membership from the provider.
"""

import logging
import pickle
import threading
from pathlib import Path
from typing import Optional

import joblib
from pydantic import ValidationError as ModelValidationError

from .models import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    File-backed checkpoint store.

    Features:
    - Atomic writes (temporary file, then rename)
    - joblib format for ``.joblib`` paths, pydantic JSON otherwise
    - Save and load failures are logged, never raised
    """

    enabled = True

    def __init__(self, path: Path):
        """
        Initialize CheckpointStore.

        Args:
            path: Path to the checkpoint file
        """
        self.path = Path(path)
        self._lock = threading.RLock()
        logger.debug(f"CheckpointStore initialized with file: {self.path}")

    @property
    def uses_joblib(self) -> bool:
        return self.path.suffix == ".joblib"

    def save(self, checkpoint: Checkpoint) -> bool:
        """
        Persist a checkpoint, replacing any previous one.

        Args:
            checkpoint: Checkpoint to save

        Returns:
            True if written, False if the storage was unavailable
        """
        with self._lock:
            temp_file = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)

                if self.uses_joblib:
                    joblib.dump({"checkpoint": checkpoint.model_dump(mode="json")}, temp_file)
                else:
                    temp_file.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")

                temp_file.replace(self.path)
                logger.debug(
                    f"Saved checkpoint: {len(checkpoint.project_ids)} project(s) "
                    f"for {checkpoint.billing_account_id}"
                )
                return True

            except OSError as e:
                logger.warning(f"Failed to save checkpoint {self.path}: {e}")
                return False

    def load(self) -> Optional[Checkpoint]:
        """
        Load the last checkpoint.

        Returns:
            Checkpoint if one could be read, None if missing or unreadable
        """
        with self._lock:
            if not self.path.exists():
                logger.info("No checkpoint file, membership will come from the provider")
                return None

            try:
                if self.uses_joblib:
                    data = joblib.load(self.path)
                    return Checkpoint.model_validate(data["checkpoint"])
                return Checkpoint.model_validate_json(self.path.read_text(encoding="utf-8"))

            except (OSError, ValueError, KeyError, TypeError, EOFError,
                    pickle.UnpicklingError, ModelValidationError) as e:
                logger.warning(f"Ignoring unreadable checkpoint {self.path}: {e}")
                return None

    def clear(self) -> None:
        """Remove the checkpoint file if present."""
        with self._lock:
            self.path.unlink(missing_ok=True)


class NullCheckpointStore:
    """Stand-in used when checkpointing is disabled."""

    enabled = False

    def save(self, checkpoint: Checkpoint) -> bool:
        return False

    def load(self) -> Optional[Checkpoint]:
        return None

    def clear(self) -> None:
        return None
