"""Local key directory: one credential file per (project, account, creation time)."""

import json
import logging
import os
from datetime import datetime
from pathlib import Path

from .models import Key

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"
LEGACY_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


class KeyStore:
    """Owner-only directory of service account key files.

    File names are ``<project>-<account>-<timestamp>.json``. Because every name
    is namespaced by project and creation time, concurrent workers never write
    the same file.
    """

    def __init__(self, key_dir: Path):
        self.key_dir = Path(key_dir)

    def prepare(self) -> None:
        """Create the key directory with 0700 permissions."""
        self.key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.key_dir, 0o700)
        logger.debug(f"Key directory ready: {self.key_dir}")

    def new_key_path(self, project_id: str, account_name: str, now: datetime | None = None) -> Path:
        """Path for a key about to be created."""
        stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        return self.key_dir / f"{project_id}-{account_name}-{stamp}.json"

    def secure(self, path: Path) -> None:
        """Restrict a key file to its owner."""
        os.chmod(path, 0o600)

    def list_keys(self, project_id: str, account_name: str) -> list[Key]:
        """
        List local keys for a project's service account, oldest first.

        Args:
            project_id: Project id
            account_name: Service account name (the part before ``@``)

        Returns:
            Keys with ``local_path`` set; ``remote_id`` is read from the file
            when it is a parseable key file
        """
        if not self.key_dir.exists():
            return []

        prefix = f"{project_id}-{account_name}-"
        keys = []
        for path in self.key_dir.glob(f"{prefix}*.json"):
            stamp = path.stem[len(prefix):]
            keys.append(Key(
                remote_id=self._read_key_id(path),
                created_at=self._parse_timestamp(stamp, path),
                local_path=path,
            ))
        return sorted(keys, key=lambda key: key.created_at)

    def count(self, project_id: str, account_name: str) -> int:
        return len(self.list_keys(project_id, account_name))

    @staticmethod
    def _parse_timestamp(stamp: str, path: Path) -> datetime:
        for fmt in (TIMESTAMP_FORMAT, LEGACY_TIMESTAMP_FORMAT):
            try:
                return datetime.strptime(stamp, fmt)
            except ValueError:
                continue
        # Hand-named file: fall back to its modification time
        return datetime.fromtimestamp(path.stat().st_mtime)

    @staticmethod
    def _read_key_id(path: Path) -> str | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.debug(f"Key file is not readable JSON: {path}")
            return None
        if isinstance(data, dict):
            return data.get("private_key_id")
        return None
