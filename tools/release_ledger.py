"""Deployment history and standby tracking.

Every deploy and rollback attempt is appended to ``deployments.json``.
After a production deploy the fully deployed standby host is written to
``standby.json``, which traffic-switch tooling reads as its source of truth.
"""

import json
import logging
from pathlib import Path

from schemas.deployment import DeploymentRecord, StandbyRecord

logger = logging.getLogger(__name__)


class ReleaseLedger:
    """Append-only record of releases per target."""

    def __init__(self, history_file: Path, standby_file: Path | None = None) -> None:
        """Initialize release ledger.

        Args:
            history_file: Path to deployment history JSON file
            standby_file: Path to the standby record (default: next to history)
        """
        self.history_file = Path(history_file)
        self.standby_file = Path(standby_file) if standby_file else self.history_file.with_name("standby.json")
        self._history: list[DeploymentRecord] = []

        if self.history_file.exists():
            self._load_history()

    def _load_history(self) -> None:
        try:
            data = json.loads(self.history_file.read_text())
            self._history = [DeploymentRecord.model_validate(record) for record in data]
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("LEDGER: Ignoring unreadable history %s: %s", self.history_file, e)
            self._history = []

    def _save_history(self) -> None:
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        data = [record.model_dump(mode="json") for record in self._history]
        self.history_file.write_text(json.dumps(data, indent=2))

    def record(self, record: DeploymentRecord) -> None:
        """Append a deploy or rollback attempt."""
        self._history.append(record)
        self._save_history()

    def get_history(self, limit: int | None = None, target: str | None = None) -> list[DeploymentRecord]:
        """Most recent records first.

        Args:
            limit: Maximum number of records
            target: Only records for this target
        """
        records = [r for r in self._history if target is None or r.target == target]
        records.reverse()
        return records[:limit] if limit else records

    def current_release(self, target: str) -> str | None:
        """Release directory the target's symlink was last pointed at."""
        for record in self.get_history(target=target):
            if record.success:
                return record.release_dir
        return None

    def previous_release(self, target: str) -> str | None:
        """Last successful release before the current one, for rollback."""
        current = self.current_release(target)
        for record in self.get_history(target=target):
            if record.success and record.release_dir != current:
                return record.release_dir
        return None

    def mark_standby(self, record: StandbyRecord) -> None:
        """Record the host that now holds a fully deployed release."""
        self.standby_file.parent.mkdir(parents=True, exist_ok=True)
        self.standby_file.write_text(record.model_dump_json(indent=2))
        logger.info("LEDGER: Standby is %s (%s) with %s", record.target, record.host, record.release_dir)

    def standby(self) -> StandbyRecord | None:
        if not self.standby_file.exists():
            return None
        return StandbyRecord.model_validate_json(self.standby_file.read_text())
