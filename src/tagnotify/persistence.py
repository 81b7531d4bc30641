import json
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .errors import PersistenceFailure
from .model import ScheduledOccurrence

SCHEDULE_VERSION = 1


class ScheduleFile:
    """
    JSON blob holding the current occurrences and their fired flags:

        {"version": 1, "saved": "<iso>", "schedule": [{...}, ...]}
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def load(self) -> Optional[list[ScheduledOccurrence]]:
        """
        Prior occurrences, or None when nothing has been saved yet.

        Raises:
            PersistenceFailure: unreadable file or malformed content.
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(f"could not read {self.path}: {e}") from e
        records = data.get("schedule") if isinstance(data, dict) else None
        if records is None:
            return None
        try:
            return [ScheduledOccurrence.from_dict(r) for r in records]
        except (TypeError, ValueError, AttributeError) as e:
            raise PersistenceFailure(f"malformed schedule in {self.path}: {e}") from e

    def persist(self, occurrences: Iterable[ScheduledOccurrence]) -> int:
        """
        Write occurrences atomically (temp file + replace).

        Raises:
            PersistenceFailure: when the file cannot be written.
        """
        records = [o.to_dict() for o in occurrences]
        payload = {
            "version": SCHEDULE_VERSION,
            "saved": datetime.now().isoformat(timespec="seconds"),
            "schedule": records,
        }
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            tmp.replace(self.path)
        except OSError as e:
            raise PersistenceFailure(f"could not write {self.path}: {e}") from e
        return len(records)
