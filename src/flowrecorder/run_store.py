from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import threading

from .models import RunRecord

logger = logging.getLogger("flowrecorder.runs")


class RunStore:
    """Append-only run history; the last line for a run id is its current state."""

    def __init__(self, runs_dir: Path) -> None:
        self.runs_dir = runs_dir
        self.index_path = runs_dir / "index.jsonl"
        self._lock = threading.Lock()

    def append(self, record: RunRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False, sort_keys=True)
        with self._lock:
            self.runs_dir.mkdir(parents=True, exist_ok=True)
            with self.index_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())

    def history(self, run_id: str) -> list[RunRecord]:
        return [record for record in self._read_all() if record.run_id == run_id]

    def latest(self, run_id: str) -> RunRecord | None:
        records = self.history(run_id)
        return records[-1] if records else None

    def list_runs(self) -> list[RunRecord]:
        latest: dict[str, RunRecord] = {}
        for record in self._read_all():
            latest[record.run_id] = record
        return sorted(latest.values(), key=lambda item: item.started_at, reverse=True)

    def _read_all(self) -> list[RunRecord]:
        if not self.index_path.exists():
            return []
        records: list[RunRecord] = []
        with self._lock:
            lines = self.index_path.read_text(encoding="utf-8").splitlines()
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(RunRecord.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable run record on line %s: %s", number, exc)
        return records
