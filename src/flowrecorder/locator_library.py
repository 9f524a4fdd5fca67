from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
from pathlib import Path
import re
import sqlite3
import tempfile
import threading
from typing import Callable, Iterable, Sequence

from .models import (
    WARNING_AMBIGUOUS,
    WARNING_LOW_CONFIDENCE,
    LibraryStatus,
    LocatorDefinition,
    LocatorLibraryEntry,
    RecordedStep,
    StepWarning,
    utc_now,
)

EntryUpdate = Callable[[LocatorLibraryEntry | None], LocatorLibraryEntry | None]

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")

logger = logging.getLogger("flowrecorder.library")


def _now_text() -> str:
    return utc_now().isoformat()


class LocatorLibrary:
    """Workspace-scoped keyed store. Entries are addressed only by locator key."""

    def __init__(self, base_dir: Path, *, use_sqlite: bool = True) -> None:
        base_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = base_dir / "locator_library.db"
        self.json_dir = base_dir / "locators"
        self._lock = threading.Lock()
        self._use_sqlite = use_sqlite and self._initialize_sqlite()
        if not self._use_sqlite:
            self.json_dir.mkdir(parents=True, exist_ok=True)

    @property
    def backend(self) -> str:
        return "sqlite" if self._use_sqlite else "json"

    def _initialize_sqlite(self) -> bool:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS locators (
                        locator_key TEXT PRIMARY KEY,
                        strategy TEXT NOT NULL,
                        value TEXT NOT NULL,
                        status TEXT NOT NULL,
                        last_verified_at TEXT NOT NULL,
                        tier INTEGER NOT NULL,
                        attribute_name TEXT,
                        role_name TEXT,
                        accessible_name TEXT
                    )
                    """
                )
                conn.commit()
            return True
        except sqlite3.Error as exc:
            logger.warning("SQLite locator store unavailable, using JSON records: %s", exc)
            return False

    def lookup(self, locator_key: str) -> LocatorLibraryEntry | None:
        if self._use_sqlite:
            with sqlite3.connect(self.db_path, timeout=10) as conn:
                row = conn.execute(_SELECT_ONE, (locator_key,)).fetchone()
            return _row_to_entry(row) if row else None
        with self._lock:
            return self._read_json(locator_key)

    def entries(self) -> list[LocatorLibraryEntry]:
        if self._use_sqlite:
            with sqlite3.connect(self.db_path, timeout=10) as conn:
                rows = conn.execute(_SELECT_ALL).fetchall()
            return [_row_to_entry(row) for row in rows]
        with self._lock:
            loaded = [self._read_json(path.stem) for path in sorted(self.json_dir.glob("*.json"))]
        return [entry for entry in loaded if entry is not None]

    def upsert(self, entry: LocatorLibraryEntry) -> LocatorLibraryEntry:
        result = self.update(entry.locator_key, lambda _current: entry)
        return result or entry

    def mark_status(self, locator_key: str, status: LibraryStatus) -> LocatorLibraryEntry | None:
        def apply(current: LocatorLibraryEntry | None) -> LocatorLibraryEntry | None:
            if current is None:
                return None
            return replace(current, status=status, last_verified_at=_now_text())

        return self.update(locator_key, apply)

    def update(self, locator_key: str, change: EntryUpdate) -> LocatorLibraryEntry | None:
        """Atomic read-modify-write of one entry. ``change`` returning None leaves the store untouched."""
        _validate_key(locator_key)
        with self._lock:
            if self._use_sqlite:
                return self._update_sqlite(locator_key, change)
            current = self._read_json(locator_key)
            updated = change(current)
            if updated is None:
                return current
            self._write_json(updated)
            return updated

    def _update_sqlite(self, locator_key: str, change: EntryUpdate) -> LocatorLibraryEntry | None:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(_SELECT_ONE, (locator_key,)).fetchone()
                current = _row_to_entry(row) if row else None
                updated = change(current)
                if updated is None:
                    conn.execute("ROLLBACK")
                    return current
                conn.execute(
                    """
                    INSERT INTO locators (
                        locator_key, strategy, value, status, last_verified_at,
                        tier, attribute_name, role_name, accessible_name
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(locator_key) DO UPDATE SET
                        strategy = excluded.strategy,
                        value = excluded.value,
                        status = excluded.status,
                        last_verified_at = excluded.last_verified_at,
                        tier = excluded.tier,
                        attribute_name = excluded.attribute_name,
                        role_name = excluded.role_name,
                        accessible_name = excluded.accessible_name
                    """,
                    (
                        updated.locator_key,
                        updated.strategy,
                        updated.value,
                        updated.status,
                        updated.last_verified_at,
                        updated.tier,
                        updated.attribute_name,
                        updated.role_name,
                        updated.accessible_name,
                    ),
                )
                conn.execute("COMMIT")
                return updated
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def _json_path(self, locator_key: str) -> Path:
        return self.json_dir / f"{locator_key}.json"

    def _read_json(self, locator_key: str) -> LocatorLibraryEntry | None:
        path = self._json_path(locator_key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return LocatorLibraryEntry.from_dict(payload)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Unreadable locator record %s: %s", path, exc)
            return None

    def _write_json(self, entry: LocatorLibraryEntry) -> None:
        path = self._json_path(entry.locator_key)
        payload = json.dumps(entry.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
        temp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(path.parent),
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(payload)
                handle.flush()
                temp_path = Path(handle.name)
            temp_path.replace(path)
        except OSError:
            if temp_path and temp_path.exists():
                temp_path.unlink(missing_ok=True)
            raise


_SELECT_COLUMNS = (
    "locator_key, strategy, value, status, last_verified_at, tier, attribute_name, role_name, accessible_name"
)
_SELECT_ONE = f"SELECT {_SELECT_COLUMNS} FROM locators WHERE locator_key = ?"
_SELECT_ALL = f"SELECT {_SELECT_COLUMNS} FROM locators ORDER BY locator_key"


def _row_to_entry(row: Sequence[object]) -> LocatorLibraryEntry:
    return LocatorLibraryEntry.from_dict(
        {
            "locator_key": row[0],
            "strategy": row[1],
            "value": row[2],
            "status": row[3],
            "last_verified_at": row[4],
            "tier": row[5],
            "attribute_name": row[6],
            "role_name": row[7],
            "accessible_name": row[8],
        }
    )


def _validate_key(locator_key: str) -> None:
    if not _KEY_PATTERN.match(locator_key):
        raise ValueError(f"Invalid locator key: {locator_key!r}")


@dataclass(frozen=True, slots=True)
class CleanupReport:
    steps: tuple[RecordedStep, ...]
    replaced: tuple[str, ...] = ()
    inserted: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.replaced)


def initial_status(definition: LocatorDefinition) -> LibraryStatus:
    return "warning" if definition.low_confidence else "healthy"


class MaintenanceService:
    """Only writer of library health status."""

    def __init__(self, library: LocatorLibrary) -> None:
        self.library = library

    def cleanup(self, steps: Sequence[RecordedStep]) -> CleanupReport:
        cleaned: list[RecordedStep] = []
        replaced: list[str] = []
        inserted: list[str] = []
        for step in steps:
            locator = step.locator
            if locator is None or not locator.locator_key:
                cleaned.append(step)
                continue
            entry = self.library.lookup(locator.locator_key)
            if entry is None:
                self.library.upsert(
                    LocatorLibraryEntry.from_definition(locator, initial_status(locator), _now_text())
                )
                inserted.append(locator.locator_key)
                cleaned.append(step)
                continue
            canonical = entry.to_definition()
            if canonical.same_target_expression(locator) and canonical.tier == locator.tier:
                cleaned.append(step)
                continue
            replaced.append(locator.locator_key)
            cleaned.append(replace(step, locator=canonical, warnings=_warnings_for(step, canonical)))
        if replaced or inserted:
            logger.info("Cleanup replaced %s and inserted %s locator(s).", len(replaced), len(inserted))
        return CleanupReport(tuple(cleaned), tuple(replaced), tuple(inserted))

    def record_failure(self, locator_keys: Iterable[str]) -> list[LocatorLibraryEntry]:
        updated: list[LocatorLibraryEntry] = []
        for key in dict.fromkeys(locator_keys):
            entry = self.library.mark_status(key, "failing")
            if entry is None:
                logger.warning("Failing locator %s is not in the library.", key)
                continue
            logger.info("Locator %s marked failing.", key)
            updated.append(entry)
        return updated

    def record_success(self, locator_keys: Iterable[str]) -> list[LocatorLibraryEntry]:
        updated: list[LocatorLibraryEntry] = []
        for key in dict.fromkeys(locator_keys):

            def apply(current: LocatorLibraryEntry | None) -> LocatorLibraryEntry | None:
                if current is None:
                    return None
                status: LibraryStatus = "warning" if current.tier >= 5 else "healthy"
                return replace(current, status=status, last_verified_at=_now_text())

            entry = self.library.update(key, apply)
            if entry is not None:
                updated.append(entry)
        return updated


def _warnings_for(step: RecordedStep, canonical: LocatorDefinition) -> tuple[StepWarning, ...]:
    kept = [item for item in step.warnings if item.code not in {WARNING_LOW_CONFIDENCE, WARNING_AMBIGUOUS}]
    if canonical.low_confidence:
        kept.append(
            StepWarning(WARNING_LOW_CONFIDENCE, f"Library locator is tier {canonical.tier} ({canonical.strategy}).")
        )
    return tuple(kept)
