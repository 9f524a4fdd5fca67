from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import os
from pathlib import Path
import re
import time
from types import SimpleNamespace
from typing import TYPE_CHECKING, Iterator

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

if TYPE_CHECKING:
    from playwright.sync_api import Page

LOCATOR_KEY_PATTERN = re.compile(r"\[locator-key=(lk_[0-9a-f]{12})\]")
BUSY_SELECTORS = (
    ".d365-spinner",
    "#SysLoading",
    ".modal-backdrop.processing",
    '[aria-busy="true"]',
    'div[data-dyn-role="ActionPane"][aria-disabled="true"]',
)
DEFAULT_IDLE_TIMEOUT_MS = 15000
IDLE_TIMEOUT_ENV = "FLOWRECORDER_IDLE_TIMEOUT_MS"
SETTLE_MS = 300
DEFAULT_SCENARIO_ID = "scenario-1"

logger = logging.getLogger("flowrecorder.runtime")


class LocatorStepError(AssertionError):
    def __init__(self, locator_key: str, label: str | None, message: str) -> None:
        super().__init__(format_locator_failure(locator_key, label, message))
        self.locator_key = locator_key
        self.label = label


def format_locator_failure(locator_key: str, label: str | None, message: str) -> str:
    target = f" {label}" if label else ""
    first_line = message.strip().splitlines()[0] if message.strip() else "step failed"
    return f"[locator-key={locator_key}]{target}: {first_line}"


def extract_locator_keys(text: str) -> list[str]:
    return list(dict.fromkeys(LOCATOR_KEY_PATTERN.findall(text or "")))


@contextmanager
def locator_step(locator_key: str, label: str | None = None) -> Iterator[None]:
    try:
        yield
    except LocatorStepError:
        raise
    except (PlaywrightError, AssertionError) as exc:
        raise LocatorStepError(locator_key, label, str(exc)) from exc


def idle_timeout_ms() -> int:
    raw = os.environ.get(IDLE_TIMEOUT_ENV, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_IDLE_TIMEOUT_MS
    return value if value > 0 else DEFAULT_IDLE_TIMEOUT_MS


def wait_for_app_idle(page: Page, timeout_ms: int | None = None) -> None:
    """Block until the application's busy indicators are gone, then let the UI settle briefly.

    Without ``timeout_ms`` the budget comes from ``FLOWRECORDER_IDLE_TIMEOUT_MS``.
    """
    if timeout_ms is None:
        timeout_ms = idle_timeout_ms()
    deadline = time.monotonic() + timeout_ms / 1000
    for selector in BUSY_SELECTORS:
        remaining = max(1, int((deadline - time.monotonic()) * 1000))
        try:
            page.locator(selector).first.wait_for(state="hidden", timeout=remaining)
        except PlaywrightTimeoutError:
            logger.warning("Busy indicator %s still visible after %sms.", selector, timeout_ms)
            break
    page.wait_for_timeout(SETTLE_MS)


def load_rows(path: Path) -> list[SimpleNamespace]:
    if not path.exists():
        return [SimpleNamespace(id=DEFAULT_SCENARIO_ID)]
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a list of records.")
    rows: list[SimpleNamespace] = []
    for index, record in enumerate(payload, start=1):
        if not isinstance(record, dict):
            raise ValueError(f"Record {index} in {path} is not an object.")
        values = {str(key): value for key, value in record.items()}
        values.setdefault("id", f"scenario-{index}")
        values["id"] = str(values["id"])
        rows.append(SimpleNamespace(**values))
    return rows or [SimpleNamespace(id=DEFAULT_SCENARIO_ID)]
