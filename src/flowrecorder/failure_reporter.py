"""pytest plugin loaded into orchestrated runs with ``-p flowrecorder.failure_reporter``.

Writes one JSON artifact per failing test phase into ``$FLOWRECORDER_RUN_DIR/failures``.
Reporting problems are logged and never change the test outcome.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import platform
import re
from typing import Any

import pytest

from .runtime import extract_locator_keys

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
SLUG_PATTERN = re.compile(r"[^A-Za-z0-9_.-]+")

logger = logging.getLogger("flowrecorder.failures")


def strip_ansi(text: str) -> str:
    return ANSI_PATTERN.sub("", text or "")


def artifact_slug(node_id: str, when: str, retry: int) -> str:
    base = SLUG_PATTERN.sub("_", node_id).strip("_") or "test"
    suffix = f"-{when}" if when != "call" else ""
    if retry:
        suffix += f"-retry{retry}"
    return f"{base[:120]}{suffix}"


def platform_name() -> str:
    return f"{platform.system()} {platform.release()}".strip()


def environment_descriptor(config: pytest.Config | None, retry: int) -> dict[str, Any]:
    browser = os.environ.get("FLOWRECORDER_TARGET") or ""
    if not browser and config is not None:
        try:
            names = config.getoption("browser")
        except ValueError:
            names = None
        if isinstance(names, (list, tuple)) and names:
            browser = str(names[0])
        elif names:
            browser = str(names)
    return {
        "browser": browser or "chromium",
        "os": platform_name(),
        "profile": os.environ.get("FLOWRECORDER_PROFILE", "local"),
        "retry": retry,
    }


def build_failure_payload(
    item: pytest.Item,
    report: pytest.TestReport,
    *,
    screenshot: str | None,
    retry: int,
) -> dict[str, Any]:
    message = ""
    file_name = ""
    line: int | None = None
    crash = getattr(report.longrepr, "reprcrash", None)
    if crash is not None:
        message = strip_ansi(str(crash.message))
        file_name = str(crash.path)
        line = int(crash.lineno)
    stack = strip_ansi(report.longreprtext)
    if not message:
        message = stack.strip().splitlines()[-1] if stack.strip() else "Test failed."
    keys = extract_locator_keys(message) or extract_locator_keys(stack)
    return {
        "test_name": item.name,
        "node_id": item.nodeid,
        "status": "failed",
        "phase": report.when,
        "error": {
            "message": message,
            "stack": stack,
            "location": {"file": file_name, "line": line, "function": report.location[2]},
        },
        "duration": round(report.duration, 3),
        "retry": retry,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "screenshot": screenshot,
        "environment": environment_descriptor(item.config, retry),
        "locator_key": keys[0] if keys else None,
    }


def _take_screenshot(item: pytest.Item, run_dir: Path, slug: str) -> str | None:
    funcargs = getattr(item, "funcargs", {}) or {}
    page = funcargs.get("page")
    if page is None:
        return None
    target = run_dir / "screenshots" / f"{slug}.png"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        page.screenshot(path=str(target), full_page=True)
    except Exception as exc:
        logger.warning("Screenshot for %s failed: %s", item.nodeid, exc)
        return None
    return target.relative_to(run_dir).as_posix()


def write_failure_artifact(run_dir: Path, slug: str, payload: dict[str, Any]) -> Path:
    target = run_dir / "failures" / f"{slug}.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return target


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]):
    outcome = yield
    report: pytest.TestReport = outcome.get_result()
    if not report.failed or report.when not in {"setup", "call"}:
        return
    run_dir_text = os.environ.get("FLOWRECORDER_RUN_DIR")
    if not run_dir_text:
        return
    run_dir = Path(run_dir_text)
    retry = max(0, int(getattr(item, "execution_count", 1)) - 1)
    slug = artifact_slug(item.nodeid, report.when, retry)
    try:
        screenshot = _take_screenshot(item, run_dir, slug) if report.when == "call" else None
        write_failure_artifact(run_dir, slug, build_failure_payload(item, report, screenshot=screenshot, retry=retry))
    except Exception:
        logger.exception("Could not write failure artifact for %s", item.nodeid)
