from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile
import time

from .workspace import Workspace

CONFIG_MARKER = "# flowrecorder runner configuration"

CONFTEST_TEMPLATE = f'''{CONFIG_MARKER}
from __future__ import annotations

import os

import pytest

from flowrecorder.remote import connect_remote_browser


@pytest.fixture(scope="session")
def base_url(base_url):
    return os.environ.get("FLOWRECORDER_APP_URL") or base_url


if os.environ.get("FLOWRECORDER_REMOTE_CONFIG"):

    @pytest.fixture(scope="session")
    def browser(playwright):
        remote_browser = connect_remote_browser(playwright, os.environ["FLOWRECORDER_REMOTE_CONFIG"])
        yield remote_browser
        remote_browser.close()
'''

logger = logging.getLogger("flowrecorder.orchestrator")


def has_runner_config(path: Path) -> bool:
    try:
        return CONFIG_MARKER in path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return False


def ensure_runner_config(workspace: Workspace, attempts: int = 5, base_delay: float = 0.1) -> Path:
    """Create the default conftest.py if the workspace has none; an existing file is left untouched."""
    target = workspace.conftest_path
    if target.exists():
        if not has_runner_config(target):
            logger.info("Keeping user conftest at %s; remote runs need its own browser fixture.", target)
        return target

    started = time.time()
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(CONFTEST_TEMPLATE)
        try:
            os.link(temp_path, target)
            logger.info("Wrote default runner configuration to %s", target)
            return target
        except FileExistsError:
            pass
    finally:
        temp_path.unlink(missing_ok=True)

    # Another writer created the file between our check and our link.
    for attempt in range(attempts):
        try:
            fresh = target.stat().st_mtime >= started - 1
        except FileNotFoundError:
            fresh = False
        if fresh and has_runner_config(target):
            return target
        time.sleep(base_delay * (2**attempt))
    if target.exists():
        logger.warning("Runner configuration at %s was written concurrently; using it as is.", target)
        return target
    raise FileNotFoundError(f"Runner configuration missing at {target}")
