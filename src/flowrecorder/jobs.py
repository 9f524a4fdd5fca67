from __future__ import annotations

import logging
import os
from pathlib import Path
import shutil
import signal
import subprocess
import sys
import time
from typing import Iterable, Mapping, Protocol, Sequence

from .errors import ProcessSpawnError

logger = logging.getLogger("flowrecorder.jobs")


class JobHandle(Protocol):
    def stdout_lines(self) -> Iterable[str]: ...

    def stderr_lines(self) -> Iterable[str]: ...

    def wait(self, timeout: float | None = None) -> int | None: ...

    def cancel(self) -> None: ...


class Launcher(Protocol):
    def launch(self, command: Sequence[str], cwd: Path, env: Mapping[str, str]) -> JobHandle: ...


class ProcessJob:
    """Child process in its own process group so cancellation reaches every descendant."""

    def __init__(self, process: subprocess.Popen[str]) -> None:
        self.process = process

    @property
    def pid(self) -> int:
        return self.process.pid

    def stdout_lines(self) -> Iterable[str]:
        if self.process.stdout is None:
            return []
        return iter(self.process.stdout.readline, "")

    def stderr_lines(self) -> Iterable[str]:
        if self.process.stderr is None:
            return []
        return iter(self.process.stderr.readline, "")

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def cancel(self) -> None:
        if self.process.poll() is not None:
            return
        if sys.platform.startswith("win"):
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(self.process.pid)],
                capture_output=True,
                check=False,
            )
            return
        try:
            os.killpg(os.getpgid(self.process.pid), signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(os.getpgid(self.process.pid), signal.SIGKILL)
            except ProcessLookupError:
                pass


class SubprocessLauncher:
    def launch(self, command: Sequence[str], cwd: Path, env: Mapping[str, str]) -> ProcessJob:
        kwargs: dict[str, object] = {}
        if sys.platform.startswith("win"):
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            process = subprocess.Popen(
                list(command),
                cwd=str(cwd),
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **kwargs,  # type: ignore[arg-type]
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Could not start {command[0]}: {exc}") from exc
        logger.info("Started pid %s: %s", process.pid, " ".join(command))
        return ProcessJob(process)


def remove_tree_with_retry(path: Path, attempts: int = 5, base_delay: float = 0.2) -> bool:
    """Delete ``path``; file locks held by browsers or virus scanners are retried with backoff."""
    for attempt in range(attempts):
        if not path.exists():
            return True
        try:
            shutil.rmtree(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.debug("Cleanup attempt %s for %s failed: %s", attempt + 1, path, exc)
            if attempt + 1 < attempts:
                time.sleep(base_delay * (2**attempt))
    logger.warning("Could not remove %s after %s attempts; leaving it in place.", path, attempts)
    return False
