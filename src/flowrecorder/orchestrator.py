from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
import html
import json
import logging
import os
from pathlib import Path
import re
import shutil
import sys
import threading
import time
from typing import IO, Any, Iterable, Literal, Mapping
import uuid

from .errors import ProcessSpawnError, SpecNotFoundError
from .event_stream import EventStream, Subscription
from .failure_reporter import platform_name, write_failure_artifact
from .jobs import JobHandle, Launcher, SubprocessLauncher, remove_tree_with_retry
from .locator_library import LocatorLibrary, MaintenanceService
from .models import RunRecord, RunStatus, utc_now
from .remote import BrowserStackGrid, RemoteTarget, resolve_target, write_remote_config
from .run_store import RunStore
from .runner_config import ensure_runner_config
from .runtime import IDLE_TIMEOUT_ENV, extract_locator_keys
from .settings import RecorderSettings
from .workspace import SpecLocation, Workspace, resolve_spec, spec_candidates

RunEventKind = Literal["status", "log"]

POLL_SECONDS = 0.2
CANCEL_GRACE_SECONDS = 10.0
INSTALL_TIMEOUT_SECONDS = 600.0
TAIL_LINES = 200
EXIT_NO_TESTS_COLLECTED = 5
REPORTER_PLUGIN = "flowrecorder.failure_reporter"
SPEC_KEY_PATTERN = re.compile(r"locator_step\(\s*[\"'](lk_[0-9a-f]{12})[\"']")

logger = logging.getLogger("flowrecorder.orchestrator")


@dataclass(frozen=True, slots=True)
class RunRequest:
    test_name: str
    remote_target: str | None = None
    browser: str | None = None
    headed: bool | None = None


@dataclass(frozen=True, slots=True)
class RunEvent:
    kind: RunEventKind
    run_id: str
    stream: str = ""
    message: str = ""
    status: RunStatus | None = None


@dataclass(frozen=True, slots=True)
class RunArtifacts:
    failure_paths: tuple[str, ...]
    trace_paths: tuple[str, ...]
    locator_keys: tuple[str, ...]
    first_error: str | None


class RunHandle:
    """Live view of one run. Cancellation only flags the run; the run thread terminates the job."""

    def __init__(self, record: RunRecord, run_dir: Path, stream_capacity: int) -> None:
        self.run_dir = run_dir
        self.stream: EventStream[RunEvent] = EventStream(stream_capacity)
        self._record = record
        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._done = threading.Event()

    @property
    def run_id(self) -> str:
        return self._record.run_id

    @property
    def record(self) -> RunRecord:
        with self._lock:
            return self._record

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def subscribe(self, capacity: int | None = None) -> Subscription[RunEvent]:
        return self.stream.subscribe(capacity)

    def cancel(self) -> None:
        if not self._done.is_set():
            logger.info("Cancellation requested for run %s", self.run_id)
        self._cancel_requested.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


class Orchestrator:
    def __init__(
        self,
        workspace: Workspace,
        settings: RecorderSettings | None = None,
        *,
        launcher: Launcher | None = None,
        grid: BrowserStackGrid | None = None,
        library: LocatorLibrary | None = None,
        store: RunStore | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.workspace = workspace
        self.settings = settings or RecorderSettings()
        self.launcher = launcher or SubprocessLauncher()
        self.grid = grid or BrowserStackGrid(
            self.launcher,
            username_env=self.settings.remote_username_env,
            access_key_env=self.settings.remote_access_key_env,
        )
        self.maintenance = MaintenanceService(library or LocatorLibrary(workspace.library_dir))
        self.store = store or RunStore(workspace.runs_dir)
        self._environ = environ
        self._handles: dict[str, RunHandle] = {}
        self._handles_lock = threading.Lock()

    @property
    def environ(self) -> Mapping[str, str]:
        return self._environ if self._environ is not None else os.environ

    def start(self, request: RunRequest) -> RunHandle:
        """Check preconditions, persist a pending record and start the run thread.

        Raises ``SpecNotFoundError``, ``UnknownTargetError`` or ``MissingCredentialsError``
        before anything is persisted.
        """
        location = resolve_spec(self.workspace.root, request.test_name)
        if location is None:
            searched = [path for _, path in spec_candidates(self.workspace.root, request.test_name)]
            raise SpecNotFoundError(request.test_name, searched)

        target: RemoteTarget | None = None
        if request.remote_target:
            target = resolve_target(request.remote_target)
            self.grid.validate(self.environ)

        run_id = uuid.uuid4().hex
        run_dir = self.workspace.runs_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        record = RunRecord(
            run_id=run_id,
            test_name=request.test_name,
            spec_rel_path=location.relative_path,
            status="pending",
            started_at=utc_now().isoformat(),
            source="remote" if target else "local",
            target=target.name if target else None,
        )
        self.store.append(record)

        handle = RunHandle(record, run_dir, self.settings.stream_buffer_size)
        with self._handles_lock:
            self._handles[run_id] = handle
        thread = threading.Thread(
            target=self._execute,
            args=(handle, location, target, request),
            name=f"flowrecorder-run-{run_id[:8]}",
            daemon=True,
        )
        logger.info("Run %s queued for %s (%s)", run_id, location.relative_path, record.source)
        thread.start()
        return handle

    def run(self, request: RunRequest, timeout: float | None = None) -> RunRecord:
        handle = self.start(request)
        handle.wait(timeout)
        return handle.record

    def handle(self, run_id: str) -> RunHandle | None:
        with self._handles_lock:
            return self._handles.get(run_id)

    def cancel(self, run_id: str) -> bool:
        handle = self.handle(run_id)
        if handle is None or handle.done:
            return False
        handle.cancel()
        return True

    def list_runs(self) -> list[RunRecord]:
        return self.store.list_runs()

    def _execute(self, handle: RunHandle, location: SpecLocation, target: RemoteTarget | None, request: RunRequest) -> None:
        try:
            self._run(handle, location, target, request)
        except Exception as exc:
            logger.exception("Run %s failed unexpectedly", handle.run_id)
            self._finish(handle, "failed", error=f"Unexpected orchestrator error: {exc}")

    def _run(self, handle: RunHandle, location: SpecLocation, target: RemoteTarget | None, request: RunRequest) -> None:
        if handle.cancel_requested:
            self._finish(handle, "cancelled", error="Cancelled before start.")
            return

        try:
            ensure_runner_config(self.workspace)
        except OSError as exc:
            logger.warning("Runner configuration could not be prepared: %s", exc)

        self._transition(handle, "running")
        run_dir = handle.run_dir
        browser = request.browser or self.settings.browser
        headed = self.settings.headed if request.headed is None else request.headed

        env = dict(self.environ)
        env["FLOWRECORDER_RUN_DIR"] = str(run_dir)
        env["FLOWRECORDER_PROFILE"] = "remote" if target else "local"
        env["PYTHONUNBUFFERED"] = "1"
        env[IDLE_TIMEOUT_ENV] = str(self.settings.idle_timeout_ms)
        env.pop("FLOWRECORDER_REMOTE_CONFIG", None)
        if target is not None:
            config_path = write_remote_config(
                run_dir / "remote.json",
                target,
                build=f"flowrecorder-{location.path.stem}",
                session_name=f"{request.test_name} {handle.run_id[:8]}",
                username_env=self.grid.username_env,
                access_key_env=self.grid.access_key_env,
            )
            env["FLOWRECORDER_REMOTE_CONFIG"] = str(config_path)
            env["FLOWRECORDER_TARGET"] = target.name
            browser = target.playwright_browser
        else:
            env["FLOWRECORDER_TARGET"] = browser
            if self.settings.install_browsers:
                self._install_browser(handle, browser, env)

        if handle.cancel_requested:
            self._finish(handle, "cancelled", error="Cancelled before the test process started.")
            return

        command = build_test_command(location, browser, run_dir / "test-results", headed=headed and target is None)
        log_path = run_dir / "output.log"
        started = time.monotonic()
        try:
            if target is not None:
                job = self.grid.submit(target, command, self.workspace.root, env)
            else:
                job = self.launcher.launch(command, self.workspace.root, env)
        except (ProcessSpawnError, OSError) as exc:
            logger.error("Run %s could not start: %s", handle.run_id, exc)
            self._finish(handle, "failed", error=f"Could not start test process: {exc}")
            return

        tail: deque[str] = deque(maxlen=TAIL_LINES)
        output_keys: dict[str, None] = {}
        with log_path.open("w", encoding="utf-8") as log_handle:
            readers = self._pump_output(handle, job, log_handle, tail, output_keys)
            exit_code, cancelled = self._wait_for_job(handle, job)
            for reader in readers:
                reader.join(timeout=5)
        duration = time.monotonic() - started

        status = run_status_for(exit_code, cancelled)
        artifacts = self._collect_artifacts(handle, status, list(output_keys), tail, env)
        if status == "failed" and artifacts.locator_keys:
            self.maintenance.record_failure(artifacts.locator_keys)
        elif status == "passed":
            self.maintenance.record_success(spec_locator_keys(location.path))

        error = None
        if status == "failed":
            error = artifacts.first_error or f"Test process exited with code {exit_code}."
        elif status == "cancelled":
            error = "Cancelled by user."
        record = replace(
            handle.record,
            exit_code=exit_code,
            trace_paths=artifacts.trace_paths,
            artifact_paths=artifacts.failure_paths,
            failing_locator_keys=artifacts.locator_keys if status == "failed" else (),
        )
        write_report(run_dir / "report.html", record, status, duration)
        remove_tree_with_retry(run_dir / "test-results")
        self._finish(
            handle,
            status,
            exit_code=record.exit_code,
            trace_paths=record.trace_paths,
            artifact_paths=record.artifact_paths + ("report.html", "output.log"),
            failing_locator_keys=record.failing_locator_keys,
            error=error,
        )

    def _install_browser(self, handle: RunHandle, browser: str, env: Mapping[str, str]) -> None:
        command = [sys.executable, "-m", "playwright", "install", browser]
        try:
            job = self.launcher.launch(command, self.workspace.root, env)
        except (ProcessSpawnError, OSError) as exc:
            logger.warning("Browser install skipped: %s", exc)
            return
        readers = [
            threading.Thread(target=self._forward, args=(handle, "install", job.stdout_lines()), daemon=True),
            threading.Thread(target=self._forward, args=(handle, "install", job.stderr_lines()), daemon=True),
        ]
        for reader in readers:
            reader.start()
        code, cancelled = self._wait_for_job(handle, job, timeout=INSTALL_TIMEOUT_SECONDS)
        for reader in readers:
            reader.join(timeout=5)
        if cancelled:
            logger.info("Browser install for run %s cancelled.", handle.run_id)
        elif code != 0:
            logger.warning("playwright install %s exited with %s; continuing with the existing browsers.", browser, code)

    def _forward(self, handle: RunHandle, stream: str, lines: Iterable[str]) -> None:
        for line in lines:
            handle.stream.publish(RunEvent("log", handle.run_id, stream, line.rstrip("\r\n")))

    def _pump_output(
        self,
        handle: RunHandle,
        job: JobHandle,
        log_handle: IO[str],
        tail: deque[str],
        output_keys: dict[str, None],
    ) -> list[threading.Thread]:
        write_lock = threading.Lock()

        def pump(stream: str, lines: Iterable[str]) -> None:
            try:
                for line in lines:
                    text = line.rstrip("\r\n")
                    with write_lock:
                        log_handle.write(f"[{stream}] {text}\n")
                        log_handle.flush()
                        tail.append(text)
                        for key in extract_locator_keys(text):
                            output_keys.setdefault(key, None)
                    handle.stream.publish(RunEvent("log", handle.run_id, stream, text))
            except (OSError, ValueError) as exc:
                logger.warning("Output stream %s of run %s ended early: %s", stream, handle.run_id, exc)

        readers = [
            threading.Thread(target=pump, args=("stdout", job.stdout_lines()), daemon=True),
            threading.Thread(target=pump, args=("stderr", job.stderr_lines()), daemon=True),
        ]
        for reader in readers:
            reader.start()
        return readers

    def _wait_for_job(self, handle: RunHandle, job: JobHandle, timeout: float | None = None) -> tuple[int | None, bool]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            code = job.wait(POLL_SECONDS)
            if code is not None:
                return code, False
            if handle.cancel_requested:
                logger.info("Terminating job for run %s", handle.run_id)
                job.cancel()
                return job.wait(CANCEL_GRACE_SECONDS), True
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Job for run %s exceeded %ss; terminating it.", handle.run_id, timeout)
                job.cancel()
                return job.wait(CANCEL_GRACE_SECONDS), False

    def _collect_artifacts(
        self,
        handle: RunHandle,
        status: RunStatus,
        output_keys: list[str],
        tail: Iterable[str],
        env: Mapping[str, str],
    ) -> RunArtifacts:
        run_dir = handle.run_dir
        failures_dir = run_dir / "failures"
        failure_paths: list[str] = []
        keys: dict[str, None] = {}
        covered: set[str] = set()
        first_error: str | None = None

        for path in sorted(failures_dir.glob("*.json")) if failures_dir.is_dir() else []:
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable failure artifact %s: %s", path, exc)
                continue
            failure_paths.append(path.relative_to(run_dir).as_posix())
            key = payload.get("locator_key")
            if key:
                keys.setdefault(str(key), None)
                covered.add(str(key))
            message = str((payload.get("error") or {}).get("message") or "")
            if first_error is None and message:
                first_error = message

        for key in output_keys:
            keys.setdefault(key, None)

        if status == "failed":
            lines = list(tail)
            descriptor = {
                "browser": env.get("FLOWRECORDER_TARGET", ""),
                "os": platform_name(),
                "profile": env.get("FLOWRECORDER_PROFILE", "local"),
                "retry": 0,
            }
            for key in keys:
                if key in covered:
                    continue
                message = next((line for line in lines if f"[locator-key={key}]" in line), f"[locator-key={key}]")
                path = write_failure_artifact(
                    run_dir,
                    f"output-{key}",
                    _output_failure_payload(handle.record, message, "\n".join(lines), key, descriptor),
                )
                failure_paths.append(path.relative_to(run_dir).as_posix())
                first_error = first_error or message
            if not failure_paths:
                message = lines[-1] if lines else "Test process failed without output."
                path = write_failure_artifact(
                    run_dir,
                    "run",
                    _output_failure_payload(handle.record, message, "\n".join(lines), None, descriptor),
                )
                failure_paths.append(path.relative_to(run_dir).as_posix())
                first_error = first_error or message

        trace_paths = collect_traces(run_dir / "test-results", run_dir / "traces")
        return RunArtifacts(
            failure_paths=tuple(failure_paths),
            trace_paths=tuple(path.relative_to(run_dir).as_posix() for path in trace_paths),
            locator_keys=tuple(keys),
            first_error=first_error,
        )

    def _transition(self, handle: RunHandle, status: RunStatus) -> None:
        with handle._lock:
            if handle._record.terminal:
                return
            handle._record = replace(handle._record, status=status)
            record = handle._record
            self.store.append(record)
        handle.stream.publish(RunEvent("status", record.run_id, status=status))

    def _finish(self, handle: RunHandle, status: RunStatus, **changes: Any) -> RunRecord:
        with handle._lock:
            if handle._record.terminal:
                return handle._record
            handle._record = replace(handle._record, status=status, finished_at=utc_now().isoformat(), **changes)
            record = handle._record
            self.store.append(record)
        logger.info("Run %s finished: %s", record.run_id, status)
        handle.stream.publish(RunEvent("status", record.run_id, message=record.error or "", status=status))
        handle.stream.close()
        handle._done.set()
        return record


def build_test_command(location: SpecLocation, browser: str, output_dir: Path, *, headed: bool = False) -> list[str]:
    command = [
        sys.executable,
        "-m",
        "pytest",
        location.relative_path,
        "-p",
        REPORTER_PLUGIN,
        "--browser",
        browser,
        "--output",
        str(output_dir),
        "--tracing",
        "retain-on-failure",
        "-q",
    ]
    if headed:
        command.append("--headed")
    return command


def run_status_for(exit_code: int | None, cancelled: bool) -> RunStatus:
    if cancelled:
        return "cancelled"
    if exit_code == 0:
        return "passed"
    if exit_code == EXIT_NO_TESTS_COLLECTED:
        return "skipped"
    return "failed"


def spec_locator_keys(spec_path: Path) -> list[str]:
    try:
        source = spec_path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Could not read %s for locator keys: %s", spec_path, exc)
        return []
    return list(dict.fromkeys(SPEC_KEY_PATTERN.findall(source)))


def collect_traces(results_dir: Path, traces_dir: Path) -> list[Path]:
    if not results_dir.is_dir():
        return []
    moved: list[Path] = []
    for trace in sorted(results_dir.rglob("*.zip")):
        traces_dir.mkdir(parents=True, exist_ok=True)
        name = trace.name if trace.parent == results_dir else f"{trace.parent.name}.zip"
        target = traces_dir / name
        counter = 2
        while target.exists():
            target = traces_dir / f"{Path(name).stem}-{counter}.zip"
            counter += 1
        try:
            shutil.move(str(trace), str(target))
        except OSError as exc:
            logger.warning("Could not move trace %s: %s", trace, exc)
            continue
        moved.append(target)
    return moved


def _output_failure_payload(
    record: RunRecord,
    message: str,
    stack: str,
    key: str | None,
    environment: dict[str, Any],
) -> dict[str, Any]:
    return {
        "test_name": record.test_name,
        "node_id": record.spec_rel_path,
        "status": "failed",
        "phase": "output",
        "error": {"message": message, "stack": stack, "location": {"file": record.spec_rel_path, "line": None, "function": ""}},
        "duration": None,
        "retry": 0,
        "timestamp": utc_now().isoformat(),
        "screenshot": None,
        "environment": environment,
        "locator_key": key,
    }


def write_report(path: Path, record: RunRecord, status: RunStatus, duration: float) -> Path:
    failures = "".join(f'<li><a href="{html.escape(item)}">{html.escape(item)}</a></li>' for item in record.artifact_paths)
    traces = "".join(f'<li><a href="{html.escape(item)}">{html.escape(item)}</a></li>' for item in record.trace_paths)
    keys = ", ".join(html.escape(key) for key in record.failing_locator_keys) or "none"
    fragment = (
        f'<section class="flowrecorder-run" data-run-id="{html.escape(record.run_id)}">\n'
        f"  <h2>{html.escape(record.test_name)}: {html.escape(status)}</h2>\n"
        f"  <p>Spec: <code>{html.escape(record.spec_rel_path)}</code></p>\n"
        f"  <p>Source: {html.escape(record.source)}{' / ' + html.escape(record.target) if record.target else ''}</p>\n"
        f"  <p>Exit code: {record.exit_code if record.exit_code is not None else 'n/a'}; duration {duration:.1f}s</p>\n"
        f"  <p>Failing locators: {keys}</p>\n"
        f"  <h3>Failures</h3>\n  <ul>{failures}</ul>\n"
        f"  <h3>Traces</h3>\n  <ul>{traces}</ul>\n"
        "</section>\n"
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(fragment, encoding="utf-8")
    return path
