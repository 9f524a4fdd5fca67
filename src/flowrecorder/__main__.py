from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import Sequence

from .code_generator import generate
from .errors import FlowRecorderError
from .locator_library import LocatorLibrary, MaintenanceService
from .logging_setup import build_logger
from .models import ASSERTION_KINDS, LocatorDefinition, RecordedStep
from .orchestrator import Orchestrator, RunRequest
from .parameterization import confirm_candidates, detect_candidates
from .recording_engine import (
    RecordingEngine,
    delete_step,
    insert_step,
    load_session,
    move_step,
    save_session,
    update_step_value,
)
from .settings import RecorderSettings, load_settings
from .spec_writer import apply_spec_preview, preview_generated_test
from .workspace import Workspace


def _workspace(args: argparse.Namespace, settings: RecorderSettings) -> Workspace:
    root = args.workspace or settings.workspace_root or "."
    return Workspace(Path(root).expanduser().resolve())


def _cmd_record(args: argparse.Namespace, settings: RecorderSettings) -> int:
    from .browser_capture import RecordingBrowser

    workspace = _workspace(args, settings)
    engine = RecordingEngine(buffer_capacity=settings.stream_buffer_size)
    subscription = engine.subscribe()
    recorder = RecordingBrowser(engine, browser=args.browser or settings.browser, headed=not args.headless, on_status=print)
    recorder.start()
    recorder.launch(args.url)
    print("Recording. Interact with the browser, then press Enter here to stop.")
    try:
        input()
    except EOFError:
        pass
    steps = recorder.stop_recording()
    recorder.shutdown()
    subscription.close()
    if subscription.overflowed:
        print(f"Live view skipped {subscription.dropped} event(s); the recording itself is complete.")

    report = MaintenanceService(LocatorLibrary(workspace.library_dir)).cleanup(steps)
    path = workspace.session_path(args.name)
    save_session(path, args.name, report.steps, engine.session_id)
    for step in report.steps:
        print(f"{step.order:>3}. {step.label}")
    print(f"Saved {len(report.steps)} step(s) to {path}")
    return 0


def _load_cleaned_steps(workspace: Workspace, name: str) -> tuple[str, tuple[RecordedStep, ...]]:
    session_name, steps = load_session(workspace.session_path(name))
    report = MaintenanceService(LocatorLibrary(workspace.library_dir)).cleanup(steps)
    return session_name, report.steps


def _cmd_params(args: argparse.Namespace, settings: RecorderSettings) -> int:
    workspace = _workspace(args, settings)
    session_name, steps = _load_cleaned_steps(workspace, args.name)
    candidates = detect_candidates(generate(steps, test_name=session_name).source_code)
    if not candidates:
        print("No literal values to parameterize.")
        return 0
    for candidate in candidates:
        line = f"{candidate.id}  {candidate.suggested_name:<24} {candidate.label!r} = {candidate.original_value!r}"
        if candidate.warning:
            line += f"  ! {candidate.warning}"
        print(line)
    return 0


def _step_locator(steps: Sequence[RecordedStep], order: int) -> LocatorDefinition:
    for step in steps:
        if step.order == order:
            if step.locator is None:
                raise ValueError(f"Step {order} ({step.action}) has no locator to assert on.")
            return step.locator
    raise ValueError(f"No step with order {order}.")


def _cmd_edit(args: argparse.Namespace, settings: RecorderSettings) -> int:
    workspace = _workspace(args, settings)
    path = workspace.session_path(args.name)
    session_name, steps = load_session(path)
    session_id = json.loads(path.read_text(encoding="utf-8")).get("session_id")
    try:
        if args.delete is not None:
            steps = delete_step(steps, args.delete)
        elif args.move:
            steps = move_step(steps, *args.move)
        elif args.set_value:
            steps = update_step_value(steps, int(args.set_value[0]), args.set_value[1])
        elif args.insert_wait:
            position, duration = args.insert_wait
            steps = insert_step(steps, int(position), "wait", value=duration)
        elif args.insert_assert:
            position, source_order, kind = args.insert_assert
            if kind not in ASSERTION_KINDS:
                raise ValueError(f"Unknown assertion {kind!r}; expected one of {', '.join(ASSERTION_KINDS)}.")
            steps = insert_step(
                steps,
                int(position),
                "assert",
                locator=_step_locator(steps, int(source_order)),
                value=args.expected,
                assertion=kind,  # type: ignore[arg-type]
            )
    except KeyError as exc:
        raise ValueError(exc.args[0]) from exc
    save_session(path, session_name, steps, session_id)
    for step in steps:
        detail = f" = {step.value!r}" if step.value is not None else ""
        print(f"{step.order:>3}. {step.action:<8} {step.label}{detail}")
    return 0


def _read_param_names(args: argparse.Namespace) -> dict[str, str]:
    names: dict[str, str] = {}
    if args.params_file:
        payload = json.loads(Path(args.params_file).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Parameter file must map candidate ids to names.")
        names.update({str(key): str(value) for key, value in payload.items()})
    for item in args.param or []:
        candidate_id, _, name = item.partition("=")
        if not name:
            raise ValueError(f"Expected CANDIDATE_ID=name, got {item!r}")
        names[candidate_id.strip()] = name.strip()
    return names


def _cmd_generate(args: argparse.Namespace, settings: RecorderSettings) -> int:
    workspace = _workspace(args, settings)
    session_name, steps = _load_cleaned_steps(workspace, args.name)
    test_name = args.test_name or session_name
    param_map: dict[str, str] | None = None
    names = _read_param_names(args)
    if names or args.all_params:
        candidates = detect_candidates(generate(steps, test_name=test_name).source_code)
        chosen = candidates if args.all_params else [item for item in candidates if item.id in names]
        param_map = confirm_candidates(chosen, names)

    generated = generate(steps, param_map, test_name=test_name)
    preview = preview_generated_test(workspace, generated)
    print(preview.message)
    if preview.diff_text:
        print(preview.diff_text)
    if not args.write or not preview.diff_text:
        return 0 if preview.ok else 1
    ok, message = apply_spec_preview(preview)
    print(message)
    return 0 if ok else 1


def _cmd_run(args: argparse.Namespace, settings: RecorderSettings) -> int:
    workspace = _workspace(args, settings)
    orchestrator = Orchestrator(workspace, settings)
    handle = orchestrator.start(
        RunRequest(
            test_name=args.name,
            remote_target=args.target,
            browser=args.browser,
            headed=True if args.headed else None,
        )
    )
    subscription = handle.subscribe()
    print(f"Run {handle.run_id} started.")
    try:
        while not (handle.done and len(subscription) == 0):
            event = subscription.get(timeout=0.5)
            if event is None:
                continue
            if event.kind == "log":
                print(f"[{event.stream}] {event.message}")
            else:
                print(f"== {event.status}")
    except KeyboardInterrupt:
        handle.cancel()
        handle.wait(30)
    record = handle.record
    print(f"Run {record.run_id}: {record.status}")
    if record.failing_locator_keys:
        print("Failing locators: " + ", ".join(record.failing_locator_keys))
    return 0 if record.status in {"passed", "skipped"} else 1


def _cmd_runs(args: argparse.Namespace, settings: RecorderSettings) -> int:
    workspace = _workspace(args, settings)
    for record in Orchestrator(workspace, settings).list_runs()[: args.limit]:
        target = record.target or record.source
        print(f"{record.run_id}  {record.status:<9} {record.started_at}  {target:<20} {record.test_name}")
    return 0


def _cmd_library(args: argparse.Namespace, settings: RecorderSettings) -> int:
    workspace = _workspace(args, settings)
    for entry in LocatorLibrary(workspace.library_dir).entries():
        if args.status and entry.status != args.status:
            continue
        print(f"{entry.locator_key}  {entry.status:<8} tier {entry.tier}  {entry.strategy:<9} {entry.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flowrecorder", description="Record, generate and run browser tests.")
    parser.add_argument("--workspace", help="Workspace root (defaults to settings or the current directory).")
    parser.add_argument("--config", help="Settings file path.")
    commands = parser.add_subparsers(dest="command", required=True)

    record = commands.add_parser("record", help="Record a session in a live browser.")
    record.add_argument("name")
    record.add_argument("--url", required=True)
    record.add_argument("--browser", choices=("chromium", "firefox", "webkit"))
    record.add_argument("--headless", action="store_true")
    record.set_defaults(handler=_cmd_record)

    params = commands.add_parser("params", help="List parameter candidates for a recorded session.")
    params.add_argument("name")
    params.set_defaults(handler=_cmd_params)

    edit = commands.add_parser("edit", help="Edit the steps of a recorded session.")
    edit.add_argument("name")
    change = edit.add_mutually_exclusive_group(required=True)
    change.add_argument("--delete", type=int, metavar="ORDER")
    change.add_argument("--move", type=int, nargs=2, metavar=("ORDER", "POSITION"))
    change.add_argument("--set-value", nargs=2, metavar=("ORDER", "VALUE"))
    change.add_argument("--insert-wait", nargs=2, metavar=("POSITION", "MILLISECONDS"))
    change.add_argument("--insert-assert", nargs=3, metavar=("POSITION", "STEP", "KIND"))
    edit.add_argument("--expected", help="Expected text or value for text_equals and value_equals assertions.")
    edit.set_defaults(handler=_cmd_edit)

    gen = commands.add_parser("generate", help="Generate a pytest test from a recorded session.")
    gen.add_argument("name")
    gen.add_argument("--test-name")
    gen.add_argument("--param", action="append", metavar="CANDIDATE_ID=name")
    gen.add_argument("--params-file")
    gen.add_argument("--all-params", action="store_true", help="Accept every suggested parameter name.")
    gen.add_argument("--write", action="store_true", help="Write the test instead of only previewing it.")
    gen.set_defaults(handler=_cmd_generate)

    run = commands.add_parser("run", help="Run a generated test.")
    run.add_argument("name")
    run.add_argument("--target", help="Remote target name, e.g. chrome-windows-11.")
    run.add_argument("--browser", choices=("chromium", "firefox", "webkit"))
    run.add_argument("--headed", action="store_true")
    run.set_defaults(handler=_cmd_run)

    runs = commands.add_parser("runs", help="List recent runs.")
    runs.add_argument("--limit", type=int, default=20)
    runs.set_defaults(handler=_cmd_runs)

    library = commands.add_parser("library", help="Show the locator library.")
    library.add_argument("--status", choices=("healthy", "warning", "failing"))
    library.set_defaults(handler=_cmd_library)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    if sys.version_info < (3, 11):
        raise SystemExit(
            "flowrecorder requires Python 3.11+. "
            f"Current interpreter: {sys.executable} (Python {sys.version.split()[0]})"
        )
    args = build_parser().parse_args(argv)
    settings = load_settings(Path(args.config) if args.config else None)
    logger = build_logger(settings.log_level)
    try:
        return args.handler(args, settings)
    except (FlowRecorderError, FileNotFoundError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
