import json
from pathlib import Path
import threading
from urllib.parse import parse_qs, urlparse

import pytest

from flowrecorder.errors import UnknownTargetError
from flowrecorder.failure_reporter import artifact_slug, environment_descriptor, strip_ansi, write_failure_artifact
from flowrecorder.models import RunRecord
from flowrecorder.remote import build_endpoint, capabilities, missing_credentials, resolve_target
from flowrecorder.run_store import RunStore
from flowrecorder import runner_config
from flowrecorder.runner_config import CONFIG_MARKER, CONFTEST_TEMPLATE, ensure_runner_config, has_runner_config
from flowrecorder.workspace import Workspace


def _record(run_id: str, status: str, started_at: str = "2026-03-01T10:00:00+00:00") -> RunRecord:
    return RunRecord(
        run_id=run_id,
        test_name="create_order",
        spec_rel_path="tests/create_order/test_create_order.py",
        status=status,  # type: ignore[arg-type]
        started_at=started_at,
        source="local",
    )


def test_run_store_keeps_latest_record_per_run(tmp_path: Path) -> None:
    store = RunStore(tmp_path / "runs")
    store.append(_record("a", "pending"))
    store.append(_record("b", "pending", started_at="2026-03-02T10:00:00+00:00"))
    store.append(_record("a", "running"))
    store.append(_record("a", "passed"))

    assert [item.status for item in store.history("a")] == ["pending", "running", "passed"]
    assert store.latest("a").status == "passed"
    assert store.latest("missing") is None
    assert [(item.run_id, item.status) for item in store.list_runs()] == [("b", "pending"), ("a", "passed")]


def test_run_store_skips_corrupt_lines(tmp_path: Path) -> None:
    store = RunStore(tmp_path)
    store.append(_record("a", "failed"))
    with store.index_path.open("a", encoding="utf-8") as handle:
        handle.write("{truncated\n")

    assert [item.run_id for item in store.list_runs()] == ["a"]


def test_remote_targets_and_credentials() -> None:
    target = resolve_target(" Chrome-Windows-11 ")
    assert target.name == "chrome-windows-11"
    assert target.playwright_browser == "chromium"
    with pytest.raises(UnknownTargetError) as excinfo:
        resolve_target("ie-windows-xp")
    assert "chrome-windows-11" in excinfo.value.known

    assert missing_credentials({}) == ["BROWSERSTACK_USERNAME", "BROWSERSTACK_ACCESS_KEY"]
    assert missing_credentials({"BROWSERSTACK_USERNAME": "u", "BROWSERSTACK_ACCESS_KEY": " "}) == ["BROWSERSTACK_ACCESS_KEY"]


def test_endpoint_carries_capabilities() -> None:
    caps = capabilities(resolve_target("webkit-macos-sonoma"), build="flowrecorder-a", session_name="a 1234")
    endpoint = build_endpoint(caps, "user", "key")

    payload = json.loads(parse_qs(urlparse(endpoint).query)["caps"][0])
    assert payload["browser"] == "playwright-webkit"
    assert payload["os"] == "OS X"
    assert payload["browserstack.username"] == "user"


def test_runner_config_is_created_once(tmp_path: Path) -> None:
    workspace = Workspace(tmp_path)
    paths: list[Path] = []
    workers = [threading.Thread(target=lambda: paths.append(ensure_runner_config(workspace))) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert paths == [workspace.conftest_path] * 8
    assert has_runner_config(workspace.conftest_path)
    assert [path.name for path in tmp_path.iterdir()] == ["conftest.py"]


def test_user_conftest_is_left_alone(tmp_path: Path) -> None:
    workspace = Workspace(tmp_path)
    workspace.conftest_path.write_text("import pytest\n", encoding="utf-8")

    ensure_runner_config(workspace)

    assert workspace.conftest_path.read_text(encoding="utf-8") == "import pytest\n"
    assert not has_runner_config(workspace.conftest_path)
    assert CONFIG_MARKER.startswith("#")


def test_runner_config_written_by_another_process(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    workspace = Workspace(tmp_path)

    def link_after_rival(source, destination) -> None:
        Path(destination).write_text(CONFTEST_TEMPLATE, encoding="utf-8")
        raise FileExistsError(destination)

    monkeypatch.setattr(runner_config.os, "link", link_after_rival)

    assert ensure_runner_config(workspace, base_delay=0) == workspace.conftest_path
    assert has_runner_config(workspace.conftest_path)
    assert [path.name for path in tmp_path.iterdir()] == ["conftest.py"]


def test_runner_config_race_with_foreign_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    workspace = Workspace(tmp_path)

    def link_after_rival(source, destination) -> None:
        Path(destination).write_text("import pytest\n", encoding="utf-8")
        raise FileExistsError(destination)

    monkeypatch.setattr(runner_config.os, "link", link_after_rival)

    assert ensure_runner_config(workspace, attempts=2, base_delay=0) == workspace.conftest_path
    assert workspace.conftest_path.read_text(encoding="utf-8") == "import pytest\n"


def test_runner_config_race_that_leaves_nothing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def link_conflict(source, destination) -> None:
        raise FileExistsError(destination)

    monkeypatch.setattr(runner_config.os, "link", link_conflict)

    with pytest.raises(FileNotFoundError):
        ensure_runner_config(Workspace(tmp_path), attempts=2, base_delay=0)
    assert list(tmp_path.iterdir()) == []


def test_failure_artifact_helpers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    assert strip_ansi("\x1b[31mE   boom\x1b[0m") == "E   boom"
    assert artifact_slug("tests/a/test_a.py::test_a[scenario-1]", "call", 0) == "tests_a_test_a.py_test_a_scenario-1"
    assert artifact_slug("tests/a/test_a.py::test_a", "setup", 2) == "tests_a_test_a.py_test_a-setup-retry2"

    monkeypatch.setenv("FLOWRECORDER_TARGET", "edge-windows-11")
    monkeypatch.setenv("FLOWRECORDER_PROFILE", "remote")
    descriptor = environment_descriptor(None, 1)
    assert descriptor["browser"] == "edge-windows-11"
    assert descriptor["profile"] == "remote"
    assert descriptor["retry"] == 1

    path = write_failure_artifact(tmp_path, "slug", {"locator_key": "lk_0123456789ab"})
    assert path == tmp_path / "failures" / "slug.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {"locator_key": "lk_0123456789ab"}
