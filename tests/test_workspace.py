from pathlib import Path

from flowrecorder.workspace import Workspace, discover_specs, name_variants, resolve_spec


def _write(path: Path, content: str = "def test_x():\n    pass\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_name_variants_normalize_user_input() -> None:
    assert name_variants("test_CreateOrder.py") == ["CreateOrder", "createorder", "create_order"]
    assert name_variants("create_order") == ["create_order"]


def test_resolve_prefers_bundle_layout(tmp_path: Path) -> None:
    _write(tmp_path / "tests" / "test_create_order.py")
    bundle = _write(tmp_path / "tests" / "create_order" / "test_create_order.py")

    location = resolve_spec(tmp_path, "create_order")

    assert location is not None
    assert location.path == bundle
    assert location.layout == "bundle"
    assert location.relative_path == "tests/create_order/test_create_order.py"


def test_resolve_falls_back_to_legacy_layout(tmp_path: Path) -> None:
    legacy = _write(tmp_path / "recordings" / "tests" / "test_create_order.py")

    location = resolve_spec(tmp_path, "CreateOrder")

    assert location is not None and location.path == legacy
    assert location.layout == "legacy"
    assert resolve_spec(tmp_path, "missing_flow") is None


def test_discover_specs_lists_every_layout(tmp_path: Path) -> None:
    _write(tmp_path / "tests" / "create_order" / "test_create_order.py")
    _write(tmp_path / "tests" / "create_order" / "test_helpers.py")
    _write(tmp_path / "tests" / "test_post_invoice.py")
    _write(tmp_path / "recordings" / "tests" / "test_old_flow.py")

    found = [(item.layout, item.relative_path) for item in discover_specs(tmp_path)]

    assert found == [
        ("bundle", "tests/create_order/test_create_order.py"),
        ("flat", "tests/test_post_invoice.py"),
        ("legacy", "recordings/tests/test_old_flow.py"),
    ]


def test_workspace_paths(tmp_path: Path) -> None:
    workspace = Workspace(tmp_path)
    assert workspace.bundle_dir("Create order") == tmp_path / "tests" / "create_order"
    assert workspace.session_path("Create order") == tmp_path / "recordings" / "create_order.steps.json"
    assert workspace.library_dir == tmp_path / ".flowrecorder" / "library"
