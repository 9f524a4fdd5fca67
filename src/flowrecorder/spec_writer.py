from __future__ import annotations

from dataclasses import dataclass
from difflib import unified_diff
import os
from pathlib import Path
import shutil
import tempfile

from .code_generator import GeneratedTest
from .workspace import Workspace


@dataclass(frozen=True, slots=True)
class SpecWritePreview:
    ok: bool
    spec_path: Path
    data_path: Path
    message: str
    diff_text: str
    spec_content: str | None
    data_content: str | None


def write_text_atomic(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Path | None = None
    try:
        fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        temp_path = Path(temp_name)
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as temp_file:
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        temp_path.replace(target)
    except OSError:
        if temp_path and temp_path.exists():
            temp_path.unlink(missing_ok=True)
        raise


def _diff(path: Path, new_content: str | None) -> str:
    if new_content is None:
        return ""
    old_lines = path.read_text(encoding="utf-8").splitlines(keepends=True) if path.exists() else []
    return "".join(
        unified_diff(
            old_lines,
            new_content.splitlines(keepends=True),
            fromfile=str(path) if old_lines else "/dev/null",
            tofile=str(path),
        )
    )


def preview_generated_test(workspace: Workspace, generated: GeneratedTest) -> SpecWritePreview:
    bundle = workspace.bundle_dir(generated.test_name)
    spec_path = bundle / generated.module_name
    data_path = bundle / generated.data_file_name
    if not generated.source_code.strip():
        return SpecWritePreview(False, spec_path, data_path, "Generated source is empty.", "", None, None)

    diff_text = _diff(spec_path, generated.source_code) + _diff(data_path, generated.data_file)
    if not diff_text:
        message = "Generated test is identical to the workspace copy."
    elif spec_path.exists():
        message = f"Preview generated; {spec_path.name} will be updated."
    else:
        message = f"Preview generated; {spec_path.name} will be created."
    return SpecWritePreview(
        ok=True,
        spec_path=spec_path,
        data_path=data_path,
        message=message,
        diff_text=diff_text,
        spec_content=generated.source_code,
        data_content=generated.data_file,
    )


def apply_spec_preview(preview: SpecWritePreview) -> tuple[bool, str]:
    if not preview.ok or preview.spec_content is None:
        return False, "No generated test to write."
    try:
        write_text_atomic(preview.spec_path, preview.spec_content)
        if preview.data_content is not None:
            if preview.data_path.exists():
                shutil.copy2(preview.data_path, preview.data_path.with_name(preview.data_path.name + ".bak"))
            write_text_atomic(preview.data_path, preview.data_content)
    except OSError as exc:
        return False, f"Could not write generated test: {exc}"
    return True, f"Wrote {preview.spec_path}"
