from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .identifiers import to_snake_case

STATE_DIR_NAME = ".flowrecorder"

SpecPathBuilder = Callable[[Path, str], Path]


@dataclass(frozen=True, slots=True)
class Workspace:
    root: Path

    @property
    def tests_dir(self) -> Path:
        return self.root / "tests"

    @property
    def recordings_dir(self) -> Path:
        return self.root / "recordings"

    @property
    def runs_dir(self) -> Path:
        return self.root / "runs"

    @property
    def library_dir(self) -> Path:
        return self.root / STATE_DIR_NAME / "library"

    @property
    def conftest_path(self) -> Path:
        return self.root / "conftest.py"

    def bundle_dir(self, test_name: str) -> Path:
        return self.tests_dir / to_snake_case(test_name)

    def session_path(self, test_name: str) -> Path:
        return self.recordings_dir / f"{to_snake_case(test_name)}.steps.json"


@dataclass(frozen=True, slots=True)
class SpecLocation:
    path: Path
    layout: str
    relative_path: str


# Newest layout first.
SPEC_LAYOUTS: tuple[tuple[str, SpecPathBuilder], ...] = (
    ("bundle", lambda root, name: root / "tests" / name / f"test_{name}.py"),
    ("flat", lambda root, name: root / "tests" / f"test_{name}.py"),
    ("legacy", lambda root, name: root / "recordings" / "tests" / f"test_{name}.py"),
)


def name_variants(test_name: str) -> list[str]:
    base = test_name.strip()
    if base.endswith(".py"):
        base = base[:-3]
    if base.startswith("test_"):
        base = base[5:]
    variants = [base, base.lower(), to_snake_case(base, fallback=base)]
    return [item for item in dict.fromkeys(variants) if item]


def spec_candidates(root: Path, test_name: str) -> list[tuple[str, Path]]:
    candidates: list[tuple[str, Path]] = []
    for layout, builder in SPEC_LAYOUTS:
        for variant in name_variants(test_name):
            candidates.append((layout, builder(root, variant)))
    return candidates


def resolve_spec(root: Path, test_name: str) -> SpecLocation | None:
    for layout, path in spec_candidates(root, test_name):
        if path.is_file():
            return SpecLocation(path=path, layout=layout, relative_path=path.relative_to(root).as_posix())
    return None


def discover_specs(root: Path) -> list[SpecLocation]:
    found: dict[Path, SpecLocation] = {}
    patterns = (
        ("bundle", "tests/*/test_*.py"),
        ("flat", "tests/test_*.py"),
        ("legacy", "recordings/tests/test_*.py"),
    )
    for layout, pattern in patterns:
        for path in sorted(root.glob(pattern)):
            if layout == "bundle" and path.stem != f"test_{path.parent.name}":
                continue
            found.setdefault(path, SpecLocation(path, layout, path.relative_to(root).as_posix()))
    return list(found.values())
