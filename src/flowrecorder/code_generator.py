from __future__ import annotations

import ast
from dataclasses import dataclass
import json
import re
from typing import Mapping, Sequence

from .identifiers import humanize, to_snake_case
from .models import LocatorDefinition, RecordedStep
from .page_classifier import describe, is_auth_page
from .parameterization import apply_parameterization, build_data_rows, render_data_file
from .recording_engine import refresh_context_warnings

HEAVY_NAMES = {
    "systemdefinednewbutton",
    "systemdefinedsavebutton",
    "systemdefineddeletebutton",
    "ok",
    "save",
    "new",
    "delete",
    "yes",
    "no",
    "post",
    "confirm",
}
HEAVY_ROLES = {"treeitem"}
WAIT_PRIMITIVE = "wait_for_app_idle"

_ATTRIBUTE_VALUE_PATTERN = re.compile(r'="((?:[^"\\]|\\.)*)"\]$')
_INDENT = "    "


@dataclass(frozen=True, slots=True)
class GeneratedTest:
    test_name: str
    module_name: str
    source_code: str
    data_file_name: str
    data_file: str | None = None


def _py(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def attribute_value(definition: LocatorDefinition) -> str | None:
    match = _ATTRIBUTE_VALUE_PATTERN.search(definition.value)
    if not match:
        return None
    return match.group(1).replace('\\"', '"').replace("\\\\", "\\")


def render_locator(definition: LocatorDefinition) -> str:
    strategy = definition.strategy
    if strategy == "role":
        name = definition.accessible_name or ""
        return f"page.get_by_role({_py(definition.role_name or 'generic')}, name={_py(name)}, exact=True)"
    if strategy == "label":
        return f"page.get_by_label({_py(definition.value)}, exact=True)"
    if strategy == "text":
        return f"page.get_by_text({_py(definition.value)}, exact=True)"
    if strategy in {"xpath", "spatial"}:
        return f"page.locator({_py('xpath=' + definition.value)})"
    return f"page.locator({_py(definition.value)})"


def step_label(step: RecordedStep) -> str:
    locator = step.locator
    if locator is None:
        return ""
    if locator.accessible_name:
        return locator.accessible_name
    if locator.strategy == "attribute":
        return humanize(attribute_value(locator)) or locator.value
    return step.label


def is_heavy_step(step: RecordedStep) -> bool:
    if step.action == "navigate":
        return True
    if step.action != "click" or step.locator is None:
        return False
    locator = step.locator
    if (locator.role_name or "").lower() in HEAVY_ROLES:
        return True
    names = {locator.accessible_name or ""}
    if locator.strategy == "attribute":
        names.add(attribute_value(locator) or "")
    if locator.strategy in {"text", "label"}:
        names.add(locator.value)
    return any(name.strip().lower() in HEAVY_NAMES for name in names if name)


def prune_navigation(steps: Sequence[RecordedStep]) -> tuple[RecordedStep, ...]:
    """Drop authentication redirects and back-to-back navigations to the same URL."""
    kept: list[RecordedStep] = []
    for step in steps:
        is_url_navigation = step.action == "navigate" and step.locator is None
        if is_url_navigation and is_auth_page(step.value or ""):
            continue
        if is_url_navigation and kept:
            previous = kept[-1]
            if previous.action == "navigate" and previous.locator is None and previous.value == step.value:
                continue
        kept.append(step)
    return refresh_context_warnings(kept)


def _step_body(step: RecordedStep) -> list[str]:
    if step.action == "navigate" and step.locator is None:
        return [f"page.goto({_py(step.value or '')})"]
    if step.action == "wait":
        if step.value and step.value.strip().isdigit():
            return [f"page.wait_for_timeout({int(step.value)})"]
        return [f"{WAIT_PRIMITIVE}(page)"]
    if step.locator is None:
        raise ValueError(f"Step {step.order} ({step.action}) has no locator.")

    target = render_locator(step.locator)
    if step.action in {"click", "navigate"}:
        call = f"{target}.click()"
    elif step.action == "fill":
        call = f"{target}.fill({_py(step.value or '')})"
    elif step.action == "select":
        call = f"{target}.select_option({_py(step.value or '')})"
    else:
        call = _assertion_call(step, target)
    label = step_label(step)
    label_part = f", {_py(label)}" if label else ""
    return [
        f"with locator_step({_py(step.locator.locator_key)}{label_part}):",
        f"{_INDENT}{call}",
    ]


def _assertion_call(step: RecordedStep, target: str) -> str:
    kind = step.assertion or "visible"
    if kind == "visible":
        return f"expect({target}).to_be_visible()"
    if kind == "hidden":
        return f"expect({target}).to_be_hidden()"
    if kind == "enabled":
        return f"expect({target}).to_be_enabled()"
    if kind == "text_equals":
        return f"expect({target}).to_have_text({_py(step.value or '')})"
    return f"expect({target}).to_have_value({_py(step.value or '')})"


def _render_module(module_stem: str, data_file_name: str, steps: Sequence[RecordedStep]) -> str:
    uses_expect = any(step.action == "assert" for step in steps)
    playwright_import = "from playwright.sync_api import Page, expect" if uses_expect else "from playwright.sync_api import Page"
    lines = [
        f'"""Recorded flow: {module_stem}."""',
        "",
        "from __future__ import annotations",
        "",
        "from pathlib import Path",
        "",
        "import pytest",
        playwright_import,
        "",
        f"from flowrecorder.runtime import load_rows, locator_step, {WAIT_PRIMITIVE}",
        "",
        f"DATA_FILE = Path(__file__).with_name({_py(data_file_name)})",
        "",
        "",
        '@pytest.mark.parametrize("row", load_rows(DATA_FILE), ids=lambda row: row.id)',
        f"def test_{module_stem}(page: Page, row) -> None:",
    ]

    body: list[str] = []
    previous_identity = None
    for step in steps:
        if step.page_identity != previous_identity and step.page_identity.page_type != "unknown":
            body.append(f"# {describe(step.page_identity)}")
        previous_identity = step.page_identity
        for warning in step.warnings:
            body.append(f"# WARNING [{warning.code}] {warning.message}")
        body.extend(_step_body(step))
        if is_heavy_step(step):
            body.append(f"{WAIT_PRIMITIVE}(page)")
    if not body:
        body.append("pass")
    lines.extend(f"{_INDENT}{line}" for line in body)
    return "\n".join(lines) + "\n"


def generate(
    steps: Sequence[RecordedStep],
    param_map: Mapping[str, str] | None = None,
    *,
    test_name: str = "recorded_flow",
) -> GeneratedTest:
    module_stem = to_snake_case(test_name, fallback="recorded_flow")
    data_file_name = f"{module_stem}.data.json"
    ordered = prune_navigation(sorted(steps, key=lambda step: step.order))
    source = _render_module(module_stem, data_file_name, ordered)
    try:
        ast.parse(source)
    except SyntaxError as exc:
        raise ValueError(f"Generated source for {test_name} does not parse: {exc}") from exc

    data_file: str | None = None
    if param_map:
        source = apply_parameterization(source, param_map)
        data_file = render_data_file(build_data_rows(param_map))
    return GeneratedTest(
        test_name=test_name,
        module_name=f"test_{module_stem}.py",
        source_code=source,
        data_file_name=data_file_name,
        data_file=data_file,
    )
