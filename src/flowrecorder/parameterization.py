from __future__ import annotations

import ast
from dataclasses import dataclass
import json
import keyword
import re
from typing import Any, Mapping

from .errors import ParameterizationError
from .identifiers import dedupe_name, humanize, to_camel_case
from .models import ParamCandidate
from .selector_rules import CONTROL_NAME_ATTR, clean_name

ROW_NAME = "row"
DEFAULT_LABEL = "Field"
DEFAULT_SCENARIO_ID = "scenario-1"
VALUE_METHODS = {"fill": ("value",), "select_option": ("value", "label"), "press_sequentially": ("text",), "type": ("text",)}

_CONTROL_NAME_PATTERN = re.compile(r"\[" + re.escape(CONTROL_NAME_ATTR) + r"""=["']([^"']+)["']\]""")


@dataclass(frozen=True, slots=True)
class LiteralSite:
    node: ast.Constant
    value: str
    label: str
    method: str


class SourceTree:
    """Parsed test source plus pending node replacements, serialized back by position."""

    def __init__(self, source: str) -> None:
        self.source = source
        try:
            self.tree = ast.parse(source)
        except SyntaxError as exc:
            raise ParameterizationError(f"Source does not parse: {exc}") from exc
        self._parents: dict[ast.AST, ast.AST] = {}
        for parent in ast.walk(self.tree):
            for child in ast.iter_child_nodes(parent):
                self._parents[child] = parent
        self._replacements: list[tuple[ast.expr, ast.expr]] = []

    def literal_sites(self) -> list[LiteralSite]:
        sites: list[LiteralSite] = []
        for node in ast.walk(self.tree):
            if not isinstance(node, ast.Call) or not isinstance(node.func, ast.Attribute):
                continue
            method = node.func.attr
            if method not in VALUE_METHODS:
                continue
            argument = _value_argument(node, VALUE_METHODS[method])
            if argument is None or not _is_plain_literal(argument):
                continue
            value = _literal_text(argument.value)
            if value == "":
                continue
            label = _label_from_receiver(node.func.value) or self._label_from_enclosing_step(node) or DEFAULT_LABEL
            sites.append(LiteralSite(node=argument, value=value, label=label, method=method))
        sites.sort(key=lambda site: (site.node.lineno, site.node.col_offset))
        return sites

    def replace(self, node: ast.expr, replacement: ast.expr) -> None:
        self._replacements.append((node, replacement))

    def serialize(self) -> str:
        if not self._replacements:
            return self.source
        lines = self.source.split("\n")
        starts: list[int] = []
        offset = 0
        for line in lines:
            starts.append(offset)
            offset += len(line) + 1

        def char_index(lineno: int, byte_col: int) -> int:
            line = lines[lineno - 1]
            return starts[lineno - 1] + len(line.encode("utf-8")[:byte_col].decode("utf-8"))

        edits: list[tuple[int, int, str]] = []
        for node, replacement in self._replacements:
            if node.end_lineno is None or node.end_col_offset is None:
                raise ParameterizationError("Literal node has no source position.")
            start = char_index(node.lineno, node.col_offset)
            end = char_index(node.end_lineno, node.end_col_offset)
            edits.append((start, end, ast.unparse(replacement)))

        text = self.source
        for start, end, replacement_text in sorted(edits, reverse=True):
            text = text[:start] + replacement_text + text[end:]
        return text

    def _label_from_enclosing_step(self, node: ast.AST) -> str | None:
        current: ast.AST | None = node
        while current is not None:
            current = self._parents.get(current)
            if isinstance(current, ast.With):
                for item in current.items:
                    label = _locator_step_label(item.context_expr)
                    if label:
                        return label
        return None


def _value_argument(call: ast.Call, keywords: tuple[str, ...]) -> ast.expr | None:
    if call.args:
        return call.args[-1]
    for item in call.keywords:
        if item.arg in keywords:
            return item.value
    return None


def _is_plain_literal(node: ast.expr) -> bool:
    if not isinstance(node, ast.Constant):
        return False
    return type(node.value) in (str, int, float)


def _literal_text(value: Any) -> str:
    return value if isinstance(value, str) else repr(value)


def _string_arg(call: ast.Call, index: int | None = 0, keyword_name: str | None = None) -> str | None:
    if keyword_name:
        for item in call.keywords:
            if item.arg == keyword_name and isinstance(item.value, ast.Constant) and isinstance(item.value.value, str):
                return item.value.value
    if index is not None and len(call.args) > index:
        node = call.args[index]
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            return node.value
    return None


def _label_from_receiver(receiver: ast.expr) -> str | None:
    node: ast.expr = receiver
    while isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
        method = node.func.attr
        label: str | None = None
        if method in {"get_by_label", "get_by_placeholder"}:
            label = _string_arg(node, 0, "text")
        elif method == "get_by_role":
            label = _string_arg(node, None, "name")
        elif method == "locator":
            selector = _string_arg(node, 0, "selector") or ""
            match = _CONTROL_NAME_PATTERN.search(selector)
            if match:
                label = humanize(match.group(1))
        cleaned = clean_name(label)
        if cleaned:
            return cleaned
        node = node.func.value
    return None


def _locator_step_label(expr: ast.expr) -> str | None:
    if not isinstance(expr, ast.Call):
        return None
    func = expr.func
    name = func.id if isinstance(func, ast.Name) else func.attr if isinstance(func, ast.Attribute) else ""
    if name != "locator_step":
        return None
    return clean_name(_string_arg(expr, 1, "label")) or None


def detect_candidates(code: str) -> list[ParamCandidate]:
    grouped: dict[str, list[LiteralSite]] = {}
    for site in SourceTree(code).literal_sites():
        grouped.setdefault(site.value, []).append(site)

    candidates: list[ParamCandidate] = []
    taken: set[str] = set()
    for value, sites in grouped.items():
        label = sites[0].label
        name = dedupe_name(to_camel_case(label, fallback="field"), taken)
        taken.add(name)
        labels = sorted({site.label for site in sites})
        warning = None
        if len(labels) > 1:
            warning = (
                f"Value {value!r} is set on {len(sites)} fields ({', '.join(labels)}); "
                "one parameter will replace every occurrence."
            )
        candidates.append(
            ParamCandidate(
                id=f"p{len(candidates) + 1}",
                label=label,
                original_value=value,
                suggested_name=name,
                occurrences=len(sites),
                warning=warning,
            )
        )
    return candidates


def confirm_candidates(candidates: list[ParamCandidate], names: Mapping[str, str] | None = None) -> dict[str, str]:
    """Build the value -> parameter name map, letting ``names`` (keyed by candidate id) override suggestions."""
    overrides = dict(names or {})
    mapping: dict[str, str] = {}
    taken: set[str] = set()
    for candidate in candidates:
        requested = overrides.get(candidate.id, candidate.suggested_name)
        name = dedupe_name(requested, taken)
        validate_param_name(name)
        taken.add(name)
        mapping[candidate.original_value] = name
    return mapping


def validate_param_name(name: str) -> None:
    if not name.isidentifier() or keyword.iskeyword(name) or name == "id":
        raise ParameterizationError(f"Invalid parameter name: {name!r}")


def apply_parameterization(code: str, mapping: Mapping[str, str], row_name: str = ROW_NAME) -> str:
    for name in mapping.values():
        validate_param_name(name)
    tree = SourceTree(code)
    for site in tree.literal_sites():
        param_name = mapping.get(site.value)
        if not param_name:
            continue
        tree.replace(site.node, ast.Attribute(value=ast.Name(id=row_name, ctx=ast.Load()), attr=param_name, ctx=ast.Load()))
    result = tree.serialize()
    try:
        ast.parse(result)
    except SyntaxError as exc:
        raise ParameterizationError(f"Rewrite produced invalid source: {exc}") from exc
    return result


def build_data_rows(mapping: Mapping[str, str], scenario_id: str = DEFAULT_SCENARIO_ID) -> list[dict[str, str]]:
    record: dict[str, str] = {"id": scenario_id}
    for original_value, name in mapping.items():
        record[name] = original_value
    return [record]


def render_data_file(rows: list[dict[str, Any]]) -> str:
    return json.dumps(rows, ensure_ascii=False, indent=2) + "\n"
