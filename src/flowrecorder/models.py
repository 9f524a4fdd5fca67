from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

LocatorStrategy = Literal["attribute", "role", "label", "text", "css", "xpath", "spatial"]
PageType = Literal["list", "form", "dialog", "workspace", "unknown"]
StepAction = Literal["click", "fill", "select", "navigate", "wait", "assert"]
AssertionKind = Literal["visible", "hidden", "enabled", "text_equals", "value_equals"]
LibraryStatus = Literal["healthy", "warning", "failing"]
RunStatus = Literal["pending", "running", "passed", "failed", "skipped", "cancelled"]
RunSource = Literal["local", "remote"]
EventKind = Literal["click", "fill", "select", "navigate"]

STRATEGIES: tuple[str, ...] = ("attribute", "role", "label", "text", "css", "xpath", "spatial")
PAGE_TYPES: tuple[str, ...] = ("list", "form", "dialog", "workspace", "unknown")
STEP_ACTIONS: tuple[str, ...] = ("click", "fill", "select", "navigate", "wait", "assert")
ASSERTION_KINDS: tuple[str, ...] = ("visible", "hidden", "enabled", "text_equals", "value_equals")
TERMINAL_RUN_STATUSES = frozenset({"passed", "failed", "skipped", "cancelled"})

TIER_CONFIDENCE: dict[int, float] = {1: 1.0, 2: 0.9, 3: 0.7, 4: 0.6, 5: 0.4, 6: 0.2}
LOW_CONFIDENCE_TIER = 5

WARNING_LOW_CONFIDENCE = "low-confidence-locator"
WARNING_AMBIGUOUS = "ambiguous-locator"
WARNING_MISSING_CONTEXT = "missing-context"
WARNING_AUTH_PAGE = "auth-page"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except (TypeError, ValueError):
        return datetime.fromtimestamp(0, tz=timezone.utc)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text else None


@dataclass(slots=True)
class ElementSummary:
    tag: str
    id: str | None = None
    classes: list[str] = field(default_factory=list)
    name: str | None = None
    role: str | None = None
    text: str | None = None
    placeholder: str | None = None
    aria_label: str | None = None
    label_text: str | None = None
    title: str | None = None
    aria_labelledby_text: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    ancestry: list[dict[str, str]] = field(default_factory=list)
    rect_x: float | None = None
    rect_y: float | None = None

    def signature(self) -> str:
        keys = ("data-dyn-controlname", "name", "type", "aria-label")
        pieces = [f"tag={self.tag}"]
        for key in keys:
            value = self.attributes.get(key)
            if value:
                pieces.append(f"{key}={value}")
        return "|".join(pieces)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ElementSummary:
        ancestry = [
            {str(key): str(value) for key, value in item.items() if value is not None}
            for item in payload.get("ancestry", []) or []
            if isinstance(item, Mapping)
        ]
        rect = payload.get("rect") or {}
        return cls(
            tag=str(payload.get("tag") or "unknown").lower(),
            id=_optional_str(payload.get("id")),
            classes=[str(item) for item in payload.get("classes", []) or [] if str(item).strip()],
            name=_optional_str(payload.get("name")),
            role=_optional_str(payload.get("role")),
            text=_optional_str(payload.get("text")),
            placeholder=_optional_str(payload.get("placeholder")),
            aria_label=_optional_str(payload.get("aria_label")),
            label_text=_optional_str(payload.get("label_text")),
            title=_optional_str(payload.get("title")),
            aria_labelledby_text=_optional_str(payload.get("aria_labelledby_text")),
            attributes={str(k): str(v) for k, v in dict(payload.get("attributes", {}) or {}).items()},
            ancestry=ancestry,
            rect_x=_optional_float(rect.get("x")) if isinstance(rect, Mapping) else None,
            rect_y=_optional_float(rect.get("y")) if isinstance(rect, Mapping) else None,
        )


def _optional_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True, slots=True)
class DocumentState:
    url: str
    title: str = ""
    caption: str | None = None
    markers: tuple[str, ...] = ()
    company: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> DocumentState:
        markers = payload.get("markers") or ()
        return cls(
            url=str(payload.get("url", "") or ""),
            title=str(payload.get("title", "") or ""),
            caption=_optional_str(payload.get("caption")),
            markers=tuple(sorted({str(item) for item in markers if str(item)})),
            company=_optional_str(payload.get("company")),
        )


@dataclass(frozen=True, slots=True)
class PageIdentity:
    module: str
    page_type: PageType
    caption: str

    def same_context(self, other: PageIdentity | None) -> bool:
        if other is None:
            return False
        return self.module == other.module and self.page_type == other.page_type

    def to_dict(self) -> dict[str, str]:
        return {"module": self.module, "page_type": self.page_type, "caption": self.caption}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PageIdentity:
        page_type = str(payload.get("page_type", "unknown"))
        return cls(
            module=str(payload.get("module", "") or ""),
            page_type=page_type if page_type in PAGE_TYPES else "unknown",  # type: ignore[arg-type]
            caption=str(payload.get("caption", "") or ""),
        )


UNKNOWN_PAGE = PageIdentity(module="", page_type="unknown", caption="")


@dataclass(frozen=True, slots=True)
class LocatorDefinition:
    strategy: LocatorStrategy
    value: str
    locator_key: str
    confidence: float
    tier: int
    attribute_name: str | None = None
    role_name: str | None = None
    accessible_name: str | None = None

    @property
    def low_confidence(self) -> bool:
        return self.tier >= LOW_CONFIDENCE_TIER

    def same_target_expression(self, other: LocatorDefinition) -> bool:
        return (
            self.strategy == other.strategy
            and self.value == other.value
            and self.attribute_name == other.attribute_name
            and self.role_name == other.role_name
            and self.accessible_name == other.accessible_name
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LocatorDefinition:
        strategy = str(payload.get("strategy", "xpath"))
        tier = int(payload.get("tier", 6) or 6)
        return cls(
            strategy=strategy if strategy in STRATEGIES else "xpath",  # type: ignore[arg-type]
            value=str(payload.get("value", "") or ""),
            locator_key=str(payload.get("locator_key", "") or ""),
            confidence=float(payload.get("confidence", TIER_CONFIDENCE.get(tier, 0.2))),
            tier=tier,
            attribute_name=_optional_str(payload.get("attribute_name")),
            role_name=_optional_str(payload.get("role_name")),
            accessible_name=_optional_str(payload.get("accessible_name")),
        )


@dataclass(frozen=True, slots=True)
class StepWarning:
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class RecordedStep:
    order: int
    action: StepAction
    page_identity: PageIdentity
    locator: LocatorDefinition | None = None
    value: str | None = None
    assertion: AssertionKind | None = None
    timestamp: datetime = field(default_factory=utc_now)
    context_setting: bool = False
    toolbar_action: bool = False
    target_identity: PageIdentity | None = None
    warnings: tuple[StepWarning, ...] = ()

    @property
    def label(self) -> str:
        if not self.locator:
            return ""
        return self.locator.accessible_name or self.locator.value

    def has_warning(self, code: str) -> bool:
        return any(item.code == code for item in self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "action": self.action,
            "page_identity": self.page_identity.to_dict(),
            "locator": self.locator.to_dict() if self.locator else None,
            "value": self.value,
            "assertion": self.assertion,
            "timestamp": self.timestamp.isoformat(),
            "context_setting": self.context_setting,
            "toolbar_action": self.toolbar_action,
            "target_identity": self.target_identity.to_dict() if self.target_identity else None,
            "warnings": [{"code": item.code, "message": item.message} for item in self.warnings],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RecordedStep:
        action = str(payload.get("action", "click"))
        if action not in STEP_ACTIONS:
            raise ValueError(f"Unknown step action: {action}")
        assertion = _optional_str(payload.get("assertion"))
        if assertion is not None and assertion not in ASSERTION_KINDS:
            raise ValueError(f"Unknown assertion kind: {assertion}")
        locator_payload = payload.get("locator")
        target_payload = payload.get("target_identity")
        return cls(
            order=int(payload.get("order", 0)),
            action=action,  # type: ignore[arg-type]
            page_identity=PageIdentity.from_dict(payload.get("page_identity") or {}),
            locator=LocatorDefinition.from_dict(locator_payload) if isinstance(locator_payload, Mapping) else None,
            value=None if payload.get("value") is None else str(payload.get("value")),
            assertion=assertion,  # type: ignore[arg-type]
            timestamp=_parse_timestamp(payload.get("timestamp")),
            context_setting=bool(payload.get("context_setting", False)),
            toolbar_action=bool(payload.get("toolbar_action", False)),
            target_identity=PageIdentity.from_dict(target_payload) if isinstance(target_payload, Mapping) else None,
            warnings=tuple(
                StepWarning(code=str(item.get("code", "")), message=str(item.get("message", "")))
                for item in payload.get("warnings", []) or []
                if isinstance(item, Mapping)
            ),
        )


@dataclass(frozen=True, slots=True)
class InteractionEvent:
    kind: EventKind
    before: DocumentState
    element: ElementSummary | None = None
    after: DocumentState | None = None
    value: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class LocatorLibraryEntry:
    locator_key: str
    strategy: LocatorStrategy
    value: str
    status: LibraryStatus
    last_verified_at: str
    tier: int = 6
    attribute_name: str | None = None
    role_name: str | None = None
    accessible_name: str | None = None

    @classmethod
    def from_definition(cls, definition: LocatorDefinition, status: LibraryStatus, verified_at: str) -> LocatorLibraryEntry:
        return cls(
            locator_key=definition.locator_key,
            strategy=definition.strategy,
            value=definition.value,
            status=status,
            last_verified_at=verified_at,
            tier=definition.tier,
            attribute_name=definition.attribute_name,
            role_name=definition.role_name,
            accessible_name=definition.accessible_name,
        )

    def to_definition(self) -> LocatorDefinition:
        return LocatorDefinition(
            strategy=self.strategy,
            value=self.value,
            locator_key=self.locator_key,
            confidence=TIER_CONFIDENCE.get(self.tier, 0.2),
            tier=self.tier,
            attribute_name=self.attribute_name,
            role_name=self.role_name,
            accessible_name=self.accessible_name,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> LocatorLibraryEntry:
        status = str(payload.get("status", "healthy"))
        strategy = str(payload.get("strategy", "xpath"))
        return cls(
            locator_key=str(payload["locator_key"]),
            strategy=strategy if strategy in STRATEGIES else "xpath",  # type: ignore[arg-type]
            value=str(payload.get("value", "") or ""),
            status=status if status in ("healthy", "warning", "failing") else "healthy",  # type: ignore[arg-type]
            last_verified_at=str(payload.get("last_verified_at", "") or ""),
            tier=int(payload.get("tier", 6) or 6),
            attribute_name=_optional_str(payload.get("attribute_name")),
            role_name=_optional_str(payload.get("role_name")),
            accessible_name=_optional_str(payload.get("accessible_name")),
        )


@dataclass(frozen=True, slots=True)
class ParamCandidate:
    id: str
    label: str
    original_value: str
    suggested_name: str
    occurrences: int = 1
    warning: str | None = None


@dataclass(frozen=True, slots=True)
class RunRecord:
    run_id: str
    test_name: str
    spec_rel_path: str
    status: RunStatus
    started_at: str
    source: RunSource
    finished_at: str | None = None
    target: str | None = None
    exit_code: int | None = None
    trace_paths: tuple[str, ...] = ()
    artifact_paths: tuple[str, ...] = ()
    failing_locator_keys: tuple[str, ...] = ()
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("trace_paths", "artifact_paths", "failing_locator_keys"):
            payload[key] = list(payload[key])
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RunRecord:
        return cls(
            run_id=str(payload["run_id"]),
            test_name=str(payload.get("test_name", "") or ""),
            spec_rel_path=str(payload.get("spec_rel_path", "") or ""),
            status=str(payload.get("status", "failed")),  # type: ignore[arg-type]
            started_at=str(payload.get("started_at", "") or ""),
            source="remote" if payload.get("source") == "remote" else "local",
            finished_at=_optional_str(payload.get("finished_at")),
            target=_optional_str(payload.get("target")),
            exit_code=None if payload.get("exit_code") is None else int(payload["exit_code"]),
            trace_paths=tuple(str(item) for item in payload.get("trace_paths", []) or []),
            artifact_paths=tuple(str(item) for item in payload.get("artifact_paths", []) or []),
            failing_locator_keys=tuple(str(item) for item in payload.get("failing_locator_keys", []) or []),
            error=_optional_str(payload.get("error")),
        )
