from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
from pathlib import Path
import threading
from typing import Any, Literal, Sequence
import uuid

from .errors import RecorderStateError
from .event_stream import EventStream, Subscription
from .locator_extractor import ExtractionResult, LocatorExtractor
from .models import (
    WARNING_AUTH_PAGE,
    WARNING_MISSING_CONTEXT,
    AssertionKind,
    DocumentState,
    ElementSummary,
    InteractionEvent,
    LocatorDefinition,
    PageIdentity,
    RecordedStep,
    StepAction,
    StepWarning,
    utc_now,
)
from .page_classifier import AUTH_MODULE, PageClassifier
from .validation import DocumentContext

RecorderState = Literal["idle", "recording", "stopped"]
StepEventKind = Literal["state", "step", "step_updated"]

TOOLBAR_ROLES = {"toolbar", "menubar"}
TOOLBAR_DYN_ROLES = {"ActionPane", "ActionPaneTab", "AppBar"}
CONTEXT_PAGE_TYPES = {"list", "workspace"}

logger = logging.getLogger("flowrecorder.recorder")


@dataclass(frozen=True, slots=True)
class StepEvent:
    kind: StepEventKind
    session_id: str
    step: RecordedStep | None = None
    state: RecorderState | None = None


class RecordingEngine:
    def __init__(
        self,
        extractor: LocatorExtractor | None = None,
        classifier: PageClassifier | None = None,
        buffer_capacity: int = 500,
    ) -> None:
        self.extractor = extractor or LocatorExtractor()
        self.classifier = classifier or PageClassifier()
        self.stream: EventStream[StepEvent] = EventStream(buffer_capacity)
        self.session_id: str | None = None
        self._state: RecorderState = "idle"
        self._steps: list[RecordedStep] = []
        self._frozen: tuple[RecordedStep, ...] | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def steps(self) -> tuple[RecordedStep, ...]:
        with self._lock:
            if self._frozen is not None:
                return self._frozen
            return tuple(self._steps)

    def subscribe(self, capacity: int | None = None) -> Subscription[StepEvent]:
        return self.stream.subscribe(capacity)

    def start(self, initial_document: DocumentState | None = None) -> str:
        with self._lock:
            if self._state != "idle":
                raise RecorderStateError(self._state, "start recording")
            self.session_id = uuid.uuid4().hex
            self._steps = []
            self._state = "recording"
        logger.info("Recording session %s started.", self.session_id)
        self._publish(StepEvent("state", self.session_id, state="recording"))
        if initial_document is not None and initial_document.url:
            self.handle_event(InteractionEvent(kind="navigate", before=initial_document, value=initial_document.url), None)
        return self.session_id

    def stop(self) -> tuple[RecordedStep, ...]:
        with self._lock:
            if self._state != "recording":
                raise RecorderStateError(self._state, "stop recording")
            self._state = "stopped"
            self._frozen = tuple(self._steps)
            frozen = self._frozen
        logger.info("Recording session %s stopped with %s step(s).", self.session_id, len(frozen))
        self._publish(StepEvent("state", self.session_id or "", state="stopped"))
        self.stream.close()
        return frozen

    def extract_locator(
        self, element: ElementSummary, before: DocumentState, document: DocumentContext
    ) -> ExtractionResult:
        """Resolve a locator for ``element`` against the page as it stood before the interaction."""
        module = self.classifier.classify(before).module
        return self.extractor.extract_with_warnings(element, document, module=module)

    def handle_event(
        self,
        event: InteractionEvent,
        document: DocumentContext | None,
        *,
        extraction: ExtractionResult | None = None,
    ) -> RecordedStep | None:
        if self._state != "recording":
            logger.debug("Ignoring %s event while %s.", event.kind, self._state)
            return None

        before = self.classifier.classify(event.before)
        if event.kind == "navigate":
            return self._record_navigation(event, before)
        if event.element is None:
            logger.debug("Ignoring %s event without a target element.", event.kind)
            return None
        if extraction is None:
            if document is None:
                logger.debug("Ignoring %s event without a document to validate against.", event.kind)
                return None
            extraction = self.extractor.extract_with_warnings(event.element, document, module=before.module)
        warnings = list(extraction.warnings)
        locator = extraction.locator
        after = self.classifier.classify(event.after) if event.after is not None else None

        if event.kind == "fill":
            updated = self._coalesce_fill(locator, event.value or "")
            if updated is not None:
                return updated

        action: StepAction = "click"
        context_setting = False
        target_identity: PageIdentity | None = None
        if event.kind == "fill":
            action = "fill"
        elif event.kind == "select":
            action = "select"
        elif is_context_change(before, after):
            action = "navigate"
            context_setting = True
            target_identity = after

        toolbar = event.kind == "click" and not context_setting and is_toolbar_element(event.element)
        with self._lock:
            if toolbar and not has_context_for(self._steps, before):
                warnings.append(_missing_context_warning(before))
            step = RecordedStep(
                order=len(self._steps) + 1,
                action=action,
                page_identity=before,
                locator=locator,
                value=event.value if action in {"fill", "select"} else None,
                timestamp=event.timestamp,
                context_setting=context_setting,
                toolbar_action=toolbar,
                target_identity=target_identity,
                warnings=tuple(warnings),
            )
            self._steps.append(step)
        self._publish(StepEvent("step", self.session_id or "", step=step))
        return step

    def _record_navigation(self, event: InteractionEvent, before: PageIdentity) -> RecordedStep | None:
        url = (event.value or (event.after.url if event.after else "") or event.before.url).strip()
        if not url:
            return None
        target_state = event.after or event.before
        target = self.classifier.classify(target_state) if event.after is not None else before
        warnings: tuple[StepWarning, ...] = ()
        if target.module == AUTH_MODULE:
            warnings = (StepWarning(WARNING_AUTH_PAGE, "Authentication page; removed before code generation."),)
        with self._lock:
            step = RecordedStep(
                order=len(self._steps) + 1,
                action="navigate",
                page_identity=before,
                value=url,
                timestamp=event.timestamp,
                context_setting=True,
                target_identity=target,
                warnings=warnings,
            )
            self._steps.append(step)
        self._publish(StepEvent("step", self.session_id or "", step=step))
        return step

    def _coalesce_fill(self, locator: LocatorDefinition, value: str) -> RecordedStep | None:
        with self._lock:
            if not self._steps:
                return None
            last = self._steps[-1]
            if last.action != "fill" or not last.locator or last.locator.locator_key != locator.locator_key:
                return None
            updated = replace(last, value=value)
            self._steps[-1] = updated
        self._publish(StepEvent("step_updated", self.session_id or "", step=updated))
        return updated

    def _publish(self, event: StepEvent) -> None:
        try:
            self.stream.publish(event)
        except Exception:
            logger.exception("Step publish failed.")


def is_context_change(before: PageIdentity, after: PageIdentity | None) -> bool:
    if after is None or after.page_type in {"unknown", "dialog"} or after.module == AUTH_MODULE:
        return False
    if before.same_context(after):
        return False
    if after.module and after.module != before.module:
        return True
    return after.page_type in CONTEXT_PAGE_TYPES


def is_toolbar_element(element: ElementSummary) -> bool:
    for item in element.ancestry:
        if (item.get("role") or "").lower() in TOOLBAR_ROLES:
            return True
        if (item.get("dynrole") or "") in TOOLBAR_DYN_ROLES:
            return True
    return False


def has_context_for(steps: Sequence[RecordedStep], identity: PageIdentity) -> bool:
    for step in steps:
        if not step.context_setting or step.target_identity is None:
            continue
        if step.target_identity.module == identity.module:
            return True
    return False


def _missing_context_warning(identity: PageIdentity) -> StepWarning:
    module = identity.module or "the current page"
    return StepWarning(
        WARNING_MISSING_CONTEXT,
        f"Toolbar action on {module} has no preceding step that opens this module or workspace.",
    )


def refresh_context_warnings(steps: Sequence[RecordedStep]) -> tuple[RecordedStep, ...]:
    refreshed: list[RecordedStep] = []
    for index, step in enumerate(steps, start=1):
        kept = tuple(item for item in step.warnings if item.code != WARNING_MISSING_CONTEXT)
        if step.toolbar_action and not has_context_for(refreshed, step.page_identity):
            kept = kept + (_missing_context_warning(step.page_identity),)
        refreshed.append(replace(step, order=index, warnings=kept))
    return tuple(refreshed)


def _find_index(steps: Sequence[RecordedStep], order: int) -> int:
    for index, step in enumerate(steps):
        if step.order == order:
            return index
    raise KeyError(f"No step with order {order}.")


def delete_step(steps: Sequence[RecordedStep], order: int) -> tuple[RecordedStep, ...]:
    index = _find_index(steps, order)
    return refresh_context_warnings([*steps[:index], *steps[index + 1 :]])


def update_step_value(steps: Sequence[RecordedStep], order: int, value: str) -> tuple[RecordedStep, ...]:
    index = _find_index(steps, order)
    step = steps[index]
    if step.action not in {"fill", "select", "navigate", "wait", "assert"}:
        raise ValueError(f"Step {order} ({step.action}) has no editable value.")
    updated = list(steps)
    updated[index] = replace(step, value=value)
    return refresh_context_warnings(updated)


def move_step(steps: Sequence[RecordedStep], order: int, new_position: int) -> tuple[RecordedStep, ...]:
    index = _find_index(steps, order)
    items = list(steps)
    step = items.pop(index)
    position = max(1, min(new_position, len(items) + 1))
    items.insert(position - 1, step)
    return refresh_context_warnings(items)


def insert_step(
    steps: Sequence[RecordedStep],
    position: int,
    action: StepAction,
    *,
    locator: LocatorDefinition | None = None,
    value: str | None = None,
    assertion: AssertionKind | None = None,
) -> tuple[RecordedStep, ...]:
    if action == "assert" and (locator is None or assertion is None):
        raise ValueError("Assert steps need a locator and an assertion kind.")
    if action == "wait" and value is not None and not value.strip().isdigit():
        raise ValueError("Wait steps take a duration in milliseconds.")
    items = list(steps)
    position = max(1, min(position, len(items) + 1))
    anchor = items[position - 2] if position > 1 else (items[0] if items else None)
    identity = (anchor.target_identity or anchor.page_identity) if anchor else PageIdentity("", "unknown", "")
    items.insert(
        position - 1,
        RecordedStep(
            order=position,
            action=action,
            page_identity=identity,
            locator=locator,
            value=value,
            assertion=assertion,
            timestamp=utc_now(),
        ),
    )
    return refresh_context_warnings(items)


def save_session(path: Path, name: str, steps: Sequence[RecordedStep], session_id: str | None = None) -> None:
    payload: dict[str, Any] = {
        "name": name,
        "session_id": session_id,
        "steps": [step.to_dict() for step in steps],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def load_session(path: Path) -> tuple[str, tuple[RecordedStep, ...]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"{path} is not a recording session.")
    steps = tuple(RecordedStep.from_dict(item) for item in payload.get("steps", []) if isinstance(item, dict))
    name = str(payload.get("name") or path.name.split(".")[0])
    return name, refresh_context_warnings(sorted(steps, key=lambda step: step.order))
