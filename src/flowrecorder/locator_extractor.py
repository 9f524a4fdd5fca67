from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import logging

from .models import (
    TIER_CONFIDENCE,
    WARNING_AMBIGUOUS,
    WARNING_LOW_CONFIDENCE,
    ElementSummary,
    LocatorDefinition,
    LocatorStrategy,
    StepWarning,
)
from .selector_rules import (
    CONTROL_NAME_ATTR,
    MENU_TEXT_ATTRS,
    attribute_selector,
    clean_name,
    escape_css_identifier,
    is_dynamic_class_token,
    is_dynamic_id_value,
    is_dynamic_value,
    role_selector,
    xpath_literal,
)
from .validation import DocumentContext, validate_definition

NAV_CONTAINER_MARKERS = ("modulesPane", "navigation", "nav-pane", "NavPane", "treeView", "tree-view")
FORM_FIELD_ROLES = {"textbox", "combobox", "checkbox", "radio", "spinbutton", "listbox", "searchbox", "switch"}
FORM_FIELD_TAGS = {"input", "select", "textarea"}
TEXT_NAMED_ROLES = {"button", "link", "menuitem", "tab", "treeitem", "option", "gridcell", "columnheader", "heading"}

logger = logging.getLogger("flowrecorder.extractor")


@dataclass(frozen=True, slots=True)
class ExtractionProfile:
    control_attribute: str = CONTROL_NAME_ATTR
    menu_text_attributes: tuple[str, ...] = MENU_TEXT_ATTRS
    nav_container_markers: tuple[str, ...] = NAV_CONTAINER_MARKERS
    max_text_length: int = 80


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    locator: LocatorDefinition
    unique: bool
    warnings: tuple[StepWarning, ...] = ()
    attempts: tuple[tuple[str, int], ...] = ()


@dataclass(slots=True)
class _Draft:
    strategy: LocatorStrategy
    value: str
    tier: int
    attribute_name: str | None = None
    role_name: str | None = None
    accessible_name: str | None = None
    notes: list[str] = field(default_factory=list)

    def build(self, locator_key: str) -> LocatorDefinition:
        return LocatorDefinition(
            strategy=self.strategy,
            value=self.value,
            locator_key=locator_key,
            confidence=TIER_CONFIDENCE[self.tier],
            tier=self.tier,
            attribute_name=self.attribute_name,
            role_name=self.role_name,
            accessible_name=self.accessible_name,
        )


class LocatorExtractor:
    def __init__(self, profile: ExtractionProfile | None = None) -> None:
        self.profile = profile or ExtractionProfile()

    def extract(self, element: ElementSummary, document: DocumentContext, module: str = "") -> LocatorDefinition:
        return self.extract_with_warnings(element, document, module).locator

    def extract_with_warnings(
        self,
        element: ElementSummary,
        document: DocumentContext,
        module: str = "",
    ) -> ExtractionResult:
        try:
            return self._extract(element, document, module)
        except Exception as exc:
            logger.exception("Locator extraction failed, using structural fallback: %s", exc)
            key = compute_locator_key(element, module, self.profile)
            fallback = _Draft("xpath", structural_xpath(element), 6).build(key)
            warnings = (
                StepWarning(WARNING_LOW_CONFIDENCE, "Extraction failed; structural fallback locator used."),
                StepWarning(WARNING_AMBIGUOUS, "Fallback locator was not verified as unique."),
            )
            return ExtractionResult(fallback, False, warnings)

    def _extract(self, element: ElementSummary, document: DocumentContext, module: str) -> ExtractionResult:
        key = compute_locator_key(element, module, self.profile)
        attempts: list[tuple[str, int]] = []

        for draft in self._ranked_drafts(element):
            definition = draft.build(key)
            validation = validate_definition(document, definition)
            attempts.append((f"{definition.strategy}:{definition.value}", validation.match_count))
            if validation.unique:
                warnings: tuple[StepWarning, ...] = ()
                if definition.low_confidence:
                    warnings = (
                        StepWarning(
                            WARNING_LOW_CONFIDENCE,
                            f"Only a tier {definition.tier} ({definition.strategy}) locator matched uniquely.",
                        ),
                    )
                return ExtractionResult(definition, True, warnings, tuple(attempts))

        fallback_draft = self._fallback_drafts(element)[0]
        fallback = fallback_draft.build(key)
        logger.info("No unique locator for %s; falling back to %s", element.signature(), fallback.value)
        warnings = (
            StepWarning(WARNING_LOW_CONFIDENCE, "No stable locator tier matched; spatial fallback used."),
            StepWarning(
                WARNING_AMBIGUOUS,
                "Fallback locator did not resolve to exactly one element when recorded.",
            ),
        )
        return ExtractionResult(fallback, False, warnings, tuple(attempts))

    def _ranked_drafts(self, element: ElementSummary) -> list[_Draft]:
        drafts: list[_Draft] = []
        drafts.extend(self._control_attribute_drafts(element))
        drafts.extend(self._menu_text_drafts(element))
        drafts.extend(self._role_drafts(element))
        drafts.extend(self._label_drafts(element))
        drafts.extend(self._text_drafts(element))
        drafts.extend(self._fallback_drafts(element))
        return drafts

    def _control_attribute_drafts(self, element: ElementSummary) -> list[_Draft]:
        attribute = self.profile.control_attribute
        value = (element.attributes.get(attribute) or "").strip()
        if not value or is_dynamic_value(value):
            return []
        return [_Draft("attribute", attribute_selector(attribute, value), 1, attribute_name=attribute)]

    def _menu_text_drafts(self, element: ElementSummary) -> list[_Draft]:
        drafts: list[_Draft] = []
        for attribute in self.profile.menu_text_attributes:
            value = clean_name(element.attributes.get(attribute))
            if not value:
                continue
            drafts.append(
                _Draft(
                    "attribute",
                    attribute_selector(attribute, element.attributes[attribute]),
                    2,
                    attribute_name=attribute,
                    accessible_name=value,
                )
            )
        return drafts

    def _role_drafts(self, element: ElementSummary) -> list[_Draft]:
        role = (element.role or "").strip().lower()
        name = accessible_name(element, self.profile.max_text_length)
        if not role or not name:
            return []
        return [_Draft("role", role_selector(role, name), 3, role_name=role, accessible_name=name)]

    def _label_drafts(self, element: ElementSummary) -> list[_Draft]:
        if not is_form_field(element):
            return []
        for raw in (element.label_text, element.aria_labelledby_text, element.aria_label):
            label = clean_name(raw, limit=self.profile.max_text_length)
            if label:
                return [_Draft("label", label, 4, accessible_name=label)]
        return []

    def _text_drafts(self, element: ElementSummary) -> list[_Draft]:
        text = clean_name(element.text, limit=500)
        if not text or len(text) > self.profile.max_text_length:
            return []
        return [_Draft("text", text, 5, accessible_name=text)]

    def _fallback_drafts(self, element: ElementSummary) -> list[_Draft]:
        drafts: list[_Draft] = []
        spatial = spatial_xpath(element, self.profile.nav_container_markers)
        if spatial:
            drafts.append(_Draft("spatial", spatial, 6))
        if element.id and not is_dynamic_id_value(element.id):
            drafts.append(_Draft("css", f"#{escape_css_identifier(element.id)}", 6))
        stable_classes = [token for token in element.classes if not is_dynamic_class_token(token)]
        if stable_classes:
            class_part = "".join(f".{escape_css_identifier(token)}" for token in stable_classes[:2])
            drafts.append(_Draft("css", f"{element.tag}{class_part}", 6))
        drafts.append(_Draft("xpath", structural_xpath(element), 6))
        return drafts


def accessible_name(element: ElementSummary, limit: int = 80) -> str:
    candidates = [
        element.aria_label,
        element.aria_labelledby_text,
        element.label_text,
        element.title,
        element.placeholder,
    ]
    role = (element.role or "").lower()
    if role in TEXT_NAMED_ROLES or element.tag in {"button", "a"}:
        candidates.append(element.text)
    for raw in candidates:
        name = clean_name(raw, limit=500)
        if name and len(name) <= limit:
            return name
    return ""


def is_form_field(element: ElementSummary) -> bool:
    role = (element.role or "").lower()
    return element.tag in FORM_FIELD_TAGS or role in FORM_FIELD_ROLES


def compute_locator_key(element: ElementSummary, module: str = "", profile: ExtractionProfile | None = None) -> str:
    """Stable key for the element's semantic target, independent of the winning strategy."""
    active = profile or ExtractionProfile()
    pieces = [f"module={module.strip().lower()}", f"tag={element.tag}"]
    control = (element.attributes.get(active.control_attribute) or "").strip()
    if control and not is_dynamic_value(control):
        pieces.append(f"control={control}")
    role = (element.role or "").strip().lower()
    if role:
        pieces.append(f"role={role}")
    name = accessible_name(element, active.max_text_length)
    if name:
        pieces.append(f"name={name.lower()}")
    for attribute in active.menu_text_attributes:
        menu_text = clean_name(element.attributes.get(attribute))
        if menu_text:
            pieces.append(f"menu={menu_text.lower()}")
            break
    if element.id and not is_dynamic_id_value(element.id):
        pieces.append(f"id={element.id}")
    if len(pieces) <= 3 and not name:
        text = clean_name(element.text, limit=active.max_text_length)
        pieces.append(f"text={text.lower()}" if text else f"path={structural_xpath(element)}")
    digest = hashlib.sha1("|".join(pieces).encode("utf-8")).hexdigest()
    return f"lk_{digest[:12]}"


def _ancestor_anchor(item: dict[str, str], control_attribute: str = CONTROL_NAME_ATTR) -> str | None:
    control = (item.get("controlname") or "").strip()
    if control and not is_dynamic_value(control):
        return f"//*[@{control_attribute}={xpath_literal(control)}]"
    element_id = (item.get("id") or "").strip()
    if element_id and not is_dynamic_id_value(element_id):
        return f"//*[@id={xpath_literal(element_id)}]"
    return None


def _path_segment(item: dict[str, str]) -> str:
    tag = item.get("tag") or "*"
    nth = item.get("nth") or "1"
    return f"{tag}[{nth}]"


def structural_xpath(element: ElementSummary) -> str:
    ancestry = element.ancestry
    if not ancestry:
        return f"//{element.tag or '*'}"
    segments: list[str] = []
    for index, item in enumerate(ancestry):
        if index > 0:
            anchor = _ancestor_anchor(item)
            if anchor:
                return anchor + "/" + "/".join(reversed(segments))
        segments.append(_path_segment(item))
    return "//" + "/".join(reversed(segments))


def _is_nav_container(item: dict[str, str], markers: tuple[str, ...]) -> bool:
    classes = item.get("class") or ""
    if any(marker in classes for marker in markers):
        return True
    element_id = (item.get("id") or "").lower()
    if element_id and ("nav" in element_id or "modules" in element_id):
        return True
    if (item.get("role") or "").lower() == "navigation":
        return True
    return "Nav" in (item.get("controlname") or "")


def _container_predicate(item: dict[str, str], markers: tuple[str, ...]) -> str:
    control = (item.get("controlname") or "").strip()
    if control:
        return f"@{CONTROL_NAME_ATTR}={xpath_literal(control)}"
    element_id = (item.get("id") or "").strip()
    if element_id and not is_dynamic_id_value(element_id):
        return f"@id={xpath_literal(element_id)}"
    if (item.get("role") or "").lower() == "navigation":
        return "@role='navigation'"
    classes = item.get("class") or ""
    for marker in markers:
        if marker in classes:
            return f"contains(@class, {xpath_literal(marker)})"
    return f"@id={xpath_literal(element_id)}"


def spatial_xpath(element: ElementSummary, markers: tuple[str, ...] = NAV_CONTAINER_MARKERS) -> str | None:
    """Position of the element inside the nearest known container such as the navigation pane."""
    ancestry = element.ancestry
    for index, item in enumerate(ancestry):
        if index == 0 or not _is_nav_container(item, markers):
            continue
        segments = [_path_segment(step) for step in reversed(ancestry[:index])]
        return f"//*[{_container_predicate(item, markers)}]/" + "/".join(segments)
    return None
