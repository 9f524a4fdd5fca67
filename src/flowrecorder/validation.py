from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Protocol

from .models import LocatorDefinition

if TYPE_CHECKING:
    from playwright.sync_api import Locator, Page

TARGET_ATTRIBUTE = "data-flowrecorder-target"
IS_TARGET_FUNCTION = f"(el, token) => el.getAttribute('{TARGET_ATTRIBUTE}') === token"
RELEASE_TARGET_FUNCTION = f"""(token) => {{
  for (const el of document.querySelectorAll('[{TARGET_ATTRIBUTE}]')) {{
    if (el.getAttribute('{TARGET_ATTRIBUTE}') === token) el.removeAttribute('{TARGET_ATTRIBUTE}');
  }}
}}"""

logger = logging.getLogger("flowrecorder.validation")


class DocumentContext(Protocol):
    def count_matches(self, definition: LocatorDefinition) -> int: ...


@dataclass(frozen=True, slots=True)
class LocatorValidation:
    unique: bool
    match_count: int
    message: str


def resolve_locator(page: Page, definition: LocatorDefinition) -> Locator:
    strategy = definition.strategy
    value = definition.value
    if strategy == "role":
        return page.get_by_role(
            definition.role_name or "generic",  # type: ignore[arg-type]
            name=definition.accessible_name or "",
            exact=True,
        )
    if strategy == "label":
        return page.get_by_label(value, exact=True)
    if strategy == "text":
        return page.get_by_text(value, exact=True)
    if strategy in {"xpath", "spatial"}:
        return page.locator(f"xpath={value}")
    return page.locator(value)


class PlaywrightDocument:
    """Counts matches against a live Playwright page.

    When the capture script tagged the interacted element with ``target_token``,
    a single match must also be that element.
    """

    def __init__(self, page: Any, target_token: str | None = None) -> None:
        self.page = page
        self.target_token = target_token

    def count_matches(self, definition: LocatorDefinition) -> int:
        if not definition.value.strip():
            return 0
        try:
            return int(resolve_locator(self.page, definition).count())
        except Exception:
            return 0

    def matches_target(self, definition: LocatorDefinition) -> bool:
        if not self.target_token:
            return True
        try:
            return bool(resolve_locator(self.page, definition).first.evaluate(IS_TARGET_FUNCTION, self.target_token))
        except Exception:
            return False

    def release_target(self) -> None:
        if not self.target_token:
            return
        try:
            self.page.evaluate(RELEASE_TARGET_FUNCTION, self.target_token)
        except Exception:
            logger.debug("Could not clear the target marker.", exc_info=True)


def validate_definition(document: DocumentContext, definition: LocatorDefinition) -> LocatorValidation:
    try:
        count = int(document.count_matches(definition))
        # Documents that can identify the recorded element confirm a lone match is it.
        matches_target = getattr(document, "matches_target", None)
        if count == 1 and matches_target is not None and not matches_target(definition):
            return LocatorValidation(False, 1, "Single match is not the recorded element.")
    except Exception as exc:
        return LocatorValidation(False, 0, f"Match count failed: {exc}")
    if count == 1:
        return LocatorValidation(True, 1, "Unique match.")
    if count == 0:
        return LocatorValidation(False, 0, "No element matched.")
    return LocatorValidation(False, count, f"{count} elements matched.")
