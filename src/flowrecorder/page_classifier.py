from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterable
from urllib.parse import parse_qs, urlparse

from .identifiers import humanize
from .models import DocumentState, PageIdentity, PageType
from .selector_rules import clean_name

AUTH_HOSTS = ("login.microsoftonline.com", "login.live.com", "sts.windows.net")
AUTH_TITLE_HINTS = ("sign in", "redirecting", "signing in")
AUTH_MODULE = "auth"
PRODUCT_TITLE_SUFFIXES = ("Finance and Operations", "Dynamics 365")

MENU_ITEM_PARAM = "mi"
COMPANY_PARAM = "cmp"


@dataclass(frozen=True, slots=True)
class PageSignature:
    module: str
    page_type: PageType
    menu_item: str | None = None
    marker: str | None = None
    caption: str | None = None

    def matches(self, menu_item: str | None, markers: frozenset[str]) -> bool:
        if self.menu_item and (menu_item or "").lower() != self.menu_item.lower():
            return False
        if self.marker and self.marker not in markers:
            return False
        return bool(self.menu_item or self.marker)


DEFAULT_SIGNATURES: tuple[PageSignature, ...] = (
    PageSignature("AccountsReceivable", "form", menu_item="SalesTable", caption="Sales order"),
    PageSignature("AccountsReceivable", "list", menu_item="SalesTableListPage", caption="All sales orders"),
    PageSignature("AccountsReceivable", "form", menu_item="CustTable", caption="Customer"),
    PageSignature("AccountsReceivable", "list", menu_item="CustTableListPage", caption="All customers"),
    PageSignature("AccountsReceivable", "form", menu_item="CustParameters", caption="Accounts receivable parameters"),
    PageSignature("AccountsPayable", "form", menu_item="VendTable", caption="Vendor"),
    PageSignature("AccountsPayable", "list", menu_item="VendTableListPage", caption="All vendors"),
    PageSignature("ProcurementAndSourcing", "form", menu_item="PurchTable", caption="Purchase order"),
    PageSignature("ProcurementAndSourcing", "list", menu_item="PurchTableListPage", caption="All purchase orders"),
    PageSignature("ProductInformationManagement", "form", menu_item="InventTable", caption="Released product details"),
    PageSignature("ProductInformationManagement", "list", menu_item="InventTableListPage", caption="Released products"),
)

# Markers only refine the page type; the module still comes from the menu item.
_TYPE_MARKERS: tuple[tuple[str, PageType], ...] = (
    ("Dialog", "dialog"),
    ("Workspace", "workspace"),
    ("ListPage", "list"),
)

_MENU_ITEM_SUFFIXES = ("ListPage", "Workspace", "Dialog", "Parameters", "Setup", "List", "Table")


class PageClassifier:
    """Pure mapping from observable document state to a page identity."""

    def __init__(self, signatures: Iterable[PageSignature] | None = None) -> None:
        self.signatures = tuple(signatures if signatures is not None else DEFAULT_SIGNATURES)

    def register(self, signature: PageSignature) -> None:
        self.signatures = (signature, *self.signatures)

    def classify(self, document: DocumentState) -> PageIdentity:
        try:
            return self._classify(document)
        except Exception:
            return PageIdentity(module="", page_type="unknown", caption=_caption_from_title(document.title))

    def _classify(self, document: DocumentState) -> PageIdentity:
        caption = _best_caption(document)
        if is_auth_page(document.url, document.title):
            return PageIdentity(module=AUTH_MODULE, page_type="unknown", caption=caption)

        menu_item = menu_item_from_url(document.url)
        markers = frozenset(document.markers)
        for signature in self.signatures:
            if signature.matches(menu_item, markers):
                page_type = _marker_page_type(markers) or signature.page_type
                return PageIdentity(
                    module=signature.module,
                    page_type=page_type,
                    caption=caption or signature.caption or "",
                )

        if menu_item:
            page_type = _marker_page_type(markers) or infer_page_type(menu_item)
            return PageIdentity(module=module_from_menu_item(menu_item), page_type=page_type, caption=caption)

        marker_type = _marker_page_type(markers)
        if marker_type == "dialog":
            return PageIdentity(module="", page_type="dialog", caption=caption)
        return PageIdentity(module="", page_type="unknown", caption=caption)


def is_auth_page(url: str, title: str = "") -> bool:
    host = (urlparse(url).hostname or "").lower()
    if any(host == auth or host.endswith(f".{auth}") for auth in AUTH_HOSTS):
        return True
    lowered = title.lower()
    return any(hint in lowered for hint in AUTH_TITLE_HINTS)


def menu_item_from_url(url: str) -> str | None:
    query = parse_qs(urlparse(url).query)
    values = query.get(MENU_ITEM_PARAM) or []
    for value in values:
        cleaned = value.strip()
        if cleaned:
            return cleaned
    return None


def company_from_url(url: str) -> str | None:
    values = parse_qs(urlparse(url).query).get(COMPANY_PARAM) or []
    return values[0].strip() if values and values[0].strip() else None


def infer_page_type(menu_item: str) -> PageType:
    if menu_item.endswith("ListPage") or menu_item.endswith("List"):
        return "list"
    if "Workspace" in menu_item:
        return "workspace"
    if "Dialog" in menu_item:
        return "dialog"
    return "form"


def module_from_menu_item(menu_item: str) -> str:
    base = menu_item
    for suffix in _MENU_ITEM_SUFFIXES:
        if base.endswith(suffix) and len(base) > len(suffix):
            base = base[: -len(suffix)]
            break
    return re.sub(r"[^A-Za-z0-9]", "", base) or menu_item


def _marker_page_type(markers: frozenset[str]) -> PageType | None:
    for marker, page_type in _TYPE_MARKERS:
        if marker in markers:
            return page_type
    return None


def _best_caption(document: DocumentState) -> str:
    caption = clean_name(document.caption)
    if caption:
        return caption
    return _caption_from_title(document.title)


def _caption_from_title(title: str) -> str:
    text = clean_name(title)
    for suffix in PRODUCT_TITLE_SUFFIXES:
        if suffix in text:
            head = text.split(suffix, 1)[0]
            text = head.rstrip(" -|:\u2013\u2014")
    return text


def describe(identity: PageIdentity) -> str:
    module = humanize(identity.module) or "Unknown module"
    caption = f": {identity.caption}" if identity.caption else ""
    return f"{module} ({identity.page_type}){caption}"
