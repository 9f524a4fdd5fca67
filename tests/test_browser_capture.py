import time

from flowrecorder.browser_capture import BINDING_NAME, CAPTURE_SCRIPT, RecordingBrowser
from flowrecorder.models import DocumentState
from flowrecorder.recording_engine import RecordingEngine
from flowrecorder.validation import TARGET_ATTRIBUTE

BASE = "https://contoso.operations.dynamics.com/"
DASHBOARD = f"{BASE}?cmp=USMF&mi=DefaultDashboard"
CUSTOMERS = f"{BASE}?cmp=USMF&mi=CustTableListPage"
ALL_CUSTOMERS = '[data-dyn-controlname="AllCustomers"]'


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    def count(self) -> int:
        if self.page.navigated:
            return 0
        return self.page.matches.get(self.selector, 0)

    def evaluate(self, expression: str, token: str) -> bool:
        return not self.page.navigated and self.selector == self.page.marked and token == self.page.token


class FakePage:
    def __init__(self, url: str, matches: dict[str, int] | None = None, after_url: str | None = None) -> None:
        self.url = url
        self.after_url = after_url
        self.matches = matches or {}
        self.marked: str | None = None
        self.token: str | None = None
        self.navigated = False
        self.released: list[str] = []
        self.handlers: dict[str, object] = {}
        self.main_frame = object()

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def get_by_role(self, role, name, exact) -> FakeLocator:
        return FakeLocator(self, f"role={role}[{name}]")

    def get_by_label(self, label, exact) -> FakeLocator:
        return FakeLocator(self, f"label={label}")

    def get_by_text(self, text, exact) -> FakeLocator:
        return FakeLocator(self, f"text={text}")

    def evaluate(self, expression: str, arg=None):
        if arg is not None:
            self.released.append(arg)
            return None
        return {"url": self.url, "title": "Dynamics 365"}

    def wait_for_load_state(self, state: str, timeout: int) -> None:
        if self.after_url:
            self.navigated = True
            self.url = self.after_url

    def wait_for_timeout(self, timeout: int) -> None:
        pass

    def on(self, event: str, handler) -> None:
        self.handlers[event] = handler

    def goto(self, url: str, wait_until: str) -> None:
        self.url = url


class FakeContext:
    def __init__(self, page: FakePage) -> None:
        self.page = page
        self.bindings: list[str] = []
        self.scripts: list[str] = []

    def expose_binding(self, name: str, callback) -> None:
        self.bindings.append(name)

    def add_init_script(self, script: str) -> None:
        self.scripts.append(script)

    def new_page(self) -> FakePage:
        return self.page


class FakeBrowser:
    def __init__(self, context: FakeContext) -> None:
        self.context = context

    def new_context(self) -> FakeContext:
        return self.context


class FakeBrowserType:
    def __init__(self, browser: FakeBrowser) -> None:
        self.browser = browser
        self.launches: list[bool] = []

    def launch(self, headless: bool) -> FakeBrowser:
        self.launches.append(headless)
        return self.browser


class FakePlaywright:
    def __init__(self, page: FakePage) -> None:
        self.context = FakeContext(page)
        self.chromium = FakeBrowserType(FakeBrowser(self.context))


def _recording(page: FakePage) -> tuple[RecordingBrowser, RecordingEngine]:
    engine = RecordingEngine()
    engine.start(DocumentState(url=DASHBOARD))
    browser = RecordingBrowser(engine, on_status=lambda message: None)
    browser._page = page  # type: ignore[assignment]
    browser._last_url = page.url
    return browser, engine


def _click_payload(control: str, target: str) -> dict:
    return {
        "kind": "click",
        "element": {"tag": "button", "attributes": {"data-dyn-controlname": control}, "ancestry": [{"tag": "button", "nth": "1"}]},
        "before": {"url": DASHBOARD},
        "value": None,
        "target": target,
    }


def test_launch_starts_recording_on_the_first_page() -> None:
    page = FakePage("about:blank")
    playwright = FakePlaywright(page)
    engine = RecordingEngine()
    messages: list[str] = []
    browser = RecordingBrowser(engine, headed=False, on_status=messages.append)
    browser._playwright = playwright  # type: ignore[assignment]

    browser._handle_launch(DASHBOARD)

    assert playwright.chromium.launches == [True]
    assert playwright.context.bindings == [BINDING_NAME]
    assert playwright.context.scripts == [CAPTURE_SCRIPT]
    assert TARGET_ATTRIBUTE in CAPTURE_SCRIPT
    assert "framenavigated" in page.handlers
    assert engine.state == "recording"
    [step] = engine.steps
    assert step.action == "navigate"
    assert step.value == DASHBOARD
    assert messages[-1] == "Recording started."


def test_launch_without_url_reports_status() -> None:
    messages: list[str] = []
    browser = RecordingBrowser(RecordingEngine(), on_status=messages.append)
    browser._playwright = FakePlaywright(FakePage("about:blank"))  # type: ignore[assignment]

    browser._handle_launch("  ")

    assert messages == ["Please enter a URL."]
    assert browser.engine.state == "idle"


def test_click_locator_is_resolved_before_the_page_navigates() -> None:
    page = FakePage(DASHBOARD, matches={ALL_CUSTOMERS: 1}, after_url=CUSTOMERS)
    page.marked = ALL_CUSTOMERS
    page.token = "t1"
    browser, engine = _recording(page)

    browser._on_binding({}, _click_payload("AllCustomers", "t1"))
    command, payload = browser._commands.get_nowait()
    browser._handle_command(command, payload)

    step = engine.steps[-1]
    assert step.locator is not None
    assert step.locator.strategy == "attribute"
    assert step.locator.tier == 1
    assert step.locator.value == ALL_CUSTOMERS
    assert step.warnings == ()
    assert page.navigated
    assert page.released == ["t1"]
    assert browser._last_url == CUSTOMERS


def test_single_match_on_another_element_is_not_trusted() -> None:
    page = FakePage(DASHBOARD, matches={ALL_CUSTOMERS: 1})
    page.marked = None
    page.token = "t1"
    browser, engine = _recording(page)

    browser._handle_interaction(_click_payload("AllCustomers", "t1"))

    step = engine.steps[-1]
    assert step.locator is not None
    assert step.locator.tier == 6
    assert {warning.code for warning in step.warnings} == {"low-confidence-locator", "ambiguous-locator"}


def test_navigation_right_after_an_interaction_is_not_recorded() -> None:
    page = FakePage(DASHBOARD)
    browser, engine = _recording(page)
    browser._last_interaction = time.monotonic()

    page.url = CUSTOMERS
    browser._handle_command("navigated", CUSTOMERS)

    assert len(engine.steps) == 1
    assert browser._last_url == CUSTOMERS

    browser._handle_navigated(CUSTOMERS)
    assert len(engine.steps) == 1


def test_standalone_navigation_is_recorded() -> None:
    page = FakePage(DASHBOARD)
    browser, engine = _recording(page)
    browser._last_interaction = 0.0

    page.url = CUSTOMERS
    browser._handle_navigated(CUSTOMERS)

    step = engine.steps[-1]
    assert step.action == "navigate"
    assert step.value == CUSTOMERS
    assert step.context_setting
    assert browser._last_url == CUSTOMERS


def test_interactions_before_a_page_exists_are_dropped() -> None:
    engine = RecordingEngine()
    engine.start(DocumentState(url=DASHBOARD))
    browser = RecordingBrowser(engine)

    browser._handle_interaction(_click_payload("AllCustomers", "t1"))
    browser._handle_interaction({"kind": "hover"})

    assert len(engine.steps) == 1
