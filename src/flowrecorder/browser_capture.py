from __future__ import annotations

import logging
import queue
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from .dom_extractor import DOCUMENT_STATE_FUNCTION, SUMMARIZE_FUNCTION, read_document_state
from .models import DocumentState, ElementSummary, InteractionEvent, RecordedStep
from .recording_engine import RecordingEngine
from .validation import TARGET_ATTRIBUTE, PlaywrightDocument

if TYPE_CHECKING:
    from playwright.sync_api import Browser, BrowserContext, Frame, Page, Playwright

StatusCallback = Callable[[str], None]

BINDING_NAME = "__flowrecorderEvent"
CAPTURED_KINDS = frozenset({"click", "fill", "select"})
AFTER_SETTLE_MS = 250
LOAD_STATE_TIMEOUT_MS = 5000
# A main-frame navigation this soon after an interaction is that interaction's effect.
NAVIGATION_ECHO_SECONDS = 2.0

CAPTURE_SCRIPT = f"""
(() => {{
  if (window.__flowrecorderInstalled) return;
  window.__flowrecorderInstalled = true;
  {SUMMARIZE_FUNCTION}
  {DOCUMENT_STATE_FUNCTION}
  const TEXT_INPUTS = ['text', 'search', 'email', 'password', 'url', 'tel', 'number', 'date'];
  const send = (kind, el, value) => {{
    try {{
      const element = __flowrecorderSummarize(el);
      const target = Date.now().toString(36) + Math.random().toString(36).slice(2);
      el.setAttribute('{TARGET_ATTRIBUTE}', target);
      window.{BINDING_NAME}({{
        kind,
        element,
        before: __flowrecorderDocumentState(),
        value,
        target,
      }});
    }} catch (err) {{
      // page is unloading
    }}
  }};
  const isTextInput = (el) =>
    el.tagName === 'TEXTAREA' ||
    (el.tagName === 'INPUT' && TEXT_INPUTS.includes((el.getAttribute('type') || 'text').toLowerCase()));

  document.addEventListener('click', (ev) => {{
    if (!(ev.target instanceof Element)) return;
    const el = ev.target.closest('button, a, input, select, textarea, [role], [data-dyn-controlname]') || ev.target;
    if (el.tagName === 'SELECT' || isTextInput(el)) return;
    send('click', el, null);
  }}, true);

  document.addEventListener('change', (ev) => {{
    const el = ev.target;
    if (!(el instanceof Element)) return;
    if (el.tagName === 'SELECT') {{
      send('select', el, el.value);
      return;
    }}
    if (isTextInput(el)) send('fill', el, el.value);
  }}, true);
}})();
"""

logger = logging.getLogger("flowrecorder.capture")


class RecordingBrowser:
    """Owns the Playwright session on a worker thread and feeds captured events to the engine.

    Page callbacks only enqueue; extraction and classification run in the worker loop.
    """

    def __init__(
        self,
        engine: RecordingEngine,
        *,
        browser: str = "chromium",
        headed: bool = True,
        on_status: StatusCallback | None = None,
    ) -> None:
        self.engine = engine
        self.browser_name = browser
        self.headed = headed
        self._on_status = on_status or (lambda message: logger.info(message))

        self._commands: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="flowrecorder-capture", daemon=True)
        self._started = False
        self._running = True
        self._stopped = threading.Event()

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._last_url = ""
        self._last_interaction = 0.0

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._thread.start()

    def launch(self, url: str) -> None:
        self._commands.put(("launch", url))

    def navigate(self, url: str) -> None:
        self._commands.put(("navigate", url))

    def stop_recording(self, timeout: float | None = 30.0) -> tuple[RecordedStep, ...]:
        self._commands.put(("stop", None))
        if not self._stopped.wait(timeout):
            logger.warning("Recorder did not stop within %ss.", timeout)
        return self.engine.steps

    def shutdown(self) -> None:
        if not self._started:
            return
        self._commands.put(("shutdown", None))
        self._thread.join(timeout=5)

    def _run(self) -> None:
        from playwright.sync_api import sync_playwright

        try:
            with sync_playwright() as playwright:
                self._playwright = playwright
                self._event_loop()
        except Exception as exc:
            logger.exception("Browser worker crashed")
            self._on_status(f"Browser worker crashed: {exc}")
        finally:
            self._cleanup()
            self._stopped.set()

    def _event_loop(self) -> None:
        while self._running:
            try:
                command, payload = self._commands.get(timeout=0.1)
                self._handle_command(command, payload)
            except queue.Empty:
                self._pump_events()
            except Exception as exc:
                logger.exception("Command failed")
                self._on_status(f"Command error: {exc}")

    def _handle_command(self, command: str, payload: Any) -> None:
        if command == "shutdown":
            self._running = False
            return
        if command == "launch":
            self._handle_launch(str(payload))
            return
        if command == "navigate":
            self._handle_navigate(str(payload))
            return
        if command == "event":
            if isinstance(payload, dict):
                self._handle_interaction(payload)
            return
        if command == "navigated":
            self._handle_navigated(str(payload))
            return
        if command == "stop":
            if self.engine.state == "recording":
                steps = self.engine.stop()
                self._on_status(f"Recording stopped with {len(steps)} step(s).")
            self._stopped.set()

    def _handle_launch(self, url: str) -> None:
        if not self._playwright:
            self._on_status("Playwright is not available.")
            return
        if not url.strip():
            self._on_status("Please enter a URL.")
            return
        self._close_page_and_context()
        if self._browser is None:
            launcher = getattr(self._playwright, self.browser_name)
            self._browser = launcher.launch(headless=not self.headed)
        self._context = self._browser.new_context()
        self._context.expose_binding(BINDING_NAME, self._on_binding)
        self._context.add_init_script(CAPTURE_SCRIPT)
        self._page = self._context.new_page()
        self._page.on("framenavigated", self._on_frame_navigated)
        self._on_status(f"Launching {self.browser_name}: {url}")
        self._page.goto(url, wait_until="domcontentloaded")
        state = read_document_state(self._page)
        self._last_url = state.url
        if self.engine.state == "idle":
            self.engine.start(state)
            self._on_status("Recording started.")

    def _handle_navigate(self, url: str) -> None:
        if not self._page:
            return
        before = read_document_state(self._page)
        self._page.goto(url, wait_until="domcontentloaded")
        self._record_navigation(before, self._page.url)

    def _handle_navigated(self, url: str) -> None:
        if not self._page or url == self._last_url:
            return
        if time.monotonic() - self._last_interaction < NAVIGATION_ECHO_SECONDS:
            self._last_url = url
            return
        self._record_navigation(DocumentState(url=self._last_url), url)

    def _record_navigation(self, before: DocumentState, url: str) -> None:
        after = read_document_state(self._page) if self._page else DocumentState(url=url)
        self._last_url = url
        self.engine.handle_event(InteractionEvent(kind="navigate", before=before, after=after, value=url), None)

    def _handle_interaction(self, payload: dict[str, Any]) -> None:
        page = self._page
        kind = str(payload.get("kind") or "")
        if page is None or kind not in CAPTURED_KINDS:
            return
        self._last_interaction = time.monotonic()
        before = DocumentState.from_dict(payload.get("before") or {"url": page.url})
        raw_element = payload.get("element")
        element = ElementSummary.from_dict(raw_element) if isinstance(raw_element, dict) else None
        extraction = None
        if element is not None:
            # Locators are checked against the page as it was when the event fired.
            document = PlaywrightDocument(page, target_token=str(payload.get("target") or "") or None)
            extraction = self.engine.extract_locator(element, before, document)
            document.release_target()
        if kind == "click":
            try:
                page.wait_for_load_state("domcontentloaded", timeout=LOAD_STATE_TIMEOUT_MS)
                page.wait_for_timeout(AFTER_SETTLE_MS)
            except Exception as exc:
                logger.debug("Page did not settle after click: %s", exc)
        after = read_document_state(page)
        self._last_url = after.url or self._last_url
        value = payload.get("value")
        event = InteractionEvent(
            kind=kind,  # type: ignore[arg-type]
            before=before,
            element=element,
            after=after,
            value=None if value is None else str(value),
        )
        self.engine.handle_event(event, None, extraction=extraction)

    def _on_binding(self, source: dict[str, Any], payload: Any) -> None:
        self._commands.put(("event", payload))

    def _on_frame_navigated(self, frame: Frame) -> None:
        if self._page is not None and frame == self._page.main_frame:
            self._commands.put(("navigated", frame.url))

    def _pump_events(self) -> None:
        if not self._page:
            return
        try:
            self._page.wait_for_timeout(50)
        except Exception:
            logger.debug("Event pump interrupted.", exc_info=True)

    def _close_page_and_context(self) -> None:
        if self._page:
            try:
                self._page.close()
            except Exception:
                logger.debug("Page close failed.", exc_info=True)
        self._page = None
        if self._context:
            try:
                self._context.close()
            except Exception:
                logger.debug("Context close failed.", exc_info=True)
        self._context = None

    def _cleanup(self) -> None:
        self._close_page_and_context()
        if self._browser:
            try:
                self._browser.close()
            except Exception:
                logger.debug("Browser close failed.", exc_info=True)
        self._browser = None
        self._playwright = None
