import flowrecorder.dom_extractor as dom_extractor
from flowrecorder.browser_capture import CAPTURE_SCRIPT
from flowrecorder.dom_extractor import SUMMARIZE_FUNCTION, read_document_state


class StatePage:
    url = "https://contoso.operations.dynamics.com/?cmp=USMF&mi=SalesTable"

    def __init__(self, payload=None, error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error

    def evaluate(self, expression: str):
        assert "__flowrecorderDocumentState" in expression
        if self.error is not None:
            raise self.error
        return self.payload


def test_read_document_state_parses_payload() -> None:
    page = StatePage({"url": StatePage.url, "title": "Sales order", "markers": ["Workspace", "Dialog", "Dialog"], "company": "USMF"})

    state = read_document_state(page)

    assert state.url == StatePage.url
    assert state.title == "Sales order"
    assert state.markers == ("Dialog", "Workspace")
    assert state.company == "USMF"


def test_read_document_state_falls_back_to_url() -> None:
    assert read_document_state(StatePage(error=RuntimeError("Execution context was destroyed"))).url == StatePage.url
    assert read_document_state(StatePage(payload=None)).url == StatePage.url


def test_element_summaries_come_from_the_capture_script() -> None:
    assert SUMMARIZE_FUNCTION in CAPTURE_SCRIPT
    assert not hasattr(dom_extractor, "extract_element_summary")
