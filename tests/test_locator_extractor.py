from flowrecorder.locator_extractor import (
    LocatorExtractor,
    compute_locator_key,
    spatial_xpath,
    structural_xpath,
)
from flowrecorder.models import ElementSummary, LocatorDefinition


class FakeDocument:
    def __init__(self, counts: dict[tuple[str, str], int] | None = None) -> None:
        self.counts = counts or {}
        self.calls: list[tuple[str, str]] = []

    def count_matches(self, definition: LocatorDefinition) -> int:
        self.calls.append((definition.strategy, definition.value))
        return self.counts.get((definition.strategy, definition.value), 0)


class BrokenDocument:
    def count_matches(self, definition: LocatorDefinition) -> int:
        raise RuntimeError("page closed")


def _customer_account(with_control_name: bool = True) -> ElementSummary:
    attributes = {"data-dyn-controlname": "CustomerAccount"} if with_control_name else {}
    return ElementSummary(
        tag="input",
        role="combobox",
        aria_label="Customer account",
        attributes=attributes,
        ancestry=[{"tag": "input", "nth": "1"}, {"tag": "div", "nth": "2"}],
    )


def test_control_name_attribute_wins_with_full_confidence() -> None:
    document = FakeDocument({("attribute", '[data-dyn-controlname="CustomerAccount"]'): 1})
    result = LocatorExtractor().extract_with_warnings(_customer_account(), document, module="AccountsReceivable")

    assert result.unique
    assert result.locator.strategy == "attribute"
    assert result.locator.confidence == 1.0
    assert result.locator.tier == 1
    assert result.locator.attribute_name == "data-dyn-controlname"
    assert result.warnings == ()


def test_role_and_accessible_name_when_attribute_absent() -> None:
    document = FakeDocument({("role", 'role=combobox[name="Customer account"]'): 1})
    locator = LocatorExtractor().extract(_customer_account(with_control_name=False), document)

    assert locator.strategy == "role"
    assert locator.confidence == 0.7
    assert locator.role_name == "combobox"
    assert locator.accessible_name == "Customer account"


def test_non_unique_attribute_falls_through_to_next_tier() -> None:
    document = FakeDocument(
        {
            ("attribute", '[data-dyn-controlname="CustomerAccount"]'): 3,
            ("role", 'role=combobox[name="Customer account"]'): 1,
        }
    )
    result = LocatorExtractor().extract_with_warnings(_customer_account(), document)

    assert result.locator.strategy == "role"
    assert [count for _, count in result.attempts] == [3, 1]


def test_locator_key_is_independent_of_winning_strategy() -> None:
    element = _customer_account()
    by_attribute = LocatorExtractor().extract(
        element, FakeDocument({("attribute", '[data-dyn-controlname="CustomerAccount"]'): 1}), module="Sales"
    )
    by_role = LocatorExtractor().extract(
        element, FakeDocument({("role", 'role=combobox[name="Customer account"]'): 1}), module="Sales"
    )

    assert by_attribute.strategy != by_role.strategy
    assert by_attribute.locator_key == by_role.locator_key == compute_locator_key(element, "Sales")
    assert by_role.locator_key.startswith("lk_")
    assert len(by_role.locator_key) == 15


def test_locator_key_changes_with_module() -> None:
    element = _customer_account()
    assert compute_locator_key(element, "Sales") != compute_locator_key(element, "Purchasing")


def test_label_tier_for_form_fields() -> None:
    element = ElementSummary(tag="input", label_text="Quantity")
    locator = LocatorExtractor().extract(element, FakeDocument({("label", "Quantity"): 1}))

    assert locator.strategy == "label"
    assert locator.confidence == 0.6
    assert locator.tier == 4


def test_text_tier_is_low_confidence_and_warned() -> None:
    element = ElementSummary(tag="span", text="Released products")
    result = LocatorExtractor().extract_with_warnings(element, FakeDocument({("text", "Released products"): 1}))

    assert result.locator.strategy == "text"
    assert result.locator.confidence == 0.4
    assert [warning.code for warning in result.warnings] == ["low-confidence-locator"]


def test_long_text_is_not_a_candidate() -> None:
    element = ElementSummary(tag="span", text="x" * 81)
    document = FakeDocument()
    LocatorExtractor().extract(element, document)

    assert all(strategy != "text" for strategy, _ in document.calls)


def test_hotkey_hint_is_stripped_from_accessible_name() -> None:
    element = ElementSummary(tag="button", role="button", aria_label="Save (Alt+S)")
    locator = LocatorExtractor().extract(element, FakeDocument({("role", 'role=button[name="Save"]'): 1}))

    assert locator.accessible_name == "Save"


def test_dynamic_control_name_is_not_used() -> None:
    element = ElementSummary(tag="div", attributes={"data-dyn-controlname": "Grid_1234567"}, text="Lines")
    document = FakeDocument({("text", "Lines"): 1})
    locator = LocatorExtractor().extract(element, document)

    assert locator.strategy == "text"
    assert ("attribute", '[data-dyn-controlname="Grid_1234567"]') not in document.calls


def test_ambiguous_element_returns_fallback_with_warnings() -> None:
    element = ElementSummary(
        tag="a",
        text="Customers",
        ancestry=[
            {"tag": "a", "nth": "2"},
            {"tag": "li", "nth": "3"},
            {"tag": "div", "class": "modulesPane flyout", "nth": "1"},
        ],
    )
    result = LocatorExtractor().extract_with_warnings(element, FakeDocument({("text", "Customers"): 4}))

    assert not result.unique
    assert result.locator.strategy == "spatial"
    assert result.locator.value == "//*[contains(@class, 'modulesPane')]/li[3]/a[2]"
    assert result.locator.confidence == 0.2
    codes = {warning.code for warning in result.warnings}
    assert codes == {"low-confidence-locator", "ambiguous-locator"}


def test_failing_document_never_raises() -> None:
    result = LocatorExtractor().extract_with_warnings(_customer_account(), BrokenDocument())

    assert not result.unique
    assert result.locator.tier == 6
    assert result.warnings


def test_structural_xpath_anchors_on_stable_ancestor() -> None:
    element = ElementSummary(
        tag="input",
        ancestry=[
            {"tag": "input", "nth": "1"},
            {"tag": "div", "nth": "2", "controlname": "SalesLine"},
            {"tag": "body", "nth": "1"},
        ],
    )
    assert structural_xpath(element) == "//*[@data-dyn-controlname='SalesLine']/input[1]"


def test_structural_xpath_without_ancestry() -> None:
    assert structural_xpath(ElementSummary(tag="span")) == "//span"


def test_spatial_xpath_requires_known_container() -> None:
    element = ElementSummary(tag="a", ancestry=[{"tag": "a", "nth": "1"}, {"tag": "div", "nth": "1"}])
    assert spatial_xpath(element) is None
