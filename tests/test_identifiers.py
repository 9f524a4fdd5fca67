from flowrecorder.identifiers import (
    dedupe_name,
    humanize,
    make_safe_identifier,
    split_words,
    to_camel_case,
    to_pascal_case,
    to_snake_case,
)


def test_camel_case_from_labels() -> None:
    assert to_camel_case("Customer account") == "customerAccount"
    assert to_camel_case("Café total") == "cafeTotal"
    assert to_camel_case("") == "field"
    assert to_camel_case("Quantity (Alt+Q)") == "quantity"
    assert len(to_camel_case("word " * 40)) <= 50


def test_snake_and_pascal_case() -> None:
    assert to_snake_case("CustomerOrderFlow") == "customer_order_flow"
    assert to_snake_case("Create sales order!") == "create_sales_order"
    assert to_pascal_case("sales order") == "SalesOrder"


def test_split_words_handles_acronyms() -> None:
    assert split_words("HTMLParser") == ["HTML", "Parser"]
    assert split_words("SalesLine2Grid") == ["Sales", "Line2", "Grid"]


def test_safe_identifier_avoids_reserved_names() -> None:
    assert make_safe_identifier("class") == "classValue"
    assert make_safe_identifier("row") == "rowValue"
    assert make_safe_identifier("id") == "idValue"
    assert make_safe_identifier("1st") == "_1st"
    assert make_safe_identifier("!!") == "field"


def test_humanize_and_dedupe() -> None:
    assert humanize("SystemDefinedSaveButton") == "System defined save button"
    assert humanize("CustomerAccount") == "Customer account"
    assert humanize("") == ""
    assert dedupe_name("qty", set()) == "qty"
    assert dedupe_name("qty", {"qty", "qty2"}) == "qty3"
