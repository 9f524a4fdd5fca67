from flowrecorder.selector_rules import (
    attribute_selector,
    clean_name,
    escape_css_identifier,
    is_dynamic_class_token,
    is_dynamic_id_value,
    is_dynamic_value,
    role_selector,
    xpath_literal,
)


def test_clean_name_strips_hotkeys_glyphs_and_whitespace() -> None:
    assert clean_name("  New\ue001 (Alt+N) ") == "New"
    assert clean_name("Sales\u200b order\n lines") == "Sales order lines"
    assert clean_name("Delete (Ctrl + Shift+D)") == "Delete"
    assert clean_name(None) == ""


def test_dynamic_value_detection() -> None:
    assert not is_dynamic_value("SystemDefinedNewButton")
    assert not is_dynamic_value("CustomerAccount")
    assert is_dynamic_value("100001")
    assert is_dynamic_value("a3f9c2d1e8b7")
    assert is_dynamic_value("6f1c2d4e-9a0b-4c3d-8e7f-1a2b3c4d5e6f")
    assert is_dynamic_value("")


def test_dynamic_id_and_class_detection() -> None:
    assert is_dynamic_id_value("row_12")
    assert is_dynamic_id_value("root")
    assert not is_dynamic_id_value("CustomerGrid")
    assert is_dynamic_class_token("css-1x2abc")
    assert is_dynamic_class_token("jss42")
    assert not is_dynamic_class_token("button-primary")


def test_xpath_literal_quoting() -> None:
    assert xpath_literal("Orders") == "'Orders'"
    assert xpath_literal("O'Brien") == "\"O'Brien\""
    assert xpath_literal("a'b\"c") == "concat('a', \"'\", 'b\"c')"


def test_css_and_role_selectors_escape_quotes() -> None:
    assert attribute_selector("data-dyn-controlname", 'Say "hi"') == '[data-dyn-controlname="Say \\"hi\\""]'
    assert role_selector("button", "OK") == 'role=button[name="OK"]'
    assert escape_css_identifier("a.b") == "a\\2e b"
