import ast
import json

import pytest

from flowrecorder.code_generator import generate, is_heavy_step, prune_navigation, render_locator
from flowrecorder.models import LocatorDefinition, PageIdentity, RecordedStep

LIST_PAGE = PageIdentity("AccountsReceivable", "list", "All sales orders")
FORM_PAGE = PageIdentity("AccountsReceivable", "form", "Sales order")
URL = "https://contoso.operations.dynamics.com/?cmp=USMF&mi=SalesTableListPage"


def _control(key: str, name: str) -> LocatorDefinition:
    return LocatorDefinition(
        strategy="attribute",
        value=f'[data-dyn-controlname="{name}"]',
        locator_key=key,
        confidence=1.0,
        tier=1,
        attribute_name="data-dyn-controlname",
    )


def _flow() -> list[RecordedStep]:
    return [
        RecordedStep(order=1, action="navigate", page_identity=LIST_PAGE, value=URL, context_setting=True, target_identity=LIST_PAGE),
        RecordedStep(
            order=2,
            action="click",
            page_identity=LIST_PAGE,
            locator=_control("lk_aaaaaaaaaaa1", "SystemDefinedNewButton"),
            toolbar_action=True,
        ),
        RecordedStep(order=3, action="fill", page_identity=FORM_PAGE, locator=_control("lk_aaaaaaaaaaa2", "CustomerAccount"), value="100001"),
    ]


def _body_lines(source: str) -> list[str]:
    return [line.strip() for line in source.splitlines() if line.startswith("    ")]


def test_generated_module_parses_and_waits_after_heavy_steps() -> None:
    generated = generate(_flow(), test_name="Create sales order")

    assert generated.module_name == "test_create_sales_order.py"
    assert generated.data_file_name == "create_sales_order.data.json"
    assert generated.data_file is None
    ast.parse(generated.source_code)

    lines = _body_lines(generated.source_code)
    assert lines[:8] == [
        "# Accounts receivable (list): All sales orders",
        f'page.goto("{URL}")',
        "wait_for_app_idle(page)",
        'with locator_step("lk_aaaaaaaaaaa1", "System defined new button"):',
        'page.locator("[data-dyn-controlname=\\"SystemDefinedNewButton\\"]").click()',
        "wait_for_app_idle(page)",
        "# Accounts receivable (form): Sales order",
        'with locator_step("lk_aaaaaaaaaaa2", "Customer account"):',
    ]
    assert lines[-1] == 'page.locator("[data-dyn-controlname=\\"CustomerAccount\\"]").fill("100001")'


def test_generation_is_deterministic() -> None:
    first = generate(_flow(), {"100001": "customerAccount"}, test_name="create_sales_order")
    second = generate(list(reversed(_flow())), {"100001": "customerAccount"}, test_name="create_sales_order")
    assert first == second


def test_param_map_rewrites_source_and_emits_data_file() -> None:
    generated = generate(_flow(), {"100001": "customerAccount"}, test_name="create_sales_order")

    assert ".fill(row.customerAccount)" in generated.source_code
    assert json.loads(generated.data_file or "") == [{"id": "scenario-1", "customerAccount": "100001"}]


def test_warnings_are_rendered_as_comments() -> None:
    steps = _flow()[1:]
    source = generate(steps, test_name="orphan_toolbar").source_code
    assert "# WARNING [missing-context]" in source


def test_prune_navigation_drops_auth_and_repeats() -> None:
    login = RecordedStep(
        order=2,
        action="navigate",
        page_identity=PageIdentity("Unknown", "unknown", ""),
        value="https://login.microsoftonline.com/common/oauth2/authorize",
    )
    repeat = RecordedStep(order=3, action="navigate", page_identity=LIST_PAGE, value=URL)
    first = _flow()[0]

    kept = prune_navigation([first, login, repeat])
    assert [step.value for step in kept] == [URL]


def test_wait_and_assert_steps() -> None:
    steps = _flow() + [
        RecordedStep(order=4, action="wait", page_identity=FORM_PAGE, value="500"),
        RecordedStep(
            order=5,
            action="assert",
            page_identity=FORM_PAGE,
            locator=_control("lk_aaaaaaaaaaa2", "CustomerAccount"),
            assertion="value_equals",
            value="100001",
        ),
    ]
    source = generate(steps, test_name="assert_flow").source_code

    assert "from playwright.sync_api import Page, expect" in source
    assert "page.wait_for_timeout(500)" in source
    assert '.to_have_value("100001")' in source


def test_step_without_locator_is_rejected() -> None:
    broken = RecordedStep(order=1, action="click", page_identity=FORM_PAGE)
    with pytest.raises(ValueError):
        generate([broken])


def test_heavy_step_detection() -> None:
    ok = LocatorDefinition("role", 'role=button[name="OK"]', "lk_bbbbbbbbbbb1", 0.7, 3, role_name="button", accessible_name="OK")
    lines = LocatorDefinition("role", 'role=tab[name="Lines"]', "lk_bbbbbbbbbbb2", 0.7, 3, role_name="tab", accessible_name="Lines")

    assert is_heavy_step(RecordedStep(order=1, action="click", page_identity=FORM_PAGE, locator=ok))
    assert not is_heavy_step(RecordedStep(order=1, action="click", page_identity=FORM_PAGE, locator=lines))
    assert not is_heavy_step(RecordedStep(order=1, action="fill", page_identity=FORM_PAGE, locator=ok, value="x"))


def test_render_locator_strategies() -> None:
    role = LocatorDefinition("role", "", "lk_c", 0.7, 3, role_name="button", accessible_name="Post")
    xpath = LocatorDefinition("xpath", "//div[2]", "lk_d", 0.2, 6)
    label = LocatorDefinition("label", "Customer account", "lk_e", 0.6, 4)

    assert render_locator(role) == 'page.get_by_role("button", name="Post", exact=True)'
    assert render_locator(xpath) == 'page.locator("xpath=//div[2]")'
    assert render_locator(label) == 'page.get_by_label("Customer account", exact=True)'
