from flowrecorder.models import DocumentState, PageIdentity
from flowrecorder.page_classifier import (
    PageClassifier,
    PageSignature,
    company_from_url,
    describe,
    infer_page_type,
    is_auth_page,
    menu_item_from_url,
    module_from_menu_item,
)

BASE = "https://contoso.operations.dynamics.com/"


def test_registered_menu_item_maps_to_module_and_type() -> None:
    identity = PageClassifier().classify(
        DocumentState(url=f"{BASE}?cmp=USMF&mi=SalesTableListPage", title="All sales orders -- Finance and Operations")
    )
    assert identity.module == "AccountsReceivable"
    assert identity.page_type == "list"
    assert identity.caption == "All sales orders"


def test_caption_marker_wins_over_title() -> None:
    identity = PageClassifier().classify(
        DocumentState(url=f"{BASE}?mi=CustTable", title="Customers | Finance and Operations", caption="Customer: US-001")
    )
    assert identity.module == "AccountsReceivable"
    assert identity.page_type == "form"
    assert identity.caption == "Customer: US-001"


def test_title_product_suffix_is_removed() -> None:
    identity = PageClassifier().classify(DocumentState(url=f"{BASE}?mi=VendTable", title="Vendors | Finance and Operations"))
    assert identity.caption == "Vendors"


def test_unregistered_menu_item_is_inferred() -> None:
    identity = PageClassifier().classify(DocumentState(url=f"{BASE}?mi=LedgerJournalTableListPage"))
    assert identity.module == "LedgerJournalTable"
    assert identity.page_type == "list"


def test_dialog_marker_refines_page_type() -> None:
    identity = PageClassifier().classify(DocumentState(url=f"{BASE}?mi=SalesTable", markers=("Dialog",)))
    assert identity.module == "AccountsReceivable"
    assert identity.page_type == "dialog"


def test_company_does_not_change_identity() -> None:
    classifier = PageClassifier()
    first = classifier.classify(DocumentState(url=f"{BASE}?cmp=USMF&mi=PurchTable", company="USMF"))
    second = classifier.classify(DocumentState(url=f"{BASE}?cmp=DEMF&mi=PurchTable", company="DEMF"))
    assert first == second


def test_auth_pages_classify_as_unknown() -> None:
    classifier = PageClassifier()
    login = classifier.classify(DocumentState(url="https://login.microsoftonline.com/common/oauth2", title="Sign in to your account"))
    redirect = classifier.classify(DocumentState(url=f"{BASE}?mi=CustTable", title="Redirecting..."))

    assert login == PageIdentity(module="auth", page_type="unknown", caption="Sign in to your account")
    assert redirect.module == "auth"
    assert redirect.page_type == "unknown"


def test_no_menu_item_is_unknown() -> None:
    identity = PageClassifier().classify(DocumentState(url=BASE, title="Dashboard"))
    assert identity.module == ""
    assert identity.page_type == "unknown"


def test_registered_signature_takes_precedence() -> None:
    classifier = PageClassifier()
    classifier.register(PageSignature("Warehouse", "workspace", menu_item="CustTable"))
    identity = classifier.classify(DocumentState(url=f"{BASE}?mi=CustTable"))
    assert identity.module == "Warehouse"
    assert identity.page_type == "workspace"


def test_url_helpers() -> None:
    url = f"{BASE}?cmp=USMF&mi=InventTable"
    assert menu_item_from_url(url) == "InventTable"
    assert company_from_url(url) == "USMF"
    assert menu_item_from_url(BASE) is None
    assert company_from_url(BASE) is None
    assert is_auth_page("https://login.live.com/")
    assert not is_auth_page(url, "Released products")


def test_page_type_and_module_inference() -> None:
    assert infer_page_type("ProjTableList") == "list"
    assert infer_page_type("ProjManagementWorkspace") == "workspace"
    assert infer_page_type("SalesCopyingDialog") == "dialog"
    assert infer_page_type("CustParameters") == "form"
    assert module_from_menu_item("ProjManagementWorkspace") == "ProjManagement"
    assert module_from_menu_item("Workspace") == "Workspace"


def test_describe_identity() -> None:
    assert describe(PageIdentity("AccountsReceivable", "list", "All customers")) == "Accounts receivable (list): All customers"
    assert describe(PageIdentity("", "unknown", "")) == "Unknown module (unknown)"
