import pytest

from apps.orders.domain import Identity

CUSTOMER = Identity(id="user-1", email="amina@example.com")
OTHER = Identity(id="user-2", email="juma@example.com")
ADMIN = Identity(id="admin-1", email="ops@example.com", is_admin=True)


def auth_headers(identity: Identity) -> dict:
    """Headers the auth proxy would set for ``identity`` (Django test client form)."""
    headers = {"HTTP_X_USER_ID": identity.id}
    if identity.email:
        headers["HTTP_X_USER_EMAIL"] = identity.email
    if identity.is_admin:
        headers["HTTP_X_USER_ROLES"] = "admin"
    return headers


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.SIDE_EFFECTS_ASYNC = False


@pytest.fixture(autouse=True)
def reset_downstream_state():
    from apps.orders.http_adapters import BREAKERS
    from apps.orders.providers import provider_stub

    provider_stub.reset()
    for cb in BREAKERS.values():
        cb.reset()
    yield


@pytest.fixture
def make_product(db):
    from apps.catalog.models import ProductModel

    def _make(pid="P1", price_cents=1000, stock=5, is_active=True, name=None):
        return ProductModel.objects.create(
            id=pid, name=name or pid, price_cents=price_cents, stock_quantity=stock, is_active=is_active
        )

    return _make


@pytest.fixture
def customer_headers():
    return auth_headers(CUSTOMER)


@pytest.fixture
def other_headers():
    return auth_headers(OTHER)


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN)


@pytest.fixture
def provider():
    from apps.orders.providers import provider_stub

    return provider_stub


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def notify_order_created(self, order):
        self.calls.append(("order_created", order.id))
        if self.fail:
            raise RuntimeError("smtp down")

    def notify_payment_success(self, order, transaction_reference, payment_method):
        self.calls.append(("payment_success", order.id, transaction_reference, payment_method))
        if self.fail:
            raise RuntimeError("smtp down")

    def notify_status_changed(self, order, previous_status):
        self.calls.append(("status_changed", order.id, previous_status, order.status.value))
        if self.fail:
            raise RuntimeError("smtp down")


class RecordingInvalidator:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def invalidate(self, tags):
        self.calls.append(list(tags))
        if self.fail:
            raise RuntimeError("cdn down")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def invalidator():
    return RecordingInvalidator()


@pytest.fixture
def record_side_effects(monkeypatch, notifier, invalidator):
    """Route every view's side effects to the recording doubles."""
    from apps.orders.side_effects import SideEffectDispatcher

    monkeypatch.setattr(
        "apps.orders.providers.get_side_effects",
        lambda: SideEffectDispatcher(notifier, invalidator),
        raising=True,
    )
    return notifier, invalidator
