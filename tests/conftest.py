import os
from urllib.parse import parse_qsl, urlencode

# Must be set before the payments package is imported
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_payments.db"
os.environ["DATABASE_URL"] = SQLALCHEMY_DATABASE_URL
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["PUBLIC_BASE_URL"] = "https://pay.example.com"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import payments.auth  # noqa: E402
import payments.routes  # noqa: E402
from payments.alipay_service import AlipayGateway, AlipayNotificationVerifier, sign_params  # noqa: E402
from payments.config import AlipayConfig, PayPalConfig  # noqa: E402
from payments.database import Base  # noqa: E402
from payments.main import app as fastapi_app  # noqa: E402
from payments.models import Payment, User  # noqa: E402
from payments.paypal_service import PayPalClient, PayPalGateway  # noqa: E402
from payments.stripe_service import StripeGateway  # noqa: E402

USER_ID = "user-1"

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

PAYPAL_CONFIG = PayPalConfig(
    user="merchant_api1.example.com",
    password="secret",
    signature="sig",
    nvp_url="https://api-3t.sandbox.paypal.com/nvp",
    checkout_url="https://www.sandbox.paypal.com/cgi-bin/webscr",
)

ALIPAY_CONFIG = AlipayConfig(
    pid="2088000000000000",
    key="alipay-md5-key",
    seller_email="seller@example.com",
    gateway_url="https://mapi.alipay.com/gateway.do",
    service="create_direct_pay_by_user",
)


class FakePayPal:
    """Answers NVP calls with canned replies, keyed by METHOD."""

    def __init__(self):
        self.requests = []
        self.replies = {
            "SetExpressCheckout": {"ACK": "Success", "TOKEN": "EC-123abc"},
            "DoExpressCheckoutPayment": {
                "ACK": "Success",
                "PAYMENTINFO_0_TRANSACTIONID": "TX-1",
                "PAYMENTINFO_0_PAYMENTSTATUS": "Completed",
            },
        }
        self.fail_with = None

    def methods(self):
        return [r["METHOD"] for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with
        fields = dict(parse_qsl(request.content.decode()))
        self.requests.append(fields)
        return httpx.Response(200, text=urlencode(self.replies[fields["METHOD"]]))


class FakeAlipay:
    """Answers ``notify_verify`` round trips."""

    def __init__(self):
        self.answer = "true"
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(dict(request.url.params))
        return httpx.Response(200, text=self.answer)


def signed_notification(payment_id, trade_status="TRADE_FINISHED", **overrides):
    params = {
        "currency": "CNY",
        "notify_id": "348239c82394d2d77db64bd8e31f9d5b7e",
        "notify_time": "2013-10-11 22:56:09",
        "notify_type": "trade_status_sync",
        "out_trade_no": payment_id,
        "total_fee": "18.94",
        "trade_no": "2013101136712297",
        "trade_status": trade_status,
    }
    params.update(overrides)
    params["sign"] = sign_params(params, ALIPAY_CONFIG.key)
    params["sign_type"] = "MD5"
    return params


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def fake_paypal():
    return FakePayPal()


@pytest.fixture
def fake_alipay():
    return FakeAlipay()


@pytest.fixture
def gateways(fake_paypal, fake_alipay):
    paypal_client = PayPalClient(
        PAYPAL_CONFIG, client=httpx.Client(transport=httpx.MockTransport(fake_paypal.handler))
    )
    verifier = AlipayNotificationVerifier(
        ALIPAY_CONFIG, client=httpx.Client(transport=httpx.MockTransport(fake_alipay.handler))
    )
    registry = [
        StripeGateway(),
        PayPalGateway(client=paypal_client),
        AlipayGateway(config=ALIPAY_CONFIG, verifier=verifier),
    ]
    return {gateway.method: gateway for gateway in registry}


@pytest.fixture
def user(db):
    u = User(id=USER_ID, email="student@example.com", sessions_count=4)
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def make_payment(db, user):
    def _make(**attrs):
        values = {"user_id": user.id, "amount": 1894, "currency": "USD", "sessions_count": 1,
                  "charged": False}
        values.update(attrs)
        payment = Payment(**values)
        db.add(payment)
        db.commit()
        return payment
    return _make


def sessions_of(user_id=USER_ID):
    session = TestingSessionLocal()
    try:
        return session.get(User, user_id).sessions_count
    finally:
        session.close()


def reload_payment(payment_id):
    session = TestingSessionLocal()
    try:
        payment = session.get(Payment, payment_id)
        session.expunge(payment)
        return payment
    finally:
        session.close()


@pytest.fixture
def client(monkeypatch, gateways):
    # Route every request to the test database
    monkeypatch.setattr(payments.routes, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("payments.main.SessionLocal", TestingSessionLocal)
    # The caller identity is supplied explicitly
    fastapi_app.dependency_overrides[payments.auth.get_current_user_id] = lambda: USER_ID
    fastapi_app.dependency_overrides[payments.routes.get_gateways] = lambda: gateways
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(monkeypatch, gateways):
    # PayPal's browser redirects carry no Authorization header
    monkeypatch.setattr(payments.routes, "SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[payments.routes.get_gateways] = lambda: gateways
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
