import pytest

from payments.errors import InvalidMethod, InvalidState
from payments.models import Payment, PaymentMethod, PaymentState

from conftest import TestingSessionLocal


def new_payment(**attrs):
    values = {"user_id": "user-1", "amount": 500, "currency": "USD", "charged": False}
    values.update(attrs)
    return Payment(**values)


def test_set_method_accepts_supported_methods():
    payment = new_payment()
    payment.set_method("redirect_wallet")
    assert payment.payment_method is PaymentMethod.REDIRECT_WALLET
    assert payment.state == PaymentState.AWAITING_EXTERNAL_CREDENTIALS


def test_set_method_rejects_unknown_method():
    payment = new_payment()
    with pytest.raises(InvalidMethod):
        payment.set_method("bitcoin")
    assert payment.payment_method is None
    assert payment.state == PaymentState.CREATED


def test_method_cannot_change_once_selected():
    payment = new_payment(payment_method=PaymentMethod.CARD)
    payment.set_method("card")  # same method is fine
    with pytest.raises(InvalidState):
        payment.set_method("async_wallet")
    assert payment.payment_method is PaymentMethod.CARD


def test_capture_redirect_credentials_requires_redirect_wallet():
    payment = new_payment(payment_method=PaymentMethod.CARD)
    with pytest.raises(InvalidState):
        payment.capture_redirect_credentials("EC-1", "PAYER")
    assert payment.external_token is None


def test_capture_redirect_credentials_moves_to_method_selected():
    payment = new_payment(payment_method=PaymentMethod.REDIRECT_WALLET, external_token="EC-1")
    payment.capture_redirect_credentials("EC-1", "PAYER")
    assert payment.external_token == "EC-1"
    assert payment.external_payer_id == "PAYER"
    assert payment.state == PaymentState.METHOD_SELECTED
    assert payment.charged is False


def test_mark_charged_is_idempotent_in_memory():
    payment = new_payment()
    assert payment.mark_charged() is True
    assert payment.mark_charged() is False
    assert payment.charged is True
    assert payment.state == PaymentState.CHARGED


def test_mark_charged_compare_and_set_with_stale_copy(make_payment):
    payment_id = make_payment(payment_method=PaymentMethod.CARD).id

    first = TestingSessionLocal()
    second = TestingSessionLocal()
    try:
        a = first.get(Payment, payment_id)
        b = second.get(Payment, payment_id)
        assert a.charged is False and b.charged is False

        assert a.mark_charged() is True
        first.commit()

        # ``b`` still believes the payment is uncharged
        assert b.mark_charged() is False
        assert b.charged is True
        second.commit()
    finally:
        first.close()
        second.close()


def test_capture_redirect_credentials_requires_matching_token():
    payment = new_payment(payment_method=PaymentMethod.REDIRECT_WALLET, external_token="EC-1")
    with pytest.raises(InvalidState):
        payment.capture_redirect_credentials("EC-forged", "PAYER")
    assert payment.external_token == "EC-1"
    assert payment.external_payer_id is None
    assert payment.state == PaymentState.AWAITING_EXTERNAL_CREDENTIALS


def test_capture_redirect_credentials_without_checkout_is_rejected():
    payment = new_payment(payment_method=PaymentMethod.REDIRECT_WALLET)
    with pytest.raises(InvalidState):
        payment.capture_redirect_credentials("EC-1", "PAYER")
    assert payment.external_token is None


def test_begin_redirect_checkout_drops_stale_payer():
    payment = new_payment(payment_method=PaymentMethod.REDIRECT_WALLET,
                          external_token="EC-old", external_payer_id="PAYER")
    payment.begin_redirect_checkout("EC-new")
    assert payment.external_token == "EC-new"
    assert payment.external_payer_id is None
    assert payment.state == PaymentState.AWAITING_EXTERNAL_CREDENTIALS


def test_begin_redirect_checkout_requires_redirect_wallet():
    payment = new_payment(payment_method=PaymentMethod.CARD)
    with pytest.raises(InvalidState):
        payment.begin_redirect_checkout("EC-1")
    assert payment.external_token is None
