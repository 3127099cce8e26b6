"""PayPal Express Checkout over the classic NVP API.

The flow has two legs. ``SetExpressCheckout`` returns a token and the payer
is sent to PayPal with it. PayPal redirects back to the return URL with
``token`` and ``PayerID``. The token must match the one issued for the
payment; the payer id is then stored, and a later
explicit confirmation calls ``DoExpressCheckoutPayment`` to collect the
money.
"""
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlencode

import httpx
import structlog

from payments.config import PayPalConfig, public_url
from payments.errors import GatewayRejected, GatewayUnavailable
from payments.gateways import (
    ChargeRequest,
    ChargeResult,
    Charged,
    RedirectRequired,
    Rejected,
    major_units,
)
from payments.models import Payment, PaymentMethod

logger = structlog.get_logger(__name__)

SUCCESS_ACKS = ("Success", "SuccessWithWarning")


class PayPalClient:
    def __init__(self, config: PayPalConfig, client: Optional[httpx.Client] = None):
        self.config = config
        # no timeout here: callers own request deadlines
        self.client = client or httpx.Client(timeout=None)

    def close(self) -> None:
        self.client.close()

    def call(self, method: str, **fields) -> Dict[str, str]:
        data = {
            "METHOD": method,
            "VERSION": self.config.version,
            "USER": self.config.user,
            "PWD": self.config.password,
            "SIGNATURE": self.config.signature,
            **fields,
        }
        try:
            response = self.client.post(self.config.nvp_url, data=data)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"PayPal {method} failed: {e}") from e

        reply = dict(parse_qsl(response.text))
        if reply.get("ACK") not in SUCCESS_ACKS:
            reason = (
                reply.get("L_LONGMESSAGE0")
                or reply.get("L_SHORTMESSAGE0")
                or f"PayPal {method} was not acknowledged"
            )
            raise GatewayRejected(reason)
        return reply

    def set_express_checkout(self, payment: Payment) -> str:
        reply = self.call(
            "SetExpressCheckout",
            PAYMENTREQUEST_0_AMT=major_units(payment.amount, payment.currency),
            PAYMENTREQUEST_0_CURRENCYCODE=payment.currency,
            PAYMENTREQUEST_0_PAYMENTACTION="Sale",
            PAYMENTREQUEST_0_INVNUM=payment.id,
            RETURNURL=public_url("/payments/redirect_return?" + urlencode({"payment_id": payment.id})),
            CANCELURL=public_url("/payments/redirect_cancel?" + urlencode({"payment_id": payment.id})),
            NOSHIPPING="1",
        )
        return reply["TOKEN"]

    def do_express_checkout_payment(self, payment: Payment) -> Dict[str, str]:
        return self.call(
            "DoExpressCheckoutPayment",
            TOKEN=payment.external_token,
            PAYERID=payment.external_payer_id,
            PAYMENTREQUEST_0_AMT=major_units(payment.amount, payment.currency),
            PAYMENTREQUEST_0_CURRENCYCODE=payment.currency,
            PAYMENTREQUEST_0_PAYMENTACTION="Sale",
        )

    def checkout_url(self, token: str) -> str:
        return f"{self.config.checkout_url}?cmd=_express-checkout&token={token}"


class PayPalGateway:
    name = "paypal"
    method = PaymentMethod.REDIRECT_WALLET

    def __init__(self, client: Optional[PayPalClient] = None):
        self.client = client or PayPalClient(PayPalConfig.from_env())

    def close(self) -> None:
        self.client.close()

    def attempt_charge(self, payment: Payment, request: ChargeRequest) -> ChargeResult:
        try:
            if not payment.has_redirect_credentials:
                token = self.client.set_express_checkout(payment)
                logger.info("paypal_checkout_started", payment_id=payment.id)
                return RedirectRequired(self.client.checkout_url(token), checkout_token=token)

            reply = self.client.do_express_checkout_payment(payment)
        except GatewayUnavailable as e:
            logger.warning("paypal_unavailable", payment_id=payment.id, reason=e.reason)
            return Rejected(e.reason, retryable=True)
        except GatewayRejected as e:
            logger.info("paypal_rejected", payment_id=payment.id, reason=e.reason)
            return Rejected(e.reason)

        transaction_id = reply.get("PAYMENTINFO_0_TRANSACTIONID")
        logger.info("paypal_payment_executed", payment_id=payment.id, transaction_id=transaction_id)
        return Charged(reference=transaction_id)
