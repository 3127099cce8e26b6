import os

import stripe
import structlog

from payments.errors import GatewayRejected, GatewayUnavailable, InvalidState
from payments.gateways import ChargeRequest, ChargeResult, Charged, Rejected
from payments.models import Payment, PaymentMethod

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

logger = structlog.get_logger(__name__)


def create_charge(amount: int, currency: str, token: str, idempotency_key: str, **metadata):
    try:
        return stripe.Charge.create(
            amount=amount,
            currency=currency.lower(),
            source=token,
            metadata=metadata,
            idempotency_key=idempotency_key
        )
    except (stripe.CardError, stripe.InvalidRequestError) as e:
        raise GatewayRejected(e.user_message or str(e)) from e
    except (
        stripe.APIConnectionError,
        stripe.RateLimitError,
        stripe.APIError,
    ) as e:
        raise GatewayUnavailable(str(e)) from e
    except stripe.StripeError as e:
        # auth / permission problems: our side is misconfigured, nothing was charged
        raise GatewayRejected(str(e)) from e


def charge_idempotency_key(payment: Payment, request: ChargeRequest) -> str:
    # a retry with the same card replays; a different card is a new attempt
    return f"payment-{payment.id}-{request.card_token}"


class StripeGateway:
    name = "stripe"
    method = PaymentMethod.CARD

    def attempt_charge(self, payment: Payment, request: ChargeRequest) -> ChargeResult:
        if not request.card_token:
            raise InvalidState("A card token is required to pay by card")

        try:
            charge = create_charge(
                payment.amount,
                payment.currency,
                request.card_token,
                idempotency_key=charge_idempotency_key(payment, request),
                payment_id=payment.id,
                user_id=payment.user_id,
            )
        except GatewayUnavailable as e:
            logger.warning("stripe_unavailable", payment_id=payment.id, reason=e.reason)
            return Rejected(e.reason, retryable=True)
        except GatewayRejected as e:
            logger.info("stripe_charge_declined", payment_id=payment.id, reason=e.reason)
            return Rejected(e.reason)

        if not charge.paid:
            reason = getattr(charge, "failure_message", None) or "Card was not charged"
            logger.info("stripe_charge_unpaid", payment_id=payment.id, charge_id=charge.id)
            return Rejected(reason)

        logger.info("stripe_charge_succeeded", payment_id=payment.id, charge_id=charge.id)
        return Charged(reference=charge.id)
