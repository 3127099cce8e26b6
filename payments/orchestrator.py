"""Drives a payment from method selection to the charged state.

Three inputs can move a payment forward:

* the owner's update request (card charge, PayPal initiation/confirmation,
  Alipay initiation),
* the PayPal return callback, which only records the payer once the
  returned token matches the one issued at checkout,
* Alipay's server-to-server notification.

Whatever the input, money collected by a gateway ends in ``apply_charge``,
which flips ``charged`` and credits the account in one transaction.
"""
import enum
from dataclasses import dataclass
from typing import Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from payments import notices
from payments.alipay_service import AlipayGateway
from payments.credits import AccountCreditApplier
from payments.errors import DuplicateCharge, InvalidState
from payments.gateways import ChargeRequest, Charged, GatewayRegistry, RedirectRequired, Rejected
from payments.models import Payment, PaymentMethod, PaymentNotification
from payments.notices import Notice

logger = structlog.get_logger(__name__)


class Outcome(str, enum.Enum):
    CHARGED = "charged"
    ALREADY_CHARGED = "already_charged"
    REDIRECT = "redirect"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ChargeOutcome:
    outcome: Outcome
    notice: Notice
    redirect_url: Optional[str] = None
    retryable: bool = False


class ChargeOrchestrator:
    def __init__(self, db: Session, gateways: GatewayRegistry, credit_applier: AccountCreditApplier):
        self.db = db
        self.gateways = gateways
        self.credit_applier = credit_applier

    def advance(self, payment: Payment, method=None, card_token: Optional[str] = None) -> ChargeOutcome:
        """Move a payment forward on behalf of its owner."""
        if payment.charged:
            gateway = self._gateway_name(payment.payment_method)
            logger.info("payment_already_charged", payment_id=payment.id)
            return ChargeOutcome(Outcome.ALREADY_CHARGED, notices.notice_for(gateway, notices.ALREADY_CHARGED))

        try:
            if method is not None:
                payment.set_method(method)
            if payment.payment_method is None:
                raise InvalidState("A payment method must be selected first")

            gateway = self.gateways[payment.payment_method]
            result = gateway.attempt_charge(payment, ChargeRequest(card_token=card_token))
        except Exception:
            self.db.rollback()
            raise

        if isinstance(result, Rejected):
            self.db.rollback()
            outcome = notices.UNAVAILABLE if result.retryable else notices.FAILED
            logger.info(
                "payment_rejected",
                payment_id=payment.id,
                gateway=gateway.name,
                reason=result.reason,
                retryable=result.retryable,
            )
            return ChargeOutcome(
                Outcome.REJECTED,
                notices.notice_for(gateway.name, outcome, reason=result.reason),
                retryable=result.retryable,
            )

        if isinstance(result, RedirectRequired):
            if result.checkout_token:
                payment.begin_redirect_checkout(result.checkout_token)
            self.db.commit()
            logger.info("payment_redirect_required", payment_id=payment.id, gateway=gateway.name)
            return ChargeOutcome(
                Outcome.REDIRECT,
                notices.notice_for(gateway.name, notices.REDIRECT),
                redirect_url=result.redirect_url,
            )

        assert isinstance(result, Charged)
        self.apply_charge(payment)
        return ChargeOutcome(Outcome.CHARGED, notices.notice_for(gateway.name, notices.SUCCEEDED))

    def capture_return(self, payment: Payment, token: str, payer_id: str) -> None:
        """Record PayPal's return parameters. Never charges."""
        try:
            payment.capture_redirect_credentials(token, payer_id)
        except Exception:
            self.db.rollback()
            raise
        self.db.commit()
        logger.info("paypal_credentials_captured", payment_id=payment.id)

    def cancel(self, payment_id: Optional[str] = None) -> Notice:
        logger.info("paypal_checkout_cancelled", payment_id=payment_id)
        return notices.notice_for(self._gateway_name(PaymentMethod.REDIRECT_WALLET), notices.CANCELLED)

    def handle_notification(self, params: Mapping[str, str]) -> bool:
        """Process an Alipay notification. Returns True when it charged a payment.

        Unverified, unknown or unfinished notifications are dropped without
        raising; the caller acknowledges them all the same.
        """
        gateway: AlipayGateway = self.gateways[PaymentMethod.ASYNC_WALLET]
        notification = gateway.parse_notification(params)
        if notification is None:
            return False

        payment = self.db.get(Payment, notification.payment_id)
        if payment is None:
            logger.warning("notification_for_unknown_payment", payment_id=notification.payment_id)
            return False
        if payment.payment_method not in (None, PaymentMethod.ASYNC_WALLET):
            logger.warning(
                "notification_for_other_method",
                payment_id=payment.id,
                payment_method=payment.payment_method.value,
            )
            return False

        payment.set_method(PaymentMethod.ASYNC_WALLET)
        self.db.add(PaymentNotification(
            payment_id=payment.id,
            notify_id=notification.notify_id,
            trade_no=notification.trade_no,
            trade_status=notification.trade_status,
            payload=dict(params),
        ))

        if not notification.finalized:
            self.db.commit()
            logger.info(
                "notification_recorded",
                payment_id=payment.id,
                trade_status=notification.trade_status,
            )
            return False

        if notification.currency and notification.currency.upper() != payment.currency:
            logger.warning(
                "notification_currency_mismatch",
                payment_id=payment.id,
                expected=payment.currency,
                received=notification.currency,
            )
        return self.apply_charge(payment)

    def apply_charge(self, payment: Payment) -> bool:
        """Mark the payment charged and credit its owner, atomically.

        Returns False when another request got there first.
        """
        try:
            self._charge_and_credit(payment)
        except DuplicateCharge:
            # keep whatever else this request recorded, e.g. the notification
            self.db.commit()
            logger.info("duplicate_charge_ignored", payment_id=payment.id)
            return False
        except Exception:
            self.db.rollback()
            logger.exception("charge_application_failed", payment_id=payment.id)
            raise
        self.db.commit()
        logger.info(
            "payment_charged",
            payment_id=payment.id,
            user_id=payment.user_id,
            payment_method=payment.payment_method.value if payment.payment_method else None,
        )
        return True

    def _charge_and_credit(self, payment: Payment) -> None:
        if not payment.mark_charged():
            raise DuplicateCharge(payment.id)
        self.credit_applier.apply(self.db, payment)

    def _gateway_name(self, method: Optional[PaymentMethod]) -> str:
        gateway = self.gateways.get(method) if method is not None else None
        return gateway.name if gateway is not None else "default"
