"""Alipay direct pay with asynchronous trade notifications.

Alipay never settles inside the user's request. The payer is sent to a signed
checkout URL and Alipay later POSTs a notification to ``notify_url``. The
notification is only trusted after ``AlipayNotificationVerifier`` confirms it.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlencode

import httpx
import structlog

from payments.config import AlipayConfig, public_url
from payments.errors import VerificationFailed
from payments.gateways import (
    ChargeRequest,
    ChargeResult,
    RedirectRequired,
    major_units,
)
from payments.models import Payment, PaymentMethod

logger = structlog.get_logger(__name__)

FINALIZED_STATUSES = frozenset({"TRADE_FINISHED", "TRADE_SUCCESS"})


def sign_params(params: Mapping[str, str], key: str) -> str:
    """MD5 signature over every non-empty parameter except ``sign``/``sign_type``."""
    pairs = sorted(
        (k, str(v)) for k, v in params.items()
        if k not in ("sign", "sign_type") and v not in (None, "")
    )
    query = "&".join(f"{k}={v}" for k, v in pairs)
    return hashlib.md5((query + key).encode("utf-8")).hexdigest()


class AlipayNotificationVerifier:
    def __init__(self, config: AlipayConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self.client = client or httpx.Client(timeout=None)

    def close(self) -> None:
        self.client.close()

    def verify(self, params: Mapping[str, str]) -> bool:
        try:
            self._check_signature(params)
            self._check_notify_id(params)
        except VerificationFailed as e:
            logger.warning("alipay_notification_rejected", reason=str(e),
                           out_trade_no=params.get("out_trade_no"))
            return False
        except httpx.HTTPError as e:
            logger.warning("alipay_notify_verify_unreachable", error=str(e),
                           out_trade_no=params.get("out_trade_no"))
            return False
        except Exception:
            # malformed input must still be acknowledged upstream
            logger.exception("alipay_notification_unverifiable",
                             out_trade_no=params.get("out_trade_no"))
            return False
        return True

    def _check_signature(self, params):
        sign = params.get("sign")
        if not sign:
            raise VerificationFailed("missing sign")
        if params.get("sign_type", "MD5").upper() != "MD5":
            raise VerificationFailed(f"unsupported sign_type {params.get('sign_type')}")
        expected = sign_params(params, self.config.key)
        if not hmac.compare_digest(expected.encode("ascii"), str(sign).lower().encode("utf-8")):
            raise VerificationFailed("signature mismatch")

    def _check_notify_id(self, params):
        notify_id = params.get("notify_id")
        if not notify_id:
            raise VerificationFailed("missing notify_id")
        response = self.client.get(
            self.config.gateway_url,
            params={"service": "notify_verify", "partner": self.config.pid, "notify_id": notify_id},
        )
        response.raise_for_status()
        if response.text.strip() != "true":
            raise VerificationFailed(f"notify_verify answered {response.text.strip()!r}")


@dataclass(frozen=True)
class Notification:
    payment_id: str
    trade_status: str
    notify_id: Optional[str]
    trade_no: Optional[str]
    total_fee: Optional[str]
    currency: Optional[str]

    @property
    def finalized(self) -> bool:
        return self.trade_status in FINALIZED_STATUSES


class AlipayGateway:
    name = "alipay"
    method = PaymentMethod.ASYNC_WALLET

    def __init__(self, config: Optional[AlipayConfig] = None,
                 verifier: Optional[AlipayNotificationVerifier] = None):
        self.config = config or AlipayConfig.from_env()
        self.verifier = verifier or AlipayNotificationVerifier(self.config)

    def close(self) -> None:
        self.verifier.close()

    def attempt_charge(self, payment: Payment, request: ChargeRequest) -> ChargeResult:
        # settlement only ever arrives through the notification
        params = {
            "service": self.config.service,
            "partner": self.config.pid,
            "seller_email": self.config.seller_email,
            "_input_charset": "utf-8",
            "payment_type": "1",
            "out_trade_no": payment.id,
            "subject": f"{payment.sessions_count} session(s)",
            "total_fee": major_units(payment.amount, payment.currency),
            "currency": payment.currency,
            "notify_url": public_url("/payments/async_notify"),
            "return_url": public_url(f"/payments/{payment.id}"),
        }
        params["sign"] = sign_params(params, self.config.key)
        params["sign_type"] = "MD5"
        logger.info("alipay_checkout_started", payment_id=payment.id)
        return RedirectRequired(f"{self.config.gateway_url}?{urlencode(params)}")

    def parse_notification(self, params: Mapping[str, str]) -> Optional[Notification]:
        if not self.verifier.verify(params):
            return None
        payment_id = params.get("out_trade_no")
        if not payment_id:
            logger.warning("alipay_notification_without_trade_no", notify_id=params.get("notify_id"))
            return None
        return Notification(
            payment_id=payment_id,
            trade_status=params.get("trade_status", ""),
            notify_id=params.get("notify_id"),
            trade_no=params.get("trade_no"),
            total_fee=params.get("total_fee"),
            currency=params.get("currency"),
        )
