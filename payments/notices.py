"""User-facing notices, keyed by gateway and outcome so the UI can localize them."""
from dataclasses import dataclass
from typing import Optional

SUCCEEDED = "payment-succeeded.title"
FAILED = "payment-failed.title"
UNAVAILABLE = "payment-unavailable.title"
REDIRECT = "payment-redirect.title"
ALREADY_CHARGED = "payment-already-charged.title"
CANCELLED = "payment-cancel"

MESSAGES = {
    ("stripe", SUCCEEDED): "Your card payment was successful.",
    ("stripe", FAILED): "Your card could not be charged.",
    ("stripe", UNAVAILABLE): "We could not reach the card processor. Please try again.",
    ("paypal", SUCCEEDED): "Your PayPal payment was successful.",
    ("paypal", FAILED): "PayPal could not complete your payment.",
    ("paypal", UNAVAILABLE): "We could not reach PayPal. Please try again.",
    ("paypal", REDIRECT): "Redirecting you to PayPal.",
    ("paypal", CANCELLED): "Your PayPal payment was cancelled.",
    ("alipay", REDIRECT): "Redirecting you to Alipay.",
    ("alipay", FAILED): "Alipay could not start your payment.",
    ("alipay", UNAVAILABLE): "We could not reach Alipay. Please try again.",
}

DEFAULT_MESSAGES = {
    SUCCEEDED: "Your payment was successful.",
    FAILED: "Your payment failed.",
    UNAVAILABLE: "The payment provider is unavailable. Please try again.",
    REDIRECT: "Redirecting you to the payment provider.",
    ALREADY_CHARGED: "This payment has already been completed.",
    CANCELLED: "Your payment was cancelled.",
}


@dataclass(frozen=True)
class Notice:
    key: str
    message: str
    level: str = "notice"            # notice | alert
    reason: Optional[str] = None


def notice_for(gateway: str, outcome: str, reason: Optional[str] = None) -> Notice:
    message = MESSAGES.get((gateway, outcome), DEFAULT_MESSAGES[outcome])
    level = "notice" if outcome in (SUCCEEDED, REDIRECT, ALREADY_CHARGED) else "alert"
    return Notice(key=f"payments.{gateway}.{outcome}", message=message, level=level, reason=reason)
