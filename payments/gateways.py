"""Gateway adapter contract shared by the card and wallet integrations.

Every adapter exposes ``attempt_charge(payment, request)`` and answers with
one of three results:

* ``Charged`` - the gateway collected the money.
* ``RedirectRequired`` - the payer has to visit ``redirect_url`` first.
  ``checkout_token`` is kept on the payment when the gateway hands one out.
* ``Rejected`` - nothing was collected. ``retryable`` is set when the
  gateway could not be reached, in which case the caller may try again.

The orchestrator picks an adapter from the registry by the payment's
method tag.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Protocol, Union

from payments.models import Payment, PaymentMethod

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def major_units(amount: int, currency: str) -> str:
    """Render an amount stored in minor units as a decimal string ("18.94")."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount)
    return str((Decimal(amount) / 100).quantize(Decimal("0.01")))


@dataclass(frozen=True)
class ChargeRequest:
    card_token: Optional[str] = None


@dataclass(frozen=True)
class Charged:
    reference: Optional[str] = None


@dataclass(frozen=True)
class RedirectRequired:
    redirect_url: str
    checkout_token: Optional[str] = None


@dataclass(frozen=True)
class Rejected:
    reason: str
    retryable: bool = False


ChargeResult = Union[Charged, RedirectRequired, Rejected]


class ChargeGateway(Protocol):
    name: str
    method: PaymentMethod

    def attempt_charge(self, payment: Payment, request: ChargeRequest) -> ChargeResult: ...


GatewayRegistry = Dict[PaymentMethod, ChargeGateway]
