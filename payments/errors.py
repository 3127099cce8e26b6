"""Exceptions raised by the payment core.

``InvalidMethod``, ``InvalidState`` and ``PaymentNotFound`` reach the HTTP
layer and become 4xx responses. The gateway and verification errors never
leave the core: adapters turn them into ``Rejected`` results and the
webhook path turns them into a plain acknowledgment.
"""


class PaymentError(Exception):
    """Base class for payment errors."""


class InvalidMethod(PaymentError):
    def __init__(self, method):
        super().__init__(f"Unsupported payment method: {method!r}")
        self.method = method


class InvalidState(PaymentError):
    pass


class PaymentNotFound(PaymentError):
    def __init__(self, payment_id):
        super().__init__(f"Payment {payment_id} not found")
        self.payment_id = payment_id


class GatewayError(PaymentError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class GatewayRejected(GatewayError):
    """The remote gateway declined the request."""


class GatewayUnavailable(GatewayError):
    """The gateway could not be reached; the outcome of the call is unknown."""


class VerificationFailed(PaymentError):
    pass


class DuplicateCharge(PaymentError):
    def __init__(self, payment_id):
        super().__init__(f"Payment {payment_id} is already charged")
        self.payment_id = payment_id
