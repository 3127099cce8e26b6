import enum
import hmac
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    inspect,
    update,
)
from sqlalchemy.orm import object_session, relationship
from sqlalchemy.orm.attributes import set_committed_value

from payments.database import Base
from payments.errors import InvalidMethod, InvalidState


def _utcnow():
    return datetime.now(timezone.utc)


def _new_id():
    return uuid.uuid4().hex


class PaymentMethod(str, enum.Enum):
    CARD = "card"                        # Stripe
    REDIRECT_WALLET = "redirect_wallet"  # PayPal Express Checkout
    ASYNC_WALLET = "async_wallet"        # Alipay

    @classmethod
    def parse(cls, value) -> "PaymentMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidMethod(value) from None


class PaymentState(str, enum.Enum):
    CREATED = "created"
    METHOD_SELECTED = "method_selected"
    AWAITING_EXTERNAL_CREDENTIALS = "awaiting_external_credentials"
    CHARGED = "charged"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=True)
    sessions_count = Column(Integer, nullable=False, default=0)

    payments = relationship("Payment", back_populates="user")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_new_id)   # also Alipay out_trade_no
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)                 # minor units
    currency = Column(String(3), nullable=False)
    sessions_count = Column(Integer, nullable=False, default=1)
    payment_method = Column(
        Enum(
            PaymentMethod,
            native_enum=False,
            length=32,
            values_callable=lambda methods: [m.value for m in methods],
        ),
        nullable=True,
    )
    charged = Column(Boolean, nullable=False, default=False)
    charged_at = Column(DateTime(timezone=True), nullable=True)
    external_token = Column(String, nullable=True)           # PayPal token
    external_payer_id = Column(String, nullable=True)        # PayPal PayerID
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user = relationship("User", back_populates="payments")
    notifications = relationship("PaymentNotification", back_populates="payment")

    def __repr__(self):
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, amount={self.amount} "
            f"{self.currency}, method={self.payment_method}, charged={self.charged})>"
        )

    @property
    def state(self) -> PaymentState:
        if self.charged:
            return PaymentState.CHARGED
        if self.payment_method is None:
            return PaymentState.CREATED
        if self.payment_method == PaymentMethod.REDIRECT_WALLET and not self.has_redirect_credentials:
            return PaymentState.AWAITING_EXTERNAL_CREDENTIALS
        return PaymentState.METHOD_SELECTED

    @property
    def has_redirect_credentials(self) -> bool:
        return bool(self.external_token and self.external_payer_id)

    def set_method(self, method) -> None:
        method = PaymentMethod.parse(method)
        if self.payment_method == method:
            return
        if self.charged:
            raise InvalidState(f"Payment {self.id} is already charged")
        if self.payment_method is not None:
            raise InvalidState(
                f"Payment {self.id} already uses {self.payment_method.value}, "
                f"cannot switch to {method.value}"
            )
        self.payment_method = method

    def begin_redirect_checkout(self, token: str) -> None:
        """Remember the checkout token PayPal issued for this payment.

        A fresh checkout discards any payer id captured for an older token.
        """
        if self.payment_method != PaymentMethod.REDIRECT_WALLET:
            raise InvalidState(f"Payment {self.id} is not a redirect wallet payment")
        if self.charged:
            raise InvalidState(f"Payment {self.id} is already charged")
        self.external_token = token
        self.external_payer_id = None

    def capture_redirect_credentials(self, token: str, payer_id: str) -> None:
        if self.payment_method != PaymentMethod.REDIRECT_WALLET:
            raise InvalidState(f"Payment {self.id} is not a redirect wallet payment")
        if self.charged:
            raise InvalidState(f"Payment {self.id} is already charged")
        if not token or not payer_id:
            raise InvalidState("Both token and payer id are required")
        if not self.external_token or not hmac.compare_digest(
            self.external_token.encode("utf-8"), token.encode("utf-8")
        ):
            raise InvalidState(f"Token does not match the checkout issued for payment {self.id}")
        self.external_payer_id = payer_id

    def mark_charged(self) -> bool:
        """Flip ``charged`` to true.

        Returns True only for the caller that performed the transition. For a
        persisted payment this is a compare-and-set on the row, so of several
        sessions racing on the same payment exactly one gets True.
        """
        if self.charged:
            return False

        now = _utcnow()
        session = object_session(self)
        if session is None or not inspect(self).persistent:
            self.charged = True
            self.charged_at = now
            return True

        result = session.execute(
            update(Payment)
            .where(Payment.id == self.id, Payment.charged.is_(False))
            .values(charged=True, charged_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.refresh(self, attribute_names=["charged", "charged_at"])
            return False

        set_committed_value(self, "charged", True)
        set_committed_value(self, "charged_at", now)
        return True


class PaymentNotification(Base):
    """Verified async notifications, kept as an audit trail."""

    __tablename__ = "payment_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String, ForeignKey("payments.id"), nullable=False, index=True)
    notify_id = Column(String, nullable=True, index=True)
    trade_no = Column(String, nullable=True)
    trade_status = Column(String, nullable=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    payment = relationship("Payment", back_populates="notifications")
