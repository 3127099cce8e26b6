from typing import Protocol

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from payments.errors import InvalidState
from payments.models import Payment, User

logger = structlog.get_logger(__name__)


class AccountCreditApplier(Protocol):
    """Grants the account-side benefit of a charged payment.

    Called inside the charge transaction; must not commit.
    """

    def apply(self, db: Session, payment: Payment) -> None: ...


class SessionCreditApplier:
    """Adds the payment's sessions to the owner's ``sessions_count``."""

    def apply(self, db: Session, payment: Payment) -> None:
        result = db.execute(
            update(User)
            .where(User.id == payment.user_id)
            .values(sessions_count=User.sessions_count + payment.sessions_count)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidState(f"User {payment.user_id} of payment {payment.id} does not exist")

        user = db.get(User, payment.user_id)
        if user is not None:
            db.refresh(user, attribute_names=["sessions_count"])
        logger.info(
            "sessions_credited",
            payment_id=payment.id,
            user_id=payment.user_id,
            sessions=payment.sessions_count,
        )
