import os
from datetime import datetime
from functools import lru_cache
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from payments.alipay_service import AlipayGateway
from payments.auth import get_current_user_id
from payments.credits import SessionCreditApplier
from payments.database import SessionLocal
from payments.errors import InvalidState, PaymentNotFound
from payments.gateways import GatewayRegistry
from payments.models import Payment, PaymentMethod, PaymentState, User
from payments.orchestrator import ChargeOrchestrator, Outcome
from payments.paypal_service import PayPalGateway
from payments.stripe_service import StripeGateway

router = APIRouter()


class PaymentRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in minor units")
    currency: str = "USD"
    sessions_count: int = Field(1, gt=0)
    payment_method: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return v.upper()


class PaymentUpdate(BaseModel):
    payment_method: Optional[str] = None
    card_token: Optional[str] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount: int
    currency: str
    sessions_count: int
    payment_method: Optional[PaymentMethod]
    charged: bool
    state: PaymentState
    created_at: datetime
    charged_at: Optional[datetime] = None


@lru_cache()
def get_gateways() -> GatewayRegistry:
    gateways = [StripeGateway(), PayPalGateway(), AlipayGateway()]
    return {gateway.method: gateway for gateway in gateways}


def close_gateways() -> None:
    """Release the HTTP clients held by the shared registry."""
    if get_gateways.cache_info().currsize == 0:
        return
    for gateway in get_gateways().values():
        close = getattr(gateway, "close", None)
        if close is not None:
            close()
    get_gateways.cache_clear()


def _serialize(payment: Payment) -> dict:
    return PaymentOut.model_validate(payment).model_dump(mode="json")


def _find_payment(db, payment_id: str, user_id: str) -> Payment:
    payment = db.query(Payment).filter_by(id=payment_id, user_id=user_id).first()
    if payment is None:
        raise PaymentNotFound(payment_id)
    return payment


@router.get("/payments")
def list_payments(user_id: str = Depends(get_current_user_id)):
    db = SessionLocal()
    try:
        payments = (
            db.query(Payment)
            .filter_by(user_id=user_id, charged=True)
            .order_by(Payment.created_at.desc())
            .all()
        )
        return [_serialize(p) for p in payments]
    finally:
        db.close()


@router.post("/payments", status_code=201)
def create_payment_api(
    request: PaymentRequest,
    user_id: str = Depends(get_current_user_id)
):
    db = SessionLocal()
    try:
        if db.get(User, user_id) is None:
            raise HTTPException(status_code=401, detail="Unknown user")

        payment = Payment(
            user_id=user_id,
            amount=request.amount,
            currency=request.currency,
            sessions_count=request.sessions_count,
            charged=False,
        )
        if request.payment_method is not None:
            payment.set_method(request.payment_method)

        db.add(payment)
        db.commit()
        db.refresh(payment)
        return _serialize(payment)
    finally:
        db.close()


@router.get("/payments/redirect_return")
def redirect_return(
    request: Request,
    payment_id: str,
    token: str,
    gateways: GatewayRegistry = Depends(get_gateways),
):
    # reached through PayPal's browser redirect, so there is no bearer token;
    # the stored checkout token authorizes the call. PayPal appends ``PayerID``
    payer_id = request.query_params.get("PayerID") or request.query_params.get("payer_id")
    if not payer_id:
        raise InvalidState("PayerID is required")

    db = SessionLocal()
    try:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        ChargeOrchestrator(db, gateways, SessionCreditApplier()).capture_return(payment, token, payer_id)
    finally:
        db.close()
    return RedirectResponse(url=f"/payments/{payment_id}", status_code=303)


@router.get("/payments/redirect_cancel")
def redirect_cancel(
    payment_id: Optional[str] = None,
    gateways: GatewayRegistry = Depends(get_gateways),
):
    db = SessionLocal()
    try:
        notice = ChargeOrchestrator(db, gateways, SessionCreditApplier()).cancel(payment_id)
    finally:
        db.close()
    new_payment_url = os.getenv("NEW_PAYMENT_URL", "/payments/new")
    return RedirectResponse(url=f"{new_payment_url}?{urlencode({'alert': notice.key})}", status_code=303)


@router.get("/payments/{payment_id}")
def show_payment(payment_id: str, user_id: str = Depends(get_current_user_id)):
    db = SessionLocal()
    try:
        return _serialize(_find_payment(db, payment_id, user_id))
    finally:
        db.close()


@router.patch("/payments/{payment_id}")
def update_payment(
    payment_id: str,
    update: PaymentUpdate,
    user_id: str = Depends(get_current_user_id),
    gateways: GatewayRegistry = Depends(get_gateways),
):
    db = SessionLocal()
    try:
        payment = _find_payment(db, payment_id, user_id)
        orchestrator = ChargeOrchestrator(db, gateways, SessionCreditApplier())
        result = orchestrator.advance(payment, method=update.payment_method, card_token=update.card_token)

        status_code = 200
        if result.outcome == Outcome.REJECTED:
            status_code = 503 if result.retryable else 402

        body = {
            "payment": _serialize(payment),
            "outcome": result.outcome.value,
            "notice": {
                "key": result.notice.key,
                "message": result.notice.message,
                "level": result.notice.level,
                "reason": result.notice.reason,
            },
            "redirect_url": result.redirect_url,
        }
        return JSONResponse(status_code=status_code, content=body)
    finally:
        db.close()
