from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from payments.credits import SessionCreditApplier
from payments.database import Base, engine, SessionLocal
from payments.errors import InvalidMethod, InvalidState, PaymentNotFound
from payments.gateways import GatewayRegistry
from payments.logging_config import setup_logging
from payments.orchestrator import ChargeOrchestrator
from payments.routes import close_gateways, get_gateways, router

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_gateways()


app = FastAPI(title="Session Payments Service", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(InvalidMethod)
async def invalid_method_handler(request: Request, exc: InvalidMethod):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(InvalidState)
async def invalid_state_handler(request: Request, exc: InvalidState):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(PaymentNotFound)
async def payment_not_found_handler(request: Request, exc: PaymentNotFound):
    return JSONResponse(status_code=404, content={"detail": "Payment not found"})


def _process_notification(params: dict, gateways: GatewayRegistry) -> None:
    db = SessionLocal()
    try:
        ChargeOrchestrator(db, gateways, SessionCreditApplier()).handle_notification(params)
    finally:
        db.close()


@app.post("/payments/async_notify", response_class=PlainTextResponse)
async def alipay_notify(request: Request, gateways: GatewayRegistry = Depends(get_gateways)):
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}
    logger.info("alipay_notification_received", out_trade_no=params.get("out_trade_no"),
                trade_status=params.get("trade_status"))

    await run_in_threadpool(_process_notification, params, gateways)

    # Alipay resends until it reads exactly "success"
    return PlainTextResponse("success")
