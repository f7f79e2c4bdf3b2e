"""Payments service API built with FastAPI.

Exposes a small payment-intent flow: create (optionally idempotent),
update while unsettled, and confirm with a payment method. Declines are a
business outcome reported with 402 and the processor's message.
"""

import logging
import time
import uuid
from typing import Annotated, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import SUCCEEDED, IdempotencyConflict, IntentNotUpdatable, PaymentsRepo, engine

app = FastAPI(title="Payments Service")

Currency = constr(pattern=r"^[A-Z]{3}$")

logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait for the database to accept connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


class IntentRequest(BaseModel):
    """Create/update body.

    Attributes:
        amount_cents: Positive amount in minor units.
        currency: Three-letter ISO currency code.
        metadata: Free-form string metadata (attempt id, order summary).
    """

    amount_cents: int = Field(gt=0)
    currency: Currency
    metadata: dict[str, str] = Field(default_factory=dict)


class IntentResponse(BaseModel):
    intent_id: str
    client_secret: str
    amount_cents: int
    currency: str
    status: str


class ConfirmRequest(BaseModel):
    client_secret: str = Field(min_length=1, max_length=80)
    payment_method: str = Field(min_length=1, max_length=64)


class ConfirmResponse(BaseModel):
    status: str
    message: str = ""


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/intents", response_model=IntentResponse)
def create_intent(
    req: IntentRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a payment intent.

    A replay with the same ``Idempotency-Key`` and body returns the original
    intent; the same key with a different body is a 409.
    """
    try:
        return PaymentsRepo().create_intent(req.amount_cents, req.currency, req.metadata, idempotency_key)
    except IdempotencyConflict:
        raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")


# declared before /intents/{intent_id} so "confirm" is not taken for an id
@app.post("/intents/confirm", response_model=ConfirmResponse)
def confirm_intent(req: ConfirmRequest, request: Request):
    result = PaymentsRepo().confirm(req.client_secret, req.payment_method)
    if result is None:
        raise HTTPException(status_code=404, detail="INTENT_NOT_FOUND")
    status, message = result
    logger.info(
        "intent confirmation",
        extra={"request_id": getattr(request.state, "request_id", "-"), "status": status},
    )
    if status != SUCCEEDED:
        return JSONResponse(status_code=402, content={"status": status, "message": message})
    return ConfirmResponse(status=status)


@app.post("/intents/{intent_id}", response_model=IntentResponse)
def update_intent(intent_id: str, req: IntentRequest):
    try:
        intent = PaymentsRepo().update_intent(intent_id, req.amount_cents, req.currency, req.metadata)
    except IntentNotUpdatable:
        raise HTTPException(status_code=409, detail="INTENT_ALREADY_SUCCEEDED")
    if intent is None:
        raise HTTPException(status_code=404, detail="INTENT_NOT_FOUND")
    return intent


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
