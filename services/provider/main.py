"""Sandbox mobile-money provider built with FastAPI.

Emulates the gateway the storefront talks to, for local development and
end-to-end checks:

- ``POST /mobile_money_tanzania``: accept a push-payment request.
- ``GET /order-status?order_id=``: report the session status.
- ``POST /simulate/{order_id}``: force an outcome and deliver the webhook.
- ``GET /health``.

Every answer to a push request is HTTP 200 with a ``resultcode``; ``000``
means accepted.
"""

import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from typing import Annotated, Literal, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from pythonjsonlogger.json import JsonFormatter
from sqlalchemy import text

from repo import COMPLETED, SandboxRepo, engine

app = FastAPI(title="Sandbox Mobile Money Provider")

logger = logging.getLogger("sandbox_provider")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

RESULT_MESSAGES = {
    "000": "Request in progress. You will receive a callback shortly",
    "001": "Invalid API key",
    "002": "Missing or duplicate parameters",
    "003": "Invalid phone number format",
}


@app.on_event("startup")
def _startup_db():
    # Wait briefly until the DB accepts connections.
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


class PushRequest(BaseModel):
    """Push-payment request.

    Attributes:
        order_id: Merchant reference, unique per request.
        buyer_phone: Local Tanzanian number, ``0XXXXXXXXX``.
        amount: Whole currency units.
    """

    order_id: str = Field(min_length=1, max_length=64)
    buyer_name: str = ""
    buyer_phone: str
    buyer_email: Optional[str] = None
    amount: int = Field(gt=0)
    currency: str = "TZS"
    channel: Optional[str] = None
    webhook_url: Optional[str] = None


class SimulateRequest(BaseModel):
    status: Literal["COMPLETED", "FAILED"] = COMPLETED


def _result(code: str, **extra) -> dict:
    return {
        "status": "success" if code == "000" else "error",
        "resultcode": code,
        "message": RESULT_MESSAGES.get(code, "Error"),
        **extra,
    }


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def deliver_webhook(row, request_id: str = "-") -> bool:
    """POST the session outcome to the merchant's webhook; False on any failure."""
    if not row.webhook_url:
        return False
    body = json.dumps(
        {"order_id": row.order_id, "payment_status": row.status, "reference": row.transid, "transid": row.transid}
    ).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Request-ID": request_id}
    secret = os.getenv("SANDBOX_WEBHOOK_SECRET", "")
    if secret:
        headers["X-Webhook-Signature"] = sign(secret, body)
    try:
        resp = httpx.post(row.webhook_url, content=body, headers=headers, timeout=5.0)
    except httpx.HTTPError as e:
        logger.warning("webhook delivery failed", extra={"request_id": request_id, "error": str(e)})
        return False
    return resp.status_code < 400


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/mobile_money_tanzania")
def push_payment(
    req: PushRequest,
    request: Request,
    x_api_key: Annotated[Optional[str], Header(alias="x-api-key")] = None,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Accept a push-payment request.

    Result codes: ``001`` bad API key (when ``SANDBOX_API_KEY`` is set),
    ``003`` malformed phone, ``002`` reused ``order_id``. A repeat carrying
    ``Idempotency-Key`` equal to its ``order_id`` and the same phone and
    amount is a retried delivery: it gets the original ``000`` ack and no
    second session.
    """
    expected = os.getenv("SANDBOX_API_KEY", "")
    if expected and not hmac.compare_digest((x_api_key or "").encode(), expected.encode()):
        return _result("001")
    if not (len(req.buyer_phone) == 10 and req.buyer_phone.startswith("0") and req.buyer_phone.isdigit()):
        return _result("003")

    row = SandboxRepo().create(
        order_id=req.order_id,
        buyer_phone=req.buyer_phone,
        buyer_email=req.buyer_email,
        amount=req.amount,
        channel=req.channel,
        webhook_url=req.webhook_url,
    )
    if row is None:
        existing = SandboxRepo().get(req.order_id)
        if (
            existing is not None
            and idempotency_key == req.order_id
            and (existing.buyer_phone, existing.amount) == (req.buyer_phone, req.amount)
        ):
            logger.info(
                "push payment replayed",
                extra={"request_id": request.state.request_id, "order_id": existing.order_id},
            )
            return _result("000", order_id=existing.order_id, transaction_id=existing.transid)
        return _result("002")
    logger.info(
        "push payment accepted",
        extra={"request_id": request.state.request_id, "order_id": row.order_id, "channel": row.channel},
    )
    return _result("000", order_id=row.order_id, transaction_id=row.transid)


@app.get("/order-status")
def order_status(order_id: Annotated[str, Query(min_length=1)]):
    row = SandboxRepo().settle(order_id)
    if row is None:
        raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
    return {
        "reference": row.order_id,
        "resultcode": "000",
        "result": "SUCCESS",
        "data": [
            {
                "order_id": row.order_id,
                "payment_status": row.status,
                "amount": str(row.amount),
                "channel": row.channel,
                "transid": row.transid,
                "reference": row.transid,
            }
        ],
    }


@app.post("/simulate/{order_id}")
def simulate(order_id: str, request: Request, req: Optional[SimulateRequest] = None):
    """Force a session outcome and push the webhook, as the real gateway would."""
    status = (req or SimulateRequest()).status
    row = SandboxRepo().force(order_id, status)
    if row is None:
        raise HTTPException(status_code=404, detail="ORDER_NOT_FOUND")
    delivered = deliver_webhook(row, request.state.request_id)
    return {"ok": True, "order_id": order_id, "payment_status": row.status, "webhook_delivered": delivered}


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
