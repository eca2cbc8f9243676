"""Payment gateway sandbox built with FastAPI.

Speaks the same envelope as the real gateway (``{"status", "message",
"data"}``) on the endpoints the web app's ``HttpPaymentClient`` calls, plus
``/sandbox/...`` endpoints that settle transactions and transfers and post
the matching signed webhook to ``WEBHOOK_URL``.
"""

import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import PaymentsRepo, engine, init_db

SECRET_KEY = os.getenv("SANDBOX_SECRET_KEY", "sk_test_sandbox")
PUBLIC_URL = os.getenv("SANDBOX_PUBLIC_URL", "http://localhost:9002").rstrip("/")
WEBHOOK_URL = os.getenv("WEBHOOK_URL", "")
SIGNATURE_HEADER = os.getenv("WEBHOOK_SIGNATURE_HEADER", "X-Signature")

app = FastAPI(title="Payment Sandbox")

Currency = constr(pattern=r"^[A-Z]{3}$")
Outcome = constr(pattern=r"^(success|failed)$")

logger = logging.getLogger("payment_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait up to 30s for the database to accept connections
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
    init_db()


def _ok(message: str, data: Dict[str, Any]) -> dict:
    return {"status": True, "message": message, "data": data}


def _refuse(code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=code, content={"status": False, "message": message})


def _authorize(authorization: Optional[str]) -> None:
    if authorization != f"Bearer {SECRET_KEY}":
        raise HTTPException(status_code=401, detail="Invalid key")


def sign(raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of ``raw_body`` under the sandbox secret key."""
    return hmac.new(SECRET_KEY.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def deliver_webhook(event: str, data: dict) -> bool:
    """POST a signed event to ``WEBHOOK_URL``; False when unset or refused."""
    if not WEBHOOK_URL:
        return False
    raw = json.dumps({"event": event, "data": data}, separators=(",", ":")).encode("utf-8")
    try:
        resp = httpx.post(
            WEBHOOK_URL,
            content=raw,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign(raw)},
            timeout=5.0,
        )
    except httpx.HTTPError as e:
        logger.warning("webhook delivery failed", extra={"event": event, "error": str(e)})
        return False
    logger.info("webhook delivered", extra={"event": event, "status": resp.status_code})
    return resp.status_code == 200


class InitializeRequest(BaseModel):
    """Body of ``POST /transaction/initialize``.

    Attributes:
        email: Payer e-mail.
        amount: Positive amount in minor units.
        currency: Three-letter ISO code.
        reference: Merchant reference; generated when omitted.
        callback_url: Redirect after payment.
        metadata: Free-form merchant data.
    """

    email: str = Field(min_length=3, max_length=254)
    amount: int = Field(gt=0)
    currency: Currency = "ZAR"
    reference: Optional[str] = Field(default=None, max_length=100)
    callback_url: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransferRequest(BaseModel):
    source: str = "balance"
    amount: int = Field(gt=0)
    recipient: str = Field(min_length=1, max_length=64)
    reference: str = Field(min_length=1, max_length=128)
    reason: str = ""


class RefundRequest(BaseModel):
    transaction: str = Field(min_length=1, max_length=100)
    amount: Optional[int] = Field(default=None, gt=0)


class SettleRequest(BaseModel):
    outcome: Outcome = "success"


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/transaction/initialize")
def initialize(req: InitializeRequest, authorization: Optional[str] = Header(default=None)):
    _authorize(authorization)
    reference = req.reference or f"sbx_{uuid.uuid4().hex}"
    tx = PaymentsRepo().open_transaction(
        reference=reference,
        email=req.email,
        amount=req.amount,
        currency=req.currency,
        callback_url=req.callback_url,
        meta=req.metadata,
    )
    if tx is None:
        return _refuse(400, "Duplicate Transaction Reference")
    return _ok(
        "Authorization URL created",
        {
            "authorization_url": f"{PUBLIC_URL}/pay/{tx['access_code']}",
            "access_code": tx["access_code"],
            "reference": reference,
        },
    )


@app.get("/transaction/verify/{reference}")
def verify(reference: str, authorization: Optional[str] = Header(default=None)):
    _authorize(authorization)
    tx = PaymentsRepo().get_transaction(reference)
    if tx is None:
        return _refuse(404, "Transaction reference not found")
    return _ok("Verification successful", tx)


@app.post("/transfer")
def transfer(req: TransferRequest, authorization: Optional[str] = Header(default=None)):
    _authorize(authorization)
    tr = PaymentsRepo().create_transfer(
        reference=req.reference, recipient=req.recipient, amount=req.amount, reason=req.reason
    )
    return _ok("Transfer has been queued", tr)


@app.post("/refund")
def refund(req: RefundRequest, authorization: Optional[str] = Header(default=None)):
    _authorize(authorization)
    repo = PaymentsRepo()
    tx = repo.get_transaction(req.transaction)
    if tx is None:
        return _refuse(404, "Transaction reference not found")
    if tx["status"] != "success":
        return _refuse(400, "Transaction has not been charged")
    amount = req.amount or tx["amount"]
    if repo.refunded_total(req.transaction) + amount > tx["amount"]:
        return _refuse(400, "Refund amount exceeds transaction amount")
    return _ok("Refund has been queued for processing", repo.create_refund(req.transaction, amount))


@app.post("/sandbox/transactions/{reference}/settle")
def settle_transaction(reference: str, req: SettleRequest):
    """Complete a pending payment as if the payer finished (or abandoned) the page."""
    tx = PaymentsRepo().settle_transaction(reference, req.outcome)
    if tx is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    event = "charge.success" if tx["status"] == "success" else "charge.failed"
    return {"transaction": tx, "webhook_delivered": deliver_webhook(event, tx)}


@app.post("/sandbox/transfers/{reference}/settle")
def settle_transfer(reference: str, req: SettleRequest):
    tr = PaymentsRepo().settle_transfer(reference, req.outcome)
    if tr is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    event = "transfer.success" if tr["status"] == "success" else "transfer.failed"
    return {"transfer": tr, "webhook_delivered": deliver_webhook(event, tr)}


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
