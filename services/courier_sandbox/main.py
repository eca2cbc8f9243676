"""Courier sandbox built with FastAPI.

Implements the quote, shipment and tracking endpoints the web app's
``HttpCourierClient`` calls. ``/sandbox/shipments/{n}/advance`` moves a
parcel one scan forward and, when ``EVENTS_URL`` is set, pushes the signed scan
to the web app's delivery events endpoint. ``SANDBOX_FAIL_SHIPMENTS=1`` makes
bookings answer 503 so courier failover can be exercised.
"""

import hashlib
import hmac
import json
import logging
import math
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import ShipmentsRepo, engine, init_db

API_KEY = os.getenv("SANDBOX_API_KEY", "")
EVENTS_URL = os.getenv("EVENTS_URL", "")
EVENTS_SECRET = os.getenv("DELIVERY_WEBHOOK_SECRET", "whsec_courier_sandbox")
SIGNATURE_HEADER = os.getenv("DELIVERY_SIGNATURE_HEADER", "X-Courier-Signature")
BASE_PRICE_CENTS = int(os.getenv("SANDBOX_BASE_PRICE_CENTS", "6500"))
PER_KG_CENTS = int(os.getenv("SANDBOX_PER_KG_CENTS", "1500"))

app = FastAPI(title="Courier Sandbox")

logger = logging.getLogger("courier_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
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


def _authorize(authorization: Optional[str]) -> None:
    if API_KEY and authorization != f"Bearer {API_KEY}":
        raise HTTPException(status_code=401, detail="INVALID_API_KEY")


def price_for(weight_kg: float, express: bool = False) -> int:
    """Whole-kilogram pricing; express costs 60% more."""
    cents = BASE_PRICE_CENTS + PER_KG_CENTS * max(1, math.ceil(weight_kg))
    return int(cents * 1.6) if express else cents


class Parcel(BaseModel):
    """Origin, destination and weight of a parcel.

    Attributes:
        origin: Seller pickup address.
        destination: Buyer delivery address.
        weight_kg: Declared weight, positive.
    """

    origin: Dict[str, Any]
    destination: Dict[str, Any]
    weight_kg: float = Field(gt=0, le=30)


class ShipmentRequest(Parcel):
    reference: str = Field(min_length=1, max_length=64)


class AdvanceRequest(BaseModel):
    location: str = ""


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/quotes")
def quotes(req: Parcel, authorization: Optional[str] = Header(default=None)):
    _authorize(authorization)
    return {
        "quotes": [
            {"service": "economy", "price_cents": price_for(req.weight_kg), "eta_days": 4},
            {"service": "express", "price_cents": price_for(req.weight_kg, express=True), "eta_days": 2},
        ]
    }


@app.post("/shipments")
def create_shipment(req: ShipmentRequest, authorization: Optional[str] = Header(default=None)):
    """Book a collection for the economy service.

    Raises:
        HTTPException: 503 while ``SANDBOX_FAIL_SHIPMENTS`` is set.
    """
    _authorize(authorization)
    if os.getenv("SANDBOX_FAIL_SHIPMENTS") == "1":
        raise HTTPException(status_code=503, detail="BOOKING_UNAVAILABLE")
    sh = ShipmentsRepo().book(
        reference=req.reference,
        origin=req.origin,
        destination=req.destination,
        weight_kg=req.weight_kg,
        price_cents=price_for(req.weight_kg),
    )
    pickup = datetime.now(timezone.utc) + timedelta(days=1)
    return {
        **sh,
        "eta": (pickup + timedelta(days=4)).date().isoformat(),
        "pickup_window": f"{pickup.date().isoformat()} 09:00 - 17:00",
    }


@app.get("/track/{tracking_number}")
def track(tracking_number: str, authorization: Optional[str] = Header(default=None)):
    _authorize(authorization)
    scans = ShipmentsRepo().scans(tracking_number)
    if scans is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return {"tracking_number": tracking_number, "events": scans}


def sign(raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of ``raw_body`` under the shared events secret."""
    return hmac.new(EVENTS_SECRET.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def push_event(scan: dict) -> bool:
    """POST a signed scan to ``EVENTS_URL``; False when unset or refused."""
    if not EVENTS_URL:
        return False
    raw = json.dumps(scan, separators=(",", ":")).encode("utf-8")
    try:
        resp = httpx.post(
            EVENTS_URL,
            content=raw,
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign(raw)},
            timeout=5.0,
        )
    except httpx.HTTPError as e:
        logger.warning("event push failed", extra={"tracking_number": scan.get("tracking_number"), "error": str(e)})
        return False
    return resp.status_code == 200


@app.post("/sandbox/shipments/{tracking_number}/advance")
def advance(tracking_number: str, req: AdvanceRequest):
    scan = ShipmentsRepo().advance(tracking_number, req.location)
    if scan is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return {"scan": scan, "pushed": push_event(scan)}


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
