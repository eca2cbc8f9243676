"""SQLAlchemy persistence for the courier sandbox: shipments and their scans."""

import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./courier_sandbox.db")
engine = create_engine(DATABASE_URL, pool_pre_ping=True)

# scan sequence a parcel walks through, one step per advance
STATUS_FLOW = ["collected", "in_transit", "out_for_delivery", "delivered"]


class Base(DeclarativeBase):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Shipment(Base):
    """A booked collection.

    Attributes:
        tracking_number: Courier-issued tracking number.
        reference: Merchant reference (the order id); unique, so a retried
            booking returns the first shipment.
        price_cents: Quoted price charged for the shipment.
    """

    __tablename__ = "shipments"

    tracking_number = mapped_column(String(64), primary_key=True)
    reference = mapped_column(String(64), unique=True, nullable=False)
    origin = mapped_column(JSON, nullable=False, default=dict)
    destination = mapped_column(JSON, nullable=False, default=dict)
    weight_kg = mapped_column(Float, nullable=False)
    price_cents = mapped_column(Integer, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Scan(Base):
    __tablename__ = "scans"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    tracking_number = mapped_column(ForeignKey("shipments.tracking_number"), nullable=False, index=True)
    event_id = mapped_column(String(64), unique=True, nullable=False)
    status_code = mapped_column(String(32), nullable=False)
    location = mapped_column(String(100), nullable=False, default="")
    timestamp = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


def init_db() -> None:
    Base.metadata.create_all(engine)


def _shipment_dict(sh: Shipment) -> dict:
    return {
        "tracking_number": sh.tracking_number,
        "reference": sh.reference,
        "price_cents": sh.price_cents,
        "label_url": f"https://labels.sandbox.local/{sh.tracking_number}.pdf",
    }


def _scan_dict(sc: Scan) -> dict:
    return {
        "event_id": sc.event_id,
        "tracking_number": sc.tracking_number,
        "status_code": sc.status_code,
        "location": sc.location,
        "timestamp": sc.timestamp.isoformat(),
    }


class ShipmentsRepo:
    def book(self, *, reference, origin, destination, weight_kg, price_cents) -> dict:
        """Create a shipment for ``reference`` or return the existing one."""
        with get_session() as s:
            existing = s.execute(select(Shipment).where(Shipment.reference == reference)).scalars().first()
            if existing is not None:
                return _shipment_dict(existing)
            sh = Shipment(
                tracking_number=f"TRK{uuid.uuid4().hex[:10].upper()}",
                reference=reference,
                origin=origin,
                destination=destination,
                weight_kg=weight_kg,
                price_cents=price_cents,
            )
            s.add(sh)
            s.commit()
            return _shipment_dict(sh)

    def scans(self, tracking_number: str) -> Optional[List[dict]]:
        """Scans oldest first; None for an unknown tracking number."""
        with get_session() as s:
            if s.get(Shipment, tracking_number) is None:
                return None
            rows = s.execute(
                select(Scan).where(Scan.tracking_number == tracking_number).order_by(Scan.id)
            ).scalars().all()
            return [_scan_dict(r) for r in rows]

    def advance(self, tracking_number: str, location: str = "") -> Optional[dict]:
        """Append the next scan in ``STATUS_FLOW``.

        Returns:
            dict | None: The new scan, the last one when the parcel is
            already delivered, or None for an unknown tracking number.
        """
        with get_session() as s:
            if s.get(Shipment, tracking_number) is None:
                return None
            rows = s.execute(select(Scan).where(Scan.tracking_number == tracking_number)).scalars().all()
            if len(rows) >= len(STATUS_FLOW):
                return _scan_dict(rows[-1])
            sc = Scan(
                tracking_number=tracking_number,
                event_id=f"evt_{uuid.uuid4().hex[:16]}",
                status_code=STATUS_FLOW[len(rows)],
                location=location,
            )
            s.add(sc)
            s.commit()
            return _scan_dict(sc)


init_db()
