"""SQLAlchemy persistence for the payment sandbox.

The sandbox mimics a hosted-payment gateway closely enough for end-to-end
runs of the web app: transactions are opened by ``/transaction/initialize``
and settled through a sandbox-only endpoint, transfers and refunds are
recorded as ``pending`` until completed the same way.

The connection string comes from ``DATABASE_URL``; by default a local SQLite
file so the sandbox runs without a database server.
"""

import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payment_sandbox.db")
engine = create_engine(DATABASE_URL, pool_pre_ping=True)


class Base(DeclarativeBase):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Transaction(Base):
    """A hosted payment session.

    Attributes:
        reference: Merchant reference, unique per session.
        email: Payer e-mail.
        amount: Amount in minor units.
        currency: ISO currency code.
        status: ``pending``, ``success`` or ``failed``.
        callback_url: Where the payer is redirected after paying.
        meta: Merchant metadata echoed back on verify and in webhooks.
    """

    __tablename__ = "transactions"

    reference = mapped_column(String(100), primary_key=True)
    access_code = mapped_column(String(32), nullable=False)
    email = mapped_column(String(254), nullable=False)
    amount = mapped_column(Integer, nullable=False)
    currency = mapped_column(String(3), nullable=False)
    status = mapped_column(String(16), nullable=False, default="pending")
    callback_url = mapped_column(String(500), nullable=False, default="")
    meta = mapped_column(JSON, nullable=False, default=dict)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Transfer(Base):
    __tablename__ = "transfers"

    reference = mapped_column(String(128), primary_key=True)
    transfer_code = mapped_column(String(32), nullable=False)
    recipient = mapped_column(String(64), nullable=False)
    amount = mapped_column(Integer, nullable=False)
    reason = mapped_column(String(255), nullable=False, default="")
    status = mapped_column(String(16), nullable=False, default="pending")
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Refund(Base):
    __tablename__ = "refunds"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction = mapped_column(String(100), nullable=False, index=True)
    amount = mapped_column(Integer, nullable=False)
    status = mapped_column(String(16), nullable=False, default="pending")
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


@contextmanager
def get_session():
    """Yield a session bound to the configured engine; closed on exit."""
    with Session(engine) as s:
        yield s


def init_db() -> None:
    Base.metadata.create_all(engine)


def transaction_dict(tx: Transaction) -> dict:
    return {
        "reference": tx.reference,
        "status": tx.status,
        "amount": tx.amount,
        "currency": tx.currency,
        "customer": {"email": tx.email},
        "metadata": tx.meta or {},
    }


class PaymentsRepo:
    """Repository for sandbox transactions, transfers and refunds."""

    def open_transaction(self, *, reference, email, amount, currency, callback_url, meta) -> Optional[dict]:
        """Create a pending transaction.

        Returns:
            dict | None: The stored transaction, or None when ``reference``
            was already used.
        """
        with get_session() as s:
            if s.get(Transaction, reference) is not None:
                return None
            tx = Transaction(
                reference=reference,
                access_code=uuid.uuid4().hex[:16],
                email=email,
                amount=amount,
                currency=currency,
                callback_url=callback_url or "",
                meta=meta or {},
            )
            s.add(tx)
            s.commit()
            return {**transaction_dict(tx), "access_code": tx.access_code}

    def get_transaction(self, reference: str) -> Optional[dict]:
        with get_session() as s:
            tx = s.get(Transaction, reference)
            return transaction_dict(tx) if tx else None

    def settle_transaction(self, reference: str, outcome: str) -> Optional[dict]:
        """Move a pending transaction to ``outcome``; settled ones are left alone."""
        with get_session() as s:
            tx = s.execute(
                select(Transaction).where(Transaction.reference == reference).with_for_update()
            ).scalars().first()
            if tx is None:
                return None
            if tx.status == "pending":
                tx.status = outcome
                s.commit()
            return transaction_dict(tx)

    def create_transfer(self, *, reference, recipient, amount, reason) -> dict:
        """Record a transfer; repeating a reference returns the first one."""
        with get_session() as s:
            tr = s.get(Transfer, reference)
            if tr is None:
                tr = Transfer(
                    reference=reference,
                    transfer_code=f"TRF_{uuid.uuid4().hex[:12]}",
                    recipient=recipient,
                    amount=amount,
                    reason=reason or "",
                )
                s.add(tr)
                s.commit()
            return {"reference": tr.reference, "transfer_code": tr.transfer_code, "amount": tr.amount, "status": tr.status}

    def settle_transfer(self, reference: str, outcome: str) -> Optional[dict]:
        with get_session() as s:
            tr = s.get(Transfer, reference)
            if tr is None:
                return None
            if tr.status == "pending":
                tr.status = outcome
                s.commit()
            return {"reference": tr.reference, "transfer_code": tr.transfer_code, "amount": tr.amount, "status": tr.status}

    def create_refund(self, transaction: str, amount: int) -> dict:
        with get_session() as s:
            rf = Refund(transaction=transaction, amount=amount, status="processed")
            s.add(rf)
            s.commit()
            return {"id": rf.id, "transaction": rf.transaction, "amount": rf.amount, "status": rf.status}

    def refunded_total(self, transaction: str) -> int:
        with get_session() as s:
            rows = s.execute(select(Refund.amount).where(Refund.transaction == transaction)).scalars().all()
            return sum(rows)


init_db()
