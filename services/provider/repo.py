"""SQLAlchemy storage for the sandbox mobile-money provider.

One row per payment session, keyed by the merchant's ``order_id`` (the
storefront's transaction reference). Sessions settle lazily: the first
status read after ``SANDBOX_SETTLE_SECS`` decides the outcome from the
buyer's phone number.

The connection string comes from ``SANDBOX_DATABASE_URL`` (SQLite file by
default; an in-memory SQLite URL shares one connection across threads).
"""

import os
import time
import uuid
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import Float, Integer, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("SANDBOX_DATABASE_URL", "sqlite:///./sandbox.sqlite3")


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)

PENDING = "PENDING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


def settle_secs() -> float:
    return float(os.getenv("SANDBOX_SETTLE_SECS", "4"))


def outcome_for_phone(phone: str) -> str:
    """Phones ending ``0000`` fail, ``9999`` never settle, the rest complete."""
    if phone.endswith("0000"):
        return FAILED
    if phone.endswith("9999"):
        return PENDING
    return COMPLETED


class Base(DeclarativeBase):
    pass


class PaymentSession(Base):
    """A push-payment request as the provider sees it.

    Attributes:
        order_id: Merchant reference, unique per request.
        transid: Provider transaction id.
        status: PENDING, COMPLETED or FAILED.
        created_at: Epoch seconds, used for settlement.
    """

    __tablename__ = "payment_sessions"

    order_id = mapped_column(String(64), primary_key=True)
    transid = mapped_column(String(32), nullable=False)
    buyer_phone = mapped_column(String(16), nullable=False)
    buyer_email = mapped_column(String(254), nullable=True)
    amount = mapped_column(Integer, nullable=False)
    channel = mapped_column(String(16), nullable=True)
    webhook_url = mapped_column(String(512), nullable=True)
    status = mapped_column(String(16), nullable=False, default=PENDING)
    created_at = mapped_column(Float, nullable=False)


@contextmanager
def get_session():
    with Session(engine, expire_on_commit=False) as s:
        yield s


class SandboxRepo:
    """Create, settle and force payment sessions."""

    def create(
        self,
        *,
        order_id: str,
        buyer_phone: str,
        buyer_email: Optional[str],
        amount: int,
        channel: Optional[str],
        webhook_url: Optional[str],
    ) -> Optional[PaymentSession]:
        """Store a new session; None when ``order_id`` was already used."""
        row = PaymentSession(
            order_id=order_id,
            transid=uuid.uuid4().hex[:16].upper(),
            buyer_phone=buyer_phone,
            buyer_email=buyer_email,
            amount=amount,
            channel=channel,
            webhook_url=webhook_url,
            status=PENDING,
            created_at=time.time(),
        )
        with get_session() as s:
            try:
                s.add(row)
                s.commit()
            except IntegrityError:
                s.rollback()
                return None
            return row

    def get(self, order_id: str) -> Optional[PaymentSession]:
        with get_session() as s:
            return s.get(PaymentSession, order_id)

    def settle(self, order_id: str, now: Optional[float] = None) -> Optional[PaymentSession]:
        """Return the session, deciding its outcome once it is old enough."""
        now = time.time() if now is None else now
        with get_session() as s:
            row = s.execute(
                select(PaymentSession).where(PaymentSession.order_id == order_id).with_for_update()
            ).scalars().first()
            if row is None:
                return None
            if row.status == PENDING and now - row.created_at >= settle_secs():
                row.status = outcome_for_phone(row.buyer_phone)
                s.commit()
            return row

    def force(self, order_id: str, status: str) -> Optional[PaymentSession]:
        with get_session() as s:
            row = s.get(PaymentSession, order_id)
            if row is None:
                return None
            row.status = status
            s.commit()
            return row


def init_db() -> None:
    Base.metadata.create_all(engine)


init_db()
