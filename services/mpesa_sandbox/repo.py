"""SQLAlchemy persistence for the M-Pesa sandbox.

Stores issued OAuth tokens and STK push requests so several uvicorn workers
share one view of pending payments. The connection URL comes from
``SANDBOX_DATABASE_URL`` (SQLite file by default); tables are created by
``init_db`` on application startup.
"""

import os
import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DATABASE_URL = os.getenv("SANDBOX_DATABASE_URL", "sqlite:///./mpesa_sandbox.db")
TOKEN_TTL = timedelta(seconds=3599)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessToken(Base):
    __tablename__ = "access_tokens"

    token = mapped_column(String(64), primary_key=True)
    consumer_key = mapped_column(String(128), nullable=False)
    expires_at = mapped_column(DateTime(timezone=True), nullable=False)


class StkRequest(Base):
    """One STK push as received by the sandbox.

    Attributes:
        checkout_request_id: Id returned to the caller and echoed in the
            callback; the join key on the merchant side.
        status: ``pending`` until settled, then ``completed`` or ``failed``.
        result_code: Daraja result code once settled (0 = success).
        receipt_number: M-Pesa receipt issued for successful payments.
    """

    __tablename__ = "stk_requests"

    checkout_request_id = mapped_column(String(64), primary_key=True)
    merchant_request_id = mapped_column(String(64), nullable=False)
    shortcode = mapped_column(String(16), nullable=False)
    phone = mapped_column(String(16), nullable=False)
    amount = mapped_column(Integer, nullable=False)
    account_reference = mapped_column(String(64), nullable=False)
    description = mapped_column(String(128), nullable=False, default="")
    callback_url = mapped_column(String(500), nullable=False)
    status = mapped_column(String(16), nullable=False, default="pending")
    result_code = mapped_column(Integer, nullable=True)
    result_desc = mapped_column(String(255), nullable=True)
    receipt_number = mapped_column(String(16), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    settled_at = mapped_column(DateTime(timezone=True), nullable=True)


def init_db():
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Yield a SQLAlchemy session bound to the configured engine."""
    with Session(engine) as s:
        yield s


class SandboxRepo:
    """Token and STK request bookkeeping."""

    def issue_token(self, consumer_key: str) -> AccessToken:
        """Issue a fresh token; expired tokens are purged on the way."""
        with get_session() as s:
            s.execute(delete(AccessToken).where(AccessToken.expires_at <= _utcnow()))
            tok = AccessToken(
                token=secrets.token_urlsafe(24),
                consumer_key=consumer_key,
                expires_at=_utcnow() + TOKEN_TTL,
            )
            s.add(tok)
            s.commit()
            s.refresh(tok)
            return tok

    def token_valid(self, token: str) -> bool:
        with get_session() as s:
            tok = s.get(AccessToken, token)
            if tok is None:
                return False
            expires = tok.expires_at
            # SQLite drops tzinfo on read
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
            return expires > _utcnow()

    def create_request(
        self,
        *,
        shortcode: str,
        phone: str,
        amount: int,
        account_reference: str,
        description: str,
        callback_url: str,
    ) -> StkRequest:
        stamp = datetime.now().strftime("%d%m%Y%H%M%S")
        with get_session() as s:
            req = StkRequest(
                checkout_request_id=f"ws_CO_{stamp}{secrets.randbelow(10**10):010d}",
                merchant_request_id=f"{secrets.randbelow(10**5):05d}-{uuid.uuid4().int % 10**8:08d}-1",
                shortcode=shortcode,
                phone=phone,
                amount=amount,
                account_reference=account_reference,
                description=description,
                callback_url=callback_url,
            )
            s.add(req)
            s.commit()
            s.refresh(req)
            s.expunge(req)
            return req

    def get(self, checkout_request_id: str) -> Optional[StkRequest]:
        with get_session() as s:
            req = s.get(StkRequest, checkout_request_id)
            if req is not None:
                s.expunge(req)
            return req

    def settle(self, checkout_request_id: str, result_code: int, result_desc: str) -> tuple[Optional[StkRequest], bool]:
        """Move a pending request to ``completed``/``failed``.

        Returns:
            ``(request, changed)``; ``(None, False)`` for an unknown id and
            ``changed=False`` when the request was already settled.
        """
        with get_session() as s:
            req = s.execute(
                select(StkRequest).where(StkRequest.checkout_request_id == checkout_request_id).with_for_update()
            ).scalars().first()
            if req is None:
                return None, False
            changed = req.status == "pending"
            if changed:
                req.status = "completed" if result_code == 0 else "failed"
                req.result_code = result_code
                req.result_desc = result_desc
                req.settled_at = _utcnow()
                if result_code == 0:
                    req.receipt_number = secrets.token_hex(5).upper()
                s.commit()
                s.refresh(req)
            s.expunge(req)
            return req, changed
