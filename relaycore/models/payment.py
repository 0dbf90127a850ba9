"""Inbound payment events and the company ledger."""

from enum import Enum

from sqlalchemy import Column, DateTime, Numeric, String, Text, UniqueConstraint

from relaycore.database import Base
from relaycore.models import new_uuid, utcnow


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYSTACK = "paystack"
    MANUAL = "manual"


class PaymentEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentEvent(Base):
    """Audit record of every provider callback, keyed by (provider, provider_event_id)."""

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_payment_events_provider_event"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    provider = Column(String(20), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    raw_payload = Column(Text, nullable=False)  # request body, verbatim
    status = Column(String(20), default=PaymentEventStatus.RECEIVED.value)
    error = Column(Text, default="")
    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)


class CompanyAccount(Base):
    __tablename__ = "company_accounts"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(64), unique=True, nullable=False)
    balance = Column(Numeric(14, 2), default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LedgerEntry(Base):
    """One credit against a company account; reference is the idempotency key."""

    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    reference = Column(String(255), unique=True, nullable=False)
    provider = Column(String(20), default=PaymentProvider.MANUAL.value)
    kind = Column(String(20), default="deposit")
    created_at = Column(DateTime, default=utcnow)
