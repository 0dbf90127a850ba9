"""Webhook models for outbound event delivery."""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from relaycore.database import Base
from relaycore.models import new_uuid, utcnow


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    SENT = "sent"
    FAILED = "failed"


TERMINAL_STATUSES = (WebhookEventStatus.SENT.value, WebhookEventStatus.FAILED.value)


class WebhookEndpoint(Base):
    """Company-configured destination that receives event notifications."""

    __tablename__ = "webhook_endpoints"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(64), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret = Column(String(200), nullable=False)  # HMAC signing secret
    events = Column(Text, default='["*"]')  # JSON list of event types to subscribe
    is_active = Column(Boolean, default=True)
    description = Column(String(500), default="")
    # Consecutive failures, reset on any success
    failure_count = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    last_triggered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WebhookEvent(Base):
    """One queued event for one destination, with its delivery state."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_status_next_retry", "status", "next_retry_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_id = Column(
        String(36), ForeignKey("webhook_endpoints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, default="{}")  # JSON frozen at enqueue time
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    status = Column(String(20), default=WebhookEventStatus.PENDING.value)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error = Column(Text, default="")
    next_retry_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
