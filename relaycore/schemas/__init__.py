"""Pydantic schemas for API request/response validation."""

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# ── Inbound payments ─────────────────────────────────────
class PaymentResponse(BaseModel):
    success: bool
    message: str
    new_balance: Optional[float] = None


# ── Webhook endpoints (destinations) ─────────────────────
class WebhookCreate(BaseModel):
    company_id: str
    url: str
    secret: str = Field(..., min_length=8)
    events: list[str] = Field(default_factory=lambda: ["*"])
    description: str = ""
    max_attempts: int = Field(5, ge=1, le=8)


class WebhookUpdate(BaseModel):
    url: Optional[str] = None
    secret: Optional[str] = Field(None, min_length=8)
    events: Optional[list[str]] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    max_attempts: Optional[int] = Field(None, ge=1, le=8)


class WebhookOut(BaseModel):
    id: str
    company_id: str
    url: str
    events: list[str]
    is_active: bool
    description: str
    failure_count: int
    max_attempts: int
    last_triggered_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, wh):
        events = wh.events
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return cls(
            id=wh.id,
            company_id=wh.company_id,
            url=wh.url,
            events=events,
            is_active=wh.is_active,
            description=wh.description or "",
            failure_count=wh.failure_count or 0,
            max_attempts=wh.max_attempts or 5,
            last_triggered_at=wh.last_triggered_at,
            created_at=wh.created_at,
        )


# ── Outbound events ──────────────────────────────────────
class WebhookEventCreate(BaseModel):
    company_id: str
    event_type: str = Field(..., min_length=1, max_length=100)
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookEventOut(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    status: str
    attempts: int
    max_attempts: int
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DispatchRequest(BaseModel):
    event_id: str


class DispatchResponse(BaseModel):
    success: bool
    status: str
    event_id: str
    attempts: int
    response_status: Optional[int] = None
    next_retry_at: Optional[datetime] = None


class TestWebhookRequest(BaseModel):
    event_type: str = "test.ping"
    payload: dict = Field(default_factory=lambda: {"message": "Test webhook delivery"})
