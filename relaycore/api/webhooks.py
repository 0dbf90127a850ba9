"""Webhook destination management, event enqueue and delivery API."""

import json
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relaycore.api.deps import get_http_client, require_service_key, settings_dep
from relaycore.config import Settings
from relaycore.database import get_db
from relaycore.models import WebhookEndpoint, WebhookEvent
from relaycore.models.webhook import WebhookEventStatus
from relaycore.schemas import (
    DispatchRequest,
    DispatchResponse,
    TestWebhookRequest,
    WebhookCreate,
    WebhookEventCreate,
    WebhookEventOut,
    WebhookOut,
    WebhookUpdate,
)
from relaycore.services.webhook_dispatcher import WebhookDispatcher, enqueue_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[Depends(require_service_key)])


# ── Event Types ──────────────────────────────────────────
VALID_EVENTS = [
    "deposit.completed",
    "balance.updated",
    "task.created",
    "task.completed",
    "submission.approved",
    "submission.rejected",
    "dataset.ready",
    "test.ping",
]


def _check_events(events: list[str]):
    for evt in events:
        if evt != "*" and evt not in VALID_EVENTS:
            raise HTTPException(400, f"Invalid event type: {evt}")


async def _get_endpoint(db: AsyncSession, webhook_id: str) -> WebhookEndpoint:
    result = await db.execute(select(WebhookEndpoint).where(WebhookEndpoint.id == webhook_id))
    wh = result.scalar_one_or_none()
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return wh


# ── Delivery ─────────────────────────────────────────────
@router.post("/deliver", response_model=DispatchResponse)
async def deliver_event(
    data: DispatchRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(settings_dep),
    client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """Make one delivery attempt for a queued event.

    200 when delivered or already terminal, 500 when the attempt failed
    (retry scheduled or exhausted), 400 when the destination is gone or
    disabled.
    """
    dispatcher = WebhookDispatcher(db, settings, client=client)
    result = await dispatcher.dispatch(data.event_id)
    if result.success or result.skipped:
        return result.to_dict()
    return JSONResponse(status_code=500, content=result.to_dict())


@router.post("/events", response_model=list[WebhookEventOut], status_code=201)
async def create_event(
    data: WebhookEventCreate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(settings_dep),
):
    """Queue an event for every subscribed destination of a company."""
    _check_events([data.event_type])
    return await enqueue_event(db, data.company_id, data.event_type, data.payload, settings)


@router.get("/event-types", response_model=list[str])
async def list_event_types():
    """List all available webhook event types."""
    return VALID_EVENTS


# ── Destinations ─────────────────────────────────────────
@router.post("/", response_model=WebhookOut, status_code=201)
async def create_webhook(data: WebhookCreate, db: AsyncSession = Depends(get_db)):
    _check_events(data.events)

    wh = WebhookEndpoint(
        company_id=data.company_id,
        url=data.url,
        secret=data.secret,
        events=json.dumps(data.events),
        description=data.description,
        max_attempts=data.max_attempts,
    )
    db.add(wh)
    await db.commit()
    await db.refresh(wh)
    return WebhookOut.from_model(wh)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    company_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(WebhookEndpoint)
    if company_id is not None:
        stmt = stmt.where(WebhookEndpoint.company_id == company_id)
    if is_active is not None:
        stmt = stmt.where(WebhookEndpoint.is_active == is_active)
    stmt = stmt.order_by(WebhookEndpoint.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return [WebhookOut.from_model(wh) for wh in result.scalars().all()]


@router.get("/{webhook_id}", response_model=WebhookOut)
async def get_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    return WebhookOut.from_model(await _get_endpoint(db, webhook_id))


@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(webhook_id: str, data: WebhookUpdate, db: AsyncSession = Depends(get_db)):
    wh = await _get_endpoint(db, webhook_id)

    updates = data.model_dump(exclude_unset=True)
    if "events" in updates:
        _check_events(updates["events"])
        updates["events"] = json.dumps(updates["events"])

    for key, val in updates.items():
        setattr(wh, key, val)

    # Reset failure counter if re-enabled
    if data.is_active is True:
        wh.failure_count = 0

    await db.commit()
    await db.refresh(wh)
    return WebhookOut.from_model(wh)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    wh = await _get_endpoint(db, webhook_id)
    await db.delete(wh)
    await db.commit()


@router.get("/{webhook_id}/events", response_model=list[WebhookEventOut])
async def list_events(
    webhook_id: str,
    status: Optional[WebhookEventStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List delivery history for a webhook."""
    stmt = select(WebhookEvent).where(WebhookEvent.webhook_id == webhook_id)
    if status is not None:
        stmt = stmt.where(WebhookEvent.status == status.value)
    stmt = stmt.order_by(WebhookEvent.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/{webhook_id}/test", status_code=200)
async def test_webhook(
    webhook_id: str,
    data: TestWebhookRequest = TestWebhookRequest(),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(settings_dep),
    client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """Send a single-attempt test ping to the webhook endpoint."""
    wh = await _get_endpoint(db, webhook_id)

    event = WebhookEvent(
        webhook_id=wh.id,
        event_type=data.event_type,
        payload=json.dumps(data.payload),
        max_attempts=1,
        status=WebhookEventStatus.PENDING.value,
    )
    db.add(event)
    await db.commit()

    result = await WebhookDispatcher(db, settings, client=client).dispatch(event.id)
    return {
        "message": "Test webhook sent",
        "success": result.success,
        "status": result.status,
        "response_status": result.response_status,
    }
