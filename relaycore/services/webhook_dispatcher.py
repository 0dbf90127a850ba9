"""Webhook dispatch service — delivers queued events to company endpoints with HMAC signing and backoff."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relaycore.config import Settings, get_settings
from relaycore.exceptions import (
    DestinationUnavailableError,
    MalformedEventError,
    WebhookEventNotFoundError,
)
from relaycore.models import WebhookEndpoint, WebhookEvent, as_utc, utcnow
from relaycore.models.webhook import TERMINAL_STATUSES, WebhookEventStatus
from relaycore.services.signing import sign_payload, truncate_utf8

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    event_id: str
    success: bool
    status: str
    attempts: int
    response_status: Optional[int] = None
    next_retry_at: Optional[datetime] = None
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "success": self.success,
            "status": self.status,
            "attempts": self.attempts,
            "response_status": self.response_status,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


def compute_next_retry(
    attempts: int,
    now: datetime,
    base_seconds: int = 60,
    max_backoff_seconds: int = 0,
) -> datetime:
    """``now + base * 2**attempts`` seconds, optionally capped."""
    delay = base_seconds * (2 ** attempts)
    if max_backoff_seconds > 0:
        delay = min(delay, max_backoff_seconds)
    return now + timedelta(seconds=delay)


def parse_subscriptions(events) -> list[str]:
    if isinstance(events, str):
        try:
            events = json.loads(events)
        except (json.JSONDecodeError, TypeError):
            events = []
    return events if isinstance(events, list) else []


def build_body(event: WebhookEvent) -> str:
    try:
        data = json.loads(event.payload) if isinstance(event.payload, str) else event.payload
        created_at = as_utc(event.created_at)
        return json.dumps({
            "event": event.event_type,
            "timestamp": created_at.isoformat() if created_at else None,
            "data": data,
        })
    except (TypeError, ValueError) as exc:
        logger.error(f"Webhook event {event.id} has an unserialisable payload: {exc}")
        raise MalformedEventError(f"Webhook event {event.id} cannot be serialised: {exc}")


async def increment_failure_count(db: AsyncSession, endpoint_id: str):
    await db.execute(
        update(WebhookEndpoint)
        .where(WebhookEndpoint.id == endpoint_id)
        .values(failure_count=WebhookEndpoint.failure_count + 1)
    )


async def reset_failure_count(db: AsyncSession, endpoint_id: str, now: datetime):
    await db.execute(
        update(WebhookEndpoint)
        .where(WebhookEndpoint.id == endpoint_id)
        .values(failure_count=0, last_triggered_at=now)
    )


class WebhookDispatcher:
    """Performs a single delivery attempt per call; never self-schedules."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.client = client
        self.clock = clock

    async def dispatch(self, event_id: str) -> DispatchResult:
        event = await self._load_event(event_id)
        if event is None:
            raise WebhookEventNotFoundError(event_id)

        if event.status in TERMINAL_STATUSES:
            logger.info(f"Webhook event {event_id} already {event.status}, not redispatching")
            return self._result_from(event, skipped=True)

        endpoint = await self.db.get(WebhookEndpoint, event.webhook_id)
        if endpoint is None or not endpoint.is_active:
            reason = "Webhook config missing or inactive"
            await self._fail_without_attempt(event, reason)
            logger.warning(f"Webhook event {event_id} failed: {reason}")
            raise DestinationUnavailableError(reason)

        body = build_body(event)
        attempt = (event.attempts or 0) + 1
        prefix = self.settings.signature_header_prefix
        headers = {
            "Content-Type": "application/json",
            f"{prefix}-Event": event.event_type,
            f"{prefix}-Event-Id": event.id,
            f"{prefix}-Delivery-Attempt": str(attempt),
            f"{prefix}-Signature-256": f"sha256={sign_payload(body, endpoint.secret)}",
        }
        url = endpoint.url
        endpoint_id = endpoint.id
        previous_attempts = event.attempts or 0
        max_attempts = event.max_attempts or self.settings.default_max_attempts

        # Close the read transaction before the network call
        await self.db.commit()

        response_status, response_body, success, duration_ms = await self._post(url, body, headers)

        now = self.clock()
        values = {
            "attempts": attempt,
            "response_status": response_status,
            "response_body": truncate_utf8(response_body, self.settings.response_body_limit),
        }
        if success:
            values.update(status=WebhookEventStatus.SENT.value, sent_at=now, next_retry_at=None, error="")
        elif attempt >= max_attempts:
            values.update(status=WebhookEventStatus.FAILED.value, next_retry_at=None,
                          error=f"Gave up after {attempt} attempts")
        else:
            values.update(
                status=WebhookEventStatus.RETRYING.value,
                next_retry_at=compute_next_retry(
                    attempt,
                    now,
                    self.settings.retry_base_seconds,
                    self.settings.max_backoff_seconds,
                ),
                error="",
            )

        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event_id,
                WebhookEvent.attempts == previous_attempts,
                WebhookEvent.status.notin_(TERMINAL_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.commit()
            logger.warning(f"Webhook event {event_id} was updated concurrently; discarding attempt {attempt} outcome")
            stored = await self._load_event(event_id)
            if stored is None:
                raise WebhookEventNotFoundError(event_id)
            return self._result_from(stored, skipped=True)

        if success:
            await reset_failure_count(self.db, endpoint_id, now)
        else:
            await increment_failure_count(self.db, endpoint_id)
        await self.db.commit()

        status = values["status"]
        logger.info(
            f"Webhook event {event_id} attempt {attempt}/{max_attempts} -> {status} "
            f"(http={response_status}, {duration_ms}ms)"
        )
        if status == WebhookEventStatus.FAILED.value:
            logger.warning(f"Webhook event {event_id} exhausted after {attempt} attempts")

        return DispatchResult(
            event_id=event_id,
            success=success,
            status=status,
            attempts=attempt,
            response_status=response_status,
            next_retry_at=values.get("next_retry_at"),
        )

    async def _post(self, url: str, body: str, headers: dict) -> tuple[Optional[int], str, bool, int]:
        start = time.monotonic()
        try:
            resp = await asyncio.wait_for(self._send(url, body, headers), self.settings.webhook_timeout_seconds)
            return resp.status_code, resp.text, 200 <= resp.status_code < 300, _elapsed_ms(start)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            return None, f"Timed out after {self.settings.webhook_timeout_seconds}s", False, _elapsed_ms(start)
        except httpx.HTTPError as exc:
            return None, str(exc) or exc.__class__.__name__, False, _elapsed_ms(start)

    async def _send(self, url: str, body: str, headers: dict) -> httpx.Response:
        timeout = self.settings.webhook_timeout_seconds
        if self.client is not None:
            return await self.client.post(url, content=body, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, content=body, headers=headers)

    async def _load_event(self, event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _fail_without_attempt(self, event: WebhookEvent, reason: str):
        await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == event.id,
                WebhookEvent.status.notin_(TERMINAL_STATUSES),
            )
            .values(
                status=WebhookEventStatus.FAILED.value,
                response_body=reason,
                error=reason,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    @staticmethod
    def _result_from(event: WebhookEvent, skipped: bool = False) -> DispatchResult:
        return DispatchResult(
            event_id=event.id,
            success=event.status == WebhookEventStatus.SENT.value,
            status=event.status,
            attempts=event.attempts or 0,
            response_status=event.response_status,
            next_retry_at=as_utc(event.next_retry_at),
            skipped=skipped,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def enqueue_event(
    db: AsyncSession,
    company_id: str,
    event_type: str,
    payload: dict,
    settings: Optional[Settings] = None,
) -> list[WebhookEvent]:
    """Queue an event for every active endpoint of the company subscribed to it."""
    settings = settings or get_settings()
    stmt = select(WebhookEndpoint).where(
        WebhookEndpoint.company_id == company_id,
        WebhookEndpoint.is_active.is_(True),
    )
    result = await db.execute(stmt)
    endpoints = result.scalars().all()

    frozen = json.dumps(payload)
    queued = []
    for ep in endpoints:
        events = parse_subscriptions(ep.events)
        # Check if endpoint subscribes to this event
        if "*" in events or event_type in events:
            max_attempts = min(ep.max_attempts or settings.default_max_attempts, settings.max_attempts_ceiling)
            event = WebhookEvent(
                webhook_id=ep.id,
                event_type=event_type,
                payload=frozen,
                max_attempts=max_attempts,
                status=WebhookEventStatus.PENDING.value,
            )
            db.add(event)
            queued.append(event)

    await db.commit()
    logger.info(f"Queued {event_type} for company {company_id}: {len(queued)} endpoint(s)")
    return queued
