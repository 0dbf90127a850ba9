"""Retry sweep over due webhook events, one dispatch per event per sweep."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaycore.config import Settings, get_settings
from relaycore.exceptions import RelayError
from relaycore.models import WebhookEndpoint, WebhookEvent, utcnow
from relaycore.models.webhook import WebhookEventStatus
from relaycore.services.webhook_dispatcher import DispatchResult, WebhookDispatcher

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Selects events awaiting delivery and hands each to a fresh dispatcher.

    Due means ``status = retrying`` with ``next_retry_at <= now``, or
    ``status = pending`` (never attempted). Events whose endpoint has been
    deleted are never selected. All retry state lives in the store, so
    stopping the sweep is all it takes to cancel retries.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client = client
        self.clock = clock

    async def get_due_event_ids(self, db: AsyncSession, now: Optional[datetime] = None, limit: Optional[int] = None) -> list[str]:
        now = now or self.clock()
        limit = limit or self.settings.scheduler_batch_size
        result = await db.execute(
            select(WebhookEvent.id)
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookEvent.webhook_id)
            .where(
                or_(
                    WebhookEvent.status == WebhookEventStatus.PENDING.value,
                    (WebhookEvent.status == WebhookEventStatus.RETRYING.value)
                    & (WebhookEvent.next_retry_at <= now),
                )
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def run_once(self, now: Optional[datetime] = None) -> list[DispatchResult]:
        now = now or self.clock()
        async with self.session_factory() as db:
            event_ids = await self.get_due_event_ids(db, now)

        if not event_ids:
            return []

        semaphore = asyncio.Semaphore(self.settings.scheduler_concurrency)

        async def _dispatch_one(event_id: str) -> Optional[DispatchResult]:
            async with semaphore:
                async with self.session_factory() as db:
                    dispatcher = WebhookDispatcher(db, self.settings, client=self.client, clock=self.clock)
                    try:
                        return await dispatcher.dispatch(event_id)
                    except RelayError as exc:
                        logger.warning(f"Sweep skipped webhook event {event_id}: {exc.message}")
                    except Exception as exc:
                        logger.error(f"Sweep failed on webhook event {event_id}: {exc}", exc_info=True)
                    return None

        outcomes = await asyncio.gather(*(_dispatch_one(eid) for eid in event_ids))
        results = [r for r in outcomes if r is not None]
        sent = sum(1 for r in results if r.status == WebhookEventStatus.SENT.value)
        logger.info(f"Retry sweep: due={len(event_ids)} dispatched={len(results)} sent={sent}")
        return results
