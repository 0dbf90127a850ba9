"""Webhook delivery tasks."""

import asyncio
import logging

from relaycore.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task
def sweep_webhook_retries():
    """Dispatch every webhook event that is pending or due for retry."""
    results = asyncio.run(_sweep())
    return [r.to_dict() for r in results]


@celery_app.task
def deliver_webhook_event(event_id: str):
    """Make one delivery attempt for a single event."""
    return asyncio.run(_deliver(event_id))


async def _sweep():
    from relaycore.database import async_session
    from relaycore.services.retry_scheduler import RetryScheduler

    return await RetryScheduler(async_session).run_once()


async def _deliver(event_id: str):
    from relaycore.database import async_session
    from relaycore.exceptions import RelayError
    from relaycore.services.webhook_dispatcher import WebhookDispatcher

    async with async_session() as db:
        try:
            result = await WebhookDispatcher(db).dispatch(event_id)
        except RelayError as exc:
            logger.error(f"Webhook event {event_id} not delivered: {exc.message}")
            return {"event_id": event_id, "success": False, "error": exc.message}
        return result.to_dict()
