"""Inbound payment provider callbacks."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from relaycore.api.deps import settings_dep
from relaycore.config import Settings
from relaycore.database import get_db
from relaycore.exceptions import RelayError
from relaycore.schemas import PaymentResponse
from relaycore.services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=PaymentResponse)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(settings_dep),
):
    """Receive a stripe / paystack / manual deposit notification.

    Duplicate deliveries answer 200 without touching the ledger. Malformed
    payloads answer 400; anything else that goes wrong answers 500 so the
    provider retries.
    """
    raw_body = (await request.body()).decode("utf-8", errors="replace")
    processor = PaymentProcessor(db, settings)
    try:
        result = await processor.process(request.headers, raw_body)
    except RelayError:
        raise
    except Exception as exc:
        logger.error(f"Payment processing error: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(exc)})
    return result.to_dict()
