"""Inbound payment processor: deduplicates provider callbacks and credits the ledger once."""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relaycore.config import Settings, get_settings
from relaycore.exceptions import (
    DuplicateReferenceError,
    PaymentValidationError,
    SignatureVerificationError,
)
from relaycore.models import PaymentEvent, utcnow
from relaycore.models.payment import PaymentEventStatus, PaymentProvider
from relaycore.services.ledger import LedgerService
from relaycore.services.providers import (
    PAYSTACK_SIGNATURE_HEADER,
    STRIPE_SIGNATURE_HEADER,
    ParsedPaymentEvent,
    detect_provider,
    parse_provider_event,
)
from relaycore.services.signing import verify_paystack_signature, verify_stripe_signature

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    success: bool
    message: str
    new_balance: Optional[Decimal] = None
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "new_balance": float(self.new_balance) if self.new_balance is not None else None,
        }


class PaymentProcessor:
    """Turns one provider callback into at most one ledger credit.

    The ``(provider, provider_event_id)`` unique constraint on
    ``payment_events`` serialises concurrent deliveries; the ledger's unique
    reference covers a crash between the credit and the status update.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        ledger: Optional[LedgerService] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.ledger = ledger or LedgerService(db)
        self.clock = clock

    async def process(self, headers: Mapping[str, str], raw_body: str) -> PaymentResult:
        provider = detect_provider(headers)
        self._verify_signature(provider, headers, raw_body)

        body = self._decode(raw_body)
        parsed = parse_provider_event(provider, body, now=self.clock())
        if not parsed.event_id:
            raise PaymentValidationError("Missing provider event id")

        event = await self._record_receipt(parsed, raw_body)
        event_id = event.id  # rollbacks below expire the instance
        if event.status == PaymentEventStatus.PROCESSED.value:
            logger.info(f"Duplicate {provider.value} event {parsed.event_id}, skipping")
            balance = await self.ledger.get_balance(parsed.company_id) if parsed.company_id else None
            return PaymentResult(True, "Event already processed", balance, duplicate=True)

        if not parsed.company_id or parsed.amount_minor_units <= 0:
            logger.warning(
                f"Rejected {provider.value} event {parsed.event_id}: "
                f"company_id={parsed.company_id!r} amount={parsed.amount_minor_units}"
            )
            error = PaymentValidationError()
            await self._record_error(event_id, error.message)
            raise error

        reference = f"{provider.value}:{parsed.event_id}"
        try:
            new_balance = await self.ledger.credit(
                company_id=parsed.company_id,
                amount=parsed.amount,
                reference=reference,
                provider=provider.value,
                kind=parsed.kind,
            )
        except DuplicateReferenceError:
            # Credited by an earlier attempt that died before marking the event
            logger.info(f"Ledger already holds {reference}; completing event {parsed.event_id}")
            new_balance = await self.ledger.get_balance(parsed.company_id)
        except Exception as exc:
            await self.db.rollback()
            logger.error(f"Ledger credit failed for {reference}: {exc}", exc_info=True)
            await self._record_error(event_id, str(exc))
            raise

        await self._mark_processed(event_id)
        logger.info(f"Processed {provider.value} event {parsed.event_id}: +{parsed.amount} for {parsed.company_id}")
        return PaymentResult(True, "Deposit processed", new_balance)

    def _verify_signature(self, provider: PaymentProvider, headers: Mapping[str, str], raw_body: str):
        lowered = {k.lower(): v for k, v in headers.items()}
        if provider is PaymentProvider.STRIPE and self.settings.stripe_webhook_secret:
            valid = verify_stripe_signature(
                raw_body,
                lowered.get(STRIPE_SIGNATURE_HEADER, ""),
                self.settings.stripe_webhook_secret,
                tolerance=self.settings.stripe_signature_tolerance_seconds,
            )
        elif provider is PaymentProvider.PAYSTACK and self.settings.paystack_secret_key:
            valid = verify_paystack_signature(
                raw_body,
                lowered.get(PAYSTACK_SIGNATURE_HEADER, ""),
                self.settings.paystack_secret_key,
            )
        else:
            return

        if not valid:
            logger.warning(f"Webhook signature verification failed for {provider.value}")
            raise SignatureVerificationError(provider.value)

    @staticmethod
    def _decode(raw_body: str) -> dict:
        try:
            body = json.loads(raw_body)
        except (json.JSONDecodeError, TypeError):
            raise PaymentValidationError("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise PaymentValidationError("Request body must be a JSON object")
        return body

    async def _find_event(self, provider: str, event_id: str) -> Optional[PaymentEvent]:
        result = await self.db.execute(
            select(PaymentEvent)
            .where(
                PaymentEvent.provider == provider,
                PaymentEvent.provider_event_id == event_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _record_receipt(self, parsed: ParsedPaymentEvent, raw_body: str) -> PaymentEvent:
        """Return the stored event for this delivery, inserting it on first sighting."""
        provider = parsed.provider.value
        existing = await self._find_event(provider, parsed.event_id)
        if existing is not None:
            return existing

        event = PaymentEvent(
            provider=provider,
            provider_event_id=parsed.event_id,
            event_type=parsed.event_type,
            raw_payload=raw_body,
            status=PaymentEventStatus.RECEIVED.value,
        )
        self.db.add(event)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the insert race to a concurrent delivery of the same event
            await self.db.rollback()
            existing = await self._find_event(provider, parsed.event_id)
            if existing is None:
                raise
            logger.info(f"Concurrent delivery of {provider} event {parsed.event_id} merged onto existing row")
            return existing
        return event

    async def _record_error(self, event_id: str, message: str):
        await self.db.execute(
            update(PaymentEvent).where(PaymentEvent.id == event_id).values(error=message[:2000])
        )
        await self.db.commit()

    async def _mark_processed(self, event_id: str):
        await self.db.execute(
            update(PaymentEvent)
            .where(PaymentEvent.id == event_id)
            .values(
                status=PaymentEventStatus.PROCESSED.value,
                processed_at=self.clock(),
                error="",
            )
        )
        await self.db.commit()
