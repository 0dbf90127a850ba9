"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone
from typing import Optional


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


from relaycore.models.payment import CompanyAccount, LedgerEntry, PaymentEvent  # noqa: E402
from relaycore.models.webhook import WebhookEndpoint, WebhookEvent  # noqa: E402

__all__ = [
    "CompanyAccount",
    "LedgerEntry",
    "PaymentEvent",
    "WebhookEndpoint",
    "WebhookEvent",
    "as_utc",
    "new_uuid",
    "utcnow",
]
