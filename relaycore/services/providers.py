"""Provider payload parsing, one pure function per payment provider.

Each parser turns a decoded callback body into a ``ParsedPaymentEvent``.
Nothing here touches the database or the network.

Shapes handled::

    stripe    {"id": "evt_..", "type": "checkout.session.completed",
               "data": {"object": {"amount_total": 150000,
                                   "metadata": {"company_id": "C1"}}}}
    paystack  {"event": "charge.success",
               "data": {"id": 4099, "amount": 250000,
                        "metadata": {"company_id": "C1"}}}
    manual    {"type": "internal_deposit", "reference": "dep-1",
               "company_id": "C1", "amount": 25.50}
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from relaycore.models import utcnow
from relaycore.models.payment import PaymentProvider

STRIPE_SIGNATURE_HEADER = "stripe-signature"
PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"

DEPOSIT = "deposit"
MINOR_UNITS_PER_MAJOR = Decimal(100)


@dataclass(frozen=True)
class ParsedPaymentEvent:
    provider: PaymentProvider
    event_id: str
    event_type: str
    company_id: Optional[str]
    amount_minor_units: Decimal
    kind: Optional[str]

    @property
    def amount(self) -> Decimal:
        return to_major_units(self.amount_minor_units)


def to_major_units(minor: Decimal) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def detect_provider(headers: Mapping[str, str]) -> PaymentProvider:
    """Pick the provider from its signature header; no header means manual."""
    lowered = {k.lower() for k in headers.keys()}
    if STRIPE_SIGNATURE_HEADER in lowered:
        return PaymentProvider.STRIPE
    if PAYSTACK_SIGNATURE_HEADER in lowered:
        return PaymentProvider.PAYSTACK
    return PaymentProvider.MANUAL


def _dig(body: Any, *path: str) -> Any:
    node = body
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _to_decimal(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal(0)
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)
    # json.loads accepts NaN and Infinity
    return result if result.is_finite() else Decimal(0)


def _company_id(body: dict) -> Optional[str]:
    company_id = (
        _dig(body, "data", "object", "metadata", "company_id")
        or _dig(body, "data", "metadata", "company_id")
        or body.get("company_id")
    )
    return str(company_id) if company_id else None


def _event_type(body: dict) -> str:
    return str(body.get("type") or body.get("event") or "manual_deposit")


def _parse_stripe(body: dict, now: datetime) -> ParsedPaymentEvent:
    amount = Decimal(0)
    kind = None
    if body.get("type") == "checkout.session.completed":
        amount = _to_decimal(_dig(body, "data", "object", "amount_total"))
        kind = DEPOSIT
    return ParsedPaymentEvent(
        provider=PaymentProvider.STRIPE,
        event_id=str(body.get("id") or ""),
        event_type=_event_type(body),
        company_id=_company_id(body),
        amount_minor_units=amount,
        kind=kind,
    )


def _parse_paystack(body: dict, now: datetime) -> ParsedPaymentEvent:
    data_id = _dig(body, "data", "id")
    event_id = str(data_id) if data_id not in (None, "") else str(body.get("event") or "")

    amount = Decimal(0)
    kind = None
    if body.get("event") == "charge.success":
        amount = _to_decimal(_dig(body, "data", "amount"))
        kind = DEPOSIT
    return ParsedPaymentEvent(
        provider=PaymentProvider.PAYSTACK,
        event_id=event_id,
        event_type=_event_type(body),
        company_id=_company_id(body),
        amount_minor_units=amount,
        kind=kind,
    )


def _parse_manual(body: dict, now: datetime) -> ParsedPaymentEvent:
    event_id = body.get("reference") or f"manual-{int(now.timestamp() * 1000)}"

    amount = Decimal(0)
    kind = None
    if body.get("type") == "internal_deposit":
        # Manual deposits are entered in major units
        amount = _to_decimal(body.get("amount")) * MINOR_UNITS_PER_MAJOR
        kind = DEPOSIT
    return ParsedPaymentEvent(
        provider=PaymentProvider.MANUAL,
        event_id=str(event_id),
        event_type=_event_type(body),
        company_id=_company_id(body),
        amount_minor_units=amount,
        kind=kind,
    )


_PARSERS = {
    PaymentProvider.STRIPE: _parse_stripe,
    PaymentProvider.PAYSTACK: _parse_paystack,
    PaymentProvider.MANUAL: _parse_manual,
}


def parse_provider_event(
    provider: PaymentProvider,
    body: dict,
    now: Optional[datetime] = None,
) -> ParsedPaymentEvent:
    if not isinstance(body, dict):
        raise TypeError("provider payload must be a JSON object")
    return _PARSERS[PaymentProvider(provider)](body, now or utcnow())
