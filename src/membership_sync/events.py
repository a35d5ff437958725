"""membership_sync.events

Event normalizer: turns a loosely-typed inbound payload into a NormalizedEvent.

Three inbound shapes are supported:
  - donation webhook: flat JSON relayed by Zapier (email, name, status,
    anonymous, optional amount / currency / donation_id / frequency)
  - PayPal event: BILLING.SUBSCRIPTION.* and PAYMENT.SALE.COMPLETED
  - snapshot CSV row: one row of a donation-platform export

Every adapter either returns a NormalizedEvent or raises ValidationError.
The snapshot adapter additionally returns None for rows that are not
recurring donations; those never reach reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from membership_sync.normalize import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAYMENT_FAILED,
    STATUS_SUSPENDED,
    is_recurring,
    join_name,
    map_status,
    normalize_email,
    normalize_space,
    parse_flag,
    parse_numeric,
    parse_referrer,
    trim,
)
from membership_sync.shared import UnsupportedEvent, ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SOURCE_WEBHOOK = "zapier"
SOURCE_PAYPAL = "paypal"
SOURCE_CSV = "csv"

PAYPAL_SUBSCRIPTION_STATUS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": STATUS_ACTIVE,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": STATUS_ACTIVE,
    "BILLING.SUBSCRIPTION.CANCELLED": STATUS_CANCELLED,
    "BILLING.SUBSCRIPTION.SUSPENDED": STATUS_SUSPENDED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": STATUS_PAYMENT_FAILED,
}
PAYPAL_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
PAYPAL_SALE_COMPLETED = "PAYMENT.SALE.COMPLETED"

# Monthly amount recorded when an ACTIVATED event carries none.
DEFAULT_MONTHLY_AMOUNT = "10.00"

CSV_EMAIL = "Email"
CSV_FREQUENCY = "Frequency"
CSV_PAYMENT_STATUS = "Payment Status"
CSV_NAME = "Name"
CSV_ANONYMOUS = "Anonymous"


# ---------------------------------------------------------------------------
# NormalizedEvent
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical form of one inbound event.

    email is None only for PayPal events identified by subscription or payer
    id.  status is None only for payment-only events, which must not move the
    member's status.  Monetary values are passed through as the vendor sent
    them.
    """

    email: str | None
    name: str = ""
    is_anonymous: bool = False
    status: str | None = STATUS_ACTIVE
    amount: Any = None
    currency: str | None = None
    monthly_amount: Any = None
    frequency: str | None = None
    subscription_id: str | None = None
    payer_id: str | None = None
    transaction_id: str | None = None
    referrer: str | None = None
    source: str = SOURCE_WEBHOOK

    @property
    def has_payment(self) -> bool:
        return self.transaction_id is not None and self.amount not in (None, "")


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _object(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _name_unless_anonymous(raw_name: Any, is_anonymous: bool) -> str:
    if is_anonymous:
        return ""
    return normalize_space(_text(raw_name)) or ""


# ---------------------------------------------------------------------------
# Donation webhook
# ---------------------------------------------------------------------------

def normalize_webhook(payload: Any) -> NormalizedEvent:
    """Normalize a donation-platform webhook body (already JSON-decoded).

    A recurring donation (non-empty frequency other than one-time) whose
    amount parses as a number also sets the member's monthly amount.
    """
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")

    email = normalize_email(_text(payload.get("email")))
    if not email:
        raise ValidationError("email required")

    is_anonymous = parse_flag(payload.get("anonymous"))
    amount = payload.get("amount")
    if amount == "":
        amount = None
    frequency = normalize_space(_text(payload.get("frequency")))
    monthly_amount = parse_numeric(amount) if is_recurring(frequency) else None
    return NormalizedEvent(
        email=email,
        name=_name_unless_anonymous(payload.get("name"), is_anonymous),
        is_anonymous=is_anonymous,
        status=map_status(payload.get("status")),
        amount=amount,
        currency=trim(_text(payload.get("currency"))),
        monthly_amount=monthly_amount,
        frequency=frequency,
        transaction_id=trim(_text(payload.get("donation_id"))),
        source=SOURCE_WEBHOOK,
    )


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------

def _paypal_amount(resource: dict[str, Any]) -> tuple[Any, str | None]:
    amount = resource.get("amount") or {}
    if not isinstance(amount, dict):
        return amount, None
    value = amount.get("value", amount.get("total"))
    currency = amount.get("currency_code", amount.get("currency"))
    return value, trim(_text(currency))


def normalize_paypal_event(event: Any) -> NormalizedEvent:
    """Normalize a PayPal webhook event.

    Raises UnsupportedEvent for event types that carry no membership state.
    """
    if not isinstance(event, dict):
        raise ValidationError("payload must be a JSON object")

    event_type = trim(_text(event.get("event_type"))) or ""
    resource = event.get("resource") or {}
    if not isinstance(resource, dict):
        raise ValidationError("resource must be a JSON object")

    if event_type in PAYPAL_SUBSCRIPTION_STATUS:
        subscriber = _object(resource.get("subscriber"))
        name = _object(subscriber.get("name"))
        email = normalize_email(_text(subscriber.get("email_address")))
        subscription_id = trim(_text(resource.get("id")))
        payer_id = trim(_text(subscriber.get("payer_id")))
        if not (email or subscription_id or payer_id):
            raise ValidationError("email or subscription id required")

        monthly_amount = None
        referrer = None
        if event_type == PAYPAL_ACTIVATED:
            value, _currency = _paypal_amount(resource)
            monthly_amount = value if value not in (None, "") else DEFAULT_MONTHLY_AMOUNT
            referrer = parse_referrer(_text(resource.get("custom_id")))

        return NormalizedEvent(
            email=email,
            name=join_name(name.get("given_name"), name.get("surname")) or "",
            status=PAYPAL_SUBSCRIPTION_STATUS[event_type],
            monthly_amount=monthly_amount,
            subscription_id=subscription_id,
            payer_id=payer_id,
            referrer=referrer,
            source=SOURCE_PAYPAL,
        )

    if event_type == PAYPAL_SALE_COMPLETED:
        payer = _object(resource.get("payer"))
        payer_info = _object(payer.get("payer_info"))
        if trim(_text(payer.get("payer_id"))):
            payer_id = trim(_text(payer.get("payer_id")))
            email = normalize_email(_text(payer.get("email_address")))
        else:
            payer_id = trim(_text(payer_info.get("payer_id")))
            email = normalize_email(_text(payer_info.get("email")))
        subscription_id = trim(_text(resource.get("billing_agreement_id")))
        transaction_id = trim(_text(resource.get("id")))
        if not transaction_id:
            raise ValidationError("transaction id required")
        if not (email or subscription_id or payer_id):
            raise ValidationError("email or subscription id required")

        amount, currency = _paypal_amount(resource)
        return NormalizedEvent(
            email=email,
            status=None,
            amount=amount,
            currency=currency,
            subscription_id=subscription_id,
            payer_id=payer_id,
            transaction_id=transaction_id,
            source=SOURCE_PAYPAL,
        )

    raise UnsupportedEvent(f"unhandled PayPal event type: {event_type or '<missing>'}")


# ---------------------------------------------------------------------------
# Snapshot CSV row
# ---------------------------------------------------------------------------

def normalize_csv_row(row: dict[str, str]) -> NormalizedEvent | None:
    """Normalize one snapshot row (headers already stripped).

    Returns None for one-time or frequency-less donations.  A missing
    Frequency or Payment Status column means recurring / active.
    """
    if CSV_FREQUENCY in row:
        if not is_recurring(row.get(CSV_FREQUENCY)):
            return None

    email = normalize_email(row.get(CSV_EMAIL))
    if not email:
        raise ValidationError("email required")

    if CSV_PAYMENT_STATUS in row:
        status = map_status(row.get(CSV_PAYMENT_STATUS))
    else:
        status = STATUS_ACTIVE

    is_anonymous = parse_flag(row.get(CSV_ANONYMOUS))
    return NormalizedEvent(
        email=email,
        name=_name_unless_anonymous(row.get(CSV_NAME), is_anonymous),
        is_anonymous=is_anonymous,
        status=status,
        frequency=normalize_space(row.get(CSV_FREQUENCY)),
        source=SOURCE_CSV,
    )
