"""Normalization rules for inbound membership events.

String helpers accept str | None and return the appropriate type or None.
The status and anonymity rules accept whatever the sender put in the field
(str, bool, number, None) since vendors do not honour their declared schema.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Canonical status values
# ---------------------------------------------------------------------------

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_SUSPENDED = "suspended"
STATUS_PENDING = "pending"
STATUS_PAYMENT_FAILED = "payment_failed"

VALID_STATUSES = frozenset({
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_SUSPENDED,
    STATUS_PENDING,
    STATUS_PAYMENT_FAILED,
})

# Evaluated top to bottom; first match wins.
STATUS_LADDER: tuple[tuple[tuple[str, ...], str], ...] = (
    (("succeed", "success", "active"), STATUS_ACTIVE),
    (("fail", "cancel", "refund"), STATUS_CANCELLED),
    (("suspend", "pend"), STATUS_SUSPENDED),
)

DEFAULT_STATUS = STATUS_ACTIVE

TRUTHY_FLAGS = frozenset({"true", "yes", "1"})

ONE_TIME_FREQUENCIES = frozenset({"one-time", "onetime", "one time"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: map_status
# ---------------------------------------------------------------------------

def map_status(value: Any) -> str:
    """Map a free-text vendor payment status onto the canonical status set.

    Case-insensitive substring match against STATUS_LADDER.  Note that
    precedence is positional, not semantic: "Suspended after failed charge"
    maps to cancelled because "fail" sits on an earlier rung than "suspend".

    Unrecognized (or missing) text defaults to active and is logged.
    """
    text = "" if value is None else str(value)
    lowered = text.lower()
    for needles, status in STATUS_LADDER:
        if any(n in lowered for n in needles):
            return status
    log.warning("Unexpected status %r, defaulting to %r", text, DEFAULT_STATUS)
    return DEFAULT_STATUS


# ---------------------------------------------------------------------------
# Rule 5: parse_flag
# ---------------------------------------------------------------------------

def parse_flag(value: Any) -> bool:
    """Interpret a free-text boolean surrogate.

    "true" / "yes" / "1" (case-insensitive, trimmed) and JSON true are True;
    everything else, including None, is False.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_FLAGS


# ---------------------------------------------------------------------------
# Rule 6: is_recurring
# ---------------------------------------------------------------------------

def is_recurring(frequency: str | None) -> bool:
    """Return False for empty or one-time donation frequencies."""
    v = normalize_space(frequency)
    if v is None:
        return False
    return v.lower() not in ONE_TIME_FREQUENCIES


# ---------------------------------------------------------------------------
# Rule 7: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Decimal | None:
    """Parse a decimal amount from a string or number, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    v = trim(str(value))
    if v is None:
        return None
    try:
        number = Decimal(v)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


# ---------------------------------------------------------------------------
# Helper: join_name
# ---------------------------------------------------------------------------

def join_name(*parts: str | None) -> str | None:
    """Join name fragments with single spaces, skipping blanks."""
    tokens = [p for p in (normalize_space(part) for part in parts) if p]
    return " ".join(tokens) if tokens else None


# ---------------------------------------------------------------------------
# Helper: parse_referrer
# ---------------------------------------------------------------------------

def parse_referrer(custom_id: str | None) -> str | None:
    """Extract the referrer from a PayPal custom_id of the form 'referrer:<value>'."""
    v = trim(custom_id)
    if v is None:
        return None
    prefix, sep, rest = v.partition(":")
    if not sep or prefix != "referrer":
        return None
    return trim(rest)
