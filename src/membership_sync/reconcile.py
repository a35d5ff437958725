"""membership_sync.reconcile

Reconciliation engine: apply one NormalizedEvent to the member store.

Rules (evaluated against the row locked by SELECT ... FOR UPDATE):
  - lookup chain is email → subscription_id → payer_id
  - no match and the event carries an email and a status → create, with the
    initial status appended to history
  - no match otherwise → unmatched; nothing is written
  - match → update:
      name          kept when the event is anonymous or carries no name
      is_anonymous  overwritten (payment-only events leave it alone)
      status        overwritten unless the event is payment-only
      secondary ids filled when missing, never blanked or moved
      history       appended only on a status transition
  - a payment carried by the event is recorded once per transaction_id and
    added to total_donated; a payment failure never fails the event
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg

from membership_sync.events import NormalizedEvent
from membership_sync.shared import StoreError
from membership_sync.store import (
    Member,
    MemberStore,
    add_to_total_donated,
    append_status_history,
    find_member,
    find_member_by_email,
    find_member_by_payer_id,
    find_member_by_subscription_id,
    insert_member,
    insert_payment,
    update_member,
)

log = logging.getLogger(__name__)

OUTCOME_CREATED = "created"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_UNMATCHED = "unmatched"


@dataclass
class ReconcileResult:
    outcome: str
    member_id: int | None = None
    previous_status: str | None = None
    status: str | None = None
    payment_recorded: bool = False


# ---------------------------------------------------------------------------
# Engine (caller manages transaction)
# ---------------------------------------------------------------------------

def reconcile_event(conn: psycopg.Connection, event: NormalizedEvent) -> ReconcileResult:
    """Apply one event inside the caller's transaction."""
    member = find_member(
        conn, event.email, event.subscription_id, event.payer_id, for_update=True
    )

    if member is None:
        if not event.email or event.status is None:
            log.warning(
                "No member matches %s event (email=%s, subscription=%s, payer=%s); skipped",
                event.source, event.email, event.subscription_id, event.payer_id,
            )
            return ReconcileResult(OUTCOME_UNMATCHED)

        member_id = insert_member(
            conn,
            email=event.email,
            name=event.name,
            is_anonymous=event.is_anonymous,
            status=event.status,
            subscription_id=event.subscription_id,
            payer_id=event.payer_id,
            monthly_amount=event.monthly_amount,
            referred_by=event.referrer,
        )
        if member_id is not None:
            append_status_history(conn, member_id, event.status)
            log.info(
                "Created new member: %s (ID: %d, Status: %s)",
                event.email, member_id, event.status,
            )
            return ReconcileResult(
                OUTCOME_CREATED,
                member_id=member_id,
                status=event.status,
                payment_recorded=_record_payment(conn, member_id, event),
            )

        # Lost the insert race to a concurrent event for the same email.
        member = find_member_by_email(conn, event.email, for_update=True)
        if member is None:
            raise LookupError(f"member vanished after conflict: {event.email}")

    return _update_member(conn, member, event)


def _claimable(
    conn: psycopg.Connection,
    member: Member,
    column: str,
    value: str | None,
) -> str | None:
    """Return value if it may be linked to member, else None.

    A secondary id already linked to another member stays where it is.
    """
    if not value:
        return None
    if column == "subscription_id":
        owner = find_member_by_subscription_id(conn, value)
    else:
        owner = find_member_by_payer_id(conn, value)
    if owner is not None and owner.id != member.id:
        log.warning(
            "%s %s already linked to member %d; not relinking to %d",
            column, value, owner.id, member.id,
        )
        return None
    return value


def _update_member(
    conn: psycopg.Connection,
    member: Member,
    event: NormalizedEvent,
) -> ReconcileResult:
    payment_only = event.status is None

    if event.is_anonymous or not event.name:
        name = member.name
    else:
        name = event.name
    is_anonymous = member.is_anonymous if payment_only else event.is_anonymous
    status = member.status if payment_only else event.status

    subscription_id = member.subscription_id or _claimable(
        conn, member, "subscription_id", event.subscription_id
    )
    payer_id = member.payer_id or _claimable(conn, member, "payer_id", event.payer_id)
    monthly_amount = (
        event.monthly_amount if event.monthly_amount is not None else member.monthly_amount
    )

    update_member(
        conn,
        member.id,
        name=name,
        is_anonymous=is_anonymous,
        status=status,
        subscription_id=subscription_id,
        payer_id=payer_id,
        monthly_amount=monthly_amount,
        referred_by=member.referred_by or event.referrer,
    )

    if status != member.status:
        append_status_history(conn, member.id, status)
        log.info(
            "Updated member %s (ID: %d): %s -> %s",
            member.email, member.id, member.status, status,
        )
        outcome = OUTCOME_UPDATED
    else:
        log.info("Member %s (ID: %d) status unchanged: %s", member.email, member.id, status)
        outcome = OUTCOME_UNCHANGED

    return ReconcileResult(
        outcome,
        member_id=member.id,
        previous_status=member.status,
        status=status,
        payment_recorded=_record_payment(conn, member.id, event),
    )


def _record_payment(
    conn: psycopg.Connection,
    member_id: int,
    event: NormalizedEvent,
) -> bool:
    if not event.has_payment:
        return False
    try:
        with conn.transaction():
            inserted = insert_payment(
                conn,
                member_id,
                event.subscription_id,
                event.transaction_id,
                event.amount,
                event.currency,
            )
            if inserted:
                add_to_total_donated(conn, member_id, event.amount)
    except psycopg.Error as exc:
        log.warning(
            "Failed to record payment %s for member %d: %s",
            event.transaction_id, member_id, exc,
        )
        return False
    if inserted:
        log.info(
            "Recorded payment %s for member %d: %s %s",
            event.transaction_id, member_id, event.amount, event.currency or "",
        )
    else:
        log.info("Payment %s already recorded", event.transaction_id)
    return inserted


# ---------------------------------------------------------------------------
# Service wrapper
# ---------------------------------------------------------------------------

class Reconciler:
    """Runs reconcile_event in its own transaction on a pooled connection.

    Events for the same member serialize on the member row lock; events for
    different members proceed in parallel up to the pool size.
    """

    def __init__(self, store: MemberStore) -> None:
        self._store = store

    def reconcile(self, event: NormalizedEvent) -> ReconcileResult:
        try:
            with self._store.connection() as conn:
                with conn.transaction():
                    return reconcile_event(conn, event)
        except LookupError as exc:
            raise StoreError(str(exc)) from exc
