"""Integration tests for membership_sync.reconcile against a real database."""

from __future__ import annotations

from decimal import Decimal

import psycopg
import pytest

from membership_sync.events import (
    SOURCE_PAYPAL,
    NormalizedEvent,
    normalize_paypal_event,
    normalize_webhook,
)
from membership_sync.normalize import STATUS_ACTIVE, STATUS_CANCELLED, STATUS_SUSPENDED
from membership_sync.reconcile import (
    OUTCOME_CREATED,
    OUTCOME_UNCHANGED,
    OUTCOME_UNMATCHED,
    OUTCOME_UPDATED,
    Reconciler,
    reconcile_event,
)
from membership_sync.store import (
    append_status_history,
    fetch_status_history,
    find_member_by_email,
    insert_member,
)


def _history(conn, email: str) -> list[str]:
    member = find_member_by_email(conn, email)
    return fetch_status_history(conn, member.id)


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------

class TestCreateAndUpdate:
    def test_creates_member_with_initial_history(self, conn):
        result = reconcile_event(conn, NormalizedEvent(email="new@x.org", name="Jo Doe"))
        assert result.outcome == OUTCOME_CREATED
        member = find_member_by_email(conn, "new@x.org")
        assert member.status == STATUS_ACTIVE
        assert member.name == "Jo Doe"
        assert _history(conn, "new@x.org") == [STATUS_ACTIVE]

    def test_repeat_status_appends_history_once(self, conn):
        event = NormalizedEvent(email="a@x.org", name="A")
        reconcile_event(conn, event)
        result = reconcile_event(conn, event)
        assert result.outcome == OUTCOME_UNCHANGED
        assert _history(conn, "a@x.org") == [STATUS_ACTIVE]

    def test_transition_appends_history(self, conn):
        reconcile_event(conn, NormalizedEvent(email="a@x.org"))
        result = reconcile_event(conn, NormalizedEvent(email="a@x.org", status=STATUS_CANCELLED))
        assert result.outcome == OUTCOME_UPDATED
        assert result.previous_status == STATUS_ACTIVE
        assert result.status == STATUS_CANCELLED
        assert _history(conn, "a@x.org") == [STATUS_ACTIVE, STATUS_CANCELLED]

    def test_anonymous_event_keeps_stored_name(self, conn):
        reconcile_event(conn, NormalizedEvent(email="jane@x.org", name="Jane"))
        reconcile_event(conn, NormalizedEvent(email="jane@x.org", is_anonymous=True))
        member = find_member_by_email(conn, "jane@x.org")
        assert member.name == "Jane"
        assert member.is_anonymous is True

    def test_empty_name_keeps_stored_name(self, conn):
        reconcile_event(conn, NormalizedEvent(email="jane@x.org", name="Jane"))
        reconcile_event(conn, NormalizedEvent(email="jane@x.org", name=""))
        assert find_member_by_email(conn, "jane@x.org").name == "Jane"

    def test_new_name_replaces_stored_name(self, conn):
        reconcile_event(conn, NormalizedEvent(email="jane@x.org", name="Jane"))
        reconcile_event(conn, NormalizedEvent(email="jane@x.org", name="Jane Doe"))
        assert find_member_by_email(conn, "jane@x.org").name == "Jane Doe"

    def test_anonymous_donor_then_failed_payment(self, conn):
        reconcile_event(conn, normalize_webhook({
            "email": "A@B.com ", "status": "Payment Succeeded",
            "anonymous": "True", "name": "Jane",
        }))
        member = find_member_by_email(conn, "a@b.com")
        assert member.status == STATUS_ACTIVE
        assert member.is_anonymous is True
        assert member.name == ""

        reconcile_event(conn, normalize_webhook({
            "email": "a@b.com", "status": "Failed", "anonymous": "True",
        }))
        assert find_member_by_email(conn, "a@b.com").status == STATUS_CANCELLED
        assert _history(conn, "a@b.com") == [STATUS_ACTIVE, STATUS_CANCELLED]

    def test_last_updated_refreshed(self, conn):
        reconcile_event(conn, NormalizedEvent(email="a@x.org"))
        conn.execute("UPDATE members SET last_updated = '2000-01-01' WHERE email = 'a@x.org'")
        reconcile_event(conn, NormalizedEvent(email="a@x.org"))
        assert find_member_by_email(conn, "a@x.org").last_updated.year > 2000

    def test_recurring_webhook_sets_monthly_amount(self, conn):
        reconcile_event(conn, normalize_webhook({
            "email": "m@x.org", "status": "active", "amount": "15.00", "frequency": "Monthly",
        }))
        assert find_member_by_email(conn, "m@x.org").monthly_amount == Decimal("15.00")


# ---------------------------------------------------------------------------
# Lost insert race
# ---------------------------------------------------------------------------

def _seed_active(conn, email: str) -> int:
    member_id = insert_member(conn, email=email, name="Early", is_anonymous=False, status=STATUS_ACTIVE)
    append_status_history(conn, member_id, STATUS_ACTIVE)
    return member_id


class TestLostInsertRace:
    """The lookup misses, then the insert collides with a row that appeared meanwhile."""

    @pytest.fixture(autouse=True)
    def _lookup_misses(self, monkeypatch):
        monkeypatch.setattr("membership_sync.reconcile.find_member", lambda *a, **kw: None)

    def test_transition_takes_update_path(self, conn):
        member_id = _seed_active(conn, "race@x.org")
        result = reconcile_event(conn, NormalizedEvent(email="race@x.org", status=STATUS_CANCELLED))

        assert result.outcome == OUTCOME_UPDATED
        assert result.member_id == member_id
        assert result.previous_status == STATUS_ACTIVE
        assert _count(conn, "members") == 1
        assert _history(conn, "race@x.org") == [STATUS_ACTIVE, STATUS_CANCELLED]

    def test_same_status_is_unchanged(self, conn):
        _seed_active(conn, "race@x.org")
        result = reconcile_event(conn, NormalizedEvent(email="race@x.org", name="Late"))

        assert result.outcome == OUTCOME_UNCHANGED
        assert _history(conn, "race@x.org") == [STATUS_ACTIVE]
        assert find_member_by_email(conn, "race@x.org").name == "Late"

    def test_committed_by_other_connection(self, db_conn):
        conn, dsn = db_conn
        with psycopg.connect(dsn) as other:
            _seed_active(other, "race@x.org")

        result = reconcile_event(conn, NormalizedEvent(email="race@x.org", status=STATUS_SUSPENDED))
        conn.commit()

        assert result.outcome == OUTCOME_UPDATED
        assert _history(conn, "race@x.org") == [STATUS_ACTIVE, STATUS_SUSPENDED]


# ---------------------------------------------------------------------------
# PayPal identities
# ---------------------------------------------------------------------------

def _paypal(event_type: str, email: str | None = "d@x.org", **resource) -> NormalizedEvent:
    subscriber = {"payer_id": "PAYER1"}
    if email:
        subscriber["email_address"] = email
    body = {"id": "I-SUB1", "subscriber": subscriber}
    body.update(resource)
    return normalize_paypal_event({"event_type": event_type, "resource": body})


class TestPayPalIdentity:
    def test_activation_stores_secondary_ids(self, conn):
        reconcile_event(conn, _paypal(
            "BILLING.SUBSCRIPTION.ACTIVATED", custom_id="referrer:alice",
        ))
        member = find_member_by_email(conn, "d@x.org")
        assert member.subscription_id == "I-SUB1"
        assert member.payer_id == "PAYER1"
        assert member.monthly_amount == Decimal("10.00")
        assert member.referred_by == "alice"

    def test_lookup_by_subscription_id(self, conn):
        reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.ACTIVATED"))
        result = reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.SUSPENDED", email=None))
        assert result.outcome == OUTCOME_UPDATED
        assert find_member_by_email(conn, "d@x.org").status == STATUS_SUSPENDED

    def test_unknown_subscription_without_email_is_unmatched(self, conn):
        result = reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.CANCELLED", email=None))
        assert result.outcome == OUTCOME_UNMATCHED
        assert _count(conn, "members") == 0

    def test_secondary_ids_never_blanked(self, conn):
        reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.ACTIVATED"))
        reconcile_event(conn, NormalizedEvent(email="d@x.org", status=STATUS_CANCELLED))
        member = find_member_by_email(conn, "d@x.org")
        assert member.subscription_id == "I-SUB1"
        assert member.monthly_amount == Decimal("10.00")

    def test_secondary_id_not_moved_between_members(self, conn):
        reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.ACTIVATED"))
        reconcile_event(conn, NormalizedEvent(email="other@x.org"))
        reconcile_event(conn, NormalizedEvent(
            email="other@x.org", subscription_id="I-SUB1", source=SOURCE_PAYPAL,
        ))
        assert find_member_by_email(conn, "d@x.org").subscription_id == "I-SUB1"
        assert find_member_by_email(conn, "other@x.org").subscription_id is None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _sale(transaction_id: str, amount: str = "10.00") -> NormalizedEvent:
    return normalize_paypal_event({
        "event_type": "PAYMENT.SALE.COMPLETED",
        "resource": {
            "id": transaction_id,
            "billing_agreement_id": "I-SUB1",
            "amount": {"total": amount, "currency": "USD"},
            "payer": {"payer_info": {"payer_id": "PAYER1"}},
        },
    })


class TestPayments:
    def test_sale_records_payment_without_status_change(self, conn):
        reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.ACTIVATED"))
        result = reconcile_event(conn, _sale("TX-1"))
        assert result.payment_recorded is True
        assert result.outcome == OUTCOME_UNCHANGED
        member = find_member_by_email(conn, "d@x.org")
        assert member.total_donated == Decimal("10.00")
        assert _history(conn, "d@x.org") == [STATUS_ACTIVE]

    def test_duplicate_transaction_counted_once(self, conn):
        reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.ACTIVATED"))
        reconcile_event(conn, _sale("TX-1", "12.50"))
        result = reconcile_event(conn, _sale("TX-1", "12.50"))
        assert result.payment_recorded is False
        assert _count(conn, "payments") == 1
        assert find_member_by_email(conn, "d@x.org").total_donated == Decimal("12.50")

    def test_totals_accumulate(self, conn):
        reconcile_event(conn, _paypal("BILLING.SUBSCRIPTION.ACTIVATED"))
        reconcile_event(conn, _sale("TX-1", "10.00"))
        reconcile_event(conn, _sale("TX-2", "15.00"))
        assert find_member_by_email(conn, "d@x.org").total_donated == Decimal("25.00")

    def test_sale_for_unknown_member_is_unmatched(self, conn):
        result = reconcile_event(conn, _sale("TX-1"))
        assert result.outcome == OUTCOME_UNMATCHED
        assert _count(conn, "payments") == 0

    def test_bad_amount_does_not_fail_the_event(self, conn):
        result = reconcile_event(conn, NormalizedEvent(
            email="a@x.org", amount="lots", transaction_id="don-1",
        ))
        assert result.outcome == OUTCOME_CREATED
        assert result.payment_recorded is False
        assert find_member_by_email(conn, "a@x.org") is not None
        assert _count(conn, "payments") == 0

    def test_webhook_donation_records_payment(self, conn):
        reconcile_event(conn, normalize_webhook({
            "email": "a@x.org", "status": "Payment Succeeded",
            "amount": "20", "currency": "USD", "donation_id": "don-7",
        }))
        assert find_member_by_email(conn, "a@x.org").total_donated == Decimal("20.00")


# ---------------------------------------------------------------------------
# Reconciler (pooled, own transaction)
# ---------------------------------------------------------------------------

class TestReconciler:
    def test_commits_on_success(self, store, conn):
        result = Reconciler(store).reconcile(NormalizedEvent(email="p@x.org"))
        assert result.outcome == OUTCOME_CREATED
        assert find_member_by_email(conn, "p@x.org") is not None
