"""membership_sync.store

Canonical member store backed by PostgreSQL (see migrations/).

Two layers:
  - module-level helpers taking a psycopg.Connection.  They never commit;
    the caller manages the transaction or savepoint.
  - MemberStore, which owns the connection pool used by the webhook service
    and converts driver failures into StoreError.

Emails are expected to be normalized (normalize_email) before they reach any
helper here.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import psycopg
from psycopg_pool import ConnectionPool

from membership_sync.normalize import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_SUSPENDED,
)
from membership_sync.shared import StoreError

log = logging.getLogger(__name__)

MEMBER_COLUMNS = (
    "id, email, name, is_anonymous, status, subscription_id, payer_id, "
    "monthly_amount, total_donated, referred_by, first_seen, last_updated"
)

DEFAULT_LIST_LIMIT = 100


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass
class Member:
    id: int
    email: str
    name: str | None
    is_anonymous: bool
    status: str
    subscription_id: str | None
    payer_id: str | None
    monthly_amount: Decimal | None
    total_donated: Decimal
    referred_by: str | None
    first_seen: date
    last_updated: datetime

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> Member:
        return cls(*row)


@dataclass
class MemberStats:
    total_members: int = 0
    active_members: int = 0
    cancelled_members: int = 0
    suspended_members: int = 0
    anonymous_members: int = 0
    monthly_revenue: Decimal = Decimal("0")
    total_donated: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_members": self.total_members,
            "active_members": self.active_members,
            "cancelled_members": self.cancelled_members,
            "suspended_members": self.suspended_members,
            "anonymous_members": self.anonymous_members,
            "monthly_revenue": float(self.monthly_revenue),
            "total_donated": float(self.total_donated),
        }


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _find_member_by(
    conn: psycopg.Connection,
    column: str,
    value: str,
    for_update: bool,
) -> Member | None:
    sql = f"SELECT {MEMBER_COLUMNS} FROM members WHERE {column} = %s"
    if for_update:
        sql += " FOR UPDATE"
    row = conn.execute(sql, (value,)).fetchone()
    return Member.from_row(row) if row else None


def find_member_by_email(
    conn: psycopg.Connection,
    email: str,
    for_update: bool = False,
) -> Member | None:
    return _find_member_by(conn, "email", email, for_update)


def find_member_by_subscription_id(
    conn: psycopg.Connection,
    subscription_id: str,
    for_update: bool = False,
) -> Member | None:
    return _find_member_by(conn, "subscription_id", subscription_id, for_update)


def find_member_by_payer_id(
    conn: psycopg.Connection,
    payer_id: str,
    for_update: bool = False,
) -> Member | None:
    return _find_member_by(conn, "payer_id", payer_id, for_update)


def find_member(
    conn: psycopg.Connection,
    email: str | None,
    subscription_id: str | None = None,
    payer_id: str | None = None,
    for_update: bool = False,
) -> Member | None:
    """Resolve a member via email → subscription_id → payer_id.

    The first key that matches wins; later keys are only consulted when the
    earlier ones are absent or miss.
    """
    if email:
        member = find_member_by_email(conn, email, for_update)
        if member is not None:
            return member
    if subscription_id:
        member = find_member_by_subscription_id(conn, subscription_id, for_update)
        if member is not None:
            return member
    if payer_id:
        return find_member_by_payer_id(conn, payer_id, for_update)
    return None


def fetch_member_statuses(conn: psycopg.Connection) -> dict[str, str]:
    """Return the email -> status projection for every member."""
    rows = conn.execute("SELECT email, status FROM members").fetchall()
    return {str(email).lower(): status for email, status in rows}


def fetch_status_history(conn: psycopg.Connection, member_id: int) -> list[str]:
    rows = conn.execute(
        "SELECT status FROM status_history WHERE member_id = %s ORDER BY changed_at, id",
        (member_id,),
    ).fetchall()
    return [r[0] for r in rows]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def insert_member(
    conn: psycopg.Connection,
    email: str,
    name: str,
    is_anonymous: bool,
    status: str,
    subscription_id: str | None = None,
    payer_id: str | None = None,
    monthly_amount: Any = None,
    referred_by: str | None = None,
) -> int | None:
    """Insert a new member; return its id, or None if the email already exists."""
    row = conn.execute(
        """
        INSERT INTO members
          (email, name, is_anonymous, status, subscription_id, payer_id,
           monthly_amount, referred_by, first_seen, last_updated)
        VALUES (%s, %s, %s, %s, %s, %s, %s::numeric, %s, CURRENT_DATE, CURRENT_TIMESTAMP)
        ON CONFLICT (email) DO NOTHING
        RETURNING id
        """,
        (email, name, is_anonymous, status, subscription_id, payer_id,
         None if monthly_amount is None else str(monthly_amount), referred_by),
    ).fetchone()
    return int(row[0]) if row else None


def update_member(
    conn: psycopg.Connection,
    member_id: int,
    name: str | None,
    is_anonymous: bool,
    status: str,
    subscription_id: str | None,
    payer_id: str | None,
    monthly_amount: Any,
    referred_by: str | None,
) -> None:
    """Overwrite the mutable member columns and refresh last_updated."""
    conn.execute(
        """
        UPDATE members SET
          name = %s,
          is_anonymous = %s,
          status = %s,
          subscription_id = %s,
          payer_id = %s,
          monthly_amount = %s::numeric,
          referred_by = %s,
          last_updated = CURRENT_TIMESTAMP
        WHERE id = %s
        """,
        (name, is_anonymous, status, subscription_id, payer_id,
         None if monthly_amount is None else str(monthly_amount),
         referred_by, member_id),
    )


def append_status_history(
    conn: psycopg.Connection,
    member_id: int,
    status: str,
) -> None:
    conn.execute(
        "INSERT INTO status_history (member_id, status) VALUES (%s, %s)",
        (member_id, status),
    )


def set_member_status(
    conn: psycopg.Connection,
    email: str,
    status: str,
) -> bool:
    """Set one member's status by email.

    Appends history only when the status actually changes.  Returns True on
    a transition.  Raises LookupError when no member has that email.
    """
    member = find_member_by_email(conn, email, for_update=True)
    if member is None:
        raise LookupError(f"member not found: {email}")
    conn.execute(
        "UPDATE members SET status = %s, last_updated = CURRENT_TIMESTAMP WHERE id = %s",
        (status, member.id),
    )
    if member.status == status:
        return False
    append_status_history(conn, member.id, status)
    return True


def insert_payment(
    conn: psycopg.Connection,
    member_id: int,
    subscription_id: str | None,
    transaction_id: str,
    amount: Any,
    currency: str | None,
) -> bool:
    """Record a completed payment; a duplicate transaction_id is a no-op.

    Returns True when a new row was written.
    """
    row = conn.execute(
        """
        INSERT INTO payments
          (member_id, subscription_id, transaction_id, amount, currency, status)
        VALUES (%s, %s, %s, %s::numeric, %s, 'completed')
        ON CONFLICT (transaction_id) DO NOTHING
        RETURNING id
        """,
        (member_id, subscription_id, transaction_id, str(amount), currency),
    ).fetchone()
    return row is not None


def add_to_total_donated(
    conn: psycopg.Connection,
    member_id: int,
    amount: Any,
) -> None:
    conn.execute(
        """
        UPDATE members
        SET total_donated = total_donated + %s::numeric
        WHERE id = %s
        """,
        (str(amount), member_id),
    )


def insert_webhook_log(
    conn: psycopg.Connection,
    source: str,
    email: str | None,
    status: str | None,
    payload: Any,
) -> None:
    conn.execute(
        """
        INSERT INTO webhook_logs (source, email, status, payload)
        VALUES (%s, %s, %s, %s::jsonb)
        """,
        (source, email, status, json.dumps(payload, default=str)),
    )


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------

def fetch_stats(conn: psycopg.Connection) -> MemberStats:
    row = conn.execute(
        """
        SELECT
          COUNT(*),
          COUNT(*) FILTER (WHERE status = %s),
          COUNT(*) FILTER (WHERE status = %s),
          COUNT(*) FILTER (WHERE status = %s),
          COUNT(*) FILTER (WHERE is_anonymous),
          COALESCE(SUM(monthly_amount) FILTER (WHERE status = %s), 0),
          COALESCE(SUM(total_donated), 0)
        FROM members
        """,
        (STATUS_ACTIVE, STATUS_CANCELLED, STATUS_SUSPENDED, STATUS_ACTIVE),
    ).fetchone()
    return MemberStats(*row)


def fetch_members(
    conn: psycopg.Connection,
    status: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[dict[str, Any]]:
    """List members newest-updated first.  Anonymous members carry no name."""
    limit = max(1, min(limit, DEFAULT_LIST_LIMIT))
    sql = """
        SELECT email, name, is_anonymous, status, first_seen, last_updated,
               monthly_amount, total_donated
        FROM members
    """
    params: list[Any] = []
    if status:
        sql += " WHERE status = %s"
        params.append(status)
    sql += " ORDER BY last_updated DESC, id DESC LIMIT %s"
    params.append(limit)

    members: list[dict[str, Any]] = []
    for (email, name, is_anonymous, status_, first_seen, last_updated,
         monthly_amount, total_donated) in conn.execute(sql, params).fetchall():
        member: dict[str, Any] = {
            "email": email,
            "status": status_,
            "is_anonymous": bool(is_anonymous),
            "first_seen": first_seen.isoformat() if first_seen else None,
            "last_updated": last_updated.isoformat() if last_updated else None,
            "monthly_amount": float(monthly_amount) if monthly_amount is not None else None,
            "total_donated": float(total_donated or 0),
        }
        if not is_anonymous and name:
            member["name"] = name
        members.append(member)
    return members


# ---------------------------------------------------------------------------
# Pooled store
# ---------------------------------------------------------------------------

class MemberStore:
    """Connection-pooled access to the member tables.

    The pool is the only concurrency throttle: at most max_size connections
    are open, idle ones are closed after max_idle seconds, and a caller that
    cannot get a connection within timeout seconds gets a StoreError.
    """

    def __init__(
        self,
        conninfo: str,
        min_size: int = 1,
        max_size: int = 10,
        max_idle: float = 300.0,
        timeout: float = 30.0,
        open: bool = True,
    ) -> None:
        self._pool = ConnectionPool(
            conninfo,
            min_size=min_size,
            max_size=max_size,
            max_idle=max_idle,
            timeout=timeout,
            name="membership-store",
            open=open,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> MemberStore:
        return cls(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            max_idle=settings.db_pool_max_idle,
            timeout=settings.db_pool_timeout,
        )

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; commits on clean exit, rolls back on error."""
        try:
            with self._pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        self._pool.close()

    def health_check(self) -> None:
        with self.connection() as conn:
            conn.execute("SELECT 1")

    def stats(self) -> MemberStats:
        with self.connection() as conn:
            return fetch_stats(conn)

    def list_members(
        self,
        status: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        with self.connection() as conn:
            return fetch_members(conn, status, limit)

    def member_statuses(self) -> dict[str, str]:
        with self.connection() as conn:
            return fetch_member_statuses(conn)

    def log_webhook(
        self,
        source: str,
        email: str | None,
        status: str | None,
        payload: Any,
    ) -> bool:
        """Best-effort audit write.  Failures are logged, never raised."""
        try:
            with self.connection() as conn:
                insert_webhook_log(conn, source, email, status, payload)
        except StoreError as exc:
            log.warning("Failed to log webhook for %s: %s", email, exc)
            return False
        return True
