"""membership_sync.batch

Batch reconciler: sync member statuses against a full donation-platform CSV
export (the "snapshot").

Pipeline:
  1. read_snapshot      header check, per-row normalization, rejects
  2. reconcile_snapshot pure diff of the snapshot's active set against the
                        store's email -> status projection
  3. apply_snapshot_diff  add, activate, deactivate; one savepoint per email

The snapshot is authoritative only for membership in the active set.  Store
members that are absent from it are cancelled if currently active and left
alone otherwise, so re-running the same snapshot is a no-op.
"""

from __future__ import annotations

import csv
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click
import psycopg

from membership_sync.events import CSV_EMAIL, NormalizedEvent, normalize_csv_row
from membership_sync.normalize import STATUS_ACTIVE, STATUS_CANCELLED
from membership_sync.shared import (
    CsvHeaderError,
    RejectWriter,
    RunCounters,
    ValidationError,
    normalize_headers,
    write_run_report,
)
from membership_sync.store import (
    append_status_history,
    fetch_member_statuses,
    insert_member,
    set_member_status,
)

log = logging.getLogger(__name__)

REQUIRED_HEADERS = frozenset({CSV_EMAIL})


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------

@dataclass
class SnapshotDiff:
    to_add: list[str] = field(default_factory=list)
    to_activate: list[str] = field(default_factory=list)
    to_deactivate: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_activate or self.to_deactivate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "to_add": list(self.to_add),
            "to_activate": list(self.to_activate),
            "to_deactivate": list(self.to_deactivate),
        }


def reconcile_snapshot(
    active_emails: set[str] | frozenset[str],
    current_statuses: dict[str, str],
) -> SnapshotDiff:
    """Diff the snapshot's active set against the stored status projection.

    Both sides must already carry normalized emails.  Output lists are sorted
    so apply order is deterministic.
    """
    diff = SnapshotDiff()
    for email in sorted(active_emails):
        current = current_statuses.get(email)
        if current is None:
            diff.to_add.append(email)
        elif current != STATUS_ACTIVE:
            diff.to_activate.append(email)
    for email in sorted(current_statuses):
        if current_statuses[email] == STATUS_ACTIVE and email not in active_emails:
            diff.to_deactivate.append(email)
    return diff


# ---------------------------------------------------------------------------
# Snapshot read
# ---------------------------------------------------------------------------

def validate_snapshot_headers(csv_path: Path) -> None:
    """Read only the header row; raise CsvHeaderError if Email is missing."""
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        header_set = {(k or "").strip() for k in (reader.fieldnames or [])}
    missing = REQUIRED_HEADERS - header_set
    if missing:
        raise CsvHeaderError(
            f"{csv_path.name} missing required headers: {sorted(missing)}"
        )


def read_snapshot(
    csv_path: Path,
    counters: RunCounters,
    rejects: RejectWriter,
) -> dict[str, NormalizedEvent]:
    """Return email -> first active recurring event found in the snapshot.

    An email is active if any of its recurring rows is active.  Rows without
    an email go to the rejects file.
    """
    validate_snapshot_headers(csv_path)

    active: dict[str, NormalizedEvent] = {}
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        for raw_row in csv.DictReader(fh):
            row = normalize_headers(raw_row)
            counters.rows_read += 1
            try:
                event = normalize_csv_row(row)
            except ValidationError:
                rejects.write(row, "missing_email")
                counters.rows_rejected += 1
                continue
            if event is None:
                counters.rows_non_recurring += 1
                continue
            if event.status != STATUS_ACTIVE:
                counters.rows_inactive += 1
                continue
            active.setdefault(event.email, event)

    counters.snapshot_active_emails = len(active)
    return active


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def _add_member(conn: psycopg.Connection, email: str, event: NormalizedEvent | None) -> bool:
    """Create an active member; fall back to activation if the email now exists."""
    member_id = insert_member(
        conn,
        email=email,
        name=event.name if event else "",
        is_anonymous=event.is_anonymous if event else False,
        status=STATUS_ACTIVE,
    )
    if member_id is None:
        return set_member_status(conn, email, STATUS_ACTIVE)
    append_status_history(conn, member_id, STATUS_ACTIVE)
    return True


def apply_snapshot_diff(
    conn: psycopg.Connection,
    diff: SnapshotDiff,
    snapshot: dict[str, NormalizedEvent],
    counters: RunCounters,
) -> None:
    """Apply the diff: add, then activate, then deactivate.

    Each email runs under its own savepoint; a failure is rolled back,
    counted and recorded in counters.warnings, and the run continues.
    Caller commits.
    """
    phases = (
        ("add", diff.to_add),
        ("activate", diff.to_activate),
        ("deactivate", diff.to_deactivate),
    )
    for phase, emails in phases:
        for idx, email in enumerate(emails):
            sp_name = f"{phase}_{idx}"
            conn.execute(f"SAVEPOINT {sp_name}")
            try:
                if phase == "add":
                    _add_member(conn, email, snapshot.get(email))
                    counters.members_added += 1
                elif phase == "activate":
                    set_member_status(conn, email, STATUS_ACTIVE)
                    counters.members_activated += 1
                else:
                    set_member_status(conn, email, STATUS_CANCELLED)
                    counters.members_deactivated += 1
                conn.execute(f"RELEASE SAVEPOINT {sp_name}")
            except (psycopg.Error, LookupError) as exc:
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
                counters.apply_errors += 1
                counters.warnings.append(
                    f"{phase} {email} {type(exc).__name__}: {exc}"
                )
                log.warning("Snapshot %s failed for %s: %s", phase, email, exc)


def sync_snapshot(
    conn: psycopg.Connection,
    csv_path: Path,
    counters: RunCounters,
    rejects: RejectWriter,
    dry_run: bool = False,
) -> SnapshotDiff:
    """Read, diff and (unless dry_run) apply one snapshot.  Caller commits."""
    snapshot = read_snapshot(csv_path, counters, rejects)
    diff = reconcile_snapshot(frozenset(snapshot), fetch_member_statuses(conn))
    counters.staged_add = len(diff.to_add)
    counters.staged_activate = len(diff.to_activate)
    counters.staged_deactivate = len(diff.to_deactivate)
    if not dry_run:
        apply_snapshot_diff(conn, diff, snapshot, counters)
    return diff


# ---------------------------------------------------------------------------
# Main run entry point
# ---------------------------------------------------------------------------

def run_csv_sync(
    run_id: str,
    started_at: str,
    db_dsn: str,
    counters: RunCounters,
    rejects: RejectWriter,
    csv_path: str,
    dry_run: bool,
) -> SnapshotDiff:
    path = Path(csv_path)
    try:
        validate_snapshot_headers(path)
    except (CsvHeaderError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Header validation passed for {path.name}, starting DB phase")

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        try:
            diff = sync_snapshot(conn, path, counters, rejects, dry_run=dry_run)
        except Exception as exc:
            conn.rollback()
            click.echo(
                f"[{run_id}] FATAL: unexpected error during DB phase: {exc}",
                err=True,
            )
            sys.exit(1)

        if dry_run:
            conn.rollback()
            click.echo(
                f"[{run_id}] [dry-run] would add {len(diff.to_add)}, "
                f"activate {len(diff.to_activate)}, "
                f"deactivate {len(diff.to_deactivate)}"
            )
        else:
            conn.commit()
    finally:
        conn.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, "csv_sync", dry_run,
        {"csv_path": str(path), "rejects_path": str(rejects.path)},
        counters,
        extra={"diff": diff.to_dict()},
    )
    click.echo(
        f"[{run_id}] Done: {counters.rows_read} rows read, "
        f"{counters.rows_rejected} rejected, "
        f"{counters.rows_non_recurring} non-recurring, "
        f"{counters.members_added} added, "
        f"{counters.members_activated} activated, "
        f"{counters.members_deactivated} deactivated, "
        f"{counters.apply_errors} errors. Report: {report_path}"
    )

    if counters.apply_errors > 0:
        for warning in counters.warnings:
            click.echo(f"[{run_id}] WARNING: {warning}", err=True)
        sys.exit(1)
    return diff
