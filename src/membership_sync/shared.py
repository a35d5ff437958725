"""membership_sync.shared

Shared utilities used by the webhook service and the CSV sync mode.
Includes the exception taxonomy, RejectWriter, RunCounters, header
normalization and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MembershipError(Exception):
    """Base class for errors raised by membership_sync."""


class ValidationError(MembershipError, ValueError):
    """Raised when an inbound event lacks a required field or is malformed."""


class AuthError(MembershipError):
    """Raised when a webhook request carries no matching shared secret."""


class StoreError(MembershipError):
    """Raised when a read or write against the member store fails."""


class UnsupportedEvent(MembershipError):
    """Raised for vendor event types this service does not reconcile."""


class CsvHeaderError(MembershipError):
    """Raised when a snapshot CSV is missing a required column."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Snapshot read phase
    rows_read: int = 0
    rows_rejected: int = 0
    rows_non_recurring: int = 0
    rows_inactive: int = 0
    snapshot_active_emails: int = 0
    # Diff
    staged_add: int = 0
    staged_activate: int = 0
    staged_deactivate: int = 0
    # Apply phase
    members_added: int = 0
    members_activated: int = 0
    members_deactivated: int = 0
    apply_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped."""
    return {(k or "").strip(): v for k, v in raw.items()}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
        **(extra or {}),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
