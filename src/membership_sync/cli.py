"""membership_sync.cli

Command-line entry point (console script: membership-sync).

Modes:
  serve     run the webhook service under uvicorn
  csv_sync  reconcile member statuses against a donation-platform CSV export
  stats     print aggregate member statistics as JSON
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import uvicorn

from membership_sync.config import ConfigError, Settings, load_settings
from membership_sync.shared import RejectWriter, RunCounters, StoreError
from membership_sync.store import MemberStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _serve(settings: Settings, run_id: str) -> None:
    from membership_sync.app import ServiceContext, create_app

    if not settings.webhook_secret:
        click.echo(
            f"[{run_id}] WARNING: WEBHOOK_SECRET is not set; /webhook will reject every request",
            err=True,
        )
    context = ServiceContext.from_settings(settings)
    app = create_app(context)
    click.echo(f"[{run_id}] Webhook server listening on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


def _stats(settings: Settings, run_id: str) -> None:
    store = MemberStore(settings.database_url, min_size=1, max_size=1)
    try:
        stats = store.stats()
    except StoreError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        store.close()
    click.echo(json.dumps(stats.to_dict(), indent=2))


@click.command()
@click.option(
    "--mode",
    default="serve",
    type=click.Choice(["serve", "csv_sync", "stats"]),
    show_default=True,
    help="Run mode",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Optional YAML settings file; environment variables override it",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (overrides DATABASE_URL)")
@click.option("--host", default=None, help="[serve] Bind address (overrides HOST)")
@click.option("--port", default=None, type=int, help="[serve] Bind port (overrides PORT)")
@click.option("--csv-path", default=None, type=click.Path(), help="[csv_sync] Snapshot CSV export")
@click.option("--dry-run", is_flag=True, default=False, help="[csv_sync] Report the diff without writing")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/csv_sync_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    config_path: str | None,
    db_dsn: str | None,
    host: str | None,
    port: int | None,
    csv_path: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """Membership sync service and batch reconciler."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        settings = load_settings(
            Path(config_path) if config_path else None,
            overrides={"database_url": db_dsn, "host": host, "port": port},
        )
    except ConfigError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    configure_logging(settings.log_level)
    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "serve":
        _serve(settings, run_id)
    elif mode == "stats":
        _stats(settings, run_id)
    elif mode == "csv_sync":
        if not csv_path:
            click.echo(f"[{run_id}] FATAL: --csv-path is required for csv_sync", err=True)
            sys.exit(1)
        from membership_sync.batch import run_csv_sync
        run_csv_sync(
            run_id, started_at, settings.database_url,
            RunCounters(), RejectWriter(Path(rejects_path)),
            csv_path=csv_path,
            dry_run=dry_run,
        )


if __name__ == "__main__":
    main()
