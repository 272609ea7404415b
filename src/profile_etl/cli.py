"""profile-etl command-line entry point.

Modes:
  batch_import      CSV (--csv-path) or JSON list (--json-path) of raw rows
  extract_and_save  JSON field bag from the document extractor
  save_edited       JSON edited-profile form
  delete_profile    remove employee, profile, role and identity rows
  show_profile      print the combined profile view

--db-dsn memory:// runs against an in-process store (nothing persists).

Usage:
    profile-etl --mode batch_import --db-dsn "$DSN" --csv-path onboarding.csv
    profile-etl --mode show_profile --db-dsn "$DSN" --identity-id <uuid>
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

import click
import psycopg
import yaml

from profile_etl.aliases import AliasConfigError, default_alias_config, load_alias_config
from profile_etl.batch import import_batch, read_batch_csv
from profile_etl.merge import LEGACY_SYNC_POLICIES
from profile_etl.service import (
    delete_profile,
    extract_and_save,
    get_profile_view,
    save_edited,
)
from profile_etl.shared import (
    ProfileEtlError,
    RejectWriter,
    RunCounters,
    write_run_report,
)
from profile_etl.store import InMemoryStore, PostgresStore, ProfileStore

MEMORY_DSN = "memory://"


@contextmanager
def _open_store(db_dsn: str, dry_run: bool) -> Iterator[ProfileStore]:
    """Yield a store; under --dry-run every write is rolled back at exit."""
    if db_dsn == MEMORY_DSN:
        yield InMemoryStore()
        return
    conn = psycopg.connect(db_dsn, autocommit=True)
    try:
        outer = conn.transaction(force_rollback=True) if dry_run else nullcontext()
        with outer:
            yield PostgresStore(conn)
    finally:
        conn.close()


def _load_json(path: str | None, run_id: str) -> Any:
    if not path:
        click.echo(f"[{run_id}] FATAL: --json-path is required for this mode", err=True)
        sys.exit(1)
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _require(value: str | None, flag: str, run_id: str) -> str:
    if not value:
        click.echo(f"[{run_id}] FATAL: {flag} is required for this mode", err=True)
        sys.exit(1)
    return value


@click.command()
@click.option(
    "--mode",
    default="batch_import",
    type=click.Choice([
        "batch_import", "extract_and_save", "save_edited",
        "delete_profile", "show_profile",
    ]),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", required=True, help=f"PostgreSQL DSN, or {MEMORY_DSN}")
@click.option("--csv-path", default=None, type=click.Path(), help="[batch_import] Input CSV")
@click.option(
    "--json-path",
    default=None,
    type=click.Path(),
    help="[batch_import|extract_and_save|save_edited] Input JSON",
)
@click.option("--alias-file", default=None, type=click.Path(), help="Alias table YAML override")
@click.option(
    "--privileged/--no-privileged",
    default=None,
    help="Caller may create identities (default: on for batch_import, off otherwise)",
)
@click.option("--caller-identity", default=None, help="[extract_and_save|save_edited] Caller's identity id")
@click.option("--identity-id", default=None, help="[delete_profile|show_profile] Target identity id")
@click.option(
    "--legacy-sync",
    default="best_effort",
    type=click.Choice(list(LEGACY_SYNC_POLICIES)),
    show_default=True,
    help="Policy when the legacy employee write fails",
)
@click.option("--max-workers", default=1, type=int, show_default=True, help="[batch_import] Row worker threads")
@click.option("--deadline-seconds", default=None, type=float, help="[batch_import] Cancel rows not started in time")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/profile_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    json_path: str | None,
    alias_file: str | None,
    privileged: bool | None,
    caller_identity: str | None,
    identity_id: str | None,
    legacy_sync: str,
    max_workers: int,
    deadline_seconds: float | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Profile/employee ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        config = load_alias_config(Path(alias_file)) if alias_file else default_alias_config()
    except (AliasConfigError, yaml.YAMLError, OSError) as exc:
        click.echo(f"[{run_id}] FATAL: alias file rejected: {exc}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Alias tables version={config.version} sha256={config.yaml_hash[:12]}")

    extra: dict[str, Any] = {"alias_version": config.version, "alias_sha256": config.yaml_hash}
    try:
        with _open_store(db_dsn, dry_run) as store:
            if mode == "batch_import":
                if csv_path:
                    rows = read_batch_csv(Path(csv_path))
                else:
                    rows = _load_json(json_path, run_id)
                    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
                        click.echo(f"[{run_id}] FATAL: JSON input must be a list of objects", err=True)
                        sys.exit(1)
                report = import_batch(
                    store,
                    rows,
                    privileged=True if privileged is None else privileged,
                    config=config,
                    legacy_sync=legacy_sync,
                    max_workers=max_workers,
                    deadline_seconds=deadline_seconds,
                    counters=counters,
                )
                rejects = RejectWriter(Path(rejects_path))
                try:
                    for result in report.results:
                        if not result.success:
                            raw = rows[result.index]
                            source = raw.get("_raw") if isinstance(raw.get("_raw"), dict) else raw
                            rejects.write(dict(source), result.error or result.status)
                            click.echo(f"[{run_id}] row {result.index}: {result.error}", err=True)
                finally:
                    rejects.close()
                click.echo(f"[{run_id}] {report.message}")
                extra["summary"] = {
                    "total": report.total,
                    "successful": report.successful,
                    "failed": report.failed,
                    "cancelled": report.cancelled,
                }
            elif mode == "extract_and_save":
                out = extract_and_save(
                    store,
                    _load_json(json_path, run_id),
                    caller_identity,
                    caller_is_privileged=bool(privileged),
                    config=config,
                    legacy_sync=legacy_sync,
                    counters=counters,
                )
                click.echo(json.dumps(out, indent=2, default=str))
            elif mode == "save_edited":
                out = save_edited(
                    store,
                    _load_json(json_path, run_id),
                    caller_identity,
                    caller_is_privileged=bool(privileged),
                    config=config,
                    legacy_sync=legacy_sync,
                    counters=counters,
                )
                click.echo(json.dumps(out, indent=2, default=str))
            elif mode == "delete_profile":
                deleted = delete_profile(store, _require(identity_id, "--identity-id", run_id))
                click.echo(json.dumps(deleted.to_dict(), indent=2))
                extra["deleted"] = deleted.to_dict()
            elif mode == "show_profile":
                view = get_profile_view(store, _require(identity_id, "--identity-id", run_id))
                click.echo(json.dumps(view, indent=2, default=str))
    except ProfileEtlError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    if dry_run:
        click.echo(f"[{run_id}] DRY RUN - rolled back.")

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {"csv_path": csv_path, "json_path": json_path},
        counters,
        extra=extra,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
