"""
migrate_to_remote.py: copy the embedded library database to the remote store.

Usage:
- python migrate_to_remote.py                      → upsert every table
- python migrate_to_remote.py --dry-run            → only count what would be sent
- python migrate_to_remote.py --db path/to.sqlite  → read a specific SQLite file
- python migrate_to_remote.py --from-created-at 2024-01-01T00:00:00.000Z
                                                   → only newer playback logs

Upserts on each table's natural key, so running it twice changes nothing.
"""

import argparse
import os
import sys

from dotenv import load_dotenv

load_dotenv()

from config import load_config  # noqa: E402  (load_dotenv needs to run first)
from storage.backend import SyncConfig  # noqa: E402
from storage.base import TABLE_CONFLICT_KEYS, TABLE_NAMES, Filter, StorageError, StoreInitError  # noqa: E402
from storage.embedded import EmbeddedStore  # noqa: E402
from storage.remote import RemoteStoreClient  # noqa: E402

DEFAULT_BATCH_SIZE = 500


class MissingRemoteTables(StorageError):
    def __init__(self, tables):
        super().__init__(f"Remote tables missing: {', '.join(tables)}")
        self.tables = list(tables)


def table_filters(table, from_created_at=None):
    if table == "playback_logs" and from_created_at:
        return [Filter("created_at", "gte", from_created_at)]
    return []


def preflight(remote, tables=TABLE_NAMES):
    missing = [table for table in tables if not remote.table_exists(table)]
    if missing:
        raise MissingRemoteTables(missing)


def migrate_table(local, remote, table, batch_size=DEFAULT_BATCH_SIZE, dry_run=False,
                  from_created_at=None, out=print):
    """Streams one table in id order; returns the number of rows read."""
    filters = table_filters(table, from_created_at)
    conflict_columns = TABLE_CONFLICT_KEYS[table]
    total = 0
    last_id = None
    while True:
        rows = local.fetch_rows(table, filters, after_id=last_id, limit=batch_size)
        if not rows:
            break
        if not dry_run:
            remote.upsert_rows(table, rows, conflict_columns)
        total += len(rows)
        last_id = rows[-1]["id"]
        out(f"  {table}: {total} rows {'counted' if dry_run else 'upserted'}")
        if len(rows) < batch_size:
            break
    return total


def migrate(local, remote, batch_size=DEFAULT_BATCH_SIZE, dry_run=False, from_created_at=None, out=print):
    """Copies every table in dependency order; returns {table: rows}."""
    preflight(remote)
    summary = {}
    for table in TABLE_NAMES:
        out(f"→ {table}")
        summary[table] = migrate_table(
            local, remote, table,
            batch_size=batch_size, dry_run=dry_run, from_created_at=from_created_at, out=out,
        )
    return summary


def open_local(config, db_path=None):
    if db_path:
        if not os.path.isfile(db_path):
            raise StoreInitError(f"SQLite file not found: {db_path}")
        local = EmbeddedStore([db_path])
        local.open()
        return local
    return EmbeddedStore.from_config(config)


def build_parser():
    parser = argparse.ArgumentParser(description="Copy the embedded library database to the remote store.")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, help="Rows per request")
    parser.add_argument("--dry-run", action="store_true", help="Read and count only, send nothing")
    parser.add_argument("--db", help="SQLite file to read instead of the configured one")
    parser.add_argument("--from-created-at", help="Only playback logs created at or after this ISO time")
    return parser


def main(argv=None, config=None, http_session=None, out=print):
    args = build_parser().parse_args(argv)
    config = config if config is not None else load_config()
    batch_size = max(1, args.batch_size)

    try:
        sync_config = SyncConfig.from_config(config).require_credentials()
        remote = RemoteStoreClient.from_sync_config(sync_config, session=http_session)
        local = open_local(config, args.db)
    except StorageError as exc:
        out(f"❌ {exc}")
        return 1

    out(f"Source: {local.path}")
    out(f"Target: {remote.base_url} (schema {remote.schema}){' [dry run]' if args.dry_run else ''}")
    try:
        summary = migrate(local, remote, batch_size=batch_size, dry_run=args.dry_run,
                          from_created_at=args.from_created_at, out=out)
    except StorageError as exc:
        out(f"❌ {exc}")
        return 1
    finally:
        local.close()

    for table, count in summary.items():
        out(f"✅ {table}: {count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
