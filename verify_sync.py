"""
verify_sync.py: compare row counts between the embedded database and the remote store.

A table is OK when the remote holds at least as many rows as the local copy.
Exit code 1 when any table is a MISMATCH.
"""

import argparse
import sys
from collections import namedtuple

from dotenv import load_dotenv

load_dotenv()

from config import load_config  # noqa: E402  (load_dotenv needs to run first)
from storage.backend import SyncConfig  # noqa: E402
from storage.base import TABLE_NAMES, StorageError  # noqa: E402
from storage.remote import RemoteStoreClient  # noqa: E402
from migrate_to_remote import open_local  # noqa: E402

TableReport = namedtuple("TableReport", ["table", "local", "remote", "status"])

OK = "OK"
MISMATCH = "MISMATCH"
MISSING = "MISSING"


def verify(local, remote, tables=TABLE_NAMES):
    reports = []
    for table in tables:
        local_count = local.count_rows(table) if local.table_exists(table) else 0
        if not remote.table_exists(table):
            reports.append(TableReport(table, local_count, None, MISSING))
            continue
        remote_count = remote.count_rows(table)
        status = OK if remote_count >= local_count else MISMATCH
        reports.append(TableReport(table, local_count, remote_count, status))
    return reports


def main(argv=None, config=None, http_session=None, out=print):
    parser = argparse.ArgumentParser(description="Compare local and remote row counts.")
    parser.add_argument("--db", help="SQLite file to read instead of the configured one")
    args = parser.parse_args(argv)
    config = config if config is not None else load_config()

    try:
        sync_config = SyncConfig.from_config(config).require_credentials()
        remote = RemoteStoreClient.from_sync_config(sync_config, session=http_session)
        local = open_local(config, args.db)
    except StorageError as exc:
        out(f"❌ {exc}")
        return 1

    try:
        reports = verify(local, remote)
    except StorageError as exc:
        out(f"❌ {exc}")
        return 1
    finally:
        local.close()

    for report in reports:
        if report.status == MISSING:
            out(f"⚠️  {report.table}: remote table missing, skipped (local={report.local})")
        else:
            out(f"{report.status:8} {report.table}: local={report.local} remote={report.remote}")
    return 1 if any(report.status == MISMATCH for report in reports) else 0


if __name__ == "__main__":
    sys.exit(main())
