import pytest

import migrate_to_remote
import verify_sync
from storage.base import TABLE_NAMES


def _config(tmp_path, **overrides):
    config = {
        "LIBRARY_DB_PATH": str(tmp_path / "embedded.sqlite"),
        "REMOTE_STORE_URL": "https://remote.test",
        "REMOTE_STORE_KEY": "service-key",
        "REMOTE_STORE_SCHEMA": "public",
    }
    config.update(overrides)
    return config


def _fill(embedded):
    user = embedded.create_user("alice@example.com", "hash", "user")
    embedded.create_session(user["id"], "token-hash", "2999-01-01T00:00:00.000Z")
    embedded.add_favorite(user["id"], "s1", "Song", "Album")
    embedded.add_playlist_item(user["id"], "later", "s1", "Song", "Album")
    embedded.add_playlist_item(user["id"], "later", "s2", "Song 2", "Album")
    for index, created_at in enumerate(["2024-01-01T00:00:00.000Z", "2024-06-01T00:00:00.000Z"]):
        embedded.insert_playback_log({
            "session_id": f"s{index}", "song_id": "s1", "song_title": "Song", "album_name": "Album",
            "event": "ended", "played_seconds": 40, "user_id": user["id"], "created_at": created_at,
        })
    return user


def test_migrate_is_idempotent_and_verifies(tmp_path, embedded, fake_remote):
    _fill(embedded)
    lines = []
    argv = ["--batch-size", "1"]

    assert migrate_to_remote.main(argv, config=_config(tmp_path), http_session=fake_remote, out=lines.append) == 0
    first = {table: len(rows) for table, rows in fake_remote.tables.items()}
    assert migrate_to_remote.main(argv, config=_config(tmp_path), http_session=fake_remote, out=lines.append) == 0
    second = {table: len(rows) for table, rows in fake_remote.tables.items()}

    assert first == second == {table: embedded.count_rows(table) for table in TABLE_NAMES}

    report = []
    assert verify_sync.main([], config=_config(tmp_path), http_session=fake_remote, out=report.append) == 0
    assert all(line.startswith("OK") for line in report)


def test_dry_run_sends_nothing(tmp_path, embedded, fake_remote):
    _fill(embedded)
    lines = []
    assert migrate_to_remote.main(["--dry-run"], config=_config(tmp_path), http_session=fake_remote,
                                  out=lines.append) == 0
    assert all(rows == [] for rows in fake_remote.tables.values())
    assert not [call for call in fake_remote.calls if call["method"] == "POST"]


def test_from_created_at_limits_playback_logs(tmp_path, embedded, fake_remote, remote_client):
    _fill(embedded)
    summary = migrate_to_remote.migrate(embedded, remote_client, from_created_at="2024-03-01T00:00:00.000Z",
                                        out=lambda line: None)
    assert summary["playback_logs"] == 1
    assert summary["users"] == 1
    assert [row["created_at"] for row in fake_remote.tables["playback_logs"]] == ["2024-06-01T00:00:00.000Z"]


def test_preflight_reports_missing_tables(embedded, fake_remote, remote_client):
    del fake_remote.tables["playback_logs"]
    with pytest.raises(migrate_to_remote.MissingRemoteTables) as exc:
        migrate_to_remote.migrate(embedded, remote_client, out=lambda line: None)
    assert exc.value.tables == ["playback_logs"]
    assert not [call for call in fake_remote.calls if call["method"] == "POST"]


def test_db_flag_reads_given_file(tmp_path, embedded, fake_remote):
    _fill(embedded)
    config = _config(tmp_path, LIBRARY_DB_PATH=str(tmp_path / "other.sqlite"))
    lines = []
    assert migrate_to_remote.main(["--db", embedded.path], config=config, http_session=fake_remote,
                                  out=lines.append) == 0
    assert len(fake_remote.tables["users"]) == 1


def test_db_flag_rejects_missing_file(tmp_path, fake_remote):
    missing = tmp_path / "typo.sqlite"
    lines = []
    assert migrate_to_remote.main(["--db", str(missing)], config=_config(tmp_path), http_session=fake_remote,
                                  out=lines.append) == 1
    assert not missing.exists()
    assert "not found" in lines[-1]
    assert not fake_remote.calls


def test_missing_credentials_fail(tmp_path, fake_remote):
    lines = []
    config = _config(tmp_path, REMOTE_STORE_KEY="")
    assert migrate_to_remote.main([], config=config, http_session=fake_remote, out=lines.append) == 1
    assert verify_sync.main([], config=config, http_session=fake_remote, out=lines.append) == 1


def test_verify_reports_mismatch_and_missing(tmp_path, embedded, fake_remote, remote_client):
    _fill(embedded)
    migrate_to_remote.migrate(embedded, remote_client, out=lambda line: None)
    fake_remote.tables["favorite_songs"].clear()
    del fake_remote.tables["auth_sessions"]

    reports = {report.table: report for report in verify_sync.verify(embedded, remote_client)}
    assert reports["favorite_songs"].status == verify_sync.MISMATCH
    assert reports["auth_sessions"].status == verify_sync.MISSING
    assert reports["users"].status == verify_sync.OK

    lines = []
    assert verify_sync.main([], config=_config(tmp_path), http_session=fake_remote, out=lines.append) == 1
    assert any("MISMATCH" in line and "favorite_songs" in line for line in lines)
    assert any("auth_sessions" in line and "missing" in line for line in lines)


def test_remote_with_more_rows_is_ok(embedded, fake_remote, remote_client):
    fake_remote.tables["users"].append({"id": 50, "account": "remote-only"})
    reports = {report.table: report for report in verify_sync.verify(embedded, remote_client)}
    assert reports["users"].status == verify_sync.OK
