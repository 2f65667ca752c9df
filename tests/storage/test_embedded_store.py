import sqlite3

import pytest
from sqlalchemy.exc import OperationalError

from storage.base import ConstraintError, StoreInitError, eq, iso_timestamp
from storage.embedded import SCHEMA_VERSION, EmbeddedStore, candidate_paths, same_song_set


def _user(store, account="alice@example.com"):
    return store.create_user(account, "hash", "user")


def _positions(store, user_id, playlist_id="later"):
    return [(row["song_id"], row["position"]) for row in store.list_playlist(user_id, playlist_id)]


def test_candidate_paths_order(tmp_path):
    paths = candidate_paths(db_dir=str(tmp_path))
    assert paths[0] == str(tmp_path / "library.sqlite")
    assert paths[1].endswith("library.sqlite") and ".music-player" in paths[1]
    assert len(paths) == 3


def test_open_falls_back_when_preferred_path_unusable(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    good = tmp_path / "good" / "library.sqlite"
    store = EmbeddedStore([str(blocker / "library.sqlite"), str(good)])
    assert store.open() == str(good)
    assert good.exists()
    store.close()


def test_open_raises_when_every_candidate_fails(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    store = EmbeddedStore([str(blocker / "a.sqlite"), str(blocker / "b.sqlite")])
    with pytest.raises(StoreInitError) as exc:
        store.open()
    assert "a.sqlite" in str(exc.value) and "b.sqlite" in str(exc.value)


def test_schema_version_recorded(embedded):
    with embedded._read() as conn:
        assert conn.exec_driver_sql("PRAGMA user_version").scalar() == SCHEMA_VERSION


def test_legacy_email_column_is_renamed(tmp_path):
    path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE users (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          email TEXT NOT NULL UNIQUE,
          password_hash TEXT NOT NULL,
          role TEXT NOT NULL DEFAULT 'user',
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE TABLE playback_logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          session_id TEXT NOT NULL, song_id TEXT NOT NULL, song_title TEXT NOT NULL,
          album_name TEXT NOT NULL, event TEXT NOT NULL,
          position_seconds REAL NOT NULL DEFAULT 0, played_seconds REAL NOT NULL DEFAULT 0,
          duration_seconds REAL, pathname TEXT NOT NULL DEFAULT '', user_agent TEXT NOT NULL DEFAULT '',
          created_at TEXT NOT NULL
        );
        INSERT INTO users (email, password_hash, role, is_active, created_at, updated_at)
        VALUES ('old@example.com', 'h', 'admin', 1, '2024-01-01T00:00:00.000Z', '2024-01-01T00:00:00.000Z');
        INSERT INTO playback_logs (session_id, song_id, song_title, album_name, event, created_at)
        VALUES ('s', 'song', 'Song', 'Album', 'play', '2024-01-01T00:00:00.000Z');
        """
    )
    conn.commit()
    conn.close()

    store = EmbeddedStore([str(path)])
    store.open()
    user = store.get_user_by_account("old@example.com")
    assert user["role"] == "admin"
    logs = store.fetch_rows("playback_logs")
    assert logs[0]["user_id"] is None
    assert store.table_exists("favorite_songs")
    store.close()


def test_duplicate_account_raises_constraint_error(embedded):
    _user(embedded)
    with pytest.raises(ConstraintError):
        _user(embedded)


def test_add_favorite_is_idempotent(embedded):
    user = _user(embedded)
    assert embedded.add_favorite(user["id"], "s1", "Song", "Album") is True
    assert embedded.add_favorite(user["id"], "s1", "Song", "Album") is False
    assert len(embedded.list_favorites(user["id"])) == 1
    assert embedded.remove_favorite(user["id"], "s1") is True
    assert embedded.remove_favorite(user["id"], "s1") is False


def test_playlist_positions_stay_dense(embedded):
    user = _user(embedded)
    for song in ("a", "b", "c"):
        assert embedded.add_playlist_item(user["id"], "later", song, song.upper(), "Album")
    assert embedded.add_playlist_item(user["id"], "later", "b", "B", "Album") is False
    assert _positions(embedded, user["id"]) == [("a", 0), ("b", 1), ("c", 2)]

    assert embedded.remove_playlist_item(user["id"], "later", "b") is True
    assert _positions(embedded, user["id"]) == [("a", 0), ("c", 1)]

    embedded.add_playlist_item(user["id"], "later", "d", "D", "Album")
    assert _positions(embedded, user["id"]) == [("a", 0), ("c", 1), ("d", 2)]


def test_playlists_are_scoped_by_id(embedded):
    user = _user(embedded)
    embedded.add_playlist_item(user["id"], "later", "a", "A", "Album")
    embedded.add_playlist_item(user["id"], "road", "a", "A", "Album")
    assert _positions(embedded, user["id"], "road") == [("a", 0)]


def test_reorder_rejects_mismatched_sets(embedded):
    user = _user(embedded)
    for song in ("a", "b", "c"):
        embedded.add_playlist_item(user["id"], "later", song, song.upper(), "Album")

    assert embedded.reorder_playlist(user["id"], "later", ["a", "b"]) is False
    assert embedded.reorder_playlist(user["id"], "later", ["a", "a", "b"]) is False
    assert embedded.reorder_playlist(user["id"], "later", ["a", "b", "x"]) is False
    assert _positions(embedded, user["id"]) == [("a", 0), ("b", 1), ("c", 2)]

    assert embedded.reorder_playlist(user["id"], "later", ["c", "a", "b"]) is True
    assert _positions(embedded, user["id"]) == [("c", 0), ("a", 1), ("b", 2)]


def test_same_song_set():
    assert same_song_set(["a", "b"], ["b", "a"])
    assert not same_song_set(["a", "b"], ["a", "a"])
    assert not same_song_set(["a"], ["a", "b"])


def test_delete_expired_sessions(embedded):
    user = _user(embedded)
    embedded.create_session(user["id"], "old", "2000-01-01T00:00:00.000Z")
    embedded.create_session(user["id"], "new", "2999-01-01T00:00:00.000Z")
    assert embedded.delete_expired_sessions(iso_timestamp()) == 1
    assert embedded.get_session("old") is None
    assert embedded.get_session("new") is not None


def test_claim_playback_logs(embedded):
    user = _user(embedded)
    base = {"session_id": "s", "song_id": "x", "song_title": "X", "album_name": "A", "event": "play"}
    embedded.insert_playback_log(base)
    embedded.insert_playback_log(dict(base, user_id=user["id"]))
    assert embedded.claim_playback_logs(user["id"]) == {"migrated_count": 1, "remaining_null_count": 0}


def test_generic_upsert_and_replace(embedded):
    user = _user(embedded)
    row = {"id": 7, "user_id": user["id"], "song_id": "s", "song_title": "Old", "album_name": "A",
           "created_at": iso_timestamp()}
    embedded.upsert_rows("favorite_songs", [row], ("user_id", "song_id"))
    embedded.upsert_rows("favorite_songs", [dict(row, song_title="New")], ("user_id", "song_id"))
    rows = embedded.fetch_rows("favorite_songs", [eq("user_id", user["id"])])
    assert [r["song_title"] for r in rows] == ["New"]

    embedded.replace_rows("favorite_songs", [eq("user_id", user["id"])], [])
    assert embedded.count_rows("favorite_songs") == 0
    with pytest.raises(ValueError):
        embedded.delete_rows("favorite_songs", [])


def test_readonly_write_reopens_fallback_and_retries_once(tmp_path, monkeypatch):
    first, second = tmp_path / "a" / "library.sqlite", tmp_path / "b" / "library.sqlite"
    store = EmbeddedStore([str(first), str(second)])
    store.open()
    assert store.path == str(first)

    original = store._run_immediate
    calls = []

    def flaky(work):
        calls.append(store.path)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, sqlite3.OperationalError("attempt to write a readonly database"))
        return original(work)

    monkeypatch.setattr(store, "_run_immediate", flaky)
    user = store.create_user("bob@example.com", "hash", "user")
    assert store.path == str(second)
    assert calls == [str(first), str(second)]
    assert store.get_user_by_id(user["id"])["account"] == "bob@example.com"
    store.close()


def test_other_operational_errors_propagate(embedded, monkeypatch):
    def broken(work):
        raise OperationalError("INSERT", {}, sqlite3.OperationalError("disk I/O error"))

    monkeypatch.setattr(embedded, "_run_immediate", broken)
    with pytest.raises(OperationalError):
        _user(embedded)
