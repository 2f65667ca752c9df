"""Library/telemetry operations expressed over the remote REST store."""

from typing import List, Optional, Sequence

from storage.base import (
    TERMINATING_EVENTS,
    ConstraintError,
    Filter,
    RemoteStoreError,
    eq,
    iso_timestamp,
    parse_timestamp,
    to_float,
)
from storage.embedded import same_song_set
from storage.remote import RemoteStoreClient

USER_COLUMNS = "id,account,password_hash,role,is_active,created_at,updated_at"
PLAYLIST_COLUMNS = "id,user_id,playlist_id,song_id,song_title,album_name,position,created_at"
STATS_COLUMNS = "id,song_id,song_title,album_name,event,played_seconds,created_at"


class RestBackend:
    """
    Same operation shapes as EmbeddedStore, issued as REST calls.

    The remote tables have no sequences, so new ids are max(id) + 1. Multi-row
    changes (compaction, reorder) are a series of PATCH calls; a failure part
    way through leaves a state the next mutation or a re-run repairs.
    """

    name = "remote"

    def __init__(self, client: RemoteStoreClient):
        self.client = client

    # ---------- users ----------

    def get_user_by_id(self, user_id: int) -> Optional[dict]:
        return self.client.fetch_one("users", [eq("id", user_id)], select=USER_COLUMNS)

    def get_user_by_account(self, account: str) -> Optional[dict]:
        return self.client.fetch_one("users", [eq("account", account)], select=USER_COLUMNS)

    def create_user(self, account: str, password_hash: str, role: str) -> dict:
        now = iso_timestamp()
        row = {
            "id": self.client.next_id("users"),
            "account": account,
            "password_hash": password_hash,
            "role": role,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        try:
            created = self.client.insert_rows("users", [row])
        except RemoteStoreError as exc:
            if exc.status == 409 and self.get_user_by_account(account) is not None:
                raise ConstraintError(f"Account already exists: {account}") from exc
            raise
        return created[0] if created else row

    def update_user(self, user_id: int, password_hash: str, role: str) -> Optional[dict]:
        self.client.patch_rows(
            "users",
            {"password_hash": password_hash, "role": role, "is_active": True, "updated_at": iso_timestamp()},
            [eq("id", user_id)],
        )
        return self.get_user_by_id(user_id)

    # ---------- auth sessions ----------

    def create_session(self, user_id: int, token_hash: str, expires_at: str) -> None:
        self.client.insert_rows("auth_sessions", [{
            "id": self.client.next_id("auth_sessions"),
            "user_id": user_id,
            "token_hash": token_hash,
            "created_at": iso_timestamp(),
            "expires_at": expires_at,
        }])

    def get_session(self, token_hash: str) -> Optional[dict]:
        return self.client.fetch_one("auth_sessions", [eq("token_hash", token_hash)])

    def delete_session(self, token_hash: str) -> None:
        self.client.delete_rows("auth_sessions", [eq("token_hash", token_hash)])

    def delete_expired_sessions(self, now: str) -> int:
        return self.client.delete_rows("auth_sessions", [Filter("expires_at", "lte", now)], count=True)

    # ---------- favorites ----------

    def list_favorites(self, user_id: int) -> List[dict]:
        return self.client.fetch_rows("favorite_songs", [eq("user_id", user_id)],
                                      order_by=["created_at.desc", "id.desc"])

    def add_favorite(self, user_id: int, song_id: str, song_title: str, album_name: str) -> bool:
        scope = [eq("user_id", user_id), eq("song_id", song_id)]
        if self.client.fetch_one("favorite_songs", scope, select="id"):
            return False
        self.client.upsert_rows("favorite_songs", [{
            "id": self.client.next_id("favorite_songs"),
            "user_id": user_id,
            "song_id": song_id,
            "song_title": song_title,
            "album_name": album_name,
            "created_at": iso_timestamp(),
        }], ["user_id", "song_id"])
        return True

    def remove_favorite(self, user_id: int, song_id: str) -> bool:
        scope = [eq("user_id", user_id), eq("song_id", song_id)]
        existed = self.client.fetch_one("favorite_songs", scope, select="id") is not None
        self.client.delete_rows("favorite_songs", scope)
        return existed

    # ---------- playlists ----------

    @staticmethod
    def _scope(user_id, playlist_id) -> List[Filter]:
        return [eq("user_id", user_id), eq("playlist_id", playlist_id)]

    def list_playlist(self, user_id: int, playlist_id: str) -> List[dict]:
        return self.client.fetch_rows("playlist_items", self._scope(user_id, playlist_id),
                                      select=PLAYLIST_COLUMNS, order_by=["position.asc", "id.asc"])

    def add_playlist_item(self, user_id: int, playlist_id: str, song_id: str,
                          song_title: str, album_name: str) -> bool:
        scope = self._scope(user_id, playlist_id)
        if self.client.fetch_one("playlist_items", scope + [eq("song_id", song_id)], select="id"):
            return False
        last = self.client.fetch_one("playlist_items", scope, select="position,id",
                                     order_by=["position.desc", "id.desc"])
        position = int(last["position"]) + 1 if last else 0
        self.client.insert_rows("playlist_items", [{
            "id": self.client.next_id("playlist_items"),
            "user_id": user_id,
            "playlist_id": playlist_id,
            "song_id": song_id,
            "song_title": song_title,
            "album_name": album_name,
            "position": position,
            "created_at": iso_timestamp(),
        }])
        return True

    def remove_playlist_item(self, user_id: int, playlist_id: str, song_id: str) -> bool:
        scope = self._scope(user_id, playlist_id)
        existed = self.client.fetch_one("playlist_items", scope + [eq("song_id", song_id)], select="id")
        self.client.delete_rows("playlist_items", scope + [eq("song_id", song_id)])
        self._compact_positions(scope)
        return existed is not None

    def _compact_positions(self, scope: List[Filter]) -> None:
        rows = self.client.fetch_rows("playlist_items", scope, select="song_id,position,id",
                                      order_by=["position.asc", "id.asc"])
        for index, row in enumerate(rows):
            if int(row["position"]) != index:
                self.client.patch_rows("playlist_items", {"position": index},
                                       scope + [eq("song_id", row["song_id"])])

    def reorder_playlist(self, user_id: int, playlist_id: str, song_ids: Sequence[str]) -> bool:
        scope = self._scope(user_id, playlist_id)
        existing = [row["song_id"] for row in self.client.fetch_rows("playlist_items", scope, select="song_id")]
        if not same_song_set(existing, song_ids):
            return False
        for index, song_id in enumerate(song_ids):
            self.client.patch_rows("playlist_items", {"position": index}, scope + [eq("song_id", song_id)])
        return True

    # ---------- playback telemetry ----------

    def insert_playback_log(self, values: dict) -> int:
        row = dict(values)
        row.setdefault("created_at", iso_timestamp())
        row["id"] = self.client.next_id("playback_logs")
        self.client.insert_rows("playback_logs", [row])
        return row["id"]

    def claim_playback_logs(self, user_id: int) -> dict:
        anonymous = [Filter("user_id", "is", None)]
        before = self.client.count_rows("playback_logs", anonymous)
        self.client.patch_rows("playback_logs", {"user_id": user_id}, anonymous)
        after = self.client.count_rows("playback_logs", anonymous)
        return {"migrated_count": before - after, "remaining_null_count": after}

    def playback_stats(self, user_id: Optional[int], include_anonymous: bool, threshold: float) -> dict:
        filters = []
        if user_id is not None:
            filters.append(eq("user_id", user_id))
        elif not include_anonymous:
            filters.append(Filter("user_id", "not.is", None))
        rows = self.client.fetch_all_rows("playback_logs", filters, select=STATS_COLUMNS)
        return aggregate_playback_rows(rows, threshold)

    # ---------- generic row access ----------

    def table_exists(self, table_name: str) -> bool:
        return self.client.table_exists(table_name)

    def fetch_rows(self, table_name: str, filters: Sequence[Filter] = (),
                   after_id: Optional[int] = None, limit: Optional[int] = None) -> List[dict]:
        filters = list(filters)
        if after_id is not None:
            filters.append(Filter("id", "gt", after_id))
        if limit is None:
            return self.client.fetch_all_rows(table_name, filters)
        return self.client.fetch_rows(table_name, filters, order_by=["id.asc"], limit=limit)

    def count_rows(self, table_name: str, filters: Sequence[Filter] = ()) -> int:
        return self.client.count_rows(table_name, filters)

    def upsert_rows(self, table_name: str, rows: Sequence[dict], conflict_columns: Sequence[str]) -> None:
        self.client.upsert_rows(table_name, rows, conflict_columns)

    def delete_rows(self, table_name: str, filters: Sequence[Filter]) -> None:
        self.client.delete_rows(table_name, filters)

    def replace_rows(self, table_name: str, filters: Sequence[Filter], rows: Sequence[dict]) -> None:
        self.client.replace_rows(table_name, filters, rows)


def aggregate_playback_rows(rows, threshold: float) -> dict:
    """
    In-process version of the SQL rollups: only terminating events count,
    rows are grouped per (song id, title, album) and per album.
    """
    summary = {"total_played_seconds": 0.0, "sessions": 0, "play_count": 0,
               "song_count": 0, "album_count": 0}
    songs, albums = {}, {}
    song_ids, album_names = set(), set()

    for row in rows:
        if str(row.get("event") or "") not in TERMINATING_EVENTS:
            continue
        played = to_float(row.get("played_seconds"), 0.0)
        qualified = 1 if played >= threshold else 0
        song_id = str(row.get("song_id") or "")
        album_name = str(row.get("album_name") or "")
        created_at = row.get("created_at")

        summary["total_played_seconds"] += played
        summary["sessions"] += 1
        summary["play_count"] += qualified
        song_ids.add(song_id)
        album_names.add(album_name)

        key = (song_id, str(row.get("song_title") or ""), album_name)
        song = songs.setdefault(key, {
            "song_id": key[0], "song_title": key[1], "album_name": key[2],
            "total_played_seconds": 0.0, "sessions": 0, "play_count": 0,
            "avg_session_seconds": 0.0, "last_played_at": None,
        })
        song["total_played_seconds"] += played
        song["sessions"] += 1
        song["play_count"] += qualified
        song["avg_session_seconds"] = song["total_played_seconds"] / song["sessions"]
        song["last_played_at"] = _latest(song["last_played_at"], created_at)

        album = albums.setdefault(album_name, {
            "album_name": album_name, "total_played_seconds": 0.0, "sessions": 0,
            "play_count": 0, "song_ids": set(), "last_played_at": None,
        })
        album["total_played_seconds"] += played
        album["sessions"] += 1
        album["play_count"] += qualified
        album["song_ids"].add(song_id)
        album["last_played_at"] = _latest(album["last_played_at"], created_at)

    summary["song_count"] = len(song_ids)
    summary["album_count"] = len(album_names)
    album_rows = []
    for album in albums.values():
        album["song_count"] = len(album.pop("song_ids"))
        album_rows.append(album)
    return {"summary": summary, "songs": list(songs.values()), "albums": album_rows}


def _latest(current, candidate):
    if not candidate:
        return current
    if not current:
        return candidate
    left, right = parse_timestamp(current), parse_timestamp(candidate)
    if left is None:
        return candidate
    if right is None:
        return current
    return candidate if right > left else current
