"""
Accounts, login sessions, favorites and ordered playlists.

Every call goes to the primary backend and its errors propagate. After a
successful mutation the affected scope is handed to the replicator, which
copies it to the other backend in the background.
"""

import logging
from datetime import timedelta
from typing import List, Optional, Sequence, Tuple

from storage.base import (
    DEFAULT_PLAYLIST_ID,
    USER_ROLES,
    Filter,
    UserRecord,
    eq,
    iso_timestamp,
    normalize_account,
    normalize_playlist_id,
    parse_timestamp,
    to_int,
    utc_now,
)
from storage.security import (
    create_session_token,
    hash_password,
    hash_session_token,
    verify_password_hash,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_DAYS = 14


def session_days(value) -> int:
    days = to_int(value)
    return days if days and days > 0 else DEFAULT_SESSION_DAYS


def _require_user_id(user_id) -> int:
    normalized = to_int(user_id)
    if normalized is None:
        raise ValueError("Invalid user id")
    return normalized


def _song_payload(song_id, song_title, album_name) -> Tuple[str, str, str]:
    values = tuple(str(value).strip() if isinstance(value, str) else "" for value in (song_id, song_title, album_name))
    if not all(values):
        raise ValueError("Missing song payload")
    return values


def _song_item(row: dict) -> dict:
    item = {
        "song_id": str(row["song_id"]),
        "song_title": str(row["song_title"]),
        "album_name": str(row["album_name"]),
        "created_at": str(row.get("created_at") or ""),
    }
    if "position" in row:
        item["position"] = int(row["position"])
    return item


class LibraryStore:
    def __init__(self, primary, replicator, session_days_value=DEFAULT_SESSION_DAYS):
        self.primary = primary
        self.replicator = replicator
        self.session_days = session_days(session_days_value)

    @property
    def session_max_age(self) -> int:
        """Cookie lifetime in seconds."""
        return self.session_days * 24 * 60 * 60

    # ---------- users ----------

    def get_user_by_id(self, user_id) -> Optional[UserRecord]:
        normalized = to_int(user_id)
        if normalized is None:
            return None
        return UserRecord.from_row(self.primary.get_user_by_id(normalized))

    def get_user_by_account(self, account) -> Optional[UserRecord]:
        normalized = normalize_account(account)
        if not normalized:
            return None
        return UserRecord.from_row(self.primary.get_user_by_account(normalized))

    def create_user(self, account, password, role: str = "user") -> UserRecord:
        """Raises ConstraintError if the (case-insensitive) account exists."""
        normalized = normalize_account(account)
        if not normalized:
            raise ValueError("Account is required")
        if not password:
            raise ValueError("Password is required")
        role = role if role in USER_ROLES else "user"
        row = self.primary.create_user(normalized, hash_password(password), role)
        user = UserRecord.from_row(row)
        self.replicator.sync_scope("users", [eq("id", user.id)])
        logger.info("Created user %s (id=%s, role=%s)", normalized, user.id, role)
        return user

    def upsert_user(self, account, password, role: str = "user") -> UserRecord:
        """Create the account, or reset its password/role and reactivate it."""
        normalized = normalize_account(account)
        if not normalized:
            raise ValueError("Account is required")
        if not password:
            raise ValueError("Password is required")
        existing = self.primary.get_user_by_account(normalized)
        if existing is None:
            return self.create_user(normalized, password, role)
        role = role if role in USER_ROLES else str(existing["role"])
        row = self.primary.update_user(int(existing["id"]), hash_password(password), role)
        self.replicator.sync_scope("users", [eq("id", int(existing["id"]))])
        return UserRecord.from_row(row)

    def verify_password(self, user: UserRecord, password) -> bool:
        if user is None:
            return False
        row = self.primary.get_user_by_id(user.id)
        return bool(row) and verify_password_hash(str(row.get("password_hash") or ""), password)

    def authenticate(self, account, password) -> Optional[UserRecord]:
        user = self.get_user_by_account(account)
        if user is None or not user.active:
            return None
        return user if self.verify_password(user, password) else None

    # ---------- sessions ----------

    def create_session(self, user_id) -> Tuple[str, int]:
        """Returns (raw token, max age seconds). Only the token hash is stored."""
        user_id = _require_user_id(user_id)
        token = create_session_token()
        token_hash = hash_session_token(token)
        expires_at = iso_timestamp(utc_now() + timedelta(seconds=self.session_max_age))
        self.primary.create_session(user_id, token_hash, expires_at)
        self.replicator.sync_scope("auth_sessions", [eq("token_hash", token_hash)])
        return token, self.session_max_age

    def resolve_session(self, raw_token) -> Optional[UserRecord]:
        if not raw_token or not isinstance(raw_token, str):
            return None
        token_hash = hash_session_token(raw_token)
        now = utc_now()
        self.delete_expired_sessions(iso_timestamp(now))

        session = self.primary.get_session(token_hash)
        if session is None:
            return None
        expires_at = parse_timestamp(session.get("expires_at"))
        if expires_at is None or expires_at <= now:
            self.primary.delete_session(token_hash)
            self.replicator.sync_scope("auth_sessions", [eq("token_hash", token_hash)])
            return None

        user = self.get_user_by_id(session.get("user_id"))
        if user is None or not user.active:
            return None
        user.session_expires_at = str(session.get("expires_at"))
        return user

    def delete_session(self, raw_token) -> None:
        if not raw_token or not isinstance(raw_token, str):
            return
        token_hash = hash_session_token(raw_token)
        self.primary.delete_session(token_hash)
        self.replicator.sync_scope("auth_sessions", [eq("token_hash", token_hash)])

    def delete_expired_sessions(self, now: Optional[str] = None) -> None:
        now = now or iso_timestamp()
        deleted = self.primary.delete_expired_sessions(now)
        if deleted:
            self.replicator.sync_scope("auth_sessions", [Filter("expires_at", "lte", now)])

    # ---------- favorites ----------

    def list_favorites(self, user_id) -> List[dict]:
        normalized = to_int(user_id)
        if normalized is None:
            return []
        return [_song_item(row) for row in self.primary.list_favorites(normalized)]

    def add_favorite(self, user_id, song_id, song_title, album_name) -> bool:
        """Idempotent; returns False when the song was already a favorite."""
        user_id = _require_user_id(user_id)
        song_id, song_title, album_name = _song_payload(song_id, song_title, album_name)
        added = self.primary.add_favorite(user_id, song_id, song_title, album_name)
        self.replicator.sync_scope("favorite_songs", [eq("user_id", user_id), eq("song_id", song_id)])
        return added

    def remove_favorite(self, user_id, song_id) -> bool:
        user_id = _require_user_id(user_id)
        if not song_id:
            return False
        removed = self.primary.remove_favorite(user_id, str(song_id))
        self.replicator.sync_scope("favorite_songs", [eq("user_id", user_id), eq("song_id", str(song_id))])
        return removed

    # ---------- playlists ----------

    def list_playlist(self, user_id, playlist_id=DEFAULT_PLAYLIST_ID) -> List[dict]:
        normalized = to_int(user_id)
        if normalized is None:
            return []
        rows = self.primary.list_playlist(normalized, normalize_playlist_id(playlist_id))
        return [_song_item(row) for row in rows]

    def add_playlist_item(self, user_id, song_id, song_title, album_name,
                          playlist_id=DEFAULT_PLAYLIST_ID) -> bool:
        """Appends at the end; returns False if the song is already in the playlist."""
        user_id = _require_user_id(user_id)
        song_id, song_title, album_name = _song_payload(song_id, song_title, album_name)
        playlist_id = normalize_playlist_id(playlist_id)
        added = self.primary.add_playlist_item(user_id, playlist_id, song_id, song_title, album_name)
        self._mirror_playlist(user_id, playlist_id)
        return added

    def remove_playlist_item(self, user_id, song_id, playlist_id=DEFAULT_PLAYLIST_ID) -> bool:
        user_id = _require_user_id(user_id)
        if not song_id:
            return False
        playlist_id = normalize_playlist_id(playlist_id)
        removed = self.primary.remove_playlist_item(user_id, playlist_id, str(song_id))
        self._mirror_playlist(user_id, playlist_id)
        return removed

    def reorder_playlist(self, user_id, song_ids: Sequence[str], playlist_id=DEFAULT_PLAYLIST_ID) -> bool:
        """
        Rewrites every position from ``song_ids``. Returns False, changing
        nothing, unless ``song_ids`` names exactly the current songs once each.
        """
        user_id = _require_user_id(user_id)
        if not song_ids or isinstance(song_ids, str):
            raise ValueError("song_ids is required")
        playlist_id = normalize_playlist_id(playlist_id)
        reordered = self.primary.reorder_playlist(user_id, playlist_id, [str(song_id) for song_id in song_ids])
        if reordered:
            self._mirror_playlist(user_id, playlist_id)
        return reordered

    def _mirror_playlist(self, user_id: int, playlist_id: str) -> None:
        self.replicator.replace_scope("playlist_items", [eq("user_id", user_id), eq("playlist_id", playlist_id)])
