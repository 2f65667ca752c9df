"""Shared types for the library/telemetry persistence layer."""

from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from flask_login import UserMixin


DEFAULT_PLAYLIST_ID = "later"
USER_ROLES = ("user", "admin")
PLAYBACK_EVENTS = ("play", "pause", "ended", "song_change", "page_hide")
TERMINATING_EVENTS = ("pause", "ended", "song_change", "page_hide")


# (column, operator, value). Operators use the REST names: eq, neq, lt, lte,
# gt, gte, is, not.is. A None value always means SQL NULL.
Filter = namedtuple("Filter", ["column", "operator", "value"])


def eq(column, value) -> Filter:
    return Filter(column, "eq", value)


# Natural conflict keys per table, in dependency order (users first).
TABLE_CONFLICT_KEYS: Dict[str, Tuple[str, ...]] = {
    "users": ("id",),
    "auth_sessions": ("token_hash",),
    "favorite_songs": ("user_id", "song_id"),
    "playlist_items": ("user_id", "playlist_id", "song_id"),
    "playback_logs": ("id",),
}
TABLE_NAMES = tuple(TABLE_CONFLICT_KEYS)


class StorageError(Exception):
    """Base class for persistence failures."""


class ConfigurationError(StorageError):
    """Remote credentials or other required settings are missing."""


class StoreInitError(StorageError):
    """No embedded database candidate could be opened read-write."""


class ConstraintError(StorageError):
    """A uniqueness rule was violated (e.g. duplicate account)."""


class RemoteStoreError(StorageError):
    def __init__(self, method: str, table: str, status: int, body: str = ""):
        self.method = method
        self.table = table
        self.status = status
        self.body = body
        super().__init__(f"Remote {method} {table} failed: {status} {body}".strip())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    """Millisecond ISO-8601 in UTC with a trailing Z; sorts lexically."""
    moment = moment or utc_now()
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_account(account) -> str:
    if not isinstance(account, str):
        return ""
    return account.strip().lower()


def normalize_playlist_id(playlist_id) -> str:
    if not isinstance(playlist_id, str):
        return DEFAULT_PLAYLIST_ID
    return playlist_id.strip() or DEFAULT_PLAYLIST_ID


def to_int(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def to_float(value, default=None):
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number or number in (float("inf"), float("-inf")):
        return default
    return number


@dataclass
class UserRecord(UserMixin):
    """A user as handed to callers; the password hash stays inside the store."""

    id: int
    account: str
    role: str
    active: bool
    created_at: str
    updated_at: str
    session_expires_at: Optional[str] = None

    @property
    def is_active(self):
        return self.active

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict:
        return {"id": self.id, "account": self.account, "role": self.role, "isActive": self.active}

    @classmethod
    def from_row(cls, row) -> Optional["UserRecord"]:
        if not row:
            return None
        return cls(
            id=int(row["id"]),
            account=str(row["account"]),
            role=str(row["role"]),
            active=_as_bool(row.get("is_active")),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes"}
    return bool(value) and int(value) == 1
