"""Shared SQLAlchemy models.

Timestamps are ISO-8601 UTC strings so rows copy verbatim between the
embedded database and the remote REST store.
"""

from sqlalchemy import Index, UniqueConstraint

from extensions import db
from storage.base import DEFAULT_PLAYLIST_ID, iso_timestamp


class User(db.Model):
    """Represents an application account."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    account = db.Column(db.String(320), unique=True, nullable=False)  # lower-cased
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(16), nullable=False, default="user")  # user, admin
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.String(32), nullable=False, default=iso_timestamp)
    updated_at = db.Column(db.String(32), nullable=False, default=iso_timestamp)

    __table_args__ = (Index("idx_users_account", "account"),)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User {self.account}>"


class AuthSession(db.Model):
    """Login session; only the SHA-256 of the cookie token is stored."""

    __tablename__ = "auth_sessions"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    created_at = db.Column(db.String(32), nullable=False, default=iso_timestamp)
    expires_at = db.Column(db.String(32), nullable=False)

    __table_args__ = (
        Index("idx_auth_sessions_user", "user_id"),
        Index("idx_auth_sessions_expire", "expires_at"),
    )


class FavoriteSong(db.Model):
    __tablename__ = "favorite_songs"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    song_id = db.Column(db.String(300), nullable=False)
    song_title = db.Column(db.String(300), nullable=False)
    album_name = db.Column(db.String(300), nullable=False)
    created_at = db.Column(db.String(32), nullable=False, default=iso_timestamp)

    __table_args__ = (
        UniqueConstraint("user_id", "song_id", name="uq_favorite_user_song"),
        Index("idx_favorite_songs_user_created", "user_id", "created_at"),
    )


class PlaylistItem(db.Model):
    """
    One song in a user's playlist. For a fixed (user_id, playlist_id) the
    positions are always 0..n-1 without gaps.
    """

    __tablename__ = "playlist_items"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    playlist_id = db.Column(db.String(80), nullable=False, default=DEFAULT_PLAYLIST_ID)
    song_id = db.Column(db.String(300), nullable=False)
    song_title = db.Column(db.String(300), nullable=False)
    album_name = db.Column(db.String(300), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.String(32), nullable=False, default=iso_timestamp)

    __table_args__ = (
        UniqueConstraint("user_id", "playlist_id", "song_id", name="uq_playlist_user_song"),
        Index("idx_playlist_items_user_playlist_pos", "user_id", "playlist_id", "position"),
    )


class PlaybackLog(db.Model):
    """
    Append-only playback telemetry. A listening span is one `play` row
    followed by one terminating row that carries `played_seconds`.
    """

    __tablename__ = "playback_logs"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    session_id = db.Column(db.String(120), nullable=False)  # client correlation id
    song_id = db.Column(db.String(300), nullable=False)
    song_title = db.Column(db.String(300), nullable=False)
    album_name = db.Column(db.String(300), nullable=False)
    event = db.Column(db.String(40), nullable=False)
    position_seconds = db.Column(db.Float, nullable=False, default=0)
    played_seconds = db.Column(db.Float, nullable=False, default=0)
    duration_seconds = db.Column(db.Float)
    pathname = db.Column(db.String(500), nullable=False, default="")
    user_agent = db.Column(db.String(500), nullable=False, default="")
    user_id = db.Column(db.Integer)  # NULL for anonymous listeners
    created_at = db.Column(db.String(32), nullable=False, default=iso_timestamp)

    __table_args__ = (
        Index("idx_playback_logs_song_created_at", "song_id", "created_at"),
        Index("idx_playback_logs_event_created_at", "event", "created_at"),
        Index("idx_playback_logs_user_created_at", "user_id", "created_at"),
    )


TABLES = {
    model.__tablename__: model.__table__
    for model in (User, AuthSession, FavoriteSong, PlaylistItem, PlaybackLog)
}
