"""Playback event ingestion and listening statistics."""

import logging
from typing import Optional

from storage.base import (
    PLAYBACK_EVENTS,
    eq,
    parse_timestamp,
    to_float,
    to_int,
)

logger = logging.getLogger(__name__)

QUALIFIED_PLAY_SECONDS = 30

_SUMMARY_KEYS = ("total_played_seconds", "sessions", "play_count", "song_count", "album_count")


def _clean_text(value, limit: int) -> str:
    return str(value).strip()[:limit] if isinstance(value, str) else ""


def _non_negative(value, default=None):
    number = to_float(value, default)
    return None if number is None else max(0.0, number)


def _sort_key(row):
    last = parse_timestamp(row.get("last_played_at"))
    return (
        -float(row["total_played_seconds"]),
        -int(row["play_count"]),
        -(last.timestamp() if last else 0.0),
    )


class TelemetryStore:
    def __init__(self, primary, replicator, threshold_seconds=QUALIFIED_PLAY_SECONDS):
        self.primary = primary
        self.replicator = replicator
        self.threshold_seconds = to_float(threshold_seconds, QUALIFIED_PLAY_SECONDS)

    def insert_playback_log(self, entry: dict) -> int:
        """
        Appends one event row and returns its id. ``entry`` uses snake_case
        keys; required: session_id, song_id, song_title, album_name, event.
        """
        values = {
            "session_id": _clean_text(entry.get("session_id"), 120),
            "song_id": _clean_text(entry.get("song_id"), 300),
            "song_title": _clean_text(entry.get("song_title"), 300),
            "album_name": _clean_text(entry.get("album_name"), 300),
            "event": _clean_text(entry.get("event"), 40),
            "position_seconds": _non_negative(entry.get("position_seconds"), 0.0),
            "played_seconds": _non_negative(entry.get("played_seconds"), 0.0),
            "duration_seconds": _non_negative(entry.get("duration_seconds")),
            "pathname": _clean_text(entry.get("pathname"), 500),
            "user_agent": _clean_text(entry.get("user_agent"), 500),
            "user_id": to_int(entry.get("user_id")),
        }
        if entry.get("created_at"):
            values["created_at"] = str(entry["created_at"])
        missing = [key for key in ("session_id", "song_id", "song_title", "album_name", "event") if not values[key]]
        if missing:
            raise ValueError(f"Missing playback fields: {', '.join(missing)}")
        if values["event"] not in PLAYBACK_EVENTS:
            raise ValueError(f"Unknown playback event: {values['event']}")

        row_id = self.primary.insert_playback_log(values)
        self.replicator.sync_scope("playback_logs", [eq("id", row_id)])
        return row_id

    def get_playback_stats(self, user_id: Optional[int] = None, include_anonymous: bool = False) -> dict:
        """
        Scope: one user when ``user_id`` is given, otherwise every signed-in
        listener, or everything including anonymous rows.
        """
        normalized = to_int(user_id)
        raw = self.primary.playback_stats(normalized, bool(include_anonymous), self.threshold_seconds)

        summary = {key: to_float(raw["summary"].get(key), 0.0) for key in _SUMMARY_KEYS}
        for key in ("sessions", "play_count", "song_count", "album_count"):
            summary[key] = int(summary[key])

        songs = [{
            "song_id": str(row.get("song_id") or ""),
            "song_title": str(row.get("song_title") or ""),
            "album_name": str(row.get("album_name") or ""),
            "total_played_seconds": to_float(row.get("total_played_seconds"), 0.0),
            "sessions": int(to_float(row.get("sessions"), 0)),
            "play_count": int(to_float(row.get("play_count"), 0)),
            "avg_session_seconds": to_float(row.get("avg_session_seconds"), 0.0),
            "last_played_at": str(row["last_played_at"]) if row.get("last_played_at") else None,
        } for row in raw["songs"]]

        albums = [{
            "album_name": str(row.get("album_name") or ""),
            "total_played_seconds": to_float(row.get("total_played_seconds"), 0.0),
            "sessions": int(to_float(row.get("sessions"), 0)),
            "play_count": int(to_float(row.get("play_count"), 0)),
            "song_count": int(to_float(row.get("song_count"), 0)),
            "last_played_at": str(row["last_played_at"]) if row.get("last_played_at") else None,
        } for row in raw["albums"]]

        songs.sort(key=_sort_key)
        albums.sort(key=_sort_key)
        return {
            "threshold_seconds": self.threshold_seconds,
            "summary": summary,
            "songs": songs,
            "albums": albums,
        }

    def claim_anonymous_playback_logs(self, user_id) -> dict:
        """Assigns every anonymous playback row to ``user_id``."""
        normalized = to_int(user_id)
        if normalized is None:
            raise ValueError("Invalid user id")
        result = self.primary.claim_playback_logs(normalized)
        self.replicator.sync_scope("playback_logs", [eq("user_id", normalized)])
        logger.info("Assigned %s anonymous playback rows to user %s", result["migrated_count"], normalized)
        return result
