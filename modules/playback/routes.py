from flask import jsonify, request
from flask_login import current_user

from extensions import music_store
from storage.base import PLAYBACK_EVENTS, iso_timestamp
from utils import json_payload, read_number, read_string

from . import bp


def _camel(key):
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def _camel_keys(value):
    if isinstance(value, dict):
        return {_camel(key): _camel_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_camel_keys(item) for item in value]
    return value


@bp.route("/playback/log", methods=["POST"])
def log_playback():
    # Anonymous listeners are not recorded.
    if not current_user.is_authenticated:
        return "", 204

    data = json_payload()
    entry = {
        "session_id": read_string(data.get("sessionId"), 120),
        "song_id": read_string(data.get("songId"), 200),
        "song_title": read_string(data.get("songTitle"), 300),
        "album_name": read_string(data.get("albumName"), 300),
        "event": read_string(data.get("event"), 40),
        "pathname": read_string(data.get("pathname"), 500) or "",
        "position_seconds": read_number(data.get("positionSeconds")) or 0,
        "played_seconds": read_number(data.get("playedSeconds")) or 0,
        "duration_seconds": read_number(data.get("durationSeconds")),
        "user_agent": request.headers.get("User-Agent", ""),
        "user_id": current_user.id,
    }
    required = ("session_id", "song_id", "song_title", "album_name", "event")
    if not all(entry[key] for key in required) or entry["event"] not in PLAYBACK_EVENTS:
        return jsonify(error="Invalid playback log payload"), 400

    music_store.telemetry.insert_playback_log(entry)
    return jsonify(ok=True)


@bp.route("/playback/stats", methods=["GET"])
def playback_stats():
    telemetry = music_store.telemetry
    user = current_user if current_user.is_authenticated else None

    if user is not None and user.is_admin and request.args.get("scope") == "all":
        stats = telemetry.get_playback_stats(include_anonymous=False)
    elif user is not None:
        stats = telemetry.get_playback_stats(user_id=user.id)
    else:
        stats = telemetry.get_playback_stats(include_anonymous=False)

    payload = _camel_keys(stats)
    payload["user"] = user.to_dict() if user is not None else None
    payload["generatedAt"] = iso_timestamp()
    return jsonify(payload)
