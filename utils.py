import math

from flask import abort, request


def json_payload():
    """Parsed JSON object body, or 400 when the body is not valid JSON."""
    payload = request.get_json(silent=True)
    if payload is None:
        abort(400, description="Invalid JSON body")
    return payload if isinstance(payload, dict) else {}


def read_string(value, max_length=300):
    """Trimmed, length-capped string or None for blanks and non-strings."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:max_length]


def read_number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def song_json(item):
    """Storage song item (snake_case) to the camelCase API shape."""
    data = {
        "songId": item["song_id"],
        "songTitle": item["song_title"],
        "albumName": item["album_name"],
        "createdAt": item["created_at"],
    }
    if "position" in item:
        data["position"] = item["position"]
    return data
