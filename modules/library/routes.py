from flask import jsonify, request
from flask_login import current_user, login_required

from extensions import music_store
from storage.base import DEFAULT_PLAYLIST_ID
from utils import json_payload, read_string, song_json

from . import bp


def _song_fields(data):
    return (
        read_string(data.get("songId"), 300),
        read_string(data.get("songTitle"), 300),
        read_string(data.get("albumName"), 300),
    )


# ---------- favorites ----------

@bp.route("/library/favorites", methods=["GET"])
@login_required
def list_favorites():
    items = music_store.library.list_favorites(current_user.id)
    return jsonify(items=[song_json(item) for item in items])


@bp.route("/library/favorites", methods=["POST"])
@login_required
def add_favorite():
    song_id, song_title, album_name = _song_fields(json_payload())
    if not song_id or not song_title or not album_name:
        return jsonify(error="Invalid favorite payload"), 400

    added = music_store.library.add_favorite(current_user.id, song_id, song_title, album_name)
    return jsonify(ok=True, added=added)


@bp.route("/library/favorites", methods=["DELETE"])
@login_required
def remove_favorite():
    song_id = read_string(json_payload().get("songId"), 300)
    if not song_id:
        return jsonify(error="songId is required"), 400

    removed = music_store.library.remove_favorite(current_user.id, song_id)
    return jsonify(ok=True, removed=removed)


# ---------- playlist ----------

@bp.route("/library/playlist", methods=["GET"])
@login_required
def list_playlist():
    playlist_id = read_string(request.args.get("playlistId"), 80) or DEFAULT_PLAYLIST_ID
    items = music_store.library.list_playlist(current_user.id, playlist_id)
    return jsonify(playlistId=playlist_id, items=[song_json(item) for item in items])


@bp.route("/library/playlist/items", methods=["POST"])
@login_required
def add_playlist_item():
    data = json_payload()
    playlist_id = read_string(data.get("playlistId"), 80) or DEFAULT_PLAYLIST_ID
    song_id, song_title, album_name = _song_fields(data)
    if not song_id or not song_title or not album_name:
        return jsonify(error="Invalid playlist payload"), 400

    added = music_store.library.add_playlist_item(
        current_user.id, song_id, song_title, album_name, playlist_id
    )
    return jsonify(ok=True, added=added)


@bp.route("/library/playlist/items", methods=["DELETE"])
@login_required
def remove_playlist_item():
    data = json_payload()
    playlist_id = read_string(data.get("playlistId"), 80) or DEFAULT_PLAYLIST_ID
    song_id = read_string(data.get("songId"), 300)
    if not song_id:
        return jsonify(error="songId is required"), 400

    removed = music_store.library.remove_playlist_item(current_user.id, song_id, playlist_id)
    return jsonify(ok=True, removed=removed)


@bp.route("/library/playlist/items/reorder", methods=["PATCH"])
@login_required
def reorder_playlist():
    data = json_payload()
    playlist_id = read_string(data.get("playlistId"), 80) or DEFAULT_PLAYLIST_ID
    raw_ids = data.get("songIds")
    if not isinstance(raw_ids, list) or not raw_ids:
        return jsonify(error="songIds is required"), 400
    song_ids = [read_string(item, 300) for item in raw_ids]
    if not all(song_ids):
        return jsonify(error="songIds contains invalid values"), 400

    if not music_store.library.reorder_playlist(current_user.id, song_ids, playlist_id):
        return jsonify(error="songIds does not match playlist items"), 400
    return jsonify(ok=True)
