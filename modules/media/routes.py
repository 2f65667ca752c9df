from flask import Response, current_app, jsonify, redirect, request

from .assets import (
    AlbumCatalog,
    CatalogUnavailable,
    InvalidAssetPath,
    build_cloud_url,
    iter_file,
    parse_range,
    resolve_audio_file,
)
from . import bp


def _album_catalog():
    catalog = current_app.extensions.get("album_catalog")
    if catalog is None:
        catalog = AlbumCatalog.load(current_app.config)
        current_app.extensions["album_catalog"] = catalog
    return catalog


def _cloud_redirect(album, song):
    try:
        record = _album_catalog().find_song(album, song)
    except CatalogUnavailable as exc:
        current_app.logger.error("Cloud audio catalog unavailable: %s", exc)
        return jsonify(error="Cloud audio unavailable"), 503
    if record is None or not record.get("audioFileName"):
        return jsonify(error="Audio not found"), 404

    config = current_app.config
    url = build_cloud_url(config.get("ASSET_BASE_URL"), config.get("ASSET_PREFIX"), album, record["audioFileName"])
    if url is None:
        current_app.logger.error("ASSET_BASE_URL is missing for cloud audio mode")
        return jsonify(error="Cloud audio unavailable"), 503
    return redirect(url, code=307)


@bp.route("/audio", methods=["GET"])
def audio():
    album = request.args.get("album")
    song = request.args.get("song")
    if not album or not song:
        return jsonify(error="Missing album or song"), 400

    if current_app.config.get("ASSET_SOURCE") == "cloud":
        return _cloud_redirect(album, song)

    try:
        audio_file = resolve_audio_file(current_app.config["ALBUMS_DIR"], album, song)
    except InvalidAssetPath:
        return jsonify(error="Invalid album or song"), 400
    if audio_file is None:
        return jsonify(error="Audio not found"), 404

    byte_range = parse_range(request.headers.get("Range"), audio_file.size)
    if byte_range is None:
        return Response(
            iter_file(audio_file.path),
            200,
            headers={
                "Content-Length": str(audio_file.size),
                "Accept-Ranges": "bytes",
            },
            mimetype=audio_file.content_type,
        )

    start, end = byte_range
    return Response(
        iter_file(audio_file.path, start, end),
        206,
        headers={
            "Content-Range": f"bytes {start}-{end}/{audio_file.size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        },
        mimetype=audio_file.content_type,
    )
