"""
Audio file resolution, byte-range parsing and the cloud asset catalog.

Local mode streams files below ALBUMS_DIR. Cloud mode looks the song up in
the album catalog index and redirects to the object URL; only the catalog
fetch goes over the network and it is retried on transient failures.
"""

import json
import logging
import os
import re
import time
from collections import namedtuple
from urllib.parse import quote

import requests
from werkzeug.exceptions import RequestedRangeNotSatisfiable
from werkzeug.security import safe_join

logger = logging.getLogger(__name__)

AUDIO_TYPES = ((".flac", "audio/flac"), (".m4a", "audio/mp4"))

MAX_FETCH_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 0.2
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 520, 522, 524})

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")

AudioFile = namedtuple("AudioFile", ["path", "size", "content_type"])


class InvalidAssetPath(ValueError):
    pass


class CatalogUnavailable(Exception):
    pass


# ---------- local files ----------

def is_safe_segment(value) -> bool:
    if not isinstance(value, str) or not value or value in (".", ".."):
        return False
    return not any(ch in value for ch in ("/", "\\", "\0"))


def resolve_audio_file(albums_dir, album, song):
    """
    First existing ``<album>/<song>.flac`` or ``.m4a`` under ``albums_dir``.
    Raises InvalidAssetPath for unsafe names; None when nothing exists.
    """
    if not is_safe_segment(album) or not is_safe_segment(song):
        raise InvalidAssetPath(f"{album!r}/{song!r}")
    root = os.path.abspath(albums_dir)
    for extension, content_type in AUDIO_TYPES:
        path = safe_join(root, album, song + extension)
        if path is None:
            raise InvalidAssetPath(f"{album!r}/{song!r}")
        if os.path.isfile(path):
            return AudioFile(path, os.path.getsize(path), content_type)
    return None


def parse_range(header, size):
    """
    ``(start, end)`` inclusive for a ``Range: bytes=`` header, None without
    one. Malformed or unsatisfiable ranges raise 416.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if not match or (not match.group(1) and not match.group(2)):
        raise RequestedRangeNotSatisfiable(length=size)

    first, last = match.groups()
    if not first:
        suffix = int(last)
        if suffix <= 0 or size == 0:
            raise RequestedRangeNotSatisfiable(length=size)
        return max(size - suffix, 0), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or end < start:
        raise RequestedRangeNotSatisfiable(length=size)
    return start, min(end, size - 1)


def iter_file(path, start=0, end=None, chunk_size=64 * 1024):
    """Yields bytes ``start..end`` inclusive (to EOF when end is None)."""
    with open(path, "rb") as handle:
        handle.seek(start)
        remaining = None if end is None else end - start + 1
        while remaining is None or remaining > 0:
            size = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = handle.read(size)
            if not chunk:
                break
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk


# ---------- cloud assets ----------

def _prefix_segments(prefix):
    return [segment for segment in (prefix or "").strip("/").split("/") if segment]


def build_cloud_url(base_url, prefix, *names):
    """``<base>/<prefix segments>/<names>`` with each segment percent-encoded."""
    base = (base_url or "").strip().rstrip("/")
    if not base:
        return None
    segments = [quote(segment, safe="") for segment in _prefix_segments(prefix) + list(names)]
    return f"{base}/{'/'.join(segments)}"


def fetch_with_retry(url, session=None, timeout=10, sleep=time.sleep):
    """
    GET ``url`` up to MAX_FETCH_ATTEMPTS times. Retries retryable statuses,
    timeouts and connection errors with a linear backoff; a 404 returns None
    immediately.
    """
    http = session or requests
    for attempt in range(1, MAX_FETCH_ATTEMPTS + 1):
        try:
            response = http.get(url, timeout=timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            if attempt < MAX_FETCH_ATTEMPTS:
                logger.warning("Fetch %s failed (%s), attempt %s/%s", url, exc, attempt, MAX_FETCH_ATTEMPTS)
                sleep(attempt * RETRY_BACKOFF_SECONDS)
                continue
            raise CatalogUnavailable(f"{url}: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.ok:
            return response
        if response.status_code in RETRYABLE_STATUS and attempt < MAX_FETCH_ATTEMPTS:
            logger.warning("Fetch %s returned %s, attempt %s/%s", url, response.status_code, attempt, MAX_FETCH_ATTEMPTS)
            sleep(attempt * RETRY_BACKOFF_SECONDS)
            continue
        raise CatalogUnavailable(f"{url}: HTTP {response.status_code}")
    return None


class AlbumCatalog:
    """The album index JSON: ``albums[].songs[].audioBaseName -> audioFileName``."""

    def __init__(self, data):
        if not isinstance(data, dict) or not isinstance(data.get("albums"), list):
            raise CatalogUnavailable("Invalid albums index: missing albums array")
        self.data = data

    @classmethod
    def load(cls, config, session=None, sleep=time.sleep):
        index_path = config.get("ALBUM_INDEX_PATH")
        if index_path:
            try:
                with open(index_path, encoding="utf-8") as handle:
                    return cls(json.load(handle))
            except (OSError, ValueError) as exc:
                raise CatalogUnavailable(f"{index_path}: {exc}") from exc

        url = build_cloud_url(config.get("ASSET_BASE_URL"), config.get("ASSET_PREFIX"), "albums-index.json")
        if url is None:
            raise CatalogUnavailable("ASSET_BASE_URL is missing for cloud audio mode")
        response = fetch_with_retry(
            url, session=session, timeout=config.get("ASSET_FETCH_TIMEOUT_SECONDS", 10), sleep=sleep
        )
        if response is None:
            raise CatalogUnavailable(f"{url}: not found")
        try:
            return cls(response.json())
        except ValueError as exc:
            raise CatalogUnavailable(f"{url}: {exc}") from exc

    def find_song(self, album_name, audio_base_name):
        for album in self.data["albums"]:
            if album.get("name") != album_name:
                continue
            for song in album.get("songs") or []:
                if song.get("audioBaseName") == audio_base_name:
                    return song
            return None
        return None
