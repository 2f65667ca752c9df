# tests/conftest.py
import json
import os
import sys

import pytest
import requests
from flask import g

# чтобы import create_app работал при запуске из корня
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app import create_app
from extensions import music_store
from storage.backend import SyncConfig
from storage.base import TABLE_NAMES
from storage.embedded import EmbeddedStore
from storage.remote import RemoteStoreClient
from storage.rest_backend import RestBackend
from storage.stores import Stores

REMOTE_URL = "https://remote.test"
REMOTE_KEY = "service-key"


# ---------- in-memory PostgREST stand-in ----------

class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self.headers = headers or {}
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode("utf-8")
        self.text = self.content.decode("utf-8")

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


def _as_text(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _compare(row_value, raw):
    try:
        return (float(row_value) > float(raw)) - (float(row_value) < float(raw))
    except (TypeError, ValueError):
        left = _as_text(row_value)
        return (left > raw) - (left < raw)


def _matches(row, column, expression):
    negate = expression.startswith("not.")
    if negate:
        expression = expression[4:]
    operator, _, raw = expression.partition(".")
    value = row.get(column)
    if operator == "is" or raw == "null":
        result = value is None
    elif value is None:
        result = False
    elif operator == "eq":
        result = _compare(value, raw) == 0
    elif operator == "neq":
        result = _compare(value, raw) != 0
    elif operator == "gt":
        result = _compare(value, raw) > 0
    elif operator == "gte":
        result = _compare(value, raw) >= 0
    elif operator == "lt":
        result = _compare(value, raw) < 0
    elif operator == "lte":
        result = _compare(value, raw) <= 0
    else:
        raise AssertionError(f"unsupported operator {operator}")
    return not result if negate else result


class FakeRestSession:
    """
    Answers the subset of the PostgREST API the client uses: filtered and
    ordered GET, HEAD counts, insert / merge-duplicates upsert, PATCH, DELETE.
    """

    RESERVED = {"select", "order", "limit", "offset", "on_conflict"}
    UNIQUE = {
        "users": [("id",), ("account",)],
        "auth_sessions": [("id",), ("token_hash",)],
        "favorite_songs": [("id",), ("user_id", "song_id")],
        "playlist_items": [("id",), ("user_id", "playlist_id", "song_id")],
        "playback_logs": [("id",)],
    }

    def __init__(self, tables=TABLE_NAMES):
        self.tables = {name: [] for name in tables}
        self.calls = []
        self.fail = False
        # server-side cap on GET results, like PostgREST max-rows
        self.max_rows = None

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": list(params or []),
                           "json": json, "headers": dict(headers or {})})
        if self.fail:
            raise requests.ConnectionError("remote unavailable")

        table = url.rsplit("/", 1)[-1]
        if table not in self.tables:
            return FakeResponse(404, {"message": f"relation {table} does not exist"})

        params = list(params or [])
        options = {key: value for key, value in params if key in self.RESERVED}
        filters = [(key, value) for key, value in params if key not in self.RESERVED]
        prefer = (headers or {}).get("Prefer", "")
        rows = self.tables[table]
        matched = [row for row in rows if all(_matches(row, col, expr) for col, expr in filters)]

        if method == "HEAD":
            total = len(matched)
            return FakeResponse(200, None, {"Content-Range": f"0-{total - 1}/{total}" if total else "*/0"})
        if method == "GET":
            selected = self._select(matched, options)
            if self.max_rows is not None:
                selected = selected[:self.max_rows]
            return FakeResponse(200, selected)
        if method == "POST":
            return self._post(table, json or [], options, prefer)
        if method == "PATCH":
            for row in matched:
                row.update(json or {})
            return FakeResponse(204)
        if method == "DELETE":
            self.tables[table] = [row for row in rows if row not in matched]
            if "count=exact" in prefer:
                return FakeResponse(204, None, {"Content-Range": f"*/{len(matched)}"})
            return FakeResponse(204)
        raise AssertionError(f"unexpected method {method}")

    @staticmethod
    def _select(rows, options):
        rows = [dict(row) for row in rows]
        for part in reversed([p for p in options.get("order", "").split(",") if p]):
            column, _, direction = part.partition(".")
            present = [row for row in rows if row.get(column) is not None]
            missing = [row for row in rows if row.get(column) is None]
            present.sort(key=lambda row: row[column], reverse=direction == "desc")
            rows = present + missing
        offset = int(options.get("offset", 0))
        rows = rows[offset:]
        if "limit" in options:
            rows = rows[:int(options["limit"])]
        select = options.get("select", "*")
        if select != "*":
            columns = [column.strip() for column in select.split(",")]
            rows = [{column: row.get(column) for column in columns} for row in rows]
        return rows

    def _find(self, table, row, columns):
        for existing in self.tables[table]:
            if all(existing.get(column) == row.get(column) for column in columns):
                return existing
        return None

    def _post(self, table, body, options, prefer):
        merge = "merge-duplicates" in prefer
        conflict = tuple(c for c in options.get("on_conflict", "").split(",") if c) or ("id",)
        created = []
        for row in body:
            row = dict(row)
            if merge:
                existing = self._find(table, row, conflict)
                if existing is not None:
                    existing.update(row)
                    continue
            for columns in self.UNIQUE.get(table, [("id",)]):
                if self._find(table, row, columns) is not None:
                    return FakeResponse(409, {"message": f"duplicate key on {','.join(columns)}"})
            self.tables[table].append(row)
            created.append(dict(row))
        if "return=representation" in prefer:
            return FakeResponse(201, created)
        return FakeResponse(201)


# ---------- fixtures ----------

def make_config(tmp_path, **overrides):
    config = {
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "LIBRARY_DB_PATH": str(tmp_path / "library.sqlite"),
        "REMOTE_STORE_URL": "",
        "REMOTE_STORE_KEY": "",
        "REMOTE_SYNC_DISABLED": None,
        "REMOTE_PRIMARY": None,
        "AUTH_COOKIE_SECURE": False,
        "ALBUMS_DIR": str(tmp_path / "albums"),
        "ASSET_SOURCE": "local",
        "ASSET_BASE_URL": None,
        "ALBUM_INDEX_PATH": None,
    }
    config.update(overrides)
    return config


@pytest.fixture()
def app(tmp_path):
    app = create_app(make_config(tmp_path))

    # The held-open app context is reused by every test-client request, so
    # drop Flask-Login's per-request user cache from the shared ``g``.
    @app.before_request
    def _reset_login_cache():
        g.pop("_login_user", None)

    with app.app_context():
        yield app
    app.extensions["stores"].close()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def library(app):
    return music_store.library


@pytest.fixture()
def telemetry(app):
    return music_store.telemetry


@pytest.fixture()
def embedded(tmp_path):
    store = EmbeddedStore([str(tmp_path / "embedded.sqlite")])
    store.open()
    yield store
    store.close()


@pytest.fixture()
def fake_remote():
    return FakeRestSession()


@pytest.fixture()
def remote_client(fake_remote):
    return RemoteStoreClient(REMOTE_URL, REMOTE_KEY, session=fake_remote)


def build_stores(embedded, remote_client, primary):
    sync_config = SyncConfig(base_url=REMOTE_URL, service_key=REMOTE_KEY, enabled=True, primary=primary)
    return Stores(sync_config, embedded, RestBackend(remote_client))


@pytest.fixture()
def local_primary(embedded, remote_client):
    stores = build_stores(embedded, remote_client, primary=False)
    yield stores
    stores.close()


@pytest.fixture()
def remote_primary(embedded, remote_client):
    stores = build_stores(embedded, remote_client, primary=True)
    yield stores
    stores.close()


@pytest.fixture()
def user(library):
    return library.create_user("alice@example.com", "secret-pass")


@pytest.fixture()
def admin(library):
    return library.create_user("root@example.com", "admin-pass", "admin")


def login(client, account, password):
    return client.post("/api/auth/login", json={"account": account, "password": password})


@pytest.fixture()
def user_client(client, user):
    resp = login(client, "alice@example.com", "secret-pass")
    assert resp.status_code == 200
    return client


@pytest.fixture()
def admin_client(client, admin):
    resp = login(client, "root@example.com", "admin-pass")
    assert resp.status_code == 200
    return client


@pytest.fixture()
def login_as(client):
    def _login(account, password):
        return login(client, account, password)
    return _login


@pytest.fixture()
def make_app(tmp_path):
    apps = []

    def _make(**overrides):
        app = create_app(make_config(tmp_path, **overrides))
        apps.append(app)
        return app

    yield _make
    for app in apps:
        app.extensions["stores"].close()
