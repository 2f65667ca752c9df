"""
REST client for the remote relational store (PostgREST-style API).

Filters travel as query parameters (``column=operator.value``), upserts use
``Prefer: resolution=merge-duplicates`` and counts come from the
``Content-Range`` header of a HEAD request.
"""

import logging
from typing import Iterator, List, Optional, Sequence

import requests

from storage.base import ConfigurationError, Filter, RemoteStoreError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


def _format_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_filters(filters: Sequence[Filter]) -> List[tuple]:
    params = []
    for flt in filters or ():
        column = (flt.column or "").strip()
        if not column:
            continue
        operator = (flt.operator or "eq").strip()
        if flt.value is None:
            if operator in ("eq", "is"):
                params.append((column, "is.null"))
            else:
                params.append((column, f"{operator}.null"))
            continue
        params.append((column, f"{operator}.{_format_value(flt.value)}"))
    return params


def parse_content_range_total(header: Optional[str]) -> int:
    """``0-24/3573`` or ``*/0`` -> total; anything unparsable counts as 0."""
    if not header:
        return 0
    parts = header.split("/")
    if len(parts) != 2:
        return 0
    try:
        return int(parts[1])
    except ValueError:
        return 0


class RemoteStoreClient:
    """Thin, stateless wrapper over one REST endpoint; safe to share between threads."""

    name = "remote"

    def __init__(self, base_url: str, service_key: str, schema: str = "public",
                 timeout: float = 10.0, session: Optional[requests.Session] = None):
        if not base_url or not service_key:
            raise ConfigurationError("Remote store URL and service key are required")
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.schema = schema or "public"
        self.timeout = timeout
        self.http = session or requests.Session()

    @classmethod
    def from_sync_config(cls, sync_config, session=None) -> "RemoteStoreClient":
        return cls(sync_config.base_url, sync_config.service_key, sync_config.schema,
                   timeout=sync_config.timeout, session=session)

    # ---------- plumbing ----------

    def table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def headers(self, extra: Optional[dict] = None) -> dict:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
            "Accept-Profile": self.schema,
            "Content-Profile": self.schema,
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, table: str, *, filters: Sequence[Filter] = (),
                 params: Optional[list] = None, body=None, prefer: Optional[str] = None,
                 allow_statuses: Sequence[int] = ()) -> requests.Response:
        query = encode_filters(filters) + list(params or [])
        response = self.http.request(
            method,
            self.table_url(table),
            params=query,
            json=body,
            headers=self.headers({"Prefer": prefer} if prefer else None),
            timeout=self.timeout,
        )
        if not response.ok and response.status_code not in allow_statuses:
            raise RemoteStoreError(method, table, response.status_code, response.text or "")
        return response

    @staticmethod
    def _json_rows(response) -> list:
        if response.status_code == 204 or not response.content:
            return []
        data = response.json()
        return data if isinstance(data, list) else []

    # ---------- reads ----------

    def fetch_rows(self, table: str, filters: Sequence[Filter] = (), select: str = "*",
                   order_by: Sequence[str] = (), limit: Optional[int] = None,
                   offset: Optional[int] = None) -> List[dict]:
        params = [("select", select)]
        if order_by:
            params.append(("order", ",".join(order_by)))
        if limit is not None:
            params.append(("limit", str(max(0, int(limit)))))
        if offset is not None:
            params.append(("offset", str(max(0, int(offset)))))
        return self._json_rows(self._request("GET", table, filters=filters, params=params))

    def fetch_one(self, table: str, filters: Sequence[Filter] = (), select: str = "*",
                  order_by: Sequence[str] = ()) -> Optional[dict]:
        rows = self.fetch_rows(table, filters, select=select, order_by=order_by, limit=1)
        return rows[0] if rows else None

    def iter_batches(self, table: str, filters: Sequence[Filter] = (), select: str = "*",
                     batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[List[dict]]:
        """
        Keyset pagination on strictly increasing ``id``. Stops at the first
        short page, so rows appended during the scan beyond the last seen id
        are left for the next pass.
        """
        batch_size = max(1, int(batch_size or DEFAULT_BATCH_SIZE))
        if select != "*" and "id" not in [part.strip() for part in select.split(",")]:
            select = f"{select},id"
        last_id = None
        while True:
            page_filters = list(filters)
            if last_id is not None:
                page_filters.append(Filter("id", "gt", last_id))
            rows = self.fetch_rows(table, page_filters, select=select, order_by=["id.asc"], limit=batch_size)
            if rows:
                yield rows
                last_id = rows[-1]["id"]
            if len(rows) < batch_size:
                return

    def fetch_all_rows(self, table: str, filters: Sequence[Filter] = (), select: str = "*",
                       batch_size: int = DEFAULT_BATCH_SIZE) -> List[dict]:
        rows = []
        for batch in self.iter_batches(table, filters, select=select, batch_size=batch_size):
            rows.extend(batch)
        return rows

    def count_rows(self, table: str, filters: Sequence[Filter] = ()) -> int:
        response = self._request("HEAD", table, filters=filters,
                                 params=[("select", "id"), ("limit", "1")], prefer="count=exact")
        return parse_content_range_total(response.headers.get("Content-Range"))

    def table_exists(self, table: str) -> bool:
        response = self._request("HEAD", table, params=[("select", "id"), ("limit", "1")],
                                 prefer="count=planned", allow_statuses=(404,))
        return response.status_code != 404

    def next_id(self, table: str) -> int:
        row = self.fetch_one(table, select="id", order_by=["id.desc"])
        try:
            last_id = int(row["id"]) if row else 0
        except (TypeError, ValueError):
            last_id = 0
        return max(last_id, 0) + 1

    # ---------- writes ----------

    def insert_rows(self, table: str, rows: Sequence[dict]) -> List[dict]:
        """Plain insert; a unique-key conflict surfaces as RemoteStoreError (409)."""
        if not rows:
            return []
        response = self._request("POST", table, body=list(rows), prefer="return=representation")
        return self._json_rows(response)

    def upsert_rows(self, table: str, rows: Sequence[dict], conflict_columns: Sequence[str] = ()) -> None:
        if not rows:
            return
        params = [("on_conflict", ",".join(conflict_columns))] if conflict_columns else []
        self._request("POST", table, params=params, body=list(rows),
                      prefer="resolution=merge-duplicates,return=minimal")

    def patch_rows(self, table: str, values: dict, filters: Sequence[Filter]) -> None:
        if not filters:
            raise ValueError("Refusing to patch without filters")
        self._request("PATCH", table, filters=filters, body=values, prefer="return=minimal")

    def delete_rows(self, table: str, filters: Sequence[Filter], count: bool = False) -> Optional[int]:
        """With ``count=True`` the server reports the deleted total in ``Content-Range``."""
        if not filters:
            raise ValueError("Refusing to delete without filters")
        if not count:
            self._request("DELETE", table, filters=filters, prefer="return=minimal")
            return None
        response = self._request("DELETE", table, filters=filters, prefer="count=exact,return=minimal")
        return parse_content_range_total(response.headers.get("Content-Range"))

    def replace_rows(self, table: str, filters: Sequence[Filter], rows: Sequence[dict]) -> None:
        """Delete-then-insert snapshot; not atomic, but safe to re-run."""
        self.delete_rows(table, filters)
        if rows:
            self.insert_rows(table, rows)
