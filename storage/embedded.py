"""
Embedded SQLite store.

Opening walks an ordered list of candidate files (configured path, then a
per-user home directory, then the temp directory) and keeps the first one
that can be created, migrated and written. Multi-row mutations run inside
``BEGIN IMMEDIATE`` so concurrent writers serialize on the database lock.
A write that fails because the file turned read-only reopens the store from
the fallback part of the chain and is retried exactly once.
"""

import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import and_, create_engine, delete, event, func, inspect, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from extensions import db
from models import TABLES
from storage.base import (
    TERMINATING_EVENTS,
    ConstraintError,
    Filter,
    StoreInitError,
    iso_timestamp,
)

logger = logging.getLogger(__name__)

DB_FILE_NAME = "library.sqlite"
DEFAULT_APP_DIR = ".music-player"

users = TABLES["users"]
auth_sessions = TABLES["auth_sessions"]
favorite_songs = TABLES["favorite_songs"]
playlist_items = TABLES["playlist_items"]
playback_logs = TABLES["playback_logs"]


# ---------- path chain ----------

def candidate_paths(db_path: Optional[str] = None, db_dir: Optional[str] = None,
                    app_dir: str = DEFAULT_APP_DIR) -> List[str]:
    """Preferred file, home-directory fallback, temp-directory last resort."""
    if db_path:
        preferred = os.path.abspath(db_path)
    elif db_dir:
        preferred = os.path.abspath(os.path.join(db_dir, DB_FILE_NAME))
    else:
        preferred = os.path.abspath(os.path.join(os.getcwd(), "data", DB_FILE_NAME))
    fallback = os.path.join(os.path.expanduser("~"), app_dir, DB_FILE_NAME)
    last_resort = os.path.join(tempfile.gettempdir(), app_dir.lstrip("."), DB_FILE_NAME)
    return _unique([preferred, fallback, last_resort])


def _unique(values: Iterable[str]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def is_readonly_error(error: BaseException) -> bool:
    return "readonly" in str(getattr(error, "orig", None) or error).lower()


# ---------- versioned schema migrations ----------

def _columns(conn, table_name: str) -> set:
    inspector = inspect(conn)
    if not inspector.has_table(table_name):
        return set()
    return {column["name"] for column in inspector.get_columns(table_name)}


def _create_tables(conn) -> None:
    db.metadata.create_all(conn, tables=list(TABLES.values()), checkfirst=True)


def _rename_legacy_email_column(conn) -> None:
    # Early databases keyed accounts by an `email` column.
    columns = _columns(conn, "users")
    if "email" in columns and "account" not in columns:
        conn.exec_driver_sql("ALTER TABLE users RENAME COLUMN email TO account")


def _add_playback_user_id(conn) -> None:
    if "user_id" not in _columns(conn, "playback_logs"):
        conn.exec_driver_sql("ALTER TABLE playback_logs ADD COLUMN user_id INTEGER")


def _create_indexes(conn) -> None:
    for table in TABLES.values():
        for index in table.indexes:
            index.create(conn, checkfirst=True)


MIGRATIONS = [
    (1, "create tables", _create_tables),
    (2, "rename users.email to users.account", _rename_legacy_email_column),
    (3, "add playback_logs.user_id", _add_playback_user_id),
    (4, "create indexes", _create_indexes),
]
SCHEMA_VERSION = MIGRATIONS[-1][0]


def apply_migrations(conn) -> int:
    """Run every step newer than PRAGMA user_version; returns the new version."""
    current = conn.exec_driver_sql("PRAGMA user_version").scalar() or 0
    for version, description, step in MIGRATIONS:
        if version > current:
            logger.info("Applying schema migration %s: %s", version, description)
            step(conn)
    # Always written: doubles as the read-write check while opening.
    conn.exec_driver_sql(f"PRAGMA user_version = {max(current, SCHEMA_VERSION)}")
    return max(current, SCHEMA_VERSION)


# ---------- filters ----------

def _clause(table, flt: Filter):
    column = table.c[flt.column]
    op, value = flt.operator, flt.value
    if value is None or op in ("is", "not.is"):
        return column.is_(None) if op in ("eq", "is") else column.is_not(None)
    if op == "eq":
        return column == value
    if op == "neq":
        return column != value
    if op == "lt":
        return column < value
    if op == "lte":
        return column <= value
    if op == "gt":
        return column > value
    if op == "gte":
        return column >= value
    raise ValueError(f"Unsupported filter operator: {op}")


def _where(table, filters: Sequence[Filter]):
    return and_(*[_clause(table, flt) for flt in filters]) if filters else None


def _apply_where(stmt, table, filters):
    clause = _where(table, filters)
    return stmt.where(clause) if clause is not None else stmt


def _rows(result) -> List[dict]:
    return [dict(row._mapping) for row in result]


class EmbeddedStore:
    """Local relational store; also the mirror target when the remote is primary."""

    name = "embedded"

    def __init__(self, candidates: Sequence[str]):
        self.candidates = _unique(candidates)
        if not self.candidates:
            raise StoreInitError("No database path candidates configured")
        self.engine = None
        self.path: Optional[str] = None

    @classmethod
    def from_config(cls, config) -> "EmbeddedStore":
        store = cls(candidate_paths(
            config.get("LIBRARY_DB_PATH"),
            config.get("LIBRARY_DB_DIR"),
            config.get("LIBRARY_DB_APP_DIR") or DEFAULT_APP_DIR,
        ))
        store.open()
        return store

    # ---------- open / close ----------

    def open(self, prefer_fallback: bool = False) -> str:
        order = self.candidates
        if prefer_fallback and len(order) > 1:
            order = _unique(order[1:] + order[:1])

        errors = []
        for path in order:
            try:
                self.engine = self._open_candidate(path)
            except (OSError, SQLAlchemyError) as exc:
                logger.warning("Cannot use database at %s: %s", path, exc)
                errors.append(f"{path}: {exc}")
                continue
            self.path = path
            if path != self.candidates[0]:
                logger.warning("Library database opened at fallback path %s", path)
            return path

        raise StoreInitError("Failed to initialize library database: " + " | ".join(errors))

    @staticmethod
    def _open_candidate(path: str):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # BEGIN is emitted by the listener below instead.
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin(conn):
            mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
            conn.exec_driver_sql(f"BEGIN {mode}")

        try:
            with engine.connect() as conn:
                conn = conn.execution_options(sqlite_begin="IMMEDIATE")
                with conn.begin():
                    apply_migrations(conn)
        except Exception:
            engine.dispose()
            raise
        return engine

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
        self.engine = None

    def reopen(self, prefer_fallback: bool = True) -> str:
        self.close()
        return self.open(prefer_fallback=prefer_fallback)

    # ---------- transactions ----------

    @contextmanager
    def _read(self):
        if self.engine is None:
            self.open()
        with self.engine.connect() as conn:
            yield conn

    def _write(self, work: Callable):
        """Run ``work(conn)`` in an immediate transaction, reopening once on read-only failure."""
        try:
            return self._run_immediate(work)
        except OperationalError as exc:
            if not is_readonly_error(exc):
                raise
            logger.warning("Library database %s is read-only, reopening from fallback: %s", self.path, exc)
            self.reopen(prefer_fallback=True)
            return self._run_immediate(work)

    def _run_immediate(self, work: Callable):
        if self.engine is None:
            self.open()
        with self.engine.connect() as conn:
            conn = conn.execution_options(sqlite_begin="IMMEDIATE")
            with conn.begin():
                return work(conn)

    # ---------- users ----------

    def get_user_by_id(self, user_id: int) -> Optional[dict]:
        with self._read() as conn:
            row = conn.execute(select(users).where(users.c.id == user_id)).first()
        return dict(row._mapping) if row else None

    def get_user_by_account(self, account: str) -> Optional[dict]:
        with self._read() as conn:
            row = conn.execute(select(users).where(users.c.account == account)).first()
        return dict(row._mapping) if row else None

    def create_user(self, account: str, password_hash: str, role: str) -> dict:
        now = iso_timestamp()

        def work(conn):
            result = conn.execute(users.insert().values(
                account=account, password_hash=password_hash, role=role,
                is_active=True, created_at=now, updated_at=now,
            ))
            return result.inserted_primary_key[0]

        try:
            user_id = self._write(work)
        except IntegrityError as exc:
            raise ConstraintError(f"Account already exists: {account}") from exc
        return self.get_user_by_id(user_id)

    def update_user(self, user_id: int, password_hash: str, role: str) -> Optional[dict]:
        now = iso_timestamp()
        self._write(lambda conn: conn.execute(
            update(users).where(users.c.id == user_id).values(
                password_hash=password_hash, role=role, is_active=True, updated_at=now,
            )
        ))
        return self.get_user_by_id(user_id)

    # ---------- auth sessions ----------

    def create_session(self, user_id: int, token_hash: str, expires_at: str) -> None:
        self._write(lambda conn: conn.execute(auth_sessions.insert().values(
            user_id=user_id, token_hash=token_hash, expires_at=expires_at,
            created_at=iso_timestamp(),
        )))

    def get_session(self, token_hash: str) -> Optional[dict]:
        with self._read() as conn:
            row = conn.execute(
                select(auth_sessions).where(auth_sessions.c.token_hash == token_hash)
            ).first()
        return dict(row._mapping) if row else None

    def delete_session(self, token_hash: str) -> int:
        return self._write(lambda conn: conn.execute(
            delete(auth_sessions).where(auth_sessions.c.token_hash == token_hash)
        ).rowcount)

    def delete_expired_sessions(self, now: str) -> int:
        return self._write(lambda conn: conn.execute(
            delete(auth_sessions).where(auth_sessions.c.expires_at <= now)
        ).rowcount)

    # ---------- favorites ----------

    def list_favorites(self, user_id: int) -> List[dict]:
        with self._read() as conn:
            return _rows(conn.execute(
                select(favorite_songs)
                .where(favorite_songs.c.user_id == user_id)
                .order_by(favorite_songs.c.created_at.desc(), favorite_songs.c.id.desc())
            ))

    def add_favorite(self, user_id: int, song_id: str, song_title: str, album_name: str) -> bool:
        stmt = sqlite_insert(favorite_songs).values(
            user_id=user_id, song_id=song_id, song_title=song_title,
            album_name=album_name, created_at=iso_timestamp(),
        ).on_conflict_do_nothing(index_elements=["user_id", "song_id"])
        return self._write(lambda conn: conn.execute(stmt).rowcount > 0)

    def remove_favorite(self, user_id: int, song_id: str) -> bool:
        return self._write(lambda conn: conn.execute(
            delete(favorite_songs).where(and_(
                favorite_songs.c.user_id == user_id, favorite_songs.c.song_id == song_id,
            ))
        ).rowcount > 0)

    # ---------- playlists ----------

    @staticmethod
    def _playlist_scope(user_id, playlist_id):
        return and_(playlist_items.c.user_id == user_id, playlist_items.c.playlist_id == playlist_id)

    def list_playlist(self, user_id: int, playlist_id: str) -> List[dict]:
        with self._read() as conn:
            return _rows(conn.execute(
                select(playlist_items)
                .where(self._playlist_scope(user_id, playlist_id))
                .order_by(playlist_items.c.position.asc(), playlist_items.c.id.asc())
            ))

    def add_playlist_item(self, user_id: int, playlist_id: str, song_id: str,
                          song_title: str, album_name: str) -> bool:
        scope = self._playlist_scope(user_id, playlist_id)

        def work(conn):
            exists = conn.execute(
                select(playlist_items.c.id).where(and_(scope, playlist_items.c.song_id == song_id)).limit(1)
            ).first()
            if exists:
                return False
            max_position = conn.execute(
                select(func.coalesce(func.max(playlist_items.c.position), -1)).where(scope)
            ).scalar()
            conn.execute(playlist_items.insert().values(
                user_id=user_id, playlist_id=playlist_id, song_id=song_id,
                song_title=song_title, album_name=album_name,
                position=int(max_position) + 1, created_at=iso_timestamp(),
            ))
            return True

        return self._write(work)

    def remove_playlist_item(self, user_id: int, playlist_id: str, song_id: str) -> bool:
        scope = self._playlist_scope(user_id, playlist_id)

        def work(conn):
            removed = conn.execute(
                delete(playlist_items).where(and_(scope, playlist_items.c.song_id == song_id))
            ).rowcount
            self._compact_positions(conn, scope)
            return removed > 0

        return self._write(work)

    @staticmethod
    def _compact_positions(conn, scope) -> None:
        rows = conn.execute(
            select(playlist_items.c.id, playlist_items.c.position)
            .where(scope)
            .order_by(playlist_items.c.position.asc(), playlist_items.c.id.asc())
        ).all()
        for index, row in enumerate(rows):
            if row.position != index:
                conn.execute(update(playlist_items).where(playlist_items.c.id == row.id).values(position=index))

    def reorder_playlist(self, user_id: int, playlist_id: str, song_ids: Sequence[str]) -> bool:
        scope = self._playlist_scope(user_id, playlist_id)

        def work(conn):
            existing = conn.execute(select(playlist_items.c.song_id).where(scope)).scalars().all()
            if not same_song_set(existing, song_ids):
                return False
            for index, song_id in enumerate(song_ids):
                conn.execute(
                    update(playlist_items)
                    .where(and_(scope, playlist_items.c.song_id == song_id))
                    .values(position=index)
                )
            return True

        return self._write(work)

    # ---------- playback telemetry ----------

    def insert_playback_log(self, values: dict) -> int:
        values = dict(values)
        values.setdefault("created_at", iso_timestamp())
        return self._write(lambda conn: conn.execute(
            playback_logs.insert().values(**values)
        ).inserted_primary_key[0])

    def claim_playback_logs(self, user_id: int) -> dict:
        def work(conn):
            migrated = conn.execute(
                update(playback_logs).where(playback_logs.c.user_id.is_(None)).values(user_id=user_id)
            ).rowcount
            remaining = conn.execute(
                select(func.count()).select_from(playback_logs).where(playback_logs.c.user_id.is_(None))
            ).scalar()
            return {"migrated_count": migrated, "remaining_null_count": int(remaining or 0)}

        return self._write(work)

    def playback_stats(self, user_id: Optional[int], include_anonymous: bool, threshold: float) -> dict:
        if user_id is not None:
            where, params = "user_id = :user_id", {"user_id": user_id}
        elif include_anonymous:
            where, params = "1=1", {}
        else:
            where, params = "user_id IS NOT NULL", {}
        params["threshold"] = threshold
        ends = ", ".join(f"'{name}'" for name in TERMINATING_EVENTS)
        ended = f"event IN ({ends})"

        summary_sql = f"""
            SELECT
              COALESCE(SUM(CASE WHEN {ended} THEN played_seconds ELSE 0 END), 0) AS total_played_seconds,
              COALESCE(SUM(CASE WHEN {ended} THEN 1 ELSE 0 END), 0) AS sessions,
              COALESCE(SUM(CASE WHEN {ended} AND played_seconds >= :threshold THEN 1 ELSE 0 END), 0) AS play_count,
              COUNT(DISTINCT CASE WHEN {ended} THEN song_id END) AS song_count,
              COUNT(DISTINCT CASE WHEN {ended} THEN album_name END) AS album_count
            FROM playback_logs WHERE {where}
        """
        songs_sql = f"""
            SELECT song_id, song_title, album_name,
              SUM(CASE WHEN {ended} THEN played_seconds ELSE 0 END) AS total_played_seconds,
              SUM(CASE WHEN {ended} THEN 1 ELSE 0 END) AS sessions,
              SUM(CASE WHEN {ended} AND played_seconds >= :threshold THEN 1 ELSE 0 END) AS play_count,
              AVG(CASE WHEN {ended} THEN played_seconds END) AS avg_session_seconds,
              MAX(CASE WHEN {ended} THEN created_at END) AS last_played_at
            FROM playback_logs WHERE {where}
            GROUP BY song_id, song_title, album_name
            HAVING sessions > 0
            ORDER BY total_played_seconds DESC, play_count DESC, last_played_at DESC
        """
        albums_sql = f"""
            SELECT album_name,
              SUM(CASE WHEN {ended} THEN played_seconds ELSE 0 END) AS total_played_seconds,
              SUM(CASE WHEN {ended} THEN 1 ELSE 0 END) AS sessions,
              SUM(CASE WHEN {ended} AND played_seconds >= :threshold THEN 1 ELSE 0 END) AS play_count,
              COUNT(DISTINCT CASE WHEN {ended} THEN song_id END) AS song_count,
              MAX(CASE WHEN {ended} THEN created_at END) AS last_played_at
            FROM playback_logs WHERE {where}
            GROUP BY album_name
            HAVING sessions > 0
            ORDER BY total_played_seconds DESC, play_count DESC, last_played_at DESC
        """
        with self._read() as conn:
            summary = dict(conn.execute(text(summary_sql), params).first()._mapping)
            songs = _rows(conn.execute(text(songs_sql), params))
            albums = _rows(conn.execute(text(albums_sql), params))
        return {"summary": summary, "songs": songs, "albums": albums}

    # ---------- generic row access (mirroring, migration) ----------

    def table_exists(self, table_name: str) -> bool:
        with self._read() as conn:
            return inspect(conn).has_table(table_name)

    def fetch_rows(self, table_name: str, filters: Sequence[Filter] = (),
                   after_id: Optional[int] = None, limit: Optional[int] = None) -> List[dict]:
        table = TABLES[table_name]
        stmt = _apply_where(select(table), table, filters)
        if after_id is not None:
            stmt = stmt.where(table.c.id > after_id)
        stmt = stmt.order_by(table.c.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._read() as conn:
            return _rows(conn.execute(stmt))

    def count_rows(self, table_name: str, filters: Sequence[Filter] = ()) -> int:
        table = TABLES[table_name]
        stmt = _apply_where(select(func.count()).select_from(table), table, filters)
        with self._read() as conn:
            return int(conn.execute(stmt).scalar() or 0)

    def upsert_rows(self, table_name: str, rows: Sequence[dict], conflict_columns: Sequence[str]) -> None:
        if not rows:
            return
        table = TABLES[table_name]

        def work(conn):
            for row in rows:
                values = {key: value for key, value in row.items() if key in table.c}
                stmt = sqlite_insert(table).values(**values)
                updates = {key: stmt.excluded[key] for key in values if key not in conflict_columns}
                if updates:
                    stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=updates)
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
                conn.execute(stmt)

        self._write(work)

    def delete_rows(self, table_name: str, filters: Sequence[Filter]) -> int:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        table = TABLES[table_name]
        return self._write(lambda conn: conn.execute(
            _apply_where(delete(table), table, filters)
        ).rowcount)

    def replace_rows(self, table_name: str, filters: Sequence[Filter], rows: Sequence[dict]) -> None:
        """Delete everything matching ``filters`` and insert ``rows`` in one transaction."""
        if not filters:
            raise ValueError("Refusing to replace without filters")
        table = TABLES[table_name]

        def work(conn):
            conn.execute(_apply_where(delete(table), table, filters))
            for row in rows:
                conn.execute(table.insert().values(**{k: v for k, v in row.items() if k in table.c}))

        self._write(work)


def same_song_set(existing: Sequence[str], requested: Sequence[str]) -> bool:
    """A reorder must name every current song exactly once."""
    requested = [str(song_id) for song_id in requested]
    return (
        len(requested) == len(existing)
        and len(set(requested)) == len(requested)
        and set(requested) == {str(song_id) for song_id in existing}
    )
