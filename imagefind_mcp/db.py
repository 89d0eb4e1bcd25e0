from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .parsing import MetadataEntry


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY,
    path TEXT NOT NULL UNIQUE,
    fingerprint TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS metadata_entries (
    id INTEGER PRIMARY KEY,
    file_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    FOREIGN KEY(file_id) REFERENCES files(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_metadata_entries_file ON metadata_entries(file_id, id);
"""

# SQLite caps bound parameters per statement; stay well below the old 999 limit.
_BATCH_SIZE = 900


class StoreError(RuntimeError):
    """Raised when an index transaction fails and has been rolled back."""


@dataclass(frozen=True)
class SearchHit:
    file_path: str
    value: str


@dataclass(frozen=True)
class SQLQuery:
    text: str
    params: Tuple[Any, ...]


def build_in_query(prefix_sql: str, values: Sequence[Any], suffix_sql: str = "") -> SQLQuery:
    placeholders = ",".join(["?"] * len(values))
    sql = prefix_sql + "(" + placeholders + ")" + suffix_sql
    return SQLQuery(sql, tuple(values))


def _contains_ci(value: Any, term: Any) -> int:
    # SQLite's LIKE/lower() only fold ASCII; casefold handles the rest.
    if value is None or term is None:
        return 0
    return 1 if str(term).casefold() in str(value).casefold() else 0


class _ConnectionPool:
    def __init__(self, db_path: str, maxsize: int = 10, timeout_s: float = 30.0) -> None:
        self.db_path = db_path
        self.maxsize = maxsize
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize)
        self._created = 0
        self._lock = asyncio.Lock()
        self._all: set[aiosqlite.Connection] = set()
        self._semaphore = asyncio.Semaphore(maxsize)
        self._closing = False

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        try:
            await conn.execute("PRAGMA foreign_keys=ON;")
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA busy_timeout=5000;")
            await conn.create_function("contains_ci", 2, _contains_ci, deterministic=True)
        except BaseException:
            await conn.close()
            raise
        return conn

    async def acquire(self) -> aiosqlite.Connection:
        if self._closing:
            raise RuntimeError("Connection pool is closing")
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutError("Timed out waiting for database connection") from exc

        # A failed connect must give its semaphore slot back or the pool
        # deadlocks after maxsize failures.
        try:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                should_create = False
                async with self._lock:
                    if self._created < self.maxsize:
                        self._created += 1
                        should_create = True
                if should_create:
                    try:
                        conn = await self._open()
                    except Exception:
                        async with self._lock:
                            self._created -= 1
                        raise
                    self._all.add(conn)
                    return conn
                return await self._queue.get()
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
            await self._queue.put(conn)
        except Exception:
            logging.warning("Failed to rollback or return pooled connection; closing.", exc_info=True)
            try:
                await conn.close()
            except Exception:
                logging.warning("Failed to close connection during release", exc_info=True)
            self._all.discard(conn)
            if self._created > 0:
                self._created -= 1
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        self._closing = True
        for _ in range(self.maxsize):
            await self._semaphore.acquire()
        conns = list(self._all)
        self._all.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        for conn in conns:
            await conn.close()


_pools: Dict[str, _ConnectionPool] = {}
_pool_locks: Dict[int, asyncio.Lock] = {}


def _pool_lock() -> asyncio.Lock:
    # asyncio locks are bound to the loop that first waits on them.
    loop_id = id(asyncio.get_running_loop())
    lock = _pool_locks.get(loop_id)
    if lock is None:
        _pool_locks.clear()
        lock = asyncio.Lock()
        _pool_locks[loop_id] = lock
    return lock


async def _get_pool(db_path: str) -> _ConnectionPool:
    async with _pool_lock():
        pool = _pools.get(db_path)
        if pool is None:
            ensure_db_permissions(db_path)
            pool = _ConnectionPool(db_path=db_path, maxsize=10)
            _pools[db_path] = pool
        return pool


def ensure_db_permissions(db_path: str) -> None:
    db_path = os.path.abspath(db_path)
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    if not os.path.exists(db_path):
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(db_path, flags, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)


async def close_db_pool(db_path: Optional[str] = None) -> None:
    async with _pool_lock():
        if db_path is None:
            pools = list(_pools.values())
            _pools.clear()
        else:
            pool = _pools.pop(db_path, None)
            pools = [pool] if pool else []
    for pool in pools:
        await pool.close()


@asynccontextmanager
async def get_connection(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    pool = await _get_pool(db_path)
    conn = await pool.acquire()
    try:
        yield conn
    finally:
        await pool.release(conn)


async def init_db(db_path: str) -> None:
    async with get_connection(db_path) as db:
        await db.executescript(SCHEMA_SQL)


async def upsert_file(
    db_path: str,
    path: str,
    fingerprint: str,
    entries: Sequence[MetadataEntry],
) -> int:
    """Insert or update one file and replace all of its metadata entries.

    Runs as a single transaction: concurrent readers observe either the old
    entry set or the new one. On any failure the transaction is rolled back
    and :class:`StoreError` is raised.
    """
    async with get_connection(db_path) as db:
        try:
            await db.execute("BEGIN IMMEDIATE")
            await db.execute(
                """
                INSERT INTO files(path, fingerprint) VALUES(?, ?)
                ON CONFLICT(path) DO UPDATE SET
                  fingerprint = excluded.fingerprint,
                  updated_at = datetime('now')
                """,
                (path, fingerprint),
            )
            async with db.execute("SELECT id FROM files WHERE path = ?", (path,)) as cursor:
                row = await cursor.fetchone()
            file_id = int(row[0])
            await db.execute("DELETE FROM metadata_entries WHERE file_id = ?", (file_id,))
            if entries:
                await db.executemany(
                    "INSERT INTO metadata_entries(file_id, key, value) VALUES(?, ?, ?)",
                    [(file_id, e.key, e.value) for e in entries],
                )
            await db.commit()
            return file_id
        except Exception as exc:
            if db.in_transaction:
                await db.rollback()
            raise StoreError(f"Failed to index {path}: {exc}") from exc


async def get_fingerprint(db_path: str, path: str) -> Optional[str]:
    async with get_connection(db_path) as db:
        async with db.execute("SELECT fingerprint FROM files WHERE path = ?", (path,)) as cursor:
            row = await cursor.fetchone()
    return str(row[0]) if row else None


async def fetch_fingerprints(db_path: str) -> Dict[str, str]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall("SELECT path, fingerprint FROM files")
    return {str(path): str(fingerprint) for path, fingerprint in rows}


async def fetch_entries(db_path: str, path: str) -> List[MetadataEntry]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(
            """
            SELECT e.key, e.value
            FROM metadata_entries e
            JOIN files f ON f.id = e.file_id
            WHERE f.path = ?
            ORDER BY e.id
            """,
            (path,),
        )
    return [MetadataEntry(str(k), str(v)) for k, v in rows]


async def list_file_paths(db_path: str) -> List[str]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall("SELECT path FROM files ORDER BY path ASC")
    return [str(r[0]) for r in rows]


async def count_files(db_path: str) -> int:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall("SELECT COUNT(*) FROM files")
    return int(rows[0][0]) if rows else 0


async def delete_files(db_path: str, paths: Sequence[str]) -> int:
    """Delete file rows (and, by cascade, their entries). Returns rows removed."""
    if not paths:
        return 0
    removed = 0
    async with get_connection(db_path) as db:
        try:
            await db.execute("BEGIN IMMEDIATE")
            for i in range(0, len(paths), _BATCH_SIZE):
                query = build_in_query("DELETE FROM files WHERE path IN ", list(paths[i:i + _BATCH_SIZE]))
                cursor = await db.execute(query.text, query.params)
                removed += max(0, cursor.rowcount)
                await cursor.close()
            await db.commit()
        except Exception as exc:
            if db.in_transaction:
                await db.rollback()
            raise StoreError(f"Failed to delete {len(paths)} file rows: {exc}") from exc
    return removed


def build_match_query(terms: Sequence[str]) -> SQLQuery:
    """Build the conjunctive substring query for *terms*.

    Every term must match at least one entry of the file. The representative
    value is the first entry (by id) matching the first term, or the file's
    first entry when there are no terms.
    """
    exists = "EXISTS (SELECT 1 FROM metadata_entries e WHERE e.file_id = f.id AND contains_ci(e.value, ?))"
    if terms:
        representative = (
            "(SELECT e.value FROM metadata_entries e "
            "WHERE e.file_id = f.id AND contains_ci(e.value, ?) ORDER BY e.id LIMIT 1)"
        )
        where = "WHERE " + " AND ".join([exists] * len(terms))
        params: Tuple[Any, ...] = (terms[0], *terms)
    else:
        representative = "(SELECT e.value FROM metadata_entries e WHERE e.file_id = f.id ORDER BY e.id LIMIT 1)"
        where = ""
        params = ()
    sql = f"SELECT f.path, COALESCE({representative}, '') FROM files f {where} ORDER BY f.path ASC"
    return SQLQuery(sql, params)


async def query_files(db_path: str, terms: Sequence[str]) -> List[SearchHit]:
    query = build_match_query(list(terms))
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(query.text, query.params)
    return [SearchHit(file_path=str(path), value=str(value)) for path, value in rows]
