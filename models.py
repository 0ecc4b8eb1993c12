#!/usr/bin/env python3
"""
Durable store for the Link Summarizer.

A small key-value substrate on SQLite offering the three shapes the pipeline
needs: string keys with optional TTL, hashes, and sorted sets. All operations
run on a single worker coroutine fed by an asyncio queue, so every operation
is an atomic read-modify-write with respect to the others.
"""

from os import path, access, R_OK
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span
from utils import SystemClock

logger = get_logger("models")


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql if it is new."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='zsets'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


class DurableStore:
    """A queue of store operations executed by one worker against SQLite."""

    def __init__(self, db_path: str, clock=None):
        self.db_path = db_path
        self.clock = clock or SystemClock()
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Start the store worker."""
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info(f"Store worker started ({self.db_path})")

    async def stop(self) -> None:
        """Stop the store worker and close the connection."""
        if not self.running:
            return
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()
        logger.info("Store worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing store operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            logger.error(f"Store could not be opened at {self.db_path}: {e}")
            self.running = False
            for event in self.events.values():
                event.set()
            return

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, TypeError, ValueError) as e:
                    logger.error(f"Store operation error in {operation_name}: {e}")
                    self.conn.rollback()
                    self.results[operation_id] = {"error": f"{operation_name}: {e}"}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()
            except CancelledError:
                logger.debug("Store worker cancelled")
                break

    @trace_span(
        "store.execute",
        tracer_name="store",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.key": str(params.get("key", "")),
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a store operation and return its result."""
        if not self.running:
            raise StoreError("Store is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            if not self.running:
                raise StoreError("Store is not running")
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(f"Store stopped before {operation_name} completed")
            if "error" in result:
                raise StoreError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # ------------------------------------------------------------------
    # String keys with optional TTL
    # ------------------------------------------------------------------
    def _live_value(self, key: str) -> Optional[Row]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT value, expires_at FROM kv WHERE key = ?", (key,))
        row = cursor.fetchone()
        if row is None:
            return None
        if row['expires_at'] is not None and row['expires_at'] <= self.clock.now():
            cursor.execute("DELETE FROM kv WHERE key = ?", (key,))
            self.conn.commit()
            return None
        return row

    def op_get(self, key: str) -> Optional[str]:
        row = self._live_value(key)
        return row['value'] if row else None

    def op_set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        expires_at = self.clock.now() + float(ttl) if ttl is not None else None
        self.conn.execute(
            "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
            (key, str(value), expires_at),
        )
        self.conn.commit()
        return True

    def op_set_many(self, values: Dict[str, Any]) -> bool:
        """Set several keys (without TTL) in one transaction."""
        self.conn.executemany(
            "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, NULL) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = NULL",
            [(k, str(v)) for k, v in values.items()],
        )
        self.conn.commit()
        return True

    def op_get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        return {key: self.op_get(key) for key in keys}

    def op_delete(self, key: str) -> int:
        cursor = self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount

    def op_exists(self, key: str) -> bool:
        return self._live_value(key) is not None

    def op_ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, or None for missing keys and keys without TTL."""
        row = self._live_value(key)
        if row is None or row['expires_at'] is None:
            return None
        return max(0.0, row['expires_at'] - self.clock.now())

    def op_purge_expired(self) -> int:
        cursor = self.conn.execute(
            "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?", (self.clock.now(),)
        )
        self.conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------
    def op_hget(self, key: str, field: str) -> Optional[str]:
        cursor = self.conn.execute("SELECT value FROM hashes WHERE key = ? AND field = ?", (key, field))
        row = cursor.fetchone()
        return row['value'] if row else None

    def op_hset(self, key: str, field: str, value: Any) -> bool:
        self.conn.execute(
            "INSERT INTO hashes (key, field, value) VALUES (?, ?, ?) "
            "ON CONFLICT(key, field) DO UPDATE SET value = excluded.value",
            (key, field, str(value)),
        )
        self.conn.commit()
        return True

    def op_hincrby(self, key: str, field: str, amount: int = 1) -> int:
        current = self.op_hget(key, field)
        updated = int(current or 0) + int(amount)
        self.op_hset(key, field, updated)
        return updated

    def op_hgetall(self, key: str) -> Dict[str, str]:
        cursor = self.conn.execute("SELECT field, value FROM hashes WHERE key = ?", (key,))
        return {row['field']: row['value'] for row in cursor.fetchall()}

    def op_hdel_key(self, key: str) -> int:
        cursor = self.conn.execute("DELETE FROM hashes WHERE key = ?", (key,))
        self.conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------
    def op_zadd(self, key: str, member: str, score: float) -> bool:
        """Add a member or overwrite its score. Returns True when the member is new."""
        existed = self.op_zscore(key, member) is not None
        self.conn.execute(
            "INSERT INTO zsets (key, member, score) VALUES (?, ?, ?) "
            "ON CONFLICT(key, member) DO UPDATE SET score = excluded.score",
            (key, member, float(score)),
        )
        self.conn.commit()
        return not existed

    def op_zscore(self, key: str, member: str) -> Optional[float]:
        cursor = self.conn.execute("SELECT score FROM zsets WHERE key = ? AND member = ?", (key, member))
        row = cursor.fetchone()
        return row['score'] if row else None

    def op_zrange_by_score(self, key: str, min_score: float, max_score: float,
                           limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Members with min_score <= score <= max_score, ascending by (score, member)."""
        query = ("SELECT member, score FROM zsets WHERE key = ? AND score >= ? AND score <= ? "
                 "ORDER BY score ASC, member ASC")
        params: List[Any] = [key, float(min_score), float(max_score)]
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        cursor = self.conn.execute(query, params)
        return [{'member': row['member'], 'score': row['score']} for row in cursor.fetchall()]

    def op_zrem(self, key: str, member: str) -> int:
        cursor = self.conn.execute("DELETE FROM zsets WHERE key = ? AND member = ?", (key, member))
        self.conn.commit()
        return cursor.rowcount

    def op_zrem_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        cursor = self.conn.execute(
            "DELETE FROM zsets WHERE key = ? AND score >= ? AND score <= ?",
            (key, float(min_score), float(max_score)),
        )
        self.conn.commit()
        return cursor.rowcount

    def op_zcard(self, key: str) -> int:
        cursor = self.conn.execute("SELECT COUNT(*) AS n FROM zsets WHERE key = ?", (key,))
        return cursor.fetchone()['n']
