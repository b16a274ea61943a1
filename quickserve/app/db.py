"""
Local-first device store (SQLite).

One table per collection. Each row keeps the record's primary key, the tenant id
(`restaurant_id`) for tenant-indexed collections, and the full record as a JSON
document. Secondary indexes are either the tenant column or SQLite expression
indexes over the JSON document.

All access goes through one connection guarded by a lock, so a transaction
(including a bulk write) is never observed half-applied. The async methods run
the SQLite work in a worker thread to keep the event loop responsive.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from .errors import StorageError

TENANT_FIELD = "restaurant_id"


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    key_field: str = "id"
    key_type: str = "TEXT"
    tenant_indexed: bool = True
    since_version: int = 1
    # (json field, schema version that introduced the index)
    indexes: tuple[tuple[str, int], ...] = ()

    def index_fields(self, version: int) -> list[str]:
        return [f for f, v in self.indexes if v <= version]


COLLECTIONS: dict[str, CollectionSpec] = {
    c.name: c
    for c in (
        CollectionSpec("menu_items"),
        CollectionSpec("categories"),
        CollectionSpec("customers", indexes=(("mobile", 2),)),
        CollectionSpec("orders", indexes=(("status", 2),)),
        CollectionSpec("pending_orders", key_field="ephemeral_id", key_type="INTEGER", tenant_indexed=False),
        CollectionSpec("settings", key_field="unique_key", tenant_indexed=False),
        CollectionSpec("inventory_items"),
        CollectionSpec("restaurant_tables", since_version=2),
    )
}

TENANT_COLLECTIONS = tuple(name for name, c in COLLECTIONS.items() if c.tenant_indexed)


def json_default(v):
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, uuid.UUID):
        return str(v)
    raise TypeError(f"not JSON serializable: {type(v).__name__}")


def _create_collection(cur, spec: CollectionSpec):
    tenant_col = ", tenant_id TEXT" if spec.tenant_indexed else ""
    cur.execute(
        f"CREATE TABLE IF NOT EXISTS {spec.name} (pk {spec.key_type} PRIMARY KEY{tenant_col}, data TEXT NOT NULL)"
    )
    if spec.tenant_indexed:
        cur.execute(f"CREATE INDEX IF NOT EXISTS idx_{spec.name}_tenant ON {spec.name}(tenant_id)")


def _create_json_index(cur, collection: str, field: str):
    cur.execute(
        f"CREATE INDEX IF NOT EXISTS idx_{collection}_{field} ON {collection}(json_extract(data, '$.{field}'))"
    )


def _migrate_v1(cur):
    cur.execute("CREATE TABLE IF NOT EXISTS local_counters (name TEXT PRIMARY KEY, value INTEGER NOT NULL)")
    for spec in COLLECTIONS.values():
        if spec.since_version <= 1:
            _create_collection(cur, spec)


def _migrate_v2(cur):
    _create_collection(cur, COLLECTIONS["restaurant_tables"])
    for spec in COLLECTIONS.values():
        for field, since in spec.indexes:
            if since == 2:
                _create_json_index(cur, spec.name, field)


# Additive steps only: a step may create tables/indexes, never drop or truncate.
MIGRATIONS: list[tuple[int, Callable]] = [
    (1, _migrate_v1),
    (2, _migrate_v2),
]
LATEST_VERSION = MIGRATIONS[-1][0]


def normalize_key(spec: CollectionSpec, key):
    if key is None or key == "":
        raise StorageError("missing primary key", collection=spec.name, op="key")
    if spec.key_type == "INTEGER":
        try:
            return int(key)
        except (TypeError, ValueError):
            raise StorageError(f"invalid integer key: {key!r}", collection=spec.name, op="key")
    return str(key)


def _encode(spec: CollectionSpec, record) -> str:
    try:
        return json.dumps(record, default=json_default, sort_keys=True)
    except (TypeError, ValueError) as ex:
        raise StorageError(f"record is not serializable: {ex}", collection=spec.name, op="encode")


class Transaction:
    """Row-level operations available inside one store transaction."""

    def __init__(self, store: "LocalStore", cur):
        self._store = store
        self._cur = cur

    @property
    def cursor(self):
        return self._cur

    def _spec(self, collection: str) -> CollectionSpec:
        return self._store.spec(collection)

    def get(self, collection: str, key) -> Optional[dict]:
        spec = self._spec(collection)
        self._cur.execute(f"SELECT data FROM {spec.name} WHERE pk = ?", (normalize_key(spec, key),))
        row = self._cur.fetchone()
        return json.loads(row[0]) if row else None

    def put(self, collection: str, record: dict) -> Any:
        spec = self._spec(collection)
        if not isinstance(record, dict):
            raise StorageError("record must be a mapping", collection=spec.name, op="put")
        key = normalize_key(spec, record.get(spec.key_field))
        data = _encode(spec, record)
        if spec.tenant_indexed:
            tenant = record.get(TENANT_FIELD)
            self._cur.execute(
                f"""
                INSERT INTO {spec.name} (pk, tenant_id, data) VALUES (?, ?, ?)
                ON CONFLICT(pk) DO UPDATE SET tenant_id=excluded.tenant_id, data=excluded.data
                """,
                (key, str(tenant) if tenant is not None else None, data),
            )
        else:
            self._cur.execute(
                f"INSERT INTO {spec.name} (pk, data) VALUES (?, ?) ON CONFLICT(pk) DO UPDATE SET data=excluded.data",
                (key, data),
            )
        return key

    def delete(self, collection: str, key) -> None:
        spec = self._spec(collection)
        self._cur.execute(f"DELETE FROM {spec.name} WHERE pk = ?", (normalize_key(spec, key),))

    def clear(self, collection: str) -> None:
        spec = self._spec(collection)
        self._cur.execute(f"DELETE FROM {spec.name}")

    def delete_tenant(self, collection: str, tenant_id) -> None:
        spec = self._store.tenant_spec(collection)
        self._cur.execute(f"DELETE FROM {spec.name} WHERE tenant_id = ?", (str(tenant_id),))

    def next_counter(self, name: str) -> int:
        self._cur.execute(
            """
            INSERT INTO local_counters (name, value) VALUES (?, 1)
            ON CONFLICT(name) DO UPDATE SET value = value + 1
            """,
            (name,),
        )
        self._cur.execute("SELECT value FROM local_counters WHERE name = ?", (name,))
        return int(self._cur.fetchone()[0])


class LocalStore:
    def __init__(self, conn: sqlite3.Connection, version: int, store_id: str, path: str):
        self._conn = conn
        self._lock = threading.Lock()
        self.version = version
        self.store_id = store_id
        self.path = path

    # --- lifecycle -----------------------------------------------------------

    @classmethod
    def open_sync(cls, path: str, version: Optional[int] = None) -> "LocalStore":
        target = LATEST_VERSION if version is None else int(version)
        if target < 1 or target > LATEST_VERSION:
            raise StorageError(f"unsupported schema version {target} (latest is {LATEST_VERSION})", op="open")
        try:
            conn = sqlite3.connect(path, timeout=30, check_same_thread=False, isolation_level=None)
        except sqlite3.Error as ex:
            raise StorageError(f"open failed: {ex}", op="open") from ex
        try:
            if path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            # FULL: a committed enqueue (and its counter bump) must survive power loss.
            conn.execute("PRAGMA synchronous=FULL;")
            store = cls(conn, 0, "", path)
            store._upgrade(target)
            return store
        except sqlite3.Error as ex:
            conn.close()
            raise StorageError(f"open failed: {ex}", op="open") from ex
        except StorageError:
            conn.close()
            raise

    @classmethod
    async def open(cls, path: str, version: Optional[int] = None) -> "LocalStore":
        return await asyncio.to_thread(cls.open_sync, path, version)

    def _upgrade(self, target: int):
        with self._transaction(op="upgrade") as cur:
            cur.execute("CREATE TABLE IF NOT EXISTS schema_meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
            cur.execute("SELECT value FROM schema_meta WHERE key = 'version'")
            row = cur.fetchone()
            current = int(row[0]) if row else 0
            if current > target:
                # No downgrade path: an older build must not touch a newer schema.
                raise StorageError(f"database is at schema version {current}; cannot open as version {target}", op="open")
            for step_version, step in MIGRATIONS:
                if current < step_version <= target:
                    step(cur)
            cur.execute(
                "INSERT INTO schema_meta (key, value) VALUES ('version', ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (str(max(current, target)),),
            )
            self.store_id = self._ensure_store_id(cur)
        self.version = max(current, target)

    def _ensure_store_id(self, cur, rotate: bool = False) -> str:
        cur.execute("SELECT value FROM schema_meta WHERE key = 'store_id'")
        row = cur.fetchone()
        if row and not rotate:
            return str(row[0])
        store_id = uuid.uuid4().hex
        cur.execute(
            "INSERT INTO schema_meta (key, value) VALUES ('store_id', ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (store_id,),
        )
        return store_id

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- plumbing --------------------------------------------------------------

    def spec(self, collection: str) -> CollectionSpec:
        spec = COLLECTIONS.get(collection)
        if spec is None:
            raise StorageError(f"unknown collection: {collection}", collection=collection)
        if spec.since_version > self.version:
            raise StorageError(
                f"collection {collection} requires schema version {spec.since_version}", collection=collection
            )
        return spec

    def tenant_spec(self, collection: str) -> CollectionSpec:
        spec = self.spec(collection)
        if not spec.tenant_indexed:
            raise StorageError(f"collection {collection} has no tenant index", collection=collection, op="get_by_tenant")
        return spec

    @contextmanager
    def _transaction(self, collection: Optional[str] = None, op: str = "tx"):
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                yield cur
                cur.execute("COMMIT")
            except sqlite3.Error as ex:
                self._rollback()
                raise StorageError(f"{op} failed: {ex}", collection=collection, op=op) from ex
            except BaseException:
                self._rollback()
                raise

    def _rollback(self):
        try:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            # The original failure is what the caller needs to see.
            pass

    def _read(self, collection: str, op: str, sql: str, params: tuple = ()) -> list[dict]:
        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as ex:
                raise StorageError(f"{op} failed: {ex}", collection=collection, op=op) from ex
        return [json.loads(r[0]) for r in rows]

    def run_sync(self, fn: Callable[[Transaction], Any], *, collection: Optional[str] = None, op: str = "tx"):
        with self._transaction(collection=collection, op=op) as cur:
            return fn(Transaction(self, cur))

    async def run(self, fn: Callable[[Transaction], Any], *, collection: Optional[str] = None, op: str = "tx"):
        """Run `fn(tx)` inside one write transaction; all of it commits or none of it does."""
        return await asyncio.to_thread(self.run_sync, fn, collection=collection, op=op)

    # --- CRUD --------------------------------------------------------------------

    async def put(self, collection: str, record: dict):
        return await self.run(lambda tx: tx.put(collection, record), collection=collection, op="put")

    async def get(self, collection: str, key) -> Optional[dict]:
        spec = self.spec(collection)
        pk = normalize_key(spec, key)
        rows = await asyncio.to_thread(
            self._read, collection, "get", f"SELECT data FROM {spec.name} WHERE pk = ?", (pk,)
        )
        return rows[0] if rows else None

    async def get_all(self, collection: str) -> list[dict]:
        spec = self.spec(collection)
        return await asyncio.to_thread(self._read, collection, "get_all", f"SELECT data FROM {spec.name} ORDER BY pk")

    async def get_by_tenant(self, collection: str, tenant_id) -> list[dict]:
        spec = self.tenant_spec(collection)
        if tenant_id is None or str(tenant_id) == "":
            return []
        return await asyncio.to_thread(
            self._read,
            collection,
            "get_by_tenant",
            f"SELECT data FROM {spec.name} WHERE tenant_id = ? ORDER BY pk",
            (str(tenant_id),),
        )

    async def get_by_index(self, collection: str, index: str, value) -> list[dict]:
        spec = self.spec(collection)
        if index == TENANT_FIELD:
            return await self.get_by_tenant(collection, value)
        if index not in spec.index_fields(self.version):
            raise StorageError(f"collection {collection} has no index on {index}", collection=collection, op="get_by_index")
        return await asyncio.to_thread(
            self._read,
            collection,
            "get_by_index",
            f"SELECT data FROM {spec.name} WHERE json_extract(data, '$.{index}') = ? ORDER BY pk",
            (value,),
        )

    async def count(self, collection: str) -> int:
        spec = self.spec(collection)

        def _count():
            with self._lock:
                try:
                    return int(self._conn.execute(f"SELECT COUNT(1) FROM {spec.name}").fetchone()[0])
                except sqlite3.Error as ex:
                    raise StorageError(f"count failed: {ex}", collection=collection, op="count") from ex

        return await asyncio.to_thread(_count)

    async def delete(self, collection: str, key) -> None:
        await self.run(lambda tx: tx.delete(collection, key), collection=collection, op="delete")

    async def clear(self, collection: str) -> None:
        self.spec(collection)
        await self.run(lambda tx: tx.clear(collection), collection=collection, op="clear")

    async def bulk_put(self, collection: str, records: Iterable[dict]) -> int:
        rows = list(records or [])

        def _write(tx: Transaction) -> int:
            for r in rows:
                tx.put(collection, r)
            return len(rows)

        return await self.run(_write, collection=collection, op="bulk_put")

    async def replace_tenant_rows(self, collection: str, tenant_id, records: Iterable[dict]) -> int:
        """Swap a tenant's cached rows for a fresh snapshot in one transaction."""
        self.tenant_spec(collection)
        rows = list(records or [])
        tid = str(tenant_id)
        for r in rows:
            if str(r.get(TENANT_FIELD)) != tid:
                raise StorageError(
                    f"row {r.get('id')!r} does not belong to tenant {tid}", collection=collection, op="replace_tenant_rows"
                )

        def _write(tx: Transaction) -> int:
            tx.delete_tenant(collection, tid)
            for r in rows:
                tx.put(collection, r)
            return len(rows)

        return await self.run(_write, collection=collection, op="replace_tenant_rows")

    async def wipe(self) -> None:
        """Full local-data wipe. The only operation that resets local counters."""

        def _wipe(tx: Transaction):
            for spec in COLLECTIONS.values():
                if spec.since_version <= self.version:
                    tx.clear(spec.name)
            tx.cursor.execute("DELETE FROM local_counters")
            # New identity so idempotency tokens minted after the wipe never collide with earlier ones.
            return self._ensure_store_id(tx.cursor, rotate=True)

        self.store_id = await self.run(_wipe, op="wipe")
