"""
SQLite Local Store

DESIGN DECISION: The client keeps a durable, key-addressed copy of every
entity it has seen, plus the mutation queue, in a single SQLite file:
1. User writes land here first and survive restarts while offline
2. The dispatcher and the realtime reconciler share one source of truth
3. Reads for the ledger never touch the network

Every operation is one transaction under a lock, so the optimistic-write
path, the dispatcher and the reconciler can interleave safely.

Schema evolution is additive only: each migration is appended to
MIGRATIONS and applied once, tracked by PRAGMA user_version.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional

import structlog

from tripsync.models.audit import AuditEvent
from tripsync.models.entities import get_schema
from tripsync.models.sync import MutationRecord, MutationStatus
from tripsync.services.storage.interface import (
    AuditStorageInterface,
    LocalStoreError,
    NotFoundError,
)


logger = structlog.get_logger(__name__)


MIGRATIONS: list[str] = [
    # 1: entities and the mutation queue
    """
    CREATE TABLE IF NOT EXISTS entities (
        table_name TEXT NOT NULL,
        id TEXT NOT NULL,
        parent_id TEXT,
        updated_at INTEGER NOT NULL DEFAULT 0,
        payload TEXT NOT NULL,
        PRIMARY KEY (table_name, id)
    );
    CREATE INDEX IF NOT EXISTS idx_entities_parent
        ON entities (table_name, parent_id);

    CREATE TABLE IF NOT EXISTS mutations (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        operation TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        base_payload TEXT,
        enqueued_at INTEGER NOT NULL,
        status TEXT NOT NULL,
        retries INTEGER NOT NULL DEFAULT 0,
        last_attempt_at INTEGER,
        error_message TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_mutations_status
        ON mutations (status, enqueued_at);
    CREATE INDEX IF NOT EXISTS idx_mutations_entity
        ON mutations (table_name, entity_id);
    """,
    # 2: derived-value cache
    """
    CREATE TABLE IF NOT EXISTS lookup_cache (
        cache_key TEXT PRIMARY KEY,
        data TEXT NOT NULL
    );
    """,
    # 3: audit trail
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        event_id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        correlation_id TEXT,
        event_json TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_audit_entity
        ON audit_events (entity_type, entity_id);
    """,
]


def _dumps(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class LocalStore:
    """
    Durable client-side store for entities, queued mutations, cached
    derived values and audit events.
    """

    def __init__(self, path: str = ":memory:"):
        self._path = path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
        except sqlite3.Error as e:
            raise LocalStoreError(f"Failed to open local store at {path}: {e}")
        self._conn.row_factory = sqlite3.Row
        self._migrate()

    @property
    def path(self) -> str:
        return self._path

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn.cursor()
            except sqlite3.Error as e:
                raise LocalStoreError(f"Local store operation failed: {e}")

    def _migrate(self) -> None:
        with self._lock:
            try:
                version = self._conn.execute("PRAGMA user_version").fetchone()[0]
                for number, script in enumerate(MIGRATIONS[version:], start=version + 1):
                    self._conn.executescript(script)
                    self._conn.execute(f"PRAGMA user_version = {number}")
                    self._conn.commit()
                    logger.info("local_store_migrated", path=self._path, version=number)
            except sqlite3.Error as e:
                raise LocalStoreError(f"Failed to migrate local store: {e}")

    @property
    def schema_version(self) -> int:
        with self._transaction() as cur:
            return cur.execute("PRAGMA user_version").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # =========================================================================
    # Entities
    # =========================================================================

    @staticmethod
    def _entity_params(table: str, record: dict[str, Any]) -> tuple:
        entity_id = record.get("id")
        if not entity_id:
            raise LocalStoreError(f"Cannot store a {table} record without an id")
        schema = get_schema(table)
        return (
            table,
            str(entity_id),
            schema.parent_id(record),
            int(record.get("updated_at") or 0),
            _dumps(record),
        )

    _UPSERT_SQL = """
        INSERT INTO entities (table_name, id, parent_id, updated_at, payload)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (table_name, id) DO UPDATE SET
            parent_id = excluded.parent_id,
            updated_at = excluded.updated_at,
            payload = excluded.payload
    """

    def upsert(self, table: str, record: dict[str, Any]) -> None:
        params = self._entity_params(table, record)
        with self._transaction() as cur:
            cur.execute(self._UPSERT_SQL, params)

    def bulk_upsert(self, table: str, records: Iterable[dict[str, Any]]) -> int:
        """Upsert many records in one transaction. Returns the count written."""
        rows = [self._entity_params(table, record) for record in records]
        with self._transaction() as cur:
            cur.executemany(self._UPSERT_SQL, rows)
        return len(rows)

    def get(self, table: str, entity_id: str) -> Optional[dict[str, Any]]:
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT payload FROM entities WHERE table_name = ? AND id = ?",
                (table, entity_id),
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    def get_by_parent(self, table: str, parent_id: str) -> list[dict[str, Any]]:
        with self._transaction() as cur:
            rows = cur.execute(
                "SELECT payload FROM entities WHERE table_name = ? AND parent_id = ? "
                "ORDER BY id",
                (table, parent_id),
            ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def all(self, table: str) -> list[dict[str, Any]]:
        with self._transaction() as cur:
            rows = cur.execute(
                "SELECT payload FROM entities WHERE table_name = ? ORDER BY id",
                (table,),
            ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def delete(self, table: str, entity_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM entities WHERE table_name = ? AND id = ?",
                (table, entity_id),
            )
            return cur.rowcount > 0

    def data_version(self, table: str, parent_id: str) -> str:
        """
        Fingerprint of a parent's rows.

        Changes whenever a row is added, removed or re-stamped, so it can key
        cached derived values.
        """
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT COUNT(*) AS n, COALESCE(MAX(updated_at), 0) AS latest, "
                "COALESCE(SUM(updated_at), 0) AS total "
                "FROM entities WHERE table_name = ? AND parent_id = ?",
                (table, parent_id),
            ).fetchone()
        return f"{row['n']}:{row['latest']}:{row['total']}"

    # =========================================================================
    # Mutation queue
    # =========================================================================

    @staticmethod
    def _row_to_mutation(row: sqlite3.Row) -> MutationRecord:
        return MutationRecord(
            seq=row["seq"],
            table=row["table_name"],
            operation=row["operation"],
            entity_id=row["entity_id"],
            payload=json.loads(row["payload"]),
            base_payload=json.loads(row["base_payload"]) if row["base_payload"] else None,
            enqueued_at=row["enqueued_at"],
            status=row["status"],
            retries=row["retries"],
            last_attempt_at=row["last_attempt_at"],
            error_message=row["error_message"],
        )

    def append_mutation(self, record: MutationRecord) -> MutationRecord:
        """Persist a new queue record and return it with its assigned seq."""
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO mutations (
                    table_name, operation, entity_id, payload, base_payload,
                    enqueued_at, status, retries, last_attempt_at, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.table,
                    record.operation.value,
                    record.entity_id,
                    _dumps(record.payload),
                    _dumps(record.base_payload) if record.base_payload is not None else None,
                    record.enqueued_at,
                    record.status.value,
                    record.retries,
                    record.last_attempt_at,
                    record.error_message,
                ),
            )
            seq = cur.lastrowid
        return record.model_copy(update={"seq": seq})

    def get_mutation(self, seq: int) -> Optional[MutationRecord]:
        with self._transaction() as cur:
            row = cur.execute("SELECT * FROM mutations WHERE seq = ?", (seq,)).fetchone()
        return self._row_to_mutation(row) if row else None

    def list_mutations(
        self,
        statuses: Optional[Iterable[MutationStatus]] = None,
    ) -> list[MutationRecord]:
        """Queue records in dispatch order (enqueue timestamp, then seq)."""
        query = "SELECT * FROM mutations"
        params: list[Any] = []
        if statuses is not None:
            values = [MutationStatus(s).value for s in statuses]
            if not values:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY enqueued_at ASC, seq ASC"
        with self._transaction() as cur:
            rows = cur.execute(query, params).fetchall()
        return [self._row_to_mutation(row) for row in rows]

    def update_mutation(self, record: MutationRecord) -> None:
        if record.seq is None:
            raise LocalStoreError("Cannot update a mutation that was never stored")
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE mutations SET
                    payload = ?, base_payload = ?, enqueued_at = ?, status = ?,
                    retries = ?, last_attempt_at = ?, error_message = ?
                WHERE seq = ?
                """,
                (
                    _dumps(record.payload),
                    _dumps(record.base_payload) if record.base_payload is not None else None,
                    record.enqueued_at,
                    record.status.value,
                    record.retries,
                    record.last_attempt_at,
                    record.error_message,
                    record.seq,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Mutation not found: {record.seq}")

    def delete_mutation(self, seq: int) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM mutations WHERE seq = ?", (seq,))
            return cur.rowcount > 0

    def has_later_mutation(self, table: str, entity_id: str, seq: int) -> bool:
        """True if a mutation for the same entity was queued after `seq`."""
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT 1 FROM mutations WHERE table_name = ? AND entity_id = ? AND seq > ? "
                "LIMIT 1",
                (table, entity_id, seq),
            ).fetchone()
        return row is not None

    def count_mutations(self, statuses: Optional[Iterable[MutationStatus]] = None) -> int:
        return len(self.list_mutations(statuses))

    # =========================================================================
    # Lookup cache
    # =========================================================================

    def get_cached(self, key: str) -> Optional[Any]:
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT data FROM lookup_cache WHERE cache_key = ?", (key,)
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def put_cached(self, key: str, data: Any) -> None:
        with self._transaction() as cur:
            cur.execute(
                "INSERT INTO lookup_cache (cache_key, data) VALUES (?, ?) "
                "ON CONFLICT (cache_key) DO UPDATE SET data = excluded.data",
                (key, _dumps(data)),
            )

    def clear_cache(self) -> None:
        with self._transaction() as cur:
            cur.execute("DELETE FROM lookup_cache")

    # =========================================================================
    # Audit events
    # =========================================================================

    def append_audit(self, row: dict[str, Any]) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT OR IGNORE INTO audit_events (
                    event_id, timestamp, event_type, severity,
                    entity_type, entity_id, correlation_id, event_json
                ) VALUES (
                    :event_id, :timestamp, :event_type, :severity,
                    :entity_type, :entity_id, :correlation_id, :event_json
                )
                """,
                row,
            )

    def audit_by_entity(self, entity_type: str, entity_id: str) -> list[str]:
        with self._transaction() as cur:
            rows = cur.execute(
                "SELECT event_json FROM audit_events WHERE entity_type = ? AND entity_id = ? "
                "ORDER BY timestamp ASC, rowid ASC",
                (entity_type, entity_id),
            ).fetchall()
        return [row["event_json"] for row in rows]

    def recent_audit(self, limit: int = 100) -> list[str]:
        with self._transaction() as cur:
            rows = cur.execute(
                "SELECT event_json FROM audit_events ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [row["event_json"] for row in rows]


class LocalAuditStorage(AuditStorageInterface):
    """
    Audit log storage in the local SQLite file.

    Audit events are append-only.
    """

    def __init__(self, store: LocalStore):
        self._store = store

    async def append_event(self, event: AuditEvent) -> bool:
        self._store.append_audit(event.to_row())
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return [
            AuditEvent.model_validate_json(raw)
            for raw in self._store.audit_by_entity(entity_type, entity_id)
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return [
            AuditEvent.model_validate_json(raw)
            for raw in self._store.recent_audit(limit)
        ]
