"""Database connection helper and Postgres-backed store, audit sink and invoice registry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from invoice_memory.config import StoreConfig, get_database_url
from invoice_memory.models import AuditStep, memory_adapter, memory_vendor_id
from invoice_memory.store import (
    ConcurrentUpdateError,
    MemoryNotFoundError,
    PersistenceError,
    ProcessedInvoice,
    extract_invoice_id,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import date

    from invoice_memory.store import StoredMemory

logger = logging.getLogger(__name__)

Connection = psycopg.Connection[dict[str, Any]]

SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    vendor_id TEXT,
    confidence DOUBLE PRECISION NOT NULL CHECK (confidence BETWEEN 0 AND 1),
    success_rate DOUBLE PRECISION NOT NULL CHECK (success_rate BETWEEN 0 AND 1),
    usage_count INTEGER NOT NULL CHECK (usage_count >= 0),
    created_at TIMESTAMPTZ NOT NULL,
    last_used TIMESTAMPTZ NOT NULL,
    archived BOOLEAN NOT NULL DEFAULT FALSE,
    version INTEGER NOT NULL DEFAULT 0,
    data JSONB NOT NULL
);

CREATE INDEX IF NOT EXISTS memories_vendor_active_idx
    ON memories (vendor_id, confidence DESC) WHERE NOT archived;

CREATE TABLE IF NOT EXISTS audit_trail (
    seq BIGSERIAL PRIMARY KEY,
    id TEXT NOT NULL,
    invoice_id TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL,
    operation TEXT NOT NULL,
    actor TEXT NOT NULL,
    data JSONB NOT NULL
);

CREATE INDEX IF NOT EXISTS audit_trail_invoice_idx
    ON audit_trail (invoice_id, timestamp, seq);

CREATE TABLE IF NOT EXISTS processed_invoices (
    id TEXT PRIMARY KEY,
    vendor_id TEXT NOT NULL,
    invoice_number TEXT NOT NULL,
    invoice_date DATE,
    total_amount NUMERIC(14, 2) NOT NULL,
    currency CHAR(3) NOT NULL,
    processed_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS processed_invoices_vendor_date_idx
    ON processed_invoices (vendor_id, invoice_date);
"""

_MEMORY_COLUMNS = (
    "id, kind, vendor_id, confidence, success_rate, usage_count, "
    "created_at, last_used, archived, version, data"
)


def get_connection(config: StoreConfig | None = None) -> Connection:
    """Create and return a new database connection.

    Connect and statement timeouts come from ``config`` so a stalled
    database cannot hold a pipeline stage indefinitely.
    """
    cfg = config or StoreConfig()
    return psycopg.connect(
        get_database_url(),
        row_factory=dict_row,
        connect_timeout=cfg.connect_timeout_seconds,
        options=f"-c statement_timeout={cfg.statement_timeout_ms}",
    )


def init_schema(conn: Connection) -> None:
    """Create tables and indexes if they do not exist."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA)
    conn.commit()


def _row_to_memory(row: dict[str, Any]) -> StoredMemory:
    data = dict(row["data"])
    data["archived"] = row["archived"]
    data["version"] = row["version"]
    return memory_adapter.validate_python(data)


class PostgresMemoryStore:
    """MemoryStore backed by the ``memories`` table.

    Each call uses its own connection from ``connect``. Updates that pass
    ``expected_version`` only apply when the row still has that version.
    """

    def __init__(self, connect: Callable[[], Connection] | None = None) -> None:
        self._connect = connect or get_connection

    def find_memories_by_vendor(self, vendor_id: str) -> list[StoredMemory]:
        rows = self._fetch(
            f"SELECT {_MEMORY_COLUMNS} FROM memories "  # noqa: S608
            "WHERE vendor_id = %s AND NOT archived "
            "ORDER BY confidence DESC, id",
            (vendor_id,),
        )
        return [_row_to_memory(row) for row in rows]

    def find_memory_by_id(self, memory_id: str) -> StoredMemory | None:
        rows = self._fetch(
            f"SELECT {_MEMORY_COLUMNS} FROM memories "  # noqa: S608
            "WHERE id = %s AND NOT archived",
            (memory_id,),
        )
        return _row_to_memory(rows[0]) if rows else None

    def save_memory(
        self, memory: StoredMemory, *, expected_version: int | None = None
    ) -> StoredMemory:
        params: dict[str, Any] = {
            "id": memory.id,
            "kind": memory.kind.value,
            "vendor_id": memory_vendor_id(memory),
            "confidence": memory.confidence,
            "success_rate": memory.success_rate,
            "usage_count": memory.usage_count,
            "created_at": memory.created_at,
            "last_used": memory.last_used,
            "archived": memory.archived,
            "data": Jsonb(memory.model_dump(mode="json")),
            "expected_version": expected_version,
        }
        if expected_version is None:
            sql = """
                INSERT INTO memories (id, kind, vendor_id, confidence, success_rate,
                    usage_count, created_at, last_used, archived, version, data)
                VALUES (%(id)s, %(kind)s, %(vendor_id)s, %(confidence)s,
                    %(success_rate)s, %(usage_count)s, %(created_at)s,
                    %(last_used)s, %(archived)s, 0, %(data)s)
                ON CONFLICT (id) DO UPDATE SET
                    kind = EXCLUDED.kind,
                    vendor_id = EXCLUDED.vendor_id,
                    confidence = EXCLUDED.confidence,
                    success_rate = EXCLUDED.success_rate,
                    usage_count = EXCLUDED.usage_count,
                    last_used = EXCLUDED.last_used,
                    archived = EXCLUDED.archived,
                    version = memories.version + 1,
                    data = EXCLUDED.data
                RETURNING version
            """
        else:
            sql = """
                UPDATE memories SET
                    vendor_id = %(vendor_id)s,
                    confidence = %(confidence)s,
                    success_rate = %(success_rate)s,
                    usage_count = %(usage_count)s,
                    last_used = %(last_used)s,
                    archived = %(archived)s,
                    version = version + 1,
                    data = %(data)s
                WHERE id = %(id)s AND version = %(expected_version)s
                RETURNING version
            """
        rows = self._fetch(sql, params)
        if not rows:
            msg = f"Memory {memory.id} changed since version {expected_version}"
            raise ConcurrentUpdateError(msg)
        return memory.model_copy(update={"version": rows[0]["version"]})

    def archive_memory(self, memory_id: str) -> None:
        rows = self._fetch(
            "UPDATE memories SET archived = TRUE, version = version + 1 "
            "WHERE id = %s RETURNING id",
            (memory_id,),
        )
        if not rows:
            msg = f"Memory {memory_id} not found"
            raise MemoryNotFoundError(msg)

    def _fetch(self, sql: str, params: Any) -> list[dict[str, Any]]:
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute(sql, params)
                return list(cur.fetchall())
        except psycopg.Error as exc:
            msg = f"Memory store query failed: {exc}"
            raise PersistenceError(msg) from exc


class PostgresAuditSink:
    """AuditSink backed by the ``audit_trail`` table.

    Batches are inserted in one transaction. Errors are raised to the
    caller as PersistenceError.
    """

    def __init__(self, connect: Callable[[], Connection] | None = None) -> None:
        self._connect = connect or get_connection

    def record_audit_step(self, step: AuditStep) -> None:
        self.record_audit_steps([step])

    def record_audit_steps(self, steps: list[AuditStep]) -> None:
        if not steps:
            return
        rows = [
            (
                step.id,
                extract_invoice_id(step),
                step.timestamp,
                step.operation.value,
                step.actor,
                Jsonb(step.model_dump(mode="json")),
            )
            for step in steps
        ]
        try:
            with self._connect() as conn:
                with conn.transaction(), conn.cursor() as cur:
                    cur.executemany(
                        "INSERT INTO audit_trail "
                        "(id, invoice_id, timestamp, operation, actor, data) "
                        "VALUES (%s, %s, %s, %s, %s, %s)",
                        rows,
                    )
        except psycopg.Error as exc:
            msg = f"Failed to record {len(steps)} audit steps: {exc}"
            raise PersistenceError(msg) from exc
        logger.debug("Recorded %d audit steps", len(steps))

    def get_audit_trail(self, invoice_id: str) -> list[AuditStep]:
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT data FROM audit_trail WHERE invoice_id = %s "
                    "ORDER BY timestamp, seq",
                    (invoice_id,),
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            msg = f"Failed to read audit trail for {invoice_id}: {exc}"
            raise PersistenceError(msg) from exc
        return [AuditStep.model_validate(row["data"]) for row in rows]


class PostgresInvoiceRegistry:
    """InvoiceRegistry backed by the ``processed_invoices`` table."""

    def __init__(self, connect: Callable[[], Connection] | None = None) -> None:
        self._connect = connect or get_connection

    def record_invoice(self, invoice: ProcessedInvoice) -> None:
        self._execute(
            """
            INSERT INTO processed_invoices (id, vendor_id, invoice_number,
                invoice_date, total_amount, currency, processed_at)
            VALUES (%(id)s, %(vendor_id)s, %(invoice_number)s, %(invoice_date)s,
                %(total_amount)s, %(currency)s, %(processed_at)s)
            ON CONFLICT (id) DO UPDATE SET
                vendor_id = EXCLUDED.vendor_id,
                invoice_number = EXCLUDED.invoice_number,
                invoice_date = EXCLUDED.invoice_date,
                total_amount = EXCLUDED.total_amount,
                currency = EXCLUDED.currency,
                processed_at = EXCLUDED.processed_at
            RETURNING id
            """,
            {
                "id": invoice.id,
                "vendor_id": invoice.vendor_id,
                "invoice_number": invoice.invoice_number,
                "invoice_date": invoice.invoice_date,
                "total_amount": invoice.total_amount,
                "currency": invoice.currency,
                "processed_at": invoice.processed_at,
            },
        )

    def find_candidates(
        self,
        vendor_id: str,
        *,
        start: date | None,
        end: date | None,
        exclude_id: str,
        limit: int,
    ) -> list[ProcessedInvoice]:
        sql = (
            "SELECT id, vendor_id, invoice_number, invoice_date, total_amount, "
            "currency, processed_at FROM processed_invoices "
            "WHERE vendor_id = %(vendor_id)s AND id <> %(exclude_id)s "
        )
        if start is not None or end is not None:
            sql += (
                "AND invoice_date IS NOT NULL "
                "AND (%(start)s::date IS NULL OR invoice_date >= %(start)s) "
                "AND (%(end)s::date IS NULL OR invoice_date <= %(end)s) "
            )
        sql += "ORDER BY processed_at DESC, id DESC LIMIT %(limit)s"
        rows = self._execute(
            sql,
            {
                "vendor_id": vendor_id,
                "exclude_id": exclude_id,
                "start": start,
                "end": end,
                "limit": limit,
            },
        )
        return [ProcessedInvoice(**row) for row in rows]

    def _execute(self, sql: str, params: Any) -> list[dict[str, Any]]:
        try:
            with self._connect() as conn, conn.cursor() as cur:
                cur.execute(sql, params)
                return list(cur.fetchall())
        except psycopg.Error as exc:
            msg = f"Invoice registry query failed: {exc}"
            raise PersistenceError(msg) from exc
