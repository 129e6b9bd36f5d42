"""Tests for invoice_memory.db using mocked psycopg connections."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import psycopg
import pytest
from psycopg.rows import dict_row

from invoice_memory.config import StoreConfig
from invoice_memory.db import (
    SCHEMA,
    PostgresAuditSink,
    PostgresInvoiceRegistry,
    PostgresMemoryStore,
    get_connection,
    init_schema,
)
from invoice_memory.models import AuditOperation, AuditStep, CorrectionMemory
from invoice_memory.store import (
    ConcurrentUpdateError,
    MemoryNotFoundError,
    PersistenceError,
    ProcessedInvoice,
)

if TYPE_CHECKING:
    from collections.abc import Callable


def _mock_connection() -> tuple[MagicMock, MagicMock]:
    conn = MagicMock()
    conn.__enter__.return_value = conn
    cur = conn.cursor.return_value.__enter__.return_value
    return conn, cur


def _step(step_id: str, invoice_id: str) -> AuditStep:
    return AuditStep(
        id=step_id,
        timestamp=datetime(2024, 1, 1, tzinfo=UTC),
        operation=AuditOperation.DECISION_MAKING,
        description="decided",
        input={"invoiceId": invoice_id},
        output={"decisionType": "auto_approve"},
        actor="DecisionEngine",
    )


class TestGetConnection:
    """Tests for get_connection()."""

    def test_uses_timeouts_and_dict_rows(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/invoices")

        with patch("invoice_memory.db.psycopg.connect") as connect:
            get_connection(StoreConfig(connect_timeout_seconds=2, statement_timeout_ms=750))

        connect.assert_called_once_with(
            "postgresql://localhost/invoices",
            row_factory=dict_row,
            connect_timeout=2,
            options="-c statement_timeout=750",
        )

    def test_missing_url_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(ValueError, match="DATABASE_URL"):
            get_connection()


class TestInitSchema:
    """Tests for init_schema()."""

    def test_executes_schema_and_commits(self) -> None:
        conn, cur = _mock_connection()

        init_schema(conn)

        cur.execute.assert_called_once_with(SCHEMA)
        conn.commit.assert_called_once()


class TestPostgresMemoryStore:
    """Tests for PostgresMemoryStore."""

    def test_insert_returns_stored_version(
        self, make_correction_memory: Callable[..., CorrectionMemory]
    ) -> None:
        conn, cur = _mock_connection()
        cur.fetchall.return_value = [{"version": 0}]
        store = PostgresMemoryStore(lambda: conn)
        memory = make_correction_memory("c", 0.6)

        saved = store.save_memory(memory)

        assert saved.version == 0
        sql, params = cur.execute.call_args.args
        assert "ON CONFLICT (id)" in sql
        assert params["vendor_id"] == "supplier-gmbh"
        assert params["kind"] == "correction"
        assert params["data"].obj["id"] == "c"

    def test_versioned_update_conflict(
        self, make_correction_memory: Callable[..., CorrectionMemory]
    ) -> None:
        conn, cur = _mock_connection()
        cur.fetchall.return_value = []
        store = PostgresMemoryStore(lambda: conn)

        with pytest.raises(ConcurrentUpdateError):
            store.save_memory(make_correction_memory("c", 0.6), expected_version=4)

        sql, params = cur.execute.call_args.args
        assert "version = %(expected_version)s" in sql
        assert params["expected_version"] == 4

    def test_find_by_vendor_restores_row_state(
        self, make_correction_memory: Callable[..., CorrectionMemory]
    ) -> None:
        conn, cur = _mock_connection()
        memory = make_correction_memory("c", 0.6)
        cur.fetchall.return_value = [
            {"data": memory.model_dump(mode="json"), "archived": False, "version": 3}
        ]
        store = PostgresMemoryStore(lambda: conn)

        found = store.find_memories_by_vendor("supplier-gmbh")

        assert len(found) == 1
        assert isinstance(found[0], CorrectionMemory)
        assert found[0].version == 3
        assert found[0].correction_action == memory.correction_action
        sql, params = cur.execute.call_args.args
        assert "NOT archived" in sql
        assert params == ("supplier-gmbh",)

    def test_find_by_id_missing(self) -> None:
        conn, cur = _mock_connection()
        cur.fetchall.return_value = []

        assert PostgresMemoryStore(lambda: conn).find_memory_by_id("nope") is None

    def test_archive_missing_raises(self) -> None:
        conn, cur = _mock_connection()
        cur.fetchall.return_value = []

        with pytest.raises(MemoryNotFoundError):
            PostgresMemoryStore(lambda: conn).archive_memory("nope")

    def test_driver_errors_become_persistence_errors(self) -> None:
        conn, cur = _mock_connection()
        cur.execute.side_effect = psycopg.OperationalError("connection lost")

        with pytest.raises(PersistenceError, match="connection lost"):
            PostgresMemoryStore(lambda: conn).find_memories_by_vendor("acme")


class TestPostgresAuditSink:
    """Tests for PostgresAuditSink."""

    def test_batch_written_in_one_transaction(self) -> None:
        conn, cur = _mock_connection()
        sink = PostgresAuditSink(lambda: conn)

        sink.record_audit_steps([_step("a", "INV-1"), _step("b", "INV-2")])

        conn.transaction.assert_called_once()
        cur.executemany.assert_called_once()
        sql, rows = cur.executemany.call_args.args
        assert sql.startswith("INSERT INTO audit_trail")
        assert [(r[0], r[1]) for r in rows] == [("a", "INV-1"), ("b", "INV-2")]

    def test_empty_batch_skips_database(self) -> None:
        connect = MagicMock()

        PostgresAuditSink(connect).record_audit_steps([])

        connect.assert_not_called()

    def test_write_failure_raises(self) -> None:
        conn, cur = _mock_connection()
        cur.executemany.side_effect = psycopg.OperationalError("disk full")

        with pytest.raises(PersistenceError, match="disk full"):
            PostgresAuditSink(lambda: conn).record_audit_step(_step("a", "INV-1"))

    def test_trail_round_trip(self) -> None:
        conn, cur = _mock_connection()
        step = _step("a", "INV-1")
        cur.fetchall.return_value = [{"data": step.model_dump(mode="json")}]

        trail = PostgresAuditSink(lambda: conn).get_audit_trail("INV-1")

        assert trail == [step]
        sql, params = cur.execute.call_args.args
        assert "ORDER BY timestamp, seq" in sql
        assert params == ("INV-1",)


class TestPostgresInvoiceRegistry:
    """Tests for PostgresInvoiceRegistry."""

    def test_record_upserts_row(self) -> None:
        conn, cur = _mock_connection()
        invoice = ProcessedInvoice(
            id="INV-1",
            vendor_id="acme",
            invoice_number="R-1",
            invoice_date=date(2024, 1, 10),
            total_amount=Decimal("100.00"),
            currency="EUR",
            processed_at=datetime(2024, 1, 11, tzinfo=UTC),
        )

        PostgresInvoiceRegistry(lambda: conn).record_invoice(invoice)

        sql, params = cur.execute.call_args.args
        assert "INSERT INTO processed_invoices" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert params["total_amount"] == Decimal("100.00")

    def test_candidates_use_date_window(self) -> None:
        conn, cur = _mock_connection()
        cur.fetchall.return_value = [
            {
                "id": "INV-0",
                "vendor_id": "acme",
                "invoice_number": "R-0",
                "invoice_date": date(2024, 1, 9),
                "total_amount": Decimal("99.00"),
                "currency": "EUR",
                "processed_at": datetime(2024, 1, 9, tzinfo=UTC),
            }
        ]

        found = PostgresInvoiceRegistry(lambda: conn).find_candidates(
            "acme",
            start=date(2024, 1, 3),
            end=date(2024, 1, 17),
            exclude_id="INV-1",
            limit=50,
        )

        assert [c.id for c in found] == ["INV-0"]
        sql, params = cur.execute.call_args.args
        assert "invoice_date >= %(start)s" in sql
        assert params["exclude_id"] == "INV-1"
        assert params["limit"] == 50

    def test_candidates_without_window(self) -> None:
        conn, cur = _mock_connection()
        cur.fetchall.return_value = []

        PostgresInvoiceRegistry(lambda: conn).find_candidates(
            "acme", start=None, end=None, exclude_id="INV-1", limit=5
        )

        sql, _ = cur.execute.call_args.args
        assert "invoice_date" not in sql.split("FROM")[1]

    def test_driver_errors_become_persistence_errors(self) -> None:
        conn, cur = _mock_connection()
        cur.execute.side_effect = psycopg.OperationalError("connection lost")

        with pytest.raises(PersistenceError, match="connection lost"):
            PostgresInvoiceRegistry(lambda: conn).find_candidates(
                "acme", start=None, end=None, exclude_id="INV-1", limit=5
            )
