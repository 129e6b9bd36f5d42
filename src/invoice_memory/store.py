"""Memory store, audit sink and invoice registry abstractions with in-memory implementations."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from invoice_memory.models import (
    AuditStep,
    CorrectionMemory,
    ResolutionMemory,
    VendorMemory,
    memory_adapter,
    memory_vendor_id,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import date, datetime
    from decimal import Decimal

logger = logging.getLogger(__name__)

UNKNOWN_INVOICE_KEY = "unknown"

StoredMemory = VendorMemory | CorrectionMemory | ResolutionMemory


class PersistenceError(Exception):
    """The backing store could not complete an operation."""


class MemoryNotFoundError(PersistenceError):
    """No active memory exists with the requested id."""


class ConcurrentUpdateError(PersistenceError):
    """A memory changed between read and write."""


@runtime_checkable
class MemoryStore(Protocol):
    """Keyed memory storage with read-your-writes consistency."""

    def find_memories_by_vendor(self, vendor_id: str) -> list[StoredMemory]: ...

    def find_memory_by_id(self, memory_id: str) -> StoredMemory | None: ...

    def save_memory(
        self, memory: StoredMemory, *, expected_version: int | None = None
    ) -> StoredMemory: ...

    def archive_memory(self, memory_id: str) -> None: ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only audit log keyed by invoice id."""

    def record_audit_step(self, step: AuditStep) -> None: ...

    def record_audit_steps(self, steps: list[AuditStep]) -> None: ...

    def get_audit_trail(self, invoice_id: str) -> list[AuditStep]: ...


@dataclass(frozen=True)
class ProcessedInvoice:
    """What duplicate detection remembers about one processed invoice."""

    id: str
    vendor_id: str
    invoice_number: str
    invoice_date: date | None
    total_amount: Decimal
    currency: str
    processed_at: datetime


@runtime_checkable
class InvoiceRegistry(Protocol):
    """Processed invoices, searchable by vendor and invoice date."""

    def record_invoice(self, invoice: ProcessedInvoice) -> None: ...

    def find_candidates(
        self,
        vendor_id: str,
        *,
        start: date | None,
        end: date | None,
        exclude_id: str,
        limit: int,
    ) -> list[ProcessedInvoice]: ...


def extract_invoice_id(step: AuditStep) -> str:
    """Find the invoice a step belongs to.

    Checks input.invoiceId, input.invoice.id, output.invoiceId and
    output.invoice.id in that order; steps without one are filed under
    UNKNOWN_INVOICE_KEY.
    """
    for section in (step.input, step.output):
        found = _invoice_id_from(section)
        if found:
            return found
    return UNKNOWN_INVOICE_KEY


def _invoice_id_from(section: Mapping[str, Any]) -> str | None:
    value = section.get("invoiceId")
    if isinstance(value, str) and value:
        return value
    invoice = section.get("invoice")
    if isinstance(invoice, dict):
        nested = invoice.get("id")
        if isinstance(nested, str) and nested:
            return nested
    return None


def update_memory_with_retry(
    store: MemoryStore,
    memory_id: str,
    mutate: Callable[[StoredMemory], StoredMemory],
    *,
    max_retries: int = 3,
) -> StoredMemory:
    """Read-modify-write one memory under optimistic concurrency.

    ``mutate`` receives the freshly read memory and returns the new state.
    It may be called more than once, so it must be a pure function of its
    argument. Returning the argument itself means nothing changed, and the
    write is skipped. Raises MemoryNotFoundError when the memory does not
    exist and ConcurrentUpdateError when every attempt lost the race.
    """
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        current = store.find_memory_by_id(memory_id)
        if current is None:
            msg = f"Memory {memory_id} not found"
            raise MemoryNotFoundError(msg)
        updated = mutate(current)
        if updated is current:
            return current
        try:
            return store.save_memory(updated, expected_version=current.version)
        except ConcurrentUpdateError:
            logger.debug(
                "Concurrent update on memory %s (attempt %d/%d)",
                memory_id,
                attempt,
                attempts,
            )
    msg = f"Memory {memory_id} kept changing during update"
    raise ConcurrentUpdateError(msg)


class InMemoryMemoryStore:
    """Thread-safe MemoryStore kept in a dict.

    Memories are stored as serialized copies so callers can never mutate
    stored state without going through ``save_memory``.
    """

    def __init__(self, memories: list[StoredMemory] | None = None) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, dict[str, Any]] = {}
        for memory in memories or []:
            self._rows[memory.id] = memory.model_dump(mode="json")

    def find_memories_by_vendor(self, vendor_id: str) -> list[StoredMemory]:
        """Active memories for a vendor, highest confidence first."""
        with self._lock:
            memories = [self._load(row) for row in self._rows.values()]
        matching = [
            m
            for m in memories
            if not m.archived and memory_vendor_id(m) == vendor_id
        ]
        matching.sort(key=lambda m: (-m.confidence, m.id))
        return matching

    def find_memory_by_id(self, memory_id: str) -> StoredMemory | None:
        with self._lock:
            row = self._rows.get(memory_id)
        if row is None:
            return None
        memory = self._load(row)
        return None if memory.archived else memory

    def save_memory(
        self, memory: StoredMemory, *, expected_version: int | None = None
    ) -> StoredMemory:
        """Insert or replace a memory and return the stored state.

        When ``expected_version`` is given, the write only succeeds if the
        stored version still matches.
        """
        with self._lock:
            existing = self._rows.get(memory.id)
            stored_version = existing["version"] if existing else None
            if expected_version is not None and stored_version != expected_version:
                msg = (
                    f"Memory {memory.id} is at version {stored_version}, "
                    f"expected {expected_version}"
                )
                raise ConcurrentUpdateError(msg)
            next_version = 0 if stored_version is None else stored_version + 1
            saved = memory.model_copy(update={"version": next_version})
            self._rows[memory.id] = saved.model_dump(mode="json")
        return saved

    def archive_memory(self, memory_id: str) -> None:
        with self._lock:
            row = self._rows.get(memory_id)
            if row is None:
                msg = f"Memory {memory_id} not found"
                raise MemoryNotFoundError(msg)
            row["archived"] = True
            row["version"] += 1

    def all_memories(self, *, include_archived: bool = False) -> list[StoredMemory]:
        with self._lock:
            memories = [self._load(row) for row in self._rows.values()]
        if include_archived:
            return memories
        return [m for m in memories if not m.archived]

    @staticmethod
    def _load(row: dict[str, Any]) -> StoredMemory:
        return memory_adapter.validate_python(row)


class InMemoryAuditSink:
    """Thread-safe AuditSink kept in a dict of per-invoice lists."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._trails: dict[str, list[str]] = {}

    def record_audit_step(self, step: AuditStep) -> None:
        self.record_audit_steps([step])

    def record_audit_steps(self, steps: list[AuditStep]) -> None:
        """Append every step or none of them.

        Serialization happens before anything is stored, so a step that
        cannot be serialized fails the whole batch.
        """
        if not steps:
            return
        staged = [(extract_invoice_id(s), s.model_dump_json()) for s in steps]
        with self._lock:
            for invoice_id, payload in staged:
                self._trails.setdefault(invoice_id, []).append(payload)

    def get_audit_trail(self, invoice_id: str) -> list[AuditStep]:
        """Steps for an invoice in timestamp order, insertion order on ties."""
        with self._lock:
            payloads = list(self._trails.get(invoice_id, []))
        steps = [AuditStep.model_validate_json(p) for p in payloads]
        return sorted(steps, key=lambda s: s.timestamp)


class InMemoryInvoiceRegistry:
    """Thread-safe InvoiceRegistry; recording an id again replaces it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._invoices: dict[str, ProcessedInvoice] = {}

    def record_invoice(self, invoice: ProcessedInvoice) -> None:
        with self._lock:
            self._invoices[invoice.id] = invoice

    def find_candidates(
        self,
        vendor_id: str,
        *,
        start: date | None,
        end: date | None,
        exclude_id: str,
        limit: int,
    ) -> list[ProcessedInvoice]:
        """Same-vendor invoices, most recently processed first.

        With a date window only invoices dated inside it qualify.
        """
        with self._lock:
            invoices = list(self._invoices.values())
        matching = [
            inv
            for inv in invoices
            if inv.vendor_id == vendor_id
            and inv.id != exclude_id
            and _in_window(inv.invoice_date, start, end)
        ]
        matching.sort(key=lambda inv: (inv.processed_at, inv.id), reverse=True)
        return matching[:limit]


def _in_window(day: date | None, start: date | None, end: date | None) -> bool:
    if start is None and end is None:
        return True
    if day is None:
        return False
    return (start is None or day >= start) and (end is None or day <= end)
