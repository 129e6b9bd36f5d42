"""Tests for invoice_memory.learning."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest

from invoice_memory.config import LearningConfig
from invoice_memory.confidence import ConfidenceManager
from invoice_memory.learning import (
    LearningStrategy,
    LearningType,
    MemoryLearningEngine,
    normalize_value,
)
from invoice_memory.models import (
    AuditOperation,
    Correction,
    CorrectionMemory,
    CorrectionType,
    DiscrepancyType,
    HumanDecision,
    HumanDecisionType,
    MemoryContext,
    MemoryUpdate,
    MemoryUpdateType,
    ProcessingOutcomeType,
    ResolutionAction,
    ResolutionMemory,
    ResolutionOutcome,
    VendorMemory,
)
from invoice_memory.store import InMemoryMemoryStore, PersistenceError

if TYPE_CHECKING:
    from collections.abc import Callable

    from invoice_memory.audit import SequentialIds
    from invoice_memory.models import ProcessingOutcome, RawInvoice
    from tests.conftest import TickingClock


def _currency_fix(value: str = "EUR") -> Correction:
    return Correction(
        field="currency",
        original_value="USD",
        corrected_value=value,
        reason="Vendor always bills in EUR",
        confidence=1.0,
    )


@pytest.fixture
def store() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@pytest.fixture
def engine(
    store: InMemoryMemoryStore, ids: SequentialIds, clock: TickingClock
) -> MemoryLearningEngine:
    return MemoryLearningEngine(store, id_factory=ids, clock=clock)


class TestRecognizePatterns:
    """Tests for pattern recognition."""

    def test_repeated_correction_becomes_pattern(self, engine: MemoryLearningEngine) -> None:
        patterns = engine.recognize_patterns(
            [_currency_fix(), _currency_fix(), _currency_fix()], "supplier-gmbh"
        )

        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.field == "currency"
        assert pattern.value == "EUR"
        assert pattern.occurrences == 3
        assert pattern.vendor_specific is True
        assert pattern.correction_type is CorrectionType.CURRENCY
        assert pattern.confidence == pytest.approx(0.7)

    def test_too_few_occurrences(self, engine: MemoryLearningEngine) -> None:
        assert engine.recognize_patterns([_currency_fix(), _currency_fix()]) == []

    def test_values_normalized_for_grouping(self, engine: MemoryLearningEngine) -> None:
        corrections = [_currency_fix("EUR"), _currency_fix(" eur"), _currency_fix("EUR ")]

        patterns = engine.recognize_patterns(corrections)

        assert len(patterns) == 1
        assert patterns[0].normalized_value == normalize_value("EUR")
        assert patterns[0].vendor_specific is False

    def test_unusable_corrections_ignored(self, engine: MemoryLearningEngine) -> None:
        blank = Correction(field=" ", corrected_value="EUR")
        empty = Correction(field="currency", corrected_value=None)

        patterns = engine.recognize_patterns([blank, empty, blank, empty, blank, empty])

        assert patterns == []

    def test_blank_values_ignored(self, engine: MemoryLearningEngine) -> None:
        spaces = Correction(field="currency", corrected_value="  ", confidence=0.9)
        assert engine.recognize_patterns([spaces] * 3, "supplier-gmbh") == []

    def test_blank_values_counted_but_not_learned(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        spaces = Correction(field="currency", corrected_value="  ", confidence=0.9)

        session = engine.learn_from_outcome(
            make_outcome(corrections=[spaces] * 3), LearningStrategy.IMMEDIATE
        )

        assert session.corrections_processed == 3
        assert session.memories_created == 0
        assert store.all_memories() == []

    def test_confidence_capped(self) -> None:
        engine = MemoryLearningEngine(InMemoryMemoryStore())
        assert engine.pattern_confidence(50) == LearningConfig().pattern_confidence_cap


class TestCreateMemories:
    """Tests for building memories from patterns."""

    def test_builds_without_saving(
        self, engine: MemoryLearningEngine, store: InMemoryMemoryStore
    ) -> None:
        patterns = engine.recognize_patterns([_currency_fix()] * 3, "supplier-gmbh")

        memories = engine.create_memories_from_patterns(
            patterns, MemoryContext(vendor_id="supplier-gmbh")
        )

        assert len(memories) == 1
        memory = memories[0]
        assert memory.id.startswith("mem-supplier-gmbh-currency-eur")
        assert memory.correction_action.new_value == "EUR"
        assert memory.trigger_conditions[0].value == "EUR"
        assert memory.context.vendor_id == "supplier-gmbh"
        assert store.all_memories() == []

    def test_low_confidence_patterns_skipped(self, store: InMemoryMemoryStore) -> None:
        engine = MemoryLearningEngine(
            store, config=LearningConfig(min_new_memory_confidence=0.95)
        )
        patterns = engine.recognize_patterns([_currency_fix()] * 3)

        assert engine.create_memories_from_patterns(patterns, MemoryContext()) == []


class TestLearnFromOutcome:
    """Tests for learn_from_outcome() strategies."""

    def test_immediate_creates_memory(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        outcome = make_outcome(
            ProcessingOutcomeType.SUCCESS_HUMAN_REVIEW, corrections=[_currency_fix()] * 3
        )

        session = engine.learn_from_outcome(outcome, LearningStrategy.IMMEDIATE)

        assert session.corrections_processed == 3
        assert session.memories_created == 1
        assert session.patterns_recognized == 1
        stored = store.find_memories_by_vendor("supplier-gmbh")
        assert len(stored) == 1
        assert isinstance(stored[0], CorrectionMemory)
        assert "Used immediate learning strategy" in session.reasoning
        assert session.reasoning.endswith("Success rate: 100.0%.")

    def test_pattern_based_waits_for_recurrence(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        first = engine.learn_from_outcome(
            make_outcome(corrections=[_currency_fix()] * 2)
        )
        second = engine.learn_from_outcome(make_outcome(corrections=[_currency_fix()]))

        assert first.memories_created == 0
        assert second.memories_created == 1
        assert len(store.find_memories_by_vendor("supplier-gmbh")) == 1

    def test_recurrence_refines_existing_memory(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        engine.learn_from_outcome(make_outcome(corrections=[_currency_fix()] * 3))

        session = engine.learn_from_outcome(make_outcome(corrections=[_currency_fix()]))

        assert session.memories_created == 0
        assert session.memories_reinforced == 1
        assert session.memory_updates[0].update_type is MemoryUpdateType.PATTERN_REFINEMENT
        stored = store.find_memories_by_vendor("supplier-gmbh")
        assert len(stored) == 1
        assert stored[0].confidence == pytest.approx(0.8)

    def test_batch_stages_until_committed(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        session = engine.learn_from_outcome(
            make_outcome(corrections=[_currency_fix()] * 3), LearningStrategy.BATCH
        )

        assert session.memories_created == 0
        assert engine.pending_count == 1
        assert store.all_memories() == []

        committed = engine.commit_pending()

        assert committed.memories_created == 1
        assert engine.pending_count == 0
        assert len(store.all_memories()) == 1

    def test_reinforces_applied_memories(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_correction_memory: Callable[..., CorrectionMemory],
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        store.save_memory(make_correction_memory("c", 0.5))

        session = engine.learn_from_outcome(make_outcome(applied=["c"]))

        assert session.memories_reinforced == 1
        stored = store.find_memory_by_id("c")
        assert stored is not None
        assert stored.confidence == pytest.approx(0.55)
        assert stored.usage_count == 1

    def test_skips_memories_already_updated(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_correction_memory: Callable[..., CorrectionMemory],
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        store.save_memory(make_correction_memory("c", 0.5))
        outcome = make_outcome(applied=["c"])
        outcome.result.memory_updates.append(
            MemoryUpdate(
                memory_id="c",
                update_type=MemoryUpdateType.CONFIDENCE_INCREASE,
                reason="already reinforced",
                timestamp=engine.clock(),
            )
        )

        session = engine.learn_from_outcome(outcome)

        assert session.memories_reinforced == 0
        stored = store.find_memory_by_id("c")
        assert stored is not None
        assert stored.usage_count == 0

    def test_persistence_failure_reported(
        self, make_outcome: Callable[..., ProcessingOutcome]
    ) -> None:
        store = MagicMock()
        store.find_memories_by_vendor.return_value = []
        store.save_memory.side_effect = PersistenceError("database unavailable")
        engine = MemoryLearningEngine(store)

        session = engine.learn_from_outcome(
            make_outcome(corrections=[_currency_fix()] * 3), LearningStrategy.IMMEDIATE
        )

        assert session.memories_created == 0
        result = session.learning_results[0]
        assert result.success is False
        assert result.learning_type is LearningType.PATTERN_LEARNING
        assert result.error == "database unavailable"
        assert session.reasoning.endswith("Success rate: 0.0%.")

    def test_unexpected_error_recorded_and_raised(
        self, make_outcome: Callable[..., ProcessingOutcome]
    ) -> None:
        store = MagicMock()
        store.find_memories_by_vendor.side_effect = RuntimeError("boom")
        engine = MemoryLearningEngine(store)

        with pytest.raises(RuntimeError, match="boom"):
            engine.learn_from_outcome(
                make_outcome(corrections=[_currency_fix()] * 3),
                LearningStrategy.IMMEDIATE,
            )

        steps = engine.get_audit_steps()
        assert steps[-1].operation is AuditOperation.ERROR_HANDLING
        assert steps[-1].input["invoiceId"] == "INV-001"

    def test_records_learning_step(
        self,
        engine: MemoryLearningEngine,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        engine.learn_from_outcome(make_outcome())

        step = engine.get_audit_steps()[-1]
        assert step.operation is AuditOperation.MEMORY_LEARNING
        assert step.input["invoiceId"] == "INV-001"
        assert step.input["strategy"] == "pattern_based"


class TestLearnFromApprovals:
    """Tests for learn_from_approvals()."""

    def test_one_result_per_memory(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_correction_memory: Callable[..., CorrectionMemory],
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        known = store.save_memory(make_correction_memory("known", 0.5))
        unknown = make_correction_memory("unknown", 0.5)

        session = engine.learn_from_approvals([known, unknown], make_outcome())

        assert [r.success for r in session.learning_results] == [True, False]
        assert session.memories_reinforced == 1
        assert session.learning_results[1].error is not None
        assert session.reasoning.endswith("Success rate: 50.0%.")


class TestReinforce:
    """Tests for single-memory reinforcement."""

    def test_archives_below_floor(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_correction_memory: Callable[..., CorrectionMemory],
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        store.save_memory(make_correction_memory("c", 0.1))

        result, updates = engine.reinforce("c", make_outcome(ProcessingOutcomeType.REJECTED))

        assert result.success is True
        assert result.confidence == pytest.approx(0.08)
        assert [u.update_type for u in updates] == [
            MemoryUpdateType.CONFIDENCE_DECREASE,
            MemoryUpdateType.ARCHIVED,
        ]
        assert store.find_memory_by_id("c") is None

    def test_concurrent_reinforcements_never_lost(
        self,
        store: InMemoryMemoryStore,
        make_correction_memory: Callable[..., CorrectionMemory],
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        engine = MemoryLearningEngine(store)
        store.save_memory(make_correction_memory("c", 0.5))
        outcome = make_outcome()
        barrier = threading.Barrier(10)
        results = []

        def worker() -> None:
            barrier.wait()
            results.append(engine.reinforce("c", outcome)[0])

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 10
        landed = [r for r in results if r.success]
        assert landed
        assert all("kept changing" in (r.error or "") for r in results if not r.success)
        stored = store.find_memory_by_id("c")
        assert stored is not None
        assert stored.usage_count == len(landed)
        assert stored.version == len(landed)
        assert stored.confidence > 0.5

    def test_confidence_steps_recorded_where_asked(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        make_correction_memory: Callable[..., CorrectionMemory],
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        store.save_memory(make_correction_memory("c", 0.5))
        run_confidence = ConfidenceManager()

        result, _ = engine.reinforce("c", make_outcome(), confidence=run_confidence)

        assert result.success is True
        assert len(engine.confidence.audit) == 0
        steps = run_confidence.get_audit_steps()
        assert [s.input["memoryId"] for s in steps] == ["c"]


class TestLearnFromResolution:
    """Tests for learn_from_resolution()."""

    def test_stores_resolution_memory(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
    ) -> None:
        session = engine.learn_from_resolution(
            "supplier-gmbh",
            DiscrepancyType.PRICE_DISCREPANCY,
            ResolutionOutcome(resolved=True, resolution_action=ResolutionAction.APPROVE_AS_IS),
            HumanDecision(
                decision_type=HumanDecisionType.APPROVE,
                timestamp=engine.clock(),
                user_id="reviewer",
            ),
        )

        assert session.memories_created == 1
        stored = store.find_memories_by_vendor("supplier-gmbh")
        assert len(stored) == 1
        memory = stored[0]
        assert isinstance(memory, ResolutionMemory)
        assert memory.id.startswith("resolution-supplier-gmbh-price-discrepancy")
        assert memory.confidence == pytest.approx(0.7 * 1.07 * 1.05)


class TestVendorLayoutLearning:
    """Tests for learning vendor memory from the raw invoice."""

    def test_raw_invoice_creates_vendor_memory(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        sample_invoice: RawInvoice,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        session = engine.learn_from_outcome(make_outcome(), invoice=sample_invoice)

        assert session.memories_created == 1
        result = session.learning_results[0]
        assert result.learning_type is LearningType.VENDOR_MEMORY_CREATION
        assert result.success is True
        memories = store.find_memories_by_vendor("supplier-gmbh")
        assert len(memories) == 1
        assert isinstance(memories[0], VendorMemory)
        assert {m.target_field for m in memories[0].field_mappings} == {
            "serviceDate",
            "totalAmount",
        }

    def test_same_layout_again_changes_nothing(
        self,
        engine: MemoryLearningEngine,
        store: InMemoryMemoryStore,
        sample_invoice: RawInvoice,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        engine.learn_from_outcome(make_outcome(), invoice=sample_invoice)

        session = engine.learn_from_outcome(make_outcome(), invoice=sample_invoice)

        assert session.memories_created == 0
        assert session.memories_reinforced == 0
        (memory,) = store.find_memories_by_vendor("supplier-gmbh")
        assert memory.version == 0

    def test_vendor_store_failure_reported(
        self,
        sample_invoice: RawInvoice,
        make_outcome: Callable[..., ProcessingOutcome],
    ) -> None:
        store = MagicMock()
        store.find_memories_by_vendor.return_value = []
        store.save_memory.side_effect = PersistenceError("disk full")
        engine = MemoryLearningEngine(store)

        session = engine.learn_from_outcome(make_outcome(), invoice=sample_invoice)

        assert session.memories_created == 0
        failed = session.learning_results[0]
        assert failed.learning_type is LearningType.VENDOR_MEMORY_CREATION
        assert failed.success is False
        assert failed.error == "disk full"
