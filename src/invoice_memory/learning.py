"""Learns correction and vendor memories from processing outcomes."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from slugify import slugify

from invoice_memory.audit import AuditLog, utc_now, uuid_ids
from invoice_memory.config import LearningConfig, StoreConfig
from invoice_memory.confidence import ConfidenceManager
from invoice_memory.models import (
    AuditOperation,
    ComplexityLevel,
    Condition,
    ConditionOperator,
    CorrectionAction,
    CorrectionActionType,
    CorrectionMemory,
    CorrectionType,
    InvoiceCharacteristics,
    MemoryContext,
    MemoryPattern,
    MemoryUpdate,
    MemoryUpdateType,
    PatternType,
    ResolutionMemory,
)
from invoice_memory.store import (
    MemoryNotFoundError,
    PersistenceError,
    update_memory_with_retry,
)
from invoice_memory.vendor_patterns import VendorPatternRecognizer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence
    from datetime import datetime

    from invoice_memory.models import (
        AuditStep,
        ContextFactor,
        Correction,
        DiscrepancyType,
        HumanDecision,
        ProcessingOutcome,
        RawInvoice,
        ResolutionOutcome,
    )
    from invoice_memory.store import MemoryStore, StoredMemory

logger = logging.getLogger(__name__)


class LearningStrategy(str, Enum):
    IMMEDIATE = "immediate"
    BATCH = "batch"
    PATTERN_BASED = "pattern_based"


class LearningType(str, Enum):
    VENDOR_MEMORY_CREATION = "vendor_memory_creation"
    CORRECTION_MEMORY_CREATION = "correction_memory_creation"
    RESOLUTION_MEMORY_CREATION = "resolution_memory_creation"
    MEMORY_REINFORCEMENT = "memory_reinforcement"
    PATTERN_LEARNING = "pattern_learning"


PatternKey = tuple[str, str, str | None]


@dataclass(frozen=True)
class Pattern:
    """A correction that recurred often enough to become a memory."""

    field: str
    value: Any
    normalized_value: str
    vendor_id: str | None
    occurrences: int
    confidence: float
    vendor_specific: bool
    correction_type: CorrectionType
    signature: str
    pattern_type: PatternType = PatternType.FIELD_MAPPING

    @property
    def key(self) -> PatternKey:
        return (self.field, self.normalized_value, self.vendor_id)


@dataclass
class LearningResult:
    learning_type: LearningType
    memory_id: str | None
    confidence: float
    success: bool
    source_corrections: list[Correction] = field(default_factory=list)
    pattern: Pattern | None = None
    error: str | None = None


@dataclass
class LearningOutcome:
    session_id: str
    strategy: LearningStrategy
    timestamp: datetime
    corrections_processed: int = 0
    memories_created: int = 0
    memories_reinforced: int = 0
    patterns_recognized: int = 0
    learning_confidence: float = 0.0
    learning_results: list[LearningResult] = field(default_factory=list)
    memory_updates: list[MemoryUpdate] = field(default_factory=list)
    reasoning: str = ""


def normalize_value(value: Any) -> str:
    """Grouping key for corrected values: trimmed and case-folded."""
    return str(value).strip().casefold()


def correction_type_for(field_name: str) -> CorrectionType:
    name = field_name.lower()
    if name in ("totalamount", "amount"):
        return CorrectionType.PRICE
    if name == "quantity":
        return CorrectionType.QUANTITY
    if name in ("servicedate", "invoicedate", "duedate"):
        return CorrectionType.DATE
    if name == "currency":
        return CorrectionType.CURRENCY
    if name in ("vatamount", "vat"):
        return CorrectionType.VAT
    return CorrectionType.FIELD_MAPPING


def estimate_complexity(invoice: RawInvoice) -> ComplexityLevel:
    fields = len(invoice.extracted_fields)
    length = len(invoice.raw_text)
    if fields <= 5 and length <= 1000:
        return ComplexityLevel.SIMPLE
    if fields <= 10 and length <= 3000:
        return ComplexityLevel.MODERATE
    if fields <= 20 and length <= 6000:
        return ComplexityLevel.COMPLEX
    return ComplexityLevel.VERY_COMPLEX


def is_learnable(correction: Correction) -> bool:
    """Blank fields and blank or missing values never become memories."""
    value = correction.corrected_value
    return (
        bool(correction.field.strip())
        and value is not None
        and str(value).strip() != ""
        and correction.confidence >= 0
    )


class MemoryLearningEngine:
    """Turns processing outcomes into new and reinforced memories.

    Corrections are remembered per vendor in a bounded window. Once the same
    (field, value) correction has been seen ``min_pattern_occurrences`` times
    it becomes a Pattern, and each Pattern yields one CorrectionMemory or
    reinforces the equivalent one already stored. The strategy only decides
    when memories are written.

    When the raw invoice is passed along, its layout is also learned into
    the vendor's VendorMemory.

    One instance is meant to be shared by concurrent pipeline runs.
    """

    def __init__(
        self,
        store: MemoryStore,
        confidence_manager: ConfidenceManager | None = None,
        config: LearningConfig | None = None,
        store_config: StoreConfig | None = None,
        *,
        vendor_patterns: VendorPatternRecognizer | None = None,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config or LearningConfig()
        self.store_config = store_config or StoreConfig()
        self.id_factory = id_factory or uuid_ids
        self.clock = clock or utc_now
        self.confidence = confidence_manager or ConfidenceManager(
            id_factory=self.id_factory, clock=self.clock
        )
        self.audit = AuditLog(
            "MemoryLearningEngine", id_factory=self.id_factory, clock=self.clock
        )
        self.vendor_patterns = vendor_patterns or VendorPatternRecognizer(
            store,
            self.confidence,
            store_config=self.store_config,
            id_factory=self.id_factory,
            clock=self.clock,
        )
        self._lock = threading.Lock()
        self._commit_lock = threading.Lock()
        self._history: dict[str | None, deque[Correction]] = {}
        self._pending: dict[PatternKey, tuple[Pattern, MemoryContext]] = {}

    def get_audit_steps(self) -> list[AuditStep]:
        return self.audit.steps()

    def clear_audit_steps(self) -> None:
        self.audit.clear()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # Outcomes

    def learn_from_outcome(
        self,
        outcome: ProcessingOutcome,
        strategy: LearningStrategy = LearningStrategy.PATTERN_BASED,
        *,
        invoice: RawInvoice | None = None,
    ) -> LearningOutcome:
        """Learn from one processed invoice.

        Human corrections feed pattern recognition. Applied memories are
        reinforced or penalized according to the outcome, except those the
        pipeline already updated (listed in ``result.memory_updates``).
        With ``invoice``, vendor layout patterns are learned as well.
        """
        started = time.perf_counter()
        normalized = outcome.result.normalized_invoice
        session = LearningOutcome(
            session_id=self.id_factory("learn"),
            strategy=strategy,
            timestamp=self.clock(),
        )
        try:
            feedback = outcome.human_feedback
            corrections = list(feedback.corrections) if feedback else []
            session.corrections_processed = len(corrections)
            if corrections:
                self._learn_from_corrections(
                    corrections, normalized.vendor_id, strategy, session
                )
            if invoice is not None:
                self._learn_vendor_patterns(invoice, corrections, session)

            already_updated = {u.memory_id for u in outcome.result.memory_updates}
            memory_ids = outcome.applied_memory_ids or outcome.result.applied_memory_ids
            for memory_id in dict.fromkeys(memory_ids):
                if memory_id in already_updated:
                    continue
                self._record_reinforcement(memory_id, outcome, session)

            self._finish(session)
        except Exception as exc:
            self.audit.record(
                AuditOperation.ERROR_HANDLING,
                "Learning from outcome failed",
                input={
                    "invoiceId": normalized.id,
                    "sessionId": session.session_id,
                    "error": str(exc),
                },
                output={"success": False},
                started=started,
                prefix="learn-error",
            )
            raise

        self.audit.record(
            AuditOperation.MEMORY_LEARNING,
            "Learned from processing outcome",
            input={
                "invoiceId": normalized.id,
                "sessionId": session.session_id,
                "strategy": strategy.value,
                "outcomeType": outcome.outcome_type.value,
                "hasFeedback": outcome.human_feedback is not None,
            },
            output={
                "correctionsProcessed": session.corrections_processed,
                "memoriesCreated": session.memories_created,
                "memoriesReinforced": session.memories_reinforced,
                "patternsRecognized": session.patterns_recognized,
                "learningConfidence": session.learning_confidence,
            },
            started=started,
            prefix="learn-outcome",
        )
        return session

    def learn_from_approvals(
        self, memories: Sequence[StoredMemory], outcome: ProcessingOutcome
    ) -> LearningOutcome:
        """Reinforce each approved memory and report one result per memory."""
        started = time.perf_counter()
        session = LearningOutcome(
            session_id=self.id_factory("approve"),
            strategy=LearningStrategy.IMMEDIATE,
            timestamp=self.clock(),
        )
        for memory in memories:
            self._record_reinforcement(memory.id, outcome, session)
        self._finish(session)
        self.audit.record(
            AuditOperation.MEMORY_LEARNING,
            "Learned from approvals",
            input={
                "invoiceId": outcome.result.normalized_invoice.id,
                "sessionId": session.session_id,
                "appliedMemoriesCount": len(memories),
                "outcomeType": outcome.outcome_type.value,
            },
            output={
                "memoriesReinforced": session.memories_reinforced,
                "learningConfidence": session.learning_confidence,
            },
            started=started,
            prefix="learn-approvals",
        )
        return session

    def learn_from_resolution(
        self,
        vendor_id: str,
        discrepancy_type: DiscrepancyType,
        resolution: ResolutionOutcome,
        decision: HumanDecision,
        *,
        context_factors: Iterable[ContextFactor] = (),
        invoice: RawInvoice | None = None,
    ) -> LearningOutcome:
        """Store an explicit human resolution as a ResolutionMemory."""
        started = time.perf_counter()
        now = self.clock()
        session = LearningOutcome(
            session_id=self.id_factory("resolve"),
            strategy=LearningStrategy.IMMEDIATE,
            timestamp=now,
        )
        characteristics = InvoiceCharacteristics()
        if invoice is not None:
            characteristics = InvoiceCharacteristics(
                complexity=estimate_complexity(invoice),
                language=invoice.metadata.detected_language,
                document_format=invoice.metadata.file_format,
                extraction_quality=invoice.metadata.extraction_quality,
            )
        slug = slugify(f"{vendor_id} {discrepancy_type.value}", max_length=60)
        memory = ResolutionMemory(
            id=self.id_factory(f"resolution-{slug}"),
            pattern=MemoryPattern(
                pattern_type=PatternType.CONTEXTUAL,
                pattern_data={
                    "discrepancyType": discrepancy_type.value,
                    "resolutionAction": resolution.resolution_action.value,
                },
            ),
            confidence=0.5,
            created_at=now,
            last_used=now,
            context=MemoryContext(
                vendor_id=vendor_id, invoice_characteristics=characteristics
            ),
            discrepancy_type=discrepancy_type,
            resolution_outcome=resolution,
            human_decision=decision,
            context_factors=list(context_factors),
        )
        memory = memory.model_copy(
            update={"confidence": self.confidence.calculate_initial_confidence(memory)}
        )
        try:
            saved = self.store.save_memory(memory)
        except PersistenceError as exc:
            logger.warning("Could not save resolution memory %s", memory.id, exc_info=True)
            session.learning_results.append(
                LearningResult(
                    learning_type=LearningType.RESOLUTION_MEMORY_CREATION,
                    memory_id=memory.id,
                    confidence=memory.confidence,
                    success=False,
                    error=str(exc),
                )
            )
        else:
            session.memories_created += 1
            session.learning_results.append(
                LearningResult(
                    learning_type=LearningType.RESOLUTION_MEMORY_CREATION,
                    memory_id=saved.id,
                    confidence=saved.confidence,
                    success=True,
                )
            )
        self._finish(session)
        self.audit.record(
            AuditOperation.MEMORY_LEARNING,
            f"Learned resolution for {discrepancy_type.value}",
            input={
                "invoiceId": invoice.id if invoice else None,
                "sessionId": session.session_id,
                "vendorId": vendor_id,
                "decisionType": decision.decision_type.value,
            },
            output={"memoriesCreated": session.memories_created},
            started=started,
            prefix="learn-resolution",
        )
        return session

    def commit_pending(self) -> LearningOutcome:
        """Write every memory staged by BATCH learning."""
        session = LearningOutcome(
            session_id=self.id_factory("batch"),
            strategy=LearningStrategy.BATCH,
            timestamp=self.clock(),
        )
        with self._lock:
            staged = list(self._pending.values())
            self._pending.clear()
        self._commit(staged, session)
        self._finish(session)
        if staged:
            self.audit.record(
                AuditOperation.MEMORY_LEARNING,
                f"Committed {len(staged)} staged patterns",
                input={"sessionId": session.session_id, "staged": len(staged)},
                output={
                    "memoriesCreated": session.memories_created,
                    "memoriesReinforced": session.memories_reinforced,
                },
                prefix="learn-batch",
            )
        return session

    # Patterns

    def recognize_patterns(
        self, corrections: Sequence[Correction], vendor_id: str | None = None
    ) -> list[Pattern]:
        """Group corrections by (field, normalized value) and keep frequent groups."""
        groups: dict[tuple[str, str], list[Correction]] = {}
        for correction in corrections:
            if not is_learnable(correction):
                continue
            key = (correction.field, normalize_value(correction.corrected_value))
            groups.setdefault(key, []).append(correction)

        patterns: list[Pattern] = []
        for (field_name, normalized), members in groups.items():
            occurrences = len(members)
            if occurrences < self.config.min_pattern_occurrences:
                continue
            patterns.append(
                Pattern(
                    field=field_name,
                    value=_most_common([c.corrected_value for c in members]),
                    normalized_value=normalized,
                    vendor_id=vendor_id,
                    occurrences=occurrences,
                    confidence=self.pattern_confidence(occurrences),
                    vendor_specific=vendor_id is not None,
                    correction_type=correction_type_for(field_name),
                    signature=slugify(
                        f"{vendor_id or 'any'} {field_name} {normalized}", max_length=60
                    ),
                )
            )
        return patterns

    def pattern_confidence(self, occurrences: int) -> float:
        cfg = self.config
        return min(
            cfg.pattern_confidence_cap,
            cfg.pattern_base_confidence + cfg.pattern_confidence_step * occurrences,
        )

    def create_memories_from_patterns(
        self, patterns: Sequence[Pattern], context: MemoryContext
    ) -> list[CorrectionMemory]:
        """Build (but do not save) one CorrectionMemory per qualifying pattern."""
        memories: list[CorrectionMemory] = []
        for pattern in patterns:
            if len(memories) >= self.config.max_memories_per_session:
                break
            if pattern.confidence < self.config.min_new_memory_confidence:
                logger.debug("Pattern %s below creation confidence", pattern.signature)
                continue
            memories.append(self._memory_for(pattern, context))
        return memories

    def _memory_for(self, pattern: Pattern, context: MemoryContext) -> CorrectionMemory:
        now = self.clock()
        vendor_context = context.model_copy(
            update={"vendor_id": pattern.vendor_id or context.vendor_id}
        )
        return CorrectionMemory(
            id=self.id_factory(f"mem-{pattern.signature}"),
            pattern=MemoryPattern(
                pattern_type=pattern.pattern_type,
                pattern_data={
                    "field": pattern.field,
                    "value": pattern.normalized_value,
                    "occurrences": pattern.occurrences,
                    "signature": pattern.signature,
                },
            ),
            confidence=pattern.confidence,
            created_at=now,
            last_used=now,
            context=vendor_context,
            correction_type=pattern.correction_type,
            trigger_conditions=[
                Condition(
                    field=pattern.field,
                    operator=ConditionOperator.NOT_EQUALS,
                    value=pattern.value,
                )
            ],
            correction_action=CorrectionAction(
                action_type=CorrectionActionType.SET_VALUE,
                target_field=pattern.field,
                new_value=pattern.value,
                explanation=(
                    f"Learned from {pattern.occurrences} corrections of {pattern.field}"
                ),
            ),
        )

    # Internals

    def _learn_from_corrections(
        self,
        corrections: list[Correction],
        vendor_id: str | None,
        strategy: LearningStrategy,
        session: LearningOutcome,
    ) -> None:
        learnable = [c for c in corrections if is_learnable(c)]
        skipped = len(corrections) - len(learnable)
        if skipped:
            logger.debug("Skipped %d unusable corrections", skipped)
        if not learnable:
            return

        grown = {(c.field, normalize_value(c.corrected_value), vendor_id) for c in learnable}
        with self._lock:
            window = self._history.setdefault(
                vendor_id, deque(maxlen=self.config.history_window)
            )
            window.extend(learnable)
            snapshot = list(window)

        patterns = self.recognize_patterns(snapshot, vendor_id)
        session.patterns_recognized = len(patterns)
        if strategy is not LearningStrategy.IMMEDIATE:
            patterns = [p for p in patterns if p.key in grown]

        context = MemoryContext(vendor_id=vendor_id)
        if strategy is LearningStrategy.BATCH:
            with self._lock:
                for pattern in patterns:
                    self._pending[pattern.key] = (pattern, context)
                ready = len(self._pending) >= self.config.batch_size
                staged = list(self._pending.values()) if ready else []
                if ready:
                    self._pending.clear()
            self._commit(staged, session)
            return

        self._commit([(p, context) for p in patterns], session)

    def _learn_vendor_patterns(
        self,
        invoice: RawInvoice,
        corrections: list[Correction],
        session: LearningOutcome,
    ) -> None:
        try:
            _, update = self.vendor_patterns.learn(invoice, corrections)
        except PersistenceError as exc:
            logger.warning(
                "Could not learn vendor patterns for %s", invoice.vendor_id, exc_info=True
            )
            session.learning_results.append(
                LearningResult(
                    learning_type=LearningType.VENDOR_MEMORY_CREATION,
                    memory_id=None,
                    confidence=0.0,
                    success=False,
                    error=str(exc),
                )
            )
            return
        if update is None or not update.changed:
            return
        memory = update.memory
        session.learning_results.append(
            LearningResult(
                learning_type=LearningType.VENDOR_MEMORY_CREATION
                if update.created
                else LearningType.MEMORY_REINFORCEMENT,
                memory_id=memory.id,
                confidence=memory.confidence,
                success=True,
            )
        )
        if update.created:
            session.memories_created += 1
            return
        session.memories_reinforced += 1
        previous = update.previous
        session.memory_updates.append(
            MemoryUpdate(
                memory_id=memory.id,
                update_type=MemoryUpdateType.PATTERN_REFINEMENT,
                previous_state={
                    "confidence": previous.confidence if previous else None,
                    "fieldMappings": len(previous.field_mappings) if previous else 0,
                },
                new_state={
                    "confidence": memory.confidence,
                    "fieldMappings": len(memory.field_mappings),
                },
                reason=f"New layout patterns from invoice {invoice.id}",
                timestamp=self.clock(),
            )
        )

    def _commit(
        self, staged: list[tuple[Pattern, MemoryContext]], session: LearningOutcome
    ) -> None:
        for pattern, context in staged[: self.config.max_memories_per_session]:
            if pattern.confidence < self.config.min_new_memory_confidence:
                continue
            with self._commit_lock:
                result, update = self._commit_pattern(pattern, context)
            session.learning_results.append(result)
            if update is not None:
                session.memory_updates.append(update)
            if not result.success:
                continue
            if result.learning_type is LearningType.MEMORY_REINFORCEMENT:
                session.memories_reinforced += 1
            else:
                session.memories_created += 1

    def _commit_pattern(
        self, pattern: Pattern, context: MemoryContext
    ) -> tuple[LearningResult, MemoryUpdate | None]:
        try:
            existing = self._find_equivalent(pattern)
            if existing is None:
                memory = self._memory_for(pattern, context)
                saved = self.store.save_memory(memory)
                logger.info(
                    "Created memory %s from %d corrections", saved.id, pattern.occurrences
                )
                return (
                    LearningResult(
                        learning_type=LearningType.CORRECTION_MEMORY_CREATION,
                        memory_id=saved.id,
                        confidence=saved.confidence,
                        success=True,
                        pattern=pattern,
                    ),
                    None,
                )

            now = self.clock()

            def refine(current: StoredMemory) -> StoredMemory:
                data = {**current.pattern.pattern_data, "occurrences": pattern.occurrences}
                return current.model_copy(
                    update={
                        "confidence": max(current.confidence, pattern.confidence),
                        "pattern": current.pattern.model_copy(update={"pattern_data": data}),
                    }
                )

            saved = update_memory_with_retry(
                self.store,
                existing.id,
                refine,
                max_retries=self.store_config.max_update_retries,
            )
        except PersistenceError as exc:
            logger.warning(
                "Could not persist pattern %s", pattern.signature, exc_info=True
            )
            return (
                LearningResult(
                    learning_type=LearningType.PATTERN_LEARNING,
                    memory_id=None,
                    confidence=pattern.confidence,
                    success=False,
                    pattern=pattern,
                    error=str(exc),
                ),
                None,
            )

        update = MemoryUpdate(
            memory_id=saved.id,
            update_type=MemoryUpdateType.PATTERN_REFINEMENT,
            previous_state={"confidence": existing.confidence},
            new_state={"confidence": saved.confidence, "occurrences": pattern.occurrences},
            reason=f"Pattern {pattern.signature} seen {pattern.occurrences} times",
            timestamp=now,
        )
        return (
            LearningResult(
                learning_type=LearningType.MEMORY_REINFORCEMENT,
                memory_id=saved.id,
                confidence=saved.confidence,
                success=True,
                pattern=pattern,
            ),
            update,
        )

    def _find_equivalent(self, pattern: Pattern) -> CorrectionMemory | None:
        if pattern.vendor_id is None:
            return None
        for memory in self.store.find_memories_by_vendor(pattern.vendor_id):
            match memory:
                case CorrectionMemory(correction_action=action) if (
                    action.target_field == pattern.field
                    and action.action_type is CorrectionActionType.SET_VALUE
                    and normalize_value(action.new_value) == pattern.normalized_value
                ):
                    return memory
        return None

    def _record_reinforcement(
        self, memory_id: str, outcome: ProcessingOutcome, session: LearningOutcome
    ) -> None:
        result, updates = self.reinforce(memory_id, outcome)
        session.learning_results.append(result)
        session.memory_updates.extend(updates)
        if result.success:
            session.memories_reinforced += 1

    def reinforce(
        self,
        memory_id: str,
        outcome: ProcessingOutcome,
        *,
        confidence: ConfidenceManager | None = None,
    ) -> tuple[LearningResult, list[MemoryUpdate]]:
        """Apply an outcome to one stored memory as a read-modify-write.

        Memories that fall below the retention floor are archived. Lookup
        misses and store failures come back as failed results. Pass
        ``confidence`` to record the confidence steps in another log.
        """
        manager = confidence or self.confidence
        now = self.clock()
        captured: list[MemoryUpdate] = []

        def apply(current: StoredMemory) -> StoredMemory:
            updated, update = manager.apply_outcome(current, outcome, now)
            captured[:] = [update]
            return updated

        try:
            saved = update_memory_with_retry(
                self.store,
                memory_id,
                apply,
                max_retries=self.store_config.max_update_retries,
            )
        except MemoryNotFoundError as exc:
            return self._failed_reinforcement(memory_id, str(exc)), []
        except PersistenceError as exc:
            logger.warning("Could not reinforce memory %s", memory_id, exc_info=True)
            return self._failed_reinforcement(memory_id, str(exc)), []

        updates = list(captured)
        if manager.should_archive(saved):
            try:
                self.store.archive_memory(saved.id)
            except PersistenceError:
                logger.warning("Could not archive memory %s", saved.id, exc_info=True)
            else:
                logger.info("Archived memory %s", saved.id)
                updates.append(
                    MemoryUpdate(
                        memory_id=saved.id,
                        update_type=MemoryUpdateType.ARCHIVED,
                        previous_state={"archived": False},
                        new_state={
                            "archived": True,
                            "confidence": saved.confidence,
                            "successRate": saved.success_rate,
                        },
                        reason="Below retention floor",
                        timestamp=now,
                    )
                )
        result = LearningResult(
            learning_type=LearningType.MEMORY_REINFORCEMENT,
            memory_id=saved.id,
            confidence=saved.confidence,
            success=True,
        )
        return result, updates

    @staticmethod
    def _failed_reinforcement(memory_id: str, error: str) -> LearningResult:
        return LearningResult(
            learning_type=LearningType.MEMORY_REINFORCEMENT,
            memory_id=memory_id,
            confidence=0.0,
            success=False,
            error=error,
        )

    def _finish(self, session: LearningOutcome) -> None:
        succeeded = [r for r in session.learning_results if r.success]
        session.learning_confidence = (
            sum(r.confidence for r in succeeded) / len(succeeded) if succeeded else 0.0
        )
        parts = [
            f"Used {session.strategy.value} learning strategy",
            f"Processed {session.corrections_processed} corrections",
        ]
        if session.memories_created:
            parts.append(f"Created {session.memories_created} new memories")
        if session.memories_reinforced:
            parts.append(f"Reinforced {session.memories_reinforced} existing memories")
        if session.patterns_recognized:
            parts.append(f"Recognized {session.patterns_recognized} patterns")
        total = len(session.learning_results)
        rate = len(succeeded) / total if total else 0.0
        parts.append(f"Success rate: {rate:.1%}")
        session.reasoning = ". ".join(parts) + "."


def _most_common(values: list[Any]) -> Any:
    """Most frequent original spelling, earliest first on ties."""
    counts = Counter(str(v) for v in values)
    winner = counts.most_common(1)[0][0]
    return next(v for v in values if str(v) == winner)
