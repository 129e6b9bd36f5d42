"""End-to-end invoice pipeline: recall, apply, check, decide, learn."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from invoice_memory.application import MemoryApplicationEngine
from invoice_memory.audit import AuditLog, utc_now, uuid_ids
from invoice_memory.config import (
    ApplicationConfig,
    ConfidenceConfig,
    DecisionConfig,
    DuplicateDetectionConfig,
    LearningConfig,
    StoreConfig,
    VendorPatternConfig,
)
from invoice_memory.confidence import ConfidenceManager, PerformanceMetrics
from invoice_memory.decision import (
    DecisionContext,
    DecisionEngine,
    IssueSeverity,
    ValidationIssue,
)
from invoice_memory.duplicates import DuplicateDetector
from invoice_memory.learning import LearningStrategy, MemoryLearningEngine
from invoice_memory.models import (
    AuditOperation,
    DecisionType,
    MemoryUpdate,
    MemoryUpdateType,
    ProcessingOutcome,
    ProcessingOutcomeType,
    ProcessingResult,
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

    from invoice_memory.application import ApplicationResult
    from invoice_memory.learning import LearningOutcome
    from invoice_memory.models import (
        AuditStep,
        ContextFactor,
        Decision,
        DiscrepancyType,
        HumanDecision,
        RawInvoice,
        ResolutionOutcome,
    )
    from invoice_memory.store import (
        AuditSink,
        InvoiceRegistry,
        MemoryStore,
        StoredMemory,
    )

logger = logging.getLogger(__name__)


@dataclass
class _Counters:
    invoices: int = 0
    auto_approved: int = 0
    human_review: int = 0
    outcomes: int = 0
    successful_outcomes: int = 0
    outcomes_with_memories: int = 0
    successful_with_memories: int = 0


class MemorySystem:
    """Runs invoices through the memory pipeline.

    Application, decision and duplicate engines are created per run so each
    run has its own audit session. The learning engine is shared, since it
    keeps the correction history that patterns are recognized from; its
    audit steps are written to the sink after every learning call.
    """

    def __init__(
        self,
        store: MemoryStore,
        audit_sink: AuditSink,
        *,
        application_config: ApplicationConfig | None = None,
        confidence_config: ConfidenceConfig | None = None,
        decision_config: DecisionConfig | None = None,
        learning_config: LearningConfig | None = None,
        store_config: StoreConfig | None = None,
        vendor_pattern_config: VendorPatternConfig | None = None,
        duplicate_config: DuplicateDetectionConfig | None = None,
        invoice_registry: InvoiceRegistry | None = None,
        reinforce_on_auto_approve: bool = True,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.audit_sink = audit_sink
        self.invoice_registry = invoice_registry
        self.application_config = application_config or ApplicationConfig()
        self.decision_config = decision_config or DecisionConfig()
        self.store_config = store_config or StoreConfig()
        self.duplicate_config = duplicate_config or DuplicateDetectionConfig()
        self.reinforce_on_auto_approve = reinforce_on_auto_approve
        self.id_factory = id_factory or uuid_ids
        self.clock = clock or utc_now
        self.confidence = ConfidenceManager(
            confidence_config, id_factory=self.id_factory, clock=self.clock
        )
        self.vendor_patterns = VendorPatternRecognizer(
            store,
            self.confidence,
            vendor_pattern_config,
            self.store_config,
            id_factory=self.id_factory,
            clock=self.clock,
        )
        self.learning = MemoryLearningEngine(
            store,
            self.confidence,
            learning_config,
            self.store_config,
            vendor_patterns=self.vendor_patterns,
            id_factory=self.id_factory,
            clock=self.clock,
        )
        self._lock = threading.Lock()
        self._counters = _Counters()

    def process_invoice(self, invoice: RawInvoice) -> ProcessingResult:
        """Process one invoice and write its audit trail to the sink.

        Memory, duplicate and decision failures are folded into the result.
        Only the final audit write raises.
        """
        run_log = AuditLog("MemorySystem", id_factory=self.id_factory, clock=self.clock)
        run_confidence = ConfidenceManager(
            self.confidence.config, id_factory=self.id_factory, clock=self.clock
        )
        application = MemoryApplicationEngine(
            self.application_config, id_factory=self.id_factory, clock=self.clock
        )
        decisions = DecisionEngine(
            self.decision_config, id_factory=self.id_factory, clock=self.clock
        )
        duplicates = None
        if self.invoice_registry is not None:
            duplicates = DuplicateDetector(
                self.invoice_registry,
                self.duplicate_config,
                id_factory=self.id_factory,
                clock=self.clock,
            )

        memories = self._recall(invoice, run_log)
        applied = application.apply_memories(invoice, memories)

        by_id = {m.id: m for m in memories}
        applied_memories = [
            by_id[a.memory_id] for a in applied.applied_memories if a.memory_id in by_id
        ]
        issues = validation_issues(applied)
        if duplicates is not None:
            issues.extend(duplicates.detect(applied.normalized_invoice).validation_issues)
        decision = decisions.evaluate(
            DecisionContext(
                invoice=applied.normalized_invoice,
                confidence=applied.application_confidence,
                applied_memories=applied_memories,
                validation_issues=issues,
            )
        )

        result = ProcessingResult(
            normalized_invoice=applied.normalized_invoice,
            proposed_corrections=applied.proposed_corrections,
            requires_human_review=decision.requires_human_review,
            reasoning=_reasoning(applied, decision.reasoning),
            confidence_score=applied.application_confidence,
            decision=decision,
            applied_memory_ids=[m.id for m in applied_memories],
        )

        if (
            self.reinforce_on_auto_approve
            and decision.decision_type is DecisionType.AUTO_APPROVE
            and applied_memories
        ):
            result.memory_updates = self._reinforce(result, run_log, run_confidence)

        steps = [
            *run_log.steps(),
            *application.get_audit_steps(),
            *decisions.get_audit_steps(),
            *run_confidence.audit.drain(),
        ]
        if duplicates is not None:
            duplicates.remember(applied.normalized_invoice)
            steps.extend(duplicates.get_audit_steps())
        result.audit_trail = sorted(steps, key=lambda step: step.timestamp)
        self._count_run(decision)
        self.audit_sink.record_audit_steps(result.audit_trail)
        logger.info(
            "Invoice %s: %s with confidence %.3f",
            invoice.id,
            decision.decision_type.value,
            result.confidence_score,
        )
        return result

    # Learning

    def learn_from_outcome(
        self,
        outcome: ProcessingOutcome,
        strategy: LearningStrategy = LearningStrategy.PATTERN_BASED,
        *,
        invoice: RawInvoice | None = None,
    ) -> LearningOutcome:
        """Learn from a reviewed outcome, then write the learning steps to the sink.

        Pass the raw ``invoice`` to also learn the vendor's layout.
        """
        try:
            session = self.learning.learn_from_outcome(outcome, strategy, invoice=invoice)
        finally:
            self._flush()
        self._count_outcome(outcome)
        return session

    def learn_from_approvals(
        self, memories: Sequence[StoredMemory], outcome: ProcessingOutcome
    ) -> LearningOutcome:
        try:
            return self.learning.learn_from_approvals(memories, outcome)
        finally:
            self._flush()

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
        try:
            return self.learning.learn_from_resolution(
                vendor_id,
                discrepancy_type,
                resolution,
                decision,
                context_factors=context_factors,
                invoice=invoice,
            )
        finally:
            self._flush()

    def commit_pending(self) -> LearningOutcome:
        try:
            return self.learning.commit_pending()
        finally:
            self._flush()

    # Maintenance

    def decay_memories(
        self, vendor_id: str, now: datetime | None = None
    ) -> list[MemoryUpdate]:
        """Persist time decay for a vendor's memories and archive faded ones.

        Memories with nothing to decay are not rewritten. A memory archived
        by someone else meanwhile is skipped.
        """
        now = now or self.clock()
        updates: list[MemoryUpdate] = []
        try:
            for memory in self.store.find_memories_by_vendor(vendor_id):
                try:
                    saved, decayed = self._decay_one(memory.id, now)
                except MemoryNotFoundError:
                    logger.debug("Memory %s disappeared before decay", memory.id)
                    continue
                updates.extend(decayed)
                if not self.confidence.should_archive(saved):
                    continue
                try:
                    self.store.archive_memory(saved.id)
                except MemoryNotFoundError:
                    logger.debug("Memory %s already gone, not archiving", saved.id)
                    continue
                updates.append(
                    MemoryUpdate(
                        memory_id=saved.id,
                        update_type=MemoryUpdateType.ARCHIVED,
                        previous_state={"archived": False},
                        new_state={"archived": True, "confidence": saved.confidence},
                        reason="Below retention floor after decay",
                        timestamp=now,
                    )
                )
        finally:
            self._flush()
        return updates

    def performance_metrics(self) -> PerformanceMetrics:
        """Rates over everything processed and learned so far.

        A rate with nothing to measure yet counts as healthy.
        """
        with self._lock:
            c = replace(self._counters)
        return PerformanceMetrics(
            automation_rate=_rate(c.auto_approved, c.invoices, 1.0),
            success_rate=_rate(c.successful_outcomes, c.outcomes, 1.0),
            human_review_rate=_rate(c.human_review, c.invoices, 0.0),
            memory_accuracy_rate=_rate(
                c.successful_with_memories, c.outcomes_with_memories, 1.0
            ),
        )

    def tune_escalation_threshold(self) -> float:
        """Move the escalation threshold according to ``performance_metrics``.

        Later runs decide with the new threshold, which is also returned.
        """
        current = self.decision_config.escalation_threshold
        try:
            adjusted = self.confidence.adjust_escalation_threshold(
                current, self.performance_metrics()
            )
        finally:
            self._flush()
        if adjusted != current:
            self.decision_config = replace(
                self.decision_config, escalation_threshold=adjusted
            )
        return adjusted

    # Internals

    def _flush(self) -> list[AuditStep]:
        steps = sorted(
            [
                *self.learning.audit.drain(),
                *self.vendor_patterns.audit.drain(),
                *self.confidence.audit.drain(),
            ],
            key=lambda step: step.timestamp,
        )
        if steps:
            self.audit_sink.record_audit_steps(steps)
        return steps

    def _count_run(self, decision: Decision) -> None:
        with self._lock:
            self._counters.invoices += 1
            if decision.decision_type is DecisionType.AUTO_APPROVE:
                self._counters.auto_approved += 1
            if decision.requires_human_review:
                self._counters.human_review += 1

    def _count_outcome(self, outcome: ProcessingOutcome) -> None:
        success = outcome.outcome_type.is_success
        used_memories = bool(
            outcome.applied_memory_ids or outcome.result.applied_memory_ids
        )
        with self._lock:
            self._counters.outcomes += 1
            self._counters.successful_outcomes += success
            if used_memories:
                self._counters.outcomes_with_memories += 1
                self._counters.successful_with_memories += success

    def _decay_one(
        self, memory_id: str, now: datetime
    ) -> tuple[StoredMemory, list[MemoryUpdate]]:
        decayed: list[MemoryUpdate] = []

        def decay(current: StoredMemory) -> StoredMemory:
            updated, update = self.confidence.apply_decay(current, now)
            decayed[:] = [update] if update is not None else []
            return updated

        saved = update_memory_with_retry(
            self.store,
            memory_id,
            decay,
            max_retries=self.store_config.max_update_retries,
        )
        return saved, decayed

    def _recall(self, invoice: RawInvoice, run_log: AuditLog) -> list[StoredMemory]:
        started = time.perf_counter()
        try:
            memories = self.store.find_memories_by_vendor(invoice.vendor_id)
        except PersistenceError as exc:
            logger.warning(
                "Memory recall failed for vendor %s", invoice.vendor_id, exc_info=True
            )
            run_log.record(
                AuditOperation.ERROR_HANDLING,
                "Memory recall failed, continuing without memories",
                input={"invoiceId": invoice.id, "vendorId": invoice.vendor_id},
                output={"error": str(exc)},
                started=started,
                prefix="recall-error",
            )
            return []
        run_log.record(
            AuditOperation.MEMORY_RECALL,
            f"Recalled {len(memories)} memories for vendor {invoice.vendor_id}",
            input={"invoiceId": invoice.id, "vendorId": invoice.vendor_id},
            output={
                "memoryCount": len(memories),
                "memoryIds": [m.id for m in memories],
            },
            started=started,
            prefix="recall",
        )
        return memories

    def _reinforce(
        self,
        result: ProcessingResult,
        run_log: AuditLog,
        confidence: ConfidenceManager,
    ) -> list[MemoryUpdate]:
        outcome = ProcessingOutcome(
            result=result,
            outcome_type=ProcessingOutcomeType.SUCCESS_AUTO,
            applied_memory_ids=result.applied_memory_ids,
        )
        updates: list[MemoryUpdate] = []
        for memory_id in result.applied_memory_ids:
            started = time.perf_counter()
            learning_result, memory_updates = self.learning.reinforce(
                memory_id, outcome, confidence=confidence
            )
            updates.extend(memory_updates)
            run_log.record(
                AuditOperation.CONFIDENCE_CALCULATION
                if learning_result.success
                else AuditOperation.ERROR_HANDLING,
                f"Reinforced memory {memory_id} after auto-approval"
                if learning_result.success
                else f"Could not reinforce memory {memory_id}",
                input={"invoiceId": result.normalized_invoice.id, "memoryId": memory_id},
                output={
                    "success": learning_result.success,
                    "newConfidence": learning_result.confidence,
                    "error": learning_result.error,
                },
                started=started,
                prefix="reinforce",
            )
        return updates


def validation_issues(applied: ApplicationResult) -> list[ValidationIssue]:
    """Warnings derived from one application run."""
    issues = [
        ValidationIssue(
            severity=IssueSeverity.WARNING,
            issue_type="invalid_format",
            affected_field=v.field,
            description=v.message or f"Validation failed for {v.field}",
        )
        for v in applied.validation_failures
    ]
    issues.extend(
        ValidationIssue(
            severity=IssueSeverity.WARNING,
            issue_type="memory_failure",
            affected_field=f.memory_id,
            description=f.reason,
        )
        for f in applied.failed_memories
    )
    if applied.normalized_invoice.total_amount.amount <= 0:
        issues.append(
            ValidationIssue(
                severity=IssueSeverity.WARNING,
                issue_type="missing_field",
                affected_field="totalAmount",
                description="No positive total amount could be determined",
            )
        )
    return issues


def _reasoning(applied: ApplicationResult, decision_reasoning: str) -> str:
    summary = (
        f"Applied {len(applied.applied_memories)} memories "
        f"({len(applied.failed_memories)} failed, "
        f"{len(applied.resolved_conflicts)} conflicts resolved, "
        f"{len(applied.proposed_corrections)} corrections proposed)."
    )
    return f"{summary} {decision_reasoning}"
