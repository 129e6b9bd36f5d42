"""Closed-form confidence reinforcement, decay and archival rules."""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from invoice_memory.audit import AuditLog
from invoice_memory.config import ConfidenceConfig
from invoice_memory.models import (
    AuditOperation,
    ComplexityLevel,
    CorrectionMemory,
    MemoryUpdate,
    MemoryUpdateType,
    ProcessingOutcomeType,
    QualityLevel,
    ResolutionMemory,
    VendorMemory,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from invoice_memory.models import AuditStep, ProcessingOutcome
    from invoice_memory.store import StoredMemory

logger = logging.getLogger(__name__)

OUTCOME_WEIGHTS: dict[ProcessingOutcomeType, float] = {
    ProcessingOutcomeType.SUCCESS_AUTO: 1.0,
    ProcessingOutcomeType.SUCCESS_HUMAN_REVIEW: 0.7,
    ProcessingOutcomeType.FAILED_VALIDATION: -1.5,
    ProcessingOutcomeType.ESCALATED: -0.5,
    ProcessingOutcomeType.REJECTED: -2.0,
}

_QUALITY_ADJUSTMENT = {
    QualityLevel.EXCELLENT: 0.1,
    QualityLevel.GOOD: 0.05,
    QualityLevel.FAIR: -0.05,
    QualityLevel.POOR: -0.1,
}

_COMPLEXITY_ADJUSTMENT = {
    ComplexityLevel.SIMPLE: 0.05,
    ComplexityLevel.MODERATE: 0.02,
    ComplexityLevel.COMPLEX: -0.02,
    ComplexityLevel.VERY_COMPLEX: -0.05,
}

LAST_DECAY_KEY = "last_decay_at"

_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class PerformanceMetrics:
    """Recent processing statistics used to tune the escalation threshold."""

    automation_rate: float
    success_rate: float
    human_review_rate: float
    memory_accuracy_rate: float


class ConfidenceManager:
    """Pure confidence arithmetic over memories.

    Nothing here touches a store; callers persist returned values
    explicitly. Every computation leaves a ``confidence_calculation`` audit
    step in the engine's log.
    """

    def __init__(
        self,
        config: ConfidenceConfig | None = None,
        *,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or ConfidenceConfig()
        self.audit = AuditLog("ConfidenceManager", id_factory=id_factory, clock=clock)

    def get_audit_steps(self) -> list[AuditStep]:
        return self.audit.steps()

    def clear_audit_steps(self) -> None:
        self.audit.clear()

    # Reinforcement

    def outcome_weight(self, outcome: ProcessingOutcome) -> float:
        """Signed weight of an outcome, scaled by human satisfaction if given."""
        weight = OUTCOME_WEIGHTS[outcome.outcome_type]
        if outcome.human_feedback is not None:
            weight *= outcome.human_feedback.satisfaction_rating / 5.0
        return weight

    def reinforce_memory(self, memory: StoredMemory, outcome: ProcessingOutcome) -> float:
        """New confidence for a memory after an outcome.

        Successes move toward 1 by ``rate * w * (1 - c)`` and stop at the
        configured ceiling; failures shrink by ``rate * |w| * c``. A success
        never lowers confidence and a failure never raises it.
        """
        started = time.perf_counter()
        current = memory.confidence
        weight = self.outcome_weight(outcome)
        rate = self.config.reinforcement_rate

        if outcome.outcome_type.is_success:
            proposed = current + rate * weight * (1.0 - current)
            new = max(current, min(proposed, self.config.maximum_confidence))
        else:
            proposed = current - rate * abs(weight) * current
            new = min(current, max(0.0, proposed))

        self.audit.record(
            AuditOperation.CONFIDENCE_CALCULATION,
            f"Reinforced memory {memory.id} for {outcome.outcome_type.value}",
            input={
                "invoiceId": outcome.result.normalized_invoice.id,
                "memoryId": memory.id,
                "currentConfidence": current,
                "outcomeType": outcome.outcome_type.value,
                "weight": weight,
            },
            output={"newConfidence": new, "change": new - current},
            started=started,
            prefix="conf-reinforce",
        )
        logger.debug("Memory %s confidence %.4f -> %.4f", memory.id, current, new)
        return new

    @staticmethod
    def updated_success_rate(memory: StoredMemory, success: bool) -> float:
        """Running success rate including one more use."""
        total = memory.success_rate * memory.usage_count + (1.0 if success else 0.0)
        return min(1.0, max(0.0, total / (memory.usage_count + 1)))

    def apply_outcome(
        self, memory: StoredMemory, outcome: ProcessingOutcome, now: datetime
    ) -> tuple[StoredMemory, MemoryUpdate]:
        """Return the memory as it should look after one more use."""
        new_confidence = self.reinforce_memory(memory, outcome)
        success = outcome.outcome_type.is_success
        updated = memory.model_copy(
            update={
                "confidence": new_confidence,
                "usage_count": memory.usage_count + 1,
                "success_rate": self.updated_success_rate(memory, success),
                "last_used": now,
            }
        )
        if new_confidence > memory.confidence:
            update_type = MemoryUpdateType.CONFIDENCE_INCREASE
        elif new_confidence < memory.confidence:
            update_type = MemoryUpdateType.CONFIDENCE_DECREASE
        else:
            update_type = MemoryUpdateType.USAGE_COUNT_INCREMENT
        update = MemoryUpdate(
            memory_id=memory.id,
            update_type=update_type,
            previous_state=_snapshot(memory),
            new_state=_snapshot(updated),
            reason=f"Processing outcome {outcome.outcome_type.value}",
            timestamp=now,
        )
        return updated, update

    # Decay

    def decay_memory(self, memory: StoredMemory, days_since_use: float) -> float:
        """Exponentially decayed confidence, held at the configured floor.

        Decay never raises confidence, so a memory already below the floor
        keeps its value.
        """
        started = time.perf_counter()
        current = memory.confidence
        if days_since_use <= 0 or current <= self.config.minimum_confidence:
            new = current
        else:
            factor = math.exp(-self.config.decay_rate_per_day * days_since_use)
            new = min(current, max(self.config.minimum_confidence, current * factor))

        self.audit.record(
            AuditOperation.CONFIDENCE_CALCULATION,
            f"Decayed memory {memory.id} over {days_since_use:.2f} days",
            input={
                "memoryId": memory.id,
                "currentConfidence": current,
                "daysSinceUse": days_since_use,
            },
            output={"newConfidence": new},
            started=started,
            prefix="conf-decay",
        )
        return new

    def apply_decay(
        self, memory: StoredMemory, now: datetime
    ) -> tuple[StoredMemory, MemoryUpdate | None]:
        """Decay a memory for the time elapsed since it was last used or decayed.

        The decay timestamp is kept in ``context.history`` so repeated calls
        do not decay the same interval twice.
        """
        reference = memory.last_used
        last_decay = memory.context.history.get(LAST_DECAY_KEY)
        if last_decay:
            reference = max(reference, datetime.fromisoformat(last_decay))
        days = (now - reference).total_seconds() / _SECONDS_PER_DAY
        new_confidence = self.decay_memory(memory, days)
        if new_confidence >= memory.confidence:
            return memory, None

        history = {**memory.context.history, LAST_DECAY_KEY: now.isoformat()}
        context = memory.context.model_copy(update={"history": history})
        updated = memory.model_copy(
            update={"confidence": new_confidence, "context": context}
        )
        update = MemoryUpdate(
            memory_id=memory.id,
            update_type=MemoryUpdateType.CONFIDENCE_DECREASE,
            previous_state=_snapshot(memory),
            new_state=_snapshot(updated),
            reason=f"Decay after {days:.1f} days without use",
            timestamp=now,
        )
        return updated, update

    def should_archive(self, memory: StoredMemory) -> bool:
        """True once a memory has fallen below the retention floor."""
        if memory.confidence < self.config.archive_confidence_floor:
            return True
        return (
            memory.usage_count >= self.config.archive_min_usage
            and memory.success_rate < self.config.archive_success_rate_floor
        )

    # Initial confidence and thresholds

    def calculate_initial_confidence(self, memory: StoredMemory) -> float:
        """Starting confidence for a newly created memory.

        Vendor memories start at 0.6, corrections at 0.4 and resolutions at
        0.7, then scale with extraction quality, invoice complexity and the
        size of the pattern data.
        """
        started = time.perf_counter()
        match memory:
            case VendorMemory():
                base = 0.6
            case CorrectionMemory():
                base = 0.4
            case ResolutionMemory():
                base = 0.7

        characteristics = memory.context.invoice_characteristics
        context_adjustment = (
            _QUALITY_ADJUSTMENT[characteristics.extraction_quality]
            + _COMPLEXITY_ADJUSTMENT[characteristics.complexity]
        )
        pattern_adjustment = _pattern_size_adjustment(memory.pattern.pattern_data)
        confidence = base * (1 + context_adjustment) * (1 + pattern_adjustment)
        confidence = max(
            self.config.minimum_confidence,
            min(self.config.maximum_confidence, confidence),
        )

        self.audit.record(
            AuditOperation.CONFIDENCE_CALCULATION,
            "Initial confidence calculation",
            input={"memoryId": memory.id, "memoryType": memory.kind.value},
            output={
                "initialConfidence": confidence,
                "contextAdjustment": context_adjustment,
                "complexityAdjustment": pattern_adjustment,
            },
            started=started,
            prefix="conf-initial",
        )
        return confidence

    def adjust_escalation_threshold(
        self, current: float, metrics: PerformanceMetrics
    ) -> float:
        """Nudge the escalation threshold from recent performance.

        Changes smaller than 0.02 are ignored. The result stays in [0.3, 0.9].
        """
        new = current
        if metrics.automation_rate < 0.6:
            new = max(0.3, current - 0.05)
        elif metrics.automation_rate > 0.9 and metrics.success_rate < 0.8:
            new = min(0.9, current + 0.05)

        if metrics.human_review_rate > 0.5:
            new = max(0.3, new - 0.03)

        if metrics.memory_accuracy_rate < 0.7:
            new = min(0.9, new + 0.1)

        if abs(new - current) < 0.02:
            return current

        self.audit.record(
            AuditOperation.CONFIDENCE_CALCULATION,
            "Escalation threshold adjusted",
            input={
                "previousThreshold": current,
                "automationRate": metrics.automation_rate,
                "successRate": metrics.success_rate,
                "humanReviewRate": metrics.human_review_rate,
                "memoryAccuracyRate": metrics.memory_accuracy_rate,
            },
            output={"newThreshold": new},
            prefix="conf-threshold",
        )
        logger.info("Escalation threshold %.2f -> %.2f", current, new)
        return new


def _pattern_size_adjustment(pattern_data: dict[str, object]) -> float:
    size = len(json.dumps(pattern_data, default=str))
    if size < 100:
        return 0.05
    if size < 500:
        return 0.02
    if size < 1000:
        return -0.02
    return -0.05


def _snapshot(memory: StoredMemory) -> dict[str, object]:
    return {
        "confidence": memory.confidence,
        "usageCount": memory.usage_count,
        "successRate": memory.success_rate,
        "lastUsed": memory.last_used.isoformat(),
    }
