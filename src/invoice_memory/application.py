"""Applies recalled memories to a raw invoice."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from invoice_memory.audit import AuditLog
from invoice_memory.config import ApplicationConfig
from invoice_memory.models import (
    AuditOperation,
    Correction,
    CorrectionMemory,
    LineItem,
    MemoryType,
    Money,
    NormalizedField,
    NormalizedInvoice,
    ResolutionMemory,
    TransformationType,
    VendorMemory,
)
from invoice_memory.transforms import (
    apply_correction_action,
    apply_transformation,
    evaluate_conditions,
    extract_field_value,
    overlay_field,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import datetime

    from invoice_memory.models import AuditStep, FieldMapping, RawInvoice
    from invoice_memory.store import StoredMemory

logger = logging.getLogger(__name__)

HIGHEST_CONFIDENCE = "highest_confidence"
DEFAULT_LINE_ITEM = "Service/Product"
NEUTRAL_CONFIDENCE = 0.5


class ApplicationType(str, Enum):
    FIELD_MAPPING = "field_mapping"
    CORRECTION = "correction"
    RESOLUTION = "resolution"


class ConflictType(str, Enum):
    FIELD_MAPPING = "field_mapping_conflict"
    CORRECTION = "correction_conflict"


@dataclass
class AppliedTransformation:
    transformation_type: TransformationType
    source_field: str
    target_field: str
    original_value: Any
    transformed_value: Any
    confidence: float
    memory_id: str


@dataclass
class AppliedMemory:
    memory_id: str
    memory_type: MemoryType
    application_type: ApplicationType
    confidence: float
    affected_fields: list[str] = field(default_factory=list)
    reasoning: str = ""


@dataclass
class FailedMemory:
    memory_id: str
    memory_type: MemoryType
    reason: str
    error: str | None = None


@dataclass
class ResolvedConflict:
    conflict_type: ConflictType
    key: str
    contender_ids: list[str]
    contender_confidences: list[float]
    winner_id: str
    strategy: str
    reasoning: str


@dataclass
class ValidationResult:
    field: str
    valid: bool
    subject: str
    message: str | None = None


@dataclass
class ApplicationResult:
    normalized_invoice: NormalizedInvoice
    proposed_corrections: list[Correction]
    normalized_fields: list[NormalizedField]
    applied_memories: list[AppliedMemory]
    failed_memories: list[FailedMemory]
    resolved_conflicts: list[ResolvedConflict]
    transformations: list[AppliedTransformation]
    validation_results: list[ValidationResult]
    application_confidence: float
    audit_steps: list[AuditStep]

    @property
    def validation_failures(self) -> list[ValidationResult]:
        return [v for v in self.validation_results if not v.valid]


def _rank_key(memory: StoredMemory) -> tuple[float, str]:
    # Highest confidence first; equal confidences fall back to ascending id.
    return (-memory.confidence, memory.id)


class MemoryApplicationEngine:
    """Applies vendor mappings, correction rules and resolution precedents.

    One call to ``apply_memories`` handles one invoice. Conflicting memories
    are settled by confidence, corrections fall back down their confidence
    ranking, and every selection is recorded as an audit step.
    """

    def __init__(
        self,
        config: ApplicationConfig | None = None,
        *,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or ApplicationConfig()
        self.audit = AuditLog(
            "MemoryApplicationEngine", id_factory=id_factory, clock=clock
        )

    def get_audit_steps(self) -> list[AuditStep]:
        return self.audit.steps()

    def clear_audit_steps(self) -> None:
        self.audit.clear()

    def apply_memories(
        self, invoice: RawInvoice, memories: Sequence[StoredMemory]
    ) -> ApplicationResult:
        started = time.perf_counter()
        marker = self.audit.mark()

        candidates = [
            m
            for m in memories
            if not m.archived and m.confidence >= self.config.min_application_threshold
        ][: self.config.max_memories_per_invoice]

        vendor_memories: list[VendorMemory] = []
        correction_memories: list[CorrectionMemory] = []
        resolution_memories: list[ResolutionMemory] = []
        for memory in candidates:
            match memory:
                case VendorMemory():
                    vendor_memories.append(memory)
                case CorrectionMemory():
                    correction_memories.append(memory)
                case ResolutionMemory():
                    resolution_memories.append(memory)

        mapping_groups = _group_mappings(vendor_memories)
        correction_groups = _group_corrections(correction_memories)

        conflicts: list[ResolvedConflict] = []
        if self.config.enable_conflict_resolution:
            conflicts = self._resolve_conflicts(invoice, mapping_groups, correction_groups)

        applied: dict[str, AppliedMemory] = {}
        failed: list[FailedMemory] = []
        normalized_fields: list[NormalizedField] = []
        transformations: list[AppliedTransformation] = []
        corrections: list[Correction] = []

        if self.config.enable_field_mappings:
            self._apply_field_mappings(
                invoice, mapping_groups, applied, failed, normalized_fields, transformations
            )
        if self.config.enable_corrections:
            corrections = self._generate_corrections(
                invoice, correction_groups, applied, failed
            )
        for memory in resolution_memories:
            applied[memory.id] = AppliedMemory(
                memory_id=memory.id,
                memory_type=MemoryType.RESOLUTION,
                application_type=ApplicationType.RESOLUTION,
                confidence=memory.confidence,
                reasoning=(
                    f"Resolution precedent for {memory.discrepancy_type.value}: "
                    f"{memory.resolution_outcome.resolution_action.value}"
                ),
            )

        validation_results: list[ValidationResult] = []
        if self.config.enable_validation:
            validation_results = _validate(transformations, corrections)
        valid_corrections = [
            c for c in corrections if c.corrected_value is not None and c.confidence > 0
        ]

        normalized = self._build_normalized_invoice(
            invoice, normalized_fields, transformations, valid_corrections
        )
        applied_memories = list(applied.values())
        confidence = _application_confidence(
            applied_memories,
            failed,
            sum(1 for v in validation_results if not v.valid),
        )

        self.audit.record(
            AuditOperation.MEMORY_APPLICATION,
            f"Applied {len(applied_memories)} memories to invoice {invoice.id}",
            input={
                "invoiceId": invoice.id,
                "vendorId": invoice.vendor_id,
                "memoryCount": len(memories),
                "candidateCount": len(candidates),
            },
            output={
                "appliedMemories": len(applied_memories),
                "failedMemories": len(failed),
                "resolvedConflicts": len(conflicts),
                "normalizedFields": len(normalized_fields),
                "proposedCorrections": len(valid_corrections),
                "validationFailures": sum(1 for v in validation_results if not v.valid),
                "applicationConfidence": confidence,
            },
            started=started,
            prefix="memory-application",
        )

        return ApplicationResult(
            normalized_invoice=normalized,
            proposed_corrections=valid_corrections,
            normalized_fields=normalized_fields,
            applied_memories=applied_memories,
            failed_memories=failed,
            resolved_conflicts=conflicts,
            transformations=transformations,
            validation_results=validation_results,
            application_confidence=confidence,
            audit_steps=self.audit.since(marker),
        )

    def _resolve_conflicts(
        self,
        invoice: RawInvoice,
        mapping_groups: dict[str, list[tuple[VendorMemory, FieldMapping]]],
        correction_groups: dict[str, list[CorrectionMemory]],
    ) -> list[ResolvedConflict]:
        conflicts: list[ResolvedConflict] = []
        contests: list[tuple[ConflictType, str, list[StoredMemory]]] = [
            (ConflictType.FIELD_MAPPING, key, [m for m, _ in group])
            for key, group in mapping_groups.items()
        ]
        contests += [
            (ConflictType.CORRECTION, key, list(group))
            for key, group in correction_groups.items()
        ]

        for conflict_type, key, contenders in contests:
            unique = list({m.id: m for m in contenders}.values())
            if len(unique) < 2:
                continue
            ranked = sorted(unique, key=_rank_key)
            winner = ranked[0]
            conflict = ResolvedConflict(
                conflict_type=conflict_type,
                key=key,
                contender_ids=[m.id for m in unique],
                contender_confidences=[m.confidence for m in unique],
                winner_id=winner.id,
                strategy=HIGHEST_CONFIDENCE,
                reasoning=(
                    f"Selected memory with highest confidence ({winner.confidence:.3f}) "
                    f"for {key} among {len(unique)} candidates"
                ),
            )
            conflicts.append(conflict)
            self.audit.record(
                AuditOperation.MEMORY_APPLICATION,
                f"Resolved {conflict_type.value} for {key}",
                input={
                    "invoiceId": invoice.id,
                    "key": key,
                    "contenders": conflict.contender_ids,
                    "confidences": conflict.contender_confidences,
                },
                output={
                    "selectedMemoryId": winner.id,
                    "strategy": HIGHEST_CONFIDENCE,
                    "reasoning": conflict.reasoning,
                },
                prefix="conflict-resolution",
            )
        return conflicts

    def _apply_field_mappings(
        self,
        invoice: RawInvoice,
        mapping_groups: dict[str, list[tuple[VendorMemory, FieldMapping]]],
        applied: dict[str, AppliedMemory],
        failed: list[FailedMemory],
        normalized_fields: list[NormalizedField],
        transformations: list[AppliedTransformation],
    ) -> None:
        for key, group in mapping_groups.items():
            memory, mapping = sorted(group, key=lambda pair: _rank_key(pair[0]))[0]

            source_value = extract_field_value(invoice, mapping.source_field)
            if source_value is None:
                logger.debug(
                    "Source field %s missing on invoice %s", mapping.source_field, invoice.id
                )
                continue

            try:
                transformed = apply_transformation(
                    source_value,
                    mapping.transformation_rule,
                    default_currency=self.config.default_currency,
                )
            except Exception as exc:
                logger.warning(
                    "Transformation for %s from memory %s failed",
                    key,
                    memory.id,
                    exc_info=True,
                )
                failed.append(
                    FailedMemory(
                        memory_id=memory.id,
                        memory_type=MemoryType.VENDOR,
                        reason=f"Transformation failed for {key}",
                        error=str(exc),
                    )
                )
                continue

            rule_type = (
                mapping.transformation_rule.type
                if mapping.transformation_rule
                else TransformationType.DIRECT
            )
            transformations.append(
                AppliedTransformation(
                    transformation_type=rule_type,
                    source_field=mapping.source_field,
                    target_field=mapping.target_field,
                    original_value=source_value,
                    transformed_value=transformed,
                    confidence=mapping.confidence,
                    memory_id=memory.id,
                )
            )
            if transformed is not None:
                normalized_fields.append(
                    NormalizedField(
                        original_field=mapping.source_field,
                        normalized_field=mapping.target_field,
                        original_value=_plain(source_value),
                        normalized_value=_plain(transformed),
                        memory_id=memory.id,
                        confidence=mapping.confidence,
                    )
                )

            entry = applied.setdefault(
                memory.id,
                AppliedMemory(
                    memory_id=memory.id,
                    memory_type=MemoryType.VENDOR,
                    application_type=ApplicationType.FIELD_MAPPING,
                    confidence=memory.confidence,
                    reasoning=f"Vendor field mappings for {memory.vendor_id}",
                ),
            )
            entry.affected_fields.append(mapping.target_field)

            contenders = {m.id for m, _ in group}
            if len(contenders) > 1:
                self.audit.record(
                    AuditOperation.MEMORY_APPLICATION,
                    f"Selected highest confidence field mapping for {key}",
                    input={
                        "invoiceId": invoice.id,
                        "fieldKey": key,
                        "availableMappings": len(contenders),
                        "selectedMemoryId": memory.id,
                        "selectedConfidence": memory.confidence,
                    },
                    output={
                        "mappingApplied": True,
                        "normalizedValue": _plain(transformed),
                    },
                    prefix="field-mapping-selection",
                )

    def _generate_corrections(
        self,
        invoice: RawInvoice,
        correction_groups: dict[str, list[CorrectionMemory]],
        applied: dict[str, AppliedMemory],
        failed: list[FailedMemory],
    ) -> list[Correction]:
        """One correction per target field, walking down the confidence ranking.

        A memory whose conditions do not hold is passed over silently. A
        memory whose action raises is recorded as failed. Either way the
        next memory in the ranking gets its turn.
        """
        corrections: list[Correction] = []
        for target_field, group in correction_groups.items():
            if len(corrections) >= self.config.max_corrections:
                logger.debug("Correction limit reached for invoice %s", invoice.id)
                break
            ranked = sorted(group, key=_rank_key)
            for position, memory in enumerate(ranked):
                try:
                    if not evaluate_conditions(invoice, memory.trigger_conditions):
                        continue
                    original = extract_field_value(invoice, target_field)
                    corrected = apply_correction_action(original, memory.correction_action)
                except Exception as exc:
                    logger.warning(
                        "Correction from memory %s failed for %s",
                        memory.id,
                        target_field,
                        exc_info=True,
                    )
                    failed.append(
                        FailedMemory(
                            memory_id=memory.id,
                            memory_type=MemoryType.CORRECTION,
                            reason=f"Correction action failed for {target_field}",
                            error=str(exc),
                        )
                    )
                    continue

                correction = Correction(
                    field=target_field,
                    original_value=_plain(original),
                    corrected_value=_plain(corrected),
                    reason=memory.correction_action.explanation
                    or f"Applied correction from memory {memory.id}",
                    confidence=memory.confidence,
                    memory_id=memory.id,
                )
                corrections.append(correction)
                applied[memory.id] = AppliedMemory(
                    memory_id=memory.id,
                    memory_type=MemoryType.CORRECTION,
                    application_type=ApplicationType.CORRECTION,
                    confidence=memory.confidence,
                    affected_fields=[target_field],
                    reasoning=correction.reason,
                )
                self.audit.record(
                    AuditOperation.MEMORY_APPLICATION,
                    f"Selected highest confidence correction for field {target_field}",
                    input={
                        "invoiceId": invoice.id,
                        "targetField": target_field,
                        "availableMemories": len(ranked),
                        "selectedMemoryId": memory.id,
                        "selectedConfidence": memory.confidence,
                        "fallbackPosition": position,
                        "allConfidences": [m.confidence for m in ranked],
                    },
                    output={
                        "correctionGenerated": True,
                        "correctionValue": correction.corrected_value,
                    },
                    prefix="correction-selection",
                )
                break
        return corrections

    def _build_normalized_invoice(
        self,
        invoice: RawInvoice,
        normalized_fields: list[NormalizedField],
        transformations: list[AppliedTransformation],
        corrections: list[Correction],
    ) -> NormalizedInvoice:
        currency = self.config.default_currency
        normalized = NormalizedInvoice(
            id=invoice.id,
            vendor_id=invoice.vendor_id,
            invoice_number=invoice.invoice_number,
            total_amount=Money(amount=Decimal("0"), currency=currency),
            currency=currency,
            line_items=self._line_items(invoice),
            normalized_fields=normalized_fields,
        )

        for t in transformations:
            if t.transformed_value is not None:
                overlay_field(normalized, t.target_field, t.transformed_value)
        for c in corrections:
            overlay_field(normalized, c.field, c.corrected_value)

        if normalized.total_amount.amount == 0 and normalized.line_items:
            total = sum(
                (item.total_price.amount for item in normalized.line_items), Decimal("0")
            )
            normalized.total_amount = Money(
                amount=total, currency=normalized.total_amount.currency
            )
        return normalized

    def _line_items(self, invoice: RawInvoice) -> list[LineItem]:
        currency = self.config.default_currency
        for extracted in invoice.extracted_fields:
            if extracted.name != "lineItems" or not isinstance(extracted.value, list):
                continue
            try:
                items = [LineItem.model_validate(raw) for raw in extracted.value]
            except ValidationError:
                logger.warning(
                    "Unreadable line items on invoice %s", invoice.id, exc_info=True
                )
                break
            if items:
                return items
        return [
            LineItem(
                description=DEFAULT_LINE_ITEM,
                quantity=Decimal("1"),
                unit_price=Money(amount=Decimal("0"), currency=currency),
                total_price=Money(amount=Decimal("0"), currency=currency),
            )
        ]


def _group_mappings(
    memories: list[VendorMemory],
) -> dict[str, list[tuple[VendorMemory, FieldMapping]]]:
    groups: dict[str, list[tuple[VendorMemory, FieldMapping]]] = {}
    for memory in memories:
        for mapping in memory.field_mappings:
            key = f"{mapping.source_field}->{mapping.target_field}"
            groups.setdefault(key, []).append((memory, mapping))
    return groups


def _group_corrections(
    memories: list[CorrectionMemory],
) -> dict[str, list[CorrectionMemory]]:
    groups: dict[str, list[CorrectionMemory]] = {}
    for memory in memories:
        groups.setdefault(memory.correction_action.target_field, []).append(memory)
    return groups


def _validate(
    transformations: list[AppliedTransformation], corrections: list[Correction]
) -> list[ValidationResult]:
    results = [
        ValidationResult(
            field=t.target_field,
            valid=t.transformed_value is not None,
            subject=f"transformation:{t.memory_id}",
            message=None
            if t.transformed_value is not None
            else f"{t.transformation_type.value} produced no value for {t.source_field}",
        )
        for t in transformations
    ]
    for c in corrections:
        valid = c.corrected_value is not None and c.confidence > 0
        results.append(
            ValidationResult(
                field=c.field,
                valid=valid,
                subject=f"correction:{c.memory_id}",
                message=None if valid else f"Correction for {c.field} has no usable value",
            )
        )
    return results


def _application_confidence(
    applied: list[AppliedMemory], failed: list[FailedMemory], validation_failures: int
) -> float:
    if not applied:
        return NEUTRAL_CONFIDENCE
    mean = sum(a.confidence for a in applied) / len(applied)
    score = mean - 0.1 * len(failed) - 0.05 * validation_failures
    return max(0.1, min(1.0, score))


def _plain(value: Any) -> Any:
    """JSON-friendly form of a transformed value."""
    if isinstance(value, Money):
        return value.model_dump(mode="json")
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
