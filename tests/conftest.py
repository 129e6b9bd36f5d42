"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from invoice_memory.audit import SequentialIds
from invoice_memory.models import (
    Condition,
    ConditionOperator,
    Correction,
    CorrectionAction,
    CorrectionActionType,
    CorrectionMemory,
    ExtractedField,
    FeedbackType,
    FieldMapping,
    HumanFeedback,
    MemoryContext,
    MemoryPattern,
    NormalizedInvoice,
    PatternType,
    ProcessingOutcome,
    ProcessingOutcomeType,
    ProcessingResult,
    RawInvoice,
    TransformationRule,
    TransformationType,
    VendorMemory,
)

if TYPE_CHECKING:
    from collections.abc import Callable

BASE_TIME = datetime(2024, 3, 1, 9, 0, 0, tzinfo=UTC)


class TickingClock:
    """Clock that advances one millisecond per reading."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.current = start

    def __call__(self) -> datetime:
        now = self.current
        self.current += timedelta(milliseconds=1)
        return now


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def sample_invoice() -> RawInvoice:
    """German supplier invoice with a Leistungsdatum and a total."""
    return RawInvoice(
        id="INV-001",
        vendor_id="supplier-gmbh",
        invoice_number="R-2024-001",
        raw_text="Rechnung R-2024-001\nLeistungsdatum: 15.01.2024\nTotal: 1.190,00 EUR",
        extracted_fields=[
            ExtractedField(name="Leistungsdatum", value="15.01.2024", confidence=0.9),
            ExtractedField(name="Gesamtbetrag", value="1.190,00 EUR", confidence=0.85),
        ],
    )


def _vendor_memory(
    memory_id: str,
    confidence: float,
    mappings: list[FieldMapping],
    vendor_id: str = "supplier-gmbh",
) -> VendorMemory:
    return VendorMemory(
        id=memory_id,
        pattern=MemoryPattern(pattern_type=PatternType.FIELD_MAPPING),
        confidence=confidence,
        created_at=BASE_TIME,
        last_used=BASE_TIME,
        context=MemoryContext(vendor_id=vendor_id),
        vendor_id=vendor_id,
        field_mappings=mappings,
    )


@pytest.fixture
def make_vendor_memory() -> Callable[..., VendorMemory]:
    return _vendor_memory


@pytest.fixture
def make_date_mapping_memory() -> Callable[[str, float], VendorMemory]:
    """Vendor memory mapping Leistungsdatum onto serviceDate."""

    def factory(memory_id: str, confidence: float) -> VendorMemory:
        return _vendor_memory(
            memory_id,
            confidence,
            [
                FieldMapping(
                    source_field="Leistungsdatum",
                    target_field="serviceDate",
                    transformation_rule=TransformationRule(
                        type=TransformationType.DATE_PARSE
                    ),
                    confidence=confidence,
                )
            ],
        )

    return factory


@pytest.fixture
def make_correction_memory() -> Callable[..., CorrectionMemory]:
    def factory(
        memory_id: str,
        confidence: float,
        *,
        target_field: str = "currency",
        new_value: Any = "EUR",
        action_type: CorrectionActionType = CorrectionActionType.SET_VALUE,
        conditions: list[Condition] | None = None,
        vendor_id: str = "supplier-gmbh",
    ) -> CorrectionMemory:
        if conditions is None:
            conditions = [
                Condition(
                    field=target_field,
                    operator=ConditionOperator.NOT_EQUALS,
                    value=new_value,
                )
            ]
        return CorrectionMemory(
            id=memory_id,
            pattern=MemoryPattern(pattern_type=PatternType.FIELD_MAPPING),
            confidence=confidence,
            created_at=BASE_TIME,
            last_used=BASE_TIME,
            context=MemoryContext(vendor_id=vendor_id),
            trigger_conditions=conditions,
            correction_action=CorrectionAction(
                action_type=action_type,
                target_field=target_field,
                new_value=new_value,
            ),
        )

    return factory


@pytest.fixture
def make_outcome() -> Callable[..., ProcessingOutcome]:
    """Processing outcome for invoice INV-001 of supplier-gmbh."""

    def factory(
        outcome_type: ProcessingOutcomeType = ProcessingOutcomeType.SUCCESS_AUTO,
        *,
        applied: list[str] | None = None,
        corrections: list[Correction] | None = None,
        satisfaction: float | None = None,
        vendor_id: str = "supplier-gmbh",
    ) -> ProcessingOutcome:
        feedback = None
        if corrections is not None or satisfaction is not None:
            feedback = HumanFeedback(
                user_id="reviewer",
                timestamp=BASE_TIME,
                feedback_type=FeedbackType.CORRECTION
                if corrections
                else FeedbackType.APPROVAL,
                corrections=corrections or [],
                satisfaction_rating=5.0 if satisfaction is None else satisfaction,
            )
        result = ProcessingResult(
            normalized_invoice=NormalizedInvoice(
                id="INV-001", vendor_id=vendor_id, invoice_number="R-2024-001"
            ),
            requires_human_review=outcome_type is not ProcessingOutcomeType.SUCCESS_AUTO,
            reasoning="test",
            confidence_score=0.8,
            applied_memory_ids=applied or [],
        )
        return ProcessingOutcome(
            result=result,
            outcome_type=outcome_type,
            human_feedback=feedback,
            applied_memory_ids=applied or [],
        )

    return factory
