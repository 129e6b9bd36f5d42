"""Tests for invoice_memory.models."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from invoice_memory.models import (
    AuditOperation,
    AuditStep,
    CorrectionMemory,
    Decision,
    DecisionType,
    DiscrepancyType,
    HumanDecision,
    HumanDecisionType,
    MemoryContext,
    MemoryPattern,
    MemoryType,
    Money,
    PatternType,
    ProcessingOutcomeType,
    RawInvoice,
    ResolutionAction,
    ResolutionMemory,
    ResolutionOutcome,
    RiskAssessment,
    RiskLevel,
    VendorMemory,
    memory_adapter,
    memory_vendor_id,
)

if TYPE_CHECKING:
    from collections.abc import Callable

NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=UTC)


class TestMemoryRecord:
    """Tests for shared memory fields and invariants."""

    def test_confidence_above_one_rejected(self) -> None:
        with pytest.raises(ValidationError, match="confidence"):
            VendorMemory(
                id="m1",
                pattern=MemoryPattern(pattern_type=PatternType.FIELD_MAPPING),
                confidence=1.2,
                created_at=NOW,
                last_used=NOW,
                vendor_id="acme",
            )

    def test_assignment_is_validated(
        self, make_vendor_memory: Callable[..., VendorMemory]
    ) -> None:
        memory = make_vendor_memory("m1", 0.5, [])

        with pytest.raises(ValidationError):
            memory.success_rate = -0.1

        assert memory.success_rate == 0.0

    def test_defaults(self, make_vendor_memory: Callable[..., VendorMemory]) -> None:
        memory = make_vendor_memory("m1", 0.5, [])

        assert memory.kind is MemoryType.VENDOR
        assert memory.usage_count == 0
        assert memory.archived is False
        assert memory.version == 0


class TestMemoryUnion:
    """Tests for the tagged Memory union."""

    def test_json_round_trip_keeps_variant(
        self, make_correction_memory: Callable[..., CorrectionMemory]
    ) -> None:
        memory = make_correction_memory("c1", 0.7)

        restored = memory_adapter.validate_json(memory.model_dump_json())

        assert isinstance(restored, CorrectionMemory)
        assert restored == memory

    def test_discriminates_resolution(self) -> None:
        memory = ResolutionMemory(
            id="r1",
            pattern=MemoryPattern(pattern_type=PatternType.CONTEXTUAL),
            confidence=0.7,
            created_at=NOW,
            last_used=NOW,
            context=MemoryContext(vendor_id="acme"),
            discrepancy_type=DiscrepancyType.PRICE_DISCREPANCY,
            resolution_outcome=ResolutionOutcome(
                resolved=True, resolution_action=ResolutionAction.APPROVE_AS_IS
            ),
            human_decision=HumanDecision(
                decision_type=HumanDecisionType.APPROVE, timestamp=NOW, user_id="u1"
            ),
        )

        restored = memory_adapter.validate_python(memory.model_dump(mode="json"))

        assert isinstance(restored, ResolutionMemory)
        assert restored.kind is MemoryType.RESOLUTION

    def test_vendor_id_lookup(
        self,
        make_vendor_memory: Callable[..., VendorMemory],
        make_correction_memory: Callable[..., CorrectionMemory],
    ) -> None:
        assert memory_vendor_id(make_vendor_memory("v1", 0.5, [], vendor_id="acme")) == "acme"
        assert (
            memory_vendor_id(make_correction_memory("c1", 0.5, vendor_id="globex"))
            == "globex"
        )


class TestInvoiceModels:
    """Tests for invoice input and output models."""

    def test_raw_invoice_is_frozen(self, sample_invoice: RawInvoice) -> None:
        with pytest.raises(ValidationError):
            sample_invoice.vendor_id = "other"  # type: ignore[misc]

    def test_money_requires_iso_code(self) -> None:
        with pytest.raises(ValidationError, match="currency"):
            Money(amount=Decimal("10"), currency="euro")

    def test_money_defaults(self) -> None:
        money = Money()
        assert money.amount == Decimal("0")
        assert money.currency == "EUR"


class TestDecision:
    """Tests for Decision helpers."""

    def test_only_auto_approve_skips_review(self) -> None:
        risk = RiskAssessment(risk_level=RiskLevel.LOW)
        for decision_type in DecisionType:
            decision = Decision(
                decision_type=decision_type,
                confidence=0.9,
                reasoning="r",
                risk_assessment=risk,
            )
            expected = decision_type is not DecisionType.AUTO_APPROVE
            assert decision.requires_human_review is expected

    def test_risk_level_rank_is_ordinal(self) -> None:
        ranks = [level.rank for level in RiskLevel]
        assert ranks == sorted(ranks)
        assert RiskLevel.VERY_LOW.rank == 0
        assert RiskLevel.VERY_HIGH.rank == 4


class TestAuditStep:
    """Tests for the AuditStep record contract."""

    def test_round_trip(self) -> None:
        step = AuditStep(
            id="s1",
            timestamp=NOW,
            operation=AuditOperation.DECISION_MAKING,
            description="decided",
            input={"invoiceId": "INV-1", "nested": {"a": [1, 2]}},
            output={"decisionType": "auto_approve"},
            actor="DecisionEngine",
            duration=1.5,
        )

        restored = AuditStep.model_validate_json(step.model_dump_json())

        assert restored == step

    def test_negative_duration_rejected(self) -> None:
        with pytest.raises(ValidationError, match="duration"):
            AuditStep(
                id="s1",
                timestamp=NOW,
                operation=AuditOperation.VALIDATION,
                description="x",
                actor="a",
                duration=-1,
            )

    def test_unknown_operation_rejected(self) -> None:
        with pytest.raises(ValidationError, match="operation"):
            AuditStep(
                id="s1",
                timestamp=NOW,
                operation="teleport",  # type: ignore[arg-type]
                description="x",
                actor="a",
            )


class TestProcessingOutcomeType:
    """Tests for outcome classification."""

    def test_success_types(self) -> None:
        successes = {t for t in ProcessingOutcomeType if t.is_success}
        assert successes == {
            ProcessingOutcomeType.SUCCESS_AUTO,
            ProcessingOutcomeType.SUCCESS_HUMAN_REVIEW,
        }
