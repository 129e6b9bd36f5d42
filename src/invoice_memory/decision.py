"""Confidence and risk driven routing of processed invoices."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from invoice_memory.audit import AuditLog
from invoice_memory.config import DecisionConfig
from invoice_memory.models import (
    ActionPriority,
    ActionType,
    AuditOperation,
    Decision,
    DecisionType,
    RecommendedAction,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    RiskType,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from invoice_memory.models import AuditStep, NormalizedInvoice
    from invoice_memory.store import StoredMemory

logger = logging.getLogger(__name__)


class IssueSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ValidationIssue:
    severity: IssueSeverity
    issue_type: str
    affected_field: str
    description: str


@dataclass
class DecisionContext:
    invoice: NormalizedInvoice
    confidence: float
    applied_memories: list[StoredMemory] = field(default_factory=list)
    validation_issues: list[ValidationIssue] = field(default_factory=list)


_MITIGATIONS: dict[RiskType, tuple[str, str]] = {
    RiskType.FINANCIAL: (
        "Implement additional approval workflow for high-value invoices",
        "Require secondary validation for amounts above threshold",
    ),
    RiskType.OPERATIONAL: (
        "Increase confidence threshold for unfamiliar patterns",
        "Implement gradual learning approach for new vendors",
    ),
    RiskType.COMPLIANCE: (
        "Ensure all validation rules are properly applied",
        "Maintain detailed audit trail for compliance review",
    ),
    RiskType.TECHNICAL: (
        "Review and update low-confidence memory patterns",
        "Implement memory quality monitoring and cleanup",
    ),
    RiskType.REPUTATIONAL: (
        "Implement conservative processing for sensitive vendors",
        "Ensure proper escalation for relationship-critical invoices",
    ),
}

_RISK_CONFIDENCE_FACTOR = {
    RiskLevel.VERY_LOW: 1.1,
    RiskLevel.LOW: 1.05,
    RiskLevel.MEDIUM: 1.0,
    RiskLevel.HIGH: 0.9,
    RiskLevel.VERY_HIGH: 0.8,
}

_SERIOUS = (IssueSeverity.ERROR, IssueSeverity.CRITICAL)


def risk_level_for(severity: float) -> RiskLevel:
    if severity >= 0.8:
        return RiskLevel.VERY_HIGH
    if severity >= 0.6:
        return RiskLevel.HIGH
    if severity >= 0.4:
        return RiskLevel.MEDIUM
    if severity >= 0.2:
        return RiskLevel.LOW
    return RiskLevel.VERY_LOW


class DecisionEngine:
    """Maps processing confidence and assessed risk to one terminal decision.

    Rules are checked in priority order and the first match wins:

    1. a critical validation issue rejects the invoice
    2. confidence below the rejection floor rejects the invoice
    3. very high aggregate risk, or two or more high-severity factors,
       escalates to an expert
    4. confidence below the escalation threshold requires human review
    5. sufficient confidence with risk within tolerance auto-approves
    6. risk that could not be assessed requests additional information

    Anything left over goes to human review.
    """

    def __init__(
        self,
        config: DecisionConfig | None = None,
        *,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or DecisionConfig()
        self.audit = AuditLog("DecisionEngine", id_factory=id_factory, clock=clock)

    def get_audit_steps(self) -> list[AuditStep]:
        return self.audit.steps()

    def clear_audit_steps(self) -> None:
        self.audit.clear()

    def evaluate(self, context: DecisionContext) -> Decision:
        started = time.perf_counter()
        risk = self.assess_risk(context)
        decision_type = self._decide(context, risk)
        decision = Decision(
            decision_type=decision_type,
            confidence=self._decision_confidence(context, risk),
            reasoning=self._reasoning(context, decision_type, risk),
            recommended_actions=self.generate_recommended_actions(context, decision_type),
            risk_assessment=risk,
        )

        amount = context.invoice.total_amount
        self.audit.record(
            AuditOperation.DECISION_MAKING,
            f"Decision {decision_type.value} for invoice {context.invoice.id}",
            input={
                "invoiceId": context.invoice.id,
                "confidence": context.confidence,
                "amount": str(amount.amount),
                "currency": amount.currency,
                "validationIssues": len(context.validation_issues),
                "appliedMemories": len(context.applied_memories),
            },
            output={
                "decisionType": decision_type.value,
                "requiresHumanReview": decision.requires_human_review,
                "riskLevel": risk.risk_level.value,
                "riskAssessable": risk.assessable,
                "decisionConfidence": decision.confidence,
            },
            started=started,
            prefix="decision",
        )
        logger.debug(
            "Invoice %s: %s (confidence %.3f, risk %s)",
            context.invoice.id,
            decision_type.value,
            context.confidence,
            risk.risk_level.value,
        )
        return decision

    def assess_risk(self, context: DecisionContext) -> RiskAssessment:
        factors: list[RiskFactor] = []
        amount = float(context.invoice.total_amount.amount)
        threshold = self.config.high_value_invoice_threshold

        if amount > threshold:
            factors.append(
                RiskFactor(
                    risk_type=RiskType.FINANCIAL,
                    severity=min(1.0, amount / (threshold * 2)),
                    description=(
                        f"High-value invoice: {context.invoice.total_amount.amount} "
                        f"{context.invoice.total_amount.currency}"
                    ),
                )
            )

        if context.confidence < 0.5:
            factors.append(
                RiskFactor(
                    risk_type=RiskType.OPERATIONAL,
                    severity=min(1.0, (0.5 - context.confidence) * 2),
                    description=f"Low processing confidence: {context.confidence:.1%}",
                )
            )

        if context.invoice.vendor_id and not context.applied_memories:
            factors.append(
                RiskFactor(
                    risk_type=RiskType.OPERATIONAL,
                    severity=0.4,
                    description="New or unfamiliar vendor with limited memory history",
                )
            )

        serious = [i for i in context.validation_issues if i.severity in _SERIOUS]
        if serious:
            factors.append(
                RiskFactor(
                    risk_type=RiskType.COMPLIANCE,
                    severity=min(1.0, len(serious) * 0.4),
                    description=f"{len(serious)} serious validation issues detected",
                )
            )

        weak = [m for m in context.applied_memories if m.confidence < 0.6]
        if weak:
            factors.append(
                RiskFactor(
                    risk_type=RiskType.TECHNICAL,
                    severity=len(weak) / len(context.applied_memories),
                    description=f"{len(weak)} low-confidence memories applied",
                )
            )

        if factors:
            severities = [f.severity for f in factors]
            effective = max(max(severities), sum(severities) / len(severities))
        else:
            effective = 0.0

        mitigations: list[str] = []
        for factor in factors:
            for strategy in _MITIGATIONS[factor.risk_type]:
                if strategy not in mitigations:
                    mitigations.append(strategy)

        return RiskAssessment(
            risk_level=risk_level_for(effective),
            risk_factors=factors,
            mitigations=mitigations,
            # No positive amount means there is no exposure to measure.
            assessable=amount > 0,
        )

    def generate_recommended_actions(
        self, context: DecisionContext, decision_type: DecisionType
    ) -> list[RecommendedAction]:
        actions: list[RecommendedAction] = []
        match decision_type:
            case DecisionType.AUTO_APPROVE:
                actions.append(
                    RecommendedAction(
                        action_type=ActionType.APPLY_CORRECTION,
                        priority=ActionPriority.HIGH,
                        description="Apply all memory-based corrections and process automatically",
                        expected_outcome="Invoice processed without human intervention",
                    )
                )
            case DecisionType.HUMAN_REVIEW_REQUIRED:
                actions.append(
                    RecommendedAction(
                        action_type=ActionType.ESCALATE_ISSUE,
                        priority=ActionPriority.MEDIUM,
                        description="Escalate to human reviewer for validation",
                        expected_outcome="Human validation of memory applications and corrections",
                    )
                )
                actions.extend(
                    RecommendedAction(
                        action_type=ActionType.VALIDATE_FIELD,
                        priority=ActionPriority.HIGH,
                        description=f"Validate {issue.affected_field}: {issue.description}",
                        expected_outcome="Field validation and correction",
                    )
                    for issue in context.validation_issues
                    if issue.severity in _SERIOUS
                )
            case DecisionType.ESCALATE_TO_EXPERT:
                actions.append(
                    RecommendedAction(
                        action_type=ActionType.ESCALATE_ISSUE,
                        priority=ActionPriority.CRITICAL,
                        description="Escalate to domain expert for complex decision",
                        expected_outcome="Expert review and guidance on processing approach",
                    )
                )
            case DecisionType.REJECT_INVOICE:
                actions.append(
                    RecommendedAction(
                        action_type=ActionType.ESCALATE_ISSUE,
                        priority=ActionPriority.CRITICAL,
                        description="Reject invoice due to critical issues or very low confidence",
                        expected_outcome="Invoice rejected and returned to sender for correction",
                    )
                )
            case DecisionType.REQUEST_ADDITIONAL_INFO:
                actions.append(
                    RecommendedAction(
                        action_type=ActionType.CONTACT_VENDOR,
                        priority=ActionPriority.MEDIUM,
                        description="Request additional information from vendor",
                        expected_outcome="Clarification received to enable proper processing",
                    )
                )

        weak = [m for m in context.applied_memories if m.confidence < 0.5]
        if weak:
            actions.append(
                RecommendedAction(
                    action_type=ActionType.UPDATE_MEMORY,
                    priority=ActionPriority.LOW,
                    description=f"Review and potentially update {len(weak)} low-confidence memories",
                    expected_outcome="Improved memory reliability for future processing",
                )
            )
        return actions

    def _decide(self, context: DecisionContext, risk: RiskAssessment) -> DecisionType:
        cfg = self.config
        if any(i.severity is IssueSeverity.CRITICAL for i in context.validation_issues):
            return DecisionType.REJECT_INVOICE
        if context.confidence < cfg.rejection_threshold:
            return DecisionType.REJECT_INVOICE

        high_severity = [
            f for f in risk.risk_factors if f.severity >= cfg.high_severity_threshold
        ]
        if risk.risk_level is RiskLevel.VERY_HIGH or len(high_severity) >= 2:
            return DecisionType.ESCALATE_TO_EXPERT
        if context.confidence < cfg.escalation_threshold:
            return DecisionType.HUMAN_REVIEW_REQUIRED
        if risk.assessable and risk.risk_level.rank <= cfg.risk_tolerance.rank:
            return DecisionType.AUTO_APPROVE
        if not risk.assessable:
            return DecisionType.REQUEST_ADDITIONAL_INFO
        return DecisionType.HUMAN_REVIEW_REQUIRED

    @staticmethod
    def _decision_confidence(context: DecisionContext, risk: RiskAssessment) -> float:
        confidence = context.confidence * _RISK_CONFIDENCE_FACTOR[risk.risk_level]
        errors = sum(1 for i in context.validation_issues if i.severity in _SERIOUS)
        if errors:
            confidence *= max(0.5, 1 - errors * 0.1)
        return max(0.0, min(1.0, confidence))

    def _reasoning(
        self,
        context: DecisionContext,
        decision_type: DecisionType,
        risk: RiskAssessment,
    ) -> str:
        reasons = [
            f"Processing confidence {context.confidence:.1%} against escalation "
            f"threshold {self.config.escalation_threshold:.1%}",
            f"Risk level {risk.risk_level.value} from {len(risk.risk_factors)} factors",
        ]
        if not risk.assessable:
            reasons.append("No positive total amount, so financial risk could not be assessed")
        if context.validation_issues:
            reasons.append(f"{len(context.validation_issues)} validation issues")
        return f"Decision: {decision_type.value}. {'. '.join(reasons)}."
