"""Domain models for invoices, memories, decisions and audit records."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# Enums


class MemoryType(str, Enum):
    VENDOR = "vendor"
    CORRECTION = "correction"
    RESOLUTION = "resolution"


class PatternType(str, Enum):
    REGEX = "regex"
    KEYWORD = "keyword"
    FIELD_MAPPING = "field_mapping"
    STRUCTURAL = "structural"
    CONTEXTUAL = "contextual"


class TransformationType(str, Enum):
    DIRECT = "direct"
    DATE_PARSE = "date_parse"
    CURRENCY_EXTRACT = "currency_extract"
    TEXT_NORMALIZE = "text_normalize"
    REGEX_EXTRACT = "regex_extract"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    MATCHES_REGEX = "matches_regex"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class CorrectionActionType(str, Enum):
    SET_VALUE = "set_value"
    MULTIPLY_BY = "multiply_by"
    ADD_VALUE = "add_value"
    REPLACE_TEXT = "replace_text"


class CorrectionType(str, Enum):
    QUANTITY = "quantity_correction"
    PRICE = "price_correction"
    DATE = "date_correction"
    CURRENCY = "currency_correction"
    VAT = "vat_correction"
    FIELD_MAPPING = "field_mapping_correction"


class DiscrepancyType(str, Enum):
    QUANTITY_MISMATCH = "quantity_mismatch"
    PRICE_DISCREPANCY = "price_discrepancy"
    DATE_INCONSISTENCY = "date_inconsistency"
    CURRENCY_MISMATCH = "currency_mismatch"
    VAT_CALCULATION_ERROR = "vat_calculation_error"
    MISSING_FIELD = "missing_field"
    DUPLICATE_INVOICE = "duplicate_invoice"


class ResolutionAction(str, Enum):
    APPROVE_AS_IS = "approve_as_is"
    APPLY_CORRECTION = "apply_correction"
    ESCALATE_TO_HUMAN = "escalate_to_human"
    REJECT_INVOICE = "reject_invoice"
    REQUEST_CLARIFICATION = "request_clarification"


class HumanDecisionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"
    ESCALATE = "escalate"
    DEFER = "defer"


class QualityLevel(str, Enum):
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


class ComplexityLevel(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class DecisionType(str, Enum):
    AUTO_APPROVE = "auto_approve"
    HUMAN_REVIEW_REQUIRED = "human_review_required"
    ESCALATE_TO_EXPERT = "escalate_to_expert"
    REJECT_INVOICE = "reject_invoice"
    REQUEST_ADDITIONAL_INFO = "request_additional_info"


class RiskLevel(str, Enum):
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def rank(self) -> int:
        """Ordinal position, very_low = 0."""
        return list(RiskLevel).index(self)


class RiskType(str, Enum):
    FINANCIAL = "financial"
    COMPLIANCE = "compliance"
    OPERATIONAL = "operational"
    REPUTATIONAL = "reputational"
    TECHNICAL = "technical"


class ActionType(str, Enum):
    APPLY_CORRECTION = "apply_correction"
    VALIDATE_FIELD = "validate_field"
    CONTACT_VENDOR = "contact_vendor"
    ESCALATE_ISSUE = "escalate_issue"
    UPDATE_MEMORY = "update_memory"


class ActionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProcessingOutcomeType(str, Enum):
    SUCCESS_AUTO = "success_auto"
    SUCCESS_HUMAN_REVIEW = "success_human_review"
    FAILED_VALIDATION = "failed_validation"
    ESCALATED = "escalated"
    REJECTED = "rejected"

    @property
    def is_success(self) -> bool:
        return self in (
            ProcessingOutcomeType.SUCCESS_AUTO,
            ProcessingOutcomeType.SUCCESS_HUMAN_REVIEW,
        )


class FeedbackType(str, Enum):
    APPROVAL = "approval"
    CORRECTION = "correction"
    REJECTION = "rejection"
    IMPROVEMENT_SUGGESTION = "improvement_suggestion"


class MemoryUpdateType(str, Enum):
    CONFIDENCE_INCREASE = "confidence_increase"
    CONFIDENCE_DECREASE = "confidence_decrease"
    USAGE_COUNT_INCREMENT = "usage_count_increment"
    SUCCESS_RATE_UPDATE = "success_rate_update"
    PATTERN_REFINEMENT = "pattern_refinement"
    ARCHIVED = "archived"


class AuditOperation(str, Enum):
    MEMORY_RECALL = "memory_recall"
    MEMORY_APPLICATION = "memory_application"
    DECISION_MAKING = "decision_making"
    MEMORY_LEARNING = "memory_learning"
    CONFIDENCE_CALCULATION = "confidence_calculation"
    FIELD_NORMALIZATION = "field_normalization"
    VALIDATION = "validation"
    ERROR_HANDLING = "error_handling"


# Memory building blocks


class MemoryPattern(BaseModel):
    """How and when a memory matches."""

    pattern_type: PatternType
    pattern_data: dict[str, Any] = Field(default_factory=dict)
    threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class InvoiceCharacteristics(BaseModel):
    complexity: ComplexityLevel = ComplexityLevel.MODERATE
    language: str = "en"
    document_format: str = "unknown"
    extraction_quality: QualityLevel = QualityLevel.GOOD


class MemoryContext(BaseModel):
    """Where a memory came from and where it should apply."""

    vendor_id: str | None = None
    invoice_characteristics: InvoiceCharacteristics = Field(
        default_factory=InvoiceCharacteristics
    )
    history: dict[str, Any] = Field(default_factory=dict)


class TransformationRule(BaseModel):
    type: TransformationType = TransformationType.DIRECT
    parameters: dict[str, Any] = Field(default_factory=dict)


class MappingExample(BaseModel):
    source_value: str
    target_value: str
    context: str = ""


class FieldMapping(BaseModel):
    """Maps a vendor-specific field name onto a normalized field."""

    source_field: str = Field(min_length=1)
    target_field: str = Field(min_length=1)
    transformation_rule: TransformationRule | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    examples: list[MappingExample] = Field(default_factory=list)


class VATBehavior(BaseModel):
    vat_included_in_prices: bool = False
    default_vat_rate: float | None = None
    vat_inclusion_indicators: list[str] = Field(default_factory=list)
    vat_exclusion_indicators: list[str] = Field(default_factory=list)


class CurrencyPattern(BaseModel):
    pattern: str
    currency_code: str = Field(pattern=r"^[A-Z]{3}$")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    context: str = ""


class DateFormat(BaseModel):
    format: str
    pattern: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    examples: list[str] = Field(default_factory=list)


class Condition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None


class CorrectionAction(BaseModel):
    action_type: CorrectionActionType
    target_field: str = Field(min_length=1)
    new_value: Any = None
    explanation: str | None = None


class ValidationRule(BaseModel):
    validation_type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    error_message: str = ""


class ResolutionOutcome(BaseModel):
    resolved: bool
    resolution_action: ResolutionAction
    final_value: Any = None
    explanation: str = ""


class HumanDecision(BaseModel):
    decision_type: HumanDecisionType
    timestamp: datetime
    user_id: str
    reasoning: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ContextFactor(BaseModel):
    factor_type: str
    value: Any = None
    weight: float = 1.0


# Memories


class MemoryRecord(BaseModel):
    """Fields shared by every memory variant.

    Assignment is validated so confidence and success rate can never leave
    [0, 1], no matter which code path mutates them.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(min_length=1)
    pattern: MemoryPattern
    confidence: float = Field(ge=0.0, le=1.0)
    created_at: datetime
    last_used: datetime
    usage_count: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    context: MemoryContext = Field(default_factory=MemoryContext)
    archived: bool = False
    version: int = Field(default=0, ge=0)


class VendorMemory(MemoryRecord):
    kind: Literal[MemoryType.VENDOR] = MemoryType.VENDOR
    vendor_id: str = Field(min_length=1)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    vat_behavior: VATBehavior = Field(default_factory=VATBehavior)
    currency_patterns: list[CurrencyPattern] = Field(default_factory=list)
    date_formats: list[DateFormat] = Field(default_factory=list)


class CorrectionMemory(MemoryRecord):
    kind: Literal[MemoryType.CORRECTION] = MemoryType.CORRECTION
    correction_type: CorrectionType = CorrectionType.FIELD_MAPPING
    trigger_conditions: list[Condition] = Field(default_factory=list)
    correction_action: CorrectionAction
    validation_rules: list[ValidationRule] = Field(default_factory=list)


class ResolutionMemory(MemoryRecord):
    kind: Literal[MemoryType.RESOLUTION] = MemoryType.RESOLUTION
    discrepancy_type: DiscrepancyType
    resolution_outcome: ResolutionOutcome
    human_decision: HumanDecision
    context_factors: list[ContextFactor] = Field(default_factory=list)


Memory = Annotated[
    VendorMemory | CorrectionMemory | ResolutionMemory,
    Field(discriminator="kind"),
]

memory_adapter: TypeAdapter[VendorMemory | CorrectionMemory | ResolutionMemory] = (
    TypeAdapter(Memory)
)


def memory_vendor_id(memory: MemoryRecord) -> str | None:
    """Return the vendor a memory belongs to, if any."""
    match memory:
        case VendorMemory(vendor_id=vendor_id):
            return vendor_id
        case _:
            return memory.context.vendor_id


# Invoices


class Money(BaseModel):
    amount: Decimal = Decimal("0")
    currency: str = Field(default="EUR", pattern=r"^[A-Z]{3}$")


class LineItem(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Money = Field(default_factory=Money)
    total_price: Money = Field(default_factory=Money)
    sku: str | None = None
    vat_rate: float | None = None


class ExtractedField(BaseModel):
    name: str
    value: Any = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class InvoiceMetadata(BaseModel):
    source_system: str = "unknown"
    received_at: datetime | None = None
    file_format: str = "unknown"
    detected_language: str = "en"
    extraction_quality: QualityLevel = QualityLevel.GOOD
    additional: dict[str, Any] = Field(default_factory=dict)


class RawInvoice(BaseModel):
    """Invoice as delivered by upstream extraction. Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    vendor_id: str
    invoice_number: str
    raw_text: str = ""
    extracted_fields: list[ExtractedField] = Field(default_factory=list)
    metadata: InvoiceMetadata = Field(default_factory=InvoiceMetadata)


class NormalizedField(BaseModel):
    """Provenance of one normalized value."""

    original_field: str
    normalized_field: str
    original_value: Any = None
    normalized_value: Any = None
    memory_id: str
    confidence: float = Field(ge=0.0, le=1.0)


class NormalizedInvoice(BaseModel):
    id: str
    vendor_id: str
    invoice_number: str
    invoice_date: date | None = None
    service_date: date | None = None
    due_date: date | None = None
    total_amount: Money = Field(default_factory=Money)
    vat_amount: Money | None = None
    currency: str = "EUR"
    purchase_order_number: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    normalized_fields: list[NormalizedField] = Field(default_factory=list)


class Correction(BaseModel):
    field: str
    original_value: Any = None
    corrected_value: Any = None
    reason: str = ""
    confidence: float = 0.0
    memory_id: str | None = None


# Decisions


class RiskFactor(BaseModel):
    risk_type: RiskType
    severity: float = Field(ge=0.0, le=1.0)
    description: str


class RiskAssessment(BaseModel):
    risk_level: RiskLevel
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    mitigations: list[str] = Field(default_factory=list)
    assessable: bool = True


class RecommendedAction(BaseModel):
    action_type: ActionType
    priority: ActionPriority
    description: str
    expected_outcome: str


class Decision(BaseModel):
    decision_type: DecisionType
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    recommended_actions: list[RecommendedAction] = Field(default_factory=list)
    risk_assessment: RiskAssessment

    @property
    def requires_human_review(self) -> bool:
        return self.decision_type is not DecisionType.AUTO_APPROVE


# Audit, updates and results


class AuditStep(BaseModel):
    """One traceable engine operation."""

    id: str = Field(min_length=1)
    timestamp: datetime
    operation: AuditOperation
    description: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    actor: str
    duration: float = Field(default=0.0, ge=0.0)


class MemoryUpdate(BaseModel):
    memory_id: str
    update_type: MemoryUpdateType
    previous_state: dict[str, Any] = Field(default_factory=dict)
    new_state: dict[str, Any] = Field(default_factory=dict)
    reason: str
    timestamp: datetime


class ProcessingResult(BaseModel):
    """Everything downstream systems receive for one processed invoice."""

    normalized_invoice: NormalizedInvoice
    proposed_corrections: list[Correction] = Field(default_factory=list)
    requires_human_review: bool
    reasoning: str
    confidence_score: float = Field(ge=0.0, le=1.0)
    memory_updates: list[MemoryUpdate] = Field(default_factory=list)
    audit_trail: list[AuditStep] = Field(default_factory=list)
    decision: Decision | None = None
    applied_memory_ids: list[str] = Field(default_factory=list)


class HumanFeedback(BaseModel):
    user_id: str
    timestamp: datetime
    feedback_type: FeedbackType
    corrections: list[Correction] = Field(default_factory=list)
    satisfaction_rating: float = Field(default=5.0, ge=0.0, le=5.0)
    comments: str | None = None


class ProcessingOutcome(BaseModel):
    result: ProcessingResult
    outcome_type: ProcessingOutcomeType
    human_feedback: HumanFeedback | None = None
    applied_memory_ids: list[str] = Field(default_factory=list)
