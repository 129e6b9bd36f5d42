"""Learns how one vendor lays out its invoices.

Field mappings come from German field labels and from human corrections
whose value can be traced back to another extracted field. VAT behaviour,
currency patterns and date formats are read from the vendor's recent raw
text. Everything found is merged into a single VendorMemory per vendor.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from slugify import slugify

from invoice_memory.audit import AuditLog, utc_now, uuid_ids
from invoice_memory.config import StoreConfig, VendorPatternConfig
from invoice_memory.confidence import ConfidenceManager
from invoice_memory.models import (
    AuditOperation,
    CurrencyPattern,
    DateFormat,
    FieldMapping,
    MappingExample,
    MemoryContext,
    MemoryPattern,
    PatternType,
    TransformationRule,
    TransformationType,
    VATBehavior,
    VendorMemory,
)
from invoice_memory.store import update_memory_with_retry
from invoice_memory.transforms import extract_money, parse_date

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence
    from datetime import datetime
    from typing import Any

    from invoice_memory.models import AuditStep, Correction, ExtractedField, RawInvoice
    from invoice_memory.store import MemoryStore, StoredMemory

logger = logging.getLogger(__name__)

GERMAN_FIELD_MAPPINGS: dict[str, str] = {
    "Leistungsdatum": "serviceDate",
    "Rechnungsdatum": "invoiceDate",
    "Fälligkeitsdatum": "dueDate",
    "Rechnungsnummer": "invoiceNumber",
    "Bestellnummer": "purchaseOrderNumber",
    "Gesamtbetrag": "totalAmount",
    "MwSt": "vatAmount",
}

VAT_INCLUSION_INDICATORS = (
    "mwst. inkl.",
    "inkl. mwst",
    "inkl. 19% mwst",
    "prices incl. vat",
    "preise inkl. mwst",
    "brutto",
)

VAT_EXCLUSION_INDICATORS = (
    "mwst. excl.",
    "excl. mwst",
    "prices excl. vat",
    "preise excl. mwst",
    "netto",
    "zzgl. mwst",
)

CURRENCY_PATTERNS: tuple[tuple[str, str, str], ...] = (
    (r"\d+[.,]\d{2}\s*€", "EUR", "Euro symbol after amount"),
    (r"€\s*\d+[.,]\d{2}", "EUR", "Euro symbol before amount"),
    (r"\d+[.,]\d{2}\s*EUR\b", "EUR", "EUR code after amount"),
    (r"\bEUR\s*\d+[.,]\d{2}", "EUR", "EUR code before amount"),
)

DATE_FORMATS: tuple[tuple[str, str], ...] = (
    ("DD.MM.YYYY", r"\b\d{2}\.\d{2}\.\d{4}\b"),
    ("DD.MM.YY", r"\b\d{2}\.\d{2}\.\d{2}\b"),
    ("DD/MM/YYYY", r"\b\d{2}/\d{2}/\d{4}\b"),
    ("YYYY-MM-DD", r"\b\d{4}-\d{2}-\d{2}\b"),
)

_VAT_RATE = re.compile(r"(\d+(?:[.,]\d+)?)\s*%\s*mwst", re.IGNORECASE)
_DATE_TARGETS = frozenset({"serviceDate", "invoiceDate", "dueDate"})
_AMOUNT_TARGETS = frozenset({"totalAmount", "vatAmount"})
_MAX_EXAMPLES = 5


@dataclass
class VendorPatternResult:
    """Patterns found for one vendor after seeing one more invoice."""

    vendor_id: str
    invoice_id: str
    detected_mappings: list[FieldMapping] = field(default_factory=list)
    vat_behavior: VATBehavior = field(default_factory=VATBehavior)
    currency_patterns: list[CurrencyPattern] = field(default_factory=list)
    date_formats: list[DateFormat] = field(default_factory=list)
    overall_confidence: float = 0.0
    reasoning: str = ""

    @property
    def has_patterns(self) -> bool:
        vat = self.vat_behavior
        return bool(
            self.detected_mappings
            or self.currency_patterns
            or self.date_formats
            or vat.vat_inclusion_indicators
            or vat.vat_exclusion_indicators
        )


@dataclass
class VendorMemoryUpdate:
    memory: VendorMemory
    previous: VendorMemory | None
    created: bool
    changed: bool


def german_target(field_name: str) -> str | None:
    """Canonical field for a German label, matched case-insensitively."""
    name = field_name.casefold()
    for label, target in GERMAN_FIELD_MAPPINGS.items():
        if label.casefold() in name:
            return target
    return None


def transformation_rule_for(source: str, target: str) -> TransformationRule:
    name = source.casefold()
    if target in _DATE_TARGETS or "datum" in name or "date" in name:
        return TransformationRule(type=TransformationType.DATE_PARSE)
    if target in _AMOUNT_TARGETS or "betrag" in name or "amount" in name:
        return TransformationRule(type=TransformationType.CURRENCY_EXTRACT)
    return TransformationRule(type=TransformationType.DIRECT)


def same_value(target: str, source_value: Any, corrected_value: Any) -> bool:
    """Whether an extracted value means the same thing as a corrected one."""
    if target in _DATE_TARGETS:
        parsed = parse_date(source_value)
        return parsed is not None and parsed == parse_date(corrected_value)
    if target in _AMOUNT_TARGETS:
        source_money = extract_money(source_value)
        corrected_money = extract_money(corrected_value)
        return (
            source_money is not None
            and corrected_money is not None
            and source_money.amount == corrected_money.amount
        )
    return str(source_value).strip().casefold() == str(corrected_value).strip().casefold()


class VendorPatternRecognizer:
    """Builds and refines one VendorMemory per vendor.

    Recent invoices and mapping examples are kept per vendor in bounded
    windows, so corrections accumulate across calls until a mapping has
    enough examples. One instance is meant to be shared.
    """

    def __init__(
        self,
        store: MemoryStore,
        confidence_manager: ConfidenceManager | None = None,
        config: VendorPatternConfig | None = None,
        store_config: StoreConfig | None = None,
        *,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config or VendorPatternConfig()
        self.store_config = store_config or StoreConfig()
        self.id_factory = id_factory or uuid_ids
        self.clock = clock or utc_now
        self.confidence = confidence_manager or ConfidenceManager(
            id_factory=self.id_factory, clock=self.clock
        )
        self.audit = AuditLog(
            "VendorPatternRecognizer", id_factory=self.id_factory, clock=self.clock
        )
        self._lock = threading.Lock()
        self._invoices: dict[str, deque[RawInvoice]] = {}
        self._examples: dict[str, dict[tuple[str, str], deque[MappingExample]]] = {}

    def get_audit_steps(self) -> list[AuditStep]:
        return self.audit.steps()

    def clear_audit_steps(self) -> None:
        self.audit.clear()

    def learn(
        self, invoice: RawInvoice, corrections: Sequence[Correction] = ()
    ) -> tuple[VendorPatternResult, VendorMemoryUpdate | None]:
        """Recognize patterns on ``invoice`` and fold them into vendor memory."""
        result = self.recognize_patterns(invoice, corrections)
        return result, self.update_vendor_memory(result)

    def recognize_patterns(
        self, invoice: RawInvoice, corrections: Sequence[Correction] = ()
    ) -> VendorPatternResult:
        started = time.perf_counter()
        cfg = self.config
        vendor_id = invoice.vendor_id
        found = self.mapping_examples(invoice, corrections)
        with self._lock:
            history = self._invoices.setdefault(
                vendor_id, deque(maxlen=cfg.max_history_invoices)
            )
            if all(seen.id != invoice.id for seen in history):
                history.append(invoice)
            invoices = list(history)
            grouped = self._examples.setdefault(vendor_id, {})
            for key, example in found:
                grouped.setdefault(
                    key, deque(maxlen=cfg.max_history_invoices)
                ).append(example)
            examples = {key: list(values) for key, values in grouped.items()}

        mappings = _merge_mappings(
            self.detect_german_mappings(invoice), self.learn_field_mappings(examples)
        )
        result = VendorPatternResult(
            vendor_id=vendor_id,
            invoice_id=invoice.id,
            detected_mappings=mappings,
            vat_behavior=(
                self.detect_vat_behavior(invoices)
                if cfg.enable_vat_detection
                else VATBehavior()
            ),
            currency_patterns=(
                self.detect_currency_patterns(invoices)
                if cfg.enable_currency_learning
                else []
            ),
            date_formats=(
                self.detect_date_formats(invoices)
                if cfg.enable_date_format_learning
                else []
            ),
        )
        result.overall_confidence = self.overall_confidence(result)
        result.reasoning = _reasoning(result, len(invoices) - 1, len(found))
        self.audit.record(
            AuditOperation.MEMORY_LEARNING,
            f"Recognized patterns for vendor {vendor_id}",
            input={
                "invoiceId": invoice.id,
                "vendorId": vendor_id,
                "correctionsCount": len(corrections),
                "historicalInvoices": len(invoices) - 1,
            },
            output={
                "fieldMappings": len(result.detected_mappings),
                "currencyPatterns": len(result.currency_patterns),
                "dateFormats": len(result.date_formats),
                "vatIncluded": result.vat_behavior.vat_included_in_prices,
                "overallConfidence": result.overall_confidence,
            },
            started=started,
            prefix="vendor-patterns",
        )
        return result

    def mapping_examples(
        self, invoice: RawInvoice, corrections: Sequence[Correction]
    ) -> list[tuple[tuple[str, str], MappingExample]]:
        """Trace each corrected value back to the extracted field that held it."""
        found: list[tuple[tuple[str, str], MappingExample]] = []
        for correction in corrections:
            target = correction.field.strip()
            value = correction.corrected_value
            if not target or value is None or not str(value).strip():
                continue
            source = _source_field(invoice.extracted_fields, target, value)
            if source is None:
                continue
            found.append(
                (
                    (source.name, target),
                    MappingExample(
                        source_value=str(source.value),
                        target_value=str(value),
                        context=f"Correction on invoice {invoice.id}",
                    ),
                )
            )
        return found

    def detect_german_mappings(self, invoice: RawInvoice) -> list[FieldMapping]:
        mappings: list[FieldMapping] = []
        for extracted in invoice.extracted_fields:
            target = german_target(extracted.name)
            if target is None or extracted.value is None:
                continue
            mappings.append(
                FieldMapping(
                    source_field=extracted.name,
                    target_field=target,
                    transformation_rule=transformation_rule_for(extracted.name, target),
                    confidence=min(
                        0.95, extracted.confidence + self.config.vendor_specific_boost
                    ),
                    examples=[
                        MappingExample(
                            source_value=str(extracted.value),
                            target_value=str(extracted.value),
                            context="German field label",
                        )
                    ],
                )
            )
        return mappings

    def learn_field_mappings(
        self, examples: Mapping[tuple[str, str], Sequence[MappingExample]]
    ) -> list[FieldMapping]:
        """Mappings whose (source, target) pair recurred often enough."""
        cfg = self.config
        mappings: list[FieldMapping] = []
        for (source, target), seen in examples.items():
            if len(seen) < cfg.min_examples_for_pattern:
                continue
            confidence = self.mapping_confidence(len(seen))
            if confidence < cfg.min_pattern_confidence:
                continue
            mappings.append(
                FieldMapping(
                    source_field=source,
                    target_field=target,
                    transformation_rule=transformation_rule_for(source, target),
                    confidence=confidence,
                    examples=list(seen)[-_MAX_EXAMPLES:],
                )
            )
        return mappings

    def mapping_confidence(self, example_count: int) -> float:
        base = min(0.9, 0.3 * example_count)
        return min(0.95, base + self.config.vendor_specific_boost)

    def detect_vat_behavior(self, invoices: Sequence[RawInvoice]) -> VATBehavior:
        included = excluded = 0
        inclusion: list[str] = []
        exclusion: list[str] = []
        for invoice in invoices:
            text = invoice.raw_text.casefold()
            found_in = [i for i in VAT_INCLUSION_INDICATORS if i in text]
            found_ex = [i for i in VAT_EXCLUSION_INDICATORS if i in text]
            if not found_in and not found_ex:
                continue
            if len(found_in) > len(found_ex):
                included += 1
            else:
                excluded += 1
            inclusion.extend(found_in)
            exclusion.extend(found_ex)
        return VATBehavior(
            vat_included_in_prices=included > excluded,
            default_vat_rate=default_vat_rate(invoices),
            vat_inclusion_indicators=_by_frequency(inclusion),
            vat_exclusion_indicators=_by_frequency(exclusion),
        )

    def detect_currency_patterns(
        self, invoices: Sequence[RawInvoice]
    ) -> list[CurrencyPattern]:
        patterns: list[CurrencyPattern] = []
        for pattern, code, context in CURRENCY_PATTERNS:
            count = sum(len(re.findall(pattern, inv.raw_text)) for inv in invoices)
            if count < self.config.min_examples_for_pattern:
                continue
            patterns.append(
                CurrencyPattern(
                    pattern=pattern,
                    currency_code=code,
                    confidence=self._frequency_confidence(count, len(invoices)),
                    context=context,
                )
            )
        return patterns

    def detect_date_formats(self, invoices: Sequence[RawInvoice]) -> list[DateFormat]:
        formats: list[DateFormat] = []
        for name, pattern in DATE_FORMATS:
            matches = [m for inv in invoices for m in re.findall(pattern, inv.raw_text)]
            if len(matches) < self.config.min_examples_for_pattern:
                continue
            formats.append(
                DateFormat(
                    format=name,
                    pattern=pattern,
                    confidence=self._frequency_confidence(len(matches), len(invoices)),
                    examples=list(dict.fromkeys(matches))[:_MAX_EXAMPLES],
                )
            )
        return formats

    def overall_confidence(self, result: VendorPatternResult) -> float:
        """Mean of the mapping, VAT, currency and date confidences present."""
        scores = [m.confidence for m in result.detected_mappings]
        vat = result.vat_behavior
        indicators = len(vat.vat_inclusion_indicators) + len(vat.vat_exclusion_indicators)
        scores.append(min(0.9, 0.2 * indicators))
        scores.extend(p.confidence for p in result.currency_patterns)
        scores.extend(d.confidence for d in result.date_formats)
        return sum(scores) / len(scores)

    def _frequency_confidence(self, count: int, invoice_count: int) -> float:
        share = min(0.9, count / (max(1, invoice_count) * 2))
        return min(1.0, share + self.config.vendor_specific_boost)

    # Memory

    def update_vendor_memory(
        self, result: VendorPatternResult
    ) -> VendorMemoryUpdate | None:
        """Create the vendor's memory or merge new patterns into it.

        Returns None when there is nothing to remember. A merge that adds
        nothing new leaves the stored memory untouched.
        """
        if not result.has_patterns:
            return None
        started = time.perf_counter()
        existing = self._find_vendor_memory(result.vendor_id)
        if existing is None:
            saved = self.store.save_memory(self._new_memory(result))
            update = VendorMemoryUpdate(
                memory=saved, previous=None, created=True, changed=True
            )
            logger.info("Created vendor memory %s", saved.id)
        else:
            maximum = self.confidence.config.maximum_confidence
            merged: list[bool] = []

            def merge(current: StoredMemory) -> StoredMemory:
                if not isinstance(current, VendorMemory):
                    return current
                updated = merge_vendor_patterns(current, result, maximum)
                merged[:] = [updated is not current]
                return updated

            saved = update_memory_with_retry(
                self.store,
                existing.id,
                merge,
                max_retries=self.store_config.max_update_retries,
            )
            update = VendorMemoryUpdate(
                memory=saved,
                previous=existing,
                created=False,
                changed=bool(merged and merged[0]),
            )
        self.audit.record(
            AuditOperation.MEMORY_LEARNING,
            f"{'Created' if update.created else 'Updated'} vendor memory",
            input={
                "invoiceId": result.invoice_id,
                "vendorId": result.vendor_id,
                "existingMemoryFound": existing is not None,
            },
            output={
                "memoryId": saved.id,
                "changed": update.changed,
                "confidence": saved.confidence,
                "fieldMappings": len(saved.field_mappings),
            },
            started=started,
            prefix="vendor-memory",
        )
        return update

    def _new_memory(self, result: VendorPatternResult) -> VendorMemory:
        now = self.clock()
        cfg = self.confidence.config
        slug = slugify(result.vendor_id, max_length=60)
        return VendorMemory(
            id=self.id_factory(f"vendor-{slug}"),
            pattern=MemoryPattern(
                pattern_type=PatternType.FIELD_MAPPING,
                pattern_data={"vendorId": result.vendor_id, "source": "vendor_patterns"},
                threshold=self.config.min_pattern_confidence,
            ),
            confidence=min(
                cfg.maximum_confidence,
                max(cfg.minimum_confidence, result.overall_confidence),
            ),
            created_at=now,
            last_used=now,
            context=MemoryContext(vendor_id=result.vendor_id),
            vendor_id=result.vendor_id,
            field_mappings=result.detected_mappings,
            vat_behavior=result.vat_behavior,
            currency_patterns=result.currency_patterns,
            date_formats=result.date_formats,
        )

    def _find_vendor_memory(self, vendor_id: str) -> VendorMemory | None:
        for memory in self.store.find_memories_by_vendor(vendor_id):
            if isinstance(memory, VendorMemory) and memory.vendor_id == vendor_id:
                return memory
        return None


def merge_vendor_patterns(
    memory: VendorMemory, result: VendorPatternResult, maximum_confidence: float
) -> VendorMemory:
    """Fold ``result`` into ``memory``; the same object back means no change."""
    mappings = _merge_mappings(memory.field_mappings, result.detected_mappings)
    currencies = _merge_by_key(
        memory.currency_patterns,
        result.currency_patterns,
        lambda p: (p.pattern, p.currency_code),
    )
    dates = _merge_by_key(memory.date_formats, result.date_formats, lambda d: d.format)
    vat = _merge_vat(memory.vat_behavior, result.vat_behavior)
    if (
        mappings == memory.field_mappings
        and currencies == memory.currency_patterns
        and dates == memory.date_formats
        and vat == memory.vat_behavior
    ):
        return memory
    return memory.model_copy(
        update={
            "field_mappings": mappings,
            "currency_patterns": currencies,
            "date_formats": dates,
            "vat_behavior": vat,
            "confidence": min(
                maximum_confidence,
                memory.confidence + result.overall_confidence * 0.15,
            ),
        }
    )


def default_vat_rate(invoices: Sequence[RawInvoice]) -> float | None:
    rates: list[float] = []
    for invoice in invoices:
        for raw in _VAT_RATE.findall(invoice.raw_text):
            rate = float(raw.replace(",", "."))
            if 0 < rate < 100:
                rates.append(rate)
    if not rates:
        return None
    return Counter(rates).most_common(1)[0][0]


def _source_field(
    fields: Sequence[ExtractedField], target: str, value: Any
) -> ExtractedField | None:
    for extracted in fields:
        if extracted.name == target or extracted.value is None:
            continue
        if same_value(target, extracted.value, value):
            return extracted
    return None


def _merge_mappings(
    current: Sequence[FieldMapping], incoming: Sequence[FieldMapping]
) -> list[FieldMapping]:
    """Union by (source, target); an incoming mapping wins only if more confident."""
    return _merge_by_key(current, incoming, lambda m: (m.source_field, m.target_field))


def _merge_by_key(
    current: Sequence[Any], incoming: Sequence[Any], key: Callable[[Any], Any]
) -> list[Any]:
    merged = {key(item): item for item in current}
    for item in incoming:
        known = merged.get(key(item))
        if known is None or item.confidence > known.confidence:
            merged[key(item)] = item
    return list(merged.values())


def _merge_vat(current: VATBehavior, found: VATBehavior) -> VATBehavior:
    if not (found.vat_inclusion_indicators or found.vat_exclusion_indicators):
        return current
    return VATBehavior(
        vat_included_in_prices=found.vat_included_in_prices,
        default_vat_rate=found.default_vat_rate or current.default_vat_rate,
        vat_inclusion_indicators=list(
            dict.fromkeys(current.vat_inclusion_indicators + found.vat_inclusion_indicators)
        ),
        vat_exclusion_indicators=list(
            dict.fromkeys(current.vat_exclusion_indicators + found.vat_exclusion_indicators)
        ),
    )


def _by_frequency(items: list[str]) -> list[str]:
    return [item for item, _ in Counter(items).most_common()]


def _reasoning(result: VendorPatternResult, history: int, examples: int) -> str:
    parts = [f"Analyzed {history} earlier invoices from {result.vendor_id}"]
    if examples:
        parts.append(f"Traced {examples} corrections to extracted fields")
    if result.detected_mappings:
        parts.append(f"Detected {len(result.detected_mappings)} field mappings")
    vat = result.vat_behavior
    if vat.vat_inclusion_indicators or vat.vat_exclusion_indicators:
        included = "included in" if vat.vat_included_in_prices else "excluded from"
        parts.append(f"VAT is {included} prices")
    if result.currency_patterns:
        parts.append(f"Learned {len(result.currency_patterns)} currency patterns")
    if result.date_formats:
        formats = ", ".join(d.format for d in result.date_formats)
        parts.append(f"Date formats: {formats}")
    parts.append(f"Overall confidence {result.overall_confidence:.1%}")
    return ". ".join(parts) + "."
