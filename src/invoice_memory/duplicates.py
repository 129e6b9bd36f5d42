"""Flags invoices that look like one already processed for the same vendor."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

from invoice_memory.audit import AuditLog, utc_now, uuid_ids
from invoice_memory.config import DuplicateDetectionConfig
from invoice_memory.decision import IssueSeverity, ValidationIssue
from invoice_memory.models import AuditOperation
from invoice_memory.store import PersistenceError, ProcessedInvoice

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from invoice_memory.models import AuditStep, NormalizedInvoice
    from invoice_memory.store import InvoiceRegistry

logger = logging.getLogger(__name__)

DUPLICATE_ISSUE = "duplicate_invoice"

_NUMBER_NOISE = re.compile(r"[\s\-_/.#]")


@dataclass(frozen=True)
class DuplicateMatch:
    invoice: ProcessedInvoice
    similarity: float
    exact_number: bool
    matching_factors: tuple[str, ...] = ()


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    matches: list[DuplicateMatch] = field(default_factory=list)
    validation_issues: list[ValidationIssue] = field(default_factory=list)
    confidence: float = 0.9
    reasoning: str = ""


def normalize_invoice_number(number: str) -> str:
    """Drop separators and case so 'R-2024/001' equals 'r2024001'."""
    return _NUMBER_NOISE.sub("", number).casefold()


class DuplicateDetector:
    """Compares a normalized invoice with the vendor's recent invoices.

    Candidates come from an InvoiceRegistry, limited to invoices dated
    within ``date_proximity_days``. Each candidate is scored on invoice
    number, date distance and amount; the score is the mean of the factors
    that could be compared. An identical number is always a duplicate.
    """

    def __init__(
        self,
        registry: InvoiceRegistry,
        config: DuplicateDetectionConfig | None = None,
        *,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or DuplicateDetectionConfig()
        self.id_factory = id_factory or uuid_ids
        self.clock = clock or utc_now
        self.audit = AuditLog(
            "DuplicateDetector", id_factory=self.id_factory, clock=self.clock
        )

    def get_audit_steps(self) -> list[AuditStep]:
        return self.audit.steps()

    def clear_audit_steps(self) -> None:
        self.audit.clear()

    def detect(self, invoice: NormalizedInvoice) -> DuplicateCheck:
        """Check one invoice; registry failures become a warning, not an error."""
        started = time.perf_counter()
        cfg = self.config
        start = end = None
        if invoice.invoice_date is not None:
            window = timedelta(days=cfg.date_proximity_days)
            start, end = invoice.invoice_date - window, invoice.invoice_date + window
        try:
            candidates = self.registry.find_candidates(
                invoice.vendor_id,
                start=start,
                end=end,
                exclude_id=invoice.id,
                limit=cfg.max_candidates,
            )
        except PersistenceError as exc:
            logger.warning(
                "Duplicate check failed for invoice %s", invoice.id, exc_info=True
            )
            self.audit.record(
                AuditOperation.ERROR_HANDLING,
                "Duplicate check failed, continuing without it",
                input={"invoiceId": invoice.id, "vendorId": invoice.vendor_id},
                output={"error": str(exc)},
                started=started,
                prefix="duplicate-error",
            )
            return DuplicateCheck(
                is_duplicate=False,
                validation_issues=[
                    ValidationIssue(
                        severity=IssueSeverity.WARNING,
                        issue_type="duplicate_check_failed",
                        affected_field="invoiceNumber",
                        description="Duplicate detection could not run; check manually",
                    )
                ],
                confidence=0.1,
                reasoning=f"Duplicate detection failed: {exc}",
            )

        matches = [m for c in candidates if (m := self.compare(invoice, c)) is not None]
        matches.sort(key=lambda m: (not m.exact_number, -m.similarity, m.invoice.id))
        check = DuplicateCheck(
            is_duplicate=bool(matches),
            matches=matches,
            validation_issues=[_issue(m) for m in matches],
            confidence=min(0.95, max(m.similarity for m in matches)) if matches else 0.9,
            reasoning=_reasoning(invoice, len(candidates), matches),
        )
        self.audit.record(
            AuditOperation.VALIDATION,
            f"Checked {len(candidates)} earlier invoices for duplicates",
            input={
                "invoiceId": invoice.id,
                "vendorId": invoice.vendor_id,
                "invoiceNumber": invoice.invoice_number,
                "candidates": len(candidates),
            },
            output={
                "isDuplicate": check.is_duplicate,
                "matchIds": [m.invoice.id for m in matches],
                "confidence": check.confidence,
            },
            started=started,
            prefix="duplicate-check",
        )
        return check

    def compare(
        self, invoice: NormalizedInvoice, candidate: ProcessedInvoice
    ) -> DuplicateMatch | None:
        """Score one candidate; None when it is not similar enough."""
        cfg = self.config
        scores: list[float] = []
        factors: list[str] = []

        ours = normalize_invoice_number(invoice.invoice_number)
        theirs = normalize_invoice_number(candidate.invoice_number)
        exact = bool(ours) and ours == theirs
        if exact:
            scores.append(1.0)
            factors.append("exact_invoice_number")
        elif cfg.enable_fuzzy_matching and ours and theirs:
            ratio = SequenceMatcher(None, ours, theirs).ratio()
            scores.append(ratio)
            if ratio >= cfg.fuzzy_match_threshold:
                factors.append("similar_invoice_number")
        else:
            scores.append(0.0)

        if invoice.invoice_date is not None and candidate.invoice_date is not None:
            days = abs((invoice.invoice_date - candidate.invoice_date).days)
            if cfg.date_proximity_days > 0:
                proximity = max(0.0, 1 - days / cfg.date_proximity_days)
            else:
                proximity = 1.0 if days == 0 else 0.0
            scores.append(proximity)
            if proximity > 0:
                factors.append("date_proximity")

        if (
            cfg.enable_amount_comparison
            and invoice.total_amount.currency == candidate.currency
        ):
            a, b = invoice.total_amount.amount, candidate.total_amount
            largest = max(abs(a), abs(b))
            if largest > 0:
                difference = float(abs(a - b) / largest)
                scores.append(max(0.0, 1 - difference))
                if difference * 100 <= cfg.amount_tolerance_percent:
                    factors.append("amount_within_tolerance")

        similarity = sum(scores) / len(scores)
        if not exact and similarity < cfg.fuzzy_match_threshold:
            return None
        return DuplicateMatch(
            invoice=candidate,
            similarity=similarity,
            exact_number=exact,
            matching_factors=tuple(factors),
        )

    def remember(self, invoice: NormalizedInvoice) -> bool:
        """Add a processed invoice to the registry; False if that failed."""
        try:
            self.registry.record_invoice(
                ProcessedInvoice(
                    id=invoice.id,
                    vendor_id=invoice.vendor_id,
                    invoice_number=invoice.invoice_number,
                    invoice_date=invoice.invoice_date,
                    total_amount=invoice.total_amount.amount,
                    currency=invoice.total_amount.currency,
                    processed_at=self.clock(),
                )
            )
        except PersistenceError as exc:
            logger.warning("Could not register invoice %s", invoice.id, exc_info=True)
            self.audit.record(
                AuditOperation.ERROR_HANDLING,
                "Invoice not registered for duplicate checks",
                input={"invoiceId": invoice.id},
                output={"error": str(exc)},
                prefix="duplicate-error",
            )
            return False
        return True


def _issue(match: DuplicateMatch) -> ValidationIssue:
    if match.exact_number:
        return ValidationIssue(
            severity=IssueSeverity.CRITICAL,
            issue_type=DUPLICATE_ISSUE,
            affected_field="invoiceNumber",
            description=(
                f"Invoice number {match.invoice.invoice_number} was already "
                f"processed as {match.invoice.id}"
            ),
        )
    return ValidationIssue(
        severity=IssueSeverity.WARNING,
        issue_type=DUPLICATE_ISSUE,
        affected_field="invoiceNumber",
        description=(
            f"Potential duplicate of {match.invoice.id} "
            f"(similarity: {match.similarity:.1%})"
        ),
    )


def _reasoning(
    invoice: NormalizedInvoice, candidates: int, matches: list[DuplicateMatch]
) -> str:
    if not matches:
        return f"No duplicates among {candidates} earlier invoices from {invoice.vendor_id}."
    best = matches[0]
    factors = ", ".join(best.matching_factors) or "overall similarity"
    return (
        f"Found {len(matches)} potential duplicates. Closest is {best.invoice.id} "
        f"(similarity: {best.similarity:.1%}; {factors})."
    )
