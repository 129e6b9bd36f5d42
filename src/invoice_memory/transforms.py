"""Field extraction, value transformations, trigger conditions and correction actions."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from invoice_memory.models import (
    ConditionOperator,
    CorrectionActionType,
    Money,
    TransformationType,
)

if TYPE_CHECKING:
    from invoice_memory.models import (
        Condition,
        CorrectionAction,
        NormalizedInvoice,
        RawInvoice,
        TransformationRule,
    )

logger = logging.getLogger(__name__)

KNOWN_CURRENCIES = frozenset({"EUR", "USD", "GBP", "CHF", "JPY"})

_RAW_TEXT_PATTERNS: dict[str, re.Pattern[str]] = {
    "Leistungsdatum": re.compile(r"Leistungsdatum[:\s]+([^\n\r]+)", re.IGNORECASE),
    "serviceDate": re.compile(r"service\s*date[:\s]+([^\n\r]+)", re.IGNORECASE),
    "invoiceNumber": re.compile(
        r"invoice\s*(?:number|#)[:\s]+([^\n\r\s]+)", re.IGNORECASE
    ),
    "totalAmount": re.compile(
        r"\btotal\b[:\s]+([0-9][0-9,.]*(?:\s[0-9]{3}[0-9,.]*)*)", re.IGNORECASE
    ),
}

_CURRENCY_CODE = re.compile(r"\b([A-Za-z]{3})\b")
_ISO_CODE = re.compile(r"\b([A-Z]{3})\b")

# (regex, group order as (year, month, day) indexes)
_DATE_FORMATS: list[tuple[re.Pattern[str], tuple[int, int, int]]] = [
    (re.compile(r"\b(\d{1,2})\.(\d{1,2})\.(\d{4})\b"), (3, 2, 1)),  # DD.MM.YYYY
    (re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b"), (1, 2, 3)),  # YYYY-MM-DD
    (re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), (3, 1, 2)),  # MM/DD/YYYY
]

_AMOUNT = re.compile(r"-?\d[\d.,'\s]*")


class CorrectionActionError(ValueError):
    """A correction action could not be applied to the field value."""


# Extraction


def extract_field_value(invoice: RawInvoice, field_name: str) -> Any:
    """Look up a field on a raw invoice.

    Extracted fields are matched by exact name first. Otherwise the raw text
    is scanned with a pattern for the field. Returns None when the field is
    absent.
    """
    for extracted in invoice.extracted_fields:
        if extracted.name == field_name:
            return extracted.value
    return extract_from_raw_text(invoice.raw_text, field_name)


def extract_from_raw_text(raw_text: str, field_name: str) -> str | None:
    if not raw_text or not field_name:
        return None

    if field_name == "currency":
        for match in _CURRENCY_CODE.finditer(raw_text):
            code = match.group(1).upper()
            if code in KNOWN_CURRENCIES:
                return code
        return None

    pattern = _RAW_TEXT_PATTERNS.get(field_name)
    if pattern is None:
        pattern = re.compile(
            rf"^\s*{re.escape(field_name)}\s*:\s*([^\n\r]+)",
            re.IGNORECASE | re.MULTILINE,
        )
    match = pattern.search(raw_text)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


# Transformations


def apply_transformation(
    value: Any,
    rule: TransformationRule | None,
    *,
    default_currency: str = "EUR",
) -> Any:
    """Transform a source value according to a mapping's rule.

    Returns None when the value cannot be interpreted (the caller records
    that as a validation failure). Raises ValueError for rules that are
    themselves malformed.
    """
    if rule is None or rule.type is TransformationType.DIRECT:
        return value

    params = rule.parameters
    match rule.type:
        case TransformationType.DATE_PARSE:
            return parse_date(value)
        case TransformationType.CURRENCY_EXTRACT:
            currency = str(params.get("default_currency") or default_currency)
            return extract_money(value, default_currency=currency)
        case TransformationType.TEXT_NORMALIZE:
            return normalize_text(
                value,
                trim=params.get("trim", True),
                lowercase=params.get("lowercase", False),
                collapse_whitespace=params.get("collapse_whitespace", True),
            )
        case TransformationType.REGEX_EXTRACT:
            return regex_extract(
                value,
                params.get("pattern"),
                group=params.get("group"),
                flags=params.get("flags", "i"),
            )
    msg = f"Unsupported transformation type: {rule.type}"
    raise ValueError(msg)


def parse_date(value: Any) -> date | None:
    """Parse DD.MM.YYYY, then YYYY-MM-DD, then MM/DD/YYYY.

    Impossible calendar dates such as 31.02.2024 yield None.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        return None
    text = str(value).strip()
    for pattern, (y, m, d) in _DATE_FORMATS:
        match = pattern.search(text)
        if match is None:
            continue
        try:
            return date(int(match.group(y)), int(match.group(m)), int(match.group(d)))
        except ValueError:
            logger.debug("Invalid calendar date %r", text)
            return None
    return None


def parse_amount(text: str) -> Decimal | None:
    """Parse a localized number.

    When both separators appear the rightmost one is the decimal separator.
    A lone comma followed by one or two digits is a decimal comma.
    """
    match = _AMOUNT.search(text)
    if match is None:
        return None
    raw = re.sub(r"[\s']", "", match.group(0)).rstrip(".,")
    if "," in raw and "." in raw:
        if raw.rfind(",") > raw.rfind("."):
            raw = raw.replace(".", "").replace(",", ".")
        else:
            raw = raw.replace(",", "")
    elif "," in raw:
        head, _, tail = raw.rpartition(",")
        if raw.count(",") == 1 and len(tail) in (1, 2):
            raw = f"{head}.{tail}"
        else:
            raw = raw.replace(",", "")
    elif raw.count(".") > 1:
        raw = raw.replace(".", "")
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def extract_money(value: Any, *, default_currency: str = "EUR") -> Money | None:
    """Split an amount and an ISO currency code out of a value.

    Any upper-case three-letter code counts, with common currencies
    preferred when several appear.
    """
    if isinstance(value, Money):
        return value
    if isinstance(value, dict):
        try:
            return Money.model_validate(value)
        except ValidationError:
            return None
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float | Decimal):
        return Money(amount=Decimal(str(value)), currency=default_currency)

    text = str(value)
    amount = parse_amount(text)
    if amount is None:
        return None
    codes = _ISO_CODE.findall(text)
    known = [c for c in codes if c in KNOWN_CURRENCIES]
    currency = (known or codes or [default_currency])[0]
    return Money(amount=amount, currency=currency)


def normalize_text(
    value: Any,
    *,
    trim: bool = True,
    lowercase: bool = False,
    collapse_whitespace: bool = True,
) -> str | None:
    if value is None:
        return None
    text = str(value)
    if trim:
        text = text.strip()
    if lowercase:
        text = text.lower()
    if collapse_whitespace:
        text = re.sub(r"\s+", " ", text)
    return text


def regex_extract(
    value: Any,
    pattern: str | None,
    *,
    group: str | int | None = None,
    flags: str = "i",
) -> str | None:
    """Extract a capture from a value.

    Group preference: the requested group, the first named group, group 1,
    then the whole match.
    """
    if not pattern:
        msg = "regex_extract requires a 'pattern' parameter"
        raise ValueError(msg)
    if value is None:
        return None
    compiled = re.compile(pattern, _regex_flags(flags))
    match = compiled.search(str(value))
    if match is None:
        return None
    if group is not None:
        return match.group(group)
    if compiled.groupindex:
        first = min(compiled.groupindex.items(), key=lambda item: item[1])[0]
        return match.group(first)
    if compiled.groups:
        return match.group(1)
    return match.group(0)


def _regex_flags(flags: str) -> re.RegexFlag:
    result = re.RegexFlag(0)
    for flag in flags or "":
        match flag:
            case "i":
                result |= re.IGNORECASE
            case "m":
                result |= re.MULTILINE
            case "s":
                result |= re.DOTALL
            case _:
                msg = f"Unsupported regex flag: {flag!r}"
                raise ValueError(msg)
    return result


# Conditions


def evaluate_conditions(invoice: RawInvoice, conditions: list[Condition]) -> bool:
    """AND over all conditions. An empty list never fires."""
    if not conditions:
        return False
    return all(
        evaluate_condition(extract_field_value(invoice, c.field), c)
        for c in conditions
    )


def evaluate_condition(field_value: Any, condition: Condition) -> bool:
    expected = condition.value
    match condition.operator:
        case ConditionOperator.EQUALS:
            return field_value == expected
        case ConditionOperator.NOT_EQUALS:
            return field_value != expected
        case ConditionOperator.GREATER_THAN:
            return _is_number(field_value) and _is_number(expected) and field_value > expected
        case ConditionOperator.LESS_THAN:
            return _is_number(field_value) and _is_number(expected) and field_value < expected
        case ConditionOperator.CONTAINS:
            return (
                isinstance(field_value, str)
                and isinstance(expected, str)
                and expected in field_value
            )
        case ConditionOperator.MATCHES_REGEX:
            if not isinstance(field_value, str) or not isinstance(expected, str):
                return False
            try:
                return re.search(expected, field_value, re.IGNORECASE) is not None
            except re.error:
                logger.debug("Invalid condition regex %r", expected)
                return False
        case ConditionOperator.EXISTS:
            return field_value is not None
        case ConditionOperator.NOT_EXISTS:
            return field_value is None
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float | Decimal) and not isinstance(value, bool)


# Correction actions


def apply_correction_action(original: Any, action: CorrectionAction) -> Any:
    """Compute the corrected value for a field.

    Arithmetic and text replacement require operands of matching kinds;
    anything else raises CorrectionActionError.
    """
    new_value = action.new_value
    match action.action_type:
        case CorrectionActionType.SET_VALUE:
            return new_value
        case CorrectionActionType.MULTIPLY_BY:
            _require_numbers(original, new_value, action)
            return original * new_value
        case CorrectionActionType.ADD_VALUE:
            _require_numbers(original, new_value, action)
            return original + new_value
        case CorrectionActionType.REPLACE_TEXT:
            if not isinstance(original, str) or not isinstance(new_value, dict):
                msg = (
                    f"replace_text on {action.target_field} needs a string value "
                    "and a {'pattern', 'replacement'} mapping"
                )
                raise CorrectionActionError(msg)
            try:
                return re.sub(
                    str(new_value["pattern"]),
                    str(new_value.get("replacement", "")),
                    original,
                )
            except (KeyError, re.error) as exc:
                msg = f"Invalid replace_text parameters for {action.target_field}"
                raise CorrectionActionError(msg) from exc
    msg = f"Unsupported correction action: {action.action_type}"
    raise CorrectionActionError(msg)


def _require_numbers(original: Any, operand: Any, action: CorrectionAction) -> None:
    if _is_number(original) and _is_number(operand):
        return
    msg = (
        f"{action.action_type.value} on {action.target_field} needs numeric "
        f"operands, got {type(original).__name__} and {type(operand).__name__}"
    )
    raise CorrectionActionError(msg)


# Normalized invoice overlay


def overlay_field(invoice: NormalizedInvoice, field_name: str, value: Any) -> bool:
    """Write a normalized value onto the invoice field it names.

    Returns False when the field is unknown or the value has the wrong shape.
    """
    match field_name:
        case "serviceDate" | "invoiceDate" | "dueDate":
            parsed = parse_date(value)
            if parsed is None:
                return False
            attr = {
                "serviceDate": "service_date",
                "invoiceDate": "invoice_date",
                "dueDate": "due_date",
            }[field_name]
            setattr(invoice, attr, parsed)
            return True
        case "totalAmount" | "vatAmount":
            money = extract_money(value, default_currency=invoice.currency)
            if money is None:
                return False
            if field_name == "totalAmount":
                invoice.total_amount = money
                invoice.currency = money.currency
            else:
                invoice.vat_amount = money
            return True
        case "currency":
            code = str(value).strip().upper() if value is not None else ""
            if not re.fullmatch(r"[A-Z]{3}", code):
                return False
            invoice.currency = code
            invoice.total_amount = invoice.total_amount.model_copy(
                update={"currency": code}
            )
            return True
        case "purchaseOrderNumber" | "invoiceNumber":
            if value is None:
                return False
            attr = (
                "purchase_order_number"
                if field_name == "purchaseOrderNumber"
                else "invoice_number"
            )
            setattr(invoice, attr, str(value).strip())
            return True
    return False
