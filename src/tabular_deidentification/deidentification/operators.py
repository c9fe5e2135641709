"""
Technique operators.

Each operator transforms a single field value under its technique
parameters and knows nothing about the other fields of the record.
``None`` values pass through every operator except suppression.
"""

import math
import numbers
import re
from datetime import date, datetime
from typing import Any, Optional, Tuple, Union

import numpy as np

from ..core.errors import InvalidFormat, RecordSuppressed
from ..policy.policy_set import FieldType
from ..policy.techniques import (
    DateUnit,
    GeneralizeTechnique,
    MaskShape,
    MaskTechnique,
    NoiseDistribution,
    PerturbTechnique,
    PseudonymizeTechnique,
    SuppressionScope,
    SuppressTechnique,
)


_DIGIT_SHAPED = re.compile(r"^[0-9\s\-().+/]+$")
_EMAIL_SHAPED = re.compile(r"^[^@\s]+@[^@\s]+$")
_DIGIT_TYPES = {FieldType.PHONE, FieldType.CARD_NUMBER, FieldType.IDENTIFIER, FieldType.NUMBER}

Number = Union[int, float]


# ---------------------------------------------------------------- mask

def _resolve_shape(technique: MaskTechnique, field_type: FieldType, text: str) -> MaskShape:
    if technique.shape != MaskShape.AUTO:
        return technique.shape
    if field_type == FieldType.EMAIL:
        return MaskShape.EMAIL
    # Untyped strings that look like addresses
    if field_type == FieldType.STRING and _EMAIL_SHAPED.match(text):
        return MaskShape.EMAIL
    if field_type in _DIGIT_TYPES:
        return MaskShape.DIGITS
    return MaskShape.TEXT


def _mask_email(text: str, technique: MaskTechnique) -> str:
    """
    Mask the local part of an email address behind a fixed-length token.

    Examples:
        jane.doe@corp.com -> j****@corp.com
    """
    if text.count("@") != 1:
        raise InvalidFormat("Value is not an email address")

    local, domain = text.split("@")
    if not local or not domain or any(c.isspace() for c in text):
        raise InvalidFormat("Value is not an email address")

    token = technique.mask_char * technique.token_length
    return f"{local[:technique.keep_first]}{token}@{domain}"


def _mask_digits(text: str, technique: MaskTechnique) -> str:
    """
    Mask the middle digits of a numeric identifier, keeping separators.

    Examples:
        4532-1234-5678-9010 (keep_last=4) -> ****-****-****-9010
    """
    if not _DIGIT_SHAPED.match(text):
        raise InvalidFormat("Value is not a numeric identifier")

    digit_count = sum(1 for c in text if "0" <= c <= "9")
    if digit_count <= technique.keep_first + technique.keep_last:
        raise InvalidFormat("Too few digits to mask")

    chars = list(text)
    digit_index = 0
    for i, char in enumerate(text):
        if "0" <= char <= "9":
            if technique.keep_first <= digit_index < digit_count - technique.keep_last:
                chars[i] = technique.mask_char
            digit_index += 1
    return "".join(chars)


def _mask_text(text: str, technique: MaskTechnique) -> str:
    keep = technique.keep_first + technique.keep_last
    if len(text) <= keep:
        raise InvalidFormat("Value too short to mask")
    tail = text[len(text) - technique.keep_last:] if technique.keep_last else ""
    return text[:technique.keep_first] + technique.mask_char * (len(text) - keep) + tail


def mask(value: Any, technique: MaskTechnique, field_type: FieldType = FieldType.STRING) -> Any:
    """Format-preserving partial reveal; a pure function of its inputs."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidFormat("Boolean values cannot be masked")

    text = str(value)
    shape = _resolve_shape(technique, field_type, text)

    if shape == MaskShape.EMAIL:
        return _mask_email(text, technique)
    if shape == MaskShape.DIGITS:
        return _mask_digits(text, technique)
    return _mask_text(text, technique)


# ---------------------------------------------------------- generalize

def _is_integral(x: Number) -> bool:
    return isinstance(x, numbers.Integral) or (isinstance(x, float) and x.is_integer())


def _format_bound(x: Number) -> str:
    if _is_integral(x):
        return str(int(x))
    return repr(round(x, 10))


def bucket_bounds(value: Number, width: Number) -> Tuple[Number, Number, bool]:
    """
    Return ``(lower, upper, closed)`` for the bucket containing ``value``.

    Integral values and widths give the closed interval
    ``[floor(v / w) * w, lower + w - 1]``; otherwise the interval is
    half-open ``[lower, lower + w)``.
    """
    if _is_integral(value) and _is_integral(width):
        # Exact for integers beyond float precision
        step = int(width)
        lower = (int(value) // step) * step
        return lower, lower + step - 1, True

    lower = math.floor(value / width) * width

    # Guard against float rounding in the division
    if lower > value:
        lower -= width
    elif value >= lower + width:
        lower += width
    return lower, lower + width, False


def _coerce_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value).date()
        except ValueError:
            raise InvalidFormat("Value is not an ISO date")
    raise InvalidFormat("Value is not a date")


def age_at(born: date, reference: date) -> int:
    """Whole years elapsed between two dates."""
    return reference.year - born.year - ((reference.month, reference.day) < (born.month, born.day))


def _to_number(value: Any, technique: GeneralizeTechnique, field_type: FieldType, reference: date) -> Number:
    if isinstance(value, bool):
        raise InvalidFormat("Boolean values cannot be bucketed")

    if isinstance(value, numbers.Real):
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidFormat("Value is not a finite number")
        if field_type == FieldType.DATE and technique.date_unit == DateUnit.AGE:
            # Bare numbers in date fields are years
            return reference.year - int(value)
        return value

    if isinstance(value, (date, datetime)) or field_type == FieldType.DATE:
        born = _coerce_date(value)
        if technique.date_unit == DateUnit.AGE:
            return age_at(born, reference)
        return born.year

    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError:
            raise InvalidFormat("Value is not numeric")

    raise InvalidFormat("Value cannot be generalized")


def generalize(
    value: Any,
    technique: GeneralizeTechnique,
    field_type: FieldType = FieldType.STRING,
    reference_date: Optional[date] = None,
) -> Any:
    """
    Bucket numbers and dates, or truncate codes to a prefix.

    Examples:
        1985 (width=5)          -> "[1985-1989]"
        "28045" (prefix_length=3) -> "280**"
    """
    if value is None:
        return None

    if technique.prefix_length is not None:
        text = str(value)
        if len(text) <= technique.prefix_length:
            return text
        hidden = len(text) - technique.prefix_length
        return text[:technique.prefix_length] + technique.wildcard * hidden

    number = _to_number(value, technique, field_type, reference_date or date.today())
    if isinstance(number, float) and not math.isfinite(number):
        raise InvalidFormat("Value is not a finite number")

    lower, upper, closed = bucket_bounds(number, technique.width)
    closing = "]" if closed else ")"
    return f"[{_format_bound(lower)}-{_format_bound(upper)}{closing}"


# ------------------------------------------------------------- perturb

def perturb(value: Any, technique: PerturbTechnique, rng: np.random.Generator) -> Any:
    """
    Add bounded noise to a numeric value.

    Integers stay integers; results are clamped to the declared domain.
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidFormat("Only numeric values can be perturbed")

    if technique.distribution == NoiseDistribution.LAPLACE:
        noise = float(rng.laplace(0.0, technique.laplace_scale))
    else:
        noise = float(rng.uniform(-technique.bound, technique.bound))

    result = float(value) + noise

    if isinstance(value, numbers.Integral):
        result = int(round(result))
        if technique.min_value is not None:
            result = max(result, math.ceil(technique.min_value))
        if technique.max_value is not None:
            result = min(result, math.floor(technique.max_value))
        return result

    if technique.min_value is not None:
        result = max(result, technique.min_value)
    if technique.max_value is not None:
        result = min(result, technique.max_value)
    return result


# ------------------------------------------------------------ suppress

def suppress(value: Any, technique: SuppressTechnique, sentinel: str = "[SUPPRESSED]") -> Any:
    """Replace a field with the sentinel, or signal a record drop."""
    if technique.scope == SuppressionScope.RECORD:
        raise RecordSuppressed()
    return technique.sentinel if technique.sentinel is not None else sentinel


# -------------------------------------------------------- pseudonymize

def pseudonymize(value: Any, technique: PseudonymizeTechnique, store, reversible: bool) -> Any:
    """Replace a value by the pseudonym the correspondence store holds for it."""
    if value is None:
        return None
    return store.get_or_create(technique.technique_id, value, reversible=reversible)
