"""Structural validation and business classification of transaction records.

Everything here is pure: no I/O and no shared state. Expected outcomes
(invalid category, duplicates, ...) are returned as tagged results rather
than raised, only a structurally malformed record raises
``TransactionValidationError``. A value the deposit tables cannot hold
counts as malformed.
"""

import math
from collections.abc import Container, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from numbers import Real
from typing import Any

from deposit_pipeline.core.constants import (
    DECIMAL_PLACES,
    MAX_CONFIRMATIONS_VALUE,
    MAX_DIGITS,
    MAX_IDENTIFIER_BYTES,
    MIN_CONFIRMATIONS_VALUE,
    RECEIVE_CATEGORY,
)
from deposit_pipeline.core.enums import FailureReason
from deposit_pipeline.domain.exceptions import TransactionValidationError

_AMOUNT_QUANTUM = Decimal(1).scaleb(-DECIMAL_PLACES)
_AMOUNT_LIMIT = Decimal(10) ** (MAX_DIGITS - DECIMAL_PLACES)


@dataclass(frozen=True)
class Valid:
    pass


@dataclass(frozen=True)
class Failed:
    reason: str


Classification = Valid | Failed


def is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def to_amount(value: Any) -> Decimal:
    """Amount as stored: rounded to the column scale."""
    # str() first so 0.1 stays 0.1 instead of its binary expansion
    return Decimal(str(value)).quantize(_AMOUNT_QUANTUM, rounding=ROUND_HALF_EVEN)


def fits_amount(value: Any) -> bool:
    if not is_number(value):
        return False
    # magnitude first, quantize() cannot represent huge values
    if abs(Decimal(str(value))) >= _AMOUNT_LIMIT:
        return False
    return abs(to_amount(value)) < _AMOUNT_LIMIT


def fits_confirmations(value: Any) -> bool:
    return is_number(value) and MIN_CONFIRMATIONS_VALUE <= value <= MAX_CONFIRMATIONS_VALUE


def fits_identifier(value: Any) -> bool:
    return isinstance(value, str) and len(value.encode("utf-8")) <= MAX_IDENTIFIER_BYTES


_FIELD_CHECKS = (
    ("txid", fits_identifier),
    ("address", fits_identifier),
    ("amount", fits_amount),
    ("confirmations", fits_confirmations),
)


def validate(record: Any) -> None:
    if not isinstance(record, Mapping):
        raise TransactionValidationError(
            f"invalid transaction: expected an object, got {type(record).__name__}"
        )

    bad_fields = [name for name, fits in _FIELD_CHECKS if not fits(record.get(name))]

    if bad_fields:
        raise TransactionValidationError(
            f"invalid transaction: missing or malformed fields: {', '.join(bad_fields)}"
        )


def classify(record: Mapping[str, Any], min_confirmations: int) -> Classification:
    """Decide valid deposit vs. failed for a structurally valid record.

    Exactly one reason is reported, in priority order: category, amount,
    confirmations. The amount is judged as it would be stored, so a value
    that rounds to zero is not positive.
    """
    if record.get("category") != RECEIVE_CATEGORY:
        return Failed(FailureReason.INVALID_CATEGORY.value)
    if to_amount(record["amount"]) <= 0:
        return Failed(FailureReason.NON_POSITIVE_AMOUNT.value)
    if record["confirmations"] < min_confirmations:
        return Failed(FailureReason.INSUFFICIENT_CONFIRMATIONS.value)
    return Valid()


def check_duplicate(txid: str, seen: Container[str]) -> bool:
    return txid in seen
