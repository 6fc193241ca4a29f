"""
Deterministic hashing: canonical serialization for idempotency keys and
audit fingerprints.

Canonicalization algorithm (version ``CANONICALIZATION_VERSION``):

  1. Mappings: keys must be ``str``; entries are emitted sorted by the UTF-8
     bytes of the key (byte-wise ascending).
  2. ``None`` and the ``MISSING`` sentinel both become JSON ``null``.
  3. Lists and tuples keep their order.  Sets and frozensets are emitted as
     lists sorted by the canonical JSON of each element.
  4. ``bool`` stays ``true``/``false``.  ``int`` is emitted in base 10.
  5. ``float``: integral values below 1e21 are emitted as integers
     (``1.0`` → ``1``); everything else uses the shortest round-trip digits,
     positional from 1e-6 up to 1e21 (``0.00001``) and with an
     ECMAScript-style exponent outside it (``1.5e-7``, ``1e+21``).
     NaN and infinities are rejected.
  6. ``datetime`` → UTC ISO-8601 with millisecond precision and ``Z``
     (naive datetimes are taken as UTC); ``date`` → ``YYYY-MM-DD``.
  7. Enums collapse to their ``value``; pydantic models to ``model_dump()``;
     dataclasses to a mapping of their fields.
  8. Self-referencing structures raise ``CyclicStructureError``.

``content_hash`` is SHA-256 over the UTF-8 encoding of the canonical JSON, so
the same logical value hashes identically in any process or language that
follows the rules above.  Generation-time metadata (``created_at`` and the
like) must be excluded from the hashed payload by the caller.

Usage::

    h = content_hash({"b": 1, "a": [1.0, None]})
    key = short_id(h)
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import math
from collections.abc import Mapping
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from driftwarden.core.constants import SHORT_ID_LENGTH
from driftwarden.core.exceptions import CyclicStructureError, ValidationError

CANONICALIZATION_VERSION = "1"

NormalizedValue = None | bool | int | float | str | list[Any] | dict[str, Any]


class _Missing:
    """Marker for an explicitly absent value; canonicalizes to null."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


# ---------------------------------------------------------------------------
# Canonicalize
# ---------------------------------------------------------------------------


def canonicalize(value: Any) -> NormalizedValue:
    """Return the normalized form of *value* (see module docstring)."""
    return _normalize(value, set())


def _normalize(value: Any, active: set[int]) -> NormalizedValue:
    if value is None or value is MISSING:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, Enum):
        return _normalize(value.value, active)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return _normalize_float(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValidationError(f"Cannot canonicalize non-finite decimal {value!r}")
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return _format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()

    marker = id(value)
    if marker in active:
        raise CyclicStructureError(
            f"Cannot canonicalize cyclic structure (type {type(value).__name__})"
        )
    active.add(marker)
    try:
        if isinstance(value, Mapping):
            return _normalize_mapping(value, active)
        if isinstance(value, (list, tuple)):
            return [_normalize(item, active) for item in value]
        if isinstance(value, (set, frozenset)):
            items = [_normalize(item, active) for item in value]
            return sorted(items, key=_dumps)
        if hasattr(value, "model_dump") and callable(value.model_dump):
            return _normalize(value.model_dump(mode="python"), active)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            fields = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
            return _normalize_mapping(fields, active)
    finally:
        active.discard(marker)

    raise ValidationError(f"Cannot canonicalize value of type {type(value).__name__}")


def _normalize_mapping(value: Mapping[Any, Any], active: set[int]) -> dict[str, Any]:
    for key in value:
        if not isinstance(key, str):
            raise ValidationError(
                f"Mapping keys must be strings for canonicalization (got {type(key).__name__})"
            )
    keys = sorted(value.keys(), key=lambda k: k.encode("utf-8"))
    return {k: _normalize(value[k], active) for k in keys}


def _normalize_float(value: float) -> int | float:
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f"Cannot canonicalize non-finite float {value!r}")
    if value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    millis = value.microsecond // 1000
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


def _format_float(value: float) -> str:
    """
    Shortest round-trip digits laid out the way JavaScript prints numbers:
    positional for 1e-6 <= |x| < 1e21, ``d.ddde±n`` outside that range.
    """
    sign, digit_tuple, exponent = Decimal(repr(value)).as_tuple()
    digits = "".join(str(d) for d in digit_tuple)
    k = len(digits)
    n = int(exponent) + k  # decimal point position relative to the digits
    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        text = "0." + "0" * -n + digits
    else:
        e = n - 1
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        text = f"{mantissa}e{'+' if e > 0 else '-'}{abs(e)}"
    return f"-{text}" if sign else text


# ---------------------------------------------------------------------------
# Serialize
# ---------------------------------------------------------------------------


def _dumps(value: NormalizedValue) -> str:
    """Serialize an already-normalized value to canonical JSON."""
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, list):
        return "[" + ",".join(_dumps(item) for item in value) + "]"
    if isinstance(value, dict):
        return (
            "{"
            + ",".join(json.dumps(k, ensure_ascii=False) + ":" + _dumps(v) for k, v in value.items())
            + "}"
        )
    raise ValidationError(f"Not a normalized value: {type(value).__name__}")


def canonical_json(value: Any) -> str:
    """Canonical JSON text of *value*: sorted keys, compact separators."""
    return _dumps(canonicalize(value))


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of *value*."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def short_id(hash_value: str, n: int = SHORT_ID_LENGTH) -> str:
    """Truncated hash for display (``n`` between 6 and 64 characters)."""
    if not (6 <= n <= 64):
        raise ValidationError(f"short_id length must be between 6 and 64 (got {n})")
    if len(hash_value) < n:
        raise ValidationError(f"hash {hash_value!r} is shorter than {n} characters")
    return hash_value[:n]
