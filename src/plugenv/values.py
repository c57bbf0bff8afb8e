"""Tagged classification of decoded JSON/YAML values.

Config files and stdio envelopes arrive as loosely-typed Python data.
Rather than branching on ``isinstance`` all over the code base, callers
classify values with :func:`kind_of` and convert them with the small
helpers below. Merge logic in :mod:`plugenv.merge` switches on
:class:`ValueKind` so every combination of shapes is handled
explicitly.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Union

JsonValue = Union[None, bool, int, float, str, list, dict]


class ValueKind(str, enum.Enum):
    """The six shapes a decoded document value can take."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    SEQUENCE = "sequence"
    MAPPING = "mapping"


def kind_of(value: Any) -> ValueKind:
    """Classify *value*.

    ``bool`` is checked before numbers because it subclasses ``int``.
    Tuples count as sequences. Anything unrecognised (dates decoded by
    YAML, for example) is treated as a string scalar.
    """
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.SEQUENCE
    if isinstance(value, dict):
        return ValueKind.MAPPING
    return ValueKind.STRING


def is_scalar(value: Any) -> bool:
    """Return True for null, bool, number and string values."""
    return kind_of(value) not in (ValueKind.SEQUENCE, ValueKind.MAPPING)


def as_mapping(value: Any) -> dict[str, Any]:
    """Return *value* when it is a mapping, otherwise an empty dict."""
    return value if kind_of(value) is ValueKind.MAPPING else {}


def as_sequence(value: Any) -> list[Any]:
    """Return *value* as a list when it is a sequence, otherwise an empty list."""
    return list(value) if kind_of(value) is ValueKind.SEQUENCE else []


def stringify(value: Any) -> str:
    """Render a value as text: strings as-is, ``None`` as empty, others as JSON."""
    kind = kind_of(value)
    if kind is ValueKind.NULL:
        return ""
    if kind is ValueKind.STRING:
        return str(value)
    return json.dumps(value, ensure_ascii=False, default=str)


def as_str_list(value: Any) -> list[str]:
    """Convert a sequence into a list of strings; a lone scalar becomes one item."""
    kind = kind_of(value)
    if kind is ValueKind.NULL:
        return []
    if kind is ValueKind.SEQUENCE:
        return [stringify(item) for item in value]
    return [stringify(value)]
