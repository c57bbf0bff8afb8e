"""Deep merge of nested configuration structures.

Used by the mutation applier to fold a plugin's declared mutations into
the global and plugin-local configuration. Three strategies decide what
happens when both sides hold a value for the same key:

* ``override`` -- mappings merge recursively, anything else is replaced
  by the overlay value (sequences are atomic).
* ``append`` -- mappings merge recursively, sequences concatenate (base
  first, duplicates kept), anything else is replaced.
* ``keep`` -- mappings merge recursively, anything else keeps the base
  value. Overlay values only land on keys the base does not have.

Keys present only in the overlay are always adopted. Merging never
raises and never mutates its inputs.
"""

from __future__ import annotations

import copy
import enum
from typing import Any

from plugenv.values import ValueKind, kind_of


class MergeStrategy(str, enum.Enum):
    """Conflict-resolution policy for :func:`merge`."""

    OVERRIDE = "override"
    APPEND = "append"
    KEEP = "keep"


def parse_merge_strategy(value: str | MergeStrategy | None) -> MergeStrategy:
    """Parse a strategy name, defaulting to ``override`` for empty or unknown input.

    Args:
        value: Strategy name such as ``"append"`` (case and surrounding
            whitespace are ignored), an existing :class:`MergeStrategy`,
            or ``None``.

    Returns:
        The matching :class:`MergeStrategy`.
    """
    if isinstance(value, MergeStrategy):
        return value
    text = (value or "").strip().lower()
    try:
        return MergeStrategy(text)
    except ValueError:
        return MergeStrategy.OVERRIDE


def merge(
    base: dict[str, Any] | None,
    overlay: dict[str, Any] | None,
    strategy: MergeStrategy | str = MergeStrategy.OVERRIDE,
) -> dict[str, Any]:
    """Merge *overlay* into a copy of *base* and return the result.

    Args:
        base: The existing structure. ``None`` is treated as empty.
        overlay: The incoming structure. ``None`` is treated as empty.
        strategy: A :class:`MergeStrategy` or its name.

    Returns:
        A new mapping; key order follows *base*, with overlay-only keys
        appended in overlay order.

    Example::

        >>> merge({"a": [1]}, {"a": [2], "b": 3}, "append")
        {'a': [1, 2], 'b': 3}
    """
    strategy = parse_merge_strategy(strategy)
    result = copy.deepcopy(base) if isinstance(base, dict) else {}
    if not isinstance(overlay, dict):
        return result
    _merge_into(result, overlay, strategy)
    return result


def _merge_into(target: dict[str, Any], overlay: dict[str, Any], strategy: MergeStrategy) -> None:
    """Merge *overlay* into *target* in place. *target* must already be a private copy."""
    for key, incoming in overlay.items():
        if key not in target:
            target[key] = copy.deepcopy(incoming)
            continue
        target[key] = _merge_value(target[key], incoming, strategy)


def _merge_value(current: Any, incoming: Any, strategy: MergeStrategy) -> Any:
    current_kind = kind_of(current)
    incoming_kind = kind_of(incoming)

    if current_kind is ValueKind.MAPPING and incoming_kind is ValueKind.MAPPING:
        _merge_into(current, incoming, strategy)
        return current

    if current_kind is ValueKind.SEQUENCE and incoming_kind is ValueKind.SEQUENCE:
        if strategy is MergeStrategy.APPEND:
            return list(current) + copy.deepcopy(list(incoming))
        if strategy is MergeStrategy.KEEP:
            return current
        return copy.deepcopy(incoming)

    # Scalars or mismatched kinds.
    if strategy is MergeStrategy.KEEP:
        return current
    return copy.deepcopy(incoming)
