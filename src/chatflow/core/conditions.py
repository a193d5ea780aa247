"""Condition evaluation for flow branching.

Groups are evaluated in list order and the first group that holds wins.
Within a group, comparisons combine with the group's logical operator.

Malformed comparisons (bad regex, non-numeric ordering) evaluate to False;
nothing in this module raises.
"""

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from chatflow.core.variables import VariableStore, strip_token
from chatflow.flow.models import (
    ConditionComparison,
    ConditionGroup,
    LogicalOperator,
)

logger = logging.getLogger(__name__)

_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# "/pattern/flags" literal form
_REGEX_LITERAL = re.compile(r"^/(.*)/([a-z]*)$", re.DOTALL)

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of evaluating a condition node's groups."""

    matched_group_id: str | None = None

    @property
    def matched(self) -> bool:
        return self.matched_group_id is not None


def _to_number(value: str) -> float | None:
    """Parse a plain decimal number; anything else is not a number."""
    value = value.strip()
    if not _NUMBER_PATTERN.match(value):
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _compile_regex(pattern: str) -> re.Pattern[str] | None:
    flags = 0
    literal = _REGEX_LITERAL.match(pattern)
    if literal:
        pattern = literal.group(1)
        for flag in literal.group(2):
            # JS-only flags (g, u, y) have no effect on a single search
            flags |= _REGEX_FLAGS.get(flag, 0)
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        logger.debug(f"Invalid regex in condition: {pattern!r} ({e})")
        return None


def _numeric(op: Callable[[float, float], bool]) -> Callable[[str, str], bool]:
    def compare(left: str, right: str) -> bool:
        left_num = _to_number(left)
        right_num = _to_number(right)
        if left_num is None or right_num is None:
            return False
        return op(left_num, right_num)

    return compare


def _regex(expected: bool) -> Callable[[str, str], bool]:
    def compare(left: str, right: str) -> bool:
        compiled = _compile_regex(right)
        if compiled is None:
            return False
        return (compiled.search(left) is not None) is expected

    return compare


_COMPARATORS: dict[str, Callable[[str, str], bool]] = {
    "equals": lambda left, right: left == right,
    "not_equals": lambda left, right: left != right,
    "contains": lambda left, right: right in left,
    "not_contains": lambda left, right: right not in left,
    "greater_than": _numeric(lambda left, right: left > right),
    "less_than": _numeric(lambda left, right: left < right),
    "starts_with": lambda left, right: left.startswith(right),
    "ends_with": lambda left, right: left.endswith(right),
    "matches_regex": _regex(True),
    "not_matches_regex": _regex(False),
}


def evaluate_comparison(comparison: ConditionComparison, store: VariableStore) -> bool:
    """Evaluate one comparison against the store.

    The variable side is the raw stored value; the comparison value is
    interpolated first, so "{{other}}" compares two variables.

    Examples:
        >>> store = VariableStore({"age": "17"})
        >>> evaluate_comparison(
        ...     ConditionComparison(variable_name="age", operator="greater_than", value="18"),
        ...     store,
        ... )
        False
    """
    raw = store.get(strip_token(comparison.variable_name))
    left = (raw or "").strip()

    if comparison.operator == "is_set":
        return left != ""
    if comparison.operator == "is_empty":
        return left == ""

    right = store.interpolate(comparison.value or "").strip()
    comparator = _COMPARATORS.get(comparison.operator)
    if comparator is None:
        return False
    return comparator(left, right)


def evaluate_group(group: ConditionGroup, store: VariableStore) -> bool:
    """Combine a group's comparisons with its logical operator.

    A group without comparisons never matches.
    """
    if not group.comparisons:
        return False
    results = (evaluate_comparison(c, store) for c in group.comparisons)
    if group.logical_operator == LogicalOperator.OR:
        return any(results)
    return all(results)


def evaluate_conditions(
    groups: Sequence[ConditionGroup], store: VariableStore
) -> ConditionResult:
    """Return the first group (in list order) that holds, or no match."""
    for group in groups:
        if evaluate_group(group, store):
            return ConditionResult(matched_group_id=group.id)
    return ConditionResult()
