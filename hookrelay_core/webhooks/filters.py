"""
Subscription filter predicates.

Filters are compiled once, when a subscription is created, into a small tree
of :class:`FilterPredicate` leaves and :class:`FilterGroup` nodes. Invalid
filters raise :class:`InvalidFilter` at that point rather than at match time.

Accepted input forms::

    [{"path": "data.object.amount", "operator": "gte", "value": 1000}]
    [{"any": [{"path": "currency", "operator": "eq", "value": "usd"}, ...]}]
    {"currency": "usd", "status": ["paid", "open"]}       # legacy shorthand
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union

from .exceptions import InvalidFilter


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


def resolve_path(data: Any, path: str) -> Any:
    """Get nested value by dot path. Returns ``MISSING`` when absent."""
    value = data
    for part in path.split("."):
        if isinstance(value, dict):
            if part not in value:
                return MISSING
            value = value[part]
        elif isinstance(value, list):
            try:
                index = int(part)
            except ValueError:
                return MISSING
            if not 0 <= index < len(value):
                return MISSING
            value = value[index]
        else:
            return MISSING
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class FilterOperator(str, Enum):
    """Filter comparison operators."""

    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EXISTS = "exists"
    CONTAINS = "contains"


NUMERIC_OPERATORS = frozenset(
    {FilterOperator.GT, FilterOperator.GTE, FilterOperator.LT, FilterOperator.LTE}
)
SET_OPERATORS = frozenset({FilterOperator.IN, FilterOperator.NOT_IN})

_OPERATOR_ALIASES = {
    "=": FilterOperator.EQ,
    "==": FilterOperator.EQ,
    "!=": FilterOperator.NE,
    ">": FilterOperator.GT,
    ">=": FilterOperator.GTE,
    "<": FilterOperator.LT,
    "<=": FilterOperator.LTE,
}


@dataclass(frozen=True)
class FilterPredicate:
    """A single ``path <operator> value`` test against the payload."""

    path: str
    operator: FilterOperator
    value: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path.strip("."):
            raise InvalidFilter("Filter path must be a non-empty dot path")

        try:
            operator = _OPERATOR_ALIASES.get(self.operator) or FilterOperator(self.operator)
        except ValueError:
            raise InvalidFilter(
                f"Unknown filter operator: {self.operator}", {"path": self.path}
            ) from None
        object.__setattr__(self, "operator", operator)

        if operator in SET_OPERATORS:
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                raise InvalidFilter(
                    f"Operator '{operator.value}' requires a list value", {"path": self.path}
                )
            object.__setattr__(self, "value", tuple(self.value))
        elif operator in NUMERIC_OPERATORS:
            if not _is_number(self.value):
                raise InvalidFilter(
                    f"Operator '{operator.value}' requires a numeric value", {"path": self.path}
                )
        elif operator == FilterOperator.EXISTS:
            object.__setattr__(self, "value", True if self.value is None else bool(self.value))

    def evaluate(self, payload: Any) -> bool:
        actual = resolve_path(payload, self.path)
        op = self.operator

        if op == FilterOperator.EXISTS:
            return (actual is not MISSING) == self.value
        if actual is MISSING:
            # Absent fields only satisfy negative tests
            return op in (FilterOperator.NE, FilterOperator.NOT_IN)

        if op == FilterOperator.EQ:
            return actual == self.value
        if op == FilterOperator.NE:
            return actual != self.value
        if op == FilterOperator.IN:
            return actual in self.value
        if op == FilterOperator.NOT_IN:
            return actual not in self.value
        if op == FilterOperator.CONTAINS:
            if isinstance(actual, str):
                return isinstance(self.value, str) and self.value in actual
            if isinstance(actual, (list, tuple)):
                return self.value in actual
            if isinstance(actual, dict):
                return self.value in actual
            return False

        if not _is_number(actual):
            return False
        if op == FilterOperator.GT:
            return actual > self.value
        if op == FilterOperator.GTE:
            return actual >= self.value
        if op == FilterOperator.LT:
            return actual < self.value
        return actual <= self.value

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"path": self.path, "operator": self.operator.value, "value": value}


@dataclass(frozen=True)
class FilterGroup:
    """Combines child nodes with ``all`` (AND) or ``any`` (OR)."""

    mode: str
    children: Tuple["FilterNode", ...]

    def __post_init__(self) -> None:
        if self.mode not in ("all", "any"):
            raise InvalidFilter(f"Unknown filter group mode: {self.mode}")
        if not self.children:
            raise InvalidFilter(f"Filter group '{self.mode}' must not be empty")
        object.__setattr__(self, "children", tuple(self.children))

    def evaluate(self, payload: Any) -> bool:
        results = (child.evaluate(payload) for child in self.children)
        return all(results) if self.mode == "all" else any(results)

    def to_dict(self) -> Dict[str, Any]:
        return {self.mode: [child.to_dict() for child in self.children]}


FilterNode = Union[FilterPredicate, FilterGroup]


def parse_filter(definition: Any) -> FilterNode:
    """Compile one filter node from its dict form."""
    if isinstance(definition, (FilterPredicate, FilterGroup)):
        return definition
    if not isinstance(definition, dict):
        raise InvalidFilter(f"Filter must be an object, got {type(definition).__name__}")

    for mode in ("all", "any"):
        if mode in definition:
            children = definition[mode]
            if not isinstance(children, list):
                raise InvalidFilter(f"Filter group '{mode}' must be a list")
            return FilterGroup(mode, tuple(parse_filter(child) for child in children))

    path = definition.get("path", definition.get("field"))
    operator = definition.get("operator", definition.get("op", FilterOperator.EQ.value))
    if path is None:
        raise InvalidFilter("Filter is missing 'path'")
    return FilterPredicate(path, operator, definition.get("value"))


def _from_shorthand(definition: Dict[str, Any]) -> List[FilterNode]:
    nodes: List[FilterNode] = []
    for path, expected in definition.items():
        if isinstance(expected, list):
            nodes.append(FilterPredicate(path, FilterOperator.IN, expected))
        else:
            nodes.append(FilterPredicate(path, FilterOperator.EQ, expected))
    return nodes


def parse_filters(definition: Union[None, Dict[str, Any], Sequence[Any]]) -> List[FilterNode]:
    """
    Compile subscription filters.

    Args:
        definition: ``None``, a list of filter nodes, a single node dict, or the
            legacy ``{path: value}`` shorthand

    Returns:
        Compiled filter nodes, combined with AND at match time

    Raises:
        InvalidFilter: If any node is malformed
    """
    if not definition:
        return []
    if isinstance(definition, dict):
        if "path" in definition or "all" in definition or "any" in definition:
            return [parse_filter(definition)]
        return _from_shorthand(definition)
    if isinstance(definition, (list, tuple)):
        return [parse_filter(item) for item in definition]
    raise InvalidFilter(f"Unsupported filter definition: {type(definition).__name__}")


def matches_all(filters: Iterable[FilterNode], payload: Any) -> bool:
    """True when every filter accepts ``payload`` (vacuously true when empty)."""
    return all(node.evaluate(payload) for node in filters)
