"""Condition expressions for ``condition`` steps and trigger filters.

Expressions are written as plain dicts and compiled into a small AST:

    {"trigger.after.status": "resolved"}                 -> FieldEq
    {"variables.priority": {"$gt": 2, "$lte": 5}}        -> And(Gt, Lte)
    {"$or": [{"status": "open"}, {"status": "pending"}]} -> Or(FieldEq, FieldEq)

Several keys in one dict must all hold. Unknown operators are rejected
when the expression is compiled, so a typo like ``$gtt`` fails workflow
registration instead of evaluating to a silent pass.
"""

import operator
from dataclasses import dataclass
from typing import Any, Callable, Union

from core.exceptions import WorkflowDefinitionError
from workflow.variables import get_value_by_path


class ConditionError(WorkflowDefinitionError, ValueError):
    """Condition expression is malformed."""


class ConditionNode:
    """Base class for compiled condition nodes."""

    def evaluate(self, context: Any) -> bool:
        raise NotImplementedError


def _ordered(op: Callable[[Any, Any], bool], actual: Any, expected: Any) -> bool:
    try:
        return bool(op(actual, expected))
    except TypeError:
        # None vs number, str vs int...
        return False


@dataclass(frozen=True)
class FieldEq(ConditionNode):
    """Shorthand equality: ``{"path": value}``."""
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return get_value_by_path(context, self.path) == self.expected


@dataclass(frozen=True)
class Eq(ConditionNode):
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return get_value_by_path(context, self.path) == self.expected


@dataclass(frozen=True)
class Ne(ConditionNode):
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return get_value_by_path(context, self.path) != self.expected


@dataclass(frozen=True)
class Gt(ConditionNode):
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return _ordered(operator.gt, get_value_by_path(context, self.path), self.expected)


@dataclass(frozen=True)
class Gte(ConditionNode):
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return _ordered(operator.ge, get_value_by_path(context, self.path), self.expected)


@dataclass(frozen=True)
class Lt(ConditionNode):
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return _ordered(operator.lt, get_value_by_path(context, self.path), self.expected)


@dataclass(frozen=True)
class Lte(ConditionNode):
    path: str
    expected: Any

    def evaluate(self, context: Any) -> bool:
        return _ordered(operator.le, get_value_by_path(context, self.path), self.expected)


OPERATORS: dict[str, type] = {
    "$eq": Eq,
    "$ne": Ne,
    "$gt": Gt,
    "$gte": Gte,
    "$lt": Lt,
    "$lte": Lte,
}


@dataclass(frozen=True)
class And(ConditionNode):
    children: tuple

    def evaluate(self, context: Any) -> bool:
        return all(child.evaluate(context) for child in self.children)


@dataclass(frozen=True)
class Or(ConditionNode):
    children: tuple

    def evaluate(self, context: Any) -> bool:
        return any(child.evaluate(context) for child in self.children)


def parse_condition(expression: Union[dict, ConditionNode]) -> ConditionNode:
    """Compile a dict expression into a ConditionNode."""
    if isinstance(expression, ConditionNode):
        return expression
    if not isinstance(expression, dict):
        raise ConditionError(
            f"Condition must be an object, got {type(expression).__name__}"
        )

    nodes: list[ConditionNode] = []
    for key, value in expression.items():
        if key in ("$and", "$or"):
            if not isinstance(value, list):
                raise ConditionError(f"{key} expects a list of conditions")
            children = tuple(parse_condition(item) for item in value)
            nodes.append(And(children) if key == "$and" else Or(children))
        elif key.startswith("$"):
            raise ConditionError(f"Unknown operator: {key}")
        elif isinstance(value, dict):
            if not value:
                raise ConditionError(f"Empty operator object for '{key}'")
            for op, expected in value.items():
                node_cls = OPERATORS.get(op)
                if node_cls is None:
                    raise ConditionError(f"Unknown operator: {op}")
                nodes.append(node_cls(key, expected))
        else:
            nodes.append(FieldEq(key, value))

    if len(nodes) == 1:
        return nodes[0]
    return And(tuple(nodes))


def evaluate_condition(condition: Union[dict, ConditionNode], context: Any) -> bool:
    """Evaluate a condition (dict or compiled) against a context."""
    return parse_condition(condition).evaluate(context)
