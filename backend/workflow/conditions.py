"""Condition Evaluator.

Resolves a condition's dot path against a run's ExecutionContext and
applies a type-aware comparison. Evaluation is fail-closed: a path that
does not resolve makes the condition false, it never raises to the
caller. Multiple conditions on one step combine with AND.

Operators:
- "=" / "!="          equality across primitives (bools never equal numbers)
- ">" "<" ">=" "<="   numeric comparison only; other types are not satisfied
- "in" / "not_in"     membership of the value in the condition's list
- "contains"          substring, list element or map key
- "exists"            path resolves to a non-null value
"""

from numbers import Real
from typing import Any, Optional, Sequence

import structlog

from core.exceptions import ConditionUnresolvedError
from workflow.context import MISSING, ExecutionContext
from workflow.definition import Condition, ConditionOperator

logger = structlog.get_logger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _equal(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return a == b
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _member(item: Any, collection: Any) -> bool:
    if isinstance(collection, (list, tuple, set, frozenset)):
        return any(_equal(item, c) for c in collection)
    if isinstance(collection, str) and isinstance(item, str):
        return item in collection
    return False


def compare(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """Apply one operator. Shared by step conditions and threshold triggers."""
    op = ConditionOperator(operator)

    if op is ConditionOperator.EXISTS:
        return actual is not MISSING and actual is not None
    if actual is MISSING:
        return False

    if op is ConditionOperator.EQ:
        return _equal(actual, expected)
    if op is ConditionOperator.NE:
        return not _equal(actual, expected)

    if op in (ConditionOperator.GT, ConditionOperator.LT, ConditionOperator.GE, ConditionOperator.LE):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if op is ConditionOperator.GT:
            return actual > expected
        if op is ConditionOperator.LT:
            return actual < expected
        if op is ConditionOperator.GE:
            return actual >= expected
        return actual <= expected

    if op is ConditionOperator.IN:
        return _member(actual, expected)
    if op is ConditionOperator.NOT_IN:
        if not isinstance(expected, (list, tuple, set, frozenset, str)):
            return False
        return not _member(actual, expected)

    if op is ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple, set, frozenset)):
            return any(_equal(item, expected) for item in actual)
        if isinstance(actual, dict):
            return isinstance(expected, str) and expected in actual
        return False

    return False


class ConditionEvaluator:
    """Evaluates step conditions against an execution context."""

    @staticmethod
    def resolve(path: str, context: ExecutionContext) -> Any:
        """Resolve a path or raise ConditionUnresolvedError."""
        value = context.resolve(path)
        if value is MISSING:
            raise ConditionUnresolvedError(path)
        return value

    @classmethod
    def evaluate(cls, condition: Condition, context: ExecutionContext) -> bool:
        """Evaluate one condition. Never raises."""
        try:
            actual = cls.resolve(condition.field, context)
        except ConditionUnresolvedError as e:
            logger.debug("Condition path unresolved", run_id=context.run_id, path=e.path)
            return False
        try:
            return compare(actual, condition.operator, condition.value)
        except (TypeError, ValueError) as e:
            logger.warning(
                "Condition comparison failed",
                run_id=context.run_id,
                field=condition.field,
                operator=condition.operator.value,
                error=str(e),
            )
            return False

    @classmethod
    def evaluate_all(
        cls,
        conditions: Optional[Sequence[Condition]],
        context: ExecutionContext,
    ) -> tuple[bool, Optional[str]]:
        """AND all conditions.

        Returns:
            (met, reason) where reason describes the first unmet condition.
        """
        for condition in conditions or ():
            if not cls.evaluate(condition, context):
                return False, (
                    f"condition not met: {condition.field} {condition.operator.value} {condition.value!r}"
                )
        return True, None
