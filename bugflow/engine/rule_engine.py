# bugflow/engine/rule_engine.py

import json
import logging
import re
from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Optional

from bugflow.dsl.dsl_model import (
    Condition, ConditionLogic, ConditionOperator,
    ValidationRule, ValidationType, ValidationResult,
)
from bugflow.engine.path_utils import get_value_by_path

logger = logging.getLogger(__name__)


# ─────────────────────────────── value coercion ────────────────────────────────

def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def are_equal(actual: Any, expected: Any) -> bool:
    if actual is None and expected is None:
        return True
    if actual is None or expected is None:
        return False
    a_num, e_num = _number(actual), _number(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    if isinstance(actual, bool) or isinstance(expected, bool):
        return _text(actual).lower() == _text(expected).lower()
    return _text(actual) == _text(expected)


def compare_values(actual: Any, expected: Any) -> int:
    if actual is None and expected is None:
        return 0
    if actual is None:
        return -1
    if expected is None:
        return 1

    a_num, e_num = _number(actual), _number(expected)
    if a_num is not None and e_num is not None:
        return (a_num > e_num) - (a_num < e_num)

    if isinstance(actual, (datetime, date)) and isinstance(expected, (datetime, date)):
        return (actual > expected) - (actual < expected)

    # ordinal, case-insensitive via upper case
    a_txt, e_txt = _text(actual).upper(), _text(expected).upper()
    return (a_txt > e_txt) - (a_txt < e_txt)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(actual, list):
        return any(are_equal(item, expected) or (_text(item) or "").casefold() == _text(expected).casefold()
                   for item in actual)
    return _text(expected).casefold() in _text(actual).casefold()


def _starts_with(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    return _text(actual).casefold().startswith(_text(expected).casefold())


def _ends_with(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    return _text(actual).casefold().endswith(_text(expected).casefold())


def _is_in(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(expected, (list, tuple)):
        return any(are_equal(actual, item) for item in expected)
    if isinstance(expected, str):
        return any(are_equal(actual, part.strip()) for part in expected.split(","))
    return False


_OPERATORS = {
    ConditionOperator.EQUALS: are_equal,
    ConditionOperator.NOT_EQUALS: lambda a, e: not are_equal(a, e),
    ConditionOperator.GREATER_THAN: lambda a, e: compare_values(a, e) > 0,
    ConditionOperator.LESS_THAN: lambda a, e: compare_values(a, e) < 0,
    ConditionOperator.GREATER_THAN_OR_EQUAL: lambda a, e: compare_values(a, e) >= 0,
    ConditionOperator.LESS_THAN_OR_EQUAL: lambda a, e: compare_values(a, e) <= 0,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, e: not _contains(a, e),
    ConditionOperator.STARTS_WITH: _starts_with,
    ConditionOperator.ENDS_WITH: _ends_with,
    ConditionOperator.IN: _is_in,
    ConditionOperator.NOT_IN: lambda a, e: not _is_in(a, e),
    ConditionOperator.IS_NULL: lambda a, e: a is None,
    ConditionOperator.IS_NOT_NULL: lambda a, e: a is not None,
}


# ─────────────────────────────── rule engine ────────────────────────────────

class RuleEngine:
    """Evaluates transition conditions and step validation rules against a context."""

    def evaluate_condition(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        try:
            actual = get_value_by_path(context, condition.field)
            op = _OPERATORS.get(condition.operator)
            result = bool(op(actual, condition.value)) if op else False
            logger.debug(
                f"[evaluate_condition] {condition.field} {condition.operator.value} "
                f"{condition.value!r} = {result} (actual: {actual!r})"
            )
            return result
        except Exception:
            logger.exception(
                f"[evaluate_condition] error evaluating {condition.condition_id or '?'}: "
                f"{condition.field} {condition.operator.value} {condition.value!r}"
            )
            return False

    def evaluate_conditions(self, conditions: Iterable[Condition], context: Mapping[str, Any]) -> bool:
        """
        Left-to-right combination: a condition tagged And folds into the running
        group of its predecessor, one tagged Or opens a new group. True when any
        group is true. The first condition's tag is ignored; no conditions is true.
        """
        groups: List[bool] = []
        for condition in conditions:
            result = self.evaluate_condition(condition, context)
            if not groups:
                groups.append(result)
            elif condition.logic == ConditionLogic.AND:
                groups[-1] = groups[-1] and result
            else:
                groups.append(result)
        if not groups:
            return True
        return any(groups)

    def explain_conditions(self, conditions: Iterable[Condition], context: Mapping[str, Any]) -> List[dict]:
        """Per-condition diagnostics for the audit trail."""
        return [
            {
                "conditionId": c.condition_id,
                "field": c.field,
                "operator": c.operator.value,
                "value": c.value,
                "logic": c.logic.value,
                "actual": get_value_by_path(context, c.field),
                "result": self.evaluate_condition(c, context),
            }
            for c in conditions
        ]

    # ─────────────────────────── input validation ───────────────────────────

    def validate_input(self, rules: Iterable[ValidationRule], data: Mapping[str, Any]) -> ValidationResult:
        result = ValidationResult()
        for rule in rules:
            value = None
            try:
                value = get_value_by_path(data, rule.field)
                ok = self._check_rule(rule, value)
            except Exception:
                logger.exception(f"[validate_input] error validating rule {rule.rule_id} for field {rule.field}")
                result.add_error(rule.field, "VALIDATION_ERROR", "An error occurred during validation")
                continue
            if not ok:
                result.add_error(
                    rule.field,
                    rule.type.value,
                    rule.error_message or f"Validation failed for field {rule.field}",
                    value,
                )
        return result

    def _check_rule(self, rule: ValidationRule, value: Any) -> bool:
        if rule.type == ValidationType.REQUIRED:
            if isinstance(value, (list, dict)):
                return len(value) > 0
            return value is not None and bool(_text(value).strip())
        if rule.type == ValidationType.MIN_LENGTH:
            return self._min_length(value, rule.value)
        if rule.type == ValidationType.MAX_LENGTH:
            return self._max_length(value, rule.value)
        if rule.type == ValidationType.PATTERN:
            return self._pattern(value, rule.value)
        if rule.type == ValidationType.RANGE:
            return self._range(value, rule.value)
        if rule.type == ValidationType.CUSTOM:
            logger.debug(f"[validate_input] custom rule {rule.rule_id} for {rule.field} passes")
            return True
        return True

    @staticmethod
    def _int_bound(bound: Any) -> Optional[int]:
        try:
            return int(str(bound).strip())
        except (TypeError, ValueError):
            return None

    def _min_length(self, value: Any, bound: Any) -> bool:
        if value is None:
            return False
        n = self._int_bound(bound)
        return n is None or len(_text(value)) >= n

    def _max_length(self, value: Any, bound: Any) -> bool:
        if value is None:
            return True
        n = self._int_bound(bound)
        return n is None or len(_text(value)) <= n

    def _pattern(self, value: Any, pattern: Any) -> bool:
        if value is None:
            return False
        if not pattern:
            return True
        try:
            return re.search(str(pattern), _text(value)) is not None
        except re.error:
            logger.error(f"[validate_input] invalid regex pattern: {pattern!r}")
            return False

    def _range(self, value: Any, bounds: Any) -> bool:
        actual = _number(value)
        if actual is None:
            return False
        if bounds is None or not str(bounds).strip():
            return True
        parts = [p.strip() for p in str(bounds).split(",")]
        limits = [_number(p) for p in parts]
        if len(parts) == 1 and limits[0] is not None:
            return actual >= limits[0]
        if len(parts) == 2 and None not in limits:
            return limits[0] <= actual <= limits[1]
        return True
