"""
Predicate evaluation for automation rules

matches() is a pure function of (rule, target, now): it performs no I/O and
never mutates its arguments, so the scheduler and the tests can call it freely.
"""

import math
from datetime import datetime
from typing import Optional, Union

from torbox_rules.models import (
    AutomationTarget,
    Condition,
    ConditionField,
    Operator,
    Rule,
    RuleScope,
    utc_now,
)

Scalar = Union[int, float, str]


def parse_number(value) -> Optional[float]:
    """
    Parse a value as a finite number

    Returns None for booleans, blank strings, NaN/infinity and anything that
    does not parse cleanly.

    Examples:
        >>> parse_number('100')
        100.0
        >>> parse_number(' 1.5 ')
        1.5
        >>> parse_number('paused') is None
        True
    """
    if isinstance(value, bool) or value is None:
        return None

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text or '_' in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None

    return number if math.isfinite(number) else None


def _as_text(value) -> str:
    """Render a value the way it is shown to the user (100.0 -> '100')"""
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def compare_values(left: Scalar, right_raw: str, operator: Operator) -> bool:
    """
    Compare a target field value against a condition value

    The condition value is used as a number when it parses cleanly and the
    field value is numeric too; otherwise both sides are compared as
    lower-cased strings. Ordering operators never match non-numeric values.
    """
    operator = Operator(operator)
    right_num = parse_number(right_raw)
    left_num = parse_number(left)

    if right_num is not None and left_num is not None:
        l, r = left_num, right_num
        numeric = True
    else:
        l = _as_text(left).lower()
        r = right_num if right_num is not None else str(right_raw).strip().lower()
        numeric = False

    if operator is Operator.EQUALS:
        return l == r
    if operator is Operator.NOT_EQUALS:
        return l != r
    if operator is Operator.CONTAINS:
        return _as_text(r).lower() in _as_text(l).lower()

    if not numeric:
        return False

    if operator is Operator.GREATER_THAN:
        return l > r
    if operator is Operator.LESS_THAN:
        return l < r
    if operator is Operator.GREATER_THAN_OR_EQUAL:
        return l >= r
    if operator is Operator.LESS_THAN_OR_EQUAL:
        return l <= r

    return False


def age_in_days(target: AutomationTarget, now: datetime) -> Optional[int]:
    """Whole days since the download was created"""
    if target.created_at is None:
        return None
    return math.floor((now - target.created_at).total_seconds() / 86400)


def resolve_field(field: ConditionField, target: AutomationTarget, now: Optional[datetime] = None) -> Scalar:
    """Map a condition field to the target value it is compared against"""
    field = ConditionField(field)

    if field is ConditionField.PROGRESS:
        # Remote progress is a 0..1 fraction, conditions are written in percent
        return round(target.progress * 100, 4)
    if field is ConditionField.ETA:
        return target.eta
    if field in (ConditionField.CURRENT_DOWNLOAD_SPEED, ConditionField.AVERAGE_DOWNLOAD_SPEED):
        return target.download_speed
    if field in (ConditionField.DOWNLOAD_STALLED_TIME, ConditionField.UPLOAD_STALLED_TIME):
        return target.stalled_minutes
    if field is ConditionField.SEEDING_RATIO:
        return target.ratio
    if field is ConditionField.PEERS:
        return target.peers
    if field is ConditionField.AGE:
        age = age_in_days(target, now or utc_now())
        return '' if age is None else age
    if field is ConditionField.TRACKER:
        return target.tracker or ''
    if field is ConditionField.AVAILABILITY:
        return target.availability
    if field is ConditionField.STATUS:
        return target.download_state or ''
    if field is ConditionField.DOWNLOAD_TYPE:
        return target.source.value
    if field is ConditionField.NAME_CONTAINS:
        return target.name
    if field is ConditionField.SIZE:
        return target.size

    raise ValueError(f"Unhandled condition field: {field}")


def condition_holds(condition: Condition, target: AutomationTarget, now: Optional[datetime] = None) -> bool:
    """Evaluate one condition; a blank value always holds"""
    if not (condition.value or '').strip():
        return True
    return compare_values(resolve_field(condition.field, target, now), condition.value, condition.operator)


def matches(rule: Rule, target: AutomationTarget, now: Optional[datetime] = None) -> bool:
    """
    Check whether a target satisfies a rule

    Scope is checked first; then every condition must hold (logical AND).
    An empty condition list matches everything in scope.

    Args:
        rule: Rule to evaluate
        target: Normalized download snapshot
        now: Reference time for derived fields (defaults to current UTC time)

    Returns:
        True if the rule applies to the target
    """
    if rule.scope and rule.scope is not RuleScope.ALL and target.source.value != rule.scope.value:
        return False

    now = now or utc_now()
    return all(condition_holds(c, target, now) for c in rule.conditions)
