"""Condition evaluation and template resolution against an execution context.

Conditions gate steps at runtime::

    {"field": "lead.score", "operator": "greaterThan", "value": 50}

Supported operators:
- equals: Equal after coercion
- notEquals: Not equal after coercion
- greaterThan: Greater than (numeric when both sides are numbers, else lexical)
- lessThan: Less than (numeric when both sides are numbers, else lexical)
- contains: Substring, or list membership when the field holds a list

Templates use ``{{dotted.path}}`` placeholders. A path that cannot be
resolved becomes the supplied default or an empty string, never an error.
"""

import json
import re
from typing import Any, Dict, List, Mapping, Optional, Union

from taskgraph.core.logging import get_logger
from .models import Condition

logger = get_logger(__name__)


ConditionLike = Union[Condition, Dict[str, Any]]

TEMPLATE_PATTERN = re.compile(r'\{\{\s*([^{}]+?)\s*\}\}')

_MISSING = object()


def get_nested_value(data: Any, field_path: str, default: Any = None) -> Any:
    """Get a nested value using dot notation.

    Args:
        data: Mapping (or list) to extract value from
        field_path: Dot-separated path (e.g., "result.status", "items.0.name")
        default: Returned when any segment is missing

    Returns:
        Value at path or ``default`` if not found

    Examples:
        >>> get_nested_value({"result": {"status": "ok"}}, "result.status")
        'ok'
        >>> get_nested_value({"items": [{"name": "a"}]}, "items.0.name")
        'a'
    """
    if data is None or not field_path:
        return default

    current = data
    for part in field_path.split('.'):
        if isinstance(current, (list, tuple)):
            if not part.isdigit():
                return default
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        elif isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        else:
            return default

    return current


# =============================================================================
# TEXT / NUMBER COERCION
# =============================================================================

def to_text(value: Any) -> str:
    """Render a context value as text for templates and lexical comparison."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


def to_number(value: Any) -> Optional[float]:
    """Parse a value as a number, or None. Booleans are not numbers."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _compare(actual: Any, target: Any) -> int:
    """Three-way compare, numeric when both parse as numbers else lexical."""
    a_num, t_num = to_number(actual), to_number(target)
    if a_num is not None and t_num is not None:
        left, right = a_num, t_num
    else:
        left, right = to_text(actual), to_text(target)
    return (left > right) - (left < right)


# =============================================================================
# CONDITIONS
# =============================================================================

def evaluate_condition(condition: Optional[ConditionLike], context: Mapping[str, Any]) -> bool:
    """Evaluate a step condition against the execution context.

    Args:
        condition: Condition model or dict with field, operator, value
        context: Execution context mapping

    Returns:
        True if condition matches (or there is no condition), False otherwise
    """
    if not condition:
        return True

    if not isinstance(condition, Condition):
        condition = Condition.model_validate(condition)

    actual = get_nested_value(context, condition.field)
    target = condition.value
    result = _evaluate_operator(condition.operator, actual, target)

    logger.debug("Evaluated condition",
                 field=condition.field,
                 operator=condition.operator,
                 target=target,
                 actual=actual,
                 result=result)
    return result


def _evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    if operator == "equals":
        return _compare(actual, target) == 0

    elif operator == "notEquals":
        return _compare(actual, target) != 0

    elif operator == "greaterThan":
        return _compare(actual, target) > 0

    elif operator == "lessThan":
        return _compare(actual, target) < 0

    elif operator == "contains":
        if isinstance(actual, (list, tuple)):
            return any(_compare(item, target) == 0 for item in actual)
        if isinstance(actual, Mapping):
            return to_text(target) in actual
        return to_text(target) in to_text(actual)

    # Condition validates operators, so this only triggers for raw callers
    raise ValueError(f"Unsupported operator: {operator}")


def evaluate_conditions(conditions: List[ConditionLike], context: Mapping[str, Any],
                        logic: str = "and") -> bool:
    """Evaluate multiple conditions with AND/OR logic.

    Args:
        conditions: List of conditions
        context: Execution context mapping
        logic: "and" (all must match) or "or" (any must match)

    Returns:
        Combined evaluation result; an empty list always matches
    """
    if not conditions:
        return True

    results = [evaluate_condition(c, context) for c in conditions]

    if logic == "or":
        return any(results)
    return all(results)


# =============================================================================
# TEMPLATES
# =============================================================================

def render_template(text: str, context: Mapping[str, Any],
                    defaults: Optional[Mapping[str, Any]] = None) -> str:
    """Replace each ``{{path}}`` in text with its rendered context value.

    Absent paths use ``defaults[path]`` when given, otherwise ''.
    """
    defaults = defaults or {}

    def _replace(match: re.Match) -> str:
        path = match.group(1)
        value = get_nested_value(context, path, _MISSING)
        if value is _MISSING or value is None:
            value = defaults.get(path, "")
        return to_text(value)

    return TEMPLATE_PATTERN.sub(_replace, text)


def resolve_config(config: Any, context: Mapping[str, Any]) -> Any:
    """Resolve templates throughout a step config.

    A string consisting of exactly one placeholder keeps the resolved
    value's type (e.g. a dict or a number); other strings are rendered.
    """
    if isinstance(config, str):
        match = TEMPLATE_PATTERN.fullmatch(config.strip())
        if match:
            value = get_nested_value(context, match.group(1), None)
            return "" if value is None else value
        return render_template(config, context)

    if isinstance(config, Mapping):
        return {key: resolve_config(value, context) for key, value in config.items()}

    if isinstance(config, (list, tuple)):
        return [resolve_config(item, context) for item in config]

    return config
