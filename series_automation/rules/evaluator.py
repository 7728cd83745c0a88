"""
Rule Evaluator - Audience Predicate Evaluation

Pure evaluation of an audience rule tree against a visitor snapshot and
the trigger context that caused the evaluation.

Evaluation fails closed: an unknown operator, a type mismatch or a corrupt
tree evaluates to False instead of raising, so a bad rule can never turn
into "match everyone". The only collaborator is the EventCounter, which is
read (never written) for 'event'-sourced properties.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from ..exceptions import ValidationError
from ..integrations.interface import EventCounter
from ..state.models import TriggerContext, VisitorSnapshot, utc_now
from .models import AudienceCondition, AudienceGroup, EventFilter, parse_audience_rule

logger = logging.getLogger(__name__)


@dataclass
class EvaluationContext:
    visitor: VisitorSnapshot
    trigger: Optional[TriggerContext] = None
    event_counter: Optional[EventCounter] = None
    # Cache keyed by (event name, within_days) so one evaluation hits the log once per filter
    event_counts: Dict[Tuple[str, Optional[int]], int] = field(default_factory=dict)


def evaluate_rule(
    rule: Any,
    visitor: VisitorSnapshot,
    trigger: Optional[TriggerContext] = None,
    event_counter: Optional[EventCounter] = None,
) -> bool:
    """
    Evaluates 'rule' for 'visitor'. An absent rule is an unconditional match.

    Args:
        rule: Typed rule model, raw rule dict, or None.
        visitor: Visitor attribute snapshot.
        trigger: The trigger that caused this evaluation (exposed as system keys).
        event_counter: Source of event counts for 'event' properties.
    """
    if rule is None:
        return True

    try:
        parsed = parse_audience_rule(rule)
    except ValidationError as e:
        logger.warning(f"Audience rule is malformed, evaluating to False: {e}")
        return False

    context = EvaluationContext(visitor=visitor, trigger=trigger, event_counter=event_counter)
    try:
        return _evaluate(parsed, context)
    except Exception as e:
        logger.warning(f"Audience rule evaluation failed for visitor {visitor.id}, evaluating to False: {e}")
        return False


def _evaluate(rule: Any, context: EvaluationContext) -> bool:
    if isinstance(rule, AudienceGroup):
        return _evaluate_group(rule, context)
    if isinstance(rule, AudienceCondition):
        return _evaluate_condition(rule, context)
    return False


def _evaluate_group(group: AudienceGroup, context: EvaluationContext) -> bool:
    if not group.conditions:
        return True

    if group.operator == "and":
        return all(_evaluate(child, context) for child in group.conditions)
    if group.operator == "or":
        return any(_evaluate(child, context) for child in group.conditions)
    return False


def _evaluate_condition(condition: AudienceCondition, context: EvaluationContext) -> bool:
    prop = condition.property

    if prop.source == "event":
        if prop.event_filter is None:
            return False
        count = _get_event_count(prop.event_filter, context)
        return evaluate_event_count(count, prop.event_filter)

    if prop.source == "system":
        actual = get_system_property(context.visitor, prop.key, context.trigger)
    elif prop.source == "custom":
        actual = context.visitor.custom_attributes.get(prop.key)
    else:
        return False

    return evaluate_operator(condition.operator, actual, condition.value)


def _get_event_count(event_filter: EventFilter, context: EvaluationContext) -> int:
    key = (event_filter.name, event_filter.within_days)
    if key not in context.event_counts:
        if context.event_counter is None:
            context.event_counts[key] = 0
        else:
            since = None
            if event_filter.within_days is not None:
                since = utc_now() - timedelta(days=event_filter.within_days)
            context.event_counts[key] = context.event_counter.count_events(
                context.visitor.id, event_filter.name, since
            )
    return context.event_counts[key]


def evaluate_event_count(count: int, event_filter: EventFilter) -> bool:
    target = event_filter.count if event_filter.count is not None else 1
    operator = event_filter.count_operator or "at_least"

    if operator == "at_least":
        return count >= target
    if operator == "at_most":
        return count <= target
    if operator == "exactly":
        return count == target
    return False


def get_system_property(visitor: VisitorSnapshot, key: str, trigger: Optional[TriggerContext] = None) -> Any:
    device = visitor.device
    location = visitor.location

    system_properties = {
        "email": lambda: visitor.email,
        "name": lambda: visitor.name,
        "external_user_id": lambda: visitor.external_user_id,
        "first_seen_at": lambda: visitor.first_seen_at.timestamp() if visitor.first_seen_at else None,
        "last_seen_at": lambda: visitor.last_seen_at.timestamp() if visitor.last_seen_at else None,
        "referrer": lambda: visitor.referrer,
        "device": lambda: device.device_type if device else None,
        "browser": lambda: device.browser if device else None,
        "os": lambda: device.os if device else None,
        "country": lambda: location.country if location else None,
        "country_code": lambda: location.country_code if location else None,
        "city": lambda: location.city if location else None,
        "region": lambda: location.region if location else None,
        "trigger_source": lambda: trigger.source if trigger else None,
        "trigger_event_name": lambda: trigger.event_name if trigger else None,
        "trigger_attribute_key": lambda: trigger.attribute_key if trigger else None,
    }

    resolver = system_properties.get(key)
    return resolver() if resolver else None


# ==============================================================================
# Operators
# ==============================================================================

def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a number for comparisons
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if type(actual) is not type(expected):
        return False
    return actual == expected


def _is_unset(value: Any) -> bool:
    return value is None or value == ""


def evaluate_operator(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "is_set":
        return not _is_unset(actual)
    if operator == "is_not_set":
        return _is_unset(actual)
    if operator == "equals":
        return _strict_equals(actual, expected)
    if operator == "not_equals":
        return not _strict_equals(actual, expected)

    if operator in ("contains", "not_contains", "starts_with", "ends_with"):
        both_strings = isinstance(actual, str) and isinstance(expected, str)
        if not both_strings:
            # A missing value "does not contain" anything
            return operator == "not_contains"
        haystack, needle = actual.lower(), expected.lower()
        if operator == "contains":
            return needle in haystack
        if operator == "not_contains":
            return needle not in haystack
        if operator == "starts_with":
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if operator in ("greater_than", "less_than", "greater_than_or_equals", "less_than_or_equals"):
        if not (_is_number(actual) and _is_number(expected)):
            return False
        if operator == "greater_than":
            return actual > expected
        if operator == "less_than":
            return actual < expected
        if operator == "greater_than_or_equals":
            return actual >= expected
        return actual <= expected

    logger.warning(f"Unknown audience rule operator '{operator}', evaluating to False")
    return False
