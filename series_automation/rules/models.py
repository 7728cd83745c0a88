"""
Audience Rules - Rule Tree Models

An audience rule is a recursive boolean predicate over a visitor:
either a single Condition (leaf) or a Group combining nested rules
with AND / OR. The tree is a discriminated union on the 'type' field,
so nesting depth is unbounded.

Example:
    {
        "type": "group",
        "operator": "and",
        "conditions": [
            {"type": "condition",
             "property": {"source": "custom", "key": "plan"},
             "operator": "equals", "value": "pro"},
            {"type": "condition",
             "property": {"source": "event", "key": "checkout",
                          "event_filter": {"name": "checkout", "count_operator": "at_least", "count": 2}},
             "operator": "is_set"}
        ]
    }
"""

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "greater_than_or_equals",
    "less_than_or_equals",
    "is_set",
    "is_not_set",
]

PropertySource = Literal["system", "custom", "event"]

CountOperator = Literal["at_least", "at_most", "exactly"]

ConditionValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]


class EventFilter(BaseModel):
    """
    How an 'event' property is counted.

    Attributes:
        name: Event name to count for the visitor.
        count_operator: Comparison against 'count' (defaults to at_least).
        count: Target count (defaults to 1).
        within_days: Only count events newer than this many days.
    """
    name: str
    count_operator: Optional[CountOperator] = None
    count: Optional[int] = None
    within_days: Optional[int] = None


class PropertyReference(BaseModel):
    source: PropertySource
    key: str
    event_filter: Optional[EventFilter] = None


class AudienceCondition(BaseModel):
    type: Literal["condition"] = "condition"
    property: PropertyReference
    operator: ConditionOperator
    value: Optional[ConditionValue] = None


class AudienceGroup(BaseModel):
    type: Literal["group"] = "group"
    operator: Literal["and", "or"]
    conditions: List["AudienceRule"] = Field(default_factory=list)


AudienceRule = Annotated[Union[AudienceCondition, AudienceGroup], Field(discriminator="type")]

AudienceGroup.model_rebuild()

_rule_adapter: TypeAdapter = TypeAdapter(AudienceRule)


def parse_audience_rule(data: Any) -> Union[AudienceCondition, AudienceGroup]:
    """
    Parse a raw rule tree (dict / JSON-compatible) into typed models.
    Raises ValidationError if the tree is malformed.
    """
    if isinstance(data, (AudienceCondition, AudienceGroup)):
        return data
    try:
        return _rule_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid audience rule: {e.errors(include_url=False)}") from e


def validate_audience_rule(data: Any) -> bool:
    """Returns True if 'data' is a well-formed rule tree."""
    try:
        parse_audience_rule(data)
    except ValidationError:
        return False
    return True


def dump_audience_rule(rule: Optional[Union[AudienceCondition, AudienceGroup]]) -> Optional[dict]:
    if rule is None:
        return None
    return rule.model_dump(mode="json", exclude_none=True)
