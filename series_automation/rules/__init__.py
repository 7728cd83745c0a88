"""
Rules Layer - Audience Rule Trees

Defines the recursive audience rule tree and its fail-closed evaluator,
used for entry, exit and goal gating and by rule blocks.
"""

from series_automation.rules.models import (
    AudienceCondition,
    AudienceGroup,
    AudienceRule,
    EventFilter,
    PropertyReference,
    parse_audience_rule,
    validate_audience_rule,
)
from series_automation.rules.evaluator import evaluate_rule

__all__ = [
    "AudienceCondition",
    "AudienceGroup",
    "AudienceRule",
    "EventFilter",
    "PropertyReference",
    "parse_audience_rule",
    "validate_audience_rule",
    "evaluate_rule",
]
