"""Override resolution and write-time rule evaluation."""

from mapflow.rules.evaluator import MappedRow, WriteContext, apply_rules, parse_rule
from mapflow.rules.resolver import (
    EffectiveRuleSet,
    RuleOrigin,
    check_writer_agreement,
    resolve,
    resolve_for_mapping,
)

__all__ = [
    "EffectiveRuleSet",
    "MappedRow",
    "RuleOrigin",
    "WriteContext",
    "apply_rules",
    "check_writer_agreement",
    "parse_rule",
    "resolve",
    "resolve_for_mapping",
]
