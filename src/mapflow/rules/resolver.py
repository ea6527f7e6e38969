"""
Override Resolver - merge a target's default rules with a mapping's overrides.

Resolution policy, per column:

1. the mapping's override, if it defines one
2. otherwise the target table's default
3. otherwise the column is absent (the connector/store decides)

Rules are opaque strings here.  The resolver never parses them; syntax is
checked where rules are produced (``model.validation``) and meaning is
applied where rows are written (``rules.evaluator``).  The only failure is
an override naming a column the target does not have.

Design Principles:
- Pure functions, no I/O, deterministic
- Same inputs produce the same rule set on every run
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from mapflow.core.errors import ConflictingRuleError
from mapflow.core.logging import get_logger
from mapflow.model.entities import Mapping as MappingEntity
from mapflow.model.entities import Table

logger = get_logger(__name__)


class RuleOrigin(str, Enum):
    """Where an effective rule came from."""

    OVERRIDE = "override"
    DEFAULT = "default"


@dataclass(frozen=True)
class EffectiveRuleSet(Mapping[str, str]):
    """The per-column rule set a step writes with.

    Behaves as a read-only ``Mapping[str, str]``; ``origins`` records
    whether each rule came from the override or the default set.
    """

    rules: Mapping[str, str] = field(default_factory=dict)
    origins: Mapping[str, RuleOrigin] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))
        object.__setattr__(self, "origins", MappingProxyType(dict(self.origins)))

    def __getitem__(self, column: str) -> str:
        return self.rules[column]

    def __iter__(self) -> Iterator[str]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def __hash__(self) -> int:
        return hash(tuple(sorted(self.rules.items())))

    def origin(self, column: str) -> RuleOrigin | None:
        return self.origins.get(column)

    def to_dict(self) -> dict[str, Any]:
        return {
            column: {"rule": rule, "origin": self.origins[column].value}
            for column, rule in self.rules.items()
        }


def resolve(
    defaults: Mapping[str, str],
    overrides: Mapping[str, str],
    target_columns: Iterable[str] | None = None,
) -> EffectiveRuleSet:
    """Merge *defaults* and *overrides* into one effective rule set.

    Args:
        defaults: The target table's default rules.
        overrides: The mapping's override rules.
        target_columns: The target schema.  When given, every override
            column must be on it.

    Raises:
        ConflictingRuleError: An override names a column not on the target.

    Example:
        >>> rs = resolve({"updated_at": "now"}, {"updated_at": "source.modified_ts"})
        >>> rs["updated_at"]
        'source.modified_ts'
    """
    if target_columns is not None:
        known = set(target_columns)
        unknown = [column for column in overrides if column not in known]
        if unknown:
            raise ConflictingRuleError(
                f"Override rules reference columns not on the target: {', '.join(sorted(unknown))}",
                columns=unknown,
            )

    rules: dict[str, str] = {}
    origins: dict[str, RuleOrigin] = {}
    for column, rule in defaults.items():
        rules[column] = rule
        origins[column] = RuleOrigin.DEFAULT
    for column, rule in overrides.items():
        rules[column] = rule
        origins[column] = RuleOrigin.OVERRIDE
    return EffectiveRuleSet(rules=rules, origins=origins)


def resolve_for_mapping(mapping: MappingEntity, target: Table) -> EffectiveRuleSet:
    """Resolve *mapping*'s effective rules against its *target* table.

    The target schema is re-checked here even though validation already
    ran; the definition may have been edited since.
    """
    if target.id != mapping.target:
        raise ConflictingRuleError(
            f"Mapping '{mapping.id}' targets '{mapping.target}', not '{target.id}'"
        ).with_context(entity_id=mapping.id)
    try:
        rule_set = resolve(target.default_rules, mapping.overrides, target.column_names)
    except ConflictingRuleError as e:
        raise e.with_context(entity_id=mapping.id)
    logger.debug(
        "resolver.resolved",
        mapping_id=mapping.id,
        target=target.id,
        overrides=sum(1 for o in rule_set.origins.values() if o is RuleOrigin.OVERRIDE),
        rules=len(rule_set),
    )
    return rule_set


def check_writer_agreement(writers: Iterable[tuple[str, str, EffectiveRuleSet]]) -> None:
    """Reject a flow whose writers of one target disagree on a column.

    Several steps of a flow may write the same target table only if, for
    every column both define a rule for, the rules are identical.

    Args:
        writers: ``(step_id, target_table_id, rule_set)`` triples.

    Raises:
        ConflictingRuleError: Naming the target, the steps and the columns.
    """
    by_target: dict[str, list[tuple[str, EffectiveRuleSet]]] = {}
    for step_id, target_id, rule_set in writers:
        by_target.setdefault(target_id, []).append((step_id, rule_set))

    for target_id, entries in by_target.items():
        for i, (step_a, rules_a) in enumerate(entries):
            for step_b, rules_b in entries[i + 1:]:
                clashing = [
                    column
                    for column in rules_a
                    if column in rules_b and rules_a[column] != rules_b[column]
                ]
                if clashing:
                    raise ConflictingRuleError(
                        f"Steps '{step_a}' and '{step_b}' both write '{target_id}' "
                        f"with different rules for: {', '.join(sorted(clashing))}",
                        columns=clashing,
                    ).with_context(entity_id=target_id)


__all__ = [
    "EffectiveRuleSet",
    "RuleOrigin",
    "check_writer_agreement",
    "resolve",
    "resolve_for_mapping",
]
