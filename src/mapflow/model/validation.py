"""
Definition validation - run the entity invariants without persisting.

``validate(entity, store)`` returns structured :class:`Violation` records
instead of raising, so the editor/API layer can show every problem at
once.  The same checks guard the engine: a flow that fails validation is
rejected before any Execution is recorded.

Checks by entity:

==============  ============================================================
Table           unique columns; target default rules only on schema columns;
                rule syntax; location connection exists
Mapping         non-empty sources; tables exist; target is a target table
                and not among the sources; override columns on the target;
                rule syntax; join/filter/select logic
Step            mapping exists; every ``${param}`` bound; no self-dependency
Flow            steps exist; explicit deps inside the flow; acyclic; writers
                of one target agree; trigger well-formed (cron, watch)
Connection      required configuration keys present
==============  ============================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from croniter import croniter

from mapflow.core.errors import (
    ConflictingRuleError,
    CyclicFlowError,
    DefinitionError,
    MissingDependencyError,
    RuleExpressionError,
    ValidationFailedError,
)
from mapflow.orchestration.graph import StepIO, plan_steps
from mapflow.orchestration.logic import check_logic, required_params
from mapflow.rules.evaluator import parse_rule
from mapflow.rules.resolver import check_writer_agreement, resolve

from .entities import (
    ConnectionKind,
    ConnectionSpec,
    Entity,
    Flow,
    Mapping,
    Step,
    Table,
    TableKind,
    TriggerKind,
)
from .store import MetadataStore

REQUIRED_CONFIG: dict[ConnectionKind, tuple[str, ...]] = {
    ConnectionKind.DATABASE: ("url",),
    ConnectionKind.OBJECT_STORE: ("bucket",),
    ConnectionKind.FTP: ("host",),
    ConnectionKind.LOCAL_FILESYSTEM: ("root",),
}


@dataclass(frozen=True)
class Violation:
    """One broken invariant."""

    code: str
    message: str
    entity_type: str
    entity_id: str
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
        }
        if self.field:
            result["field"] = self.field
        return result


class _Collector:
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.violations: list[Violation] = []

    def add(self, code: str, message: str, field: str | None = None) -> None:
        self.violations.append(Violation(code, message, self.entity_type, self.entity_id, field))


def _check_rules(out: _Collector, rules: dict[str, str], field_name: str) -> None:
    for column, expression in rules.items():
        try:
            parse_rule(expression)
        except RuleExpressionError as e:
            out.add("invalid_rule", f"{column}: {e.message}", f"{field_name}.{column}")


def validate_table(table: Table, store: MetadataStore) -> list[Violation]:
    out = _Collector("table", table.id)
    if not table.id:
        out.add("empty_id", "Table id must not be empty", "id")

    names = table.column_names
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        out.add("duplicate_column", f"Duplicate columns: {', '.join(duplicates)}", "columns")

    if table.kind == TableKind.TARGET:
        unknown = sorted(c for c in table.default_rules if c not in names)
        if unknown:
            out.add(
                "unknown_rule_column",
                f"Default rules reference columns not in the schema: {', '.join(unknown)}",
                "default_rules",
            )
    _check_rules(out, table.default_rules, "default_rules")

    if table.location is not None and store.get_connection(table.location.connection_id) is None:
        out.add(
            "unknown_connection",
            f"Location references unknown connection '{table.location.connection_id}'",
            "location.connection",
        )
    return out.violations


def validate_mapping(mapping: Mapping, store: MetadataStore) -> list[Violation]:
    out = _Collector("mapping", mapping.id)
    if not mapping.sources:
        out.add("empty_sources", "Mapping must read at least one source table", "sources")
    if not mapping.target:
        out.add("missing_target", "Mapping must name exactly one target table", "target")
    if mapping.target and mapping.target in mapping.sources:
        out.add("self_reference", f"Target '{mapping.target}' is also a source", "sources")
    duplicates = sorted({s for s in mapping.sources if mapping.sources.count(s) > 1})
    if duplicates:
        out.add("duplicate_source", f"Sources listed more than once: {', '.join(duplicates)}", "sources")

    for source_id in mapping.sources:
        if store.get_table(source_id) is None:
            out.add("unknown_table", f"Unknown source table '{source_id}'", "sources")

    target = store.get_table(mapping.target) if mapping.target else None
    if mapping.target and target is None:
        out.add("unknown_table", f"Unknown target table '{mapping.target}'", "target")
    if target is not None:
        if target.kind != TableKind.TARGET:
            out.add("target_kind", f"Table '{target.id}' is not declared as a target", "target")
        try:
            resolve(target.default_rules, mapping.overrides, target.column_names)
        except ConflictingRuleError as e:
            out.add("unknown_override_column", e.message, "overrides")

    _check_rules(out, mapping.overrides, "overrides")

    if mapping.sources:
        for problem in check_logic(mapping, target.column_names if target is not None else None):
            out.add("invalid_logic", problem, "logic")
    return out.violations


def validate_step(step: Step, store: MetadataStore) -> list[Violation]:
    out = _Collector("step", step.id)
    mapping = store.get_mapping(step.mapping_id)
    if mapping is None:
        out.add("unknown_mapping", f"Unknown mapping '{step.mapping_id}'", "mapping")
    else:
        unbound = sorted(required_params(mapping.logic) - set(step.params))
        if unbound:
            out.add("unbound_param", f"Parameters not bound: {', '.join(unbound)}", "params")
    if step.id in step.depends_on:
        out.add("self_dependency", "Step depends on itself", "depends_on")
    return out.violations


def validate_flow(flow: Flow, store: MetadataStore) -> list[Violation]:
    out = _Collector("flow", flow.id)
    if not flow.steps:
        out.add("empty_flow", "Flow has no steps", "steps")

    trigger = flow.trigger
    if trigger.kind == TriggerKind.SCHEDULE:
        if not trigger.expression or not croniter.is_valid(trigger.expression):
            out.add("invalid_schedule", f"Invalid schedule expression {trigger.expression!r}", "trigger.expression")
    elif trigger.kind == TriggerKind.FILE_ARRIVAL:
        if trigger.watch is None:
            out.add("missing_watch", "File-arrival trigger needs a watch location", "trigger.watch")
        elif store.get_connection(trigger.watch.connection_id) is None:
            out.add(
                "unknown_connection",
                f"Watch location references unknown connection '{trigger.watch.connection_id}'",
                "trigger.watch",
            )

    nodes: list[StepIO] = []
    writers = []
    complete = True
    for step_id in flow.steps:
        step = store.get_step(step_id)
        if step is None:
            out.add("unknown_step", f"Unknown step '{step_id}'", "steps")
            complete = False
            continue
        mapping = store.get_mapping(step.mapping_id)
        if mapping is None:
            out.add("unknown_mapping", f"Step '{step_id}' references unknown mapping '{step.mapping_id}'", "steps")
            complete = False
            continue
        nodes.append(
            StepIO(step_id, frozenset(mapping.sources), frozenset({mapping.target}), step.depends_on)
        )
        target = store.get_table(mapping.target)
        if target is not None:
            writers.append((step_id, target.id, resolve(target.default_rules, mapping.overrides)))

    if not complete:
        return out.violations

    try:
        plan_steps(flow.id, nodes)
    except MissingDependencyError as e:
        out.add("missing_dependency", e.message, "steps")
    except CyclicFlowError as e:
        out.add("cyclic_flow", e.message, "steps")
    except DefinitionError as e:
        out.add("invalid_flow", e.message, "steps")

    try:
        check_writer_agreement(writers)
    except ConflictingRuleError as e:
        out.add("conflicting_writers", e.message, "steps")
    return out.violations


def validate_connection(spec: ConnectionSpec, store: MetadataStore) -> list[Violation]:
    out = _Collector("connection", spec.id)
    missing = [key for key in REQUIRED_CONFIG.get(spec.kind, ()) if not spec.config.get(key)]
    if missing:
        # Key names only; values stay with the connector.
        out.add("missing_config", f"Missing configuration keys: {', '.join(missing)}", "config")
    return out.violations


_VALIDATORS = {
    Table: validate_table,
    Mapping: validate_mapping,
    Step: validate_step,
    Flow: validate_flow,
    ConnectionSpec: validate_connection,
}


def validate(entity: Entity, store: MetadataStore) -> list[Violation]:
    """Run the invariants for *entity* against *store*; never raises on bad data."""
    validator = _VALIDATORS.get(type(entity))
    if validator is None:
        raise TypeError(f"Not a mapflow entity: {type(entity).__name__}")
    return validator(entity, store)


def validate_all(store) -> list[Violation]:
    """Validate every entity in an :class:`InMemoryMetadataStore`."""
    violations: list[Violation] = []
    for entity in store.all_entities():
        violations.extend(validate(entity, store))
    return violations


def ensure_flow_valid(flow: Flow, store: MetadataStore) -> None:
    """Validate a flow and everything it reaches; raise on any violation."""
    violations = list(validate_flow(flow, store))
    seen_mappings: set[str] = set()
    seen_tables: set[str] = set()
    for step_id in flow.steps:
        step = store.get_step(step_id)
        if step is None:
            continue
        violations.extend(validate_step(step, store))
        mapping = store.get_mapping(step.mapping_id)
        if mapping is None or mapping.id in seen_mappings:
            continue
        seen_mappings.add(mapping.id)
        violations.extend(validate_mapping(mapping, store))
        for table_id in (*mapping.sources, mapping.target):
            table = store.get_table(table_id)
            if table is not None and table_id not in seen_tables:
                seen_tables.add(table_id)
                violations.extend(validate_table(table, store))
    if violations:
        summary = "; ".join(f"{v.entity_type} {v.entity_id}: {v.message}" for v in violations[:5])
        raise ValidationFailedError(
            f"Flow '{flow.id}' failed validation ({len(violations)} violation(s)): {summary}",
            violations=violations,
        ).with_context(flow_id=flow.id)


__all__ = [
    "REQUIRED_CONFIG",
    "Violation",
    "ensure_flow_valid",
    "validate",
    "validate_all",
    "validate_connection",
    "validate_flow",
    "validate_mapping",
    "validate_step",
    "validate_table",
]
