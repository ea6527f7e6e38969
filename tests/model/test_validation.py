"""Tests for definition validation.

Validation never raises on bad data; it returns every violation so an
editor can show them all at once.  ``ensure_flow_valid`` is the raising
variant the engine uses.
"""

import pytest

from mapflow.core.errors import ValidationFailedError
from mapflow.model.entities import ConnectionSpec, Flow, Mapping, Step, Table
from mapflow.model.store import InMemoryMetadataStore
from mapflow.model.validation import (
    ensure_flow_valid,
    validate,
    validate_all,
    validate_connection,
    validate_flow,
    validate_mapping,
    validate_step,
    validate_table,
)


def _codes(violations) -> set[str]:
    return {v.code for v in violations}


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def orders(orders_definitions) -> InMemoryMetadataStore:
    return InMemoryMetadataStore.from_dict(orders_definitions)


@pytest.fixture
def pipeline(pipeline_definitions) -> InMemoryMetadataStore:
    return InMemoryMetadataStore.from_dict(pipeline_definitions)


# ── Whole documents ──────────────────────────────────────────────────────


class TestValidDocuments:
    def test_orders_is_valid(self, orders):
        assert validate_all(orders) == []

    def test_pipeline_is_valid(self, pipeline):
        assert validate_all(pipeline) == []

    def test_validate_dispatches_by_type(self, orders):
        assert validate(orders.get_mapping("m2"), orders) == []

    def test_validate_rejects_foreign_objects(self, orders):
        with pytest.raises(TypeError):
            validate("not an entity", orders)


# ── Tables ───────────────────────────────────────────────────────────────


class TestTableValidation:
    def test_duplicate_columns(self, orders):
        table = Table.from_dict({"id": "t", "kind": "source", "columns": ["a", "b", "a"]})
        assert _codes(validate_table(table, orders)) == {"duplicate_column"}

    def test_target_default_rule_on_unknown_column(self, orders):
        table = Table.from_dict({
            "id": "t",
            "kind": "target",
            "columns": ["a"],
            "default_rules": {"b": "now"},
        })
        assert _codes(validate_table(table, orders)) == {"unknown_rule_column"}

    def test_invalid_default_rule(self, orders):
        table = Table.from_dict({
            "id": "t",
            "kind": "target",
            "columns": ["a"],
            "default_rules": {"a": "sometime soon"},
        })
        violations = validate_table(table, orders)
        assert _codes(violations) == {"invalid_rule"}
        assert violations[0].field == "default_rules.a"

    def test_unknown_connection(self, orders):
        table = Table.from_dict({"id": "t", "location": {"connection": "nowhere", "path": "x"}})
        assert _codes(validate_table(table, orders)) == {"unknown_connection"}


# ── Mappings ─────────────────────────────────────────────────────────────


class TestMappingValidation:
    def test_override_on_column_not_in_target(self, orders):
        mapping = Mapping(id="bad", sources=("raw_orders",), target="orders", overrides={"shipped_at": "now"})
        violations = validate_mapping(mapping, orders)
        assert _codes(violations) == {"unknown_override_column"}
        assert "shipped_at" in violations[0].message

    def test_invalid_override_rule(self, orders):
        mapping = Mapping(id="bad", sources=("raw_orders",), target="orders", overrides={"updated_at": "later"})
        assert _codes(validate_mapping(mapping, orders)) == {"invalid_rule"}

    def test_structure(self, orders):
        mapping = Mapping(id="bad", sources=(), target="")
        assert _codes(validate_mapping(mapping, orders)) == {"empty_sources", "missing_target"}

    def test_target_among_sources(self, orders):
        mapping = Mapping(id="bad", sources=("orders",), target="orders")
        assert "self_reference" in _codes(validate_mapping(mapping, orders))

    def test_unknown_tables(self, orders):
        mapping = Mapping(id="bad", sources=("ghost",), target="phantom")
        violations = validate_mapping(mapping, orders)
        assert [v.code for v in violations] == ["unknown_table", "unknown_table"]

    def test_target_must_be_a_target_table(self, orders):
        mapping = Mapping(id="bad", sources=("orders",), target="raw_orders")
        assert "target_kind" in _codes(validate_mapping(mapping, orders))

    def test_join_must_cover_secondary_sources(self, orders):
        orders.add(Table.from_dict({"id": "customers", "kind": "source", "columns": ["id"]}))
        mapping = Mapping(id="bad", sources=("raw_orders", "customers"), target="orders")
        violations = validate_mapping(mapping, orders)
        assert _codes(violations) == {"invalid_logic"}
        assert "joined exactly once" in violations[0].message

    def test_select_on_unknown_target_column(self, orders):
        mapping = Mapping(
            id="bad",
            sources=("raw_orders",),
            target="orders",
            logic={"select": {"nope": "order_id"}},
        )
        assert _codes(validate_mapping(mapping, orders)) == {"invalid_logic"}


# ── Steps ────────────────────────────────────────────────────────────────


class TestStepValidation:
    def test_unknown_mapping(self, orders):
        assert _codes(validate_step(Step(id="s", mapping_id="ghost"), orders)) == {"unknown_mapping"}

    def test_unbound_param(self, orders):
        orders.add(Mapping(
            id="regional",
            sources=("raw_orders",),
            target="orders",
            logic={"where": [{"column": "region", "op": "eq", "value": "${region}"}]},
        ))
        violations = validate_step(Step(id="s", mapping_id="regional"), orders)
        assert _codes(violations) == {"unbound_param"}
        assert "region" in violations[0].message
        assert validate_step(Step(id="s", mapping_id="regional", params={"region": "EU"}), orders) == []

    def test_self_dependency(self, orders):
        assert _codes(validate_step(Step(id="s", mapping_id="m1", depends_on=("s",)), orders)) == {
            "self_dependency"
        }


# ── Flows ────────────────────────────────────────────────────────────────


class TestFlowValidation:
    def test_cycle_is_named(self, pipeline):
        pipeline.add(Mapping(id="back", sources=("t2",), target="t1"))
        pipeline.add(Step(id="S4", mapping_id="back"))
        flow = Flow(id="loop", steps=("S2", "S4"))
        violations = validate_flow(flow, pipeline)
        assert _codes(violations) == {"cyclic_flow"}
        assert "S2" in violations[0].message and "S4" in violations[0].message

    def test_dependency_outside_the_flow(self, pipeline):
        pipeline.add(Step(id="S5", mapping_id="mc", depends_on=("S1",)))
        violations = validate_flow(Flow(id="partial", steps=("S5",)), pipeline)
        assert _codes(violations) == {"missing_dependency"}

    def test_conflicting_writers(self, orders):
        flow = Flow(id="both", steps=("load_m1", "load_m2"))
        violations = validate_flow(flow, orders)
        assert _codes(violations) == {"conflicting_writers"}
        assert "updated_at" in violations[0].message

    def test_agreeing_writers_are_allowed(self, orders):
        orders.add(Step(id="load_m1_again", mapping_id="m1"))
        assert validate_flow(Flow(id="twice", steps=("load_m1", "load_m1_again")), orders) == []

    def test_unknown_step(self, orders):
        assert _codes(validate_flow(Flow(id="f", steps=("ghost",)), orders)) == {"unknown_step"}

    def test_empty_flow(self, orders):
        assert "empty_flow" in _codes(validate_flow(Flow(id="f", steps=()), orders))

    def test_invalid_schedule(self, orders):
        flow = Flow.from_dict({
            "id": "f",
            "steps": ["load_m1"],
            "trigger": {"kind": "schedule", "expression": "every tuesday"},
        })
        assert _codes(validate_flow(flow, orders)) == {"invalid_schedule"}

    def test_file_arrival_needs_watch(self, orders):
        flow = Flow.from_dict({"id": "f", "steps": ["load_m1"], "trigger": {"kind": "file_arrival"}})
        assert _codes(validate_flow(flow, orders)) == {"missing_watch"}

    def test_watch_on_unknown_connection(self, orders):
        flow = Flow.from_dict({
            "id": "f",
            "steps": ["load_m1"],
            "trigger": {"kind": "file_arrival", "watch": {"connection": "ghost", "path": "in"}},
        })
        assert _codes(validate_flow(flow, orders)) == {"unknown_connection"}


# ── Connections ──────────────────────────────────────────────────────────


class TestConnectionValidation:
    @pytest.mark.parametrize(
        "kind, key",
        [("database", "url"), ("object-store", "bucket"), ("ftp", "host"), ("local-filesystem", "root")],
    )
    def test_required_key(self, orders, kind, key):
        violations = validate_connection(ConnectionSpec(id="c", kind=kind, config={}), orders)
        assert _codes(violations) == {"missing_config"}
        assert key in violations[0].message

    def test_message_never_contains_values(self, orders):
        spec = ConnectionSpec(id="c", kind="ftp", config={"password": "hunter2"})
        violations = validate_connection(spec, orders)
        assert "hunter2" not in violations[0].message


# ── ensure_flow_valid ────────────────────────────────────────────────────


class TestEnsureFlowValid:
    def test_valid_flow_passes(self, orders):
        ensure_flow_valid(orders.get_flow("orders_m2"), orders)

    def test_collects_reachable_violations(self, orders):
        orders.add(Mapping(id="m1", sources=("raw_orders",), target="orders", overrides={"ghost": "now"}))
        with pytest.raises(ValidationFailedError) as exc_info:
            ensure_flow_valid(orders.get_flow("orders_m1"), orders)
        err = exc_info.value
        assert [v.code for v in err.violations] == ["unknown_override_column"]
        assert err.context.flow_id == "orders_m1"
        assert err.kind == "validation_failed"
