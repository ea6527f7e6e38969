"""Tests for InMemoryMetadataStore and per-run snapshots."""

import pytest
import yaml

from mapflow.core.errors import DefinitionError, UnknownEntityError, ValidationFailedError
from mapflow.model.entities import Flow, Mapping, Step, Table, TableKind
from mapflow.model.snapshot import take_snapshot
from mapflow.model.store import InMemoryMetadataStore, MetadataStore
from mapflow.model.validation import ensure_flow_valid


class TestInMemoryMetadataStore:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryMetadataStore(), MetadataStore)

    def test_add_and_get(self):
        store = InMemoryMetadataStore()
        table = store.add(Table(id="t", kind=TableKind.SOURCE))
        assert store.get_table("t") is table
        assert store.get_mapping("t") is None

    def test_add_replaces(self):
        store = InMemoryMetadataStore()
        store.add(Step(id="s", mapping_id="m1"))
        store.add(Step(id="s", mapping_id="m2"))
        assert store.get_step("s").mapping_id == "m2"
        assert len(store.list_steps()) == 1

    def test_add_rejects_foreign_objects(self):
        with pytest.raises(TypeError):
            InMemoryMetadataStore().add(object())

    def test_remove(self):
        store = InMemoryMetadataStore()
        store.add(Flow(id="f", steps=("s",)))
        assert store.remove(Flow, "f") is True
        assert store.remove(Flow, "f") is False

    def test_from_dict(self, orders_definitions):
        store = InMemoryMetadataStore.from_dict(orders_definitions)
        assert {t.id for t in store.list_tables()} == {"raw_orders", "orders"}
        assert store.get_mapping("m2").overrides == {"updated_at": "source.modified_ts"}
        assert [c.id for c in store.list_connections()] == ["mem"]
        assert len(store.all_entities()) == 9

    def test_from_dict_reports_the_bad_entry(self):
        with pytest.raises(DefinitionError, match="entry #1 in 'tables'"):
            InMemoryMetadataStore.from_dict({"tables": [{"id": "ok"}, {"kind": "source"}]})

    def test_from_yaml(self, tmp_path, orders_definitions):
        path = tmp_path / "mapflow.yaml"
        path.write_text(yaml.safe_dump(orders_definitions))
        store = InMemoryMetadataStore.from_yaml(path)
        assert store.get_flow("orders_m1").steps == ("load_m1",)

    def test_from_yaml_missing_file(self, tmp_path):
        with pytest.raises(DefinitionError, match="not found"):
            InMemoryMetadataStore.from_yaml(tmp_path / "absent.yaml")

    def test_from_yaml_requires_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(DefinitionError, match="must contain a mapping"):
            InMemoryMetadataStore.from_yaml(path)

    def test_to_dict_round_trip(self, orders_definitions):
        store = InMemoryMetadataStore.from_dict(orders_definitions)
        again = InMemoryMetadataStore.from_dict(store.to_dict())
        assert again.get_table("orders") == store.get_table("orders")
        assert again.get_connection("mem").config == {"root": "/unused"}


class TestSnapshot:
    def test_collects_everything_reachable(self, orders_definitions):
        store = InMemoryMetadataStore.from_dict(orders_definitions)
        snapshot = take_snapshot(store, "orders_m2")
        assert list(snapshot.steps) == ["load_m2"]
        assert list(snapshot.mappings) == ["m2"]
        assert set(snapshot.tables) == {"raw_orders", "orders"}
        assert list(snapshot.connections) == ["mem"]
        assert snapshot.mapping_for_step("load_m2").id == "m2"

    def test_unaffected_by_later_edits(self, orders_definitions):
        store = InMemoryMetadataStore.from_dict(orders_definitions)
        snapshot = take_snapshot(store, "orders_m2")
        store.add(Mapping(id="m2", sources=("raw_orders",), target="orders", overrides={"updated_at": "null"}))
        store.remove(Table, "raw_orders")
        assert snapshot.mapping("m2").overrides == {"updated_at": "source.modified_ts"}
        assert snapshot.table("raw_orders").id == "raw_orders"

    def test_is_read_only(self, orders_definitions):
        snapshot = take_snapshot(InMemoryMetadataStore.from_dict(orders_definitions), "orders_m1")
        with pytest.raises(TypeError):
            snapshot.steps["extra"] = Step(id="extra", mapping_id="m1")

    def test_unknown_flow(self):
        with pytest.raises(UnknownEntityError, match="flow"):
            take_snapshot(InMemoryMetadataStore(), "absent")

    def test_dangling_reference(self, orders_definitions):
        store = InMemoryMetadataStore.from_dict(orders_definitions)
        store.remove(Mapping, "m1")
        with pytest.raises(UnknownEntityError) as exc_info:
            take_snapshot(store, "orders_m1")
        assert exc_info.value.entity_type == "mapping"
        assert exc_info.value.entity_id == "m1"

    def test_lenient_snapshot_leaves_dangling_references_out(self, orders_definitions):
        store = InMemoryMetadataStore.from_dict(orders_definitions)
        store.remove(Mapping, "m1")
        snapshot = take_snapshot(store, "orders_m1", strict=False)
        assert list(snapshot.steps) == ["load_m1"]
        assert snapshot.get_mapping("m1") is None
        with pytest.raises(ValidationFailedError):
            ensure_flow_valid(snapshot.flow, snapshot)

    def test_serves_store_lookups(self, orders_definitions):
        snapshot = take_snapshot(InMemoryMetadataStore.from_dict(orders_definitions), "orders_m1")
        assert isinstance(snapshot, MetadataStore)
        assert snapshot.get_flow("orders_m1") is snapshot.flow
        assert snapshot.get_flow("orders_m2") is None
        assert snapshot.get_table("orders").id == "orders"
        assert snapshot.get_connection("mem").id == "mem"
        assert snapshot.get_step("load_m2") is None
        assert snapshot.list_flows() == [snapshot.flow]

    def test_lookup_of_unknown_id(self, orders_definitions):
        snapshot = take_snapshot(InMemoryMetadataStore.from_dict(orders_definitions), "orders_m1")
        with pytest.raises(UnknownEntityError):
            snapshot.table("absent")
