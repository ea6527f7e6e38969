"""Tests for the connector registry and the base connector contract."""

import pytest

from mapflow.connectors.base import Arrival, Capability, Connector, RowSequence
from mapflow.connectors.database import DatabaseConnector
from mapflow.connectors.ftp import FtpConnector
from mapflow.connectors.local import LocalFileConnector
from mapflow.connectors.object_store import ObjectStoreConnector
from mapflow.connectors.registry import ConnectorRegistry, default_registry
from mapflow.core.errors import UnsupportedCapabilityError
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location


class ReadOnlyConnector(Connector):
    kind = ConnectionKind.FTP
    capabilities = frozenset({Capability.READ})

    def read(self, location):
        return RowSequence.from_rows([{"a": 1}])


class TestConnectorRegistry:
    def test_default_registry_knows_every_kind(self):
        assert set(default_registry().kinds()) == set(ConnectionKind)

    def test_open_local(self, tmp_path):
        spec = ConnectionSpec(id="landing", kind="local-filesystem", config={"root": str(tmp_path)})
        connector = default_registry().open(spec)
        assert isinstance(connector, LocalFileConnector)
        assert connector.connection_id == "landing"

    def test_register_replaces_factory(self):
        registry = default_registry()
        registry.register("ftp", ReadOnlyConnector)
        connector = registry.open(ConnectionSpec(id="drop", kind="ftp"))
        assert isinstance(connector, ReadOnlyConnector)

    def test_unregistered_kind(self):
        registry = ConnectorRegistry()
        with pytest.raises(UnsupportedCapabilityError) as exc_info:
            registry.open(ConnectionSpec(id="wh", kind="database"))
        assert exc_info.value.context.connection_id == "wh"

    def test_unregister(self):
        registry = default_registry()
        registry.unregister(ConnectionKind.OBJECT_STORE)
        assert ConnectionKind.OBJECT_STORE not in registry.kinds()

    @pytest.mark.parametrize("cls", [ObjectStoreConnector, FtpConnector, LocalFileConnector])
    def test_file_shaped_stores_offer_every_capability(self, cls):
        assert cls.capabilities == frozenset(Capability)

    def test_database_does_not_watch_arrivals(self):
        assert Capability.LIST_NEW_ARRIVALS not in DatabaseConnector.capabilities


class TestConnectorBase:
    def test_unsupported_capability(self):
        connector = ReadOnlyConnector(ConnectionSpec(id="drop", kind="ftp"))
        assert connector.supports(Capability.READ)
        assert not connector.supports(Capability.WRITE)
        with pytest.raises(UnsupportedCapabilityError, match="does not support list_new_arrivals"):
            connector.list_new_arrivals(Location("drop", "in"), None)

    def test_context_manager_closes(self):
        closed = []

        class Closing(ReadOnlyConnector):
            def close(self):
                closed.append(True)

        with Closing(ConnectionSpec(id="drop", kind="ftp")):
            pass
        assert closed == [True]

    def test_row_sequence_is_restartable(self):
        calls = []

        def factory():
            calls.append(1)
            return iter([{"a": 1}])

        seq = RowSequence(factory)
        assert list(seq) == list(seq)
        assert len(calls) == 2

    def test_filter_new_is_strict_and_sorted(self):
        arrivals = [Arrival("003", "c"), Arrival("001", "a"), Arrival("002", "b")]
        assert [a.key for a in Connector.filter_new(arrivals, None)] == ["a", "b", "c"]
        assert [a.key for a in Connector.filter_new(arrivals, "002")] == ["c"]
        assert Connector.filter_new(arrivals, "003") == []
