"""Connector registry - connection kind to connector factory."""

from __future__ import annotations

import threading
from collections.abc import Callable

from mapflow.core.errors import UnsupportedCapabilityError
from mapflow.model.entities import ConnectionKind, ConnectionSpec

from .base import Connector
from .database import DatabaseConnector
from .ftp import FtpConnector
from .local import LocalFileConnector
from .object_store import ObjectStoreConnector

ConnectorFactory = Callable[[ConnectionSpec], Connector]


class ConnectorRegistry:
    """
    Maps each :class:`ConnectionKind` to a factory.

    Tests register stubs for remote kinds; the engine only ever calls
    :meth:`open`.

    Example:
        >>> registry = default_registry()
        >>> registry.register(ConnectionKind.FTP, lambda spec: FakeFtp(spec))
    """

    def __init__(self) -> None:
        self._factories: dict[ConnectionKind, ConnectorFactory] = {}
        self._lock = threading.Lock()

    def register(self, kind: ConnectionKind | str, factory: ConnectorFactory) -> None:
        with self._lock:
            self._factories[ConnectionKind(kind)] = factory

    def unregister(self, kind: ConnectionKind | str) -> None:
        with self._lock:
            self._factories.pop(ConnectionKind(kind), None)

    def kinds(self) -> list[ConnectionKind]:
        with self._lock:
            return sorted(self._factories, key=lambda k: k.value)

    def open(self, spec: ConnectionSpec) -> Connector:
        with self._lock:
            factory = self._factories.get(spec.kind)
        if factory is None:
            raise UnsupportedCapabilityError(
                f"No connector registered for kind '{spec.kind.value}'"
            ).with_context(connection_id=spec.id)
        return factory(spec)


def default_registry() -> ConnectorRegistry:
    """Registry with the four built-in connector variants."""
    registry = ConnectorRegistry()
    registry.register(ConnectionKind.DATABASE, DatabaseConnector)
    registry.register(ConnectionKind.OBJECT_STORE, ObjectStoreConnector)
    registry.register(ConnectionKind.FTP, FtpConnector)
    registry.register(ConnectionKind.LOCAL_FILESYSTEM, LocalFileConnector)
    return registry


def open_connector(spec: ConnectionSpec, registry: ConnectorRegistry | None = None) -> Connector:
    return (registry or default_registry()).open(spec)


__all__ = ["ConnectorFactory", "ConnectorRegistry", "default_registry", "open_connector"]
