"""
Connectors - read, write, list and probe data in every supported store.

Variants:
- ``database``: SQLAlchemy (DatabaseConnector)
- ``object-store``: boto3 S3 (ObjectStoreConnector)
- ``ftp``: ftplib (FtpConnector)
- ``local-filesystem``: pathlib (LocalFileConnector)
"""

from .base import Arrival, Capability, Connector, RowSequence, WriteMode, WriteResult
from .database import DatabaseConnector
from .formats import decode, detect_format, encode
from .ftp import FtpConnector
from .local import LocalFileConnector
from .object_store import ObjectStoreConnector
from .registry import ConnectorFactory, ConnectorRegistry, default_registry, open_connector

__all__ = [
    "Arrival",
    "Capability",
    "Connector",
    "ConnectorFactory",
    "ConnectorRegistry",
    "DatabaseConnector",
    "FtpConnector",
    "LocalFileConnector",
    "ObjectStoreConnector",
    "RowSequence",
    "WriteMode",
    "WriteResult",
    "decode",
    "default_registry",
    "detect_format",
    "encode",
    "open_connector",
]
