"""Object-store connector (S3 and S3-compatible stores such as MinIO).

Configuration::

    id: lake
    kind: object-store
    config:
      bucket: analytics
      endpoint_url: http://minio:9000     # optional
      region: us-east-1                   # optional
      access_key: ...                     # optional, else the boto3 chain
      secret_key: ...
      prefix: staging/                    # optional key prefix
      connect_timeout: 10
      read_timeout: 60

Writes are a single ``put_object``, which S3 applies atomically.  Arrival
tokens are ``<LastModified ISO-8601 UTC>|<key>``.  botocore retries are
disabled; retrying is the engine's job, so connector errors surface as
:class:`TransientError` or a terminal error instead.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from mapflow.core.errors import (
    AuthorizationError,
    ConnectorTimeoutError,
    ConnectorUnavailableError,
    MapflowError,
    SourceNotFoundError,
    TerminalError,
)
from mapflow.core.logging import get_logger
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location
from mapflow.rules.evaluator import MappedRow, WriteContext

from .base import Arrival, Capability, Connector, RowSequence, WriteMode, WriteResult
from .formats import decode, detect_format, encode

logger = get_logger(__name__)

_TRANSIENT_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
    "503",
    "500",
}
_AUTH_CODES = {"AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken", "403"}
_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


def translate_error(exc: Exception, key: str = "") -> MapflowError:
    """Map a botocore exception onto the mapflow taxonomy."""
    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return ConnectorTimeoutError(f"Object store timed out on {key}", cause=exc)
    if isinstance(exc, EndpointConnectionError):
        return ConnectorUnavailableError(f"Object store endpoint unreachable: {exc}", cause=exc)
    if isinstance(exc, NoCredentialsError):
        return AuthorizationError("No object store credentials available", cause=exc)
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _NOT_FOUND_CODES or status == 404:
            return SourceNotFoundError(f"Object not found: {key}", cause=exc)
        if code in _AUTH_CODES or status == 403:
            return AuthorizationError(f"Access denied to {key}", cause=exc)
        if code in _TRANSIENT_CODES or (status is not None and status >= 500):
            return ConnectorUnavailableError(f"Object store error {code} on {key}", cause=exc)
        return TerminalError(f"Object store error {code} on {key}", cause=exc)
    if isinstance(exc, BotoCoreError):
        return ConnectorUnavailableError(f"Object store error on {key}: {exc}", cause=exc)
    return TerminalError(f"Object store error on {key}: {exc}", cause=exc)


class ObjectStoreConnector(Connector):
    kind = ConnectionKind.OBJECT_STORE
    capabilities = frozenset(
        {Capability.READ, Capability.WRITE, Capability.LIST_NEW_ARRIVALS, Capability.EXISTS}
    )

    def __init__(self, spec: ConnectionSpec, client: Any | None = None):
        super().__init__(spec)
        self.bucket = spec.config["bucket"]
        self.prefix = spec.config.get("prefix", "")
        self._client = client
        self.logger = logger.bind(connection_id=spec.id, bucket=self.bucket)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _create_client(self) -> Any:
        config = self.spec.config
        client_config = Config(
            retries={"max_attempts": 1, "mode": "standard"},
            connect_timeout=config.get("connect_timeout", 10),
            read_timeout=config.get("read_timeout", 60),
        )
        return boto3.client(
            "s3",
            endpoint_url=config.get("endpoint_url"),
            region_name=config.get("region"),
            aws_access_key_id=config.get("access_key"),
            aws_secret_access_key=config.get("secret_key"),
            config=client_config,
        )

    def _key(self, path: str) -> str:
        return f"{self.prefix}{path}" if self.prefix else path

    def read(self, location: Location) -> RowSequence:
        key = self._key(location.path)
        fmt = detect_format(location)

        def rows() -> Iterator[dict[str, Any]]:
            try:
                response = self.client.get_object(Bucket=self.bucket, Key=key)
                body = response["Body"]
                try:
                    data = body.read()
                finally:
                    body.close()
            except (ClientError, BotoCoreError) as e:
                raise translate_error(e, key).with_context(connection_id=self.spec.id, location=key) from e
            yield from decode(data, fmt, source=key)

        return RowSequence(rows, description=f"{self.spec.id}:{key}")

    def write(
        self,
        location: Location,
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> WriteResult:
        key = self._key(location.path)
        fmt = detect_format(location)
        mode = self.write_mode(location)
        columns = list(columns) if columns is not None else None
        prepared = list(self.prepare_rows(rules, rows, context, columns))

        existing: list[dict[str, Any]] = []
        if mode == WriteMode.APPEND and self.exists(location):
            existing = list(self.read(location))
        payload, _ = encode(existing + prepared, fmt, columns)

        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=payload)
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, key).with_context(connection_id=self.spec.id, location=key) from e

        self.logger.debug("connector.object_store.written", key=key, rows=len(prepared), mode=mode.value)
        return WriteResult(rows_written=len(prepared), location=key, mode=mode)

    def list_new_arrivals(self, location: Location, watermark: str | None) -> list[Arrival]:
        prefix = self._key(location.path)
        pattern = location.options.get("pattern")
        arrivals = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    name = key.rsplit("/", 1)[-1]
                    if not name or (pattern and not fnmatch.fnmatch(name, pattern)):
                        continue
                    modified = obj["LastModified"].astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
                    arrivals.append(Arrival(token=f"{modified}|{key}", key=key, size=obj.get("Size")))
        except (ClientError, BotoCoreError) as e:
            raise translate_error(e, prefix).with_context(connection_id=self.spec.id, location=prefix) from e
        return self.filter_new(arrivals, watermark)

    def exists(self, location: Location) -> bool:
        key = self._key(location.path)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            error = translate_error(e, key)
            if isinstance(error, SourceNotFoundError):
                return False
            raise error from e
        except BotoCoreError as e:
            raise translate_error(e, key) from e
        return True

    def close(self) -> None:
        self._client = None


__all__ = ["ObjectStoreConnector", "translate_error"]
