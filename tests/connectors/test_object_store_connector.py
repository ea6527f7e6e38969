"""Tests for ObjectStoreConnector against an in-memory S3 client stub."""

import io
from datetime import UTC, datetime

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from mapflow.connectors.object_store import ObjectStoreConnector, translate_error
from mapflow.core.errors import (
    AuthorizationError,
    ConnectorUnavailableError,
    SourceNotFoundError,
    TerminalError,
)
from mapflow.model.entities import ConnectionSpec, Location
from mapflow.rules.evaluator import WriteContext


def _client_error(code, status, operation="GetObject"):
    return ClientError({"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


class FakeBody(io.BytesIO):
    pass


class FakePaginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, Bucket, Prefix):
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        # two pages so pagination is exercised
        half = len(keys) // 2
        for chunk in (keys[:half], keys[half:]):
            yield {"Contents": [self.client.describe(k) for k in chunk]}


class FakeS3Client:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, datetime]] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def describe(self, key):
        data, modified = self.objects[key]
        return {"Key": key, "LastModified": modified, "Size": len(data)}

    def _maybe_fail(self, op, key):
        self.calls.append((op, key))
        if key in self.errors:
            raise self.errors[key]

    def get_object(self, Bucket, Key):
        self._maybe_fail("get", Key)
        if Key not in self.objects:
            raise _client_error("NoSuchKey", 404)
        return {"Body": FakeBody(self.objects[Key][0])}

    def put_object(self, Bucket, Key, Body):
        self._maybe_fail("put", Key)
        self.objects[Key] = (Body, datetime(2025, 1, 1, tzinfo=UTC))

    def head_object(self, Bucket, Key):
        self._maybe_fail("head", Key)
        if Key not in self.objects:
            raise _client_error("404", 404, "HeadObject")
        return {}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)


@pytest.fixture
def client():
    return FakeS3Client()


@pytest.fixture
def connector(client):
    spec = ConnectionSpec(id="lake", kind="object-store", config={"bucket": "analytics", "prefix": "staging/"})
    return ObjectStoreConnector(spec, client=client)


class TestReadWrite:
    def test_read_decodes_under_prefix(self, connector, client):
        client.objects["staging/orders.csv"] = (b"id\n1\n", datetime(2025, 1, 1, tzinfo=UTC))
        assert list(connector.read(Location("lake", "orders.csv"))) == [{"id": "1"}]
        assert client.calls == [("get", "staging/orders.csv")]

    def test_missing_object(self, connector):
        with pytest.raises(SourceNotFoundError) as exc_info:
            list(connector.read(Location("lake", "absent.csv")))
        assert exc_info.value.context.location == "staging/absent.csv"

    def test_write_puts_one_object(self, connector, client):
        result = connector.write(
            Location("lake", "out.jsonl"),
            {"src": "'s3'"},
            [{"id": 1}],
            WriteContext(),
        )
        assert result.location == "staging/out.jsonl"
        assert client.objects["staging/out.jsonl"][0] == b'{"id": 1, "src": "s3"}\n'

    def test_append_reads_existing_first(self, connector, client):
        client.objects["staging/t.jsonl"] = (b'{"id": 1}\n', datetime(2025, 1, 1, tzinfo=UTC))
        connector.write(Location("lake", "t.jsonl", {"mode": "append"}), {}, [{"id": 2}], WriteContext())
        assert client.objects["staging/t.jsonl"][0] == b'{"id": 1}\n{"id": 2}\n'

    def test_denied_write(self, connector, client):
        client.errors["staging/t.csv"] = _client_error("AccessDenied", 403, "PutObject")
        with pytest.raises(AuthorizationError):
            connector.write(Location("lake", "t.csv"), {}, [{"id": 1}], WriteContext())

    def test_exists(self, connector, client):
        client.objects["staging/here.csv"] = (b"", datetime(2025, 1, 1, tzinfo=UTC))
        assert connector.exists(Location("lake", "here.csv"))
        assert not connector.exists(Location("lake", "there.csv"))


class TestArrivals:
    def test_tokens_sort_by_modification_time(self, connector, client):
        client.objects["staging/in/b.csv"] = (b"x", datetime(2025, 1, 1, 9, tzinfo=UTC))
        client.objects["staging/in/a.csv"] = (b"xy", datetime(2025, 1, 2, 9, tzinfo=UTC))
        client.objects["staging/in/skip.txt"] = (b"", datetime(2025, 1, 3, tzinfo=UTC))
        arrivals = connector.list_new_arrivals(Location("lake", "in/", {"pattern": "*.csv"}), None)
        assert [a.key for a in arrivals] == ["staging/in/b.csv", "staging/in/a.csv"]
        assert arrivals[0].token == "2025-01-01T09:00:00.000000Z|staging/in/b.csv"
        assert arrivals[1].size == 2

    def test_watermark(self, connector, client):
        client.objects["staging/in/a.csv"] = (b"x", datetime(2025, 1, 1, tzinfo=UTC))
        first = connector.list_new_arrivals(Location("lake", "in/"), None)
        assert connector.list_new_arrivals(Location("lake", "in/"), first[0].token) == []


class TestTranslateError:
    @pytest.mark.parametrize(
        "code, status, expected",
        [
            ("NoSuchKey", 404, SourceNotFoundError),
            ("AccessDenied", 403, AuthorizationError),
            ("SlowDown", 503, ConnectorUnavailableError),
            ("InvalidRequest", 400, TerminalError),
        ],
    )
    def test_client_errors(self, code, status, expected):
        assert type(translate_error(_client_error(code, status), "k")) is expected

    def test_unreachable_endpoint_is_transient(self):
        error = translate_error(EndpointConnectionError(endpoint_url="http://minio:9000"), "k")
        assert isinstance(error, ConnectorUnavailableError)
        assert error.retryable
