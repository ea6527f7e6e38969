"""Tests for FtpConnector against a scripted ftplib stand-in."""

import ftplib

import pytest

from mapflow.connectors.ftp import FtpConnector, translate_error
from mapflow.core.errors import (
    AuthorizationError,
    ConnectorTimeoutError,
    ConnectorUnavailableError,
    SourceNotFoundError,
    TerminalError,
)
from mapflow.model.entities import ConnectionSpec, Location
from mapflow.rules.evaluator import WriteContext


class FakeFTP:
    """Just enough of ftplib.FTP for the connector."""

    def __init__(self, server):
        self.server = server
        self.closed = False

    def retrbinary(self, cmd, callback):
        verb, path = cmd.split(" ", 1)
        assert verb == "RETR"
        if path not in self.server.files:
            raise ftplib.error_perm("550 No such file")
        callback(self.server.files[path][0])

    def storbinary(self, cmd, fp):
        verb, path = cmd.split(" ", 1)
        assert verb == "STOR"
        self.server.files[path] = (fp.read(), "20250101000000")
        self.server.log.append(cmd)

    def rename(self, src, dst):
        self.server.files[dst] = self.server.files.pop(src)
        self.server.log.append(f"RNFR {src} RNTO {dst}")

    def size(self, path):
        if path not in self.server.files:
            raise ftplib.error_perm("550 No such file")
        return len(self.server.files[path][0])

    def mlsd(self, path, facts=()):
        if not self.server.mlsd:
            raise ftplib.error_perm("500 Unknown command")
        yield ".", {"type": "cdir"}
        for name, (data, modify) in sorted(self._children(path).items()):
            yield name, {"type": "file", "modify": modify, "size": str(len(data))}

    def nlst(self, path):
        return [f"{path}/{name}" for name in sorted(self._children(path))]

    def _children(self, path):
        prefix = path.rstrip("/") + "/"
        return {
            key[len(prefix):]: value
            for key, value in self.server.files.items()
            if key.startswith(prefix) and "/" not in key[len(prefix):]
        }

    def quit(self):
        self.server.sessions_closed += 1

    def close(self):
        self.closed = True


class FakeServer:
    def __init__(self):
        self.files: dict[str, tuple[bytes, str]] = {}
        self.log: list[str] = []
        self.mlsd = True
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.connect_error: Exception | None = None

    def factory(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.sessions_opened += 1
        return FakeFTP(self)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def connector(server):
    spec = ConnectionSpec(id="drop", kind="ftp", config={"host": "ftp.example", "root": "/outbound"})
    return FtpConnector(spec, ftp_factory=server.factory)


class TestReadWrite:
    def test_read(self, connector, server):
        server.files["/outbound/orders.csv"] = (b"id\n1\n", "20250101000000")
        assert list(connector.read(Location("drop", "orders.csv"))) == [{"id": "1"}]
        assert server.sessions_opened == server.sessions_closed == 1

    def test_read_missing_file(self, connector, server):
        with pytest.raises(SourceNotFoundError) as exc_info:
            list(connector.read(Location("drop", "absent.csv")))
        assert exc_info.value.context.connection_id == "drop"
        assert server.sessions_closed == 1

    def test_write_uploads_then_renames(self, connector, server):
        result = connector.write(Location("drop", "out/t.csv"), {}, [{"a": "1"}], WriteContext(), columns=["a"])
        assert result.rows_written == 1
        assert server.log == [
            "STOR /outbound/out/.t.csv.part",
            "RNFR /outbound/out/.t.csv.part RNTO /outbound/out/t.csv",
        ]
        assert server.files["/outbound/out/t.csv"][0] == b"a\n1\n"

    def test_append(self, connector, server):
        server.files["/outbound/t.jsonl"] = (b'{"a": 1}\n', "20250101000000")
        connector.write(Location("drop", "t.jsonl", {"mode": "append"}), {}, [{"a": 2}], WriteContext())
        assert server.files["/outbound/t.jsonl"][0] == b'{"a": 1}\n{"a": 2}\n'

    def test_exists(self, connector, server):
        server.files["/outbound/here.csv"] = (b"", "20250101000000")
        assert connector.exists(Location("drop", "here.csv"))
        assert not connector.exists(Location("drop", "there.csv"))

    def test_login_rejected(self, connector, server):
        server.connect_error = ftplib.error_perm("530 Login incorrect")
        with pytest.raises(AuthorizationError):
            connector.exists(Location("drop", "here.csv"))


class TestArrivals:
    def test_mlsd(self, connector, server):
        server.files["/outbound/in/b.csv"] = (b"xx", "20250102000000")
        server.files["/outbound/in/a.csv"] = (b"x", "20250103000000")
        server.files["/outbound/in/.c.csv.part"] = (b"x", "20250101000000")
        arrivals = connector.list_new_arrivals(Location("drop", "in", {"pattern": "*.csv"}), None)
        assert [a.key for a in arrivals] == ["/outbound/in/b.csv", "/outbound/in/a.csv"]
        assert arrivals[0].token == "20250102000000|/outbound/in/b.csv"
        assert arrivals[0].size == 2

    def test_mlsd_watermark(self, connector, server):
        server.files["/outbound/in/a.csv"] = (b"x", "20250101000000")
        server.files["/outbound/in/b.csv"] = (b"x", "20250102000000")
        arrivals = connector.list_new_arrivals(Location("drop", "in"), "20250101000000|/outbound/in/a.csv")
        assert [a.key for a in arrivals] == ["/outbound/in/b.csv"]

    def test_nlst_fallback_orders_by_name(self, connector, server):
        server.mlsd = False
        server.files["/outbound/in/b.csv"] = (b"x", "20250101000000")
        server.files["/outbound/in/a.csv"] = (b"x", "20250102000000")
        arrivals = connector.list_new_arrivals(Location("drop", "in"), None)
        assert [a.token for a in arrivals] == ["|/outbound/in/a.csv", "|/outbound/in/b.csv"]


class TestTranslateError:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (ftplib.error_temp("421 Too many connections"), ConnectorUnavailableError),
            (ftplib.error_perm("530 Not logged in"), AuthorizationError),
            (ftplib.error_perm("550 Not found"), SourceNotFoundError),
            (ftplib.error_perm("553 Name not allowed"), TerminalError),
            (TimeoutError("timed out"), ConnectorTimeoutError),
            (ConnectionResetError("reset"), ConnectorUnavailableError),
        ],
    )
    def test_mapping(self, exc, expected):
        assert type(translate_error(exc, "/x")) is expected
