"""Row codecs for file-shaped stores (local, object store, FTP).

Formats are chosen by ``location.options["format"]`` or by the path's
extension: ``.csv``, ``.jsonl``/``.ndjson``, ``.json``.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable, Iterator
from datetime import date, datetime
from decimal import Decimal
from pathlib import PurePosixPath
from typing import Any

from mapflow.core.errors import MalformedDataError
from mapflow.model.entities import Location

FORMATS = ("csv", "jsonl", "json")

_EXTENSIONS = {
    ".csv": "csv",
    ".jsonl": "jsonl",
    ".ndjson": "jsonl",
    ".json": "json",
}


def detect_format(location: Location, path: str | None = None) -> str:
    explicit = location.options.get("format")
    if explicit:
        if explicit not in FORMATS:
            raise MalformedDataError(f"Unsupported format '{explicit}'")
        return explicit
    suffix = PurePosixPath(path or location.path).suffix.lower()
    return _EXTENSIONS.get(suffix, "csv")


def _to_text(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def decode(data: bytes, fmt: str, *, source: str = "") -> Iterator[dict[str, Any]]:
    """Decode *data* into row dicts.

    Raises:
        MalformedDataError: Bytes are not valid for *fmt*.
    """
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise MalformedDataError(f"{source or 'input'} is not UTF-8", cause=e) from e

    if fmt == "csv":
        try:
            yield from (dict(row) for row in csv.DictReader(io.StringIO(text, newline="")))
        except csv.Error as e:
            raise MalformedDataError(f"Malformed CSV in {source or 'input'}: {e}", cause=e) from e
        return

    if fmt == "jsonl":
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as e:
                raise MalformedDataError(f"Malformed JSON at {source}:{lineno}: {e.msg}", cause=e) from e
            if not isinstance(row, dict):
                raise MalformedDataError(f"Expected an object at {source}:{lineno}")
            yield row
        return

    if fmt == "json":
        if not text.strip():
            return
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedDataError(f"Malformed JSON in {source or 'input'}: {e.msg}", cause=e) from e
        if not isinstance(payload, list) or not all(isinstance(r, dict) for r in payload):
            raise MalformedDataError(f"Expected a list of objects in {source or 'input'}")
        yield from payload
        return

    raise MalformedDataError(f"Unsupported format '{fmt}'")


def encode(rows: Iterable[dict[str, Any]], fmt: str, columns: Iterable[str] | None = None) -> tuple[bytes, int]:
    """Encode rows; returns ``(payload, row_count)``."""
    rows = list(rows)
    if fmt == "csv":
        fieldnames = list(columns) if columns is not None else _union_keys(rows)
        buffer = io.StringIO(newline="")
        writer = csv.DictWriter(buffer, fieldnames=fieldnames, extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: "" if v is None else _to_text(v) for k, v in row.items()})
        return buffer.getvalue().encode("utf-8"), len(rows)

    if fmt == "jsonl":
        lines = [json.dumps(row, default=_to_text, sort_keys=False) for row in rows]
        payload = "\n".join(lines) + ("\n" if lines else "")
        return payload.encode("utf-8"), len(rows)

    if fmt == "json":
        return json.dumps(rows, default=_to_text, indent=2).encode("utf-8"), len(rows)

    raise MalformedDataError(f"Unsupported format '{fmt}'")


def _union_keys(rows: list[dict[str, Any]]) -> list[str]:
    keys: list[str] = []
    for row in rows:
        for key in row:
            if key not in keys:
                keys.append(key)
    return keys


__all__ = ["FORMATS", "decode", "detect_format", "encode"]
