"""Declarative mapping logic: join, filter and select over source rows.

A mapping's ``logic`` block is plain data::

    logic:
      joins:
        - table: customers
          how: left                       # inner (default) | left
          on: [[raw_orders.customer_id, customer_id]]
      where:
        - {column: raw_orders.status, op: ne, value: cancelled}
        - {column: region, op: eq, value: "${region}"}
      select:
        order_id: raw_orders.id
        customer_name: customers.name
        channel: "'web'"
        batch: "${batch}"
      distinct: false

The first source is the driving table and is streamed; joined tables are
hash-indexed in memory.  Each joined record carries qualified
``table.column`` keys and bare ``column`` keys (first table to supply a
bare name wins).  ``${name}`` placeholders are bound from step params.
When ``select`` is omitted every target column found in the joined record
is projected.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from mapflow.core.errors import MappingLogicError
from mapflow.model.entities import Mapping as MappingEntity
from mapflow.rules.evaluator import MappedRow

_PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_WHOLE_PLACEHOLDER_RE = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")
_NUMBER_RE = re.compile(r"^[-+]?(\d+\.\d*|\.\d+|\d+)$")

JOIN_TYPES = ("inner", "left")

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a is not None and a > b,
    "ge": lambda a, b: a is not None and a >= b,
    "lt": lambda a, b: a is not None and a < b,
    "le": lambda a, b: a is not None and a <= b,
    "in": lambda a, b: a in b,
    "not_in": lambda a, b: a not in b,
    "is_null": lambda a, b: a is None,
    "not_null": lambda a, b: a is not None,
}

OPERATORS = tuple(_OPERATORS)


@dataclass(frozen=True)
class JoinSpec:
    table: str
    how: str = "inner"
    on: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Predicate:
    column: str
    op: str
    value: Any = None

    def matches(self, record: Mapping[str, Any]) -> bool:
        value = lookup(record, self.column)
        try:
            return _OPERATORS[self.op](value, self.value)
        except TypeError as e:
            raise MappingLogicError(
                f"Cannot compare {self.column}={value!r} with {self.value!r} using '{self.op}'",
                cause=e,
            ) from e


@dataclass(frozen=True)
class SelectExpr:
    """One projected column: a record reference or a constant."""

    ref: str | None = None
    constant: Any = None

    def evaluate(self, record: Mapping[str, Any]) -> Any:
        if self.ref is None:
            return self.constant
        return lookup(record, self.ref)


@dataclass(frozen=True)
class CompiledLogic:
    """Mapping logic with parameters bound, ready to run."""

    driving_table: str
    joins: tuple[JoinSpec, ...] = ()
    where: tuple[Predicate, ...] = ()
    select: Mapping[str, SelectExpr] | None = None
    distinct: bool = False
    columns: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


def lookup(record: Mapping[str, Any], ref: str) -> Any:
    """Resolve a qualified or bare column reference in a joined record."""
    if ref in record:
        return record[ref]
    raise MappingLogicError(f"Unknown column reference '{ref}'")


def required_params(logic: Mapping[str, Any]) -> set[str]:
    """Every ``${name}`` placeholder used anywhere in *logic*."""
    found: set[str] = set()

    def walk(node: Any) -> None:
        if isinstance(node, str):
            found.update(_PLACEHOLDER_RE.findall(node))
        elif isinstance(node, Mapping):
            for value in node.values():
                walk(value)
        elif isinstance(node, (list, tuple)):
            for value in node:
                walk(value)

    walk(logic)
    return found


def _bind(value: Any, params: Mapping[str, Any]) -> Any:
    """Substitute placeholders; a whole-string placeholder keeps the param's type."""
    if isinstance(value, str):
        whole = _WHOLE_PLACEHOLDER_RE.match(value)
        if whole:
            name = whole.group(1)
            if name not in params:
                raise MappingLogicError(f"Parameter '{name}' is not bound")
            return params[name]

        def repl(match: re.Match) -> str:
            name = match.group(1)
            if name not in params:
                raise MappingLogicError(f"Parameter '{name}' is not bound")
            return str(params[name])

        return _PLACEHOLDER_RE.sub(repl, value)
    if isinstance(value, list):
        return [_bind(v, params) for v in value]
    if isinstance(value, tuple):
        return tuple(_bind(v, params) for v in value)
    return value


def _compile_select(expr: Any, params: Mapping[str, Any]) -> SelectExpr:
    if not isinstance(expr, str):
        return SelectExpr(constant=expr)
    text = expr.strip()
    if _WHOLE_PLACEHOLDER_RE.match(text):
        return SelectExpr(constant=_bind(text, params))
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return SelectExpr(constant=_bind(text[1:-1], params))
    if _NUMBER_RE.match(text):
        return SelectExpr(constant=float(text) if "." in text else int(text))
    if _PLACEHOLDER_RE.search(text):
        raise MappingLogicError(f"Placeholder inside a column reference: '{text}'")
    return SelectExpr(ref=text)


def check_logic(mapping: MappingEntity, target_columns: Iterable[str] | None = None) -> list[str]:
    """Static problems with *mapping*'s logic block (empty list when valid)."""
    problems: list[str] = []
    logic = mapping.logic or {}
    unknown_keys = set(logic) - {"joins", "where", "select", "distinct"}
    if unknown_keys:
        problems.append(f"unknown logic keys: {', '.join(sorted(unknown_keys))}")

    extra_sources = list(mapping.sources[1:])
    joined: list[str] = []
    for index, join in enumerate(logic.get("joins") or []):
        if not isinstance(join, Mapping) or "table" not in join:
            problems.append(f"join #{index} must be a mapping with a 'table'")
            continue
        table = join["table"]
        if table not in extra_sources:
            problems.append(f"join #{index} table '{table}' is not a secondary source of the mapping")
        joined.append(table)
        if join.get("how", "inner") not in JOIN_TYPES:
            problems.append(f"join #{index} has unsupported type '{join.get('how')}'")
        pairs = join.get("on") or []
        if not pairs or not all(isinstance(p, (list, tuple)) and len(p) == 2 for p in pairs):
            problems.append(f"join #{index} 'on' must be a non-empty list of [left, right] pairs")

    for table in extra_sources:
        if joined.count(table) != 1:
            problems.append(f"secondary source '{table}' must be joined exactly once")

    for index, pred in enumerate(logic.get("where") or []):
        if not isinstance(pred, Mapping) or "column" not in pred:
            problems.append(f"where #{index} must be a mapping with a 'column'")
            continue
        op = pred.get("op", "eq")
        if op not in _OPERATORS:
            problems.append(f"where #{index} has unknown operator '{op}'")
        elif op in ("in", "not_in") and not isinstance(pred.get("value"), (list, tuple, str)):
            problems.append(f"where #{index} operator '{op}' needs a list value")

    select = logic.get("select")
    if select is not None:
        if not isinstance(select, Mapping):
            problems.append("select must map target columns to expressions")
        elif target_columns is not None:
            known = set(target_columns)
            unknown = sorted(c for c in select if c not in known)
            if unknown:
                problems.append(f"select names columns not on the target: {', '.join(unknown)}")
    return problems


def compile_logic(
    mapping: MappingEntity,
    params: Mapping[str, Any],
    columns: Mapping[str, Iterable[str]] | None = None,
) -> CompiledLogic:
    """Bind *params* into *mapping*'s logic.

    Args:
        mapping: The mapping being run.
        params: Step parameters.
        columns: Known schema per source table, used to pad left joins.

    Raises:
        MappingLogicError: Invalid logic or an unbound parameter.
    """
    problems = check_logic(mapping)
    if problems:
        raise MappingLogicError(f"Mapping '{mapping.id}': {'; '.join(problems)}").with_context(
            entity_id=mapping.id
        )
    logic = mapping.logic or {}
    joins = tuple(
        JoinSpec(
            table=j["table"],
            how=j.get("how", "inner"),
            on=tuple((str(_bind(left, params)), str(_bind(right, params))) for left, right in j["on"]),
        )
        for j in logic.get("joins") or []
    )
    where = tuple(
        Predicate(
            column=str(_bind(p["column"], params)),
            op=p.get("op", "eq"),
            value=_bind(p.get("value"), params),
        )
        for p in logic.get("where") or []
    )
    select = None
    if logic.get("select") is not None:
        select = {column: _compile_select(expr, params) for column, expr in logic["select"].items()}
    return CompiledLogic(
        driving_table=mapping.sources[0],
        joins=joins,
        where=where,
        select=select,
        distinct=bool(logic.get("distinct", False)),
        columns={t: tuple(c) for t, c in (columns or {}).items()},
    )


def _qualify(table: str, row: Mapping[str, Any], record: dict[str, Any] | None = None) -> dict[str, Any]:
    record = dict(record or {})
    for column, value in row.items():
        record[f"{table}.{column}"] = value
        record.setdefault(column, value)
    return record


def _join_key(values: Iterable[Any]) -> tuple:
    return tuple(values)


def run_logic(
    logic: CompiledLogic,
    sources: Mapping[str, Iterable[Mapping[str, Any]]],
    target_columns: Iterable[str],
) -> Iterator[MappedRow]:
    """Evaluate compiled logic over source rows.

    Args:
        logic: Output of :func:`compile_logic`.
        sources: Row iterables keyed by source table id.
        target_columns: Target schema, used when ``select`` is omitted.
    """
    target_columns = tuple(target_columns)

    indexes: list[tuple[JoinSpec, dict[tuple, list[Mapping[str, Any]]], tuple[str, ...]]] = []
    for join in logic.joins:
        right_cols = tuple(right for _, right in join.on)
        index: dict[tuple, list[Mapping[str, Any]]] = {}
        seen_columns: list[str] = list(logic.columns.get(join.table, ()))
        for row in sources[join.table]:
            for column in row:
                if column not in seen_columns:
                    seen_columns.append(column)
            index.setdefault(_join_key(row.get(c) for c in right_cols), []).append(row)
        indexes.append((join, index, tuple(seen_columns)))

    emitted: set[tuple] = set()
    for base_row in sources[logic.driving_table]:
        records = [_qualify(logic.driving_table, base_row)]
        for join, index, right_columns in indexes:
            expanded: list[dict[str, Any]] = []
            for record in records:
                key = _join_key(lookup(record, left) for left, _ in join.on)
                matches = index.get(key, [])
                if matches:
                    expanded.extend(_qualify(join.table, m, record) for m in matches)
                elif join.how == "left":
                    expanded.append(_qualify(join.table, {c: None for c in right_columns}, record))
            records = expanded

        for record in records:
            if not all(p.matches(record) for p in logic.where):
                continue
            if logic.select is not None:
                values = {column: expr.evaluate(record) for column, expr in logic.select.items()}
            else:
                values = {c: record[c] for c in target_columns if c in record}
            if logic.distinct:
                fingerprint = tuple(sorted((k, repr(v)) for k, v in values.items()))
                if fingerprint in emitted:
                    continue
                emitted.add(fingerprint)
            yield MappedRow(values=values, source=record)


__all__ = [
    "CompiledLogic",
    "JoinSpec",
    "OPERATORS",
    "Predicate",
    "SelectExpr",
    "check_logic",
    "compile_logic",
    "required_params",
    "run_logic",
]
