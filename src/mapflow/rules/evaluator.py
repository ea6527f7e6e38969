"""Rule expressions: parsing and write-time evaluation.

The resolver treats rules as opaque strings.  This module gives them
meaning at the point rows are written:

==========================  ==============================================
Expression                  Value written
==========================  ==========================================
``now`` / ``now()``         write timestamp (UTC), identical for every row
``today``                   write date
``uuid`` / ``uuid()``       fresh UUID4 per row
``null``                    ``None``
``source.<col>``            value from the joined source record
``source.<table>.<col>``    qualified value from the joined source record
``param.<name>``            step parameter
``'text'`` / ``"text"``     string literal
``42`` / ``1.5``            numeric literal
``true`` / ``false``        boolean literal
==========================  ==============================================

``now on write`` is accepted as a spelling of ``now``.  Anything else is a
:class:`RuleExpressionError`.  :func:`parse_rule` is what validation calls
so bad rules are rejected before a run is recorded.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from functools import lru_cache
from typing import Any

from mapflow.core.errors import RuleExpressionError


class RuleKind(str, Enum):
    NOW = "now"
    TODAY = "today"
    UUID = "uuid"
    NULL = "null"
    SOURCE = "source"
    PARAM = "param"
    LITERAL = "literal"


@dataclass(frozen=True)
class Rule:
    """A parsed rule expression."""

    kind: RuleKind
    ref: str | None = None
    value: Any = None


@dataclass(frozen=True)
class MappedRow:
    """A row produced by mapping logic plus the joined record it came from.

    ``values`` is what the mapping selected for the target; ``source`` is the
    joined source record (qualified ``table.column`` keys and bare keys) so
    ``source.*`` rules can reach columns the mapping did not select.
    """

    values: dict[str, Any]
    source: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WriteContext:
    """Per-write evaluation environment."""

    now: datetime = field(default_factory=lambda: datetime.now(UTC))
    params: Mapping[str, Any] = field(default_factory=dict)
    execution_id: str | None = None
    step_id: str | None = None


_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_SOURCE_RE = re.compile(rf"^source\.({_IDENT}(?:\.{_IDENT})?)$")
_PARAM_RE = re.compile(rf"^param\.({_IDENT})$")
_INT_RE = re.compile(r"^[-+]?\d+$")
_FLOAT_RE = re.compile(r"^[-+]?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")

_KEYWORDS: dict[str, Rule] = {
    "now": Rule(RuleKind.NOW),
    "now()": Rule(RuleKind.NOW),
    "now on write": Rule(RuleKind.NOW),
    "today": Rule(RuleKind.TODAY),
    "uuid": Rule(RuleKind.UUID),
    "uuid()": Rule(RuleKind.UUID),
    "null": Rule(RuleKind.NULL),
    "true": Rule(RuleKind.LITERAL, value=True),
    "false": Rule(RuleKind.LITERAL, value=False),
}


@lru_cache(maxsize=1024)
def parse_rule(expression: str) -> Rule:
    """Parse a rule expression.

    Raises:
        RuleExpressionError: If the expression is not in the grammar.
    """
    if not isinstance(expression, str):
        raise RuleExpressionError(repr(expression), "rule must be a string")
    text = expression.strip()
    if not text:
        raise RuleExpressionError(expression, "empty rule")

    keyword = _KEYWORDS.get(text.lower())
    if keyword is not None:
        return keyword

    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return Rule(RuleKind.LITERAL, value=text[1:-1])

    if match := _SOURCE_RE.match(text):
        return Rule(RuleKind.SOURCE, ref=match.group(1))
    if match := _PARAM_RE.match(text):
        return Rule(RuleKind.PARAM, ref=match.group(1))

    if _INT_RE.match(text):
        return Rule(RuleKind.LITERAL, value=int(text))
    if _FLOAT_RE.match(text):
        return Rule(RuleKind.LITERAL, value=float(text))

    raise RuleExpressionError(expression, "unknown expression")


def evaluate(rule: Rule, row: MappedRow, context: WriteContext, *, expression: str = "") -> Any:
    """Evaluate one parsed rule for one row."""
    if rule.kind is RuleKind.NOW:
        return context.now
    if rule.kind is RuleKind.TODAY:
        return context.now.date()
    if rule.kind is RuleKind.UUID:
        return str(uuid.uuid4())
    if rule.kind is RuleKind.NULL:
        return None
    if rule.kind is RuleKind.LITERAL:
        return rule.value
    if rule.kind is RuleKind.SOURCE:
        if rule.ref in row.source:
            return row.source[rule.ref]
        raise RuleExpressionError(expression or f"source.{rule.ref}", "column not in source record")
    if rule.kind is RuleKind.PARAM:
        if rule.ref in context.params:
            return context.params[rule.ref]
        raise RuleExpressionError(expression or f"param.{rule.ref}", "parameter not bound on step")
    raise RuleExpressionError(expression, f"unsupported rule kind {rule.kind}")


def apply_rules(
    rules: Mapping[str, str],
    rows: Iterable[MappedRow | Mapping[str, Any]],
    context: WriteContext,
    columns: Iterable[str] | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield plain rows with every rule column set by its rule.

    Args:
        rules: Effective rule set (column → expression).
        rows: Mapped rows (bare mappings are treated as their own source).
        context: Write timestamp and step parameters.
        columns: Target schema; when given, output rows keep only these
            columns. A column neither selected nor ruled is left out so the
            target applies its own default.
    """
    parsed = [(column, parse_rule(expr), expr) for column, expr in rules.items()]
    column_list = list(columns) if columns is not None else None
    for row in rows:
        if not isinstance(row, MappedRow):
            row = MappedRow(values=dict(row), source=row)
        out = dict(row.values)
        for column, rule, expr in parsed:
            out[column] = evaluate(rule, row, context, expression=expr)
        if column_list is not None:
            out = {column: out[column] for column in column_list if column in out}
        yield out


__all__ = [
    "MappedRow",
    "Rule",
    "RuleKind",
    "WriteContext",
    "apply_rules",
    "evaluate",
    "parse_rule",
]
