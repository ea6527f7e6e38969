"""Tests for rule parsing and write-time evaluation."""

import uuid
from datetime import UTC, date, datetime

import pytest

from mapflow.core.errors import RuleExpressionError
from mapflow.rules.evaluator import MappedRow, RuleKind, WriteContext, apply_rules, parse_rule

NOW = datetime(2025, 3, 1, 12, 30, tzinfo=UTC)


class TestParseRule:
    @pytest.mark.parametrize("text", ["now", "NOW", "now()", "now on write", "  now  "])
    def test_now_spellings(self, text):
        assert parse_rule(text).kind is RuleKind.NOW

    @pytest.mark.parametrize(
        "text, kind, ref",
        [
            ("source.modified_ts", RuleKind.SOURCE, "modified_ts"),
            ("source.raw_orders.id", RuleKind.SOURCE, "raw_orders.id"),
            ("param.batch", RuleKind.PARAM, "batch"),
        ],
    )
    def test_references(self, text, kind, ref):
        rule = parse_rule(text)
        assert rule.kind is kind
        assert rule.ref == ref

    @pytest.mark.parametrize(
        "text, value",
        [("'web'", "web"), ('"web"', "web"), ("42", 42), ("-1.5", -1.5), ("true", True), ("false", False)],
    )
    def test_literals(self, text, value):
        rule = parse_rule(text)
        assert rule.kind is RuleKind.LITERAL
        assert rule.value == value

    def test_keywords(self):
        assert parse_rule("today").kind is RuleKind.TODAY
        assert parse_rule("uuid()").kind is RuleKind.UUID
        assert parse_rule("null").kind is RuleKind.NULL

    @pytest.mark.parametrize("text", ["", "   ", "later", "source.", "source.a.b.c", "param.1x", "now please"])
    def test_rejects(self, text):
        with pytest.raises(RuleExpressionError):
            parse_rule(text)


class TestApplyRules:
    def test_now_is_identical_across_rows(self):
        rows = [{"id": 1}, {"id": 2}]
        out = list(apply_rules({"updated_at": "now"}, rows, WriteContext(now=NOW)))
        assert [r["updated_at"] for r in out] == [NOW, NOW]

    def test_today(self):
        out = list(apply_rules({"d": "today"}, [{}], WriteContext(now=NOW)))
        assert out[0]["d"] == date(2025, 3, 1)

    def test_uuid_is_fresh_per_row(self):
        out = list(apply_rules({"id": "uuid"}, [{}, {}], WriteContext(now=NOW)))
        assert out[0]["id"] != out[1]["id"]
        uuid.UUID(out[0]["id"])

    def test_source_reads_the_joined_record(self):
        row = MappedRow(values={"order_id": "1"}, source={"modified_ts": "2025-01-01", "raw.id": "1"})
        out = list(apply_rules(
            {"updated_at": "source.modified_ts", "raw_id": "source.raw.id"},
            [row],
            WriteContext(now=NOW),
        ))
        assert out == [{"order_id": "1", "updated_at": "2025-01-01", "raw_id": "1"}]

    def test_rule_overwrites_selected_value(self):
        out = list(apply_rules({"status": "'loaded'"}, [{"status": "new"}], WriteContext(now=NOW)))
        assert out[0]["status"] == "loaded"

    def test_param(self):
        out = list(apply_rules({"batch": "param.batch"}, [{}], WriteContext(now=NOW, params={"batch": 7})))
        assert out[0]["batch"] == 7

    def test_unbound_param_fails(self):
        with pytest.raises(RuleExpressionError, match="not bound"):
            list(apply_rules({"batch": "param.batch"}, [{}], WriteContext(now=NOW)))

    def test_missing_source_column_fails(self):
        with pytest.raises(RuleExpressionError, match="not in source"):
            list(apply_rules({"x": "source.ghost"}, [{"a": 1}], WriteContext(now=NOW)))

    def test_columns_project_without_padding(self):
        out = list(apply_rules(
            {"updated_at": "now"},
            [{"order_id": "1", "extra": "drop"}],
            WriteContext(now=NOW),
            columns=["order_id", "amount", "updated_at"],
        ))
        assert out == [{"order_id": "1", "updated_at": NOW}]

    def test_explicit_none_is_kept(self):
        out = list(apply_rules({}, [{"order_id": "1", "amount": None}], WriteContext(now=NOW), columns=["order_id", "amount"]))
        assert out == [{"order_id": "1", "amount": None}]

    def test_empty_rule_set_passes_rows_through(self):
        assert list(apply_rules({}, [{"a": 1}], WriteContext(now=NOW))) == [{"a": 1}]
