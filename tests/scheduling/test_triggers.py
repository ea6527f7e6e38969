"""Tests for trigger evaluation (cron instants and arrival detection)."""

from datetime import UTC, datetime

import pytest

from mapflow.core.watermarks import WatermarkStore
from mapflow.model.entities import ConnectionSpec, Flow, Location, TriggerSpec
from mapflow.scheduling.clock import ManualClock
from mapflow.scheduling.triggers import (
    detect_arrivals,
    detect_schedule,
    latest_due_instant,
    parse_schedule_fire_key,
    schedule_fire_key,
)


def at(hour, minute=0, day=1):
    return datetime(2025, 1, day, hour, minute, tzinfo=UTC)


HOURLY = "0 * * * *"


class TestFireKeys:
    def test_schedule_fire_key(self):
        assert schedule_fire_key(at(10)) == "schedule:2025-01-01T10:00:00Z"

    def test_round_trip(self):
        assert parse_schedule_fire_key(schedule_fire_key(at(10, 15))) == at(10, 15)

    def test_keys_sort_in_time_order(self):
        keys = [schedule_fire_key(at(h, day=d)) for d in (2, 1) for h in (9, 23)]
        assert sorted(keys) == [keys[2], keys[3], keys[0], keys[1]]


class TestLatestDueInstant:
    def test_exact_hit_counts(self):
        assert latest_due_instant(HOURLY, at(10), anchor=at(9, 30)) == at(10)

    def test_between_instants(self):
        assert latest_due_instant(HOURLY, at(10, 30), anchor=at(9, 30)) == at(10)

    def test_nothing_before_anchor(self):
        assert latest_due_instant(HOURLY, at(10, 30), anchor=at(10, 15)) is None

    def test_already_fired(self):
        assert latest_due_instant(HOURLY, at(10, 30), anchor=at(9), last_fired=at(10)) is None

    def test_missed_instants_collapse_to_latest(self):
        assert latest_due_instant(HOURLY, at(13, 5), anchor=at(9), last_fired=at(10)) == at(13)


class TestDetectSchedule:
    def test_detection_carries_instant(self):
        flow = Flow(id="hourly", steps=("s",), trigger=TriggerSpec.schedule(HOURLY))
        detection = detect_schedule(flow, at(10, 1), anchor=at(9), last_fire_key=None)
        assert detection.fire_key == "schedule:2025-01-01T10:00:00Z"
        assert detection.params == {"scheduled_for": "2025-01-01T10:00:00+00:00"}
        assert detection.watermarks == ()

    def test_last_fire_key_suppresses(self):
        flow = Flow(id="hourly", steps=("s",), trigger=TriggerSpec.schedule(HOURLY))
        assert detect_schedule(flow, at(10, 1), anchor=at(9), last_fire_key=schedule_fire_key(at(10))) is None


class TestDetectArrivals:
    @pytest.fixture
    def connector(self, registry):
        return registry.open(ConnectionSpec(id="mem", kind="local-filesystem"))

    @pytest.fixture
    def flow(self):
        return Flow(id="inbox", steps=("s",), trigger=TriggerSpec.file_arrival(Location("mem", "inbox")))

    def test_new_arrivals(self, connector, flow, storage):
        storage.arrive("inbox", "inbox/b.csv", "t2")
        storage.arrive("inbox", "inbox/a.csv", "t1")

        detection = detect_arrivals(flow, connector, WatermarkStore())

        assert detection.fire_key == "arrival:t2"
        assert detection.params == {"arrivals": ["inbox/a.csv", "inbox/b.csv"]}
        (advance,) = detection.watermarks
        assert (advance.flow_id, advance.location, advance.high_water) == ("inbox", "mem:inbox", "t2")

    def test_watermark_hides_seen_items(self, connector, flow, storage):
        watermarks = WatermarkStore()
        storage.arrive("inbox", "inbox/a.csv", "t1")
        watermarks.advance("inbox", "mem:inbox", "t1")
        assert detect_arrivals(flow, connector, watermarks) is None

        storage.arrive("inbox", "inbox/b.csv", "t2")
        assert detect_arrivals(flow, connector, watermarks).params == {"arrivals": ["inbox/b.csv"]}

    def test_same_stamp_ties_are_remembered(self, connector, flow, storage):
        watermarks = WatermarkStore()
        storage.arrive("inbox", "inbox/b.csv", "0005|inbox/b.csv")
        storage.arrive("inbox", "inbox/c.csv", "0005|inbox/c.csv")
        first = detect_arrivals(flow, connector, watermarks)
        (advance,) = first.watermarks
        assert advance.metadata["tied"] == ["0005|inbox/b.csv", "0005|inbox/c.csv"]
        watermarks.advance("inbox", "mem:inbox", advance.high_water, metadata=advance.metadata)

        storage.arrive("inbox", "inbox/a.csv", "0005|inbox/a.csv")
        second = detect_arrivals(flow, connector, watermarks)

        assert second.fire_key == "arrival:0005|inbox/a.csv"
        assert second.params == {"arrivals": ["inbox/a.csv"]}
        (advance,) = second.watermarks
        assert advance.high_water == "0005|inbox/c.csv"
        assert advance.metadata["tied"] == ["0005|inbox/a.csv", "0005|inbox/b.csv", "0005|inbox/c.csv"]

    def test_newer_stamp_resets_ties(self, connector, flow, storage):
        watermarks = WatermarkStore()
        watermarks.advance("inbox", "mem:inbox", "0005|inbox/b.csv", metadata={"tied": ["0005|inbox/b.csv"]})
        storage.arrive("inbox", "inbox/b.csv", "0005|inbox/b.csv")
        storage.arrive("inbox", "inbox/z.csv", "0006|inbox/z.csv")

        detection = detect_arrivals(flow, connector, watermarks)

        assert detection.params == {"arrivals": ["inbox/z.csv"]}
        assert detection.watermarks[0].metadata["tied"] == ["0006|inbox/z.csv"]

    def test_detection_does_not_advance(self, connector, flow, storage):
        watermarks = WatermarkStore()
        storage.arrive("inbox", "inbox/a.csv", "t1")
        detect_arrivals(flow, connector, watermarks)
        assert watermarks.get("inbox", "mem:inbox") is None

    def test_flow_without_watch(self, connector):
        assert detect_arrivals(Flow(id="f", steps=("s",)), connector, WatermarkStore()) is None


class TestManualClock:
    def test_advance_and_set(self):
        clock = ManualClock(at(9))
        clock.advance(minutes=30)
        assert clock.now() == at(9, 30)
        clock.set(at(12))
        assert clock.now() == at(12)
        assert clock.monotonic() == 3 * 3600

    def test_naive_start_is_utc(self):
        assert ManualClock(datetime(2025, 1, 1)).now().tzinfo is UTC
