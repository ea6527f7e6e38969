"""Trigger evaluation - turn a flow's trigger into at most one firing.

Fire keys identify a trigger occurrence and are recorded by the run ledger
with the execution they start:

- ``schedule:<instant>`` where *instant* is ``YYYY-MM-DDTHH:MM:SSZ``; the
  fixed format sorts lexicographically in time order
- ``arrival:<token>`` where *token* is the newest arrival token seen
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from croniter import croniter

from mapflow.connectors.base import Arrival, Connector
from mapflow.core.watermarks import WatermarkAdvance, WatermarkStore
from mapflow.model.entities import Flow

SCHEDULE_PREFIX = "schedule:"
ARRIVAL_PREFIX = "arrival:"
_INSTANT_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class Detection:
    """A trigger occurrence ready to be turned into a run request."""

    flow_id: str
    fire_key: str
    params: dict[str, Any] = field(default_factory=dict)
    watermarks: tuple[WatermarkAdvance, ...] = ()


def schedule_fire_key(instant: datetime) -> str:
    return SCHEDULE_PREFIX + instant.astimezone(UTC).strftime(_INSTANT_FORMAT)


def parse_schedule_fire_key(fire_key: str) -> datetime:
    return datetime.strptime(fire_key[len(SCHEDULE_PREFIX):], _INSTANT_FORMAT).replace(tzinfo=UTC)


def latest_due_instant(
    expression: str,
    now: datetime,
    *,
    anchor: datetime,
    last_fired: datetime | None = None,
) -> datetime | None:
    """The most recent scheduled instant at or before *now* that should fire.

    Instants before *anchor* never fire; neither does anything at or
    before *last_fired*.  Several missed instants collapse into the latest.
    """
    # croniter.get_prev is strictly-before; nudge so an exact hit counts.
    instant = croniter(expression, now + timedelta(seconds=1)).get_prev(datetime)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    instant = instant.replace(microsecond=0)
    if instant > now or instant < anchor:
        return None
    if last_fired is not None and instant <= last_fired:
        return None
    return instant


def detect_schedule(
    flow: Flow,
    now: datetime,
    *,
    anchor: datetime,
    last_fire_key: str | None,
) -> Detection | None:
    last_fired = parse_schedule_fire_key(last_fire_key) if last_fire_key else None
    instant = latest_due_instant(flow.trigger.expression or "", now, anchor=anchor, last_fired=last_fired)
    if instant is None:
        return None
    return Detection(
        flow_id=flow.id,
        fire_key=schedule_fire_key(instant),
        params={"scheduled_for": instant.isoformat()},
    )


def _stamp(token: str) -> str | None:
    """Ordering part of a ``<stamp>|<key>`` token; ``None`` for tokens without one."""
    stamp, sep, _ = token.partition("|")
    return stamp if sep and stamp else None


def detect_arrivals(flow: Flow, connector: Connector, watermarks: WatermarkStore) -> Detection | None:
    """New items at the flow's watched location, past its watermark.

    Items stamped the same as the watermark can land after it was taken,
    so listing restarts at the watermark's stamp and drops the tokens
    already fired there (kept as ``tied`` in the watermark metadata).

    The watermark is *not* advanced here; the returned advance is applied
    by the ledger in the transaction that records the run.
    """
    watch = flow.trigger.watch
    if watch is None:
        return None
    current = watermarks.get(flow.id, watch.key)
    floor = current.high_water if current else None
    seen: set[str] = set()
    if current is not None and (stamp := _stamp(current.high_water)):
        floor = f"{stamp}|"
        seen = {current.high_water, *current.metadata.get("tied", ())}

    arrivals: list[Arrival] = [a for a in connector.list_new_arrivals(watch, floor) if a.token not in seen]
    if not arrivals:
        return None
    newest = max(arrivals).token
    high_water = max(newest, current.high_water) if current else newest
    metadata: dict[str, Any] = {"arrivals": len(arrivals)}
    if high_stamp := _stamp(high_water):
        metadata["tied"] = sorted(
            token for token in {*seen, *(a.token for a in arrivals)} if _stamp(token) == high_stamp
        )
    return Detection(
        flow_id=flow.id,
        fire_key=ARRIVAL_PREFIX + newest,
        params={"arrivals": [a.key for a in arrivals]},
        watermarks=(
            WatermarkAdvance(
                flow_id=flow.id,
                location=watch.key,
                high_water=high_water,
                metadata=metadata,
            ),
        ),
    )


__all__ = [
    "ARRIVAL_PREFIX",
    "SCHEDULE_PREFIX",
    "Detection",
    "detect_arrivals",
    "detect_schedule",
    "latest_due_instant",
    "parse_schedule_fire_key",
    "schedule_fire_key",
]
