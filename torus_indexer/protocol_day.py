"""
Protocol-day arithmetic.

Every bucketed figure in the cache is keyed by protocol day. Day 1 starts at
the contract epoch (2025-07-10T18:00:00Z) and each day is a fixed 86 400 s
window, so the day boundary is always 18:00 UTC. Nothing else in the package
computes a day index on its own.
"""

from __future__ import annotations

from datetime import datetime, timezone

from .constants import CONTRACT_START_TS, SECONDS_PER_DAY


def protocol_day(ts: int) -> int:
    days = (int(ts) - CONTRACT_START_TS) // SECONDS_PER_DAY + 1
    return max(1, days)


def day_start_ts(day: int) -> int:
    return CONTRACT_START_TS + (int(day) - 1) * SECONDS_PER_DAY


def ts_to_iso(ts: int) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def day_start_iso(day: int) -> str:
    return ts_to_iso(day_start_ts(day))


def day_date_key(day: int) -> str:
    return ts_to_iso(day_start_ts(day))[:10]


def protocol_day_for_date_key(date_key: str) -> int:
    # Rows that only carry a calendar date: assume activity after that date's 18:00 UTC boundary.
    dt = datetime.strptime(str(date_key)[:10], "%Y-%m-%d").replace(hour=18, tzinfo=timezone.utc)
    return protocol_day(int(dt.timestamp()))


def maturity_ts(start_ts: int, staking_days: int) -> int:
    return int(start_ts) + int(staking_days) * SECONDS_PER_DAY


def iso_to_ts(iso: str) -> int:
    s = str(iso).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def current_protocol_day(now_ts: int | None = None) -> int:
    if now_ts is None:
        now_ts = int(datetime.now(tz=timezone.utc).timestamp())
    return protocol_day(now_ts)
