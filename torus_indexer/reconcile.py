"""
Protocol-day reconciliation and merge rules for the cache.

Repeated partial fetches deliver the same on-chain event more than once, and
older cache rows were written by tools with different field names and day
boundaries. These helpers make a merge idempotent:

- an event is identified by `(transactionHash, logIndex)` and, for rows that
  predate log indexes, by `(user, stakeIndex, blockNumber)`;
- committed rows are never overwritten, only completed (missing fields filled);
- protocol days are always recomputed from block timestamps;
- daily aggregate rows with activity are never replaced by all-zero rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .events import sort_key
from .payments import needs_payment
from .protocol_day import day_date_key, iso_to_ts, maturity_ts, protocol_day, protocol_day_for_date_key, ts_to_iso
from .shares import position_window
from .utils import decimal_str, hex_to_int, parse_raw_amount, wei_to_decimal

log = logging.getLogger(__name__)

PAYMENT_FIELDS = ("rawCostETH", "costETH", "rawCostTitanX", "costTitanX", "paymentResolved")
RAW_AMOUNT_FIELDS = ("principal", "shares", "torusAmount", "rawCostETH", "rawCostTitanX")
FIELD_ALIASES = {
    "id": "stakeIndex",
    "titanAmount": "rawCostTitanX",
    "titanXAmount": "rawCostTitanX",
    "ethAmount": "rawCostETH",
    "duration": "stakingDays",
}

DAILY_COUNT_FIELDS = ("buyAndBurnCount", "buyAndBuildCount", "fractalCount")
DAILY_AMOUNT_FIELDS = (
    "torusBurned",
    "titanXUsed",
    "ethUsed",
    "titanXUsedForBurns",
    "ethUsedForBurns",
    "titanXUsedForBuilds",
    "ethUsedForBuilds",
    "torusPurchased",
    "fractalTitanX",
    "fractalETH",
)


# ---- event identity ----


def identity_keys(rec: Dict[str, Any]) -> List[tuple]:
    keys: List[tuple] = []
    tx = str(rec.get("transactionHash") or "").lower()
    if tx and rec.get("logIndex") is not None:
        keys.append(("log", tx, hex_to_int(rec["logIndex"])))
    user = str(rec.get("user") or "").lower()
    idx = rec.get("stakeIndex", rec.get("id"))
    block = rec.get("blockNumber")
    if user and idx is not None and block is not None:
        keys.append(("pos", user, str(idx), hex_to_int(block)))
    return keys


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def fill_missing(target: Dict[str, Any], source: Dict[str, Any]) -> List[str]:
    """Complete `target` from `source` without touching values already committed."""
    filled: List[str] = []
    if needs_payment(target) and not needs_payment(source):
        for k in PAYMENT_FIELDS:
            if k in source and target.get(k) != source[k]:
                target[k] = source[k]
                filled.append(k)
    for k, v in source.items():
        if k in PAYMENT_FIELDS or _is_missing(v):
            continue
        if k not in target or _is_missing(target[k]):
            target[k] = v
            filled.append(k)
        elif k == "shares":
            try:
                if parse_raw_amount(target[k]) == 0 and parse_raw_amount(v) > 0:
                    target[k] = v
                    filled.append(k)
            except ValueError:
                continue
    return filled


@dataclass
class MergeResult:
    events: List[Dict[str, Any]]
    added: int = 0
    duplicates: int = 0
    filled: Dict[str, List[str]] = field(default_factory=dict)


def _label(rec: Dict[str, Any]) -> str:
    return f"{rec.get('transactionHash') or rec.get('user')}#{rec.get('logIndex', rec.get('stakeIndex'))}"


def merge_events(existing: Sequence[Dict[str, Any]], incoming: Iterable[Dict[str, Any]]) -> MergeResult:
    out: List[Dict[str, Any]] = []
    index: Dict[tuple, Dict[str, Any]] = {}
    result = MergeResult(events=out)

    def _absorb(rec: Dict[str, Any], *, is_new: bool) -> None:
        keys = identity_keys(rec)
        hit = next((index[k] for k in keys if k in index), None)
        if hit is None:
            row = dict(rec)
            out.append(row)
            for k in keys:
                index[k] = row
            if is_new:
                result.added += 1
            return
        result.duplicates += 1
        filled = fill_missing(hit, rec)
        if filled:
            result.filled.setdefault(_label(hit), []).extend(filled)
        for k in identity_keys(hit):
            index.setdefault(k, hit)

    for rec in existing:
        _absorb(rec, is_new=False)
    for rec in incoming:
        _absorb(rec, is_new=True)

    out.sort(key=sort_key)
    return result


def dedupe_events(events: Sequence[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    res = merge_events(events, [])
    return res.events, res.duplicates


# ---- per-event normalisation ----


def normalize_event(rec: Dict[str, Any]) -> List[str]:
    """Rewrite legacy field names/shapes in place; returns a list of change notes."""
    changes: List[str] = []
    for old, new in FIELD_ALIASES.items():
        if old in rec:
            val = rec.pop(old)
            if _is_missing(rec.get(new)) and not _is_missing(val):
                rec[new] = val
                changes.append(f"{old}->{new}")
    for k in ("user", "transactionHash"):
        if isinstance(rec.get(k), str) and rec[k] != rec[k].lower():
            rec[k] = rec[k].lower()
            changes.append(f"lowercase {k}")
    for k in RAW_AMOUNT_FIELDS:
        if k not in rec or _is_missing(rec[k]):
            continue
        try:
            as_int = str(parse_raw_amount(rec[k]))
        except ValueError:
            continue
        if rec[k] != as_int:
            rec[k] = as_int
            changes.append(f"{k} to integer string")
    for k in ("blockNumber", "logIndex", "stakingDays"):
        if k in rec and not isinstance(rec[k], int) and not _is_missing(rec[k]):
            try:
                rec[k] = int(str(rec[k]), 0) if str(rec[k]).startswith("0x") else int(Decimal(str(rec[k])))
                changes.append(f"{k} to int")
            except (ValueError, ArithmeticError):
                continue
    if "stakeIndex" in rec and not isinstance(rec["stakeIndex"], str):
        rec["stakeIndex"] = str(rec["stakeIndex"])

    ts = rec.get("timestamp")
    if not _is_missing(ts):
        if not isinstance(ts, str):
            rec["timestamp"] = str(int(ts))
        start = int(rec["timestamp"])
        if _is_missing(rec.get("endTime")):
            if not _is_missing(rec.get("maturityDate")):
                rec["endTime"] = str(iso_to_ts(rec["maturityDate"]))
                changes.append("endTime from maturityDate")
            elif not _is_missing(rec.get("stakingDays")):
                rec["endTime"] = str(maturity_ts(start, int(rec["stakingDays"])))
                changes.append("endTime from stakingDays")
        if _is_missing(rec.get("maturityDate")) and not _is_missing(rec.get("endTime")):
            rec["maturityDate"] = ts_to_iso(int(rec["endTime"]))
            changes.append("maturityDate from endTime")
    return changes


def recompute_protocol_days(events: Iterable[Dict[str, Any]]) -> List[Tuple[str, Any, int]]:
    changes: List[Tuple[str, Any, int]] = []
    for rec in events:
        ts = rec.get("timestamp")
        if _is_missing(ts):
            continue
        day = protocol_day(int(ts))
        if rec.get("protocolDay") != day:
            changes.append((_label(rec), rec.get("protocolDay"), day))
            rec["protocolDay"] = day
    return changes


# ---- totals ----


def _sum_raw(records: Iterable[Dict[str, Any]], key: str) -> int:
    total = 0
    for rec in records:
        try:
            total += parse_raw_amount(rec.get(key))
        except ValueError:
            log.warning("skipping unparseable %s=%r in %s", key, rec.get(key), _label(rec))
    return total


def recompute_totals(staking_data: Dict[str, Any], *, now_ts: int) -> Dict[str, Any]:
    creates = staking_data.get("createEvents") or []
    stakes = staking_data.get("stakeEvents") or []

    staked_eth = _sum_raw(stakes, "rawCostETH")
    created_eth = _sum_raw(creates, "rawCostETH")
    staked_titanx = _sum_raw(stakes, "rawCostTitanX")
    created_titanx = _sum_raw(creates, "rawCostTitanX")

    active_stakes = [s for s in stakes if position_window(s)[1] > now_ts]
    active_creates = [c for c in creates if position_window(c)[1] > now_ts]

    return {
        "totalETH": decimal_str(wei_to_decimal(staked_eth + created_eth)),
        "totalTitanX": decimal_str(wei_to_decimal(staked_titanx + created_titanx)),
        "totalStakedETH": decimal_str(wei_to_decimal(staked_eth)),
        "totalCreatedETH": decimal_str(wei_to_decimal(created_eth)),
        "totalStakedTitanX": decimal_str(wei_to_decimal(staked_titanx)),
        "totalCreatedTitanX": decimal_str(wei_to_decimal(created_titanx)),
        "activeStakedPrincipal": decimal_str(wei_to_decimal(_sum_raw(active_stakes, "principal"))),
        "activeCreatedTorus": decimal_str(wei_to_decimal(_sum_raw(active_creates, "torusAmount"))),
        "createCount": len(creates),
        "stakeCount": len(stakes),
        "activeStakeCount": len(active_stakes),
        "activeCreateCount": len(active_creates),
    }


# ---- daily buy/burn rows ----


def empty_daily_row(day: int) -> Dict[str, Any]:
    row: Dict[str, Any] = {"protocolDay": day, "date": day_date_key(day)}
    for k in DAILY_COUNT_FIELDS:
        row[k] = 0
    for k in DAILY_AMOUNT_FIELDS:
        row[k] = "0"
    return row


def _dec(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    return Decimal(str(value))


def row_has_activity(row: Dict[str, Any]) -> bool:
    if any(int(row.get(k) or 0) > 0 for k in DAILY_COUNT_FIELDS):
        return True
    return any(_dec(row.get(k)) != 0 for k in DAILY_AMOUNT_FIELDS)


def add_daily_rows(base: Dict[str, Any], delta: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k in DAILY_COUNT_FIELDS:
        out[k] = int(base.get(k) or 0) + int(delta.get(k) or 0)
    for k in DAILY_AMOUNT_FIELDS:
        out[k] = decimal_str(_dec(base.get(k)) + _dec(delta.get(k)))
    return out


def merge_daily_rows(
    existing: Sequence[Dict[str, Any]],
    incoming: Sequence[Dict[str, Any]],
    *,
    additive: bool = True,
) -> Tuple[List[Dict[str, Any]], List[int]]:
    """
    Merge daily rows keyed by protocol day.

    `additive=True` treats incoming rows as deltas from a fresh block range.
    Otherwise incoming rows replace committed ones, except that a committed row
    with activity is never replaced by an all-zero row (those days are returned).
    """
    by_day: Dict[int, Dict[str, Any]] = {int(r["protocolDay"]): dict(r) for r in existing}
    preserved: List[int] = []
    for row in incoming:
        day = int(row["protocolDay"])
        cur = by_day.get(day)
        if cur is None:
            by_day[day] = dict(row)
        elif additive:
            by_day[day] = add_daily_rows(cur, row)
        elif row_has_activity(cur) and not row_has_activity(row):
            log.warning("refusing to overwrite day %s activity with zeros", day)
            preserved.append(day)
        else:
            merged = dict(cur)
            merged.update(row)
            by_day[day] = merged
    return [by_day[d] for d in sorted(by_day)], preserved


def rebucket_daily_rows(rows: Sequence[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Give every row a protocol day and the matching date key, folding rows that collide."""
    notes: List[str] = []
    by_day: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        r = dict(row)
        day = r.get("protocolDay")
        if not day:
            if not r.get("date"):
                notes.append("dropped row without protocolDay or date")
                continue
            day = protocol_day_for_date_key(r["date"])
            notes.append(f"{r['date']}: assigned protocol day {day}")
        day = int(day)
        r["protocolDay"] = day
        date_key = day_date_key(day)
        if r.get("date") != date_key:
            notes.append(f"day {day}: date {r.get('date')} -> {date_key}")
            r["date"] = date_key
        if day in by_day:
            notes.append(f"day {day}: folded duplicate row")
            by_day[day] = add_daily_rows(by_day[day], r)
        else:
            by_day[day] = r
    return [by_day[d] for d in sorted(by_day)], notes


def fill_missing_days(rows: Sequence[Dict[str, Any]], current_day: int) -> Tuple[List[Dict[str, Any]], List[int]]:
    by_day = {int(r["protocolDay"]): r for r in rows}
    added = [d for d in range(1, current_day + 1) if d not in by_day]
    for d in added:
        by_day[d] = empty_daily_row(d)
    return [by_day[d] for d in sorted(by_day)], added


def latest_block(*groups: Iterable[Dict[str, Any]]) -> Optional[int]:
    best: Optional[int] = None
    for group in groups:
        for rec in group:
            b = rec.get("blockNumber")
            if b is None:
                continue
            best = hex_to_int(b) if best is None else max(best, hex_to_int(b))
    return best
