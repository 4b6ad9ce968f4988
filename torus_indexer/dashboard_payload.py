#!/usr/bin/env python3
"""
Compact chart payload derived from the cache.

The dashboard reads per-protocol-day series instead of walking every event in
the browser. Amounts are decimal strings in whole tokens.
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from .cache import CacheFormatError, load_cache
from .protocol_day import current_protocol_day, day_date_key, protocol_day
from .reconcile import recompute_totals
from .shares import position_window
from .utils import decimal_str, env, utc_now_iso, wei_to_decimal, write_json_atomic

log = logging.getLogger(__name__)

_AMOUNT_SERIES = (
    "createETH",
    "createTitanX",
    "stakeETH",
    "stakeTitanX",
    "torusCreated",
    "torusStaked",
    "sharesAdded",
)


def _blank_day(day: int) -> Dict[str, Any]:
    row: Dict[str, Any] = {"day": day, "date": day_date_key(day), "creates": 0, "stakes": 0}
    for k in _AMOUNT_SERIES:
        row[k] = Decimal(0)
    return row


def _event_day(rec: Dict[str, Any]) -> int:
    if rec.get("protocolDay"):
        return int(rec["protocolDay"])
    return protocol_day(int(rec.get("timestamp") or 0))


def _wei(rec: Dict[str, Any], key: str) -> Decimal:
    try:
        return wei_to_decimal(rec.get(key) or 0)
    except ValueError:
        log.warning("unparseable %s in %s", key, rec.get("transactionHash"))
        return Decimal(0)


def maturity_schedule(creates: List[Dict[str, Any]], stakes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """TORUS released per maturity day (create amounts plus stake principal)."""
    by_day: Dict[int, Dict[str, Any]] = {}
    for rec, key in [(c, "torusAmount") for c in creates] + [(s, "principal") for s in stakes]:
        _, end = position_window(rec)
        day = protocol_day(end)
        row = by_day.setdefault(day, {"day": day, "date": day_date_key(day), "positions": 0, "torusReleased": Decimal(0)})
        row["positions"] += 1
        row["torusReleased"] += _wei(rec, key)
    out = []
    for day in sorted(by_day):
        row = by_day[day]
        row["torusReleased"] = decimal_str(row["torusReleased"])
        out.append(row)
    return out


def build_dashboard_payload(doc: Dict[str, Any], *, now_ts: Optional[int] = None) -> Dict[str, Any]:
    if now_ts is None:
        now_ts = int(datetime.now(tz=timezone.utc).timestamp())
    staking = doc.get("stakingData") or {}
    creates = staking.get("createEvents") or []
    stakes = staking.get("stakeEvents") or []
    current_day = current_protocol_day(now_ts)

    days: Dict[int, Dict[str, Any]] = {d: _blank_day(d) for d in range(1, current_day + 1)}

    for rec in creates:
        row = days.setdefault(_event_day(rec), _blank_day(_event_day(rec)))
        row["creates"] += 1
        row["createETH"] += _wei(rec, "rawCostETH")
        row["createTitanX"] += _wei(rec, "rawCostTitanX")
        row["torusCreated"] += _wei(rec, "torusAmount")
        row["sharesAdded"] += _wei(rec, "shares")
    for rec in stakes:
        row = days.setdefault(_event_day(rec), _blank_day(_event_day(rec)))
        row["stakes"] += 1
        row["stakeETH"] += _wei(rec, "rawCostETH")
        row["stakeTitanX"] += _wei(rec, "rawCostTitanX")
        row["torusStaked"] += _wei(rec, "principal")
        row["sharesAdded"] += _wei(rec, "shares")

    for r in staking.get("rewardPoolData") or []:
        day = int(r["day"])
        if day in days:
            days[day]["rewardPool"] = str(r.get("rewardPool") or "0")
            days[day]["totalShares"] = str(r.get("totalShares") or "0")

    for r in (doc.get("buyProcessData") or {}).get("dailyData") or []:
        day = int(r.get("protocolDay") or 0)
        if day in days:
            days[day]["torusBurned"] = str(r.get("torusBurned") or "0")
            days[day]["torusPurchased"] = str(r.get("torusPurchased") or "0")
            days[day]["buyAndBurnCount"] = int(r.get("buyAndBurnCount") or 0)
            days[day]["buyAndBuildCount"] = int(r.get("buyAndBuildCount") or 0)

    series = []
    for day in sorted(days):
        row = days[day]
        for k in _AMOUNT_SERIES:
            row[k] = decimal_str(row[k])
        series.append(row)

    lp = doc.get("lpPositions") or []
    return {
        "generatedAt": utc_now_iso(),
        "currentProtocolDay": current_day,
        "lastProcessedBlock": (doc.get("metadata") or {}).get("lastProcessedBlock"),
        "totals": doc.get("totals") or recompute_totals(staking, now_ts=now_ts),
        "daily": series,
        "maturities": maturity_schedule(creates, stakes),
        "lp": {
            "positions": len(lp),
            "active": sum(1 for p in lp if p.get("status") == "active"),
        },
    }


def main() -> int:
    ap = argparse.ArgumentParser(description="Write the per-day chart payload for the dashboard.")
    ap.add_argument("--cache", default=env("TORUS_CACHE_PATH", "public/data/cached-data.json"))
    ap.add_argument("--out", default="public/data/dashboard.json")
    args = ap.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        doc = load_cache(Path(args.cache))
    except CacheFormatError as e:
        raise SystemExit(str(e))
    payload = build_dashboard_payload(doc)
    write_json_atomic(Path(args.out), payload)
    print(f"Wrote {args.out} ({len(payload['daily'])} days, {len(payload['maturities'])} maturity days)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
