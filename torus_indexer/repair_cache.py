#!/usr/bin/env python3
"""
Offline reconciliation of an existing cache document.

Normalises legacy field shapes, removes duplicate events, recomputes every
protocol day from block timestamps, rebuckets daily buy/burn rows, and
recomputes totals and reward-pool shares. With `--backfill-payments` events
lacking payment data are resolved over RPC.
"""

from __future__ import annotations

import argparse
import copy
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .buy_process import event_counts
from .cache import CacheFormatError, DataLossError, backup_cache, load_cache, save_cache
from .constants import DEFAULT_RPC_URLS
from .lp_positions import merge_positions
from .payments import ADJACENT_BLOCKS, backfill_payments, fetch_titanx_transfers, needs_payment
from .protocol_day import current_protocol_day
from .reconcile import (
    dedupe_events,
    fill_missing_days,
    normalize_event,
    rebucket_daily_rows,
    recompute_protocol_days,
    recompute_totals,
)
from .rpc import RpcClient
from .shares import build_reward_pool_rows, merge_reward_pool_rows, refresh_total_shares
from .utils import env, env_list, utc_now_iso

log = logging.getLogger(__name__)


@dataclass
class RepairReport:
    normalised: Counter = field(default_factory=Counter)
    duplicates: Dict[str, int] = field(default_factory=dict)
    day_changes: List[tuple] = field(default_factory=list)
    daily_notes: List[str] = field(default_factory=list)
    daily_days_added: List[int] = field(default_factory=list)
    lp_duplicates: int = 0
    share_days_changed: List[int] = field(default_factory=list)
    reward_days_added: int = 0
    payments: Dict[str, int] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(
            self.normalised
            or any(self.duplicates.values())
            or self.day_changes
            or self.daily_notes
            or self.daily_days_added
            or self.lp_duplicates
            or self.share_days_changed
            or self.reward_days_added
            or self.payments.get("eth")
            or self.payments.get("titanx")
        )


def repair_document(doc: Dict[str, Any], *, now_ts: Optional[int] = None) -> RepairReport:
    report = RepairReport()
    staking = doc["stakingData"]
    if now_ts is None:
        now_ts = int(datetime.now(tz=timezone.utc).timestamp())
    current_day = current_protocol_day(now_ts)

    for kind in ("createEvents", "stakeEvents"):
        events = staking.get(kind) or []
        for rec in events:
            report.normalised.update(normalize_event(rec))
        events, removed = dedupe_events(events)
        report.duplicates[kind] = removed
        report.day_changes.extend(recompute_protocol_days(events))
        staking[kind] = events

    rows = merge_reward_pool_rows([], staking.get("rewardPoolData") or [])
    now_iso = utc_now_iso()
    report.share_days_changed = refresh_total_shares(rows, staking["createEvents"], staking["stakeEvents"], now_iso=now_iso)
    have = {int(r["day"]) for r in rows}
    missing = [
        r
        for r in build_reward_pool_rows(staking["createEvents"], staking["stakeEvents"], current_day, now_iso=now_iso)
        if int(r["day"]) not in have
    ]
    report.reward_days_added = len(missing)
    staking["rewardPoolData"] = merge_reward_pool_rows(rows, missing)

    bp = doc["buyProcessData"]
    daily, report.daily_notes = rebucket_daily_rows(bp.get("dailyData") or [])
    daily, report.daily_days_added = fill_missing_days(daily, current_day)
    bp["dailyData"] = daily
    bp["eventCounts"] = event_counts(daily)

    lp = doc.get("lpPositions") or []
    doc["lpPositions"] = merge_positions(lp, [])
    report.lp_duplicates = len(lp) - len(doc["lpPositions"])

    doc["totals"] = recompute_totals(staking, now_ts=now_ts)
    return report


def backfill_missing_payments(client: RpcClient, doc: Dict[str, Any]) -> Dict[str, int]:
    staking = doc["stakingData"]
    pending = [r for r in staking["createEvents"] + staking["stakeEvents"] if needs_payment(r)]
    if not pending:
        return {}
    blocks = [int(r["blockNumber"]) for r in pending if r.get("blockNumber") is not None]
    pool = None
    if blocks:
        pool = fetch_titanx_transfers(client, min(blocks) - ADJACENT_BLOCKS, max(blocks) + ADJACENT_BLOCKS)
    return backfill_payments(client, pending, pool=pool)


def print_report(report: RepairReport) -> None:
    for note, n in sorted(report.normalised.items()):
        print(f"normalised: {note} x{n}")
    for kind, n in report.duplicates.items():
        if n:
            print(f"{kind}: removed {n} duplicates")
    for label, old, new in report.day_changes[:50]:
        print(f"protocolDay {label}: {old} -> {new}")
    if len(report.day_changes) > 50:
        print(f"... {len(report.day_changes) - 50} more protocolDay changes")
    for note in report.daily_notes:
        print(f"dailyData: {note}")
    if report.daily_days_added:
        print(f"dailyData: added {len(report.daily_days_added)} empty days")
    if report.lp_duplicates:
        print(f"lpPositions: removed {report.lp_duplicates} duplicates")
    if report.share_days_changed:
        print(f"rewardPoolData: totalShares recomputed for {len(report.share_days_changed)} days")
    if report.reward_days_added:
        print(f"rewardPoolData: added {report.reward_days_added} projected days")
    if report.payments:
        print(f"payments: {report.payments}")
    if not report.changed:
        print("nothing to repair")


def main() -> int:
    ap = argparse.ArgumentParser(description="Reconcile an existing dashboard cache in place.")
    ap.add_argument("--cache", default=env("TORUS_CACHE_PATH", "public/data/cached-data.json"))
    ap.add_argument("--backup-dir", default=env("TORUS_BACKUP_DIR", ""))
    ap.add_argument("--dry-run", action="store_true", help="Print the report without writing.")
    ap.add_argument("--backfill-payments", action="store_true", help="Resolve missing payment data over RPC.")
    ap.add_argument("--rpc-url", action="append", default=None)
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    path = Path(args.cache)
    try:
        original = load_cache(path)
    except CacheFormatError as e:
        raise SystemExit(str(e))
    doc = copy.deepcopy(original)

    report = repair_document(doc)
    if args.backfill_payments:
        client = RpcClient(args.rpc_url or env_list("TORUS_RPC_URLS", DEFAULT_RPC_URLS))
        report.payments = backfill_missing_payments(client, doc)
        doc["totals"] = recompute_totals(doc["stakingData"], now_ts=int(datetime.now(tz=timezone.utc).timestamp()))

    print_report(report)
    if args.dry_run or not report.changed:
        return 0

    backup_cache(path, backup_dir=Path(args.backup_dir) if args.backup_dir else None)
    try:
        save_cache(path, doc, previous=original)
    except DataLossError as e:
        raise SystemExit(f"not written: {e}")
    print(f"Wrote {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
