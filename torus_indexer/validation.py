#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .cache import CacheFormatError, load_cache
from .constants import DEPLOYMENT_BLOCK
from .payments import needs_payment
from .protocol_day import day_date_key, protocol_day
from .reconcile import identity_keys, latest_block
from .shares import validate_position_shares
from .utils import env, is_address

log = logging.getLogger(__name__)

REQUIRED_CREATE_FIELDS = ("user", "stakeIndex", "timestamp", "blockNumber", "transactionHash", "torusAmount", "endTime", "protocolDay")
REQUIRED_STAKE_FIELDS = ("user", "stakeIndex", "timestamp", "blockNumber", "transactionHash", "principal", "stakingDays", "protocolDay")


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "errors": self.errors, "warnings": self.warnings, "summary": self.summary}


def _check_events(report: ValidationReport, kind: str, events: List[Dict[str, Any]], required: tuple) -> None:
    seen: Dict[tuple, int] = {}
    day_mismatches = 0
    unresolved = 0
    for i, rec in enumerate(events):
        where = f"{kind}[{i}]"
        missing = [k for k in required if rec.get(k) in (None, "")]
        if missing:
            report.errors.append(f"{where}: missing {', '.join(missing)}")
        if rec.get("user") and not is_address(rec["user"]):
            report.errors.append(f"{where}: bad address {rec['user']!r}")
        for key in identity_keys(rec):
            if key in seen:
                report.errors.append(f"{where}: duplicate of {kind}[{seen[key]}] ({key[0]} key)")
                break
        for key in identity_keys(rec):
            seen.setdefault(key, i)
        if rec.get("timestamp") not in (None, ""):
            expected = protocol_day(int(rec["timestamp"]))
            if rec.get("protocolDay") != expected:
                day_mismatches += 1
                report.errors.append(f"{where}: protocolDay {rec.get('protocolDay')} != {expected}")
        if needs_payment(rec):
            unresolved += 1
        warning = validate_position_shares(rec)
        if warning:
            report.warnings.append(f"{where}: {warning}")
    if unresolved:
        report.warnings.append(f"{kind}: {unresolved} events without payment data")
    report.summary[f"{kind}Count"] = len(events)
    report.summary[f"{kind}DayMismatches"] = day_mismatches
    report.summary[f"{kind}Unresolved"] = unresolved


def _check_daily_rows(report: ValidationReport, rows: List[Dict[str, Any]]) -> None:
    counts = Counter(int(r.get("protocolDay") or 0) for r in rows)
    for day, n in sorted(counts.items()):
        if day < 1:
            report.errors.append(f"buyProcessData.dailyData: {n} rows without protocolDay")
        elif n > 1:
            report.errors.append(f"buyProcessData.dailyData: protocol day {day} appears {n} times")
    for r in rows:
        day = int(r.get("protocolDay") or 0)
        if day >= 1 and r.get("date") != day_date_key(day):
            report.warnings.append(f"buyProcessData.dailyData: day {day} has date {r.get('date')}, expected {day_date_key(day)}")
    report.summary["dailyRows"] = len(rows)


def _check_reward_pool(report: ValidationReport, rows: List[Dict[str, Any]]) -> None:
    counts = Counter(int(r.get("day") or 0) for r in rows)
    dupes = [d for d, n in counts.items() if n > 1]
    if dupes:
        report.errors.append(f"rewardPoolData: duplicate days {sorted(dupes)[:10]}")
    report.summary["rewardPoolDays"] = len(rows)
    report.summary["rewardPoolOnChainDays"] = sum(1 for r in rows if r.get("calculated") is False)


def validate_cache(doc: Dict[str, Any]) -> ValidationReport:
    report = ValidationReport()
    staking = doc.get("stakingData") or {}
    creates = staking.get("createEvents") or []
    stakes = staking.get("stakeEvents") or []
    _check_events(report, "createEvents", creates, REQUIRED_CREATE_FIELDS)
    _check_events(report, "stakeEvents", stakes, REQUIRED_STAKE_FIELDS)
    _check_reward_pool(report, staking.get("rewardPoolData") or [])
    _check_daily_rows(report, (doc.get("buyProcessData") or {}).get("dailyData") or [])

    lp = doc.get("lpPositions") or []
    dup_ids = [tid for tid, n in Counter(str(p.get("tokenId")) for p in lp).items() if n > 1]
    if dup_ids:
        report.errors.append(f"lpPositions: duplicate tokenIds {sorted(dup_ids)}")
    report.summary["lpPositions"] = len(lp)

    meta = doc.get("metadata") or {}
    last = meta.get("lastProcessedBlock")
    if last is None:
        report.warnings.append("metadata.lastProcessedBlock is not set")
    elif not isinstance(last, int) or last < DEPLOYMENT_BLOCK:
        report.errors.append(f"metadata.lastProcessedBlock {last!r} is before deployment block {DEPLOYMENT_BLOCK}")
    else:
        newest = latest_block(creates, stakes)
        if newest is not None and newest > last:
            report.errors.append(f"events reach block {newest} beyond lastProcessedBlock {last}")
    report.summary["lastProcessedBlock"] = last
    return report


def print_report(report: ValidationReport) -> None:
    print("Cache validation")
    for k, v in report.summary.items():
        print(f"  {k}: {v}")
    for e in report.errors:
        print(f"ERROR   {e}")
    for w in report.warnings:
        print(f"WARNING {w}")
    print("OK" if report.ok else f"INVALID ({len(report.errors)} errors)")


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate the dashboard cache document.")
    ap.add_argument("--cache", default=env("TORUS_CACHE_PATH", "public/data/cached-data.json"))
    ap.add_argument("--json", action="store_true", help="Print the report as JSON.")
    args = ap.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        doc = load_cache(Path(args.cache))
    except CacheFormatError as e:
        raise SystemExit(str(e))
    report = validate_cache(doc)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print_report(report)
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
