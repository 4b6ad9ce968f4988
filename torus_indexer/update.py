#!/usr/bin/env python3
"""
Incremental cache update.

Scans creates/stakes from `metadata.lastProcessedBlock + 1` to the chain head,
resolves payments and shares, merges the new events into the cache and rebuilds
the derived sections. Nothing is written unless every fetch succeeded and the
merged document validates; `lastProcessedBlock` therefore only moves forward
together with the data it covers.

Long scans are resumable: `--resume` picks up a pickled `ScanState` written
after every chunk.
"""

from __future__ import annotations

import argparse
import copy
import logging
import os
import pickle
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .buy_process import update_buy_process
from .cache import DataLossError, backup_cache, load_cache, save_cache
from .constants import (
    CREATE_STAKE,
    DEFAULT_RPC_URLS,
    DEPLOYMENT_BLOCK,
    MAX_BLOCK_RANGE,
    MIN_NEW_BLOCKS,
    TOPIC0_CREATED,
    TOPIC0_STAKED,
)
from .events import decode_created, decode_staked, enrich_create, enrich_stake
from .lp_positions import update_lp_positions
from .payments import backfill_payments, fetch_titanx_transfers
from .protocol_day import current_protocol_day
from .reconcile import merge_events, recompute_protocol_days, recompute_totals
from .rpc import RpcClient, RpcError, iter_block_chunks, get_logs_range
from .shares import (
    build_reward_pool_rows,
    fetch_onchain_reward_pool,
    fetch_stake_positions,
    match_shares,
    merge_reward_pool_rows,
    refresh_total_shares,
)
from .utils import ensure_dir, env, env_list, utc_now_iso
from .validation import validate_cache

log = logging.getLogger(__name__)


@dataclass
class ScanState:
    version: int
    from_block: int
    to_block: int
    chunk_size: int
    next_block: int
    # decoded but not yet enriched events
    creates: List[Dict[str, Any]]
    stakes: List[Dict[str, Any]]
    updated_at_utc: str


@dataclass
class UpdateResult:
    status: str
    from_block: int = 0
    to_block: int = 0
    new_creates: int = 0
    new_stakes: int = 0
    filled: int = 0
    payments: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    rpc_calls: int = 0


def load_state(path: Path, from_block: int) -> Optional[ScanState]:
    if not path.exists():
        return None
    with open(path, "rb") as f:
        raw = pickle.load(f)
    if not isinstance(raw, ScanState):
        log.warning("ignoring %s: not a scan state", path)
        return None
    if raw.from_block != from_block:
        log.warning("ignoring %s: starts at %d, cache expects %d", path, raw.from_block, from_block)
        return None
    return raw


def save_state(path: Path, state: ScanState) -> None:
    state.updated_at_utc = datetime.now(tz=timezone.utc).isoformat()
    ensure_dir(path.parent)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "wb") as f:
        pickle.dump(state, f, protocol=pickle.HIGHEST_PROTOCOL)
    os.replace(tmp, path)


def scan_positions(client: RpcClient, state: ScanState, *, state_path: Optional[Path] = None) -> ScanState:
    if state.next_block > state.to_block:
        return state
    for chunk_from, chunk_to in iter_block_chunks(state.next_block, state.to_block, state.chunk_size):
        logs = get_logs_range(
            client,
            address=CREATE_STAKE,
            topics=[[TOPIC0_CREATED, TOPIC0_STAKED]],
            from_block=chunk_from,
            to_block=chunk_to,
        )
        for lg in logs:
            topic0 = str((lg.get("topics") or [""])[0]).lower()
            if topic0 == TOPIC0_CREATED:
                state.creates.append(decode_created(lg))
            elif topic0 == TOPIC0_STAKED:
                state.stakes.append(decode_staked(lg))
        state.next_block = chunk_to + 1
        if state_path is not None:
            save_state(state_path, state)
        log.info("scanned %s..%s (%d logs)", f"{chunk_from:,}", f"{chunk_to:,}", len(logs))
    return state


def enrich_events(client: RpcClient, creates: List[Dict[str, Any]], stakes: List[Dict[str, Any]]) -> None:
    for rec in creates:
        enrich_create(rec, client.block_timestamp(rec["blockNumber"]))
    for rec in stakes:
        enrich_stake(rec, client.block_timestamp(rec["blockNumber"]))


def attach_create_shares(client: RpcClient, creates: List[Dict[str, Any]]) -> int:
    """Created logs carry no shares; read them from the user's contract positions."""
    users = sorted({c["user"] for c in creates if not c.get("shares")})
    positions = {u: fetch_stake_positions(client, u) for u in users}
    matched = match_shares(creates, positions, is_create=True)
    if matched < len(creates):
        log.warning("shares matched for %d of %d new creates", matched, len(creates))
    return matched


def run_update(
    client: RpcClient,
    cache_path: Path,
    *,
    backup_dir: Optional[Path] = None,
    min_new_blocks: int = MIN_NEW_BLOCKS,
    chunk_size: int = MAX_BLOCK_RANGE,
    to_block: Optional[int] = None,
    buy_process: bool = True,
    lp: bool = True,
    onchain_rewards: bool = False,
    state_path: Optional[Path] = None,
    resume: bool = False,
    now_ts: Optional[int] = None,
) -> UpdateResult:
    previous = load_cache(cache_path)
    doc = copy.deepcopy(previous)

    last = (doc.get("metadata") or {}).get("lastProcessedBlock")
    from_block = int(last) + 1 if last is not None else DEPLOYMENT_BLOCK
    head = int(to_block) if to_block is not None else client.block_number()
    result = UpdateResult(status="skipped", from_block=from_block, to_block=head)
    if head - from_block + 1 < min_new_blocks:
        log.info("only %d new blocks (< %d), nothing to do", max(0, head - from_block + 1), min_new_blocks)
        return result

    backup_cache(cache_path, backup_dir=backup_dir)

    state = load_state(state_path, from_block) if (resume and state_path is not None) else None
    if state is None:
        state = ScanState(
            version=1,
            from_block=from_block,
            to_block=head,
            chunk_size=chunk_size,
            next_block=from_block,
            creates=[],
            stakes=[],
            updated_at_utc=utc_now_iso(),
        )
    else:
        head = max(head, state.to_block)
        state.to_block = head
        result.to_block = head
        log.info("resuming scan at block %d", state.next_block)

    current_day = current_protocol_day(now_ts)
    now_unix = now_ts if now_ts is not None else int(datetime.now(tz=timezone.utc).timestamp())
    staking = doc["stakingData"]
    # Sections skipped with --no-buy-process/--no-lp keep their own cursors.
    lp_scanned_to: Optional[int] = None

    try:
        scan_positions(client, state, state_path=state_path)
        creates = copy.deepcopy(state.creates)
        stakes = copy.deepcopy(state.stakes)
        enrich_events(client, creates, stakes)
        if creates or stakes:
            pool = fetch_titanx_transfers(client, from_block, head, chunk_size=chunk_size)
            result.payments = backfill_payments(client, creates + stakes, pool=pool, raise_errors=True)
        if creates:
            attach_create_shares(client, creates)

        if buy_process:
            section = doc.get("buyProcessData") or {}
            doc["buyProcessData"] = update_buy_process(
                client,
                section,
                from_block if section.get("dailyData") else DEPLOYMENT_BLOCK,
                head,
                current_day=current_day,
                chunk_size=chunk_size,
            )
        if lp:
            existing_lp = doc.get("lpPositions") or []
            doc["lpPositions"] = update_lp_positions(
                client,
                existing_lp,
                from_block if existing_lp else DEPLOYMENT_BLOCK,
                head,
                last_block=(doc.get("metadata") or {}).get("lpLastBlock"),
                chunk_size=chunk_size,
            )
            lp_scanned_to = head

        onchain_rows: List[Dict[str, Any]] = []
        if onchain_rewards:
            have = {int(r["day"]) for r in staking.get("rewardPoolData") or [] if r.get("calculated") is False}
            onchain_rows = fetch_onchain_reward_pool(client, [d for d in range(1, current_day + 1) if d not in have])
    except RpcError as e:
        # `doc` is a private copy; the cache on disk was never touched.
        log.error("update aborted, cache left unchanged: %s", e)
        result.status = "failed"
        result.errors.append(str(e))
        result.rpc_calls = client.calls
        return result

    merged_creates = merge_events(staking.get("createEvents") or [], creates)
    merged_stakes = merge_events(staking.get("stakeEvents") or [], stakes)
    staking["createEvents"] = merged_creates.events
    staking["stakeEvents"] = merged_stakes.events
    result.new_creates = merged_creates.added
    result.new_stakes = merged_stakes.added
    result.filled = len(merged_creates.filled) + len(merged_stakes.filled)
    for change in recompute_protocol_days(staking["createEvents"]) + recompute_protocol_days(staking["stakeEvents"]):
        log.info("protocolDay of %s: %s -> %s", *change)

    now_iso = utc_now_iso()
    rows = merge_reward_pool_rows(
        staking.get("rewardPoolData") or [],
        build_reward_pool_rows(staking["createEvents"], staking["stakeEvents"], current_day, now_iso=now_iso),
    )
    rows = merge_reward_pool_rows(rows, onchain_rows)
    if result.new_creates or result.new_stakes:
        refresh_total_shares(rows, staking["createEvents"], staking["stakeEvents"], now_iso=now_iso)
    staking["rewardPoolData"] = rows
    staking["metadata"] = {
        **(staking.get("metadata") or {}),
        "currentProtocolDay": current_day,
        "totalCreates": len(staking["createEvents"]),
        "totalStakes": len(staking["stakeEvents"]),
        "lastUpdated": now_iso,
    }
    doc["totals"] = recompute_totals(staking, now_ts=now_unix)
    doc["metadata"] = {
        **(doc.get("metadata") or {}),
        "lastProcessedBlock": head,
        "currentProtocolDay": current_day,
        "lastIncrementalUpdate": now_iso,
    }
    if lp_scanned_to is not None:
        doc["metadata"]["lpLastBlock"] = lp_scanned_to

    known_errors = set(validate_cache(previous).errors)
    report = validate_cache(doc)
    new_errors = [e for e in report.errors if e not in known_errors]
    if new_errors:
        for e in new_errors:
            log.error("validation: %s", e)
        result.status = "invalid"
        result.errors.extend(new_errors)
        result.rpc_calls = client.calls
        return result

    try:
        save_cache(cache_path, doc, previous=previous)
    except DataLossError as e:
        log.error("%s", e)
        result.status = "failed"
        result.errors.append(str(e))
        result.rpc_calls = client.calls
        return result

    if state_path is not None and state_path.exists():
        state_path.unlink()
    result.status = "updated"
    result.rpc_calls = client.calls
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Incrementally update the dashboard cache from mainnet logs.")
    parser.add_argument("--cache", default=env("TORUS_CACHE_PATH", "public/data/cached-data.json"))
    parser.add_argument("--rpc-url", action="append", default=None, help="May be repeated; defaults to TORUS_RPC_URLS.")
    parser.add_argument("--backup-dir", default=env("TORUS_BACKUP_DIR", ""))
    parser.add_argument("--min-new-blocks", type=int, default=MIN_NEW_BLOCKS)
    parser.add_argument("--chunk-size", type=int, default=MAX_BLOCK_RANGE)
    parser.add_argument("--to-block", type=int, default=0, help="0 = chain head")
    parser.add_argument("--no-buy-process", action="store_true")
    parser.add_argument("--no-lp", action="store_true")
    parser.add_argument("--onchain-rewards", action="store_true", help="Read rewardPool/totalShares for past days from the contract.")
    parser.add_argument("--resume", action="store_true")
    parser.add_argument("--state-pkl", default="artifacts/update_scan_state.pkl")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    client = RpcClient(args.rpc_url or env_list("TORUS_RPC_URLS", DEFAULT_RPC_URLS))
    result = run_update(
        client,
        Path(args.cache),
        backup_dir=Path(args.backup_dir) if args.backup_dir else None,
        min_new_blocks=int(args.min_new_blocks),
        chunk_size=int(args.chunk_size),
        to_block=int(args.to_block) or None,
        buy_process=not args.no_buy_process,
        lp=not args.no_lp,
        onchain_rewards=bool(args.onchain_rewards),
        state_path=Path(args.state_pkl),
        resume=bool(args.resume),
    )

    print(f"{result.status}: blocks {result.from_block:,}..{result.to_block:,}")
    if result.status == "updated":
        print(f"  new creates: {result.new_creates}, new stakes: {result.new_stakes}, filled: {result.filled}")
        if result.payments:
            print(f"  payments: {result.payments}")
        print(f"Wrote {args.cache}")
    for e in result.errors:
        print(f"  error: {e}")
    print(f"  rpc calls: {result.rpc_calls}")
    return 0 if result.status in ("updated", "skipped") else 1


if __name__ == "__main__":
    raise SystemExit(main())
