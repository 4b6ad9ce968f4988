"""
Buy & Process activity bucketed by protocol day.

TORUS burned per day comes from the actual burn transfers
(`Transfer(from=BUY_PROCESS, to=0x0)` on the TORUS token), never from the
`torusBurnt` argument of `BuyAndBurn`, which would double count the burns.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .constants import (
    BUY_PROCESS,
    MAX_BLOCK_RANGE,
    SELECTOR_ETH_BUILD,
    SELECTOR_ETH_BURN,
    TOPIC0_BUY_AND_BUILD,
    TOPIC0_BUY_AND_BURN,
    TOPIC0_FRACTAL,
    TOPIC0_TRANSFER,
    TOPIC0_WETH_DEPOSIT,
    TORUS_TOKEN,
    WETH,
)
from .events import decode_buy_and_build, decode_buy_and_burn, decode_fractal, decode_transfer
from .protocol_day import protocol_day
from .reconcile import (
    DAILY_AMOUNT_FIELDS,
    DAILY_COUNT_FIELDS,
    empty_daily_row,
    fill_missing_days,
    merge_daily_rows,
)
from .rpc import RpcClient, scan_logs
from .utils import ZERO_ADDRESS, abi_encode_address, decimal_str, hex_to_int, utc_now_iso, wei_to_decimal

log = logging.getLogger(__name__)


def fetch_buy_process_events(
    client: RpcClient,
    from_block: int,
    to_block: int,
    *,
    chunk_size: int = MAX_BLOCK_RANGE,
) -> Dict[str, List[Dict[str, Any]]]:
    logs = scan_logs(
        client,
        address=BUY_PROCESS,
        topics=[[TOPIC0_BUY_AND_BURN, TOPIC0_BUY_AND_BUILD, TOPIC0_FRACTAL]],
        from_block=from_block,
        to_block=to_block,
        chunk_size=chunk_size,
    )
    out: Dict[str, List[Dict[str, Any]]] = {"burns": [], "builds": [], "fractals": [], "burnTransfers": []}
    for lg in logs:
        topic0 = str((lg.get("topics") or [""])[0]).lower()
        if topic0 == TOPIC0_BUY_AND_BURN:
            out["burns"].append(decode_buy_and_burn(lg))
        elif topic0 == TOPIC0_BUY_AND_BUILD:
            out["builds"].append(decode_buy_and_build(lg))
        elif topic0 == TOPIC0_FRACTAL:
            out["fractals"].append(decode_fractal(lg))

    burn_logs = scan_logs(
        client,
        address=TORUS_TOKEN,
        topics=[TOPIC0_TRANSFER, "0x" + abi_encode_address(BUY_PROCESS), "0x" + abi_encode_address(ZERO_ADDRESS)],
        from_block=from_block,
        to_block=to_block,
        chunk_size=chunk_size,
    )
    out["burnTransfers"] = [decode_transfer(lg) for lg in burn_logs]
    return out


def weth_deposit_in_receipt(receipt: Dict[str, Any]) -> int:
    for lg in receipt.get("logs") or []:
        topics = [str(t).lower() for t in (lg.get("topics") or [])]
        if str(lg.get("address") or "").lower() == WETH and topics and topics[0] == TOPIC0_WETH_DEPOSIT:
            return hex_to_int(lg.get("data") or "0x0")
    return 0


def _selector(tx: Dict[str, Any]) -> str:
    return str(tx.get("input") or tx.get("data") or "")[:10].lower()


def eth_used_for_burn(client: RpcClient, tx_hash: str) -> int:
    """ETH spent by a burn transaction (0 for TitanX burns)."""
    tx = client.get_transaction(tx_hash)
    if _selector(tx) != SELECTOR_ETH_BURN:
        return 0
    wad = weth_deposit_in_receipt(client.get_receipt(tx_hash))
    if wad == 0:
        log.warning("no WETH deposit found for ETH burn %s", tx_hash)
    return wad


def eth_used_for_build(client: RpcClient, tx_hash: str) -> Optional[int]:
    """ETH spent by a build transaction; None when the build was paid in TitanX."""
    tx = client.get_transaction(tx_hash)
    if _selector(tx) != SELECTOR_ETH_BUILD:
        return None
    value = hex_to_int(tx.get("value"))
    if value > 0:
        return value
    wad = weth_deposit_in_receipt(client.get_receipt(tx_hash))
    if wad == 0:
        log.warning("ETH build %s has no value and no WETH deposit", tx_hash)
    return wad


class _DayBuckets:
    def __init__(self) -> None:
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.amounts: Dict[int, Dict[str, Decimal]] = {}

    def day(self, day: int) -> Dict[str, Any]:
        if day not in self.rows:
            self.rows[day] = empty_daily_row(day)
            self.amounts[day] = {k: Decimal(0) for k in DAILY_AMOUNT_FIELDS}
        return self.rows[day]

    def add(self, day: int, field: str, amount_wei: Any) -> None:
        self.day(day)
        self.amounts[day][field] += wei_to_decimal(amount_wei)

    def count(self, day: int, field: str) -> None:
        self.day(day)[field] += 1

    def finish(self) -> List[Dict[str, Any]]:
        out = []
        for day in sorted(self.rows):
            row = self.rows[day]
            for k, v in self.amounts[day].items():
                row[k] = decimal_str(v)
            out.append(row)
        return out


def build_daily_rows(client: RpcClient, events: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    buckets = _DayBuckets()

    def _day(rec: Dict[str, Any]) -> int:
        return protocol_day(client.block_timestamp(int(rec["blockNumber"])))

    for ev in events.get("burns", []):
        day = _day(ev)
        buckets.count(day, "buyAndBurnCount")
        buckets.add(day, "titanXUsed", ev["titanXAmount"])
        buckets.add(day, "titanXUsedForBurns", ev["titanXAmount"])
        eth = eth_used_for_burn(client, ev["transactionHash"])
        if eth:
            buckets.add(day, "ethUsed", eth)
            buckets.add(day, "ethUsedForBurns", eth)

    for ev in events.get("builds", []):
        day = _day(ev)
        buckets.count(day, "buyAndBuildCount")
        buckets.add(day, "torusPurchased", ev["torusPurchased"])
        eth = eth_used_for_build(client, ev["transactionHash"])
        if eth is None:
            buckets.add(day, "titanXUsed", ev["tokenAllocated"])
            buckets.add(day, "titanXUsedForBuilds", ev["tokenAllocated"])
        elif eth:
            buckets.add(day, "ethUsed", eth)
            buckets.add(day, "ethUsedForBuilds", eth)

    for ev in events.get("fractals", []):
        day = _day(ev)
        buckets.count(day, "fractalCount")
        buckets.add(day, "fractalTitanX", ev["releasedTitanX"])
        buckets.add(day, "fractalETH", ev["releasedETH"])

    for tr in events.get("burnTransfers", []):
        buckets.add(_day(tr), "torusBurned", tr["value"])

    return buckets.finish()


def event_counts(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    totals = {k: 0 for k in DAILY_COUNT_FIELDS}
    for row in rows:
        for k in DAILY_COUNT_FIELDS:
            totals[k] += int(row.get(k) or 0)
    return {
        "buyAndBurn": totals["buyAndBurnCount"],
        "buyAndBuild": totals["buyAndBuildCount"],
        "fractal": totals["fractalCount"],
    }


def update_buy_process(
    client: RpcClient,
    section: Dict[str, Any],
    from_block: int,
    to_block: int,
    *,
    current_day: int,
    chunk_size: int = MAX_BLOCK_RANGE,
) -> Dict[str, Any]:
    """
    Fold the deltas since `metadata.lastBlock` into a copy of `section`.

    `from_block` is only used when the section has never been scanned. RPC
    errors propagate; a half-classified range is never merged.
    """
    meta = dict(section.get("metadata") or {})
    last = meta.get("lastBlock")
    if last is not None:
        from_block = int(last) + 1

    rows = list(section.get("dailyData") or [])
    if from_block <= to_block:
        events = fetch_buy_process_events(client, from_block, to_block, chunk_size=chunk_size)
        deltas = build_daily_rows(client, events)
        rows, _ = merge_daily_rows(rows, deltas, additive=True)
        log.info(
            "buy/process %d..%d: %d burns, %d builds, %d fractals, %d burn transfers",
            from_block,
            to_block,
            len(events["burns"]),
            len(events["builds"]),
            len(events["fractals"]),
            len(events["burnTransfers"]),
        )
        meta["lastBlock"] = to_block

    rows, _ = fill_missing_days(rows, current_day)
    meta["lastUpdated"] = utc_now_iso()
    meta["totalTorusBurned"] = decimal_str(sum((Decimal(str(r.get("torusBurned") or 0)) for r in rows), Decimal(0)))
    return {"dailyData": rows, "eventCounts": event_counts(rows), "metadata": meta}
