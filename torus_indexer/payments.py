"""
Payment attribution for creates and stakes.

A create/stake is paid either in ETH (transaction value) or in TitanX (an ERC-20
Transfer into the create/stake contract). ETH payments are swapped to TitanX
inside the same transaction, so the TitanX leg is recorded for them too.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .constants import CREATE_STAKE, MAX_BLOCK_RANGE, TITANX, TOPIC0_TRANSFER
from .events import decode_transfer
from .rpc import RpcClient, RpcError, scan_logs
from .utils import abi_encode_address, decimal_str, hex_to_int, parse_raw_amount, wei_to_decimal

log = logging.getLogger(__name__)

ADJACENT_BLOCKS = 2


def payment_fields(eth_wei: int, titanx_wei: int, *, resolved: bool = True) -> Dict[str, Any]:
    return {
        "rawCostETH": str(int(eth_wei)),
        "costETH": decimal_str(wei_to_decimal(eth_wei)),
        "rawCostTitanX": str(int(titanx_wei)),
        "costTitanX": decimal_str(wei_to_decimal(titanx_wei)),
        "paymentResolved": resolved,
    }


def needs_payment(rec: Dict[str, Any]) -> bool:
    if rec.get("paymentResolved") is False:
        return True
    if rec.get("rawCostETH") in (None, "") and rec.get("rawCostTitanX") in (None, ""):
        return True
    try:
        return parse_raw_amount(rec.get("rawCostETH")) == 0 and parse_raw_amount(rec.get("rawCostTitanX")) == 0
    except ValueError:
        return True


def titanx_paid_in_receipt(receipt: Dict[str, Any], *, contract: str = CREATE_STAKE) -> int:
    """First TitanX Transfer into `contract` inside the receipt, 0 when absent."""
    to_topic = "0x" + abi_encode_address(contract)
    for lg in receipt.get("logs") or []:
        topics = [str(t).lower() for t in (lg.get("topics") or [])]
        if str(lg.get("address") or "").lower() != TITANX:
            continue
        if len(topics) < 3 or topics[0] != TOPIC0_TRANSFER:
            continue
        if topics[2] != to_topic:
            continue
        return hex_to_int(lg.get("data") or "0x0")
    return 0


class TransferPool:
    """TitanX transfers into the contract, consumed as they are matched to events."""

    def __init__(self, transfers: Iterable[Dict[str, Any]]):
        self.transfers: List[Dict[str, Any]] = list(transfers)

    def __len__(self) -> int:
        return len(self.transfers)

    def _take(self, idx: int) -> Dict[str, Any]:
        return self.transfers.pop(idx)

    def match(self, rec: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        tx_hash = str(rec.get("transactionHash") or "").lower()
        user = str(rec.get("user") or "").lower()
        block = int(rec.get("blockNumber") or 0)

        for i, t in enumerate(self.transfers):
            if tx_hash and t.get("transactionHash") == tx_hash:
                return self._take(i)
        for i, t in enumerate(self.transfers):
            if int(t.get("blockNumber") or 0) == block and t.get("from") == user:
                return self._take(i)
        for i, t in enumerate(self.transfers):
            if abs(int(t.get("blockNumber") or 0) - block) <= ADJACENT_BLOCKS and t.get("from") == user:
                return self._take(i)
        return None


def fetch_titanx_transfers(
    client: RpcClient,
    from_block: int,
    to_block: int,
    *,
    contract: str = CREATE_STAKE,
    chunk_size: int = MAX_BLOCK_RANGE,
) -> TransferPool:
    logs = scan_logs(
        client,
        address=TITANX,
        topics=[TOPIC0_TRANSFER, None, "0x" + abi_encode_address(contract)],
        from_block=from_block,
        to_block=to_block,
        chunk_size=chunk_size,
    )
    return TransferPool(decode_transfer(lg) for lg in logs)


def resolve_payment(
    client: RpcClient,
    rec: Dict[str, Any],
    *,
    pool: Optional[TransferPool] = None,
    contract: str = CREATE_STAKE,
) -> Dict[str, Any]:
    tx_hash = rec["transactionHash"]
    tx = client.get_transaction(tx_hash)
    eth_wei = hex_to_int(tx.get("value"))

    titanx_wei = titanx_paid_in_receipt(client.get_receipt(tx_hash), contract=contract)
    if titanx_wei == 0 and eth_wei == 0 and pool is not None:
        matched = pool.match(rec)
        if matched is not None:
            titanx_wei = int(matched["value"])

    resolved = eth_wei > 0 or titanx_wei > 0
    if not resolved:
        log.warning("no payment found for %s (stakeIndex %s)", tx_hash, rec.get("stakeIndex"))
    return payment_fields(eth_wei, titanx_wei, resolved=resolved)


def backfill_payments(
    client: RpcClient,
    records: Iterable[Dict[str, Any]],
    *,
    pool: Optional[TransferPool] = None,
    only_missing: bool = True,
    raise_errors: bool = False,
) -> Dict[str, int]:
    """
    Fill payment fields in place and return per-outcome counts.

    With `raise_errors` a failed lookup aborts the whole pass instead of
    being counted, so callers that commit a cursor never save unpaid rows.
    """
    counts = {"eth": 0, "titanx": 0, "unresolved": 0, "skipped": 0, "errors": 0}
    for rec in records:
        if only_missing and not needs_payment(rec):
            counts["skipped"] += 1
            continue
        if not rec.get("transactionHash"):
            counts["errors"] += 1
            continue
        try:
            fields = resolve_payment(client, rec, pool=pool)
        except RpcError as e:
            if raise_errors:
                raise
            log.warning("payment lookup failed for %s: %s", rec.get("transactionHash"), e)
            counts["errors"] += 1
            continue
        rec.update(fields)
        if int(fields["rawCostETH"]) > 0:
            counts["eth"] += 1
        elif int(fields["rawCostTitanX"]) > 0:
            counts["titanx"] += 1
        else:
            counts["unresolved"] += 1
    return counts
