"""Uniswap V3 positions in the TORUS/TitanX pool."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .constants import (
    FN_OWNER_OF,
    FN_POSITIONS,
    MAX_BLOCK_RANGE,
    POSITION_MANAGER,
    TITANX,
    TOPIC0_INCREASE_LIQUIDITY,
    TOPIC0_POOL_MINT,
    TORUS_TITANX_POOL,
    TORUS_TITANX_POOL_FEE,
    TORUS_TOKEN,
)
from .events import decode_liquidity_change, decode_pool_mint
from .rpc import RpcClient, RpcError, is_revert, scan_logs
from .utils import abi_encode_uint, decode_int256, decode_words, keccak_selector, utc_now_iso

log = logging.getLogger(__name__)

POSITION_FIELDS = (
    "nonce",
    "operator",
    "token0",
    "token1",
    "fee",
    "tickLower",
    "tickUpper",
    "liquidity",
    "feeGrowthInside0LastX128",
    "feeGrowthInside1LastX128",
    "tokensOwed0",
    "tokensOwed1",
)
_ADDRESS_FIELDS = {"operator", "token0", "token1"}
_TICK_FIELDS = {"tickLower", "tickUpper"}

# token0 sorts before token1 by address.
POOL_TOKENS = tuple(sorted((TORUS_TOKEN, TITANX)))


def _word_to_address(word: int) -> str:
    return "0x" + f"{word:064x}"[-40:]


def decode_position(result_hex: str) -> Dict[str, Any]:
    words = decode_words(result_hex, len(POSITION_FIELDS))
    pos: Dict[str, Any] = {}
    for name, word in zip(POSITION_FIELDS, words):
        if name in _ADDRESS_FIELDS:
            pos[name] = _word_to_address(word)
        elif name in _TICK_FIELDS:
            pos[name] = decode_int256(word)
        elif name in ("nonce", "fee"):
            pos[name] = int(word)
        else:
            pos[name] = str(word)
    return pos


def is_pool_position(pos: Dict[str, Any]) -> bool:
    return (pos.get("token0"), pos.get("token1")) == POOL_TOKENS and int(pos.get("fee") or 0) == TORUS_TITANX_POOL_FEE


def position_status(pos: Dict[str, Any]) -> str:
    return "closed" if int(pos.get("liquidity") or 0) == 0 else "active"


def fetch_position(client: RpcClient, token_id: int) -> Dict[str, Any]:
    data = "0x" + keccak_selector(FN_POSITIONS) + abi_encode_uint(token_id)
    return decode_position(client.eth_call(POSITION_MANAGER, data))


def fetch_owner(client: RpcClient, token_id: int) -> Optional[str]:
    data = "0x" + keccak_selector(FN_OWNER_OF) + abi_encode_uint(token_id)
    try:
        (word,) = decode_words(client.eth_call(POSITION_MANAGER, data), 1)
    except RpcError as e:
        # Burned NFTs revert on ownerOf.
        if not is_revert(e):
            raise
        log.info("ownerOf(%s) failed: %s", token_id, e)
        return None
    return _word_to_address(word)


def discover_token_ids(
    client: RpcClient,
    from_block: int,
    to_block: int,
    *,
    chunk_size: int = MAX_BLOCK_RANGE,
) -> Dict[str, Dict[str, Any]]:
    """
    Token ids minted into the pool in `[from_block, to_block]`.

    Pool `Mint` logs give the transactions; the position manager's
    `IncreaseLiquidity` in the same receipt gives the NFT id.
    """
    mints = scan_logs(
        client,
        address=TORUS_TITANX_POOL,
        topics=[TOPIC0_POOL_MINT],
        from_block=from_block,
        to_block=to_block,
        chunk_size=chunk_size,
    )
    found: Dict[str, Dict[str, Any]] = {}
    seen_tx = set()
    for lg in mints:
        mint = decode_pool_mint(lg)
        if mint["sender"] != POSITION_MANAGER or mint["transactionHash"] in seen_tx:
            continue
        seen_tx.add(mint["transactionHash"])
        receipt = client.get_receipt(mint["transactionHash"])
        for rlog in receipt.get("logs") or []:
            topics = [str(t).lower() for t in (rlog.get("topics") or [])]
            if str(rlog.get("address") or "").lower() != POSITION_MANAGER or not topics:
                continue
            if topics[0] != TOPIC0_INCREASE_LIQUIDITY:
                continue
            inc = decode_liquidity_change(rlog)
            found.setdefault(
                inc["tokenId"],
                {"mintBlock": mint["blockNumber"], "mintTx": mint["transactionHash"]},
            )
    return found


def refresh_positions(
    client: RpcClient,
    token_ids: Iterable[str],
    *,
    known: Optional[Dict[str, Dict[str, Any]]] = None,
    now_iso: Optional[str] = None,
) -> List[Dict[str, Any]]:
    known = known or {}
    now_iso = now_iso or utc_now_iso()
    out: List[Dict[str, Any]] = []
    for token_id in token_ids:
        try:
            pos = fetch_position(client, int(token_id))
        except RpcError as e:
            if str(token_id) not in known or not is_revert(e):
                raise
            # positions() reverts once the NFT is burned.
            log.info("position %s unreadable, marking closed: %s", token_id, e)
            out.append({**known[str(token_id)], "liquidity": "0", "status": "closed", "lastChecked": now_iso})
            continue
        if not is_pool_position(pos):
            log.debug("token %s is not a TORUS/TitanX 1%% position", token_id)
            continue
        rec: Dict[str, Any] = dict(known.get(str(token_id)) or {})
        rec.update(
            {
                "tokenId": str(token_id),
                "owner": fetch_owner(client, int(token_id)),
                "tickLower": pos["tickLower"],
                "tickUpper": pos["tickUpper"],
                "liquidity": pos["liquidity"],
                "fee": pos["fee"],
                "tokensOwed0": pos["tokensOwed0"],
                "tokensOwed1": pos["tokensOwed1"],
                "status": position_status(pos),
                "lastChecked": now_iso,
            }
        )
        out.append(rec)
    return out


def merge_positions(existing: Sequence[Dict[str, Any]], incoming: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge by tokenId; incoming fields update a position, fields it lacks are preserved."""
    by_id: Dict[str, Dict[str, Any]] = {}
    for rec in existing:
        tid = str(rec.get("tokenId"))
        if tid in by_id:
            log.warning("duplicate LP tokenId %s in cache, keeping the first", tid)
            continue
        by_id[tid] = dict(rec)
    for rec in incoming:
        tid = str(rec.get("tokenId"))
        merged = by_id.get(tid, {})
        merged.update({k: v for k, v in rec.items() if v is not None})
        by_id[tid] = merged
    return sorted(by_id.values(), key=lambda r: int(r["tokenId"]))


def update_lp_positions(
    client: RpcClient,
    existing: Sequence[Dict[str, Any]],
    from_block: int,
    to_block: int,
    *,
    last_block: Optional[int] = None,
    chunk_size: int = MAX_BLOCK_RANGE,
) -> List[Dict[str, Any]]:
    """
    Discover new mints, then re-read every known position so status changes are picked up.

    Discovery resumes after `last_block` (the LP cursor) when it is set.
    """
    if last_block is not None:
        from_block = int(last_block) + 1
    discovered = discover_token_ids(client, from_block, to_block, chunk_size=chunk_size) if from_block <= to_block else {}
    known: Dict[str, Dict[str, Any]] = {str(r.get("tokenId")): dict(r) for r in existing}
    for tid, meta in discovered.items():
        known.setdefault(tid, {}).update({k: v for k, v in meta.items() if k not in known.get(tid, {})})
    ids = sorted(known, key=int)
    refreshed = refresh_positions(client, ids, known=known)
    log.info("LP positions: %d known, %d new, %d in pool", len(existing), len(discovered), len(refreshed))
    return merge_positions(existing, refreshed)
