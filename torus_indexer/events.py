"""Decoders for the raw `eth_getLogs` entries the indexer consumes."""

from __future__ import annotations

from typing import Any, Callable, Dict, List

from .constants import (
    TOPIC0_BUY_AND_BUILD,
    TOPIC0_BUY_AND_BURN,
    TOPIC0_CREATED,
    TOPIC0_DECREASE_LIQUIDITY,
    TOPIC0_FRACTAL,
    TOPIC0_INCREASE_LIQUIDITY,
    TOPIC0_POOL_MINT,
    TOPIC0_STAKED,
    TOPIC0_TRANSFER,
    TOPIC0_WETH_DEPOSIT,
)
from .protocol_day import maturity_ts, protocol_day, ts_to_iso
from .utils import DecodeError, decode_int256, decode_words, hex_to_int, topic_to_address, topic_to_int

Record = Dict[str, Any]


def _topics(log: Dict[str, Any], n: int) -> List[str]:
    topics = log.get("topics") or []
    if len(topics) < n:
        raise DecodeError(f"expected {n} topics, got {len(topics)} (tx {log.get('transactionHash')})")
    return [str(t).lower() for t in topics]


def log_meta(log: Dict[str, Any]) -> Record:
    return {
        "blockNumber": hex_to_int(log.get("blockNumber")),
        "transactionHash": str(log.get("transactionHash") or "").lower(),
        "logIndex": hex_to_int(log.get("logIndex")),
    }


def decode_created(log: Dict[str, Any]) -> Record:
    topics = _topics(log, 2)
    stake_index, torus_amount, end_time = decode_words(str(log.get("data") or "0x"), 3)
    return {
        "user": topic_to_address(topics[1]),
        "stakeIndex": str(stake_index),
        "torusAmount": str(torus_amount),
        "endTime": str(end_time),
        **log_meta(log),
    }


def decode_staked(log: Dict[str, Any]) -> Record:
    topics = _topics(log, 2)
    stake_index, principal, staking_days, shares = decode_words(str(log.get("data") or "0x"), 4)
    return {
        "user": topic_to_address(topics[1]),
        "stakeIndex": str(stake_index),
        "principal": str(principal),
        "stakingDays": int(staking_days),
        "shares": str(shares),
        **log_meta(log),
    }


def decode_buy_and_burn(log: Dict[str, Any]) -> Record:
    # All three arguments are indexed.
    topics = _topics(log, 4)
    return {
        "titanXAmount": str(topic_to_int(topics[1])),
        "torusBurnt": str(topic_to_int(topics[2])),
        "caller": topic_to_address(topics[3]),
        **log_meta(log),
    }


def decode_buy_and_build(log: Dict[str, Any]) -> Record:
    topics = _topics(log, 4)
    return {
        "tokenAllocated": str(topic_to_int(topics[1])),
        "torusPurchased": str(topic_to_int(topics[2])),
        "caller": topic_to_address(topics[3]),
        **log_meta(log),
    }


def decode_fractal(log: Dict[str, Any]) -> Record:
    released_titanx, released_eth = decode_words(str(log.get("data") or "0x"), 2)
    return {
        "releasedTitanX": str(released_titanx),
        "releasedETH": str(released_eth),
        **log_meta(log),
    }


def decode_transfer(log: Dict[str, Any]) -> Record:
    """ERC-20 (value in data) or ERC-721 (tokenId as 4th topic) Transfer."""
    topics = _topics(log, 3)
    rec = {
        "token": str(log.get("address") or "").lower(),
        "from": topic_to_address(topics[1]),
        "to": topic_to_address(topics[2]),
        **log_meta(log),
    }
    if len(topics) >= 4:
        rec["tokenId"] = str(topic_to_int(topics[3]))
    else:
        (value,) = decode_words(str(log.get("data") or "0x"), 1)
        rec["value"] = str(value)
    return rec


def decode_weth_deposit(log: Dict[str, Any]) -> Record:
    topics = _topics(log, 2)
    (wad,) = decode_words(str(log.get("data") or "0x"), 1)
    return {"dst": topic_to_address(topics[1]), "wad": str(wad), **log_meta(log)}


def decode_liquidity_change(log: Dict[str, Any]) -> Record:
    topics = _topics(log, 2)
    liquidity, amount0, amount1 = decode_words(str(log.get("data") or "0x"), 3)
    return {
        "tokenId": str(topic_to_int(topics[1])),
        "liquidity": str(liquidity),
        "amount0": str(amount0),
        "amount1": str(amount1),
        **log_meta(log),
    }


def decode_pool_mint(log: Dict[str, Any]) -> Record:
    topics = _topics(log, 4)
    sender, amount, amount0, amount1 = decode_words(str(log.get("data") or "0x"), 4)
    return {
        "sender": "0x" + f"{sender:040x}"[-40:],
        "owner": topic_to_address(topics[1]),
        "tickLower": decode_int256(topic_to_int(topics[2])),
        "tickUpper": decode_int256(topic_to_int(topics[3])),
        "liquidity": str(amount),
        "amount0": str(amount0),
        "amount1": str(amount1),
        **log_meta(log),
    }


DECODERS: Dict[str, Callable[[Dict[str, Any]], Record]] = {
    TOPIC0_CREATED: decode_created,
    TOPIC0_STAKED: decode_staked,
    TOPIC0_BUY_AND_BURN: decode_buy_and_burn,
    TOPIC0_BUY_AND_BUILD: decode_buy_and_build,
    TOPIC0_FRACTAL: decode_fractal,
    TOPIC0_TRANSFER: decode_transfer,
    TOPIC0_WETH_DEPOSIT: decode_weth_deposit,
    TOPIC0_INCREASE_LIQUIDITY: decode_liquidity_change,
    TOPIC0_DECREASE_LIQUIDITY: decode_liquidity_change,
    TOPIC0_POOL_MINT: decode_pool_mint,
}


def decode_log(log: Dict[str, Any]) -> Record:
    topics = log.get("topics") or []
    if not topics:
        raise DecodeError("anonymous log")
    decoder = DECODERS.get(str(topics[0]).lower())
    if decoder is None:
        raise DecodeError(f"unknown topic0 {topics[0]}")
    return decoder(log)


def sort_key(rec: Dict[str, Any]) -> tuple:
    return (hex_to_int(rec.get("blockNumber") or 0), hex_to_int(rec.get("logIndex") or 0))


def enrich_create(rec: Record, timestamp: int) -> Record:
    end_time = int(rec["endTime"])
    rec["timestamp"] = str(int(timestamp))
    rec["protocolDay"] = protocol_day(timestamp)
    rec["maturityDate"] = ts_to_iso(end_time)
    rec["stakingDays"] = max(0, round((end_time - int(timestamp)) / 86400))
    return rec


def enrich_stake(rec: Record, timestamp: int) -> Record:
    end_time = maturity_ts(timestamp, int(rec["stakingDays"]))
    rec["timestamp"] = str(int(timestamp))
    rec["protocolDay"] = protocol_day(timestamp)
    rec["endTime"] = str(end_time)
    rec["maturityDate"] = ts_to_iso(end_time)
    return rec
