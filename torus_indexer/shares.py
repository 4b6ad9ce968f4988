"""
Reward-pool schedule and share-weighted aggregates.

Positions (creates and stakes) carry shares from their start instant until
maturity. The daily reward pool is split pro rata across the shares active at
the start of each protocol day.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .constants import (
    BASE_REWARD_DAYS,
    CREATE_STAKE,
    DAILY_REDUCTION_RATE,
    FN_GET_STAKE_POSITIONS,
    FN_PENALTIES_IN_REWARD_POOL,
    FN_REWARD_POOL,
    FN_TOTAL_SHARES,
    INITIAL_REWARD_POOL,
    MAX_PROJECTION_DAY,
    PROJECTION_HORIZON_DAYS,
)
from .protocol_day import day_start_iso, day_start_ts, iso_to_ts, maturity_ts
from .rpc import RpcClient
from .utils import (
    DecodeError,
    abi_encode_address,
    abi_encode_uint,
    decimal_str,
    decode_words,
    keccak_selector,
    parse_raw_amount,
    utc_now_iso,
    wei_to_decimal,
)

log = logging.getLogger(__name__)

START_TIME_TOLERANCE_S = 300
MIN_SHARE_RATIO = Decimal(1)
MAX_SHARE_RATIO = Decimal(20_000)
SUBSTANTIAL_PRINCIPAL = Decimal("0.01")

STAKE_POSITION_FIELDS = (
    "principal",
    "power",
    "stakingDays",
    "startTime",
    "startDayIndex",
    "endTime",
    "shares",
    "claimedCreate",
    "claimedStake",
    "costTitanX",
    "costETH",
    "rewards",
    "penalties",
    "claimedAt",
    "isCreate",
)
_BOOL_FIELDS = {"claimedCreate", "claimedStake", "isCreate"}


def reward_pool_for_day(day: int) -> Decimal:
    # Base emission only runs for the first 88 days; later pools hold penalties alone.
    if day < 1 or day > BASE_REWARD_DAYS:
        return Decimal(0)
    return INITIAL_REWARD_POOL * (Decimal(1) - DAILY_REDUCTION_RATE) ** (day - 1)


def position_window(rec: Dict[str, Any]) -> Tuple[int, int]:
    start = int(rec.get("timestamp") or 0)
    if rec.get("endTime"):
        end = int(rec["endTime"])
    elif rec.get("maturityDate"):
        end = iso_to_ts(rec["maturityDate"])
    else:
        end = maturity_ts(start, int(rec.get("stakingDays") or 0))
    return start, end


def is_active_at(rec: Dict[str, Any], ts: int) -> bool:
    start, end = position_window(rec)
    return start <= ts < end


def total_shares_for_day(
    creates: Iterable[Dict[str, Any]],
    stakes: Iterable[Dict[str, Any]],
    day: int,
) -> Decimal:
    ts = day_start_ts(day)
    total = Decimal(0)
    for rec in list(creates) + list(stakes):
        if not rec.get("shares"):
            continue
        if is_active_at(rec, ts):
            total += wei_to_decimal(rec["shares"])
    return total


def calculated_row(day: int, total_shares: Decimal, *, now_iso: Optional[str] = None) -> Dict[str, Any]:
    return {
        "day": day,
        "date": day_start_iso(day),
        "rewardPool": decimal_str(reward_pool_for_day(day)),
        "totalShares": decimal_str(total_shares),
        "penaltiesInPool": "0",
        "calculated": True,
        "lastUpdated": now_iso or utc_now_iso(),
    }


def build_reward_pool_rows(
    creates: Sequence[Dict[str, Any]],
    stakes: Sequence[Dict[str, Any]],
    current_day: int,
    *,
    horizon: int = PROJECTION_HORIZON_DAYS,
    now_iso: Optional[str] = None,
) -> List[Dict[str, Any]]:
    last_day = min(current_day + horizon, MAX_PROJECTION_DAY)
    now_iso = now_iso or utc_now_iso()
    return [
        calculated_row(day, total_shares_for_day(creates, stakes, day), now_iso=now_iso)
        for day in range(1, last_day + 1)
    ]


def merge_reward_pool_rows(
    existing: Sequence[Dict[str, Any]],
    incoming: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Merge by day. Contract-sourced rows are never replaced by calculated ones."""
    by_day: Dict[int, Dict[str, Any]] = {int(r["day"]): dict(r) for r in existing}
    for row in incoming:
        day = int(row["day"])
        cur = by_day.get(day)
        if cur is None:
            by_day[day] = dict(row)
            continue
        if cur.get("calculated") is False and row.get("calculated") is not False:
            continue
        merged = dict(cur)
        merged.update(row)
        by_day[day] = merged
    return [by_day[d] for d in sorted(by_day)]


def refresh_total_shares(
    rows: List[Dict[str, Any]],
    creates: Sequence[Dict[str, Any]],
    stakes: Sequence[Dict[str, Any]],
    *,
    now_iso: Optional[str] = None,
) -> List[int]:
    """Recompute totalShares of calculated rows in place; returns the days that changed."""
    changed: List[int] = []
    now_iso = now_iso or utc_now_iso()
    for row in rows:
        if row.get("calculated") is False:
            continue
        new_total = total_shares_for_day(creates, stakes, int(row["day"]))
        try:
            old_total = Decimal(str(row.get("totalShares") or "0"))
        except ArithmeticError:
            old_total = Decimal(-1)
        if abs(old_total - new_total) > Decimal("0.01"):
            log.info("day %s totalShares %s -> %s", row["day"], old_total, new_total)
            row["totalShares"] = decimal_str(new_total)
            row["lastUpdated"] = now_iso
            changed.append(int(row["day"]))
    return changed


def position_daily_rewards(
    position: Dict[str, Any],
    rows: Sequence[Dict[str, Any]],
    through_day: int,
) -> Decimal:
    shares = wei_to_decimal(position.get("shares") or 0)
    if shares <= 0:
        return Decimal(0)
    total = Decimal(0)
    for row in rows:
        day = int(row["day"])
        if day > through_day:
            break
        if not is_active_at(position, day_start_ts(day)):
            continue
        day_shares = Decimal(str(row.get("totalShares") or "0"))
        if day_shares <= 0:
            continue
        pool = Decimal(str(row.get("rewardPool") or "0")) + Decimal(str(row.get("penaltiesInPool") or "0"))
        total += pool * shares / day_shares
    return total


# ---- contract reads ----


def _call_uint_for_day(client: RpcClient, signature: str, day: int) -> int:
    data = "0x" + keccak_selector(signature) + abi_encode_uint(day)
    (value,) = decode_words(client.eth_call(CREATE_STAKE, data), 1)
    return value


def fetch_onchain_reward_pool(client: RpcClient, days: Iterable[int], *, now_iso: Optional[str] = None) -> List[Dict[str, Any]]:
    now_iso = now_iso or utc_now_iso()
    rows: List[Dict[str, Any]] = []
    for day in days:
        reward = _call_uint_for_day(client, FN_REWARD_POOL, day)
        shares = _call_uint_for_day(client, FN_TOTAL_SHARES, day)
        penalties = _call_uint_for_day(client, FN_PENALTIES_IN_REWARD_POOL, day)
        rows.append(
            {
                "day": day,
                "date": day_start_iso(day),
                "rewardPool": decimal_str(wei_to_decimal(reward)),
                "totalShares": decimal_str(wei_to_decimal(shares)),
                "penaltiesInPool": decimal_str(wei_to_decimal(penalties)),
                "calculated": False,
                "lastUpdated": now_iso,
            }
        )
    return rows


def decode_stake_positions(result_hex: str) -> List[Dict[str, Any]]:
    """Decode the `StakeTorus[]` returned by getStakePositions (15 static words per entry)."""
    if not result_hex or result_hex == "0x":
        return []
    head = decode_words(result_hex, 1)[0]
    if head % 32:
        raise DecodeError(f"bad array offset {head}")
    offset_words = head // 32
    n = decode_words(result_hex, offset_words + 1)[offset_words]
    width = len(STAKE_POSITION_FIELDS)
    words = decode_words(result_hex, offset_words + 1 + n * width)[offset_words + 1 :]
    out: List[Dict[str, Any]] = []
    for i in range(n):
        chunk = words[i * width : (i + 1) * width]
        pos: Dict[str, Any] = {}
        for name, value in zip(STAKE_POSITION_FIELDS, chunk):
            pos[name] = bool(value) if name in _BOOL_FIELDS else value
        out.append(pos)
    return out


def fetch_stake_positions(client: RpcClient, user: str) -> List[Dict[str, Any]]:
    data = "0x" + keccak_selector(FN_GET_STAKE_POSITIONS) + abi_encode_address(user)
    return decode_stake_positions(client.eth_call(CREATE_STAKE, data))


def match_shares(
    records: Iterable[Dict[str, Any]],
    positions_by_user: Dict[str, List[Dict[str, Any]]],
    *,
    is_create: bool,
    tolerance_s: int = START_TIME_TOLERANCE_S,
) -> int:
    """Fill missing `shares` from contract positions started within `tolerance_s` of the event."""
    used: Dict[str, set] = {}
    matched = 0
    for rec in records:
        if rec.get("shares") and parse_raw_amount(rec["shares"]) > 0:
            continue
        user = str(rec.get("user") or "").lower()
        taken = used.setdefault(user, set())
        ts = int(rec.get("timestamp") or 0)
        for idx, pos in enumerate(positions_by_user.get(user, [])):
            if idx in taken or bool(pos.get("isCreate")) != is_create:
                continue
            if abs(int(pos["startTime"]) - ts) < tolerance_s:
                rec["shares"] = str(pos["shares"])
                taken.add(idx)
                matched += 1
                break
    return matched


def validate_position_shares(rec: Dict[str, Any]) -> Optional[str]:
    try:
        principal = wei_to_decimal(rec.get("principal") or 0)
        shares = wei_to_decimal(rec.get("shares") or 0)
    except (ValueError, ArithmeticError):
        return "unparseable principal/shares"
    if principal > SUBSTANTIAL_PRINCIPAL and shares == 0:
        return f"principal {principal:.4f} with zero shares"
    if shares > 0 and principal == 0 and "principal" in rec:
        return f"{shares:.0f} shares with zero principal"
    if principal > 0 and shares > 0:
        ratio = shares / principal
        if ratio < MIN_SHARE_RATIO or ratio > MAX_SHARE_RATIO:
            return f"suspicious shares/principal ratio {ratio:.0f}"
    return None
