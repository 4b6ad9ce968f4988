from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from decimal import Decimal, getcontext
from pathlib import Path
from typing import Any, List

from Crypto.Hash import keccak

getcontext().prec = 80

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
WEI_SCALE = Decimal(10) ** 18


class DecodeError(ValueError):
    pass


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_text(path: Path, text: str) -> None:
    ensure_dir(path.parent)
    path.write_text(text, encoding="utf-8")


def write_json_atomic(path: Path, data: Any) -> None:
    ensure_dir(path.parent)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def env(name: str, default: str) -> str:
    val = os.getenv(name)
    return val if val else default


def env_list(name: str, default: List[str]) -> List[str]:
    val = os.getenv(name)
    if not val:
        return list(default)
    return [v.strip() for v in val.split(",") if v.strip()]


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def keccak_hex(text: str) -> str:
    h = keccak.new(digest_bits=256)
    h.update(text.encode("utf-8"))
    return h.hexdigest()


def keccak_selector(signature: str) -> str:
    return keccak_hex(signature)[:8]


def event_topic(signature: str) -> str:
    return "0x" + keccak_hex(signature)


def pad32(hex_str: str) -> str:
    return hex_str.rjust(64, "0")


def abi_encode_address(address: str) -> str:
    return pad32(address.lower().replace("0x", ""))


def abi_encode_uint(value: int) -> str:
    return pad32(hex(value)[2:])


def normalize_address(addr: str) -> str:
    a = str(addr).strip().lower()
    if not a.startswith("0x") or len(a) != 42:
        raise ValueError(f"invalid address: {addr}")
    int(a[2:], 16)
    return a


def is_address(addr: Any) -> bool:
    try:
        normalize_address(addr)
    except (ValueError, TypeError):
        return False
    return True


def topic_to_address(topic: str) -> str:
    t = str(topic).lower()
    if t.startswith("0x"):
        t = t[2:]
    return "0x" + t[-40:]


def topic_to_int(topic: str) -> int:
    return int(str(topic), 16)


def decode_words(data_hex: str, n: int) -> List[int]:
    if not isinstance(data_hex, str) or not data_hex.startswith("0x"):
        raise DecodeError("data must be 0x-prefixed")
    hex_str = data_hex[2:]
    need = 64 * n
    if len(hex_str) < need:
        raise DecodeError(f"data too short: need {need} hex chars, got {len(hex_str)}")
    return [int(hex_str[i : i + 64], 16) for i in range(0, need, 64)]


def decode_int256(value: int) -> int:
    if value >= 2**255:
        value -= 2**256
    return value


def hex_to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    s = str(value)
    if s.startswith("0x"):
        return int(s, 16) if len(s) > 2 else 0
    return int(s)


def wei_to_decimal(amount_wei: Any) -> Decimal:
    return Decimal(parse_raw_amount(amount_wei)) / WEI_SCALE


def decimal_str(x: Decimal) -> str:
    # Avoid exponent notation in the cache ("1E+18" breaks the frontend parser).
    s = format(x, "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def format_amount(x: Decimal, *, places: int = 3) -> str:
    q = Decimal(10) ** -places
    return f"{x.quantize(q):,}"


def parse_raw_amount(value: Any) -> int:
    """Parse a raw (wei) amount that may have been stored in several shapes.

    Older cache rows hold hex strings, decimal strings, floats rendered in
    scientific notation ("1.5e+21") or plain ints.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"not an amount: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(Decimal(repr(value)))
    s = str(value).strip()
    if s.startswith("0x"):
        return int(s, 16) if len(s) > 2 else 0
    try:
        return int(Decimal(s))
    except ArithmeticError as e:
        raise ValueError(f"not an amount: {value!r}") from e
