"""
JSON-RPC transport for mainnet event scans.

- `RpcClient.call` posts a single JSON-RPC request, rotating through the configured
  endpoints on transport failures.
- `rpc_with_retries` retries transient errors (rate limits, gateway errors, timeouts)
  with exponential backoff + jitter, honouring `Retry-After`.
- `get_logs_range` bisects a block range when the provider rejects it as too wide.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import requests

from .utils import hex_to_int

log = logging.getLogger(__name__)

USER_AGENT = "torus-indexer/0.3"

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)
_RETRYABLE_MESSAGES = (
    "timeout",
    "timed out",
    "too many requests",
    "rate limit",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "connection reset",
    "internal error",
    "header not found",
)
_TOO_MANY_RESULTS = (
    "more than",
    "too many results",
    "response size exceeded",
    "query returned more than",
    "block range too wide",
    "block range is too wide",
    "exceed maximum block range",
    "range too large",
)


class RpcError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after_s: int | None = None,
        rpc_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.rpc_code = rpc_code


def is_retryable(err: RpcError) -> bool:
    if err.status_code in _RETRYABLE_STATUS:
        return True
    msg = str(err).lower()
    if "execution reverted" in msg:
        return False
    return any(s in msg for s in _RETRYABLE_MESSAGES)


def is_revert(err: RpcError) -> bool:
    return "execution reverted" in str(err).lower()


def is_range_too_wide(err: RpcError) -> bool:
    msg = str(err).lower()
    return any(s in msg for s in _TOO_MANY_RESULTS)


class RpcClient:
    def __init__(
        self,
        rpc_urls: Sequence[str] | str,
        timeout_s: int = 45,
        *,
        session: Optional[requests.Session] = None,
        max_tries: int = 6,
    ) -> None:
        urls = [rpc_urls] if isinstance(rpc_urls, str) else list(rpc_urls)
        if not urls:
            raise ValueError("at least one RPC URL is required")
        self.rpc_urls = urls
        self.timeout_s = timeout_s
        self.max_tries = max_tries
        self.session = session or requests.Session()
        self.calls = 0
        self._url_idx = 0
        self._id = 0
        self._block_ts: Dict[int, int] = {}

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[self._url_idx]

    def rotate(self) -> None:
        if len(self.rpc_urls) > 1:
            self._url_idx = (self._url_idx + 1) % len(self.rpc_urls)
            log.info("switching RPC endpoint to %s", self.rpc_url)

    def call(self, method: str, params: list) -> Any:
        self._id += 1
        self.calls += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        try:
            resp = self.session.post(
                self.rpc_url,
                json=payload,
                timeout=self.timeout_s,
                headers={"user-agent": USER_AGENT},
            )
        except requests.RequestException as e:
            raise RpcError(f"RPC transport error: {e}") from e

        if resp.status_code >= 400:
            retry_after_s: int | None = None
            ra = resp.headers.get("Retry-After")
            if isinstance(ra, str) and ra.strip().isdigit():
                retry_after_s = int(ra.strip())
            raise RpcError(
                f"HTTP {resp.status_code}: {resp.reason}",
                status_code=resp.status_code,
                retry_after_s=retry_after_s,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise RpcError(f"invalid JSON-RPC response: {resp.text[:200]!r}") from e

        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            code = err.get("code") if isinstance(err, dict) else None
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(f"RPC error {code}: {msg}", rpc_code=code)
        return data.get("result") if isinstance(data, dict) else data

    # Convenience wrappers; all go through the retry loop.

    def block_number(self) -> int:
        return hex_to_int(rpc_with_retries(self, "eth_blockNumber", []))

    def get_block(self, block_number: int) -> Dict[str, Any]:
        blk = rpc_with_retries(self, "eth_getBlockByNumber", [hex(int(block_number)), False])
        if not blk:
            raise RpcError(f"block {block_number} not found")
        return blk

    def block_timestamp(self, block_number: int) -> int:
        b = int(block_number)
        if b not in self._block_ts:
            self._block_ts[b] = hex_to_int(self.get_block(b)["timestamp"])
        return self._block_ts[b]

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        tx = rpc_with_retries(self, "eth_getTransactionByHash", [tx_hash])
        if not tx:
            raise RpcError(f"transaction {tx_hash} not found")
        return tx

    def get_receipt(self, tx_hash: str) -> Dict[str, Any]:
        rcpt = rpc_with_retries(self, "eth_getTransactionReceipt", [tx_hash])
        if not rcpt:
            raise RpcError(f"receipt {tx_hash} not found")
        return rcpt

    def eth_call(self, to: str, data: str, block: str = "latest") -> str:
        return rpc_with_retries(self, "eth_call", [{"to": to, "data": data}, block])


def rpc_with_retries(client: RpcClient, method: str, params: list, *, max_tries: int | None = None) -> Any:
    tries = max_tries or client.max_tries
    for attempt in range(1, tries + 1):
        try:
            return client.call(method, params)
        except RpcError as e:
            if not is_retryable(e) or attempt == tries:
                raise
            if e.status_code is None or e.status_code >= 500:
                client.rotate()

            sleep_s = min(2 ** (attempt - 1), 30.0)
            if isinstance(e.retry_after_s, int) and e.retry_after_s > 0:
                sleep_s = max(sleep_s, float(e.retry_after_s))
            sleep_s = sleep_s * (1 + random.uniform(-0.15, 0.15))
            log.warning("%s failed (attempt %d/%d): %s; sleeping %.1fs", method, attempt, tries, e, sleep_s)
            time.sleep(max(0.5, sleep_s))
    raise RuntimeError("unreachable")


def get_logs(
    client: RpcClient,
    *,
    address: str | List[str],
    topics: List[Any],
    from_block: int,
    to_block: int,
) -> List[Dict[str, Any]]:
    return rpc_with_retries(
        client,
        "eth_getLogs",
        [
            {
                "address": address,
                "fromBlock": hex(int(from_block)),
                "toBlock": hex(int(to_block)),
                "topics": topics,
            }
        ],
    ) or []


def get_logs_range(
    client: RpcClient,
    *,
    address: str | List[str],
    topics: List[Any],
    from_block: int,
    to_block: int,
    max_splits: int = 18,
) -> List[Dict[str, Any]]:
    try:
        return get_logs(client, address=address, topics=topics, from_block=from_block, to_block=to_block)
    except RpcError as e:
        if not is_range_too_wide(e) or max_splits <= 0 or from_block >= to_block:
            raise
        mid = (from_block + to_block) // 2
        log.debug("splitting getLogs %d..%d at %d", from_block, to_block, mid)
        left = get_logs_range(
            client, address=address, topics=topics, from_block=from_block, to_block=mid, max_splits=max_splits - 1
        )
        right = get_logs_range(
            client, address=address, topics=topics, from_block=mid + 1, to_block=to_block, max_splits=max_splits - 1
        )
        return left + right


def iter_block_chunks(from_block: int, to_block: int, size: int) -> Iterator[Tuple[int, int]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    cur = int(from_block)
    while cur <= to_block:
        end = min(cur + size - 1, int(to_block))
        yield cur, end
        cur = end + 1


def scan_logs(
    client: RpcClient,
    *,
    address: str | List[str],
    topics: List[Any],
    from_block: int,
    to_block: int,
    chunk_size: int,
) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for chunk_from, chunk_to in iter_block_chunks(from_block, to_block, chunk_size):
        logs = get_logs_range(client, address=address, topics=topics, from_block=chunk_from, to_block=chunk_to)
        out.extend(logs)
        log.info("scanned %s..%s (%d logs)", f"{chunk_from:,}", f"{chunk_to:,}", len(logs))
    return out
