import json
import sys
from decimal import Decimal
from unittest.mock import patch

from fakes import (
    FakeClient,
    created_log,
    default_block_ts,
    encode_lp_position,
    encode_stake_positions,
    make_log,
    staked_log,
    titanx_transfer_log,
    topic_addr,
    topic_uint,
    tx_hash,
    words,
)
from torus_indexer import update
from torus_indexer.cache import load_cache, save_cache, default_document
from torus_indexer.constants import (
    BUY_PROCESS,
    CREATE_STAKE,
    DEPLOYMENT_BLOCK,
    POSITION_MANAGER,
    SELECTOR_ETH_BURN,
    TITANX,
    TOPIC0_BUY_AND_BURN,
    TOPIC0_INCREASE_LIQUIDITY,
    TOPIC0_POOL_MINT,
    TORUS_TITANX_POOL,
    TORUS_TOKEN,
)
from torus_indexer.events import decode_created
from torus_indexer.protocol_day import day_start_ts
from torus_indexer.rpc import RpcError
from torus_indexer.update import ScanState, run_update, save_state
from torus_indexer.utils import keccak_selector
from torus_indexer.validation import ValidationReport

ALICE = "0xa11ce00000000000000000000000000000000001"
BOB = "0xb0b0000000000000000000000000000000000002"
E18 = 10**18
CREATE_BLOCK = DEPLOYMENT_BLOCK + 100  # protocol day 1
STAKE_BLOCK = DEPLOYMENT_BLOCK + 7300  # protocol day 2
HEAD = DEPLOYMENT_BLOCK + 20_000
NOW = day_start_ts(3) + 100


def _create_log():
    start = default_block_ts(CREATE_BLOCK)
    return created_log(ALICE, 0, 10 * E18, start + 30 * 86400, block=CREATE_BLOCK, tx=tx_hash(1), log_index=2)


def _stake_log():
    return staked_log(BOB, 0, 100 * E18, 88, 8800 * E18, block=STAKE_BLOCK, tx=tx_hash(2), log_index=1)


def _client(logs=None):
    payment = titanx_transfer_log(BOB, CREATE_STAKE, 1000 * E18, block=STAKE_BLOCK, tx=tx_hash(2), log_index=0)

    def eth_call(to, data):
        assert to == CREATE_STAKE
        if data.endswith(ALICE[2:]):
            return encode_stake_positions(
                [{"startTime": default_block_ts(CREATE_BLOCK) + 1, "shares": 50 * E18, "isCreate": 1}]
            )
        return encode_stake_positions([])

    return FakeClient(
        logs=[_create_log(), _stake_log(), payment] if logs is None else logs,
        head=HEAD,
        txs={tx_hash(1): {"hash": tx_hash(1), "value": hex(E18 // 2)}},
        receipts={tx_hash(2): {"logs": [payment]}},
        eth_call=eth_call,
    )


def _burn_log(tx):
    topics = [TOPIC0_BUY_AND_BURN, topic_uint(1000 * E18), topic_uint(5 * E18), topic_addr(BOB)]
    return make_log(BUY_PROCESS, topics, block=DEPLOYMENT_BLOCK + 500, tx=tx)


def _pool_mint_log(tx):
    topics = [TOPIC0_POOL_MINT, topic_addr(POSITION_MANAGER), topic_uint(2**256 - 60000), topic_uint(60000)]
    return make_log(TORUS_TITANX_POOL, topics, words(POSITION_MANAGER, 1, 2, 3), block=DEPLOYMENT_BLOCK + 600, tx=tx)


def _lp_client(logs):
    client = _client(logs=logs)
    stake_call = client.eth_call_fn
    position = encode_lp_position(TORUS_TOKEN, TITANX, 10_000, -60000, 60000, 777)

    def eth_call(to, data):
        if to != POSITION_MANAGER:
            return stake_call(to, data)
        if data[2:10] == keccak_selector("positions(uint256)"):
            return position
        return words(ALICE)

    client.eth_call_fn = eth_call
    increase = make_log(POSITION_MANAGER, [TOPIC0_INCREASE_LIQUIDITY, topic_uint(200)], words(1, 2, 3), block=1, tx=tx_hash(9))
    client.receipts[tx_hash(9)] = {"logs": [increase]}
    return client


def _run(client, path, **kw):
    kw.setdefault("buy_process", False)
    kw.setdefault("lp", False)
    kw.setdefault("now_ts", NOW)
    kw.setdefault("chunk_size", 5000)
    return run_update(client, path, **kw)


def test_full_update(tmp_path):
    path = tmp_path / "cache.json"
    state = tmp_path / "state.pkl"
    result = _run(_client(), path, state_path=state)
    assert result.status == "updated", result.errors
    assert (result.new_creates, result.new_stakes) == (1, 1)
    assert not state.exists()

    doc = load_cache(path)
    assert doc["metadata"]["lastProcessedBlock"] == HEAD
    assert doc["metadata"]["currentProtocolDay"] == 3

    (create,) = doc["stakingData"]["createEvents"]
    assert create["protocolDay"] == 1
    assert create["stakingDays"] == 30
    assert create["costETH"] == "0.5"
    assert create["shares"] == str(50 * E18)
    assert create["paymentResolved"] is True

    (stake,) = doc["stakingData"]["stakeEvents"]
    assert stake["protocolDay"] == 2
    assert stake["rawCostTitanX"] == str(1000 * E18)
    assert stake["endTime"] == str(default_block_ts(STAKE_BLOCK) + 88 * 86400)

    rows = doc["stakingData"]["rewardPoolData"]
    assert len(rows) == 3 + 88
    by_day = {r["day"]: r for r in rows}
    assert Decimal(by_day[1]["totalShares"]) == 0  # create lands after day 1 starts
    assert Decimal(by_day[2]["totalShares"]) == 50
    assert Decimal(by_day[3]["totalShares"]) == 8850

    assert doc["totals"]["totalETH"] == "0.5"
    assert doc["totals"]["totalTitanX"] == "1000"
    assert doc["totals"]["createCount"] == 1


def test_skips_when_few_new_blocks(tmp_path):
    path = tmp_path / "cache.json"
    doc = default_document()
    doc["metadata"]["lastProcessedBlock"] = HEAD - 5
    save_cache(path, doc)
    before = path.read_text()

    client = _client()
    result = _run(client, path)
    assert result.status == "skipped"
    assert path.read_text() == before
    assert "eth_getLogs" not in client.methods


def test_rescan_does_not_duplicate(tmp_path):
    path = tmp_path / "cache.json"
    assert _run(_client(), path).status == "updated"

    doc = json.loads(path.read_text())
    doc["metadata"]["lastProcessedBlock"] = DEPLOYMENT_BLOCK
    doc["stakingData"]["createEvents"][0]["note"] = "committed"
    path.write_text(json.dumps(doc))

    client = _client()
    client.head = HEAD + 100
    result = _run(client, path)
    assert result.status == "updated", result.errors
    assert result.new_creates == 0 and result.new_stakes == 0

    doc = load_cache(path)
    assert len(doc["stakingData"]["createEvents"]) == 1
    assert len(doc["stakingData"]["stakeEvents"]) == 1
    assert doc["stakingData"]["createEvents"][0]["note"] == "committed"
    assert doc["metadata"]["lastProcessedBlock"] == HEAD + 100


@patch("torus_indexer.rpc.time.sleep")
def test_fetch_error_leaves_cache_untouched(sleep, tmp_path):
    path = tmp_path / "cache.json"
    assert _run(_client(), path).status == "updated"
    before = path.read_text()

    client = _client()
    client.head = HEAD + 1000
    client.fail["eth_getLogs"] = RpcError("HTTP 503: unavailable", status_code=503)
    result = _run(client, path)
    assert result.status == "failed"
    assert sleep.called
    assert path.read_text() == before
    assert json.loads(before)["metadata"]["lastProcessedBlock"] == HEAD


def test_payment_error_leaves_cache_untouched(tmp_path):
    path = tmp_path / "cache.json"
    save_cache(path, default_document())
    before = path.read_text()

    client = _client()
    client.fail["eth_getTransactionByHash"] = RpcError("execution reverted")
    result = _run(client, path)
    assert result.status == "failed"
    assert path.read_text() == before
    assert "lastProcessedBlock" not in load_cache(path)["metadata"]


def test_share_lookup_error_leaves_cache_untouched(tmp_path):
    path = tmp_path / "cache.json"
    save_cache(path, default_document())
    before = path.read_text()

    client = _client()
    client.fail["eth_call"] = RpcError("execution reverted")
    assert _run(client, path).status == "failed"
    assert path.read_text() == before


def test_lp_read_error_leaves_cache_untouched(tmp_path):
    path = tmp_path / "cache.json"
    save_cache(path, default_document())
    before = path.read_text()

    client = _lp_client([_pool_mint_log(tx_hash(9))])
    client.fail["eth_call"] = RpcError("HTTP 403: forbidden", status_code=403)
    assert _run(client, path, lp=True).status == "failed"
    assert path.read_text() == before


def test_buy_process_error_leaves_cache_untouched(tmp_path):
    path = tmp_path / "cache.json"
    save_cache(path, default_document())
    before = path.read_text()

    client = _client(logs=[_burn_log(tx_hash(8))])
    client.txs[tx_hash(8)] = {"hash": tx_hash(8), "value": "0x0", "input": SELECTOR_ETH_BURN + "00" * 32}
    client.fail["eth_getTransactionReceipt"] = RpcError("execution reverted")
    result = _run(client, path, buy_process=True)
    assert result.status == "failed"
    assert path.read_text() == before


def test_skipped_sections_catch_up_on_a_later_run(tmp_path):
    path = tmp_path / "cache.json"
    logs = [_create_log(), _stake_log(), _burn_log(tx_hash(8)), _pool_mint_log(tx_hash(9))]
    assert _run(_lp_client(logs), path).status == "updated"
    doc = load_cache(path)
    assert doc["metadata"]["lastProcessedBlock"] == HEAD
    assert not doc["buyProcessData"].get("dailyData")
    assert not doc["lpPositions"]

    client = _lp_client(logs)
    client.head = HEAD + 100
    result = _run(client, path, buy_process=True, lp=True)
    assert result.status == "updated", result.errors
    doc = load_cache(path)
    assert doc["buyProcessData"]["eventCounts"]["buyAndBurn"] == 1
    assert doc["buyProcessData"]["metadata"]["lastBlock"] == HEAD + 100
    assert [p["tokenId"] for p in doc["lpPositions"]] == ["200"]
    assert doc["metadata"]["lpLastBlock"] == HEAD + 100

    # Nothing is counted twice once both cursors have caught up.
    client = _lp_client(logs)
    client.head = HEAD + 200
    assert _run(client, path, buy_process=True, lp=True).status == "updated"
    doc = load_cache(path)
    assert doc["buyProcessData"]["eventCounts"]["buyAndBurn"] == 1
    assert len(doc["lpPositions"]) == 1
    assert doc["metadata"]["lpLastBlock"] == HEAD + 200


def test_resume_from_scan_state(tmp_path):
    path = tmp_path / "cache.json"
    state_path = tmp_path / "state.pkl"
    # The first chunk was scanned by an earlier, interrupted run.
    save_state(
        state_path,
        ScanState(
            version=1,
            from_block=DEPLOYMENT_BLOCK,
            to_block=HEAD,
            chunk_size=5000,
            next_block=DEPLOYMENT_BLOCK + 5000,
            creates=[decode_created(_create_log())],
            stakes=[],
            updated_at_utc="",
        ),
    )
    payment = titanx_transfer_log(BOB, CREATE_STAKE, 1000 * E18, block=STAKE_BLOCK, tx=tx_hash(2))
    client = _client(logs=[_stake_log(), payment])
    result = _run(client, path, state_path=state_path, resume=True)
    assert result.status == "updated", result.errors
    assert (result.new_creates, result.new_stakes) == (1, 1)
    assert not state_path.exists()


def test_new_validation_errors_block_the_write(tmp_path, monkeypatch):
    path = tmp_path / "cache.json"
    assert _run(_client(), path).status == "updated"
    before = path.read_text()

    def strict(doc):
        report = ValidationReport()
        if doc["metadata"]["lastProcessedBlock"] > HEAD:
            report.errors.append("stakeEvents[0]: bad address 'x'")
        return report

    monkeypatch.setattr(update, "validate_cache", strict)
    client = _client()
    client.head = HEAD + 100
    result = _run(client, path)
    assert result.status == "invalid"
    assert result.errors == ["stakeEvents[0]: bad address 'x'"]
    assert path.read_text() == before


def test_known_validation_errors_do_not_block(tmp_path):
    path = tmp_path / "cache.json"
    assert _run(_client(), path).status == "updated"
    doc = load_cache(path)
    doc["stakingData"]["stakeEvents"][0]["user"] = "not-an-address"
    save_cache(path, doc)

    client = _client(logs=[])
    client.head = HEAD + 100
    assert _run(client, path).status == "updated"


def test_main_prints_summary(tmp_path, monkeypatch, capsys):
    path = tmp_path / "cache.json"
    client = _client()
    monkeypatch.setattr(update, "RpcClient", lambda urls: client)
    monkeypatch.setattr(
        sys,
        "argv",
        ["update", "--cache", str(path), "--no-buy-process", "--no-lp", "--state-pkl", str(tmp_path / "s.pkl"), "--chunk-size", "5000"],
    )
    assert update.main() == 0
    out = capsys.readouterr().out
    assert "updated" in out
    assert f"Wrote {path}" in out


def test_scan_state_round_trip(tmp_path):
    state_path = tmp_path / "state.pkl"
    state = ScanState(1, 10, 20, 5, 15, [{"a": 1}], [], "")
    save_state(state_path, state)
    loaded = update.load_state(state_path, 10)
    assert loaded.next_block == 15
    assert loaded.updated_at_utc
    assert update.load_state(state_path, 11) is None
    assert update.load_state(tmp_path / "missing.pkl", 10) is None
