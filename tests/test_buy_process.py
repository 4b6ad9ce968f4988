import pytest

from fakes import FakeClient, make_log, topic_addr, topic_uint, tx_hash, words
from torus_indexer.buy_process import (
    build_daily_rows,
    eth_used_for_build,
    eth_used_for_burn,
    fetch_buy_process_events,
    update_buy_process,
    weth_deposit_in_receipt,
)
from torus_indexer.constants import (
    BUY_PROCESS,
    DEPLOYMENT_BLOCK,
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
from torus_indexer.reconcile import empty_daily_row
from torus_indexer.rpc import RpcError
from torus_indexer.utils import ZERO_ADDRESS

E18 = 10**18
CALLER = "0xca11e40000000000000000000000000000000001"
DAY1_BLOCK = DEPLOYMENT_BLOCK + 10
DAY2_BLOCK = DEPLOYMENT_BLOCK + 7200


def _burn(titanx, torus, block, tx, li=0):
    return make_log(BUY_PROCESS, [TOPIC0_BUY_AND_BURN, topic_uint(titanx), topic_uint(torus), topic_addr(CALLER)], block=block, tx=tx, log_index=li)


def _build(allocated, purchased, block, tx, li=0):
    return make_log(BUY_PROCESS, [TOPIC0_BUY_AND_BUILD, topic_uint(allocated), topic_uint(purchased), topic_addr(CALLER)], block=block, tx=tx, log_index=li)


def _burn_transfer(value, block, tx, li=5):
    return make_log(TORUS_TOKEN, [TOPIC0_TRANSFER, topic_addr(BUY_PROCESS), topic_addr(ZERO_ADDRESS)], words(value), block=block, tx=tx, log_index=li)


def _deposit(wad, tx):
    return make_log(WETH, [TOPIC0_WETH_DEPOSIT, topic_addr(BUY_PROCESS)], words(wad), block=1, tx=tx)


@pytest.fixture
def client():
    logs = [
        _burn(1000 * E18, 5 * E18, DAY1_BLOCK, tx_hash(1)),
        _burn(500 * E18, 3 * E18, DAY1_BLOCK, tx_hash(2)),
        _build(2 * E18, 10 * E18, DAY2_BLOCK, tx_hash(3)),
        _build(300 * E18, 4 * E18, DAY2_BLOCK, tx_hash(4)),
        _build(E18, E18, DAY2_BLOCK, tx_hash(6)),
        make_log(BUY_PROCESS, [TOPIC0_FRACTAL], words(7 * E18, 2 * E18 // 10), block=DAY2_BLOCK, tx=tx_hash(5)),
        _burn_transfer(4 * E18, DAY1_BLOCK, tx_hash(1)),
        _burn_transfer(2 * E18, DAY1_BLOCK, tx_hash(2)),
        # Ordinary TORUS transfer out of the contract: not a burn.
        make_log(TORUS_TOKEN, [TOPIC0_TRANSFER, topic_addr(BUY_PROCESS), topic_addr(CALLER)], words(E18), block=DAY1_BLOCK, tx=tx_hash(7)),
    ]
    txs = {
        tx_hash(2): {"hash": tx_hash(2), "value": "0x0", "input": SELECTOR_ETH_BURN + "00" * 32},
        tx_hash(3): {"hash": tx_hash(3), "value": hex(E18 // 10), "input": SELECTOR_ETH_BUILD + "00" * 32},
        tx_hash(6): {"hash": tx_hash(6), "value": "0x0", "input": SELECTOR_ETH_BUILD},
    }
    receipts = {
        tx_hash(2): {"logs": [_deposit(3 * E18 // 10, tx_hash(2))]},
        tx_hash(6): {"logs": [_deposit(5 * E18 // 100, tx_hash(6))]},
    }
    return FakeClient(logs=logs, txs=txs, receipts=receipts)


def test_fetch_splits_event_kinds(client):
    events = fetch_buy_process_events(client, DEPLOYMENT_BLOCK, DAY2_BLOCK + 10, chunk_size=5000)
    assert len(events["burns"]) == 2
    assert len(events["builds"]) == 3
    assert len(events["fractals"]) == 1
    assert [t["value"] for t in events["burnTransfers"]] == [str(4 * E18), str(2 * E18)]


def test_eth_detection(client):
    assert eth_used_for_burn(client, tx_hash(1)) == 0
    assert eth_used_for_burn(client, tx_hash(2)) == 3 * E18 // 10
    assert eth_used_for_build(client, tx_hash(4)) is None
    assert eth_used_for_build(client, tx_hash(3)) == E18 // 10
    assert eth_used_for_build(client, tx_hash(6)) == 5 * E18 // 100
    assert weth_deposit_in_receipt({"logs": []}) == 0


def test_daily_rows(client):
    events = fetch_buy_process_events(client, DEPLOYMENT_BLOCK, DAY2_BLOCK + 10)
    day1, day2 = build_daily_rows(client, events)

    assert day1["protocolDay"] == 1
    assert day1["buyAndBurnCount"] == 2
    assert day1["titanXUsed"] == "1500"
    assert day1["titanXUsedForBurns"] == "1500"
    assert day1["ethUsed"] == "0.3"
    assert day1["ethUsedForBurns"] == "0.3"
    # Burn transfers, not BuyAndBurn.torusBurnt (which sums to 8).
    assert day1["torusBurned"] == "6"

    assert day2["protocolDay"] == 2
    assert day2["date"] == "2025-07-11"
    assert day2["buyAndBuildCount"] == 3
    assert day2["torusPurchased"] == "15"
    assert day2["titanXUsedForBuilds"] == "300"
    assert day2["ethUsedForBuilds"] == "0.15"
    assert day2["fractalCount"] == 1
    assert day2["fractalTitanX"] == "7"
    assert day2["fractalETH"] == "0.2"


def test_update_skips_already_counted_blocks(client):
    existing = empty_daily_row(1)
    existing.update({"buyAndBurnCount": 2, "torusBurned": "6"})
    section = {"dailyData": [existing], "metadata": {"lastBlock": DAY1_BLOCK}}

    out = update_buy_process(client, section, DEPLOYMENT_BLOCK, DAY2_BLOCK + 10, current_day=3)
    rows = out["dailyData"]
    assert [r["protocolDay"] for r in rows] == [1, 2, 3]
    assert rows[0]["buyAndBurnCount"] == 2
    assert rows[0]["torusBurned"] == "6"
    assert rows[1]["buyAndBuildCount"] == 3
    assert out["eventCounts"] == {"buyAndBurn": 2, "buyAndBuild": 3, "fractal": 1}
    assert out["metadata"]["lastBlock"] == DAY2_BLOCK + 10
    assert out["metadata"]["totalTorusBurned"] == "6"

    again = update_buy_process(client, out, DEPLOYMENT_BLOCK, DAY2_BLOCK + 10, current_day=3)
    assert again["dailyData"] == rows


def test_cursor_wins_over_later_from_block(client):
    # An earlier --no-buy-process run moved the staking cursor past day 1.
    section = {"dailyData": [], "metadata": {"lastBlock": DEPLOYMENT_BLOCK}}
    out = update_buy_process(client, section, DAY2_BLOCK, DAY2_BLOCK + 10, current_day=2)
    assert out["eventCounts"]["buyAndBurn"] == 2
    assert out["eventCounts"]["buyAndBuild"] == 3
    assert out["metadata"]["lastBlock"] == DAY2_BLOCK + 10


def test_classification_error_propagates(client):
    client.fail["eth_getTransactionReceipt"] = RpcError("execution reverted")
    section = {"dailyData": [], "metadata": {"lastBlock": DEPLOYMENT_BLOCK}}
    with pytest.raises(RpcError):
        update_buy_process(client, section, DEPLOYMENT_BLOCK, DAY2_BLOCK + 10, current_day=3)
    assert section["metadata"] == {"lastBlock": DEPLOYMENT_BLOCK}
