import pytest

from fakes import FakeClient, encode_lp_position, make_log, topic_addr, topic_uint, tx_hash, words
from torus_indexer.constants import (
    POSITION_MANAGER,
    TITANX,
    TOPIC0_INCREASE_LIQUIDITY,
    TOPIC0_POOL_MINT,
    TORUS_TITANX_POOL,
    TORUS_TOKEN,
)
from torus_indexer.lp_positions import (
    decode_position,
    discover_token_ids,
    is_pool_position,
    merge_positions,
    position_status,
    update_lp_positions,
)
from torus_indexer.rpc import RpcError
from torus_indexer.utils import keccak_selector

OWNER = "0x0000000000000000000000000000000000000abc"
OTHER_TOKEN = "0x6b175474e89094c44da98b954eedeac495271d0f"


POSITIONS = {
    100: encode_lp_position(TORUS_TOKEN, TITANX, 10_000, -887200, 887200, 0, owed0=5),
    200: encode_lp_position(TORUS_TOKEN, TITANX, 10_000, -60000, 60000, 12345),
    300: encode_lp_position(TORUS_TOKEN, TITANX, 3_000, -60, 60, 1),
    301: encode_lp_position(OTHER_TOKEN, TITANX, 10_000, -60, 60, 1),
}


def _eth_call(to, data):
    assert to == POSITION_MANAGER
    selector, token_id = data[2:10], int(data[10:], 16)
    if token_id not in POSITIONS:
        raise RpcError("execution reverted: Invalid token ID")
    if selector == keccak_selector("positions(uint256)"):
        return POSITIONS[token_id]
    if selector == keccak_selector("ownerOf(uint256)"):
        return words(OWNER)
    raise AssertionError(selector)


def _mint(tx, block, sender=POSITION_MANAGER):
    return make_log(
        TORUS_TITANX_POOL,
        [TOPIC0_POOL_MINT, topic_addr(POSITION_MANAGER), topic_uint(2**256 - 60000), topic_uint(60000)],
        words(sender, 1, 2, 3),
        block=block,
        tx=tx,
    )


def _increase(token_id, tx):
    return make_log(POSITION_MANAGER, [TOPIC0_INCREASE_LIQUIDITY, topic_uint(token_id)], words(1, 2, 3), block=1, tx=tx, log_index=3)


@pytest.fixture
def client():
    logs = [_mint(tx_hash(1), 500), _mint(tx_hash(2), 600), _mint(tx_hash(3), 700, sender=OWNER)]
    receipts = {
        tx_hash(1): {"logs": [_increase(200, tx_hash(1))]},
        tx_hash(2): {"logs": [_increase(300, tx_hash(2)), _increase(301, tx_hash(2))]},
        tx_hash(3): {"logs": [_increase(999, tx_hash(3))]},
    }
    return FakeClient(logs=logs, receipts=receipts, eth_call=_eth_call)


def test_decode_position():
    pos = decode_position(POSITIONS[100])
    assert pos["token0"] == TORUS_TOKEN
    assert pos["token1"] == TITANX
    assert pos["fee"] == 10_000
    assert pos["tickLower"] == -887200
    assert pos["tickUpper"] == 887200
    assert pos["liquidity"] == "0"
    assert pos["tokensOwed0"] == "5"
    assert is_pool_position(pos)
    assert position_status(pos) == "closed"
    assert position_status(decode_position(POSITIONS[200])) == "active"
    assert not is_pool_position(decode_position(POSITIONS[300]))
    assert not is_pool_position(decode_position(POSITIONS[301]))


def test_discover_token_ids(client):
    found = discover_token_ids(client, 1, 1000, chunk_size=400)
    # Direct pool mints (not via the position manager) carry no NFT.
    assert sorted(found) == ["200", "300", "301"]
    assert found["200"] == {"mintBlock": 500, "mintTx": tx_hash(1)}


def test_update_lp_positions(client):
    existing = [
        {"tokenId": "100", "owner": "0xold", "note": "keep me", "status": "active"},
        {"tokenId": "404", "owner": OWNER, "liquidity": "7", "status": "active"},
    ]
    out = update_lp_positions(client, existing, 1, 1000)
    by_id = {p["tokenId"]: p for p in out}
    assert sorted(by_id, key=int) == ["100", "200", "404"]
    assert by_id["100"]["status"] == "closed"
    assert by_id["100"]["note"] == "keep me"
    assert by_id["100"]["owner"] == OWNER
    assert by_id["200"]["status"] == "active"
    assert by_id["200"]["liquidity"] == "12345"
    assert by_id["200"]["mintBlock"] == 500
    # positions() reverts for burned NFTs.
    assert by_id["404"]["status"] == "closed"
    assert by_id["404"]["liquidity"] == "0"
    assert existing[0]["status"] == "active"


def test_merge_positions_preserves_fields_and_dedupes():
    existing = [{"tokenId": "2", "a": 1}, {"tokenId": "1", "b": 2}, {"tokenId": "2", "a": 99}]
    merged = merge_positions(existing, [{"tokenId": "2", "status": "active", "owner": None}])
    assert merged == [{"tokenId": "1", "b": 2}, {"tokenId": "2", "a": 1, "status": "active"}]


def test_discovery_resumes_from_lp_cursor(client):
    # The staking range starts past the mints; the LP cursor does not.
    out = update_lp_positions(client, [], 900, 1000, last_block=450)
    assert [p["tokenId"] for p in out] == ["200"]

    out = update_lp_positions(client, [], 1, 1000, last_block=650)
    assert out == []


def test_non_revert_read_error_propagates(client):
    client.fail["eth_call"] = RpcError("HTTP 401: unauthorized", status_code=401)
    existing = [{"tokenId": "404", "status": "active"}]
    with pytest.raises(RpcError):
        update_lp_positions(client, existing, 1, 1000)
    assert existing == [{"tokenId": "404", "status": "active"}]
