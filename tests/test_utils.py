from decimal import Decimal

import pytest

from torus_indexer.utils import (
    DecodeError,
    abi_encode_address,
    decimal_str,
    decode_int256,
    decode_words,
    event_topic,
    is_address,
    keccak_selector,
    normalize_address,
    parse_raw_amount,
    read_json,
    topic_to_address,
    wei_to_decimal,
    write_json_atomic,
)


def test_known_hashes():
    assert event_topic("Transfer(address,address,uint256)") == (
        "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    )
    assert event_topic("Deposit(address,uint256)") == (
        "0xe1fffcc4923d04b559f4d29a8bfc6cda04eb5b0d3c460751c2402c5c5cc9109c"
    )
    assert keccak_selector("ownerOf(uint256)") == "6352211e"
    assert keccak_selector("positions(uint256)") == "99fbab88"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1.5e+21", 1_500_000_000_000_000_000_000),
        ("0x10", 16),
        ("0x", 0),
        ("", 0),
        (None, 0),
        (1e18, 10**18),
        ("123456789012345678901234567890", 123456789012345678901234567890),
        (42, 42),
    ],
)
def test_parse_raw_amount_shapes(value, expected):
    assert parse_raw_amount(value) == expected


def test_parse_raw_amount_rejects_bool_and_garbage():
    with pytest.raises(ValueError):
        parse_raw_amount(True)
    with pytest.raises(ValueError):
        parse_raw_amount("abc")


def test_decimal_str_never_uses_exponent():
    assert decimal_str(Decimal("1E+18")) == "1000000000000000000"
    assert decimal_str(Decimal("1.500")) == "1.5"
    assert decimal_str(Decimal("0E-18")) == "0"
    assert decimal_str(wei_to_decimal(1)) == "0.000000000000000001"


def test_decode_words_short_data():
    with pytest.raises(DecodeError):
        decode_words("0x" + "00" * 40, 2)


def test_int256_and_addresses():
    assert decode_int256(2**256 - 5) == -5
    addr = "0xAbC0000000000000000000000000000000000001"
    assert normalize_address(addr) == addr.lower()
    assert is_address(addr)
    assert not is_address("0x123")
    assert topic_to_address("0x" + abi_encode_address(addr)) == addr.lower()


def test_write_json_atomic(tmp_path):
    path = tmp_path / "nested" / "doc.json"
    write_json_atomic(path, {"b": 1, "a": [1, 2]})
    assert read_json(path) == {"a": [1, 2], "b": 1}
    assert not path.with_name("doc.json.tmp").exists()
