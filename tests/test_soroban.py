import pytest
from stellar_sdk import Keypair, StrKey, scval
from stellar_sdk.xdr import SCValType

from swap_relayer.soroban import bytes32_to_scval, encode_escrow_immutables, map_to_scval, option_to_scval

MAKER = Keypair.random().public_key
TAKER = Keypair.random().public_key
TOKEN = StrKey.encode_contract(b"\x02" * 32)
HASHLOCK = "0x" + "ab" * 32


def fields(value):
    return {scval.from_symbol(e.key): e.val for e in value.map.sc_map}


def test_map_keys_are_sorted():
    value = map_to_scval({"b": scval.to_uint32(1), "a": scval.to_uint32(2)})
    assert [scval.from_symbol(e.key) for e in value.map.sc_map] == ["a", "b"]


def test_escrow_immutables():
    value = encode_escrow_immutables(
        HASHLOCK, "keccak256", MAKER, TAKER, TOKEN, 10**7, 5, {"withdrawal": 10, "cancellation": 20}
    )
    got = fields(value)
    assert list(got) == sorted(got)
    assert scval.from_bytes(got["hashlock"]) == b"\xab" * 32
    assert scval.from_symbol(got["hash_scheme"]) == "keccak256"
    assert scval.from_address(got["maker"]).address == MAKER
    assert scval.from_address(got["token"]).address == TOKEN
    assert scval.from_int128(got["amount"]) == 10**7
    assert scval.from_int128(got["safety_deposit"]) == 5
    timelocks = fields(got["timelocks"])
    assert scval.from_uint64(timelocks["cancellation"]) == 20


def test_native_token_is_void():
    value = encode_escrow_immutables(HASHLOCK, "sha256", MAKER, TAKER, None, 1, 0, {"withdrawal": 1, "cancellation": 2})
    assert fields(value)["token"].type == SCValType.SCV_VOID


def test_option_passes_values_through():
    inner = scval.to_uint32(3)
    assert option_to_scval(inner) is inner


@pytest.mark.parametrize("bad", ["0x" + "ab" * 31, "ab" * 33])
def test_bytes32_length(bad):
    with pytest.raises(ValueError):
        bytes32_to_scval(bad)
