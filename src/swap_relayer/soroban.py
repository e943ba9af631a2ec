from typing import Dict, Optional

from stellar_sdk import scval
from stellar_sdk.xdr import SCMap, SCMapEntry, SCVal, SCValType

# --- Helpers To Build Encoded Values ---

def address_to_scval(address: str) -> SCVal:
    """G... account or C... contract strkey."""
    return scval.to_address(address)

def bytes32_to_scval(value: str) -> SCVal:
    raw = bytes.fromhex(value[2:] if value.startswith("0x") else value)
    if len(raw) != 32:
        raise ValueError(f"expected 32 bytes, got {len(raw)}")
    return scval.to_bytes(raw)

def i128_to_scval(n: int) -> SCVal:
    return scval.to_int128(int(n))

def u64_to_scval(n: int) -> SCVal:
    return scval.to_uint64(int(n))

def symbol_to_scval(sym: str) -> SCVal:
    return scval.to_symbol(sym)

def option_to_scval(value: Optional[SCVal]) -> SCVal:
    """None becomes void, anything else passes through."""
    if value is None:
        return SCVal(type=SCValType.SCV_VOID)
    return value

def map_to_scval(fields: Dict[str, SCVal]) -> SCVal:
    # Soroban rejects maps whose keys are not sorted
    entries = [
        SCMapEntry(key=symbol_to_scval(name), val=fields[name])
        for name in sorted(fields)
    ]
    return SCVal(type=SCValType.SCV_MAP, map=SCMap(entries))

# --- Escrow Contract Arguments ---

def encode_timelocks(withdrawal: int, cancellation: int) -> SCVal:
    return map_to_scval({
        "withdrawal": u64_to_scval(withdrawal),
        "cancellation": u64_to_scval(cancellation),
    })

def encode_escrow_immutables(
    hashlock: str,
    hash_scheme: str,
    maker: str,
    taker: str,
    token: Optional[str],
    amount: int,
    safety_deposit: int,
    timelocks: Dict[str, int],
) -> SCVal:
    return map_to_scval({
        "hashlock": bytes32_to_scval(hashlock),
        "hash_scheme": symbol_to_scval(hash_scheme),
        "maker": address_to_scval(maker),
        "taker": address_to_scval(taker),
        "token": option_to_scval(address_to_scval(token) if token else None),
        "amount": i128_to_scval(amount),
        "safety_deposit": i128_to_scval(safety_deposit),
        "timelocks": encode_timelocks(timelocks["withdrawal"], timelocks["cancellation"]),
    })