from typing import Any, Dict, List, Optional, Tuple
import logging
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError
from web3.middleware import ExtraDataToPOAMiddleware
from web3.types import TxParams
from web3.contract.contract import ContractFunction
from eth_account.signers.local import LocalAccount
from eth_abi.abi import decode as abi_decode

log = logging.getLogger("EvmUtils")

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"

# ───────────────────────────────────────────────────────────────────── ABIs
_IMMUTABLES_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "hashlock", "type": "bytes32"},
    {"name": "maker", "type": "uint256"},
    {"name": "taker", "type": "uint256"},
    {"name": "token", "type": "uint256"},
    {"name": "amount", "type": "uint256"},
    {"name": "safetyDeposit", "type": "uint256"},
    {"name": "timelocks", "type": "uint256"},
]
_IMMUTABLES = {"name": "immutables", "type": "tuple", "components": _IMMUTABLES_COMPONENTS}

ESCROW_FACTORY_ABI: List[Dict[str, Any]] = [
    {
        "name": "createDstEscrow",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [_IMMUTABLES, {"name": "srcCancellationTimestamp", "type": "uint256"}],
        "outputs": [],
    },
    {
        "name": "addressOfEscrowDst",
        "type": "function",
        "stateMutability": "view",
        "inputs": [_IMMUTABLES],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "SrcEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "maker", "type": "address", "indexed": False},
            {"name": "taker", "type": "address", "indexed": False},
        ],
    },
    {
        "name": "DstEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            {"name": "escrow", "type": "address", "indexed": False},
            {"name": "hashlock", "type": "bytes32", "indexed": False},
            {"name": "taker", "type": "address", "indexed": False},
        ],
    },
]

ESCROW_ABI: List[Dict[str, Any]] = [
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "secret", "type": "bytes32"}, _IMMUTABLES],
        "outputs": [],
    },
    {
        "name": "cancel",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [_IMMUTABLES],
        "outputs": [],
    },
]

ERC20_ABI: List[Dict[str, Any]] = [
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

# ───────────────────────────────────────────────────────────────────── events
SRC_ESCROW_CREATED = "SrcEscrowCreated(address,bytes32,address,address)"
DST_ESCROW_CREATED = "DstEscrowCreated(address,bytes32,address)"

SRC_ESCROW_CREATED_TOPIC = HexBytes(Web3.keccak(text=SRC_ESCROW_CREATED))
DST_ESCROW_CREATED_TOPIC = HexBytes(Web3.keccak(text=DST_ESCROW_CREATED))


def decode_src_escrow_created(data: bytes) -> Dict[str, str]:
    escrow, hashlock, maker, taker = abi_decode(["address", "bytes32", "address", "address"], bytes(data))
    return {"escrow": escrow, "hashlock": "0x" + hashlock.hex(), "maker": maker, "taker": taker}


def decode_dst_escrow_created(data: bytes) -> Dict[str, str]:
    escrow, hashlock, taker = abi_decode(["address", "bytes32", "address"], bytes(data))
    return {"escrow": escrow, "hashlock": "0x" + hashlock.hex(), "taker": taker}


def find_dst_escrow_address(receipt: Any) -> Optional[str]:
    """Escrow address from the first DstEscrowCreated log of a receipt, if any."""
    for entry in receipt.get("logs", []) or []:
        topics = entry.get("topics") or []
        if topics and HexBytes(topics[0]) == DST_ESCROW_CREATED_TOPIC:
            return Web3.to_checksum_address(decode_dst_escrow_created(entry["data"])["escrow"])
    return None

# ───────────────────────────────────────────────────────────────────── immutables
def pack_timelocks(t0: int, t1: int, t2: int, t3: int) -> int:
    """src withdrawal, src cancellation, dst withdrawal, dst cancellation offsets."""
    return t0 | (t1 << 64) | (t2 << 128) | (t3 << 192)


def unpack_timelocks(packed: int) -> Tuple[int, int, int, int]:
    mask = (1 << 64) - 1
    return tuple((packed >> shift) & mask for shift in (0, 64, 128, 192))  # type: ignore


def order_hash_for(swap_id: str) -> HexBytes:
    return HexBytes(Web3.keccak(text=f"swap-relayer:{swap_id}"))


def build_immutables(order_hash: bytes, hashlock: str, maker: str, taker: str, token: str,
                     amount: int, safety_deposit: int, timelocks: int) -> Tuple[Any, ...]:
    return (
        HexBytes(order_hash),                # bytes32 orderHash
        HexBytes(hashlock),                  # bytes32 hashlock
        int(maker, 16),                      # Address maker
        int(taker, 16),                      # Address taker
        int(token or NATIVE_TOKEN, 16),      # Address token
        int(amount),                         # uint256 amount
        int(safety_deposit),                 # uint256 safetyDeposit
        int(timelocks),                      # uint256 timelocks
    )


def immutables_to_params(immutables: Tuple[Any, ...]) -> Dict[str, Any]:
    """JSON-safe form kept on the swap record for later withdraw/cancel calls."""
    order_hash, hashlock, maker, taker, token, amount, deposit, timelocks = immutables
    return {
        "order_hash": "0x" + bytes(order_hash).hex(),
        "hashlock": "0x" + bytes(hashlock).hex(),
        "maker": Web3.to_checksum_address(f"0x{maker:040x}"),
        "taker": Web3.to_checksum_address(f"0x{taker:040x}"),
        "token": Web3.to_checksum_address(f"0x{token:040x}"),
        "amount": str(amount),
        "safety_deposit": str(deposit),
        "timelocks": str(timelocks),
    }


def immutables_from_params(params: Dict[str, Any]) -> Tuple[Any, ...]:
    return build_immutables(
        HexBytes(params["order_hash"]),
        params["hashlock"],
        params["maker"],
        params["taker"],
        params["token"],
        int(params["amount"]),
        int(params["safety_deposit"]),
        int(params["timelocks"]),
    )

# ───────────────────────────────────────────────────────────────────── tx plumbing
def make_web3(rpc_url: str) -> Web3:
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 60}))
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


def _send_tx(w3: Web3, acc: LocalAccount, fn: ContractFunction, value: int = 0,
             chain_id: int = 11155111, gas_limit: int = 2_500_000) -> str:
    """Build, sign and broadcast; returns the tx hash without waiting for a receipt."""
    base: TxParams = {}
    base['from'] = acc.address
    base['chainId'] = chain_id
    base['gas'] = gas_limit
    base['gasPrice'] = w3.eth.gas_price
    base['nonce'] = w3.eth.get_transaction_count(acc.address, "pending")
    tx      = fn.build_transaction(base | {"value": value}) # type: ignore
    signed  = acc.sign_transaction(tx) # type: ignore
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    log.info(f"→ {tx_hash.to_0x_hex()} broadcast (value={value})")
    return tx_hash.to_0x_hex()


def revert_reason(w3: Web3, tx_hash: str, receipt: Any) -> Optional[str]:
    """Replay a reverted tx as a call at its block to recover the revert string."""
    try:
        tx = w3.eth.get_transaction(tx_hash)
        call: TxParams = {
            "from": tx["from"],
            "to": tx["to"],
            "data": tx["input"],
            "value": tx.get("value", 0),
        }
        w3.eth.call(call, receipt["blockNumber"])
    except ContractLogicError as err:
        return str(err.message or err)
    except Exception as err:
        log.debug(f"revert replay for {tx_hash} failed: {err}")
        return None
    return None
