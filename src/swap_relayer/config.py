import logging, os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional

import dotenv

from .chains import SwapDirection
from .errors import ConfigurationError
from .hashlock import HashScheme

log = logging.getLogger("config")


@dataclass(frozen=True)
class TimelockOffsets:
    """Seconds after escrow deployment at which each stage opens."""
    withdrawal: int
    cancellation: int


@dataclass(frozen=True)
class EvmSettings:
    rpc_url: str
    chain_id: int = 11155111
    escrow_factory_address: str = ""
    relayer_private_key: Optional[str] = None
    safety_deposit: int = 10**14  # 0.0001 ETH
    gas_limit: int = 2_500_000
    min_confirmations: int = 1
    receipt_timeout: float = 120.0
    src_timelocks: TimelockOffsets = TimelockOffsets(withdrawal=100, cancellation=100)
    dst_timelocks: TimelockOffsets = TimelockOffsets(withdrawal=100, cancellation=60)


@dataclass(frozen=True)
class StellarSettings:
    rpc_url: str
    network_passphrase: str = "Test SDF Network ; September 2015"
    escrow_contract_id: str = ""
    relayer_secret: Optional[str] = None
    safety_deposit: int = 0
    finality_timeout: float = 60.0
    poll_interval: float = 2.0
    base_fee: int = 100
    timelocks: TimelockOffsets = TimelockOffsets(withdrawal=100, cancellation=100)


@dataclass(frozen=True)
class RelayerConfig:
    evm: Optional[EvmSettings] = None
    stellar: Optional[StellarSettings] = None
    default_hash_scheme: HashScheme = HashScheme.KECCAK256
    relayer_escrow_directions: FrozenSet[SwapDirection] = field(
        default_factory=lambda: frozenset({SwapDirection.A_TO_B})
    )
    database_path: Optional[str] = None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", setting=name)


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", setting=name)


def _load_evm(env: Mapping[str, str]) -> Optional[EvmSettings]:
    rpc_url = env.get("EVM_RPC") or ""
    if not rpc_url:
        log.warning("EVM_RPC not set, EVM chain disabled")
        return None
    return EvmSettings(
        rpc_url=rpc_url,
        chain_id=_int(env, "EVM_CHAIN_ID", 11155111),
        escrow_factory_address=env.get("EVM_ESCROW_FACTORY_ADDRESS") or "",
        relayer_private_key=env.get("EVM_RELAYER_PRIVATE_KEY") or None,
        safety_deposit=_int(env, "EVM_SAFETY_DEPOSIT", 10**14),
        gas_limit=_int(env, "EVM_GAS_LIMIT", 2_500_000),
        min_confirmations=_int(env, "EVM_MIN_CONFIRMATIONS", 1),
        receipt_timeout=_float(env, "EVM_RECEIPT_TIMEOUT", 120.0),
        src_timelocks=TimelockOffsets(
            withdrawal=_int(env, "EVM_SRC_WITHDRAWAL_TIMELOCK_OFFSET", 100),
            cancellation=_int(env, "EVM_SRC_CANCELLATION_TIMELOCK_OFFSET", 100),
        ),
        dst_timelocks=TimelockOffsets(
            withdrawal=_int(env, "EVM_DST_WITHDRAWAL_TIMELOCK_OFFSET", 100),
            cancellation=_int(env, "EVM_DST_CANCELLATION_TIMELOCK_OFFSET", 60),
        ),
    )


def _load_stellar(env: Mapping[str, str]) -> Optional[StellarSettings]:
    rpc_url = env.get("STELLAR_RPC") or ""
    if not rpc_url:
        log.warning("STELLAR_RPC not set, Stellar chain disabled")
        return None
    return StellarSettings(
        rpc_url=rpc_url,
        network_passphrase=env.get("STELLAR_NETWORK_PASSPHRASE") or "Test SDF Network ; September 2015",
        escrow_contract_id=env.get("STELLAR_ESCROW_CONTRACT_ID") or "",
        relayer_secret=env.get("STELLAR_RELAYER_SECRET") or None,
        safety_deposit=_int(env, "STELLAR_SAFETY_DEPOSIT", 0),
        finality_timeout=_float(env, "STELLAR_FINALITY_TIMEOUT", 60.0),
        poll_interval=_float(env, "STELLAR_POLL_INTERVAL", 2.0),
        base_fee=_int(env, "STELLAR_BASE_FEE", 100),
        timelocks=TimelockOffsets(
            withdrawal=_int(env, "STELLAR_WITHDRAWAL_TIMELOCK_OFFSET", 100),
            cancellation=_int(env, "STELLAR_CANCELLATION_TIMELOCK_OFFSET", 100),
        ),
    )


def _directions(raw: str) -> FrozenSet[SwapDirection]:
    try:
        return frozenset(SwapDirection(d.strip().upper()) for d in raw.split(",") if d.strip())
    except ValueError:
        raise ConfigurationError(f"RELAYER_ESCROW_DIRECTIONS has an unknown direction: {raw!r}")


def load_config(env: Optional[Mapping[str, str]] = None) -> RelayerConfig:
    """Read the relayer configuration once; pass the result to constructors."""
    if env is None:
        dotenv.load_dotenv()
        env = os.environ
    scheme = env.get("DEFAULT_HASH_SCHEME") or HashScheme.KECCAK256.value
    try:
        default_scheme = HashScheme(scheme.lower())
    except ValueError:
        raise ConfigurationError(f"DEFAULT_HASH_SCHEME must be sha256 or keccak256, got {scheme!r}")
    return RelayerConfig(
        evm=_load_evm(env),
        stellar=_load_stellar(env),
        default_hash_scheme=default_scheme,
        relayer_escrow_directions=_directions(env.get("RELAYER_ESCROW_DIRECTIONS") or "A_TO_B"),
        database_path=env.get("SWAP_DB_PATH") or None,
    )
