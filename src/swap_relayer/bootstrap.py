import logging
from dataclasses import dataclass
from typing import Dict, Optional

from stellar_sdk import SorobanServer
from web3 import Web3

from .chains import Chain
from .config import RelayerConfig
from .coordinator import SwapCoordinator
from .db import open_store
from .evm_actuator import EvmActuator
from .evm_utils import make_web3
from .evm_verifier import EvmVerifier
from .hashlock import HashlockService
from .stellar_actuator import StellarActuator
from .stellar_verifier import StellarVerifier

log = logging.getLogger("bootstrap")


@dataclass
class Services:
    coordinator: SwapCoordinator
    w3: Optional[Web3] = None
    soroban: Optional[SorobanServer] = None

    @property
    def chains(self):
        return sorted(c.value for c in self.coordinator.verifiers)


def build_services(config: RelayerConfig) -> Services:
    """Wire clients, verifiers, actuators and the store from one config object."""
    verifiers: Dict[Chain, object] = {}
    actuators: Dict[Chain, object] = {}
    w3 = soroban = None

    if config.evm is not None:
        log.info(f"EVM chain {config.evm.chain_id} via {config.evm.rpc_url}")
        w3 = make_web3(config.evm.rpc_url)
        verifiers[Chain.EVM] = EvmVerifier(
            w3, config.evm.escrow_factory_address, config.evm.min_confirmations
        )
        actuators[Chain.EVM] = EvmActuator(w3, config.evm)
        if actuators[Chain.EVM].account is None:  # type: ignore[attr-defined]
            log.warning("EVM_RELAYER_PRIVATE_KEY not set, EVM actuation will be refused")

    if config.stellar is not None:
        log.info(f"Stellar via {config.stellar.rpc_url}")
        soroban = SorobanServer(config.stellar.rpc_url)
        stellar_verifier = StellarVerifier(
            soroban,
            config.stellar.escrow_contract_id,
            timeout=config.stellar.finality_timeout,
            poll_interval=config.stellar.poll_interval,
        )
        verifiers[Chain.STELLAR] = stellar_verifier
        actuators[Chain.STELLAR] = StellarActuator(soroban, config.stellar, stellar_verifier)
        if actuators[Chain.STELLAR].keypair is None:  # type: ignore[attr-defined]
            log.warning("STELLAR_RELAYER_SECRET not set, Stellar actuation will be refused")

    coordinator = SwapCoordinator(
        store=open_store(config.database_path),
        verifiers=verifiers,  # type: ignore[arg-type]
        actuators=actuators,  # type: ignore[arg-type]
        hashlocks=HashlockService(config.default_hash_scheme),
        config=config,
    )
    return Services(coordinator=coordinator, w3=w3, soroban=soroban)
