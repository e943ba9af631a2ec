from collections import deque
from typing import Any, Dict, List, Optional

import pytest

from swap_relayer.actions import PartyTerms, SwapTerms
from swap_relayer.chains import Chain, ChainReceipt, EscrowKind, EscrowTerms, Submission, SwapDirection
from swap_relayer.config import EvmSettings, RelayerConfig, StellarSettings
from swap_relayer.coordinator import SwapCoordinator
from swap_relayer.db import InMemorySwapStore
from swap_relayer.hashlock import HashlockService, commit, generate_secret

NOW = 1_700_000_000

EVM_INITIATOR = "0x1111111111111111111111111111111111111111"
EVM_COUNTERPARTY = "0x2222222222222222222222222222222222222222"
EVM_ESCROW = "0x3333333333333333333333333333333333333333"
EVM_DST_ESCROW = "0x4444444444444444444444444444444444444444"
STELLAR_INITIATOR = "GINITIATOR"
STELLAR_COUNTERPARTY = "GCOUNTERPARTY"
STELLAR_ESCROW = "CESCROW"


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeVerifier:
    """Confirms every tx unless told otherwise through `errors`."""

    def __init__(self, chain: Chain, escrow_ref: Optional[str] = None):
        self.chain = chain
        self.escrow_ref = escrow_ref
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def confirm_transaction(self, tx_hash: str) -> ChainReceipt:
        self.calls.append(("confirm", tx_hash))
        if tx_hash in self.errors:
            raise self.errors[tx_hash]
        return ChainReceipt(chain=self.chain, tx_hash=tx_hash, block=1)

    def verify_escrow_creation(self, tx_hash, contract_ref, kind: EscrowKind, hashlock, maker, taker):
        self.calls.append(("escrow", tx_hash, contract_ref, kind, hashlock, maker, taker))
        if tx_hash in self.errors:
            raise self.errors[tx_hash]
        return ChainReceipt(chain=self.chain, tx_hash=tx_hash, block=1, escrow_ref=self.escrow_ref or contract_ref)


class FakeActuator:
    """Records submissions; `outcomes` queues exceptions for the next confirmation waits."""

    def __init__(self, chain: Chain, created_escrow_ref: Optional[str] = None):
        self.chain = chain
        self.created_escrow_ref = created_escrow_ref
        self.submissions: List[Dict[str, Any]] = []
        self.waits: List[str] = []
        self.outcomes: deque = deque()
        self.create_params: Dict[str, Any] = {}
        self.timestamp: Optional[int] = None

    def _submit(self, kind: str, **kwargs) -> Submission:
        tx_hash = f"{self.chain.value.lower()}-tx-{len(self.submissions) + 1}"
        self.submissions.append({"kind": kind, "tx_hash": tx_hash, **kwargs})
        escrow_ref = kwargs.get("escrow_ref")
        params = {"kind": kind, **self.create_params} if kind == "create" else {}
        return Submission(chain=self.chain, tx_hash=tx_hash, escrow_ref=escrow_ref, params=params)

    def submit_create_escrow(self, terms: EscrowTerms) -> Submission:
        return self._submit("create", terms=terms, escrow_ref=self.created_escrow_ref)

    def submit_withdraw(self, escrow_ref, secret, terms, params=None) -> Submission:
        return self._submit("withdraw", escrow_ref=escrow_ref, secret=secret, terms=terms, params=params)

    def submit_cancel(self, escrow_ref, terms, params=None) -> Submission:
        return self._submit("cancel", escrow_ref=escrow_ref, terms=terms, params=params)

    def wait_for_confirmation(self, tx_hash: str, timeout=None) -> ChainReceipt:
        self.waits.append(tx_hash)
        if self.outcomes:
            outcome = self.outcomes.popleft()
            if outcome is not None:
                raise outcome
        return ChainReceipt(
            chain=self.chain, tx_hash=tx_hash, block=2, escrow_ref=self.created_escrow_ref, timestamp=self.timestamp
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return RelayerConfig(
        evm=EvmSettings(rpc_url="http://evm.test", escrow_factory_address=EVM_ESCROW),
        stellar=StellarSettings(rpc_url="http://stellar.test", escrow_contract_id=STELLAR_ESCROW),
    )


@pytest.fixture
def store(clock):
    return InMemorySwapStore(clock=clock)


@pytest.fixture
def verifiers():
    return {
        Chain.EVM: FakeVerifier(Chain.EVM, escrow_ref=EVM_DST_ESCROW),
        Chain.STELLAR: FakeVerifier(Chain.STELLAR),
    }


@pytest.fixture
def actuators():
    return {
        Chain.EVM: FakeActuator(Chain.EVM),
        Chain.STELLAR: FakeActuator(Chain.STELLAR, created_escrow_ref=STELLAR_ESCROW),
    }


@pytest.fixture
def coordinator(store, verifiers, actuators, config, clock):
    return SwapCoordinator(
        store=store,
        verifiers=verifiers,
        actuators=actuators,
        hashlocks=HashlockService(config.default_hash_scheme),
        config=config,
        clock=clock,
    )


@pytest.fixture
def secret():
    return generate_secret()


@pytest.fixture
def hashlock(secret):
    return commit(secret, "keccak256")


def a_to_b_terms(hashlock: str, **overrides) -> SwapTerms:
    data = dict(
        direction=SwapDirection.A_TO_B,
        initiator=PartyTerms(
            address=EVM_INITIATOR,
            amount=1000,
            receiving_address_on_other_chain=STELLAR_INITIATOR,
        ),
        counterparty=PartyTerms(
            address=STELLAR_COUNTERPARTY,
            token="native",
            amount=500,
            receiving_address_on_other_chain=EVM_COUNTERPARTY,
        ),
        hashlock=hashlock,
        src_cancellation_deadline=NOW + 3600,
    )
    data.update(overrides)
    return SwapTerms(**data)


def b_to_a_terms(hashlock: str, **overrides) -> SwapTerms:
    data = dict(
        direction=SwapDirection.B_TO_A,
        initiator=PartyTerms(
            address=STELLAR_INITIATOR,
            token="native",
            amount=700,
            receiving_address_on_other_chain=EVM_INITIATOR,
        ),
        counterparty=PartyTerms(
            address=EVM_COUNTERPARTY,
            amount=300,
            receiving_address_on_other_chain=STELLAR_COUNTERPARTY,
        ),
        hashlock=hashlock,
        src_cancellation_deadline=NOW + 3600,
    )
    data.update(overrides)
    return SwapTerms(**data)
