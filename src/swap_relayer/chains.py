"""
Chain identifiers and the contracts every verifier/actuator pair implements.

Ledger A is the EVM chain, ledger B is Stellar (Soroban). A swap's direction
says which of the two the initiator locks on first.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


class Chain(str, enum.Enum):
    EVM = "EVM"
    STELLAR = "STELLAR"

    @classmethod
    def parse(cls, value: Any) -> "Chain":
        if isinstance(value, Chain):
            return value
        return cls(str(value).strip().upper())


class SwapDirection(str, enum.Enum):
    A_TO_B = "A_TO_B"  # initiator locks on EVM, counterparty on Stellar
    B_TO_A = "B_TO_A"  # initiator locks on Stellar, counterparty on EVM

    @property
    def initiator_chain(self) -> Chain:
        return Chain.EVM if self is SwapDirection.A_TO_B else Chain.STELLAR

    @property
    def counterparty_chain(self) -> Chain:
        return Chain.STELLAR if self is SwapDirection.A_TO_B else Chain.EVM


class EscrowKind(str, enum.Enum):
    SRC = "SRC"  # lock created by the maker on the source chain
    DST = "DST"  # lock created for the taker on the destination chain


@dataclass(frozen=True)
class EscrowTerms:
    """Economic terms of one escrow, as the relayer knows them from the swap record."""
    swap_id: str
    hashlock: str
    hash_scheme: str
    maker: str
    taker: str
    token: str
    amount: int
    kind: EscrowKind = EscrowKind.DST
    cancellation_deadline: Optional[int] = None
    src_cancellation_deadline: Optional[int] = None


@dataclass(frozen=True)
class Submission:
    chain: Chain
    tx_hash: str
    escrow_ref: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChainReceipt:
    chain: Chain
    tx_hash: str
    block: Optional[int] = None
    escrow_ref: Optional[str] = None
    timestamp: Optional[int] = None  # inclusion time, for escrows whose timelocks count from deployment


class ChainVerifier(Protocol):
    chain: Chain

    def confirm_transaction(self, tx_hash: str) -> ChainReceipt:
        ...

    def verify_escrow_creation(self, tx_hash: str, contract_ref: Optional[str],
                               kind: EscrowKind, hashlock: str,
                               maker: Optional[str], taker: str) -> ChainReceipt:
        ...


class ChainActuator(Protocol):
    chain: Chain

    def submit_create_escrow(self, terms: EscrowTerms) -> Submission:
        ...

    def submit_withdraw(self, escrow_ref: str, secret: str, terms: EscrowTerms,
                        params: Optional[Dict[str, Any]] = None) -> Submission:
        ...

    def submit_cancel(self, escrow_ref: str, terms: EscrowTerms,
                      params: Optional[Dict[str, Any]] = None) -> Submission:
        ...

    def wait_for_confirmation(self, tx_hash: str, timeout: Optional[float] = None) -> ChainReceipt:
        ...
