import logging, threading, time
from typing import Callable, Optional

from stellar_sdk import SorobanServer
from stellar_sdk.exceptions import BaseRequestError, SorobanRpcErrorResponse
from stellar_sdk.soroban_rpc import GetTransactionStatus

from .chains import Chain, ChainReceipt, EscrowKind
from .errors import Pending, VerificationError


class StellarVerifier:
    """
    Finality polling against Soroban RPC.

    A transaction is final once getTransaction reports SUCCESS or FAILED.
    NOT_FOUND and transport errors are retried every `poll_interval` seconds
    until `timeout` expires, at which point the caller gets Pending and may
    simply ask again later.
    """

    chain = Chain.STELLAR

    def __init__(self, server: SorobanServer, escrow_contract_id: str = "",
                 timeout: float = 60.0, poll_interval: float = 2.0,
                 clock: Callable[[], float] = time.monotonic):
        self.server = server
        self.escrow_contract_id = escrow_contract_id
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.log = logging.getLogger("StellarVerifier")

    def confirm_transaction(self, tx_hash: str, timeout: Optional[float] = None,
                            cancel: Optional[threading.Event] = None) -> ChainReceipt:
        timeout = self.timeout if timeout is None else timeout
        cancel = cancel or threading.Event()
        deadline = self.clock() + timeout
        attempts = 0

        while True:
            if cancel.is_set():
                raise Pending(f"Polling for {tx_hash} cancelled", chain=self.chain.value, tx_hash=tx_hash)
            attempts += 1
            resp = None
            try:
                resp = self.server.get_transaction(tx_hash)
            except (BaseRequestError, SorobanRpcErrorResponse) as err:
                self.log.warning(f"getTransaction({tx_hash}) failed, will retry: {err}")

            if resp is not None:
                if resp.status == GetTransactionStatus.SUCCESS:
                    self.log.info(f"✓ {tx_hash} final in ledger {resp.ledger} after {attempts} poll(s)")
                    return ChainReceipt(chain=self.chain, tx_hash=tx_hash, block=resp.ledger)
                if resp.status == GetTransactionStatus.FAILED:
                    self.log.warning(f"✗ {tx_hash} failed in ledger {resp.ledger}")
                    raise VerificationError(
                        f"Transaction {tx_hash} failed",
                        chain=self.chain.value,
                        tx_hash=tx_hash,
                        reason=resp.result_xdr,
                    )

            if self.clock() >= deadline:
                self.log.info(f"⏳ {tx_hash} not final after {timeout}s ({attempts} poll(s))")
                raise Pending(
                    f"Transaction {tx_hash} not final within {timeout}s",
                    chain=self.chain.value,
                    tx_hash=tx_hash,
                )
            if cancel.wait(self.poll_interval):
                raise Pending(f"Polling for {tx_hash} cancelled", chain=self.chain.value, tx_hash=tx_hash)

    def verify_escrow_creation(self, tx_hash: str, contract_ref: Optional[str], kind: EscrowKind,
                               hashlock: str, maker: Optional[str], taker: str) -> ChainReceipt:
        receipt = self.confirm_transaction(tx_hash)
        escrow_ref = contract_ref or self.escrow_contract_id or None
        self.log.info(f"{kind.value} lock {tx_hash} final, escrow {escrow_ref}")
        return ChainReceipt(chain=self.chain, tx_hash=tx_hash, block=receipt.block, escrow_ref=escrow_ref)
