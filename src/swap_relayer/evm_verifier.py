import logging
from typing import Optional

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .chains import Chain, ChainReceipt, EscrowKind
from .errors import ConfigurationError, NotConfirmed, ParameterMismatch, VerificationError
from .evm_utils import (
    DST_ESCROW_CREATED_TOPIC,
    SRC_ESCROW_CREATED_TOPIC,
    decode_dst_escrow_created,
    decode_src_escrow_created,
)


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()  # type: ignore


class EvmVerifier:
    """Checks claimed EVM transactions against what a swap expects to see on-chain."""

    chain = Chain.EVM

    def __init__(self, w3: Web3, escrow_factory_address: str = "", min_confirmations: int = 1):
        self.w3 = w3
        self.escrow_factory_address = escrow_factory_address
        self.min_confirmations = max(1, int(min_confirmations))
        self.log = logging.getLogger("EvmVerifier")

    def _receipt(self, tx_hash: str):
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)  # type: ignore
        except TransactionNotFound:
            raise NotConfirmed(f"Transaction {tx_hash} not found", chain=self.chain.value, tx_hash=tx_hash)
        except requests.exceptions.ConnectionError as err:
            self.log.warning(f"RPC unreachable while fetching {tx_hash}: {err}")
            raise NotConfirmed(
                "EVM RPC unreachable", chain=self.chain.value, tx_hash=tx_hash, reason=str(err)
            )
        if receipt is None:
            raise NotConfirmed(f"Transaction {tx_hash} not found", chain=self.chain.value, tx_hash=tx_hash)
        if receipt["status"] != 1:
            self.log.warning(f"✗ {tx_hash} reverted in block {receipt['blockNumber']}")
            raise VerificationError(
                f"Transaction {tx_hash} reverted", chain=self.chain.value, tx_hash=tx_hash, reason="reverted"
            )
        if self.min_confirmations > 1:
            head = self.w3.eth.block_number
            confirmations = head - receipt["blockNumber"] + 1
            if confirmations < self.min_confirmations:
                raise NotConfirmed(
                    f"Transaction {tx_hash} has {confirmations}/{self.min_confirmations} confirmations",
                    chain=self.chain.value,
                    tx_hash=tx_hash,
                )
        return receipt

    def confirm_transaction(self, tx_hash: str) -> ChainReceipt:
        receipt = self._receipt(tx_hash)
        self.log.info(f"✓ {tx_hash} confirmed in block {receipt['blockNumber']}")
        return ChainReceipt(chain=self.chain, tx_hash=tx_hash, block=receipt["blockNumber"])

    def verify_escrow_creation(self, tx_hash: str, contract_ref: Optional[str], kind: EscrowKind,
                               hashlock: str, maker: Optional[str], taker: str) -> ChainReceipt:
        """
        Find the escrow-creation event for this swap in the receipt of `tx_hash`.

        SRC locks must carry maker and taker, DST locks only the taker. Logs from
        any emitter other than `contract_ref` (or the configured factory) are
        ignored. The escrow address of the first matching log is returned.
        """
        emitter = contract_ref or self.escrow_factory_address
        if not emitter:
            raise ConfigurationError(
                "No escrow contract to match logs against; set EVM_ESCROW_FACTORY_ADDRESS",
                chain=self.chain.value,
            )
        receipt = self._receipt(tx_hash)
        topic = SRC_ESCROW_CREATED_TOPIC if kind == EscrowKind.SRC else DST_ESCROW_CREATED_TOPIC

        for entry in receipt["logs"]:
            if not _same_address(entry["address"], emitter):
                continue
            topics = entry["topics"]
            if not topics or HexBytes(topics[0]) != topic:
                continue
            try:
                if kind == EscrowKind.SRC:
                    ev = decode_src_escrow_created(entry["data"])
                else:
                    ev = decode_dst_escrow_created(entry["data"])
            except Exception as err:
                self.log.warning(f"Undecodable escrow log in {tx_hash}: {err}")
                continue
            if ev["hashlock"].lower() != hashlock.lower():
                continue
            if kind == EscrowKind.SRC and not _same_address(ev["maker"], maker):
                continue
            if not _same_address(ev["taker"], taker):
                continue
            escrow = Web3.to_checksum_address(ev["escrow"])
            self.log.info(f"✓ {kind.value} escrow {escrow} matches hashlock {hashlock[:10]}…")
            return ChainReceipt(chain=self.chain, tx_hash=tx_hash, block=receipt["blockNumber"], escrow_ref=escrow)

        raise ParameterMismatch(
            f"No {kind.value} escrow event in {tx_hash} matches the swap",
            chain=self.chain.value,
            tx_hash=tx_hash,
        )
