from unittest.mock import MagicMock

import pytest
import requests
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from swap_relayer.chains import EscrowKind
from swap_relayer.errors import ConfigurationError, NotConfirmed, ParameterMismatch, VerificationError
from swap_relayer.evm_utils import DST_ESCROW_CREATED_TOPIC, SRC_ESCROW_CREATED_TOPIC
from swap_relayer.evm_verifier import EvmVerifier

FACTORY = "0x5555555555555555555555555555555555555555"
OTHER = "0x6666666666666666666666666666666666666666"
ESCROW = "0x7777777777777777777777777777777777777777"
ESCROW_2 = "0x8888888888888888888888888888888888888888"
MAKER = "0x1111111111111111111111111111111111111111"
TAKER = "0x2222222222222222222222222222222222222222"
HASHLOCK = "0x" + "ab" * 32


def src_log(escrow=ESCROW, hashlock=HASHLOCK, maker=MAKER, taker=TAKER, emitter=FACTORY):
    data = encode(["address", "bytes32", "address", "address"], [escrow, bytes.fromhex(hashlock[2:]), maker, taker])
    return {"address": emitter, "topics": [SRC_ESCROW_CREATED_TOPIC], "data": HexBytes(data)}


def dst_log(escrow=ESCROW, hashlock=HASHLOCK, taker=TAKER, emitter=FACTORY):
    data = encode(["address", "bytes32", "address"], [escrow, bytes.fromhex(hashlock[2:]), taker])
    return {"address": emitter, "topics": [DST_ESCROW_CREATED_TOPIC], "data": HexBytes(data)}


def receipt(logs=(), status=1, block=9):
    return {"status": status, "blockNumber": block, "logs": list(logs)}


@pytest.fixture
def w3():
    mock = MagicMock()
    mock.eth.block_number = 10
    return mock


@pytest.fixture
def verifier(w3):
    return EvmVerifier(w3, escrow_factory_address=FACTORY)


class TestConfirmTransaction:

    def test_confirmed(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt()
        result = verifier.confirm_transaction("0xabc")
        assert result.block == 9
        assert result.tx_hash == "0xabc"

    def test_not_found(self, w3, verifier):
        w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("missing")
        with pytest.raises(NotConfirmed):
            verifier.confirm_transaction("0xabc")

    def test_rpc_unreachable(self, w3, verifier):
        w3.eth.get_transaction_receipt.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(NotConfirmed) as exc:
            verifier.confirm_transaction("0xabc")
        assert exc.value.retryable

    def test_reverted(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt(status=0)
        with pytest.raises(VerificationError):
            verifier.confirm_transaction("0xabc")

    def test_waits_for_confirmations(self, w3):
        verifier = EvmVerifier(w3, FACTORY, min_confirmations=3)
        w3.eth.get_transaction_receipt.return_value = receipt(block=9)
        with pytest.raises(NotConfirmed):
            verifier.confirm_transaction("0xabc")
        w3.eth.block_number = 11
        assert verifier.confirm_transaction("0xabc").block == 9


class TestEscrowCreation:

    def test_src_match(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log()])
        result = verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)
        assert result.escrow_ref == Web3.to_checksum_address(ESCROW)

    def test_hashlock_and_addresses_compare_case_insensitively(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log()])
        result = verifier.verify_escrow_creation(
            "0xabc", FACTORY.upper().replace("0X", "0x"), EscrowKind.SRC, HASHLOCK.upper().replace("0X", "0x"),
            Web3.to_checksum_address(MAKER), TAKER.upper().replace("0X", "0x"),
        )
        assert result.escrow_ref == Web3.to_checksum_address(ESCROW)

    def test_first_match_wins(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([
            src_log(escrow=ESCROW_2, hashlock="0x" + "cd" * 32),
            src_log(escrow=ESCROW),
            src_log(escrow=ESCROW_2),
        ])
        result = verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)
        assert result.escrow_ref == Web3.to_checksum_address(ESCROW)

    def test_other_emitters_are_ignored(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log(emitter=OTHER)])
        with pytest.raises(ParameterMismatch):
            verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)

    def test_explicit_contract_ref_overrides_factory(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log(emitter=OTHER)])
        result = verifier.verify_escrow_creation("0xabc", OTHER, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)
        assert result.escrow_ref == Web3.to_checksum_address(ESCROW)

    def test_wrong_taker(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log(taker=OTHER)])
        with pytest.raises(ParameterMismatch):
            verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)

    def test_wrong_maker(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log(maker=OTHER)])
        with pytest.raises(ParameterMismatch):
            verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)

    def test_dst_match_ignores_src_events(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log(escrow=ESCROW_2), dst_log()])
        result = verifier.verify_escrow_creation("0xabc", None, EscrowKind.DST, HASHLOCK, None, TAKER)
        assert result.escrow_ref == Web3.to_checksum_address(ESCROW)

    def test_reverted_creation(self, w3, verifier):
        w3.eth.get_transaction_receipt.return_value = receipt([src_log()], status=0)
        with pytest.raises(VerificationError):
            verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)

    def test_lookalike_logs_need_a_known_emitter(self, w3):
        verifier = EvmVerifier(w3, escrow_factory_address="")
        w3.eth.get_transaction_receipt.return_value = receipt([src_log(emitter="0x" + "de" * 20)])
        with pytest.raises(ConfigurationError):
            verifier.verify_escrow_creation("0xabc", None, EscrowKind.SRC, HASHLOCK, MAKER, TAKER)
        w3.eth.get_transaction_receipt.assert_not_called()
