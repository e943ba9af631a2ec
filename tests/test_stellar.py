import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from stellar_sdk import Account, Keypair, StrKey, scval
from stellar_sdk.exceptions import ConnectionError as SdkConnectionError
from stellar_sdk.soroban_rpc import GetTransactionStatus, SendTransactionStatus

from swap_relayer.chains import EscrowKind, EscrowTerms
from swap_relayer.config import StellarSettings
from swap_relayer.errors import ChainSubmissionError, ConfigurationError, Pending, ValidationError, VerificationError
from swap_relayer.hashlock import commit, generate_secret
from swap_relayer.stellar_actuator import StellarActuator
from swap_relayer.stellar_verifier import StellarVerifier

CONTRACT_ID = StrKey.encode_contract(b"\x01" * 32)


def tx(status, ledger=None, result_xdr=None):
    return SimpleNamespace(status=status, ledger=ledger, result_xdr=result_xdr)


@pytest.fixture
def server():
    return MagicMock()


@pytest.fixture
def verifier(server):
    return StellarVerifier(server, CONTRACT_ID, timeout=5, poll_interval=0)


class TestFinalityPolling:

    def test_polls_until_success(self, server, verifier):
        server.get_transaction.side_effect = [
            tx(GetTransactionStatus.NOT_FOUND),
            tx(GetTransactionStatus.NOT_FOUND),
            tx(GetTransactionStatus.SUCCESS, ledger=123),
        ]
        receipt = verifier.confirm_transaction("abc")
        assert receipt.block == 123
        assert server.get_transaction.call_count == 3

    def test_failed_is_a_verification_error(self, server, verifier):
        server.get_transaction.return_value = tx(GetTransactionStatus.FAILED, ledger=7, result_xdr="AAAA")
        with pytest.raises(VerificationError) as exc:
            verifier.confirm_transaction("abc")
        assert exc.value.reason == "AAAA"

    def test_transient_errors_are_retried(self, server, verifier):
        server.get_transaction.side_effect = [
            SdkConnectionError("reset"),
            tx(GetTransactionStatus.SUCCESS, ledger=9),
        ]
        assert verifier.confirm_transaction("abc").block == 9

    def test_bounded_timeout_gives_pending(self, server):
        ticks = iter([0.0, 1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
        verifier = StellarVerifier(server, timeout=3, poll_interval=0, clock=lambda: next(ticks))
        server.get_transaction.return_value = tx(GetTransactionStatus.NOT_FOUND)
        with pytest.raises(Pending) as exc:
            verifier.confirm_transaction("abc")
        assert exc.value.retryable
        assert server.get_transaction.call_count == 3

    def test_cancellation(self, server, verifier):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(Pending):
            verifier.confirm_transaction("abc", cancel=cancel)
        server.get_transaction.assert_not_called()

    def test_escrow_ref_defaults_to_configured_contract(self, server, verifier):
        server.get_transaction.return_value = tx(GetTransactionStatus.SUCCESS, ledger=1)
        got = verifier.verify_escrow_creation("abc", None, EscrowKind.DST, "0x" + "00" * 32, None, "G")
        assert got.escrow_ref == CONTRACT_ID
        got = verifier.verify_escrow_creation("abc", "COTHER", EscrowKind.DST, "0x" + "00" * 32, None, "G")
        assert got.escrow_ref == "COTHER"


@pytest.fixture
def relayer():
    return Keypair.random()


@pytest.fixture
def actuator(server, verifier, relayer):
    settings = StellarSettings(
        rpc_url="http://stellar.test",
        escrow_contract_id=CONTRACT_ID,
        relayer_secret=relayer.secret,
        safety_deposit=5,
    )
    server.load_account.return_value = Account(relayer.public_key, 1)
    return StellarActuator(server, settings, verifier, clock=lambda: 1_700_000_000)


def _terms(hashlock, taker, **overrides):
    data = dict(
        swap_id="ab" * 16,
        hashlock=hashlock,
        hash_scheme="sha256",
        maker="",
        taker=taker,
        token="",
        amount=500,
        cancellation_deadline=1_700_000_100,
        src_cancellation_deadline=1_700_003_600,
    )
    data.update(overrides)
    return EscrowTerms(**data)


class TestSorobanActuation:

    def test_create_escrow_flow(self, server, actuator, relayer):
        taker = Keypair.random().public_key
        server.send_transaction.return_value = SimpleNamespace(
            status=SendTransactionStatus.PENDING, hash="deadbeef", error_result_xdr=None
        )
        sub = actuator.submit_create_escrow(_terms(commit(generate_secret(), "sha256"), taker))

        assert sub.tx_hash == "deadbeef"
        assert sub.escrow_ref == CONTRACT_ID
        assert sub.params["maker"] == relayer.public_key
        assert sub.params["timelocks"] == {"withdrawal": 1_700_000_100, "cancellation": 1_700_000_100}
        server.prepare_transaction.assert_called_once()
        server.prepare_transaction.return_value.sign.assert_called_once_with(actuator.keypair)
        server.send_transaction.assert_called_once_with(server.prepare_transaction.return_value)

    def test_rejected_submission(self, server, actuator):
        server.send_transaction.return_value = SimpleNamespace(
            status=SendTransactionStatus.ERROR, hash="h", error_result_xdr="AAAB"
        )
        with pytest.raises(ChainSubmissionError) as exc:
            actuator.submit_cancel(CONTRACT_ID, _terms("0x" + "00" * 32, "G"))
        assert not exc.value.retryable
        assert exc.value.reason == "AAAB"

    def test_try_again_later_is_retryable(self, server, actuator):
        server.send_transaction.return_value = SimpleNamespace(
            status=SendTransactionStatus.TRY_AGAIN_LATER, hash="h", error_result_xdr=None
        )
        secret = generate_secret()
        with pytest.raises(ChainSubmissionError) as exc:
            actuator.submit_withdraw(CONTRACT_ID, secret, _terms(commit(secret, "sha256"), "G"))
        assert exc.value.retryable

    def test_invalid_taker_address(self, actuator):
        with pytest.raises(ValidationError):
            actuator.submit_create_escrow(_terms("0x" + "00" * 32, "0x2222222222222222222222222222222222222222"))

    def test_missing_secret(self, server, verifier):
        actuator = StellarActuator(server, StellarSettings(rpc_url="x", escrow_contract_id=CONTRACT_ID), verifier)
        with pytest.raises(ConfigurationError):
            actuator.submit_cancel(CONTRACT_ID, _terms("0x" + "00" * 32, "G"))

    def test_failed_confirmation_maps_to_submission_error(self, server, actuator):
        server.get_transaction.return_value = tx(GetTransactionStatus.FAILED, ledger=3)
        with pytest.raises(ChainSubmissionError):
            actuator.wait_for_confirmation("abc")

    def test_confirmation_reports_contract(self, server, actuator):
        server.get_transaction.return_value = tx(GetTransactionStatus.SUCCESS, ledger=3)
        receipt = actuator.wait_for_confirmation("abc")
        assert receipt.escrow_ref == CONTRACT_ID
        assert receipt.block == 3


def test_withdraw_arguments(server, actuator):
    server.send_transaction.return_value = SimpleNamespace(
        status=SendTransactionStatus.PENDING, hash="h", error_result_xdr=None
    )
    secret = generate_secret()
    hashlock = commit(secret, "sha256")
    with pytest.MonkeyPatch.context() as mp:
        calls = []
        mp.setattr(actuator, "_invoke", lambda cid, fn, params: calls.append((cid, fn, params)) or "h")
        actuator.submit_withdraw(CONTRACT_ID, secret, _terms(hashlock, "G"))
    cid, fn, params = calls[0]
    assert (cid, fn) == (CONTRACT_ID, "withdraw")
    assert scval.from_bytes(params[0]) == bytes.fromhex(hashlock[2:])
    assert scval.from_bytes(params[1]) == bytes.fromhex(secret[2:])
