import logging, time
from typing import Any, Callable, Dict, List, Optional

from stellar_sdk import Keypair, SorobanServer, TransactionBuilder
from stellar_sdk.exceptions import PrepareTransactionException
from stellar_sdk.soroban_rpc import SendTransactionStatus
from stellar_sdk.xdr import SCVal

from .chains import Chain, ChainReceipt, EscrowTerms, Submission
from .config import StellarSettings
from .errors import ChainSubmissionError, ConfigurationError, ValidationError, VerificationError
from .soroban import address_to_scval, bytes32_to_scval, encode_escrow_immutables
from .stellar_verifier import StellarVerifier


class StellarActuator:
    """Invokes the Soroban escrow contract on behalf of the relayer account."""

    chain = Chain.STELLAR

    def __init__(self, server: SorobanServer, settings: StellarSettings, verifier: StellarVerifier,
                 keypair: Optional[Keypair] = None, clock: Callable[[], float] = time.time):
        self.server = server
        self.settings = settings
        self.verifier = verifier
        self.clock = clock
        if keypair is None and settings.relayer_secret:
            keypair = Keypair.from_secret(settings.relayer_secret)
        self.keypair = keypair
        self.log = logging.getLogger("StellarActuator")

    def _require_keypair(self) -> Keypair:
        if self.keypair is None:
            raise ConfigurationError("STELLAR_RELAYER_SECRET is not configured", chain=self.chain.value)
        return self.keypair

    def _contract_id(self, escrow_ref: Optional[str] = None) -> str:
        contract_id = escrow_ref or self.settings.escrow_contract_id
        if not contract_id:
            raise ConfigurationError("STELLAR_ESCROW_CONTRACT_ID is not configured", chain=self.chain.value)
        return contract_id

    def _invoke(self, contract_id: str, function_name: str, parameters: List[SCVal]) -> str:
        keypair = self._require_keypair()
        source_account = self.server.load_account(keypair.public_key)
        transaction = (
            TransactionBuilder(
                source_account=source_account,
                network_passphrase=self.settings.network_passphrase,
                base_fee=self.settings.base_fee,
            )
            .append_invoke_contract_function_op(
                contract_id=contract_id,
                function_name=function_name,
                parameters=parameters,
            )
            .set_timeout(30)
            .build()
        )

        # Prepare and simulate transaction
        try:
            prepared_transaction = self.server.prepare_transaction(transaction)
        except PrepareTransactionException as pte:
            self.log.error(f"Simulation of {function_name} failed: {pte}")
            raise ChainSubmissionError(
                f"Simulation of {function_name} failed", chain=self.chain.value, reason=str(pte)
            )

        prepared_transaction.sign(keypair)
        response = self.server.send_transaction(prepared_transaction)
        if response.status == SendTransactionStatus.ERROR:
            self.log.error(f"{function_name} rejected: {response.error_result_xdr}")
            raise ChainSubmissionError(
                f"{function_name} rejected by the network",
                chain=self.chain.value,
                tx_hash=response.hash,
                reason=response.error_result_xdr,
            )
        if response.status == SendTransactionStatus.TRY_AGAIN_LATER:
            self.log.warning(f"{function_name} not accepted yet, try again later")
            raise ChainSubmissionError(
                f"{function_name} not accepted, try again later",
                retryable=True,
                chain=self.chain.value,
                tx_hash=response.hash,
            )
        self.log.info(f"→ {function_name} {response.hash} {response.status.value}")
        return response.hash

    def submit_create_escrow(self, terms: EscrowTerms) -> Submission:
        keypair = self._require_keypair()
        contract_id = self._contract_id()
        maker = terms.maker or keypair.public_key
        if maker == terms.taker:
            raise ValidationError("maker and taker must differ", swap_id=terms.swap_id)

        now = int(self.clock())
        timelocks = {
            "withdrawal": now + self.settings.timelocks.withdrawal,
            "cancellation": terms.cancellation_deadline or now + self.settings.timelocks.cancellation,
        }
        params: Dict[str, Any] = {
            "hashlock": terms.hashlock,
            "hash_scheme": terms.hash_scheme,
            "maker": maker,
            "taker": terms.taker,
            "token": terms.token or None,
            "amount": str(terms.amount),
            "safety_deposit": str(self.settings.safety_deposit),
            "timelocks": timelocks,
        }
        try:
            immutables = encode_escrow_immutables(
                terms.hashlock,
                terms.hash_scheme,
                maker,
                terms.taker,
                terms.token or None,
                terms.amount,
                self.settings.safety_deposit,
                timelocks,
            )
        except ValueError as err:
            raise ValidationError(f"Invalid Soroban escrow arguments: {err}", swap_id=terms.swap_id)
        self.log.info(f"🛠  create_escrow for swap {terms.swap_id} on {contract_id}")
        tx_hash = self._invoke(contract_id, "create_escrow", [immutables, address_to_scval(keypair.public_key)])
        return Submission(chain=self.chain, tx_hash=tx_hash, escrow_ref=contract_id, params=params)

    def submit_withdraw(self, escrow_ref: str, secret: str, terms: EscrowTerms,
                        params: Optional[Dict[str, Any]] = None) -> Submission:
        contract_id = self._contract_id(escrow_ref)
        self.log.info(f"🛠  withdraw for swap {terms.swap_id} on {contract_id}")
        tx_hash = self._invoke(
            contract_id, "withdraw", [bytes32_to_scval(terms.hashlock), bytes32_to_scval(secret)]
        )
        return Submission(chain=self.chain, tx_hash=tx_hash, escrow_ref=contract_id)

    def submit_cancel(self, escrow_ref: str, terms: EscrowTerms,
                      params: Optional[Dict[str, Any]] = None) -> Submission:
        contract_id = self._contract_id(escrow_ref)
        self.log.info(f"🛠  cancel for swap {terms.swap_id} on {contract_id}")
        tx_hash = self._invoke(contract_id, "cancel", [bytes32_to_scval(terms.hashlock)])
        return Submission(chain=self.chain, tx_hash=tx_hash, escrow_ref=contract_id)

    def wait_for_confirmation(self, tx_hash: str, timeout: Optional[float] = None) -> ChainReceipt:
        try:
            receipt = self.verifier.confirm_transaction(tx_hash, timeout=timeout)
        except VerificationError as err:
            raise ChainSubmissionError(
                f"Transaction {tx_hash} failed on-chain", chain=self.chain.value, tx_hash=tx_hash, reason=err.reason
            )
        return ChainReceipt(
            chain=self.chain,
            tx_hash=tx_hash,
            block=receipt.block,
            escrow_ref=self.settings.escrow_contract_id or None,
        )
