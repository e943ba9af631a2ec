import logging
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import TimeExhausted

from .chains import Chain, ChainReceipt, EscrowTerms, Submission
from .config import EvmSettings
from .errors import ChainSubmissionError, ConfigurationError, Pending, UnsafeTimelock, ValidationError
from .evm_utils import (
    ERC20_ABI,
    ESCROW_ABI,
    ESCROW_FACTORY_ABI,
    NATIVE_TOKEN,
    _send_tx,
    build_immutables,
    find_dst_escrow_address,
    immutables_from_params,
    immutables_to_params,
    order_hash_for,
    pack_timelocks,
    revert_reason,
)


def _is_native(token: str) -> bool:
    return not token or int(token, 16) == 0


class EvmActuator:
    """Signs and broadcasts escrow transactions with the relayer's EVM key."""

    chain = Chain.EVM

    def __init__(self, w3: Web3, settings: EvmSettings, account: Optional[LocalAccount] = None):
        self.w3 = w3
        self.settings = settings
        if account is None and settings.relayer_private_key:
            account = Account.from_key(settings.relayer_private_key)
        self.account: Optional[LocalAccount] = account
        self.log = logging.getLogger("EvmActuator")

    # ───────────────────────────────────────────────────────────── helpers
    def _require_account(self) -> LocalAccount:
        if self.account is None:
            raise ConfigurationError("EVM_RELAYER_PRIVATE_KEY is not configured", chain=self.chain.value)
        return self.account

    def _factory(self):
        if not self.settings.escrow_factory_address:
            raise ConfigurationError("EVM_ESCROW_FACTORY_ADDRESS is not configured", chain=self.chain.value)
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(self.settings.escrow_factory_address), abi=ESCROW_FACTORY_ABI
        )

    def _escrow(self, escrow_ref: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(escrow_ref), abi=ESCROW_ABI)

    def _send(self, fn, value: int = 0) -> str:
        return _send_tx(
            self.w3,
            self._require_account(),
            fn,
            value=value,
            chain_id=self.settings.chain_id,
            gas_limit=self.settings.gas_limit,
        )

    def _immutables(self, terms: EscrowTerms, params: Optional[Dict[str, Any]],
                    dst_cancellation: Optional[int] = None):
        if params:
            try:
                return immutables_from_params(params)
            except (KeyError, TypeError, ValueError) as err:
                raise ValidationError(f"Malformed escrow immutables: {err}", swap_id=terms.swap_id)
        maker = terms.maker or self._require_account().address
        offsets = self.settings
        timelocks = pack_timelocks(
            offsets.src_timelocks.withdrawal,
            offsets.src_timelocks.cancellation,
            offsets.dst_timelocks.withdrawal,
            offsets.dst_timelocks.cancellation if dst_cancellation is None else dst_cancellation,
        )
        return build_immutables(
            order_hash_for(terms.swap_id),
            terms.hashlock,
            maker,
            terms.taker,
            terms.token or NATIVE_TOKEN,
            terms.amount,
            self.settings.safety_deposit,
            timelocks,
        )

    def _check_distinct_parties(self, immutables, swap_id: str) -> None:
        if immutables[2] == immutables[3]:
            raise ValidationError("maker and taker must differ", swap_id=swap_id)

    def _dst_cancellation_offset(self, terms: EscrowTerms) -> Optional[int]:
        """Offset from deployment that lands the dst cancellation on `terms.cancellation_deadline`."""
        if terms.cancellation_deadline is None:
            return None
        latest = self.w3.eth.get_block("latest")["timestamp"]
        offset = int(terms.cancellation_deadline) - int(latest)
        if offset <= self.settings.dst_timelocks.withdrawal:
            raise UnsafeTimelock(
                f"Cancellation deadline {terms.cancellation_deadline} leaves no withdrawal window "
                f"after block time {latest}",
                swap_id=terms.swap_id,
            )
        return offset

    def _ensure_allowance(self, token: str, amount: int) -> None:
        acc = self._require_account()
        erc20 = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        spender = Web3.to_checksum_address(self.settings.escrow_factory_address)
        allowance = erc20.functions.allowance(acc.address, spender).call()
        if allowance >= amount:
            return
        self.log.info(f"Allowance {allowance} < {amount} for {token}, approving factory")
        tx_hash = self._send(erc20.functions.approve(spender, amount))
        self.wait_for_confirmation(tx_hash)

    # ───────────────────────────────────────────────────────────── actuation
    def submit_create_escrow(self, terms: EscrowTerms) -> Submission:
        if terms.src_cancellation_deadline is None:
            raise ValidationError("src_cancellation_deadline is required", swap_id=terms.swap_id)
        factory = self._factory()
        dst_cancellation = self._dst_cancellation_offset(terms)
        immutables = self._immutables(terms, None, dst_cancellation)
        self._check_distinct_parties(immutables, terms.swap_id)

        deposit = immutables[6]
        if _is_native(terms.token):
            value = terms.amount + deposit
        else:
            self._ensure_allowance(terms.token, terms.amount)
            value = deposit

        fn = factory.functions.createDstEscrow(immutables, int(terms.src_cancellation_deadline))
        self.log.info(f"🛠  createDstEscrow for swap {terms.swap_id} with value {value}")
        tx_hash = self._send(fn, value=value)
        params = immutables_to_params(immutables)
        params["src_cancellation_timestamp"] = int(terms.src_cancellation_deadline)
        if dst_cancellation is not None:
            # the escrow's real deadline is its deployment time plus this offset
            params["cancellation_offset"] = dst_cancellation
        return Submission(chain=self.chain, tx_hash=tx_hash, params=params)

    def submit_withdraw(self, escrow_ref: str, secret: str, terms: EscrowTerms,
                        params: Optional[Dict[str, Any]] = None) -> Submission:
        if not escrow_ref:
            raise ValidationError("escrow address is required for withdraw", swap_id=terms.swap_id)
        immutables = self._immutables(terms, params)
        # the escrow contract checks keccak256(secret) against the immutables' hashlock
        if Web3.keccak(hexstr=secret) != bytes(immutables[1]):
            raise ValidationError(
                "secret does not open the escrow hashlock under keccak256", swap_id=terms.swap_id
            )
        self._check_distinct_parties(immutables, terms.swap_id)
        fn = self._escrow(escrow_ref).functions.withdraw(bytes.fromhex(secret[2:]), immutables)
        self.log.info(f"🛠  withdraw from escrow {escrow_ref} for swap {terms.swap_id}")
        tx_hash = self._send(fn)
        return Submission(chain=self.chain, tx_hash=tx_hash, escrow_ref=escrow_ref)

    def submit_cancel(self, escrow_ref: str, terms: EscrowTerms,
                      params: Optional[Dict[str, Any]] = None) -> Submission:
        if not escrow_ref:
            raise ValidationError("escrow address is required for cancel", swap_id=terms.swap_id)
        immutables = self._immutables(terms, params)
        fn = self._escrow(escrow_ref).functions.cancel(immutables)
        self.log.info(f"🛠  cancel escrow {escrow_ref} for swap {terms.swap_id}")
        tx_hash = self._send(fn)
        return Submission(chain=self.chain, tx_hash=tx_hash, escrow_ref=escrow_ref)

    def wait_for_confirmation(self, tx_hash: str, timeout: Optional[float] = None) -> ChainReceipt:
        timeout = self.settings.receipt_timeout if timeout is None else timeout
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)  # type: ignore
        except TimeExhausted:
            self.log.warning(f"⏳ {tx_hash} not mined after {timeout}s")
            raise Pending(
                f"Transaction {tx_hash} not confirmed within {timeout}s",
                chain=self.chain.value,
                tx_hash=tx_hash,
            )
        if receipt["status"] != 1:
            reason = revert_reason(self.w3, tx_hash, receipt)
            self.log.error(f"✗ {tx_hash} reverted: {reason or 'no reason'}")
            raise ChainSubmissionError(
                f"Transaction {tx_hash} reverted", chain=self.chain.value, tx_hash=tx_hash, reason=reason
            )
        block = self.w3.eth.get_block(receipt["blockNumber"])
        self.log.info(f"✓ {tx_hash} confirmed in block {receipt['blockNumber']}")
        return ChainReceipt(
            chain=self.chain,
            tx_hash=tx_hash,
            block=receipt["blockNumber"],
            escrow_ref=find_dst_escrow_address(receipt),
            timestamp=block["timestamp"],
        )
