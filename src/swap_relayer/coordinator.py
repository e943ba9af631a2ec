"""
The swap coordinator: sole mutator of swap records.

Every action follows the same shape. Load the record, check the source
state, do the chain work with no lock held, then make one conditional write
guarded on the state and version that were read. Fund-moving actions split
into submit and poll: the broadcast tx hash is written as a pending marker
first, so a retry after a poll timeout picks up the same transaction instead
of sending a new one.
"""
import logging, os, threading, time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional

import attr

from .actions import (
    CompleteCounterpartyTerms,
    ConfirmCounterpartyLock,
    ConfirmInitiatorLock,
    CounterpartyWithdraw,
    CreateDestinationEscrow,
    InitiateWithdrawal,
    MarkFailed,
    PartyTerms,
    Reclaim,
    SwapTerms,
)
from .chains import Chain, ChainActuator, ChainReceipt, ChainVerifier, EscrowKind, EscrowTerms, Submission
from .config import RelayerConfig
from .db import PartyDetails, PendingActuation, SwapRecord
from .errors import (
    ChainSubmissionError,
    ConfigurationError,
    InvalidSecret,
    InvariantViolation,
    StateConflict,
    TimelockNotExpired,
    UnsafeTimelock,
    ValidationError,
)
from .hashlock import HashScheme, HashlockService, normalize_hashlock, normalize_secret
from .state_machine import SwapState, is_terminal, require_state

log = logging.getLogger("Coordinator")


@dataclass(frozen=True)
class ActionResult:
    state: SwapState
    record: SwapRecord
    escrow_ref: Optional[str] = None
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"state": self.state.value, "swap": self.record.to_dict()}
        if self.escrow_ref:
            out["escrow_ref"] = self.escrow_ref
        if self.tx_hash:
            out["tx_hash"] = self.tx_hash
        return out


def _amount(value: Decimal, field: str) -> str:
    try:
        ok = value == value.to_integral_value() and value > 0
    except InvalidOperation:
        ok = False
    if not ok:
        raise ValidationError(f"{field} must be a positive integer amount in base units", field=field)
    return str(int(value))


# hash functions each chain's escrow contract can check a secret against
_ESCROW_SCHEMES = {
    Chain.EVM: frozenset({HashScheme.KECCAK256}),
    Chain.STELLAR: frozenset({HashScheme.SHA256, HashScheme.KECCAK256}),
}


def _escrow_ref_field(chain: Chain) -> str:
    return "escrow_ref_a" if chain == Chain.EVM else "escrow_ref_b"


def _short(secret: str) -> str:
    return f"{secret[:6]}…"


class SwapCoordinator:
    def __init__(self, store, verifiers: Mapping[Chain, ChainVerifier],
                 actuators: Mapping[Chain, ChainActuator], hashlocks: HashlockService,
                 config: RelayerConfig, clock: Callable[[], float] = time.time):
        self.store = store
        self.verifiers = dict(verifiers)
        self.actuators = dict(actuators)
        self.hashlocks = hashlocks
        self.config = config
        self.clock = clock
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()
        self._handlers: Dict[str, Callable[[Any], ActionResult]] = {
            "CONFIRM_INITIATOR_LOCK": self.confirm_initiator_lock,
            "CONFIRM_COUNTERPARTY_LOCK": self.confirm_counterparty_lock,
            "CREATE_DESTINATION_ESCROW": self.create_destination_escrow,
            "INITIATE_WITHDRAWAL": self.initiate_withdrawal,
            "COUNTERPARTY_WITHDRAW": self.counterparty_withdraw,
            "COMPLETE_COUNTERPARTY_TERMS": self.complete_counterparty_terms,
            "RECLAIM": self.reclaim,
            "MARK_FAILED": self.mark_failed,
        }

    # ───────────────────────────────────────────────────────────── plumbing
    def dispatch(self, action) -> ActionResult:
        handler = self._handlers.get(action.action)
        if handler is None:
            raise ValidationError(f"Unknown action {action.action!r}", action=action.action)
        return handler(action)

    @contextmanager
    def _exclusive(self, swap_id: str):
        with self._in_flight_lock:
            if swap_id in self._in_flight:
                raise StateConflict(f"Swap {swap_id} has an action in progress", swap_id=swap_id)
            self._in_flight.add(swap_id)
        try:
            yield
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(swap_id)

    def _verifier(self, chain: Chain) -> ChainVerifier:
        verifier = self.verifiers.get(chain)
        if verifier is None:
            raise ConfigurationError(f"No verifier configured for {chain.value}", chain=chain.value)
        return verifier

    def _actuator(self, chain: Chain) -> ChainActuator:
        actuator = self.actuators.get(chain)
        if actuator is None:
            raise ConfigurationError(f"No actuator configured for {chain.value}", chain=chain.value)
        return actuator

    def _write(self, record: SwapRecord, **changes) -> SwapRecord:
        return self.store.update(attr.evolve(record, **changes), record.state, record.version)

    def _submit_once(self, record: SwapRecord, action: str, chain: Chain,
                     submit: Callable[[], Submission], **extra: Any) -> SwapRecord:
        """Broadcast unless this action already has a transaction in flight."""
        if record.pending is not None:
            if record.pending.action != action:
                raise StateConflict(
                    f"Swap {record.swap_id} is waiting on {record.pending.action} tx {record.pending.tx_hash}",
                    swap_id=record.swap_id,
                    tx_hash=record.pending.tx_hash,
                )
            log.info(f"swap {record.swap_id}: resuming {action}, polling {record.pending.tx_hash}")
            return record
        submission = submit()
        marker = PendingActuation(
            action=action,
            chain=chain,
            tx_hash=submission.tx_hash,
            submitted_at=int(self.clock()),
            escrow_ref=submission.escrow_ref,
            params={**submission.params, **extra},
        )
        log.info(f"swap {record.swap_id}: {action} broadcast on {chain.value} as {submission.tx_hash}")
        return self._write(record, pending=marker)

    def _await(self, record: SwapRecord, actuator: ChainActuator) -> ChainReceipt:
        pending = record.pending
        if pending is None:
            raise InvariantViolation(f"Swap {record.swap_id} has no transaction to wait for", swap_id=record.swap_id)
        try:
            return actuator.wait_for_confirmation(pending.tx_hash)
        except ChainSubmissionError:
            log.error(f"swap {record.swap_id}: {pending.action} tx {pending.tx_hash} failed, clearing marker")
            self._write(record, pending=None)
            raise

    def _counterparty_side_terms(self, record: SwapRecord, cancellation_deadline: Optional[int] = None) -> EscrowTerms:
        chain = record.direction.counterparty_chain
        return EscrowTerms(
            swap_id=record.swap_id,
            hashlock=record.hashlock,
            hash_scheme=record.hash_scheme,
            maker=record.counterparty.identity_on(chain),
            taker=record.initiator.identity_on(chain),
            token=record.counterparty.token,
            amount=int(record.counterparty.amount),
            kind=EscrowKind.DST,
            cancellation_deadline=cancellation_deadline or record.dst_cancellation_deadline,
            src_cancellation_deadline=record.src_cancellation_deadline,
        )

    def _initiator_side_terms(self, record: SwapRecord) -> EscrowTerms:
        chain = record.direction.initiator_chain
        return EscrowTerms(
            swap_id=record.swap_id,
            hashlock=record.hashlock,
            hash_scheme=record.hash_scheme,
            maker=record.initiator.identity_on(chain),
            taker=record.counterparty.identity_on(chain),
            token=record.initiator.token,
            amount=int(record.initiator.amount),
            kind=EscrowKind.SRC,
            cancellation_deadline=record.src_cancellation_deadline,
            src_cancellation_deadline=record.src_cancellation_deadline,
        )

    def _dst_cancellation_offset(self, chain: Chain) -> int:
        if chain == Chain.EVM:
            if self.config.evm is None:
                raise ConfigurationError("EVM chain is not configured", chain=chain.value)
            return self.config.evm.dst_timelocks.cancellation
        if self.config.stellar is None:
            raise ConfigurationError("Stellar chain is not configured", chain=chain.value)
        return self.config.stellar.timelocks.cancellation

    # ───────────────────────────────────────────────────────────── operations
    def initiate(self, terms: SwapTerms) -> str:
        direction = terms.direction
        initiator = self._party(terms.initiator, direction.initiator_chain, "initiator")
        counterparty = self._party(terms.counterparty, direction.counterparty_chain, "counterparty")
        if not initiator.address:
            raise ValidationError("initiator.address is required", field="initiator.address")

        hashlock = normalize_hashlock(terms.hashlock)
        scheme = HashScheme.parse(terms.hash_scheme or self.hashlocks.default_scheme)
        for chain in (direction.initiator_chain, direction.counterparty_chain):
            if scheme not in _ESCROW_SCHEMES[chain]:
                raise ValidationError(
                    f"{chain.value} escrows cannot verify {scheme.value} hashlocks",
                    field="hash_scheme",
                    chain=chain.value,
                )

        deadline = terms.src_cancellation_deadline
        if deadline is not None and deadline <= 0:
            raise ValidationError("src_cancellation_deadline must be a unix timestamp", field="src_cancellation_deadline")

        record = SwapRecord(
            swap_id=os.urandom(16).hex(),
            direction=direction,
            state=SwapState.PENDING_INITIATION,
            initiator=initiator,
            counterparty=counterparty,
            hashlock=hashlock,
            hash_scheme=scheme.value,
            src_cancellation_deadline=deadline,
        )
        stored = self.store.create(record)
        log.info(
            f"swap {stored.swap_id} initiated ({direction.value}, {scheme.value}, "
            f"hashlock {hashlock[:10]}…)"
        )
        return stored.swap_id

    def _party(self, terms: PartyTerms, chain: Chain, role: str) -> PartyDetails:
        if terms.chain is not None and terms.chain != chain:
            raise ValidationError(
                f"{role} must be on {chain.value} for this direction, got {terms.chain.value}",
                field=f"{role}.chain",
            )
        return PartyDetails(
            chain=chain,
            address=terms.address.strip(),
            token=terms.token.strip(),
            amount=_amount(terms.amount, f"{role}.amount"),
            receiving_address_on_other_chain=terms.receiving_address_on_other_chain.strip(),
        )

    def query(self, swap_id: str) -> SwapRecord:
        return self.store.get(swap_id)

    def confirm_initiator_lock(self, action: ConfirmInitiatorLock) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(record.swap_id, record.state, SwapState.PENDING_INITIATION)
            chain = record.direction.initiator_chain
            if action.chain != chain:
                raise ValidationError(
                    f"Initiator locks on {chain.value}, not {action.chain.value}", swap_id=record.swap_id
                )
            receipt = self._verifier(chain).confirm_transaction(action.tx_hash)

            changes: Dict[str, Any] = {
                "state": SwapState.AWAITING_COUNTERPARTY_LOCK,
                "transaction_hashes": record.transaction_hashes + [action.tx_hash],
            }
            if action.escrow_ref:
                changes[_escrow_ref_field(chain)] = action.escrow_ref
            if action.escrow_params:
                changes["initiator_escrow"] = dict(action.escrow_params)
            updated = self._write(record, **changes)
            log.info(f"swap {record.swap_id}: initiator lock {action.tx_hash} confirmed in block {receipt.block}")
            return ActionResult(updated.state, updated, action.escrow_ref, action.tx_hash)

    def confirm_counterparty_lock(self, action: ConfirmCounterpartyLock) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(record.swap_id, record.state, SwapState.AWAITING_COUNTERPARTY_LOCK)
            chain = action.chain
            if chain == record.direction.initiator_chain:
                kind = EscrowKind.SRC
                maker: Optional[str] = record.initiator.identity_on(chain)
                taker = record.counterparty.identity_on(chain)
            else:
                kind = EscrowKind.DST
                maker = None
                taker = record.initiator.identity_on(chain)
            if not taker:
                raise ValidationError(
                    f"No {chain.value} address known for the taker; complete the counterparty terms first",
                    swap_id=record.swap_id,
                )

            receipt = self._verifier(chain).verify_escrow_creation(
                action.tx_hash, action.counterparty_contract_ref, kind, record.hashlock, maker, taker
            )
            escrow_ref = receipt.escrow_ref or record.escrow_ref_on(chain)
            updated = self._write(
                record,
                state=SwapState.AWAITING_INITIATOR_WITHDRAWAL,
                transaction_hashes=record.transaction_hashes + [action.tx_hash],
                **{_escrow_ref_field(chain): escrow_ref},
            )
            log.info(f"swap {record.swap_id}: counterparty {kind.value} lock on {chain.value} at {escrow_ref}")
            return ActionResult(updated.state, updated, escrow_ref, action.tx_hash)

    def create_destination_escrow(self, action: CreateDestinationEscrow) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(record.swap_id, record.state, SwapState.AWAITING_COUNTERPARTY_LOCK)
            if record.direction not in self.config.relayer_escrow_directions:
                raise ValidationError(
                    f"Relayer does not create escrows for {record.direction.value} swaps",
                    swap_id=record.swap_id,
                )
            chain = record.direction.counterparty_chain
            actuator = self._actuator(chain)

            extra: Dict[str, Any] = {}
            terms: Optional[EscrowTerms] = None
            if record.pending is None:
                if record.src_cancellation_deadline is None:
                    raise ValidationError(
                        "src_cancellation_deadline is required before creating the destination escrow",
                        swap_id=record.swap_id,
                    )
                dst_deadline = int(self.clock()) + self._dst_cancellation_offset(chain)
                if dst_deadline >= record.src_cancellation_deadline:
                    raise UnsafeTimelock(
                        f"Destination escrow would expire at {dst_deadline}, "
                        f"not before the source lock at {record.src_cancellation_deadline}",
                        swap_id=record.swap_id,
                    )
                terms = self._counterparty_side_terms(record, dst_deadline)
                extra["dst_cancellation_deadline"] = dst_deadline

            record = self._submit_once(
                record, action.action, chain,
                lambda: actuator.submit_create_escrow(terms),  # type: ignore[arg-type]
                **extra,
            )
            receipt = self._await(record, actuator)
            pending = record.pending
            params = dict(pending.params)
            dst_deadline = params.pop("dst_cancellation_deadline", None)
            offset = params.pop("cancellation_offset", None)
            if offset is not None and receipt.timestamp is not None:
                # timelocks counted from deployment: record the deadline the escrow really has
                dst_deadline = int(receipt.timestamp) + int(offset)
                if record.src_cancellation_deadline is not None and dst_deadline >= record.src_cancellation_deadline:
                    log.warning(
                        f"swap {record.swap_id}: destination escrow expires at {dst_deadline}, "
                        f"not before the source lock at {record.src_cancellation_deadline}"
                    )
            escrow_ref = receipt.escrow_ref or pending.escrow_ref
            updated = self._write(
                record,
                state=SwapState.AWAITING_INITIATOR_WITHDRAWAL,
                transaction_hashes=record.transaction_hashes + [pending.tx_hash],
                dst_cancellation_deadline=dst_deadline,
                relayer_escrow=params,
                pending=None,
                **{_escrow_ref_field(chain): escrow_ref},
            )
            log.info(f"swap {record.swap_id}: ✓ destination escrow {escrow_ref} on {chain.value}")
            return ActionResult(updated.state, updated, escrow_ref, pending.tx_hash)

    def initiate_withdrawal(self, action: InitiateWithdrawal) -> ActionResult:
        secret = normalize_secret(action.secret)
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(record.swap_id, record.state, SwapState.AWAITING_INITIATOR_WITHDRAWAL)
            if not self.hashlocks.verify(secret, record.hashlock, record.hash_scheme):
                log.warning(f"swap {record.swap_id}: secret {_short(secret)} does not open the hashlock")
                raise InvalidSecret("Secret does not match the swap hashlock", swap_id=record.swap_id)

            chain = record.direction.counterparty_chain
            actuator = self._actuator(chain)
            escrow_ref = record.escrow_ref_on(chain)
            if not escrow_ref:
                raise ValidationError(f"No counterparty escrow recorded on {chain.value}", swap_id=record.swap_id)
            terms = self._counterparty_side_terms(record)
            params = record.relayer_escrow
            record = self._submit_once(
                record, action.action, chain,
                lambda: actuator.submit_withdraw(escrow_ref, secret, terms, params),
            )
            receipt = self._await(record, actuator)
            tx_hash = record.pending.tx_hash
            updated = self._write(
                record,
                state=SwapState.INITIATOR_WITHDREW_AND_REVEALED_SECRET,
                secret=secret,
                transaction_hashes=record.transaction_hashes + [tx_hash],
                pending=None,
            )
            log.info(f"swap {record.swap_id}: initiator withdrew in {tx_hash} (block {receipt.block}), secret revealed")
            return ActionResult(updated.state, updated, escrow_ref, tx_hash)

    def counterparty_withdraw(self, action: CounterpartyWithdraw) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(record.swap_id, record.state, SwapState.INITIATOR_WITHDREW_AND_REVEALED_SECRET)
            if not record.secret:
                raise ValidationError("No revealed secret stored for this swap", swap_id=record.swap_id)

            chain = record.direction.initiator_chain
            actuator = self._actuator(chain)
            escrow_ref = record.escrow_ref_on(chain)
            if not escrow_ref:
                raise ValidationError(f"No initiator escrow recorded on {chain.value}", swap_id=record.swap_id)
            terms = self._initiator_side_terms(record)
            secret, params = record.secret, record.initiator_escrow
            record = self._submit_once(
                record, action.action, chain,
                lambda: actuator.submit_withdraw(escrow_ref, secret, terms, params),
            )
            self._await(record, actuator)
            tx_hash = record.pending.tx_hash
            updated = self._write(
                record,
                state=SwapState.COMPLETED,
                transaction_hashes=record.transaction_hashes + [tx_hash],
                pending=None,
            )
            log.info(f"swap {record.swap_id}: ✔ counterparty withdrew in {tx_hash}, swap complete")
            return ActionResult(updated.state, updated, escrow_ref, tx_hash)

    def complete_counterparty_terms(self, action: CompleteCounterpartyTerms) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(
                record.swap_id, record.state,
                SwapState.PENDING_INITIATION, SwapState.AWAITING_COUNTERPARTY_LOCK,
            )
            given = {
                "address": action.address,
                "receiving_address_on_other_chain": action.receiving_address_on_other_chain,
            }
            given = {k: v.strip() for k, v in given.items() if v and v.strip()}
            if not given:
                raise ValidationError("Nothing to complete", swap_id=record.swap_id)

            changes = {}
            for name, value in given.items():
                current = getattr(record.counterparty, name)
                if current and current != value:
                    raise ValidationError(
                        f"counterparty.{name} is already set", swap_id=record.swap_id, field=name
                    )
                if not current:
                    changes[name] = value
            if not changes:
                return ActionResult(record.state, record)
            updated = self._write(record, counterparty=attr.evolve(record.counterparty, **changes))
            log.info(f"swap {record.swap_id}: counterparty terms completed ({', '.join(changes)})")
            return ActionResult(updated.state, updated)

    def reclaim(self, action: Reclaim) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            require_state(
                record.swap_id, record.state,
                SwapState.AWAITING_COUNTERPARTY_LOCK, SwapState.AWAITING_INITIATOR_WITHDRAWAL,
            )
            now = int(self.clock())

            if record.relayer_escrow is not None:
                chain = record.direction.counterparty_chain
                if record.pending is None and (
                    record.dst_cancellation_deadline is None or now < record.dst_cancellation_deadline
                ):
                    raise TimelockNotExpired(
                        f"Relayer escrow cannot be cancelled before {record.dst_cancellation_deadline}",
                        swap_id=record.swap_id,
                    )
                actuator = self._actuator(chain)
                escrow_ref = record.escrow_ref_on(chain)
                terms = self._counterparty_side_terms(record)
                params = record.relayer_escrow
                record = self._submit_once(
                    record, action.action, chain,
                    lambda: actuator.submit_cancel(escrow_ref, terms, params),
                )
                self._await(record, actuator)
                tx_hash = record.pending.tx_hash
                updated = self._write(
                    record,
                    state=SwapState.REFUNDED,
                    transaction_hashes=record.transaction_hashes + [tx_hash],
                    pending=None,
                )
                log.info(f"swap {record.swap_id}: relayer escrow {escrow_ref} cancelled in {tx_hash}")
                return ActionResult(updated.state, updated, escrow_ref, tx_hash)

            if record.pending is not None:
                raise StateConflict(
                    f"Swap {record.swap_id} is waiting on {record.pending.action} tx {record.pending.tx_hash}",
                    swap_id=record.swap_id,
                )
            if record.src_cancellation_deadline is None or now < record.src_cancellation_deadline:
                raise TimelockNotExpired(
                    f"Source lock cannot be cancelled before {record.src_cancellation_deadline}",
                    swap_id=record.swap_id,
                )
            updated = self._write(record, state=SwapState.REFUNDED)
            log.info(f"swap {record.swap_id}: expired, participants reclaim their own locks")
            return ActionResult(updated.state, updated)

    def mark_failed(self, action: MarkFailed) -> ActionResult:
        with self._exclusive(action.swap_id):
            record = self.store.get(action.swap_id)
            if is_terminal(record.state):
                raise StateConflict(
                    f"Swap {record.swap_id} is already {record.state.value}",
                    swap_id=record.swap_id,
                    state=record.state.value,
                )
            updated = self._write(record, state=SwapState.FAILED, failure_reason=action.reason)
            log.warning(f"swap {record.swap_id}: marked FAILED from {record.state.value}: {action.reason}")
            return ActionResult(updated.state, updated)
