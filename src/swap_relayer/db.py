import copy, json, logging, sqlite3, threading, time
from typing import Any, Callable, Dict, List, Optional

import attr
from attr import dataclass

from .chains import Chain, SwapDirection
from .errors import InvariantViolation, NotFoundError, StateConflict
from .state_machine import SwapState, can_transition

log = logging.getLogger("SwapStore")


@dataclass
class PartyDetails:
    chain: Chain
    address: str = ""
    token: str = ""
    amount: str = "0"  # integer base units
    receiving_address_on_other_chain: str = ""

    def identity_on(self, chain: Chain) -> str:
        """Address this party is known by on `chain`."""
        if Chain.parse(chain) == self.chain:
            return self.address
        return self.receiving_address_on_other_chain or self.address

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain.value,
            "address": self.address,
            "token": self.token,
            "amount": self.amount,
            "receiving_address_on_other_chain": self.receiving_address_on_other_chain,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartyDetails":
        return cls(
            chain=Chain.parse(data["chain"]),
            address=data.get("address") or "",
            token=data.get("token") or "",
            amount=str(data.get("amount") or "0"),
            receiving_address_on_other_chain=data.get("receiving_address_on_other_chain") or "",
        )


@dataclass
class PendingActuation:
    action: str
    chain: Chain
    tx_hash: str
    submitted_at: int
    escrow_ref: Optional[str] = None
    params: Dict[str, Any] = attr.Factory(dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "chain": self.chain.value,
            "tx_hash": self.tx_hash,
            "submitted_at": self.submitted_at,
            "escrow_ref": self.escrow_ref,
            "params": self.params,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingActuation":
        return cls(
            action=data["action"],
            chain=Chain.parse(data["chain"]),
            tx_hash=data["tx_hash"],
            submitted_at=int(data["submitted_at"]),
            escrow_ref=data.get("escrow_ref"),
            params=data.get("params") or {},
        )


@dataclass
class SwapRecord:
    swap_id: str
    direction: SwapDirection
    state: SwapState
    initiator: PartyDetails
    counterparty: PartyDetails
    hashlock: str
    hash_scheme: str
    secret: Optional[str] = None
    escrow_ref_a: Optional[str] = None  # EVM escrow address
    escrow_ref_b: Optional[str] = None  # Soroban escrow contract id
    transaction_hashes: List[str] = attr.Factory(list)
    src_cancellation_deadline: Optional[int] = None
    dst_cancellation_deadline: Optional[int] = None
    relayer_escrow: Optional[Dict[str, Any]] = None
    initiator_escrow: Optional[Dict[str, Any]] = None  # params the initiator locked with, if given
    pending: Optional[PendingActuation] = None
    failure_reason: Optional[str] = None
    version: int = 0
    created_at: int = 0
    updated_at: int = 0

    def escrow_ref_on(self, chain: Chain) -> Optional[str]:
        return self.escrow_ref_a if Chain.parse(chain) == Chain.EVM else self.escrow_ref_b

    def to_dict(self, include_secret: bool = True) -> Dict[str, Any]:
        return {
            "swap_id": self.swap_id,
            "direction": self.direction.value,
            "state": self.state.value,
            "initiator": self.initiator.to_dict(),
            "counterparty": self.counterparty.to_dict(),
            "hashlock": self.hashlock,
            "hash_scheme": self.hash_scheme,
            "secret": self.secret if include_secret else None,
            "escrow_ref_a": self.escrow_ref_a,
            "escrow_ref_b": self.escrow_ref_b,
            "transaction_hashes": list(self.transaction_hashes),
            "src_cancellation_deadline": self.src_cancellation_deadline,
            "dst_cancellation_deadline": self.dst_cancellation_deadline,
            "relayer_escrow": self.relayer_escrow,
            "initiator_escrow": self.initiator_escrow,
            "pending": self.pending.to_dict() if self.pending else None,
            "failure_reason": self.failure_reason,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRecord":
        return cls(
            swap_id=data["swap_id"],
            direction=SwapDirection(data["direction"]),
            state=SwapState(data["state"]),
            initiator=PartyDetails.from_dict(data["initiator"]),
            counterparty=PartyDetails.from_dict(data["counterparty"]),
            hashlock=data["hashlock"],
            hash_scheme=data["hash_scheme"],
            secret=data.get("secret"),
            escrow_ref_a=data.get("escrow_ref_a"),
            escrow_ref_b=data.get("escrow_ref_b"),
            transaction_hashes=list(data.get("transaction_hashes") or []),
            src_cancellation_deadline=data.get("src_cancellation_deadline"),
            dst_cancellation_deadline=data.get("dst_cancellation_deadline"),
            relayer_escrow=data.get("relayer_escrow"),
            initiator_escrow=data.get("initiator_escrow"),
            pending=PendingActuation.from_dict(data["pending"]) if data.get("pending") else None,
            failure_reason=data.get("failure_reason"),
            version=int(data.get("version") or 0),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


_IMMUTABLE_FIELDS = ("swap_id", "direction", "hashlock", "hash_scheme")
_PARTY_FIELDS = ("chain", "address", "token", "amount", "receiving_address_on_other_chain")


def check_update(old: SwapRecord, new: SwapRecord) -> None:
    """Raise InvariantViolation if `new` is not a legal successor of `old`."""
    for name in _IMMUTABLE_FIELDS:
        if getattr(old, name) != getattr(new, name):
            raise InvariantViolation(f"{name} is immutable", swap_id=old.swap_id, field=name)

    if old.secret is not None and new.secret != old.secret:
        raise InvariantViolation("secret cannot be changed once set", swap_id=old.swap_id)

    if not can_transition(old.state, new.state):
        raise InvariantViolation(
            f"illegal transition {old.state.value} -> {new.state.value}", swap_id=old.swap_id
        )

    n = len(old.transaction_hashes)
    if new.transaction_hashes[:n] != old.transaction_hashes:
        raise InvariantViolation("transaction_hashes is append-only", swap_id=old.swap_id)

    for role in ("initiator", "counterparty"):
        before, after = getattr(old, role), getattr(new, role)
        for name in _PARTY_FIELDS:
            was = getattr(before, name)
            if was and was != "0" and getattr(after, name) != was:
                raise InvariantViolation(
                    f"{role}.{name} cannot change once set", swap_id=old.swap_id, field=name
                )


class InMemorySwapStore:
    """Process-local store. Every read hands out a copy; writes swap in a copy."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._records: Dict[str, SwapRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, record: SwapRecord) -> SwapRecord:
        with self._lock:
            if record.swap_id in self._records:
                raise StateConflict(f"Swap {record.swap_id} already exists", swap_id=record.swap_id)
            now = int(self._clock())
            stored = attr.evolve(copy.deepcopy(record), version=1, created_at=now, updated_at=now)
            self._records[record.swap_id] = stored
            log.info(f"swap {record.swap_id} created in {stored.state.value}")
            return copy.deepcopy(stored)

    def get(self, swap_id: str) -> SwapRecord:
        with self._lock:
            record = self._records.get(swap_id)
            if record is None:
                raise NotFoundError(f"Swap {swap_id} not found", swap_id=swap_id)
            return copy.deepcopy(record)

    def update(self, record: SwapRecord, expected_state: SwapState, expected_version: int) -> SwapRecord:
        """Conditional write: succeeds only if the stored state and version still match."""
        with self._lock:
            current = self._records.get(record.swap_id)
            if current is None:
                raise NotFoundError(f"Swap {record.swap_id} not found", swap_id=record.swap_id)
            if current.state != expected_state or current.version != expected_version:
                log.warning(
                    f"swap {record.swap_id}: lost write race "
                    f"(have {current.state.value}/v{current.version}, "
                    f"expected {SwapState(expected_state).value}/v{expected_version})"
                )
                raise StateConflict(
                    f"Swap {record.swap_id} changed concurrently",
                    swap_id=record.swap_id,
                    state=current.state.value,
                )
            check_update(current, record)
            stored = attr.evolve(
                copy.deepcopy(record),
                version=current.version + 1,
                created_at=current.created_at,
                updated_at=int(self._clock()),
            )
            self._records[record.swap_id] = stored
            return copy.deepcopy(stored)


class SqliteSwapStore:
    """
    SQLite-backed store. Records are kept as JSON next to the state and version
    columns the conditional update guards on.
    """

    def __init__(self, db_path: str = ":memory:", clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        # a single shared connection keeps ":memory:" databases alive between calls
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._lock = threading.Lock()
        self._init_database()

    def _init_database(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS swaps (
                    swap_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_swaps_state ON swaps(state)")

    def close(self) -> None:
        self._conn.close()

    def create(self, record: SwapRecord) -> SwapRecord:
        now = int(self._clock())
        stored = attr.evolve(record, version=1, created_at=now, updated_at=now)
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO swaps (swap_id, state, version, data, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (stored.swap_id, stored.state.value, 1, json.dumps(stored.to_dict()), now, now),
                )
            except sqlite3.IntegrityError:
                raise StateConflict(f"Swap {record.swap_id} already exists", swap_id=record.swap_id)
        log.info(f"swap {record.swap_id} created in {stored.state.value}")
        return stored

    def _load(self, swap_id: str) -> SwapRecord:
        row = self._conn.execute("SELECT data FROM swaps WHERE swap_id = ?", (swap_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Swap {swap_id} not found", swap_id=swap_id)
        return SwapRecord.from_dict(json.loads(row[0]))

    def get(self, swap_id: str) -> SwapRecord:
        with self._lock:
            return self._load(swap_id)

    def update(self, record: SwapRecord, expected_state: SwapState, expected_version: int) -> SwapRecord:
        """Conditional write: succeeds only if the stored state and version still match."""
        expected_state = SwapState(expected_state)
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                current = self._load(record.swap_id)
                if current.state != expected_state or current.version != expected_version:
                    raise StateConflict(
                        f"Swap {record.swap_id} changed concurrently",
                        swap_id=record.swap_id,
                        state=current.state.value,
                    )
                check_update(current, record)
                stored = attr.evolve(
                    record,
                    version=current.version + 1,
                    created_at=current.created_at,
                    updated_at=int(self._clock()),
                )
                cur = self._conn.execute(
                    "UPDATE swaps SET state = ?, version = ?, data = ?, updated_at = ? "
                    "WHERE swap_id = ? AND state = ? AND version = ?",
                    (
                        stored.state.value,
                        stored.version,
                        json.dumps(stored.to_dict()),
                        stored.updated_at,
                        stored.swap_id,
                        expected_state.value,
                        expected_version,
                    ),
                )
                if cur.rowcount != 1:
                    raise StateConflict(
                        f"Swap {record.swap_id} changed concurrently", swap_id=record.swap_id
                    )
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
        return stored


def open_store(db_path: Optional[str] = None, clock: Callable[[], float] = time.time):
    """SQLite when a path is configured, otherwise the in-memory store."""
    if db_path:
        log.info(f"Using SQLite swap store at {db_path}")
        return SqliteSwapStore(db_path, clock=clock)
    log.info("Using in-memory swap store")
    return InMemorySwapStore(clock=clock)
