import enum
import logging
from typing import Dict, FrozenSet

from .errors import StateConflict

log = logging.getLogger("FSM")


class SwapState(str, enum.Enum):
    PENDING_INITIATION = "PENDING_INITIATION"
    AWAITING_COUNTERPARTY_LOCK = "AWAITING_COUNTERPARTY_LOCK"
    AWAITING_INITIATOR_WITHDRAWAL = "AWAITING_INITIATOR_WITHDRAWAL"
    INITIATOR_WITHDREW_AND_REVEALED_SECRET = "INITIATOR_WITHDREW_AND_REVEALED_SECRET"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


TERMINAL_STATES: FrozenSet[SwapState] = frozenset(
    {SwapState.COMPLETED, SwapState.FAILED, SwapState.REFUNDED}
)

TRANSITIONS: Dict[SwapState, FrozenSet[SwapState]] = {
    SwapState.PENDING_INITIATION: frozenset(
        {SwapState.AWAITING_COUNTERPARTY_LOCK, SwapState.FAILED}
    ),
    SwapState.AWAITING_COUNTERPARTY_LOCK: frozenset(
        {SwapState.AWAITING_INITIATOR_WITHDRAWAL, SwapState.FAILED, SwapState.REFUNDED}
    ),
    SwapState.AWAITING_INITIATOR_WITHDRAWAL: frozenset(
        {SwapState.INITIATOR_WITHDREW_AND_REVEALED_SECRET, SwapState.FAILED, SwapState.REFUNDED}
    ),
    SwapState.INITIATOR_WITHDREW_AND_REVEALED_SECRET: frozenset(
        {SwapState.COMPLETED, SwapState.FAILED}
    ),
    SwapState.COMPLETED: frozenset(),
    SwapState.FAILED: frozenset(),
    SwapState.REFUNDED: frozenset(),
}


def is_terminal(state: SwapState) -> bool:
    return SwapState(state) in TERMINAL_STATES


def can_transition(current: SwapState, target: SwapState) -> bool:
    """Staying put is always allowed; otherwise the edge must exist."""
    current, target = SwapState(current), SwapState(target)
    return current == target or target in TRANSITIONS[current]


def require_state(swap_id: str, current: SwapState, *expected: SwapState) -> None:
    if SwapState(current) not in expected:
        allowed = ", ".join(s.value for s in expected)
        log.info(f"swap {swap_id}: rejected, state {SwapState(current).value} not in [{allowed}]")
        raise StateConflict(
            f"Swap {swap_id} is in state {SwapState(current).value}, expected one of [{allowed}]",
            swap_id=swap_id,
            state=SwapState(current).value,
        )
