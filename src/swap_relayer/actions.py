from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .chains import Chain, SwapDirection


class PartyTerms(BaseModel):
    chain: Optional[Chain] = None
    address: str = ""
    token: str = ""
    amount: Decimal
    receiving_address_on_other_chain: str = ""

    @field_validator("chain", mode="before")
    @classmethod
    def _upper_chain(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class SwapTerms(BaseModel):
    direction: SwapDirection
    initiator: PartyTerms
    counterparty: PartyTerms
    hashlock: str
    hash_scheme: Optional[str] = None
    src_cancellation_deadline: Optional[int] = None

    @field_validator("direction", mode="before")
    @classmethod
    def _upper_direction(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class _SwapAction(BaseModel):
    swap_id: str = Field(min_length=1)


class _ChainAction(_SwapAction):
    chain: Chain
    tx_hash: str = Field(min_length=1)

    @field_validator("chain", mode="before")
    @classmethod
    def _upper_chain(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class ConfirmInitiatorLock(_ChainAction):
    action: Literal["CONFIRM_INITIATOR_LOCK"] = "CONFIRM_INITIATOR_LOCK"
    escrow_ref: Optional[str] = None
    # immutables the initiator's escrow was created with; needed to withdraw from it later
    escrow_params: Optional[Dict[str, Any]] = None


class ConfirmCounterpartyLock(_ChainAction):
    action: Literal["CONFIRM_COUNTERPARTY_LOCK"] = "CONFIRM_COUNTERPARTY_LOCK"
    counterparty_contract_ref: Optional[str] = None


class CreateDestinationEscrow(_SwapAction):
    action: Literal["CREATE_DESTINATION_ESCROW"] = "CREATE_DESTINATION_ESCROW"


class InitiateWithdrawal(_SwapAction):
    action: Literal["INITIATE_WITHDRAWAL"] = "INITIATE_WITHDRAWAL"
    secret: str


class CounterpartyWithdraw(_SwapAction):
    action: Literal["COUNTERPARTY_WITHDRAW"] = "COUNTERPARTY_WITHDRAW"


class CompleteCounterpartyTerms(_SwapAction):
    action: Literal["COMPLETE_COUNTERPARTY_TERMS"] = "COMPLETE_COUNTERPARTY_TERMS"
    address: Optional[str] = None
    receiving_address_on_other_chain: Optional[str] = None


class Reclaim(_SwapAction):
    action: Literal["RECLAIM"] = "RECLAIM"


class MarkFailed(_SwapAction):
    action: Literal["MARK_FAILED"] = "MARK_FAILED"
    reason: str = Field(min_length=1)


SwapAction = Annotated[
    Union[
        ConfirmInitiatorLock,
        ConfirmCounterpartyLock,
        CreateDestinationEscrow,
        InitiateWithdrawal,
        CounterpartyWithdraw,
        CompleteCounterpartyTerms,
        Reclaim,
        MarkFailed,
    ],
    Field(discriminator="action"),
]

_action_adapter = TypeAdapter(SwapAction)


def parse_action(data: Dict[str, Any]):
    """Build the typed action for a raw body; raises pydantic.ValidationError."""
    return _action_adapter.validate_python(data)
