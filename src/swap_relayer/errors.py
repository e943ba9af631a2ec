from typing import Any, Dict, Optional


class RelayerError(Exception):
    """Base class for every error the coordinator surfaces to its callers."""

    code = "relayer_error"
    retryable = False

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = {k: v for k, v in detail.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
            **self.detail,
        }


class ValidationError(RelayerError):
    code = "validation_error"


class UnsafeTimelock(ValidationError):
    code = "unsafe_timelock"


class TimelockNotExpired(ValidationError):
    code = "timelock_not_expired"


class StateConflict(RelayerError):
    code = "state_conflict"


class NotFoundError(RelayerError):
    code = "not_found"


class ConfigurationError(RelayerError):
    code = "configuration_error"


class InvalidSecret(RelayerError):
    code = "invalid_secret"


class InvariantViolation(RelayerError):
    """A write that would break a record invariant; always a coordinator bug."""

    code = "invariant_violation"


class ChainError(RelayerError):
    """Evidence or actuation failure on one chain."""

    code = "chain_error"

    def __init__(self, message: str, chain: Optional[str] = None,
                 tx_hash: Optional[str] = None, reason: Optional[str] = None, **detail: Any):
        super().__init__(message, chain=chain, tx_hash=tx_hash, reason=reason, **detail)
        self.chain = chain
        self.tx_hash = tx_hash
        self.reason = reason


class NotConfirmed(ChainError):
    code = "not_confirmed"
    retryable = True


class Pending(NotConfirmed):
    code = "pending"


class VerificationError(ChainError):
    code = "verification_error"


class ParameterMismatch(ChainError):
    code = "parameter_mismatch"


class ChainSubmissionError(ChainError):
    code = "chain_submission_error"

    def __init__(self, message: str, retryable: bool = False, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retryable = retryable
