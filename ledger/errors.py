from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional


class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, requested: Decimal, available: Decimal, message: Optional[str] = None):
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"Requested {requested:.2f} exceeds available balance of {available:.2f}"
        )


def _names(states: Iterable[Enum]) -> list[str]:
    return [s.value for s in states]


class InvalidStateError(LedgerServiceError):
    entity = "earning"

    def __init__(self, current: Enum, attempted: Optional[Enum] = None,
                 allowed: Iterable[Enum] = (), message: Optional[str] = None):
        self.current = current
        self.attempted = attempted
        self.allowed = _names(allowed)
        if message is None:
            target = f" to {attempted.value}" if attempted is not None else ""
            message = (
                f"Invalid {self.entity} status transition from {current.value}{target}. "
                f"Allowed transitions: {', '.join(self.allowed) or 'none (final state)'}"
            )
        super().__init__(message)


class InvalidPayoutTransitionError(InvalidStateError):
    entity = "payout"


class PayoutInFlightError(LedgerServiceError):
    def __init__(self, payout_id, status: Enum):
        self.payout_id = payout_id
        self.status = status
        super().__init__(
            f"Agent already has payout {payout_id} in {status.value} status; "
            "only one payout may be in flight at a time"
        )


class DuplicateReferenceError(LedgerServiceError):
    def __init__(self, reference_id: str):
        self.reference_id = reference_id
        super().__init__(f"Reference ID {reference_id} already exists in the ledger")


class NotFoundError(LedgerServiceError):
    pass


class AgentNotFoundError(NotFoundError):
    pass


class EarningNotFoundError(NotFoundError):
    pass


class PayoutNotFoundError(NotFoundError):
    pass


class BalanceInvariantError(RuntimeError):
    """A balance mutator left the aggregate in an impossible state.

    Raised after pre-conditions passed, so it always points at a bug in the
    mutator itself rather than at bad input. Never caught and corrected.
    """
