import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, PrivateAttr, computed_field

from .errors import BalanceInvariantError, InsufficientBalanceError, ValidationError
from .money import ZERO, to_money

logger = logging.getLogger(__name__)


class BalanceSnapshot(BaseModel):
    total_earnings: Decimal = ZERO
    available_balance: Decimal = ZERO
    pending_balance: Decimal = ZERO

    model_config = ConfigDict(frozen=True)


class AgentBalance(BaseModel):
    """The three balance fields of an agent and the only code allowed to move them.

    Values are private and surfaced read-only; every change goes through one
    of the named mutators below, which validate their pre-conditions and then
    refuse to commit any state with a negative available or pending balance.
    """

    _total_earnings: Decimal = PrivateAttr(default=ZERO)
    _available_balance: Decimal = PrivateAttr(default=ZERO)
    _pending_balance: Decimal = PrivateAttr(default=ZERO)

    @classmethod
    def opening(cls, total_earnings: Any = ZERO, available_balance: Any = ZERO,
                pending_balance: Any = ZERO) -> "AgentBalance":
        balance = cls()
        balance.restate(total_earnings, available_balance, pending_balance)
        return balance

    @computed_field
    @property
    def total_earnings(self) -> Decimal:
        return self._total_earnings

    @computed_field
    @property
    def available_balance(self) -> Decimal:
        return self._available_balance

    @computed_field
    @property
    def pending_balance(self) -> Decimal:
        return self._pending_balance

    def snapshot(self) -> BalanceSnapshot:
        return BalanceSnapshot(
            total_earnings=self._total_earnings,
            available_balance=self._available_balance,
            pending_balance=self._pending_balance,
        )

    # -- earnings -----------------------------------------------------------

    def reserve_for_pending_earning(self, amount: Any) -> None:
        amount = self._positive(amount)
        self._commit(
            "reserve_for_pending_earning",
            pending=self._pending_balance + amount,
        )

    def confirm_earning(self, amount: Any) -> None:
        amount = to_money(amount, allow_negative=False)
        self._commit(
            "confirm_earning",
            total=self._total_earnings + amount,
            available=self._available_balance + amount,
            pending=self._pending_balance - amount,
        )

    def cancel_pending_earning(self, amount: Any) -> None:
        amount = to_money(amount, allow_negative=False)
        self._commit(
            "cancel_pending_earning",
            pending=self._pending_balance - amount,
        )

    def apply_adjustment(self, amount: Any) -> None:
        amount = to_money(amount)
        if amount >= 0:
            self._commit(
                "apply_adjustment",
                total=self._total_earnings + amount,
                available=self._available_balance + amount,
            )
            return

        deduction = abs(amount)
        if self._available_balance < deduction:
            raise InsufficientBalanceError(
                deduction,
                self._available_balance,
                f"Cannot deduct {deduction:.2f} - exceeds available balance of {self._available_balance:.2f}",
            )
        self._commit(
            "apply_adjustment",
            total=max(ZERO, self._total_earnings - deduction),
            available=self._available_balance - deduction,
        )

    # -- payouts ------------------------------------------------------------

    def reserve_for_payout(self, amount: Any) -> None:
        amount = self._positive(amount)
        if self._available_balance < amount:
            raise InsufficientBalanceError(
                amount,
                self._available_balance,
                "Insufficient available balance for payout request: "
                f"requested {amount:.2f}, available {self._available_balance:.2f}",
            )
        self._commit(
            "reserve_for_payout",
            available=self._available_balance - amount,
            pending=self._pending_balance + amount,
        )

    def settle_payout_completed(self, amount: Any) -> None:
        amount = self._positive(amount)
        self._commit(
            "settle_payout_completed",
            pending=self._pending_balance - amount,
        )

    def return_payout_funds(self, amount: Any) -> None:
        amount = self._positive(amount)
        self._commit(
            "return_payout_funds",
            available=self._available_balance + amount,
            pending=self._pending_balance - amount,
        )

    # -- reconciliation -----------------------------------------------------

    def restate(self, total_earnings: Any, available_balance: Any, pending_balance: Any) -> None:
        self._commit(
            "restate",
            total=to_money(total_earnings, field="total_earnings"),
            available=to_money(available_balance, field="available_balance"),
            pending=to_money(pending_balance, field="pending_balance"),
        )

    # -- internals ----------------------------------------------------------

    @staticmethod
    def _positive(amount: Any) -> Decimal:
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("amount must be greater than zero", field="amount")
        return amount

    def _commit(self, operation: str, *, total: Decimal = None, available: Decimal = None,
                pending: Decimal = None) -> None:
        total = self._total_earnings if total is None else total
        available = self._available_balance if available is None else available
        pending = self._pending_balance if pending is None else pending

        if available < 0 or pending < 0:
            logger.error(
                "Balance invariant violated by %s: total=%s available=%s pending=%s",
                operation, total, available, pending,
            )
            raise BalanceInvariantError(
                f"{operation} would leave available={available} pending={pending}"
            )

        self._total_earnings = total
        self._available_balance = available
        self._pending_balance = pending
