import logging
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

from .balance import BalanceSnapshot
from .errors import BalanceInvariantError
from .models import (
    Earning,
    EarningStatus,
    EarningType,
    Payout,
    PayoutStatus,
    ReconciliationResult,
)
from .money import ZERO
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

_EARNED_STATUSES = (EarningStatus.CONFIRMED, EarningStatus.PAID)


def compute_balances(earnings: Iterable[Earning], payouts: Iterable[Payout]) -> BalanceSnapshot:
    """Derive the three balance fields from an agent's full history."""
    earnings = list(earnings)
    payouts = list(payouts)

    total = sum((e.amount for e in earnings if e.status in _EARNED_STATUSES), ZERO)
    pending_earnings = sum(
        (e.amount for e in earnings if e.status == EarningStatus.PENDING and e.amount > 0), ZERO,
    )
    paid_out = sum((p.amount for p in payouts if p.status == PayoutStatus.COMPLETED), ZERO)
    in_flight = sum((p.amount for p in payouts if not p.is_terminal), ZERO)

    return BalanceSnapshot(
        total_earnings=total,
        available_balance=total - paid_out - in_flight,
        pending_balance=pending_earnings + in_flight,
    )


def count_referrals(earnings: Iterable[Earning]) -> int:
    return sum(
        1 for e in earnings
        if e.type == EarningType.REFERRAL_COMMISSION and e.referral_usage_id is not None
    )


class ReconciliationService:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def recalculate_balances(self, agent_id: UUID) -> ReconciliationResult:
        with self.storage.agent_transaction(agent_id) as tx:
            earnings = tx.agent_earnings()
            before = tx.agent.balance.snapshot()
            referrals_before = tx.agent.total_referrals

            after = compute_balances(earnings, tx.agent_payouts())
            tx.agent.balance.restate(after.total_earnings, after.available_balance, after.pending_balance)
            tx.agent.total_referrals = count_referrals(earnings)

            drift = before != after or referrals_before != tx.agent.total_referrals
            if drift:
                tx.audit(
                    entity_type="agent", entity_id=tx.agent.id, action="reconcile",
                    at=datetime.now(timezone.utc), actor="reconciliation",
                    notes=(f"total {before.total_earnings} -> {after.total_earnings}, "
                           f"available {before.available_balance} -> {after.available_balance}, "
                           f"pending {before.pending_balance} -> {after.pending_balance}"),
                )

        if drift:
            logger.warning("Balance drift corrected for agent %s: %s -> %s",
                           tx.agent.agent_code, before.model_dump(), after.model_dump())
        else:
            logger.debug("Agent %s balances already consistent", tx.agent.agent_code)

        return ReconciliationResult(
            agent_id=agent_id,
            before=before,
            after=after,
            total_referrals=tx.agent.total_referrals,
            drift_detected=drift,
        )

    def reconcile_all(self) -> list[ReconciliationResult]:
        results = []
        for agent in self.storage.list_agents():
            try:
                results.append(self.recalculate_balances(agent.id))
            except BalanceInvariantError:
                # history for this agent is inconsistent; leave it untouched for manual review
                logger.exception("Could not reconcile agent %s", agent.agent_code)
        logger.info("Reconciled %d of %d agents, %d with drift",
                    len(results), len(self.storage.list_agents()),
                    sum(1 for r in results if r.drift_detected))
        return results
