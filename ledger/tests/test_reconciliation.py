"""
Unit Tests for balance reconciliation
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from ledger.errors import BalanceInvariantError
from ledger.models import (
    CreateEarningRequest,
    CreatePayoutRequest,
    DisputeEarningRequest,
    Earning,
    EarningStatus,
    EarningType,
    PaymentDetails,
    Payout,
    PayoutMethod,
    PayoutStatus,
    PlanetTalkCreditDetails,
    ReferralEventRequest,
)
from ledger.reconciliation import compute_balances
from ledger.service import LedgerService


# Test constants
REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")  # AGT1001, 100.00 available
AGENT_ID = UUID("660e8400-e29b-41d4-a716-446655440001")  # AGT1002, empty balance
NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)

PLANETTALK = PaymentDetails(planettalk_credit=PlanetTalkCreditDetails(planettalk_mobile="+263771234567"))


def earning(amount, status, type=EarningType.BONUS):
    return Earning(agent_id=AGENT_ID, type=type, amount=Decimal(amount), status=status, earned_at=NOW)


def payout(amount, status):
    return Payout(agent_id=AGENT_ID, method=PayoutMethod.PLANETTALK_CREDIT, amount=Decimal(amount),
                  net_amount=Decimal(amount), status=status, requested_at=NOW)


class TestComputeBalances:
    """Tests for deriving balances from history."""

    def test_derivation(self):
        snapshot = compute_balances(
            [
                earning("100.00", EarningStatus.CONFIRMED),
                earning("20.00", EarningStatus.PAID),
                earning("-5.00", EarningStatus.CONFIRMED, EarningType.PENALTY),
                earning("7.50", EarningStatus.PENDING),
                earning("9.00", EarningStatus.CANCELLED),
                earning("11.00", EarningStatus.DISPUTED),
            ],
            [
                payout("30.00", PayoutStatus.COMPLETED),
                payout("25.00", PayoutStatus.FAILED),
                payout("40.00", PayoutStatus.REJECTED),
            ],
        )

        assert snapshot.total_earnings == Decimal("115.00")
        assert snapshot.available_balance == Decimal("60.00")
        assert snapshot.pending_balance == Decimal("32.50")

    def test_empty_history(self):
        snapshot = compute_balances([], [])
        assert snapshot.total_earnings == Decimal("0")
        assert snapshot.available_balance == Decimal("0")
        assert snapshot.pending_balance == Decimal("0")


class TestRecalculateBalances:
    """Tests for restating stored balances."""

    def test_seeded_agent_is_consistent(self):
        service = LedgerService()

        result = service.reconciliation.recalculate_balances(REFERRER_ID)

        assert not result.drift_detected
        assert result.after == result.before
        assert result.after.available_balance == Decimal("100.00")

    def test_incremental_balances_match_history(self):
        """Recalculation after a mix of operations reproduces the running balances."""
        service = LedgerService()
        earnings = service.earnings
        payouts = service.payouts

        first = earnings.create_earning(CreateEarningRequest(
            agent_id=REFERRER_ID, type=EarningType.BONUS, amount=Decimal("25.00"))).earning
        second = earnings.create_earning(CreateEarningRequest(
            agent_id=REFERRER_ID, type=EarningType.BONUS, amount=Decimal("40.00"), auto_confirm=True)).earning
        earnings.confirm_earning(first.id)
        earnings.create_earning(CreateEarningRequest(
            agent_id=REFERRER_ID, type=EarningType.PENALTY, amount=Decimal("-15.00")))
        earnings.dispute_earning(second.id, DisputeEarningRequest(reason="Chargeback"))
        earnings.create_earning(CreateEarningRequest(
            agent_id=REFERRER_ID, type=EarningType.BONUS, amount=Decimal("10.00")))

        paid = payouts.request_payout(REFERRER_ID, CreatePayoutRequest(
            amount=Decimal("60.00"), method=PayoutMethod.PLANETTALK_CREDIT, payment_details=PLANETTALK)).payout
        payouts.approve_payout(paid.id)
        payouts.start_processing(paid.id)
        payouts.complete_payout(paid.id, fees=Decimal("1.00"))
        payouts.request_payout(REFERRER_ID, CreatePayoutRequest(
            amount=Decimal("20.00"), method=PayoutMethod.PLANETTALK_CREDIT, payment_details=PLANETTALK))
        earnings.record_referral(ReferralEventRequest(agent_code="AGT1001", customer_ref="Customer"))

        incremental = service.get_balance(REFERRER_ID)
        assert incremental.total_earnings == Decimal("110.00")
        assert incremental.available_balance == Decimal("30.00")
        assert incremental.pending_balance == Decimal("32.50")

        result = service.reconciliation.recalculate_balances(REFERRER_ID)

        assert not result.drift_detected
        assert result.after == incremental
        assert result.total_referrals == 1

    def test_manual_referral_commission_is_not_drift(self):
        """A referral commission created directly keeps the counter in step with history."""
        service = LedgerService()
        service.earnings.create_earning(CreateEarningRequest(
            agent_id=REFERRER_ID, type=EarningType.REFERRAL_COMMISSION, amount=Decimal("5.00"),
            referral_usage_id=uuid4()))

        result = service.reconciliation.recalculate_balances(REFERRER_ID)

        assert not result.drift_detected
        assert result.total_referrals == 1
        assert "reconcile" not in [a.action for a in service.get_audit_trail(REFERRER_ID)]

    def test_drift_is_corrected_and_idempotent(self):
        service = LedgerService()
        service.storage.agents[REFERRER_ID].balance.restate(Decimal("999"), Decimal("999"), Decimal("5"))
        service.storage.agents[REFERRER_ID].total_referrals = 7

        first = service.reconciliation.recalculate_balances(REFERRER_ID)
        second = service.reconciliation.recalculate_balances(REFERRER_ID)

        assert first.drift_detected
        assert first.before.available_balance == Decimal("999.00")
        assert first.after.available_balance == Decimal("100.00")
        assert first.after.pending_balance == Decimal("0.00")
        assert first.total_referrals == 0
        assert not second.drift_detected
        assert second.after == first.after
        assert [a.action for a in service.get_audit_trail(REFERRER_ID)] == ["reconcile"]

    def test_inconsistent_history_is_not_silently_corrected(self):
        service = LedgerService()
        broken = Payout(agent_id=AGENT_ID, method=PayoutMethod.PLANETTALK_CREDIT, amount=Decimal("50.00"),
                        net_amount=Decimal("50.00"), status=PayoutStatus.COMPLETED, requested_at=NOW)
        service.storage.payouts[broken.id] = broken

        with pytest.raises(BalanceInvariantError):
            service.reconciliation.recalculate_balances(AGENT_ID)

        assert service.get_balance(AGENT_ID).available_balance == Decimal("0.00")

        results = service.reconciliation.reconcile_all()
        assert [r.agent_id for r in results] == [REFERRER_ID]

    def test_reconcile_all(self):
        service = LedgerService()

        results = service.reconciliation.reconcile_all()

        assert {r.agent_id for r in results} == {REFERRER_ID, AGENT_ID}
        assert not any(r.drift_detected for r in results)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
