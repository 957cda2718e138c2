"""
Unit Tests for the Earning Ledger

Tests cover:
1. Earning creation and referral commissions
2. Earning state transitions and their balance effects
3. Adjustments
4. Bulk approve / reject / upload
5. Notifications and audit trail
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from ledger.earnings import EARNING_TRANSITIONS, validate_earning_transition
from ledger.errors import (
    AgentNotFoundError,
    DuplicateReferenceError,
    EarningNotFoundError,
    InsufficientBalanceError,
    InvalidStateError,
    ValidationError,
)
from ledger.models import (
    AdjustmentType,
    AgentTier,
    BulkEarningsActionRequest,
    BulkEarningsUploadRequest,
    CreateEarningAdjustmentRequest,
    CreateEarningRequest,
    DisputeEarningRequest,
    EarningStatus,
    EarningType,
    EarningUploadEntry,
    MarkEarningPaidRequest,
    ReferralEventRequest,
    RejectEarningRequest,
)
from ledger.notifications import InMemoryNotificationSink, NotificationType
from ledger.service import LedgerService


# Test constants
REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")  # AGT1001, 100.00 available
AGENT_ID = UUID("660e8400-e29b-41d4-a716-446655440001")  # AGT1002, empty balance


def create(service, agent_id=AGENT_ID, amount="25.00", type=EarningType.BONUS, **kwargs):
    return service.earnings.create_earning(CreateEarningRequest(
        agent_id=agent_id, type=type, amount=Decimal(amount), **kwargs,
    ))


class TestCreateEarning:
    """Tests for creating earnings."""

    def test_pending_earning_then_confirm(self):
        """A pending 25.00 earning moves from pending to available on confirm."""
        service = LedgerService()

        response = create(service, description="Test bonus")
        assert response.earning.status == EarningStatus.PENDING
        assert response.balance.pending_balance == Decimal("25.00")
        assert response.balance.available_balance == Decimal("0.00")
        assert response.balance.total_earnings == Decimal("0.00")

        confirmed = service.earnings.confirm_earning(response.earning.id)
        assert confirmed.earning.status == EarningStatus.CONFIRMED
        assert confirmed.earning.confirmed_at is not None
        assert confirmed.balance.pending_balance == Decimal("0.00")
        assert confirmed.balance.available_balance == Decimal("25.00")
        assert confirmed.balance.total_earnings == Decimal("25.00")

    def test_auto_confirm(self):
        service = LedgerService()

        response = create(service, amount="12.50", auto_confirm=True)

        assert response.earning.status == EarningStatus.CONFIRMED
        assert service.get_balance(AGENT_ID).available_balance == Decimal("12.50")
        assert service.get_balance(AGENT_ID).pending_balance == Decimal("0.00")

    def test_zero_amount_reserves_nothing(self):
        service = LedgerService()

        response = create(service, amount="0")

        assert response.earning.status == EarningStatus.PENDING
        assert response.balance.pending_balance == Decimal("0.00")

    def test_negative_bonus_rejected(self):
        service = LedgerService()

        with pytest.raises(ValidationError) as exc:
            create(service, amount="-5.00", type=EarningType.BONUS)
        assert exc.value.field == "amount"

    def test_negative_penalty_applied_immediately(self):
        service = LedgerService()

        response = create(service, agent_id=REFERRER_ID, amount="-30.00", type=EarningType.PENALTY)

        assert response.earning.status == EarningStatus.CONFIRMED
        assert response.balance.available_balance == Decimal("70.00")
        assert response.balance.total_earnings == Decimal("70.00")

    def test_penalty_exceeding_available_changes_nothing(self):
        """A -30.00 adjustment against 20.00 available fails and leaves no trace."""
        service = LedgerService()
        create(service, amount="20.00", auto_confirm=True)
        earnings_before = service.earnings.list_earnings(AGENT_ID).total_count

        with pytest.raises(InsufficientBalanceError):
            create(service, amount="-30.00", type=EarningType.ADJUSTMENT)

        balance = service.get_balance(AGENT_ID)
        assert balance.available_balance == Decimal("20.00")
        assert balance.total_earnings == Decimal("20.00")
        assert balance.pending_balance == Decimal("0.00")
        assert service.earnings.list_earnings(AGENT_ID).total_count == earnings_before

    def test_duplicate_reference_rejected(self):
        service = LedgerService()
        create(service, reference_id="BONUS-2025-0001")

        with pytest.raises(DuplicateReferenceError):
            create(service, agent_id=REFERRER_ID, reference_id="BONUS-2025-0001")

        assert service.get_balance(REFERRER_ID).pending_balance == Decimal("0.00")

    def test_unknown_agent(self):
        service = LedgerService()

        with pytest.raises(AgentNotFoundError):
            create(service, agent_id=uuid4())


class TestReferralCommission:
    """Tests for minting commissions from referral events."""

    def test_commission_from_signup_amount(self):
        service = LedgerService()

        response = service.earnings.record_referral(ReferralEventRequest(
            agent_code="agt1001", customer_ref="+263771234567", signup_amount=Decimal("33.33"),
        ))

        year = datetime.now(timezone.utc).year
        assert response.earning.type == EarningType.REFERRAL_COMMISSION
        assert response.earning.amount == Decimal("3.33")
        assert response.earning.commission_rate == Decimal("10")
        assert response.earning.reference_id == f"AGT1001-{year}-001"
        assert response.earning.referral_usage_id is not None
        assert response.balance.pending_balance == Decimal("3.33")
        assert service.get_agent(REFERRER_ID).total_referrals == 1

    def test_default_signup_amount(self):
        service = LedgerService()

        response = service.earnings.record_referral(ReferralEventRequest(
            agent_code="AGT1002", customer_ref="Jane Customer",
        ))

        assert response.earning.amount == Decimal("2.50")

    def test_generated_reference_skips_taken_ids(self):
        """A manual earning holding the next referral reference does not block referrals."""
        service = LedgerService()
        year = datetime.now(timezone.utc).year
        create(service, agent_id=REFERRER_ID, reference_id=f"AGT1001-{year}-001")

        first = service.earnings.record_referral(ReferralEventRequest(agent_code="AGT1001", customer_ref="a"))
        second = service.earnings.record_referral(ReferralEventRequest(agent_code="AGT1001", customer_ref="b"))

        assert first.earning.reference_id == f"AGT1001-{year}-002"
        assert second.earning.reference_id == f"AGT1001-{year}-003"
        assert service.get_agent(REFERRER_ID).total_referrals == 2

    def test_manual_referral_commission_counts_as_referral(self):
        service = LedgerService()

        create(service, agent_id=REFERRER_ID, amount="5.00", type=EarningType.REFERRAL_COMMISSION,
               referral_usage_id=uuid4())
        create(service, agent_id=REFERRER_ID, amount="5.00", type=EarningType.REFERRAL_COMMISSION)

        assert service.get_agent(REFERRER_ID).total_referrals == 1

    def test_unknown_agent_code(self):
        service = LedgerService()

        with pytest.raises(AgentNotFoundError):
            service.earnings.record_referral(ReferralEventRequest(agent_code="AGT9999", customer_ref="x"))

    def test_suspended_agent_cannot_earn(self):
        service = LedgerService()
        service.suspend_agent_earnings(REFERRER_ID, "Fraud investigation")

        with pytest.raises(InvalidStateError):
            service.earnings.record_referral(ReferralEventRequest(agent_code="AGT1001", customer_ref="x"))
        assert service.get_agent(REFERRER_ID).total_referrals == 0

        service.resume_agent_earnings(REFERRER_ID)
        response = service.earnings.record_referral(ReferralEventRequest(agent_code="AGT1001", customer_ref="x"))
        assert response.earning.status == EarningStatus.PENDING


class TestAgentModel:
    """Tests for agent helpers."""

    def test_tiers_are_ordered(self):
        assert AgentTier.BRONZE < AgentTier.SILVER < AgentTier.GOLD < AgentTier.PLATINUM < AgentTier.DIAMOND
        assert max([AgentTier.GOLD, AgentTier.DIAMOND, AgentTier.SILVER]) == AgentTier.DIAMOND

    def test_default_commission_rate_applies_when_unset(self):
        service = LedgerService()
        assert service.get_agent(AGENT_ID).commission_rate is None

        response = service.earnings.record_referral(ReferralEventRequest(
            agent_code="AGT1002", customer_ref="x", signup_amount=Decimal("80.00"),
        ))

        assert response.earning.commission_rate == Decimal("10")
        assert response.earning.amount == Decimal("8.00")


class TestEarningTransitions:
    """Tests for the earning state machine."""

    @pytest.mark.parametrize("current", list(EarningStatus))
    @pytest.mark.parametrize("target", list(EarningStatus))
    def test_transition_table_is_enforced(self, current, target):
        if target in EARNING_TRANSITIONS[current]:
            validate_earning_transition(current, target)
        else:
            with pytest.raises(InvalidStateError) as exc:
                validate_earning_transition(current, target)
            assert exc.value.current == current
            assert exc.value.allowed == [s.value for s in EARNING_TRANSITIONS[current]]

    def test_reject_pending_releases_pending(self):
        service = LedgerService()
        earning = create(service).earning

        response = service.earnings.reject_earning(
            earning.id, RejectEarningRequest(reason="Customer cancelled", performed_by="admin@test.com"),
        )

        assert response.earning.status == EarningStatus.CANCELLED
        assert response.earning.rejection_reason == "Customer cancelled"
        assert response.balance.pending_balance == Decimal("0.00")
        assert response.balance.available_balance == Decimal("0.00")

    def test_reject_requires_reason(self):
        service = LedgerService()
        earning = create(service).earning

        with pytest.raises(ValidationError):
            service.earnings.reject_earning(earning.id, RejectEarningRequest(reason="   "))
        assert service.earnings.get_earning(earning.id).status == EarningStatus.PENDING

    def test_cannot_confirm_cancelled(self):
        service = LedgerService()
        earning = create(service).earning
        service.earnings.reject_earning(earning.id, RejectEarningRequest(reason="Test"))

        with pytest.raises(InvalidStateError) as exc:
            service.earnings.confirm_earning(earning.id)
        assert exc.value.current == EarningStatus.CANCELLED
        assert exc.value.allowed == []
        assert "none (final state)" in str(exc.value)

    def test_dispute_withdraws_confirmed_value(self):
        service = LedgerService()
        earning = create(service, amount="40.00", auto_confirm=True).earning

        response = service.earnings.dispute_earning(earning.id, DisputeEarningRequest(reason="Chargeback"))

        assert response.earning.status == EarningStatus.DISPUTED
        assert response.earning.dispute_reason == "Chargeback"
        assert response.balance.available_balance == Decimal("0.00")
        assert response.balance.total_earnings == Decimal("0.00")

    def test_mark_paid_keeps_balances(self):
        service = LedgerService()
        earning = create(service, amount="15.00", auto_confirm=True).earning

        response = service.earnings.mark_earning_paid(
            earning.id, MarkEarningPaidRequest(payment_reference="PAY-001"),
        )

        assert response.earning.status == EarningStatus.PAID
        assert response.earning.payment_reference == "PAY-001"
        assert response.balance.available_balance == Decimal("15.00")
        assert response.balance.total_earnings == Decimal("15.00")

    def test_cannot_pay_pending(self):
        service = LedgerService()
        earning = create(service).earning

        with pytest.raises(InvalidStateError):
            service.earnings.mark_earning_paid(earning.id)

    def test_nonexistent_earning(self):
        service = LedgerService()

        with pytest.raises(EarningNotFoundError):
            service.earnings.confirm_earning(UUID("00000000-0000-0000-0000-000000000000"))


class TestAdjustments:
    """Tests for manual adjustments."""

    @pytest.mark.parametrize("adjustment_type,earning_type", [
        (AdjustmentType.BONUS, EarningType.BONUS),
        (AdjustmentType.PENALTY, EarningType.PENALTY),
        (AdjustmentType.CORRECTION, EarningType.ADJUSTMENT),
        (AdjustmentType.REFUND, EarningType.ADJUSTMENT),
    ])
    def test_adjustment_type_mapping(self, adjustment_type, earning_type):
        service = LedgerService()

        response = service.earnings.create_earning_adjustment(REFERRER_ID, CreateEarningAdjustmentRequest(
            amount=Decimal("-10.00"), type=adjustment_type, reason="Manual correction",
        ))

        assert response.earning.type == earning_type
        assert response.earning.adjustment_type == adjustment_type
        assert response.earning.status == EarningStatus.CONFIRMED
        assert response.balance.available_balance == Decimal("90.00")

    def test_zero_adjustment_rejected(self):
        service = LedgerService()

        with pytest.raises(ValidationError):
            service.earnings.create_earning_adjustment(REFERRER_ID, CreateEarningAdjustmentRequest(
                amount=Decimal("0"), type=AdjustmentType.OTHER, reason="Nothing",
            ))

    def test_adjustment_requires_reason(self):
        service = LedgerService()

        with pytest.raises(ValidationError):
            service.earnings.create_earning_adjustment(REFERRER_ID, CreateEarningAdjustmentRequest(
                amount=Decimal("5"), type=AdjustmentType.BONUS, reason="",
            ))


class TestBulkOperations:
    """Tests for bulk earning operations."""

    def test_bulk_approve_mixed_outcomes(self):
        service = LedgerService()
        first = create(service, amount="10.00").earning
        second = create(service, amount="5.00").earning
        confirmed = create(service, amount="1.00", auto_confirm=True).earning
        missing = uuid4()

        report = service.earnings.bulk_approve(BulkEarningsActionRequest(
            earning_ids=[first.id, confirmed.id, second.id, missing],
        ))

        assert report.succeeded == 2
        assert report.failed == 2
        by_id = {r.id: r for r in report.results}
        assert by_id[first.id].success
        assert by_id[second.id].success
        assert by_id[confirmed.id].error_type == "InvalidStateError"
        assert by_id[missing].error_type == "EarningNotFoundError"
        assert service.get_balance(AGENT_ID).available_balance == Decimal("16.00")
        assert report.summary == "2 approve succeeded, 2 failed"

    def test_bulk_reject_requires_reason(self):
        service = LedgerService()
        earning = create(service).earning

        with pytest.raises(ValidationError):
            service.earnings.bulk_reject(BulkEarningsActionRequest(earning_ids=[earning.id]))

    def test_bulk_reject(self):
        service = LedgerService()
        earning = create(service).earning

        report = service.earnings.bulk_reject(BulkEarningsActionRequest(
            earning_ids=[earning.id], reason="Duplicate signup",
        ))

        assert report.succeeded == 1
        assert service.earnings.get_earning(earning.id).status == EarningStatus.CANCELLED

    def test_bulk_upload(self):
        service = LedgerService()

        report = service.earnings.bulk_upload_earnings(BulkEarningsUploadRequest(
            auto_confirm=True,
            batch_description="March commissions",
            earnings=[
                EarningUploadEntry(agent_code="AGT1001", amount=Decimal("10.00"),
                                   description="March", reference_id="UP-1"),
                EarningUploadEntry(agent_code="AGT1001", amount=Decimal("10.00"),
                                   description="March again", reference_id="UP-1"),
                EarningUploadEntry(agent_code="AGT9999", amount=Decimal("10.00"), description="Unknown"),
                EarningUploadEntry(agent_code="AGT1002", amount=Decimal("0"), description="Zero"),
                EarningUploadEntry(agent_code="AGT1002", amount=Decimal("5.00"),
                                   description="Seeded", reference_id="SEED-WELCOME-AGT1001"),
            ],
        ))

        assert report.batch_id.startswith("BATCH-")
        assert report.total_processed == 5
        assert report.successful == 1
        assert report.failed == 2
        assert report.skipped == 2
        assert report.total_amount == Decimal("10.00")
        assert report.updated_agents == ["AGT1001"]
        assert report.invalid_agent_codes == ["AGT9999"]
        assert report.duplicate_references == ["UP-1", "SEED-WELCOME-AGT1001"]
        assert [d.status for d in report.details] == ["success", "skipped", "failed", "failed", "skipped"]
        assert service.get_balance(REFERRER_ID).available_balance == Decimal("110.00")
        assert service.get_balance(AGENT_ID).available_balance == Decimal("0.00")

        uploaded = service.earnings.get_earning(report.details[0].earning_id)
        assert uploaded.batch_id == report.batch_id
        assert uploaded.status == EarningStatus.CONFIRMED


class TestNotificationsAndAudit:
    """Tests for side channels of earning operations."""

    def test_notification_failure_does_not_roll_back(self):
        class BrokenSink:
            def notify(self, notification):
                raise RuntimeError("notification service down")

        service = LedgerService(notification_sink=BrokenSink())

        response = create(service)

        stored = service.earnings.get_earning(response.earning.id)
        assert stored.status == EarningStatus.PENDING
        assert service.get_balance(AGENT_ID).pending_balance == Decimal("25.00")

    def test_earning_notifications_sent(self):
        sink = InMemoryNotificationSink()
        service = LedgerService(notification_sink=sink)

        earning = create(service).earning
        service.earnings.confirm_earning(earning.id)

        assert [n.type for n in sink.sent] == [NotificationType.EARNINGS, NotificationType.EARNINGS]
        assert sink.sent[0].title == "New Earnings Added"
        assert sink.sent[1].context.status == "CONFIRMED"

    def test_audit_trail(self):
        service = LedgerService()
        earning = create(service).earning
        service.earnings.confirm_earning(earning.id)

        actions = [(a.action, a.from_status, a.to_status) for a in service.get_audit_trail(AGENT_ID)]
        assert actions == [("create", None, "PENDING"), ("confirmed", "PENDING", "CONFIRMED")]

    def test_list_earnings_filters_and_paginates(self):
        service = LedgerService()
        for i in range(3):
            create(service, amount=f"{i + 1}.00")
        create(service, amount="9.00", auto_confirm=True)

        pending = service.earnings.list_earnings(AGENT_ID, status=EarningStatus.PENDING, limit=2)
        assert pending.total_count == 3
        assert len(pending.items) == 2

        page_two = service.earnings.list_earnings(AGENT_ID, status=EarningStatus.PENDING, limit=2, offset=2)
        assert len(page_two.items) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
