import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .balance import BalanceSnapshot
from .commission import CommissionCalculator
from .config import Settings, get_settings
from .earnings import EarningLedger
from .errors import AgentNotFoundError, InvalidStateError, ValidationError
from .models import (
    Agent,
    AuditEntry,
    EarningsSuspension,
    FinancialOverview,
    PayoutStatus,
)
from .money import ZERO
from .notifications import EmailSink, NotificationSink, Notifier
from .payouts import PayoutWorkflow
from .reconciliation import ReconciliationService
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class LedgerService:
    """Entry point wiring the earning ledger, payout workflow and reconciliation
    to one storage and one notifier.

    Earning operations live on ``service.earnings``, payout operations on
    ``service.payouts`` and balance restatement on ``service.reconciliation``;
    agent-level queries are served here directly.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None,
                 notification_sink: Optional[NotificationSink] = None,
                 email_sink: Optional[EmailSink] = None):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(seed=self.settings.SEED_DEMO_DATA)
        self.notifier = Notifier(notification_sink, email_sink, frontend_url=self.settings.FRONTEND_URL)
        self.commission = CommissionCalculator()
        self.earnings = EarningLedger(self.storage, self.settings, self.notifier, self.commission)
        self.payouts = PayoutWorkflow(self.storage, self.settings, self.notifier)
        self.reconciliation = ReconciliationService(self.storage)

    # -- agents -------------------------------------------------------------

    def get_agent(self, agent_id: UUID) -> Agent:
        agent = self.storage.get_agent(agent_id)
        if not agent:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    def get_agent_by_code(self, agent_code: str) -> Agent:
        agent = self.storage.get_agent_by_code(agent_code)
        if not agent:
            raise AgentNotFoundError(f"Agent code {agent_code} not found")
        return agent

    def get_balance(self, agent_id: UUID) -> BalanceSnapshot:
        return self.get_agent(agent_id).balance.snapshot()

    def get_audit_trail(self, agent_id: UUID) -> list[AuditEntry]:
        self.get_agent(agent_id)
        entries = self.storage.list_audit_entries(agent_id)
        entries.sort(key=lambda a: a.created_at)
        return entries

    def get_financial_overview(self, agent_id: UUID) -> FinancialOverview:
        agent = self.get_agent(agent_id)
        earnings = self.storage.list_earnings(agent_id)
        payouts = self.storage.list_payouts(agent_id)

        by_type: dict[str, Decimal] = defaultdict(lambda: ZERO)
        by_status: dict[str, int] = defaultdict(int)
        for e in earnings:
            by_type[e.type.value] += e.amount
            by_status[e.status.value] += 1

        payouts_by_status: dict[str, int] = defaultdict(int)
        for p in payouts:
            payouts_by_status[p.status.value] += 1

        processing_times = [p.processing_time for p in payouts if p.processing_time is not None]
        return FinancialOverview(
            agent_id=agent.id,
            agent_code=agent.agent_code,
            status=agent.status,
            tier=agent.tier,
            balance=agent.balance.snapshot(),
            earnings_count=len(earnings),
            earnings_by_type=dict(by_type),
            earnings_by_status=dict(by_status),
            payouts_count=len(payouts),
            payouts_total=sum((p.amount for p in payouts if p.status == PayoutStatus.COMPLETED), ZERO),
            payouts_by_status=dict(payouts_by_status),
            average_processing_time=(
                sum(processing_times) / len(processing_times) if processing_times else None
            ),
        )

    # -- earnings suspension ------------------------------------------------

    def suspend_agent_earnings(self, agent_id: UUID, reason: str,
                               admin_notes: Optional[str] = None,
                               performed_by: Optional[str] = None) -> Agent:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required", field="reason")
        now = datetime.now(timezone.utc)

        with self.storage.agent_transaction(agent_id) as tx:
            if tx.agent.earnings_suspended:
                raise InvalidStateError(tx.agent.status,
                                        message=f"Earnings are already suspended for agent {tx.agent.agent_code}")
            tx.agent.earnings_suspension = EarningsSuspension(
                reason=reason, suspended_at=now, admin_notes=admin_notes,
            )
            tx.audit(entity_type="agent", entity_id=tx.agent.id, action="suspend_earnings", at=now,
                     actor=performed_by, reason=reason, notes=admin_notes)

        logger.info("Earnings suspended for agent %s: %s", tx.agent.agent_code, reason)
        return tx.agent.model_copy(deep=True)

    def resume_agent_earnings(self, agent_id: UUID, admin_notes: Optional[str] = None,
                              performed_by: Optional[str] = None) -> Agent:
        now = datetime.now(timezone.utc)

        with self.storage.agent_transaction(agent_id) as tx:
            if not tx.agent.earnings_suspended:
                raise InvalidStateError(tx.agent.status,
                                        message=f"Earnings are not suspended for agent {tx.agent.agent_code}")
            tx.agent.earnings_suspension = None
            tx.audit(entity_type="agent", entity_id=tx.agent.id, action="resume_earnings", at=now,
                     actor=performed_by, notes=admin_notes)

        logger.info("Earnings resumed for agent %s", tx.agent.agent_code)
        return tx.agent.model_copy(deep=True)
