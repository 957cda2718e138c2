import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from .commission import CommissionCalculator
from .config import Settings, get_settings
from .errors import (
    AgentNotFoundError,
    DuplicateReferenceError,
    EarningNotFoundError,
    InvalidStateError,
    LedgerServiceError,
    ValidationError,
)
from .models import (
    AdjustmentType,
    Agent,
    BulkEarningsActionRequest,
    BulkEarningsUploadRequest,
    BulkItemResult,
    BulkOperationReport,
    BulkUploadReport,
    ConfirmEarningRequest,
    CreateEarningAdjustmentRequest,
    CreateEarningRequest,
    DisputeEarningRequest,
    Earning,
    EarningListResponse,
    EarningResponse,
    EarningSource,
    EarningStatus,
    EarningType,
    MarkEarningPaidRequest,
    ReferralEventRequest,
    RejectEarningRequest,
    UploadItemResult,
)
from .money import ZERO, to_money, to_rate
from .notifications import Notifier
from .storage import AgentTransaction, InMemoryStorage

logger = logging.getLogger(__name__)

EARNING_TRANSITIONS: dict[EarningStatus, tuple[EarningStatus, ...]] = {
    EarningStatus.PENDING: (EarningStatus.CONFIRMED, EarningStatus.CANCELLED),
    EarningStatus.CONFIRMED: (EarningStatus.PAID, EarningStatus.DISPUTED),
    EarningStatus.PAID: (),
    EarningStatus.CANCELLED: (),
    EarningStatus.DISPUTED: (),
}

NEGATIVE_AMOUNT_TYPES = frozenset({EarningType.PENALTY, EarningType.ADJUSTMENT})

_ADJUSTMENT_EARNING_TYPES = {
    AdjustmentType.BONUS: EarningType.BONUS,
    AdjustmentType.PENALTY: EarningType.PENALTY,
}


def validate_earning_transition(current: EarningStatus, target: EarningStatus) -> None:
    allowed = EARNING_TRANSITIONS.get(current, ())
    if target not in allowed:
        raise InvalidStateError(current, target, allowed)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _required_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    return text


class EarningLedger:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None,
                 notifier: Optional[Notifier] = None,
                 calculator: Optional[CommissionCalculator] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.notifier = notifier or Notifier(frontend_url=self.settings.FRONTEND_URL)
        self.calculator = calculator or CommissionCalculator()

    # -- creation -----------------------------------------------------------

    def create_earning(self, request: CreateEarningRequest) -> EarningResponse:
        amount = to_money(request.amount)
        if amount < 0 and request.type not in NEGATIVE_AMOUNT_TYPES:
            raise ValidationError(
                f"{request.type.value} earnings cannot be negative; only PENALTY and ADJUSTMENT may be",
                field="amount",
            )
        self._ensure_reference_free(request.reference_id)

        earning = Earning(
            agent_id=request.agent_id,
            type=request.type,
            amount=amount,
            currency=request.currency or self.settings.DEFAULT_CURRENCY,
            commission_rate=to_rate(request.commission_rate) if request.commission_rate is not None else None,
            description=request.description,
            reference_id=request.reference_id,
            referral_usage_id=request.referral_usage_id,
            source=EarningSource.MANUAL,
            earned_at=request.earned_at or _utcnow(),
            created_by=request.performed_by,
        )
        # negative amounts are administrative deductions and never sit in pending
        immediate = request.auto_confirm or amount < 0
        return self._insert(earning, immediate=immediate, actor=request.performed_by)

    def record_referral(self, request: ReferralEventRequest) -> EarningResponse:
        agent = self.storage.get_agent_by_code(request.agent_code)
        if agent is None:
            raise AgentNotFoundError(f"Agent code {request.agent_code} not found")
        self._ensure_reference_free(request.reference_id)

        signup_amount = request.signup_amount
        if signup_amount is None:
            signup_amount = self.settings.DEFAULT_SIGNUP_AMOUNT
        now = _utcnow()

        with self.storage.agent_transaction(agent.id) as tx:
            agent = tx.agent
            if not agent.can_earn():
                if agent.earnings_suspended:
                    message = (f"Earnings are suspended for agent {agent.agent_code}: "
                               f"{agent.earnings_suspension.reason}")
                else:
                    message = "This agent is not currently active"
                raise InvalidStateError(agent.status, message=message)

            agent_rate = agent.commission_rate
            if agent_rate is None:
                agent_rate = self.settings.DEFAULT_COMMISSION_RATE
            amount = self.calculator.compute(signup_amount, agent_rate, request.bonus_rate)
            earning = Earning(
                agent_id=agent.id,
                type=EarningType.REFERRAL_COMMISSION,
                amount=amount,
                currency=self.settings.DEFAULT_CURRENCY,
                commission_rate=self.calculator.effective_rate(agent_rate, request.bonus_rate),
                description=f"Referral commission - {request.customer_ref}",
                reference_id=request.reference_id or self._next_referral_reference(agent, now.year),
                referral_usage_id=request.referral_usage_id or uuid4(),
                source=EarningSource.REFERRAL,
                earned_at=now,
                created_by="referral-system",
            )
            self._post_new_earning(tx, earning, immediate=False, actor="referral-system", at=now)

        self.notifier.earning_recorded(tx.agent, earning)
        return self._response(tx.agent, earning, "Referral commission recorded")

    def create_earning_adjustment(self, agent_id: UUID,
                                  request: CreateEarningAdjustmentRequest) -> EarningResponse:
        amount = to_money(request.amount)
        if amount == 0:
            raise ValidationError("Adjustment amount must be non-zero", field="amount")
        reason = _required_text(request.reason, "reason")
        self._ensure_reference_free(request.reference_id)

        earning = Earning(
            agent_id=agent_id,
            type=_ADJUSTMENT_EARNING_TYPES.get(request.type, EarningType.ADJUSTMENT),
            amount=amount,
            currency=self.settings.DEFAULT_CURRENCY,
            description=reason,
            reference_id=request.reference_id,
            source=EarningSource.ADJUSTMENT,
            adjustment_type=request.type,
            notes=request.notes,
            earned_at=_utcnow(),
            created_by=request.performed_by or "admin",
        )
        return self._insert(earning, immediate=True, actor=request.performed_by or "admin",
                            message="Adjustment applied")

    # -- status changes -----------------------------------------------------

    def confirm_earning(self, earning_id: UUID,
                        request: Optional[ConfirmEarningRequest] = None) -> EarningResponse:
        request = request or ConfirmEarningRequest()

        def apply(tx: AgentTransaction, earning: Earning, now: datetime) -> None:
            tx.agent.balance.confirm_earning(earning.amount)
            earning.confirmed_at = now
            if request.notes:
                earning.notes = request.notes

        return self._change_status(earning_id, EarningStatus.CONFIRMED, apply,
                                   actor=request.performed_by, notes=request.notes)

    def reject_earning(self, earning_id: UUID, request: RejectEarningRequest) -> EarningResponse:
        reason = _required_text(request.reason, "reason")

        def apply(tx: AgentTransaction, earning: Earning, now: datetime) -> None:
            tx.agent.balance.cancel_pending_earning(max(earning.amount, ZERO))
            earning.cancelled_at = now
            earning.rejection_reason = reason
            if request.notes:
                earning.notes = request.notes

        return self._change_status(earning_id, EarningStatus.CANCELLED, apply,
                                   actor=request.performed_by, reason=reason, notes=request.notes)

    def dispute_earning(self, earning_id: UUID, request: DisputeEarningRequest) -> EarningResponse:
        reason = _required_text(request.reason, "reason")

        def apply(tx: AgentTransaction, earning: Earning, now: datetime) -> None:
            tx.agent.balance.apply_adjustment(-earning.amount)
            earning.disputed_at = now
            earning.dispute_reason = reason

        return self._change_status(earning_id, EarningStatus.DISPUTED, apply,
                                   actor=request.performed_by, reason=reason)

    def mark_earning_paid(self, earning_id: UUID,
                          request: Optional[MarkEarningPaidRequest] = None) -> EarningResponse:
        request = request or MarkEarningPaidRequest()

        def apply(tx: AgentTransaction, earning: Earning, now: datetime) -> None:
            earning.paid_at = now
            earning.payment_reference = request.payment_reference

        return self._change_status(earning_id, EarningStatus.PAID, apply,
                                   actor=request.performed_by)

    # -- bulk ---------------------------------------------------------------

    def bulk_approve(self, request: BulkEarningsActionRequest) -> BulkOperationReport:
        confirm = ConfirmEarningRequest(notes=request.notes, performed_by=request.performed_by)
        return self._bulk("approve", request.earning_ids,
                          lambda earning_id: self.confirm_earning(earning_id, confirm))

    def bulk_reject(self, request: BulkEarningsActionRequest) -> BulkOperationReport:
        reject = RejectEarningRequest(
            reason=_required_text(request.reason, "reason"),
            notes=request.notes,
            performed_by=request.performed_by,
        )
        return self._bulk("reject", request.earning_ids,
                          lambda earning_id: self.reject_earning(earning_id, reject))

    def bulk_upload_earnings(self, request: BulkEarningsUploadRequest) -> BulkUploadReport:
        if len(request.earnings) > self.settings.BULK_MAX_ITEMS:
            raise ValidationError(
                f"At most {self.settings.BULK_MAX_ITEMS} entries may be uploaded at once",
                field="earnings",
            )

        now = _utcnow()
        report = BulkUploadReport(
            batch_id=f"BATCH-{now:%Y%m%d%H%M%S}-{uuid4().hex[:8]}",
            total_processed=len(request.earnings),
            processed_at=now,
        )
        agents: dict[str, Optional[Agent]] = {}
        seen_references: set[str] = set()
        actor = request.performed_by or "admin"

        for index, entry in enumerate(request.earnings):
            item = UploadItemResult(index=index, agent_code=entry.agent_code, status="failed",
                                    amount=entry.amount)
            report.details.append(item)

            if entry.agent_code not in agents:
                agents[entry.agent_code] = self.storage.get_agent_by_code(entry.agent_code)
            agent = agents[entry.agent_code]
            if agent is None:
                item.error = "Agent code not found"
                if entry.agent_code not in report.invalid_agent_codes:
                    report.invalid_agent_codes.append(entry.agent_code)
                report.failed += 1
                continue

            if entry.reference_id and (entry.reference_id in seen_references
                                       or self.storage.reference_exists(entry.reference_id)):
                item.status = "skipped"
                item.error = ("Duplicate reference ID in this batch" if entry.reference_id in seen_references
                              else "Reference ID already exists in the ledger")
                report.duplicate_references.append(entry.reference_id)
                report.skipped += 1
                continue

            try:
                amount = to_money(entry.amount)
                if amount <= 0 or amount > self.settings.BULK_UPLOAD_MAX_ENTRY_AMOUNT:
                    raise ValidationError(
                        f"Earning amount must be between 0.01 and {self.settings.BULK_UPLOAD_MAX_ENTRY_AMOUNT}",
                        field="amount",
                    )
                response = self._insert(
                    Earning(
                        agent_id=agent.id,
                        type=entry.type,
                        amount=amount,
                        currency=entry.currency or self.settings.DEFAULT_CURRENCY,
                        commission_rate=to_rate(entry.commission_rate) if entry.commission_rate is not None else None,
                        description=entry.description,
                        reference_id=entry.reference_id,
                        source=EarningSource.BULK_UPLOAD,
                        batch_id=report.batch_id,
                        notes=request.batch_description,
                        earned_at=entry.earned_at or now,
                        created_by=actor,
                    ),
                    immediate=request.auto_confirm,
                    actor=actor,
                )
            except DuplicateReferenceError as e:
                item.status = "skipped"
                item.error = str(e)
                report.duplicate_references.append(entry.reference_id)
                report.skipped += 1
                continue
            except LedgerServiceError as e:
                item.error = str(e)
                report.failed += 1
                continue

            if entry.reference_id:
                seen_references.add(entry.reference_id)
            item.status = "success"
            item.earning_id = response.earning.id
            item.message = ("Earning created and confirmed" if request.auto_confirm
                            else "Earning created (pending approval)")
            report.successful += 1
            report.total_amount += response.earning.amount
            if agent.agent_code not in report.updated_agents:
                report.updated_agents.append(agent.agent_code)

        logger.info("Bulk upload %s: %d succeeded, %d failed, %d skipped",
                    report.batch_id, report.successful, report.failed, report.skipped)
        return report

    # -- queries ------------------------------------------------------------

    def get_earning(self, earning_id: UUID) -> Earning:
        earning = self.storage.get_earning(earning_id)
        if not earning:
            raise EarningNotFoundError(f"Earning {earning_id} not found")
        return earning

    def list_earnings(self, agent_id: Optional[UUID] = None, status: Optional[EarningStatus] = None,
                      type: Optional[EarningType] = None, limit: int = 50,
                      offset: int = 0) -> EarningListResponse:
        limit = max(1, min(limit, 200))
        offset = max(0, offset)
        earnings = [
            e for e in self.storage.list_earnings(agent_id)
            if (status is None or e.status == status) and (type is None or e.type == type)
        ]
        earnings.sort(key=lambda e: e.earned_at, reverse=True)
        return EarningListResponse(
            items=earnings[offset:offset + limit],
            total_count=len(earnings),
            limit=limit,
            offset=offset,
        )

    # -- internals ----------------------------------------------------------

    def _ensure_reference_free(self, reference_id: Optional[str]) -> None:
        if reference_id and self.storage.reference_exists(reference_id):
            raise DuplicateReferenceError(reference_id)

    def _next_referral_reference(self, agent: Agent, year: int) -> str:
        sequence = agent.total_referrals + 1
        while True:
            reference_id = f"{agent.agent_code}-{year}-{sequence:03d}"
            if not self.storage.reference_exists(reference_id):
                return reference_id
            sequence += 1

    def _insert(self, earning: Earning, *, immediate: bool, actor: Optional[str],
                message: str = "Earning created") -> EarningResponse:
        with self.storage.agent_transaction(earning.agent_id) as tx:
            self._post_new_earning(tx, earning, immediate=immediate, actor=actor, at=_utcnow())
        self.notifier.earning_recorded(tx.agent, earning)
        return self._response(tx.agent, earning, message)

    def _post_new_earning(self, tx: AgentTransaction, earning: Earning, *, immediate: bool,
                          actor: Optional[str], at: datetime) -> None:
        if immediate:
            tx.agent.balance.apply_adjustment(earning.amount)
            earning.status = EarningStatus.CONFIRMED
            earning.confirmed_at = at
        elif earning.amount > 0:
            tx.agent.balance.reserve_for_pending_earning(earning.amount)
        if earning.type == EarningType.REFERRAL_COMMISSION and earning.referral_usage_id is not None:
            tx.agent.record_referral(at)

        tx.add_earning(earning)
        tx.audit(entity_type="earning", entity_id=earning.id, action="create", at=at,
                 to_status=earning.status.value, amount=earning.amount, actor=actor,
                 reason=earning.description)
        logger.info("Earning %s created for agent %s: %s %s (%s)",
                    earning.id, tx.agent.agent_code, earning.amount, earning.currency,
                    earning.status.value)

    def _change_status(self, earning_id: UUID, target: EarningStatus,
                       apply: Callable[[AgentTransaction, Earning, datetime], None], *,
                       actor: Optional[str] = None, reason: Optional[str] = None,
                       notes: Optional[str] = None) -> EarningResponse:
        agent_id = self.get_earning(earning_id).agent_id
        now = _utcnow()

        with self.storage.agent_transaction(agent_id) as tx:
            earning = tx.get_earning(earning_id)
            if earning is None:
                raise EarningNotFoundError(f"Earning {earning_id} not found")
            previous = earning.status
            validate_earning_transition(previous, target)
            apply(tx, earning, now)
            earning.status = target
            tx.audit(entity_type="earning", entity_id=earning.id, action=target.value.lower(),
                     at=now, from_status=previous.value, to_status=target.value,
                     amount=earning.amount, actor=actor, reason=reason, notes=notes)

        logger.info("Earning %s for agent %s moved %s -> %s",
                    earning.id, tx.agent.agent_code, previous.value, target.value)
        self.notifier.earning_status_changed(tx.agent, earning)
        return self._response(tx.agent, earning, f"Earning {target.value.lower()} successfully")

    def _bulk(self, action: str, earning_ids: list[UUID],
              operation: Callable[[UUID], EarningResponse]) -> BulkOperationReport:
        report = BulkOperationReport(action=action)
        for earning_id in earning_ids:
            try:
                response = operation(earning_id)
            except LedgerServiceError as e:
                report.failed += 1
                report.results.append(BulkItemResult(
                    id=earning_id, success=False, error=str(e), error_type=type(e).__name__,
                ))
                continue
            except Exception:
                logger.exception("Unexpected failure during bulk %s of earning %s", action, earning_id)
                report.failed += 1
                report.results.append(BulkItemResult(
                    id=earning_id, success=False, error="Internal error", error_type="InternalError",
                ))
                continue
            report.succeeded += 1
            report.results.append(BulkItemResult(
                id=earning_id, success=True, amount=response.earning.amount, message=response.message,
            ))
        logger.info("Bulk %s of earnings: %s", action, report.summary)
        return report

    @staticmethod
    def _response(agent: Agent, earning: Earning, message: str) -> EarningResponse:
        return EarningResponse(
            earning=earning.model_copy(deep=True),
            balance=agent.balance.snapshot(),
            message=message,
        )
