import logging
import re
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional
from uuid import UUID

from .config import Settings, get_settings
from .errors import (
    InsufficientBalanceError,
    InvalidPayoutTransitionError,
    InvalidStateError,
    LedgerServiceError,
    PayoutInFlightError,
    PayoutNotFoundError,
    ValidationError,
)
from .models import (
    BulkItemResult,
    BulkOperationReport,
    BulkPayoutAction,
    BulkPayoutActionRequest,
    CreatePayoutRequest,
    PaymentDetails,
    Payout,
    PayoutListResponse,
    PayoutMethod,
    PayoutResponse,
    PayoutStatus,
    UpdatePayoutStatusRequest,
)
from .money import ZERO, to_money
from .notifications import Notifier
from .storage import AgentTransaction, InMemoryStorage

logger = logging.getLogger(__name__)

PAYOUT_TRANSITIONS: dict[PayoutStatus, tuple[PayoutStatus, ...]] = {
    PayoutStatus.REQUESTED: (
        PayoutStatus.PENDING_REVIEW,
        PayoutStatus.APPROVED,
        PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED,
    ),
    PayoutStatus.PENDING_REVIEW: (
        PayoutStatus.APPROVED,
        PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED,
    ),
    PayoutStatus.APPROVED: (
        PayoutStatus.PROCESSING,
        PayoutStatus.REJECTED,
        PayoutStatus.CANCELLED,
    ),
    PayoutStatus.PROCESSING: (PayoutStatus.COMPLETED, PayoutStatus.FAILED),
    # a failed payout keeps its funds pending until it is retried
    PayoutStatus.FAILED: (PayoutStatus.PROCESSING,),
    PayoutStatus.COMPLETED: (),
    PayoutStatus.REJECTED: (),
    PayoutStatus.CANCELLED: (),
}

# E.164: leading +, no leading zero, 10 to 15 digits in total
E164_PATTERN = re.compile(r"^\+[1-9]\d{9,14}$")


class DetailSchema(NamedTuple):
    section: str
    required: tuple[str, ...]
    phone_fields: tuple[str, ...] = ()


PAYMENT_DETAIL_SCHEMAS: dict[PayoutMethod, DetailSchema] = {
    PayoutMethod.BANK_TRANSFER: DetailSchema(
        "bank_account", ("account_number", "routing_number", "account_name", "bank_name"),
    ),
    PayoutMethod.PLANETTALK_CREDIT: DetailSchema(
        "planettalk_credit", ("planettalk_mobile",), ("planettalk_mobile",),
    ),
    PayoutMethod.MOBILE_MONEY: DetailSchema(
        "mobile_money", ("phone_number", "provider"), ("phone_number",),
    ),
}


def validate_transition(current: PayoutStatus, target: PayoutStatus) -> None:
    allowed = PAYOUT_TRANSITIONS.get(current, ())
    if target not in allowed:
        raise InvalidPayoutTransitionError(current, target, allowed)


def validate_payment_details(method: PayoutMethod, details: Optional[PaymentDetails]) -> None:
    schema = PAYMENT_DETAIL_SCHEMAS[method]
    section = getattr(details, schema.section, None) if details else None
    if section is None:
        raise ValidationError(
            f"{schema.section} details are required for {method.value} payouts",
            field=f"payment_details.{schema.section}",
        )

    for name in schema.required:
        if not (getattr(section, name) or "").strip():
            raise ValidationError(
                f"{name} is required for {method.value} payouts",
                field=f"payment_details.{schema.section}.{name}",
            )

    for name in schema.phone_fields:
        number = re.sub(r"[\s-]", "", getattr(section, name))
        if not E164_PATTERN.match(number):
            raise ValidationError(
                f"{name} must be a valid international mobile number (e.g. +263771234567)",
                field=f"payment_details.{schema.section}.{name}",
            )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _required_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", field=field)
    return text


class PayoutWorkflow:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None,
                 notifier: Optional[Notifier] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.notifier = notifier or Notifier(frontend_url=self.settings.FRONTEND_URL)

    def request_payout(self, agent_id: UUID, request: CreatePayoutRequest) -> PayoutResponse:
        now = _utcnow()

        with self.storage.agent_transaction(agent_id) as tx:
            in_flight = next((p for p in tx.agent_payouts() if not p.is_terminal), None)
            if in_flight is not None:
                raise PayoutInFlightError(in_flight.id, in_flight.status)
            if not tx.agent.is_active:
                raise InvalidStateError(tx.agent.status, message="Only active agents can request payouts")

            amount = to_money(request.amount)
            if amount < self.settings.PAYOUT_MIN_AMOUNT:
                raise ValidationError(
                    f"Minimum payout amount is {self.settings.PAYOUT_MIN_AMOUNT:.2f}", field="amount",
                )
            if amount > self.settings.PAYOUT_MAX_AMOUNT:
                raise ValidationError(
                    f"Maximum payout amount is {self.settings.PAYOUT_MAX_AMOUNT:.2f}", field="amount",
                )
            available = tx.agent.balance.available_balance
            if amount > available:
                raise InsufficientBalanceError(
                    amount, available,
                    f"Insufficient balance. Available: {available:.2f}, Requested: {amount:.2f}",
                )
            validate_payment_details(request.method, request.payment_details)

            tx.agent.balance.reserve_for_payout(amount)
            payout = tx.add_payout(Payout(
                agent_id=agent_id,
                method=request.method,
                amount=amount,
                net_amount=amount,
                currency=request.currency or self.settings.DEFAULT_CURRENCY,
                description=request.description,
                payment_details=request.payment_details,
                requested_at=now,
            ))
            tx.audit(entity_type="payout", entity_id=payout.id, action="request", at=now,
                     to_status=payout.status.value, amount=amount, actor=tx.agent.agent_code)

        logger.info("Payout %s requested by agent %s: %s via %s",
                    payout.id, tx.agent.agent_code, amount, payout.method.value)
        self.notifier.payout_status_changed(tx.agent, payout, None)
        return self._response(tx, payout, "Payout request submitted successfully")

    def update_payout_status(self, payout_id: UUID, request: UpdatePayoutStatusRequest,
                             agent_id: Optional[UUID] = None) -> PayoutResponse:
        """Move a payout along the workflow and apply the balance side effects.

        When ``agent_id`` is given the payout must belong to that agent,
        otherwise it is reported as not found.
        """
        payout = self.get_payout(payout_id)
        if agent_id is not None and payout.agent_id != agent_id:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        now = _utcnow()

        with self.storage.agent_transaction(payout.agent_id) as tx:
            payout = tx.get_payout(payout_id)
            if payout is None:
                raise PayoutNotFoundError(f"Payout {payout_id} not found")
            previous = payout.status
            validate_transition(previous, request.status)
            self._apply_side_effects(tx, payout, request, now)

            payout.status = request.status
            if request.admin_notes:
                payout.admin_notes = request.admin_notes
            if request.transaction_id:
                payout.transaction_id = request.transaction_id
            if request.performed_by:
                payout.processed_by = request.performed_by
            tx.audit(entity_type="payout", entity_id=payout.id, action=request.status.value.lower(),
                     at=now, from_status=previous.value, to_status=request.status.value,
                     amount=payout.amount, actor=request.performed_by,
                     reason=payout.rejection_reason or payout.failure_reason or payout.review_message,
                     notes=request.admin_notes)

        logger.info("Payout %s for agent %s moved %s -> %s",
                    payout.id, tx.agent.agent_code, previous.value, payout.status.value)
        self.notifier.payout_status_changed(tx.agent, payout, previous)
        return self._response(tx, payout, f"Payout {payout.status.value.lower()} successfully")

    def _apply_side_effects(self, tx: AgentTransaction, payout: Payout,
                            request: UpdatePayoutStatusRequest, now: datetime) -> None:
        balance = tx.agent.balance
        target = request.status

        if target == PayoutStatus.PENDING_REVIEW:
            payout.review_message = _required_text(request.review_message, "review_message")
        elif target == PayoutStatus.APPROVED:
            payout.approved_at = now
        elif target == PayoutStatus.PROCESSING:
            payout.attempts += 1
            payout.processed_at = now
        elif target == PayoutStatus.COMPLETED:
            fees = to_money(request.fees if request.fees is not None else ZERO, field="fees")
            if fees < 0 or fees > payout.amount:
                raise ValidationError("fees must be between 0 and the payout amount", field="fees")
            balance.settle_payout_completed(payout.amount)
            payout.fees = fees
            payout.net_amount = payout.amount - fees
            payout.completed_at = now
            payout.closed_at = now
        elif target == PayoutStatus.FAILED:
            payout.failure_reason = _required_text(request.failure_reason, "failure_reason")
            payout.failed_at = now
        elif target == PayoutStatus.REJECTED:
            payout.rejection_reason = _required_text(request.rejection_reason, "rejection_reason")
            balance.return_payout_funds(payout.amount)
            payout.closed_at = now
        elif target == PayoutStatus.CANCELLED:
            balance.return_payout_funds(payout.amount)
            payout.closed_at = now

    # -- convenience wrappers -----------------------------------------------

    def approve_payout(self, payout_id: UUID, admin_notes: Optional[str] = None,
                       performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.APPROVED, admin_notes=admin_notes, performed_by=performed_by,
        ))

    def review_payout(self, payout_id: UUID, review_message: str, admin_notes: Optional[str] = None,
                      performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.PENDING_REVIEW, review_message=review_message,
            admin_notes=admin_notes, performed_by=performed_by,
        ))

    def start_processing(self, payout_id: UUID, performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.PROCESSING, performed_by=performed_by,
        ))

    def complete_payout(self, payout_id: UUID, transaction_id: Optional[str] = None,
                        fees: Any = None, performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.COMPLETED, transaction_id=transaction_id, fees=fees,
            performed_by=performed_by,
        ))

    def fail_payout(self, payout_id: UUID, failure_reason: str,
                    performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.FAILED, failure_reason=failure_reason, performed_by=performed_by,
        ))

    def reject_payout(self, payout_id: UUID, rejection_reason: str, admin_notes: Optional[str] = None,
                      performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.REJECTED, rejection_reason=rejection_reason,
            admin_notes=admin_notes, performed_by=performed_by,
        ))

    def cancel_payout(self, payout_id: UUID, agent_id: Optional[UUID] = None,
                      reason: Optional[str] = None, performed_by: Optional[str] = None) -> PayoutResponse:
        return self.update_payout_status(payout_id, UpdatePayoutStatusRequest(
            status=PayoutStatus.CANCELLED, admin_notes=reason, performed_by=performed_by,
        ), agent_id=agent_id)

    # -- bulk ---------------------------------------------------------------

    def bulk_process_payouts(self, request: BulkPayoutActionRequest) -> BulkOperationReport:
        if len(request.payout_ids) > self.settings.BULK_MAX_ITEMS:
            raise ValidationError(
                f"At most {self.settings.BULK_MAX_ITEMS} payouts may be processed at once",
                field="payout_ids",
            )

        report = BulkOperationReport(action=request.action.value)
        for payout_id in request.payout_ids:
            try:
                if request.action == BulkPayoutAction.APPROVE:
                    response = self.approve_payout(payout_id, request.admin_notes, request.performed_by)
                else:
                    message = request.individual_messages.get(payout_id) or request.review_message
                    response = self.review_payout(payout_id, message, request.admin_notes,
                                                  request.performed_by)
            except LedgerServiceError as e:
                report.failed += 1
                report.results.append(BulkItemResult(
                    id=payout_id, success=False, error=str(e), error_type=type(e).__name__,
                ))
                continue
            except Exception:
                logger.exception("Unexpected failure during bulk %s of payout %s",
                                 request.action.value, payout_id)
                report.failed += 1
                report.results.append(BulkItemResult(
                    id=payout_id, success=False, error="Internal error", error_type="InternalError",
                ))
                continue

            agent = self.storage.get_agent(response.payout.agent_id)
            report.succeeded += 1
            report.results.append(BulkItemResult(
                id=payout_id,
                success=True,
                amount=response.payout.amount,
                agent_code=agent.agent_code if agent else None,
                message=response.message,
            ))

        logger.info("Bulk %s of payouts: %s", request.action.value, report.summary)
        return report

    # -- queries ------------------------------------------------------------

    def get_payout(self, payout_id: UUID) -> Payout:
        payout = self.storage.get_payout(payout_id)
        if not payout:
            raise PayoutNotFoundError(f"Payout {payout_id} not found")
        return payout

    def list_payouts(self, agent_id: Optional[UUID] = None, status: Optional[PayoutStatus] = None,
                     method: Optional[PayoutMethod] = None, limit: int = 50,
                     offset: int = 0) -> PayoutListResponse:
        limit = max(1, min(limit, 200))
        offset = max(0, offset)
        payouts = [
            p for p in self.storage.list_payouts(agent_id)
            if (status is None or p.status == status) and (method is None or p.method == method)
        ]
        payouts.sort(key=lambda p: p.requested_at, reverse=True)
        return PayoutListResponse(
            items=payouts[offset:offset + limit],
            total_count=len(payouts),
            limit=limit,
            offset=offset,
        )

    @staticmethod
    def _response(tx: AgentTransaction, payout: Payout, message: str) -> PayoutResponse:
        return PayoutResponse(
            payout=payout.model_copy(deep=True),
            balance=tx.agent.balance.snapshot(),
            message=message,
        )
