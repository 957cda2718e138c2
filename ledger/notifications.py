import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol
from uuid import UUID

from pydantic import BaseModel, Field

from .models import Agent, Earning, EarningStatus, Payout, PayoutStatus
from .money import format_money

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    PAYOUT = "payout"
    EARNINGS = "earnings"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationContext(BaseModel):
    payout_id: Optional[UUID] = None
    earning_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    status: Optional[str] = None
    previous_status: Optional[str] = None
    earning_type: Optional[str] = None


class Notification(BaseModel):
    user_id: UUID
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    context: NotificationContext = Field(default_factory=NotificationContext)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSink(Protocol):
    def notify(self, notification: Notification) -> None: ...


class EmailSink(Protocol):
    def send_template_email(self, to: str, subject: str, template: str, context: dict) -> None: ...


class InMemoryNotificationSink:
    def __init__(self):
        self.sent: list[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.sent.append(notification)


class LoggingEmailSink:
    def __init__(self):
        self.sent: list[dict] = []

    def send_template_email(self, to: str, subject: str, template: str, context: dict) -> None:
        self.sent.append({"to": to, "subject": subject, "template": template, "context": context})
        logger.info("Email %r (%s) queued for %s", subject, template, to)


# title, message template, priority
_PAYOUT_STATUS_MESSAGES: dict[PayoutStatus, tuple[str, str, NotificationPriority]] = {
    PayoutStatus.REQUESTED: (
        "Payout Requested",
        "Your payout request of {amount} has been received and is awaiting review.",
        NotificationPriority.LOW,
    ),
    PayoutStatus.PENDING_REVIEW: (
        "Payout Under Review",
        "Your payout request of {amount} requires additional review.{extra}",
        NotificationPriority.MEDIUM,
    ),
    PayoutStatus.APPROVED: (
        "Payout Approved",
        "Your payout request of {amount} has been approved and will be processed soon.",
        NotificationPriority.HIGH,
    ),
    PayoutStatus.PROCESSING: (
        "Payout Processing",
        "Your payout of {amount} is being processed.",
        NotificationPriority.MEDIUM,
    ),
    PayoutStatus.COMPLETED: (
        "Payout Completed",
        "Your payout of {amount} has been sent. Net amount: {net}.",
        NotificationPriority.HIGH,
    ),
    PayoutStatus.FAILED: (
        "Payout Failed",
        "Your payout of {amount} could not be completed and will be retried.{extra}",
        NotificationPriority.HIGH,
    ),
    PayoutStatus.REJECTED: (
        "Payout Rejected",
        "Your payout request of {amount} was rejected and the funds returned to your balance.{extra}",
        NotificationPriority.HIGH,
    ),
    PayoutStatus.CANCELLED: (
        "Payout Cancelled",
        "Your payout request of {amount} was cancelled and the funds returned to your balance.",
        NotificationPriority.MEDIUM,
    ),
}


class Notifier:
    """Builds ledger notifications and hands them to the collaborator sinks.

    Delivery is fire-and-forget: any exception raised by a sink is logged and
    dropped so that it can never undo a committed ledger operation.
    """

    def __init__(self, notification_sink: Optional[NotificationSink] = None,
                 email_sink: Optional[EmailSink] = None, frontend_url: str = ""):
        self.notification_sink = notification_sink or InMemoryNotificationSink()
        self.email_sink = email_sink or LoggingEmailSink()
        self.frontend_url = frontend_url.rstrip("/")

    def payout_status_changed(self, agent: Agent, payout: Payout,
                              previous_status: Optional[PayoutStatus]) -> None:
        title, template, priority = _PAYOUT_STATUS_MESSAGES[payout.status]
        extra = ""
        if payout.status == PayoutStatus.PENDING_REVIEW and payout.review_message:
            extra = f" Message: {payout.review_message}"
        elif payout.status == PayoutStatus.REJECTED and payout.rejection_reason:
            extra = f" Reason: {payout.rejection_reason}"
        elif payout.status == PayoutStatus.FAILED and payout.failure_reason:
            extra = f" Reason: {payout.failure_reason}"

        self._deliver(Notification(
            user_id=agent.user_id,
            type=NotificationType.PAYOUT,
            priority=priority,
            title=title,
            message=template.format(
                amount=format_money(payout.amount, payout.currency),
                net=format_money(payout.net_amount, payout.currency),
                extra=extra,
            ),
            action_url=f"/dashboard/payouts/{payout.id}",
            action_text="View Payout Details",
            context=NotificationContext(
                payout_id=payout.id,
                amount=payout.amount,
                status=payout.status.value,
                previous_status=previous_status.value if previous_status else None,
            ),
        ))

        if payout.status == PayoutStatus.REQUESTED:
            self._email(agent, "Payout Request Received", "payout-request", payout)
        elif payout.status == PayoutStatus.APPROVED:
            self._email(agent, "Payout Approved", "payout-approved", payout)

    def earning_recorded(self, agent: Agent, earning: Earning) -> None:
        positive = earning.amount >= 0
        amount = format_money(earning.amount, earning.currency)
        if positive:
            title = "New Earnings Added"
            message = f"You've earned {amount}! {earning.description or ''}".strip()
        else:
            title = "Earnings Adjustment"
            message = f"An adjustment of {amount} has been made to your account. {earning.description or ''}".strip()
        self._earning_notification(
            agent, earning, title, message,
            NotificationPriority.MEDIUM if positive else NotificationPriority.HIGH,
        )

    def earning_status_changed(self, agent: Agent, earning: Earning) -> None:
        amount = format_money(earning.amount, earning.currency)
        title = f"Earning {earning.status.value.title()}"
        message = f"Your earning of {amount} is now {earning.status.value.lower()}."
        if earning.status == EarningStatus.CANCELLED and earning.rejection_reason:
            message += f" Reason: {earning.rejection_reason}"
        self._earning_notification(agent, earning, title, message, NotificationPriority.MEDIUM)

    def _earning_notification(self, agent: Agent, earning: Earning, title: str, message: str,
                              priority: NotificationPriority) -> None:
        self._deliver(Notification(
            user_id=agent.user_id,
            type=NotificationType.EARNINGS,
            priority=priority,
            title=title,
            message=message,
            action_url="/dashboard/earnings",
            action_text="View Earnings",
            context=NotificationContext(
                earning_id=earning.id,
                amount=earning.amount,
                status=earning.status.value,
                earning_type=earning.type.value,
            ),
        ))

    def _deliver(self, notification: Notification) -> None:
        try:
            self.notification_sink.notify(notification)
        except Exception:
            logger.exception("Failed to send %s notification to user %s",
                             notification.type.value, notification.user_id)

    def _email(self, agent: Agent, subject: str, template: str, payout: Payout) -> None:
        if not agent.email:
            return
        try:
            self.email_sink.send_template_email(agent.email, subject, template, {
                "full_name": agent.full_name,
                "agent_code": agent.agent_code,
                "payout_id": str(payout.id),
                "amount": format_money(payout.amount, payout.currency),
                "method": payout.method.value,
                "requested_at": payout.requested_at.isoformat(),
                "dashboard_url": f"{self.frontend_url}/dashboard/payouts/{payout.id}",
            })
        except Exception:
            logger.exception("Failed to send %s email for payout %s", template, payout.id)
