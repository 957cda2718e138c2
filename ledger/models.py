from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, ConfigDict, computed_field

from .balance import AgentBalance, BalanceSnapshot
from .money import ZERO


class AgentStatus(str, Enum):
    PENDING_APPLICATION = "pending_application"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


_TIER_ORDER = ("bronze", "silver", "gold", "platinum", "diamond")


class AgentTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self.value)

    def __lt__(self, other):
        if not isinstance(other, AgentTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, AgentTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, AgentTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, AgentTier):
            return NotImplemented
        return self.rank >= other.rank


class EarningType(str, Enum):
    REFERRAL_COMMISSION = "REFERRAL_COMMISSION"
    BONUS = "BONUS"
    PENALTY = "PENALTY"
    ADJUSTMENT = "ADJUSTMENT"
    PROMOTION_BONUS = "PROMOTION_BONUS"


class EarningStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class EarningSource(str, Enum):
    REFERRAL = "REFERRAL"
    MANUAL = "MANUAL"
    ADJUSTMENT = "ADJUSTMENT"
    BULK_UPLOAD = "BULK_UPLOAD"


class AdjustmentType(str, Enum):
    BONUS = "bonus"
    PENALTY = "penalty"
    CORRECTION = "correction"
    REFUND = "refund"
    FEE = "fee"
    OTHER = "other"


class PayoutStatus(str, Enum):
    REQUESTED = "REQUESTED"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_PAYOUT_STATUSES = frozenset({
    PayoutStatus.COMPLETED,
    PayoutStatus.REJECTED,
    PayoutStatus.CANCELLED,
})


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    PLANETTALK_CREDIT = "PLANETTALK_CREDIT"
    MOBILE_MONEY = "MOBILE_MONEY"


class BulkPayoutAction(str, Enum):
    APPROVE = "approve"
    REVIEW = "review"


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class EarningsSuspension(BaseModel):
    reason: str
    suspended_at: datetime
    admin_notes: Optional[str] = None


class SuspendEarningsRequest(BaseModel):
    reason: str = Field(..., max_length=500)
    admin_notes: Optional[str] = Field(default=None, max_length=1000)
    performed_by: Optional[str] = None


class ResumeEarningsRequest(BaseModel):
    admin_notes: Optional[str] = Field(default=None, max_length=1000)
    performed_by: Optional[str] = None


class Agent(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID = Field(default_factory=uuid4)
    agent_code: str
    full_name: str = ""
    email: Optional[str] = None
    status: AgentStatus = AgentStatus.ACTIVE
    tier: AgentTier = AgentTier.BRONZE
    commission_rate: Optional[Decimal] = None  # percent; settings default when unset
    balance: AgentBalance = Field(default_factory=AgentBalance)
    total_referrals: int = 0
    earnings_suspension: Optional[EarningsSuspension] = None
    last_activity_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE

    @property
    def earnings_suspended(self) -> bool:
        return self.earnings_suspension is not None

    def can_earn(self) -> bool:
        return self.is_active and not self.earnings_suspended

    def record_referral(self, at: datetime) -> None:
        self.total_referrals += 1
        self.last_activity_at = at


# ---------------------------------------------------------------------------
# Earnings
# ---------------------------------------------------------------------------

class Earning(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    type: EarningType
    status: EarningStatus = EarningStatus.PENDING
    amount: Decimal
    currency: str = "USD"
    commission_rate: Optional[Decimal] = None
    description: Optional[str] = None
    reference_id: Optional[str] = None
    referral_usage_id: Optional[UUID] = None
    source: EarningSource = EarningSource.MANUAL
    adjustment_type: Optional[AdjustmentType] = None
    batch_id: Optional[str] = None
    earned_at: datetime
    confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class CreateEarningRequest(BaseModel):
    agent_id: UUID
    type: EarningType = EarningType.REFERRAL_COMMISSION
    amount: Decimal
    currency: Optional[str] = None
    commission_rate: Optional[Decimal] = None
    description: Optional[str] = Field(default=None, max_length=255)
    reference_id: Optional[str] = Field(default=None, max_length=100)
    referral_usage_id: Optional[UUID] = None
    earned_at: Optional[datetime] = None
    auto_confirm: bool = False
    performed_by: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "agent_id": "550e8400-e29b-41d4-a716-446655440000",
            "type": "BONUS",
            "amount": 25.00,
            "description": "Monthly activity bonus",
            "reference_id": "BONUS-2025-01-0001",
        }
    })


class ReferralEventRequest(BaseModel):
    agent_code: str = Field(..., max_length=20)
    customer_ref: str = Field(..., description="Customer name, phone or external id")
    signup_amount: Optional[Decimal] = None
    bonus_rate: Decimal = Decimal("0")
    reference_id: Optional[str] = Field(default=None, max_length=100)
    referral_usage_id: Optional[UUID] = None


class ConfirmEarningRequest(BaseModel):
    notes: Optional[str] = None
    performed_by: Optional[str] = None


class RejectEarningRequest(BaseModel):
    reason: str = Field(..., description="Reason for rejection (stored for audit)")
    notes: Optional[str] = None
    performed_by: Optional[str] = None


class DisputeEarningRequest(BaseModel):
    reason: str
    performed_by: Optional[str] = None


class MarkEarningPaidRequest(BaseModel):
    payment_reference: Optional[str] = Field(default=None, max_length=100)
    performed_by: Optional[str] = None


class BulkEarningsActionRequest(BaseModel):
    earning_ids: list[UUID] = Field(..., min_length=1)
    reason: Optional[str] = None
    notes: Optional[str] = None
    performed_by: Optional[str] = None


class CreateEarningAdjustmentRequest(BaseModel):
    amount: Decimal = Field(..., description="Positive for credits, negative for debits")
    type: AdjustmentType
    reason: str = Field(..., max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    reference_id: Optional[str] = Field(default=None, max_length=100)
    performed_by: Optional[str] = None


class EarningUploadEntry(BaseModel):
    agent_code: str = Field(..., max_length=20)
    amount: Decimal
    type: EarningType = EarningType.REFERRAL_COMMISSION
    description: str = Field(..., max_length=255)
    reference_id: Optional[str] = Field(default=None, max_length=100)
    commission_rate: Optional[Decimal] = None
    earned_at: Optional[datetime] = None
    currency: Optional[str] = None


class BulkEarningsUploadRequest(BaseModel):
    earnings: list[EarningUploadEntry] = Field(..., min_length=1)
    auto_confirm: bool = False
    batch_description: Optional[str] = None
    performed_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Payouts
# ---------------------------------------------------------------------------

class BankAccountDetails(BaseModel):
    bank_name: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_number: Optional[str] = None
    branch_name_or_code: Optional[str] = None
    swift_bic_code: Optional[str] = None
    currency: Optional[str] = None
    bank_country: Optional[str] = None
    additional_notes: Optional[str] = None


class PlanetTalkCreditDetails(BaseModel):
    planettalk_mobile: Optional[str] = None
    account_name: Optional[str] = None


class MobileMoneyDetails(BaseModel):
    phone_number: Optional[str] = None
    provider: Optional[str] = None
    account_name: Optional[str] = None


class PaymentDetails(BaseModel):
    bank_account: Optional[BankAccountDetails] = None
    planettalk_credit: Optional[PlanetTalkCreditDetails] = None
    mobile_money: Optional[MobileMoneyDetails] = None


class Payout(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    status: PayoutStatus = PayoutStatus.REQUESTED
    method: PayoutMethod
    amount: Decimal
    fees: Decimal = ZERO
    net_amount: Decimal
    currency: str = "USD"
    description: Optional[str] = None
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    transaction_id: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    review_message: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    processed_by: Optional[str] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYOUT_STATUSES

    @property
    def processing_time(self) -> Optional[float]:
        if not self.approved_at:
            return None
        return (self.approved_at - self.requested_at).total_seconds()


class CreatePayoutRequest(BaseModel):
    amount: Decimal
    method: PayoutMethod = PayoutMethod.BANK_TRANSFER
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    description: Optional[str] = Field(default=None, max_length=500)
    currency: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 50.00,
            "method": "PLANETTALK_CREDIT",
            "payment_details": {"planettalk_credit": {"planettalk_mobile": "+263771234567"}},
        }
    })


class UpdatePayoutStatusRequest(BaseModel):
    status: PayoutStatus
    admin_notes: Optional[str] = Field(default=None, max_length=1000)
    rejection_reason: Optional[str] = Field(default=None, max_length=500)
    review_message: Optional[str] = Field(default=None, max_length=1000)
    failure_reason: Optional[str] = Field(default=None, max_length=500)
    transaction_id: Optional[str] = Field(default=None, max_length=100)
    fees: Optional[Decimal] = None
    performed_by: Optional[str] = None


class CancelPayoutRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    performed_by: Optional[str] = None


class BulkPayoutActionRequest(BaseModel):
    payout_ids: list[UUID] = Field(..., min_length=1)
    action: BulkPayoutAction
    admin_notes: Optional[str] = None
    review_message: Optional[str] = None
    individual_messages: dict[UUID, str] = Field(default_factory=dict)
    performed_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit and responses
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    entity_type: str
    entity_id: UUID
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    amount: Optional[Decimal] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class EarningResponse(BaseModel):
    earning: Earning
    balance: BalanceSnapshot
    message: str


class PayoutResponse(BaseModel):
    payout: Payout
    balance: BalanceSnapshot
    message: str


class BulkItemResult(BaseModel):
    id: UUID
    success: bool
    amount: Optional[Decimal] = None
    agent_code: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class BulkOperationReport(BaseModel):
    action: str
    succeeded: int = 0
    failed: int = 0
    results: list[BulkItemResult] = Field(default_factory=list)

    @computed_field
    @property
    def summary(self) -> str:
        return f"{self.succeeded} {self.action} succeeded, {self.failed} failed"


class UploadItemResult(BaseModel):
    index: int
    agent_code: str
    status: str  # success | failed | skipped
    amount: Optional[Decimal] = None
    earning_id: Optional[UUID] = None
    message: Optional[str] = None
    error: Optional[str] = None


class BulkUploadReport(BaseModel):
    batch_id: str
    total_processed: int
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount: Decimal = ZERO
    updated_agents: list[str] = Field(default_factory=list)
    invalid_agent_codes: list[str] = Field(default_factory=list)
    duplicate_references: list[str] = Field(default_factory=list)
    details: list[UploadItemResult] = Field(default_factory=list)
    processed_at: datetime


class ReconciliationResult(BaseModel):
    agent_id: UUID
    before: BalanceSnapshot
    after: BalanceSnapshot
    total_referrals: int
    drift_detected: bool


class EarningListResponse(BaseModel):
    items: list[Earning]
    total_count: int
    limit: int
    offset: int


class PayoutListResponse(BaseModel):
    items: list[Payout]
    total_count: int
    limit: int
    offset: int


class FinancialOverview(BaseModel):
    agent_id: UUID
    agent_code: str
    status: AgentStatus
    tier: AgentTier
    balance: BalanceSnapshot
    earnings_count: int
    earnings_by_type: dict[str, Decimal]
    earnings_by_status: dict[str, int]
    payouts_count: int
    payouts_total: Decimal
    payouts_by_status: dict[str, int]
    average_processing_time: Optional[float] = None


class AgentProfile(BaseModel):
    id: UUID
    user_id: UUID
    agent_code: str
    full_name: str
    email: Optional[str] = None
    status: AgentStatus
    tier: AgentTier
    commission_rate: Optional[Decimal] = None
    balance: BalanceSnapshot
    total_referrals: int
    earnings_suspension: Optional[EarningsSuspension] = None
    last_activity_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentProfile":
        return cls(**agent.model_dump(exclude={"balance"}), balance=agent.balance.snapshot())
