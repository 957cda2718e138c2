import logging
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .balance import BalanceSnapshot
from .config import get_settings
from .errors import (
    BalanceInvariantError,
    DuplicateReferenceError,
    InsufficientBalanceError,
    InvalidStateError,
    LedgerServiceError,
    NotFoundError,
    PayoutInFlightError,
    ValidationError,
)
from .models import (
    AgentProfile,
    AuditEntry,
    BulkEarningsActionRequest,
    BulkEarningsUploadRequest,
    BulkOperationReport,
    BulkPayoutActionRequest,
    BulkUploadReport,
    CancelPayoutRequest,
    ConfirmEarningRequest,
    CreateEarningAdjustmentRequest,
    CreateEarningRequest,
    CreatePayoutRequest,
    DisputeEarningRequest,
    Earning,
    EarningListResponse,
    EarningResponse,
    EarningStatus,
    EarningType,
    FinancialOverview,
    MarkEarningPaidRequest,
    Payout,
    PayoutListResponse,
    PayoutMethod,
    PayoutResponse,
    PayoutStatus,
    ReconciliationResult,
    ReferralEventRequest,
    RejectEarningRequest,
    ResumeEarningsRequest,
    SuspendEarningsRequest,
    UpdatePayoutStatusRequest,
)
from .service import LedgerService

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="Commission ledger and payout workflow for referral agents",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(settings=settings)


def _status_for(exc: LedgerServiceError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvalidStateError, DuplicateReferenceError, PayoutInFlightError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, InsufficientBalanceError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError):
    content = {"detail": str(exc), "type": type(exc).__name__}
    if isinstance(exc, ValidationError) and exc.field:
        content["field"] = exc.field
    if isinstance(exc, InvalidStateError):
        content["current_status"] = exc.current.value
        content["allowed_transitions"] = exc.allowed
    if isinstance(exc, InsufficientBalanceError):
        content["requested"] = str(exc.requested)
        content["available"] = str(exc.available)
    return JSONResponse(status_code=_status_for(exc), content=content)


@app.exception_handler(BalanceInvariantError)
async def balance_invariant_handler(request: Request, exc: BalanceInvariantError):
    logger.error("Balance invariant violated on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal ledger error", "type": "InternalError"},
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "agent-ledger", "environment": settings.ENVIRONMENT}


# -- agents -----------------------------------------------------------------

@app.get("/agents/by-code/{agent_code}", response_model=AgentProfile, tags=["Agents"])
def get_agent_by_code(agent_code: str) -> AgentProfile:
    return AgentProfile.from_agent(ledger_service.get_agent_by_code(agent_code))


@app.get("/agents/{agent_id}", response_model=AgentProfile, tags=["Agents"])
def get_agent(agent_id: UUID) -> AgentProfile:
    return AgentProfile.from_agent(ledger_service.get_agent(agent_id))


@app.get("/agents/{agent_id}/balance", response_model=BalanceSnapshot, tags=["Agents"])
def get_agent_balance(agent_id: UUID) -> BalanceSnapshot:
    return ledger_service.get_balance(agent_id)


@app.get("/agents/{agent_id}/overview", response_model=FinancialOverview, tags=["Agents"])
def get_financial_overview(agent_id: UUID) -> FinancialOverview:
    return ledger_service.get_financial_overview(agent_id)


@app.get("/agents/{agent_id}/audit", response_model=list[AuditEntry], tags=["Agents"])
def get_audit_trail(agent_id: UUID) -> list[AuditEntry]:
    return ledger_service.get_audit_trail(agent_id)


@app.post("/agents/{agent_id}/earnings/suspend", response_model=AgentProfile, tags=["Agents"])
def suspend_agent_earnings(agent_id: UUID, request: SuspendEarningsRequest) -> AgentProfile:
    agent = ledger_service.suspend_agent_earnings(
        agent_id, request.reason, request.admin_notes, request.performed_by,
    )
    return AgentProfile.from_agent(agent)


@app.post("/agents/{agent_id}/earnings/resume", response_model=AgentProfile, tags=["Agents"])
def resume_agent_earnings(agent_id: UUID, request: ResumeEarningsRequest) -> AgentProfile:
    agent = ledger_service.resume_agent_earnings(agent_id, request.admin_notes, request.performed_by)
    return AgentProfile.from_agent(agent)


@app.post("/agents/{agent_id}/reconcile", response_model=ReconciliationResult, tags=["Reconciliation"])
def reconcile_agent(agent_id: UUID) -> ReconciliationResult:
    return ledger_service.reconciliation.recalculate_balances(agent_id)


@app.post("/reconcile", response_model=list[ReconciliationResult], tags=["Reconciliation"])
def reconcile_all() -> list[ReconciliationResult]:
    return ledger_service.reconciliation.reconcile_all()


# -- earnings ---------------------------------------------------------------

@app.post("/earnings", response_model=EarningResponse, status_code=status.HTTP_201_CREATED, tags=["Earnings"])
def create_earning(request: CreateEarningRequest) -> EarningResponse:
    return ledger_service.earnings.create_earning(request)


@app.post("/referrals", response_model=EarningResponse, status_code=status.HTTP_201_CREATED, tags=["Earnings"])
def record_referral(request: ReferralEventRequest) -> EarningResponse:
    return ledger_service.earnings.record_referral(request)


@app.post("/agents/{agent_id}/adjustments", response_model=EarningResponse,
          status_code=status.HTTP_201_CREATED, tags=["Earnings"])
def create_earning_adjustment(agent_id: UUID, request: CreateEarningAdjustmentRequest) -> EarningResponse:
    return ledger_service.earnings.create_earning_adjustment(agent_id, request)


@app.get("/earnings", response_model=EarningListResponse, tags=["Earnings"])
def list_earnings(agent_id: Optional[UUID] = None, status: Optional[EarningStatus] = None,
                  type: Optional[EarningType] = None, limit: int = 50,
                  offset: int = 0) -> EarningListResponse:
    return ledger_service.earnings.list_earnings(agent_id, status, type, limit, offset)


@app.post("/earnings/bulk-approve", response_model=BulkOperationReport, tags=["Earnings"])
def bulk_approve_earnings(request: BulkEarningsActionRequest) -> BulkOperationReport:
    return ledger_service.earnings.bulk_approve(request)


@app.post("/earnings/bulk-reject", response_model=BulkOperationReport, tags=["Earnings"])
def bulk_reject_earnings(request: BulkEarningsActionRequest) -> BulkOperationReport:
    return ledger_service.earnings.bulk_reject(request)


@app.post("/earnings/bulk-upload", response_model=BulkUploadReport, tags=["Earnings"])
def bulk_upload_earnings(request: BulkEarningsUploadRequest) -> BulkUploadReport:
    return ledger_service.earnings.bulk_upload_earnings(request)


@app.get("/earnings/{earning_id}", response_model=Earning, tags=["Earnings"])
def get_earning(earning_id: UUID) -> Earning:
    return ledger_service.earnings.get_earning(earning_id)


@app.post("/earnings/{earning_id}/confirm", response_model=EarningResponse, tags=["Earnings"])
def confirm_earning(earning_id: UUID, request: ConfirmEarningRequest) -> EarningResponse:
    return ledger_service.earnings.confirm_earning(earning_id, request)


@app.post("/earnings/{earning_id}/reject", response_model=EarningResponse, tags=["Earnings"])
def reject_earning(earning_id: UUID, request: RejectEarningRequest) -> EarningResponse:
    return ledger_service.earnings.reject_earning(earning_id, request)


@app.post("/earnings/{earning_id}/dispute", response_model=EarningResponse, tags=["Earnings"])
def dispute_earning(earning_id: UUID, request: DisputeEarningRequest) -> EarningResponse:
    return ledger_service.earnings.dispute_earning(earning_id, request)


@app.post("/earnings/{earning_id}/mark-paid", response_model=EarningResponse, tags=["Earnings"])
def mark_earning_paid(earning_id: UUID, request: MarkEarningPaidRequest) -> EarningResponse:
    return ledger_service.earnings.mark_earning_paid(earning_id, request)


# -- payouts ----------------------------------------------------------------

@app.post("/agents/{agent_id}/payouts", response_model=PayoutResponse,
          status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(agent_id: UUID, request: CreatePayoutRequest) -> PayoutResponse:
    return ledger_service.payouts.request_payout(agent_id, request)


@app.get("/payouts", response_model=PayoutListResponse, tags=["Payouts"])
def list_payouts(agent_id: Optional[UUID] = None, status: Optional[PayoutStatus] = None,
                 method: Optional[PayoutMethod] = None, limit: int = 50,
                 offset: int = 0) -> PayoutListResponse:
    return ledger_service.payouts.list_payouts(agent_id, status, method, limit, offset)


@app.post("/payouts/bulk", response_model=BulkOperationReport, tags=["Payouts"])
def bulk_process_payouts(request: BulkPayoutActionRequest) -> BulkOperationReport:
    return ledger_service.payouts.bulk_process_payouts(request)


@app.get("/payouts/{payout_id}", response_model=Payout, tags=["Payouts"])
def get_payout(payout_id: UUID) -> Payout:
    return ledger_service.payouts.get_payout(payout_id)


@app.patch("/payouts/{payout_id}/status", response_model=PayoutResponse, tags=["Payouts"])
def update_payout_status(payout_id: UUID, request: UpdatePayoutStatusRequest) -> PayoutResponse:
    return ledger_service.payouts.update_payout_status(payout_id, request)


@app.post("/payouts/{payout_id}/cancel", response_model=PayoutResponse, tags=["Payouts"])
def cancel_payout(payout_id: UUID, request: CancelPayoutRequest,
                  agent_id: Optional[UUID] = None) -> PayoutResponse:
    return ledger_service.payouts.cancel_payout(payout_id, agent_id, request.reason, request.performed_by)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
