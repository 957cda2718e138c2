"""
Commission Ledger for Referral Agents

This module provides:
- Decimal-exact commission calculation
- Earning lifecycle: pending → confirmed → paid / cancelled / disputed
- Agent balances (total, available, pending) that can never go negative
- Payout workflow: requested → review → approved → processing → completed
- Reconciliation of balances from earning and payout history
"""

from .balance import AgentBalance, BalanceSnapshot
from .models import (
    Agent,
    Earning,
    EarningStatus,
    EarningType,
    Payout,
    PayoutMethod,
    PayoutStatus,
)
from .service import LedgerService

__all__ = [
    "Agent",
    "AgentBalance",
    "BalanceSnapshot",
    "Earning",
    "EarningStatus",
    "EarningType",
    "Payout",
    "PayoutMethod",
    "PayoutStatus",
    "LedgerService",
]
