import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID

from .balance import AgentBalance
from .errors import AgentNotFoundError, DuplicateReferenceError
from .models import (
    Agent,
    AgentStatus,
    AgentTier,
    AuditEntry,
    Earning,
    EarningSource,
    EarningStatus,
    EarningType,
    Payout,
)

DEMO_AGENT_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_AGENT_CODE = "AGT1001"
SECOND_AGENT_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
SECOND_AGENT_CODE = "AGT1002"


def normalize_agent_code(code: str) -> str:
    return (code or "").strip().upper()


class AgentTransaction:
    """Staged changes for one agent, written to storage all at once on commit."""

    def __init__(self, storage: "InMemoryStorage", agent: Agent):
        self._storage = storage
        self.agent = agent
        self.earnings: dict[UUID, Earning] = {}
        self.payouts: dict[UUID, Payout] = {}
        self.audit_entries: list[AuditEntry] = []

    def get_earning(self, earning_id: UUID) -> Optional[Earning]:
        if earning_id not in self.earnings:
            earning = self._storage.get_earning(earning_id)
            if earning is None or earning.agent_id != self.agent.id:
                return None
            self.earnings[earning_id] = earning
        return self.earnings[earning_id]

    def get_payout(self, payout_id: UUID) -> Optional[Payout]:
        if payout_id not in self.payouts:
            payout = self._storage.get_payout(payout_id)
            if payout is None or payout.agent_id != self.agent.id:
                return None
            self.payouts[payout_id] = payout
        return self.payouts[payout_id]

    def add_earning(self, earning: Earning) -> Earning:
        self.earnings[earning.id] = earning
        return earning

    def add_payout(self, payout: Payout) -> Payout:
        self.payouts[payout.id] = payout
        return payout

    def agent_earnings(self) -> list[Earning]:
        stored = {e.id: e for e in self._storage.list_earnings(agent_id=self.agent.id)}
        stored.update(self.earnings)
        return list(stored.values())

    def agent_payouts(self) -> list[Payout]:
        stored = {p.id: p for p in self._storage.list_payouts(agent_id=self.agent.id)}
        stored.update(self.payouts)
        return list(stored.values())

    def audit(self, *, entity_type: str, entity_id: UUID, action: str, at: datetime,
              from_status: Optional[str] = None, to_status: Optional[str] = None,
              amount: Optional[Decimal] = None, actor: Optional[str] = None,
              reason: Optional[str] = None, notes: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(
            agent_id=self.agent.id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            amount=amount,
            actor=actor,
            reason=reason,
            notes=notes,
            created_at=at,
        )
        self.audit_entries.append(entry)
        return entry


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.agents: dict[UUID, Agent] = {}
        self.earnings: dict[UUID, Earning] = {}
        self.payouts: dict[UUID, Payout] = {}
        self.audit_log: list[AuditEntry] = []
        self.agent_code_index: dict[str, UUID] = {}
        self.reference_index: dict[str, UUID] = {}

        # guards every read and the final write of a transaction
        self._commit_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._agent_locks: dict[UUID, threading.RLock] = {}

        if seed:
            self._seed_data()

    def _seed_data(self):
        now = datetime.now(timezone.utc)

        self.add_agent(Agent(
            id=DEMO_AGENT_ID,
            user_id=UUID("11111111-1111-1111-1111-111111111111"),
            agent_code=DEMO_AGENT_CODE,
            full_name="John Referrer",
            email="referrer@example.com",
            status=AgentStatus.ACTIVE,
            tier=AgentTier.GOLD,
            commission_rate=Decimal("10.00"),
            balance=AgentBalance.opening(
                total_earnings=Decimal("100.00"),
                available_balance=Decimal("100.00"),
            ),
            created_at=now,
        ))
        welcome = Earning(
            agent_id=DEMO_AGENT_ID,
            type=EarningType.BONUS,
            status=EarningStatus.CONFIRMED,
            amount=Decimal("100.00"),
            description="Welcome bonus",
            reference_id="SEED-WELCOME-AGT1001",
            source=EarningSource.MANUAL,
            earned_at=now,
            confirmed_at=now,
            created_by="seed",
        )
        self.earnings[welcome.id] = welcome
        self.reference_index[welcome.reference_id] = welcome.id

        self.add_agent(Agent(
            id=SECOND_AGENT_ID,
            user_id=UUID("22222222-2222-2222-2222-222222222222"),
            agent_code=SECOND_AGENT_CODE,
            full_name="Jane Agent",
            email="agent@example.com",
            status=AgentStatus.ACTIVE,
            tier=AgentTier.BRONZE,
            created_at=now,
        ))

    # -- agents -------------------------------------------------------------

    def add_agent(self, agent: Agent) -> Agent:
        code = normalize_agent_code(agent.agent_code)
        with self._commit_lock:
            if code in self.agent_code_index and self.agent_code_index[code] != agent.id:
                raise ValueError(f"Agent code {code} already registered")
            agent = agent.model_copy(update={"agent_code": code}, deep=True)
            self.agents[agent.id] = agent
            self.agent_code_index[code] = agent.id
        return agent.model_copy(deep=True)

    def get_agent(self, agent_id: UUID) -> Optional[Agent]:
        with self._commit_lock:
            agent = self.agents.get(agent_id)
            return agent.model_copy(deep=True) if agent else None

    def get_agent_by_code(self, agent_code: str) -> Optional[Agent]:
        with self._commit_lock:
            agent_id = self.agent_code_index.get(normalize_agent_code(agent_code))
            return self.get_agent(agent_id) if agent_id else None

    def list_agents(self) -> list[Agent]:
        with self._commit_lock:
            return [a.model_copy(deep=True) for a in self.agents.values()]

    # -- earnings / payouts -------------------------------------------------

    def get_earning(self, earning_id: UUID) -> Optional[Earning]:
        with self._commit_lock:
            earning = self.earnings.get(earning_id)
            return earning.model_copy(deep=True) if earning else None

    def list_earnings(self, agent_id: Optional[UUID] = None) -> list[Earning]:
        with self._commit_lock:
            return [
                e.model_copy(deep=True) for e in self.earnings.values()
                if agent_id is None or e.agent_id == agent_id
            ]

    def reference_exists(self, reference_id: str) -> bool:
        with self._commit_lock:
            return reference_id in self.reference_index

    def get_payout(self, payout_id: UUID) -> Optional[Payout]:
        with self._commit_lock:
            payout = self.payouts.get(payout_id)
            return payout.model_copy(deep=True) if payout else None

    def list_payouts(self, agent_id: Optional[UUID] = None) -> list[Payout]:
        with self._commit_lock:
            return [
                p.model_copy(deep=True) for p in self.payouts.values()
                if agent_id is None or p.agent_id == agent_id
            ]

    def list_audit_entries(self, agent_id: Optional[UUID] = None) -> list[AuditEntry]:
        with self._commit_lock:
            return [
                a.model_copy() for a in self.audit_log
                if agent_id is None or a.agent_id == agent_id
            ]

    # -- transactions -------------------------------------------------------

    def _lock_for(self, agent_id: UUID) -> threading.RLock:
        with self._locks_guard:
            if agent_id not in self._agent_locks:
                self._agent_locks[agent_id] = threading.RLock()
            return self._agent_locks[agent_id]

    @contextmanager
    def agent_transaction(self, agent_id: UUID) -> Iterator[AgentTransaction]:
        """Serialize work on one agent and apply it atomically.

        The block works on copies; nothing reaches storage unless it exits
        without raising, in which case the agent, every staged earning and
        payout, and the audit entries are written together.
        """
        with self._lock_for(agent_id):
            agent = self.get_agent(agent_id)
            if agent is None:
                raise AgentNotFoundError(f"Agent {agent_id} not found")
            tx = AgentTransaction(self, agent)
            yield tx
            self._commit(tx)

    def _commit(self, tx: AgentTransaction) -> None:
        with self._commit_lock:
            for earning in tx.earnings.values():
                if not earning.reference_id:
                    continue
                owner = self.reference_index.get(earning.reference_id)
                if owner is not None and owner != earning.id:
                    raise DuplicateReferenceError(earning.reference_id)

            self.agents[tx.agent.id] = tx.agent.model_copy(deep=True)
            for earning in tx.earnings.values():
                self.earnings[earning.id] = earning.model_copy(deep=True)
                if earning.reference_id:
                    self.reference_index[earning.reference_id] = earning.id
            for payout in tx.payouts.values():
                self.payouts[payout.id] = payout.model_copy(deep=True)
            self.audit_log.extend(tx.audit_entries)
