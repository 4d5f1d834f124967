# /flowbot/services/memory_store.py

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from flowbot.models.domain import Bonus, Transaction, User
from flowbot.models.execution import ACTIVE_STATUSES, Execution, ExecutionFilters, ExecutionStatus, StepLog
from flowbot.models.flow import Flow, FlowVersion
from flowbot.services.repositories import ExecutionRepository, FlowRepository, LoyaltyRepository

# In-process repositories. Records are copied on the way in and out so callers
# never share mutable state with the store.


class InMemoryFlowRepository(FlowRepository):
    def __init__(self):
        self.flows: Dict[str, Flow] = {}
        self.versions: Dict[str, FlowVersion] = {}
        self.project_variables: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self.flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def save_flow(self, flow: Flow) -> Flow:
        self.flows[flow.id] = flow.model_copy(deep=True)
        return flow

    async def get_version(self, version_id: str) -> Optional[FlowVersion]:
        return self.versions.get(version_id)

    async def list_versions(self, flow_id: str) -> List[FlowVersion]:
        return sorted((v for v in self.versions.values() if v.flow_id == flow_id), key=lambda v: v.version)

    async def get_active_version(self, project_id: str) -> Optional[FlowVersion]:
        active = [v for v in self.versions.values() if v.project_id == project_id and v.is_active]
        return max(active, key=lambda v: v.created_at) if active else None

    async def next_version_number(self, flow_id: str) -> int:
        numbers = [v.version for v in self.versions.values() if v.flow_id == flow_id]
        return max(numbers, default=0) + 1

    async def activate_version(self, version: FlowVersion) -> FlowVersion:
        async with self._lock:
            for version_id, existing in list(self.versions.items()):
                if existing.project_id == version.project_id and existing.is_active:
                    self.versions[version_id] = existing.model_copy(update={"is_active": False})
            stored = version.model_copy(update={"is_active": True})
            self.versions[stored.id] = stored
            for flow in self.flows.values():
                if flow.project_id == version.project_id:
                    flow.is_active = flow.id == version.flow_id
            return stored

    async def get_project_variables(self, project_id: str) -> Dict[str, Any]:
        return dict(self.project_variables.get(project_id, {}))

    async def set_project_variables(self, project_id: str, variables: Dict[str, Any]) -> None:
        self.project_variables[project_id] = dict(variables)


class InMemoryExecutionRepository(ExecutionRepository):
    def __init__(self):
        self.executions: Dict[str, Execution] = {}
        self.steps: Dict[str, List[StepLog]] = defaultdict(list)

    async def create(self, execution: Execution) -> Execution:
        self.executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def get(self, execution_id: str) -> Optional[Execution]:
        execution = self.executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def save(self, execution: Execution) -> Execution:
        self.executions[execution.id] = execution.model_copy(deep=True)
        return execution

    async def find_active(self, project_id: str, chat_id: str) -> Optional[Execution]:
        candidates = [
            e for e in self.executions.values()
            if e.project_id == project_id and e.chat_id == chat_id and e.status in ACTIVE_STATUSES
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.started_at).model_copy(deep=True)

    async def record_step(self, execution: Execution, step: StepLog) -> None:
        self.steps[execution.id].append(step.model_copy(deep=True))
        self.executions[execution.id] = execution.model_copy(deep=True)

    async def list_steps(self, execution_id: str) -> List[StepLog]:
        return sorted((s.model_copy(deep=True) for s in self.steps.get(execution_id, [])), key=lambda s: s.step)

    async def list_for_flow(self, flow_id: str, filters: ExecutionFilters) -> Tuple[List[Execution], int]:
        def matches(e: Execution) -> bool:
            if e.flow_id != flow_id:
                return False
            if filters.status and e.status != filters.status:
                return False
            if filters.user_id and e.user_id != filters.user_id:
                return False
            if filters.date_from and e.started_at < filters.date_from:
                return False
            if filters.date_to and e.started_at > filters.date_to:
                return False
            if filters.search:
                needle = filters.search.lower()
                if not any(needle in (value or "").lower() for value in (e.id, e.chat_id, e.user_id)):
                    return False
            return True

        found = sorted(filter(matches, self.executions.values()), key=lambda e: e.started_at, reverse=True)
        start = (filters.page - 1) * filters.limit
        page = [e.model_copy(deep=True) for e in found[start:start + filters.limit]]
        return page, len(found)

    async def find_due_waits(self, now: datetime, limit: int = 100) -> List[Execution]:
        due = [
            e for e in self.executions.values()
            if e.status == ExecutionStatus.WAITING and e.wait_deadline is not None and e.wait_deadline <= now
        ]
        due.sort(key=lambda e: e.wait_deadline)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def delete_started_before(self, cutoff: datetime) -> int:
        doomed = [e.id for e in self.executions.values() if e.started_at < cutoff]
        for execution_id in doomed:
            del self.executions[execution_id]
            self.steps.pop(execution_id, None)
        return len(doomed)


class InMemoryLoyaltyRepository(LoyaltyRepository):
    def __init__(self):
        self.users: Dict[str, User] = {}
        self.bonuses: Dict[str, Bonus] = {}
        self.transactions: List[Transaction] = []
        self._lock = asyncio.Lock()

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def find_user(self, project_id: str, *, channel_id: Optional[str] = None,
                        phone: Optional[str] = None, email: Optional[str] = None) -> Optional[User]:
        in_project = [u for u in self.users.values() if u.project_id == project_id]
        for field_name, value in (("channel_id", channel_id), ("phone", phone), ("email", email)):
            if not value:
                continue
            for user in in_project:
                if getattr(user, field_name) == value:
                    return user.model_copy()
        return None

    async def find_user_by_referral_code(self, project_id: str, code: str) -> Optional[User]:
        for user in self.users.values():
            if user.project_id == project_id and user.referral_code == code:
                return user.model_copy()
        return None

    async def insert_user(self, user: User) -> User:
        self.users[user.id] = user.model_copy()
        return user

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        user = self.users.get(user_id)
        if user is None:
            return None
        updated = user.model_copy(update=changes)
        self.users[user_id] = updated
        return updated.model_copy()

    async def count_referrals(self, user_id: str) -> int:
        return sum(1 for u in self.users.values() if u.referred_by == user_id)

    async def list_bonuses(self, user_id: str) -> List[Bonus]:
        owned = [b.model_copy() for b in self.bonuses.values() if b.user_id == user_id]
        return sorted(owned, key=lambda b: b.created_at)

    async def grant_bonus(self, bonus: Bonus, transaction: Transaction) -> Bonus:
        async with self._lock:
            self.bonuses[bonus.id] = bonus.model_copy()
            self.transactions.append(transaction.model_copy())
        return bonus

    async def apply_spend(self, remaining: Dict[str, float], transaction: Transaction) -> None:
        async with self._lock:
            for bonus_id, amount in remaining.items():
                self.bonuses[bonus_id] = self.bonuses[bonus_id].model_copy(update={"amount": max(amount, 0.0)})
            self.transactions.append(transaction.model_copy())

    async def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        owned = sorted((t for t in self.transactions if t.user_id == user_id), key=lambda t: t.created_at, reverse=True)
        if limit is not None:
            owned = owned[:limit]
        return [t.model_copy() for t in owned]
