# /flowbot/services/repositories.py

"""
Storage interfaces used by the runtime.

Two implementations exist: ``memory_store`` (a single process, used by
tests and single-worker deployments) and ``db_service`` (MongoDB via motor).
Repositories are dumb persistence; business rules live in the engine and
the query executor.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from flowbot.models.domain import Bonus, Transaction, User
from flowbot.models.execution import Execution, ExecutionFilters, StepLog
from flowbot.models.flow import Flow, FlowVersion


class FlowRepository(ABC):

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]: ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow: ...

    @abstractmethod
    async def get_version(self, version_id: str) -> Optional[FlowVersion]: ...

    @abstractmethod
    async def list_versions(self, flow_id: str) -> List[FlowVersion]: ...

    @abstractmethod
    async def get_active_version(self, project_id: str) -> Optional[FlowVersion]:
        """The single active version serving a project, if any."""

    @abstractmethod
    async def next_version_number(self, flow_id: str) -> int: ...

    @abstractmethod
    async def activate_version(self, version: FlowVersion) -> FlowVersion:
        """
        Stores ``version`` as the project's only active version. Deactivating
        the previous version and inserting the new one must be atomic.
        """

    @abstractmethod
    async def get_project_variables(self, project_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def set_project_variables(self, project_id: str, variables: Dict[str, Any]) -> None: ...


class ExecutionRepository(ABC):

    @abstractmethod
    async def create(self, execution: Execution) -> Execution: ...

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]: ...

    @abstractmethod
    async def save(self, execution: Execution) -> Execution: ...

    @abstractmethod
    async def find_active(self, project_id: str, chat_id: str) -> Optional[Execution]:
        """Most recent running or waiting execution for a chat session."""

    @abstractmethod
    async def record_step(self, execution: Execution, step: StepLog) -> None:
        """Appends ``step`` and saves ``execution`` as one unit."""

    @abstractmethod
    async def list_steps(self, execution_id: str) -> List[StepLog]:
        """Steps ordered by step index."""

    @abstractmethod
    async def list_for_flow(self, flow_id: str, filters: ExecutionFilters) -> Tuple[List[Execution], int]:
        """One page of executions (newest first) and the total match count."""

    @abstractmethod
    async def find_due_waits(self, now: datetime, limit: int = 100) -> List[Execution]:
        """Waiting executions whose deadline has passed."""

    @abstractmethod
    async def delete_started_before(self, cutoff: datetime) -> int:
        """Deletes executions (and their steps) started before ``cutoff``."""


class LoyaltyRepository(ABC):

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def find_user(self, project_id: str, *, channel_id: Optional[str] = None,
                        phone: Optional[str] = None, email: Optional[str] = None) -> Optional[User]:
        """First user matching any given identifier, tried in the order channel, phone, email."""

    @abstractmethod
    async def find_user_by_referral_code(self, project_id: str, code: str) -> Optional[User]: ...

    @abstractmethod
    async def insert_user(self, user: User) -> User: ...

    @abstractmethod
    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]: ...

    @abstractmethod
    async def count_referrals(self, user_id: str) -> int: ...

    @abstractmethod
    async def list_bonuses(self, user_id: str) -> List[Bonus]:
        """All bonuses of a user, oldest first."""

    @abstractmethod
    async def grant_bonus(self, bonus: Bonus, transaction: Transaction) -> Bonus:
        """Stores a bonus together with its EARN transaction."""

    @abstractmethod
    async def apply_spend(self, remaining: Dict[str, float], transaction: Transaction) -> None:
        """Sets the remaining amount per bonus id and stores the SPEND transaction, atomically."""

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        """Newest first."""
