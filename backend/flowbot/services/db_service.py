# /flowbot/services/db_service.py

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pymongo import ReturnDocument

from flowbot.models.domain import Bonus, Transaction, User
from flowbot.models.execution import ACTIVE_STATUSES, Execution, ExecutionFilters, ExecutionStatus, StepLog
from flowbot.models.flow import Flow, FlowVersion
from flowbot.services.repositories import ExecutionRepository, FlowRepository, LoyaltyRepository
from flowbot.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    """Enums become their values so BSON can encode them."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def to_document(model: BaseModel) -> Dict[str, Any]:
    document = _plain(model.model_dump())
    document["_id"] = document.pop("id")
    return document


def from_document(model_cls, document: Optional[Dict[str, Any]]):
    if document is None:
        return None
    data = dict(document)
    data["id"] = data.pop("_id")
    return model_cls.model_validate(data)


class MongoDatabase:
    """Owns the motor client. Datetimes round-trip as timezone-aware UTC."""

    def __init__(self, mongo_uri: str, max_pool_size: int = 10, min_pool_size: int = 1, tls: bool = False):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=max_pool_size,
                minPoolSize=min_pool_size,
                tls=tls,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("flows", [("project_id", 1)], {}),
            ("flow_versions", [("flow_id", 1), ("version", 1)], {"unique": True}),
            ("flow_versions", [("project_id", 1), ("is_active", 1)], {}),
            ("executions", [("project_id", 1), ("chat_id", 1), ("status", 1)], {}),
            ("executions", [("flow_id", 1), ("started_at", -1)], {}),
            ("executions", [("status", 1), ("wait_deadline", 1)], {}),
            ("executions", [("started_at", 1)], {}),
            ("execution_steps", [("execution_id", 1), ("step", 1)], {"unique": True}),
            ("users", [("project_id", 1), ("channel_id", 1)], {"unique": True}),
            ("users", [("project_id", 1), ("referral_code", 1)], {}),
            ("users", [("referred_by", 1)], {}),
            ("bonuses", [("user_id", 1), ("created_at", 1)], {}),
            ("transactions", [("user_id", 1), ("created_at", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    def close(self) -> None:
        self.client.close()


class MongoFlowRepository(FlowRepository):
    def __init__(self, database: MongoDatabase):
        self.client = database.client
        self.db = database.db

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        return from_document(Flow, await self.db.flows.find_one({"_id": flow_id}))

    async def save_flow(self, flow: Flow) -> Flow:
        await self.db.flows.replace_one({"_id": flow.id}, to_document(flow), upsert=True)
        return flow

    async def get_version(self, version_id: str) -> Optional[FlowVersion]:
        return from_document(FlowVersion, await self.db.flow_versions.find_one({"_id": version_id}))

    async def list_versions(self, flow_id: str) -> List[FlowVersion]:
        cursor = self.db.flow_versions.find({"flow_id": flow_id}).sort("version", 1)
        return [from_document(FlowVersion, doc) async for doc in cursor]

    async def get_active_version(self, project_id: str) -> Optional[FlowVersion]:
        document = await self.db.flow_versions.find_one(
            {"project_id": project_id, "is_active": True}, sort=[("created_at", -1)]
        )
        return from_document(FlowVersion, document)

    async def next_version_number(self, flow_id: str) -> int:
        latest = await self.db.flow_versions.find_one({"flow_id": flow_id}, sort=[("version", -1)])
        return (latest["version"] if latest else 0) + 1

    async def activate_version(self, version: FlowVersion) -> FlowVersion:
        stored = version.model_copy(update={"is_active": True})
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                await self.db.flow_versions.update_many(
                    {"project_id": version.project_id, "is_active": True},
                    {"$set": {"is_active": False}},
                    session=session,
                )
                await self.db.flow_versions.insert_one(to_document(stored), session=session)
                await self.db.flows.update_many(
                    {"project_id": version.project_id},
                    {"$set": {"is_active": False}},
                    session=session,
                )
                await self.db.flows.update_one(
                    {"_id": version.flow_id}, {"$set": {"is_active": True}}, session=session
                )
        database_operations_counter.labels(operation="activate_version", status="success").inc()
        logger.info(f"Activated flow version {stored.id} (v{stored.version}) for project {stored.project_id}")
        return stored

    async def get_project_variables(self, project_id: str) -> Dict[str, Any]:
        document = await self.db.projects.find_one({"_id": project_id}, {"variables": 1})
        return dict((document or {}).get("variables") or {})

    async def set_project_variables(self, project_id: str, variables: Dict[str, Any]) -> None:
        await self.db.projects.update_one({"_id": project_id}, {"$set": {"variables": variables}}, upsert=True)


class MongoExecutionRepository(ExecutionRepository):
    def __init__(self, database: MongoDatabase):
        self.client = database.client
        self.db = database.db

    async def create(self, execution: Execution) -> Execution:
        await self.db.executions.insert_one(to_document(execution))
        return execution

    async def get(self, execution_id: str) -> Optional[Execution]:
        return from_document(Execution, await self.db.executions.find_one({"_id": execution_id}))

    async def save(self, execution: Execution) -> Execution:
        await self.db.executions.replace_one({"_id": execution.id}, to_document(execution))
        return execution

    async def find_active(self, project_id: str, chat_id: str) -> Optional[Execution]:
        document = await self.db.executions.find_one(
            {
                "project_id": project_id,
                "chat_id": chat_id,
                "status": {"$in": [s.value for s in ACTIVE_STATUSES]},
            },
            sort=[("started_at", -1)],
        )
        return from_document(Execution, document)

    async def record_step(self, execution: Execution, step: StepLog) -> None:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                await self.db.execution_steps.insert_one(to_document(step), session=session)
                await self.db.executions.replace_one(
                    {"_id": execution.id}, to_document(execution), session=session
                )
        database_operations_counter.labels(operation="record_step", status="success").inc()

    async def list_steps(self, execution_id: str) -> List[StepLog]:
        cursor = self.db.execution_steps.find({"execution_id": execution_id}).sort("step", 1)
        return [from_document(StepLog, doc) async for doc in cursor]

    def _filter_query(self, flow_id: str, filters: ExecutionFilters) -> Dict[str, Any]:
        query: Dict[str, Any] = {"flow_id": flow_id}
        if filters.status:
            query["status"] = filters.status.value
        if filters.user_id:
            query["user_id"] = filters.user_id
        if filters.date_from or filters.date_to:
            started: Dict[str, datetime] = {}
            if filters.date_from:
                started["$gte"] = filters.date_from
            if filters.date_to:
                started["$lte"] = filters.date_to
            query["started_at"] = started
        if filters.search:
            pattern = {"$regex": re.escape(filters.search), "$options": "i"}
            query["$or"] = [{"_id": pattern}, {"chat_id": pattern}, {"user_id": pattern}]
        return query

    async def list_for_flow(self, flow_id: str, filters: ExecutionFilters) -> Tuple[List[Execution], int]:
        query = self._filter_query(flow_id, filters)
        total = await self.db.executions.count_documents(query)
        cursor = (
            self.db.executions.find(query)
            .sort("started_at", -1)
            .skip((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        )
        return [from_document(Execution, doc) async for doc in cursor], total

    async def find_due_waits(self, now: datetime, limit: int = 100) -> List[Execution]:
        cursor = (
            self.db.executions.find({"status": ExecutionStatus.WAITING.value, "wait_deadline": {"$lte": now}})
            .sort("wait_deadline", 1)
            .limit(limit)
        )
        return [from_document(Execution, doc) async for doc in cursor]

    async def delete_started_before(self, cutoff: datetime) -> int:
        ids = await self.db.executions.distinct("_id", {"started_at": {"$lt": cutoff}})
        if not ids:
            return 0
        await self.db.execution_steps.delete_many({"execution_id": {"$in": ids}})
        result = await self.db.executions.delete_many({"_id": {"$in": ids}})
        database_operations_counter.labels(operation="retention_sweep", status="success").inc()
        return result.deleted_count


class MongoLoyaltyRepository(LoyaltyRepository):
    def __init__(self, database: MongoDatabase):
        self.client = database.client
        self.db = database.db

    async def get_user(self, user_id: str) -> Optional[User]:
        return from_document(User, await self.db.users.find_one({"_id": user_id}))

    async def find_user(self, project_id: str, *, channel_id: Optional[str] = None,
                        phone: Optional[str] = None, email: Optional[str] = None) -> Optional[User]:
        for field_name, value in (("channel_id", channel_id), ("phone", phone), ("email", email)):
            if not value:
                continue
            document = await self.db.users.find_one({"project_id": project_id, field_name: value})
            if document:
                return from_document(User, document)
        return None

    async def find_user_by_referral_code(self, project_id: str, code: str) -> Optional[User]:
        return from_document(User, await self.db.users.find_one({"project_id": project_id, "referral_code": code}))

    async def insert_user(self, user: User) -> User:
        await self.db.users.insert_one(to_document(user))
        return user

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        document = await self.db.users.find_one_and_update(
            {"_id": user_id}, {"$set": _plain(changes)}, return_document=ReturnDocument.AFTER
        )
        return from_document(User, document)

    async def count_referrals(self, user_id: str) -> int:
        return await self.db.users.count_documents({"referred_by": user_id})

    async def list_bonuses(self, user_id: str) -> List[Bonus]:
        cursor = self.db.bonuses.find({"user_id": user_id}).sort("created_at", 1)
        return [from_document(Bonus, doc) async for doc in cursor]

    async def grant_bonus(self, bonus: Bonus, transaction: Transaction) -> Bonus:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                await self.db.bonuses.insert_one(to_document(bonus), session=session)
                await self.db.transactions.insert_one(to_document(transaction), session=session)
        return bonus

    async def apply_spend(self, remaining: Dict[str, float], transaction: Transaction) -> None:
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                for bonus_id, amount in remaining.items():
                    await self.db.bonuses.update_one(
                        {"_id": bonus_id}, {"$set": {"amount": max(amount, 0.0)}}, session=session
                    )
                await self.db.transactions.insert_one(to_document(transaction), session=session)

    async def list_transactions(self, user_id: str, limit: Optional[int] = None) -> List[Transaction]:
        cursor = self.db.transactions.find({"user_id": user_id}).sort("created_at", -1)
        if limit is not None:
            cursor = cursor.limit(limit)
        return [from_document(Transaction, doc) async for doc in cursor]
