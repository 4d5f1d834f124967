# /flowbot/runtime.py

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis

from flowbot.config.settings import Settings
from flowbot.services.db_service import (
    MongoDatabase,
    MongoExecutionRepository,
    MongoFlowRepository,
    MongoLoyaltyRepository,
)
from flowbot.services.memory_store import (
    InMemoryExecutionRepository,
    InMemoryFlowRepository,
    InMemoryLoyaltyRepository,
)
from flowbot.services.messenger import Messenger, build_messenger
from flowbot.services.monitoring import ExecutionMonitor
from flowbot.services.query_executor import QueryExecutor
from flowbot.services.repositories import ExecutionRepository, FlowRepository, LoyaltyRepository
from flowbot.services.user_variables import UserVariablesService
from flowbot.services.webhooks import WebhookClient
from flowbot.workflows.cache import VersionCache
from flowbot.workflows.engine import WorkflowEngine
from flowbot.workflows.handlers.registry import build_default_registry
from flowbot.workflows.publisher import FlowPublisher
from flowbot.workflows.sessions import LocalSessionLocks, RedisSessionLocks, SessionLocks

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived collaborator of one process, built once at startup."""
    settings: Settings
    flows: FlowRepository
    executions: ExecutionRepository
    loyalty: LoyaltyRepository
    messenger: Messenger
    webhooks: WebhookClient
    queries: QueryExecutor
    cache: VersionCache
    locks: SessionLocks
    engine: WorkflowEngine
    publisher: FlowPublisher
    monitor: ExecutionMonitor
    database: Optional[MongoDatabase] = None
    redis: Optional[Any] = None

    async def close(self) -> None:
        await self.messenger.close()
        await self.webhooks.close()
        if self.redis is not None:
            await self.redis.aclose()
        if self.database is not None:
            self.database.close()
        logger.info("Runtime resources released.")


def build_runtime(settings: Settings, messenger: Optional[Messenger] = None) -> Runtime:
    database = None
    if settings.storage_backend == "mongo":
        database = MongoDatabase(
            settings.mongo_uri,
            max_pool_size=settings.max_pool_size,
            min_pool_size=settings.min_pool_size,
            tls=settings.mongo_ssl,
        )
        flows = MongoFlowRepository(database)
        executions = MongoExecutionRepository(database)
        loyalty = MongoLoyaltyRepository(database)
    else:
        flows = InMemoryFlowRepository()
        executions = InMemoryExecutionRepository()
        loyalty = InMemoryLoyaltyRepository()

    redis_client = None
    if settings.lock_backend == "redis":
        redis_client = redis.Redis(connection_pool=redis.ConnectionPool.from_url(settings.redis_url, max_connections=20))
        locks = RedisSessionLocks(redis_client, timeout=settings.lock_timeout_seconds)
    else:
        locks = LocalSessionLocks()

    messenger = messenger or build_messenger(settings)
    queries = QueryExecutor(
        loyalty,
        messenger,
        bonus_expiry_days=settings.bonus_expiry_days,
        expiring_window_days=settings.expiring_bonus_window_days,
        referral_base_url=settings.referral_link_base_url,
    )
    webhooks = WebhookClient()
    cache = VersionCache(capacity=settings.flow_cache_capacity, ttl_seconds=settings.flow_cache_ttl_seconds)
    engine = WorkflowEngine(
        flows=flows,
        executions=executions,
        registry=build_default_registry(),
        queries=queries,
        user_variables=UserVariablesService(queries),
        locks=locks,
        cache=cache,
        max_steps=settings.max_steps_per_event,
        max_node_visits=settings.max_node_visits_per_event,
        webhooks=webhooks,
    )
    logger.info(f"Runtime built (storage={settings.storage_backend}, locks={settings.lock_backend})")
    return Runtime(
        settings=settings,
        flows=flows,
        executions=executions,
        loyalty=loyalty,
        messenger=messenger,
        webhooks=webhooks,
        queries=queries,
        cache=cache,
        locks=locks,
        engine=engine,
        publisher=FlowPublisher(flows, cache),
        monitor=ExecutionMonitor(executions, engine),
        database=database,
        redis=redis_client,
    )
