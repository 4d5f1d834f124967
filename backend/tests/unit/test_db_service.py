# backend/tests/unit/test_db_service.py
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from flowbot.models.execution import Execution, ExecutionFilters, ExecutionStatus, WaitType
from flowbot.services.db_service import (
    MongoDatabase,
    MongoExecutionRepository,
    MongoLoyaltyRepository,
    from_document,
    to_document,
)

STARTED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _execution(**extra):
    return Execution(
        id="exec-1", project_id="p1", chat_id="chat-1", flow_id="flow-1", version_id="ver-1", version=1,
        started_at=STARTED, updated_at=STARTED, **extra,
    )


@pytest.fixture
def database(mocker):
    mocker.patch("flowbot.services.db_service.AsyncIOMotorClient")
    db = MongoDatabase("mongodb://localhost:27017/flowbot_test")
    db.db = MagicMock()
    return db


def test_documents_use_mongo_ids_and_plain_enums():
    execution = _execution(status=ExecutionStatus.WAITING, wait_type=WaitType.CONTACT)
    document = to_document(execution)

    assert document["_id"] == "exec-1"
    assert "id" not in document
    assert document["status"] == "waiting"
    assert document["wait_type"] == "contact"
    assert from_document(Execution, document) == execution


def test_from_document_passes_none_through():
    assert from_document(Execution, None) is None


def test_filter_query_combines_every_filter(database):
    repo = MongoExecutionRepository(database)
    filters = ExecutionFilters(
        status=ExecutionStatus.FAILED,
        user_id="u-1",
        date_from=STARTED,
        search="chat.1",
    )
    query = repo._filter_query("flow-1", filters)

    assert query["flow_id"] == "flow-1"
    assert query["status"] == "failed"
    assert query["user_id"] == "u-1"
    assert query["started_at"] == {"$gte": STARTED}
    pattern = {"$regex": "chat\\.1", "$options": "i"}
    assert query["$or"] == [{"_id": pattern}, {"chat_id": pattern}, {"user_id": pattern}]


def test_filter_query_without_filters_only_scopes_by_flow(database):
    repo = MongoExecutionRepository(database)
    assert repo._filter_query("flow-1", ExecutionFilters()) == {"flow_id": "flow-1"}


@pytest.mark.asyncio
async def test_find_active_queries_running_and_waiting(database):
    database.db.executions.find_one = AsyncMock(return_value=to_document(_execution()))
    repo = MongoExecutionRepository(database)

    execution = await repo.find_active("p1", "chat-1")

    assert execution.id == "exec-1"
    query = database.db.executions.find_one.call_args.args[0]
    assert sorted(query["status"]["$in"]) == ["running", "waiting"]


@pytest.mark.asyncio
async def test_retention_sweep_deletes_steps_too(database):
    database.db.executions.distinct = AsyncMock(return_value=["exec-1", "exec-2"])
    database.db.execution_steps.delete_many = AsyncMock()
    database.db.executions.delete_many = AsyncMock(return_value=MagicMock(deleted_count=2))
    repo = MongoExecutionRepository(database)

    deleted = await repo.delete_started_before(STARTED)

    assert deleted == 2
    database.db.execution_steps.delete_many.assert_awaited_once_with({"execution_id": {"$in": ["exec-1", "exec-2"]}})


@pytest.mark.asyncio
async def test_retention_sweep_with_nothing_old(database):
    database.db.executions.distinct = AsyncMock(return_value=[])
    database.db.executions.delete_many = AsyncMock()
    repo = MongoExecutionRepository(database)

    assert await repo.delete_started_before(STARTED) == 0
    database.db.executions.delete_many.assert_not_awaited()


@pytest.mark.asyncio
async def test_find_user_tries_channel_then_phone(database):
    user_doc = {"_id": "u-1", "project_id": "p1", "channel_id": "chat-9", "phone": "+15550100"}
    database.db.users.find_one = AsyncMock(side_effect=[None, user_doc])
    repo = MongoLoyaltyRepository(database)

    user = await repo.find_user("p1", channel_id="chat-1", phone="+15550100")

    assert user.id == "u-1"
    lookups = [call.args[0] for call in database.db.users.find_one.call_args_list]
    assert lookups == [{"project_id": "p1", "channel_id": "chat-1"}, {"project_id": "p1", "phone": "+15550100"}]


@pytest.mark.asyncio
async def test_create_indexes_keeps_going_after_a_failure(database):
    collection = MagicMock()
    collection.create_index = AsyncMock(side_effect=[RuntimeError("duplicate")] + [None] * 20)
    database.db.__getitem__.return_value = collection

    await database.create_indexes()

    assert collection.create_index.await_count > 1
    assert any(call.kwargs.get("unique") for call in collection.create_index.call_args_list)
