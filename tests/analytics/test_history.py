#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
"""
Tests for the execution record lifecycle and the in-memory history store
"""

import time

import pytest

from querypilot.analytics.history import InMemoryHistoryStore
from querypilot.analytics.models import (
    BackendKind,
    ExecutionRecord,
    ExecutionStatus,
    FindQuery,
    SafetyTier,
    Translation,
)
from querypilot.exceptions import InvalidTransition, RecordNotFound

ORG, USER = "org-1", "user-1"
BODY = FindQuery(collection="events", filter={"user_id": 1}, limit=5)


def _translation(entity="events", user=USER, **kw) -> Translation:
    return Translation(
        organization_id=ORG,
        user_id=user,
        original_text="clicks by user 1",
        connection_id="mongo-events",
        connection_name="Events",
        backend=BackendKind.mongodb,
        database="events",
        entity=entity,
        auto_detected=True,
        confidence=80.0,
        body=BODY,
        explanation="Finds events",
        safety=SafetyTier.safe,
        cost_score=0.0,
        requires_confirmation=False,
        **kw,
    )


def _record(translation: Translation, user=USER) -> ExecutionRecord:
    return ExecutionRecord(
        translation_id=translation.id,
        connection_id=translation.connection_id,
        organization_id=ORG,
        user_id=user,
        executed_body=translation.body,
    )


class TestLifecycle:
    def test_running_to_completed(self):
        record = _record(_translation())
        record.transition(ExecutionStatus.running).transition(ExecutionStatus.completed)
        assert record.status_history == [ExecutionStatus.running, ExecutionStatus.completed]
        assert record.terminal and record.finished_at is not None

    def test_pending_confirmation_then_running(self):
        record = _record(_translation())
        record.transition(ExecutionStatus.pending_confirmation)
        record.transition(ExecutionStatus.running)
        assert record.status == ExecutionStatus.running and not record.terminal

    @pytest.mark.parametrize(
        "path",
        [
            [ExecutionStatus.completed],
            [ExecutionStatus.running, ExecutionStatus.pending_confirmation],
            [ExecutionStatus.running, ExecutionStatus.failed, ExecutionStatus.running],
            [ExecutionStatus.running, ExecutionStatus.completed, ExecutionStatus.failed],
        ],
    )
    def test_illegal_transitions(self, path):
        record = _record(_translation())
        with pytest.raises(InvalidTransition):
            for status in path:
                record.transition(status)

    def test_status_serializes_to_camel_case(self):
        record = _record(_translation()).transition(ExecutionStatus.pending_confirmation)
        assert record.model_dump(mode="json")["status"] == "PendingConfirmation"


@pytest.mark.asyncio
async def test_lookups_are_owner_scoped():
    store = InMemoryHistoryStore(retention_seconds=60)
    t = _translation()
    await store.save_translation(t)
    assert (await store.get_translation(t.id, ORG, USER)).id == t.id
    with pytest.raises(RecordNotFound):
        await store.get_translation(t.id, ORG, "someone-else")
    with pytest.raises(RecordNotFound):
        await store.get_translation(t.id, "org-2")


@pytest.mark.asyncio
async def test_saved_records_are_copies():
    store = InMemoryHistoryStore(retention_seconds=60)
    record = _record(_translation()).transition(ExecutionStatus.running)
    await store.save_execution(record)
    record.transition(ExecutionStatus.completed)
    stored = await store.get_execution(record.id, ORG, USER)
    assert stored.status == ExecutionStatus.running


@pytest.mark.asyncio
async def test_list_executions_newest_first_with_paging():
    store = InMemoryHistoryStore(retention_seconds=60)
    t = _translation()
    ids = []
    for _ in range(5):
        r = _record(t)
        await store.save_execution(r)
        ids.append(r.id)
        time.sleep(0.001)
    await store.save_execution(_record(t, user="user-2"))

    page, total = await store.list_executions(ORG, USER, limit=2, offset=1)
    assert total == 5
    assert [r.id for r in page] == [ids[3], ids[2]]

    none, total = await store.list_executions(ORG, USER, connection_id="pg-shop")
    assert none == [] and total == 0


@pytest.mark.asyncio
async def test_recent_entities_only_counts_executed_translations():
    store = InMemoryHistoryStore(retention_seconds=60)
    executed, unused = _translation("events"), _translation("sessions")
    await store.save_translation(executed)
    await store.save_translation(unused)
    await store.save_execution(_record(executed))
    assert await store.recent_entities(ORG, USER) == [("mongo-events", "events")]


@pytest.mark.asyncio
async def test_purge_drops_expired_records():
    now = [time.time()]
    store = InMemoryHistoryStore(retention_seconds=10, clock=lambda: now[0])
    t = _translation()
    await store.save_translation(t)
    await store.save_execution(_record(t))
    assert await store.purge() == 0

    now[0] += 11
    assert await store.purge() == 2
    with pytest.raises(RecordNotFound):
        await store.get_translation(t.id, ORG, USER)


@pytest.mark.asyncio
async def test_saves_sweep_expired_records():
    now = [time.time()]
    store = InMemoryHistoryStore(retention_seconds=10, clock=lambda: now[0])
    old = _translation()
    await store.save_translation(old)
    await store.save_execution(_record(old))

    now[0] += 11
    fresh = _translation()
    await store.save_translation(fresh)
    assert list(store._translations) == [fresh.id]
    assert store._executions == {}
