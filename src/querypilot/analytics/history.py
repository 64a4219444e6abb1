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
History/Replay Store - persisted translations and execution records.

Every lookup is scoped to the owner. A record that exists but belongs to
another organisation or user is reported exactly like a missing one.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from querypilot.analytics.models import ExecutionRecord, Translation
from querypilot.config import settings
from querypilot.exceptions import RecordNotFound

logger = structlog.get_logger(__name__)

# how often saves sweep out records older than the retention window
SWEEP_INTERVAL_SECONDS = 60


class HistoryStore(ABC):
    @abstractmethod
    async def save_translation(self, translation: Translation) -> None: ...

    @abstractmethod
    async def get_translation(
        self, translation_id: str, organization_id: str, user_id: Optional[str] = None
    ) -> Translation: ...

    @abstractmethod
    async def save_execution(self, record: ExecutionRecord) -> None: ...

    @abstractmethod
    async def get_execution(
        self, execution_id: str, organization_id: str, user_id: Optional[str] = None
    ) -> ExecutionRecord: ...

    @abstractmethod
    async def list_executions(
        self,
        organization_id: str,
        user_id: str,
        connection_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]: ...

    @abstractmethod
    async def recent_entities(
        self, organization_id: str, user_id: str, limit: int = 10
    ) -> list[tuple[str, str]]: ...


def _owned(record, organization_id: str, user_id: Optional[str]) -> bool:
    return record.organization_id == organization_id and (
        user_id is None or record.user_id == user_id
    )


class InMemoryHistoryStore(HistoryStore):
    def __init__(
        self,
        retention_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = (
            retention_seconds
            if retention_seconds is not None
            else settings.instance().history.retention_seconds
        )
        self._clock = clock
        self._translations: dict[str, Translation] = {}
        self._executions: dict[str, ExecutionRecord] = {}
        self._last_sweep = clock()
        self._lock = asyncio.Lock()

    def _expired(self, created: datetime) -> bool:
        cutoff = datetime.fromtimestamp(
            self._clock(), timezone.utc
        ) - timedelta(seconds=self.retention_seconds)
        return created < cutoff

    def _sweep(self) -> int:
        # caller holds the lock
        self._last_sweep = self._clock()
        stale_t = [k for k, t in self._translations.items() if self._expired(t.created_at)]
        stale_e = [k for k, e in self._executions.items() if self._expired(e.started_at)]
        for k in stale_t:
            del self._translations[k]
        for k in stale_e:
            del self._executions[k]
        if stale_t or stale_e:
            logger.info(
                "history_purged", translations=len(stale_t), executions=len(stale_e)
            )
        return len(stale_t) + len(stale_e)

    def _sweep_due(self):
        # caller holds the lock
        interval = min(SWEEP_INTERVAL_SECONDS, self.retention_seconds)
        if self._clock() - self._last_sweep >= interval:
            self._sweep()

    async def purge(self) -> int:
        async with self._lock:
            return self._sweep()

    async def save_translation(self, translation: Translation) -> None:
        async with self._lock:
            self._sweep_due()
            self._translations[translation.id] = translation

    async def get_translation(
        self, translation_id: str, organization_id: str, user_id: Optional[str] = None
    ) -> Translation:
        async with self._lock:
            t = self._translations.get(translation_id)
        if t is None or not _owned(t, organization_id, user_id):
            raise RecordNotFound(
                f"Translation {translation_id} not found or access denied",
                translation_id=translation_id,
            )
        return t

    async def save_execution(self, record: ExecutionRecord) -> None:
        async with self._lock:
            self._sweep_due()
            self._executions[record.id] = record.model_copy(deep=True)

    async def get_execution(
        self, execution_id: str, organization_id: str, user_id: Optional[str] = None
    ) -> ExecutionRecord:
        async with self._lock:
            r = self._executions.get(execution_id)
        if r is None or not _owned(r, organization_id, user_id):
            raise RecordNotFound(
                f"Execution {execution_id} not found or access denied",
                execution_id=execution_id,
            )
        return r.model_copy(deep=True)

    async def list_executions(
        self,
        organization_id: str,
        user_id: str,
        connection_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]:
        async with self._lock:
            records = [
                r
                for r in self._executions.values()
                if _owned(r, organization_id, user_id)
                and (connection_id is None or r.connection_id == connection_id)
            ]
        records.sort(key=lambda r: r.started_at, reverse=True)
        page = records[offset : offset + limit]
        return [r.model_copy(deep=True) for r in page], len(records)

    async def recent_entities(
        self, organization_id: str, user_id: str, limit: int = 10
    ) -> list[tuple[str, str]]:
        async with self._lock:
            executed = {
                r.translation_id
                for r in self._executions.values()
                if _owned(r, organization_id, user_id)
            }
            translations = sorted(
                (self._translations[t] for t in executed if t in self._translations),
                key=lambda t: t.created_at,
                reverse=True,
            )
        pairs = [(t.connection_id, t.entity) for t in translations]
        return list(dict.fromkeys(pairs))[:limit]
