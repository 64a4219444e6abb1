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
Execution Coordinator - the translate / confirm / execute / replay workflow.

Flow:
1. Translate: resolve target, compile, classify, persist the Translation
2. Execute: re-check policy, gate on confirmation, run under the
   per-connection pool and timeout, truncate, mask, record
3. Preview: capped run that never needs confirmation and never mutates
4. Replay: re-run a recorded body verbatim on the same connection

Records move Running -> Completed | Failed. A request that needs
confirmation and does not carry it returns PendingConfirmation and leaves
no record behind.
"""

import asyncio
import hashlib
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog

from querypilot.analytics.catalog import SchemaCatalog
from querypilot.analytics.collaborators import (
    ConnectionRegistry,
    LanguageModel,
    QueryBackend,
    SchemaIntrospector,
)
from querypilot.analytics.compiler import QueryCompiler
from querypilot.analytics.history import HistoryStore, InMemoryHistoryStore
from querypilot.analytics.inspection import QueryShape, inspect_query
from querypilot.analytics.models import (
    Caller,
    Connection,
    ExecutionRecord,
    ExecutionStatus,
    QueryBody,
    SafetyTier,
    Translation,
)
from querypilot.analytics.resolver import TargetResolver
from querypilot.analytics.results import (
    ExecutionFailure,
    ExecutionOutcome,
    ExecutionSuccess,
    PendingConfirmation,
    PreviewResult,
    ResultsProcessor,
)
from querypilot.analytics.safety import SafetyClassifier
from querypilot.config import settings
from querypilot.exceptions import (
    ConnectionUnavailable,
    ExecutionError,
    ExecutionTimeout,
    QueryPilotError,
    UnknownTarget,
    UnsafeQueryRejected,
)

logger = structlog.get_logger(__name__)


class ConnectionPools:
    """Bounds concurrent executions per connection."""

    def __init__(self, size: int):
        self.size = size
        self._pools: dict[str, asyncio.Semaphore] = {}
        self._active: dict[str, int] = {}

    def active(self, connection_id: str) -> int:
        return self._active.get(connection_id, 0)

    @asynccontextmanager
    async def acquire(self, connection_id: str):
        pool = self._pools.setdefault(connection_id, asyncio.Semaphore(self.size))
        async with pool:
            self._active[connection_id] = self.active(connection_id) + 1
            try:
                yield
            finally:
                self._active[connection_id] -= 1


class ResultCache:
    def __init__(self, ttl_seconds: float, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, list[dict[str, Any]], bool]] = {}

    @staticmethod
    def key(connection_id: str, body: QueryBody) -> str:
        return hashlib.sha256(
            f"{connection_id}:{body.model_dump_json()}".encode()
        ).hexdigest()

    def get(self, key: str) -> Optional[tuple[list[dict[str, Any]], bool]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored, rows, truncated = entry
        if self._clock() - stored >= self.ttl_seconds:
            del self._entries[key]
            return None
        return list(rows), truncated

    def put(self, key: str, rows: list[dict[str, Any]], truncated: bool):
        if self.ttl_seconds <= 0:
            return
        now = self._clock()
        for stale in [
            k for k, (stored, _, _) in self._entries.items()
            if now - stored >= self.ttl_seconds
        ]:
            del self._entries[stale]
        self._entries[key] = (now, list(rows), truncated)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self):
        self._entries.clear()


class ExecutionCoordinator:
    """
    Main coordinator for translation and safe execution.

    Every execute/preview/replay call re-validates the stored body against
    the mutation and forbidden-operator policy; a translation persisted
    earlier is never trusted on its own.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        introspector: SchemaIntrospector,
        backend: QueryBackend,
        llm: LanguageModel,
        history: Optional[HistoryStore] = None,
        config: Optional[settings.Settings] = None,
    ):
        """
        Initialize the Execution Coordinator.

        Args:
            registry: Connection registry owned by the host application
            introspector: Schema introspection for connections
            backend: Runs compiled bodies against live connections
            llm: Language model used by the compiler
            history: Translation/execution store, in-memory by default
            config: Settings, defaults to the configured instance
        """
        cfg = config or settings.instance()
        self.config = cfg
        self.registry = registry
        self.backend = backend
        self.catalog = SchemaCatalog(
            registry, introspector, ttl_seconds=cfg.catalog.ttl_seconds
        )
        self.resolver = TargetResolver(self.catalog, cfg.resolver)
        self.compiler = QueryCompiler(llm, cfg.llm)
        self.classifier = SafetyClassifier(cfg.safety)
        self.history_store = history or InMemoryHistoryStore(
            cfg.history.retention_seconds
        )
        self.results = ResultsProcessor(
            cfg.execution.sensitive_columns
            if cfg.execution.mask_sensitive_columns
            else ()
        )
        self.execution = cfg.execution
        self.pools = ConnectionPools(cfg.execution.max_concurrent_per_connection)
        self.result_cache = ResultCache(cfg.execution.result_cache_ttl_seconds)
        self._running: dict[str, asyncio.Future] = {}
        self._cancelled: set[str] = set()

    # ------------------------------------------------------------------
    # translation

    async def translate(
        self,
        text: str,
        caller: Caller,
        connection_id: Optional[str] = None,
        context: Optional[list[dict[str, str]]] = None,
        entity: Optional[str] = None,
        explain_only: bool = False,
    ) -> Translation:
        """
        Translate a question into a persisted, classified Translation.

        Args:
            text: Natural language question
            caller: Who is asking, and with what permission
            connection_id: Optional explicit connection
            context: Prior conversation turns, oldest first
            entity: Optional explicit table/collection
            explain_only: Only recorded in logs; translation never executes

        Returns:
            Translation

        Raises:
            ResolutionAmbiguous, UnknownTarget, ConnectionUnavailable,
            TranslationError, UnsafeQueryRejected
        """
        trace_id = str(uuid.uuid4())
        logger.info(
            "translate_start",
            trace_id=trace_id,
            organization_id=caller.organization_id,
            user_id=caller.user_id,
            connection_id=connection_id,
            explain_only=explain_only,
        )
        try:
            recent = await self.history_store.recent_entities(
                caller.organization_id,
                caller.user_id,
                self.resolver.config.recent_window,
            )
            target = await self.resolver.resolve(
                text, caller.organization_id, connection_id, entity, recent
            )
            compiled = await self.compiler.compile(
                target, text, context, caller.permission
            )
            schema = target.snapshot.entity(compiled.entity) or target.entity
            assessment = self.classifier.classify(
                compiled.body,
                schema,
                allow_mutation=caller.allows_mutation,
                shape=compiled.shape,
            )
            warning = compiled.warning_message or (
                "; ".join(assessment.reasons)
                if assessment.tier != SafetyTier.safe
                else None
            )
            translation = Translation(
                organization_id=caller.organization_id,
                user_id=caller.user_id,
                original_text=text,
                connection_id=target.connection.id,
                connection_name=target.connection.name,
                backend=target.connection.kind,
                database=target.connection.database,
                entity=compiled.entity,
                auto_detected=target.auto_detected,
                confidence=target.confidence,
                alternatives=target.alternatives,
                match_reasons=target.match_reasons,
                body=compiled.body,
                explanation=compiled.explanation,
                required_indexes=list(
                    dict.fromkeys(
                        compiled.required_indexes + assessment.recommended_indexes
                    )
                ),
                safety=assessment.tier,
                cost_score=assessment.cost_score,
                requires_confirmation=assessment.requires_confirmation,
                confirmation_reason=assessment.confirmation_reason,
                warning_message=warning,
                model_safety_hint=compiled.model_safety,
                model_cost_hint=compiled.model_cost,
            )
            await self.history_store.save_translation(translation)
        except QueryPilotError as e:
            logger.warning(
                "translate_failed", trace_id=trace_id, error=e.code, message=e.message
            )
            raise
        except Exception as e:
            logger.error("translate_error", trace_id=trace_id, error=str(e))
            raise

        logger.info(
            "translate_complete",
            trace_id=trace_id,
            translation_id=translation.id,
            connection_id=translation.connection_id,
            entity=translation.entity,
            safety=translation.safety.value,
            cost=translation.cost_score,
            requires_confirmation=translation.requires_confirmation,
        )
        return translation

    async def explain(
        self,
        text: str,
        caller: Caller,
        connection_id: Optional[str] = None,
        context: Optional[list[dict[str, str]]] = None,
        entity: Optional[str] = None,
    ) -> Translation:
        """Translate without executing; the same as translate, never runs."""
        return await self.translate(
            text, caller, connection_id, context, entity, explain_only=True
        )

    # ------------------------------------------------------------------
    # policy

    async def _connection(self, connection_id: str, caller: Caller) -> Connection:
        conn = await self.registry.get(connection_id)
        if (
            conn is None
            or not conn.available
            or conn.organization_id != caller.organization_id
        ):
            raise ConnectionUnavailable(connection_id)
        return conn

    def _policy_gate(
        self,
        body: QueryBody,
        connection: Connection,
        caller: Caller,
        preview: bool = False,
    ) -> QueryShape:
        shape = inspect_query(body, connection.kind.dialect)
        if shape.forbidden_operators:
            logger.warning(
                "policy_gate_rejected",
                reason="forbidden_operators",
                operators=shape.forbidden_operators,
            )
            raise UnsafeQueryRejected(
                f"Query uses forbidden operators: {', '.join(shape.forbidden_operators)}",
                verbs=shape.forbidden_operators,
            )
        if shape.mutates:
            if preview:
                reason = "Preview never runs queries that modify data"
            elif not caller.allows_mutation:
                reason = "Only read queries are allowed for this caller"
            elif not self.execution.allow_dml:
                reason = "Queries that modify data are disabled"
            else:
                return shape
            logger.warning(
                "policy_gate_rejected",
                reason="mutation",
                verbs=shape.mutating_verbs,
                preview=preview,
            )
            raise UnsafeQueryRejected(
                f"{reason} ({', '.join(shape.mutating_verbs)})",
                verbs=shape.mutating_verbs,
            )
        return shape

    async def _load(
        self, translation_id: str, connection_id: str, caller: Caller
    ) -> tuple[Translation, Connection]:
        translation = await self.history_store.get_translation(
            translation_id, caller.organization_id, caller.user_id
        )
        if connection_id != translation.connection_id:
            raise UnknownTarget(
                f"Translation {translation_id} was compiled for connection "
                f"{translation.connection_id}, not {connection_id}",
                connection_id=connection_id,
            )
        return translation, await self._connection(connection_id, caller)

    # ------------------------------------------------------------------
    # execution

    async def _call_backend(
        self, key: str, connection: Connection, body: QueryBody, limit: int
    ) -> list[dict[str, Any]]:
        async with self.pools.acquire(connection.id):
            task = asyncio.ensure_future(
                asyncio.wait_for(
                    self.backend.execute(connection, body, limit),
                    timeout=self.execution.timeout_seconds,
                )
            )
            self._running[key] = task
            try:
                return await task
            finally:
                self._running.pop(key, None)

    def _pending(self, translation: Translation) -> PendingConfirmation:
        reason = translation.confirmation_reason or (
            f"This query is estimated to be expensive "
            f"(cost: {translation.cost_score:.2f}). Please confirm execution."
        )
        logger.info(
            "execution_awaiting_confirmation",
            translation_id=translation.id,
            cost=translation.cost_score,
            safety=translation.safety.value,
        )
        return PendingConfirmation(
            translation_id=translation.id,
            reason=reason,
            estimated_cost=translation.cost_score,
            safety=translation.safety,
        )

    async def _fail(
        self, record: ExecutionRecord, error: QueryPilotError
    ) -> ExecutionFailure:
        record.error_kind = error.code
        record.error_message = error.message
        record.transition(ExecutionStatus.failed)
        await self.history_store.save_execution(record)
        logger.warning(
            "query_execution_failed",
            execution_id=record.id,
            connection_id=record.connection_id,
            error=error.code,
            message=error.message,
        )
        return ExecutionFailure(record=record, error=error)

    async def _complete(
        self,
        record: ExecutionRecord,
        rows: list[dict[str, Any]],
        truncated: bool,
        caller: Caller,
        elapsed_ms: int,
        cached: bool,
    ) -> ExecutionSuccess:
        visible = self.results.mask(rows) if caller.mask_sensitive else rows
        record.row_count = len(rows)
        record.truncated = truncated
        record.cached = cached
        record.execution_time_ms = elapsed_ms
        record.preview_rows = visible[: self.execution.stored_preview_rows]
        record.transition(ExecutionStatus.completed)
        await self.history_store.save_execution(record)
        logger.info(
            "query_executed",
            execution_id=record.id,
            connection_id=record.connection_id,
            rows=record.row_count,
            runtime_ms=elapsed_ms,
            truncated=truncated,
            cached=cached,
            replay_of=record.replay_of,
        )
        return ExecutionSuccess(record=record, rows=visible, replayed_from=record.replay_of)

    async def _run(
        self,
        translation: Translation,
        connection: Connection,
        caller: Caller,
        confirmation_reason: Optional[str] = None,
        replay_of: Optional[str] = None,
        use_cache: bool = True,
    ) -> ExecutionOutcome:
        record = ExecutionRecord(
            translation_id=translation.id,
            connection_id=connection.id,
            organization_id=caller.organization_id,
            user_id=caller.user_id,
            executed_body=translation.body,
            confirmation_reason=confirmation_reason,
            replay_of=replay_of,
        )
        record.transition(ExecutionStatus.running)

        cache_key = ResultCache.key(connection.id, translation.body)
        if use_cache and (hit := self.result_cache.get(cache_key)) is not None:
            rows, truncated = hit
            return await self._complete(record, rows, truncated, caller, 0, cached=True)

        await self.history_store.save_execution(record)
        max_rows = self.execution.max_rows
        started = time.perf_counter()
        try:
            rows = await self._call_backend(
                record.id, connection, translation.body, max_rows + 1
            )
        except TimeoutError:
            return await self._fail(
                record, ExecutionTimeout(self.execution.timeout_seconds)
            )
        except asyncio.CancelledError:
            if record.id in self._cancelled:
                self._cancelled.discard(record.id)
                return await self._fail(
                    record, ExecutionError("Execution was cancelled", cancelled=True)
                )
            await self._fail(record, ExecutionError("Execution was interrupted"))
            raise
        except QueryPilotError as e:
            return await self._fail(record, e)
        except ConnectionError as e:
            return await self._fail(record, ConnectionUnavailable(connection.id, str(e)))
        except Exception as e:
            logger.error("backend_error", execution_id=record.id, error=str(e))
            return await self._fail(record, ExecutionError(f"Query failed: {e}"))

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        truncated = len(rows) > max_rows
        rows = list(rows[:max_rows])
        if truncated:
            logger.warning(
                "result_truncated", execution_id=record.id, max_rows=max_rows
            )
        self.result_cache.put(cache_key, rows, truncated)
        return await self._complete(
            record, rows, truncated, caller, elapsed_ms, cached=False
        )

    async def execute(
        self,
        translation_id: str,
        connection_id: str,
        caller: Caller,
        confirmed: bool = False,
        force_refresh: bool = False,
    ) -> ExecutionOutcome:
        """
        Execute a stored translation.

        Args:
            translation_id: Translation to run
            connection_id: Connection it must run on
            caller: Who is asking
            confirmed: Caller has acknowledged the confirmation reason
            force_refresh: Skip the result cache

        Returns:
            ExecutionSuccess, PendingConfirmation or ExecutionFailure

        Raises:
            RecordNotFound, UnknownTarget, ConnectionUnavailable,
            UnsafeQueryRejected
        """
        translation, connection = await self._load(
            translation_id, connection_id, caller
        )
        self._policy_gate(translation.body, connection, caller)

        if translation.requires_confirmation and not confirmed:
            return self._pending(translation)

        return await self._run(
            translation,
            connection,
            caller,
            confirmation_reason=(
                translation.confirmation_reason
                if translation.requires_confirmation
                else None
            ),
            use_cache=not force_refresh,
        )

    async def preview(
        self, translation_id: str, connection_id: str, caller: Caller
    ) -> PreviewResult:
        """
        Run a translation with a small forced row cap.

        Preview needs no confirmation, is not recorded in history, and
        rejects any body that modifies data regardless of permission.
        """
        translation, connection = await self._load(
            translation_id, connection_id, caller
        )
        self._policy_gate(translation.body, connection, caller, preview=True)

        cap = self.execution.preview_rows
        try:
            rows = await self._call_backend(
                f"preview:{uuid.uuid4().hex}", connection, translation.body, cap
            )
        except TimeoutError as e:
            raise ExecutionTimeout(self.execution.timeout_seconds) from e
        except ConnectionError as e:
            raise ConnectionUnavailable(connection.id, str(e)) from e
        except QueryPilotError:
            raise
        except Exception as e:
            logger.error("backend_error", translation_id=translation.id, error=str(e))
            raise ExecutionError(f"Query failed: {e}") from e

        rows = list(rows[:cap])
        visible = self.results.mask(rows) if caller.mask_sensitive else rows
        logger.info(
            "query_previewed", translation_id=translation.id, rows=len(visible)
        )
        return PreviewResult(translation_id=translation.id, rows=visible)

    async def replay(
        self, execution_id: str, caller: Caller, confirmed: bool = False
    ) -> ExecutionOutcome:
        """
        Re-run the exact body of a recorded execution.

        Resolution, compilation and the result cache are bypassed; the new
        record links back through ``replay_of``. A body that needed
        confirmation, or that modifies data, needs it again on every replay.

        Raises:
            RecordNotFound: execution or its translation is gone or not owned
            ConnectionUnavailable: the original connection is missing or revoked
        """
        original = await self.history_store.get_execution(
            execution_id, caller.organization_id, caller.user_id
        )
        translation = await self.history_store.get_translation(
            original.translation_id, caller.organization_id, caller.user_id
        )
        connection = await self._connection(original.connection_id, caller)
        shape = self._policy_gate(translation.body, connection, caller)
        if (translation.requires_confirmation or shape.mutates) and not confirmed:
            return self._pending(translation)
        logger.info(
            "replay_start", execution_id=execution_id, translation_id=translation.id
        )
        return await self._run(
            translation,
            connection,
            caller,
            confirmation_reason=original.confirmation_reason,
            replay_of=original.id,
            use_cache=False,
        )

    # ------------------------------------------------------------------
    # history

    async def history(
        self,
        caller: Caller,
        connection_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> tuple[list[ExecutionRecord], int]:
        limit = limit or self.config.history.default_page_size
        return await self.history_store.list_executions(
            caller.organization_id,
            caller.user_id,
            connection_id=connection_id,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
        )

    async def get_result(self, execution_id: str, caller: Caller) -> ExecutionRecord:
        return await self.history_store.get_execution(
            execution_id, caller.organization_id, caller.user_id
        )

    async def cancel(self, execution_id: str, caller: Caller) -> bool:
        """Cancel a running execution. False when it is no longer running."""
        await self.history_store.get_execution(
            execution_id, caller.organization_id, caller.user_id
        )
        task = self._running.get(execution_id)
        if task is None or task.done():
            return False
        self._cancelled.add(execution_id)
        task.cancel()
        logger.info("execution_cancel_requested", execution_id=execution_id)
        return True
