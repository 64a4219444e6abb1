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
Results Processor - execution outcomes and response formatting.

Outcomes are returned by the coordinator as plain dataclasses; this module
turns them, and translations, into the camelCase shapes callers receive,
and masks sensitive columns in result rows.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

import structlog

from querypilot.analytics.models import (
    CommandQuery,
    ExecutionRecord,
    FindQuery,
    PipelineQuery,
    QueryBody,
    SafetyTier,
    SqlQuery,
    Translation,
)
from querypilot.exceptions import QueryPilotError

logger = structlog.get_logger(__name__)

REDACTED = "***REDACTED***"


@dataclass
class ExecutionSuccess:
    record: ExecutionRecord
    rows: list[dict[str, Any]]
    replayed_from: Optional[str] = None


@dataclass
class PendingConfirmation:
    """Execution paused until the caller repeats the request with confirmed=True."""

    translation_id: str
    reason: str
    estimated_cost: float
    safety: SafetyTier


@dataclass
class ExecutionFailure:
    record: ExecutionRecord
    error: QueryPilotError


ExecutionOutcome = Union[ExecutionSuccess, PendingConfirmation, ExecutionFailure]


@dataclass
class PreviewResult:
    translation_id: str
    rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


def render_query(body: QueryBody) -> Any:
    """The body in the native form a user of that database would recognise."""
    match body:
        case SqlQuery():
            return body.statement
        case PipelineQuery():
            return body.stages
        case FindQuery():
            out: dict[str, Any] = {"find": body.filter}
            if body.projection:
                out["projection"] = body.projection
            if body.sort:
                out["sort"] = body.sort
            if body.limit is not None:
                out["limit"] = body.limit
            return out
        case CommandQuery():
            return {body.command: body.arguments}
    raise TypeError(f"Unsupported query body {type(body).__name__}")


class ResultsProcessor:
    """
    Results Processor for masking and response shaping.

    This component:
    1. Masks sensitive columns for callers that may not see them
    2. Formats translations, outcomes, previews and history pages
    """

    def __init__(self, sensitive_columns: Iterable[str] = ()):
        self.sensitive_columns = frozenset(c.lower() for c in sensitive_columns)

    def is_sensitive(self, column: str) -> bool:
        lowered = column.lower()
        return any(
            re.search(rf"(^|_){re.escape(s)}(_|$)", lowered)
            for s in self.sensitive_columns
        )

    def mask(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows or not self.sensitive_columns:
            return rows
        masked_columns = {c for row in rows for c in row if self.is_sensitive(c)}
        if not masked_columns:
            return rows
        logger.info("sensitive_columns_masked", columns=sorted(masked_columns))
        return [
            {k: (REDACTED if k in masked_columns else v) for k, v in row.items()}
            for row in rows
        ]

    def format_translation(
        self, translation: Translation, explain_only: bool = False
    ) -> dict[str, Any]:
        target_key = "collection" if translation.backend.is_document else "table"
        out: dict[str, Any] = {
            "translationId": translation.id,
            "query": render_query(translation.body),
            "queryKind": translation.body.kind,
            "dbType": translation.backend.value,
            "connectionId": translation.connection_id,
            target_key: translation.entity,
            "explain": translation.explanation,
            "autoDetected": translation.auto_detected,
            "estimatedCost": translation.cost_score,
            "safety": translation.safety.value,
            "requiresIndexes": translation.required_indexes,
            "requiresConfirmation": translation.requires_confirmation,
            "confirmationReason": translation.confirmation_reason,
            "warningMessage": translation.warning_message,
        }
        if translation.auto_detected:
            out["detectedFrom"] = {
                "connectionId": translation.connection_id,
                "connectionName": translation.connection_name,
                "database": translation.database,
                target_key: translation.entity,
                "score": translation.confidence,
                "matchReasons": translation.match_reasons,
                "alternatives": [
                    {
                        "connectionId": a.connection_id,
                        "connectionName": a.connection_name,
                        "database": a.database,
                        "entity": a.entity,
                        "score": a.score,
                        "matchReasons": a.match_reasons,
                    }
                    for a in translation.alternatives
                ],
            }
        if explain_only:
            out["explainOnly"] = True
        return out

    def format_record(self, record: ExecutionRecord, include_rows: bool = True) -> dict[str, Any]:
        out = {
            "executionId": record.id,
            "translationId": record.translation_id,
            "connectionId": record.connection_id,
            "status": record.status.value if record.status else None,
            "statusHistory": [s.value for s in record.status_history],
            "query": render_query(record.executed_body),
            "rowCount": record.row_count,
            "executionTime": record.execution_time_ms,
            "truncated": record.truncated,
            "cached": record.cached,
            "startedAt": record.started_at.isoformat(),
            "finishedAt": record.finished_at.isoformat() if record.finished_at else None,
            "replayOf": record.replay_of,
        }
        if record.error_kind:
            out["error"] = {"kind": record.error_kind, "message": record.error_message}
        if include_rows:
            out["results"] = record.preview_rows
        return out

    def format_outcome(self, outcome: ExecutionOutcome) -> dict[str, Any]:
        match outcome:
            case PendingConfirmation():
                return {
                    "requiresConfirmation": True,
                    "message": outcome.reason,
                    "estimatedCost": outcome.estimated_cost,
                    "safety": outcome.safety.value,
                    "translationId": outcome.translation_id,
                }
            case ExecutionSuccess():
                out = {
                    "executionId": outcome.record.id,
                    "results": outcome.rows,
                    "rowCount": outcome.record.row_count,
                    "executionTime": outcome.record.execution_time_ms,
                    "truncated": outcome.record.truncated,
                    "cached": outcome.record.cached,
                }
                if outcome.replayed_from is not None:
                    out["replayed"] = True
                    out["originalExecutionId"] = outcome.replayed_from
                return out
            case ExecutionFailure():
                return {
                    "executionId": outcome.record.id,
                    "status": outcome.record.status.value,
                    **outcome.error.to_dict(),
                }
        raise TypeError(f"Unsupported outcome {type(outcome).__name__}")

    def format_preview(self, preview: PreviewResult) -> dict[str, Any]:
        return {
            "translationId": preview.translation_id,
            "preview": True,
            "previewRowCount": preview.row_count,
            "results": preview.rows,
        }

    def format_history(
        self, records: list[ExecutionRecord], total: int, limit: int, offset: int
    ) -> dict[str, Any]:
        return {
            "history": [self.format_record(r, include_rows=False) for r in records],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + len(records) < total,
            },
        }
