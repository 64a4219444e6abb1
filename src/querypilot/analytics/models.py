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
Domain types shared by the translation and execution pipeline.

Persisted shapes (connections, schema snapshots, query bodies, translations and
execution records) are pydantic models so they can be stored and returned
as JSON. Short-lived component results live next to the component that
produces them as dataclasses.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum, auto
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from querypilot.exceptions import InvalidTransition


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class BackendKind(StrEnum):
    mongodb = auto()
    postgresql = auto()
    mysql = auto()
    sqlite = auto()
    mssql = auto()

    @property
    def is_document(self) -> bool:
        return self is BackendKind.mongodb

    @property
    def dialect(self) -> Optional[str]:
        """The sqlglot dialect name for relational backends."""
        return {
            BackendKind.postgresql: "postgres",
            BackendKind.mysql: "mysql",
            BackendKind.sqlite: "sqlite",
            BackendKind.mssql: "tsql",
        }.get(self)


class ConnectionStatus(StrEnum):
    active = auto()
    revoked = auto()


class Connection(BaseModel):
    id: str
    name: str
    organization_id: str
    kind: BackendKind
    database: str
    credential_ref: Optional[str] = Field(
        default=None, description="Opaque handle understood by the query backend"
    )
    status: ConnectionStatus = ConnectionStatus.active
    model_config = ConfigDict(frozen=True)

    @property
    def available(self) -> bool:
        return self.status == ConnectionStatus.active


class SchemaField(BaseModel):
    name: str
    type: str = "unknown"
    nullable: bool = True
    primary_key: bool = False
    model_config = ConfigDict(frozen=True)


class SchemaIndex(BaseModel):
    name: str
    fields: tuple[str, ...]
    unique: bool = False
    model_config = ConfigDict(frozen=True)


class SchemaEntity(BaseModel):
    name: str
    connection_id: str
    fields: tuple[SchemaField, ...] = ()
    indexes: tuple[SchemaIndex, ...] = ()
    estimated_count: Optional[int] = Field(default=None, ge=0)
    model_config = ConfigDict(frozen=True)

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def is_indexed(self, field_name: str) -> bool:
        """True when the field leads an index or is the primary key."""
        name = field_name.lower()
        if any(f.primary_key and f.name.lower() == name for f in self.fields):
            return True
        return any(ix.fields and ix.fields[0].lower() == name for ix in self.indexes)


class SchemaSnapshot(BaseModel):
    connection_id: str
    entities: tuple[SchemaEntity, ...] = ()
    refreshed_at: datetime = Field(default_factory=_now)
    model_config = ConfigDict(frozen=True)

    def entity(self, name: str) -> Optional[SchemaEntity]:
        lowered = name.lower()
        for e in self.entities:
            if e.name.lower() == lowered:
                return e
        return None


class FindQuery(BaseModel):
    kind: Literal["find"] = "find"
    collection: str
    filter: dict[str, Any] = Field(default_factory=dict)
    projection: Optional[dict[str, Any]] = None
    sort: Optional[dict[str, int]] = None
    limit: Optional[int] = Field(default=None, ge=0)
    model_config = ConfigDict(frozen=True)


class PipelineQuery(BaseModel):
    kind: Literal["pipeline"] = "pipeline"
    collection: str
    stages: list[dict[str, Any]]
    model_config = ConfigDict(frozen=True)


class SqlQuery(BaseModel):
    kind: Literal["sql"] = "sql"
    statement: str
    dialect: Optional[str] = None
    model_config = ConfigDict(frozen=True)


class CommandQuery(BaseModel):
    """A document-store write command, only compiled for elevated callers."""

    kind: Literal["command"] = "command"
    collection: str
    command: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(frozen=True)


QueryBody = Annotated[
    Union[FindQuery, PipelineQuery, SqlQuery, CommandQuery],
    Field(discriminator="kind"),
]


def body_target(body: QueryBody) -> Optional[str]:
    """The collection a document body addresses, None for SQL."""
    return getattr(body, "collection", None)


class SafetyTier(StrEnum):
    safe = auto()
    warning = auto()
    unsafe = auto()


class Permission(StrEnum):
    read_only = auto()
    elevated = auto()


@dataclass(frozen=True)
class Caller:
    organization_id: str
    user_id: str
    permission: Permission = Permission.read_only
    mask_sensitive: bool = True

    @property
    def allows_mutation(self) -> bool:
        return self.permission == Permission.elevated


class Alternative(BaseModel):
    connection_id: str
    connection_name: str
    database: str
    entity: str
    score: float
    match_reasons: list[str] = Field(default_factory=list)
    model_config = ConfigDict(frozen=True)


class Translation(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    user_id: str
    original_text: str
    connection_id: str
    connection_name: str
    backend: BackendKind
    database: str
    entity: str
    auto_detected: bool
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    alternatives: list[Alternative] = Field(default_factory=list, max_length=3)
    match_reasons: list[str] = Field(default_factory=list)
    body: QueryBody
    explanation: str
    required_indexes: list[str] = Field(default_factory=list)
    safety: SafetyTier
    cost_score: float = Field(ge=0, le=1)
    requires_confirmation: bool
    confirmation_reason: Optional[str] = None
    warning_message: Optional[str] = None
    model_safety_hint: Optional[str] = None
    model_cost_hint: Optional[float] = None
    created_at: datetime = Field(default_factory=_now)
    model_config = ConfigDict(frozen=True)

    @field_validator("alternatives")
    @classmethod
    def _sorted(cls, v: list[Alternative]) -> list[Alternative]:
        return sorted(v, key=lambda a: -a.score)


class ExecutionStatus(StrEnum):
    pending_confirmation = "PendingConfirmation"
    running = "Running"
    completed = "Completed"
    failed = "Failed"


_TRANSITIONS = {
    None: {ExecutionStatus.pending_confirmation, ExecutionStatus.running},
    ExecutionStatus.pending_confirmation: {ExecutionStatus.running},
    ExecutionStatus.running: {ExecutionStatus.completed, ExecutionStatus.failed},
    ExecutionStatus.completed: set(),
    ExecutionStatus.failed: set(),
}


class ExecutionRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    translation_id: str
    connection_id: str
    organization_id: str
    user_id: str
    executed_body: QueryBody
    status: Optional[ExecutionStatus] = None
    status_history: list[ExecutionStatus] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: Optional[int] = None
    truncated: bool = False
    cached: bool = False
    preview_rows: list[dict[str, Any]] = Field(default_factory=list)
    confirmation_reason: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    replay_of: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None

    def transition(self, status: ExecutionStatus) -> "ExecutionRecord":
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Execution {self.id} cannot move from {self.status} to {status}",
                execution_id=self.id,
            )
        self.status = status
        self.status_history.append(status)
        if status in (ExecutionStatus.completed, ExecutionStatus.failed):
            self.finished_at = _now()
        return self

    @property
    def terminal(self) -> bool:
        return self.status in (ExecutionStatus.completed, ExecutionStatus.failed)
