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
Interfaces to the systems the engine depends on but does not own.

Connection storage, schema introspection, query execution against a real
database and the language model itself are provided by the host
application. The in-memory registry and static introspector here back the
CLI catalog file and tests.
"""

from typing import Any, Iterable, Optional, Protocol, runtime_checkable

import structlog

from querypilot.analytics.models import (
    Connection,
    ConnectionStatus,
    QueryBody,
    SchemaEntity,
    SchemaSnapshot,
)
from querypilot.exceptions import ExecutionError

logger = structlog.get_logger(__name__)


@runtime_checkable
class ConnectionRegistry(Protocol):
    async def get(self, connection_id: str) -> Optional[Connection]: ...

    async def list_for_organization(self, organization_id: str) -> list[Connection]: ...


@runtime_checkable
class SchemaIntrospector(Protocol):
    async def introspect(self, connection: Connection) -> SchemaSnapshot: ...


@runtime_checkable
class QueryBackend(Protocol):
    """Runs a compiled body against a live connection.

    Implementations must honour ``limit`` and return at most that many rows.
    """

    async def execute(
        self, connection: Connection, body: QueryBody, limit: int
    ) -> list[dict[str, Any]]: ...


@runtime_checkable
class LanguageModel(Protocol):
    async def complete(self, messages: list[dict[str, str]]) -> str: ...


class InMemoryConnectionRegistry:
    def __init__(self, connections: Iterable[Connection] = ()):
        self._connections: dict[str, Connection] = {c.id: c for c in connections}

    def add(self, connection: Connection):
        self._connections[connection.id] = connection

    def revoke(self, connection_id: str):
        if (c := self._connections.get(connection_id)) is not None:
            self._connections[connection_id] = c.model_copy(
                update={"status": ConnectionStatus.revoked}
            )
            logger.info("connection_revoked", connection_id=connection_id)

    def remove(self, connection_id: str):
        self._connections.pop(connection_id, None)

    async def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    async def list_for_organization(self, organization_id: str) -> list[Connection]:
        return sorted(
            (
                c
                for c in self._connections.values()
                if c.organization_id == organization_id
            ),
            key=lambda c: c.id,
        )


class StaticSchemaIntrospector:
    """Serves schema entities that were described up front."""

    def __init__(self, entities: Optional[dict[str, list[SchemaEntity]]] = None):
        self._entities = dict(entities or {})

    def set_entities(self, connection_id: str, entities: list[SchemaEntity]):
        self._entities[connection_id] = list(entities)

    async def introspect(self, connection: Connection) -> SchemaSnapshot:
        return SchemaSnapshot(
            connection_id=connection.id,
            entities=tuple(self._entities.get(connection.id, ())),
        )


class UnconfiguredBackend:
    """Backend used when the host configured none; translation still works."""

    async def execute(
        self, connection: Connection, body: QueryBody, limit: int
    ) -> list[dict[str, Any]]:
        raise ExecutionError(
            "No query backend is configured", connection_id=connection.id
        )
