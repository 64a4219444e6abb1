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
Schema Catalog - cached, per-connection schema snapshots.

Snapshots are refreshed at most once at a time per connection. Readers always
see either the previous snapshot or the fully introspected new one, never a
partially built one.
"""

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

import structlog
from pydantic import BaseModel, Field
from yaml import safe_load

from querypilot.analytics.collaborators import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    SchemaIntrospector,
    StaticSchemaIntrospector,
)
from querypilot.analytics.models import (
    Connection,
    SchemaEntity,
    SchemaField,
    SchemaIndex,
    SchemaSnapshot,
)
from querypilot.config import settings
from querypilot.exceptions import ConnectionUnavailable

logger = structlog.get_logger(__name__)


class SchemaCatalog:
    def __init__(
        self,
        registry: ConnectionRegistry,
        introspector: SchemaIntrospector,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.introspector = introspector
        self.ttl_seconds = (
            ttl_seconds
            if ttl_seconds is not None
            else settings.instance().catalog.ttl_seconds
        )
        self._clock = clock
        self._snapshots: dict[str, tuple[float, SchemaSnapshot]] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0

    async def connection(self, connection_id: str) -> Connection:
        conn = await self.registry.get(connection_id)
        if conn is None or not conn.available:
            raise ConnectionUnavailable(connection_id)
        return conn

    def peek(self, connection_id: str) -> Optional[SchemaSnapshot]:
        if (entry := self._snapshots.get(connection_id)) is not None:
            return entry[1]
        return None

    def _fresh(self, connection_id: str) -> Optional[SchemaSnapshot]:
        entry = self._snapshots.get(connection_id)
        if entry is not None and self._clock() - entry[0] < self.ttl_seconds:
            return entry[1]
        return None

    async def snapshot(
        self, connection_id: str, force_refresh: bool = False
    ) -> SchemaSnapshot:
        if not force_refresh and (snap := self._fresh(connection_id)) is not None:
            self._hits += 1
            return snap
        self._misses += 1
        return await self.refresh(connection_id)

    async def refresh(self, connection_id: str) -> SchemaSnapshot:
        """Introspect a connection, joining an in-flight refresh if one exists."""
        task = self._inflight.get(connection_id)
        if task is None:
            task = asyncio.ensure_future(self._introspect(connection_id))
            self._inflight[connection_id] = task
            task.add_done_callback(
                lambda _t, cid=connection_id: self._inflight.pop(cid, None)
            )
        else:
            logger.debug("schema_refresh_joined", connection_id=connection_id)
        # shield so one cancelled waiter does not cancel the shared refresh
        return await asyncio.shield(task)

    async def _introspect(self, connection_id: str) -> SchemaSnapshot:
        conn = await self.connection(connection_id)
        started = self._clock()
        logger.info("schema_refresh_started", connection_id=connection_id)
        snap = await self.introspector.introspect(conn)
        self._snapshots[connection_id] = (self._clock(), snap)
        logger.info(
            "schema_refresh_committed",
            connection_id=connection_id,
            entities=len(snap.entities),
            duration_s=round(self._clock() - started, 3),
        )
        return snap

    async def snapshots_for(
        self, organization_id: str
    ) -> list[tuple[Connection, SchemaSnapshot]]:
        connections = [
            c
            for c in await self.registry.list_for_organization(organization_id)
            if c.available
        ]

        async def _one(conn: Connection):
            try:
                return conn, await self.snapshot(conn.id)
            except Exception as e:
                logger.error(
                    "schema_refresh_failed", connection_id=conn.id, error=str(e)
                )
                return None

        results = await asyncio.gather(*(_one(c) for c in connections))
        return [r for r in results if r is not None]

    def invalidate(self, connection_id: Optional[str] = None):
        if connection_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(connection_id, None)
        logger.info("schema_cache_invalidated", connection_id=connection_id)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "connections": len(self._snapshots),
            "fresh": sum(
                1 for ts, _ in self._snapshots.values() if now - ts < self.ttl_seconds
            ),
            "refreshing": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "ttl_seconds": self.ttl_seconds,
        }


class _EntityFile(BaseModel):
    name: str
    estimated_count: Optional[int] = None
    fields: list[Union[str, SchemaField]] = Field(default_factory=list)
    indexes: list[Union[list[str], SchemaIndex]] = Field(default_factory=list)


class _ConnectionFile(BaseModel):
    id: str
    name: Optional[str] = None
    organization_id: str = "default"
    kind: str
    database: str
    credential_ref: Optional[str] = None
    entities: list[_EntityFile] = Field(default_factory=list)


class _CatalogFile(BaseModel):
    connections: list[_ConnectionFile] = Field(default_factory=list)


def load_catalog_file(
    path: Union[str, Path],
) -> tuple[InMemoryConnectionRegistry, StaticSchemaIntrospector]:
    """
    Build a registry and introspector from a YAML catalog description.

    Fields may be given as bare names or as ``{name, type, nullable,
    primary_key}`` mappings; indexes as field lists or ``{name, fields,
    unique}`` mappings.
    """
    with Path(path).expanduser().open() as f:
        raw = _CatalogFile.model_validate(safe_load(f) or {})

    registry = InMemoryConnectionRegistry()
    introspector = StaticSchemaIntrospector()
    for c in raw.connections:
        registry.add(
            Connection(
                id=c.id,
                name=c.name or c.id,
                organization_id=c.organization_id,
                kind=c.kind,
                database=c.database,
                credential_ref=c.credential_ref,
            )
        )
        entities = []
        for e in c.entities:
            fields = tuple(
                SchemaField(name=f) if isinstance(f, str) else f for f in e.fields
            )
            indexes = tuple(
                (
                    SchemaIndex(name="_".join(ix) + "_idx", fields=tuple(ix))
                    if isinstance(ix, list)
                    else ix
                )
                for ix in e.indexes
            )
            entities.append(
                SchemaEntity(
                    name=e.name,
                    connection_id=c.id,
                    fields=fields,
                    indexes=indexes,
                    estimated_count=e.estimated_count,
                )
            )
        introspector.set_entities(c.id, entities)
        logger.debug("catalog_connection_loaded", connection_id=c.id, entities=len(entities))
    return registry, introspector
