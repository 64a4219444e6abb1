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
Tests for the schema catalog: caching, single-flight refresh and the
catalog file loader
"""

import asyncio

import pytest

from querypilot.analytics.catalog import SchemaCatalog, load_catalog_file
from querypilot.analytics.collaborators import StaticSchemaIntrospector
from querypilot.analytics.models import BackendKind, SchemaEntity, SchemaSnapshot
from querypilot.exceptions import ConnectionUnavailable


class SlowIntrospector(StaticSchemaIntrospector):
    def __init__(self, entities, delay=0.05):
        super().__init__(entities)
        self.delay = delay
        self.calls = 0

    async def introspect(self, connection):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return await super().introspect(connection)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_snapshot_is_cached_until_ttl(registry, entities):
    clock = FakeClock()
    introspector = SlowIntrospector(entities, delay=0)
    catalog = SchemaCatalog(registry, introspector, ttl_seconds=10, clock=clock)

    first = await catalog.snapshot("pg-shop")
    assert await catalog.snapshot("pg-shop") is first
    assert introspector.calls == 1

    clock.now = 11
    refreshed = await catalog.snapshot("pg-shop")
    assert refreshed is not first
    assert introspector.calls == 2
    assert catalog.stats()["hits"] == 1 and catalog.stats()["misses"] == 2


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_introspection(registry, entities):
    """Many readers racing on a cold cache trigger a single introspection"""
    introspector = SlowIntrospector(entities)
    catalog = SchemaCatalog(registry, introspector, ttl_seconds=60)

    snaps = await asyncio.gather(*(catalog.snapshot("pg-shop") for _ in range(10)))
    assert introspector.calls == 1
    assert all(s is snaps[0] for s in snaps)
    assert catalog.stats()["refreshing"] == 0


@pytest.mark.asyncio
async def test_readers_see_old_snapshot_during_refresh(registry, entities):
    introspector = SlowIntrospector(entities)
    catalog = SchemaCatalog(registry, introspector, ttl_seconds=60)
    old = await catalog.snapshot("pg-shop")

    introspector.set_entities(
        "pg-shop", [SchemaEntity(name="invoices", connection_id="pg-shop")]
    )
    refresh = asyncio.ensure_future(catalog.refresh("pg-shop"))
    await asyncio.sleep(0)
    assert catalog.peek("pg-shop") is old
    new = await refresh
    assert catalog.peek("pg-shop") is new
    assert [e.name for e in new.entities] == ["invoices"]


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_refresh(registry, entities):
    introspector = SlowIntrospector(entities)
    catalog = SchemaCatalog(registry, introspector, ttl_seconds=60)

    waiter = asyncio.ensure_future(catalog.snapshot("pg-shop"))
    other = asyncio.ensure_future(catalog.snapshot("pg-shop"))
    await asyncio.sleep(0)
    waiter.cancel()
    snap = await other
    assert isinstance(snap, SchemaSnapshot)
    assert introspector.calls == 1


@pytest.mark.asyncio
async def test_revoked_connection_is_unavailable(registry, catalog):
    registry.revoke("pg-shop")
    with pytest.raises(ConnectionUnavailable):
        await catalog.snapshot("pg-shop")


@pytest.mark.asyncio
async def test_snapshots_for_skips_failures(registry, entities):
    class Failing(StaticSchemaIntrospector):
        async def introspect(self, connection):
            if connection.id == "mongo-events":
                raise RuntimeError("server down")
            return await super().introspect(connection)

    catalog = SchemaCatalog(registry, Failing(entities), ttl_seconds=60)
    sources = await catalog.snapshots_for("org-1")
    assert [c.id for c, _ in sources] == ["pg-shop"]


@pytest.mark.asyncio
async def test_invalidate(catalog):
    await catalog.snapshot("pg-shop")
    await catalog.snapshot("mongo-events")
    catalog.invalidate("pg-shop")
    assert catalog.peek("pg-shop") is None
    assert catalog.peek("mongo-events") is not None
    catalog.invalidate()
    assert catalog.stats()["connections"] == 0


@pytest.mark.asyncio
async def test_load_catalog_file(catalog_file):
    registry, introspector = load_catalog_file(catalog_file)
    conn = await registry.get("pg-shop")
    assert conn.kind == BackendKind.postgresql and conn.name == "Shop DB"

    snap = await introspector.introspect(conn)
    customers = snap.entity("customers")
    assert customers.estimated_count == 5000
    assert customers.field_names == ["id", "name", "email", "city"]
    assert customers.is_indexed("id") and customers.is_indexed("email")
    assert not customers.is_indexed("city")
    assert snap.entity("orders").is_indexed("customer_id")
