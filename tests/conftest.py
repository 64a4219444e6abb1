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
Global pytest fixtures for querypilot tests.
"""
import os

import pytest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from yaml import dump

from querypilot.analytics.catalog import SchemaCatalog
from querypilot.analytics.collaborators import (
    InMemoryConnectionRegistry,
    StaticSchemaIntrospector,
)
from querypilot.analytics.coordinator import ExecutionCoordinator
from querypilot.analytics.models import (
    BackendKind,
    Caller,
    Connection,
    Permission,
    SchemaEntity,
    SchemaField,
    SchemaIndex,
)
from querypilot.config import settings

from mocks.fakes import RecordingBackend, ScriptedLanguageModel

ORG = "org-1"
USER = "user-1"


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for config files"""
    with TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_config_dir(temp_config_dir):
    """Mock the home directory to use our temporary directory"""
    with patch.object(Path, "home", return_value=temp_config_dir):
        old_env = os.environ.get("XDG_CONFIG_HOME")
        os.environ["XDG_CONFIG_HOME"] = str(temp_config_dir)
        yield temp_config_dir
        if old_env:
            os.environ["XDG_CONFIG_HOME"] = old_env
        else:
            os.environ.pop("XDG_CONFIG_HOME", None)


@pytest.fixture
def mock_settings_instance():
    """Create a mock settings instance with test friendly values"""
    old_settings = settings._settings.get()
    try:
        settings._settings.set(
            settings.Settings.model_validate(
                {
                    "llm": {"api_key": "test-key", "timeout_seconds": 1.0},
                    "execution": {"timeout_seconds": 1.0},
                }
            )
        )
        yield settings.instance()
    finally:
        settings._settings.set(old_settings)


def _fields(*names, pk="id"):
    return tuple(
        SchemaField(name=n, type="text", primary_key=(n == pk)) for n in names
    )


def _index(*fields):
    return SchemaIndex(name="_".join(fields) + "_idx", fields=tuple(fields))


@pytest.fixture
def connections():
    return [
        Connection(
            id="pg-shop",
            name="Shop DB",
            organization_id=ORG,
            kind=BackendKind.postgresql,
            database="shop",
        ),
        Connection(
            id="mongo-events",
            name="Events",
            organization_id=ORG,
            kind=BackendKind.mongodb,
            database="events",
        ),
        Connection(
            id="pg-other",
            name="Other org",
            organization_id="org-2",
            kind=BackendKind.postgresql,
            database="other",
        ),
    ]


@pytest.fixture
def entities():
    return {
        "pg-shop": [
            SchemaEntity(
                name="customers",
                connection_id="pg-shop",
                fields=_fields("id", "name", "email", "city", "created_at"),
                indexes=(_index("email"),),
                estimated_count=5_000,
            ),
            SchemaEntity(
                name="orders",
                connection_id="pg-shop",
                fields=_fields("id", "customer_id", "total", "status", "created_at"),
                indexes=(_index("customer_id"),),
                estimated_count=2_000_000,
            ),
            SchemaEntity(
                name="products",
                connection_id="pg-shop",
                fields=_fields("id", "title", "price", "sku"),
                estimated_count=500,
            ),
        ],
        "mongo-events": [
            SchemaEntity(
                name="events",
                connection_id="mongo-events",
                fields=_fields("_id", "user_id", "type", "timestamp", pk="_id"),
                indexes=(_index("user_id"),),
                estimated_count=50_000_000,
            ),
        ],
        "pg-other": [
            SchemaEntity(
                name="customers",
                connection_id="pg-other",
                fields=_fields("id", "name"),
                estimated_count=10,
            ),
        ],
    }


@pytest.fixture
def registry(connections):
    return InMemoryConnectionRegistry(connections)


@pytest.fixture
def introspector(entities):
    return StaticSchemaIntrospector(entities)


@pytest.fixture
def catalog(registry, introspector):
    return SchemaCatalog(registry, introspector, ttl_seconds=60)


@pytest.fixture
def caller():
    return Caller(organization_id=ORG, user_id=USER)


@pytest.fixture
def elevated_caller():
    return Caller(organization_id=ORG, user_id=USER, permission=Permission.elevated)


@pytest.fixture
def llm():
    return ScriptedLanguageModel()


@pytest.fixture
def backend():
    return RecordingBackend(
        rows=[
            {"id": i, "name": f"customer {i}", "city": "Berlin", "password": "pw"}
            for i in range(1, 21)
        ]
    )


@pytest.fixture
def coordinator(registry, introspector, backend, llm, mock_settings_instance):
    return ExecutionCoordinator(
        registry, introspector, backend, llm, config=mock_settings_instance
    )


@pytest.fixture
def catalog_file(temp_config_dir):
    path = temp_config_dir / "catalog.yaml"
    path.write_text(
        dump(
            {
                "connections": [
                    {
                        "id": "pg-shop",
                        "name": "Shop DB",
                        "organization_id": ORG,
                        "kind": "postgresql",
                        "database": "shop",
                        "entities": [
                            {
                                "name": "customers",
                                "estimated_count": 5000,
                                "fields": [
                                    {"name": "id", "type": "int", "primary_key": True},
                                    "name",
                                    "email",
                                    "city",
                                ],
                                "indexes": [["email"]],
                            },
                            {
                                "name": "orders",
                                "fields": ["id", "customer_id", "total"],
                                "indexes": [
                                    {"name": "orders_customer", "fields": ["customer_id"]}
                                ],
                            },
                        ],
                    }
                ]
            }
        )
    )
    return path
