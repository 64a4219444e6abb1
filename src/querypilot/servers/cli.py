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

import asyncio
import logging
from importlib import import_module
from pathlib import Path
from typing import Annotated, Optional

import uvicorn
from click import Choice
from rich import print as pp
from typer import Argument, BadParameter, Exit, Option, Typer
from yaml import dump

from querypilot import log
from querypilot.analytics.catalog import SchemaCatalog, load_catalog_file
from querypilot.analytics.collaborators import QueryBackend, UnconfiguredBackend
from querypilot.analytics.coordinator import ExecutionCoordinator
from querypilot.analytics.models import Caller, Permission
from querypilot.analytics.resolver import TargetResolver
from querypilot.api.endpoints import create_app
from querypilot.api.llm import create_language_model
from querypilot.config import settings
from querypilot.exceptions import QueryPilotError

EXIT_CODES = {
    "resolution_ambiguous": 2,
    "unknown_target": 3,
    "unsafe_query_rejected": 4,
    "connection_unavailable": 5,
}

CatalogOption = Annotated[
    Path,
    Option(
        "--catalog",
        exists=True,
        dir_okay=False,
        help="YAML file describing connections and their schemas",
    ),
]
ConfigOption = Annotated[
    Optional[Path],
    Option("-c", "--cfg", help="The config yaml for various options"),
]
OrgOption = Annotated[
    str, Option("--org", help="Organization the question is asked for")
]


def load_backend(spec: str) -> QueryBackend:
    """Import ``module:factory`` and call the factory to build a backend."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise BadParameter(f"Expected module:factory, got {spec!r}")
    try:
        factory = getattr(import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise BadParameter(f"Unable to load backend {spec!r}: {e}") from e
    backend = factory()
    if not isinstance(backend, QueryBackend):
        raise BadParameter(f"{spec!r} did not produce a query backend")
    return backend


def _fail(e: QueryPilotError):
    pp(e.to_dict())
    raise Exit(code=EXIT_CODES.get(e.code, 1))


ty = Typer(context_settings=dict(help_option_names=["-h", "--help"]))


@ty.command(name="serve", help="Run the chat REST API")
def serve(
    catalog: CatalogOption,
    config_file: ConfigOption = None,
    backend: Annotated[
        Optional[str],
        Option(help="module:factory returning the query backend to execute with"),
    ] = None,
    log_to_file: Annotated[Optional[bool], Option(help="Log to file")] = False,
    enable_json_logging: Annotated[
        Optional[bool], Option(help="Enable JSON logs")
    ] = False,
    log_level: Annotated[
        Optional[str],
        Option(
            help="The log level", click_type=Choice(list(logging._nameToLevel.keys()))
        ),
    ] = "INFO",
    port: Annotated[int, Option(help="The port to listen on")] = 8000,
    host: Annotated[
        Optional[str], Option(help="Where uvicorn listens for requests")
    ] = "127.0.0.1",
):
    log.configure(enable_json_logging=enable_json_logging, to_file=log_to_file)
    log.set_level(log_level)
    settings.configure(config_file, force=True)

    registry, introspector = load_catalog_file(catalog)
    coordinator = ExecutionCoordinator(
        registry,
        introspector,
        load_backend(backend) if backend else UnconfiguredBackend(),
        create_language_model(settings.instance().llm),
        config=settings.instance(),
    )
    log.logger("server_startup").info(
        "server_starting", host=host, port=port, catalog=str(catalog)
    )
    uvicorn.run(
        create_app(coordinator), host=host, port=port, log_level=log_level.lower()
    )


@ty.command(name="resolve", help="Show which connection and entity a question targets")
def resolve(
    text: Annotated[str, Argument(help="The question")],
    catalog: CatalogOption,
    org: OrgOption = "default",
    connection_id: Annotated[
        Optional[str], Option("--connection", help="Explicit connection id")
    ] = None,
    config_file: ConfigOption = None,
):
    settings.configure(config_file, force=True)
    registry, introspector = load_catalog_file(catalog)
    resolver = TargetResolver(SchemaCatalog(registry, introspector))
    try:
        target = asyncio.run(resolver.resolve(text, org, connection_id))
    except QueryPilotError as e:
        _fail(e)
    pp(
        {
            "connectionId": target.connection.id,
            "database": target.connection.database,
            "entity": target.entity.name,
            "autoDetected": target.auto_detected,
            "confidence": target.confidence,
            "matchReasons": target.match_reasons,
            "alternatives": [a.model_dump() for a in target.alternatives],
        }
    )


@ty.command(name="explain", help="Translate a question without executing it")
def explain(
    text: Annotated[str, Argument(help="The question")],
    catalog: CatalogOption,
    org: OrgOption = "default",
    user: Annotated[str, Option(help="User asking the question")] = "cli",
    connection_id: Annotated[
        Optional[str], Option("--connection", help="Explicit connection id")
    ] = None,
    elevated: Annotated[
        bool, Option(help="Translate with elevated (write) permission")
    ] = False,
    config_file: ConfigOption = None,
):
    settings.configure(config_file, force=True)
    registry, introspector = load_catalog_file(catalog)
    coordinator = ExecutionCoordinator(
        registry,
        introspector,
        UnconfiguredBackend(),
        create_language_model(settings.instance().llm),
        config=settings.instance(),
    )
    caller = Caller(
        organization_id=org,
        user_id=user,
        permission=Permission.elevated if elevated else Permission.read_only,
    )
    try:
        translation = asyncio.run(
            coordinator.explain(text, caller, connection_id=connection_id)
        )
    except QueryPilotError as e:
        _fail(e)
    pp(coordinator.results.format_translation(translation, explain_only=True))


tc = Typer(
    context_settings=dict(help_option_names=["-h", "--help"]),
    name="config",
    help="Configuration management",
)


@tc.command("list", help="Show default configuration, if it exists")
def show_default_config(
    show_filename: Annotated[
        bool, Option(help="Show the filename for default config file")
    ] = False,
):
    dc = settings.default_config()
    pp(f"Default config file: {dc!s} (exists = {dc.exists()!s})")
    if not show_filename:
        if dc.exists():
            settings.configure(dc, force=True)
        pp(
            dump(
                settings.instance().model_dump(
                    exclude_none=True, mode="json", exclude_unset=True, by_alias=True
                )
            )
        )
    pp(f"Default log file: {log.get_log_file()!s}")


@tc.command("create", help="Create a default configuration file")
def create_default_config(
    provider: Annotated[
        settings.Model, Option(help="The language model provider")
    ] = settings.Model.openai,
    model: Annotated[Optional[str], Option(help="The model name")] = None,
    api_key: Annotated[
        Optional[str],
        Option(
            help="The model API key. If it starts with @ then the rest is treated as a filename"
        ),
    ] = None,
    base_url: Annotated[
        Optional[str], Option(help="Base URL of an OpenAI compatible or ollama server")
    ] = None,
    allow_dml: Annotated[
        bool, Option(help="Allow elevated callers to run queries that modify data")
    ] = False,
    dry_run: Annotated[
        bool, Option(help="Dry run, do not overwrite the config file. Just print it")
    ] = False,
):
    llm = {"provider": provider, "api_key": api_key, "base_url": base_url}
    if model is not None:
        llm["model"] = model
    cfg = settings.Settings.model_validate(
        {
            "llm": {k: v for k, v in llm.items() if v is not None},
            "execution": {"allow_dml": allow_dml} if allow_dml else {},
        }
    )
    if (d := settings.write_settings(inst=cfg, dry_run=dry_run)) is not None and dry_run:
        pp(d)
    elif not dry_run:
        pp(f"Created default config file: {settings.default_config()!s}")


ty.add_typer(tc)


def cli():
    ty()


if __name__ == "__main__":
    cli()
