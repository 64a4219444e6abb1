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
Chat REST API Endpoints.

Translate, explain, preview, execute and replay questions over the
organization's connections. Caller identity is taken from the
``X-Organization-Id``, ``X-User-Id`` and ``X-Permission`` headers; the
host application authenticates requests before they get here.
"""

from typing import Annotated, Any, NoReturn, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from querypilot import __version__
from querypilot.analytics.coordinator import ExecutionCoordinator
from querypilot.analytics.models import Caller, Permission
from querypilot.analytics.results import ExecutionFailure
from querypilot.exceptions import QueryPilotError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

ERROR_STATUS = {
    "resolution_ambiguous": status.HTTP_409_CONFLICT,
    "unknown_target": status.HTTP_404_NOT_FOUND,
    "not_found": status.HTTP_404_NOT_FOUND,
    "translation_error": status.HTTP_502_BAD_GATEWAY,
    "transient_model_error": status.HTTP_502_BAD_GATEWAY,
    "unsafe_query_rejected": status.HTTP_403_FORBIDDEN,
    "execution_timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "connection_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "execution_error": status.HTTP_502_BAD_GATEWAY,
}


def status_for(error: QueryPilotError) -> int:
    return ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContextTurn(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class TranslateRequest(_Request):
    query: str = Field(..., min_length=1, description="Natural language question")
    connection_id: Optional[str] = Field(None, description="Explicit connection")
    collection: Optional[str] = Field(None, description="Explicit table or collection")
    context: list[ContextTurn] = Field(default_factory=list)


class ExecuteRequest(_Request):
    translation_id: str
    connection_id: str
    confirmed: bool = False
    force_refresh: bool = False


class PreviewRequest(_Request):
    translation_id: str
    connection_id: str


class ReplayRequest(_Request):
    execution_id: str
    confirmed: bool = False


class CancelRequest(_Request):
    execution_id: str


def get_coordinator(request: Request) -> ExecutionCoordinator:
    return request.app.state.coordinator


def get_caller(
    x_organization_id: Annotated[str, Header()],
    x_user_id: Annotated[str, Header()],
    x_permission: Annotated[Permission, Header()] = Permission.read_only,
) -> Caller:
    return Caller(
        organization_id=x_organization_id,
        user_id=x_user_id,
        permission=x_permission,
    )


CoordinatorDep = Annotated[ExecutionCoordinator, Depends(get_coordinator)]
CallerDep = Annotated[Caller, Depends(get_caller)]


def _raise(error: QueryPilotError) -> NoReturn:
    raise HTTPException(status_code=status_for(error), detail=error.to_dict())


async def _translate(
    request: TranslateRequest,
    coordinator: ExecutionCoordinator,
    caller: Caller,
    explain_only: bool,
) -> dict[str, Any]:
    logger.info(
        "chat_translate_received",
        organization_id=caller.organization_id,
        connection_id=request.connection_id,
        explain_only=explain_only,
    )
    try:
        translation = await coordinator.translate(
            request.query,
            caller,
            connection_id=request.connection_id,
            context=[t.model_dump() for t in request.context],
            entity=request.collection,
            explain_only=explain_only,
        )
    except QueryPilotError as e:
        _raise(e)
    return coordinator.results.format_translation(translation, explain_only=explain_only)


@router.post("/translate")
async def translate(
    request: TranslateRequest, coordinator: CoordinatorDep, caller: CallerDep
) -> dict[str, Any]:
    return await _translate(request, coordinator, caller, explain_only=False)


@router.post("/explain")
async def explain(
    request: TranslateRequest, coordinator: CoordinatorDep, caller: CallerDep
) -> dict[str, Any]:
    return await _translate(request, coordinator, caller, explain_only=True)


@router.post("/preview")
async def preview(
    request: PreviewRequest, coordinator: CoordinatorDep, caller: CallerDep
) -> dict[str, Any]:
    try:
        result = await coordinator.preview(
            request.translation_id, request.connection_id, caller
        )
    except QueryPilotError as e:
        _raise(e)
    return coordinator.results.format_preview(result)


def _outcome_response(coordinator: ExecutionCoordinator, outcome) -> JSONResponse:
    code = status.HTTP_200_OK
    if isinstance(outcome, ExecutionFailure):
        code = status_for(outcome.error)
    return JSONResponse(
        status_code=code, content=coordinator.results.format_outcome(outcome)
    )


@router.post("/execute")
async def execute(
    request: ExecuteRequest, coordinator: CoordinatorDep, caller: CallerDep
) -> JSONResponse:
    """
    Execute a translation.

    Returns ``requiresConfirmation`` with the reason when the translation
    needs an explicit ``confirmed: true`` and the request did not carry it.
    """
    try:
        outcome = await coordinator.execute(
            request.translation_id,
            request.connection_id,
            caller,
            confirmed=request.confirmed,
            force_refresh=request.force_refresh,
        )
    except QueryPilotError as e:
        _raise(e)
    return _outcome_response(coordinator, outcome)


@router.post("/replay")
async def replay(
    request: ReplayRequest, coordinator: CoordinatorDep, caller: CallerDep
) -> JSONResponse:
    try:
        outcome = await coordinator.replay(
            request.execution_id, caller, confirmed=request.confirmed
        )
    except QueryPilotError as e:
        _raise(e)
    return _outcome_response(coordinator, outcome)


@router.get("/history")
async def history(
    coordinator: CoordinatorDep,
    caller: CallerDep,
    connection_id: Annotated[Optional[str], Query(alias="connectionId")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> dict[str, Any]:
    records, total = await coordinator.history(
        caller, connection_id=connection_id, limit=limit, offset=offset
    )
    return coordinator.results.format_history(records, total, limit, offset)


@router.get("/result/{execution_id}")
async def result(
    execution_id: str, coordinator: CoordinatorDep, caller: CallerDep
) -> dict[str, Any]:
    try:
        record = await coordinator.get_result(execution_id, caller)
    except QueryPilotError as e:
        _raise(e)
    return coordinator.results.format_record(record)


@router.post("/cancel")
async def cancel(
    request: CancelRequest, coordinator: CoordinatorDep, caller: CallerDep
) -> dict[str, Any]:
    try:
        cancelled = await coordinator.cancel(request.execution_id, caller)
    except QueryPilotError as e:
        _raise(e)
    return {"executionId": request.execution_id, "cancelled": cancelled}


@router.get("/health")
async def health(coordinator: CoordinatorDep) -> dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "components": {"catalog": coordinator.catalog.stats()},
    }


def create_app(coordinator: ExecutionCoordinator) -> FastAPI:
    app = FastAPI(title="QueryPilot", version=__version__)
    app.state.coordinator = coordinator
    app.include_router(router)
    return app
