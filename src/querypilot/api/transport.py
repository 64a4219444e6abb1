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
import logging

from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout
from typing import AnyStr, Callable, Optional, Dict, TypeAlias, Union, Any
from json import loads
from pydantic import BaseModel, ValidationError
from http import HTTPStatus

from querypilot.log import logger
from querypilot.exceptions import TransientModelError, TranslationError

DeserializationStrategy: TypeAlias = Union[Callable, type[BaseModel]]

RETRYABLE_STATUSES = frozenset(
    {
        HTTPStatus.TOO_MANY_REQUESTS,
        HTTPStatus.INTERNAL_SERVER_ERROR,
        HTTPStatus.BAD_GATEWAY,
        HTTPStatus.SERVICE_UNAVAILABLE,
        HTTPStatus.GATEWAY_TIMEOUT,
    }
)


class AsyncHttpClient:
    def __init__(
        self,
        uri: AnyStr,
        token: Optional[AnyStr] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.uri = uri.rstrip("/")
        self.token = token
        self.timeout = ClientTimeout(total=timeout_seconds) if timeout_seconds else None
        self.headers = {"content-type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def deserialize(
        self,
        response: ClientResponse,
        deser: Optional[DeserializationStrategy],
    ):
        js = await response.text()
        try:
            if isinstance(deser, type) and issubclass(deser, BaseModel):
                return deser.model_validate_json(js)
            return loads(js, object_hook=deser)
        except ValidationError as e:
            logger().error(
                "response_validation_failed",
                method=response.request_info.method,
                url=str(response.request_info.url),
                errors=e.errors(),
            )
            raise TranslationError(f"Unexpected response from {self.uri}") from e
        except ValueError as e:
            logger().error(
                "response_not_json",
                method=response.request_info.method,
                url=str(response.request_info.url),
                data=js[:500],
            )
            raise TranslationError(f"Unparseable response from {self.uri}") from e

    async def handle_response(
        self, response: ClientResponse, deser: Optional[DeserializationStrategy]
    ):
        if response.status in RETRYABLE_STATUSES:
            raise TransientModelError(
                f"{response.request_info.method} {response.request_info.url} "
                f"returned {response.status}",
                status=response.status,
            )
        if response.status >= 400:
            body = await response.text()
            logger().error("request_failed", status=response.status, body=body[:500])
            raise TranslationError(
                f"Language model request failed with status {response.status}",
                status=response.status,
            )
        return await self.deserialize(response, deser)

    def log_request(self, method: str, endpoint: str):
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            sanitized_headers = {
                k: (v if k != "Authorization" else "Bearer <redacted>")
                for k, v in self.headers.items()
            }
            logger().debug(
                "http_request",
                method=method,
                url=f"{self.uri}{endpoint}",
                headers=sanitized_headers,
            )

    async def post(
        self,
        endpoint: AnyStr,
        body: Optional[Dict[str, Any]] = None,
        deser: Optional[DeserializationStrategy] = None,
    ):
        try:
            async with ClientSession(timeout=self.timeout) as session:
                self.log_request("POST", endpoint)
                async with session.post(
                    f"{self.uri}{endpoint}", headers=self.headers, json=body
                ) as response:
                    return await self.handle_response(response, deser)
        except ClientError as e:
            raise TransientModelError(f"POST {self.uri}{endpoint} failed: {e}") from e
