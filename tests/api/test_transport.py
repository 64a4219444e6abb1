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
Unit tests for the HTTP transport and the chat model clients
"""

import json
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from aiohttp import ClientConnectionError, ClientResponse

from querypilot.api.llm import (
    ChatCompletion,
    OllamaChatModel,
    OllamaChatResponse,
    OpenAiChatModel,
    create_language_model,
)
from querypilot.api.transport import AsyncHttpClient
from querypilot.config import settings
from querypilot.exceptions import TransientModelError, TranslationError


def _response(status: int, body) -> MagicMock:
    response = MagicMock(spec=ClientResponse)
    response.status = status
    response.text = AsyncMock(
        return_value=body if isinstance(body, str) else json.dumps(body)
    )
    response.request_info.method = "POST"
    response.request_info.url = "http://llm.local/chat/completions"
    return response


class TestAsyncHttpClient:
    def test_headers(self):
        client = AsyncHttpClient("http://llm.local/", "secret")
        assert client.uri == "http://llm.local"
        assert client.headers["Authorization"] == "Bearer secret"
        assert "Authorization" not in AsyncHttpClient("http://llm.local").headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    async def test_retryable_statuses(self, status):
        client = AsyncHttpClient("http://llm.local", "secret")
        with pytest.raises(TransientModelError):
            await client.handle_response(_response(status, "busy"), None)

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retryable(self):
        client = AsyncHttpClient("http://llm.local", "secret")
        with pytest.raises(TranslationError) as e:
            await client.handle_response(_response(401, "bad key"), None)
        assert e.value.details["status"] == 401

    @pytest.mark.asyncio
    async def test_deserialize_into_model(self):
        client = AsyncHttpClient("http://llm.local", "secret")
        body = {"id": "c1", "choices": [{"message": {"role": "assistant", "content": "{}"}}]}
        result = await client.handle_response(_response(200, body), ChatCompletion)
        assert isinstance(result, ChatCompletion)
        assert result.choices[0].message.content == "{}"

    @pytest.mark.asyncio
    async def test_deserialize_errors(self):
        client = AsyncHttpClient("http://llm.local", "secret")
        with pytest.raises(TranslationError):
            await client.handle_response(_response(200, {"choices": "nope"}), ChatCompletion)
        with pytest.raises(TranslationError):
            await client.handle_response(_response(200, "<html>"), None)

    @pytest.mark.asyncio
    async def test_connection_errors_are_transient(self):
        client = AsyncHttpClient("http://llm.local", "secret")
        with patch(
            "querypilot.api.transport.ClientSession",
            side_effect=ClientConnectionError("refused"),
        ):
            with pytest.raises(TransientModelError):
                await client.post("/chat/completions", body={})

    def test_log_request_redacts_token(self):
        client = AsyncHttpClient("http://llm.local", "secret")
        root = logging.getLogger()
        level = root.level
        with patch("querypilot.api.transport.logger") as log:
            root.setLevel(logging.DEBUG)
            try:
                client.log_request("POST", "/chat/completions")
            finally:
                root.setLevel(level)
        kwargs = log.return_value.debug.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer <redacted>"


class TestChatModels:
    @pytest.mark.asyncio
    async def test_openai_payload(self):
        llm = settings.Llm(api_key="k", model="gpt-4o-mini", org="acme")
        model = OpenAiChatModel(llm)
        assert model.headers["OpenAI-Organization"] == "acme"
        reply = ChatCompletion.model_validate(
            {"choices": [{"message": {"role": "assistant", "content": '{"query": 1}'}}]}
        )
        with patch.object(model, "post", new_callable=AsyncMock, return_value=reply) as post:
            out = await model.complete([{"role": "user", "content": "hi"}])
        assert out == '{"query": 1}'
        endpoint = post.call_args.args[0]
        body = post.call_args.kwargs["body"]
        assert endpoint == "/chat/completions"
        assert body["model"] == "gpt-4o-mini" and body["temperature"] == 0
        assert body["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_openai_empty_completion(self):
        model = OpenAiChatModel(settings.Llm(api_key="k"))
        with patch.object(
            model, "post", new_callable=AsyncMock, return_value=ChatCompletion()
        ):
            with pytest.raises(TranslationError):
                await model.complete([])

    @pytest.mark.asyncio
    async def test_ollama_payload(self):
        model = OllamaChatModel(settings.Llm(provider="ollama", model="llama3"))
        assert model.uri == "http://localhost:11434"
        reply = {"message": {"role": "assistant", "content": "{}"}}
        with patch.object(
            model,
            "post",
            new_callable=AsyncMock,
            return_value=OllamaChatResponse.model_validate(reply),
        ) as post:
            assert await model.complete([]) == "{}"
        assert post.call_args.args[0] == "/api/chat"
        assert post.call_args.kwargs["body"]["stream"] is False

    def test_factory(self):
        assert isinstance(
            create_language_model(settings.Llm(provider="ollama")), OllamaChatModel
        )
        assert isinstance(create_language_model(settings.Llm(api_key="k")), OpenAiChatModel)
        with pytest.raises(RuntimeError):
            create_language_model(settings.Llm())
