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
"""Chat-completion clients for the hosted and local language models."""

from typing import Optional

from pydantic import BaseModel, Field

from querypilot.api.transport import AsyncHttpClient
from querypilot.config import settings
from querypilot.exceptions import TranslationError


class ChatMessage(BaseModel):
    role: str
    content: Optional[str] = None


class ChatChoice(BaseModel):
    index: int = 0
    message: ChatMessage
    finish_reason: Optional[str] = None


class ChatCompletion(BaseModel):
    id: Optional[str] = None
    model: Optional[str] = None
    choices: list[ChatChoice] = Field(default_factory=list)


class OllamaChatResponse(BaseModel):
    model: Optional[str] = None
    message: ChatMessage
    done: bool = True


class OpenAiChatModel(AsyncHttpClient):
    def __init__(self, llm: settings.Llm):
        super().__init__(llm.endpoint, llm.api_key, llm.timeout_seconds)
        if llm.org:
            self.headers["OpenAI-Organization"] = llm.org
        self.llm = llm

    async def complete(self, messages: list[dict[str, str]]) -> str:
        result: ChatCompletion = await self.post(
            "/chat/completions",
            body={
                "model": self.llm.model,
                "messages": messages,
                "temperature": self.llm.temperature,
                "max_tokens": self.llm.max_tokens,
                "response_format": {"type": "json_object"},
            },
            deser=ChatCompletion,
        )
        if not result.choices or not result.choices[0].message.content:
            raise TranslationError("Language model returned an empty completion")
        return result.choices[0].message.content


class OllamaChatModel(AsyncHttpClient):
    def __init__(self, llm: settings.Llm):
        super().__init__(llm.endpoint, llm.api_key, llm.timeout_seconds)
        self.llm = llm

    async def complete(self, messages: list[dict[str, str]]) -> str:
        result: OllamaChatResponse = await self.post(
            "/api/chat",
            body={
                "model": self.llm.model,
                "messages": messages,
                "stream": False,
                "format": "json",
                "options": {
                    "temperature": self.llm.temperature,
                    "num_predict": self.llm.max_tokens,
                },
            },
            deser=OllamaChatResponse,
        )
        if not result.message.content:
            raise TranslationError("Language model returned an empty completion")
        return result.message.content


def create_language_model(llm: Optional[settings.Llm] = None):
    llm = llm or settings.instance().llm
    match llm.provider:
        case settings.Model.ollama:
            return OllamaChatModel(llm)
        case settings.Model.openai | None:
            if llm.api_key is None and llm.base_url is None:
                raise RuntimeError("llm.api_key is required for the openai provider")
            return OpenAiChatModel(llm)
    raise RuntimeError(f"Unsupported language model provider {llm.provider}")
