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
Query Compiler - natural language to a structured, dialect-tagged query body.

The language model proposes a query; everything it returns is parsed,
validated and statically inspected before it becomes a body. Write-shaped
bodies are rejected here for callers without elevated permission, whatever
the model claims about their safety.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import structlog
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from querypilot.analytics.collaborators import LanguageModel
from querypilot.analytics.inspection import (
    MONGO_FORBIDDEN_OPERATORS,
    MONGO_WRITE_COMMANDS,
    QueryShape,
    inspect_query,
)
from querypilot.analytics.models import (
    BackendKind,
    CommandQuery,
    FindQuery,
    Permission,
    PipelineQuery,
    QueryBody,
    SqlQuery,
    body_target,
)
from querypilot.analytics.resolver import ResolvedTarget
from querypilot.config import settings
from querypilot.exceptions import (
    QueryPilotError,
    TransientModelError,
    TranslationError,
    UnsafeQueryRejected,
)

logger = structlog.get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

DIALECT_HINTS = {
    BackendKind.mongodb: (
        'Return "query" either as {"find": <filter>, "projection": {...}, '
        '"sort": {...}, "limit": n} or as a list of aggregation pipeline stages. '
        "Use MongoDB extended JSON for dates."
    ),
    BackendKind.postgresql: (
        "Use PostgreSQL syntax: double-quoted identifiers, ILIKE for "
        "case-insensitive matching, LIMIT n."
    ),
    BackendKind.mysql: "Use MySQL syntax: backtick-quoted identifiers, LIMIT n.",
    BackendKind.sqlite: "Use SQLite syntax: LIMIT n, no ILIKE, dates are text.",
    BackendKind.mssql: (
        "Use T-SQL syntax: SELECT TOP n instead of LIMIT, square-bracket identifiers."
    ),
}


class ModelSafety(BaseModel):
    allowed: bool = True
    reason: Optional[str] = None


class ModelTranslation(BaseModel):
    """The JSON object the language model is asked to return."""

    query: Any = Field(
        default=None, validation_alias=AliasChoices("query", "mongoQuery", "sqlQuery")
    )
    explain: str = Field(min_length=1)
    collection: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("collection", "table")
    )
    requires_indexes: list[Any] = Field(
        default_factory=list,
        validation_alias=AliasChoices("requiresIndexes", "requires_indexes"),
    )
    estimated_cost: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("estimatedCost", "estimated_cost")
    )
    safety: Optional[Union[ModelSafety, str]] = None
    warning_message: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("warningMessage", "warning_message"),
    )
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _has_safety_signal(self):
        if self.safety is None and self.estimated_cost is None:
            raise ValueError("response carries neither safety nor estimatedCost")
        return self

    @property
    def safety_hint(self) -> Optional[str]:
        if isinstance(self.safety, ModelSafety):
            return "safe" if self.safety.allowed else "unsafe"
        return self.safety.lower() if self.safety else None

    @property
    def cost_hint(self) -> Optional[float]:
        if self.estimated_cost is None:
            return None
        return max(0.0, min(1.0, self.estimated_cost))

    @property
    def empty(self) -> bool:
        return self.query is None or self.query in ("", [])

    @property
    def is_refusal(self) -> bool:
        return (self.empty or self.query == {}) and self.safety_hint == "unsafe"

    @property
    def refusal_reason(self) -> Optional[str]:
        if isinstance(self.safety, ModelSafety) and self.safety.reason:
            return self.safety.reason
        return self.warning_message

    @property
    def indexes(self) -> list[str]:
        out = []
        for ix in self.requires_indexes:
            if isinstance(ix, dict):
                out.append(",".join(str(k) for k in ix))
            elif ix:
                out.append(str(ix))
        return list(dict.fromkeys(out))


@dataclass
class CompiledQuery:
    body: QueryBody
    entity: str
    explanation: str
    shape: QueryShape
    required_indexes: list[str] = field(default_factory=list)
    model_safety: Optional[str] = None
    model_cost: Optional[float] = None
    warning_message: Optional[str] = None


def strip_fences(raw: str) -> str:
    text = raw.strip()
    if m := _FENCE_RE.search(text):
        return m.group(1).strip()
    return text


class QueryCompiler:
    """
    Compiles a question about a resolved target into a query body.

    This component:
    1. Builds a prompt from the target schema, dialect hints and recent turns
    2. Calls the language model with a timeout and a single retry
    3. Parses and validates the JSON response
    4. Rejects write-shaped or forbidden bodies before they leave compilation
    """

    def __init__(self, llm: LanguageModel, config: Optional[settings.Llm] = None):
        self.llm = llm
        self.config = config or settings.instance().llm

    def build_messages(
        self,
        target: ResolvedTarget,
        text: str,
        context: Optional[list[dict[str, str]]] = None,
        permission: Permission = Permission.read_only,
    ) -> list[dict[str, str]]:
        messages = [
            {"role": "system", "content": self.system_prompt(target, permission)}
        ]
        turns = [
            {"role": t["role"], "content": str(t["content"])}
            for t in (context or [])
            if t.get("role") in ("user", "assistant") and t.get("content")
        ]
        if self.config.context_turns:
            messages.extend(turns[-self.config.context_turns :])
        messages.append({"role": "user", "content": text})
        return messages

    def system_prompt(self, target: ResolvedTarget, permission: Permission) -> str:
        kind = target.connection.kind
        entity = target.entity
        noun = "Collection" if kind.is_document else "Table"
        fields = "\n".join(
            "- {name} ({type}{nullable}{pk})".format(
                name=f.name,
                type=f.type,
                nullable=", nullable" if f.nullable else "",
                pk=", PRIMARY KEY" if f.primary_key else "",
            )
            for f in entity.fields
        ) or "- (no fields known)"
        indexes = (
            ", ".join(f"{ix.name}({', '.join(ix.fields)})" for ix in entity.indexes)
            or "none"
        )

        rules = []
        if permission == Permission.elevated:
            rules.append(
                "- Only write data when the question explicitly asks for it; "
                "prefer read-only queries."
            )
        else:
            rules.append(
                "- Read data only. Never insert, update, delete, drop, alter, "
                "create, truncate or grant anything."
            )
        if kind.is_document:
            rules.append(
                "- Never use "
                + ", ".join(sorted(MONGO_FORBIDDEN_OPERATORS))
                + ", $out, $merge or JavaScript."
            )
        rules.append(
            "- Always include a limit unless the question asks for a count or aggregate."
        )
        rules.append(f"- Use only the fields listed for {entity.name}.")
        rules.append(f"- {DIALECT_HINTS[kind]}")
        rules.append(
            '- If the request cannot be answered safely, return "query": null and '
            '"safety": {"allowed": false, "reason": "..."}.'
        )

        response_format = json.dumps(
            {
                "query": "<query>",
                "collection" if kind.is_document else "table": entity.name,
                "explain": "<one sentence describing what the query returns>",
                "requiresIndexes": ["<field>"],
                "estimatedCost": "<0.0 to 1.0>",
                "safety": "safe|warning|unsafe",
                "warningMessage": None,
            },
            indent=2,
        )

        return "\n".join(
            [
                f"You translate questions about a {kind.value} database into a "
                f"single query. Respond with JSON only, no markdown.",
                "",
                f"Database: {target.connection.database}",
                f"{noun}: {entity.name}",
                f"Estimated rows: {entity.estimated_count if entity.estimated_count is not None else 'unknown'}",
                "Fields:",
                fields,
                f"Indexes: {indexes}",
                "",
                "Rules:",
                *rules,
                "",
                "Response format:",
                response_format,
                "",
                "Examples:",
                *self._examples(kind, entity.name),
            ]
        )

    def _examples(self, kind: BackendKind, name: str) -> list[str]:
        if kind.is_document:
            first = {"find": {}, "limit": 10}
            count = [{"$count": "total"}]
        elif kind == BackendKind.mssql:
            first = f"SELECT TOP 10 * FROM {name}"
            count = f"SELECT COUNT(*) AS total FROM {name}"
        else:
            first = f"SELECT * FROM {name} LIMIT 10"
            count = f"SELECT COUNT(*) AS total FROM {name}"
        return [
            f'Q: "show 10 {name}" -> "query": {json.dumps(first)}',
            f'Q: "how many {name} are there" -> "query": {json.dumps(count)}',
        ]

    async def _complete(self, messages: list[dict[str, str]]) -> str:
        attempts = 1 + min(1, self.config.max_retries)
        last: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.llm.complete(messages), timeout=self.config.timeout_seconds
                )
            except (TransientModelError, TimeoutError) as e:
                last = e
                logger.warning(
                    "model_call_transient_failure",
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e) or type(e).__name__,
                )
            except QueryPilotError:
                raise
            except Exception as e:
                logger.error("model_call_failed", error=str(e))
                raise TranslationError(f"Language model call failed: {e}") from e
        raise TranslationError(
            f"Language model did not answer after {attempts} attempts"
        ) from last

    def parse_response(self, raw: str) -> ModelTranslation:
        text = strip_fences(raw or "")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            start, end = text.find("{"), text.rfind("}")
            try:
                if start == -1 or end <= start:
                    raise json.JSONDecodeError("no JSON object", text, 0)
                data = json.loads(text[start : end + 1])
            except json.JSONDecodeError as e:
                logger.error("model_response_not_json", response=text[:500])
                raise TranslationError(
                    "Language model response is not valid JSON"
                ) from e

        if not isinstance(data, dict):
            raise TranslationError("Language model response is not a JSON object")
        try:
            return ModelTranslation.model_validate(data)
        except ValidationError as e:
            problems = [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
            logger.error("model_response_invalid", problems=problems)
            raise TranslationError(
                "Language model response is missing required fields", problems=problems
            ) from e

    def _entity_name(self, proposed: Optional[str], target: ResolvedTarget) -> str:
        if proposed and (e := target.snapshot.entity(proposed)) is not None:
            return e.name
        if proposed and proposed.lower() != target.entity.name.lower():
            logger.warning(
                "model_entity_replaced",
                proposed=proposed,
                resolved=target.entity.name,
            )
        return target.entity.name

    def build_body(self, parsed: ModelTranslation, target: ResolvedTarget) -> QueryBody:
        kind = target.connection.kind
        query = parsed.query
        try:
            if not kind.is_document:
                if isinstance(query, dict):
                    query = query.get("sql") or query.get("statement")
                if not isinstance(query, str) or not query.strip():
                    raise TranslationError("Language model did not return a SQL statement")
                return SqlQuery(
                    statement=query.strip().rstrip(";").strip(), dialect=kind.dialect
                )

            if isinstance(query, str):
                try:
                    query = json.loads(query)
                except json.JSONDecodeError as e:
                    raise TranslationError("Document query is not valid JSON") from e

            if isinstance(query, list):
                return PipelineQuery(
                    collection=self._entity_name(parsed.collection, target),
                    stages=query,
                )
            if not isinstance(query, dict):
                raise TranslationError("Document query must be an object or a pipeline")

            query = dict(query)
            # command form names the collection: {"find": "events", "filter": {...}}
            named = next(
                (query[k] for k in ("find", "aggregate") if isinstance(query.get(k), str)),
                None,
            )
            collection = self._entity_name(
                query.pop("collection", None) or named or parsed.collection, target
            )
            writes = [k for k in query if k.lower() in MONGO_WRITE_COMMANDS]
            if writes:
                args = query[writes[0]]
                return CommandQuery(
                    collection=collection,
                    command=writes[0],
                    arguments=args if isinstance(args, dict) else {"documents": args},
                )
            for key in ("aggregate", "pipeline"):
                if isinstance(query.get(key), list):
                    return PipelineQuery(collection=collection, stages=query[key])
            if "find" in query or "filter" in query:
                flt = query.get("find")
                if not isinstance(flt, dict):
                    flt = query.get("filter")
                return FindQuery(
                    collection=collection,
                    filter=flt or {},
                    projection=query.get("projection"),
                    sort=query.get("sort"),
                    limit=query.get("limit"),
                )
            return FindQuery(collection=collection, filter=query)
        except ValidationError as e:
            raise TranslationError(f"Language model returned a malformed query: {e}") from e

    async def compile(
        self,
        target: ResolvedTarget,
        text: str,
        context: Optional[list[dict[str, str]]] = None,
        permission: Permission = Permission.read_only,
    ) -> CompiledQuery:
        """
        Compile a question into a query body for the resolved target.

        Args:
            target: Resolved connection and entity
            text: The question
            context: Prior conversation turns, oldest first
            permission: Caller permission; only elevated callers get writes

        Returns:
            CompiledQuery

        Raises:
            TranslationError: model failed or returned something unusable
            UnsafeQueryRejected: body writes without permission or uses a
                forbidden operator
        """
        logger.info(
            "compiling_query",
            connection_id=target.connection.id,
            entity=target.entity.name,
            backend=target.connection.kind.value,
        )
        messages = self.build_messages(target, text, context, permission)
        parsed = self.parse_response(await self._complete(messages))

        if parsed.is_refusal:
            reason = parsed.refusal_reason or "The request cannot be answered safely"
            logger.warning("translation_refused", reason=reason)
            raise UnsafeQueryRejected(reason)
        if parsed.empty:
            raise TranslationError("Language model response has no query")

        body = self.build_body(parsed, target)
        shape = inspect_query(body, target.connection.kind.dialect)

        if shape.forbidden_operators:
            logger.warning("forbidden_operators", operators=shape.forbidden_operators)
            raise UnsafeQueryRejected(
                f"Query uses forbidden operators: {', '.join(shape.forbidden_operators)}",
                verbs=shape.forbidden_operators,
            )
        if shape.mutates and permission != Permission.elevated:
            logger.warning("mutation_rejected", verbs=shape.mutating_verbs)
            raise UnsafeQueryRejected(
                f"Query would modify data ({', '.join(shape.mutating_verbs)}); "
                "only read queries are allowed",
                verbs=shape.mutating_verbs,
            )
        if shape.parse_error:
            raise TranslationError(
                f"Language model returned SQL that does not parse: {shape.parse_error}"
            )

        entity = self._entity_name(body_target(body) or parsed.collection, target)
        compiled = CompiledQuery(
            body=body,
            entity=entity,
            explanation=parsed.explain,
            shape=shape,
            required_indexes=parsed.indexes,
            model_safety=parsed.safety_hint,
            model_cost=parsed.cost_hint,
            warning_message=parsed.warning_message,
        )
        logger.info("query_compiled", kind=body.kind, entity=entity)
        return compiled