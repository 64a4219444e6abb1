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
Static inspection of compiled query bodies.

Both the compiler's policy gate and the cost classifier work from the same
``QueryShape`` so that they never disagree about what a query does. SQL is
parsed with sqlglot; document-store bodies are walked as plain JSON.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

import sqlglot
import structlog
from sqlglot import exp
from sqlglot.errors import SqlglotError

from querypilot.analytics.models import (
    CommandQuery,
    FindQuery,
    PipelineQuery,
    QueryBody,
    SqlQuery,
)

logger = structlog.get_logger(__name__)

DESTRUCTIVE_SQL_KEYWORDS = (
    "DROP",
    "DELETE",
    "TRUNCATE",
    "ALTER",
    "CREATE",
    "INSERT",
    "UPDATE",
    "MERGE",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
    "CALL",
    "COPY",
)
_DESTRUCTIVE_RE = re.compile(
    r"\b(" + "|".join(DESTRUCTIVE_SQL_KEYWORDS) + r")\b", re.IGNORECASE
)

# sqlglot node types that write or change schema, by verb
_SQL_MUTATIONS = tuple(
    (verb, getattr(exp, cls))
    for verb, cls in (
        ("INSERT", "Insert"),
        ("UPDATE", "Update"),
        ("DELETE", "Delete"),
        ("DROP", "Drop"),
        ("CREATE", "Create"),
        ("ALTER", "Alter"),
        ("ALTER", "AlterTable"),
        ("MERGE", "Merge"),
        ("TRUNCATE", "TruncateTable"),
        ("COPY", "Copy"),
        ("GRANT", "Grant"),
        ("REVOKE", "Revoke"),
    )
    if hasattr(exp, cls)
)

MONGO_WRITE_COMMANDS = frozenset(
    {
        "insert",
        "insertone",
        "insertmany",
        "update",
        "updateone",
        "updatemany",
        "replaceone",
        "delete",
        "deleteone",
        "deletemany",
        "remove",
        "drop",
        "dropdatabase",
        "dropindex",
        "dropindexes",
        "createindex",
        "createcollection",
        "renamecollection",
        "findandmodify",
        "findoneandupdate",
        "findoneandreplace",
        "findoneanddelete",
        "bulkwrite",
    }
)
MONGO_WRITE_STAGES = frozenset({"$out", "$merge"})
MONGO_FORBIDDEN_OPERATORS = frozenset(
    {
        "$where",
        "$function",
        "$accumulator",
        "$eval",
        "$planCacheStats",
        "$currentOp",
        "$indexStats",
    }
)
MONGO_AGGREGATION_STAGES = frozenset(
    {
        "$group",
        "$bucket",
        "$bucketAuto",
        "$facet",
        "$lookup",
        "$graphLookup",
        "$unwind",
        "$sortByCount",
        "$unionWith",
        "$setWindowFields",
    }
)
MONGO_JOIN_STAGES = frozenset({"$lookup", "$graphLookup", "$unionWith"})
_JS_RE = re.compile(r"function\s*\(|=>")


@dataclass
class QueryShape:
    """What a query body does, as far as static inspection can tell."""

    mutating_verbs: list[str] = field(default_factory=list)
    forbidden_operators: list[str] = field(default_factory=list)
    filter_fields: list[str] = field(default_factory=list)
    sort_fields: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    has_filter: bool = False
    has_limit: bool = False
    limit: Optional[int] = None
    aggregation_stages: int = 0
    join_count: int = 0
    parse_error: Optional[str] = None

    @property
    def mutates(self) -> bool:
        return bool(self.mutating_verbs)


def _unique(items) -> list:
    return list(dict.fromkeys(items))


def _walk_keys(obj: Any) -> Iterator[str]:
    if isinstance(obj, dict):
        for k, v in obj.items():
            yield k
            yield from _walk_keys(v)
    elif isinstance(obj, list):
        for v in obj:
            yield from _walk_keys(v)


def _filter_fields(flt: Any) -> Iterator[str]:
    if isinstance(flt, dict):
        for k, v in flt.items():
            if not k.startswith("$"):
                yield k
            if isinstance(v, (dict, list)):
                yield from _filter_fields(v)
    elif isinstance(flt, list):
        for v in flt:
            yield from _filter_fields(v)


def _forbidden(obj: Any) -> list[str]:
    found = [k for k in _walk_keys(obj) if k in MONGO_FORBIDDEN_OPERATORS]
    if _JS_RE.search(json.dumps(obj, default=str)):
        found.append("javascript")
    return _unique(found)


def _inspect_find(body: FindQuery) -> QueryShape:
    return QueryShape(
        forbidden_operators=_forbidden(
            {"filter": body.filter, "projection": body.projection or {}}
        ),
        filter_fields=_unique(_filter_fields(body.filter)),
        sort_fields=list(body.sort or {}),
        entities=[body.collection],
        has_filter=bool(body.filter),
        has_limit=bool(body.limit),
        limit=body.limit or None,
    )


def _inspect_pipeline(body: PipelineQuery) -> QueryShape:
    shape = QueryShape(
        entities=[body.collection],
        forbidden_operators=_forbidden(body.stages),
    )
    for stage in body.stages:
        for name, spec in stage.items():
            if name in MONGO_WRITE_STAGES:
                shape.mutating_verbs.append(name)
            if name in MONGO_AGGREGATION_STAGES:
                shape.aggregation_stages += 1
            if name in MONGO_JOIN_STAGES:
                shape.join_count += 1
                if isinstance(spec, dict) and isinstance(spec.get("from"), str):
                    shape.entities.append(spec["from"])
            match name:
                case "$match":
                    shape.has_filter = shape.has_filter or bool(spec)
                    shape.filter_fields.extend(_filter_fields(spec))
                case "$limit":
                    shape.has_limit = True
                    if isinstance(spec, int):
                        shape.limit = spec if shape.limit is None else min(shape.limit, spec)
                case "$sort" if isinstance(spec, dict):
                    shape.sort_fields.extend(spec)
    shape.filter_fields = _unique(shape.filter_fields)
    shape.sort_fields = _unique(shape.sort_fields)
    shape.entities = _unique(shape.entities)
    return shape


def _columns(node: exp.Expression) -> list[str]:
    return [c.name for c in node.find_all(exp.Column)]


def _inspect_sql(body: SqlQuery, dialect: Optional[str] = None) -> QueryShape:
    shape = QueryShape()
    try:
        statements = [
            s for s in sqlglot.parse(body.statement, read=body.dialect or dialect) if s
        ]
    except SqlglotError as e:
        shape.parse_error = str(e)
        shape.mutating_verbs = _unique(
            m.upper() for m in _DESTRUCTIVE_RE.findall(body.statement)
        )
        logger.warning("sql_parse_failed", error=str(e))
        return shape

    if not statements:
        shape.parse_error = "empty statement"
        return shape

    for ast in statements:
        for node in ast.walk():
            for verb, cls in _SQL_MUTATIONS:
                if isinstance(node, cls):
                    shape.mutating_verbs.append(verb)
            if isinstance(node, exp.Command):
                keyword = str(node.this).upper()
                if keyword in DESTRUCTIVE_SQL_KEYWORDS:
                    shape.mutating_verbs.append(keyword)

        for where in ast.find_all(exp.Where):
            shape.has_filter = True
            shape.filter_fields.extend(_columns(where))
        for order in ast.find_all(exp.Order):
            shape.sort_fields.extend(_columns(order))
        shape.entities.extend(t.name for t in ast.find_all(exp.Table))
        shape.join_count += len(list(ast.find_all(exp.Join)))
        shape.aggregation_stages += sum(
            len(list(ast.find_all(t)))
            for t in (exp.Group, exp.Window, exp.CTE, exp.Subquery, exp.Union)
        )

        limit = ast.args.get("limit") or ast.args.get("fetch")
        if limit is not None:
            shape.has_limit = True
            count = limit.args.get("expression") or limit.args.get("count")
            if isinstance(count, exp.Literal) and count.is_int:
                shape.limit = int(count.name)

    shape.mutating_verbs = _unique(shape.mutating_verbs)
    shape.filter_fields = _unique(shape.filter_fields)
    shape.sort_fields = _unique(shape.sort_fields)
    shape.entities = _unique(shape.entities)
    return shape


def inspect_query(body: QueryBody, dialect: Optional[str] = None) -> QueryShape:
    """
    Inspect a compiled body without running it.

    Args:
        body: Compiled query body
        dialect: sqlglot dialect used when the body does not carry one

    Returns:
        QueryShape describing mutations, forbidden operators, filters,
        limits and complexity
    """
    match body:
        case SqlQuery():
            return _inspect_sql(body, dialect)
        case FindQuery():
            return _inspect_find(body)
        case PipelineQuery():
            return _inspect_pipeline(body)
        case CommandQuery():
            return QueryShape(
                mutating_verbs=[body.command],
                forbidden_operators=_forbidden(body.arguments),
                entities=[body.collection],
            )
    raise TypeError(f"Unsupported query body {type(body).__name__}")
