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
Error taxonomy for query translation and execution.

Resolution, translation and policy failures are raised to the caller.
Execution failures are recorded on the execution record and returned as
part of the outcome rather than raised.
"""

from typing import Any, Optional, Sequence


class QueryPilotError(Exception):
    """Base class for every error the engine reports to its callers."""

    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ResolutionAmbiguous(QueryPilotError):
    """No entity scored above the resolver threshold."""

    code = "resolution_ambiguous"

    def __init__(self, message: str, candidates: Sequence[dict[str, Any]] = ()):
        super().__init__(message, candidates=list(candidates))
        self.candidates = list(candidates)


class UnknownTarget(QueryPilotError):
    """An explicitly named connection or entity does not exist."""

    code = "unknown_target"


class TranslationError(QueryPilotError):
    """The language model failed or returned something that is not a query."""

    code = "translation_error"


class TransientModelError(QueryPilotError):
    """A language model call failed in a way that is worth retrying once."""

    code = "transient_model_error"


class UnsafeQueryRejected(QueryPilotError):
    """The query mutates data or uses a forbidden operator."""

    code = "unsafe_query_rejected"

    def __init__(self, message: str, verbs: Sequence[str] = ()):
        super().__init__(message, verbs=list(verbs))
        self.verbs = list(verbs)


class ExecutionTimeout(QueryPilotError):
    code = "execution_timeout"

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Query execution exceeded {timeout_seconds:g}s and was cancelled",
            timeout_seconds=timeout_seconds,
        )
        self.timeout_seconds = timeout_seconds


class ConnectionUnavailable(QueryPilotError):
    code = "connection_unavailable"

    def __init__(self, connection_id: str, reason: Optional[str] = None):
        super().__init__(
            reason or f"Connection {connection_id} is not available",
            connection_id=connection_id,
        )
        self.connection_id = connection_id


class ExecutionError(QueryPilotError):
    """The backend rejected or failed the query."""

    code = "execution_error"


class RecordNotFound(QueryPilotError):
    """A translation or execution does not exist or belongs to someone else."""

    code = "not_found"


class InvalidTransition(QueryPilotError):
    code = "invalid_transition"
