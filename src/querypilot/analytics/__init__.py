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
Question-to-query components.

This package contains the pipeline behind the chat API:
- Catalog: Cached per-connection schema snapshots
- Resolver: Picks the connection and table/collection a question targets
- Compiler: Language model prompt, response validation and query bodies
- Safety: Tiering and cost scoring of compiled bodies
- History: Translation and execution records
- Coordinator: Confirmation gate, pooled execution, preview and replay
- Results: Response shaping and sensitive column masking
"""

from .catalog import SchemaCatalog, load_catalog_file
from .resolver import TargetResolver, ResolvedTarget
from .compiler import QueryCompiler, CompiledQuery
from .safety import SafetyClassifier, SafetyAssessment
from .history import HistoryStore, InMemoryHistoryStore
from .coordinator import ExecutionCoordinator
from .results import (
    ResultsProcessor,
    ExecutionSuccess,
    ExecutionFailure,
    PendingConfirmation,
    PreviewResult,
)

__all__ = [
    "SchemaCatalog",
    "load_catalog_file",
    "TargetResolver",
    "ResolvedTarget",
    "QueryCompiler",
    "CompiledQuery",
    "SafetyClassifier",
    "SafetyAssessment",
    "HistoryStore",
    "InMemoryHistoryStore",
    "ExecutionCoordinator",
    "ResultsProcessor",
    "ExecutionSuccess",
    "ExecutionFailure",
    "PendingConfirmation",
    "PreviewResult",
]
