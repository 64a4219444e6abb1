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
Safety & Cost Classifier - rule-based tiering and cost scoring.

Classification uses only static inspection of the compiled body and the
entity's schema statistics. The language model's own safety and cost
opinions are recorded elsewhere and never consulted here.
"""

import math
from dataclasses import dataclass, field
from typing import Optional

import structlog

from querypilot.analytics.inspection import QueryShape, inspect_query
from querypilot.analytics.models import QueryBody, SafetyTier, SchemaEntity
from querypilot.config import settings

logger = structlog.get_logger(__name__)


@dataclass
class SafetyAssessment:
    """Safety tier, cost score and the reasons behind them."""

    tier: SafetyTier
    cost_score: float
    requires_confirmation: bool
    reasons: list[str] = field(default_factory=list)
    recommended_indexes: list[str] = field(default_factory=list)
    mutating_verbs: list[str] = field(default_factory=list)
    components: dict[str, float] = field(default_factory=dict)

    @property
    def confirmation_reason(self) -> Optional[str]:
        if not self.requires_confirmation:
            return None
        return "; ".join(self.reasons) if self.reasons else None


class SafetyClassifier:
    """
    Safety & Cost Classifier for compiled query bodies.

    Tiering rules, first match wins:
    1. Unauthorized mutation or forbidden operator: unsafe
    2. Authorized mutation: warning
    3. No filter and no limit on a large entity: warning
    4. Otherwise: safe

    Cost score is a clipped sum of penalties, each scaled by its weight:
    unindexed filter fields and a missing limit (both scaled by the
    cardinality factor), pipeline/CTE stages and joins.
    """

    def __init__(self, config: Optional[settings.Safety] = None):
        self.config = config or settings.instance().safety

    def cardinality_factor(self, estimated_count: Optional[int]) -> float:
        """Logarithmic 0..1 scale of entity size, non-decreasing in size."""
        n = (
            estimated_count
            if estimated_count is not None
            else self.config.large_table_threshold
        )
        if n <= 0:
            return 0.0
        return min(
            1.0, math.log10(n + 1) / math.log10(self.config.cardinality_ceiling + 1)
        )

    def unindexed_filters(
        self, shape: QueryShape, entity: Optional[SchemaEntity]
    ) -> list[str]:
        if entity is None:
            return list(shape.filter_fields)
        return [f for f in shape.filter_fields if not entity.is_indexed(f)]

    def cost_score(
        self, shape: QueryShape, entity: Optional[SchemaEntity]
    ) -> tuple[float, dict[str, float]]:
        w = self.config.weights
        factor = self.cardinality_factor(entity.estimated_count if entity else None)
        unindexed = self.unindexed_filters(shape, entity)
        share = len(unindexed) / len(shape.filter_fields) if shape.filter_fields else 0.0

        components = {
            "unindexed_filter": w.unindexed_filter * share * factor,
            "missing_limit": 0.0 if shape.has_limit else w.missing_limit * factor,
            "aggregation_stage": w.aggregation_stage
            * min(1.0, shape.aggregation_stages / self.config.max_pipeline_stages),
            "join": w.join * min(1.0, shape.join_count / 3),
        }
        score = max(0.0, min(1.0, sum(components.values())))
        return round(score, 4), components

    def classify(
        self,
        body: QueryBody,
        entity: Optional[SchemaEntity] = None,
        allow_mutation: bool = False,
        dialect: Optional[str] = None,
        shape: Optional[QueryShape] = None,
    ) -> SafetyAssessment:
        """
        Classify a compiled body.

        Args:
            body: Compiled query body
            entity: Target entity with cardinality and index statistics
            allow_mutation: Whether the caller may run writes
            dialect: sqlglot dialect for SQL bodies without one
            shape: Pre-computed inspection result, if the caller has one

        Returns:
            SafetyAssessment
        """
        shape = shape or inspect_query(body, dialect)
        score, components = self.cost_score(shape, entity)
        count = entity.estimated_count if entity else None
        large = (
            count if count is not None else self.config.large_table_threshold + 1
        ) > self.config.large_table_threshold
        reasons = []

        if shape.forbidden_operators:
            tier = SafetyTier.unsafe
            reasons.append(
                f"Uses forbidden operators: {', '.join(shape.forbidden_operators)}"
            )
        elif shape.mutates and not allow_mutation:
            tier = SafetyTier.unsafe
            reasons.append(f"Modifies data ({', '.join(shape.mutating_verbs)})")
        elif shape.mutates:
            tier = SafetyTier.warning
            reasons.append(
                f"Modifies data ({', '.join(shape.mutating_verbs)}) and must be confirmed"
            )
        elif not shape.has_filter and not shape.has_limit and large:
            tier = SafetyTier.warning
            reasons.append(
                "Reads every row of a large "
                + ("collection" if body.kind != "sql" else "table")
                + " without a filter or limit"
            )
        else:
            tier = SafetyTier.safe

        if score > self.config.confirmation_threshold:
            reasons.append(
                f"This query is estimated to be expensive (cost: {score:.2f}). "
                "Please confirm execution."
            )

        requires_confirmation = (
            tier == SafetyTier.unsafe
            or shape.mutates
            or score > self.config.confirmation_threshold
        )
        assessment = SafetyAssessment(
            tier=tier,
            cost_score=score,
            requires_confirmation=requires_confirmation,
            reasons=reasons,
            recommended_indexes=self.unindexed_filters(shape, entity),
            mutating_verbs=list(shape.mutating_verbs),
            components=components,
        )

        if tier == SafetyTier.safe and not requires_confirmation:
            logger.info("safety_check_passed", cost=score, tier=tier.value)
        else:
            logger.warning(
                "safety_check_flagged",
                cost=score,
                tier=tier.value,
                requires_confirmation=requires_confirmation,
                reasons=reasons,
            )
        return assessment
