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
import math

import pytest

from querypilot.analytics.models import (
    CommandQuery,
    FindQuery,
    PipelineQuery,
    SafetyTier,
    SchemaEntity,
    SqlQuery,
)
from querypilot.analytics.safety import SafetyClassifier
from querypilot.config import settings


@pytest.fixture
def classifier():
    return SafetyClassifier(settings.Safety())


def _entity(entities, connection_id, name) -> SchemaEntity:
    return next(e for e in entities[connection_id] if e.name == name)


def test_cardinality_factor_is_monotonic(classifier):
    sizes = [0, 1, 10, 1_000, 100_000, 10_000_000, 10**9]
    factors = [classifier.cardinality_factor(n) for n in sizes]
    assert factors == sorted(factors)
    assert factors[0] == 0.0 and factors[-1] == 1.0
    assert classifier.cardinality_factor(None) == classifier.cardinality_factor(100_000)


def test_indexed_limited_query_is_safe(classifier, entities):
    events = _entity(entities, "mongo-events", "events")
    result = classifier.classify(
        FindQuery(collection="events", filter={"user_id": 7}, limit=10), events
    )
    assert result.tier == SafetyTier.safe
    assert result.cost_score == 0.0
    assert not result.requires_confirmation
    assert result.confirmation_reason is None


def test_unbounded_scan_of_large_collection(classifier, entities):
    """No filter and no limit on 50M documents warns and needs confirmation"""
    events = _entity(entities, "mongo-events", "events")
    result = classifier.classify(FindQuery(collection="events"), events)
    assert result.tier == SafetyTier.warning
    assert result.cost_score == pytest.approx(0.8)
    assert result.requires_confirmation
    assert "estimated to be expensive (cost: 0.80)" in result.confirmation_reason


def test_unindexed_filter_cost(classifier, entities):
    customers = _entity(entities, "pg-shop", "customers")
    factor = math.log10(5_001) / math.log10(10_000_001)
    result = classifier.classify(
        SqlQuery(
            statement="SELECT * FROM customers WHERE city = 'Berlin' LIMIT 10",
            dialect="postgres",
        ),
        customers,
    )
    assert result.tier == SafetyTier.safe
    assert result.cost_score == pytest.approx(round(0.3 * factor, 4))
    assert result.recommended_indexes == ["city"]


def test_aggregation_and_joins_add_cost(classifier, entities):
    events = _entity(entities, "mongo-events", "events")
    simple = classifier.classify(
        PipelineQuery(collection="events", stages=[{"$match": {"user_id": 1}}, {"$limit": 5}]),
        events,
    )
    heavy = classifier.classify(
        PipelineQuery(
            collection="events",
            stages=[
                {"$match": {"user_id": 1}},
                {"$lookup": {"from": "users", "localField": "user_id", "foreignField": "_id", "as": "u"}},
                {"$unwind": "$u"},
                {"$group": {"_id": "$u.city", "n": {"$sum": 1}}},
                {"$limit": 5},
            ],
        ),
        events,
    )
    assert heavy.cost_score > simple.cost_score
    assert heavy.components["join"] == pytest.approx(0.05)


def test_mutation_without_permission_is_unsafe(classifier, entities):
    customers = _entity(entities, "pg-shop", "customers")
    result = classifier.classify(
        SqlQuery(statement="DELETE FROM customers WHERE id = 1", dialect="postgres"),
        customers,
    )
    assert result.tier == SafetyTier.unsafe
    assert result.requires_confirmation
    assert result.mutating_verbs == ["DELETE"]


def test_authorized_mutation_is_warning_and_needs_confirmation(classifier, entities):
    events = _entity(entities, "mongo-events", "events")
    result = classifier.classify(
        CommandQuery(collection="events", command="deleteOne", arguments={"filter": {"user_id": 1}}),
        events,
        allow_mutation=True,
    )
    assert result.tier == SafetyTier.warning
    assert result.requires_confirmation


def test_forbidden_operator_is_unsafe(classifier):
    result = classifier.classify(
        FindQuery(collection="events", filter={"$where": "true"}, limit=1)
    )
    assert result.tier == SafetyTier.unsafe
    assert "$where" in result.reasons[0]


def test_threshold_is_configurable(entities):
    customers = _entity(entities, "pg-shop", "customers")
    body = SqlQuery(
        statement="SELECT * FROM customers WHERE city = 'Berlin' LIMIT 10",
        dialect="postgres",
    )
    strict = SafetyClassifier(settings.Safety(confirmation_threshold=0.1))
    assert strict.classify(body, customers).requires_confirmation
    assert not SafetyClassifier(settings.Safety()).classify(body, customers).requires_confirmation


def test_filterless_query_on_ten_million_rows_needs_confirmation(classifier):
    big = SchemaEntity(name="page_views", connection_id="pg-shop", estimated_count=10_000_000)
    result = classifier.classify(
        SqlQuery(statement="SELECT * FROM page_views", dialect="postgres"), big
    )
    assert result.tier == SafetyTier.warning
    assert result.cost_score > 0.7
    assert result.requires_confirmation


@pytest.mark.parametrize(
    "body",
    [
        FindQuery(collection="events"),
        FindQuery(collection="events", filter={"type": "click"}),
        FindQuery(collection="events", filter={"user_id": 7}, limit=10),
        SqlQuery(statement="SELECT * FROM events WHERE type = 'click'", dialect="postgres"),
    ],
)
def test_cost_is_non_decreasing_in_cardinality(classifier, body):
    costs = [
        classifier.classify(
            body, SchemaEntity(name="events", connection_id="c", estimated_count=n)
        ).cost_score
        for n in (0, 10, 1_000, 100_000, 1_000_000, 50_000_000, 10**10)
    ]
    assert costs == sorted(costs)


def test_zero_limit_is_no_limit(classifier, entities):
    """A document find with limit 0 returns every document"""
    events = _entity(entities, "mongo-events", "events")
    result = classifier.classify(FindQuery(collection="events", limit=0), events)
    assert result.tier == SafetyTier.warning
    assert result.cost_score == pytest.approx(0.8)
    assert result.requires_confirmation


def test_filter_and_limit_stages_are_not_aggregation_cost(classifier, entities):
    events = _entity(entities, "mongo-events", "events")
    result = classifier.classify(
        PipelineQuery(
            collection="events",
            stages=[{"$match": {"user_id": 1}}, {"$sort": {"timestamp": -1}}, {"$limit": 5}],
        ),
        events,
    )
    assert result.components["aggregation_stage"] == 0.0
