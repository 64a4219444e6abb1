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
Target Resolver - picks the connection and table/collection a question is about.

Every entity of every connection the organisation can reach is scored with
``score_entity``. The best candidate wins when it clears the confidence
threshold; close runners-up are reported as alternatives so the caller can
redirect the query.
"""

import re
from dataclasses import dataclass, field
from typing import Collection, Iterable, Optional

import structlog
from rapidfuzz import fuzz

from querypilot.analytics.catalog import SchemaCatalog
from querypilot.analytics.models import (
    Alternative,
    Connection,
    SchemaEntity,
    SchemaSnapshot,
)
from querypilot.config import settings
from querypilot.exceptions import (
    ConnectionUnavailable,
    ResolutionAmbiguous,
    UnknownTarget,
)

logger = structlog.get_logger(__name__)

TOKEN_RE = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset(
    {
        "a", "about", "all", "an", "and", "any", "are", "as", "at", "be", "by",
        "can", "could", "data", "did", "do", "does", "each", "every", "find",
        "for", "from", "get", "give", "have", "how", "i", "in", "is", "it",
        "list", "many", "me", "much", "my", "of", "on", "or", "our", "please",
        "records", "rows", "show", "than", "that", "the", "their", "there",
        "these", "this", "those", "to", "us", "was", "were", "what", "when",
        "where", "which", "who", "with", "would", "you",
    }
)


def singular(word: str) -> str:
    if len(word) > 4 and word.endswith("ies"):
        return word[:-3] + "y"
    if len(word) > 4 and word.endswith(("sses", "shes", "ches", "xes")):
        return word[:-2]
    if len(word) > 3 and word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def tokenize(text: str, extra_stopwords: Collection[str] = ()) -> list[str]:
    """Lowercased, de-duplicated, stopword-free tokens in order of appearance."""
    seen: dict[str, None] = {}
    for tok in TOKEN_RE.findall(text.lower()):
        if tok in STOPWORDS or tok in extra_stopwords:
            continue
        seen.setdefault(tok, None)
    return list(seen)


def _phrase_in(text: str, phrase: str) -> bool:
    return bool(phrase) and re.search(rf"\b{re.escape(phrase)}", text) is not None


class SynonymTable:
    def __init__(self, groups: Iterable[Iterable[str]]):
        self._related: dict[str, frozenset[str]] = {}
        for group in groups:
            words = frozenset(singular(w.lower()) for w in group)
            for w in words:
                self._related[w] = self._related.get(w, frozenset()) | words

    def related(self, word: str) -> frozenset[str]:
        base = singular(word)
        return self._related.get(base, frozenset()) - {base}


@dataclass
class EntityScore:
    score: float
    components: dict[str, float]
    reasons: list[str]


def score_entity(
    entity: SchemaEntity,
    text: str,
    tokens: list[str],
    synonyms: SynonymTable,
    weights: settings.ResolverWeights,
    fuzzy_threshold: float = 0.85,
    recent: bool = False,
) -> EntityScore:
    """
    Score how well an entity matches a question, 0..100.

    Four components, each in 0..1, are combined as a weighted mean:

    - substring: 0.7 when the entity name (or its singular) appears in the
      text, plus 0.3 scaled by how many field names appear (saturating at 2)
    - overlap: share of query tokens found in the entity vocabulary (name
      parts and field names) directly, by singular form, by fuzzy ratio at or
      above ``fuzzy_threshold``, or through a synonym
    - synonym: 1.0 when a token reaches the entity name only through the
      synonym table
    - recency: 1.0 when the caller queried this entity recently

    Args:
        entity: Entity to score
        text: The original question
        tokens: ``tokenize(text)``
        synonyms: Synonym groups
        weights: Component weights
        fuzzy_threshold: Minimum rapidfuzz ratio (0-1) for a fuzzy token match
        recent: Whether the entity was recently queried

    Returns:
        EntityScore with the combined score, per-component values and
        human-readable match reasons
    """
    lowered = text.lower()
    name = entity.name.lower()
    name_parts = {singular(p) for p in TOKEN_RE.findall(name)}
    vocabulary: dict[str, str] = {p: entity.name for p in name_parts}
    for f in entity.fields:
        for p in TOKEN_RE.findall(f.name.lower()):
            vocabulary.setdefault(singular(p), f.name)

    reasons: list[str] = []

    spaced = name.replace("_", " ")
    name_hit = any(
        _phrase_in(lowered, v) for v in {name, spaced, singular(name), singular(spaced)}
    )
    field_hits = [
        f.name
        for f in entity.fields
        if len(f.name) >= 3
        and f.name.lower() != name
        and _phrase_in(lowered, f.name.lower().replace("_", " "))
    ]
    substring = 0.7 * name_hit + 0.3 * min(1.0, len(field_hits) / 2)
    if name_hit:
        reasons.append(f'Table name "{entity.name}" matches query')
    if field_hits:
        reasons.append(f"Has matching fields: {', '.join(field_hits[:3])}")

    def _direct(tok: str) -> Optional[str]:
        base = singular(tok)
        if base in vocabulary:
            return base
        if len(base) >= 4:
            for word in vocabulary:
                if len(word) >= 4 and fuzz.ratio(base, word) / 100.0 >= fuzzy_threshold:
                    return word
        return None

    matched, keywords, via_synonym = 0, [], []
    for tok in tokens:
        if (hit := _direct(tok)) is not None:
            matched += 1
            if hit not in name_parts:
                keywords.append(tok)
            continue
        related = synonyms.related(tok) & vocabulary.keys()
        if related:
            matched += 1
            if related & name_parts:
                via_synonym.append(tok)
            else:
                keywords.append(tok)
    overlap = matched / len(tokens) if tokens else 0.0
    synonym = 1.0 if via_synonym and not name_hit else 0.0
    if synonym:
        reasons.append(f'"{via_synonym[0]}" is a synonym of "{entity.name}"')
    if keywords and not field_hits:
        reasons.append(f"Contains relevant keywords: {', '.join(keywords[:3])}")
    if recent:
        reasons.append("Recently queried")

    components = {
        "substring": substring,
        "overlap": overlap,
        "synonym": synonym,
        "recency": 1.0 if recent else 0.0,
    }
    total = weights.substring + weights.overlap + weights.synonym + weights.recency
    raw = sum(getattr(weights, k) * v for k, v in components.items())
    score = round(max(0.0, min(100.0, 100.0 * raw / total)), 2) if total else 0.0
    if score > 0 and not reasons:
        reasons.append("Partial match based on schema similarity")
    return EntityScore(score=score, components=components, reasons=reasons)


@dataclass
class Candidate:
    connection: Connection
    entity: SchemaEntity
    score: float
    reasons: list[str] = field(default_factory=list)

    @property
    def sort_key(self):
        return (-self.score, self.connection.id, self.entity.name)

    def to_alternative(self, max_reasons: int = 2) -> Alternative:
        return Alternative(
            connection_id=self.connection.id,
            connection_name=self.connection.name,
            database=self.connection.database,
            entity=self.entity.name,
            score=self.score,
            match_reasons=self.reasons[:max_reasons],
        )


@dataclass
class ResolvedTarget:
    connection: Connection
    entity: SchemaEntity
    snapshot: SchemaSnapshot
    auto_detected: bool
    confidence: Optional[float] = None
    alternatives: list[Alternative] = field(default_factory=list)
    match_reasons: list[str] = field(default_factory=list)


class TargetResolver:
    """
    Resolves free text to a (connection, entity) target.

    An explicit connection (and optionally entity) short-circuits scoring
    across connections; otherwise every accessible entity is ranked.
    """

    def __init__(self, catalog: SchemaCatalog, config: Optional[settings.Resolver] = None):
        """
        Initialize the Resolver.

        Args:
            catalog: Schema catalog for snapshot lookups
            config: Resolver settings, defaults to the configured instance
        """
        self.catalog = catalog
        self.config = config or settings.instance().resolver
        self.synonyms = SynonymTable(self.config.synonyms)
        self.stopwords = frozenset(w.lower() for w in self.config.stopwords)

    def rank(
        self,
        text: str,
        sources: Iterable[tuple[Connection, SchemaSnapshot]],
        recent: Collection[tuple[str, str]] = (),
    ) -> list[Candidate]:
        """Score every entity and return candidates, best first."""
        tokens = tokenize(text, self.stopwords)
        recent_keys = {(c, e.lower()) for c, e in recent}
        candidates = []
        for conn, snap in sources:
            for entity in snap.entities:
                scored = score_entity(
                    entity,
                    text,
                    tokens,
                    self.synonyms,
                    self.config.weights,
                    fuzzy_threshold=self.config.fuzzy_threshold,
                    recent=(conn.id, entity.name.lower()) in recent_keys,
                )
                candidates.append(
                    Candidate(conn, entity, scored.score, scored.reasons)
                )
        candidates.sort(key=lambda c: c.sort_key)
        return candidates

    def alternatives(self, ranked: list[Candidate]) -> list[Alternative]:
        if not ranked:
            return []
        floor = ranked[0].score - self.config.alternative_delta
        return [
            c.to_alternative()
            for c in ranked[1:]
            if c.score > 0 and c.score >= floor
        ][: self.config.max_alternatives]

    async def _explicit(
        self,
        text: str,
        organization_id: str,
        connection_id: str,
        entity_name: Optional[str],
        recent: Collection[tuple[str, str]],
    ) -> ResolvedTarget:
        conn = await self.catalog.registry.get(connection_id)
        if conn is None or conn.organization_id != organization_id:
            raise UnknownTarget(
                f"Connection {connection_id} not found", connection_id=connection_id
            )
        if not conn.available:
            raise ConnectionUnavailable(connection_id)
        snap = await self.catalog.snapshot(connection_id)

        if entity_name is not None:
            entity = snap.entity(entity_name)
            if entity is None:
                raise UnknownTarget(
                    f"'{entity_name}' not found in connection {conn.name}. "
                    f"Available: {', '.join(e.name for e in snap.entities) or 'none'}",
                    connection_id=connection_id,
                    entity=entity_name,
                )
            return ResolvedTarget(conn, entity, snap, auto_detected=False)

        ranked = self.rank(text, [(conn, snap)], recent)
        if not ranked:
            raise UnknownTarget(
                f"Connection {conn.name} has no tables or collections",
                connection_id=connection_id,
            )
        top = ranked[0]
        return ResolvedTarget(
            conn, top.entity, snap, auto_detected=False, match_reasons=top.reasons
        )

    async def resolve(
        self,
        text: str,
        organization_id: str,
        connection_id: Optional[str] = None,
        entity_name: Optional[str] = None,
        recent: Collection[tuple[str, str]] = (),
    ) -> ResolvedTarget:
        """
        Resolve the target of a question.

        Args:
            text: Natural language question
            organization_id: Organisation whose connections are searched
            connection_id: Optional explicit connection
            entity_name: Optional explicit table/collection (needs connection_id)
            recent: Recently queried (connection id, entity name) pairs

        Returns:
            ResolvedTarget

        Raises:
            UnknownTarget: explicit target does not exist
            ConnectionUnavailable: explicit connection is revoked
            ResolutionAmbiguous: nothing scored above the threshold
        """
        if connection_id is not None:
            target = await self._explicit(
                text, organization_id, connection_id, entity_name, recent
            )
            logger.info(
                "target_resolved",
                connection_id=target.connection.id,
                entity=target.entity.name,
                auto_detected=False,
            )
            return target
        if entity_name is not None:
            raise UnknownTarget(
                "An explicit entity needs an explicit connection", entity=entity_name
            )

        sources = await self.catalog.snapshots_for(organization_id)
        ranked = self.rank(text, sources, recent)
        if not ranked or ranked[0].score < self.config.min_confidence:
            best = [c.to_alternative().model_dump() for c in ranked[:3]]
            logger.warning(
                "target_ambiguous",
                organization_id=organization_id,
                best_score=ranked[0].score if ranked else None,
                threshold=self.config.min_confidence,
            )
            raise ResolutionAmbiguous(
                "Could not determine which table or collection the question is "
                "about. Please name it or pick a connection.",
                candidates=best,
            )

        top = ranked[0]
        target = ResolvedTarget(
            connection=top.connection,
            entity=top.entity,
            snapshot={c.id: s for c, s in sources}[top.connection.id],
            auto_detected=True,
            confidence=top.score,
            alternatives=self.alternatives(ranked),
            match_reasons=top.reasons,
        )
        logger.info(
            "target_resolved",
            connection_id=top.connection.id,
            entity=top.entity.name,
            confidence=top.score,
            alternatives=len(target.alternatives),
            auto_detected=True,
        )
        return target
