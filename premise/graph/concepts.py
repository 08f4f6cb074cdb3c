"""Concept graph: identity resolution and co-occurrence edges.

Concepts are keyed by (category, normalized location, structural
signature). A detection matching an existing key merges into it
(confidence = max, locations = union); anything else becomes a new concept.
Concepts detected in the same file within one change batch are linked by a
symmetric edge whose weight counts co-occurrences and decays with a fixed
half-life. Each edge remembers the batches it has counted, so applying the
same batch twice changes nothing.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations

from premise.errors import NotFoundError, ValidationError
from premise.models import (
    CodeLocation,
    Concept,
    ConceptEdge,
    Detection,
    ProjectKnowledge,
    sorted_locations,
    stable_hash,
    utcnow,
)
from premise.storage.snapshot import MAX_EDGE_BATCHES
from premise.storage.store import KnowledgeStore, Transaction

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    concepts: list[Concept] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    edges: list[tuple[str, str, float]] = field(default_factory=list)
    version: int = 0


def batch_fingerprint(detections: Sequence[Detection]) -> str:
    return "b-" + stable_hash(*sorted(d.identity_key for d in detections))


class ConceptGraph:
    """Store-backed view over a project's concepts."""

    def __init__(self, store: KnowledgeStore, edge_half_life_seconds: float) -> None:
        self._store = store
        self._half_life = edge_half_life_seconds

    # -- writes -----------------------------------------------------------

    def upsert(
        self,
        detections: Sequence[Detection],
        batch_id: str | None = None,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Merge a batch of raw detections into the graph."""
        for d in detections:
            if not d.location.is_valid():
                raise ValidationError(f"Detection has an invalid code location: {d.location.key!r}")
            if not 0.0 <= d.confidence <= 1.0:
                raise ValidationError(f"Detection confidence out of range: {d.confidence}")
        if not detections:
            return UpsertResult(version=self._store.version)

        now = now or utcnow()
        batch_id = batch_id or batch_fingerprint(detections)
        result = UpsertResult()

        def build(base: ProjectKnowledge) -> Transaction:
            result.created.clear()
            result.updated.clear()
            result.edges.clear()
            working: dict[str, Concept] = {}
            merged = _merge_batch(detections)

            for concept_id, (first, confidence, locations) in merged.items():
                existing = base.concepts.get(concept_id)
                if existing is None:
                    working[concept_id] = Concept(
                        id=concept_id,
                        key=first.identity_key,
                        category=first.category,
                        signature=first.signature,
                        anchor=first.location,
                        locations=sorted_locations(locations),
                        confidence=confidence,
                        created_at=now,
                        updated_at=now,
                    )
                    result.created.append(concept_id)
                    continue
                concept = copy.deepcopy(existing)
                new_locations = sorted_locations(set(concept.locations) | locations)
                new_confidence = max(concept.confidence, confidence)
                if (
                    new_locations != concept.locations
                    or new_confidence != concept.confidence
                    or concept.stale
                ):
                    concept.locations = new_locations
                    concept.confidence = new_confidence
                    concept.stale = False
                    concept.updated_at = now
                    result.updated.append(concept_id)
                working[concept_id] = concept

            # co-located = detected in the same file within this batch
            by_path: dict[str, set[str]] = {}
            for concept_id, (first, _, locations) in merged.items():
                for loc in locations:
                    by_path.setdefault(loc.path, set()).add(concept_id)
            pairs = {
                tuple(sorted(pair))
                for ids in by_path.values()
                for pair in combinations(sorted(ids), 2)
            }

            touched_edges: set[str] = set()
            for a, b in sorted(pairs):
                edge_a = working[a].edges.get(b)
                if edge_a is not None and batch_id in edge_a.batches:
                    continue
                weight = 1.0
                batches: list[str] = []
                if edge_a is not None:
                    weight = edge_a.effective_weight(now, self._half_life) + 1.0
                    batches = list(edge_a.batches)
                batches = (batches + [batch_id])[-MAX_EDGE_BATCHES:]
                working[a].edges[b] = ConceptEdge(weight, now, list(batches))
                working[b].edges[a] = ConceptEdge(weight, now, list(batches))
                touched_edges.update((a, b))
                result.edges.append((a, b, weight))

            tx = Transaction()
            for concept_id in sorted(working):
                if (
                    concept_id in result.created
                    or concept_id in result.updated
                    or concept_id in touched_edges
                ):
                    tx.upsert(working[concept_id])
            return tx

        result.version = self._store.transact(build)
        snapshot = self._store.snapshot()
        result.concepts = [copy.deepcopy(snapshot.concepts[cid]) for cid in sorted(_merge_batch(detections))]
        if result.created or result.updated:
            logger.debug(
                f"Concept upsert in {self._store.project_id}: "
                f"{len(result.created)} new, {len(result.updated)} updated, {len(result.edges)} edges"
            )
        return result

    def remove_location(self, location: CodeLocation, now: datetime | None = None) -> list[str]:
        """Drop locations inside ``location``; concepts left without any go stale.

        Returns the ids of concepts that became stale.
        """
        now = now or utcnow()
        became_stale: list[str] = []

        def build(base: ProjectKnowledge) -> Transaction:
            became_stale.clear()
            tx = Transaction()
            for concept_id in sorted(base.concepts):
                concept = base.concepts[concept_id]
                if concept.stale:
                    continue
                remaining = [loc for loc in concept.locations if not location.contains(loc)]
                if len(remaining) == len(concept.locations):
                    continue
                updated = copy.deepcopy(concept)
                updated.locations = remaining
                updated.updated_at = now
                if not remaining:
                    updated.stale = True
                    became_stale.append(concept_id)
                tx.upsert(updated)
            return tx

        self._store.transact(build)
        if became_stale:
            logger.info(f"{len(became_stale)} concept(s) went stale after removal of {location}")
        return list(became_stale)

    # -- reads ------------------------------------------------------------

    def get(self, concept_id: str) -> Concept:
        concept = self._store.snapshot().concepts.get(concept_id)
        if concept is None:
            raise NotFoundError("concept", concept_id)
        return copy.deepcopy(concept)

    def concepts(self, scope: str | None = None, include_stale: bool = False) -> list[Concept]:
        """Concepts whose anchor path starts with ``scope``, ordered by id."""
        snapshot = self._store.snapshot()
        return [
            copy.deepcopy(c)
            for _, c in sorted(snapshot.concepts.items())
            if (include_stale or not c.stale)
            and (not scope or c.anchor.path.startswith(scope))
        ]

    def concepts_near(
        self,
        locations: Iterable[CodeLocation],
        min_proximity: float = 1.0,
        snapshot: ProjectKnowledge | None = None,
    ) -> list[str]:
        """Ids of live concepts with a location at least ``min_proximity`` close."""
        snapshot = snapshot or self._store.snapshot()
        targets = list(locations)
        found = []
        for concept_id, concept in sorted(snapshot.concepts.items()):
            if concept.stale:
                continue
            best = max(
                (t.proximity(loc) for t in targets for loc in concept.locations),
                default=0.0,
            )
            if best >= min_proximity:
                found.append(concept_id)
        return found

    def neighbors(self, concept_id: str, now: datetime | None = None) -> dict[str, float]:
        """Effective (decayed) edge weight to each neighbour."""
        concept = self.get(concept_id)
        now = now or utcnow()
        return {
            other: edge.effective_weight(now, self._half_life)
            for other, edge in sorted(concept.edges.items())
        }

    @staticmethod
    def distances(
        snapshot: ProjectKnowledge, sources: Iterable[str], max_depth: int = 3
    ) -> dict[str, int]:
        """Hop count from the nearest of ``sources`` to every reachable concept."""
        dist: dict[str, int] = {}
        queue: deque[str] = deque()
        for source in sorted(set(sources)):
            if source in snapshot.concepts:
                dist[source] = 0
                queue.append(source)
        while queue:
            current = queue.popleft()
            if dist[current] >= max_depth:
                continue
            for other in sorted(snapshot.concepts[current].edges):
                if other not in dist and other in snapshot.concepts:
                    dist[other] = dist[current] + 1
                    queue.append(other)
        return dist

    def scope_view(self, scope: str | None = None, now: datetime | None = None) -> dict:
        """Serializable graph view for presentation clients."""
        now = now or utcnow()
        concepts = self.concepts(scope, include_stale=True)
        ids = {c.id for c in concepts}
        edges = []
        for c in concepts:
            for other, edge in sorted(c.edges.items()):
                if c.id < other and other in ids:
                    edges.append({
                        "source": c.id,
                        "target": other,
                        "weight": round(edge.effective_weight(now, self._half_life), 4),
                    })
        return {
            "concepts": [
                {
                    "id": c.id,
                    "category": c.category.value,
                    "layer": c.layer,
                    "signature": c.signature,
                    "locations": [loc.key for loc in c.locations],
                    "confidence": c.confidence,
                    "stale": c.stale,
                }
                for c in concepts
            ],
            "edges": edges,
        }


def _merge_batch(
    detections: Sequence[Detection],
) -> dict[str, tuple[Detection, float, set[CodeLocation]]]:
    """Collapse detections sharing an identity key within one batch."""
    merged: dict[str, tuple[Detection, float, set[CodeLocation]]] = {}
    for d in detections:
        locations = {d.location, *d.related_locations}
        if d.concept_id in merged:
            first, confidence, seen = merged[d.concept_id]
            merged[d.concept_id] = (first, max(confidence, d.confidence), seen | locations)
        else:
            merged[d.concept_id] = (d, d.confidence, locations)
    return merged
