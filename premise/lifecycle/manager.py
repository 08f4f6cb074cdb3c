"""Assumption and intent lifecycle.

Creates, links, revalidates and ages out assumption and intent records.
Intents at a location are superseded (never mutated) when the location
changes again. Assumptions are keyed by kind, location and normalized
description, so re-detecting the same assumption returns the existing
record instead of creating a duplicate.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from premise.errors import NotFoundError, ValidationError
from premise.models import (
    Assumption,
    AssumptionKind,
    AssumptionStatus,
    CodeChangeEvent,
    CodeLocation,
    EntityKind,
    Evidence,
    Intent,
    ProjectKnowledge,
    Tradeoff,
    TradeoffDraft,
    Violation,
    assumption_id,
    new_id,
    utcnow,
)
from premise.storage.store import KnowledgeStore, Transaction

logger = logging.getLogger(__name__)


def _ordering(a: Assumption) -> tuple:
    """Most recently validated first, then by creation time."""
    validated = a.last_validated_at
    return (
        validated is None,
        -validated.timestamp() if validated is not None else 0.0,
        a.created_at,
        a.id,
    )


def order_assumptions(assumptions: Sequence[Assumption]) -> list[Assumption]:
    return sorted(assumptions, key=_ordering)


def _is_orphaned(snapshot: ProjectKnowledge, concept_ids: Sequence[str]) -> bool:
    return any(
        snapshot.concepts[cid].stale for cid in concept_ids if cid in snapshot.concepts
    )


class LifecycleManager:
    """Owns Intent, Tradeoff and Assumption records for one project."""

    def __init__(self, store: KnowledgeStore, retention_seconds: float) -> None:
        self._store = store
        self._retention = timedelta(seconds=retention_seconds)

    # -- intents ----------------------------------------------------------

    def capture_intent(
        self,
        change: CodeChangeEvent,
        inferred_description: str,
        related_concepts: Sequence[str] = (),
        confidence: float = 0.5,
        tradeoff: TradeoffDraft | None = None,
        now: datetime | None = None,
    ) -> Intent:
        """Record the purpose behind ``change``, superseding the previous intent there."""
        if not change.location.is_valid():
            raise ValidationError(f"Change has no valid code location: {change.location.key!r}")
        if not inferred_description.strip():
            raise ValidationError("Intent description must not be empty")
        now = now or change.observed_at or utcnow()

        intent = Intent(
            id=new_id("i"),
            description=inferred_description.strip(),
            location=change.location,
            concept_ids=sorted(set(related_concepts)),
            confidence=confidence,
            change_kind=change.change_kind,
            created_at=now,
        )

        def build(base: ProjectKnowledge) -> Transaction:
            tx = Transaction().upsert(intent)
            for previous in base.intents.values():
                if previous.location.key == intent.location.key and previous.superseded_by is None:
                    replaced = copy.deepcopy(previous)
                    replaced.superseded_by = intent.id
                    tx.upsert(replaced)
            if tradeoff is not None:
                tx.upsert(Tradeoff(
                    id=new_id("t"),
                    intent_id=intent.id,
                    decision=tradeoff.decision,
                    alternatives=sorted(set(tradeoff.alternatives)),
                    rationale=tradeoff.rationale,
                    constraints=list(tradeoff.constraints),
                    created_at=now,
                ))
            return tx

        self._store.transact(build)
        return self._store.get(EntityKind.INTENT, intent.id)

    def intents_at(self, location: CodeLocation, include_superseded: bool = False) -> list[Intent]:
        snapshot = self._store.snapshot()
        found = [
            copy.deepcopy(i)
            for i in snapshot.intents.values()
            if i.location.overlaps(location) and (include_superseded or i.superseded_by is None)
        ]
        return sorted(found, key=lambda i: (i.created_at, i.id), reverse=True)

    def history(self, location: CodeLocation) -> list[Intent]:
        """All intents recorded at exactly ``location``, oldest first."""
        snapshot = self._store.snapshot()
        found = [copy.deepcopy(i) for i in snapshot.intents.values() if i.location.key == location.key]
        return sorted(found, key=lambda i: (i.created_at, i.id))

    def tradeoffs_for(self, intent_id: str) -> list[Tradeoff]:
        snapshot = self._store.snapshot()
        return [
            copy.deepcopy(t)
            for _, t in sorted(snapshot.tradeoffs.items())
            if t.intent_id == intent_id
        ]

    # -- assumptions ------------------------------------------------------

    def record_assumption(
        self,
        description: str,
        kind: AssumptionKind,
        location: CodeLocation,
        related_concepts: Sequence[str] = (),
        source: str = "manual",
        now: datetime | None = None,
    ) -> Assumption:
        """Create an assumption with status ``untested``, or return the existing one."""
        if not description.strip():
            raise ValidationError("Assumption description must not be empty")
        if not location.is_valid():
            raise ValidationError(f"Assumption has no valid code location: {location.key!r}")
        now = now or utcnow()
        aid = assumption_id(kind, location, description)

        def build(base: ProjectKnowledge) -> Transaction | None:
            existing = base.assumptions.get(aid)
            if existing is None:
                concept_ids = sorted(set(related_concepts))
                return Transaction().upsert(Assumption(
                    id=aid,
                    description=description.strip(),
                    kind=kind,
                    location=location,
                    concept_ids=concept_ids,
                    orphaned=_is_orphaned(base, concept_ids),
                    source=source,
                    created_at=now,
                    updated_at=now,
                ))
            merged = sorted(set(existing.concept_ids) | set(related_concepts))
            if merged == existing.concept_ids and not existing.archived:
                return None
            updated = copy.deepcopy(existing)
            updated.concept_ids = merged
            updated.archived = False
            updated.orphaned = _is_orphaned(base, merged)
            updated.updated_at = now
            return Transaction().upsert(updated)

        self._store.transact(build)
        return self.get(aid)

    def get(self, assumption_id_: str) -> Assumption:
        return self._store.get(EntityKind.ASSUMPTION, assumption_id_)

    def validate(
        self,
        assumption_id_: str,
        outcome: AssumptionStatus | str,
        evidence: Evidence | None = None,
        now: datetime | None = None,
    ) -> Assumption:
        """Apply a validation outcome.

        ``failed`` appends to the violation history and needs evidence
        naming the failure record. ``valid`` clears the suspected flag and
        keeps the history, since an assumption can fail again later.
        """
        try:
            outcome = AssumptionStatus(outcome)
        except ValueError as e:
            raise ValidationError(f"Unknown validation outcome: {outcome!r}") from e
        if outcome is AssumptionStatus.UNTESTED:
            raise ValidationError("Validation outcome must be 'valid' or 'failed'")
        evidence = evidence or Evidence()
        if outcome is AssumptionStatus.FAILED and not evidence.failure_id:
            raise ValidationError("A failed validation must reference a failure record")
        now = now or utcnow()

        def build(base: ProjectKnowledge) -> Transaction:
            existing = base.assumptions.get(assumption_id_)
            if existing is None:
                raise NotFoundError("assumption", assumption_id_)
            if outcome is AssumptionStatus.FAILED and evidence.failure_id not in base.failures:
                raise NotFoundError("failure", evidence.failure_id)
            updated = copy.deepcopy(existing)
            updated.status = outcome
            updated.suspected = False
            updated.last_validated_at = now
            updated.updated_at = now
            if outcome is AssumptionStatus.FAILED:
                updated.violations.append(Violation(
                    failure_id=evidence.failure_id,
                    evidence=evidence.note,
                    recorded_at=now,
                ))
            return Transaction().upsert(updated)

        self._store.transact(build)
        result = self.get(assumption_id_)
        logger.debug(f"Assumption {assumption_id_} validated as {outcome.value}")
        return result

    def find_by_concept(self, concept_id: str, include_archived: bool = False) -> list[Assumption]:
        snapshot = self._store.snapshot()
        found = [
            copy.deepcopy(a)
            for a in snapshot.assumptions.values()
            if concept_id in a.concept_ids and (include_archived or not a.archived)
        ]
        return order_assumptions(found)

    def find_by_location(self, location: CodeLocation, include_archived: bool = False) -> list[Assumption]:
        snapshot = self._store.snapshot()
        found = [
            copy.deepcopy(a)
            for a in snapshot.assumptions.values()
            if a.location.overlaps(location) and (include_archived or not a.archived)
        ]
        return order_assumptions(found)

    # -- revalidation and ageing -----------------------------------------

    def mark_suspected(self, location: CodeLocation, now: datetime | None = None) -> list[str]:
        """Flag valid assumptions overlapping a modified location for revalidation."""
        return self._update_where(
            lambda a, base: (
                not a.archived
                and not a.suspected
                and a.status is AssumptionStatus.VALID
                and a.location.overlaps(location)
            ),
            lambda a: setattr(a, "suspected", True),
            now,
        )

    def archive_location(self, location: CodeLocation, now: datetime | None = None) -> list[str]:
        """Archive assumptions whose code was removed."""
        archived = self._update_where(
            lambda a, base: not a.archived and location.contains(a.location),
            lambda a: setattr(a, "archived", True),
            now,
        )
        if archived:
            logger.info(f"Archived {len(archived)} assumption(s) at removed location {location}")
        return archived

    def refresh_orphans(self, now: datetime | None = None) -> list[str]:
        """Re-derive the orphaned flag from concept staleness. Returns changed ids."""
        return self._update_where(
            lambda a, base: not a.archived and a.orphaned != _is_orphaned(base, a.concept_ids),
            lambda a: setattr(a, "orphaned", not a.orphaned),
            now,
        )

    def age_out(self, now: datetime | None = None) -> list[str]:
        """Archive orphaned assumptions not validated within the retention window."""
        now = now or utcnow()
        cutoff = now - self._retention
        return self._update_where(
            lambda a, base: (
                a.orphaned
                and not a.archived
                and (a.last_validated_at or a.created_at) < cutoff
            ),
            lambda a: setattr(a, "archived", True),
            now,
        )

    def _update_where(self, predicate, mutate, now: datetime | None) -> list[str]:
        now = now or utcnow()
        changed: list[str] = []

        def build(base: ProjectKnowledge) -> Transaction:
            changed.clear()
            tx = Transaction()
            for aid in sorted(base.assumptions):
                a = base.assumptions[aid]
                if predicate(a, base):
                    updated = copy.deepcopy(a)
                    mutate(updated)
                    updated.updated_at = now
                    tx.upsert(updated)
                    changed.append(aid)
            return tx

        self._store.transact(build)
        return list(changed)
