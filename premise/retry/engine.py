"""Retry prevention.

Every fix attempt against a failure is recorded with the fingerprint of
what it touched. Before a new attempt, the proposed fingerprint is compared
with the failed attempts of the same failure; one that is too similar is
blocked and the caller gets the unresolved assumptions to work on instead.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime

from premise.errors import NotFoundError, ValidationError
from premise.failures.classifier import FailureClassifier, jaccard
from premise.models import (
    AttemptOutcome,
    CodeLocation,
    DiffFingerprint,
    EntityKind,
    ProjectKnowledge,
    RetryAttempt,
    nearest,
    new_id,
    utcnow,
)
from premise.storage.store import KnowledgeStore, Transaction

logger = logging.getLogger(__name__)

LOCATION_WEIGHT = 0.6
CONCEPT_WEIGHT = 0.4
# Two changed locations count as the same place at this proximity or above
LOCATION_MATCH = 0.5


def _soft_overlap(a: tuple[CodeLocation, ...], b: tuple[CodeLocation, ...]) -> float:
    if not a or not b:
        return 0.0
    matched = sum(1 for x in a if nearest(x, b) >= LOCATION_MATCH)
    matched += sum(1 for y in b if nearest(y, a) >= LOCATION_MATCH)
    return matched / (len(a) + len(b))


def fingerprint_similarity(a: DiffFingerprint, b: DiffFingerprint) -> float:
    """Similarity in [0, 1] between two diff fingerprints. Symmetric."""
    locations = _soft_overlap(a.locations, b.locations)
    if not a.concept_ids and not b.concept_ids:
        return locations
    return LOCATION_WEIGHT * locations + CONCEPT_WEIGHT * jaccard(a.concept_ids, b.concept_ids)


@dataclass
class RetryCheck:
    blocked: bool
    reason: str = ""
    similar_attempt_id: str | None = None
    similarity: float = 0.0
    alternatives: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "blocked": self.blocked,
            "reason": self.reason,
            "similar_attempt_id": self.similar_attempt_id,
            "similarity": round(self.similarity, 4),
            "alternatives": list(self.alternatives),
        }


def _sibling_failures(snapshot: ProjectKnowledge, failure_id: str) -> set[str]:
    record = snapshot.failures[failure_id]
    return {f.id for f in snapshot.failures.values() if f.fingerprint == record.fingerprint}


class RetryPreventionEngine:
    def __init__(
        self,
        store: KnowledgeStore,
        classifier: FailureClassifier,
        similarity_threshold: float,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self.threshold = similarity_threshold

    def record_attempt(
        self,
        failure_id: str,
        fingerprint: DiffFingerprint,
        outcome: AttemptOutcome | str = AttemptOutcome.UNKNOWN,
        note: str = "",
        now: datetime | None = None,
    ) -> RetryAttempt:
        """Record a fix attempt. A succeeded attempt resolves the failure."""
        outcome = _outcome(outcome)
        if not fingerprint.locations:
            raise ValidationError("An attempt fingerprint needs at least one changed location")
        if not all(loc.is_valid() for loc in fingerprint.locations):
            raise ValidationError("Attempt fingerprint has an invalid code location")
        now = now or utcnow()
        attempt = RetryAttempt(
            id=new_id("r"),
            failure_id=failure_id,
            fingerprint=fingerprint,
            outcome=outcome,
            note=note,
            created_at=now,
            updated_at=now,
        )

        def build(base: ProjectKnowledge) -> Transaction:
            failure = base.failures.get(failure_id)
            if failure is None:
                raise NotFoundError("failure", failure_id)
            tx = Transaction().upsert(attempt)
            noted = self._classifier.noted(failure, outcome, now)
            if noted is not None:
                tx.upsert(noted)
            return tx

        self._store.transact(build)
        logger.debug(f"Attempt {attempt.id} ({fingerprint.digest}) on {failure_id}: {outcome.value}")
        return self._store.get(EntityKind.ATTEMPT, attempt.id)

    def update_outcome(
        self, attempt_id: str, outcome: AttemptOutcome | str, now: datetime | None = None
    ) -> RetryAttempt:
        """Set the outcome of an attempt once it is known. Succeeded is final."""
        outcome = _outcome(outcome)
        now = now or utcnow()

        def build(base: ProjectKnowledge) -> Transaction | None:
            existing = base.attempts.get(attempt_id)
            if existing is None:
                raise NotFoundError("attempt", attempt_id)
            if existing.outcome is outcome:
                return None
            if existing.outcome is AttemptOutcome.SUCCEEDED:
                raise ValidationError(f"Attempt {attempt_id} already succeeded")
            updated = copy.deepcopy(existing)
            updated.outcome = outcome
            updated.updated_at = now
            tx = Transaction().upsert(updated)
            if outcome is not AttemptOutcome.UNKNOWN:
                failure = base.failures.get(existing.failure_id)
                if failure is None:
                    raise NotFoundError("failure", existing.failure_id)
                noted = self._classifier.noted(failure, outcome, now)
                if noted is not None:
                    tx.upsert(noted)
            return tx

        self._store.transact(build)
        return self._store.get(EntityKind.ATTEMPT, attempt_id)

    def check_before_attempt(self, failure_id: str, proposed: DiffFingerprint) -> RetryCheck:
        """Block a proposed fix that repeats an attempt already known to fail."""
        snapshot = self._store.snapshot()
        if failure_id not in snapshot.failures:
            raise NotFoundError("failure", failure_id)
        siblings = _sibling_failures(snapshot, failure_id)
        attempts = sorted(
            (a for a in snapshot.attempts.values() if a.failure_id in siblings),
            key=lambda a: (a.created_at, a.id),
        )
        if any(a.outcome is AttemptOutcome.SUCCEEDED for a in attempts):
            return RetryCheck(blocked=False, reason="A previous attempt succeeded")

        best: RetryAttempt | None = None
        best_score = -1.0
        for attempt in attempts:
            if attempt.outcome is not AttemptOutcome.FAILED:
                continue
            score = fingerprint_similarity(proposed, attempt.fingerprint)
            if score > best_score:
                best, best_score = attempt, score

        if best is None or best_score < self.threshold:
            return RetryCheck(
                blocked=False,
                similar_attempt_id=best.id if best else None,
                similarity=max(best_score, 0.0),
            )

        alternatives = [
            f"Address violated assumption: {a.description} ({a.location})"
            for a in self._classifier.unresolved_assumptions(failure_id)
        ]
        alternatives += [
            f"Keep holding: {a.description} ({a.location})"
            for a in self._classifier.related_constraints(failure_id, snapshot)
        ]
        logger.info(
            f"Blocked retry on {failure_id}: {best_score:.2f} similar to failed attempt {best.id}"
        )
        return RetryCheck(
            blocked=True,
            reason=(
                f"Proposed change is {best_score:.0%} similar to attempt {best.id}, "
                f"which already failed"
            ),
            similar_attempt_id=best.id,
            similarity=best_score,
            alternatives=alternatives,
        )

    def attempts_for(self, failure_id: str) -> list[RetryAttempt]:
        attempts = self._store.read(EntityKind.ATTEMPT, lambda a: a.failure_id == failure_id)
        return sorted(attempts, key=lambda a: (a.created_at, a.id))

    def invalid_fingerprints(
        self, location: CodeLocation, snapshot: ProjectKnowledge | None = None
    ) -> list[RetryAttempt]:
        """Failed attempts near ``location`` on failures that are still open."""
        snapshot = snapshot or self._store.snapshot()
        return invalid_attempts(snapshot, location)


def invalid_attempts(snapshot: ProjectKnowledge, location: CodeLocation) -> list[RetryAttempt]:
    succeeded = {
        snapshot.failures[a.failure_id].fingerprint
        for a in snapshot.attempts.values()
        if a.outcome is AttemptOutcome.SUCCEEDED and a.failure_id in snapshot.failures
    }
    found = []
    for attempt in snapshot.attempts.values():
        failure = snapshot.failures.get(attempt.failure_id)
        if (
            attempt.outcome is not AttemptOutcome.FAILED
            or failure is None
            or failure.resolved
            or failure.fingerprint in succeeded
        ):
            continue
        if nearest(location, attempt.fingerprint.locations) > 0:
            found.append(copy.deepcopy(attempt))
    return sorted(found, key=lambda a: (a.created_at, a.id))


def _outcome(value: AttemptOutcome | str) -> AttemptOutcome:
    try:
        return AttemptOutcome(value)
    except ValueError as e:
        raise ValidationError(f"Unknown attempt outcome: {value!r}") from e
