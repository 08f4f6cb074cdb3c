"""Failure classification, assumption ranking and explanation.

One failure moves through
Observed -> Classified -> AssumptionsIdentified -> Explained -> (Resolved | Recurring).

The deterministic parts (classification, ranking, fingerprinting) are pure
functions of a knowledge snapshot and the failure signal, so the same
inputs always give the same output. The AI provider only adds an optional
narrative on top of the locally derived explanation.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from premise.errors import NotFoundError, ProviderError, ValidationError
from premise.graph.concepts import ConceptGraph
from premise.lifecycle.manager import order_assumptions
from premise.models import (
    CATEGORY_LAYERS,
    AssumptionStatus,
    AttemptOutcome,
    CodeLocation,
    EntityKind,
    FailureRecord,
    FailureSignal,
    FailureState,
    FailureType,
    ProjectKnowledge,
    RankedAssumption,
    StateTransition,
    nearest,
    new_id,
    stable_hash,
    utcnow,
)
from premise.storage.store import KnowledgeStore, Transaction

logger = logging.getLogger(__name__)

# Ranking weights: location proximity, concept overlap, validation staleness
PROXIMITY_WEIGHT = 0.5
CONCEPT_WEIGHT = 0.35
STALENESS_WEIGHT = 0.15

ERROR_TYPE_WEIGHT = 2.0
MESSAGE_WEIGHT = 1.0
RECENT_CHANGE_WEIGHT = 1.0

ERROR_TYPES: dict[FailureType, frozenset[str]] = {
    FailureType.RUNTIME: frozenset({
        "typeerror", "attributeerror", "keyerror", "indexerror", "nameerror",
        "zerodivisionerror", "recursionerror", "memoryerror", "overflowerror",
        "unboundlocalerror", "nullpointerexception", "referenceerror", "rangeerror",
        "segmentationfault", "panic",
    }),
    FailureType.INTEGRATION: frozenset({
        "connectionerror", "connectionrefusederror", "connectionreseterror", "timeouterror",
        "httperror", "sslerror", "socketerror", "requestexception", "fetcherror",
        "operationalerror", "importerror", "modulenotfounderror", "grpcerror",
    }),
    FailureType.LOGIC: frozenset({
        "assertionerror", "valueerror", "assertionfailed", "invariantviolation",
        "expectationfailed",
    }),
}

MESSAGE_PATTERNS: dict[FailureType, tuple[re.Pattern, ...]] = {
    FailureType.RUNTIME: tuple(re.compile(p) for p in (
        r"undefined is not", r"cannot read propert", r"null pointer", r"is not a function",
        r"has no attribute", r"out of memory", r"stack overflow", r"maximum recursion",
        r"index out of range", r"nonetype",
    )),
    FailureType.INTEGRATION: tuple(re.compile(p) for p in (
        r"connection (refused|reset|closed|aborted)", r"timed? ?out", r"\b(401|403|502|503|504)\b",
        r"econn\w+", r"\bdns\b", r"\bssl\b", r"certificate", r"service unavailable",
        r"rate limit",
    )),
    FailureType.LOGIC: tuple(re.compile(p) for p in (
        r"expected .+ (but )?(got|received|was)", r"\bassert", r"should (be|have|equal)",
        r"incorrect", r"\bwrong\b", r"does not match",
    )),
}

ALLOWED_TRANSITIONS: dict[FailureState, frozenset[FailureState]] = {
    FailureState.OBSERVED: frozenset({FailureState.CLASSIFIED}),
    FailureState.CLASSIFIED: frozenset({FailureState.ASSUMPTIONS_IDENTIFIED}),
    FailureState.ASSUMPTIONS_IDENTIFIED: frozenset({FailureState.EXPLAINED}),
    FailureState.EXPLAINED: frozenset({FailureState.RESOLVED, FailureState.RECURRING}),
    FailureState.RECURRING: frozenset({FailureState.RESOLVED, FailureState.RECURRING}),
    FailureState.RESOLVED: frozenset({FailureState.RECURRING}),
}


def advance(record: FailureRecord, to_state: FailureState, at: datetime) -> None:
    if to_state not in ALLOWED_TRANSITIONS[record.state]:
        raise ValidationError(
            f"Invalid failure transition {record.state.value} -> {to_state.value}",
            {"failure_id": record.id},
        )
    record.state = to_state
    record.transitions.append(StateTransition(state=to_state, at=at))


# ---------------------------------------------------------------------------
# Pure analysis
# ---------------------------------------------------------------------------


def normalize_error_type(error_type: str) -> str:
    return error_type.strip().rsplit(".", 1)[-1].lower()


def recently_changed(
    snapshot: ProjectKnowledge,
    locations: Sequence[CodeLocation],
    at: datetime,
    window: timedelta,
) -> bool:
    """Whether a recorded code change touched ``locations`` within ``window`` before ``at``."""
    since = at - window

    def in_window(t: datetime) -> bool:
        return since <= t <= at

    for intent in snapshot.intents.values():
        if in_window(intent.created_at) and any(intent.location.overlaps(l) for l in locations):
            return True
    for concept in snapshot.concepts.values():
        if in_window(concept.updated_at) and any(
            c.overlaps(l) for c in concept.locations for l in locations
        ):
            return True
    return False


def classify_signal(
    signal: FailureSignal, snapshot: ProjectKnowledge, window: timedelta
) -> tuple[FailureType, dict[str, float]]:
    """Pick a failure type from error shape and recent changes. Ties give ``unknown``."""
    error_type = normalize_error_type(signal.error_type)
    message = signal.message.lower()
    scores: dict[FailureType, float] = {}
    for failure_type in (FailureType.LOGIC, FailureType.RUNTIME, FailureType.INTEGRATION):
        score = 0.0
        if error_type in ERROR_TYPES[failure_type]:
            score += ERROR_TYPE_WEIGHT
        if any(p.search(message) for p in MESSAGE_PATTERNS[failure_type]):
            score += MESSAGE_WEIGHT
        scores[failure_type] = score
    if recently_changed(snapshot, signal.locations, signal.observed_at, window):
        scores[FailureType.LOGIC] += RECENT_CHANGE_WEIGHT

    top = max(scores.values())
    leaders = [t for t, s in scores.items() if s == top]
    chosen = leaders[0] if top > 0 and len(leaders) == 1 else FailureType.UNKNOWN
    return chosen, {t.value: s for t, s in scores.items()}


def infer_concepts(snapshot: ProjectKnowledge, signal: FailureSignal) -> list[str]:
    """Live concepts at the failure site plus any known concept hints."""
    found = {cid for cid in signal.concept_ids if cid in snapshot.concepts}
    for concept_id, concept in snapshot.concepts.items():
        if concept.stale:
            continue
        if any(c.overlaps(l) for c in concept.locations for l in signal.locations):
            found.add(concept_id)
    return sorted(found)


def failure_fingerprint(
    failure_type: FailureType, locations: Iterable[CodeLocation], concept_ids: Iterable[str]
) -> str:
    """Stable identity of "the same kind of failure", independent of message text."""
    return "fp-" + stable_hash(
        failure_type.value,
        *sorted({l.key for l in locations}),
        "|",
        *sorted(set(concept_ids)),
    )


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    a, b = set(a), set(b)
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def rank_assumptions(
    snapshot: ProjectKnowledge,
    locations: Sequence[CodeLocation],
    concept_ids: Sequence[str],
    at: datetime,
    floor: float,
    window: timedelta,
    limit: int,
) -> list[RankedAssumption]:
    """Score every non-archived assumption as a candidate cause of a failure."""
    ranked: list[RankedAssumption] = []
    window_seconds = max(window.total_seconds(), 1.0)
    for a in snapshot.assumptions.values():
        if a.archived:
            continue
        proximity = nearest(a.location, locations)
        overlap = jaccard(a.concept_ids, concept_ids)
        if proximity == 0.0 and overlap == 0.0:
            continue
        if a.last_validated_at is None:
            staleness = 1.0
        else:
            age = max((at - a.last_validated_at).total_seconds(), 0.0)
            staleness = 1.0 - 0.5 ** (age / window_seconds)
        score = PROXIMITY_WEIGHT * proximity + CONCEPT_WEIGHT * overlap + STALENESS_WEIGHT * staleness
        if score < floor:
            continue
        ranked.append(RankedAssumption(
            assumption_id=a.id,
            score=round(score, 6),
            proximity=round(proximity, 6),
            concept_overlap=round(overlap, 6),
            staleness=round(staleness, 6),
        ))
    ranked.sort(key=lambda r: (-r.score, r.assumption_id))
    return ranked[:limit]


@dataclass
class Analysis:
    failure_type: FailureType
    scores: dict[str, float]
    concept_ids: list[str]
    fingerprint: str
    ranked: list[RankedAssumption]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class FailureReport:
    failure_id: str
    fingerprint: str
    failure_type: str
    state: str
    recurrence_count: int
    resolved: bool
    locations: list[str] = field(default_factory=list)
    violated: list[dict] = field(default_factory=list)
    why: str = ""
    affected_layers: list[str] = field(default_factory=list)
    prior_attempts: list[dict] = field(default_factory=list)
    recommended_constraints: list[str] = field(default_factory=list)
    narrative: str = ""
    partial: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)

    def to_text(self) -> str:
        lines = [
            f"{self.failure_type.upper()} failure {self.failure_id} "
            f"({self.state}, seen {self.recurrence_count}x)",
            f"  at {', '.join(self.locations)}",
            f"  layers: {', '.join(self.affected_layers)}",
            "",
            f"Why: {self.why}",
        ]
        if self.violated:
            lines.append("")
            lines.append("Violated assumptions:")
            for v in self.violated:
                lines.append(f"  - [{v['score']:.2f}] {v['description']}")
        if self.prior_attempts:
            lines.append("")
            lines.append("Prior attempts:")
            for at in self.prior_attempts:
                lines.append(f"  - {at['digest']} {at['outcome']}: {', '.join(at['locations'])}")
        if self.recommended_constraints:
            lines.append("")
            lines.append("Keep holding:")
            for c in self.recommended_constraints:
                lines.append(f"  - {c}")
        if self.narrative:
            lines.extend(["", self.narrative])
        if self.partial:
            lines.extend(["", "(partial: provider explanation unavailable)"])
        return "\n".join(lines)


def _why(ranked: RankedAssumption, description: str) -> str:
    reasons = []
    if ranked.proximity >= 1.0:
        reasons.append("sits at the failure site")
    elif ranked.proximity > 0:
        reasons.append("sits near the failure site")
    if ranked.concept_overlap > 0:
        reasons.append("covers the concepts involved in the failure")
    if ranked.staleness >= 1.0:
        reasons.append("has never been validated")
    elif ranked.staleness >= 0.5:
        reasons.append("has not been validated recently")
    return f"'{description}' " + " and ".join(reasons) if reasons else f"'{description}'"


class FailureClassifier:
    """Turns failure signals into classified, explained FailureRecords."""

    def __init__(
        self,
        store: KnowledgeStore,
        graph: ConceptGraph,
        floor: float,
        recency_window_seconds: float,
        resolve_after_attempts: int,
        max_violated: int = 5,
        provider=None,
    ) -> None:
        self._store = store
        self._graph = graph
        self._floor = floor
        self._window = timedelta(seconds=recency_window_seconds)
        self._resolve_after = resolve_after_attempts
        self._max_violated = max_violated
        self.provider = provider

    # -- analysis ---------------------------------------------------------

    def analyze(self, signal: FailureSignal, snapshot: ProjectKnowledge | None = None) -> Analysis:
        """Classify and rank without writing anything."""
        snapshot = snapshot or self._store.snapshot()
        failure_type, scores = classify_signal(signal, snapshot, self._window)
        concept_ids = infer_concepts(snapshot, signal)
        ranked = rank_assumptions(
            snapshot,
            signal.locations,
            concept_ids,
            signal.observed_at,
            self._floor,
            self._window,
            self._max_violated,
        )
        return Analysis(
            failure_type=failure_type,
            scores=scores,
            concept_ids=concept_ids,
            fingerprint=failure_fingerprint(failure_type, signal.locations, concept_ids),
            ranked=ranked,
        )

    def observe(self, signal: FailureSignal) -> FailureRecord:
        """Record a failure, or count a recurrence of an equivalent one."""
        if not signal.locations or not all(l.is_valid() for l in signal.locations):
            raise ValidationError("Failure signal needs at least one valid code location")
        at = signal.observed_at
        outcome: dict[str, str] = {}

        def build(base: ProjectKnowledge) -> Transaction:
            analysis = self.analyze(signal, base)
            tx = Transaction()
            existing = _latest_with_fingerprint(base, analysis.fingerprint)

            if existing is not None:
                record = copy.deepcopy(existing)
                record.recurrence_count += 1
                record.last_seen_at = at
                record.message = signal.message
                record.resolved = False
                record.quiet_attempts = 0
                record.violated = analysis.ranked
                advance(record, FailureState.RECURRING, at)
            else:
                record = FailureRecord(
                    id=new_id("f"),
                    fingerprint=analysis.fingerprint,
                    failure_type=analysis.failure_type,
                    locations=list(signal.locations),
                    concept_ids=analysis.concept_ids,
                    error_type=signal.error_type,
                    message=signal.message,
                    observed_at=at,
                    last_seen_at=at,
                    transitions=[StateTransition(FailureState.OBSERVED, at)],
                )
                advance(record, FailureState.CLASSIFIED, at)
                record.violated = analysis.ranked
                advance(record, FailureState.ASSUMPTIONS_IDENTIFIED, at)
                advance(record, FailureState.EXPLAINED, at)
            tx.upsert(record)
            outcome["id"] = record.id

            for ranked in analysis.ranked:
                a = base.assumptions[ranked.assumption_id]
                if not a.suspected and a.status is not AssumptionStatus.FAILED:
                    flagged = copy.deepcopy(a)
                    flagged.suspected = True
                    flagged.updated_at = at
                    tx.upsert(flagged)

            # a new failure at a location interrupts the quiet streak of others there
            for other in base.failures.values():
                if other.id == record.id or other.resolved or other.quiet_attempts == 0:
                    continue
                if any(o.overlaps(l) for o in other.locations for l in signal.locations):
                    reset = copy.deepcopy(other)
                    reset.quiet_attempts = 0
                    tx.upsert(reset)
            return tx

        self._store.transact(build)
        record = self.get(outcome["id"])
        if record.recurrence_count > 1:
            logger.info(f"Failure {record.id} recurred ({record.recurrence_count}x)")
        else:
            logger.info(
                f"New {record.failure_type.value} failure {record.id} with "
                f"{len(record.violated)} candidate assumption(s)"
            )
        return record

    # -- queries ----------------------------------------------------------

    def get(self, failure_id: str) -> FailureRecord:
        return self._store.get(EntityKind.FAILURE, failure_id)

    def failures(self, include_resolved: bool = False) -> list[FailureRecord]:
        records = self._store.read(
            EntityKind.FAILURE, lambda f: include_resolved or not f.resolved
        )
        return sorted(records, key=lambda f: (f.last_seen_at, f.id), reverse=True)

    def unresolved_assumptions(self, failure_id: str) -> list:
        """Violated assumptions of a failure that have not been revalidated as valid."""
        snapshot = self._store.snapshot()
        record = snapshot.failures.get(failure_id)
        if record is None:
            raise NotFoundError("failure", failure_id)
        found = []
        for ranked in record.violated:
            a = snapshot.assumptions.get(ranked.assumption_id)
            if a is not None and not a.archived and (
                a.status is not AssumptionStatus.VALID or a.suspected
            ):
                found.append(copy.deepcopy(a))
        return found

    def related_constraints(self, failure_id: str, snapshot: ProjectKnowledge | None = None) -> list:
        """Non-violated assumptions around the failure that must keep holding."""
        snapshot = snapshot or self._store.snapshot()
        record = snapshot.failures.get(failure_id)
        if record is None:
            raise NotFoundError("failure", failure_id)
        violated = {r.assumption_id for r in record.violated}
        concepts = set(record.concept_ids)
        found = [
            copy.deepcopy(a)
            for a in snapshot.assumptions.values()
            if a.id not in violated
            and a.active
            and a.status is not AssumptionStatus.FAILED
            and (
                concepts & set(a.concept_ids)
                or any(a.location.overlaps(l) for l in record.locations)
            )
        ]
        return order_assumptions(found)

    def explain(self, failure_id: str, narrate: bool = False) -> FailureReport:
        """Build the structured explanation for a failure.

        With ``narrate`` the provider adds a free-text narrative; if it
        fails the local explanation is returned marked as partial.
        """
        snapshot = self._store.snapshot()
        record = snapshot.failures.get(failure_id)
        if record is None:
            raise NotFoundError("failure", failure_id)

        violated = []
        for ranked in record.violated:
            a = snapshot.assumptions.get(ranked.assumption_id)
            if a is None:
                continue
            violated.append({
                "assumption_id": a.id,
                "description": a.description,
                "kind": a.kind.value,
                "status": a.status.value,
                "score": ranked.score,
                "why": _why(ranked, a.description),
            })

        if violated:
            why = violated[0]["why"]
        else:
            where = ", ".join(l.key for l in record.locations)
            why = f"No recorded assumption explains this {record.failure_type.value} failure at {where}"

        layers = sorted({
            CATEGORY_LAYERS[snapshot.concepts[cid].category]
            for cid in record.concept_ids
            if cid in snapshot.concepts
        }) or ["unknown"]

        siblings = {f.id for f in snapshot.failures.values() if f.fingerprint == record.fingerprint}
        attempts = sorted(
            (a for a in snapshot.attempts.values() if a.failure_id in siblings),
            key=lambda a: (a.created_at, a.id),
        )
        prior = [
            {
                "attempt_id": a.id,
                "digest": a.fingerprint.digest,
                "outcome": a.outcome.value,
                "locations": [l.key for l in a.fingerprint.locations],
                "created_at": a.created_at.isoformat(),
            }
            for a in attempts
        ]

        report = FailureReport(
            failure_id=record.id,
            fingerprint=record.fingerprint,
            failure_type=record.failure_type.value,
            state=record.state.value,
            recurrence_count=record.recurrence_count,
            resolved=record.resolved,
            locations=[l.key for l in record.locations],
            violated=violated,
            why=why,
            affected_layers=layers,
            prior_attempts=prior,
            recommended_constraints=[a.description for a in self.related_constraints(failure_id, snapshot)],
        )

        if narrate:
            if self.provider is None:
                report.partial = True
            else:
                try:
                    report.narrative = self.provider.explain_failure(report)
                except ProviderError as e:
                    logger.warning(f"Provider explanation failed for {failure_id}: {e}")
                    report.partial = True
        return report

    # -- resolution -------------------------------------------------------

    def confirm_success(self, location: CodeLocation, at: datetime | None = None) -> list[str]:
        """A successful re-execution at ``location`` resolves failures there."""
        at = at or utcnow()
        resolved: list[str] = []

        def build(base: ProjectKnowledge) -> Transaction:
            resolved.clear()
            tx = Transaction()
            for fid in sorted(base.failures):
                f = base.failures[fid]
                if f.resolved or not any(l.overlaps(location) for l in f.locations):
                    continue
                tx.upsert(_resolved(f, at))
                resolved.append(fid)
            return tx

        self._store.transact(build)
        return list(resolved)

    def resolve(self, failure_id: str, at: datetime | None = None) -> FailureRecord:
        at = at or utcnow()

        def build(base: ProjectKnowledge) -> Transaction | None:
            f = base.failures.get(failure_id)
            if f is None:
                raise NotFoundError("failure", failure_id)
            if f.resolved:
                return None
            return Transaction().upsert(_resolved(f, at))

        self._store.transact(build)
        return self.get(failure_id)

    def note_attempt(self, failure_id: str, outcome: AttemptOutcome, at: datetime | None = None) -> FailureRecord:
        """Count an attempt against the quiet streak that auto-resolves a failure."""
        at = at or utcnow()

        def build(base: ProjectKnowledge) -> Transaction | None:
            f = base.failures.get(failure_id)
            if f is None:
                raise NotFoundError("failure", failure_id)
            updated = self.noted(f, outcome, at)
            return Transaction().upsert(updated) if updated is not None else None

        self._store.transact(build)
        return self.get(failure_id)

    def noted(self, record: FailureRecord, outcome: AttemptOutcome, at: datetime) -> FailureRecord | None:
        """``record`` after one more attempt with ``outcome``, or None if unchanged.

        Pure; callers put the result in the same transaction as the attempt.
        """
        if record.resolved:
            return None
        if outcome is AttemptOutcome.SUCCEEDED:
            return _resolved(record, at)
        updated = copy.deepcopy(record)
        if outcome is AttemptOutcome.FAILED:
            updated.quiet_attempts = 0
        else:
            updated.quiet_attempts += 1
            if updated.quiet_attempts >= self._resolve_after:
                updated = _resolved(updated, at)
        return updated


def _resolved(record: FailureRecord, at: datetime) -> FailureRecord:
    updated = copy.deepcopy(record)
    updated.resolved = True
    advance(updated, FailureState.RESOLVED, at)
    return updated


def _latest_with_fingerprint(snapshot: ProjectKnowledge, fingerprint: str) -> FailureRecord | None:
    matches = [f for f in snapshot.failures.values() if f.fingerprint == fingerprint]
    if not matches:
        return None
    return max(matches, key=lambda f: (not f.resolved, f.last_seen_at, f.id))
