"""Snapshot codec: one human-diffable JSON document per project.

Keys are sorted at every level and entity lists are sorted by id, so two
team members' snapshots can be three-way merged with a generic text tool.
A merge that produces the same entity twice surfaces as duplicate entries
rather than lost data; ``reconcile`` resolves them explicitly.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from premise.errors import CorruptSnapshotError, StorageError
from premise.models import (
    Assumption,
    AssumptionKind,
    AssumptionStatus,
    AttemptOutcome,
    ChangeKind,
    CodeLocation,
    Concept,
    ConceptCategory,
    ConceptEdge,
    DiffFingerprint,
    EntityKind,
    FailureRecord,
    FailureState,
    FailureType,
    Intent,
    ProjectKnowledge,
    RankedAssumption,
    RetryAttempt,
    StateTransition,
    Tradeoff,
    Violation,
    sorted_locations,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
MAX_EDGE_BATCHES = 32

# Collection name in the document for each entity kind, in document order
COLLECTIONS: dict[EntityKind, str] = {
    EntityKind.CONCEPT: "concepts",
    EntityKind.INTENT: "intents",
    EntityKind.TRADEOFF: "tradeoffs",
    EntityKind.ASSUMPTION: "assumptions",
    EntityKind.FAILURE: "failures",
    EntityKind.ATTEMPT: "attempts",
}


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


def _loc(location: CodeLocation) -> str:
    return location.key


def _parse_loc(text: str) -> CodeLocation:
    return CodeLocation.parse(text)


# ---------------------------------------------------------------------------
# Per-entity encoding
# ---------------------------------------------------------------------------


def encode_entity(kind: EntityKind, entity) -> dict:
    if kind is EntityKind.CONCEPT:
        return {
            "id": entity.id,
            "key": entity.key,
            "category": entity.category.value,
            "signature": entity.signature,
            "anchor": _loc(entity.anchor),
            "locations": [_loc(l) for l in sorted_locations(entity.locations)],
            "confidence": entity.confidence,
            "edges": {
                other: {
                    "weight": edge.weight,
                    "updated_at": _dt(edge.updated_at),
                    "batches": list(edge.batches),
                }
                for other, edge in entity.edges.items()
            },
            "stale": entity.stale,
            "created_at": _dt(entity.created_at),
            "updated_at": _dt(entity.updated_at),
        }
    if kind is EntityKind.INTENT:
        return {
            "id": entity.id,
            "description": entity.description,
            "location": _loc(entity.location),
            "concept_ids": sorted(entity.concept_ids),
            "confidence": entity.confidence,
            "change_kind": entity.change_kind.value,
            "superseded_by": entity.superseded_by,
            "created_at": _dt(entity.created_at),
        }
    if kind is EntityKind.TRADEOFF:
        return {
            "id": entity.id,
            "intent_id": entity.intent_id,
            "decision": entity.decision,
            "alternatives": sorted(set(entity.alternatives)),
            "rationale": entity.rationale,
            "constraints": list(entity.constraints),
            "created_at": _dt(entity.created_at),
        }
    if kind is EntityKind.ASSUMPTION:
        return {
            "id": entity.id,
            "description": entity.description,
            "kind": entity.kind.value,
            "location": _loc(entity.location),
            "concept_ids": sorted(entity.concept_ids),
            "status": entity.status.value,
            "violations": [
                {
                    "failure_id": v.failure_id,
                    "evidence": v.evidence,
                    "recorded_at": _dt(v.recorded_at),
                }
                for v in entity.violations
            ],
            "suspected": entity.suspected,
            "orphaned": entity.orphaned,
            "archived": entity.archived,
            "source": entity.source,
            "created_at": _dt(entity.created_at),
            "updated_at": _dt(entity.updated_at),
            "last_validated_at": _dt(entity.last_validated_at),
        }
    if kind is EntityKind.FAILURE:
        return {
            "id": entity.id,
            "fingerprint": entity.fingerprint,
            "failure_type": entity.failure_type.value,
            "locations": [_loc(l) for l in entity.locations],
            "concept_ids": sorted(entity.concept_ids),
            "error_type": entity.error_type,
            "message": entity.message,
            "state": entity.state.value,
            "violated": [
                {
                    "assumption_id": r.assumption_id,
                    "score": r.score,
                    "proximity": r.proximity,
                    "concept_overlap": r.concept_overlap,
                    "staleness": r.staleness,
                }
                for r in entity.violated
            ],
            "recurrence_count": entity.recurrence_count,
            "resolved": entity.resolved,
            "quiet_attempts": entity.quiet_attempts,
            "observed_at": _dt(entity.observed_at),
            "last_seen_at": _dt(entity.last_seen_at),
            "transitions": [
                {"state": t.state.value, "at": _dt(t.at)} for t in entity.transitions
            ],
        }
    if kind is EntityKind.ATTEMPT:
        return {
            "id": entity.id,
            "failure_id": entity.failure_id,
            "fingerprint": {
                "locations": [_loc(l) for l in entity.fingerprint.locations],
                "concept_ids": list(entity.fingerprint.concept_ids),
            },
            "outcome": entity.outcome.value,
            "note": entity.note,
            "created_at": _dt(entity.created_at),
            "updated_at": _dt(entity.updated_at),
        }
    raise ValueError(f"Unhandled entity kind: {kind}")


def decode_entity(kind: EntityKind, d: dict):
    if kind is EntityKind.CONCEPT:
        return Concept(
            id=d["id"],
            key=d["key"],
            category=ConceptCategory(d["category"]),
            signature=d["signature"],
            anchor=_parse_loc(d["anchor"]),
            locations=[_parse_loc(l) for l in d["locations"]],
            confidence=d["confidence"],
            edges={
                other: ConceptEdge(
                    weight=e["weight"],
                    updated_at=_parse_dt(e["updated_at"]),
                    batches=list(e["batches"]),
                )
                for other, e in d["edges"].items()
            },
            stale=d["stale"],
            created_at=_parse_dt(d["created_at"]),
            updated_at=_parse_dt(d["updated_at"]),
        )
    if kind is EntityKind.INTENT:
        return Intent(
            id=d["id"],
            description=d["description"],
            location=_parse_loc(d["location"]),
            concept_ids=list(d["concept_ids"]),
            confidence=d["confidence"],
            change_kind=ChangeKind(d["change_kind"]),
            superseded_by=d["superseded_by"],
            created_at=_parse_dt(d["created_at"]),
        )
    if kind is EntityKind.TRADEOFF:
        return Tradeoff(
            id=d["id"],
            intent_id=d["intent_id"],
            decision=d["decision"],
            alternatives=list(d["alternatives"]),
            rationale=d["rationale"],
            constraints=list(d["constraints"]),
            created_at=_parse_dt(d["created_at"]),
        )
    if kind is EntityKind.ASSUMPTION:
        return Assumption(
            id=d["id"],
            description=d["description"],
            kind=AssumptionKind(d["kind"]),
            location=_parse_loc(d["location"]),
            concept_ids=list(d["concept_ids"]),
            status=AssumptionStatus(d["status"]),
            violations=[
                Violation(
                    failure_id=v["failure_id"],
                    evidence=v["evidence"],
                    recorded_at=_parse_dt(v["recorded_at"]),
                )
                for v in d["violations"]
            ],
            suspected=d["suspected"],
            orphaned=d["orphaned"],
            archived=d["archived"],
            source=d["source"],
            created_at=_parse_dt(d["created_at"]),
            updated_at=_parse_dt(d["updated_at"]),
            last_validated_at=_parse_dt(d["last_validated_at"]),
        )
    if kind is EntityKind.FAILURE:
        return FailureRecord(
            id=d["id"],
            fingerprint=d["fingerprint"],
            failure_type=FailureType(d["failure_type"]),
            locations=[_parse_loc(l) for l in d["locations"]],
            concept_ids=list(d["concept_ids"]),
            error_type=d["error_type"],
            message=d["message"],
            state=FailureState(d["state"]),
            violated=[RankedAssumption(**r) for r in d["violated"]],
            recurrence_count=d["recurrence_count"],
            resolved=d["resolved"],
            quiet_attempts=d["quiet_attempts"],
            observed_at=_parse_dt(d["observed_at"]),
            last_seen_at=_parse_dt(d["last_seen_at"]),
            transitions=[
                StateTransition(state=FailureState(t["state"]), at=_parse_dt(t["at"]))
                for t in d["transitions"]
            ],
        )
    if kind is EntityKind.ATTEMPT:
        fp = d["fingerprint"]
        return RetryAttempt(
            id=d["id"],
            failure_id=d["failure_id"],
            fingerprint=DiffFingerprint(
                locations=tuple(_parse_loc(l) for l in fp["locations"]),
                concept_ids=tuple(fp["concept_ids"]),
            ),
            outcome=AttemptOutcome(d["outcome"]),
            note=d["note"],
            created_at=_parse_dt(d["created_at"]),
            updated_at=_parse_dt(d["updated_at"]),
        )
    raise ValueError(f"Unhandled entity kind: {kind}")


# ---------------------------------------------------------------------------
# Whole-document encoding
# ---------------------------------------------------------------------------


def _canonical(body: dict) -> str:
    return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(body: dict) -> str:
    return hashlib.sha256(_canonical(body).encode("utf-8")).hexdigest()


def encode_knowledge(knowledge: ProjectKnowledge) -> dict:
    body: dict = {
        "format": FORMAT_VERSION,
        "project_id": knowledge.project_id,
        "version": knowledge.version,
        "updated_at": _dt(knowledge.updated_at),
    }
    for kind, name in COLLECTIONS.items():
        items = knowledge.collection(kind)
        body[name] = [encode_entity(kind, items[key]) for key in sorted(items)]
    body["checksum"] = compute_checksum(body)
    return body


def dumps(knowledge: ProjectKnowledge) -> str:
    return json.dumps(encode_knowledge(knowledge), indent=2, sort_keys=True, ensure_ascii=False) + "\n"


@dataclass
class DecodedSnapshot:
    knowledge: ProjectKnowledge
    duplicates: dict[EntityKind, dict[str, list]] = field(default_factory=dict)

    @property
    def has_duplicates(self) -> bool:
        return any(self.duplicates.values())


def loads(text: str, verify: bool = True) -> DecodedSnapshot:
    """Decode a snapshot document.

    With ``verify`` the embedded checksum must match. Without it the
    document is accepted as edited (e.g. by a merge tool) and repeated
    entity ids are collected in ``duplicates`` for reconciliation.
    """
    try:
        body = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptSnapshotError(f"Snapshot is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise CorruptSnapshotError("Snapshot root is not an object")

    stored = body.pop("checksum", None)
    if verify and stored != compute_checksum(body):
        raise CorruptSnapshotError(
            "Snapshot checksum mismatch",
            {"project_id": body.get("project_id"), "stored": stored},
        )

    try:
        knowledge = ProjectKnowledge(
            project_id=body["project_id"],
            version=int(body["version"]),
            updated_at=_parse_dt(body.get("updated_at")),
        )
        duplicates: dict[EntityKind, dict[str, list]] = {}
        for kind, name in COLLECTIONS.items():
            target = knowledge.collection(kind)
            for raw in body.get(name, []):
                entity = decode_entity(kind, raw)
                if entity.id in target:
                    copies = duplicates.setdefault(kind, {}).setdefault(entity.id, [target[entity.id]])
                    copies.append(entity)
                else:
                    target[entity.id] = entity
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise CorruptSnapshotError(f"Snapshot could not be decoded: {e}") from e

    return DecodedSnapshot(knowledge=knowledge, duplicates=duplicates)


def write_atomic(path: Path, text: str) -> None:
    """Stage ``text`` next to ``path`` and swap it in with one rename."""
    staging = path.with_name(path.name + ".staging")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(staging, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(staging, path)
    except OSError as e:
        raise StorageError(f"Failed to write snapshot {path}: {e}", {"path": str(path)}) from e


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def _canonical_order(kind: EntityKind, copies: list) -> list:
    return sorted(copies, key=lambda e: _canonical(encode_entity(kind, e)))


def _latest(values):
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _reconcile_concept(copies: list[Concept]) -> Concept:
    base = copies[0]
    edges: dict[str, ConceptEdge] = {}
    for c in copies:
        for other, edge in c.edges.items():
            current = edges.get(other)
            if current is None:
                edges[other] = ConceptEdge(edge.weight, edge.updated_at, list(edge.batches))
                continue
            current.weight = max(current.weight, edge.weight)
            current.updated_at = max(current.updated_at, edge.updated_at)
            merged = current.batches + [b for b in edge.batches if b not in current.batches]
            current.batches = merged[-MAX_EDGE_BATCHES:]
    return Concept(
        id=base.id,
        key=base.key,
        category=base.category,
        signature=base.signature,
        anchor=base.anchor,
        locations=sorted_locations(loc for c in copies for loc in c.locations),
        confidence=max(c.confidence for c in copies),
        edges=edges,
        stale=all(c.stale for c in copies),
        created_at=min(c.created_at for c in copies),
        updated_at=max(c.updated_at for c in copies),
    )


def _reconcile_assumption(copies: list[Assumption]) -> Assumption:
    base = copies[0]
    seen: dict[tuple[str, datetime], Violation] = {}
    for a in copies:
        for v in a.violations:
            seen.setdefault((v.failure_id, v.recorded_at), v)
    violations = sorted(seen.values(), key=lambda v: (v.recorded_at, v.failure_id))

    statuses = {a.status for a in copies}
    # Failure dominates: a copy that saw a violation is never overwritten by
    # a copy that did not.
    if AssumptionStatus.FAILED in statuses and violations:
        status = AssumptionStatus.FAILED
    elif AssumptionStatus.VALID in statuses:
        status = AssumptionStatus.VALID
    else:
        status = AssumptionStatus.UNTESTED

    return Assumption(
        id=base.id,
        description=base.description,
        kind=base.kind,
        location=base.location,
        concept_ids=sorted({cid for a in copies for cid in a.concept_ids}),
        status=status,
        violations=violations,
        suspected=any(a.suspected for a in copies),
        orphaned=any(a.orphaned for a in copies),
        archived=all(a.archived for a in copies),
        source=base.source,
        created_at=min(a.created_at for a in copies),
        updated_at=max(a.updated_at for a in copies),
        last_validated_at=_latest(a.last_validated_at for a in copies),
    )


def _reconcile_intent(copies: list[Intent]) -> Intent:
    base = copies[0]
    superseded = next((i.superseded_by for i in copies if i.superseded_by), None)
    return Intent(
        id=base.id,
        description=base.description,
        location=base.location,
        concept_ids=sorted({cid for i in copies for cid in i.concept_ids}),
        confidence=max(i.confidence for i in copies),
        change_kind=base.change_kind,
        superseded_by=superseded,
        created_at=min(i.created_at for i in copies),
    )


def _reconcile_failure(copies: list[FailureRecord]) -> FailureRecord:
    latest = max(copies, key=lambda f: f.last_seen_at)
    resolved = all(f.resolved for f in copies)
    state = latest.state
    if resolved:
        state = FailureState.RESOLVED
    elif state is FailureState.RESOLVED:
        state = FailureState.RECURRING
    seen: dict[tuple[str, datetime], StateTransition] = {}
    for f in copies:
        for t in f.transitions:
            seen.setdefault((t.state.value, t.at), t)
    return FailureRecord(
        id=latest.id,
        fingerprint=latest.fingerprint,
        failure_type=latest.failure_type,
        locations=list(latest.locations),
        concept_ids=sorted({cid for f in copies for cid in f.concept_ids}),
        error_type=latest.error_type,
        message=latest.message,
        state=state,
        violated=list(latest.violated),
        recurrence_count=max(f.recurrence_count for f in copies),
        resolved=resolved,
        quiet_attempts=min(f.quiet_attempts for f in copies),
        observed_at=min(f.observed_at for f in copies),
        last_seen_at=latest.last_seen_at,
        transitions=sorted(seen.values(), key=lambda t: (t.at, t.state.value)),
    )


def _reconcile_attempt(copies: list[RetryAttempt]) -> RetryAttempt:
    base = copies[0]
    outcomes = {a.outcome for a in copies}
    if AttemptOutcome.SUCCEEDED in outcomes:
        outcome = AttemptOutcome.SUCCEEDED
    elif AttemptOutcome.FAILED in outcomes:
        outcome = AttemptOutcome.FAILED
    else:
        outcome = AttemptOutcome.UNKNOWN
    return RetryAttempt(
        id=base.id,
        failure_id=base.failure_id,
        fingerprint=base.fingerprint,
        outcome=outcome,
        note=base.note,
        created_at=min(a.created_at for a in copies),
        updated_at=max(a.updated_at for a in copies),
    )


def reconcile_entity(kind: EntityKind, copies: list):
    """Collapse divergent copies of one entity into a single record."""
    ordered = _canonical_order(kind, copies)
    if kind is EntityKind.CONCEPT:
        return _reconcile_concept(ordered)
    if kind is EntityKind.ASSUMPTION:
        return _reconcile_assumption(ordered)
    if kind is EntityKind.INTENT:
        return _reconcile_intent(ordered)
    if kind is EntityKind.TRADEOFF:
        return ordered[0]  # immutable once created
    if kind is EntityKind.FAILURE:
        return _reconcile_failure(ordered)
    if kind is EntityKind.ATTEMPT:
        return _reconcile_attempt(ordered)
    raise ValueError(f"Unhandled entity kind: {kind}")


def reconcile(decoded: DecodedSnapshot) -> tuple[ProjectKnowledge, int]:
    """Resolve every duplicate in ``decoded``. Returns knowledge and count resolved."""
    knowledge = decoded.knowledge
    resolved = 0
    for kind, by_id in decoded.duplicates.items():
        target = knowledge.collection(kind)
        for entity_id, copies in by_id.items():
            target[entity_id] = reconcile_entity(kind, copies)
            resolved += 1
    return knowledge, resolved


def merge(ours: ProjectKnowledge, theirs: ProjectKnowledge) -> tuple[ProjectKnowledge, int]:
    """Union two snapshots of the same project, reconciling shared ids."""
    if ours.project_id != theirs.project_id:
        raise ValueError(
            f"Cannot merge snapshots of different projects: {ours.project_id} vs {theirs.project_id}"
        )
    merged = ProjectKnowledge(
        project_id=ours.project_id,
        version=max(ours.version, theirs.version) + 1,
        updated_at=_latest([ours.updated_at, theirs.updated_at]),
    )
    duplicates: dict[EntityKind, dict[str, list]] = {}
    for kind in EntityKind:
        target = merged.collection(kind)
        mine = ours.collection(kind)
        other = theirs.collection(kind)
        for entity_id in sorted(set(mine) | set(other)):
            if entity_id in mine and entity_id in other:
                a, b = mine[entity_id], other[entity_id]
                if _canonical(encode_entity(kind, a)) == _canonical(encode_entity(kind, b)):
                    target[entity_id] = a
                else:
                    target[entity_id] = a
                    duplicates.setdefault(kind, {})[entity_id] = [a, b]
            else:
                target[entity_id] = mine.get(entity_id) or other[entity_id]
    return reconcile(DecodedSnapshot(knowledge=merged, duplicates=duplicates))
