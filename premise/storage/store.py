"""Per-project knowledge store.

Single writer, many readers. A commit validates a transaction against the
current snapshot, builds a new ProjectKnowledge and swaps it in under a
lock; readers always see the last fully committed snapshot. Persistence
happens after the swap, outside the writer lock, through a staged file and
an atomic rename.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from premise.errors import (
    ConflictError,
    CorruptSnapshotError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from premise.models import (
    AssumptionStatus,
    AttemptOutcome,
    EntityKind,
    ProjectKnowledge,
    kind_of,
    utcnow,
)
from premise.storage import snapshot

logger = logging.getLogger(__name__)

# Projects whose corruption reset has already been reported in this process
_reported_resets: set[str] = set()


@dataclass
class Transaction:
    """A set of entity upserts and deletes applied atomically."""

    upserts: list = field(default_factory=list)
    deletes: list[tuple[EntityKind, str]] = field(default_factory=list)
    expected_version: int | None = None

    def upsert(self, *entities) -> Transaction:
        self.upserts.extend(entities)
        return self

    def delete(self, kind: EntityKind, entity_id: str) -> Transaction:
        self.deletes.append((kind, entity_id))
        return self

    @property
    def empty(self) -> bool:
        return not self.upserts and not self.deletes


@dataclass
class ChangeNotice:
    project_id: str
    version: int
    changed: dict[EntityKind, list[str]]


Listener = Callable[[ChangeNotice], None]


def snapshot_path(data_dir: Path, project_id: str) -> Path:
    return data_dir / f"{project_id}.json"


class KnowledgeStore:
    """Transactional, crash-safe store of one project's entities."""

    def __init__(
        self,
        project_id: str,
        data_dir: Path | None = None,
        conflict_retries: int = 3,
    ) -> None:
        if not project_id:
            raise ValidationError("Project id must not be empty")
        self.project_id = project_id
        self._data_dir = data_dir
        self._conflict_retries = conflict_retries
        self._current = ProjectKnowledge(project_id=project_id)
        self._write_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._persisted_version = 0
        self._degraded = False
        self._listeners: list[Listener] = []

    # -- construction -----------------------------------------------------

    @classmethod
    def open(
        cls, project_id: str, data_dir: Path | None, conflict_retries: int = 3
    ) -> KnowledgeStore:
        """Create a store and restore the project's snapshot if one exists."""
        store = cls(project_id, data_dir, conflict_retries)
        if data_dir is not None:
            store.restore(project_id)
        return store

    @property
    def path(self) -> Path | None:
        if self._data_dir is None:
            return None
        return snapshot_path(self._data_dir, self.project_id)

    @property
    def version(self) -> int:
        return self._current.version

    @property
    def in_memory_only(self) -> bool:
        return self._data_dir is None or self._degraded

    # -- reads ------------------------------------------------------------

    def snapshot(self) -> ProjectKnowledge:
        """The last committed snapshot. Treat it as read-only."""
        return self._current

    def read(self, kind: EntityKind, predicate: Callable | None = None) -> list:
        """Copies of all entities of ``kind`` matching ``predicate``, by id."""
        items = self._current.collection(kind)
        return [
            copy.deepcopy(items[key])
            for key in sorted(items)
            if predicate is None or predicate(items[key])
        ]

    def get(self, kind: EntityKind, entity_id: str):
        entity = self._current.collection(kind).get(entity_id)
        if entity is None:
            raise NotFoundError(kind.value, entity_id)
        return copy.deepcopy(entity)

    # -- notifications ----------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, notice: ChangeNotice) -> None:
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception as e:
                logger.warning(f"Change listener failed for {self.project_id}: {e}")

    # -- writes -----------------------------------------------------------

    def commit(self, tx: Transaction, persist: bool = True) -> int:
        """Apply ``tx`` atomically and return the new version.

        Raises ConflictError when ``tx.expected_version`` is stale and
        ValidationError when the result would break referential integrity.
        """
        with self._write_lock:
            current = self._current
            if tx.expected_version is not None and tx.expected_version != current.version:
                raise ConflictError(
                    f"Transaction built on version {tx.expected_version}, "
                    f"store is at {current.version}",
                    expected=tx.expected_version,
                    actual=current.version,
                )
            candidate = self._apply(current, tx)
            _check_integrity(current, candidate, tx)
            candidate.version = current.version + 1
            candidate.updated_at = utcnow()
            self._current = candidate

        changed: dict[EntityKind, list[str]] = {}
        for entity in tx.upserts:
            changed.setdefault(kind_of(entity), []).append(entity.id)
        for kind, entity_id in tx.deletes:
            changed.setdefault(kind, []).append(entity_id)

        if persist:
            self._persist_quietly()
        self._notify(ChangeNotice(self.project_id, candidate.version, changed))
        return candidate.version

    def transact(self, build: Callable[[ProjectKnowledge], Transaction | None]) -> int:
        """Build a transaction from a fresh snapshot and commit it.

        ``build`` may return None (or an empty transaction) when there is
        nothing to change. Version conflicts are retried with a new
        snapshot up to the configured bound before surfacing.
        """
        attempts = self._conflict_retries + 1
        for attempt in range(attempts):
            base = self._current
            tx = build(base)
            if tx is None or tx.empty:
                return base.version
            tx.expected_version = base.version
            try:
                return self.commit(tx)
            except ConflictError:
                if attempt == attempts - 1:
                    raise
                logger.debug(f"Version conflict on {self.project_id}, retrying ({attempt + 1})")
        raise AssertionError("unreachable")

    @staticmethod
    def _apply(current: ProjectKnowledge, tx: Transaction) -> ProjectKnowledge:
        candidate = ProjectKnowledge(
            project_id=current.project_id,
            version=current.version,
            updated_at=current.updated_at,
        )
        for kind in EntityKind:
            candidate.collection(kind).update(current.collection(kind))
        for kind, entity_id in tx.deletes:
            target = candidate.collection(kind)
            if entity_id not in target:
                raise NotFoundError(kind.value, entity_id)
            del target[entity_id]
        for entity in tx.upserts:
            candidate.collection(kind_of(entity))[entity.id] = copy.deepcopy(entity)
        return candidate

    # -- persistence ------------------------------------------------------

    def persist(self) -> None:
        """Write the current snapshot. Raises StorageError on I/O failure."""
        if self._data_dir is None:
            return
        with self._persist_lock:
            current = self._current
            if current.version <= self._persisted_version and not self._degraded:
                return
            snapshot.write_atomic(self.path, snapshot.dumps(current))
            self._persisted_version = current.version
            if self._degraded:
                logger.info(f"Persistence recovered for {self.project_id} at version {current.version}")
            self._degraded = False

    def _persist_quietly(self) -> None:
        try:
            self.persist()
        except StorageError as e:
            if not self._degraded:
                logger.warning(
                    f"Persistence failed for {self.project_id}; continuing in memory "
                    f"and retrying on next commit: {e}"
                )
            self._degraded = True

    def restore(self, project_id: str | None = None) -> ProjectKnowledge:
        """Load the persisted snapshot for ``project_id`` (default: this store's).

        A snapshot that fails its checksum or cannot be decoded is moved
        aside and the project starts from an empty knowledge base. A
        snapshot holding duplicate entities must be reconciled first.
        """
        project_id = project_id or self.project_id
        if self._data_dir is None:
            raise StorageError("Store has no data directory to restore from")
        path = snapshot_path(self._data_dir, project_id)
        if not path.exists():
            with self._write_lock:
                self.project_id = project_id
                self._current = ProjectKnowledge(project_id=project_id)
            return self._current

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read snapshot {path}: {e}", {"path": str(path)}) from e

        try:
            decoded = snapshot.loads(text, verify=True)
        except CorruptSnapshotError as e:
            self._reset_after_corruption(project_id, path, e)
            return self._current

        if decoded.has_duplicates:
            raise ValidationError(
                f"Snapshot {path} contains duplicate entities; run reconciliation first",
                {"duplicates": sum(len(v) for v in decoded.duplicates.values())},
            )
        if decoded.knowledge.project_id != project_id:
            raise ValidationError(
                f"Snapshot {path} belongs to project {decoded.knowledge.project_id}"
            )

        with self._write_lock:
            self.project_id = project_id
            self._current = decoded.knowledge
            self._persisted_version = decoded.knowledge.version
        return self._current

    def _reset_after_corruption(self, project_id: str, path: Path, error: Exception) -> None:
        aside = path.with_name(f"{path.name}.corrupt-{utcnow().strftime('%Y%m%dT%H%M%S')}")
        try:
            path.replace(aside)
        except OSError as e:
            logger.warning(f"Could not move corrupt snapshot aside: {e}")
            aside = path
        if project_id not in _reported_resets:
            _reported_resets.add(project_id)
            logger.error(
                f"Knowledge snapshot for {project_id} is corrupt ({error}); "
                f"starting from an empty knowledge base. Corrupt file kept at {aside}"
            )
        with self._write_lock:
            self.project_id = project_id
            self._current = ProjectKnowledge(project_id=project_id)
            self._persisted_version = 0

    def reconcile_file(self, path: Path) -> int:
        """Reconcile a merge-tool-edited snapshot and load it. Returns duplicates resolved."""
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read snapshot {path}: {e}", {"path": str(path)}) from e
        decoded = snapshot.loads(text, verify=False)
        knowledge, resolved = snapshot.reconcile(decoded)
        return self._adopt(knowledge, resolved)

    def merge_from(self, other: ProjectKnowledge) -> int:
        """Merge another snapshot of this project into the store."""
        knowledge, resolved = snapshot.merge(self._current, other)
        return self._adopt(knowledge, resolved)

    def _adopt(self, knowledge: ProjectKnowledge, resolved: int) -> int:
        if knowledge.project_id != self.project_id:
            raise ValidationError(
                f"Snapshot belongs to project {knowledge.project_id}, not {self.project_id}"
            )
        _check_integrity(ProjectKnowledge(project_id=self.project_id), knowledge, None)
        with self._write_lock:
            knowledge.version = max(knowledge.version, self._current.version) + 1
            knowledge.updated_at = utcnow()
            self._current = knowledge
        self._persist_quietly()
        self._notify(ChangeNotice(self.project_id, knowledge.version, {}))
        return resolved

    # -- compaction -------------------------------------------------------

    def compact(self, retention: timedelta, now: datetime | None = None) -> dict[str, int]:
        """Remove superseded/archived entities older than ``retention``.

        Entities still referenced by a live (non-archived) entity are kept.
        Tradeoffs and retry attempts go with the intent or failure they
        belong to.
        """
        now = now or utcnow()
        cutoff = now - retention
        removed: dict[str, int] = {}

        def build(base: ProjectKnowledge) -> Transaction:
            removed.clear()
            doomed = _compaction_candidates(base, cutoff)
            doomed = _protect_referenced(base, doomed)
            tx = Transaction()
            for kind, ids in doomed.items():
                for entity_id in sorted(ids):
                    tx.delete(kind, entity_id)
                if ids:
                    removed[kind.value] = len(ids)
            return tx

        self.transact(build)
        if removed:
            logger.info(f"Compacted {self.project_id}: {removed}")
        return dict(removed)


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


def _check_integrity(
    before: ProjectKnowledge, after: ProjectKnowledge, tx: Transaction | None
) -> None:
    """Raise ValidationError if ``after`` violates a store invariant.

    Checks only entities touched by ``tx`` plus references into deleted
    entities; with ``tx`` None the whole snapshot is checked.
    """
    if tx is None:
        touched = [e for kind in EntityKind for e in after.collection(kind).values()]
        deleted: list[tuple[EntityKind, str]] = []
    else:
        touched = [after.collection(kind_of(e))[e.id] for e in tx.upserts]
        deleted = tx.deletes

    for entity in touched:
        kind = kind_of(entity)
        if not entity.id:
            raise ValidationError(f"{kind.value} without an id")
        if kind in (EntityKind.ASSUMPTION, EntityKind.INTENT):
            if not entity.location.is_valid():
                raise ValidationError(
                    f"{kind.value} {entity.id} has an invalid code location: {entity.location.key!r}"
                )
            missing = [c for c in entity.concept_ids if c not in after.concepts]
            if missing:
                raise ValidationError(
                    f"{kind.value} {entity.id} references unknown concepts",
                    {"missing": missing},
                )
        if kind is EntityKind.ASSUMPTION:
            if entity.status is AssumptionStatus.FAILED:
                if not entity.violations:
                    raise ValidationError(
                        f"Assumption {entity.id} is failed without a violation history"
                    )
                if not any(v.failure_id in after.failures for v in entity.violations):
                    raise ValidationError(
                        f"Assumption {entity.id} is failed but no violation references a failure"
                    )
        elif kind is EntityKind.INTENT:
            if entity.superseded_by and entity.superseded_by not in after.intents:
                raise ValidationError(f"Intent {entity.id} superseded by unknown intent")
        elif kind is EntityKind.TRADEOFF:
            if entity.intent_id not in after.intents:
                raise ValidationError(f"Tradeoff {entity.id} references unknown intent")
            previous = before.tradeoffs.get(entity.id)
            if previous is not None and snapshot.encode_entity(kind, previous) != snapshot.encode_entity(kind, entity):
                raise ValidationError(f"Tradeoff {entity.id} is immutable")
        elif kind is EntityKind.FAILURE:
            missing = [r.assumption_id for r in entity.violated if r.assumption_id not in after.assumptions]
            if missing:
                raise ValidationError(
                    f"Failure {entity.id} references unknown assumptions", {"missing": missing}
                )
            if entity.recurrence_count < 1:
                raise ValidationError(f"Failure {entity.id} has a recurrence count below 1")
        elif kind is EntityKind.ATTEMPT:
            if entity.failure_id not in after.failures:
                raise ValidationError(f"Attempt {entity.id} references unknown failure")
            previous = before.attempts.get(entity.id)
            if (
                previous is not None
                and previous.outcome is AttemptOutcome.SUCCEEDED
                and entity.outcome is not AttemptOutcome.SUCCEEDED
            ):
                raise ValidationError(f"Attempt {entity.id} already succeeded")
        elif kind is EntityKind.CONCEPT:
            dangling = [other for other in entity.edges if other not in after.concepts]
            if dangling:
                raise ValidationError(
                    f"Concept {entity.id} has edges to unknown concepts", {"missing": dangling}
                )

    if deleted:
        gone = {(kind, entity_id) for kind, entity_id in deleted}
        for kind, entity_id in gone:
            if kind is EntityKind.CONCEPT:
                raise ValidationError(f"Concepts are never deleted (tried {entity_id})")
        refs = _references(after)
        for source, target in refs:
            if target in gone:
                raise ValidationError(
                    f"Cannot delete {target[0].value} {target[1]}: still referenced by "
                    f"{source[0].value} {source[1]}"
                )


def _references(k: ProjectKnowledge) -> Iterable[tuple[tuple[EntityKind, str], tuple[EntityKind, str]]]:
    """Every (referrer, referent) pair in ``k``."""
    for a in k.assumptions.values():
        src = (EntityKind.ASSUMPTION, a.id)
        for cid in a.concept_ids:
            yield src, (EntityKind.CONCEPT, cid)
        for v in a.violations:
            yield src, (EntityKind.FAILURE, v.failure_id)
    for i in k.intents.values():
        src = (EntityKind.INTENT, i.id)
        for cid in i.concept_ids:
            yield src, (EntityKind.CONCEPT, cid)
        if i.superseded_by:
            yield src, (EntityKind.INTENT, i.superseded_by)
    for t in k.tradeoffs.values():
        yield (EntityKind.TRADEOFF, t.id), (EntityKind.INTENT, t.intent_id)
    for f in k.failures.values():
        for r in f.violated:
            yield (EntityKind.FAILURE, f.id), (EntityKind.ASSUMPTION, r.assumption_id)
    for at in k.attempts.values():
        yield (EntityKind.ATTEMPT, at.id), (EntityKind.FAILURE, at.failure_id)


def _compaction_candidates(k: ProjectKnowledge, cutoff: datetime) -> dict[EntityKind, set[str]]:
    doomed: dict[EntityKind, set[str]] = {kind: set() for kind in EntityKind}
    for i in k.intents.values():
        if i.superseded_by and i.created_at < cutoff:
            doomed[EntityKind.INTENT].add(i.id)
    for a in k.assumptions.values():
        if a.archived and a.updated_at < cutoff:
            doomed[EntityKind.ASSUMPTION].add(a.id)
    for f in k.failures.values():
        if f.resolved and f.last_seen_at < cutoff:
            doomed[EntityKind.FAILURE].add(f.id)
    return doomed


def _protect_referenced(
    k: ProjectKnowledge, doomed: dict[EntityKind, set[str]]
) -> dict[EntityKind, set[str]]:
    """Shrink ``doomed`` to a closed set that leaves no dangling reference.

    Tradeoffs and attempts follow their parent. Any referrer that stays
    pins what it references.
    """
    refs = list(_references(k))
    while True:
        doomed[EntityKind.TRADEOFF] = {
            t.id for t in k.tradeoffs.values() if t.intent_id in doomed[EntityKind.INTENT]
        }
        doomed[EntityKind.ATTEMPT] = {
            at.id for at in k.attempts.values() if at.failure_id in doomed[EntityKind.FAILURE]
        }
        pinned = [
            (dst_kind, dst_id)
            for (src_kind, src_id), (dst_kind, dst_id) in refs
            if dst_id in doomed[dst_kind] and src_id not in doomed[src_kind]
        ]
        if not pinned:
            return doomed
        for dst_kind, dst_id in pinned:
            doomed[dst_kind].discard(dst_id)
