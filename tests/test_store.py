"""Tests for premise.storage.store: transactions, persistence, compaction."""

from __future__ import annotations

import copy
import json
import logging
from datetime import timedelta

import pytest

from premise.errors import ConflictError, NotFoundError, StorageError, ValidationError
from premise.models import (
    Assumption,
    AssumptionKind,
    AssumptionStatus,
    AttemptOutcome,
    ChangeKind,
    CodeChangeEvent,
    EntityKind,
    Intent,
)
from premise.storage import snapshot, store as store_module
from premise.storage.store import KnowledgeStore, Transaction

from conftest import NOW, loc


def _assumption(aid: str = "a-1", concept_ids=None, **kwargs) -> Assumption:
    return Assumption(
        id=aid,
        description="Cache is warm before first request",
        kind=AssumptionKind.PRECONDITION,
        location=loc("src/cache.ts:5"),
        concept_ids=concept_ids or [],
        created_at=NOW,
        updated_at=NOW,
        **kwargs,
    )


class TestCommit:
    def test_version_increments(self, store):
        assert store.version == 0
        assert store.commit(Transaction().upsert(_assumption("a-1"))) == 1
        assert store.commit(Transaction().upsert(_assumption("a-2"))) == 2
        assert store.get(EntityKind.ASSUMPTION, "a-2").id == "a-2"

    def test_stale_version_conflicts(self, store):
        store.commit(Transaction().upsert(_assumption("a-1")))
        tx = Transaction(expected_version=0).upsert(_assumption("a-2"))
        with pytest.raises(ConflictError) as exc:
            store.commit(tx)
        assert exc.value.expected == 0
        assert exc.value.actual == 1
        assert "a-2" not in store.snapshot().assumptions

    def test_dangling_concept_reference_rejected(self, store):
        with pytest.raises(ValidationError, match="unknown concepts"):
            store.commit(Transaction().upsert(_assumption(concept_ids=["c-missing"])))
        assert store.version == 0
        assert store.snapshot().assumptions == {}

    def test_invalid_location_rejected(self, store):
        bad = _assumption()
        bad.location = loc("")
        with pytest.raises(ValidationError):
            store.commit(Transaction().upsert(bad))

    def test_failed_without_history_rejected(self, store):
        with pytest.raises(ValidationError, match="violation history"):
            store.commit(Transaction().upsert(_assumption(status=AssumptionStatus.FAILED)))

    def test_transaction_is_all_or_nothing(self, store):
        tx = Transaction().upsert(_assumption("a-ok"), _assumption("a-bad", concept_ids=["c-missing"]))
        with pytest.raises(ValidationError):
            store.commit(tx)
        assert "a-ok" not in store.snapshot().assumptions

    def test_delete_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.commit(Transaction().delete(EntityKind.ASSUMPTION, "a-nope"))

    def test_concepts_are_never_deleted(self, populated_store):
        concept_id = next(iter(populated_store.snapshot().concepts))
        with pytest.raises(ValidationError, match="never deleted"):
            populated_store.commit(Transaction().delete(EntityKind.CONCEPT, concept_id))

    def test_referenced_entity_cannot_be_deleted(self, populated_store):
        failure_id = next(iter(populated_store.snapshot().failures))
        with pytest.raises(ValidationError, match="still referenced"):
            populated_store.commit(Transaction().delete(EntityKind.FAILURE, failure_id))

    def test_succeeded_attempt_cannot_revert(self, populated_store):
        attempt = next(iter(populated_store.snapshot().attempts.values()))
        done = copy.deepcopy(attempt)
        done.outcome = AttemptOutcome.SUCCEEDED
        populated_store.commit(Transaction().upsert(done))
        reverted = copy.deepcopy(done)
        reverted.outcome = AttemptOutcome.FAILED
        with pytest.raises(ValidationError, match="already succeeded"):
            populated_store.commit(Transaction().upsert(reverted))

    def test_readers_get_copies(self, store):
        store.commit(Transaction().upsert(_assumption()))
        copy_ = store.get(EntityKind.ASSUMPTION, "a-1")
        copy_.description = "changed"
        assert store.get(EntityKind.ASSUMPTION, "a-1").description != "changed"

    def test_read_filters_and_sorts(self, store):
        store.commit(Transaction().upsert(_assumption("a-2"), _assumption("a-1"), _assumption("a-3")))
        found = store.read(EntityKind.ASSUMPTION, lambda a: a.id != "a-3")
        assert [a.id for a in found] == ["a-1", "a-2"]


class TestTransact:
    def test_retries_conflicts_with_fresh_snapshot(self, store):
        calls = []

        def build(base):
            calls.append(base.version)
            if len(calls) == 1:
                # a concurrent writer commits between read and commit
                store.commit(Transaction().upsert(_assumption("a-other")))
            return Transaction().upsert(_assumption(f"a-{len(calls)}"))

        version = store.transact(build)
        assert calls == [0, 1]
        assert version == 2
        assert store.version == 2

    def test_gives_up_after_bound(self, data_dir):
        store = KnowledgeStore("webapp", data_dir, conflict_retries=2)
        counter = iter(range(100))

        def build(base):
            store.commit(Transaction().upsert(_assumption(f"a-race-{next(counter)}")))
            return Transaction().upsert(_assumption("a-mine"))

        with pytest.raises(ConflictError):
            store.transact(build)
        assert "a-mine" not in store.snapshot().assumptions
        assert store.version == 3

    def test_version_has_no_gaps(self, store):
        versions = [store.transact(lambda base, i=i: Transaction().upsert(_assumption(f"a-{i}"))) for i in range(5)]
        assert versions == [1, 2, 3, 4, 5]

    def test_empty_build_is_a_no_op(self, store):
        assert store.transact(lambda base: None) == 0
        assert store.transact(lambda base: Transaction()) == 0
        assert store.version == 0


class TestNotifications:
    def test_listener_receives_changes(self, store):
        notices = []
        unsubscribe = store.subscribe(notices.append)
        store.commit(Transaction().upsert(_assumption()))
        assert notices[0].version == 1
        assert notices[0].changed == {EntityKind.ASSUMPTION: ["a-1"]}
        unsubscribe()
        store.commit(Transaction().upsert(_assumption("a-2")))
        assert len(notices) == 1

    def test_failing_listener_does_not_break_commit(self, store):
        def broken(notice):
            raise RuntimeError("boom")

        store.subscribe(broken)
        assert store.commit(Transaction().upsert(_assumption())) == 1


class TestPersistence:
    def test_round_trip(self, populated_store, data_dir):
        before = populated_store.snapshot()
        restored = KnowledgeStore.open("webapp", data_dir).snapshot()
        assert restored.version == before.version
        for kind in EntityKind:
            assert sorted(restored.collection(kind)) == sorted(before.collection(kind))
            for entity_id, entity in before.collection(kind).items():
                assert snapshot.encode_entity(kind, restored.collection(kind)[entity_id]) == (
                    snapshot.encode_entity(kind, entity)
                )

    def test_snapshot_file_is_human_diffable(self, populated_store):
        text = populated_store.path.read_text()
        assert text.startswith("{\n")
        body = json.loads(text)
        assert body["project_id"] == "webapp"
        assert body["version"] == populated_store.version

    def test_missing_snapshot_starts_empty(self, data_dir):
        store = KnowledgeStore.open("fresh", data_dir)
        assert store.version == 0
        assert store.snapshot().counts()["assumption"] == 0

    def test_in_memory_store(self):
        store = KnowledgeStore("scratch")
        store.commit(Transaction().upsert(_assumption()))
        assert store.in_memory_only
        assert store.path is None

    def test_io_failure_degrades_then_recovers(self, store, monkeypatch):
        def fail(path, text):
            raise StorageError("disk full")

        original = snapshot.write_atomic
        monkeypatch.setattr(snapshot, "write_atomic", fail)
        assert store.commit(Transaction().upsert(_assumption("a-1"))) == 1
        assert store.in_memory_only
        assert "a-1" in store.snapshot().assumptions

        monkeypatch.setattr(snapshot, "write_atomic", original)
        store.commit(Transaction().upsert(_assumption("a-2")))
        assert not store.in_memory_only
        body = json.loads(store.path.read_text())
        assert {a["id"] for a in body["assumptions"]} == {"a-1", "a-2"}

    def test_corrupt_snapshot_resets_and_logs_once(self, populated_store, data_dir, monkeypatch, caplog):
        monkeypatch.setattr(store_module, "_reported_resets", set())
        path = populated_store.path
        path.write_text(path.read_text().replace("verifyToken", "verifyTokens"))

        with caplog.at_level(logging.ERROR, logger="premise.storage.store"):
            restored = KnowledgeStore.open("webapp", data_dir)
            assert restored.version == 0
            assert restored.snapshot().counts() == {k.value: 0 for k in EntityKind}
            assert list(data_dir.glob("webapp.json.corrupt-*"))
            assert not path.exists()

            path.write_text("{ truncated")
            KnowledgeStore.open("webapp", data_dir)

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "corrupt" in errors[0].getMessage()

    def test_duplicates_require_reconciliation(self, populated_store, data_dir):
        body = json.loads(populated_store.path.read_text())
        body.pop("checksum")
        body["assumptions"].append(dict(body["assumptions"][0], status="valid", violations=[]))
        body["checksum"] = snapshot.compute_checksum(body)
        populated_store.path.write_text(json.dumps(body))

        with pytest.raises(ValidationError, match="reconciliation"):
            KnowledgeStore.open("webapp", data_dir)

    def test_reconcile_file(self, populated_store, tmp_path):
        body = json.loads(populated_store.path.read_text())
        body["assumptions"].append(dict(body["assumptions"][0], status="valid", violations=[]))
        merged_path = tmp_path / "merged.json"
        merged_path.write_text(json.dumps(body))

        before = populated_store.version
        resolved = populated_store.reconcile_file(merged_path)
        assert resolved == 1
        assert populated_store.version == before + 1
        a = next(iter(populated_store.snapshot().assumptions.values()))
        assert a.status is AssumptionStatus.FAILED

    def test_merge_from_other_project_rejected(self, populated_store):
        other = KnowledgeStore("mobile")
        with pytest.raises(ValueError):
            populated_store.merge_from(other.snapshot())


class TestCompact:
    def test_removes_old_superseded_intents_with_tradeoffs(self, populated_store, lifecycle):
        later = NOW + timedelta(days=40)
        lifecycle.capture_intent(
            CodeChangeEvent(loc("src/auth.ts:10-20"), ChangeKind.MODIFIED, observed_at=later),
            "Reject tokens signed with retired keys",
            now=later,
        )
        removed = populated_store.compact(timedelta(days=30), now=later)
        assert removed == {"intent": 1, "tradeoff": 1}
        remaining = list(populated_store.snapshot().intents.values())
        assert [i.description for i in remaining] == ["Reject tokens signed with retired keys"]
        assert populated_store.snapshot().tradeoffs == {}

    def test_keeps_recent_records(self, populated_store, lifecycle):
        lifecycle.capture_intent(
            CodeChangeEvent(loc("src/auth.ts:10-20"), ChangeKind.MODIFIED, observed_at=NOW),
            "Reject tokens signed with retired keys",
            now=NOW,
        )
        assert populated_store.compact(timedelta(days=30), now=NOW + timedelta(days=1)) == {}

    def test_keeps_failure_referenced_by_live_assumption(self, populated_store, classifier):
        failure_id = next(iter(populated_store.snapshot().failures))
        classifier.resolve(failure_id, at=NOW)
        removed = populated_store.compact(timedelta(days=30), now=NOW + timedelta(days=60))
        assert "failure" not in removed
        assert failure_id in populated_store.snapshot().failures
        assert populated_store.snapshot().attempts

    def test_removes_archived_assumption_and_its_failure(self, populated_store, classifier, lifecycle):
        failure_id = next(iter(populated_store.snapshot().failures))
        classifier.resolve(failure_id, at=NOW)
        lifecycle.archive_location(loc("src/auth.ts"), now=NOW)
        removed = populated_store.compact(timedelta(days=30), now=NOW + timedelta(days=60))
        assert removed == {"assumption": 1, "failure": 1, "attempt": 1}
        snap = populated_store.snapshot()
        assert snap.failures == {} and snap.attempts == {} and snap.assumptions == {}
        assert snap.concepts
