"""Tests for premise.core: event ordering, cancellation and provider timeouts."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from premise.config import Config
from premise.core import ProjectCore, Workspace
from premise.errors import ProviderError, ValidationError
from premise.models import (
    AssumptionDraft,
    AssumptionKind,
    AssumptionStatus,
    ChangeKind,
    CodeChangeEvent,
    ConceptCategory,
    ExtractionResult,
    FailureSignal,
    ProviderResponse,
    StructuralSummary,
)
from premise.storage.store import KnowledgeStore

from conftest import NOW, detect, loc


def _added(where: str, *detections, intent: str | None = None, drafts=()) -> CodeChangeEvent:
    return CodeChangeEvent(
        loc(where),
        ChangeKind.ADDED,
        StructuralSummary(detections=list(detections), assumptions=list(drafts), intent=intent),
        observed_at=NOW,
    )


def _slow(seconds: float, value=None):
    def call(*args, **kwargs):
        time.sleep(seconds)
        return value
    return call


class TestApplyChange:
    def test_added_change_records_everything(self, core):
        result = core.apply_change(_added(
            "src/auth.ts:10-20",
            detect(ConceptCategory.AUTHENTICATION, "src/auth.ts:10-20"),
            intent="Verify bearer tokens",
            drafts=[AssumptionDraft("Header uses the Bearer scheme", AssumptionKind.PRECONDITION)],
        ))
        assert len(result.concepts) == 1
        assumption = core.lifecycle.get(result.assumptions[0])
        assert assumption.source == "detected"
        assert assumption.concept_ids == result.concepts
        assert core.lifecycle.intents_at(loc("src/auth.ts:12"))[0].id == result.intent_id

    def test_modified_change_flags_valid_assumptions(self, core):
        first = core.apply_change(_added(
            "src/auth.ts:10-20",
            drafts=[AssumptionDraft("Header uses the Bearer scheme", AssumptionKind.PRECONDITION)],
        ))
        core.lifecycle.validate(first.assumptions[0], "valid", now=NOW)
        result = core.apply_change(CodeChangeEvent(loc("src/auth.ts:12"), ChangeKind.MODIFIED, observed_at=NOW))
        assert result.suspected == first.assumptions
        assert core.lifecycle.get(first.assumptions[0]).status is AssumptionStatus.VALID

    def test_removed_change_stales_and_archives(self, core):
        added = core.apply_change(_added(
            "src/cache.ts:1-9",
            detect(ConceptCategory.CACHING, "src/cache.ts:1-9"),
            drafts=[AssumptionDraft("Cache is warm", AssumptionKind.PRECONDITION)],
        ))
        result = core.apply_change(CodeChangeEvent(loc("src/cache.ts"), ChangeKind.REMOVED, observed_at=NOW))
        assert result.stale == added.concepts
        assert result.archived == added.assumptions

    def test_extraction_when_only_code_is_given(self, config, store):
        provider = MagicMock()
        provider.extract.return_value = ExtractionResult(
            detections=[detect(ConceptCategory.VALIDATION, "src/form.ts:3-9")],
            intent="Validate the signup form",
        )
        core = ProjectCore(config, store, provider)
        event = CodeChangeEvent(
            loc("src/form.ts:1-20"), ChangeKind.ADDED, StructuralSummary(code="function validate() {}"),
            observed_at=NOW,
        )
        result = core.apply_change(event)
        provider.extract.assert_called_once_with("function validate() {}", loc("src/form.ts:1-20"))
        assert len(result.concepts) == 1
        assert result.intent_id is not None

    def test_each_event_counts_once_toward_edges(self, core):
        def pair():
            return _added(
                "src/auth.ts:1-40",
                detect(ConceptCategory.AUTHENTICATION, "src/auth.ts:10"),
                detect(ConceptCategory.CACHING, "src/auth.ts:30"),
            )

        first = pair()
        a, b = core.apply_change(first).concepts
        core.apply_change(first)
        assert core.graph.neighbors(a, now=NOW)[b] == 1.0
        core.apply_change(pair())
        assert core.graph.neighbors(a, now=NOW)[b] == 2.0

    def test_extraction_failure_is_partial(self, config, store):
        provider = MagicMock()
        provider.extract.side_effect = ProviderError("down")
        core = ProjectCore(config, store, provider)
        event = CodeChangeEvent(loc("src/form.ts:1-20"), ChangeKind.ADDED, StructuralSummary(code="x"), observed_at=NOW)
        assert core.apply_change(event).partial


class TestEventQueue:
    def test_changes_apply_in_order(self, core):
        async def scenario():
            await core.submit_change(_added("src/cache.ts:1-9", detect(ConceptCategory.CACHING, "src/cache.ts:1-9")))
            await core.submit_change(CodeChangeEvent(loc("src/cache.ts"), ChangeKind.REMOVED, observed_at=NOW))
            await core.drain()
            concepts = core.graph.concepts(include_stale=True)
            await core.close()
            return concepts

        concepts = asyncio.run(scenario())
        assert len(concepts) == 1
        assert concepts[0].stale

    def test_failure_report_waits_for_pending_changes(self, core):
        async def scenario():
            await core.submit_change(_added(
                "src/auth.ts:10-20", detect(ConceptCategory.AUTHENTICATION, "src/auth.ts:10-20"),
            ))
            record = await core.report_failure(FailureSignal("TypeError", "boom", [loc("src/auth.ts:12")]))
            await core.close()
            return record

        record = asyncio.run(scenario())
        assert len(record.concept_ids) == 1

    def test_invalid_event_rejected(self, core):
        async def scenario():
            await core.submit_change(CodeChangeEvent(loc(""), ChangeKind.ADDED))

        with pytest.raises(ValidationError):
            asyncio.run(scenario())

    def test_worker_survives_unexpected_error(self, config, store):
        provider = MagicMock()
        provider.extract.side_effect = TypeError("'NoneType' object is not iterable")
        core = ProjectCore(config, store, provider)

        async def scenario():
            await core.submit_change(CodeChangeEvent(
                loc("src/form.ts:1-20"), ChangeKind.ADDED, StructuralSummary(code="x"), observed_at=NOW,
            ))
            await core.submit_change(_added("src/cache.ts:1-9", detect(ConceptCategory.CACHING, "src/cache.ts:1-9")))
            await asyncio.wait_for(core.drain(), timeout=3)
            concepts = core.graph.concepts()
            await core.close()
            return concepts

        concepts = asyncio.run(scenario())
        assert [c.anchor.key for c in concepts] == ["src/cache.ts:1-9"]

    def test_close_flushes_snapshot(self, core, data_dir):
        async def scenario():
            await core.submit_change(_added("src/a.ts:1", detect(ConceptCategory.OTHER, "src/a.ts:1")))
            await core.close()

        asyncio.run(scenario())
        assert KnowledgeStore.open("webapp", data_dir).snapshot().concepts


class TestCompose:
    def test_newer_request_cancels_older(self, populated_store, config):
        core = ProjectCore(config, populated_store)

        async def scenario():
            return await asyncio.gather(
                core.compose(loc("src/auth.ts:10-20"), 500),
                core.compose(loc("src/auth.ts:10-20"), 500),
                return_exceptions=True,
            )

        first, second = asyncio.run(scenario())
        assert isinstance(first, asyncio.CancelledError)
        assert second.failed_assumptions

    def test_different_locations_do_not_interfere(self, populated_store, config):
        core = ProjectCore(config, populated_store)

        async def scenario():
            return await asyncio.gather(
                core.compose(loc("src/auth.ts:10-20"), 500),
                core.compose(loc("src/auth.ts:40-55"), 500),
            )

        a, b = asyncio.run(scenario())
        assert a.target == "src/auth.ts:10-20"
        assert b.target == "src/auth.ts:40-55"


class TestComplete:
    def test_without_provider(self, core):
        with pytest.raises(ProviderError):
            asyncio.run(core.complete("Fix it", loc("src/a.ts:1"), 100))

    def test_ingests_response(self, config, store):
        provider = MagicMock()
        provider.complete.return_value = ProviderResponse("const x = 1", "Adds x.")
        provider.extract.return_value = ExtractionResult(intent="Introduce x")
        core = ProjectCore(config, store, provider)

        result = asyncio.run(core.complete("Add x", loc("src/x.ts:1-3"), 200))
        assert not result.skipped
        assert result.response.generated_code == "const x = 1"
        assert result.ingest.intent_id is not None
        prompt, context = provider.complete.call_args[0]
        assert prompt == "Add x"

    def test_timeout_skips_ingestion(self, tmp_path):
        config = Config(project_id="webapp", data_dir=tmp_path / ".premise", provider_timeout=0.05)
        provider = MagicMock()
        provider.complete.side_effect = _slow(0.5, ProviderResponse("late code"))
        core = ProjectCore.open(config, provider=provider)

        result = asyncio.run(core.complete("Add x", loc("src/x.ts:1-3"), 200))
        assert result.skipped
        assert result.response is None
        provider.extract.assert_not_called()
        assert core.store.version == 0

    def test_explanation_timeout_returns_local_report(self, populated_store, tmp_path):
        config = Config(project_id="webapp", data_dir=tmp_path / ".premise", provider_timeout=0.05)
        provider = MagicMock()
        provider.explain_failure.side_effect = _slow(0.5, "too late")
        core = ProjectCore(config, populated_store, provider)
        failure_id = next(iter(populated_store.snapshot().failures))

        report = asyncio.run(core.explain_failure(failure_id))
        assert report.partial
        assert report.narrative == ""
        assert report.violated


class TestQueries:
    def test_stats(self, populated_store, config):
        stats = ProjectCore(config, populated_store).stats()
        assert stats["project"] == "webapp"
        assert stats["counts"]["failure"] == 1
        assert stats["open_failures"] == 1
        assert stats["provider"] is False

    def test_get_assumptions(self, populated_store, config):
        found = ProjectCore(config, populated_store).get_assumptions(loc("src/auth.ts"))
        assert [a.description for a in found] == ["Token header is present on every request"]

    def test_record_attempt_and_check(self, populated_store, config):
        core = ProjectCore(config, populated_store)
        attempt = next(iter(populated_store.snapshot().attempts.values()))
        assert core.check_before_attempt(attempt.failure_id, attempt.fingerprint).blocked
        core.record_attempt(attempt.failure_id, attempt.fingerprint, "succeeded")
        assert not core.check_before_attempt(attempt.failure_id, attempt.fingerprint).blocked

    def test_confirm_success(self, populated_store, config):
        core = ProjectCore(config, populated_store)
        assert len(core.confirm_success(loc("src/auth.ts"))) == 1
        assert core.stats()["open_failures"] == 0


class TestWorkspace:
    def test_projects_are_independent(self, config):
        workspace = Workspace(config)

        async def scenario():
            web = workspace.project("web")
            api = workspace.project("api")
            await web.submit_change(_added("src/a.ts:1", detect(ConceptCategory.OTHER, "src/a.ts:1")))
            await web.drain()
            counts = (web.stats()["counts"]["concept"], api.stats()["counts"]["concept"])
            same = workspace.project("web") is web
            await workspace.close()
            return counts, same

        (web_concepts, api_concepts), same = asyncio.run(scenario())
        assert (web_concepts, api_concepts) == (1, 0)
        assert same
        assert workspace.projects() == []
