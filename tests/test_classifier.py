"""Tests for premise.failures.classifier."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from premise.errors import NotFoundError, ProviderError, ValidationError
from premise.failures.classifier import (
    FailureReport,
    advance,
    classify_signal,
    failure_fingerprint,
    normalize_error_type,
)
from premise.models import (
    AssumptionKind,
    AttemptOutcome,
    ChangeKind,
    CodeChangeEvent,
    FailureRecord,
    FailureSignal,
    FailureState,
    FailureType,
    ProjectKnowledge,
)

from conftest import NOW, loc


def _signal(error_type="TypeError", message="boom", where="src/auth.ts:12", at=NOW) -> FailureSignal:
    return FailureSignal(error_type=error_type, message=message, locations=[loc(where)], observed_at=at)


WINDOW = timedelta(hours=24)


class TestClassify:
    @pytest.mark.parametrize(
        "error_type, message, expected",
        [
            ("TypeError", "Cannot read property 'split' of undefined", FailureType.RUNTIME),
            ("builtins.AttributeError", "'NoneType' object has no attribute 'id'", FailureType.RUNTIME),
            ("ConnectionError", "connection refused by upstream", FailureType.INTEGRATION),
            ("Error", "Request timed out after 30s", FailureType.INTEGRATION),
            ("AssertionError", "expected 3 but got 4", FailureType.LOGIC),
        ],
    )
    def test_error_shapes(self, error_type, message, expected):
        failure_type, _ = classify_signal(_signal(error_type, message), ProjectKnowledge("webapp"), WINDOW)
        assert failure_type is expected

    def test_tie_is_unknown(self):
        signal = _signal("Error", "connection refused; expected 1 but got 2")
        failure_type, scores = classify_signal(signal, ProjectKnowledge("webapp"), WINDOW)
        assert failure_type is FailureType.UNKNOWN
        assert scores["integration"] == scores["logic"] == 1.0

    def test_no_signal_is_unknown(self):
        failure_type, scores = classify_signal(_signal("Error", "something odd"), ProjectKnowledge("webapp"), WINDOW)
        assert failure_type is FailureType.UNKNOWN
        assert set(scores.values()) == {0.0}

    def test_recent_change_points_to_logic(self, lifecycle, store):
        lifecycle.capture_intent(
            CodeChangeEvent(loc("src/auth.ts:10-20"), ChangeKind.MODIFIED, observed_at=NOW),
            "Return early for service tokens",
            now=NOW - timedelta(hours=1),
        )
        failure_type, scores = classify_signal(_signal("Error", "bad output"), store.snapshot(), WINDOW)
        assert failure_type is FailureType.LOGIC
        assert scores["logic"] == 1.0

    def test_old_change_does_not_count(self, lifecycle, store):
        lifecycle.capture_intent(
            CodeChangeEvent(loc("src/auth.ts:10-20"), ChangeKind.MODIFIED),
            "Return early for service tokens",
            now=NOW - timedelta(days=3),
        )
        failure_type, _ = classify_signal(_signal("Error", "bad output"), store.snapshot(), WINDOW)
        assert failure_type is FailureType.UNKNOWN

    def test_normalize_error_type(self):
        assert normalize_error_type(" requests.exceptions.ConnectionError ") == "connectionerror"


class TestFingerprint:
    def test_independent_of_order(self):
        a = failure_fingerprint(FailureType.RUNTIME, [loc("a.ts:1"), loc("b.ts:2")], ["c2", "c1"])
        b = failure_fingerprint(FailureType.RUNTIME, [loc("b.ts:2"), loc("a.ts:1")], ["c1", "c2"])
        assert a == b

    def test_depends_on_type(self):
        a = failure_fingerprint(FailureType.RUNTIME, [loc("a.ts:1")], [])
        b = failure_fingerprint(FailureType.LOGIC, [loc("a.ts:1")], [])
        assert a != b


class TestAnalyze:
    def test_is_deterministic(self, populated_store, classifier):
        signal = _signal()
        assert classifier.analyze(signal) == classifier.analyze(signal)

    def test_ranks_assumption_at_failure_site(self, populated_store, classifier):
        analysis = classifier.analyze(_signal())
        assert len(analysis.ranked) == 1
        top = analysis.ranked[0]
        assert top.proximity == 1.0
        assert top.concept_overlap == 1.0

    def test_weak_candidates_fall_below_floor(self, lifecycle, classifier):
        near = lifecycle.record_assumption("Header present", AssumptionKind.PRECONDITION, loc("src/auth.ts:12"), now=NOW)
        lifecycle.record_assumption("Session cookie set", AssumptionKind.PRECONDITION, loc("src/session.ts:1"), now=NOW)
        ranked = classifier.analyze(_signal()).ranked
        assert [r.assumption_id for r in ranked] == [near.id]

    def test_no_fabricated_links(self, populated_store, classifier):
        record = classifier.observe(_signal(where="lib/billing/invoice.ts:3"))
        assert record.violated == []
        report = classifier.explain(record.id)
        assert report.violated == []
        assert report.why.startswith("No recorded assumption explains")

    def test_archived_assumptions_are_ignored(self, populated_store, classifier, lifecycle):
        lifecycle.archive_location(loc("src/auth.ts"), now=NOW)
        assert classifier.analyze(_signal()).ranked == []


class TestObserve:
    def test_new_failure_is_explained(self, classifier):
        record = classifier.observe(_signal())
        assert record.state is FailureState.EXPLAINED
        assert [t.state for t in record.transitions] == [
            FailureState.OBSERVED,
            FailureState.CLASSIFIED,
            FailureState.ASSUMPTIONS_IDENTIFIED,
            FailureState.EXPLAINED,
        ]
        assert record.recurrence_count == 1

    def test_requires_a_valid_location(self, classifier):
        with pytest.raises(ValidationError):
            classifier.observe(FailureSignal("TypeError", "boom", []))
        with pytest.raises(ValidationError):
            classifier.observe(_signal(where="src/auth.ts:9-3"))

    def test_recurrence_updates_single_record(self, classifier, store):
        first = classifier.observe(_signal(message="first"))
        again = classifier.observe(_signal(message="second", at=NOW + timedelta(hours=1)))
        assert again.id == first.id
        assert again.recurrence_count == 2
        assert again.state is FailureState.RECURRING
        assert again.message == "second"
        assert len(store.snapshot().failures) == 1

    def test_recurrence_after_resolution_reopens(self, classifier):
        first = classifier.observe(_signal())
        classifier.resolve(first.id, at=NOW)
        again = classifier.observe(_signal(at=NOW + timedelta(hours=1)))
        assert again.id == first.id
        assert not again.resolved
        assert again.recurrence_count == 2

    def test_candidates_become_suspected(self, populated_store, classifier, lifecycle):
        a = lifecycle.record_assumption(
            "Clock skew under a minute", AssumptionKind.INVARIANT, loc("src/auth.ts:14"), now=NOW
        )
        classifier.observe(_signal(message="other", at=NOW + timedelta(minutes=5)))
        assert lifecycle.get(a.id).suspected

    def test_invalid_transition(self):
        record = FailureRecord("f-1", "fp", FailureType.RUNTIME, [loc("a.ts:1")])
        with pytest.raises(ValidationError):
            advance(record, FailureState.RESOLVED, NOW)


class TestExplain:
    def test_report_fields(self, populated_store, classifier):
        failure_id = next(iter(populated_store.snapshot().failures))
        report = classifier.explain(failure_id)
        assert report.failure_type == "runtime"
        assert report.locations == ["src/auth.ts:12"]
        assert [v["description"] for v in report.violated] == ["Token header is present on every request"]
        assert report.violated[0]["status"] == "failed"
        assert "failure site" in report.why
        assert report.affected_layers == ["security"]
        assert [a["outcome"] for a in report.prior_attempts] == ["failed"]
        assert not report.partial

    def test_report_renders(self, populated_store, classifier):
        failure_id = next(iter(populated_store.snapshot().failures))
        report = classifier.explain(failure_id)
        assert json.loads(report.to_json())["failure_id"] == failure_id
        text = report.to_text()
        assert "RUNTIME failure" in text
        assert "Prior attempts:" in text

    def test_constraints_list_untouched_assumptions(self, populated_store, classifier, lifecycle):
        failure_id = next(iter(populated_store.snapshot().failures))
        auth_id = populated_store.snapshot().failures[failure_id].concept_ids[0]
        lifecycle.record_assumption(
            "Tokens are signed with RS256", AssumptionKind.INVARIANT, loc("src/auth.ts:18"), [auth_id], now=NOW
        )
        report = classifier.explain(failure_id)
        assert report.recommended_constraints == ["Tokens are signed with RS256"]

    def test_unknown_failure(self, classifier):
        with pytest.raises(NotFoundError):
            classifier.explain("f-missing")

    def test_narrative_from_provider(self, populated_store, classifier):
        provider = MagicMock()
        provider.explain_failure.return_value = "Health checks skip the auth header."
        classifier.provider = provider
        failure_id = next(iter(populated_store.snapshot().failures))
        report = classifier.explain(failure_id, narrate=True)
        assert report.narrative == "Health checks skip the auth header."
        assert isinstance(provider.explain_failure.call_args[0][0], FailureReport)

    def test_provider_failure_gives_partial_report(self, populated_store, classifier):
        provider = MagicMock()
        provider.explain_failure.side_effect = ProviderError("overloaded")
        classifier.provider = provider
        failure_id = next(iter(populated_store.snapshot().failures))
        report = classifier.explain(failure_id, narrate=True)
        assert report.partial
        assert report.violated

    def test_narrate_without_provider_is_partial(self, populated_store, classifier):
        failure_id = next(iter(populated_store.snapshot().failures))
        assert classifier.explain(failure_id, narrate=True).partial


class TestResolution:
    def test_quiet_attempts_resolve(self, classifier):
        record = classifier.observe(_signal())
        classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW)
        assert not classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW).resolved
        resolved = classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW)
        assert resolved.resolved
        assert resolved.state is FailureState.RESOLVED

    def test_failed_attempt_resets_streak(self, classifier):
        record = classifier.observe(_signal())
        classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW)
        classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW)
        assert classifier.note_attempt(record.id, AttemptOutcome.FAILED, at=NOW).quiet_attempts == 0
        assert not classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW).resolved

    def test_succeeded_attempt_resolves(self, classifier):
        record = classifier.observe(_signal())
        assert classifier.note_attempt(record.id, AttemptOutcome.SUCCEEDED, at=NOW).resolved

    def test_new_failure_interrupts_streak(self, classifier):
        record = classifier.observe(_signal())
        classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW)
        classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW)
        classifier.observe(_signal("ConnectionError", "connection refused", at=NOW + timedelta(minutes=1)))
        assert classifier.get(record.id).quiet_attempts == 0
        assert not classifier.note_attempt(record.id, AttemptOutcome.UNKNOWN, at=NOW).resolved

    def test_confirm_success(self, classifier):
        here = classifier.observe(_signal())
        elsewhere = classifier.observe(_signal(where="lib/x.ts:1"))
        assert classifier.confirm_success(loc("src/auth.ts:1-50"), at=NOW) == [here.id]
        assert classifier.get(here.id).resolved
        assert not classifier.get(elsewhere.id).resolved
        assert [f.id for f in classifier.failures()] == [elsewhere.id]
        assert len(classifier.failures(include_resolved=True)) == 2
