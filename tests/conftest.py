"""Shared test fixtures for premise."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from premise.config import Config
from premise.context.composer import ContextComposer
from premise.core import ProjectCore
from premise.failures.classifier import FailureClassifier
from premise.graph.concepts import ConceptGraph
from premise.lifecycle.manager import LifecycleManager
from premise.models import (
    AssumptionKind,
    ChangeKind,
    CodeChangeEvent,
    CodeLocation,
    ConceptCategory,
    Detection,
    DiffFingerprint,
    Evidence,
    FailureSignal,
    TradeoffDraft,
)
from premise.retry.engine import RetryPreventionEngine
from premise.storage.store import KnowledgeStore

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def loc(text: str) -> CodeLocation:
    return CodeLocation.parse(text)


def detect(
    category: ConceptCategory,
    where: str,
    confidence: float = 0.8,
    signature: str = "",
) -> Detection:
    return Detection(category=category, location=loc(where), confidence=confidence, signature=signature)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / ".premise"


@pytest.fixture
def config(data_dir: Path) -> Config:
    return Config(project_id="webapp", data_dir=data_dir)


@pytest.fixture
def store(config: Config) -> KnowledgeStore:
    return KnowledgeStore.open(config.project_id, config.data_dir)


@pytest.fixture
def graph(store: KnowledgeStore, config: Config) -> ConceptGraph:
    return ConceptGraph(store, config.edge_half_life_seconds)


@pytest.fixture
def lifecycle(store: KnowledgeStore, config: Config) -> LifecycleManager:
    return LifecycleManager(store, config.retention_seconds)


@pytest.fixture
def classifier(store: KnowledgeStore, graph: ConceptGraph, config: Config) -> FailureClassifier:
    return FailureClassifier(
        store,
        graph,
        floor=config.classifier_floor,
        recency_window_seconds=config.recency_window_seconds,
        resolve_after_attempts=config.resolve_after_attempts,
    )


@pytest.fixture
def retry_engine(store: KnowledgeStore, classifier: FailureClassifier, config: Config) -> RetryPreventionEngine:
    return RetryPreventionEngine(store, classifier, config.similarity_threshold)


@pytest.fixture
def composer(store: KnowledgeStore, graph: ConceptGraph, lifecycle: LifecycleManager) -> ContextComposer:
    return ContextComposer(store, graph, lifecycle)


@pytest.fixture
def core(config: Config, store: KnowledgeStore) -> ProjectCore:
    return ProjectCore(config, store)


@pytest.fixture
def populated_store(
    store: KnowledgeStore,
    graph: ConceptGraph,
    lifecycle: LifecycleManager,
    classifier: FailureClassifier,
    retry_engine: RetryPreventionEngine,
) -> KnowledgeStore:
    """Store holding one of every entity kind, linked together."""
    upserted = graph.upsert(
        [
            detect(ConceptCategory.AUTHENTICATION, "src/auth.ts:10-20", 0.6, "verifyToken"),
            detect(ConceptCategory.CACHING, "src/auth.ts:40-55", 0.7, "tokenCache"),
        ],
        now=NOW,
    )
    auth_id = next(c.id for c in upserted.concepts if c.category is ConceptCategory.AUTHENTICATION)
    lifecycle.capture_intent(
        CodeChangeEvent(loc("src/auth.ts:10-20"), ChangeKind.MODIFIED, observed_at=NOW),
        "Reject expired tokens before hitting the cache",
        [auth_id],
        tradeoff=TradeoffDraft(
            decision="Verify signature locally",
            alternatives=["Call the auth service"],
            rationale="Avoid a network hop per request",
            constraints=["Signing keys must be rotated through config"],
        ),
        now=NOW,
    )
    assumption = lifecycle.record_assumption(
        "Token header is present on every request",
        AssumptionKind.PRECONDITION,
        loc("src/auth.ts:12"),
        [auth_id],
        now=NOW,
    )
    failure = classifier.observe(FailureSignal(
        error_type="TypeError",
        message="Cannot read properties of undefined (reading 'split')",
        locations=[loc("src/auth.ts:12")],
        observed_at=NOW,
    ))
    lifecycle.validate(assumption.id, "failed", Evidence(failure.id, "header missing on health checks"), now=NOW)
    retry_engine.record_attempt(
        failure.id,
        DiffFingerprint((loc("src/auth.ts:12"),), (auth_id,)),
        "failed",
        now=NOW,
    )
    return store
