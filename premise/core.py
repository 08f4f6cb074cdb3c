"""Per-project reasoning core.

ProjectCore wires the store, concept graph, lifecycle manager, failure
classifier, retry engine and context composer of one project into a single
cooperative unit:

- code-change events are queued and applied in observation order by one
  worker (the silent path);
- failure reports wait for the queue to drain, then classify (the
  on-demand path);
- context composition runs off the event loop, and a newer request for the
  same location cancels the older one;
- provider calls are bounded by a timeout; a timed-out completion is not
  ingested.

Workspace holds any number of independent projects.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from premise.config import Config
from premise.context.composer import ContextComposer, ContextPackage, IngestReport
from premise.errors import PremiseError, ProviderError, StorageError, ValidationError
from premise.extraction.provider import AnthropicProvider
from premise.failures.classifier import FailureClassifier, FailureReport
from premise.graph.concepts import ConceptGraph
from premise.lifecycle.manager import LifecycleManager
from premise.models import (
    Assumption,
    AttemptOutcome,
    ChangeKind,
    CodeChangeEvent,
    CodeLocation,
    DiffFingerprint,
    FailureRecord,
    FailureSignal,
    ProviderResponse,
    RetryAttempt,
)
from premise.retry.engine import RetryCheck, RetryPreventionEngine
from premise.storage.store import ChangeNotice, KnowledgeStore

logger = logging.getLogger(__name__)


@dataclass
class ChangeResult:
    location: str
    change_kind: str
    concepts: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)
    intent_id: str | None = None
    suspected: list[str] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    partial: bool = False


@dataclass
class CompletionResult:
    package: ContextPackage
    response: ProviderResponse | None = None
    ingest: IngestReport | None = None
    skipped: bool = False


class ProjectCore:
    """All knowledge and reasoning for one project."""

    def __init__(self, config: Config, store: KnowledgeStore, provider=None) -> None:
        self.config = config
        self.store = store
        self.provider = provider
        self.graph = ConceptGraph(store, config.edge_half_life_seconds)
        self.lifecycle = LifecycleManager(store, config.retention_seconds)
        self.classifier = FailureClassifier(
            store,
            self.graph,
            floor=config.classifier_floor,
            recency_window_seconds=config.recency_window_seconds,
            resolve_after_attempts=config.resolve_after_attempts,
            max_violated=config.max_violated,
            provider=provider,
        )
        self.retry = RetryPreventionEngine(store, self.classifier, config.similarity_threshold)
        self.composer = ContextComposer(store, self.graph, self.lifecycle, provider)
        self._queue: asyncio.Queue[CodeChangeEvent] | None = None
        self._worker: asyncio.Task | None = None
        self._compositions: dict[str, asyncio.Task] = {}

    @classmethod
    def open(cls, config: Config, project_id: str | None = None, provider=None) -> ProjectCore:
        """Open (or create) a project's knowledge and build its core."""
        store = KnowledgeStore.open(
            project_id or config.project_id, config.data_dir, config.conflict_retries
        )
        if provider is None and config.anthropic_api_key:
            provider = AnthropicProvider.from_api_key(config.anthropic_api_key, config.model)
        return cls(config, store, provider)

    @property
    def project_id(self) -> str:
        return self.store.project_id

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run_changes())

    async def close(self) -> None:
        """Apply queued changes, stop the worker and flush the snapshot."""
        if self._worker is not None:
            await self.drain()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
            self._queue = None
        for task in list(self._compositions.values()):
            task.cancel()
        self._compositions.clear()
        try:
            await asyncio.to_thread(self.store.persist)
        except StorageError as e:
            logger.warning(f"Could not flush {self.project_id} on close: {e}")

    # -- silent path: code changes ---------------------------------------

    async def submit_change(self, event: CodeChangeEvent) -> None:
        """Queue a code-change event. Events are applied in submission order."""
        if not event.location.is_valid():
            raise ValidationError(f"Change has no valid code location: {event.location.key!r}")
        await self.start()
        await self._queue.put(event)

    async def drain(self) -> None:
        """Wait until every queued change has been applied."""
        if self._queue is not None:
            await self._queue.join()

    async def _run_changes(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await asyncio.to_thread(self.apply_change, event)
            except PremiseError as e:
                logger.warning(f"Dropped {event.change_kind.value} change at {event.location}: {e}")
            except Exception:
                # the worker must outlive any single event
                logger.exception(f"Unexpected error applying change at {event.location}")
            finally:
                self._queue.task_done()

    def apply_change(self, event: CodeChangeEvent) -> ChangeResult:
        """Fold one code-change event into the graph and lifecycle records.

        The event id is the concept batch id: each observed event counts
        once toward co-occurrence edge weights, even when two events carry
        identical detections, and replaying the same event counts nothing.
        """
        location = event.location
        if not location.is_valid():
            raise ValidationError(f"Change has no valid code location: {location.key!r}")
        at = event.observed_at
        result = ChangeResult(location=location.key, change_kind=event.change_kind.value)

        if event.change_kind is ChangeKind.REMOVED:
            result.stale = self.graph.remove_location(location, at)
            result.archived = self.lifecycle.archive_location(location, at)
            self.lifecycle.refresh_orphans(at)
            return result

        summary = event.structural_summary
        detections = list(summary.detections)
        drafts = list(summary.assumptions)
        description = summary.intent

        if not detections and not drafts and summary.code and self.provider is not None:
            try:
                extracted = self.provider.extract(summary.code, location)
            except ProviderError as e:
                logger.warning(f"Extraction failed for change at {location}: {e}")
                result.partial = True
            else:
                detections = extracted.detections
                drafts = extracted.assumptions
                description = description or extracted.intent

        if event.change_kind is ChangeKind.MODIFIED:
            result.suspected = self.lifecycle.mark_suspected(location, at)

        if detections:
            upserted = self.graph.upsert(detections, batch_id=event.event_id, now=at)
            result.concepts = [c.id for c in upserted.concepts]
            self.lifecycle.refresh_orphans(at)

        known = self.store.snapshot().concepts
        for draft in drafts:
            related = [c for c in draft.concept_ids if c in known] or result.concepts
            a = self.lifecycle.record_assumption(
                draft.description,
                draft.kind,
                draft.location or location,
                related_concepts=related,
                source="detected",
                now=at,
            )
            result.assumptions.append(a.id)

        if description:
            intent = self.lifecycle.capture_intent(
                event, description, result.concepts, tradeoff=summary.tradeoff, now=at
            )
            result.intent_id = intent.id
        return result

    # -- on-demand path: failures ----------------------------------------

    async def report_failure(self, signal: FailureSignal) -> FailureRecord:
        """Classify a failure after all earlier changes have been applied."""
        await self.drain()
        return await asyncio.to_thread(self.classifier.observe, signal)

    def get_failure_report(self, failure_id: str) -> FailureReport:
        return self.classifier.explain(failure_id)

    async def explain_failure(self, failure_id: str) -> FailureReport:
        """Failure report with a provider narrative when one arrives in time."""
        if self.provider is None:
            return self.classifier.explain(failure_id)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.classifier.explain, failure_id, True),
                timeout=self.config.provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Provider explanation for {failure_id} timed out")
            report = self.classifier.explain(failure_id)
            report.partial = True
            return report

    def confirm_success(self, location: CodeLocation) -> list[str]:
        return self.classifier.confirm_success(location)

    # -- retries ----------------------------------------------------------

    def record_attempt(
        self,
        failure_id: str,
        fingerprint: DiffFingerprint,
        outcome: AttemptOutcome | str = AttemptOutcome.UNKNOWN,
        note: str = "",
    ) -> RetryAttempt:
        return self.retry.record_attempt(failure_id, fingerprint, outcome, note)

    def check_before_attempt(self, failure_id: str, proposed: DiffFingerprint) -> RetryCheck:
        return self.retry.check_before_attempt(failure_id, proposed)

    # -- outbound AI requests --------------------------------------------

    async def compose(self, target: CodeLocation, token_budget: int) -> ContextPackage:
        """Compose context for ``target``.

        A newer request for the same location cancels this one; the
        superseded caller sees asyncio.CancelledError.
        """
        key = target.key
        previous = self._compositions.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.ensure_future(asyncio.to_thread(self.composer.compose, target, token_budget))
        self._compositions[key] = task
        try:
            return await task
        finally:
            if self._compositions.get(key) is task:
                del self._compositions[key]

    async def complete(self, prompt: str, target: CodeLocation, token_budget: int) -> CompletionResult:
        """Send an enriched request to the provider and ingest its answer."""
        if self.provider is None:
            raise ProviderError("No AI provider configured")
        package = await self.compose(target, token_budget)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self.provider.complete, prompt, package.render()),
                timeout=self.config.provider_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Provider timed out after {self.config.provider_timeout}s; skipping ingestion at {target}"
            )
            return CompletionResult(package=package, skipped=True)
        ingest = await asyncio.to_thread(self.composer.ingest_result, response, target)
        return CompletionResult(package=package, response=response, ingest=ingest)

    # -- presentation queries --------------------------------------------

    def get_assumptions(self, location: CodeLocation) -> list[Assumption]:
        return self.lifecycle.find_by_location(location)

    def get_concept_graph(self, scope: str | None = None) -> dict:
        return self.graph.scope_view(scope)

    def subscribe(self, listener: Callable[[ChangeNotice], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def stats(self) -> dict:
        snapshot = self.store.snapshot()
        return {
            "project": self.project_id,
            "version": snapshot.version,
            "updated_at": snapshot.updated_at.isoformat() if snapshot.updated_at else None,
            "counts": snapshot.counts(),
            "open_failures": sum(1 for f in snapshot.failures.values() if not f.resolved),
            "in_memory_only": self.store.in_memory_only,
            "provider": self.provider is not None,
        }

    def compact(self, retention_days: float | None = None) -> dict[str, int]:
        """Age out orphaned assumptions, then drop old superseded/archived records."""
        days = self.config.retention_days if retention_days is None else retention_days
        self.lifecycle.age_out()
        return self.store.compact(timedelta(days=days))


class Workspace:
    """Independent project cores sharing one configuration."""

    def __init__(self, config: Config, provider=None) -> None:
        self.config = config
        self._provider = provider
        self._cores: dict[str, ProjectCore] = {}
        self._lock = threading.Lock()

    def project(self, project_id: str) -> ProjectCore:
        with self._lock:
            core = self._cores.get(project_id)
            if core is None:
                core = ProjectCore.open(self.config, project_id, self._provider)
                self._cores[project_id] = core
            return core

    def projects(self) -> list[str]:
        return sorted(self._cores)

    async def close(self) -> None:
        for core in list(self._cores.values()):
            await core.close()
        self._cores.clear()
