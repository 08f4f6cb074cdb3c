"""Context composition and result ingestion.

Before a request goes to the AI provider, the composer gathers the
knowledge relevant to the target location (constraints, failed assumptions,
fixes already known not to work, related concepts), ranks it by relevance
and keeps the longest prefix that fits the token budget. After the provider
answers, the new code is run back through extraction so its concepts,
assumptions and intent are recorded.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime

from premise.errors import ProviderError, ValidationError
from premise.graph.concepts import ConceptGraph
from premise.lifecycle.manager import LifecycleManager
from premise.models import (
    AssumptionStatus,
    ChangeKind,
    CodeChangeEvent,
    CodeLocation,
    ProjectKnowledge,
    ProviderResponse,
    nearest,
    utcnow,
)
from premise.retry.engine import invalid_attempts
from premise.storage.store import KnowledgeStore

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
ITEM_OVERHEAD_TOKENS = 2
CONCEPT_DEPTH = 2

# Among equally relevant items, earlier sections win
SECTIONS = ("failed_assumptions", "invalid_retry_fingerprints", "constraints", "relevant_concepts")

SECTION_TITLES = {
    "constraints": "Constraints",
    "failed_assumptions": "Failed assumptions",
    "invalid_retry_fingerprints": "Fixes that already failed",
    "relevant_concepts": "Related concepts",
}


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN) + ITEM_OVERHEAD_TOKENS


@dataclass
class ContextItem:
    section: str
    ref_id: str
    text: str
    relevance: float

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.text)


@dataclass
class ContextPackage:
    target: str
    token_budget: int
    constraints: list[str] = field(default_factory=list)
    failed_assumptions: list[str] = field(default_factory=list)
    invalid_retry_fingerprints: list[str] = field(default_factory=list)
    relevant_concepts: list[str] = field(default_factory=list)
    estimated_tokens: int = 0
    dropped: int = 0

    @property
    def empty(self) -> bool:
        return not any(getattr(self, s) for s in SECTIONS)

    def render(self) -> str:
        """Plain-text form handed to the provider."""
        parts = []
        for section in ("constraints", "failed_assumptions", "invalid_retry_fingerprints", "relevant_concepts"):
            items = getattr(self, section)
            if items:
                parts.append(f"### {SECTION_TITLES[section]}")
                parts.extend(f"- {item}" for item in items)
                parts.append("")
        return "\n".join(parts).strip()

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2)


@dataclass
class IngestReport:
    concepts: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)
    intent_id: str | None = None
    partial: bool = False
    error: str = ""


class ContextComposer:
    def __init__(
        self,
        store: KnowledgeStore,
        graph: ConceptGraph,
        lifecycle: LifecycleManager,
        provider=None,
    ) -> None:
        self._store = store
        self._graph = graph
        self._lifecycle = lifecycle
        self.provider = provider

    def candidates(self, target: CodeLocation, snapshot: ProjectKnowledge | None = None) -> list[ContextItem]:
        """Every relevant item for ``target``, most relevant first."""
        snapshot = snapshot or self._store.snapshot()
        seeds = self._graph.concepts_near([target], min_proximity=0.5, snapshot=snapshot)
        hops = ConceptGraph.distances(snapshot, seeds, max_depth=CONCEPT_DEPTH)

        def concept_relevance(concept_ids) -> float:
            return max((1.0 / (1 + hops[c]) for c in concept_ids if c in hops), default=0.0)

        items: list[ContextItem] = []

        for a in snapshot.assumptions.values():
            if not a.active:
                continue
            relevance = max(target.proximity(a.location), concept_relevance(a.concept_ids))
            if relevance <= 0:
                continue
            if a.status is AssumptionStatus.FAILED:
                latest = a.violations[-1] if a.violations else None
                detail = f"; last: {latest.evidence}" if latest and latest.evidence else ""
                text = f"{a.description} ({a.location}) violated {len(a.violations)}x{detail}"
                items.append(ContextItem("failed_assumptions", a.id, text, relevance))
            else:
                text = f"[{a.kind.value}] {a.description} ({a.location})"
                items.append(ContextItem("constraints", a.id, text, relevance))

        for t in snapshot.tradeoffs.values():
            intent = snapshot.intents.get(t.intent_id)
            if intent is None or intent.superseded_by is not None:
                continue
            relevance = target.proximity(intent.location)
            if relevance <= 0:
                continue
            for n, constraint in enumerate(t.constraints):
                text = f"{constraint} (decided: {t.decision}; {intent.location})"
                items.append(ContextItem("constraints", f"{t.id}#{n}", text, relevance))

        for attempt in invalid_attempts(snapshot, target):
            relevance = nearest(target, attempt.fingerprint.locations)
            where = ", ".join(loc.key for loc in attempt.fingerprint.locations)
            text = f"{attempt.fingerprint.digest}: change to {where} (failure {attempt.failure_id})"
            if attempt.note:
                text += f" - {attempt.note}"
            items.append(ContextItem("invalid_retry_fingerprints", attempt.id, text, relevance))

        for concept_id, distance in hops.items():
            c = snapshot.concepts[concept_id]
            if c.stale:
                continue
            label = c.signature or c.category.value
            text = f"{label} [{c.category.value}, {c.layer}] at {c.anchor}"
            items.append(ContextItem("relevant_concepts", concept_id, text, 1.0 / (1 + distance)))

        items.sort(key=lambda i: (-i.relevance, SECTIONS.index(i.section), i.ref_id))
        return items

    def compose(self, target: CodeLocation, token_budget: int) -> ContextPackage:
        """Build the context package for a request about ``target``.

        Deterministic for a given snapshot. Items are taken in relevance
        order until the next one would exceed the budget, so a larger
        budget never yields fewer items.
        """
        if not target.is_valid():
            raise ValidationError(f"Invalid target location: {target.key!r}")
        if token_budget < 0:
            raise ValidationError(f"Token budget must not be negative: {token_budget}")

        items = self.candidates(target)
        package = ContextPackage(target=target.key, token_budget=token_budget)
        used = 0
        kept = 0
        for item in items:
            if used + item.tokens > token_budget:
                break
            getattr(package, item.section).append(item.text)
            used += item.tokens
            kept += 1
        package.estimated_tokens = used
        package.dropped = len(items) - kept
        if package.dropped:
            logger.debug(f"Context for {target}: kept {kept}, dropped {package.dropped} item(s)")
        return package

    def ingest_result(
        self,
        raw_response: ProviderResponse,
        target: CodeLocation,
        now: datetime | None = None,
    ) -> IngestReport:
        """Record what a provider response introduced at ``target``."""
        report = IngestReport()
        if not raw_response.generated_code.strip():
            return report
        if self.provider is None:
            report.partial = True
            report.error = "No provider configured for extraction"
            return report
        try:
            extracted = self.provider.extract(raw_response.generated_code, target)
        except ProviderError as e:
            logger.warning(f"Skipping ingestion at {target}: {e}")
            report.partial = True
            report.error = str(e)
            return report

        now = now or utcnow()
        concept_ids: list[str] = []
        if extracted.detections:
            upserted = self._graph.upsert(extracted.detections, now=now)
            concept_ids = [c.id for c in upserted.concepts]
            report.concepts = concept_ids

        for draft in extracted.assumptions:
            related = [c for c in draft.concept_ids if c in self._store.snapshot().concepts] or concept_ids
            a = self._lifecycle.record_assumption(
                draft.description,
                draft.kind,
                draft.location or target,
                related_concepts=related,
                source="provider",
                now=now,
            )
            report.assumptions.append(a.id)

        description = extracted.intent or _first_line(raw_response.free_text_explanation)
        if description:
            change = CodeChangeEvent(location=target, change_kind=ChangeKind.MODIFIED, observed_at=now)
            intent = self._lifecycle.capture_intent(change, description, concept_ids, now=now)
            report.intent_id = intent.id
        return report


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""
