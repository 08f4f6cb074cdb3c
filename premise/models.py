"""Core data models for premise.

Entities persisted in the knowledge store (Concept, Intent, Tradeoff,
Assumption, FailureRecord, RetryAttempt), the ProjectKnowledge aggregate,
and the payloads exchanged with external collaborators.
"""

from __future__ import annotations

import hashlib
import posixpath
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def stable_hash(*parts: str, length: int = 16) -> str:
    """Hash of the given parts, independent of process and platform."""
    digest = hashlib.sha1("\x1f".join(parts).encode("utf-8")).hexdigest()
    return digest[:length]


def normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


# ---------------------------------------------------------------------------
# Closed variants
# ---------------------------------------------------------------------------


class ConceptCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    ASYNC_FLOW = "async_flow"
    CACHING = "caching"
    DATA_ACCESS = "data_access"
    VALIDATION = "validation"
    ERROR_HANDLING = "error_handling"
    STATE_MANAGEMENT = "state_management"
    API_BOUNDARY = "api_boundary"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    OTHER = "other"


CATEGORY_LAYERS: dict[ConceptCategory, str] = {
    ConceptCategory.AUTHENTICATION: "security",
    ConceptCategory.AUTHORIZATION: "security",
    ConceptCategory.ASYNC_FLOW: "control-flow",
    ConceptCategory.CACHING: "infrastructure",
    ConceptCategory.DATA_ACCESS: "persistence",
    ConceptCategory.VALIDATION: "domain",
    ConceptCategory.ERROR_HANDLING: "control-flow",
    ConceptCategory.STATE_MANAGEMENT: "domain",
    ConceptCategory.API_BOUNDARY: "interface",
    ConceptCategory.CONFIGURATION: "infrastructure",
    ConceptCategory.CONCURRENCY: "control-flow",
    ConceptCategory.OTHER: "unknown",
}


class AssumptionKind(str, Enum):
    PRECONDITION = "precondition"
    POSTCONDITION = "postcondition"
    INVARIANT = "invariant"
    DEPENDENCY = "dependency"


class AssumptionStatus(str, Enum):
    UNTESTED = "untested"
    VALID = "valid"
    FAILED = "failed"


class FailureType(str, Enum):
    LOGIC = "logic"
    RUNTIME = "runtime"
    INTEGRATION = "integration"
    UNKNOWN = "unknown"


class FailureState(str, Enum):
    OBSERVED = "observed"
    CLASSIFIED = "classified"
    ASSUMPTIONS_IDENTIFIED = "assumptions_identified"
    EXPLAINED = "explained"
    RESOLVED = "resolved"
    RECURRING = "recurring"


class AttemptOutcome(str, Enum):
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    UNKNOWN = "unknown"


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class EntityKind(str, Enum):
    CONCEPT = "concept"
    INTENT = "intent"
    TRADEOFF = "tradeoff"
    ASSUMPTION = "assumption"
    FAILURE = "failure"
    ATTEMPT = "attempt"


# ---------------------------------------------------------------------------
# Code locations
# ---------------------------------------------------------------------------

_LOCATION_RE = re.compile(r"^(?P<path>.*?)(?::(?P<start>\d+)(?:-(?P<end>\d+))?)?$")

# Line gap at which same-file proximity halves
PROXIMITY_LINE_SCALE = 25.0
SAME_DIRECTORY_PROXIMITY = 0.25


def normalize_path(path: str) -> str:
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    if not p:
        return ""
    return posixpath.normpath(p)


@dataclass(frozen=True)
class CodeLocation:
    """A file, optionally narrowed to an inclusive line range.

    A location without lines covers the whole file.
    """

    path: str
    start_line: int | None = None
    end_line: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))
        if self.start_line is not None and self.end_line is None:
            object.__setattr__(self, "end_line", self.start_line)

    @classmethod
    def parse(cls, text: str) -> CodeLocation:
        """Parse ``path``, ``path:N`` or ``path:N-M``."""
        match = _LOCATION_RE.match(text.strip())
        if not match:
            return cls(path="")
        start = match.group("start")
        end = match.group("end")
        return cls(
            path=match.group("path"),
            start_line=int(start) if start else None,
            end_line=int(end) if end else None,
        )

    @property
    def key(self) -> str:
        if self.start_line is None:
            return self.path
        if self.start_line == self.end_line:
            return f"{self.path}:{self.start_line}"
        return f"{self.path}:{self.start_line}-{self.end_line}"

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.path)

    @property
    def whole_file(self) -> bool:
        return self.start_line is None

    def sort_key(self) -> tuple[str, int, int]:
        return (self.path, self.start_line or 0, self.end_line or 0)

    def is_valid(self) -> bool:
        if self.path in ("", "."):
            return False
        if self.start_line is None:
            return self.end_line is None
        return self.start_line >= 1 and self.end_line is not None and self.end_line >= self.start_line

    def overlaps(self, other: CodeLocation) -> bool:
        if self.path != other.path:
            return False
        if self.whole_file or other.whole_file:
            return True
        return self.start_line <= other.end_line and other.start_line <= self.end_line

    def contains(self, other: CodeLocation) -> bool:
        if self.path != other.path:
            return False
        if self.whole_file:
            return True
        if other.whole_file:
            return False
        return self.start_line <= other.start_line and other.end_line <= self.end_line

    def proximity(self, other: CodeLocation) -> float:
        """Closeness in [0, 1]: 1 for overlap, decaying with line distance."""
        if self.path == other.path:
            if self.overlaps(other):
                return 1.0
            if self.end_line < other.start_line:
                gap = other.start_line - self.end_line
            else:
                gap = self.start_line - other.end_line
            return 1.0 / (1.0 + gap / PROXIMITY_LINE_SCALE)
        if self.directory == other.directory:
            return SAME_DIRECTORY_PROXIMITY
        return 0.0

    def __str__(self) -> str:
        return self.key


def sorted_locations(locations) -> list[CodeLocation]:
    return sorted(set(locations), key=CodeLocation.sort_key)


def nearest(location: CodeLocation, candidates) -> float:
    """Best proximity between ``location`` and any of ``candidates``."""
    return max((location.proximity(c) for c in candidates), default=0.0)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class ConceptEdge:
    weight: float
    updated_at: datetime
    batches: list[str] = field(default_factory=list)  # recent batch ids already counted

    def effective_weight(self, now: datetime, half_life_seconds: float) -> float:
        elapsed = max((now - self.updated_at).total_seconds(), 0.0)
        if half_life_seconds <= 0:
            return self.weight
        return self.weight * 0.5 ** (elapsed / half_life_seconds)


@dataclass
class Concept:
    id: str
    key: str  # identity key: category | normalized anchor | signature
    category: ConceptCategory
    signature: str
    anchor: CodeLocation
    locations: list[CodeLocation] = field(default_factory=list)
    confidence: float = 0.0
    edges: dict[str, ConceptEdge] = field(default_factory=dict)
    stale: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def layer(self) -> str:
        return CATEGORY_LAYERS[self.category]


@dataclass
class Intent:
    id: str
    description: str
    location: CodeLocation
    concept_ids: list[str] = field(default_factory=list)
    confidence: float = 0.5
    change_kind: ChangeKind = ChangeKind.MODIFIED
    superseded_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Tradeoff:
    id: str
    intent_id: str
    decision: str
    alternatives: list[str] = field(default_factory=list)
    rationale: str = ""
    constraints: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Violation:
    failure_id: str
    evidence: str
    recorded_at: datetime


@dataclass
class Evidence:
    """Supporting information passed to a validation."""

    failure_id: str | None = None
    note: str = ""


@dataclass
class Assumption:
    id: str
    description: str
    kind: AssumptionKind
    location: CodeLocation
    concept_ids: list[str] = field(default_factory=list)
    status: AssumptionStatus = AssumptionStatus.UNTESTED
    violations: list[Violation] = field(default_factory=list)
    suspected: bool = False
    orphaned: bool = False
    archived: bool = False
    source: str = "manual"  # "manual" | "detected" | "provider"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_validated_at: datetime | None = None

    @property
    def active(self) -> bool:
        return not self.archived and not self.orphaned


def assumption_id(kind: AssumptionKind, location: CodeLocation, description: str) -> str:
    return "a-" + stable_hash(kind.value, location.key, normalize_text(description))


@dataclass
class RankedAssumption:
    assumption_id: str
    score: float
    proximity: float
    concept_overlap: float
    staleness: float


@dataclass
class StateTransition:
    state: FailureState
    at: datetime


@dataclass
class FailureRecord:
    id: str
    fingerprint: str
    failure_type: FailureType
    locations: list[CodeLocation]
    concept_ids: list[str] = field(default_factory=list)
    error_type: str = ""
    message: str = ""
    state: FailureState = FailureState.OBSERVED
    violated: list[RankedAssumption] = field(default_factory=list)
    recurrence_count: int = 1
    resolved: bool = False
    quiet_attempts: int = 0  # attempts since the last failure at these locations
    observed_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    transitions: list[StateTransition] = field(default_factory=list)


@dataclass(frozen=True)
class DiffFingerprint:
    """What a fix touches: changed locations and affected concepts."""

    locations: tuple[CodeLocation, ...] = ()
    concept_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "locations", tuple(sorted_locations(self.locations)))
        object.__setattr__(self, "concept_ids", tuple(sorted(set(self.concept_ids))))

    @property
    def digest(self) -> str:
        return stable_hash(
            *(loc.key for loc in self.locations), "|", *self.concept_ids, length=12
        )


@dataclass
class RetryAttempt:
    id: str
    failure_id: str
    fingerprint: DiffFingerprint
    outcome: AttemptOutcome = AttemptOutcome.UNKNOWN
    note: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


Entity = Concept | Intent | Tradeoff | Assumption | FailureRecord | RetryAttempt

ENTITY_KINDS: dict[type, EntityKind] = {
    Concept: EntityKind.CONCEPT,
    Intent: EntityKind.INTENT,
    Tradeoff: EntityKind.TRADEOFF,
    Assumption: EntityKind.ASSUMPTION,
    FailureRecord: EntityKind.FAILURE,
    RetryAttempt: EntityKind.ATTEMPT,
}


def kind_of(entity: Entity) -> EntityKind:
    return ENTITY_KINDS[type(entity)]


@dataclass
class ProjectKnowledge:
    """Aggregate root for one project's knowledge."""

    project_id: str
    version: int = 0
    updated_at: datetime | None = None
    concepts: dict[str, Concept] = field(default_factory=dict)
    intents: dict[str, Intent] = field(default_factory=dict)
    tradeoffs: dict[str, Tradeoff] = field(default_factory=dict)
    assumptions: dict[str, Assumption] = field(default_factory=dict)
    failures: dict[str, FailureRecord] = field(default_factory=dict)
    attempts: dict[str, RetryAttempt] = field(default_factory=dict)

    def collection(self, kind: EntityKind) -> dict:
        return {
            EntityKind.CONCEPT: self.concepts,
            EntityKind.INTENT: self.intents,
            EntityKind.TRADEOFF: self.tradeoffs,
            EntityKind.ASSUMPTION: self.assumptions,
            EntityKind.FAILURE: self.failures,
            EntityKind.ATTEMPT: self.attempts,
        }[kind]

    def counts(self) -> dict[str, int]:
        return {kind.value: len(self.collection(kind)) for kind in EntityKind}


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


@dataclass
class Detection:
    """One raw concept detection reported by the code parser or the provider."""

    category: ConceptCategory
    location: CodeLocation
    confidence: float
    signature: str = ""
    related_locations: list[CodeLocation] = field(default_factory=list)

    @property
    def identity_key(self) -> str:
        return f"{self.category.value}|{self.location.key}|{normalize_text(self.signature)}"

    @property
    def concept_id(self) -> str:
        return "c-" + stable_hash(self.identity_key)


@dataclass
class AssumptionDraft:
    description: str
    kind: AssumptionKind
    location: CodeLocation | None = None
    concept_ids: list[str] = field(default_factory=list)


@dataclass
class TradeoffDraft:
    decision: str
    alternatives: list[str] = field(default_factory=list)
    rationale: str = ""
    constraints: list[str] = field(default_factory=list)


@dataclass
class StructuralSummary:
    detections: list[Detection] = field(default_factory=list)
    assumptions: list[AssumptionDraft] = field(default_factory=list)
    intent: str | None = None
    tradeoff: TradeoffDraft | None = None
    code: str = ""  # snippet handed to the provider when nothing was detected


@dataclass
class CodeChangeEvent:
    location: CodeLocation
    change_kind: ChangeKind
    structural_summary: StructuralSummary = field(default_factory=StructuralSummary)
    observed_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class FailureSignal:
    error_type: str
    message: str
    locations: list[CodeLocation]
    observed_at: datetime = field(default_factory=utcnow)
    concept_ids: list[str] = field(default_factory=list)  # hints from the caller


@dataclass
class ExtractionResult:
    detections: list[Detection] = field(default_factory=list)
    assumptions: list[AssumptionDraft] = field(default_factory=list)
    intent: str | None = None


@dataclass
class ProviderResponse:
    generated_code: str
    free_text_explanation: str = ""
