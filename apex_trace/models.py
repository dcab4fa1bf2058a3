"""Trace data model — every parsed log and merged capture maps to these records."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    TRIGGER = "trigger"
    FLOW = "flow"
    DML = "dml"
    SOQL = "soql"
    VALIDATION = "validation"
    WORKFLOW = "workflow"
    DUPLICATE = "duplicate"
    EXCEPTION = "exception"
    NETWORK = "network"
    UI_ERROR = "ui-error"


class AutomationKind(str, Enum):
    TRIGGER = "trigger"
    FLOW = "flow"


class Level(str, Enum):
    """Shared high/medium/low scale for risk and confidence."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


# ---------------------------------------------------------------------------
# Extracted events
# ---------------------------------------------------------------------------


@dataclass
class TimelineEvent:
    order: int
    kind: EventKind
    name: str
    detail: str = ""
    line_number: int | None = None
    count_badge: int | None = None


@dataclass
class Automation:
    kind: AutomationKind
    name: str
    object_name: str | None = None
    events: list[str] = field(default_factory=list)
    interview_id: str | None = None
    is_resumed: bool = False
    is_stitched: bool = False
    stitch_segment_index: int | None = None
    stitch_total_segments: int | None = None
    stitch_log_numbers: list[int] = field(default_factory=list)
    is_managed_package: bool = False
    namespace: str | None = None

    @property
    def key(self) -> tuple[AutomationKind, str]:
        return self.kind, self.name


@dataclass
class DmlOperation:
    operation: str  # Insert, Update, Delete, Undelete, Upsert, Merge
    object_type: str
    row_count: int
    code_unit: str | None = None
    log_line: int | None = None
    inferred: bool = False


@dataclass
class SoqlQuery:
    query: str
    row_count: int | None = None
    line_number: int | None = None
    log_line: int | None = None
    code_unit: str | None = None


@dataclass
class ExceptionRecord:
    type: str
    message: str
    line_number: int | None = None
    log_line: int | None = None
    code_unit: str | None = None
    is_fatal: bool = False
    is_limit_exception: bool = False


@dataclass
class CodeUnitTiming:
    name: str
    start_ns: int
    end_ns: int
    duration_ms: float


@dataclass
class LimitUsage:
    used: int
    limit: int

    @property
    def ratio(self) -> float:
        return self.used / self.limit if self.limit > 0 else 0.0


@dataclass
class FlowElement:
    flow_name: str
    element_type: str
    element_name: str
    status: str = "started"  # started, completed, faulted
    outcome: str | None = None
    iteration_count: int | None = None
    is_fault: bool = False
    fault_message: str | None = None


@dataclass
class ValidationResult:
    rule_name: str
    outcome: str  # PASS or FAIL


@dataclass
class WorkflowRule:
    rule_name: str


@dataclass
class Callout:
    method: str
    endpoint: str


@dataclass
class DuplicateRule:
    rule_name: str
    dml_type: str
    outcome: str = "EVALUATED"  # EVALUATED, CLEAN, DUPLICATES_FOUND
    duplicates_found: int = 0
    action: str | None = None


@dataclass
class UserDebugLine:
    line_number: int
    level: str
    message: str
    timestamp: str | None = None


@dataclass
class AsyncOperation:
    type: str  # Queueable, Future, Batch, Scheduled
    class_name: str


@dataclass
class Transaction:
    id: int
    start_event: int
    end_event: int | None = None
    event_count: int = 0


@dataclass
class NetworkCall:
    name: str
    class_name: str | None = None
    method_name: str | None = None
    detail: str = ""
    status_code: int | None = None
    failed: bool = False
    is_error: bool = False
    duration_ms: int = 0
    timestamp: str | None = None
    url: str | None = None
    count: int = 1
    caller_components: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Derived signals
# ---------------------------------------------------------------------------


@dataclass
class RecursionSignal:
    automation: str
    kind: AutomationKind
    count: int
    risk: Level


@dataclass
class CascadeStep:
    depth: int
    object: str
    operation: str


@dataclass
class BulkSafetySignal:
    automation: str
    risk: Level
    reason: str


@dataclass
class ObjectImpact:
    root_object: str | None = None
    touched_objects: list[str] = field(default_factory=list)
    dml_objects: list[str] = field(default_factory=list)
    query_objects: list[str] = field(default_factory=list)
    blast_radius: int = 0


@dataclass
class LogCompleteness:
    is_complete: bool = True
    warnings: list[str] = field(default_factory=list)


@dataclass
class ParserHealth:
    total_lines: int = 0
    parsed_events: int = 0
    unknown_lines: int = 0
    coverage_pct: int = 100
    truncated: bool = False
    salesforce_truncated: bool = False


@dataclass
class TransactionFingerprint:
    shape: str = ""
    hash: str = ""
    event_count: int = 0
    unique_kinds: int = 0


@dataclass
class InteractionRoot:
    kind: str = "unknown"  # flow, trigger, apex, unknown
    name: str | None = None
    confidence: Level = Level.LOW


@dataclass
class DensityEntry:
    object: str
    trigger_count: int = 0
    flow_count: int = 0
    total: int = 0


@dataclass
class LimitSpike:
    metric: str
    message: str
    severity: Level


@dataclass
class SoqlCostSignal:
    query: str
    signals: list[str]
    row_count: int = 0
    log_line: int | None = None


# ---------------------------------------------------------------------------
# Heuristic output
# ---------------------------------------------------------------------------


@dataclass
class Evidence:
    kind: str
    detail: str
    line_number: int | None = None


@dataclass
class PrimarySuspect:
    kind: AutomationKind
    name: str
    score: int = 0
    reasons: list[str] = field(default_factory=list)
    evidence: list[Evidence] = field(default_factory=list)


@dataclass
class Recommendation:
    id: str
    severity: Severity
    title: str
    detail: str
    fix: str
    metric: str
    code_unit: str | None = None


@dataclass
class BudgetViolation:
    metric: str
    used: int
    limit: int
    pct: int
    budget: int


@dataclass
class ImpactHint:
    severity: Severity
    hint: str
    category: str


@dataclass
class IncidentFlag:
    metric: str
    severity: str  # warning, critical, info
    message: str
    current: int | None = None
    baseline: int | None = None


@dataclass
class Confidence:
    records: Level | None = None
    timing: Level | None = None
    cascade: Level | None = None
    limits: Level | None = None

    def overall(self) -> Level | None:
        """Worst non-null component, or None when nothing was scored."""
        values = [v for v in (self.records, self.timing, self.cascade, self.limits) if v is not None]
        if not values:
            return None
        if Level.LOW in values:
            return Level.LOW
        if Level.MEDIUM in values:
            return Level.MEDIUM
        return Level.HIGH


@dataclass
class TraceStats:
    total_automations: int = 0
    total_dml: int = 0
    total_soql: int = 0
    total_validation_fails: int = 0
    total_callouts: int = 0
    total_duplicate_rules: int = 0
    total_exceptions: int = 0
    has_fatal_error: bool = False
    total_debug_lines: int = 0
    total_flow_elements: int = 0
    total_soql_rows: int = 0
    total_async_ops: int = 0
    total_transactions: int = 0
    has_recursion: bool = False
    has_partial_log: bool = False
    blast_radius: int = 0


# ---------------------------------------------------------------------------
# Aggregate root
# ---------------------------------------------------------------------------


@dataclass
class TraceResult:
    automations: list[Automation] = field(default_factory=list)
    dml_ops: list[DmlOperation] = field(default_factory=list)
    soql_queries: list[SoqlQuery] = field(default_factory=list)
    validations: list[ValidationResult] = field(default_factory=list)
    duplicate_rules: list[DuplicateRule] = field(default_factory=list)
    workflows: list[WorkflowRule] = field(default_factory=list)
    callouts: list[Callout] = field(default_factory=list)
    timeline: list[TimelineEvent] = field(default_factory=list)
    exceptions: list[ExceptionRecord] = field(default_factory=list)
    user_debug: list[UserDebugLine] = field(default_factory=list)
    flow_elements: list[FlowElement] = field(default_factory=list)
    code_unit_timings: list[CodeUnitTiming] = field(default_factory=list)
    async_operations: list[AsyncOperation] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)

    recursion_signals: list[RecursionSignal] = field(default_factory=list)
    dml_cascade: list[CascadeStep] = field(default_factory=list)
    bulk_safety_signals: list[BulkSafetySignal] = field(default_factory=list)
    object_impact: ObjectImpact = field(default_factory=ObjectImpact)
    limit_risk: dict[str, Level] = field(default_factory=dict)
    log_completeness: LogCompleteness = field(default_factory=LogCompleteness)
    governor_limits: dict[str, LimitUsage] = field(default_factory=dict)
    parser_health: ParserHealth = field(default_factory=ParserHealth)
    transaction_fingerprint: TransactionFingerprint = field(default_factory=TransactionFingerprint)
    interaction_root: InteractionRoot = field(default_factory=InteractionRoot)
    slowest_unit: CodeUnitTiming | None = None
    automation_density: list[DensityEntry] = field(default_factory=list)
    limit_spikes: list[LimitSpike] = field(default_factory=list)
    soql_cost_signals: list[SoqlCostSignal] = field(default_factory=list)
    debug_level_warnings: list[str] = field(default_factory=list)
    raw_log_snippets: dict[int, str] = field(default_factory=dict)

    is_large_log: bool = False
    is_salesforce_truncated: bool = False
    total_log_lines: int = 0
    nothing_happened: bool = False
    log_count: int = 1
    log_ids: list[str] = field(default_factory=list)
    stitched_interviews: int = 0

    confidence: Confidence = field(default_factory=Confidence)
    primary_suspects: list[PrimarySuspect] = field(default_factory=list)
    impact_hints: list[ImpactHint] = field(default_factory=list)
    budget_violations: list[BudgetViolation] = field(default_factory=list)
    incident_flags: list[IncidentFlag] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    trace_quality: int = 100
    stats: TraceStats = field(default_factory=TraceStats)

    # Enrichment annex: appended after scoring, never feeds back into scores.
    network_calls: list[NetworkCall] = field(default_factory=list)
    ui_errors: list[dict[str, Any]] = field(default_factory=list)
    records_affected: list[dict[str, Any]] = field(default_factory=list)
    async_correlation: list[dict[str, Any]] = field(default_factory=list)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def _dict_factory(items: list[tuple[str, Any]]) -> dict[str, Any]:
    return {k: _plain(v) for k, v in items}


def to_dict(obj: Any) -> dict[str, Any]:
    """Convert any model dataclass to plain JSON-ready data (enums become values)."""
    return asdict(obj, dict_factory=_dict_factory)


def trace_to_dict(result: TraceResult) -> dict[str, Any]:
    """Convert a TraceResult to a dict, dropping top-level None values for cleaner JSON."""
    return {k: v for k, v in to_dict(result).items() if v is not None}
