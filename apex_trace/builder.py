"""Per-log trace builder — classifier output plus every derived sub-analysis."""

import hashlib
import logging
import re
from collections import Counter

from apex_trace.classifier import MAX_LOG_LINES, ParserState, classify
from apex_trace.config import Config
from apex_trace.flow_analysis import FlowAnalyzer, FlowElementAnalyzer
from apex_trace.limits import compute_limit_risk, parse_governor_limits
from apex_trace.models import (
    Automation,
    AutomationKind,
    BulkSafetySignal,
    CascadeStep,
    CodeUnitTiming,
    DensityEntry,
    DmlOperation,
    EventKind,
    InteractionRoot,
    Level,
    LimitSpike,
    LogCompleteness,
    ObjectImpact,
    ParserHealth,
    RecursionSignal,
    SoqlCostSignal,
    TimelineEvent,
    TraceResult,
    TraceStats,
    TransactionFingerprint,
)

logger = logging.getLogger(__name__)

TRUNCATION_TAIL_CHARS = 5000
DENSITY_THRESHOLD = 3

_DEFAULT_FLOW_ANALYZER = FlowElementAnalyzer()
_FROM_RE = re.compile(r"FROM\s+(\w+)", re.IGNORECASE)
_WHERE_RE = re.compile(r"WHERE", re.IGNORECASE)
_FROM_KEYWORD_RE = re.compile(r"FROM", re.IGNORECASE)
_NAMESPACE_RE = re.compile(r"^(\w+?)__")
_APEX_ENTRY_RE = re.compile(r"Controller|Action", re.IGNORECASE)

WARN_MISSING_FINISH = "Missing EXECUTION_FINISHED, log may be truncated"
WARN_NO_LIMIT_BLOCK = "No governor limits block, debug level may be insufficient"
WARN_SALESFORCE_TRUNCATED = (
    "Log truncated by Salesforce (5 MB platform limit), governor limits recovered from intermediate blocks"
)
DEBUG_WARN_FLOW_DETAIL = "Flow detail not captured, set Workflow debug level to FINER"
DEBUG_WARN_NO_LIMITS = "No governor limits captured, ensure Apex debug level is at least INFO"
DEBUG_WARN_NO_USER_DEBUG = "No USER_DEBUG output, set Apex debug level to DEBUG for full visibility"


# ---------------------------------------------------------------------------
# Derivations shared with the merger
# ---------------------------------------------------------------------------


def derive_recursion_signals(automations: list[Automation]) -> list[RecursionSignal]:
    """Any (kind, name) seen more than once; high risk above three occurrences."""
    counts = Counter(a.key for a in automations)
    return [
        RecursionSignal(automation=name, kind=kind, count=count, risk=Level.HIGH if count > 3 else Level.MEDIUM)
        for (kind, name), count in counts.items()
        if count > 1
    ]


def derive_dml_cascade(timeline: list[TimelineEvent]) -> list[CascadeStep]:
    """First DML per distinct object, in timeline order."""
    steps: list[CascadeStep] = []
    seen: set[str] = set()
    for event in timeline:
        if event.kind is not EventKind.DML:
            continue
        operation, _, obj = event.name.partition(" ")
        if obj and obj not in seen:
            seen.add(obj)
            steps.append(CascadeStep(depth=len(steps), object=obj, operation=operation))
    return steps


def compute_object_impact(result: TraceResult) -> ObjectImpact:
    dml_objects = list(dict.fromkeys(d.object_type for d in result.dml_ops))
    query_objects: list[str] = []
    for q in result.soql_queries:
        m = _FROM_RE.search(q.query)
        if m and m.group(1) not in query_objects:
            query_objects.append(m.group(1))
    touched = list(dict.fromkeys(dml_objects + query_objects))
    root = next((a.object_name for a in result.automations if a.object_name), None)
    if root is None and dml_objects:
        root = dml_objects[0]
    return ObjectImpact(
        root_object=root,
        touched_objects=touched,
        dml_objects=dml_objects,
        query_objects=query_objects,
        blast_radius=len(touched),
    )


def compute_automation_density(automations: list[Automation]) -> list[DensityEntry]:
    density: dict[str, DensityEntry] = {}
    for auto in automations:
        obj = auto.object_name or "Unknown"
        entry = density.setdefault(obj, DensityEntry(object=obj))
        if auto.kind is AutomationKind.TRIGGER:
            entry.trigger_count += 1
        else:
            entry.flow_count += 1
        entry.total += 1
    dense = [d for d in density.values() if d.total >= DENSITY_THRESHOLD]
    return sorted(dense, key=lambda d: d.total, reverse=True)


def compute_fingerprint(timeline: list[TimelineEvent]) -> TransactionFingerprint:
    """Stable hash of the ordered kind:name sequence (shape, not content)."""
    tokens = [f"{e.kind.value}:{e.name}" for e in timeline]
    shape = "|".join(tokens)
    return TransactionFingerprint(
        shape=shape,
        hash=hashlib.sha256(shape.encode("utf-8")).hexdigest()[:16],
        event_count=len(tokens),
        unique_kinds=len({e.kind for e in timeline}),
    )


def coverage_pct(total_lines: int, unknown_lines: int) -> int:
    if total_lines <= 0:
        return 100
    return round((1 - unknown_lines / total_lines) * 100)


def compute_stats(result: TraceResult) -> TraceStats:
    return TraceStats(
        total_automations=len(result.automations),
        total_dml=len(result.dml_ops),
        total_soql=len(result.soql_queries),
        total_validation_fails=sum(1 for v in result.validations if v.outcome == "FAIL"),
        total_callouts=len(result.callouts),
        total_duplicate_rules=len(result.duplicate_rules),
        total_exceptions=len(result.exceptions),
        has_fatal_error=any(e.is_fatal for e in result.exceptions),
        total_debug_lines=len(result.user_debug),
        total_flow_elements=len(result.flow_elements),
        total_soql_rows=sum(q.row_count or 0 for q in result.soql_queries),
        total_async_ops=len(result.async_operations),
        total_transactions=len(result.transactions) or 1,
        has_recursion=bool(result.recursion_signals),
        has_partial_log=not result.log_completeness.is_complete,
        blast_radius=result.object_impact.blast_radius,
    )


def is_nothing_happened(result: TraceResult) -> bool:
    return not (result.automations or result.dml_ops or result.flow_elements or result.exceptions)


# ---------------------------------------------------------------------------
# Single-log derivations
# ---------------------------------------------------------------------------


def _add_duplicate_rule_events(state: ParserState) -> None:
    for dup in state.trace.duplicate_rules:
        detail = f"{dup.duplicates_found} found" if dup.outcome == "DUPLICATES_FOUND" else "Clean"
        state.add_event(EventKind.DUPLICATE, dup.rule_name, detail)


def _close_open_transaction(state: ParserState) -> None:
    txn = state.current_txn
    if txn is not None:
        txn.end_event = len(state.trace.timeline)
        txn.event_count = txn.end_event - txn.start_event
        state.current_txn = None


def _infer_root_dml(result: TraceResult) -> None:
    """Add the user's own save as a DML entry; the platform never logs it as DML_BEGIN."""
    first = next(
        (a for a in result.automations if a.kind is AutomationKind.TRIGGER and a.object_name and a.events),
        None,
    )
    if first is None:
        return
    event = first.events[0].lower()
    if "insert" in event:
        operation = "Insert"
    elif "undelete" in event:
        operation = "Undelete"
    elif "delete" in event:
        operation = "Delete"
    else:
        operation = "Update"
    if any(d.object_type == first.object_name and d.operation == operation for d in result.dml_ops):
        return
    result.dml_ops.insert(
        0, DmlOperation(operation=operation, object_type=first.object_name, row_count=1, inferred=True)
    )
    result.timeline.insert(
        0,
        TimelineEvent(
            order=-1,
            kind=EventKind.DML,
            name=f"{operation} {first.object_name}",
            detail="1 row(s), inferred from trigger events",
        ),
    )


def _bulk_safety_signals(result: TraceResult) -> list[BulkSafetySignal]:
    trigger_names = list(dict.fromkeys(a.name for a in result.automations if a.kind is AutomationKind.TRIGGER))
    if not trigger_names:
        return []
    signals = []
    if len(result.soql_queries) > len(trigger_names) * 5:
        signals.append(
            BulkSafetySignal(
                automation=trigger_names[0],
                risk=Level.MEDIUM,
                reason="High SOQL count relative to triggers, possible SOQL in loop",
            )
        )
    if len(result.dml_ops) > len(trigger_names) * 3:
        signals.append(
            BulkSafetySignal(
                automation=trigger_names[0],
                risk=Level.MEDIUM,
                reason="High DML count relative to triggers, possible DML in loop",
            )
        )
    return signals


def _log_completeness(text: str, result: TraceResult, tail_chars: int) -> LogCompleteness:
    completeness = LogCompleteness()
    if "EXECUTION_STARTED" in text and "EXECUTION_FINISHED" not in text:
        completeness.is_complete = False
        completeness.warnings.append(WARN_MISSING_FINISH)
    if "LIMIT_USAGE_FOR_NS" not in text and result.automations:
        completeness.warnings.append(WARN_NO_LIMIT_BLOCK)
    if result.is_large_log:
        completeness.warnings.append(
            f"Log truncated to {result.parser_health.total_lines:,} of {result.total_log_lines:,} lines"
        )

    tail = text[-tail_chars:]
    result.is_salesforce_truncated = "EXECUTION_FINISHED" not in tail and "CUMULATIVE_LIMIT_USAGE_END" not in tail
    if result.is_salesforce_truncated and not result.is_large_log:
        completeness.is_complete = False
        completeness.warnings.append(WARN_SALESFORCE_TRUNCATED)
    return completeness


def _tag_managed_packages(automations: list[Automation]) -> None:
    for auto in automations:
        m = _NAMESPACE_RE.match(auto.name)
        auto.is_managed_package = bool(m)
        auto.namespace = m.group(1) if m else None


def _interaction_root(result: TraceResult) -> InteractionRoot:
    first = next((e for e in result.timeline if e.order >= 0), None)
    has_trigger = any(a.kind is AutomationKind.TRIGGER for a in result.automations)
    if first is not None:
        if first.kind is EventKind.FLOW and not has_trigger:
            return InteractionRoot(kind="flow", name=first.name, confidence=Level.HIGH)
        if first.kind is EventKind.TRIGGER:
            return InteractionRoot(kind="trigger", name=first.name, confidence=Level.HIGH)
    apex_entry = next((t for t in result.code_unit_timings if _APEX_ENTRY_RE.search(t.name)), None)
    if apex_entry is not None:
        return InteractionRoot(kind="apex", name=apex_entry.name, confidence=Level.MEDIUM)
    return InteractionRoot()


def slowest_unit(timings: list[CodeUnitTiming]) -> CodeUnitTiming | None:
    return max(timings, key=lambda t: t.duration_ms) if timings else None


def _limit_spikes(result: TraceResult) -> list[LimitSpike]:
    spikes = []
    cpu = result.governor_limits.get("cpuTime")
    if cpu is not None and cpu.ratio > 0.7:
        spikes.append(
            LimitSpike(
                metric="CPU",
                message=f"CPU usage at {round(cpu.ratio * 100)}%, late-stage processing detected",
                severity=Level.HIGH if cpu.ratio > 0.85 else Level.MEDIUM,
            )
        )
    heap = result.governor_limits.get("heapSize")
    if heap is not None and heap.ratio > 0.7:
        spikes.append(
            LimitSpike(
                metric="Heap",
                message=f"Heap usage at {round(heap.ratio * 100)}%, possible large data structures",
                severity=Level.HIGH if heap.ratio > 0.85 else Level.MEDIUM,
            )
        )
    trigger_count = sum(1 for a in result.automations if a.kind is AutomationKind.TRIGGER) or 1
    if len(result.soql_queries) > trigger_count * 8:
        spikes.append(
            LimitSpike(
                metric="SOQL",
                message=f"{len(result.soql_queries)} SOQL queries for {trigger_count} trigger(s), rapid query growth",
                severity=Level.MEDIUM,
            )
        )
    return spikes


def _soql_cost_signals(result: TraceResult) -> list[SoqlCostSignal]:
    repeats = Counter(q.query for q in result.soql_queries)
    seen: set[str] = set()
    out = []
    for q in result.soql_queries:
        if q.query in seen:
            continue
        signals = []
        rows = q.row_count or 0
        if rows > 200:
            signals.append(f"{rows} rows returned")
        if q.query and not _WHERE_RE.search(q.query) and _FROM_KEYWORD_RE.search(q.query):
            signals.append("No WHERE clause")
        if repeats[q.query] > 2:
            signals.append(f"Repeated {repeats[q.query]}x")
        if signals:
            seen.add(q.query)
            out.append(SoqlCostSignal(query=q.query, signals=signals, row_count=rows, log_line=q.log_line))
    return out


def _debug_level_warnings(result: TraceResult) -> list[str]:
    warnings = []
    has_flow = any(a.kind is AutomationKind.FLOW for a in result.automations)
    if has_flow and not result.flow_elements:
        warnings.append(DEBUG_WARN_FLOW_DETAIL)
    if not result.governor_limits and result.automations:
        warnings.append(DEBUG_WARN_NO_LIMITS)
    if not result.user_debug and result.code_unit_timings:
        warnings.append(DEBUG_WARN_NO_USER_DEBUG)
    return warnings


def _raw_log_snippets(lines: list[str], result: TraceResult) -> dict[int, str]:
    """Lines n-2..n+2 around every event and exception line."""
    snippets: dict[int, str] = {}
    targets = [e.line_number for e in result.timeline] + [e.log_line for e in result.exceptions]
    for n in targets:
        if not n or n in snippets or n > len(lines) or not lines[n - 1]:
            continue
        snippets[n] = "\n".join(lines[max(0, n - 3):min(len(lines), n + 2)])
    return snippets


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_log(text: str, flow_analyzer: FlowAnalyzer | None = None, config: Config | None = None) -> TraceResult:
    """Parse one raw debug log into a fully derived TraceResult. Never raises on log content."""
    max_lines = config.max_lines if config is not None else MAX_LOG_LINES
    tail_chars = config.truncation_tail_chars if config is not None else TRUNCATION_TAIL_CHARS

    if not text or not text.strip():
        result = TraceResult(nothing_happened=True)
        result.transaction_fingerprint = compute_fingerprint(result.timeline)
        result.stats = compute_stats(result)
        return result

    state = classify(text, flow_analyzer if flow_analyzer is not None else _DEFAULT_FLOW_ANALYZER, max_lines)
    result = state.trace

    _add_duplicate_rule_events(state)
    _close_open_transaction(state)
    result.governor_limits = parse_governor_limits(text)
    result.recursion_signals = derive_recursion_signals(result.automations)
    _infer_root_dml(result)
    result.dml_cascade = derive_dml_cascade(result.timeline)
    result.bulk_safety_signals = _bulk_safety_signals(result)
    result.object_impact = compute_object_impact(result)

    result.parser_health = ParserHealth(
        total_lines=len(state.lines),
        parsed_events=len(result.timeline) + len(result.governor_limits),
        unknown_lines=state.unknown_lines,
        coverage_pct=coverage_pct(len(state.lines), state.unknown_lines),
        truncated=result.is_large_log,
    )
    result.log_completeness = _log_completeness(text, result, tail_chars)
    result.parser_health.salesforce_truncated = result.is_salesforce_truncated

    _tag_managed_packages(result.automations)
    result.limit_risk = compute_limit_risk(result.governor_limits)
    result.interaction_root = _interaction_root(result)
    result.slowest_unit = slowest_unit(result.code_unit_timings)
    result.automation_density = compute_automation_density(result.automations)
    result.limit_spikes = _limit_spikes(result)
    result.soql_cost_signals = _soql_cost_signals(result)
    result.debug_level_warnings = _debug_level_warnings(result)
    result.nothing_happened = is_nothing_happened(result)
    result.raw_log_snippets = _raw_log_snippets(state.lines, result)
    result.transaction_fingerprint = compute_fingerprint(result.timeline)
    result.stats = compute_stats(result)

    logger.debug(
        "Parsed log: %d lines, %d events, %d unknown, coverage %d%%",
        result.parser_health.total_lines,
        len(result.timeline),
        state.unknown_lines,
        result.parser_health.coverage_pct,
    )
    return result
