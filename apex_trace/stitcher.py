"""Cross-log stitcher and merger — links flow interviews across logs, folds N traces into one."""

import copy
import functools
import logging

from apex_trace.builder import (
    compute_automation_density,
    compute_fingerprint,
    compute_object_impact,
    coverage_pct,
    derive_dml_cascade,
    derive_recursion_signals,
)
from apex_trace.errors import MergePreconditionError
from apex_trace.limits import compute_limit_risk, merge_limits
from apex_trace.models import (
    Automation,
    AutomationKind,
    LogCompleteness,
    ParserHealth,
    TraceResult,
    TraceStats,
)

logger = logging.getLogger(__name__)


def stitch_interviews(traces: list[TraceResult]) -> int:
    """Mark flow interviews that appear in more than one log. Returns the number stitched.

    Segments are numbered in log order, 1-based, and every segment carries
    the full list of 1-based log numbers it spans.
    """
    interviews: dict[str, list[tuple[int, Automation]]] = {}
    for log_index, trace in enumerate(traces):
        for auto in trace.automations:
            if auto.kind is AutomationKind.FLOW and auto.interview_id:
                interviews.setdefault(auto.interview_id, []).append((log_index, auto))

    stitched = 0
    for segments in interviews.values():
        if len(segments) < 2:
            continue
        log_numbers = [log_index + 1 for log_index, _ in segments]
        for idx, (_, auto) in enumerate(segments):
            auto.is_stitched = True
            auto.stitch_segment_index = idx + 1
            auto.stitch_total_segments = len(segments)
            auto.stitch_log_numbers = list(log_numbers)
        stitched += 1

    for trace in traces:
        trace.stitched_interviews = stitched
    if stitched:
        logger.info("Stitched %d flow interview(s) across %d logs", stitched, len(traces))
    return stitched


def _merge_stats(a: TraceStats, b: TraceStats) -> TraceStats:
    return TraceStats(
        total_automations=a.total_automations + b.total_automations,
        total_dml=a.total_dml + b.total_dml,
        total_soql=a.total_soql + b.total_soql,
        total_validation_fails=a.total_validation_fails + b.total_validation_fails,
        total_callouts=a.total_callouts + b.total_callouts,
        total_duplicate_rules=a.total_duplicate_rules + b.total_duplicate_rules,
        total_exceptions=a.total_exceptions + b.total_exceptions,
        has_fatal_error=a.has_fatal_error or b.has_fatal_error,
        total_debug_lines=a.total_debug_lines + b.total_debug_lines,
        total_flow_elements=a.total_flow_elements + b.total_flow_elements,
        total_soql_rows=a.total_soql_rows + b.total_soql_rows,
        total_async_ops=a.total_async_ops + b.total_async_ops,
        total_transactions=(a.total_transactions or 1) + (b.total_transactions or 1),
        has_partial_log=a.has_partial_log or b.has_partial_log,
    )


def merge_pair(a: TraceResult, b: TraceResult) -> TraceResult:
    """Merge two traces into a fresh one. Neither input is modified."""
    a = copy.deepcopy(a)
    b = copy.deepcopy(b)

    timeline = sorted(a.timeline + b.timeline, key=lambda e: e.order)
    for i, event in enumerate(timeline):
        event.order = i + 1

    known = {auto.key for auto in a.automations}
    automations = a.automations + [auto for auto in b.automations if auto.key not in known]

    merged = TraceResult(
        automations=automations,
        dml_ops=a.dml_ops + b.dml_ops,
        soql_queries=a.soql_queries + b.soql_queries,
        validations=a.validations + b.validations,
        duplicate_rules=a.duplicate_rules + b.duplicate_rules,
        workflows=a.workflows + b.workflows,
        callouts=a.callouts + b.callouts,
        timeline=timeline,
        exceptions=a.exceptions + b.exceptions,
        user_debug=a.user_debug + b.user_debug,
        flow_elements=a.flow_elements + b.flow_elements,
        code_unit_timings=sorted(a.code_unit_timings + b.code_unit_timings, key=lambda t: t.start_ns),
        async_operations=a.async_operations + b.async_operations,
        transactions=a.transactions + b.transactions,
        bulk_safety_signals=a.bulk_safety_signals + b.bulk_safety_signals,
        governor_limits=merge_limits(a.governor_limits, b.governor_limits),
        log_completeness=LogCompleteness(
            is_complete=a.log_completeness.is_complete and b.log_completeness.is_complete,
            warnings=a.log_completeness.warnings + b.log_completeness.warnings,
        ),
        interaction_root=a.interaction_root,
        limit_spikes=a.limit_spikes + b.limit_spikes,
        soql_cost_signals=a.soql_cost_signals + b.soql_cost_signals,
        debug_level_warnings=list(dict.fromkeys(a.debug_level_warnings + b.debug_level_warnings)),
        raw_log_snippets={**a.raw_log_snippets, **b.raw_log_snippets},
        is_large_log=a.is_large_log or b.is_large_log,
        is_salesforce_truncated=a.is_salesforce_truncated or b.is_salesforce_truncated,
        total_log_lines=a.total_log_lines + b.total_log_lines,
        nothing_happened=a.nothing_happened and b.nothing_happened,
        log_count=a.log_count + b.log_count,
        log_ids=a.log_ids + b.log_ids,
        stitched_interviews=max(a.stitched_interviews, b.stitched_interviews),
        network_calls=a.network_calls + b.network_calls,
        ui_errors=a.ui_errors + b.ui_errors,
        records_affected=a.records_affected + b.records_affected,
        async_correlation=a.async_correlation + b.async_correlation,
    )

    if a.slowest_unit and b.slowest_unit:
        merged.slowest_unit = a.slowest_unit if a.slowest_unit.duration_ms >= b.slowest_unit.duration_ms else b.slowest_unit
    else:
        merged.slowest_unit = a.slowest_unit or b.slowest_unit

    # Derived values are not additive; rebuild them from the merged collections.
    merged.recursion_signals = derive_recursion_signals(merged.automations)
    merged.dml_cascade = derive_dml_cascade(merged.timeline)
    merged.object_impact = compute_object_impact(merged)
    merged.automation_density = compute_automation_density(merged.automations)
    merged.limit_risk = compute_limit_risk(merged.governor_limits)
    merged.transaction_fingerprint = compute_fingerprint(merged.timeline)

    health = ParserHealth(
        total_lines=a.parser_health.total_lines + b.parser_health.total_lines,
        parsed_events=a.parser_health.parsed_events + b.parser_health.parsed_events,
        unknown_lines=a.parser_health.unknown_lines + b.parser_health.unknown_lines,
        truncated=a.parser_health.truncated or b.parser_health.truncated,
        salesforce_truncated=a.parser_health.salesforce_truncated or b.parser_health.salesforce_truncated,
    )
    health.coverage_pct = coverage_pct(health.total_lines, health.unknown_lines)
    merged.parser_health = health

    merged.stats = _merge_stats(a.stats, b.stats)
    merged.stats.has_recursion = bool(merged.recursion_signals)
    merged.stats.blast_radius = merged.object_impact.blast_radius
    return merged


def merge_traces(ordered: list[TraceResult]) -> TraceResult:
    """Left fold of merge_pair over traces in log retrieval order."""
    if not ordered:
        raise MergePreconditionError("merge_traces requires at least one trace")
    if len(ordered) == 1:
        return ordered[0]
    merged = functools.reduce(merge_pair, ordered)
    logger.info("Merged %d traces: %d events, %d automations", len(ordered), len(merged.timeline), len(merged.automations))
    return merged
