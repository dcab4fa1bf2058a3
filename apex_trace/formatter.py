"""Output formatters — plain-text summary and JSON."""

import json
from typing import Callable

from apex_trace.models import EventKind, TraceResult, trace_to_dict

EVENT_LABELS = {
    EventKind.TRIGGER: "Trigger",
    EventKind.FLOW: "Flow",
    EventKind.DML: "DML",
    EventKind.SOQL: "SOQL",
    EventKind.VALIDATION: "Validation",
    EventKind.WORKFLOW: "Workflow",
    EventKind.DUPLICATE: "Duplicate Rule",
    EventKind.EXCEPTION: "Exception",
    EventKind.NETWORK: "Network",
    EventKind.UI_ERROR: "UI Error",
}


def _summary_line(result: TraceResult) -> str:
    s = result.stats
    line = f"Captured {result.log_count} log(s): {s.total_automations} automation(s), {s.total_dml} DML, {s.total_soql} SOQL"
    if s.has_fatal_error:
        line += " [FATAL ERROR]"
    elif s.total_exceptions > 0:
        line += f" [{s.total_exceptions} exception(s)]"
    return line


def format_text(result: TraceResult) -> str:
    """Human-readable summary: stats, warnings, timeline, suspects, recommendations."""
    if result.nothing_happened:
        lines = ["Nothing happened: no automations, DML, flow elements or exceptions were captured."]
        lines.extend(f"  ! {w}" for w in result.debug_level_warnings)
        return "\n".join(lines)

    overall = result.confidence.overall()
    lines = [
        _summary_line(result),
        f"Trace quality: {result.trace_quality}/100"
        + (f"  Confidence: {overall.value}" if overall else ""),
        f"Parser coverage: {result.parser_health.coverage_pct}% of {result.parser_health.total_lines} lines",
    ]
    if result.interaction_root.kind != "unknown":
        lines.append(
            f"Root: {result.interaction_root.kind} {result.interaction_root.name} "
            f"({result.interaction_root.confidence.value})"
        )
    if result.slowest_unit:
        lines.append(f"Slowest step: {result.slowest_unit.name} ({result.slowest_unit.duration_ms:.1f} ms)")

    warnings = result.log_completeness.warnings + result.debug_level_warnings
    if warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  ! {w}" for w in warnings)

    if result.timeline:
        lines.append("")
        lines.append("Timeline:")
        for event in result.timeline:
            badge = f" x{event.count_badge}" if event.count_badge else ""
            detail = f" ({event.detail})" if event.detail else ""
            lines.append(f"  {event.order:>4}  {EVENT_LABELS[event.kind]:<14} {event.name}{detail}{badge}")

    if result.governor_limits:
        lines.append("")
        lines.append("Governor limits:")
        for metric, usage in result.governor_limits.items():
            risk = result.limit_risk.get(metric)
            lines.append(f"  {metric:<18} {usage.used}/{usage.limit}" + (f"  [{risk.value}]" if risk else ""))

    if result.primary_suspects:
        lines.append("")
        lines.append("Primary suspects:")
        for suspect in result.primary_suspects:
            lines.append(f"  {suspect.score:>2}%  {suspect.kind.value} {suspect.name}: {'; '.join(suspect.reasons)}")

    if result.incident_flags:
        lines.append("")
        lines.append("Incidents:")
        lines.extend(f"  [{flag.severity}] {flag.message}" for flag in result.incident_flags)

    if result.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        for rec in result.recommendations:
            lines.append(f"  [{rec.severity.value.upper()}] {rec.title}")
            lines.append(f"      {rec.detail}")
            lines.append(f"      Fix: {rec.fix}")
    return "\n".join(lines)


def format_json(result: TraceResult) -> str:
    return json.dumps(trace_to_dict(result), indent=2)


def get_formatter(output_format: str = "text") -> Callable[[TraceResult], str]:
    """Factory that returns the right formatter for the --output choice."""
    if output_format == "json":
        return format_json
    return format_text
