"""Heuristic analysis engine — confidence, primary suspects, hints, budgets, quality.

``analyze`` annotates a parsed or merged TraceResult in place, in a fixed
order: budget violations, confidence, suspects, impact hints, incident flags,
trace quality, recommendations. Later steps read earlier outputs
(recommendations read budget violations, quality reads confidence).
"""

import logging
from typing import Iterable

from apex_trace.baseline import Baseline, compute_incident_flags
from apex_trace.models import (
    Automation,
    BudgetViolation,
    Confidence,
    EventKind,
    Evidence,
    ImpactHint,
    Level,
    PrimarySuspect,
    Severity,
    TraceResult,
)
from apex_trace.recommendations import generate_recommendations

logger = logging.getLogger(__name__)

DEFAULT_BUDGETS = {
    "soqlQueries": 80,
    "dmlStatements": 80,
    "cpuTime": 70,
    "heapSize": 70,
}

MAX_SUSPECTS = 3


def compute_budget_violations(result: TraceResult, budgets: dict[str, float] | None = None) -> list[BudgetViolation]:
    """Metrics whose usage percentage exceeds the configured budget."""
    violations = []
    for metric, budget in (budgets or DEFAULT_BUDGETS).items():
        usage = result.governor_limits.get(metric)
        if usage is None or usage.limit <= 0:
            continue
        pct = usage.used / usage.limit * 100
        if pct > budget:
            violations.append(
                BudgetViolation(metric=metric, used=usage.used, limit=usage.limit, pct=round(pct), budget=budget)
            )
    return violations


def compute_confidence(result: TraceResult) -> Confidence:
    dml_count = len(result.dml_ops)
    located = len(result.records_affected)
    single_log = result.log_count == 1

    if dml_count == 0:
        records = None
    elif single_log and 0 < located <= dml_count * 2:
        records = Level.HIGH
    elif located > 0:
        records = Level.MEDIUM
    else:
        records = Level.LOW

    cascade = None
    if len(result.dml_cascade) > 1:
        cascade = Level.HIGH if single_log else Level.MEDIUM

    return Confidence(
        records=records,
        timing=Level.HIGH if result.code_unit_timings else None,
        cascade=cascade,
        limits=Level.HIGH if result.governor_limits else None,
    )


# ---------------------------------------------------------------------------
# Primary suspects
# ---------------------------------------------------------------------------


def _score_automation(result: TraceResult, auto: Automation) -> tuple[float, PrimarySuspect]:
    suspect = PrimarySuspect(kind=auto.kind, name=auto.name)
    score = 0.0

    if result.exceptions:
        exc = result.exceptions[0]
        score += 0.30
        suspect.reasons.append("Exception thrown during execution")
        suspect.evidence.append(Evidence(kind="exception", detail=exc.message, line_number=exc.log_line))

    timing = next((t for t in result.code_unit_timings if auto.name in t.name), None)
    if timing is not None and timing.duration_ms > 500:
        score += 0.20
        suspect.reasons.append(f"High CPU ({timing.duration_ms}ms)")
        suspect.evidence.append(Evidence(kind="timing", detail=f"{timing.name}: {timing.duration_ms}ms"))

    recursion = next((s for s in result.recursion_signals if s.automation == auto.name), None)
    if recursion is not None:
        score += 0.25
        suspect.reasons.append(f"Recursive ({recursion.count}x)")
        suspect.evidence.append(Evidence(kind="recursion", detail=f"{auto.name} executed {recursion.count}x"))

    if result.stats.total_validation_fails > 0:
        failed = next((v for v in result.validations if v.outcome == "FAIL"), None)
        event = next((e for e in result.timeline if e.kind is EventKind.VALIDATION and e.detail == "FAIL"), None)
        score += 0.10
        suspect.reasons.append("Validation failures detected")
        suspect.evidence.append(
            Evidence(
                kind="validation",
                detail=failed.rule_name if failed else "unknown",
                line_number=event.line_number if event else None,
            )
        )

    bulk = next((b for b in result.bulk_safety_signals if b.automation == auto.name), None)
    if bulk is not None:
        score += 0.15
        suspect.reasons.append(bulk.reason)
        suspect.evidence.append(Evidence(kind="bulk", detail=bulk.reason))

    if result.object_impact.blast_radius > 3:
        score += 0.10
        suspect.reasons.append(f"High blast radius ({result.object_impact.blast_radius} objects)")

    big_query = next((q for q in result.soql_queries if (q.row_count or 0) > 100), None)
    if big_query is not None:
        score += 0.10
        suspect.reasons.append(f"Large query result ({big_query.row_count} rows)")

    return score, suspect


def compute_primary_suspects(result: TraceResult) -> list[PrimarySuspect]:
    """Top automations by accumulated signal score, as an integer percentage capped at 99."""
    seen = set()
    scored = []
    for auto in result.automations:
        if auto.key in seen:
            continue
        seen.add(auto.key)
        score, suspect = _score_automation(result, auto)
        if suspect.reasons:
            scored.append((score, suspect))

    scored.sort(key=lambda pair: pair[0], reverse=True)
    suspects = []
    for score, suspect in scored[:MAX_SUSPECTS]:
        suspect.score = min(round(score * 100), 99)
        suspects.append(suspect)
    return suspects


def compute_impact_hints(result: TraceResult) -> list[ImpactHint]:
    hints = []
    if result.bulk_safety_signals:
        hints.append(
            ImpactHint(
                severity=Severity.HIGH,
                hint="Move SOQL/DML outside loops, use collections and bulk patterns",
                category="Apex Best Practice",
            )
        )
    if result.recursion_signals:
        hints.append(
            ImpactHint(
                severity=Severity.HIGH,
                hint="Add static recursion guard (Set<Id> or Boolean flag) in trigger handler",
                category="Trigger Design",
            )
        )
    if result.object_impact.blast_radius > 4:
        hints.append(
            ImpactHint(
                severity=Severity.MEDIUM,
                hint="Consider async processing (Queueable/Platform Event) to reduce synchronous blast radius",
                category="Architecture",
            )
        )
    high_risk = [metric for metric, risk in result.limit_risk.items() if risk is Level.HIGH]
    if high_risk:
        hints.append(
            ImpactHint(
                severity=Severity.HIGH,
                hint=f"Governor limit risk on: {', '.join(high_risk)}. Optimize or batch",
                category="Governor Limits",
            )
        )
    managed = sum(1 for a in result.automations if a.is_managed_package)
    if managed > 2:
        hints.append(
            ImpactHint(
                severity=Severity.LOW,
                hint=f"{managed} managed package automations, check package settings to disable unnecessary triggers",
                category="Org Hygiene",
            )
        )
    if result.stats.total_validation_fails > 0:
        hints.append(
            ImpactHint(
                severity=Severity.MEDIUM,
                hint="Validation rule failures detected, check field defaults and data quality",
                category="Data Quality",
            )
        )
    return hints


def compute_trace_quality(result: TraceResult) -> int:
    score = 100
    if not result.log_completeness.is_complete:
        score -= 20
    if result.is_large_log:
        score -= 10
    overall = result.confidence.overall()
    if overall is Level.LOW:
        score -= 20
    elif overall is Level.MEDIUM:
        score -= 10
    coverage = result.parser_health.coverage_pct
    if coverage < 70:
        score -= 15
    elif coverage < 90:
        score -= 5
    if not result.governor_limits and result.automations:
        score -= 10
    if result.log_count > 3:
        score -= 5
    return max(0, min(100, score))


def analyze(
    result: TraceResult,
    budgets: dict[str, float] | None = None,
    baselines: Iterable[Baseline] = (),
) -> TraceResult:
    """Run every heuristic over the result, in place, and return it."""
    result.budget_violations = compute_budget_violations(result, budgets)
    result.confidence = compute_confidence(result)
    result.primary_suspects = compute_primary_suspects(result)
    result.impact_hints = compute_impact_hints(result)
    result.incident_flags = compute_incident_flags(result, baselines)
    result.trace_quality = compute_trace_quality(result)
    result.recommendations = generate_recommendations(result)
    logger.debug(
        "Analysis: quality=%d suspects=%d recommendations=%d",
        result.trace_quality,
        len(result.primary_suspects),
        len(result.recommendations),
    )
    return result
