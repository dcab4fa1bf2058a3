"""Rule-based recommendations. Each rule is independent; output is sorted by severity."""

import re

from apex_trace.models import AutomationKind, Recommendation, Severity, TraceResult

DISPLAY_LIMIT = 80

_BIND_VAR_RE = re.compile(r":\s*\w+")
_WHITESPACE_RE = re.compile(r"\s+")
_NO_WHERE_RE = re.compile(r"FROM\s+\w+(?:\s+(?:LIMIT|ORDER)\b|\s*$)", re.IGNORECASE)

FIX_SOQL_IN_LOOP = (
    "Move query outside loop. Collect Ids into a Set, query once with WHERE Id IN :ids, "
    "then build a Map<Id, SObject> for lookup."
)
FIX_DML_IN_LOOP = "Collect records into a List<SObject>, then perform a single DML statement outside the loop."
FIX_SOQL_NO_WHERE = (
    "Add WHERE clause to limit scope. Full-table queries risk hitting the 50,000-row query-rows limit."
)
FIX_SOQL_HIGH_ROWS = (
    "Add LIMIT clause, filter with WHERE, or use aggregate queries (COUNT, SUM) instead of fetching all records."
)
FIX_CALLOUT_IN_TRIGGER = (
    "Move callouts to @future(callout=true), Queueable, or Platform Events. "
    "Callouts in synchronous trigger context cause savepoints to roll back on timeout."
)
FIX_RECURSION = (
    "Add a static Boolean guard in your trigger handler: if (TriggerHandler.isRunning) return; Set it true at entry."
)
FIX_DENSITY = (
    "Consolidate triggers into a single Trigger + Handler pattern. "
    "Review flow order and whether record-triggered flows can replace Apex triggers."
)
LIMIT_FIXES = {
    "soqlQueries": "Reduce queries with selective WHERE clauses and move queries outside loops.",
    "dmlStatements": "Batch DML operations into collections to reduce statement count.",
    "cpuTime": "Profile slow code units in the timing view. Avoid string concatenation in loops; use List.join().",
}
DEFAULT_LIMIT_FIX = "Reduce heap allocations, unset large collections when no longer needed."


def truncate(text: str, limit: int = DISPLAY_LIMIT) -> str:
    return text[:limit] + "…" if len(text) > limit else text


def normalize_query(query: str) -> str:
    """Lowercase, replace bind variables with ':?', collapse whitespace."""
    q = _BIND_VAR_RE.sub(":?", query.lower())
    return _WHITESPACE_RE.sub(" ", q).strip()


def _in_unit(code_unit: str | None) -> str:
    return f" in {code_unit}" if code_unit else ""


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _soql_in_loop(result: TraceResult) -> list[Recommendation]:
    groups: dict[tuple[str, str], dict] = {}
    for q in result.soql_queries:
        key = (normalize_query(q.query), q.code_unit or "")
        group = groups.setdefault(key, {"query": q.query, "code_unit": q.code_unit, "count": 0, "rows": 0})
        group["count"] += 1
        group["rows"] += q.row_count or 0

    recs = []
    for g in groups.values():
        if g["count"] < 3:
            continue
        recs.append(
            Recommendation(
                id="soql-in-loop",
                severity=Severity.CRITICAL if g["count"] >= 10 else Severity.HIGH,
                title=f"SOQL inside loop (×{g['count']})",
                detail=(
                    f'"{truncate(g["query"])}" executed {g["count"]} times{_in_unit(g["code_unit"])}, '
                    f'{g["rows"]} total rows fetched'
                ),
                fix=FIX_SOQL_IN_LOOP,
                metric="soql",
                code_unit=g["code_unit"],
            )
        )
    return recs


def _dml_in_loop(result: TraceResult) -> list[Recommendation]:
    groups: dict[tuple[str, str, str], dict] = {}
    for d in result.dml_ops:
        key = (d.operation, d.object_type, d.code_unit or "")
        group = groups.setdefault(
            key, {"operation": d.operation, "object_type": d.object_type, "code_unit": d.code_unit, "count": 0}
        )
        group["count"] += 1

    recs = []
    for g in groups.values():
        if g["count"] < 3:
            continue
        recs.append(
            Recommendation(
                id="dml-in-loop",
                severity=Severity.CRITICAL if g["count"] >= 8 else Severity.HIGH,
                title=f"DML inside loop (×{g['count']})",
                detail=(
                    f"{g['operation']} {g['object_type']} DML executed {g['count']} times{_in_unit(g['code_unit'])}"
                ),
                fix=FIX_DML_IN_LOOP,
                metric="dml",
                code_unit=g["code_unit"],
            )
        )
    return recs


def _soql_no_where(result: TraceResult) -> list[Recommendation]:
    offenders = [q for q in result.soql_queries if _NO_WHERE_RE.search(q.query)]
    if not offenders:
        return []
    example = offenders[0]
    noun = "query" if len(offenders) == 1 else "queries"
    more = f" (+{len(offenders) - 1} more)" if len(offenders) > 1 else ""
    return [
        Recommendation(
            id="soql-no-where",
            severity=Severity.HIGH,
            title=f"SOQL without WHERE clause ({len(offenders)} {noun})",
            detail=f'"{truncate(example.query)}"{more}',
            fix=FIX_SOQL_NO_WHERE,
            metric="soql",
            code_unit=example.code_unit,
        )
    ]


def _soql_high_rows(result: TraceResult) -> list[Recommendation]:
    heavy = [q for q in result.soql_queries if (q.row_count or 0) >= 500]
    if not heavy:
        return []
    worst = max(heavy, key=lambda q: q.row_count or 0)
    rows = worst.row_count or 0
    return [
        Recommendation(
            id="soql-high-rows",
            severity=Severity.CRITICAL if rows >= 2000 else Severity.HIGH,
            title=f"High-volume query result ({rows:,} rows)",
            detail=f'"{truncate(worst.query)}" returned {rows:,} rows',
            fix=FIX_SOQL_HIGH_ROWS,
            metric="soql",
            code_unit=worst.code_unit,
        )
    ]


def _callout_in_trigger(result: TraceResult) -> list[Recommendation]:
    has_trigger = any(a.kind is AutomationKind.TRIGGER for a in result.automations)
    callouts = result.callouts
    if not has_trigger or not callouts:
        return []
    plural = "" if len(callouts) == 1 else "s"
    more = f" (+{len(callouts) - 2} more)" if len(callouts) > 2 else ""
    endpoints = ", ".join(truncate(c.endpoint) for c in callouts[:2])
    return [
        Recommendation(
            id="callout-in-trigger",
            severity=Severity.HIGH,
            title=f"HTTP callout from trigger context ({len(callouts)} callout{plural})",
            detail=f"Callout to: {endpoints}{more}",
            fix=FIX_CALLOUT_IN_TRIGGER,
            metric="callout",
        )
    ]


def _recursion(result: TraceResult) -> list[Recommendation]:
    return [
        Recommendation(
            id=f"recursion-{sig.automation}",
            severity=Severity.HIGH,
            title=f"Trigger recursion: {sig.automation} (×{sig.count})",
            detail=f"{sig.automation} fired {sig.count} times in a single transaction, likely recursive trigger",
            fix=FIX_RECURSION,
            metric="trigger",
            code_unit=sig.automation,
        )
        for sig in result.recursion_signals
    ]


def _density(result: TraceResult) -> list[Recommendation]:
    return [
        Recommendation(
            id=f"density-{d.object}",
            severity=Severity.MEDIUM,
            title=f"High automation density on {d.object} ({d.total} automations)",
            detail=(
                f"{d.trigger_count} trigger(s) + {d.flow_count} flow(s) on {d.object}, "
                "order of execution complexity is high"
            ),
            fix=FIX_DENSITY,
            metric="trigger",
        )
        for d in result.automation_density
        if d.total >= 5
    ]


def _near_limit(result: TraceResult) -> list[Recommendation]:
    return [
        Recommendation(
            id=f"limit-{v.metric}",
            severity=Severity.CRITICAL if v.pct >= 95 else Severity.HIGH,
            title=f"Governor limit critical: {v.metric} at {v.pct}%",
            detail=f"{v.used} / {v.limit} consumed, {100 - v.pct}% headroom remaining",
            fix=LIMIT_FIXES.get(v.metric, DEFAULT_LIMIT_FIX),
            metric=v.metric,
        )
        for v in result.budget_violations
        if v.pct >= 90
    ]


RULES = (
    _soql_in_loop,
    _dml_in_loop,
    _soql_no_where,
    _soql_high_rows,
    _callout_in_trigger,
    _recursion,
    _density,
    _near_limit,
)


def generate_recommendations(result: TraceResult) -> list[Recommendation]:
    recs: list[Recommendation] = []
    for rule in RULES:
        recs.extend(rule(result))
    return sorted(recs, key=lambda r: r.severity.rank)
