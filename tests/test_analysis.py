"""Tests for apex_trace/analysis.py"""

from datetime import datetime, timezone

from apex_trace.analysis import (
    analyze,
    compute_budget_violations,
    compute_confidence,
    compute_impact_hints,
    compute_primary_suspects,
    compute_trace_quality,
)
from apex_trace.baseline import BaselineRing
from apex_trace.builder import parse_log
from apex_trace.models import (
    Automation,
    AutomationKind,
    BulkSafetySignal,
    CascadeStep,
    CodeUnitTiming,
    Confidence,
    DmlOperation,
    ExceptionRecord,
    Level,
    LimitUsage,
    ObjectImpact,
    RecursionSignal,
    Severity,
    SoqlQuery,
    TraceResult,
    ValidationResult,
)


def _trigger(name, obj="Account"):
    return Automation(AutomationKind.TRIGGER, name, obj, ["BeforeInsert"])


class TestBudgetViolations:
    def test_over_budget(self):
        result = TraceResult(governor_limits={"soqlQueries": LimitUsage(85, 100)})
        violations = compute_budget_violations(result)
        assert len(violations) == 1
        assert violations[0].metric == "soqlQueries"
        assert violations[0].pct == 85
        assert violations[0].budget == 80

    def test_at_budget_not_flagged(self):
        result = TraceResult(governor_limits={"soqlQueries": LimitUsage(80, 100)})
        assert compute_budget_violations(result) == []

    def test_custom_budgets(self):
        result = TraceResult(governor_limits={"soqlQueries": LimitUsage(60, 100), "cpuTime": LimitUsage(0, 0)})
        violations = compute_budget_violations(result, {"soqlQueries": 50, "cpuTime": 10})
        assert [v.metric for v in violations] == ["soqlQueries"]


class TestConfidence:
    def test_no_dml(self):
        assert compute_confidence(TraceResult()).records is None

    def test_records_located_single_log(self):
        result = TraceResult(dml_ops=[DmlOperation("Insert", "Account", 1)], records_affected=[{"id": "001"}])
        assert compute_confidence(result).records is Level.HIGH

    def test_records_located_multi_log(self):
        result = TraceResult(
            dml_ops=[DmlOperation("Insert", "Account", 1)], records_affected=[{"id": "001"}], log_count=2
        )
        assert compute_confidence(result).records is Level.MEDIUM

    def test_records_too_many_located(self):
        result = TraceResult(dml_ops=[DmlOperation("Insert", "Account", 1)], records_affected=[{}, {}, {}])
        assert compute_confidence(result).records is Level.MEDIUM

    def test_records_not_located(self):
        result = TraceResult(dml_ops=[DmlOperation("Insert", "Account", 1)])
        assert compute_confidence(result).records is Level.LOW

    def test_cascade_timing_limits(self):
        result = TraceResult(
            dml_cascade=[CascadeStep(0, "Account", "Insert"), CascadeStep(1, "Contact", "Insert")],
            code_unit_timings=[CodeUnitTiming("AccountTrigger", 0, 1_000_000, 1.0)],
            governor_limits={"soqlQueries": LimitUsage(1, 100)},
        )
        confidence = compute_confidence(result)
        assert confidence.cascade is Level.HIGH
        assert confidence.timing is Level.HIGH
        assert confidence.limits is Level.HIGH
        result.log_count = 2
        assert compute_confidence(result).cascade is Level.MEDIUM

    def test_overall_is_worst(self):
        assert Confidence(records=Level.HIGH, timing=Level.LOW).overall() is Level.LOW
        assert Confidence(records=Level.HIGH, limits=Level.MEDIUM).overall() is Level.MEDIUM
        assert Confidence().overall() is None


class TestPrimarySuspects:
    def test_exception_scores_thirty(self):
        result = TraceResult(
            automations=[_trigger("AccountTrigger")],
            exceptions=[ExceptionRecord("System.DmlException", "Insert failed", log_line=7)],
        )
        suspects = compute_primary_suspects(result)
        assert len(suspects) == 1
        assert suspects[0].score == 30
        assert suspects[0].reasons == ["Exception thrown during execution"]
        assert suspects[0].evidence[0].line_number == 7

    def test_score_capped(self):
        result = TraceResult(
            automations=[_trigger("AccountTrigger")],
            exceptions=[ExceptionRecord("System.DmlException", "Insert failed")],
            code_unit_timings=[CodeUnitTiming("AccountTrigger on Account", 0, 600_000_000, 600.0)],
            recursion_signals=[RecursionSignal("AccountTrigger", AutomationKind.TRIGGER, 2, Level.MEDIUM)],
            validations=[ValidationResult("Require_Phone", "FAIL")],
            bulk_safety_signals=[BulkSafetySignal("AccountTrigger", Level.MEDIUM, "possible SOQL in loop")],
            object_impact=ObjectImpact(blast_radius=4),
            soql_queries=[SoqlQuery("SELECT Id FROM Contact", row_count=150)],
        )
        result.stats.total_validation_fails = 1
        suspect = compute_primary_suspects(result)[0]
        assert suspect.score == 99
        assert len(suspect.reasons) == 7

    def test_ranked_and_limited(self):
        result = TraceResult(
            automations=[_trigger(f"Trigger{i}") for i in range(5)],
            exceptions=[ExceptionRecord("System.DmlException", "Insert failed")],
            recursion_signals=[RecursionSignal("Trigger4", AutomationKind.TRIGGER, 2, Level.MEDIUM)],
        )
        suspects = compute_primary_suspects(result)
        assert len(suspects) == 3
        assert suspects[0].name == "Trigger4"
        assert suspects[0].score == 55
        assert [s.name for s in suspects[1:]] == ["Trigger0", "Trigger1"]

    def test_repeated_automation_scored_once(self):
        result = TraceResult(
            automations=[_trigger("AccountTrigger"), _trigger("AccountTrigger")],
            exceptions=[ExceptionRecord("System.DmlException", "Insert failed")],
        )
        assert len(compute_primary_suspects(result)) == 1

    def test_no_signals_no_suspects(self):
        assert compute_primary_suspects(TraceResult(automations=[_trigger("AccountTrigger")])) == []


class TestImpactHints:
    def test_hints(self):
        result = TraceResult(
            recursion_signals=[RecursionSignal("AccountTrigger", AutomationKind.TRIGGER, 2, Level.MEDIUM)],
            limit_risk={"cpuTime": Level.HIGH, "soqlQueries": Level.LOW},
        )
        result.stats.total_validation_fails = 2
        hints = {h.category: h for h in compute_impact_hints(result)}
        assert set(hints) == {"Trigger Design", "Governor Limits", "Data Quality"}
        assert "cpuTime" in hints["Governor Limits"].hint
        assert hints["Data Quality"].severity is Severity.MEDIUM

    def test_managed_packages(self):
        autos = [_trigger(f"acme__T{i}") for i in range(3)]
        for auto in autos:
            auto.is_managed_package = True
        hints = compute_impact_hints(TraceResult(automations=autos))
        assert hints[0].category == "Org Hygiene"
        assert hints[0].hint.startswith("3 managed package automations")


class TestTraceQuality:
    def test_clean_trace(self):
        assert compute_trace_quality(TraceResult()) == 100

    def test_penalties(self):
        result = TraceResult(automations=[_trigger("AccountTrigger")], is_large_log=True, log_count=4)
        result.log_completeness.is_complete = False
        result.confidence = Confidence(records=Level.LOW)
        result.parser_health.coverage_pct = 60
        # 100 - 20 - 10 - 20 - 15 - 10 - 5
        assert compute_trace_quality(result) == 20

    def test_medium_confidence_and_coverage(self):
        result = TraceResult(confidence=Confidence(records=Level.MEDIUM))
        result.parser_health.coverage_pct = 85
        assert compute_trace_quality(result) == 85


class TestAnalyze:
    def test_near_limit_recommendation(self, make_log):
        text = make_log().trigger("AccountTrigger").limits(soql=(95, 100)).execution_finished().text()
        result = analyze(parse_log(text))
        assert result.budget_violations[0].pct == 95
        rec = next(r for r in result.recommendations if r.id == "limit-soqlQueries")
        assert rec.severity is Severity.CRITICAL
        assert result.confidence.limits is Level.HIGH

    def test_nothing_happened_has_no_recommendations(self, make_log):
        text = make_log().execution_started().add("HEAP_ALLOCATE", "[72]", "Bytes:3").execution_finished().text()
        result = analyze(parse_log(text))
        assert result.nothing_happened is True
        assert result.recommendations == []
        assert result.primary_suspects == []

    def test_incident_flags_from_baselines(self, make_log):
        quiet = parse_log(make_log().trigger("AccountTrigger").soql("SELECT Id FROM Contact WHERE Id = :x").text())
        ring = BaselineRing()
        now = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
        ring.save(quiet, now=now)
        ring.save(quiet, now=now)

        log = make_log().trigger("AccountTrigger")
        for i in range(5):
            log.soql(f"SELECT Id FROM Contact WHERE Id = :x{i}")
        result = analyze(parse_log(log.text()), baselines=ring)
        soql_flag = next(f for f in result.incident_flags if f.metric == "SOQL")
        assert soql_flag.message == "SOQL count 5 is 5x baseline (avg: 1)"
