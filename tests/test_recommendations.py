"""Tests for apex_trace/recommendations.py"""

from apex_trace.models import (
    Automation,
    AutomationKind,
    BudgetViolation,
    Callout,
    DensityEntry,
    DmlOperation,
    RecursionSignal,
    Level,
    Severity,
    SoqlQuery,
    TraceResult,
)
from apex_trace.recommendations import (
    FIX_SOQL_IN_LOOP,
    LIMIT_FIXES,
    generate_recommendations,
    normalize_query,
    truncate,
)


def _queries(n, code_unit="AccountTriggerHandler"):
    return [
        SoqlQuery(query=f"SELECT Id FROM Contact WHERE AccountId = :acct{i}", row_count=2, code_unit=code_unit)
        for i in range(n)
    ]


def _by_id(recs, rec_id):
    return [r for r in recs if r.id == rec_id]


class TestSoqlInLoop:
    def test_below_threshold(self):
        recs = generate_recommendations(TraceResult(soql_queries=_queries(2)))
        assert _by_id(recs, "soql-in-loop") == []

    def test_three_executions_high(self):
        recs = _by_id(generate_recommendations(TraceResult(soql_queries=_queries(3))), "soql-in-loop")
        assert len(recs) == 1
        assert recs[0].severity is Severity.HIGH
        assert recs[0].title == "SOQL inside loop (×3)"
        assert "executed 3 times in AccountTriggerHandler" in recs[0].detail
        assert "6 total rows fetched" in recs[0].detail
        assert recs[0].fix == FIX_SOQL_IN_LOOP

    def test_ten_executions_critical(self):
        recs = _by_id(generate_recommendations(TraceResult(soql_queries=_queries(10))), "soql-in-loop")
        assert recs[0].severity is Severity.CRITICAL

    def test_grouped_per_code_unit(self):
        queries = _queries(2, "HandlerA") + _queries(2, "HandlerB")
        assert _by_id(generate_recommendations(TraceResult(soql_queries=queries)), "soql-in-loop") == []


class TestDmlInLoop:
    def test_thresholds(self):
        three = [DmlOperation("Insert", "Task", 1, code_unit="TaskService") for _ in range(3)]
        eight = [DmlOperation("Insert", "Task", 1, code_unit="TaskService") for _ in range(8)]
        assert _by_id(generate_recommendations(TraceResult(dml_ops=three)), "dml-in-loop")[0].severity is Severity.HIGH
        assert _by_id(generate_recommendations(TraceResult(dml_ops=eight)), "dml-in-loop")[0].severity is Severity.CRITICAL

    def test_different_objects_not_grouped(self):
        ops = [DmlOperation("Insert", obj, 1) for obj in ("Task", "Task", "Event", "Event")]
        assert _by_id(generate_recommendations(TraceResult(dml_ops=ops)), "dml-in-loop") == []


class TestQueryShape:
    def test_no_where(self):
        queries = [SoqlQuery("SELECT Id FROM Account"), SoqlQuery("SELECT Name FROM Lead LIMIT 10")]
        recs = _by_id(generate_recommendations(TraceResult(soql_queries=queries)), "soql-no-where")
        assert len(recs) == 1
        assert recs[0].title == "SOQL without WHERE clause (2 queries)"
        assert recs[0].detail == '"SELECT Id FROM Account" (+1 more)'

    def test_where_clause_ok(self):
        queries = [SoqlQuery("SELECT Id FROM Account WHERE Name = 'Acme'")]
        assert _by_id(generate_recommendations(TraceResult(soql_queries=queries)), "soql-no-where") == []

    def test_keyword_inside_object_name(self):
        queries = [
            SoqlQuery("SELECT Id FROM WorkOrder WHERE Status = 'New'"),
            SoqlQuery("SELECT Id FROM Credit_Limit__c WHERE Account__c = :acctId"),
        ]
        assert _by_id(generate_recommendations(TraceResult(soql_queries=queries)), "soql-no-where") == []

    def test_order_by_without_where(self):
        queries = [SoqlQuery("SELECT Id FROM WorkOrder ORDER BY CreatedDate")]
        recs = _by_id(generate_recommendations(TraceResult(soql_queries=queries)), "soql-no-where")
        assert recs[0].title == "SOQL without WHERE clause (1 query)"

    def test_high_rows(self):
        high = [SoqlQuery("SELECT Id FROM Case WHERE Status = 'New'", row_count=600)]
        critical = [SoqlQuery("SELECT Id FROM Case WHERE Status = 'New'", row_count=2500)]
        rec = _by_id(generate_recommendations(TraceResult(soql_queries=high)), "soql-high-rows")[0]
        assert rec.severity is Severity.HIGH
        rec = _by_id(generate_recommendations(TraceResult(soql_queries=critical)), "soql-high-rows")[0]
        assert rec.severity is Severity.CRITICAL
        assert rec.title == "High-volume query result (2,500 rows)"


class TestAutomationRules:
    def test_callout_in_trigger(self):
        result = TraceResult(
            automations=[Automation(AutomationKind.TRIGGER, "OrderTrigger", "Order")],
            callouts=[Callout("POST", f"https://erp.example.com/{i}") for i in range(3)],
        )
        rec = _by_id(generate_recommendations(result), "callout-in-trigger")[0]
        assert rec.title == "HTTP callout from trigger context (3 callouts)"
        assert rec.detail.endswith("(+1 more)")

    def test_callout_without_trigger(self):
        result = TraceResult(callouts=[Callout("GET", "https://erp.example.com")])
        assert _by_id(generate_recommendations(result), "callout-in-trigger") == []

    def test_recursion(self):
        result = TraceResult(
            recursion_signals=[RecursionSignal("AccountTrigger", AutomationKind.TRIGGER, 4, Level.HIGH)]
        )
        rec = _by_id(generate_recommendations(result), "recursion-AccountTrigger")[0]
        assert rec.severity is Severity.HIGH
        assert rec.code_unit == "AccountTrigger"

    def test_density(self):
        dense = TraceResult(automation_density=[DensityEntry("Account", trigger_count=4, flow_count=1, total=5)])
        sparse = TraceResult(automation_density=[DensityEntry("Account", trigger_count=3, flow_count=1, total=4)])
        assert _by_id(generate_recommendations(dense), "density-Account")[0].severity is Severity.MEDIUM
        assert _by_id(generate_recommendations(sparse), "density-Account") == []


class TestNearLimit:
    def test_thresholds(self):
        result = TraceResult(
            budget_violations=[
                BudgetViolation("soqlQueries", used=92, limit=100, pct=92, budget=80),
                BudgetViolation("cpuTime", used=9600, limit=10000, pct=96, budget=70),
                BudgetViolation("dmlStatements", used=130, limit=150, pct=87, budget=80),
            ]
        )
        recs = generate_recommendations(result)
        assert [r.id for r in recs] == ["limit-cpuTime", "limit-soqlQueries"]
        assert recs[0].severity is Severity.CRITICAL
        assert recs[1].severity is Severity.HIGH
        assert recs[1].fix == LIMIT_FIXES["soqlQueries"]
        assert recs[1].detail == "92 / 100 consumed, 8% headroom remaining"


class TestOrdering:
    def test_sorted_by_severity(self):
        result = TraceResult(
            soql_queries=_queries(10),
            automation_density=[DensityEntry("Account", trigger_count=5, total=5)],
            recursion_signals=[RecursionSignal("AccountTrigger", AutomationKind.TRIGGER, 2, Level.MEDIUM)],
        )
        severities = [r.severity for r in generate_recommendations(result)]
        assert severities == [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM]

    def test_empty_trace(self):
        assert generate_recommendations(TraceResult()) == []


class TestHelpers:
    def test_truncate(self):
        assert truncate("short") == "short"
        long = "x" * 100
        assert truncate(long) == "x" * 80 + "…"

    def test_normalize_query(self):
        assert normalize_query("SELECT  Id\nFROM Contact WHERE Id = :recordId") == "select id from contact where id = :?"
