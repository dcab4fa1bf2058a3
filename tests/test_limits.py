"""Tests for apex_trace/limits.py"""

from apex_trace.limits import classify_risk, compute_limit_risk, merge_limits, parse_governor_limits
from apex_trace.models import Level, LimitUsage


class TestParseGovernorLimits:
    def test_single_block(self, make_log):
        text = make_log().limits(soql=(3, 100), dml=(2, 150), cpu=(450, 10000)).text()
        limits = parse_governor_limits(text)
        assert limits["soqlQueries"] == LimitUsage(used=3, limit=100)
        assert limits["dmlStatements"] == LimitUsage(used=2, limit=150)
        assert limits["cpuTime"] == LimitUsage(used=450, limit=10000)
        assert "heapSize" not in limits

    def test_max_across_blocks(self, make_log):
        """Usage is the maximum over every block, not the last one."""
        text = make_log().limits(soql=(9, 100)).limits(soql=(4, 100)).text()
        assert parse_governor_limits(text)["soqlQueries"].used == 9

    def test_fallback_without_block(self):
        text = "  Number of SOQL queries: 4 out of 100\n  Number of callouts: 1 out of 100\n"
        limits = parse_governor_limits(text)
        assert limits["soqlQueries"].used == 4
        assert limits["callouts"].used == 1

    def test_no_limits(self):
        assert parse_governor_limits("12:00:00.0 (1)|EXECUTION_STARTED\n") == {}


class TestRisk:
    def test_thresholds(self):
        assert classify_risk(LimitUsage(used=85, limit=100)) is Level.HIGH
        assert classify_risk(LimitUsage(used=70, limit=100)) is Level.MEDIUM
        assert classify_risk(LimitUsage(used=69, limit=100)) is Level.LOW

    def test_zero_limit_skipped(self):
        risk = compute_limit_risk({"callouts": LimitUsage(used=0, limit=0), "soqlQueries": LimitUsage(used=1, limit=100)})
        assert risk == {"soqlQueries": Level.LOW}


class TestMergeLimits:
    def test_max_not_sum(self):
        a = {"soqlQueries": LimitUsage(used=3, limit=100)}
        b = {"soqlQueries": LimitUsage(used=7, limit=100)}
        assert merge_limits(a, b)["soqlQueries"] == LimitUsage(used=7, limit=100)

    def test_union_of_metrics(self):
        a = {"soqlQueries": LimitUsage(used=3, limit=100)}
        b = {"cpuTime": LimitUsage(used=800, limit=10000)}
        merged = merge_limits(a, b)
        assert list(merged) == ["soqlQueries", "cpuTime"]
        assert merged["cpuTime"].used == 800

    def test_inputs_untouched(self):
        a = {"soqlQueries": LimitUsage(used=3, limit=100)}
        merged = merge_limits(a, {})
        merged["soqlQueries"].used = 50
        assert a["soqlQueries"].used == 3
