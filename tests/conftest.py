import pytest

from apex_trace.config import Config


class LogBuilder:
    """Builds synthetic Apex debug logs one pipe-delimited line at a time."""

    def __init__(self):
        self.lines: list[str] = []
        self._nanos = 1_000_000

    def add(self, event, *fields, nanos=None):
        if nanos is None:
            self._nanos += 1_000_000
            nanos = self._nanos
        self.lines.append("|".join([f"12:00:00.0 ({nanos})", event, *fields]))
        return self

    def raw(self, text):
        self.lines.append(text)
        return self

    @property
    def line_count(self):
        return len(self.lines)

    def execution_started(self):
        return self.add("EXECUTION_STARTED")

    def execution_finished(self):
        return self.add("EXECUTION_FINISHED")

    def trigger(self, name, obj="Account", events="BeforeInsert"):
        return self.add(
            "CODE_UNIT_STARTED",
            "[EXTERNAL]",
            "01q000000000001",
            f"{name} on {obj} trigger event {events}",
            f"__sfdc_trigger/{name}",
        )

    def code_unit(self, name):
        return self.add("CODE_UNIT_STARTED", "[EXTERNAL]", name)

    def code_unit_finished(self, name="unit"):
        return self.add("CODE_UNIT_FINISHED", name)

    def soql(self, query, rows=1, line=10):
        self.add("SOQL_EXECUTE_BEGIN", f"[{line}]", "Aggregations:0", query)
        return self.add("SOQL_EXECUTE_END", f"[{line}]", f"Rows:{rows}")

    def dml(self, op, obj, rows=1, line=20):
        return self.add("DML_BEGIN", f"[{line}]", f"Op:{op}", f"Type:{obj}", f"Rows:{rows}")

    def flow_begin(self, name, interview_id):
        return self.add("FLOW_START_INTERVIEW_BEGIN", "0Fo000000000001", name, interview_id)

    def flow_resume(self, name, interview_id):
        return self.add("FLOW_RESUME_INTERVIEW_BEGIN", "0Fo000000000001", name, interview_id)

    def exception(self, exc_type, message, line=5):
        return self.add("EXCEPTION_THROWN", f"[{line}]", f"{exc_type}: {message}")

    def fatal(self, message):
        return self.add("FATAL_ERROR", message)

    def user_debug(self, message, line=3, level="DEBUG"):
        return self.add("USER_DEBUG", f"[{line}]", level, message)

    def validation(self, rule, passed=True):
        self.add("VALIDATION_RULE", "03d000000000001", rule)
        return self.add("VALIDATION_PASS" if passed else "VALIDATION_FAIL")

    def callout(self, endpoint, method="POST"):
        return self.add("CALLOUT_REQUEST", "[42]", f"System.HttpRequest[Endpoint={endpoint}, Method={method}]")

    def limits(self, **usage):
        """usage: metric label -> (used, limit), e.g. soql=(3, 100)."""
        labels = {
            "soql": "Number of SOQL queries",
            "dml": "Number of DML statements",
            "cpu": "Maximum CPU time",
            "heap": "Maximum heap size",
            "dml_rows": "Number of DML rows",
            "query_rows": "Number of query rows",
            "callouts": "Number of callouts",
        }
        self.add("CUMULATIVE_LIMIT_USAGE")
        self.add("LIMIT_USAGE_FOR_NS", "(default)", "")
        for key, (used, limit) in usage.items():
            self.raw(f"  {labels[key]}: {used} out of {limit}")
        return self.add("CUMULATIVE_LIMIT_USAGE_END")

    def text(self):
        return "\n".join(self.lines) + "\n"


@pytest.fixture
def make_log():
    """Factory for a fresh LogBuilder."""
    return LogBuilder


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def write_config(tmp_path):
    """Write a YAML config file and return its path."""

    def _write(content):
        path = tmp_path / "config.yml"
        path.write_text(content)
        return str(path)

    return _write


@pytest.fixture
def simple_trigger_log(make_log):
    """One trigger inserting a Contact, with a limit block and a clean finish."""
    return (
        make_log()
        .execution_started()
        .trigger("AccountTrigger", "Account", "BeforeInsert")
        .soql("SELECT Id FROM Contact WHERE AccountId = :acctId", rows=2)
        .dml("Insert", "Contact")
        .code_unit_finished("AccountTrigger")
        .limits(soql=(1, 100), dml=(1, 150), cpu=(120, 10000), heap=(2000, 6000000))
        .execution_finished()
        .text()
    )
