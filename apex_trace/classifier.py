"""Line classifier and event extractor — one pass over an Apex debug log.

Each recognised line shape is a (marker, handler) pair. A handler runs when
its marker is a substring of the line; several handlers may fire for the same
line. Handlers return True when they consumed the line. Lines no handler
consumed are checked against known infrastructure markers and otherwise
counted as unknown, which feeds parser-health coverage.

Line format (pipe separated):
  HH:MM:SS.s (nanos)|EVENT_NAME|field|field|...
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from apex_trace.flow_analysis import FlowAnalyzer
from apex_trace.models import (
    AsyncOperation,
    Automation,
    AutomationKind,
    Callout,
    CodeUnitTiming,
    DmlOperation,
    DuplicateRule,
    EventKind,
    ExceptionRecord,
    FlowElement,
    SoqlQuery,
    TimelineEvent,
    TraceResult,
    Transaction,
    UserDebugLine,
    ValidationResult,
    WorkflowRule,
)

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 100_000

# ---------------------------------------------------------------------------
# Compiled regex patterns
# ---------------------------------------------------------------------------

_NANOS_RE = re.compile(r"\((\d+)\)")
_TIMESTAMP_RE = re.compile(r"^([\d:.]+)")
_TRIGGER_RE = re.compile(r"\|(\w+)\s+on\s+(\w+)\s+trigger\s+event\s+(.+?)(?:\||$)")
_CODE_UNIT_NAME_RE = re.compile(r"\|CODE_UNIT_STARTED\|[^|]*\|(.+?)$")
_FLOW_INTERVIEWS_RE = re.compile(r"\|FLOW_START_INTERVIEWS\|(.+?)(?:\||$)")
_FLOW_BEGIN_RE = re.compile(r"\|FLOW_START_INTERVIEW_BEGIN\|[^|]*\|([^|]+)\|([^\s|]+)")
_FLOW_RESUME_RE = re.compile(r"\|FLOW_RESUME_INTERVIEW_BEGIN\|[^|]*\|([^|]+)\|([^\s|]+)")
_FLOW_ELEMENT_BEGIN_RE = re.compile(r"\|FLOW_ELEMENT_BEGIN\|([^|]+)\|([^|]+)\|(.+?)$")
_FLOW_ELEMENT_END_RE = re.compile(r"\|FLOW_ELEMENT_END\|([^|]+)\|([^|]+)\|(.+?)$")
_DML_RE = re.compile(r"Op:(\w+)\|Type:(\w+)\|Rows:(\d+)")
_SOQL_BEGIN_RE = re.compile(r"\|SOQL_EXECUTE_BEGIN\|(?:\[(\d+)\]\|)?(?:Aggregations:\d+\|)?(.+?)$")
_ROWS_RE = re.compile(r"Rows:(\d+)")
_VALIDATION_RULE_RE = re.compile(r"\|VALIDATION_RULE\|(?:[^|]*\|)?([^|]+)$")
_WF_RULE_RE = re.compile(r"\|WF_RULE_FILTER\|(.+?)(?:\||$)")
_CALLOUT_RE = re.compile(r"\|CALLOUT_REQUEST\|.*?\|(.*?)$")
_CALLOUT_ENDPOINT_RE = re.compile(r"Endpoint=([^,\]]+)")
_CALLOUT_METHOD_RE = re.compile(r"Method=(\w+)")
_DUP_RULE_RE = re.compile(r"DuplicateRuleName:(.+?)\s*\|\s*DmlType:(\w+)")
_DUP_SUMMARY_RE = re.compile(r"NumDuplicatesFound:(\d+)")
_DUP_ACTION_RE = re.compile(r"ActionTaken:(.+?)\s*\|")
_EXCEPTION_RE = re.compile(r"\|EXCEPTION_THROWN\|\[(\d+)\]\|(.+?):\s*(.+?)$")
_FATAL_RE = re.compile(r"\|FATAL_ERROR\|(.+?)$")
_USER_DEBUG_RE = re.compile(r"\|USER_DEBUG\|\[(\d+)\]\|(\w+)\|(.+?)$")
_BATCH_RE = re.compile(r"\|BATCH_APEX_EXECUTE_BEGIN\|[^|]*\|(.+?)(?:\||$)")
_SCHEDULED_RE = re.compile(r"\|SCHEDULED_APEX\|(.+?)(?:\||$)")
_FUTURE_RE = re.compile(r"\|FUTURE_HANDLER\|(.+?)(?:\||$)")
_LIMIT_EXCEPTION_RE = re.compile(r"limitexception", re.IGNORECASE)
_QUEUEABLE_RE = re.compile(r"queueable", re.IGNORECASE)
_FUTURE_UNIT_RE = re.compile(r"future", re.IGNORECASE)
_CLOCK_RE = re.compile(r"^\d{2}:\d{2}:\d{2}")
_LIMIT_LINE_RE = re.compile(r"^\s*(?:Number of|Maximum) [a-zA-Z ]+:")

# Known log infrastructure: not counted as unknown even though no handler consumes it.
_INFRASTRUCTURE_MARKERS = (
    "|LIMIT_USAGE",
    "|CUMULATIVE_LIMIT",
    "|METHOD_ENTRY|",
    "|METHOD_EXIT|",
    "|VARIABLE_SCOPE",
    "|VARIABLE_ASSIGNMENT",
    "|STATEMENT_EXECUTE",
    "|HEAP_",
    "|SYSTEM_",
    "|CONSTRUCTOR_",
    "|DML_END|",
    "|SOQL_EXECUTE_EXPLAIN",
)


# ---------------------------------------------------------------------------
# Parser state
# ---------------------------------------------------------------------------


@dataclass
class ParserState:
    """Everything that changes while scanning one log. Local to a single parse."""

    trace: TraceResult = field(default_factory=TraceResult)
    lines: list[str] = field(default_factory=list)
    code_unit_stack: list[tuple[str, int]] = field(default_factory=list)
    pending_validation: str | None = None
    soql_end_index: int = 0
    txn_counter: int = 0
    current_txn: Transaction | None = None
    unknown_lines: int = 0
    pending_outcomes: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def current_code_unit(self) -> str | None:
        return self.code_unit_stack[-1][0] if self.code_unit_stack else None

    def add_event(self, kind: EventKind, name: str, detail: str = "", line_number: int | None = None) -> TimelineEvent:
        timeline = self.trace.timeline
        event = TimelineEvent(order=len(timeline), kind=kind, name=name, detail=detail, line_number=line_number)
        timeline.append(event)
        return event

    def find_flow(self, name: str, interview_id: str | None = None) -> Automation | None:
        for auto in self.trace.automations:
            if auto.kind is not AutomationKind.FLOW:
                continue
            if auto.name == name or (interview_id and auto.interview_id == interview_id):
                return auto
        return None


Handler = Callable[[ParserState, str, int], bool]


def _extract_nanos(line: str) -> int | None:
    m = _NANOS_RE.search(line)
    return int(m.group(1)) if m else None


def _is_limit_exception(text: str) -> bool:
    return bool(_LIMIT_EXCEPTION_RE.search(text))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _on_execution_started(state: ParserState, line: str, line_no: int) -> bool:
    state.txn_counter += 1
    state.current_txn = Transaction(id=state.txn_counter, start_event=len(state.trace.timeline))
    state.trace.transactions.append(state.current_txn)
    return True


def _on_execution_finished(state: ParserState, line: str, line_no: int) -> bool:
    txn = state.current_txn
    if txn is None:
        return False
    txn.end_event = len(state.trace.timeline)
    txn.event_count = txn.end_event - txn.start_event
    state.current_txn = None
    return True


def _on_code_unit_started(state: ParserState, line: str, line_no: int) -> bool:
    trace = state.trace
    m = _TRIGGER_RE.search(line)
    if m:
        name, object_name = m.group(1), m.group(2)
        events = re.split(r"\s*,\s*", m.group(3).strip())
        trace.automations.append(
            Automation(kind=AutomationKind.TRIGGER, name=name, object_name=object_name, events=events)
        )
        state.add_event(EventKind.TRIGGER, name, f"{object_name} ({', '.join(events)})", line_no)

    body = line.split("|CODE_UNIT_STARTED|", 1)[1]
    class_name = body.split("|")[-1].strip() or "Unknown"
    if _QUEUEABLE_RE.search(body):
        trace.async_operations.append(AsyncOperation(type="Queueable", class_name=class_name))
    elif _FUTURE_UNIT_RE.search(body):
        trace.async_operations.append(AsyncOperation(type="Future", class_name=class_name))

    ns = _extract_nanos(line)
    name_match = _CODE_UNIT_NAME_RE.search(line)
    if name_match and ns is not None:
        state.code_unit_stack.append((name_match.group(1).strip(), ns))
    return True


def _on_code_unit_finished(state: ParserState, line: str, line_no: int) -> bool:
    ns = _extract_nanos(line)
    if state.code_unit_stack and ns is not None:
        name, start_ns = state.code_unit_stack.pop()
        state.trace.code_unit_timings.append(
            CodeUnitTiming(name=name, start_ns=start_ns, end_ns=ns, duration_ms=round((ns - start_ns) / 1_000_000, 2))
        )
    return True


def _on_flow_start_interviews(state: ParserState, line: str, line_no: int) -> bool:
    m = _FLOW_INTERVIEWS_RE.search(line)
    if m:
        name = m.group(1).strip()
        state.trace.automations.append(Automation(kind=AutomationKind.FLOW, name=name))
        state.add_event(EventKind.FLOW, name, "", line_no)
    return True


def _on_flow_interview_begin(state: ParserState, line: str, line_no: int) -> bool:
    # Format: ts|FLOW_START_INTERVIEW_BEGIN|?|flowApiName|interviewId
    m = _FLOW_BEGIN_RE.search(line)
    if m:
        name, interview_id = m.group(1).strip(), m.group(2).strip()
        existing = state.find_flow(name)
        if existing is None:
            state.trace.automations.append(Automation(kind=AutomationKind.FLOW, name=name, interview_id=interview_id))
            state.add_event(EventKind.FLOW, name, "", line_no)
        elif not existing.interview_id:
            existing.interview_id = interview_id
    return True


def _on_flow_interview_resume(state: ParserState, line: str, line_no: int) -> bool:
    # Same format as FLOW_START_INTERVIEW_BEGIN; usually a different log of the same interview.
    m = _FLOW_RESUME_RE.search(line)
    if m:
        name, interview_id = m.group(1).strip(), m.group(2).strip()
        existing = state.find_flow(name, interview_id)
        if existing is not None:
            existing.is_resumed = True
            if not existing.interview_id:
                existing.interview_id = interview_id
        else:
            state.trace.automations.append(
                Automation(kind=AutomationKind.FLOW, name=name, interview_id=interview_id, is_resumed=True)
            )
            state.add_event(EventKind.FLOW, name, "resumed", line_no)
    return True


def _on_flow_element_begin(state: ParserState, line: str, line_no: int) -> bool:
    m = _FLOW_ELEMENT_BEGIN_RE.search(line)
    if m:
        flow_name, element_type, element_name = (g.strip() for g in m.groups())
        state.trace.flow_elements.append(
            FlowElement(flow_name=flow_name, element_type=element_type, element_name=element_name)
        )
    return True


def _on_flow_element_end(state: ParserState, line: str, line_no: int) -> bool:
    m = _FLOW_ELEMENT_END_RE.search(line)
    if m:
        flow_name, element_name = m.group(1).strip(), m.group(3).strip()
        for element in reversed(state.trace.flow_elements):
            if element.flow_name == flow_name and element.element_name == element_name:
                if element.status != "faulted":
                    element.status = "completed"
                break
    return True


def _on_dml_begin(state: ParserState, line: str, line_no: int) -> bool:
    m = _DML_RE.search(line)
    if m:
        operation, object_type, rows = m.group(1), m.group(2), int(m.group(3))
        state.trace.dml_ops.append(
            DmlOperation(
                operation=operation,
                object_type=object_type,
                row_count=rows,
                code_unit=state.current_code_unit,
                log_line=line_no,
            )
        )
        state.add_event(EventKind.DML, f"{operation} {object_type}", f"{rows} row(s)", line_no)
    return True


def _on_soql_begin(state: ParserState, line: str, line_no: int) -> bool:
    m = _SOQL_BEGIN_RE.search(line)
    if m:
        state.trace.soql_queries.append(
            SoqlQuery(
                query=m.group(2).strip(),
                line_number=int(m.group(1)) if m.group(1) else None,
                log_line=line_no,
                code_unit=state.current_code_unit,
            )
        )
    return True


def _on_soql_end(state: ParserState, line: str, line_no: int) -> bool:
    m = _ROWS_RE.search(line)
    queries = state.trace.soql_queries
    if m and state.soql_end_index < len(queries):
        queries[state.soql_end_index].row_count = int(m.group(1))
        state.soql_end_index += 1
    return True


def _on_validation_rule(state: ParserState, line: str, line_no: int) -> bool:
    m = _VALIDATION_RULE_RE.search(line)
    if m:
        state.pending_validation = m.group(1).strip()
    return True


def _record_validation(state: ParserState, outcome: str, line_no: int) -> bool:
    rule = state.pending_validation
    if rule is None:
        return False
    state.trace.validations.append(ValidationResult(rule_name=rule, outcome=outcome))
    state.add_event(EventKind.VALIDATION, rule, outcome, line_no)
    state.pending_validation = None
    return True


def _on_validation_pass(state: ParserState, line: str, line_no: int) -> bool:
    return _record_validation(state, "PASS", line_no)


def _on_validation_fail(state: ParserState, line: str, line_no: int) -> bool:
    return _record_validation(state, "FAIL", line_no)


def _on_workflow_rule(state: ParserState, line: str, line_no: int) -> bool:
    m = _WF_RULE_RE.search(line)
    if m:
        rule = m.group(1).strip()
        state.trace.workflows.append(WorkflowRule(rule_name=rule))
        state.add_event(EventKind.WORKFLOW, rule, "", line_no)
    return True


def _on_callout_request(state: ParserState, line: str, line_no: int) -> bool:
    m = _CALLOUT_RE.search(line)
    if m:
        payload = m.group(1).strip()
        endpoint = _CALLOUT_ENDPOINT_RE.search(payload)
        method = _CALLOUT_METHOD_RE.search(payload)
        state.trace.callouts.append(
            Callout(
                method=method.group(1) if method else "",
                endpoint=endpoint.group(1).strip() if endpoint else payload,
            )
        )
    return True


def _on_duplicate_rule(state: ParserState, line: str, line_no: int) -> bool:
    m = _DUP_RULE_RE.search(line)
    if m:
        state.trace.duplicate_rules.append(DuplicateRule(rule_name=m.group(1).strip(), dml_type=m.group(2)))
    return True


def _on_duplicate_summary(state: ParserState, line: str, line_no: int) -> bool:
    m = _DUP_SUMMARY_RE.search(line)
    rules = state.trace.duplicate_rules
    if m and rules:
        rules[-1].duplicates_found = int(m.group(1))
        rules[-1].outcome = "DUPLICATES_FOUND" if rules[-1].duplicates_found > 0 else "CLEAN"
    return True


def _on_duplicate_details(state: ParserState, line: str, line_no: int) -> bool:
    m = _DUP_ACTION_RE.search(line)
    rules = state.trace.duplicate_rules
    if m and rules:
        rules[-1].action = m.group(1).strip()
    return True


def _on_exception_thrown(state: ParserState, line: str, line_no: int) -> bool:
    m = _EXCEPTION_RE.search(line)
    if m:
        exc_type, message = m.group(2).strip(), m.group(3).strip()
        state.trace.exceptions.append(
            ExceptionRecord(
                type=exc_type,
                message=message,
                line_number=int(m.group(1)),
                log_line=line_no,
                code_unit=state.current_code_unit,
                is_limit_exception=_is_limit_exception(exc_type),
            )
        )
        state.add_event(EventKind.EXCEPTION, exc_type, message, line_no)
    return True


def _on_fatal_error(state: ParserState, line: str, line_no: int) -> bool:
    m = _FATAL_RE.search(line)
    if not m:
        return True
    fatal_msg = m.group(1).strip()
    exceptions = state.trace.exceptions
    current_unit = state.current_code_unit

    # Upgrade the first thrown exception whose message the fatal line repeats.
    for exc in exceptions:
        if not exc.is_fatal and exc.message in fatal_msg:
            exc.is_fatal = True
            exc.type = "FATAL_ERROR"
            if not exc.code_unit and current_unit:
                exc.code_unit = current_unit
            return True

    # Salesforce repeats FATAL_ERROR lines; keep one record per message.
    if any(exc.is_fatal and exc.message == fatal_msg for exc in exceptions):
        return True
    exceptions.append(
        ExceptionRecord(
            type="FATAL_ERROR",
            message=fatal_msg,
            log_line=line_no,
            code_unit=current_unit,
            is_fatal=True,
            is_limit_exception=_is_limit_exception(fatal_msg),
        )
    )
    state.add_event(EventKind.EXCEPTION, "FATAL_ERROR", fatal_msg, line_no)
    return True


def _on_user_debug(state: ParserState, line: str, line_no: int) -> bool:
    m = _USER_DEBUG_RE.search(line)
    if m:
        ts = _TIMESTAMP_RE.match(line)
        state.trace.user_debug.append(
            UserDebugLine(
                line_number=int(m.group(1)),
                level=m.group(2),
                message=m.group(3).strip(),
                timestamp=ts.group(1) if ts else None,
            )
        )
    return True


def _on_batch_begin(state: ParserState, line: str, line_no: int) -> bool:
    m = _BATCH_RE.search(line)
    state.trace.async_operations.append(AsyncOperation(type="Batch", class_name=m.group(1).strip() if m else "Unknown"))
    return True


def _on_scheduled_apex(state: ParserState, line: str, line_no: int) -> bool:
    m = _SCHEDULED_RE.search(line)
    state.trace.async_operations.append(
        AsyncOperation(type="Scheduled", class_name=m.group(1).strip() if m else "Unknown")
    )
    return True


def _on_future_handler(state: ParserState, line: str, line_no: int) -> bool:
    m = _FUTURE_RE.search(line)
    if m:
        class_name = m.group(1).strip()
        ops = state.trace.async_operations
        if not any(op.type == "Future" and op.class_name == class_name for op in ops):
            ops.append(AsyncOperation(type="Future", class_name=class_name))
    return True


HANDLERS: tuple[tuple[str, Handler], ...] = (
    ("|EXECUTION_STARTED", _on_execution_started),
    ("|EXECUTION_FINISHED", _on_execution_finished),
    ("|CODE_UNIT_STARTED|", _on_code_unit_started),
    ("|CODE_UNIT_FINISHED|", _on_code_unit_finished),
    ("|FLOW_START_INTERVIEWS|", _on_flow_start_interviews),
    ("|FLOW_START_INTERVIEW_BEGIN|", _on_flow_interview_begin),
    ("|FLOW_RESUME_INTERVIEW_BEGIN|", _on_flow_interview_resume),
    ("|FLOW_ELEMENT_BEGIN|", _on_flow_element_begin),
    ("|FLOW_ELEMENT_END|", _on_flow_element_end),
    ("|DML_BEGIN|", _on_dml_begin),
    ("|SOQL_EXECUTE_BEGIN|", _on_soql_begin),
    ("|SOQL_EXECUTE_END|", _on_soql_end),
    ("|VALIDATION_RULE|", _on_validation_rule),
    ("|VALIDATION_PASS", _on_validation_pass),
    ("|VALIDATION_FAIL", _on_validation_fail),
    ("|WF_RULE_FILTER|", _on_workflow_rule),
    ("|CALLOUT_REQUEST|", _on_callout_request),
    ("|DUPLICATE_DETECTION_RULE_INVOCATION|", _on_duplicate_rule),
    ("|DUPLICATE_DETECTION_MATCH_INVOCATION_SUMMARY|", _on_duplicate_summary),
    ("|DUPLICATE_DETECTION_MATCH_INVOCATION_DETAILS|", _on_duplicate_details),
    ("|EXCEPTION_THROWN|", _on_exception_thrown),
    ("|FATAL_ERROR|", _on_fatal_error),
    ("|USER_DEBUG|", _on_user_debug),
    ("|BATCH_APEX_EXECUTE_BEGIN|", _on_batch_begin),
    ("|SCHEDULED_APEX|", _on_scheduled_apex),
    ("|FUTURE_HANDLER|", _on_future_handler),
)


def is_infrastructure_line(line: str) -> bool:
    """True for blank lines and known log plumbing that carries no trace events."""
    if not line.strip():
        return True
    if _CLOCK_RE.match(line) or _LIMIT_LINE_RE.match(line):
        return True
    return any(marker in line for marker in _INFRASTRUCTURE_MARKERS)


def classify_line(state: ParserState, line: str, line_no: int, flow_analyzer: FlowAnalyzer | None = None) -> bool:
    """Run every matching handler for one line. Return True if any consumed it."""
    matched = False
    for marker, handler in HANDLERS:
        if marker in line and handler(state, line, line_no):
            matched = True
    if flow_analyzer is not None and flow_analyzer.process_line(line, state):
        matched = True
    if not matched and is_infrastructure_line(line):
        matched = True
    if not matched:
        state.unknown_lines += 1
    return matched


def classify(text: str, flow_analyzer: FlowAnalyzer | None = None, max_lines: int = MAX_LOG_LINES) -> ParserState:
    """Scan a whole log and return the populated parser state."""
    all_lines = [line.rstrip("\r") for line in text.split("\n")]
    state = ParserState()
    state.trace.total_log_lines = len(all_lines)
    state.trace.is_large_log = len(all_lines) > max_lines
    if state.trace.is_large_log:
        logger.warning("Large log: %d lines, truncating to %d", len(all_lines), max_lines)
    state.lines = all_lines[:max_lines] if state.trace.is_large_log else all_lines

    for index, line in enumerate(state.lines):
        classify_line(state, line, index + 1, flow_analyzer)

    if flow_analyzer is not None:
        flow_analyzer.resolve_post_parse(state)
    return state
