"""Flow element enrichment — decision outcomes, loop iteration counts, fault paths.

The classifier hands every line to a FlowAnalyzer after its own marker table
has run. Analyzers keep no state of their own: anything that must survive
between lines lives on the ParserState, so one analyzer instance can serve
concurrent parses.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from apex_trace.models import FlowElement

if TYPE_CHECKING:
    from apex_trace.classifier import ParserState

_RULE_ENTRY_RE = re.compile(r"\|FLOW_RULE_ENTRY\|([^|]+)\|([^|]+)\|(.+?)$")
_LOOP_NEXT_RE = re.compile(r"\|FLOW_LOOP_NEXT\|([^|]+)\|(.+?)$")
_ELEMENT_FAULT_RE = re.compile(r"\|FLOW_ELEMENT_FAULT\|([^|]+)\|([^|]+)\|([^|]+)\|(.+?)$")


@runtime_checkable
class FlowAnalyzer(Protocol):
    def process_line(self, line: str, state: ParserState) -> bool: ...

    def resolve_post_parse(self, state: ParserState) -> None: ...


def _latest_element(elements: list[FlowElement], flow_name: str, element_name: str) -> FlowElement | None:
    for element in reversed(elements):
        if element.flow_name == flow_name and element.element_name == element_name:
            return element
    return None


class FlowElementAnalyzer:
    """Default analyzer for FLOW_RULE_ENTRY, FLOW_LOOP_NEXT and FLOW_ELEMENT_FAULT lines."""

    def process_line(self, line: str, state: ParserState) -> bool:
        """Return True if the line was consumed."""
        matched = False
        elements = state.trace.flow_elements

        # Format: ts|FLOW_RULE_ENTRY|flowName|decisionName|outcomeName
        if "|FLOW_RULE_ENTRY|" in line:
            matched = True
            m = _RULE_ENTRY_RE.search(line)
            if m:
                flow_name, decision, outcome = (g.strip() for g in m.groups())
                element = _latest_element(elements, flow_name, decision)
                if element:
                    element.outcome = outcome
                else:
                    # Decision element not seen yet
                    state.pending_outcomes.append((flow_name, decision, outcome))

        # Format: ts|FLOW_LOOP_NEXT|flowName|loopName
        if "|FLOW_LOOP_NEXT|" in line:
            matched = True
            m = _LOOP_NEXT_RE.search(line)
            if m:
                element = _latest_element(elements, m.group(1).strip(), m.group(2).strip())
                if element:
                    element.iteration_count = (element.iteration_count or 0) + 1

        # Format: ts|FLOW_ELEMENT_FAULT|flowName|elementType|elementName|faultMessage
        if "|FLOW_ELEMENT_FAULT|" in line:
            matched = True
            m = _ELEMENT_FAULT_RE.search(line)
            if m:
                element = _latest_element(elements, m.group(1).strip(), m.group(3).strip())
                if element:
                    element.is_fault = True
                    element.fault_message = m.group(4).strip()
                    element.status = "faulted"

        return matched

    def resolve_post_parse(self, state: ParserState) -> None:
        """Attach outcomes that were logged before their decision element."""
        for flow_name, decision, outcome in state.pending_outcomes:
            for element in state.trace.flow_elements:
                if element.flow_name == flow_name and element.element_name == decision:
                    element.outcome = outcome
                    break
        state.pending_outcomes.clear()
