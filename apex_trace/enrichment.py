"""Optional enrichment adapters — best-effort, append-only annex to a finished trace.

Providers supply already-resolved data (intercepted network calls, affected
records, later async logs). Nothing here issues I/O itself, and a failing
provider is logged and skipped; it never blocks the result.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlparse

from apex_trace.analysis import compute_confidence
from apex_trace.models import EventKind, NetworkCall, TimelineEvent, TraceResult, to_dict

logger = logging.getLogger(__name__)

_APEX_ACTION_RE = re.compile(r"apex://([^/]+)/ACTION\$(.+)")
_APEXREST_RE = re.compile(r".*/apexrest/")

NETWORK_ORDER_BASE = 100
UI_ERROR_ORDER_BASE = 200


@dataclass
class NetworkCapture:
    """Client-side calls observed while the logs were captured."""

    events: list[dict[str, Any]] = field(default_factory=list)
    ui_errors: list[dict[str, Any]] = field(default_factory=list)
    caller_components: dict[str, list[str]] = field(default_factory=dict)


@runtime_checkable
class EnrichmentProvider(Protocol):
    def records_affected(self, result: TraceResult) -> list[dict[str, Any]]: ...

    def async_logs(self, result: TraceResult) -> list[dict[str, Any]]: ...

    def network_events(self, result: TraceResult) -> NetworkCapture | None: ...


# ---------------------------------------------------------------------------
# Network calls
# ---------------------------------------------------------------------------


def shorten_url(url: str | None) -> str:
    if not url:
        return "Unknown"
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return url[:60] + "…" if len(url) > 60 else url
    if "/apexrest/" in parsed.path:
        return _APEXREST_RE.sub("/apexrest/", parsed.path)
    return parsed.path


def _to_network_call(event: dict[str, Any]) -> NetworkCall:
    status = event.get("status_code")
    failed = bool(event.get("failed"))
    class_name = event.get("class_name")
    method_name = event.get("method_name")
    duration = event.get("duration_ms") or 0
    status_label = "ERR" if failed else (status or "?")
    return NetworkCall(
        name=f"{class_name}.{method_name or '?'}" if class_name else shorten_url(event.get("url")),
        class_name=class_name,
        method_name=method_name,
        detail=f"{status_label} · {duration}ms",
        status_code=status,
        failed=failed,
        is_error=failed or status == 0 or (status is not None and status >= 400),
        duration_ms=duration,
        timestamp=event.get("timestamp"),
        url=event.get("url"),
    )


def _resolve_positionally(result: TraceResult, calls: list[NetworkCall]) -> None:
    """The Nth unnamed call maps to the Nth apex:// code unit in log order."""
    apex_units = [t for t in result.code_unit_timings if t.name.startswith("apex://")]
    unresolved = [c for c in calls if not c.class_name]
    for call, unit in zip(unresolved, apex_units):
        m = _APEX_ACTION_RE.match(unit.name)
        if m:
            call.class_name, call.method_name = m.group(1), m.group(2)
            call.name = f"{call.class_name}.{call.method_name}"


def _dedupe_calls(calls: list[NetworkCall]) -> list[NetworkCall]:
    """Collapse repeated calls by name, keeping a count and a running average duration."""
    seen: dict[str, NetworkCall] = {}
    for call in calls:
        existing = seen.get(call.name)
        if existing is None:
            call.count = 1
            seen[call.name] = call
            continue
        existing.count += 1
        existing.duration_ms = round(existing.duration_ms + (call.duration_ms - existing.duration_ms) / existing.count)
        existing.is_error = existing.is_error or call.is_error
    return list(seen.values())


def apply_network_events(
    result: TraceResult,
    events: list[dict[str, Any]],
    ui_errors: list[dict[str, Any]] | None = None,
    caller_components: dict[str, list[str]] | None = None,
) -> None:
    """Append network calls and UI errors, prepending their timeline events with negative orders."""
    ui_errors = list(ui_errors or [])
    caller_components = caller_components or {}

    calls = [_to_network_call(e) for e in events]
    _resolve_positionally(result, calls)
    for call in calls:
        if call.class_name and call.method_name:
            call.caller_components = list(caller_components.get(f"{call.class_name}.{call.method_name}", []))
    calls = _dedupe_calls(calls)

    # A repeated enrichment stacks below whatever is already at the head of the timeline.
    floor = min((e.order for e in result.timeline), default=0)
    network_base = max(NETWORK_ORDER_BASE, 1 - floor)
    ui_base = max(UI_ERROR_ORDER_BASE, network_base + len(calls))

    ui_events = [
        TimelineEvent(
            order=-(ui_base + len(ui_errors) - 1 - i),
            kind=EventKind.UI_ERROR,
            name=err.get("title") or "Client Error",
            detail=err.get("message") or "",
        )
        for i, err in enumerate(ui_errors)
    ]
    network_events = []
    for i, call in enumerate(calls):
        detail = call.detail
        if call.caller_components:
            detail += f" ← {call.caller_components[0]}.lwc"
        network_events.append(
            TimelineEvent(
                order=-(network_base + len(calls) - 1 - i),
                kind=EventKind.NETWORK,
                name=call.name,
                detail=detail,
                count_badge=call.count if call.count > 1 else None,
            )
        )

    result.ui_errors.extend(ui_errors)
    result.network_calls.extend(calls)
    result.timeline[:0] = ui_events + network_events


# ---------------------------------------------------------------------------
# Async log correlation and affected records
# ---------------------------------------------------------------------------


def correlate_async_logs(result: TraceResult, log_metadata: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Link each async operation to a later log whose operation names its class."""
    if not result.async_operations:
        return []
    async_logs = []
    for log in log_metadata:
        operation = (log.get("operation") or "").lower()
        if any(
            op.class_name.lower() in operation or "queueable" in operation or "future" in operation or "batch" in operation
            for op in result.async_operations
        ):
            async_logs.append(log)

    correlations = []
    for op in result.async_operations:
        match = next((log for log in async_logs if op.class_name.lower() in (log.get("operation") or "").lower()), None)
        if match is not None:
            status = "linked"
        elif async_logs:
            status = "possible"
        else:
            status = "not_found"
        correlations.append(
            {
                "operation": to_dict(op),
                "status": status,
                "log_id": match.get("log_id") if match else None,
                "log_size": match.get("log_length") if match else None,
            }
        )
    result.async_correlation.extend(correlations)
    return correlations


def apply_records_affected(result: TraceResult, records: list[dict[str, Any]]) -> None:
    """Append located records; only the records confidence component is refreshed."""
    result.records_affected.extend(records)
    result.confidence.records = compute_confidence(result).records


def enrich(result: TraceResult, provider: EnrichmentProvider) -> TraceResult:
    """Apply every enrichment the provider offers. Each one fails independently."""
    try:
        capture = provider.network_events(result)
        if capture is not None:
            apply_network_events(result, capture.events, capture.ui_errors, capture.caller_components)
    except Exception as exc:
        logger.warning("Network enrichment failed: %s", exc)

    try:
        records = provider.records_affected(result)
        if records:
            apply_records_affected(result, records)
    except Exception as exc:
        logger.warning("Record tracking failed: %s", exc)

    try:
        logs = provider.async_logs(result)
        if logs is not None:
            correlate_async_logs(result, logs)
    except Exception as exc:
        logger.warning("Async correlation failed: %s", exc)
    return result
