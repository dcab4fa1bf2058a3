"""Baseline ring and comparator — incident flags against prior captures of the same interaction."""

from __future__ import annotations

import collections
import copy
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from apex_trace.models import IncidentFlag, TraceResult

DEFAULT_CAPACITY = 10


@dataclass
class Baseline:
    label: str
    timestamp: str
    fingerprint_hash: str
    snapshot: TraceResult


def _round(value: float) -> int:
    """Round half up, so 2.5 becomes 3."""
    return math.floor(value + 0.5)


class BaselineRing:
    """Thread-safe FIFO ring of saved captures backed by a bounded deque."""

    def __init__(self, capacity=DEFAULT_CAPACITY):
        self._baselines = collections.deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self):
        return self._baselines.maxlen

    def save(self, result: TraceResult, label: str | None = None, now: datetime | None = None) -> Baseline:
        """Snapshot the result without raw line caches; evicts the oldest entry when full."""
        now = now or datetime.now(timezone.utc)
        snapshot = copy.deepcopy(result)
        snapshot.raw_log_snippets = {}
        baseline = Baseline(
            label=label or f"Trace {now.strftime('%H:%M:%S')}",
            timestamp=now.isoformat(),
            fingerprint_hash=result.transaction_fingerprint.hash,
            snapshot=snapshot,
        )
        with self._lock:
            self._baselines.append(baseline)
        return baseline

    def list(self) -> list[Baseline]:
        """All baselines, most recent first."""
        with self._lock:
            return list(reversed(self._baselines))

    def hashes(self) -> list[str]:
        with self._lock:
            return [b.fingerprint_hash for b in self._baselines if b.fingerprint_hash]

    def clear(self):
        with self._lock:
            self._baselines.clear()

    def __len__(self):
        return len(self._baselines)

    def __iter__(self):
        return iter(self.list())


def compute_incident_flags(result: TraceResult, baselines: Iterable[Baseline]) -> list[IncidentFlag]:
    """Flag deviations from the average of saved baselines. Needs at least two baselines."""
    saved = list(baselines)
    if len(saved) < 2:
        return []

    stats = result.stats
    count = len(saved)
    avg_soql = sum(b.snapshot.stats.total_soql for b in saved) / count
    avg_dml = sum(b.snapshot.stats.total_dml for b in saved) / count
    avg_exceptions = sum(b.snapshot.stats.total_exceptions for b in saved) / count

    flags: list[IncidentFlag] = []
    if avg_soql > 0 and stats.total_soql > avg_soql * 2:
        flags.append(
            IncidentFlag(
                metric="SOQL",
                severity="warning",
                message=(
                    f"SOQL count {stats.total_soql} is {_round(stats.total_soql / avg_soql)}x baseline "
                    f"(avg: {_round(avg_soql)})"
                ),
                current=stats.total_soql,
                baseline=_round(avg_soql),
            )
        )
    if avg_dml > 0 and stats.total_dml > avg_dml * 2:
        flags.append(
            IncidentFlag(
                metric="DML",
                severity="warning",
                message=(
                    f"DML count {stats.total_dml} is {_round(stats.total_dml / avg_dml)}x baseline "
                    f"(avg: {_round(avg_dml)})"
                ),
                current=stats.total_dml,
                baseline=_round(avg_dml),
            )
        )
    if stats.total_exceptions > avg_exceptions + 1:
        flags.append(
            IncidentFlag(
                metric="Exceptions",
                severity="critical",
                message=f"Exception spike: {stats.total_exceptions} vs baseline {_round(avg_exceptions)}",
                current=stats.total_exceptions,
                baseline=_round(avg_exceptions),
            )
        )

    shapes = [b.fingerprint_hash for b in saved if b.fingerprint_hash]
    current_hash = result.transaction_fingerprint.hash
    if current_hash and shapes and current_hash not in shapes:
        flags.append(
            IncidentFlag(
                metric="Shape",
                severity="info",
                message="Transaction shape differs from all saved baselines",
            )
        )
    return flags


# ---------------------------------------------------------------------------
# Side-by-side comparison
# ---------------------------------------------------------------------------

COMPARED_STATS = (
    ("Automations", "total_automations"),
    ("DML Ops", "total_dml"),
    ("SOQL Queries", "total_soql"),
    ("Exceptions", "total_exceptions"),
    ("Validation Fails", "total_validation_fails"),
    ("Callouts", "total_callouts"),
    ("Blast Radius", "blast_radius"),
)


@dataclass
class StatDelta:
    label: str
    current: int
    baseline: int

    @property
    def delta(self) -> int:
        return self.current - self.baseline


@dataclass
class TraceComparison:
    baseline_label: str
    same_shape: bool
    deltas: list[StatDelta] = field(default_factory=list)
    added_automations: list[str] = field(default_factory=list)
    removed_automations: list[str] = field(default_factory=list)


def compare_traces(current: TraceResult, baseline: Baseline) -> TraceComparison:
    base = baseline.snapshot
    current_names = list(dict.fromkeys(a.name for a in current.automations))
    base_names = list(dict.fromkeys(a.name for a in base.automations))
    return TraceComparison(
        baseline_label=baseline.label,
        same_shape=current.transaction_fingerprint.hash == baseline.fingerprint_hash,
        deltas=[
            StatDelta(label=label, current=getattr(current.stats, attr), baseline=getattr(base.stats, attr))
            for label, attr in COMPARED_STATS
        ],
        added_automations=[n for n in current_names if n not in base_names],
        removed_automations=[n for n in base_names if n not in current_names],
    )
