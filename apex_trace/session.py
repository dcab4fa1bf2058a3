"""Capture session — owns the baseline ring and runs parse, stitch, merge, analyze."""

import logging
from concurrent.futures import ThreadPoolExecutor

from apex_trace.analysis import analyze
from apex_trace.baseline import Baseline, BaselineRing, TraceComparison, compare_traces
from apex_trace.builder import parse_log
from apex_trace.config import Config
from apex_trace.enrichment import EnrichmentProvider, enrich
from apex_trace.errors import MergePreconditionError
from apex_trace.flow_analysis import FlowAnalyzer
from apex_trace.models import TraceResult
from apex_trace.sources import LogRecord
from apex_trace.stitcher import merge_traces, stitch_interviews

logger = logging.getLogger(__name__)


class TraceSession:
    """One logical capture context. Sessions share no state with each other."""

    def __init__(self, config: Config | None = None, flow_analyzer: FlowAnalyzer | None = None):
        self._config = config or Config()
        self._flow_analyzer = flow_analyzer
        self._baselines = BaselineRing(capacity=self._config["baselines"]["capacity"])

    @property
    def config(self) -> Config:
        return self._config

    @property
    def baselines(self) -> BaselineRing:
        return self._baselines

    def _parse(self, record: LogRecord) -> TraceResult:
        trace = parse_log(record.text, self._flow_analyzer, self._config)
        trace.log_ids = [record.log_id]
        return trace

    def analyze(self, logs: list[LogRecord | str]) -> TraceResult:
        """Parse logs in parallel, fold them in the order given, and score the result."""
        if not logs:
            raise MergePreconditionError("analyze requires at least one log")
        records = [
            log if isinstance(log, LogRecord) else LogRecord(log_id=f"log-{i + 1}", text=log)
            for i, log in enumerate(logs)
        ]

        workers = min(self._config["workers"]["max_workers"], len(records))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            # map() yields in submission order regardless of completion order
            traces = list(executor.map(self._parse, records))

        if len(traces) > 1:
            stitch_interviews(traces)
        result = merge_traces(traces)
        analyze(result, self._config.budgets, self._baselines)

        logger.info(
            "Analyzed %d log(s): %d automation(s), %d DML, %d SOQL, quality %d",
            len(records),
            result.stats.total_automations,
            result.stats.total_dml,
            result.stats.total_soql,
            result.trace_quality,
        )
        return result

    def enrich(self, result: TraceResult, provider: EnrichmentProvider) -> TraceResult:
        return enrich(result, provider)

    def save_baseline(self, result: TraceResult, label: str | None = None) -> Baseline:
        baseline = self._baselines.save(result, label)
        logger.info("Saved baseline %r (%d/%d)", baseline.label, len(self._baselines), self._baselines.capacity)
        return baseline

    def compare(self, result: TraceResult, index: int = 0) -> TraceComparison:
        """Compare against a saved baseline, most recent first."""
        return compare_traces(result, self._baselines.list()[index])
