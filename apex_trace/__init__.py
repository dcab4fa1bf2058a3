"""Salesforce Apex debug-log trace analyzer."""

from apex_trace.analysis import analyze
from apex_trace.builder import parse_log
from apex_trace.config import Config
from apex_trace.errors import ConfigError, MergePreconditionError, TraceAnalyzerError
from apex_trace.session import TraceSession
from apex_trace.stitcher import merge_traces, stitch_interviews

__all__ = [
    "Config",
    "ConfigError",
    "MergePreconditionError",
    "TraceAnalyzerError",
    "TraceSession",
    "analyze",
    "merge_traces",
    "parse_log",
    "stitch_interviews",
]
