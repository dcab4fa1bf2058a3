"""Governor-limit extraction and risk classification."""

import re

from apex_trace.models import LimitUsage, Level

LIMIT_PATTERNS: dict[str, re.Pattern] = {
    "soqlQueries": re.compile(r"Number of SOQL queries:\s*(\d+)\s*out of\s*(\d+)"),
    "dmlStatements": re.compile(r"Number of DML statements:\s*(\d+)\s*out of\s*(\d+)"),
    "cpuTime": re.compile(r"Maximum CPU time:\s*(\d+)\s*out of\s*(\d+)"),
    "heapSize": re.compile(r"Maximum heap size:\s*(\d+)\s*out of\s*(\d+)"),
    "dmlRows": re.compile(r"Number of DML rows:\s*(\d+)\s*out of\s*(\d+)"),
    "soqlRows": re.compile(r"Number of query rows:\s*(\d+)\s*out of\s*(\d+)"),
    "callouts": re.compile(r"Number of callouts:\s*(\d+)\s*out of\s*(\d+)"),
    "futureCalls": re.compile(r"Number of future calls:\s*(\d+)\s*out of\s*(\d+)"),
    "queueableJobs": re.compile(r"Number of queueable jobs added to the queue:\s*(\d+)\s*out of\s*(\d+)"),
    "emailInvocations": re.compile(r"Number of Email Invocations:\s*(\d+)\s*out of\s*(\d+)"),
}

_BLOCK_RE = re.compile(r"LIMIT_USAGE_FOR_NS.*?CUMULATIVE_LIMIT_USAGE_END", re.DOTALL)

HIGH_RISK_RATIO = 0.85
MEDIUM_RISK_RATIO = 0.70


def parse_governor_limits(text: str) -> dict[str, LimitUsage]:
    """Extract limit usage, keeping the maximum ``used`` seen across all blocks.

    Salesforce emits a usage block at every transaction boundary, so the
    maximum survives a log that was cut before its final summary. Logs
    without any block fall back to the first match of each metric.
    """
    limits: dict[str, LimitUsage] = {}
    blocks = [m.group(0) for m in _BLOCK_RE.finditer(text)]

    if blocks:
        for block in blocks:
            for key, pattern in LIMIT_PATTERNS.items():
                m = pattern.search(block)
                if not m:
                    continue
                used, limit = int(m.group(1)), int(m.group(2))
                if key not in limits or used > limits[key].used:
                    limits[key] = LimitUsage(used=used, limit=limit)
    else:
        for key, pattern in LIMIT_PATTERNS.items():
            m = pattern.search(text)
            if m:
                limits[key] = LimitUsage(used=int(m.group(1)), limit=int(m.group(2)))
    return limits


def classify_risk(usage: LimitUsage) -> Level:
    ratio = usage.ratio
    if ratio >= HIGH_RISK_RATIO:
        return Level.HIGH
    if ratio >= MEDIUM_RISK_RATIO:
        return Level.MEDIUM
    return Level.LOW


def compute_limit_risk(limits: dict[str, LimitUsage]) -> dict[str, Level]:
    """Risk per metric; metrics with a zero limit are skipped."""
    return {key: classify_risk(usage) for key, usage in limits.items() if usage.limit > 0}


def merge_limits(a: dict[str, LimitUsage], b: dict[str, LimitUsage]) -> dict[str, LimitUsage]:
    """Per-metric max of ``used`` and ``limit`` across two traces (never a sum)."""
    merged: dict[str, LimitUsage] = {}
    for key in list(a) + [k for k in b if k not in a]:
        av, bv = a.get(key), b.get(key)
        if av is not None and bv is not None:
            merged[key] = LimitUsage(used=max(av.used, bv.used), limit=max(av.limit, bv.limit))
        else:
            src = av if av is not None else bv
            merged[key] = LimitUsage(used=src.used, limit=src.limit)
    return merged
