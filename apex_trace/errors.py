"""Exception types raised by the public API. Log content never raises."""


class TraceAnalyzerError(Exception):
    """Base class for caller-contract violations."""


class MergePreconditionError(TraceAnalyzerError, ValueError):
    """Raised when a merge is requested over zero traces."""


class ConfigError(TraceAnalyzerError):
    """Raised when a configuration file cannot be loaded or fails validation."""
