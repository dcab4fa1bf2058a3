"""apex-trace: analyze Salesforce Apex debug logs captured during one user interaction."""

import logging
import sys
import time
from argparse import ArgumentParser

from watchdog.observers import Observer

from apex_trace.config import Config
from apex_trace.errors import TraceAnalyzerError
from apex_trace.formatter import get_formatter
from apex_trace.session import TraceSession
from apex_trace.sources import expand_paths, read_log_file
from apex_trace.watcher import CaptureWatcher

logger = logging.getLogger(__name__)


def build_parser() -> ArgumentParser:
    """Build the CLI argument parser."""
    parser = ArgumentParser(
        prog="apex-trace",
        description="Reconstruct and score what happened server-side from Apex debug logs.",
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="Debug log path(s) or glob pattern(s), in capture order",
    )
    parser.add_argument(
        "--config",
        help="YAML config file (default: $APEX_TRACE_CONFIG or built-in defaults)",
    )
    parser.add_argument(
        "--output",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    parser.add_argument(
        "--watch",
        metavar="DIR",
        help="Re-analyze DIR whenever .log files appear in it",
    )
    parser.add_argument(
        "--save-baseline",
        action="store_true",
        help="Save each analyzed capture as a baseline for later comparison",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def _watch(directory: str, session: TraceSession, formatter, save_baselines: bool):
    watcher = CaptureWatcher(
        directory,
        session,
        on_result=lambda result: print(formatter(result), flush=True),
        debounce_seconds=session.config["watch"]["debounce_seconds"],
        save_baselines=save_baselines,
    )
    watcher.process_directory()

    observer = Observer()
    observer.schedule(watcher, directory, recursive=False)
    observer.start()
    logger.info("Watching: %s", directory)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
        observer.stop()
        observer.join(timeout=5)
        logger.info("Watcher stopped.")


def run_pipeline(args):
    """Load config, analyze the given logs (or watch a directory), print the result."""
    if not args.files and not args.watch:
        print("Error: provide log files or --watch DIR", file=sys.stderr)
        sys.exit(1)
    if args.files and args.watch:
        print("Error: log files and --watch cannot be used together", file=sys.stderr)
        sys.exit(1)

    try:
        config = Config(args.config) if args.config else Config.from_env()
    except TraceAnalyzerError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    session = TraceSession(config)
    formatter = get_formatter(args.output)

    if args.watch:
        _watch(args.watch, session, formatter, args.save_baseline)
        return

    try:
        paths = expand_paths(args.files)
        records = [read_log_file(p) for p in paths]
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    result = session.analyze(records)
    if args.save_baseline:
        session.save_baseline(result)
    print(formatter(result))


def main():
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [TRACE] %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    run_pipeline(args)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
    except BrokenPipeError:
        sys.exit(0)
