"""Main entry point for callgrind-harness.

This module handles the command-line interface (CLI), configuration loading and
logging setup, and runs the benchmark pipeline on the output files named on the
command line.

Commands:
    run: Parse the output files of one benchmark, compare the result against
        the previous run or a named baseline, check the regression limits, save
        the new baseline and print the report.
    compare-by-id: Compare the benchmarks of saved JSON summaries which share a
        case id across benchmark functions.

Exit Codes:
    0: Success.
    1: A parse, baseline or other runtime error.
    2: A configuration error (also used by argparse for usage errors).
    3: The run succeeded but at least one benchmark regressed.
"""

from __future__ import annotations

import argparse
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from callgrind_harness import __version__
from callgrind_harness.benchmark import BenchmarkRunner, group_by_tool
from callgrind_harness.compare import compare_by_id
from callgrind_harness.config import DEFAULT_TOLERANCE, PARSE_ERROR_POLICIES, Config, load_config
from callgrind_harness.errors import BaselineError, ConfigError, HarnessError, ParseError
from callgrind_harness.metrics import ToolKind
from callgrind_harness.model import BenchmarkIdentity
from callgrind_harness.report import format_benchmark, format_comparison, id_entries, load_summary, write_summary

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_REGRESSED = 3

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Baselines loaded and saved, files written.
            - ``WARNING``: Recoverable oddities (missing format marker, unmatched sentinel).
            - ``ERROR``: Skipped units, unreadable config files.
            - ``DEBUG``: Ignored lines, per-unit totals.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file. Its directory is
            created if missing.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: WARNING",
    )
    parser.add_argument(
        "--show-all",
        action="store_const",
        const=True,
        default=None,
        help="Show all recorded metrics instead of the default ones.",
    )
    parser.add_argument(
        "--tolerance",
        type=float,
        nargs="?",
        const=DEFAULT_TOLERANCE,
        default=None,
        help="Show changes of at most this many percent as within the tolerance. "
        f"Without a value: {DEFAULT_TOLERANCE}",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="callgrind-harness",
        description="Parse valgrind tool output, compare it against baselines and check for regressions.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Process the output files of one benchmark.")
    run.add_argument("files", nargs="+", help="Output files, one per process, thread and part.")
    run.add_argument(
        "--tool",
        type=str,
        default=None,
        help="The tool which wrote the files. Default: taken from the file names.",
    )
    run.add_argument("--function", required=True, help="The benchmark function.")
    run.add_argument("--bench-file", default=None, help="The benchmark file. Default: the function name.")
    run.add_argument("--group", default=None, help="The benchmark group.")
    run.add_argument("--id", default=None, help="The benchmark case id.")
    run.add_argument("--details", default=None, help="Description of the case arguments.")
    run.add_argument("--baseline", default=None, help="Compare against this named baseline.")
    run.add_argument("--save-baseline", default=None, help="Save the run under this baseline name.")
    run.add_argument("--baseline-dir", default=None, help="Directory of the baseline store.")
    run.add_argument("--project-root", default=None, help="Show source paths relative to this directory.")
    run.add_argument("--save-summary", default=None, help="Write the JSON summary to this file.")
    run.add_argument("--flamegraph", default=None, help="Write flamegraph stacks to this directory.")
    run.add_argument("--flamegraph-metric", default=None, help="Metric of the flamegraph. Default: Ir")
    run.add_argument("--sentinel", default=None, help="Cut flamegraph stacks at this function (glob).")
    run.add_argument("--callgrind-limits", default=None, help="Regression limits, e.g. '@all=10%%,ir=5%%'.")
    run.add_argument("--cachegrind-limits", default=None, help="Regression limits for cachegrind.")
    run.add_argument("--dhat-limits", default=None, help="Regression limits for DHAT.")
    run.add_argument(
        "--check-regressions",
        action="store_const",
        const=True,
        default=None,
        help="Check the default limits of tools without configured limits.",
    )
    run.add_argument(
        "--regression-fail-fast",
        action="store_const",
        const=True,
        default=None,
        help="Stop at the first regression.",
    )
    run.add_argument(
        "--parse-error-policy",
        choices=PARSE_ERROR_POLICIES,
        default=None,
        help="Abort or skip a unit whose output cannot be parsed. Default: abort",
    )
    run.add_argument(
        "--show-intermediate",
        action="store_const",
        const=True,
        default=None,
        help="Show the costs of every process, thread and part.",
    )
    _add_common_arguments(run)

    by_id = subparsers.add_parser("compare-by-id", help="Compare saved summaries by case id.")
    by_id.add_argument("summaries", nargs="+", help="JSON summaries in declaration order.")
    _add_common_arguments(by_id)
    return parser


# Arguments which are not configuration keys.
_NON_CONFIG_ARGS = (
    "command", "files", "summaries", "tool", "function", "bench_file", "group", "id", "details",
    "save_summary", "flamegraph",
)


def _config_args(args: argparse.Namespace) -> Dict[str, Any]:
    return {key: value for key, value in vars(args).items() if key not in _NON_CONFIG_ARGS}


def run_command(args: argparse.Namespace, config: Config) -> int:
    tool = ToolKind.from_str(args.tool) if args.tool else None
    files = group_by_tool(args.files, tool)
    identity = BenchmarkIdentity(
        bench_file=args.bench_file or args.function,
        function=args.function,
        group=args.group,
        id=args.id,
        details=args.details,
    )

    runner = BenchmarkRunner(config, flamegraph_dir=args.flamegraph)
    summary = runner.run(identity, files)

    sys.stdout.write(format_benchmark(summary, show_all=config.show_all, tolerance=config.tolerance))
    if args.save_summary:
        write_summary(summary, args.save_summary)

    return EXIT_REGRESSED if summary.is_regressed else EXIT_SUCCESS


def compare_by_id_command(args: argparse.Namespace, config: Config) -> int:
    summaries = [load_summary(path) for path in args.summaries]
    for (module, tool), entries in id_entries(summaries).items():
        comparisons = compare_by_id(entries)
        if not comparisons:
            logger.debug(f"No common ids in {module or 'benchmarks'} ({tool.id})")
            continue
        kinds = None if config.show_all else tool.metric_type.default_group()
        for comparison in comparisons:
            title = f"{module}::{comparison.other_function}" if module else comparison.other_function
            sys.stdout.write(f"{title} {comparison.id}\n")
            sys.stdout.write(format_comparison(comparison, kinds, config.tolerance))
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load the configuration, set up logging and run
    the requested command.

    Raises:
        SystemExit: Always, with one of the exit codes listed in the module docstring.

    Example:
        $ callgrind-harness run callgrind.bench_fib.*.out --function bench_fib --callgrind-limits 'ir=5%'
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(bootstrap_formatter)
    bootstrap_level = logging.DEBUG if args.debug else logging.WARNING
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(_config_args(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.stderr.write(f"Configuration Error: {e}\n")
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        if args.command == "run":
            code = run_command(args, config)
        else:
            code = compare_by_id_command(args, config)
    except ConfigError as e:
        sys.stderr.write(f"Configuration Error: {e}\n")
        sys.exit(EXIT_CONFIG_ERROR)
    except ParseError as e:
        logger.debug("Parse error", exc_info=True)
        sys.stderr.write(f"Parse Error: {e}\n")
        sys.exit(EXIT_FAILURE)
    except BaselineError as e:
        sys.stderr.write(f"Baseline Error: {e}\n")
        sys.exit(EXIT_FAILURE)
    except HarnessError as e:
        sys.stderr.write(f"Error: {e}\n")
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_FAILURE)

    sys.exit(code)


if __name__ == "__main__":
    main()
