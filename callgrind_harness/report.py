"""Terminal report and machine-readable summary of a benchmark run.

The terminal report is the vertical table known from the profilers' own
annotate tools, one line per metric::

    bench_fib::fibonacci short:10
      ======= CALLGRIND ====================================================
      Instructions:                  1733|1734            (-0.05767%) [-1.00058x]
      L1 Hits:                       2359|2360            (-0.04237%) [-1.00042x]
      Estimated Cycles:              2484|2484            (No change)

New values are left of the bar, old values right of it. A percentage or factor
which cannot be computed is shown as ``*********``.

The JSON summary carries everything the table shows for *all* recorded metrics.
It is versioned by :data:`SUMMARY_SCHEMA_VERSION`. Percentages and factors are
written as strings so that infinities and the "no change" state survive the
round trip through JSON.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, Union

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

from callgrind_harness.compare import (
    ComparisonResult,
    Diff,
    DiffStatus,
    IdComparison,
    IdEntry,
    MetricComparison,
    Violation,
)
from callgrind_harness.errors import HarnessError
from callgrind_harness.metrics import CostMap, MetricKind, Number, ToolKind
from callgrind_harness.model import BenchmarkIdentity
from callgrind_harness.paths import UnitId

if TYPE_CHECKING:
    from callgrind_harness.benchmark import BenchmarkSummary, ToolSummary

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "SUMMARY_SCHEMA_VERSION",
    "to_string_signed_short",
    "to_string_unsigned_short",
    "format_value",
    "format_float",
    "format_title",
    "tool_headline",
    "format_baselines",
    "format_vertical",
    "format_violations",
    "format_tool",
    "format_benchmark",
    "format_comparison",
    "summary_to_dict",
    "write_summary",
    "load_summary",
    "id_entries",
]

SUMMARY_SCHEMA_VERSION = "1"

NOT_AVAILABLE = "N/A"
UNKNOWN = "*********"
NO_CHANGE = "No change"
WITHIN_TOLERANCE = "Tolerance"

DESCRIPTION_LIMIT = 50


def to_string_signed_short(n: float) -> str:
    """Format ``n`` with a sign and fewer decimals the more integer digits it has.

    Examples:
        >>> to_string_signed_short(1.5)
        '+1.50000'
        >>> to_string_signed_short(-12345.678)
        '-12345.7'
    """
    n_abs = abs(n)
    if n_abs < 10.0:
        return f"{n:+.5f}"
    if n_abs < 100.0:
        return f"{n:+.4f}"
    if n_abs < 1000.0:
        return f"{n:+.3f}"
    if n_abs < 10000.0:
        return f"{n:+.2f}"
    if n_abs < 100000.0:
        return f"{n:+.1f}"
    return f"{n:+.0f}"


def to_string_unsigned_short(n: float) -> str:
    return to_string_signed_short(n)[1:]


def format_value(value: Optional[Number]) -> str:
    if value is None:
        return NOT_AVAILABLE
    if isinstance(value, float):
        return to_string_unsigned_short(value)
    return str(value)


def format_float(value: float, unit: str) -> str:
    """Format a percentage (``unit="%"``) or factor (``unit="x"``) for the table."""
    signed_short = to_string_signed_short(value)
    if math.isinf(value):
        if value > 0:
            return f"{signed_short:+^9}"
        return f"{signed_short:-^9}"
    return f"{signed_short:^8}{unit}"


def truncate_description(description: str, limit: Optional[int] = DESCRIPTION_LIMIT) -> str:
    if limit is None or len(description) <= limit:
        return description
    return f"{description[:limit]}..."


def format_title(identity: BenchmarkIdentity, limit: Optional[int] = DESCRIPTION_LIMIT) -> str:
    title = identity.module_path
    if identity.id:
        if identity.details:
            title += f" {identity.id}:{truncate_description(identity.details, limit)}"
        else:
            title += f" {identity.id}"
    return title


def tool_headline(tool: ToolKind) -> str:
    return f"  ======= {tool.banner} {'=' * (64 - len(tool.id))}"


def format_baselines(baselines: Tuple[Optional[str], Optional[str]]) -> Optional[str]:
    new, old = baselines
    if new is None and old is None:
        return None
    if new is None:
        return f"  {'Baselines:':<33}|{old}"
    if old is None:
        return f"  {'Baselines:':<18}{new:>15}"
    return f"  {'Baselines:':<18}{new:>15}|{old}"


def _format_metric(metric: MetricComparison, tolerance: Optional[float] = None) -> str:
    description = f"{metric.kind}:"
    new = format_value(metric.new)
    old = format_value(metric.old)
    pct, factor = metric.diff.pct, metric.diff.factor

    if metric.diff.status is DiffStatus.NO_CHANGE:
        return f"  {description:<18}{new:>15}|{old:<15} ({NO_CHANGE:^9})"
    if pct is not None and factor is not None:
        if tolerance is not None and abs(pct) <= abs(tolerance):
            return f"  {description:<18}{new:>15}|{old:<15} ({WITHIN_TOLERANCE:^9})"
        pct_string = format_float(pct, "%")
        factor_string = format_float(factor, "x")
        return f"  {description:<18}{new:>15}|{old:<15} ({pct_string:^9}) [{factor_string:^9}]"
    return f"  {description:<18}{new:>15}|{old:<15} ({UNKNOWN:^9})"


def _shown_kinds(
    comparison: ComparisonResult, kinds: Optional[Iterable[MetricKind]]
) -> List[MetricKind]:
    """The kinds of ``comparison`` to put in the table, in canonical order.

    Violated kinds are always shown, even when not selected.
    """
    if kinds is None:
        return list(comparison.metrics)
    selected = set(kinds) | {violation.kind for violation in comparison.violations}
    return [kind for kind in comparison.metrics if kind in selected]


def format_vertical(
    comparison: ComparisonResult,
    baselines: Tuple[Optional[str], Optional[str]] = (None, None),
    kinds: Optional[Iterable[MetricKind]] = None,
    tolerance: Optional[float] = None,
) -> str:
    """Format one comparison as the vertical metrics table.

    Args:
        comparison (ComparisonResult): The comparison to show.
        baselines (Tuple[Optional[str], Optional[str]]): Names of the new and old
            baseline, if any.
        kinds (Optional[Iterable[MetricKind]]): Restrict the table to these kinds.
            Defaults to all kinds of the comparison.
        tolerance (Optional[float]): Changes of at most this many percent are shown
            as within the tolerance. Display only, the diffs are not changed.

    Returns:
        str: The table, one line per metric, each terminated by a newline.
    """
    lines = []
    headline = format_baselines(baselines)
    if headline is not None:
        lines.append(headline)
    for kind in _shown_kinds(comparison, kinds):
        lines.append(_format_metric(comparison[kind], tolerance))
    return "".join(f"{line}\n" for line in lines)


def format_violations(violations: Sequence[Violation]) -> str:
    return "".join(f"  {violation.describe()}\n" for violation in violations)


def _format_unit_header(unit: UnitId, old_unit: Optional[UnitId]) -> str:
    return f"  {'## ' + str(unit):<33}|{old_unit if old_unit is not None else NOT_AVAILABLE}"


def format_tool(
    summary: "ToolSummary", kinds: Optional[Iterable[MetricKind]] = None, tolerance: Optional[float] = None
) -> str:
    """Format the section of one tool: headline, unit tables, total table, violations."""
    if kinds is not None:
        kinds = list(kinds)
    output = [f"{tool_headline(summary.tool)}\n"]

    if summary.units:
        baselines = format_baselines(summary.baselines)
        if baselines is not None:
            output.append(f"{baselines}\n")
        for unit_summary in summary.units:
            output.append(f"{_format_unit_header(unit_summary.unit, unit_summary.old_unit)}\n")
            if unit_summary.command:
                output.append(f"  {'Command:':<18}{unit_summary.command}\n")
            output.append(format_vertical(unit_summary.comparison, kinds=kinds, tolerance=tolerance))
        output.append("  ## Total\n")
        output.append(format_vertical(summary.comparison, kinds=kinds, tolerance=tolerance))
    else:
        output.append(format_vertical(summary.comparison, summary.baselines, kinds, tolerance))

    output.append(format_violations(summary.comparison.violations))
    return "".join(output)


def format_benchmark(
    summary: "BenchmarkSummary",
    show_all: bool = False,
    limit: Optional[int] = DESCRIPTION_LIMIT,
    tolerance: Optional[float] = None,
) -> str:
    """Format the whole terminal report of one benchmark.

    Args:
        summary (BenchmarkSummary): The benchmark.
        show_all (bool): Show every recorded metric instead of the tool's default group.
        limit (Optional[int]): Truncate the case description to this many characters.
        tolerance (Optional[float]): See :func:`format_vertical`.
    """
    output = [f"{format_title(summary.identity, limit)}\n"]
    for tool_summary in summary.tools:
        kind_type = tool_summary.tool.metric_type
        kinds = None if show_all else kind_type.default_group()
        output.append(format_tool(tool_summary, kinds, tolerance))
    return "".join(output)


def format_comparison(
    comparison: IdComparison, kinds: Optional[Iterable[MetricKind]] = None, tolerance: Optional[float] = None
) -> str:
    header = f"  Comparison with {comparison.function} {comparison.id}"
    if comparison.details:
        header += f":{comparison.details}"
    return f"{header}\n{format_vertical(comparison.result, kinds=kinds, tolerance=tolerance)}"


def _diff_strings(diff: Diff) -> Tuple[str, str]:
    if diff.status is DiffStatus.CHANGED:
        return repr(diff.pct), repr(diff.factor)
    if diff.status is DiffStatus.NO_CHANGE:
        return repr(0.0), NO_CHANGE
    if diff.status is DiffStatus.UNDEFINED:
        return UNKNOWN, UNKNOWN
    return NOT_AVAILABLE, NOT_AVAILABLE


def _comparison_to_dict(comparison: ComparisonResult) -> Dict[str, Dict[str, Any]]:
    metrics = {}
    for metric in comparison:
        diff_pct, factor = _diff_strings(metric.diff)
        metrics[metric.kind.value] = {
            "new": metric.new,
            "old": metric.old,
            "status": metric.diff.status.value,
            "diff_pct": diff_pct,
            "factor": factor,
        }
    return metrics


def summary_to_dict(summary: "BenchmarkSummary") -> Dict[str, Any]:
    """Build the JSON representation of a benchmark summary."""
    identity = summary.identity
    profiles = []
    for tool_summary in summary.tools:
        parts = [
            {
                "unit": unit_summary.unit.to_dict(),
                "command": unit_summary.command,
                "metrics": _comparison_to_dict(unit_summary.comparison),
            }
            for unit_summary in tool_summary.units
        ]
        profiles.append(
            {
                "tool": tool_summary.tool.id,
                "out_paths": [str(path) for path in tool_summary.out_paths],
                "flamegraphs": [str(path) for path in tool_summary.flamegraphs],
                "parts": parts,
                "total": {
                    "verdict": tool_summary.comparison.verdict.value,
                    "summary": _comparison_to_dict(tool_summary.comparison),
                    "regressions": [v.to_dict() for v in tool_summary.comparison.violations],
                },
            }
        )
    return {
        "version": SUMMARY_SCHEMA_VERSION,
        "baselines": list(summary.baselines),
        "benchmark_file": identity.bench_file,
        "module_path": identity.module_path,
        "group": identity.group,
        "function_name": identity.function,
        "id": identity.id,
        "details": identity.details,
        "profiles": profiles,
    }


def _dumps(data: Any) -> bytes:
    if orjson:
        return orjson.dumps(data, option=orjson.OPT_INDENT_2)
    return json.dumps(data, indent=2).encode("utf-8")


def write_summary(summary: "BenchmarkSummary", path: Union[str, Path]) -> Path:
    """Write the JSON summary to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(_dumps(summary_to_dict(summary)))
    logger.debug(f"Wrote summary to {path}")
    return path


def load_summary(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a JSON summary written by :func:`write_summary`.

    Raises:
        HarnessError: If the file cannot be read, is not JSON or has another schema version.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
        data = orjson.loads(raw) if orjson else json.loads(raw)
    except OSError as e:
        raise HarnessError(f"Unable to read summary '{path}': {e}") from e
    except ValueError as e:
        # Both json.JSONDecodeError and orjson.JSONDecodeError are ValueErrors.
        raise HarnessError(f"Invalid summary '{path}': {e}") from e

    if not isinstance(data, dict) or data.get("version") != SUMMARY_SCHEMA_VERSION:
        version = data.get("version") if isinstance(data, dict) else None
        raise HarnessError(
            f"Unsupported summary version in '{path}': {version!r} (expected {SUMMARY_SCHEMA_VERSION!r})"
        )
    return data


def _new_costs(kind_type: Type[MetricKind], metrics: Dict[str, Dict[str, Any]]) -> CostMap:
    costs = CostMap(kind_type)
    for name, entry in metrics.items():
        value = entry.get("new")
        if value is None:
            continue
        kind = kind_type.from_str(name)
        costs[kind] = float(value) if kind.is_float else int(value)
    return costs


def id_entries(summaries: Sequence[Dict[str, Any]]) -> Dict[Tuple[str, ToolKind], List[IdEntry]]:
    """Turn loaded summaries into compare-by-id entries.

    Entries are grouped by module (benchmark file and group) and tool, keeping the
    order of ``summaries`` within each group.
    """
    groups: Dict[Tuple[str, ToolKind], List[IdEntry]] = {}
    for data in summaries:
        module = "::".join(part for part in (data.get("benchmark_file"), data.get("group")) if part)
        for profile in data.get("profiles", []):
            tool = ToolKind.from_str(profile["tool"])
            costs = _new_costs(tool.metric_type, profile["total"]["summary"])
            groups.setdefault((module, tool), []).append(
                IdEntry(
                    function=data["function_name"],
                    id=data.get("id"),
                    costs=costs,
                    details=data.get("details"),
                )
            )
    return groups
