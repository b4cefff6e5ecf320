"""The per-benchmark pipeline: parse, aggregate, compare, check and save.

:class:`BenchmarkRunner` is handed the output files of one benchmark, grouped
by tool, and the identity of the benchmark. For every tool it

1. parses the unit files, honoring the configured parse error policy,
2. aggregates the unit costs into the total,
3. loads the baseline to compare against (a named one, or the previous run),
4. diffs the total against it and checks the regression limits,
5. saves the total as the new previous run or under a baseline name,
6. optionally writes flamegraph stacks.

The result is a :class:`BenchmarkSummary` which :mod:`callgrind_harness.report`
turns into the terminal report and the JSON summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from callgrind_harness.aggregate import Aggregation, aggregate_profiles, with_derived
from callgrind_harness.baseline import Baseline, BaselineStore
from callgrind_harness.cachegrind import CachegrindParser
from callgrind_harness.callgrind import CallgrindParser
from callgrind_harness.compare import ComparisonResult, RegressionConfig, check, diff
from callgrind_harness.config import Config
from callgrind_harness.dhat import DhatParser
from callgrind_harness.errors import HarnessError, ParseError
from callgrind_harness.flamegraph import FlamegraphBuilder, write_stacks
from callgrind_harness.metrics import CostMap, EventKind, ToolKind
from callgrind_harness.model import BenchmarkIdentity, CostTree, UnitProfile
from callgrind_harness.paths import PREVIOUS, UnitId, discover_output_files

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "UnitSummary",
    "ToolSummary",
    "BenchmarkSummary",
    "BenchmarkRunner",
    "parse_output",
    "group_by_tool",
]


@dataclass
class UnitSummary:
    """The comparison of one unit. Units of the old run are paired by position."""

    unit: UnitId
    comparison: ComparisonResult
    command: Optional[str] = None
    old_unit: Optional[UnitId] = None


@dataclass
class ToolSummary:
    """Everything one tool contributed to a benchmark.

    Attributes:
        tool (ToolKind): The tool.
        aggregation (Aggregation): The total and, if requested, the unit breakdown.
        comparison (ComparisonResult): The total compared against the baseline,
            with the violations of the regression check.
        baselines (Tuple[Optional[str], Optional[str]]): Name the run was saved
            under and name of the baseline it was compared against, if named.
        units (List[UnitSummary]): Per-unit comparisons, empty unless requested.
        out_paths (List[Path]): The parsed output files.
        flamegraphs (List[Path]): The written flamegraph stack files.
    """

    tool: ToolKind
    aggregation: Aggregation
    comparison: ComparisonResult
    baselines: Tuple[Optional[str], Optional[str]] = (None, None)
    units: List[UnitSummary] = field(default_factory=list)
    out_paths: List[Path] = field(default_factory=list)
    flamegraphs: List[Path] = field(default_factory=list)

    @property
    def total(self) -> CostMap:
        return self.aggregation.total

    @property
    def is_regressed(self) -> bool:
        return self.comparison.is_regressed


@dataclass
class BenchmarkSummary:
    identity: BenchmarkIdentity
    tools: List[ToolSummary] = field(default_factory=list)
    baselines: Tuple[Optional[str], Optional[str]] = (None, None)

    @property
    def is_regressed(self) -> bool:
        return any(tool.is_regressed for tool in self.tools)

    def tool(self, tool: ToolKind) -> Optional[ToolSummary]:
        for summary in self.tools:
            if summary.tool is tool:
                return summary
        return None


def parse_output(
    tool: ToolKind,
    path: Union[str, Path],
    unit: Optional[UnitId] = None,
    project_root: Optional[Union[str, Path]] = None,
) -> UnitProfile:
    """Parse one output file of ``tool``.

    Raises:
        ParseError: If the file cannot be parsed.
    """
    if tool is ToolKind.CALLGRIND:
        return CallgrindParser(project_root).parse_file(path, unit)
    if tool is ToolKind.CACHEGRIND:
        return CachegrindParser(project_root).parse_file(path, unit)
    return DhatParser().parse_file(path, unit)


class BenchmarkRunner:
    """Run the pipeline for benchmarks with the settings of ``config``.

    Args:
        config (Config): The harness configuration.
        store (Optional[BaselineStore]): The baseline store. Defaults to a store in
            ``config.baseline_dir``.
        flamegraph_dir (Optional[Union[str, Path]]): Write flamegraph stacks to this
            directory. No stacks are written if None.
    """

    def __init__(
        self,
        config: Config,
        store: Optional[BaselineStore] = None,
        flamegraph_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else BaselineStore(config.baseline_dir)
        self.flamegraph_dir = Path(flamegraph_dir) if flamegraph_dir is not None else None

    def parse(self, tool: ToolKind, files: Sequence[Union[str, Path]]) -> List[UnitProfile]:
        """Parse the unit files of one tool.

        With the ``skip`` policy a file which fails to parse is logged and left
        out. With ``abort`` (the default) the error propagates.

        Raises:
            ParseError: If a file fails to parse under the ``abort`` policy, or if no
                file could be parsed at all.
        """
        if not files:
            raise ParseError(f"No {tool.id} output files given")

        profiles = []
        for path in files:
            try:
                profiles.append(parse_output(tool, path, project_root=self.config.project_root))
            except ParseError as e:
                if self.config.parse_error_policy != "skip":
                    raise
                logger.error(f"Skipping unit: {e}")

        if not profiles:
            raise ParseError(f"None of the {len(files)} {tool.id} output file(s) could be parsed")
        profiles.sort(key=lambda profile: profile.unit.sort_key)
        return profiles

    @property
    def compared_name(self) -> Optional[str]:
        """Name of the baseline the run is compared against, None for the previous run.

        Saving under a name compares against the baseline about to be replaced.
        """
        if self.config.baseline is not None:
            return self.config.baseline
        return self.config.save_baseline

    def _load_baseline(self, identity: BenchmarkIdentity, tool: ToolKind) -> Optional[Baseline]:
        name = self.compared_name
        if name is None:
            return self.store.load(identity, tool, PREVIOUS)
        return self.store.load(identity, tool, name, required=self.config.baseline is not None)

    def _save_baseline(self, identity: BenchmarkIdentity, tool: ToolKind, aggregation: Aggregation) -> None:
        if self.config.save_baseline is not None:
            name = self.config.save_baseline
        elif self.config.baseline is None:
            name = PREVIOUS
        else:
            # Comparing against a named baseline leaves the previous run alone.
            return
        units = {profile.unit: with_derived(profile.costs) for profile in aggregation.profiles}
        self.store.save(identity, tool, aggregation.total, name=name, units=units)

    def _unit_summaries(self, aggregation: Aggregation, old: Optional[Baseline]) -> List[UnitSummary]:
        commands = {profile.unit: profile.properties.get("cmd") for profile in aggregation.profiles}
        old_units = list(old.units.items()) if old is not None else []
        old_units.sort(key=lambda item: item[0].sort_key)

        summaries = []
        for index, (unit, costs) in enumerate(aggregation.units.items()):
            old_unit, old_costs = old_units[index] if index < len(old_units) else (None, None)
            if old_costs is not None:
                old_costs = with_derived(old_costs)
            summaries.append(
                UnitSummary(
                    unit=unit,
                    comparison=diff(old_costs, costs),
                    command=commands.get(unit),
                    old_unit=old_unit,
                )
            )
        return summaries

    def _flamegraph_trees(self, profiles: Sequence[UnitProfile]) -> List[CostTree]:
        return [tree for profile in profiles for tree in profile.trees]

    def _old_trees(self, identity: BenchmarkIdentity, files: Sequence[Path]) -> List[CostTree]:
        """Parse the raw callgrind files of the run compared against, if they were kept."""
        if not files:
            return []
        baseline = self.compared_name or PREVIOUS
        old_files = discover_output_files(files[0].parent, ToolKind.CALLGRIND, identity.name, baseline=baseline)
        trees = []
        for output in old_files:
            try:
                profile = parse_output(ToolKind.CALLGRIND, output.path, output.unit, self.config.project_root)
            except ParseError as e:
                logger.warning(f"Not creating a differential flamegraph: {e}")
                return []
            trees.extend(profile.trees)
        return trees

    def _write_flamegraphs(
        self, identity: BenchmarkIdentity, profiles: Sequence[UnitProfile], files: Sequence[Path]
    ) -> List[Path]:
        if self.flamegraph_dir is None:
            return []
        name = self.config.flamegraph_metric
        metric = EventKind.from_str(name) if name is not None else EventKind.IR
        builder = FlamegraphBuilder(self.config.sentinel)

        trees = self._flamegraph_trees(profiles)
        prefix = f"{ToolKind.CALLGRIND.id}.{identity.name}.{metric.value}"
        old_trees = self._old_trees(identity, files)
        try:
            stacks = builder.build(trees, metric)
            diff_stacks = builder.build_diff(old_trees, trees, metric) if old_trees else None
        except ValueError as e:
            raise HarnessError(str(e)) from e

        written = [write_stacks(stacks, self.flamegraph_dir / f"{prefix}.folded")]
        if diff_stacks is not None:
            written.append(write_stacks(diff_stacks, self.flamegraph_dir / f"{prefix}.diff.folded"))
        logger.info(f"Wrote {len(written)} flamegraph stack file(s) for {identity}")
        return written

    def run_tool(
        self, identity: BenchmarkIdentity, tool: ToolKind, files: Sequence[Union[str, Path]]
    ) -> ToolSummary:
        """Run the pipeline of one tool.

        Raises:
            ParseError: See :meth:`parse`.
            BaselineError: If the configured baseline to compare against does not
                exist or cannot be read, or the new baseline cannot be saved.
        """
        paths = [Path(path) for path in files]
        profiles = self.parse(tool, paths)
        aggregation = aggregate_profiles(
            profiles, kind_type=tool.metric_type, show_intermediate=self.config.show_intermediate
        )

        old = self._load_baseline(identity, tool)
        comparison = diff(old.total if old is not None else None, aggregation.total)
        regression = self.config.regression_for(tool) or RegressionConfig(tool.metric_type)
        check(comparison, regression)

        self._save_baseline(identity, tool, aggregation)

        flamegraphs: List[Path] = []
        if tool is ToolKind.CALLGRIND:
            flamegraphs = self._write_flamegraphs(identity, profiles, paths)

        return ToolSummary(
            tool=tool,
            aggregation=aggregation,
            comparison=comparison,
            baselines=(self.config.save_baseline, self.compared_name),
            units=self._unit_summaries(aggregation, old) if self.config.show_intermediate else [],
            out_paths=[profile.path for profile in profiles if profile.path is not None],
            flamegraphs=flamegraphs,
        )

    def run(
        self, identity: BenchmarkIdentity, files: Mapping[ToolKind, Sequence[Union[str, Path]]]
    ) -> BenchmarkSummary:
        """Run the pipeline of every tool, in the order of :class:`ToolKind`.

        With ``regression_fail_fast`` the remaining tools are skipped after the
        first regressed one.
        """
        summary = BenchmarkSummary(identity, baselines=(self.config.save_baseline, self.compared_name))
        for tool in ToolKind:
            if tool not in files:
                continue
            tool_summary = self.run_tool(identity, tool, files[tool])
            summary.tools.append(tool_summary)
            if tool_summary.is_regressed:
                logger.info(f"{identity} ({tool.id}) has regressed")
                regression = self.config.regression_for(tool)
                if regression is not None and regression.fail_fast:
                    logger.info("Stopping at the first regression (fail fast)")
                    break
        return summary


def group_by_tool(files: Sequence[Union[str, Path]], tool: Optional[ToolKind] = None) -> Dict[ToolKind, List[Path]]:
    """Group output files by the tool named in their file names.

    Args:
        files (Sequence[Union[str, Path]]): The output files.
        tool (Optional[ToolKind]): Assign all files to this tool instead.

    Raises:
        ParseError: If the tool of a file cannot be told from its name.
    """
    grouped: Dict[ToolKind, List[Path]] = {}
    for file in files:
        path = Path(file)
        if tool is not None:
            grouped.setdefault(tool, []).append(path)
            continue
        prefix = path.name.partition(".")[0]
        try:
            file_tool = ToolKind(prefix)
        except ValueError as e:
            raise ParseError(
                f"Unable to tell the tool from the file name (expected one of "
                f"{', '.join(t.id for t in ToolKind)} as prefix)",
                path,
            ) from e
        grouped.setdefault(file_tool, []).append(path)
    return grouped
