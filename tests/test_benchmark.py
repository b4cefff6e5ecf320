from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable

import pytest

from callgrind_harness.baseline import BaselineStore
from callgrind_harness.benchmark import BenchmarkRunner, group_by_tool
from callgrind_harness.compare import RegressionConfig, Verdict
from callgrind_harness.config import Config
from callgrind_harness.errors import BaselineError, HarnessError, ParseError
from callgrind_harness.metrics import CostMap, EventKind, ToolKind
from callgrind_harness.model import BenchmarkIdentity
from callgrind_harness.paths import UnitId

WriteOutput = Callable[[str, str], Path]


@pytest.fixture
def slower_file(write_output: WriteOutput, callgrind_text: str) -> Path:
    """The sample with 20 more instructions spent in ``leaf``."""
    text = callgrind_text.replace("7 40 10 5 2 1 1 0 1 0", "7 60 10 5 2 1 1 0 1 0")
    text = text.replace("5 100 20 10", "5 120 20 10")
    return write_output("next/callgrind.bench_fib.1234.out", text)


def _limits(config: Config, text: str, fail_fast: bool = False) -> None:
    config.regression[ToolKind.CALLGRIND] = RegressionConfig.from_string(ToolKind.CALLGRIND, text, fail_fast)


def test_first_run_saves_previous(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path
) -> None:
    """Without a baseline the run is never regressed, and becomes the previous run."""
    _limits(config, "ir=0%|1")
    summary = BenchmarkRunner(config, store).run(identity, {ToolKind.CALLGRIND: [callgrind_file]})

    callgrind = summary.tool(ToolKind.CALLGRIND)
    assert callgrind is not None
    assert callgrind.comparison.verdict is Verdict.NO_BASELINE
    assert not summary.is_regressed
    assert callgrind.total[EventKind.IR] == 110
    assert callgrind.total[EventKind.ESTIMATED_CYCLES] == 231
    assert callgrind.out_paths == [callgrind_file]

    saved = store.load(identity, ToolKind.CALLGRIND)
    assert saved is not None
    assert saved.total == callgrind.total
    assert list(saved.units) == [UnitId(pid=1234)]


def test_second_run_regresses(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path, slower_file: Path
) -> None:
    runner = BenchmarkRunner(config, store)
    runner.run(identity, {ToolKind.CALLGRIND: [callgrind_file]})

    _limits(config, "ir=5%")
    summary = runner.run(identity, {ToolKind.CALLGRIND: [slower_file]})
    callgrind = summary.tool(ToolKind.CALLGRIND)
    assert callgrind is not None
    assert summary.is_regressed
    assert callgrind.comparison[EventKind.IR].old == 110
    assert callgrind.comparison[EventKind.IR].new == 130
    [violation] = callgrind.comparison.violations
    assert violation.kind is EventKind.IR

    # The regressed run still replaces the previous run.
    saved = store.load(identity, ToolKind.CALLGRIND)
    assert saved is not None and saved.total[EventKind.IR] == 130


def test_unconfigured_tool_is_not_checked(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path, slower_file: Path
) -> None:
    runner = BenchmarkRunner(config, store)
    runner.run(identity, {ToolKind.CALLGRIND: [callgrind_file]})
    summary = runner.run(identity, {ToolKind.CALLGRIND: [slower_file]})
    assert summary.tools[0].comparison.verdict is Verdict.NOT_REGRESSED


def test_named_baselines(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path, slower_file: Path
) -> None:
    config.save_baseline = "main"
    first = BenchmarkRunner(config, store).run(identity, {ToolKind.CALLGRIND: [callgrind_file]})
    assert first.baselines == ("main", "main")
    assert store.exists(identity, ToolKind.CALLGRIND, "main")
    assert not store.exists(identity, ToolKind.CALLGRIND)

    config.save_baseline = None
    config.baseline = "main"
    _limits(config, "ir=5%")
    second = BenchmarkRunner(config, store).run(identity, {ToolKind.CALLGRIND: [slower_file]})
    assert second.baselines == (None, "main")
    assert second.is_regressed
    # Comparing against a named baseline does not touch the previous run or the baseline.
    assert not store.exists(identity, ToolKind.CALLGRIND)
    main = store.load(identity, ToolKind.CALLGRIND, "main")
    assert main is not None and main.total[EventKind.IR] == 110


def test_missing_named_baseline(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path
) -> None:
    config.baseline = "missing"
    with pytest.raises(BaselineError, match="Baseline 'missing' does not exist"):
        BenchmarkRunner(config, store).run(identity, {ToolKind.CALLGRIND: [callgrind_file]})


def test_parse_error_policy(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path, write_output: WriteOutput
) -> None:
    broken = write_output("out/callgrind.bench_fib.1235.out", "events: Ir\nfn=main\n1 2 3\n")
    files = {ToolKind.CALLGRIND: [callgrind_file, broken]}

    with pytest.raises(ParseError, match="Found 2 costs"):
        BenchmarkRunner(config, store).run(identity, files)

    config.parse_error_policy = "skip"
    summary = BenchmarkRunner(config, store).run(identity, files)
    assert summary.tools[0].out_paths == [callgrind_file]

    with pytest.raises(ParseError, match="None of the 1 callgrind output file"):
        BenchmarkRunner(config, store).run(identity, {ToolKind.CALLGRIND: [broken]})


def test_no_files(config: Config, store: BaselineStore, identity: BenchmarkIdentity) -> None:
    with pytest.raises(ParseError, match="No callgrind output files given"):
        BenchmarkRunner(config, store).run_tool(identity, ToolKind.CALLGRIND, [])


def test_several_units(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, callgrind_file: Path, write_output: WriteOutput
) -> None:
    second = write_output("out/callgrind.bench_fib.1234.t2.out", "events: Ir Dr\nfn=worker\n1 90 8\n")
    config.show_intermediate = True
    summary = BenchmarkRunner(config, store).run(identity, {ToolKind.CALLGRIND: [second, callgrind_file]})

    callgrind = summary.tools[0]
    assert callgrind.total[EventKind.IR] == 200
    assert callgrind.total[EventKind.DR] == 30
    # The events the second unit did not record count as zero.
    assert callgrind.total[EventKind.DW] == 11
    assert callgrind.total[EventKind.L1_HITS] == 200 + 30 + 11 - 2 - 5
    assert [unit.unit for unit in callgrind.units] == [UnitId(1234), UnitId(1234, 2)]
    assert callgrind.units[0].command == "./target/release/bench_fib"
    assert callgrind.units[0].comparison.verdict is Verdict.NO_BASELINE


def test_fail_fast(
    config: Config,
    store: BaselineStore,
    identity: BenchmarkIdentity,
    callgrind_file: Path,
    write_output: WriteOutput,
    cachegrind_text: str,
) -> None:
    cachegrind_file = write_output("out/cachegrind.bench_fib.1234.out", cachegrind_text)
    store.save(identity, ToolKind.CALLGRIND, CostMap(EventKind, [(EventKind.IR, 50)]))
    files = {ToolKind.CACHEGRIND: [cachegrind_file], ToolKind.CALLGRIND: [callgrind_file]}

    _limits(config, "ir=5%")
    summary = BenchmarkRunner(config, store).run(identity, files)
    assert [tool.tool for tool in summary.tools] == [ToolKind.CALLGRIND, ToolKind.CACHEGRIND]

    store.save(identity, ToolKind.CALLGRIND, CostMap(EventKind, [(EventKind.IR, 50)]))
    _limits(config, "ir=5%", fail_fast=True)
    summary = BenchmarkRunner(config, store).run(identity, files)
    assert [tool.tool for tool in summary.tools] == [ToolKind.CALLGRIND]
    assert summary.is_regressed


def test_flamegraphs(
    config: Config, store: BaselineStore, tmp_path: Path, callgrind_file: Path
) -> None:
    identity = BenchmarkIdentity(bench_file="bench_fib", function="bench_fib")
    shutil.copy(callgrind_file, callgrind_file.with_name(callgrind_file.name + ".old"))
    runner = BenchmarkRunner(config, store, flamegraph_dir=tmp_path / "flamegraphs")

    summary = runner.run(identity, {ToolKind.CALLGRIND: [callgrind_file]})
    paths = summary.tools[0].flamegraphs
    assert [path.name for path in paths] == ["callgrind.bench_fib.Ir.folded", "callgrind.bench_fib.Ir.diff.folded"]
    assert paths[0].read_text().splitlines()[0] == "src/main.rs:main [/usr/lib/libbench.so] 10"
    assert paths[1].read_text().splitlines()[0] == "src/main.rs:main [/usr/lib/libbench.so] 10 10"


def test_flamegraph_metric_and_sentinel(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, tmp_path: Path, callgrind_file: Path
) -> None:
    config.flamegraph_metric = "Dr"
    config.sentinel = "compute"
    runner = BenchmarkRunner(config, store, flamegraph_dir=tmp_path / "flamegraphs")
    [path] = runner.run(identity, {ToolKind.CALLGRIND: [callgrind_file]}).tools[0].flamegraphs

    assert path.name == "callgrind.bench_fib.short.Dr.folded"
    assert path.read_text().splitlines() == [
        "src/main.rs:compute [/usr/lib/libbench.so] 10",
        "src/main.rs:compute [/usr/lib/libbench.so];src/main.rs:leaf [/usr/lib/libbench.so] 10",
    ]


def test_group_by_tool() -> None:
    grouped = group_by_tool(["out/callgrind.a.1.out", "dhat.a.out", "out/callgrind.a.2.out"])
    assert grouped == {
        ToolKind.CALLGRIND: [Path("out/callgrind.a.1.out"), Path("out/callgrind.a.2.out")],
        ToolKind.DHAT: [Path("dhat.a.out")],
    }
    assert group_by_tool(["profile.json"], ToolKind.DHAT) == {ToolKind.DHAT: [Path("profile.json")]}
    with pytest.raises(ParseError, match="Unable to tell the tool"):
        group_by_tool(["massif.a.out"])


def test_flamegraph_of_derived_metric(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, tmp_path: Path, callgrind_file: Path
) -> None:
    """Estimated cycles are computed from the inclusive events of every function."""
    config.flamegraph_metric = "EstimatedCycles"
    runner = BenchmarkRunner(config, store, flamegraph_dir=tmp_path / "flamegraphs")
    [path] = runner.run(identity, {ToolKind.CALLGRIND: [callgrind_file]}).tools[0].flamegraphs

    main = "src/main.rs:main [/usr/lib/libbench.so]"
    compute = "src/main.rs:compute [/usr/lib/libbench.so]"
    leaf = "src/main.rs:leaf [/usr/lib/libbench.so]"
    assert path.name == "callgrind.bench_fib.short.EstimatedCycles.folded"
    # Inclusive cycles: main 231, compute 214, leaf 101
    assert path.read_text().splitlines() == [
        f"{main} 17",
        f"{main};{compute} 113",
        f"{main};{compute};{leaf} 101",
    ]


def test_flamegraph_of_unrecorded_metric(
    config: Config, store: BaselineStore, identity: BenchmarkIdentity, tmp_path: Path, write_output: WriteOutput
) -> None:
    path = write_output("out/callgrind.bench_fib.1234.out", "events: Ir\nfn=main\n1 5\n")
    config.flamegraph_metric = "Dr"
    runner = BenchmarkRunner(config, store, flamegraph_dir=tmp_path / "flamegraphs")
    with pytest.raises(HarnessError, match="Missing event type 'Dr'"):
        runner.run(identity, {ToolKind.CALLGRIND: [path]})
