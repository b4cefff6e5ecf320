from __future__ import annotations

from pathlib import Path

import pytest

from callgrind_harness.errors import ConfigError
from callgrind_harness.metrics import ToolKind
from callgrind_harness.paths import (
    UnitId,
    discover_output_files,
    normalize_source_path,
    parse_output_filename,
    validate_baseline_name,
)


def test_parse_full_suffix() -> None:
    output = parse_output_filename("callgrind.bench_fib.1234.t2.p3.out")
    assert output is not None
    assert output.tool is ToolKind.CALLGRIND
    assert output.name == "bench_fib"
    assert output.unit == UnitId(1234, 2, 3)
    assert output.kind == "out"
    assert output.baseline is None


def test_parse_without_unit() -> None:
    output = parse_output_filename(Path("/tmp/dhat.bench_alloc.out"))
    assert output is not None
    assert output.tool is ToolKind.DHAT
    assert output.unit == UnitId()
    assert str(output.unit) == "total"


def test_parse_baselines() -> None:
    old = parse_output_filename("callgrind.bench_fib.out.old")
    named = parse_output_filename("cachegrind.bench_fib.42.log.base@main")
    assert old is not None and old.baseline == "old"
    assert named is not None
    assert named.baseline == "main"
    assert named.kind == "log"
    assert named.unit.pid == 42


def test_parse_name_with_dots() -> None:
    output = parse_output_filename("callgrind.bench.fib.out")
    assert output is not None
    assert output.name == "bench.fib"


def test_parse_expected_name() -> None:
    assert parse_output_filename("callgrind.bench_fib.out", ToolKind.CALLGRIND, "bench_fib") is not None
    assert parse_output_filename("callgrind.bench_fib.out", ToolKind.CALLGRIND, "bench_fob") is None
    assert parse_output_filename("callgrind.bench_fib.out", ToolKind.DHAT) is None


@pytest.mark.parametrize("name", ["callgrind.out", "massif.bench.out", "callgrind.bench_fib.txt", "README"])
def test_parse_rejects_foreign_names(name: str) -> None:
    assert parse_output_filename(name) is None


def test_parse_basic_block_vectors() -> None:
    output = parse_output_filename("callgrind.bench_fib.1.bb.out")
    assert output is not None
    assert output.bbv == "bb"


def test_unit_ordering_and_display() -> None:
    units = [UnitId(2, 1), UnitId(1, 2, 1), UnitId(1, 1)]
    assert sorted(units, key=lambda u: u.sort_key) == [UnitId(1, 1), UnitId(1, 2, 1), UnitId(2, 1)]
    assert str(UnitId(1, 2, 1)) == "pid: 1 thread: 2 part: 1"
    assert UnitId(7).to_dict() == {"pid": 7, "thread": None, "part": None}


def test_discover_output_files(tmp_path: Path) -> None:
    for name in (
        "callgrind.bench_fib.20.out",
        "callgrind.bench_fib.10.t2.out",
        "callgrind.bench_fib.10.t1.out",
        "callgrind.bench_fib.10.t1.out.old",
        "callgrind.bench_fib.10.t1.log",
        "callgrind.bench_fib.10.bb.out",
        "callgrind.bench_fibonacci.10.out",
        "dhat.bench_fib.10.out",
    ):
        (tmp_path / name).write_text("")

    found = discover_output_files(tmp_path, ToolKind.CALLGRIND, "bench_fib")
    assert [f.path.name for f in found] == [
        "callgrind.bench_fib.10.t1.out",
        "callgrind.bench_fib.10.t2.out",
        "callgrind.bench_fib.20.out",
    ]

    old = discover_output_files(tmp_path, ToolKind.CALLGRIND, "bench_fib", baseline="old")
    assert [f.path.name for f in old] == ["callgrind.bench_fib.10.t1.out.old"]

    logs = discover_output_files(tmp_path, ToolKind.CALLGRIND, "bench_fib", kind="log")
    assert len(logs) == 1


def test_discover_missing_directory(tmp_path: Path) -> None:
    assert discover_output_files(tmp_path / "missing", ToolKind.CALLGRIND, "bench_fib") == []


def test_normalize_source_path() -> None:
    assert normalize_source_path("???") is None
    assert normalize_source_path("/home/me/project/src/lib.rs", "/home/me/project") == "src/lib.rs"
    assert normalize_source_path("/usr/include/stdio.h", "/home/me/project") == "/usr/include/stdio.h"
    assert (
        normalize_source_path("/rustc/7737e0b5c4103216d6fd8cf941b7ab9bdbaace7c//library/std/src/rt.rs")
        == "/rustc/7737e0b5/library/std/src/rt.rs"
    )
    assert normalize_source_path("src/main.rs") == "src/main.rs"


def test_validate_baseline_name() -> None:
    assert validate_baseline_name("main_2") == "main_2"
    for bad in ("", "with space", "dot.ted", "slash/name", "base@x"):
        with pytest.raises(ConfigError, match="Invalid baseline name"):
            validate_baseline_name(bad)
