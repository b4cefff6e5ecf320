from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from callgrind_harness.cachegrind import CachegrindParser, parse_cachegrind_file
from callgrind_harness.errors import ParseError
from callgrind_harness.metrics import CachegrindMetric
from callgrind_harness.paths import UnitId


def test_parse_sample(write_output: Callable[[str, str], Path], cachegrind_text: str) -> None:
    path = write_output("cachegrind.bench_fib.77.out", cachegrind_text)
    profile = parse_cachegrind_file(path)

    assert profile.unit == UnitId(pid=77)
    # The summary line lies, the total is the sum of the count lines.
    assert profile.costs.to_dict() == {
        "Ir": 100, "I1mr": 2, "ILmr": 1, "Dr": 20, "D1mr": 2, "DLmr": 1, "Dw": 10, "D1mw": 1, "DLmw": 0,
    }
    assert profile.properties == {"cmd": "./target/release/bench_fib"}
    assert profile.details == ["I1 cache:         32768 B, 64 B, 8-way associative"]


def test_flat_tree(cachegrind_text: str) -> None:
    tree = CachegrindParser().parse_text(cachegrind_text).trees[0]
    assert [node.id.label() for node in tree] == ["src/main.rs:main [???]", "src/main.rs:helper [???]"]
    assert tree.edges == []
    main = tree.find("main")[0]
    assert main.self_cost[CachegrindMetric.IR] == 50
    assert main.position == (12,)


def test_missing_counts_are_zero() -> None:
    profile = CachegrindParser().parse_text("cmd: ./bench\nevents: Ir Dr\nfn=main\n1 7\n")
    assert profile.costs.to_dict() == {"Ir": 7, "Dr": 0}


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("events: Ir\nfn=main\n1 2\n", "Header field 'cmd' must be present"),
        ("cmd: ./bench\nfn=main\n", "Header field 'events' must be present"),
        ("cmd: ./bench\nevents: Ir Ge\n", "Unknown event: 'Ge'"),
        ("cmd: ./bench\nevents: Ir\nfn=main\n1 2 3\n", "Found 2 costs but only 1 events are declared"),
        ("cmd: ./bench\nevents: Ir\nfn=main\n1 abc\n", "Invalid count line"),
        ("cmd: ./bench\nevents: Ir\nob=main\n", "Malformed line"),
        ("   \n", "File is empty"),
    ],
)
def test_malformed_input(text: str, message: str) -> None:
    with pytest.raises(ParseError, match=message):
        CachegrindParser().parse_text(text)
