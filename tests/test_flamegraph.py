from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from callgrind_harness.callgrind import parse_callgrind_file
from callgrind_harness.flamegraph import DiffStack, FlamegraphBuilder, FoldedStack, build, build_diff, write_stacks
from callgrind_harness.metrics import CostMap, EventKind
from callgrind_harness.model import CostTree, FunctionId


def _ir(value: int) -> CostMap:
    return CostMap(EventKind, [(EventKind.IR, value)])


def _tree(self_costs: Dict[str, int], calls: List[Tuple[str, str, int]]) -> CostTree:
    """Build a tree from self costs and (caller, callee, inclusive cost) edges."""
    tree = CostTree(EventKind)
    for func, cost in self_costs.items():
        tree.add_self_cost(tree.get_or_insert(FunctionId(func)), _ir(cost))
    for caller, callee, cost in calls:
        tree.add_call(tree.get_or_insert(FunctionId(caller)), tree.get_or_insert(FunctionId(callee)), 1, _ir(cost))
    return tree


@pytest.fixture
def chain() -> CostTree:
    """Inclusive costs root=100, A=60, B=20."""
    return _tree({"root": 40, "A": 40, "B": 20}, [("root", "A", 60), ("A", "B", 20)])


def test_fold_chain(chain: CostTree) -> None:
    stacks = build(chain, EventKind.IR)
    assert [str(s) for s in stacks] == ["root [???] 40", "root [???];A [???] 40", "root [???];A [???];B [???] 20"]
    # The counts add up to the cost of the most expensive function.
    assert sum(s.count for s in stacks) == 100


def test_fold_sample(callgrind_file: Path, project_root: str) -> None:
    tree = parse_callgrind_file(callgrind_file, project_root=project_root).trees[0]
    stacks = build(tree, EventKind.IR)
    main = "src/main.rs:main [/usr/lib/libbench.so]"
    compute = "src/main.rs:compute [/usr/lib/libbench.so]"
    leaf = "src/main.rs:leaf [/usr/lib/libbench.so]"
    assert stacks == [
        FoldedStack((main,), 10),
        FoldedStack((main, compute), 60),
        FoldedStack((main, compute, leaf), 40),
    ]


def test_zero_counts_and_ties() -> None:
    tree = _tree({"root": 0, "a": 30, "b": 30}, [("root", "a", 30)])
    stacks = build(tree, EventKind.IR)
    # All three cost 30: ties are ordered by label and the zero counts are dropped.
    assert [s.stack for s in stacks] == ["a [???];b [???];root [???]"]
    assert stacks[0].count == 30


def test_sentinel(chain: CostTree) -> None:
    stacks = build(chain, EventKind.IR, sentinel="A*")
    assert [str(s) for s in stacks] == ["A [???] 40", "A [???];B [???] 20"]


def test_unmatched_sentinel(chain: CostTree, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        stacks = FlamegraphBuilder(sentinel="nothing").build(chain, EventKind.IR)
    assert len(stacks) == 3
    assert "Sentinel 'nothing' not found" in caplog.text


def test_missing_metric(chain: CostTree) -> None:
    with pytest.raises(ValueError, match="Missing event type 'Dr'"):
        build(chain, EventKind.DR)


def test_several_trees_are_summed(chain: CostTree) -> None:
    other = _tree({"root": 10}, [])
    stacks = build([chain, other], EventKind.IR)
    assert stacks[0] == FoldedStack(("root [???]",), 50)


def test_build_diff(chain: CostTree) -> None:
    new = _tree({"root": 40, "A": 60}, [("root", "A", 60)])
    stacks = build_diff(chain, new, EventKind.IR)
    assert stacks == [
        DiffStack(("root [???]",), 40, 40),
        DiffStack(("root [???]", "A [???]"), 40, 60),
        DiffStack(("root [???]", "A [???]", "B [???]"), 20, 0),
    ]
    assert stacks[1].delta == 20
    assert str(stacks[2]) == "root [???];A [???];B [???] 20 0"


def test_write_stacks(chain: CostTree, tmp_path: Path) -> None:
    path = write_stacks(build(chain, EventKind.IR), tmp_path / "flamegraphs" / "callgrind.bench.Ir.folded")
    assert path.read_text(encoding="utf-8").splitlines() == [
        "root [???] 40",
        "root [???];A [???] 40",
        "root [???];A [???];B [???] 20",
    ]
