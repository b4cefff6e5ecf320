"""Folded stacks for flamegraph renderers.

Callgrind gives us the inclusive cost of every function, not the exclusive cost
of every call path a flamegraph renderer wants. The stacks are therefore built
the way ``callgrind_annotate --inclusive=yes`` output is usually folded:

1. Take the inclusive cost of every function for the chosen metric.
2. Drop functions more expensive than the sentinel function, if one is given.
   They belong to the runtime around the measured code.
3. Sort by cost, highest first, and by label for equal costs.
4. The stack of the n-th entry is the labels of entries 0..n joined by ``;``.
   Its count is its cost minus the cost of the next entry. The last entry
   keeps its full cost.

For inclusive costs root=100, A=60, B=20 this yields::

    root 40
    root;A 40
    root;A;B 20

and the counts add up to the cost of the most expensive entry. Stacks with a
count of zero are not emitted.

A differential flamegraph is made of two independently built stack sets. Both
use the same labels (see :meth:`FunctionId.label`) so that equal paths compare
equal; the renderer computes the difference from lines of the form
``stack old_count new_count``.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from callgrind_harness.aggregate import with_derived
from callgrind_harness.metrics import MetricKind, Number
from callgrind_harness.model import CostTree

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "FoldedStack",
    "DiffStack",
    "FlamegraphBuilder",
    "build",
    "build_diff",
    "write_stacks",
]


@dataclass(frozen=True)
class FoldedStack:
    frames: Tuple[str, ...]
    count: Number

    @property
    def stack(self) -> str:
        return ";".join(self.frames)

    def __str__(self) -> str:
        return f"{self.stack} {self.count}"


@dataclass(frozen=True)
class DiffStack:
    frames: Tuple[str, ...]
    old: Number
    new: Number

    @property
    def stack(self) -> str:
        return ";".join(self.frames)

    @property
    def delta(self) -> Number:
        return self.new - self.old

    def __str__(self) -> str:
        return f"{self.stack} {self.old} {self.new}"


class FlamegraphBuilder:
    """Build folded stacks from cost trees.

    Args:
        sentinel (Optional[str]): Glob matched against function names. Functions
            with a higher inclusive cost than the sentinel are left out.
    """

    def __init__(self, sentinel: Optional[str] = None) -> None:
        self.sentinel = sentinel

    def inclusive_costs(self, trees: Iterable[CostTree], metric: MetricKind) -> Dict[str, Tuple[str, Number]]:
        """Sum the inclusive cost of ``metric`` per frame label over ``trees``.

        Derived metrics like ``EstimatedCycles`` are computed from the inclusive
        events of each function.

        Returns:
            Dict[str, Tuple[str, Number]]: label -> (function name, cost).

        Raises:
            ValueError: If no function recorded ``metric``.
        """
        costs: Dict[str, Tuple[str, Number]] = {}
        recorded = False
        for tree in trees:
            for fid, inclusive in tree.inclusive_costs():
                if metric.is_derived:
                    inclusive = with_derived(inclusive)
                value = inclusive.get(metric)
                if value is not None:
                    recorded = True
                else:
                    value = 0
                label = fid.label()
                _, previous = costs.get(label, (fid.func, 0))
                costs[label] = (fid.func, previous + value)
        if costs and not recorded:
            raise ValueError(f"Failed creating flamegraph stacks: Missing event type '{metric.value}'")
        return costs

    def _sentinel_cost(self, costs: Dict[str, Tuple[str, Number]]) -> Optional[Number]:
        if self.sentinel is None:
            return None
        matches = [cost for func, cost in costs.values() if fnmatch.fnmatchcase(func, self.sentinel)]
        if not matches:
            logger.warning(f"Sentinel '{self.sentinel}' not found. Creating stacks without a sentinel.")
            return None
        return max(matches)

    def fold(self, costs: Dict[str, Tuple[str, Number]]) -> List[FoldedStack]:
        """Fold ``label -> (function, inclusive cost)`` into stacks."""
        limit = self._sentinel_cost(costs)
        entries = [
            (label, cost) for label, (_, cost) in costs.items() if limit is None or cost <= limit
        ]
        entries.sort(key=lambda entry: (-entry[1], entry[0]))

        stacks: List[FoldedStack] = []
        frames: Tuple[str, ...] = ()
        for i, (label, cost) in enumerate(entries):
            frames = frames + (label,)
            count = cost - entries[i + 1][1] if i + 1 < len(entries) else cost
            if count > 0:
                stacks.append(FoldedStack(frames, count))
        return stacks

    def build(self, trees: Union[CostTree, Sequence[CostTree]], metric: MetricKind) -> List[FoldedStack]:
        """Build the stacks of one tree, or of the sum of several trees."""
        if isinstance(trees, CostTree):
            trees = [trees]
        return self.fold(self.inclusive_costs(trees, metric))

    def build_diff(
        self,
        old: Union[CostTree, Sequence[CostTree]],
        new: Union[CostTree, Sequence[CostTree]],
        metric: MetricKind,
    ) -> List[DiffStack]:
        """Build both stack sets and pair them by stack.

        Stacks present on one side only get a count of 0 on the other. The order is
        that of the new stacks followed by the stacks only found in the old ones.
        """
        old_stacks = {s.stack: s for s in self.build(old, metric)}
        new_stacks = {s.stack: s for s in self.build(new, metric)}

        result = [
            DiffStack(s.frames, old_stacks[key].count if key in old_stacks else 0, s.count)
            for key, s in new_stacks.items()
        ]
        result.extend(DiffStack(s.frames, s.count, 0) for key, s in old_stacks.items() if key not in new_stacks)
        return result


def build(
    tree: Union[CostTree, Sequence[CostTree]], metric: MetricKind, sentinel: Optional[str] = None
) -> List[FoldedStack]:
    return FlamegraphBuilder(sentinel).build(tree, metric)


def build_diff(
    old: Union[CostTree, Sequence[CostTree]],
    new: Union[CostTree, Sequence[CostTree]],
    metric: MetricKind,
    sentinel: Optional[str] = None,
) -> List[DiffStack]:
    return FlamegraphBuilder(sentinel).build_diff(old, new, metric)


def write_stacks(stacks: Iterable[Union[FoldedStack, DiffStack]], path: Union[str, Path]) -> Path:
    """Write one stack per line to ``path``, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for stack in stacks:
            f.write(f"{stack}\n")
    logger.debug(f"Wrote flamegraph stacks to {path}")
    return path
