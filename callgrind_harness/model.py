"""Parsed profile data: the per-unit cost tree and the per-unit result.

A :class:`CostTree` is the call graph of one part of one unit. Nodes live in an
arena (a list) and are addressed by their index; call edges are pairs of node
indices with the inclusive cost of the call. Recursive functions therefore
simply produce an edge from a node to itself.

Inclusive costs are computed once by :meth:`CostTree.finalize` after all records
are in. For a node which is called at least once, its inclusive cost is the sum
of the inclusive costs recorded on the calls into it. Nodes which are never
called (the roots) get their self cost plus the costs of their outgoing calls.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Type

from callgrind_harness.metrics import CostMap, MetricKind, ToolKind
from callgrind_harness.paths import UnitId

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["FunctionId", "Node", "CallEdge", "CostTree", "BenchmarkIdentity", "UnitProfile"]

MISSING_OBJECT = "???"


@dataclass(frozen=True)
class FunctionId:
    """Identity of a function node: object file, source file and function name.

    ``obj`` and ``file`` are None when the tool reported them as unknown.
    """

    func: str
    file: Optional[str] = None
    obj: Optional[str] = None

    def label(self) -> str:
        """Return the frame label ``file:func [obj]``.

        The file prefix is dropped when unknown, a missing object is written as
        ``[???]`` so that labels of both sides of a differential flamegraph match.
        """
        name = f"{self.file}:{self.func}" if self.file else self.func
        return f"{name} [{self.obj or MISSING_OBJECT}]"


@dataclass
class Node:
    index: int
    id: FunctionId
    self_cost: CostMap
    inclusive: CostMap
    position: Optional[Tuple[int, ...]] = None


@dataclass
class CallEdge:
    caller: int
    callee: int
    calls: int
    inclusive: CostMap


class CostTree:
    """Arena-based call graph of one part of one collection unit."""

    def __init__(self, kind_type: Type[MetricKind]) -> None:
        self.kind_type = kind_type
        self.nodes: List[Node] = []
        self.edges: List[CallEdge] = []
        self._by_id: Dict[FunctionId, int] = {}
        self._edge_index: Dict[Tuple[int, int], int] = {}
        self._finalized = False

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def node(self, index: int) -> Node:
        return self.nodes[index]

    def get_or_insert(self, fid: FunctionId) -> int:
        index = self._by_id.get(fid)
        if index is None:
            index = len(self.nodes)
            self.nodes.append(
                Node(index, fid, CostMap(self.kind_type), CostMap(self.kind_type))
            )
            self._by_id[fid] = index
        return index

    def lookup(self, fid: FunctionId) -> Optional[Node]:
        index = self._by_id.get(fid)
        return None if index is None else self.nodes[index]

    def add_self_cost(self, index: int, costs: CostMap, position: Optional[Tuple[int, ...]] = None) -> None:
        node = self.nodes[index]
        node.self_cost.add(costs)
        if node.position is None and position is not None:
            node.position = position
        self._finalized = False

    def add_call(self, caller: int, callee: int, calls: int, costs: CostMap) -> None:
        key = (caller, callee)
        edge_index = self._edge_index.get(key)
        if edge_index is None:
            self._edge_index[key] = len(self.edges)
            self.edges.append(CallEdge(caller, callee, calls, costs.copy()))
        else:
            edge = self.edges[edge_index]
            edge.calls += calls
            edge.inclusive.add(costs)
        self._finalized = False

    def callees(self, index: int) -> List[CallEdge]:
        return [edge for edge in self.edges if edge.caller == index]

    def callers(self, index: int) -> List[CallEdge]:
        return [edge for edge in self.edges if edge.callee == index]

    def finalize(self) -> None:
        """Compute the inclusive cost of every node."""
        called: Dict[int, CostMap] = {}
        outgoing: Dict[int, CostMap] = {}
        for edge in self.edges:
            called.setdefault(edge.callee, CostMap(self.kind_type)).add(edge.inclusive)
            outgoing.setdefault(edge.caller, CostMap(self.kind_type)).add(edge.inclusive)

        for node in self.nodes:
            if node.index in called:
                node.inclusive = called[node.index].copy()
            else:
                inclusive = node.self_cost.copy()
                if node.index in outgoing:
                    inclusive.add(outgoing[node.index])
                node.inclusive = inclusive
        self._finalized = True

    def inclusive_costs(self) -> List[Tuple[FunctionId, CostMap]]:
        if not self._finalized:
            self.finalize()
        return [(node.id, node.inclusive) for node in self.nodes]

    def total(self) -> CostMap:
        """Sum of all self costs. This is the canonical total of the part."""
        total = CostMap(self.kind_type)
        for node in self.nodes:
            total.add(node.self_cost)
        return total

    def find(self, pattern: str) -> List[Node]:
        """Return the nodes whose function name matches the glob ``pattern``."""
        return [node for node in self.nodes if fnmatch.fnmatchcase(node.id.func, pattern)]


@dataclass(frozen=True)
class BenchmarkIdentity:
    """Who a set of costs belongs to.

    Attributes:
        bench_file (str): The benchmark file (or binary) the benchmark is declared in.
        function (str): The benchmark function.
        group (Optional[str]): The group the function is declared in.
        id (Optional[str]): The case id, unique within one function.
        details (Optional[str]): Human readable description of the case arguments.
    """

    bench_file: str
    function: str
    group: Optional[str] = None
    id: Optional[str] = None
    details: Optional[str] = None

    @property
    def module_path(self) -> str:
        return "::".join(part for part in (self.bench_file, self.group, self.function) if part)

    @property
    def name(self) -> str:
        """The benchmark name as used in output file names."""
        return f"{self.function}.{self.id}" if self.id else self.function

    def storage_parts(self) -> List[str]:
        """Path components identifying this benchmark on disk."""
        parts = [self.bench_file]
        if self.group:
            parts.append(self.group)
        parts.append(self.name)
        return [part.replace("/", "_").replace("\\", "_") for part in parts]

    def __str__(self) -> str:
        text = self.module_path
        if self.id:
            text += f" {self.id}"
        if self.details:
            text += f":{self.details}"
        return text

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "bench_file": self.bench_file,
            "group": self.group,
            "function": self.function,
            "id": self.id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Optional[str]]) -> "BenchmarkIdentity":
        return cls(
            bench_file=str(data["bench_file"]),
            function=str(data["function"]),
            group=data.get("group"),
            id=data.get("id"),
            details=data.get("details"),
        )


@dataclass
class UnitProfile:
    """Everything parsed from the output file of one collection unit.

    Attributes:
        unit (UnitId): The collection unit decoded from the file name.
        tool (ToolKind): The tool which produced the file.
        path (Optional[Path]): The file.
        costs (CostMap): Additive costs of the unit, summed over all parts.
        trees (List[CostTree]): One cost tree per part found in the file.
        properties (Dict[str, str]): Header information such as ``cmd`` and ``pid``.
        details (List[str]): Free-form description lines from the header.
    """

    unit: UnitId
    tool: ToolKind
    path: Optional[Path]
    costs: CostMap
    trees: List[CostTree] = field(default_factory=list)
    properties: Dict[str, str] = field(default_factory=dict)
    details: List[str] = field(default_factory=list)
