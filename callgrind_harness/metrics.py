"""Metric vocabulary and the cost container.

Each profiling tool has its own closed enumeration of metric kinds:

    * :class:`EventKind` for callgrind,
    * :class:`CachegrindMetric` for cachegrind,
    * :class:`DhatMetric` for DHAT.

A kind is either *additive* (a raw counter which may be summed across units) or
*derived* (computed from additive counters after aggregation and never summed).
The member order of each enumeration is the canonical display order.

Kinds and groups of kinds are addressed by name in regression limits and on the
command line. Names are case-insensitive; groups start with ``@``::

    >>> EventKind.from_str("instructions")
    <EventKind.IR: 'Ir'>
    >>> [k.value for k in EventKind.expand("@hits")]
    ['L1hits', 'LLhits', 'RamHits']

:class:`CostMap` maps the kinds of exactly one enumeration to a count (``int``)
or, for rates, a ``float``. An absent key means "not recorded", which is not the
same thing as a recorded zero.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from callgrind_harness.errors import ConfigError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "Number",
    "MetricKind",
    "EventKind",
    "CachegrindMetric",
    "DhatMetric",
    "ToolKind",
    "CostMap",
]

Number = Union[int, float]

K = TypeVar("K", bound="MetricKind")

# Canonical value -> human readable name. Kinds not listed display their value.
_DISPLAY_NAMES: Dict[str, str] = {
    "Ir": "Instructions",
    "L1hits": "L1 Hits",
    "LLhits": "LL Hits",
    "RamHits": "RAM Hits",
    "TotalRW": "Total read+write",
    "EstimatedCycles": "Estimated Cycles",
    "I1MissRate": "I1 Miss Rate",
    "D1MissRate": "D1 Miss Rate",
    "LLiMissRate": "LLi Miss Rate",
    "LLdMissRate": "LLd Miss Rate",
    "LLMissRate": "LL Miss Rate",
    "L1HitRate": "L1 Hit Rate",
    "LLHitRate": "LL Hit Rate",
    "RamHitRate": "RAM Hit Rate",
    "TotalUnits": "Total units",
    "TotalEvents": "Total events",
    "TotalBytes": "Total bytes",
    "TotalBlocks": "Total blocks",
    "AtTGmaxBytes": "At t-gmax bytes",
    "AtTGmaxBlocks": "At t-gmax blocks",
    "AtTEndBytes": "At t-end bytes",
    "AtTEndBlocks": "At t-end blocks",
    "ReadsBytes": "Reads bytes",
    "WritesBytes": "Writes bytes",
    "TotalLifetimes": "Total lifetimes",
    "MaximumBytes": "Maximum bytes",
    "MaximumBlocks": "Maximum blocks",
}

# Extra lowercase spellings accepted by ``from_str``.
_ALIASES: Dict[str, str] = {
    "instructions": "Ir",
    "tun": "TotalUnits",
    "tev": "TotalEvents",
    "tb": "TotalBytes",
    "tbk": "TotalBlocks",
    "gb": "AtTGmaxBytes",
    "gbk": "AtTGmaxBlocks",
    "eb": "AtTEndBytes",
    "ebk": "AtTEndBlocks",
    "rb": "ReadsBytes",
    "wb": "WritesBytes",
    "tl": "TotalLifetimes",
    "mb": "MaximumBytes",
    "mbk": "MaximumBlocks",
}

_RATES = frozenset(
    {
        "I1MissRate",
        "LLiMissRate",
        "D1MissRate",
        "LLdMissRate",
        "LLMissRate",
        "L1HitRate",
        "LLHitRate",
        "RamHitRate",
    }
)

_DERIVED = _RATES | {"L1hits", "LLhits", "RamHits", "TotalRW", "EstimatedCycles"}

# Group tables are filled in below, once the enumerations exist.
_GROUPS: Dict[type, Dict[str, Tuple[Any, ...]]] = {}


class MetricKind(Enum):
    """Behaviour shared by the per-tool metric enumerations."""

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self.value, self.value)

    @property
    def is_derived(self) -> bool:
        """True if the kind is computed from other kinds and must never be summed."""
        return self.value in _DERIVED

    @property
    def is_additive(self) -> bool:
        return not self.is_derived

    @property
    def is_float(self) -> bool:
        return self.value in _RATES

    def __str__(self) -> str:
        return self.display_name

    @classmethod
    def from_str(cls: Type[K], name: str) -> K:
        """Parse a single kind name, ignoring case.

        Args:
            name (str): The kind name, e.g. ``"Ir"``, ``"instructions"`` or ``"sysCount"``.

        Returns:
            The matching member of this enumeration.

        Raises:
            ConfigError: If the name is not a kind of this enumeration.
        """
        lower = name.strip().lower()
        canonical = _ALIASES.get(lower, lower)
        for member in cls:
            if member.value.lower() == canonical.lower():
                return member
        raise ConfigError(f"Unknown {cls.__name__}: '{name}'")

    @classmethod
    def groups(cls: Type[K]) -> Dict[str, Tuple[K, ...]]:
        """Return the group table of this enumeration, keyed by lowercase alias without ``@``."""
        return _GROUPS.get(cls, {})

    @classmethod
    def expand(cls: Type[K], name: str) -> List[K]:
        """Expand a kind or ``@group`` name into the list of member kinds.

        Raises:
            ConfigError: If the name is neither a kind nor a group of this enumeration.
        """
        stripped = name.strip()
        if stripped.startswith("@"):
            group = cls.groups().get(stripped[1:].lower())
            if group is None:
                raise ConfigError(f"Unknown {cls.__name__} group: '{name}'")
            return list(group)
        return [cls.from_str(stripped)]

    @classmethod
    def default_group(cls: Type[K]) -> List[K]:
        return list(cls.groups()["default"])


class EventKind(MetricKind):
    """Callgrind events, plus the cache metrics derived from them."""

    IR = "Ir"
    DR = "Dr"
    DW = "Dw"
    I1MR = "I1mr"
    D1MR = "D1mr"
    D1MW = "D1mw"
    ILMR = "ILmr"
    DLMR = "DLmr"
    DLMW = "DLmw"
    I1_MISS_RATE = "I1MissRate"
    LLI_MISS_RATE = "LLiMissRate"
    D1_MISS_RATE = "D1MissRate"
    LLD_MISS_RATE = "LLdMissRate"
    LL_MISS_RATE = "LLMissRate"
    L1_HITS = "L1hits"
    LL_HITS = "LLhits"
    RAM_HITS = "RamHits"
    L1_HIT_RATE = "L1HitRate"
    LL_HIT_RATE = "LLHitRate"
    RAM_HIT_RATE = "RamHitRate"
    TOTAL_RW = "TotalRW"
    ESTIMATED_CYCLES = "EstimatedCycles"
    SYS_COUNT = "SysCount"
    SYS_TIME = "SysTime"
    SYS_CPU_TIME = "SysCpuTime"
    GE = "Ge"
    BC = "Bc"
    BCM = "Bcm"
    BI = "Bi"
    BIM = "Bim"
    ILDMR = "ILdmr"
    DLDMR = "DLdmr"
    DLDMW = "DLdmw"
    AC_COST1 = "AcCost1"
    AC_COST2 = "AcCost2"
    SP_LOSS1 = "SpLoss1"
    SP_LOSS2 = "SpLoss2"


class CachegrindMetric(MetricKind):
    """Cachegrind events, plus the cache metrics derived from them."""

    IR = "Ir"
    DR = "Dr"
    DW = "Dw"
    I1MR = "I1mr"
    D1MR = "D1mr"
    D1MW = "D1mw"
    ILMR = "ILmr"
    DLMR = "DLmr"
    DLMW = "DLmw"
    I1_MISS_RATE = "I1MissRate"
    LLI_MISS_RATE = "LLiMissRate"
    D1_MISS_RATE = "D1MissRate"
    LLD_MISS_RATE = "LLdMissRate"
    LL_MISS_RATE = "LLMissRate"
    L1_HITS = "L1hits"
    LL_HITS = "LLhits"
    RAM_HITS = "RamHits"
    L1_HIT_RATE = "L1HitRate"
    LL_HIT_RATE = "LLHitRate"
    RAM_HIT_RATE = "RamHitRate"
    TOTAL_RW = "TotalRW"
    ESTIMATED_CYCLES = "EstimatedCycles"
    BC = "Bc"
    BCM = "Bcm"
    BI = "Bi"
    BIM = "Bim"


class DhatMetric(MetricKind):
    """DHAT heap profiling metrics. All of them are additive."""

    TOTAL_UNITS = "TotalUnits"
    TOTAL_EVENTS = "TotalEvents"
    TOTAL_BYTES = "TotalBytes"
    TOTAL_BLOCKS = "TotalBlocks"
    AT_T_GMAX_BYTES = "AtTGmaxBytes"
    AT_T_GMAX_BLOCKS = "AtTGmaxBlocks"
    AT_T_END_BYTES = "AtTEndBytes"
    AT_T_END_BLOCKS = "AtTEndBlocks"
    READS_BYTES = "ReadsBytes"
    WRITES_BYTES = "WritesBytes"
    TOTAL_LIFETIMES = "TotalLifetimes"
    MAXIMUM_BYTES = "MaximumBytes"
    MAXIMUM_BLOCKS = "MaximumBlocks"


def _cache_groups(cls: Type[K]) -> Dict[str, Tuple[K, ...]]:
    """Build the cache-simulation groups shared by callgrind and cachegrind."""
    m = {member.value: member for member in cls}
    misses = tuple(m[v] for v in ("I1mr", "D1mr", "D1mw", "ILmr", "DLmr", "DLmw"))
    miss_rates = tuple(
        m[v] for v in ("I1MissRate", "LLiMissRate", "D1MissRate", "LLdMissRate", "LLMissRate")
    )
    hits = tuple(m[v] for v in ("L1hits", "LLhits", "RamHits"))
    hit_rates = tuple(m[v] for v in ("L1HitRate", "LLHitRate", "RamHitRate"))
    cachesim = (
        (m["Dr"], m["Dw"]) + misses + miss_rates + hits + hit_rates + (m["TotalRW"], m["EstimatedCycles"])
    )
    branchsim = tuple(m[v] for v in ("Bc", "Bcm", "Bi", "Bim"))

    groups: Dict[str, Tuple[K, ...]] = {}
    for aliases, members in (
        (("all",), tuple(cls)),
        (("cachemisses", "misses", "ms"), misses),
        (("cachemissrates", "missrates", "mr"), miss_rates),
        (("cachehits", "hits", "hs"), hits),
        (("cachehitrates", "hitrates", "hr"), hit_rates),
        (("cachesim", "cs"), cachesim),
        (("branchsim", "bs"), branchsim),
    ):
        for alias in aliases:
            groups[alias] = members
    return groups


def _register_groups() -> None:
    callgrind = _cache_groups(EventKind)
    e = {member.value: member for member in EventKind}
    syscalls = tuple(e[v] for v in ("SysCount", "SysTime", "SysCpuTime"))
    cacheuse = tuple(e[v] for v in ("AcCost1", "AcCost2", "SpLoss1", "SpLoss2"))
    writeback = tuple(e[v] for v in ("ILdmr", "DLdmr", "DLdmw"))
    default = (
        (e["Ir"],)
        + callgrind["hits"]
        + (e["TotalRW"], e["EstimatedCycles"])
        + syscalls
        + (e["Ge"],)
        + callgrind["branchsim"]
        + writeback
        + cacheuse
    )
    for aliases, members in (
        (("default", "def"), default),
        (("cacheuse", "cu"), cacheuse),
        (("systemcalls", "syscalls", "sc"), syscalls),
        (("writebackbehaviour", "writeback", "wb"), writeback),
    ):
        for alias in aliases:
            callgrind[alias] = members
    _GROUPS[EventKind] = callgrind

    cachegrind = _cache_groups(CachegrindMetric)
    c = {member.value: member for member in CachegrindMetric}
    cachegrind["default"] = cachegrind["def"] = (
        (c["Ir"],) + cachegrind["hits"] + (c["TotalRW"], c["EstimatedCycles"]) + cachegrind["branchsim"]
    )
    _GROUPS[CachegrindMetric] = cachegrind

    dhat_all = tuple(DhatMetric)
    _GROUPS[DhatMetric] = {"default": dhat_all[:10], "def": dhat_all[:10], "all": dhat_all}


_register_groups()


class ToolKind(Enum):
    """The profiling tools whose output can be parsed."""

    CALLGRIND = "callgrind"
    CACHEGRIND = "cachegrind"
    DHAT = "dhat"

    @property
    def metric_type(self) -> Type[MetricKind]:
        if self is ToolKind.CALLGRIND:
            return EventKind
        if self is ToolKind.CACHEGRIND:
            return CachegrindMetric
        return DhatMetric

    @property
    def id(self) -> str:
        return self.value

    @property
    def banner(self) -> str:
        return self.value.upper()

    @classmethod
    def from_str(cls, name: str) -> "ToolKind":
        try:
            return cls(name.strip().lower())
        except ValueError as e:
            raise ConfigError(f"Unknown tool: '{name}'") from e


class CostMap:
    """Insertion-ordered mapping from the kinds of one enumeration to numbers.

    Attributes:
        kind_type (Type[MetricKind]): The enumeration all keys must belong to.

    Examples:
        >>> costs = CostMap(EventKind, [(EventKind.IR, 10)])
        >>> costs.add(CostMap(EventKind, [(EventKind.IR, 5), (EventKind.DR, 1)]))
        >>> costs.to_dict()
        {'Ir': 15, 'Dr': 1}
    """

    __slots__ = ("kind_type", "_values")

    def __init__(
        self,
        kind_type: Type[MetricKind],
        values: Optional[Iterable[Tuple[MetricKind, Number]]] = None,
    ) -> None:
        self.kind_type = kind_type
        self._values: Dict[MetricKind, Number] = {}
        if values is not None:
            for kind, value in values:
                self[kind] = value

    @classmethod
    def zeros(cls, kind_type: Type[MetricKind], kinds: Iterable[MetricKind]) -> "CostMap":
        return cls(kind_type, ((kind, 0) for kind in kinds))

    @classmethod
    def from_dict(cls, kind_type: Type[MetricKind], data: Mapping[str, Number]) -> "CostMap":
        """Build a map from ``{kind name: value}`` as produced by :meth:`to_dict`.

        Raises:
            ConfigError: If a name is not a kind of ``kind_type``.
        """
        costs = cls(kind_type)
        for name, value in data.items():
            kind = kind_type.from_str(name)
            costs[kind] = float(value) if kind.is_float else int(value)
        return costs

    def _check(self, kind: MetricKind) -> None:
        if not isinstance(kind, self.kind_type):
            raise TypeError(f"{kind!r} is not a {self.kind_type.__name__}")

    def __getitem__(self, kind: MetricKind) -> Number:
        return self._values[kind]

    def __setitem__(self, kind: MetricKind, value: Number) -> None:
        self._check(kind)
        self._values[kind] = value

    def __delitem__(self, kind: MetricKind) -> None:
        del self._values[kind]

    def __contains__(self, kind: object) -> bool:
        return kind in self._values

    def __iter__(self) -> Iterator[MetricKind]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CostMap):
            return NotImplemented
        return self.kind_type is other.kind_type and self._values == other._values

    def __repr__(self) -> str:
        items = ", ".join(f"{k.value}={v}" for k, v in self._values.items())
        return f"CostMap({self.kind_type.__name__}: {items})"

    def get(self, kind: MetricKind, default: Optional[Number] = None) -> Optional[Number]:
        return self._values.get(kind, default)

    def kinds(self) -> List[MetricKind]:
        return list(self._values)

    def items(self) -> List[Tuple[MetricKind, Number]]:
        return list(self._values.items())

    def ordered(self) -> List[Tuple[MetricKind, Number]]:
        """Return the items in the canonical order of the enumeration."""
        return [(kind, self._values[kind]) for kind in self.kind_type if kind in self._values]

    def copy(self) -> "CostMap":
        return CostMap(self.kind_type, self._values.items())

    def add(self, other: "CostMap") -> None:
        """Add ``other`` into this map in place, inserting kinds missing here."""
        if other.kind_type is not self.kind_type:
            raise TypeError(
                f"Cannot add {other.kind_type.__name__} costs to {self.kind_type.__name__} costs"
            )
        for kind, value in other._values.items():
            self._values[kind] = self._values.get(kind, 0) + value

    def is_zero(self) -> bool:
        return all(value == 0 for value in self._values.values())

    def to_dict(self) -> Dict[str, Number]:
        return {kind.value: value for kind, value in self._values.items()}
