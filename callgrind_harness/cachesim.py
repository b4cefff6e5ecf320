"""Derived cache metrics.

Callgrind and cachegrind, when run with the cache simulation, report the raw
events ``Ir Dr Dw I1mr D1mr D1mw ILmr DLmr DLmw``. Hits, hit/miss rates and the
estimated cycle count are computed from them here. They are ratios or
differences of sums, so they are always computed on already aggregated counts.

The cycle estimate weighs an L1 hit with 1 cycle, a last-level hit with 5 and a
RAM access with 35 cycles.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Type

from callgrind_harness.metrics import CostMap, MetricKind

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["BASE_EVENTS", "CacheSummary", "has_cache_events", "add_cache_summary"]

BASE_EVENTS = ("Ir", "Dr", "Dw", "I1mr", "D1mr", "D1mw", "ILmr", "DLmr", "DLmw")

L1_CYCLES = 1
LL_CYCLES = 5
RAM_CYCLES = 35


def _sub(a: int, b: int) -> int:
    return a - b if a > b else 0


def _div0(a: float, b: float) -> float:
    return 0.0 if b == 0 else a / b


@dataclass
class CacheSummary:
    """Hits, rates and cycles computed from the raw cache simulation events."""

    l1_hits: int
    ll_hits: int
    ram_hits: int
    total_rw: int
    estimated_cycles: int
    i1_miss_rate: float
    lli_miss_rate: float
    d1_miss_rate: float
    lld_miss_rate: float
    ll_miss_rate: float
    l1_hit_rate: float
    ll_hit_rate: float
    ram_hit_rate: float

    @classmethod
    def from_events(cls, ev: Dict[str, int]) -> "CacheSummary":
        """Compute the summary from a ``{event name: count}`` mapping of the base events."""
        ram_hits = ev["ILmr"] + ev["DLmr"] + ev["DLmw"]
        l1_data_misses = ev["D1mr"] + ev["D1mw"]
        ll_accesses = ev["I1mr"] + l1_data_misses
        ll_hits = _sub(ll_accesses, ram_hits)
        d_refs = ev["Dr"] + ev["Dw"]
        total_rw = ev["Ir"] + d_refs
        l1_hits = _sub(_sub(total_rw, ram_hits), ll_hits)
        cycles = L1_CYCLES * l1_hits + LL_CYCLES * ll_hits + RAM_CYCLES * ram_hits

        return cls(
            l1_hits=l1_hits,
            ll_hits=ll_hits,
            ram_hits=ram_hits,
            total_rw=total_rw,
            estimated_cycles=cycles,
            i1_miss_rate=_div0(ev["I1mr"], ev["Ir"]) * 100.0,
            lli_miss_rate=_div0(ev["ILmr"], ev["Ir"]) * 100.0,
            d1_miss_rate=_div0(l1_data_misses, d_refs) * 100.0,
            lld_miss_rate=_div0(ev["DLmr"] + ev["DLmw"], d_refs) * 100.0,
            ll_miss_rate=_div0(ram_hits, total_rw) * 100.0,
            l1_hit_rate=_div0(l1_hits, total_rw) * 100.0,
            ll_hit_rate=_div0(ll_hits, total_rw) * 100.0,
            ram_hit_rate=_div0(ram_hits, total_rw) * 100.0,
        )

    def as_values(self) -> Dict[str, float]:
        """Return the summary keyed by canonical metric name."""
        return {
            "I1MissRate": self.i1_miss_rate,
            "LLiMissRate": self.lli_miss_rate,
            "D1MissRate": self.d1_miss_rate,
            "LLdMissRate": self.lld_miss_rate,
            "LLMissRate": self.ll_miss_rate,
            "L1hits": self.l1_hits,
            "LLhits": self.ll_hits,
            "RamHits": self.ram_hits,
            "L1HitRate": self.l1_hit_rate,
            "LLHitRate": self.ll_hit_rate,
            "RamHitRate": self.ram_hit_rate,
            "TotalRW": self.total_rw,
            "EstimatedCycles": self.estimated_cycles,
        }


def _base_kinds(kind_type: Type[MetricKind]) -> Dict[str, MetricKind]:
    members = {member.value: member for member in kind_type}
    return {name: members[name] for name in BASE_EVENTS if name in members}


def has_cache_events(costs: CostMap) -> bool:
    """True if ``costs`` holds every raw event needed for the cache summary."""
    base = _base_kinds(costs.kind_type)
    return len(base) == len(BASE_EVENTS) and all(kind in costs for kind in base.values())


def add_cache_summary(costs: CostMap) -> CostMap:
    """Return a copy of ``costs`` with the derived cache metrics recomputed.

    Derived kinds already present in ``costs`` are dropped first. When not all raw
    cache events are present (e.g. callgrind ran without ``--cache-sim=yes``), the
    result holds only the additive kinds.
    """
    result = CostMap(costs.kind_type, ((k, v) for k, v in costs.items() if not k.is_derived))
    if not has_cache_events(result):
        return result

    base = _base_kinds(costs.kind_type)
    summary = CacheSummary.from_events({name: int(result[kind]) for name, kind in base.items()})
    members = {member.value: member for member in costs.kind_type}
    for name, value in summary.as_values().items():
        result[members[name]] = value

    return CostMap(costs.kind_type, result.ordered())
