"""Merge per-unit costs into the total of a benchmark.

Additive kinds are summed over all units. A unit which did not record a kind
counts as zero for it, as long as some unit recorded it. Kinds recorded by no
unit stay absent. Derived kinds (hits, rates, cycles) are recomputed once from
the summed counters: the hit rate of the total is not the mean of the hit rates
of the units.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Type

from callgrind_harness.cachesim import add_cache_summary
from callgrind_harness.errors import ParseError
from callgrind_harness.metrics import CostMap, DhatMetric, MetricKind
from callgrind_harness.model import UnitProfile
from callgrind_harness.paths import UnitId

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Aggregation", "aggregate", "aggregate_profiles", "with_derived"]


def with_derived(costs: CostMap) -> CostMap:
    """Return ``costs`` with its derived kinds recomputed from its additive kinds."""
    if costs.kind_type is DhatMetric:
        return costs.copy()
    return add_cache_summary(costs)


def aggregate(
    units: Mapping[UnitId, CostMap],
    supported: Optional[Iterable[MetricKind]] = None,
    kind_type: Optional[Type[MetricKind]] = None,
) -> CostMap:
    """Compute the total of a benchmark from the costs of its units.

    Args:
        units (Mapping[UnitId, CostMap]): Costs per unit. Derived kinds in the unit
            costs are ignored.
        supported (Optional[Iterable[MetricKind]]): The additive kinds the tool was
            configured to record. Defaults to every additive kind recorded by at
            least one unit.
        kind_type (Optional[Type[MetricKind]]): The metric enumeration. Only needed
            when ``units`` is empty.

    Returns:
        CostMap: The total, in canonical kind order, with derived kinds recomputed.

    Raises:
        ValueError: If ``units`` is empty and no ``kind_type`` is given, or if the
            units use different enumerations.
    """
    costs = list(units.values())
    if kind_type is None:
        if not costs:
            raise ValueError("Cannot aggregate zero units without a metric type")
        kind_type = costs[0].kind_type
    for unit_costs in costs:
        if unit_costs.kind_type is not kind_type:
            raise ValueError(
                f"Cannot aggregate {unit_costs.kind_type.__name__} with {kind_type.__name__} costs"
            )

    if supported is None:
        wanted = {kind for unit_costs in costs for kind in unit_costs if kind.is_additive}
    else:
        wanted = {kind for kind in supported if kind.is_additive}

    total = CostMap(kind_type)
    for kind in kind_type:
        if kind not in wanted:
            continue
        total[kind] = sum(unit_costs.get(kind, 0) for unit_costs in costs)  # type: ignore[misc]
    return with_derived(total)


@dataclass
class Aggregation:
    """The total of a benchmark and, optionally, the per-unit breakdown.

    Attributes:
        total (CostMap): The aggregated costs.
        units (Dict[UnitId, CostMap]): Costs per unit (with derived kinds), only
            filled when the breakdown was requested.
        profiles (List[UnitProfile]): The parsed units the total was built from.
    """

    total: CostMap
    units: Dict[UnitId, CostMap] = field(default_factory=dict)
    profiles: List[UnitProfile] = field(default_factory=list)


def aggregate_profiles(
    profiles: Sequence[UnitProfile],
    kind_type: Optional[Type[MetricKind]] = None,
    show_intermediate: bool = False,
) -> Aggregation:
    """Aggregate parsed unit profiles.

    Raises:
        ParseError: If two profiles claim the same unit.
    """
    by_unit: Dict[UnitId, CostMap] = {}
    for profile in profiles:
        if profile.unit in by_unit:
            raise ParseError(f"Duplicate output for unit '{profile.unit}'", profile.path)
        by_unit[profile.unit] = profile.costs

    total = aggregate(by_unit, kind_type=kind_type)
    units: Dict[UnitId, CostMap] = {}
    if show_intermediate:
        for unit in sorted(by_unit, key=lambda u: u.sort_key):
            units[unit] = with_derived(by_unit[unit])
    logger.debug(f"Aggregated {len(by_unit)} unit(s): {total}")
    return Aggregation(total=total, units=units, profiles=list(profiles))
