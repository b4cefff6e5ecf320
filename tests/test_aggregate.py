from __future__ import annotations

from typing import Dict

import pytest

from callgrind_harness.aggregate import aggregate, aggregate_profiles, with_derived
from callgrind_harness.errors import ParseError
from callgrind_harness.metrics import CostMap, DhatMetric, EventKind, ToolKind
from callgrind_harness.model import UnitProfile
from callgrind_harness.paths import UnitId


def _costs(**values: int) -> CostMap:
    return CostMap.from_dict(EventKind, values)


def _cache_costs(ir: int, i1mr: int = 0, ilmr: int = 0) -> CostMap:
    return _costs(Ir=ir, Dr=0, Dw=0, I1mr=i1mr, D1mr=0, D1mw=0, ILmr=ilmr, DLmr=0, DLmw=0)


def _profile(unit: UnitId, costs: CostMap) -> UnitProfile:
    return UnitProfile(unit=unit, tool=ToolKind.CALLGRIND, path=None, costs=costs)


def test_sum_of_units() -> None:
    total = aggregate({UnitId(1): _costs(Ir=10), UnitId(2): _costs(Ir=5, Dr=3)})
    # A kind recorded by one unit only counts as zero for the others.
    assert total.to_dict() == {"Ir": 15, "Dr": 3}


def test_single_unit_is_identity() -> None:
    costs = _costs(Ir=42, SysCount=3)
    assert aggregate({UnitId(): costs}) == costs


def test_supported_kinds() -> None:
    total = aggregate({UnitId(1): _costs(Ir=10, Dr=2)}, supported=[EventKind.IR, EventKind.DW, EventKind.L1_HITS])
    # Supported but unrecorded kinds are zero, derived kinds are never summed.
    assert total.to_dict() == {"Ir": 10, "Dw": 0}


def test_derived_kinds_are_recomputed() -> None:
    """The hit rate of the total is computed from the summed counters, not averaged."""
    unit_a = _cache_costs(1000)
    unit_b = _cache_costs(10, i1mr=10, ilmr=10)
    assert with_derived(unit_a)[EventKind.L1_HIT_RATE] == pytest.approx(100.0)
    assert with_derived(unit_b)[EventKind.L1_HIT_RATE] == pytest.approx(0.0)

    total = aggregate({UnitId(1): with_derived(unit_a), UnitId(2): with_derived(unit_b)})
    assert total[EventKind.IR] == 1010
    assert total[EventKind.RAM_HITS] == 10
    assert total[EventKind.L1_HITS] == 1000
    assert total[EventKind.L1_HIT_RATE] == pytest.approx(1000 / 1010 * 100)
    assert total[EventKind.L1_HIT_RATE] != pytest.approx(50.0)


def test_no_derived_kinds_without_cache_events() -> None:
    total = aggregate({UnitId(1): _costs(Ir=10, Dr=1)})
    assert not any(kind.is_derived for kind in total)


def test_dhat_costs() -> None:
    a = CostMap.from_dict(DhatMetric, {"TotalBytes": 10, "TotalBlocks": 1})
    b = CostMap.from_dict(DhatMetric, {"TotalBytes": 5, "TotalBlocks": 2})
    assert aggregate({UnitId(1): a, UnitId(2): b}).to_dict() == {"TotalBytes": 15, "TotalBlocks": 3}


def test_empty_and_mixed_inputs() -> None:
    with pytest.raises(ValueError, match="zero units"):
        aggregate({})
    assert len(aggregate({}, kind_type=EventKind)) == 0

    dhat = CostMap.from_dict(DhatMetric, {"TotalBytes": 1})
    with pytest.raises(ValueError, match="Cannot aggregate"):
        aggregate({UnitId(1): _costs(Ir=1), UnitId(2): dhat})


def test_aggregate_profiles() -> None:
    profiles = [_profile(UnitId(2), _costs(Ir=3)), _profile(UnitId(1), _costs(Ir=4))]
    result = aggregate_profiles(profiles)
    assert result.total.to_dict() == {"Ir": 7}
    assert result.units == {}
    assert result.profiles == profiles


def test_aggregate_profiles_intermediate() -> None:
    profiles = [_profile(UnitId(2), _cache_costs(5)), _profile(UnitId(1), _cache_costs(4))]
    result = aggregate_profiles(profiles, show_intermediate=True)
    units: Dict[UnitId, CostMap] = result.units
    assert list(units) == [UnitId(1), UnitId(2)]
    assert units[UnitId(1)][EventKind.L1_HITS] == 4


def test_duplicate_unit() -> None:
    profiles = [_profile(UnitId(1), _costs(Ir=3)), _profile(UnitId(1), _costs(Ir=4))]
    with pytest.raises(ParseError, match="Duplicate output for unit 'pid: 1'"):
        aggregate_profiles(profiles)
