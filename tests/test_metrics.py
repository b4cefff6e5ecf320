from __future__ import annotations

import pytest

from callgrind_harness.errors import ConfigError
from callgrind_harness.metrics import CachegrindMetric, CostMap, DhatMetric, EventKind, ToolKind


def test_from_str_ignores_case() -> None:
    assert EventKind.from_str("ir") is EventKind.IR
    assert EventKind.from_str("Instructions") is EventKind.IR
    assert EventKind.from_str("estimatedcycles") is EventKind.ESTIMATED_CYCLES
    assert DhatMetric.from_str("TB") is DhatMetric.TOTAL_BYTES
    assert DhatMetric.from_str("totalBytes") is DhatMetric.TOTAL_BYTES


def test_from_str_unknown() -> None:
    with pytest.raises(ConfigError, match="Unknown EventKind: 'Foo'"):
        EventKind.from_str("Foo")
    # Enumerations do not share kinds.
    with pytest.raises(ConfigError):
        EventKind.from_str("TotalBytes")
    with pytest.raises(ConfigError):
        CachegrindMetric.from_str("SysCount")


def test_derived_and_additive() -> None:
    assert EventKind.IR.is_additive
    assert EventKind.L1_HITS.is_derived
    assert EventKind.L1_HIT_RATE.is_derived and EventKind.L1_HIT_RATE.is_float
    assert not EventKind.ESTIMATED_CYCLES.is_float
    assert all(kind.is_additive for kind in DhatMetric)


def test_display_names() -> None:
    assert str(EventKind.IR) == "Instructions"
    assert str(EventKind.TOTAL_RW) == "Total read+write"
    assert str(DhatMetric.AT_T_GMAX_BYTES) == "At t-gmax bytes"
    assert str(EventKind.SYS_COUNT) == "SysCount"


def test_expand_groups() -> None:
    assert EventKind.expand("@hits") == [EventKind.L1_HITS, EventKind.LL_HITS, EventKind.RAM_HITS]
    assert EventKind.expand("@HS") == EventKind.expand("@cachehits")
    assert EventKind.expand("@all") == list(EventKind)
    assert EventKind.expand("Dr") == [EventKind.DR]
    assert DhatMetric.expand("@default") == list(DhatMetric)[:10]
    assert EventKind.expand("@syscalls") == [EventKind.SYS_COUNT, EventKind.SYS_TIME, EventKind.SYS_CPU_TIME]


def test_expand_unknown_group() -> None:
    with pytest.raises(ConfigError, match="group"):
        EventKind.expand("@nothing")
    with pytest.raises(ConfigError):
        CachegrindMetric.expand("@syscalls")


def test_default_group_starts_with_instructions() -> None:
    default = EventKind.default_group()
    assert default[:6] == [
        EventKind.IR,
        EventKind.L1_HITS,
        EventKind.LL_HITS,
        EventKind.RAM_HITS,
        EventKind.TOTAL_RW,
        EventKind.ESTIMATED_CYCLES,
    ]


def test_tool_kind() -> None:
    assert ToolKind.from_str("Callgrind") is ToolKind.CALLGRIND
    assert ToolKind.DHAT.metric_type is DhatMetric
    assert ToolKind.CACHEGRIND.banner == "CACHEGRIND"
    with pytest.raises(ConfigError, match="Unknown tool"):
        ToolKind.from_str("massif")


def test_cost_map_absent_is_not_zero() -> None:
    costs = CostMap(EventKind, [(EventKind.IR, 0)])
    assert EventKind.IR in costs
    assert EventKind.DR not in costs
    assert costs.get(EventKind.DR) is None
    assert costs[EventKind.IR] == 0


def test_cost_map_rejects_foreign_kind() -> None:
    costs = CostMap(EventKind)
    with pytest.raises(TypeError):
        costs[DhatMetric.TOTAL_BYTES] = 1


def test_cost_map_add() -> None:
    costs = CostMap(EventKind, [(EventKind.IR, 10)])
    costs.add(CostMap(EventKind, [(EventKind.IR, 5), (EventKind.DR, 1)]))
    assert costs.to_dict() == {"Ir": 15, "Dr": 1}

    with pytest.raises(TypeError):
        costs.add(CostMap(DhatMetric, [(DhatMetric.TOTAL_BYTES, 1)]))


def test_cost_map_ordered() -> None:
    costs = CostMap(EventKind, [(EventKind.DW, 1), (EventKind.IR, 2), (EventKind.DR, 3)])
    assert [kind for kind, _ in costs.ordered()] == [EventKind.IR, EventKind.DR, EventKind.DW]
    assert costs.kinds() == [EventKind.DW, EventKind.IR, EventKind.DR]


def test_cost_map_from_dict() -> None:
    costs = CostMap.from_dict(EventKind, {"Ir": 3, "L1HitRate": "50.5"})
    assert costs[EventKind.IR] == 3
    assert costs[EventKind.L1_HIT_RATE] == 50.5
    assert costs == CostMap.from_dict(EventKind, costs.to_dict())

    with pytest.raises(ConfigError):
        CostMap.from_dict(EventKind, {"Nope": 1})
