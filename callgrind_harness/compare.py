"""Comparison of two totals and regression checks.

Comparing an old total (a baseline or the previous run) with a new one yields a
:class:`ComparisonResult` with, per metric kind, the signed percentage change
and a signed factor::

    >>> result = diff(CostMap(EventKind, [(EventKind.IR, 100)]), CostMap(EventKind, [(EventKind.IR, 200)]))
    >>> result[EventKind.IR].diff.pct, result[EventKind.IR].diff.factor
    (100.0, 2.0)

The factor is ``new / old`` when the cost grew and ``-(old / new)`` when it
shrank, so ``-2.0`` reads as "two times cheaper". Equal values have no factor
(:attr:`DiffStatus.NO_CHANGE`), an old value of zero makes the change
:attr:`DiffStatus.UNDEFINED` and a missing old value
:attr:`DiffStatus.NOT_APPLICABLE`. Neither of the last two ever violates a
regression limit.

Regression limits are configured with strings like ``"@all=10%,ir=5%|10000"``:
a value with a ``%`` suffix is a soft (relative) limit, anything else a hard
(absolute) limit. Group keys expand to their members and a later key overrides
an earlier one for the same kind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Type

from callgrind_harness.errors import ConfigError
from callgrind_harness.metrics import (
    CostMap,
    DhatMetric,
    EventKind,
    MetricKind,
    Number,
    ToolKind,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "DiffStatus",
    "Diff",
    "MetricComparison",
    "Verdict",
    "ComparisonResult",
    "LimitKind",
    "RegressionLimit",
    "RegressionConfig",
    "Violation",
    "percentage_diff",
    "factor_diff",
    "diff_values",
    "diff",
    "parse_limits",
    "check",
    "IdEntry",
    "IdComparison",
    "compare_by_id",
]


class DiffStatus(Enum):
    NOT_APPLICABLE = "not_applicable"
    NO_CHANGE = "no_change"
    CHANGED = "changed"
    UNDEFINED = "undefined"


@dataclass(frozen=True)
class Diff:
    """Percentage and factor of one metric. Both are None unless ``status`` is CHANGED,
    except for NO_CHANGE which has a percentage of 0."""

    status: DiffStatus
    pct: Optional[float] = None
    factor: Optional[float] = None

    @property
    def is_comparable(self) -> bool:
        return self.status in (DiffStatus.CHANGED, DiffStatus.NO_CHANGE)


def percentage_diff(new: Number, old: Number) -> float:
    """Return the signed change from ``old`` to ``new`` in percent. ``old`` must not be 0."""
    if new == old:
        return 0.0
    return (float(new) - float(old)) / float(old) * 100.0


def factor_diff(new: Number, old: Number) -> float:
    """Return ``new / old`` if ``new`` is greater, else ``-(old / new)``.

    Both values must be non-zero unless they are equal.
    """
    if new == old:
        return 1.0
    if new > old:
        return float(new) / float(old)
    return -(float(old) / float(new))


def diff_values(old: Optional[Number], new: Optional[Number]) -> Diff:
    if old is None or new is None:
        return Diff(DiffStatus.NOT_APPLICABLE)
    if old == new:
        return Diff(DiffStatus.NO_CHANGE, pct=0.0)
    if old == 0:
        return Diff(DiffStatus.UNDEFINED)
    if new == 0:
        # A drop to zero has a percentage of -100 but no finite factor.
        return Diff(DiffStatus.CHANGED, pct=-100.0, factor=float("-inf"))
    return Diff(DiffStatus.CHANGED, pct=percentage_diff(new, old), factor=factor_diff(new, old))


@dataclass
class MetricComparison:
    kind: MetricKind
    new: Optional[Number]
    old: Optional[Number]
    diff: Diff


class Verdict(Enum):
    REGRESSED = "regressed"
    NOT_REGRESSED = "not_regressed"
    NO_BASELINE = "no_baseline"


class LimitKind(Enum):
    SOFT = "soft"
    HARD = "hard"


@dataclass(frozen=True)
class RegressionLimit:
    """One configured limit. ``key`` is a kind or ``@group`` name as written by the user."""

    key: str
    kind: LimitKind
    value: Number

    def __str__(self) -> str:
        if self.kind is LimitKind.SOFT:
            return f"{self.key}={self.value}%"
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class Violation:
    """A breached regression limit. This is a result value, not an error.

    Attributes:
        kind (MetricKind): The metric.
        limit_kind (LimitKind): Soft or hard.
        limit (Number): The configured limit.
        new (Number): The new value.
        old (Optional[Number]): The old value (soft limits only).
        diff (float): The percentage change for soft limits, ``new - limit`` for hard limits.
    """

    kind: MetricKind
    limit_kind: LimitKind
    limit: Number
    new: Number
    old: Optional[Number]
    diff: float

    def describe(self) -> str:
        if self.limit_kind is LimitKind.SOFT:
            direction = ">" if self.limit >= 0 else "<"
            return (
                f"Performance has regressed: {self.kind.display_name} ({self.old} -> {self.new}) "
                f"regressed by {self.diff:+.5f}% ({direction}{self.limit:+.5f}%)"
            )
        return (
            f"Performance has regressed: {self.kind.display_name} ({self.new}) exceeds "
            f"limit ({self.limit}) by {self.diff:+}"
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "metric": self.kind.value,
            "kind": self.limit_kind.value,
            "limit": self.limit,
            "new": self.new,
            "old": self.old,
            "diff": self.diff,
        }


@dataclass
class ComparisonResult:
    """Per-metric comparison of a new total against an optional old total."""

    kind_type: Type[MetricKind]
    metrics: Dict[MetricKind, MetricComparison] = field(default_factory=dict)
    has_baseline: bool = False
    violations: List[Violation] = field(default_factory=list)

    def __getitem__(self, kind: MetricKind) -> MetricComparison:
        return self.metrics[kind]

    def __iter__(self) -> Iterator[MetricComparison]:
        return iter(self.metrics.values())

    def __len__(self) -> int:
        return len(self.metrics)

    def get(self, kind: MetricKind) -> Optional[MetricComparison]:
        return self.metrics.get(kind)

    @property
    def verdict(self) -> Verdict:
        if not self.has_baseline:
            return Verdict.NO_BASELINE
        return Verdict.REGRESSED if self.violations else Verdict.NOT_REGRESSED

    @property
    def is_regressed(self) -> bool:
        return self.verdict is Verdict.REGRESSED


def diff(old: Optional[CostMap], new: CostMap) -> ComparisonResult:
    """Compare ``new`` against ``old``.

    Args:
        old (Optional[CostMap]): The baseline, or None if there is none.
        new (CostMap): The new total.

    Returns:
        ComparisonResult: One entry per kind of ``new`` (and of ``old``), in canonical order.
    """
    if old is not None and old.kind_type is not new.kind_type:
        raise TypeError(
            f"Cannot compare {new.kind_type.__name__} with {old.kind_type.__name__} costs"
        )

    result = ComparisonResult(new.kind_type, has_baseline=old is not None)
    for kind in new.kind_type:
        new_value = new.get(kind)
        old_value = old.get(kind) if old is not None else None
        if new_value is None and old_value is None:
            continue
        result.metrics[kind] = MetricComparison(kind, new_value, old_value, diff_values(old_value, new_value))
    return result


def _parse_number(text: str, kind: MetricKind) -> Number:
    if kind.is_float:
        return float(text)
    try:
        return int(text)
    except ValueError:
        return float(text)


def parse_limits(text: str, kind_type: Type[MetricKind]) -> List[RegressionLimit]:
    """Parse a limits string like ``"@all=10%,ir=5%|10000"``.

    Args:
        text (str): Comma separated ``key=value[|value]`` items.
        kind_type (Type[MetricKind]): The enumeration the keys refer to.

    Returns:
        List[RegressionLimit]: The limits in the order given.

    Raises:
        ConfigError: For an empty string, a malformed item, an unknown kind or group,
            or an unparsable value.
    """
    limits: List[RegressionLimit] = []
    items = [item.strip() for item in text.split(",") if item.strip()]
    if not items:
        raise ConfigError("No limits found: At least one limit must be present")

    for item in items:
        key, sep, values = item.partition("=")
        key, values = key.strip(), values.strip()
        if not sep or not key or not values:
            raise ConfigError(f"Invalid format of key=value pair: '{item}'")
        members = kind_type.expand(key)
        for value in values.split("|"):
            value = value.strip()
            if value.endswith("%"):
                try:
                    pct = float(value[:-1].strip())
                except ValueError as e:
                    raise ConfigError(f"Invalid soft limit for '{key}': '{value}'") from e
                limits.append(RegressionLimit(key, LimitKind.SOFT, pct))
            else:
                try:
                    number = _parse_number(value, members[0])
                except ValueError as e:
                    raise ConfigError(f"Invalid hard limit for '{key}': '{value}'") from e
                limits.append(RegressionLimit(key, LimitKind.HARD, number))
    return limits


@dataclass
class RegressionConfig:
    """The regression limits of one tool.

    Attributes:
        kind_type (Type[MetricKind]): The metric enumeration of the tool.
        limits (List[RegressionLimit]): Limits in application order.
        fail_fast (bool): Stop the whole run at the first regression.
    """

    kind_type: Type[MetricKind]
    limits: List[RegressionLimit] = field(default_factory=list)
    fail_fast: bool = False

    @classmethod
    def default(cls, tool: ToolKind, fail_fast: bool = False) -> "RegressionConfig":
        """Return the tool's default: Ir (or total bytes for DHAT) must not grow by more than 10%."""
        kind_type = tool.metric_type
        key = "TotalBytes" if kind_type is DhatMetric else EventKind.IR.value
        return cls(kind_type, [RegressionLimit(key, LimitKind.SOFT, 10.0)], fail_fast)

    @classmethod
    def from_string(cls, tool: ToolKind, text: Optional[str], fail_fast: bool = False) -> "RegressionConfig":
        """Parse ``text`` for ``tool``; an empty or missing string yields the default limits."""
        if text is None or not text.strip():
            return cls.default(tool, fail_fast)
        return cls(tool.metric_type, parse_limits(text, tool.metric_type), fail_fast)

    def resolve(self) -> Tuple[Dict[MetricKind, float], Dict[MetricKind, Number]]:
        """Expand groups and apply overrides.

        Returns:
            Tuple[Dict[MetricKind, float], Dict[MetricKind, Number]]: The effective soft
            and hard limit per kind. Soft and hard limits do not override each other.
        """
        soft: Dict[MetricKind, float] = {}
        hard: Dict[MetricKind, Number] = {}
        for limit in self.limits:
            for kind in self.kind_type.expand(limit.key):
                if limit.kind is LimitKind.SOFT:
                    soft[kind] = float(limit.value)
                else:
                    hard[kind] = limit.value
        return soft, hard


def check(result: ComparisonResult, config: RegressionConfig) -> List[Violation]:
    """Evaluate the regression limits against a comparison.

    Without a baseline there is nothing to regress from and the result is always
    empty, even for hard limits. The violations are also stored in
    ``result.violations``.
    """
    if not result.has_baseline:
        result.violations = []
        return []

    soft, hard = config.resolve()
    violations: List[Violation] = []

    for kind, limit in soft.items():
        metric = result.get(kind)
        # Only CHANGED and NO_CHANGE diffs carry a percentage.
        pct = metric.diff.pct if metric is not None else None
        if metric is None or pct is None:
            continue
        if (limit >= 0 and pct > limit) or (limit < 0 and pct < limit):
            violations.append(
                Violation(kind, LimitKind.SOFT, limit, metric.new, metric.old, pct)  # type: ignore[arg-type]
            )

    for kind, hard_limit in hard.items():
        metric = result.get(kind)
        if metric is None or metric.new is None:
            continue
        if metric.new > hard_limit:
            violations.append(
                Violation(kind, LimitKind.HARD, hard_limit, metric.new, metric.old, metric.new - hard_limit)
            )

    for violation in violations:
        logger.debug(f"Regression: {violation.describe()}")
    result.violations = violations
    return violations


@dataclass
class IdEntry:
    """A benchmark case taking part in compare-by-id."""

    function: str
    id: Optional[str]
    costs: CostMap
    details: Optional[str] = None


@dataclass
class IdComparison:
    """``function``'s case compared against the same-id case of ``other_function``.

    The costs of ``function`` are the new side, those of ``other_function`` the old side.
    """

    id: str
    function: str
    other_function: str
    result: ComparisonResult
    details: Optional[str] = None


def compare_by_id(entries: Sequence[IdEntry]) -> List[IdComparison]:
    """Compare cases with equal ids across benchmark functions.

    ``entries`` must be in declaration order. Every entry with an id is compared
    with each earlier entry having the same id. Entries without id, or whose id
    appears nowhere else, are not compared.
    """
    seen: Dict[str, List[IdEntry]] = {}
    comparisons: List[IdComparison] = []
    for entry in entries:
        if entry.id is None:
            continue
        earlier = seen.setdefault(entry.id, [])
        for other in earlier:
            if other.costs.kind_type is not entry.costs.kind_type:
                logger.debug(f"Skipping comparison of '{other.function}' and '{entry.function}': Different tools")
                continue
            comparisons.append(
                IdComparison(
                    id=entry.id,
                    function=other.function,
                    other_function=entry.function,
                    result=diff(entry.costs, other.costs),
                    details=other.details,
                )
            )
        earlier.append(entry)
    return comparisons
