"""Parser for DHAT JSON output files.

DHAT writes one JSON document per process. The relevant part is the list of
program points (``pps``), each holding the heap statistics of one allocation
site. The unit totals are the sums over all program points.

In ``ad-hoc`` mode DHAT counts user-defined units and events instead of heap
bytes and blocks, so ``tb``/``tbk`` map to ``TotalUnits``/``TotalEvents``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

from callgrind_harness.errors import ParseError
from callgrind_harness.metrics import CostMap, DhatMetric, ToolKind
from callgrind_harness.model import UnitProfile
from callgrind_harness.paths import UnitId, parse_output_filename

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["DHAT_FILE_VERSION", "DhatParser", "parse_dhat_file"]

if orjson:
    JSON_DECODE_EXCEPTIONS: Tuple[Type[Exception], ...] = (json.JSONDecodeError, orjson.JSONDecodeError)
    json_loads = orjson.loads
else:
    JSON_DECODE_EXCEPTIONS = (json.JSONDecodeError,)
    json_loads = json.loads

DHAT_FILE_VERSION = 2
MODES = ("heap", "copy", "ad-hoc")

# Program point key -> metric, in the canonical order of DhatMetric.
_PP_KEYS: List[Tuple[str, DhatMetric]] = [
    ("tl", DhatMetric.TOTAL_LIFETIMES),
    ("mb", DhatMetric.MAXIMUM_BYTES),
    ("mbk", DhatMetric.MAXIMUM_BLOCKS),
    ("gb", DhatMetric.AT_T_GMAX_BYTES),
    ("gbk", DhatMetric.AT_T_GMAX_BLOCKS),
    ("eb", DhatMetric.AT_T_END_BYTES),
    ("ebk", DhatMetric.AT_T_END_BLOCKS),
    ("rb", DhatMetric.READS_BYTES),
    ("wb", DhatMetric.WRITES_BYTES),
]


class DhatParser:
    """Parse DHAT output files into :class:`UnitProfile` objects."""

    def parse_file(self, path: Union[str, Path], unit: Optional[UnitId] = None) -> UnitProfile:
        path = Path(path)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise ParseError(f"Unable to read file: {e}", path) from e
        if not content.strip():
            raise ParseError("File is empty", path)

        try:
            data = json_loads(content)
        except JSON_DECODE_EXCEPTIONS as e:
            raise ParseError(f"Invalid JSON: {e}", path) from e

        if unit is None:
            decoded = parse_output_filename(path, ToolKind.DHAT)
            unit = decoded.unit if decoded is not None else UnitId()
        return self.parse_data(data, path=path, unit=unit)

    def parse_data(self, data: Any, path: Optional[Path] = None, unit: Optional[UnitId] = None) -> UnitProfile:
        """Build the unit profile from an already decoded DHAT document."""
        if not isinstance(data, dict):
            raise ParseError("Expected a JSON object at the top level", path)

        version = data.get("dhatFileVersion")
        if version != DHAT_FILE_VERSION:
            raise ParseError(
                f"Unsupported DHAT file version '{version}': Expected '{DHAT_FILE_VERSION}'", path
            )
        mode = data.get("mode")
        if mode not in MODES:
            raise ParseError(f"Unknown DHAT mode: '{mode}'", path)

        pps = data.get("pps")
        if not isinstance(pps, list):
            raise ParseError("Missing or invalid field 'pps'", path)

        if mode == "ad-hoc":
            primary = [("tb", DhatMetric.TOTAL_UNITS), ("tbk", DhatMetric.TOTAL_EVENTS)]
        else:
            primary = [("tb", DhatMetric.TOTAL_BYTES), ("tbk", DhatMetric.TOTAL_BLOCKS)]

        sums: Dict[DhatMetric, int] = {}
        for index, pp in enumerate(pps):
            if not isinstance(pp, dict):
                raise ParseError(f"Program point {index} is not an object", path)
            for key, metric in primary:
                if key not in pp:
                    raise ParseError(f"Program point {index} is missing the required field '{key}'", path)
            for key, metric in primary + _PP_KEYS:
                if key in pp:
                    try:
                        sums[metric] = sums.get(metric, 0) + int(pp[key])
                    except (TypeError, ValueError) as e:
                        raise ParseError(f"Program point {index}: Invalid value for '{key}'", path) from e

        costs = CostMap(DhatMetric)
        for metric in DhatMetric:
            if metric in sums:
                costs[metric] = sums[metric]
            elif metric in (m for _, m in primary):
                costs[metric] = 0

        properties = {"mode": str(mode)}
        for key in ("cmd", "pid", "verb"):
            if key in data:
                properties[key] = str(data[key])
        logger.debug(f"{path}: Parsed {len(pps)} program points in {mode} mode")

        return UnitProfile(
            unit=unit if unit is not None else UnitId(),
            tool=ToolKind.DHAT,
            path=path,
            costs=costs,
            trees=[],
            properties=properties,
        )


def parse_dhat_file(path: Union[str, Path], unit: Optional[UnitId] = None) -> UnitProfile:
    return DhatParser().parse_file(path, unit)
