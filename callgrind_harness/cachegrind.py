"""Parser for cachegrind output files.

Cachegrind writes a flat profile without call edges::

    desc: I1 cache:         32768 B, 64 B, 8-way associative
    cmd: ./target/release/bench
    events: Ir I1mr ILmr Dr D1mr DLmr Dw D1mw DLmw
    fl=src/main.rs
    fn=main
    12 3 1 0 2 0 0 1 0 0
    summary: 3 1 0 2 0 0 1 0 0

Each count line is a source line number followed by up to one count per
event. Like with callgrind, the ``summary:`` line is ignored and the total is
the sum of all count lines.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

from callgrind_harness.errors import ConfigError, ParseError
from callgrind_harness.metrics import CachegrindMetric, CostMap, ToolKind
from callgrind_harness.model import CostTree, FunctionId, UnitProfile
from callgrind_harness.paths import UNKNOWN, UnitId, normalize_source_path, parse_output_filename

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["CachegrindParser", "parse_cachegrind_file"]


class CachegrindParser:
    """Parse cachegrind output files into :class:`UnitProfile` objects."""

    def __init__(self, project_root: Optional[Union[str, Path]] = None) -> None:
        self.project_root = project_root

    def parse_file(self, path: Union[str, Path], unit: Optional[UnitId] = None) -> UnitProfile:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ParseError(f"Unable to read file: {e}", path) from e

        if unit is None:
            decoded = parse_output_filename(path, ToolKind.CACHEGRIND)
            unit = decoded.unit if decoded is not None else UnitId()
        return self.parse_text(text, path=path, unit=unit)

    def parse_text(self, text: str, path: Optional[Path] = None, unit: Optional[UnitId] = None) -> UnitProfile:
        lines = text.splitlines()
        if not any(line.strip() for line in lines):
            raise ParseError("File is empty", path)

        desc: List[str] = []
        cmd: Optional[str] = None
        events: List[CachegrindMetric] = []
        body_start = len(lines)

        for number, raw in enumerate(lines, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition(":")
            key, value = key.strip(), value.strip()
            if not sep:
                raise ParseError("Header field 'events' must be present", path, number)
            if key == "desc":
                if not value.startswith("Option:"):
                    desc.append(value)
            elif key == "cmd":
                cmd = value
            elif key == "events":
                for name in value.split():
                    try:
                        kind = CachegrindMetric.from_str(name)
                    except ConfigError as e:
                        raise ParseError(f"Unknown event: '{name}'", path, number) from e
                    if kind.is_derived:
                        raise ParseError(f"Unknown event: '{name}'", path, number)
                    events.append(kind)
                body_start = number
                break
            else:
                logger.debug(f"{path}:{number}: Ignoring unknown header line: {line}")

        if not events:
            raise ParseError("Header field 'events' must be present", path)
        if cmd is None:
            raise ParseError("Header field 'cmd' must be present", path)

        tree = CostTree(CachegrindMetric)
        fl: Optional[str] = None
        fn: Optional[int] = None

        for number, raw in enumerate(lines[body_start:], start=body_start + 1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("summary:"):
                continue
            if line.startswith("fl="):
                fl = line[3:].strip()
                fn = None
                continue
            if line.startswith("fn="):
                fn = tree.get_or_insert(self._function_id(line[3:].strip(), fl))
                continue
            if not line[0].isdigit():
                raise ParseError(f"Malformed line: '{line}'", path, number)

            fields = line.split()
            counts = fields[1:]
            if len(counts) > len(events):
                raise ParseError(
                    f"Found {len(counts)} costs but only {len(events)} events are declared", path, number
                )
            costs = CostMap(CachegrindMetric)
            try:
                line_number = int(fields[0])
                for i, kind in enumerate(events):
                    costs[kind] = int(counts[i]) if i < len(counts) else 0
            except ValueError as e:
                raise ParseError(f"Invalid count line: '{line}'", path, number) from e

            if fn is None:
                fn = tree.get_or_insert(self._function_id(UNKNOWN, fl))
            tree.add_self_cost(fn, costs, (line_number,))

        tree.finalize()
        total = CostMap.zeros(CachegrindMetric, events)
        total.add(tree.total())

        return UnitProfile(
            unit=unit if unit is not None else UnitId(),
            tool=ToolKind.CACHEGRIND,
            path=path,
            costs=total,
            trees=[tree],
            properties={"cmd": cmd},
            details=desc,
        )

    def _function_id(self, func: str, file: Optional[str]) -> FunctionId:
        return FunctionId(func=func, file=normalize_source_path(file, self.project_root) if file else None)


def parse_cachegrind_file(
    path: Union[str, Path], unit: Optional[UnitId] = None, project_root: Optional[Union[str, Path]] = None
) -> UnitProfile:
    return CachegrindParser(project_root).parse_file(path, unit)
