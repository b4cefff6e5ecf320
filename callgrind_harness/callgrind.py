"""Parser for the callgrind output format.

A callgrind output file starts with a header::

    # callgrind format
    version: 1
    creator: callgrind-3.22.0
    pid: 1234
    cmd: ./target/release/bench
    part: 1
    positions: line
    events: Ir Dr Dw I1mr D1mr D1mw ILmr DLmr DLmw

The ``events`` line is mandatory and ends the header. The body consists of
context lines (``ob=``, ``fl=``, ``fn=``, ...) followed by cost lines. A cost
line holds one field per position type and then one integer per declared event.
Trailing zero costs may be omitted. A cost line directly after ``calls=`` is
the inclusive cost of that call instead of a self cost of the current function.

Names may be compressed: ``fn=(3) main`` defines id 3 for ``main`` and a later
``fn=(3)`` refers to it. A reference to an id that was never defined cannot be
decoded and is rejected as a :class:`ParseError`.

The ``summary:`` and ``totals:`` lines are not trusted. The total of a part is
always reconstructed as the sum of all self costs in that part. With
``--combine-dumps=yes`` a file holds several parts, each starting with a new
header block; every part gets its own :class:`CostTree`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from callgrind_harness.errors import ConfigError, ParseError
from callgrind_harness.metrics import CostMap, EventKind, ToolKind
from callgrind_harness.model import CostTree, FunctionId, UnitProfile
from callgrind_harness.paths import UNKNOWN, UnitId, normalize_source_path, parse_output_filename

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["CallgrindHeader", "CallgrindParser", "parse_callgrind_file"]

HEADER_KEYS = (
    "version",
    "creator",
    "pid",
    "thread",
    "part",
    "cmd",
    "desc",
    "positions",
    "events",
    "event",
)

HEADER_RE = re.compile(r"^(?P<key>" + "|".join(HEADER_KEYS) + r"):\s*(?P<value>.*)$")
COMPRESSED_RE = re.compile(r"^\((?P<id>[0-9]+)\)(?:\s+(?P<name>.*))?$")
POSITION_RE = re.compile(r"^(?:[+-]?(?:0x[0-9a-fA-F]+|[0-9]+)|\*)$")

POSITION_TYPES = {"line": "line", "instr": "instr", "addr": "instr"}

# Context keys sharing one compression table.
_TABLES = {
    "ob": "ob",
    "cob": "ob",
    "fl": "fl",
    "fi": "fl",
    "fe": "fl",
    "cfi": "fl",
    "cfl": "fl",
    "fn": "fn",
    "cfn": "fn",
}

_IGNORED_KEYS = ("jump", "jcnd", "jfi", "jfn")


def _to_int(value: str) -> int:
    sign = -1 if value.startswith("-") else 1
    digits = value.lstrip("+-")
    if digits.lower().startswith("0x"):
        return sign * int(digits, 16)
    return sign * int(digits)


@dataclass
class CallgrindHeader:
    """The header of one part of a callgrind output file."""

    version: Optional[str] = None
    creator: Optional[str] = None
    pid: Optional[int] = None
    thread: Optional[int] = None
    part: Optional[int] = None
    cmd: Optional[str] = None
    desc: List[str] = field(default_factory=list)
    positions: List[str] = field(default_factory=lambda: ["line"])
    events: List[EventKind] = field(default_factory=list)


class _Context:
    """Mutable position in the body: the current object, file and function."""

    def __init__(self) -> None:
        self.ob: Optional[str] = None
        self.fl: Optional[str] = None
        # File of inlined code set by fi= or fe=, until the next fl= or fn=.
        self.fi: Optional[str] = None
        self.fn: Optional[int] = None
        self.cob: Optional[str] = None
        self.cfi: Optional[str] = None
        self.cfn: Optional[str] = None
        self.calls: Optional[int] = None
        self.positions: List[int] = []

    def reset_call(self) -> None:
        self.cob = None
        self.cfi = None
        self.cfn = None
        self.calls = None


class CallgrindParser:
    """Parse callgrind output files into :class:`UnitProfile` objects.

    Args:
        project_root (Optional[Union[str, Path]]): Source paths below this directory
            are made relative to it in function identities.
    """

    def __init__(self, project_root: Optional[Union[str, Path]] = None) -> None:
        self.project_root = project_root

    def parse_file(self, path: Union[str, Path], unit: Optional[UnitId] = None) -> UnitProfile:
        """Parse one output file.

        Args:
            path (Union[str, Path]): The callgrind output file.
            unit (Optional[UnitId]): The unit of this file. Decoded from the file name
                if not given.

        Returns:
            UnitProfile: Costs summed over all parts and one tree per part.

        Raises:
            ParseError: If the file is unreadable, empty or malformed.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ParseError(f"Unable to read file: {e}", path) from e

        if unit is None:
            decoded = parse_output_filename(path, ToolKind.CALLGRIND)
            unit = decoded.unit if decoded is not None else UnitId()

        return self.parse_text(text, path=path, unit=unit)

    def parse_text(
        self, text: str, path: Optional[Path] = None, unit: Optional[UnitId] = None
    ) -> UnitProfile:
        """Parse the content of a callgrind output file. See :meth:`parse_file`."""
        lines = text.splitlines()
        if not any(line.strip() for line in lines):
            raise ParseError("File is empty", path)

        first = next(line for line in lines if line.strip())
        if "callgrind format" not in first:
            logger.warning(f"{path}: Missing file format specifier. Assuming callgrind format.")

        trees: List[CostTree] = []
        headers: List[CallgrindHeader] = []
        header = CallgrindHeader()
        tree: Optional[CostTree] = None
        ctx = _Context()
        tables: Dict[str, Dict[str, str]] = {"ob": {}, "fl": {}, "fn": {}}
        in_header = True
        reported: Optional[CostMap] = None

        for number, raw in enumerate(lines, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue

            header_match = HEADER_RE.match(line)
            if header_match and not in_header:
                # A header line inside the body starts the next part.
                self._close_part(tree, reported, path)
                trees.append(tree)  # type: ignore[arg-type]
                headers.append(header)
                header = CallgrindHeader(positions=list(header.positions), events=list(header.events))
                tree = None
                ctx = _Context()
                reported = None
                in_header = True

            if in_header:
                if header_match:
                    done = self._parse_header_line(
                        header, header_match.group("key"), header_match.group("value").strip(), path, number
                    )
                    if done:
                        in_header = False
                        tree = CostTree(EventKind)
                    continue
                if ":" in line and "=" not in line and not line[0].isdigit():
                    logger.debug(f"{path}:{number}: Ignoring unknown header line: {line}")
                    continue
                if not header.events:
                    raise ParseError("Header field 'events' must be present", path, number)
                # Later parts may reuse the events of the previous part.
                in_header = False
                tree = CostTree(EventKind)

            if tree is None:
                raise ParseError("Found data before the header", path, number)
            if line.startswith(("summary:", "totals:")):
                reported = self._parse_costs(
                    line.split(":", 1)[1].split(), header.events, path, number
                )
                continue

            if line[0].isdigit() or line[0] in "+-*":
                self._parse_cost_line(line, header, ctx, tree, path, number)
                continue

            key, sep, value = line.partition("=")
            if not sep:
                raise ParseError(f"Malformed line: '{line}'", path, number)
            key = key.strip()
            value = value.strip()

            if key in _TABLES:
                name = self._decompress(tables[_TABLES[key]], value, path, number)
                self._set_context(ctx, tree, key, name)
            elif key == "calls":
                fields = value.split()
                if ctx.cfn is None:
                    raise ParseError("Found 'calls=' without a preceding 'cfn='", path, number)
                try:
                    ctx.calls = int(fields[0])
                except (IndexError, ValueError) as e:
                    raise ParseError(f"Invalid call count: '{value}'", path, number) from e
            elif key in _IGNORED_KEYS:
                continue
            else:
                raise ParseError(f"Malformed line: '{line}'", path, number)

        if not in_header:
            self._close_part(tree, reported, path)
            trees.append(tree)  # type: ignore[arg-type]
            headers.append(header)
        elif not trees:
            raise ParseError("Header field 'events' must be present", path)
        else:
            logger.debug(f"{path}: Ignoring trailing header without cost records")

        costs = CostMap(EventKind)
        for part_tree, part_header in zip(trees, headers):
            part_total = CostMap.zeros(EventKind, part_header.events)
            part_total.add(part_tree.total())
            costs.add(part_total)

        first_header = headers[0]
        properties: Dict[str, str] = {}
        for key in ("version", "creator", "cmd"):
            value = getattr(first_header, key)
            if value is not None:
                properties[key] = value
        for key in ("pid", "thread"):
            value = getattr(first_header, key)
            if value is not None:
                properties[key] = str(value)
        if len(trees) > 1:
            properties["parts"] = str(len(trees))

        return UnitProfile(
            unit=unit if unit is not None else UnitId(),
            tool=ToolKind.CALLGRIND,
            path=path,
            costs=costs,
            trees=trees,
            properties=properties,
            details=list(first_header.desc),
        )

    def _parse_header_line(
        self, header: CallgrindHeader, key: str, value: str, path: Optional[Path], number: int
    ) -> bool:
        """Apply one header line. Returns True if this was the final ``events`` line."""
        if key == "version":
            if value != "1":
                raise ParseError(f"Version mismatch: Requires callgrind format version '1' but found '{value}'", path, number)
            header.version = value
        elif key == "creator":
            header.creator = value
        elif key in ("pid", "thread", "part"):
            try:
                setattr(header, key, int(value))
            except ValueError as e:
                raise ParseError(f"Invalid {key}: '{value}'", path, number) from e
        elif key == "cmd":
            header.cmd = value
        elif key == "desc":
            if not value.startswith("Option:"):
                header.desc.append(value)
        elif key == "positions":
            positions = []
            for item in value.split():
                if item not in POSITION_TYPES:
                    raise ParseError(f"Unknown position type: '{item}'", path, number)
                positions.append(POSITION_TYPES[item])
            if not positions:
                raise ParseError("Empty 'positions' header line", path, number)
            header.positions = positions
        elif key == "events":
            events = []
            for name in value.split():
                try:
                    kind = EventKind.from_str(name)
                except ConfigError as e:
                    raise ParseError(f"Unknown event: '{name}'", path, number) from e
                if kind.is_derived:
                    raise ParseError(f"Unknown event: '{name}'", path, number)
                events.append(kind)
            if not events:
                raise ParseError("Header field 'events' is empty", path, number)
            header.events = events
            return True
        return False

    def _decompress(self, table: Dict[str, str], value: str, path: Optional[Path], number: int) -> str:
        match = COMPRESSED_RE.match(value)
        if match is None:
            return value
        cid, name = match.group("id"), match.group("name")
        if name is not None:
            table[cid] = name
            return name
        try:
            return table[cid]
        except KeyError:
            raise ParseError(
                f"Unable to decode compressed name '({cid})': No definition found", path, number
            ) from None

    def _set_context(self, ctx: _Context, tree: CostTree, key: str, name: str) -> None:
        # fi= and fe= do not change the function, only the default file of its callees.
        if key == "ob":
            ctx.ob = name
        elif key == "fl":
            ctx.fl = name
            ctx.fi = None
        elif key in ("fi", "fe"):
            ctx.fi = name
        elif key == "fn":
            ctx.fn = tree.get_or_insert(self._function_id(name, ctx.fl, ctx.ob))
            ctx.fi = None
        elif key == "cob":
            ctx.cob = name
        elif key in ("cfi", "cfl"):
            ctx.cfi = name
        elif key == "cfn":
            ctx.cfn = name

    def _function_id(self, func: str, file: Optional[str], obj: Optional[str]) -> FunctionId:
        return FunctionId(
            func=func,
            file=normalize_source_path(file, self.project_root) if file else None,
            obj=normalize_source_path(obj, self.project_root) if obj else None,
        )

    def _parse_positions(
        self, fields: List[str], ctx: _Context, path: Optional[Path], number: int
    ) -> Tuple[int, ...]:
        if len(ctx.positions) != len(fields):
            ctx.positions = [0] * len(fields)
        result = []
        for i, item in enumerate(fields):
            if not POSITION_RE.match(item):
                raise ParseError(f"Invalid position: '{item}'", path, number)
            if item == "*":
                value = ctx.positions[i]
            elif item[0] in "+-":
                value = ctx.positions[i] + _to_int(item)
            else:
                value = _to_int(item)
            ctx.positions[i] = value
            result.append(value)
        return tuple(result)

    def _parse_costs(
        self, fields: List[str], events: List[EventKind], path: Optional[Path], number: int
    ) -> CostMap:
        if len(fields) > len(events):
            raise ParseError(
                f"Found {len(fields)} costs but only {len(events)} events are declared", path, number
            )
        costs = CostMap(EventKind)
        for i, kind in enumerate(events):
            if i < len(fields):
                try:
                    costs[kind] = int(fields[i])
                except ValueError as e:
                    raise ParseError(f"Invalid cost: '{fields[i]}'", path, number) from e
            else:
                costs[kind] = 0
        return costs

    def _parse_cost_line(
        self,
        line: str,
        header: CallgrindHeader,
        ctx: _Context,
        tree: CostTree,
        path: Optional[Path],
        number: int,
    ) -> None:
        fields = line.split()
        npos = len(header.positions)
        if len(fields) < npos:
            raise ParseError(f"Expected {npos} position fields: '{line}'", path, number)
        position = self._parse_positions(fields[:npos], ctx, path, number)
        costs = self._parse_costs(fields[npos:], header.events, path, number)

        if ctx.fn is None:
            logger.debug(f"{path}:{number}: Cost line without 'fn=', using an unknown function")
            ctx.fn = tree.get_or_insert(self._function_id(UNKNOWN, ctx.fl, ctx.ob))

        if ctx.calls is not None:
            callee = tree.get_or_insert(
                self._function_id(
                    ctx.cfn,  # type: ignore[arg-type]
                    ctx.cfi or ctx.fi or ctx.fl,
                    ctx.cob if ctx.cob is not None else ctx.ob,
                )
            )
            tree.add_call(ctx.fn, callee, ctx.calls, costs)
            ctx.reset_call()
        else:
            tree.add_self_cost(ctx.fn, costs, position)

    def _close_part(self, tree: Optional[CostTree], reported: Optional[CostMap], path: Optional[Path]) -> None:
        if tree is None:
            return
        tree.finalize()
        if reported is not None:
            total = tree.total()
            for kind, value in reported.items():
                if total.get(kind, 0) != value:
                    logger.debug(
                        f"{path}: Reported total of {kind.value} ({value}) differs from the "
                        f"reconstructed total ({total.get(kind, 0)}). Using the reconstructed total."
                    )


def parse_callgrind_file(
    path: Union[str, Path], unit: Optional[UnitId] = None, project_root: Optional[Union[str, Path]] = None
) -> UnitProfile:
    """Shortcut for ``CallgrindParser(project_root).parse_file(path, unit)``."""
    return CallgrindParser(project_root).parse_file(path, unit)
