"""Output file naming convention and source path normalization.

Every output file of a profiling run belongs to exactly one collection unit,
identified by process id, thread id and part index. The unit is encoded in the
file name, never read from the content::

    <tool>.<name>[.<pid>][.t<tid>][.p<part>][.bb|.pc].(out|log)[.old|.base@<baseline>]

For example ``callgrind.bench_fib.1234.t2.p1.out`` is part 1 of thread 2 of
process 1234, and ``callgrind.bench_fib.out.base@main`` is the same benchmark
saved under the baseline name ``main``. Only ``.out`` files carry costs,
``.log`` files are the tool's log output.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple, Union

from callgrind_harness.errors import ConfigError
from callgrind_harness.metrics import ToolKind

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "UnitId",
    "OutputFile",
    "SUFFIX_RE",
    "PREVIOUS",
    "validate_baseline_name",
    "parse_output_filename",
    "discover_output_files",
    "normalize_source_path",
]

SUFFIX_RE = re.compile(
    r"^(?:[.](?P<pid>[0-9]+))?"
    r"(?:[.]t(?P<tid>[0-9]+))?"
    r"(?:[.]p(?P<part>[0-9]+))?"
    r"(?:[.](?P<bbv>bb|pc))?"
    r"(?:[.](?P<type>out|log))"
    r"(?:[.](?P<base>old|base@[^.]+))?$"
)

BASELINE_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Baseline name of the implicit "previous run".
PREVIOUS = "old"

UNKNOWN = "???"


@dataclass(frozen=True)
class UnitId:
    """One collection unit: (process id, thread id, part index).

    Any component may be missing when the tool was not asked to split its output
    that way. Missing components sort before present ones.
    """

    pid: Optional[int] = None
    thread: Optional[int] = None
    part: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        return (
            -1 if self.pid is None else self.pid,
            -1 if self.thread is None else self.thread,
            -1 if self.part is None else self.part,
        )

    def __str__(self) -> str:
        parts = []
        if self.pid is not None:
            parts.append(f"pid: {self.pid}")
        if self.thread is not None:
            parts.append(f"thread: {self.thread}")
        if self.part is not None:
            parts.append(f"part: {self.part}")
        return " ".join(parts) if parts else "total"

    def to_dict(self) -> dict:
        return {"pid": self.pid, "thread": self.thread, "part": self.part}


@dataclass(frozen=True)
class OutputFile:
    """A profiler output file with the information decoded from its name.

    Attributes:
        path (Path): Location of the file.
        tool (ToolKind): The tool which wrote it.
        name (str): The benchmark part of the file name.
        unit (UnitId): The collection unit.
        kind (str): ``"out"`` or ``"log"``.
        baseline (Optional[str]): ``None`` for the current run, ``"old"`` for the
            previous run, otherwise the baseline name.
        bbv (Optional[str]): ``"bb"`` or ``"pc"`` for basic block vector files.
    """

    path: Path
    tool: ToolKind
    name: str
    unit: UnitId
    kind: str
    baseline: Optional[str] = None
    bbv: Optional[str] = None


def validate_baseline_name(name: str) -> str:
    """Return ``name`` if it is a valid baseline name.

    Raises:
        ConfigError: If the name contains anything but ASCII letters, digits and ``_``.
    """
    if not BASELINE_NAME_RE.match(name):
        raise ConfigError(
            f"Invalid baseline name '{name}': Only ASCII letters, digits and '_' are allowed"
        )
    return name


def _decode(path: Path, tool: ToolKind, name: str, match: "re.Match[str]") -> OutputFile:
    def _int(value: Optional[str]) -> Optional[int]:
        return int(value) if value is not None else None

    base = match.group("base")
    if base is not None and base.startswith("base@"):
        base = base[len("base@"):]
    return OutputFile(
        path=path,
        tool=tool,
        name=name,
        unit=UnitId(_int(match.group("pid")), _int(match.group("tid")), _int(match.group("part"))),
        kind=match.group("type"),
        baseline=base,
        bbv=match.group("bbv"),
    )


def parse_output_filename(
    path: Union[str, Path], tool: Optional[ToolKind] = None, name: Optional[str] = None
) -> Optional[OutputFile]:
    """Decode an output file name.

    If ``name`` is given the file name must be ``<tool>.<name>`` followed by the
    suffix. Otherwise the benchmark name is everything up to the first ``.`` from
    which on the rest is a valid suffix.

    Args:
        path (Union[str, Path]): The output file.
        tool (Optional[ToolKind]): Expected tool. If None, the tool is taken from the
            first component of the file name.
        name (Optional[str]): Expected benchmark name.

    Returns:
        Optional[OutputFile]: The decoded file, or None if the name does not follow
        the convention.
    """
    path = Path(path)
    filename = path.name

    if tool is None:
        prefix, _, _ = filename.partition(".")
        try:
            tool = ToolKind(prefix)
        except ValueError:
            return None

    head = f"{tool.id}."
    if not filename.startswith(head):
        return None
    rest = filename[len(head):]

    if name is not None:
        if not rest.startswith(name):
            return None
        match = SUFFIX_RE.match(rest[len(name):])
        return _decode(path, tool, name, match) if match else None

    for index, char in enumerate(rest):
        if char != "." or index == 0:
            continue
        match = SUFFIX_RE.match(rest[index:])
        if match:
            return _decode(path, tool, rest[:index], match)
    return None


def discover_output_files(
    directory: Union[str, Path],
    tool: ToolKind,
    name: str,
    baseline: Optional[str] = None,
    kind: str = "out",
) -> List[OutputFile]:
    """Find all unit files of one benchmark run in ``directory``.

    Args:
        directory (Union[str, Path]): Directory holding the tool output.
        tool (ToolKind): The tool.
        name (str): The benchmark name as used in the file names.
        baseline (Optional[str]): ``None`` for the current run, ``"old"`` for the
            previous run or a baseline name.
        kind (str): ``"out"`` for the data files, ``"log"`` for the log files.

    Returns:
        List[OutputFile]: The matching files sorted by unit. Basic block vector
        files are not included.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.debug(f"Output directory does not exist: {directory}")
        return []

    found = []
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        output = parse_output_filename(entry, tool, name)
        if output is None or output.bbv is not None:
            continue
        if output.kind == kind and output.baseline == baseline:
            found.append(output)

    found.sort(key=lambda f: f.unit.sort_key)
    return found


def normalize_source_path(source: str, project_root: Optional[Union[str, Path]] = None) -> Optional[str]:
    """Normalize a source file path as found in callgrind output.

    * ``???`` (unknown) becomes None.
    * Paths below ``project_root`` become relative to it.
    * ``/rustc/<commit hash>/...`` keeps only the first 8 characters of the hash.
    * Everything else is returned as is.

    Examples:
        >>> normalize_source_path("/home/me/project/src/lib.rs", "/home/me/project")
        'src/lib.rs'
        >>> normalize_source_path("/rustc/7737e0b5c4103216d6fd8cf941b7ab9bdbaace7c//library/std/src/rt.rs")
        '/rustc/7737e0b5/library/std/src/rt.rs'
    """
    if source == UNKNOWN or not source:
        return None

    path = PurePosixPath(source)
    if project_root is not None:
        try:
            return str(path.relative_to(PurePosixPath(str(project_root))))
        except ValueError:
            pass

    if path.is_absolute():
        parts = path.parts
        if len(parts) > 1 and parts[1] == "rustc":
            shortened = ["/", "rustc"]
            if len(parts) > 2:
                shortened.append(parts[2][:8])
            shortened.extend(parts[3:])
            return str(PurePosixPath(*shortened))
    return str(path)
