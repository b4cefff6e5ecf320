"""Persistent storage of benchmark totals.

A baseline is the total (and optionally the per-unit costs) of one benchmark
for one tool, saved under a name. The implicit name ``old`` holds the previous
run. The store lays them out as::

    <root>/<bench file>/<group>/<function>[.<id>]/<tool>.old.json
    <root>/<bench file>/<group>/<function>[.<id>]/<tool>.base@<name>.json

Saving replaces an existing baseline of the same name atomically: the data is
written to a temporary file in the same directory and renamed over the target,
so a concurrent reader sees either the old or the new baseline, never a partial
one. Two writers of the same baseline are not coordinated; the last rename wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, Union

try:
    import orjson
except ImportError:
    orjson = None  # type: ignore

from callgrind_harness.errors import BaselineError, ConfigError
from callgrind_harness.metrics import CostMap, ToolKind
from callgrind_harness.model import BenchmarkIdentity
from callgrind_harness.paths import PREVIOUS, UnitId, validate_baseline_name

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["BASELINE_SCHEMA", "Baseline", "BaselineStore", "validate_name"]

BASELINE_SCHEMA = 1

if orjson:
    JSON_DECODE_EXCEPTIONS: Tuple[Type[Exception], ...] = (json.JSONDecodeError, orjson.JSONDecodeError)

    def _dumps(data: Any) -> bytes:
        return orjson.dumps(data, option=orjson.OPT_INDENT_2)

    _loads = orjson.loads
else:
    JSON_DECODE_EXCEPTIONS = (json.JSONDecodeError,)

    def _dumps(data: Any) -> bytes:
        return json.dumps(data, indent=2).encode("utf-8")

    _loads = json.loads


@dataclass
class Baseline:
    """A stored total.

    Attributes:
        name (str): Baseline name, ``"old"`` for the previous run.
        tool (ToolKind): The tool the costs were measured with.
        identity (BenchmarkIdentity): The benchmark.
        total (CostMap): The aggregated costs.
        units (Dict[UnitId, CostMap]): Optional per-unit costs.
        created (str): ISO 8601 UTC timestamp of the save.
    """

    name: str
    tool: ToolKind
    identity: BenchmarkIdentity
    total: CostMap
    units: Dict[UnitId, CostMap] = field(default_factory=dict)
    created: str = ""

    @property
    def is_previous(self) -> bool:
        return self.name == PREVIOUS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": BASELINE_SCHEMA,
            "name": self.name,
            "tool": self.tool.id,
            "benchmark": self.identity.to_dict(),
            "created": self.created,
            "total": self.total.to_dict(),
            "units": [
                {"unit": unit.to_dict(), "costs": costs.to_dict()} for unit, costs in self.units.items()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Baseline":
        """Rebuild a baseline from :meth:`to_dict` output.

        Raises:
            KeyError, TypeError, ValueError: If ``data`` does not have the expected layout.
        """
        if data.get("schema") != BASELINE_SCHEMA:
            raise ValueError(f"Unsupported baseline schema: {data.get('schema')}")
        tool = ToolKind(data["tool"])
        kind_type = tool.metric_type
        units = {}
        for entry in data.get("units", []):
            unit = UnitId(**entry["unit"])
            units[unit] = CostMap.from_dict(kind_type, entry["costs"])
        return cls(
            name=data["name"],
            tool=tool,
            identity=BenchmarkIdentity.from_dict(data["benchmark"]),
            total=CostMap.from_dict(kind_type, data["total"]),
            units=units,
            created=data.get("created", ""),
        )


class BaselineStore:
    """Load, save and list baselines below a root directory.

    Args:
        root (Union[str, Path]): The directory holding all baselines.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def directory(self, identity: BenchmarkIdentity) -> Path:
        return self.root.joinpath(*identity.storage_parts())

    def path(self, identity: BenchmarkIdentity, tool: ToolKind, name: str = PREVIOUS) -> Path:
        if name == PREVIOUS:
            filename = f"{tool.id}.{PREVIOUS}.json"
        else:
            validate_baseline_name(name)
            filename = f"{tool.id}.base@{name}.json"
        return self.directory(identity) / filename

    def exists(self, identity: BenchmarkIdentity, tool: ToolKind, name: str = PREVIOUS) -> bool:
        return self.path(identity, tool, name).is_file()

    def save(
        self,
        identity: BenchmarkIdentity,
        tool: ToolKind,
        total: CostMap,
        name: str = PREVIOUS,
        units: Optional[Dict[UnitId, CostMap]] = None,
    ) -> Baseline:
        """Save ``total`` under ``name``, replacing any baseline of that name.

        Raises:
            ConfigError: If ``name`` is not a valid baseline name.
            BaselineError: If the baseline cannot be written.
        """
        target = self.path(identity, tool, name)
        baseline = Baseline(
            name=name,
            tool=tool,
            identity=identity,
            total=total,
            units=dict(units or {}),
            created=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        payload = _dumps(baseline.to_dict())

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, target)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise BaselineError(
                f"Unable to save baseline '{name}' for {identity}: {e}", str(identity), name
            ) from e

        logger.info(f"Saved baseline '{name}' for {identity} ({tool.id})")
        return baseline

    def load(
        self,
        identity: BenchmarkIdentity,
        tool: ToolKind,
        name: str = PREVIOUS,
        required: bool = False,
    ) -> Optional[Baseline]:
        """Load the baseline ``name``.

        Args:
            identity (BenchmarkIdentity): The benchmark.
            tool (ToolKind): The tool.
            name (str): Baseline name. Defaults to the previous run.
            required (bool): If True a missing baseline is an error, otherwise None
                is returned.

        Raises:
            BaselineError: If a required baseline is missing, or a baseline exists but
                cannot be read.
        """
        path = self.path(identity, tool, name)
        if not path.is_file():
            if required:
                raise BaselineError(
                    f"Baseline '{name}' does not exist for {identity} ({tool.id})", str(identity), name
                )
            logger.debug(f"No baseline '{name}' found at {path}")
            return None

        try:
            baseline = Baseline.from_dict(_loads(path.read_bytes()))
        except OSError as e:
            raise BaselineError(f"Unable to read baseline '{name}' at {path}: {e}", str(identity), name) from e
        except JSON_DECODE_EXCEPTIONS as e:
            raise BaselineError(f"Corrupt baseline '{name}' at {path}: {e}", str(identity), name) from e
        except (KeyError, TypeError, ValueError) as e:
            raise BaselineError(f"Invalid baseline '{name}' at {path}: {e}", str(identity), name) from e

        logger.info(f"Loaded baseline '{name}' for {identity} ({tool.id})")
        return baseline

    def list(self, identity: BenchmarkIdentity, tool: ToolKind) -> List[str]:
        """Return the names of all stored baselines of a benchmark, previous run included."""
        directory = self.directory(identity)
        if not directory.is_dir():
            return []
        names = []
        prefix = f"{tool.id}."
        for entry in sorted(directory.iterdir()):
            filename = entry.name
            if not (entry.is_file() and filename.startswith(prefix) and filename.endswith(".json")):
                continue
            middle = filename[len(prefix):-len(".json")]
            if middle == PREVIOUS:
                names.append(PREVIOUS)
            elif middle.startswith("base@"):
                names.append(middle[len("base@"):])
        return names

    def delete(self, identity: BenchmarkIdentity, tool: ToolKind, name: str = PREVIOUS) -> bool:
        path = self.path(identity, tool, name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Deleted baseline '{name}' for {identity} ({tool.id})")
        return True


def validate_name(name: Optional[str]) -> Optional[str]:
    """Validate an optional user supplied baseline name.

    Raises:
        ConfigError: If the name is invalid or collides with the previous-run name.
    """
    if name is None:
        return None
    if name == PREVIOUS:
        raise ConfigError(f"Baseline name '{PREVIOUS}' is reserved for the previous run")
    return validate_baseline_name(name)
