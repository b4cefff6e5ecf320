"""Configuration management for callgrind-harness.

This module loads the harness settings from defaults, config files, environment
variables and CLI arguments, and returns them as a :class:`Config` dataclass,
the single source of truth for one run.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Config Files (the first one found is used):
    * ``callgrind-harness.ini`` in the current directory.
    * ``$XDG_CONFIG_HOME/callgrind-harness/config.ini`` (Linux/macOS),
      ``%APPDATA%\\callgrind-harness\\config.ini`` (Windows) or
      ``~/.config/callgrind-harness/config.ini``.
    * The ``[tool.callgrind-harness]`` table of ``pyproject.toml`` in the current
      directory.

INI files use a ``[callgrind-harness]`` section.

Supported Environment Variables:
    Every key can be set as ``CALLGRIND_HARNESS_<KEY>``, for example
    ``CALLGRIND_HARNESS_CALLGRIND_LIMITS="@all=10%,ir=5%"`` or
    ``CALLGRIND_HARNESS_BASELINE_DIR=target/harness``.

Regression limits (``callgrind_limits``, ``cachegrind_limits``, ``dhat_limits``)
are parsed here, so an unknown metric name is reported before any benchmark runs.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli

from callgrind_harness.baseline import validate_name
from callgrind_harness.compare import RegressionConfig
from callgrind_harness.errors import ConfigError
from callgrind_harness.metrics import ToolKind

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "DEFAULT_TOLERANCE", "PARSE_ERROR_POLICIES", "load_config"]

APP_NAME = "callgrind-harness"
ENV_PREFIX = "CALLGRIND_HARNESS_"

PARSE_ERROR_POLICIES = ("abort", "skip")

# Below the precision of the percentages in the report.
DEFAULT_TOLERANCE = 0.000009999999999999999

_BOOL_KEYS = ("check_regressions", "regression_fail_fast", "show_intermediate", "show_all")
_LIMIT_KEYS = {
    ToolKind.CALLGRIND: "callgrind_limits",
    ToolKind.CACHEGRIND: "cachegrind_limits",
    ToolKind.DHAT: "dhat_limits",
}


@dataclass
class Config:
    """Define the harness configuration.

    Attributes:
        baseline_dir (str): Directory of the baseline store.
            Defaults to ``<project root>/target/callgrind-harness``.
        project_root (str): Source paths below this directory are shown relative
            to it. Defaults to the git root, or the current directory.
        log_file (Optional[str]): Path to a log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "WARNING".
        callgrind_limits (Optional[str]): Regression limits for callgrind.
        cachegrind_limits (Optional[str]): Regression limits for cachegrind.
        dhat_limits (Optional[str]): Regression limits for DHAT.
        check_regressions (bool): Check the default limits of tools without
            configured limits. Defaults to False.
        regression_fail_fast (bool): Stop at the first regression. Defaults to False.
        parse_error_policy (str): ``abort`` or ``skip`` a unit whose output cannot
            be parsed. Defaults to "abort".
        sentinel (Optional[str]): Glob of the function flamegraph stacks are cut at.
        flamegraph_metric (Optional[str]): Metric of the flamegraph. Defaults to
            Ir for callgrind.
        show_intermediate (bool): Show the costs of every unit. Defaults to False.
        show_all (bool): Show all recorded metrics instead of the default group.
        tolerance (Optional[float]): Show changes of at most this many percent as
            within the tolerance. Negative values are taken as their absolute value.
            Defaults to None, showing every change.
        baseline (Optional[str]): Compare against this named baseline instead of
            the previous run.
        save_baseline (Optional[str]): Save the run under this baseline name.
        regression (Dict[ToolKind, RegressionConfig]): The parsed limits per tool.
            Tools without an entry are not checked.
    """

    baseline_dir: str
    project_root: str
    log_file: Optional[str] = None
    log_level: str = "WARNING"
    callgrind_limits: Optional[str] = None
    cachegrind_limits: Optional[str] = None
    dhat_limits: Optional[str] = None
    check_regressions: bool = False
    regression_fail_fast: bool = False
    parse_error_policy: str = "abort"
    sentinel: Optional[str] = None
    flamegraph_metric: Optional[str] = None
    show_intermediate: bool = False
    show_all: bool = False
    tolerance: Optional[float] = None
    baseline: Optional[str] = None
    save_baseline: Optional[str] = None
    regression: Dict[ToolKind, RegressionConfig] = field(default_factory=dict)

    def regression_for(self, tool: ToolKind) -> Optional[RegressionConfig]:
        return self.regression.get(tool)


def _find_project_root(start_path: Path) -> Optional[Path]:
    """Find the project root by looking for the .git directory upwards.

    Args:
        start_path (Path): The starting path for the search.

    Returns:
        Optional[Path]: The path to the project root if found, else None.
    """
    try:
        path = start_path.resolve()
        if path.is_file():
            path = path.parent

        for parent in [path] + list(path.parents):
            if (parent / ".git").exists():
                return parent
    except OSError:
        pass
    return None


def _get_config_file_paths() -> List[str]:
    """Return a list of potential INI config file paths in order of priority."""
    paths = [f"{APP_NAME}.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), APP_NAME, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), APP_NAME, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", APP_NAME, "config.ini"))
    return paths


def _read_ini(path: str) -> Dict[str, Any]:
    parser = ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8-sig")
    except (ConfigParserError, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to parse config file {path}: {e}")
        return {}
    if APP_NAME not in parser:
        return {}
    return {key: value for key, value in parser[APP_NAME].items() if value is not None and value != ""}


def _read_pyproject(path: str) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except (tomli.TOMLDecodeError, UnicodeDecodeError, OSError) as e:
        logger.error(f"Failed to parse config file {path}: {e}")
        return {}
    table = data.get("tool", {}).get(APP_NAME, {})
    if not isinstance(table, dict):
        logger.error(f"Ignoring [tool.{APP_NAME}] in {path}: Not a table")
        return {}
    # TOML keys may be written with dashes like most tool tables do.
    return {key.replace("-", "_"): value for key, value in table.items()}


def _load_file_values() -> Dict[str, Any]:
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            return _read_ini(path)

    if os.path.isfile("pyproject.toml"):
        values = _read_pyproject("pyproject.toml")
        if values:
            logger.debug("Loading config from pyproject.toml")
        return values
    return {}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes (e.g., 'baseline_dir', 'sentinel').
            Values of None are ignored so that lower-priority sources take effect.
            Typically obtained via ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ConfigError: If a value is invalid, e.g. an unknown log level, parse error
            policy, metric name or group in a regression limit, or an invalid
            baseline name.

    Examples:
        >>> config = load_config({"callgrind_limits": "ir=5%"})
        >>> config.regression_for(ToolKind.CALLGRIND).limits[0].value
        5.0
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "baseline_dir": None,
        "project_root": None,
        "log_file": None,
        "log_level": "WARNING",
        "callgrind_limits": None,
        "cachegrind_limits": None,
        "dhat_limits": None,
        "check_regressions": False,
        "regression_fail_fast": False,
        "parse_error_policy": "abort",
        "sentinel": None,
        "flamegraph_metric": None,
        "show_intermediate": False,
        "show_all": False,
        "tolerance": None,
        "baseline": None,
        "save_baseline": None,
    }
    config_keys = list(config_values)

    # 2. Config File
    for key, value in _load_file_values().items():
        if key in config_values:
            config_values[key] = value
        else:
            logger.warning(f"Ignoring unknown config key '{key}'")

    # 3. Environment Variables
    for key in config_keys:
        val = os.getenv(f"{ENV_PREFIX}{key.upper()}")
        if val is not None and val != "":
            config_values[key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    for key in _BOOL_KEYS:
        config_values[key] = _to_bool(config_values[key])

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    level = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, level, None), int):
        raise ConfigError(f"Invalid log level: {config_values['log_level']}")
    config_values["log_level"] = level

    policy = str(config_values["parse_error_policy"]).lower()
    if policy not in PARSE_ERROR_POLICIES:
        raise ConfigError(
            f"Invalid parse error policy: '{config_values['parse_error_policy']}' "
            f"(expected one of {', '.join(PARSE_ERROR_POLICIES)})"
        )
    config_values["parse_error_policy"] = policy

    if config_values["project_root"]:
        config_values["project_root"] = str(Path(os.path.expanduser(str(config_values["project_root"]))).resolve())
    else:
        root = _find_project_root(Path.cwd())
        if root is None:
            logger.debug("No project root found, defaulting project_root to '.'")
            root = Path.cwd()
        config_values["project_root"] = str(root)

    if config_values["baseline_dir"]:
        config_values["baseline_dir"] = os.path.expanduser(str(config_values["baseline_dir"]))
    else:
        config_values["baseline_dir"] = os.path.join(config_values["project_root"], "target", APP_NAME)

    if config_values["log_file"]:
        config_values["log_file"] = os.path.expanduser(str(config_values["log_file"]))

    if config_values["tolerance"] is not None:
        try:
            config_values["tolerance"] = abs(float(config_values["tolerance"]))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid tolerance: '{config_values['tolerance']}'") from e

    for key in ("baseline", "save_baseline"):
        if config_values[key] is not None:
            config_values[key] = validate_name(str(config_values[key]))

    regression: Dict[ToolKind, RegressionConfig] = {}
    for tool, key in _LIMIT_KEYS.items():
        text = config_values[key]
        if text is not None and str(text).strip():
            try:
                regression[tool] = RegressionConfig.from_string(
                    tool, str(text), config_values["regression_fail_fast"]
                )
            except ConfigError as e:
                raise ConfigError(f"Invalid {key}: {e}") from e
        elif config_values["check_regressions"]:
            regression[tool] = RegressionConfig.default(tool, config_values["regression_fail_fast"])

    if config_values["flamegraph_metric"] is not None:
        # Validated against the callgrind metrics, the only tool with call graphs.
        ToolKind.CALLGRIND.metric_type.from_str(str(config_values["flamegraph_metric"]))

    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(regression=regression, **filtered_values)
