"""Error taxonomy for the harness.

Parse and configuration problems are exceptions. A regression is not: it is a
normal result value (see :class:`callgrind_harness.compare.Violation`) which the
caller turns into a failing exit status.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

__all__ = ["HarnessError", "ParseError", "ConfigError", "BaselineError"]


class HarnessError(Exception):
    """Base class for all errors raised by this package."""


class ParseError(HarnessError):
    """A profiler output file is malformed, unsupported or unreadable.

    Attributes:
        path (Optional[Path]): The offending file, if known.
        line_number (Optional[int]): 1-based line number, if the error is tied to a line.
        message (str): What went wrong.
    """

    def __init__(
        self,
        message: str,
        path: Optional[Union[str, Path]] = None,
        line_number: Optional[int] = None,
    ) -> None:
        self.message = message
        self.path = Path(path) if path is not None else None
        self.line_number = line_number
        super().__init__(str(self))

    def __str__(self) -> str:
        location = ""
        if self.path is not None:
            location = str(self.path)
            if self.line_number is not None:
                location += f":{self.line_number}"
            location += ": "
        return f"{location}{self.message}"


class ConfigError(HarnessError, ValueError):
    """Invalid configuration, e.g. an unknown metric name in a regression limit."""


class BaselineError(HarnessError):
    """An explicitly requested baseline does not exist or cannot be read."""

    def __init__(self, message: str, identity: Optional[str] = None, name: Optional[str] = None) -> None:
        self.identity = identity
        self.name = name
        super().__init__(message)
