from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch

import pytest

from callgrind_harness.baseline import BaselineStore
from callgrind_harness.config import Config
from callgrind_harness.model import BenchmarkIdentity

# main -> compute -> leaf with the cache simulation events. The totals line is
# correct; tests which need a lying summary write their own file.
CALLGRIND_OUTPUT = """\
# callgrind format
version: 1
creator: callgrind-3.22.0
pid: 1234
cmd: ./target/release/bench_fib
part: 1

desc: I1 cache: 32768 B, 64 B, 8-way associative
desc: Option: --cache-sim=yes

positions: line
events: Ir Dr Dw I1mr D1mr D1mw ILmr DLmr DLmw

ob=(1) /usr/lib/libbench.so
fl=(1) /home/dev/project/src/main.rs
fn=(1) main
1 10 2 1 1 0 0 1 0 0
cfn=(2) compute
calls=2 5
5 100 20 10 3 2 1 1 1 0
fn=(2)
5 60 10 5 1 1 0 0 0 0
cfn=(3) leaf
calls=1 7
7 40 10 5 2 1 1 0 1 0
fn=(3)
7 40 10 5 2 1 1 0 1 0

totals: 110 22 11 4 2 1 1 1 0
"""

CACHEGRIND_OUTPUT = """\
desc: I1 cache:         32768 B, 64 B, 8-way associative
cmd: ./target/release/bench_fib
events: Ir I1mr ILmr Dr D1mr DLmr Dw D1mw DLmw
fl=src/main.rs
fn=main
12 30 1 0 6 0 0 3 0 0
13 20 0 0 4 1 1 2 1 0
fn=helper
20 50 1 1 10 1 0 5 0 0
summary: 1 1 1 1 1 1 1 1 1
"""


@pytest.fixture
def project_root() -> str:
    """The project root the sample callgrind output was recorded in."""
    return "/home/dev/project"


@pytest.fixture
def write_output(tmp_path: Path) -> Callable[[str, str], Path]:
    """Fixture returning a helper that writes a file below tmp_path."""

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def callgrind_file(write_output: Callable[[str, str], Path]) -> Path:
    """A single unit callgrind output file of the benchmark ``bench_fib``."""
    return write_output("out/callgrind.bench_fib.1234.out", CALLGRIND_OUTPUT)


@pytest.fixture
def identity() -> BenchmarkIdentity:
    return BenchmarkIdentity(bench_file="bench_fib", group="my_group", function="bench_fib", id="short", details="10")


@pytest.fixture
def store(tmp_path: Path) -> BaselineStore:
    """A baseline store in a temporary directory."""
    return BaselineStore(tmp_path / "baselines")


@pytest.fixture
def config(tmp_path: Path, project_root: str) -> Config:
    """A configuration as load_config would return it without any sources."""
    return Config(baseline_dir=str(tmp_path / "baselines"), project_root=project_root)


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Run in an empty directory with no harness environment and no user config files."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    env = {"XDG_CONFIG_HOME": str(tmp_path / "xdg"), "HOME": str(tmp_path / "home")}
    with patch.dict(os.environ, env, clear=True):
        yield workdir


@pytest.fixture
def callgrind_text() -> str:
    return CALLGRIND_OUTPUT


@pytest.fixture
def cachegrind_text() -> str:
    return CACHEGRIND_OUTPUT
