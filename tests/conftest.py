"""
DeployKit — Test Configuration (conftest.py)
=============================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all
       tests. Nothing here needs Docker or a running PostgreSQL: processes
       are replaced by scripted runners and time by a fake clock.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── parameter_env:  process environment holding a complete parameter set
    ├── empty_env:      process environment with every parameter removed
    ├── parameters:     ParameterSet loaded from parameter_env
    ├── topology:       the declared three-service topology
    ├── cargo_context:  a minimal cargo project used as a build context
    ├── fake_clock:     monotonic clock whose sleep() advances time instantly
    └── scripted_runner: CommandRunner returning queued CommandResults
"""

import os
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from deploykit.config import PARAMETER_NAMES, load_parameters
from deploykit.services.process import CommandResult
from deploykit.services.topology_service import declare_topology


# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Keep the tool quiet while tests run
os.environ["DEPLOYKIT_LOG_LEVEL"] = "WARNING"

PARAMETERS = {
    "DB_CONTAINER_NAME": "orders-db",
    "TEST_DB_CONTAINER_NAME": "orders-test-db",
    "APP_CONTAINER_NAME": "orders-app",
    "PORT": "9090",
    "DB_NAME": "orders",
    "DB_USERNAME": "svc",
    "DB_PASSWORD": "secret",
}


# ══════════════════════════════════════════════════════════════════════════
# Parameter Set Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def empty_env(monkeypatch, tmp_path):
    """
    No parameter in the environment and no `.env` file in the working
    directory; tests add exactly what they need.
    """
    monkeypatch.chdir(tmp_path)
    for name in PARAMETER_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def parameter_env(empty_env):
    for name, value in PARAMETERS.items():
        empty_env.setenv(name, value)
    return dict(PARAMETERS)


@pytest.fixture
def parameters(parameter_env):
    return load_parameters()


@pytest.fixture
def topology():
    return declare_topology(data_root="./data")


# ══════════════════════════════════════════════════════════════════════════
# Build Fixtures
# ══════════════════════════════════════════════════════════════════════════

def make_cargo_project(root: Path, name: str = "app") -> Path:
    """Write a minimal cargo project (manifest, lock file, one source)."""
    (root / "src").mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(
        f'[package]\nname = "{name}"\nversion = "0.1.0"\nedition = "2021"\n\n'
        '[dependencies]\nserde = "1"\n'
    )
    (root / "Cargo.lock").write_text(
        'version = 3\n\n[[package]]\nname = "serde"\nversion = "1.0.190"\n'
    )
    (root / "src" / "main.rs").write_text('fn main() {\n    println!("hello");\n}\n')
    return root


@pytest.fixture
def cargo_context(tmp_path):
    return make_cargo_project(tmp_path / "ctx")


@pytest.fixture
def cargo_project():
    """Factory for additional build contexts: `cargo_project(path)`."""
    return make_cargo_project


# ══════════════════════════════════════════════════════════════════════════
# Process / Time Fixtures
# ══════════════════════════════════════════════════════════════════════════

class FakeClock:
    """Monotonic clock for probe tests; `sleep` advances it without waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedRunner:
    """
    CommandRunner stand-in that returns queued results in order.

    The last result repeats once the queue is exhausted. Every call's argv
    and timeout are recorded.
    """

    def __init__(self, *results: CommandResult):
        self.results = list(results) or [CommandResult(returncode=0, output="")]
        self.calls: List[Sequence[str]] = []
        self.timeouts: List[Optional[float]] = []

    async def __call__(self, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        self.calls.append(list(argv))
        self.timeouts.append(timeout)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def scripted_runner():
    """Factory: `scripted_runner(CommandResult(...), ...)`."""
    return ScriptedRunner
