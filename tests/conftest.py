from collections.abc import Iterator
import os
from pathlib import Path
import sys

import pytest

from clirun_mcp.config import ClirunConfig
from clirun_mcp.policy import MappingPolicySource
from clirun_mcp.runner import ProcessRunner


@pytest.fixture(autouse=True)
def hermetic_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """
    Autouse: each test runs in its own tmp cwd with no CLIRUN_* variables
    leaking in from the developer's shell.
    """
    for key in list(os.environ):
        if key.startswith("CLIRUN_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def python_cmd() -> str:
    """Interpreter used as a portable child process."""
    return sys.executable


@pytest.fixture
def runner() -> ProcessRunner:
    return ProcessRunner(default_timeout=10.0)


@pytest.fixture
def config() -> ClirunConfig:
    return ClirunConfig()


@pytest.fixture
def empty_policy() -> Iterator[MappingPolicySource]:
    yield MappingPolicySource({})
