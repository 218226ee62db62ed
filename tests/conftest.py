"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from diffscout.ai.orchestration.cancellation import CancellationToken
from diffscout.ai.orchestration.tools.registry import ToolRegistry
from diffscout.ai.orchestration.tools.types import ExecutionContext

from tests.helpers import EchoTool


@pytest.fixture
def token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def context(token: CancellationToken) -> ExecutionContext:
    return ExecutionContext(cancellation=token)


@pytest.fixture
def echo_tool() -> EchoTool:
    return EchoTool()


@pytest.fixture
def registry(echo_tool: EchoTool) -> ToolRegistry:
    return ToolRegistry([echo_tool])


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Keep settings and log files out of the real home directory."""
    monkeypatch.setenv("DIFFSCOUT_LOG_DIR", str(tmp_path / "logs"))
    for name in list(os.environ):
        if name.startswith("DIFFSCOUT_") and name != "DIFFSCOUT_LOG_DIR":
            monkeypatch.delenv(name, raising=False)
