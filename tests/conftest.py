"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from docchat.ai.tools.registry import ToolRegistry, ToolSpec


@pytest.fixture(autouse=True)
def _clear_docchat_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("DOCCHAT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def echo_registry() -> ToolRegistry:
    """Registry with an ``echo`` tool that returns its ``text`` argument."""

    registry = ToolRegistry()
    registry.register_function(
        ToolSpec(
            name="echo",
            description="Echo the given text",
            parameters={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        ),
        lambda args: {"echo": args["text"]},
    )
    return registry
