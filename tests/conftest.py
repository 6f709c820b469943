"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from parley.services.settings import Settings


@pytest.fixture(autouse=True)
def _clear_parley_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer ``PARLEY_*`` variables from leaking into tests."""
    for name in list(os.environ):
        if name.startswith("PARLEY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="sk-test", model="test-model", max_iterations=8)
