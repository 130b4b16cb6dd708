"""Pytest configuration shared by the vpsctl test suite."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_vpsctl_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's ``VPSCTL_*`` variables out of config and secret lookups."""
    for key in list(os.environ):
        if key.startswith("VPSCTL_"):
            monkeypatch.delenv(key, raising=False)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip lock-contention tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)
