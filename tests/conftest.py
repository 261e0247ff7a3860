"""Shared fixtures for Jenn tests."""

import pytest


@pytest.fixture(autouse=True)
def _no_sops(monkeypatch):
    """Ensure tests never try to invoke SOPS."""
    monkeypatch.setenv("JENN_USE_SOPS", "false")
