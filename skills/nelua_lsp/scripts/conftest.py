"""Standalone test configuration for the Nelua LSP scripts.

When tests run via __main__ (PEP-723 entry point), the server module is
imported before pytest.main() starts coverage tracing. This conftest
reloads it after coverage activates so module-level statements are traced.
Tests reach server names through ``nelua_lsp.<name>`` at call time so they
see the reloaded definitions.
"""

from __future__ import annotations

import importlib

import nelua_lsp as mod
import pytest


@pytest.fixture(autouse=True, scope="session")
def _reload_for_coverage() -> None:
    """Reload module under test so pytest-cov captures module-level code."""
    importlib.reload(mod)
