"""Pytest configuration shared by the test suite."""

import os
import sys
from pathlib import Path

import pytest

# Ensure the project root is in sys.path so `tests.backends` helpers import
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from teepool.config import reset_settings  # noqa: E402
from teepool.models import PoolPolicy, WorkerSpec  # noqa: E402
from teepool.orchestrator import Orchestrator  # noqa: E402
from tests.backends.fake_backend import FakeBackend  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate every test from TEEPOOL_* variables in the caller's shell."""
    for key in list(os.environ):
        if key.startswith("TEEPOOL_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def spec():
    return WorkerSpec(image="ghcr.io/acme/worker:test")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_orchestrator(backend, spec):
    """Factory: build an orchestrator over the fake backend with policy overrides."""

    def _make(clock=None, **policy_overrides) -> Orchestrator:
        defaults = dict(min_warm_nodes=0, max_nodes=5, tick_interval_seconds=3600)
        defaults.update(policy_overrides)
        kwargs = {"clock": clock} if clock is not None else {}
        return Orchestrator(
            backend=backend,
            worker_spec=spec,
            policy=PoolPolicy(**defaults),
            **kwargs,
        )

    return _make
