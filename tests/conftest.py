# tests/conftest.py
"""Shared test fixtures.

Every fixture roots its files under pytest's tmp_path, so tests never share
an output tree.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.config import LexiforgeSettings
from lexiforge.engine.clock import MockClock
from lexiforge.engine.merge import MergeEngine
from lexiforge.testing import make_settings

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


@pytest.fixture
def lexiforge_settings(tmp_path: Path) -> LexiforgeSettings:
    """Thread-isolated settings with batch size 2, three attempts and no delays."""
    return make_settings(tmp_path)


@pytest.fixture
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "output")


@pytest.fixture
def merge_engine(store: CheckpointStore) -> MergeEngine:
    return MergeEngine(store)


@pytest.fixture
def clock() -> MockClock:
    return MockClock()
