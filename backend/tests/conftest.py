"""
Shared pytest fixtures and configuration for Redactrr tests.
"""

import pytest

from config import runtime_config


@pytest.fixture(autouse=True)
def reset_runtime_config():
    """Every test starts from (and leaves behind) the environment defaults."""
    runtime_config.reset_to_defaults()
    yield runtime_config
    runtime_config.reset_to_defaults()
