from __future__ import annotations

import pytest

from llm_threads.config import ClientConfig


@pytest.fixture()
def config() -> ClientConfig:
    """Config with zero backoff so retry tests don't sleep."""
    return ClientConfig(base_delay=0.0, max_delay=0.0)
