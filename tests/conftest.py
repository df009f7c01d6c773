from __future__ import annotations

import pytest

from cirrus.config import Creation, Polling, Settings, Timeouts
from cirrus.providers.memory import Memory, MemoryProvider


@pytest.fixture
def settings() -> Settings:
    """Settings scaled down so convergence tests finish in milliseconds."""
    return Settings(
        timeouts=Timeouts(
            node_running=2.0, node_terminated=1.0, node_suspended=1.0, image_available=2.0,
        ),
        polling=Polling(interval=0.01, max_interval=0.01, backoff=1.0),
        creation=Creation(max_attempts=3, base_delay=0.01, max_delay=0.01),
    )


@pytest.fixture
def provider() -> MemoryProvider:
    return MemoryProvider(Memory(scopes=("local-1", "local-2")))
