from __future__ import annotations

import pytest


@pytest.fixture
def anyio_backend() -> str:
    # reconciliation 任务基于 asyncio.create_task
    return "asyncio"
