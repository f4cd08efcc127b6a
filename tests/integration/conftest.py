# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared fixtures for integration tests.

The repository layout comes from ``dotnet_repo`` in the top-level conftest;
the engine runs against it with the scripted ``fake_invoker``.
"""

from pathlib import Path

import pytest

from dotnet_incremental.config import Config
from dotnet_incremental.engine import Engine


@pytest.fixture
def engine(dotnet_repo: Path, fake_invoker):
    """Engine opened on the sample repository with two workers."""
    config = Config.from_dict({"parallel": 2})
    with Engine.open(dotnet_repo, config=config, invoker=fake_invoker) as engine:
        yield engine
