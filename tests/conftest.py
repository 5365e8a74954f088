from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
TESTS_ROOT = Path(__file__).resolve().parent
for path in (PROJECT_ROOT, TESTS_ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from sensor_agent import build_info  # noqa: E402
from sensor_agent.config import get_settings  # noqa: E402

build_info.BUILD_FLAVOR = os.environ.get("SENSOR_AGENT_TEST_BUILD_FLAVOR", "test")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch, tmp_path):
    config_path = tmp_path / "sensor_config.json"
    monkeypatch.setenv("SENSOR_AGENT_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("SENSOR_AGENT_BATTERY_BACKEND", "none")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
