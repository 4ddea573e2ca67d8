"""
Test configuration for geoload.

Provides scenario, client and aggregator fixtures plus the isolation
fixtures (task cleanup, metric reset) every test runs under.
"""

# Standard library imports
import asyncio
import logging
import sys
from pathlib import Path
from typing import AsyncGenerator, Dict

# Third-party imports
import pytest
import pytest_asyncio
import structlog
import yaml

# Local imports
from geoload.config import Config
from geoload.engine.aggregator import MetricsAggregator
from geoload.engine.http_client import HttpClient

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel any task a test leaves behind so a stuck virtual user cannot
    leak into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture(autouse=True)
def metrics_reset():
    """Reset metric values between tests without touching the Prometheus registry."""
    if "geoload.observability.metrics" in sys.modules:
        import importlib

        metrics_module = importlib.reload(sys.modules["geoload.observability.metrics"])
    else:
        from geoload.observability import metrics as metrics_module

    # Unlabelled counters and gauges expose _value; labelled ones are checked via deltas.
    for _metric in metrics_module.METRICS.values():
        if hasattr(_metric, "_value"):
            _metric._value.set(0)
        if hasattr(_metric, "_sum"):
            _metric._sum.set(0)
            for bucket in getattr(_metric, "_buckets", []):
                bucket.set(0)

    yield


# ============================================================================
# Scenario Fixtures
# ============================================================================


@pytest.fixture
def restore_logging():
    """Undo configure_logging() so one test's handlers do not leak into the next."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def scenario_dict() -> Dict:
    """A scaled-down scenario: ramp to 4 VUs, hold, ramp down, in well under a second."""
    return {
        "insecureSkipTLSVerify": True,
        "noConnectionReUse": False,
        "vus": 1,
        "stages": [
            {"duration": "200ms", "target": 4},
            {"duration": "300ms", "target": 4},
            {"duration": "200ms", "target": 0},
        ],
        "thresholds": {"http_req_duration": ["p(99)<150"]},
        "requestIntervalSeconds": 0.05,
        "tickIntervalSeconds": 0.02,
        "gracefulStopSeconds": 2,
        "seed": 1234,
        "monitoring": {"log_level": "DEBUG", "progress_interval_seconds": 0.1},
    }


@pytest.fixture
def scenario_config(scenario_dict) -> Config:
    return Config.from_dict(scenario_dict)


@pytest.fixture
def scenario_file(tmp_path: Path, scenario_dict) -> Path:
    """The scaled-down scenario written to a YAML file."""
    path = tmp_path / "scenario.yaml"
    path.write_text(yaml.safe_dump(scenario_dict), encoding="utf-8")
    return path


@pytest.fixture
def places_scenario_file() -> Path:
    """The bundled full-size scenario."""
    return Path(__file__).parent.parent / "scenarios" / "places-search.yaml"


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def http_client() -> AsyncGenerator[HttpClient, None]:
    """Initialized client with a short timeout for testing."""
    async with HttpClient(timeout=5.0, user_agent="TestBot/1.0") as client:
        yield client


@pytest.fixture
def aggregator() -> MetricsAggregator:
    return MetricsAggregator(seed=7)

