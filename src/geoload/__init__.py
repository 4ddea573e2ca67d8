"""
geoload - virtual-user load testing for geolocation search endpoints.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .models import RunResult
from .runner import LoadTestRunner, run_scenario

__all__ = ["__version__", "Config", "LoadTestRunner", "RunResult", "run_scenario"]
