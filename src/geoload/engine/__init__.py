"""Load-generation engine: request factory, virtual users, scheduler, aggregation, thresholds."""

from .aggregator import MetricsAggregator
from .checks import CheckSet, StatusCheck
from .http_client import HttpClient, HttpResponse
from .request_factory import RequestFactory, random_coordinates
from .scheduler import StageScheduler, target_at
from .thresholds import ThresholdEvaluator, parse_threshold
from .virtual_user import VirtualUser

__all__ = [
    "CheckSet",
    "HttpClient",
    "HttpResponse",
    "MetricsAggregator",
    "RequestFactory",
    "StageScheduler",
    "StatusCheck",
    "ThresholdEvaluator",
    "VirtualUser",
    "parse_threshold",
    "random_coordinates",
    "target_at",
]
