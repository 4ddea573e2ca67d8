from .config import (
    Config,
    ExpectedStatusConfig,
    MonitoringConfig,
    StageConfig,
    TargetConfig,
    parse_duration,
)

__all__ = [
    "Config",
    "ExpectedStatusConfig",
    "MonitoringConfig",
    "StageConfig",
    "TargetConfig",
    "parse_duration",
]
