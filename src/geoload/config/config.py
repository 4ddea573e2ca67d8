"""
Scenario configuration for geoload using Pydantic.
"""

from __future__ import annotations

import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from geoload.engine.thresholds import parse_threshold
from geoload.errors import ConfigurationError
from geoload.models import Stage, ThresholdSpec

# --- Setup Logging ---
log = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"s": 1.0, "m": 60.0, "h": 3600.0}

# k6 option names accepted in scenario files, mapped to their field names.
_K6_OPTION_NAMES = {
    "insecureSkipTLSVerify": "insecure_skip_tls_verify",
    "noConnectionReUse": "no_connection_reuse",
    "requestIntervalSeconds": "request_interval_seconds",
    "requestTimeoutSeconds": "request_timeout_seconds",
    "tickIntervalSeconds": "tick_interval_seconds",
    "gracefulStopSeconds": "graceful_stop_seconds",
    "expectedStatuses": "expected_statuses",
}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse ``5s``, ``500ms``, ``2m``, ``1h`` or ``1m30s`` (or a bare number of seconds) into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ValueError(f"invalid duration: {value!r}") from None
            seconds = sum(
                float(number) / 1000 if unit == "ms" else float(number) * _UNIT_SECONDS[unit] for number, unit in parts
            )
    if not math.isfinite(seconds):
        raise ValueError(f"duration must be finite: {value!r}")
    if seconds < 0:
        raise ValueError(f"duration cannot be negative: {value!r}")
    return seconds


# --- Nested Configuration Models ---


class StageConfig(BaseModel):
    duration: float = Field(..., description="Stage length in seconds (accepts '5s', '1m30s', ...).")
    target: int = Field(..., ge=0, description="Virtual-user target reached at the end of the stage.")

    @field_validator("duration", mode="before")
    @classmethod
    def parse_stage_duration(cls, v: Any) -> float:
        return parse_duration(v)

    def to_stage(self) -> Stage:
        return Stage(duration=self.duration, target=self.target)


class TargetConfig(BaseModel):
    """Geolocation-search endpoint and its static query parameters."""

    base_url: str = Field(default="http://localhost:9090", description="Scheme, host and port of the target.")
    path: str = Field(default="/places", description="Search endpoint path.")
    radius: int = Field(default=30, ge=0)
    page: int = Field(default=1, ge=0)
    limit: int = Field(default=10, ge=0)
    precision: int = Field(default=6, ge=0, le=15, description="Decimal places for lat/lon.")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not re.match(r"^https?://[^/]+", v):
            raise ValueError("base_url must be an http(s) URL with a host")
        return v.rstrip("/")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"


class ExpectedStatusConfig(BaseModel):
    """Inclusive status range not counted towards ``http_req_failed``."""

    min: int = Field(default=200, ge=100, le=599)
    max: int = Field(default=399, ge=100, le=599)

    @model_validator(mode="after")
    def check_order(self) -> "ExpectedStatusConfig":
        if self.min > self.max:
            raise ValueError("expected_statuses.min must not exceed expected_statuses.max")
        return self

    def __contains__(self, status: int) -> bool:
        return self.min <= status <= self.max


class MonitoringConfig(BaseModel):
    """Configuration for logging and the metrics exporter."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to a JSON log file. If None, logs to console.")
    prometheus_port: Optional[int] = Field(
        default=None,
        description="Port for the Prometheus metrics exporter. None to disable.",
    )
    progress_interval_seconds: float = Field(
        default=10.0, gt=0, allow_inf_nan=False, description="How often run progress is logged."
    )

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: Optional[Union[str, Path]]) -> Optional[str]:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    """A complete load-test scenario."""

    insecure_skip_tls_verify: bool = Field(default=False, description="Skip TLS certificate validation.")
    no_connection_reuse: bool = Field(default=False, description="Close the connection after every request.")
    vus: int = Field(default=0, ge=0, description="Starting VU target for the first stage's ramp.")
    stages: List[StageConfig] = Field(..., description="Timed phases the VU target ramps through.")
    thresholds: Dict[str, List[str]] = Field(default_factory=dict)
    request_interval_seconds: float = Field(
        default=1.0, ge=0, allow_inf_nan=False, description="Sleep between a VU's iterations."
    )
    request_timeout_seconds: float = Field(
        default=60.0, gt=0, allow_inf_nan=False, description="Per-request timeout."
    )
    tick_interval_seconds: float = Field(
        default=1.0, gt=0, allow_inf_nan=False, description="Scheduler control-loop period."
    )
    graceful_stop_seconds: float = Field(
        default=30.0, ge=0, allow_inf_nan=False, description="Wait for retiring VUs at the end."
    )
    checks: Dict[str, int] = Field(
        default_factory=lambda: {"status was 200": 200},
        description="Check name mapped to the expected response status.",
    )
    expected_statuses: ExpectedStatusConfig = Field(default_factory=ExpectedStatusConfig)
    seed: Optional[int] = Field(default=None, description="Base seed for the per-VU random sources.")
    target: TargetConfig = Field(default_factory=TargetConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="GEOLOAD_", env_nested_delimiter="__", case_sensitive=False)

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, v: List[StageConfig]) -> List[StageConfig]:
        if not v:
            raise ValueError("stages must contain at least one stage")
        return v

    @field_validator("thresholds", mode="before")
    @classmethod
    def normalize_thresholds(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {metric: [exprs] if isinstance(exprs, str) else exprs for metric, exprs in v.items()}

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Config":
        # Parse once so malformed expressions fail at load time.
        self.threshold_specs()
        return self

    def stage_plan(self) -> List[Stage]:
        return [stage.to_stage() for stage in self.stages]

    def threshold_specs(self) -> List[ThresholdSpec]:
        return [parse_threshold(metric, expr) for metric, exprs in self.thresholds.items() for expr in exprs]

    @property
    def max_target(self) -> int:
        return max([self.vus] + [stage.target for stage in self.stages])

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a validated scenario, accepting k6-style option names."""
        normalized = {_K6_OPTION_NAMES.get(key, key): value for key, value in (data or {}).items()}
        try:
            return cls(**normalized)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid scenario: {e}") from e

    @classmethod
    def from_yaml(cls, path: Path, overrides: Optional[Dict[str, Any]] = None) -> "Config":
        """Load a scenario file; ``overrides`` are merged on top (one level deep for nested sections)."""
        log.debug("Loading scenario from YAML file: %s", path)
        if not path.is_file():
            raise ConfigurationError(f"Scenario file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                yaml_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Scenario file is not valid YAML: {path}: {e}") from e
        if yaml_data is None:
            raise ConfigurationError(f"Scenario file is empty: {path}")
        if not isinstance(yaml_data, dict):
            raise ConfigurationError(f"Scenario file must contain a mapping: {path}")
        data = {_K6_OPTION_NAMES.get(key, key): value for key, value in yaml_data.items()}
        for key, value in (overrides or {}).items():
            key = _K6_OPTION_NAMES.get(key, key)
            current = data.get(key)
            if isinstance(value, dict) and isinstance(current, dict):
                data[key] = {**current, **value}
            else:
                data[key] = value
        return cls.from_dict(data)
