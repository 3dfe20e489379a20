"""Configuration models using Pydantic for validation."""
from typing import Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
import os


class ScrapeConfig(BaseModel):
    """Metrics endpoint scraped by the embedded store."""
    url: Optional[str] = None
    interval_s: float = Field(default=10.0, gt=0)
    timeout_s: float = Field(default=10.0, gt=0)
    expression: Optional[str] = "jvm_memory_bytes_used"
    write_timeout_s: float = Field(default=10.0, ge=0)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Only HTTP(S) endpoints can be scraped."""
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"Scrape URL must be http(s): {v}")
        return v


class QueryConfig(BaseModel):
    """Query engine limits."""
    max_samples: int = Field(default=50_000_000, gt=0)
    lookback_delta_s: float = Field(default=300.0, gt=0)
    timeout_s: float = Field(default=10.0, gt=0)
    read_timeout_s: float = Field(default=10.0, ge=0)


class LoadConfig(BaseModel):
    """Load generator settings."""
    endpoint: Optional[str] = None
    duration_min: float = Field(default=5.0, gt=0)
    vhosts: int = Field(default=5, gt=0)
    parallel: int = Field(default=5, gt=0)
    vhost_format: str = "galeb-test-{}"
    request_interval_s: float = Field(default=1.0, gt=0)
    request_timeout_s: float = Field(default=10.0, gt=0)
    ping_interval_s: float = Field(default=30.0, gt=0)
    seed: Optional[int] = None

    # Transport
    max_idle_conns: int = 1024
    max_conns_per_host: int = 100
    idle_conn_timeout_s: float = 10.0
    dns_refresh_s: float = 300.0

    @field_validator('vhost_format')
    @classmethod
    def validate_vhost_format(cls, v):
        if "{}" not in v:
            raise ValueError("vhost_format must contain a '{}' placeholder")
        return v


class ReportConfig(BaseModel):
    """Report generation settings."""
    enabled: bool = True
    base_dir: str = "."
    window_s: float = Field(default=3600.0, gt=0)
    step_s: float = Field(default=15.0, gt=0)


class SelfMetricsConfig(BaseModel):
    """Prometheus endpoint exposing the harness's own metrics."""
    enabled: bool = False
    port: int = 8000
    prefix: str = "perftest_"
    bind_address: str = "0.0.0.0"


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    control_api_enabled: bool = False
    control_api_port: int = 8081


class Config(BaseModel):
    """Root configuration model."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    scrape: ScrapeConfig = Field(default_factory=ScrapeConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    load: LoadConfig = Field(default_factory=LoadConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    self_metrics: SelfMetricsConfig = Field(default_factory=SelfMetricsConfig)

    class Config:
        populate_by_name = True

    @model_validator(mode='after')
    def validate_timeouts(self):
        """A scrape must finish before the next tick is due."""
        if self.scrape.timeout_s > self.scrape.interval_s:
            raise ValueError(
                f"Scrape timeout ({self.scrape.timeout_s}s) must not exceed "
                f"the scrape interval ({self.scrape.interval_s}s)"
            )
        return self


def _apply_env_overrides(raw_config: dict) -> dict:
    if env_endpoint := os.getenv('PERFTEST_ENDPOINT'):
        raw_config.setdefault('load', {})['endpoint'] = env_endpoint

    if env_metrics := os.getenv('PERFTEST_METRICS_URL'):
        raw_config.setdefault('scrape', {})['url'] = env_metrics

    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config.setdefault('global', {})['log_level'] = env_log_level

    return raw_config


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate configuration from a YAML file (or defaults when no path)."""
    import yaml

    raw_config: dict = {}
    if config_path is not None:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

    raw_config = _apply_env_overrides(raw_config)

    try:
        config = Config(**raw_config)
        return config
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")
