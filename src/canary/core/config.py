from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "canary-rollout-controller"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Environment
    ENV: str = "dev"  # dev, staging, production
    DEBUG: bool = False

    # Metrics backend (query provider)
    PROMETHEUS_URL: str = "http://prometheus:9090"
    METRICS_BACKEND_TIMEOUT: float = 30.0

    # Analysis defaults, applied when a metric omits them
    DEFAULT_METRIC_INTERVAL: float = 60.0  # seconds between measurements
    DEFAULT_METRIC_COUNT: int = 5
    DEFAULT_METRIC_TIMEOUT: float = 30.0  # per provider invocation
    ANALYSIS_GRACE_SECONDS: float = 30.0
    INCONCLUSIVE_POLICY: Literal["fail", "pause"] = "fail"
    ANALYSIS_HISTORY_DIR: Optional[str] = None
    ROLLOUT_RETENTION: int = 100  # finished rollouts kept for inspection

    # Rollback
    ROLLBACK_CONFIRM_TIMEOUT_SECONDS: float = 30.0
    ROLLBACK_CONFIRM_POLL_SECONDS: float = 1.0
    FAILURE_REPORT_RESULTS: int = 5  # last N measurements kept in a report
    ALERT_WEBHOOK_URL: Optional[str] = None

    # Templates and credentials
    TEMPLATES_DIR: Optional[str] = None
    CREDENTIALS_DIR: Optional[str] = None  # mounted secrets: <dir>/<name>/<key>

    # Traffic routing
    TRAFFIC_ROUTER: Literal["memory", "nginx"] = "memory"
    INGRESS_NAMESPACE: str = "default"
    INGRESS_NAME_TEMPLATE: str = "{application}-canary"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True
    )

settings = Settings()
