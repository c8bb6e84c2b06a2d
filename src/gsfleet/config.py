from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_STATE_DIR = Path.home() / ".gsfleet"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GSFLEET_")

    state_dir: Path = DEFAULT_STATE_DIR
    default_region: str = "us-east-1"
    log_level: str = "INFO"

    # Credits
    billing_enabled: bool = False
    low_balance_threshold: float = 10
    credits_per_server: float = 1

    # Reclamation thresholds
    default_idle_minutes: int = 10
    pending_timeout_minutes: int = 10
    long_running_warn_hours: float = 9
    long_running_max_hours: float = 10

    # Probe
    rcon_port: int = 27015
    probe_timeout_ms: int = 5000

    # Loop intervals (seconds)
    empty_interval: float = 60
    pending_interval: float = 15 * 60
    long_running_interval: float = 30 * 60
    credit_interval: float = 60
    credit_consumption_interval: float = 60
    queue_tick_seconds: float = 1.0
