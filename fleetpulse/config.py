"""
FleetPulse Configuration Module

Central configuration management with environment variable support.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from enum import Enum


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class BackendConfig:
    """Backend-as-a-service (Supabase) connection configuration."""
    url: str = "http://localhost:54321"
    anon_key: str = ""
    service_role_key: str = ""

    # HTTP settings
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 0.5

    # Table names
    samples_table: str = "trip_logs"
    events_table: str = "security_events"
    vehicles_table: str = "vehicles"
    trips_table: str = "trips"
    profiles_table: str = "profiles"
    companies_table: str = "companies"

    # Edge function used to create accounts with the service role
    create_user_function: str = "create_user"

    @property
    def rest_url(self) -> str:
        """PostgREST base URL."""
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        """GoTrue base URL."""
        return f"{self.url.rstrip('/')}/auth/v1"

    @property
    def functions_url(self) -> str:
        """Edge functions base URL."""
        return f"{self.url.rstrip('/')}/functions/v1"

    @classmethod
    def from_env(cls) -> "BackendConfig":
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("SUPABASE_URL", "http://localhost:54321"),
            anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
            service_role_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            timeout_seconds=float(os.getenv("BACKEND_TIMEOUT_SECONDS", "30")),
            retry_attempts=int(os.getenv("BACKEND_RETRY_ATTEMPTS", "3")),
            retry_delay=float(os.getenv("BACKEND_RETRY_DELAY", "0.5")),
            samples_table=os.getenv("BACKEND_SAMPLES_TABLE", "trip_logs"),
        )


@dataclass
class RedisConfig:
    """Redis connection configuration (shared geofence state)."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    ssl: bool = False
    enabled: bool = False

    # Pool settings
    max_connections: int = 20
    socket_timeout: float = 5.0

    # Key namespace for per-vehicle geofence state
    geofence_state_key: str = "fleetpulse:geofence:state"

    @property
    def url(self) -> str:
        """Build Redis URL."""
        protocol = "rediss" if self.ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"

    @classmethod
    def from_env(cls) -> "RedisConfig":
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD"),
            ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
            enabled=os.getenv("REDIS_ENABLED", "false").lower() == "true",
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "20")),
        )


@dataclass
class AnalyticsConfig:
    """Trip analysis and safety scoring configuration."""
    # A zero-speed run must last strictly longer than this to count as a stop
    min_stop_duration_ms: int = 120_000

    # Severity penalties for the safety index
    severity_weights: Dict[str, float] = field(default_factory=lambda: {
        "critical": 5.0,
        "high": 2.0,
        "medium": 0.5,
        "low": 0.0,
        "info": 0.0,
    })

    # Reporting windows
    report_window_days: int = 7
    critical_window_hours: int = 24
    top_incidents_limit: int = 5

    @classmethod
    def from_env(cls) -> "AnalyticsConfig":
        """Load configuration from environment variables."""
        return cls(
            min_stop_duration_ms=int(os.getenv("ANALYTICS_MIN_STOP_MS", "120000")),
            report_window_days=int(os.getenv("ANALYTICS_REPORT_WINDOW_DAYS", "7")),
            critical_window_hours=int(os.getenv("ANALYTICS_CRITICAL_WINDOW_HOURS", "24")),
            top_incidents_limit=int(os.getenv("ANALYTICS_TOP_INCIDENTS", "5")),
        )


@dataclass
class GpsConfig:
    """GPS tracking session configuration."""
    poll_interval_seconds: float = 5.0
    fix_timeout_seconds: float = 30.0

    # Retry policy for timed-out fixes
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    backoff: str = "exponential"  # "fixed" or "exponential"
    max_retry_delay_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "GpsConfig":
        """Load configuration from environment variables."""
        return cls(
            poll_interval_seconds=float(os.getenv("GPS_POLL_INTERVAL_SECONDS", "5")),
            fix_timeout_seconds=float(os.getenv("GPS_FIX_TIMEOUT_SECONDS", "30")),
            max_attempts=int(os.getenv("GPS_MAX_ATTEMPTS", "3")),
            retry_delay_seconds=float(os.getenv("GPS_RETRY_DELAY_SECONDS", "1")),
            backoff=os.getenv("GPS_BACKOFF", "exponential").lower(),
        )


@dataclass
class FatigueConfig:
    """Driver fatigue monitor configuration."""
    tick_seconds: float = 5.0
    max_drop_per_tick: float = 2.0
    alert_threshold: float = 30.0

    @classmethod
    def from_env(cls) -> "FatigueConfig":
        """Load configuration from environment variables."""
        return cls(
            tick_seconds=float(os.getenv("FATIGUE_TICK_SECONDS", "5")),
            max_drop_per_tick=float(os.getenv("FATIGUE_MAX_DROP", "2")),
            alert_threshold=float(os.getenv("FATIGUE_ALERT_THRESHOLD", "30")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

    # Structured logging
    json_format: bool = False

    # Log destinations
    console: bool = True
    file_path: Optional[str] = None
    max_bytes: int = 5_000_000
    backup_count: int = 3

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            json_format=os.getenv("LOG_JSON_FORMAT", "false").lower() == "true",
            console=os.getenv("LOG_CONSOLE", "true").lower() == "true",
            file_path=os.getenv("LOG_FILE_PATH"),
        )


@dataclass
class FleetPulseConfig:
    """Master configuration for FleetPulse."""
    environment: Environment = Environment.DEVELOPMENT

    # Sub-configurations
    backend: BackendConfig = field(default_factory=BackendConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    gps: GpsConfig = field(default_factory=GpsConfig)
    fatigue: FatigueConfig = field(default_factory=FatigueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "FleetPulseConfig":
        """Load all configuration from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            backend=BackendConfig.from_env(),
            redis=RedisConfig.from_env(),
            analytics=AnalyticsConfig.from_env(),
            gps=GpsConfig.from_env(),
            fatigue=FatigueConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return any warnings/errors.

        Returns:
            Dictionary with 'valid' boolean and 'messages' list
        """
        messages = []
        valid = True

        if not self.backend.anon_key:
            messages.append("WARNING: Supabase anon key not configured")

        if self.gps.backoff not in ("fixed", "exponential"):
            messages.append(f"ERROR: Unknown GPS backoff strategy '{self.gps.backoff}'")
            valid = False

        if self.gps.max_attempts < 1:
            messages.append("ERROR: GPS max_attempts must be at least 1")
            valid = False

        if self.environment == Environment.PRODUCTION:
            if "localhost" in self.backend.url:
                messages.append("WARNING: Using localhost backend in production")
            if self.backend.service_role_key:
                messages.append("WARNING: Service role key loaded in a client-facing process")

        return {"valid": valid, "messages": messages}


# Global configuration instance
_config: Optional[FleetPulseConfig] = None


def get_config() -> FleetPulseConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = FleetPulseConfig.from_env()
    return _config


def set_config(config: FleetPulseConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
