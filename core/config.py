"""Engine settings.

Reads configuration from environment variables, loading a ``.env`` file from
the repository root first if one exists:

- FLOCK_MAX_CONFLICT_RETRIES: retries after a lost batch-lock race
- FLOCK_RETRY_BASE_DELAY / FLOCK_RETRY_MAX_DELAY: backoff bounds (seconds)
- FLOCK_LOCK_TIMEOUT: seconds to wait for a batch lock
- FLOCK_DEFAULT_AVERAGE_WEIGHT: kg used when a batch has no recorded weight
- FLOCK_EXPIRY_MONTHS: default shelf life of dressed batches
- FLOCK_EXPIRING_SOON_DAYS: window for the expiring-soon check
- FLOCK_LOW_YIELD_THRESHOLD: yield percentage below which a warning is raised
- FLOCK_LOG_LEVEL / FLOCK_LOG_JSON: logging output
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RetryConfig:
    """Configuration for retrying after a concurrency conflict."""
    max_retries: int = 3
    base_delay: float = 0.05  # seconds
    max_delay: float = 1.0  # seconds
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class EngineSettings:
    """Settings shared by the ledger, graph, processing and reconciliation."""
    retry: RetryConfig = field(default_factory=RetryConfig)
    lock_timeout_seconds: float = 2.0
    default_average_weight: Decimal = Decimal("2.5")
    expiry_months: int = 3
    expiring_soon_days: int = 7
    low_yield_threshold: Decimal = Decimal("95")
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from environment variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        retry = RetryConfig(
            max_retries=_env_int("FLOCK_MAX_CONFLICT_RETRIES", 3),
            base_delay=_env_float("FLOCK_RETRY_BASE_DELAY", 0.05),
            max_delay=_env_float("FLOCK_RETRY_MAX_DELAY", 1.0),
        )
        return cls(
            retry=retry,
            lock_timeout_seconds=_env_float("FLOCK_LOCK_TIMEOUT", 2.0),
            default_average_weight=Decimal(str(_env_float("FLOCK_DEFAULT_AVERAGE_WEIGHT", 2.5))),
            expiry_months=_env_int("FLOCK_EXPIRY_MONTHS", 3),
            expiring_soon_days=_env_int("FLOCK_EXPIRING_SOON_DAYS", 7),
            low_yield_threshold=Decimal(str(_env_float("FLOCK_LOW_YIELD_THRESHOLD", 95))),
            log_level=os.getenv("FLOCK_LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("FLOCK_LOG_JSON", False),
        )


_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """Return the process-wide settings, reading the environment once."""
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
