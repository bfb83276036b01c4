"""Runtime configuration loaded from environment variables."""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    """Tunable knobs for the ledger, gateway calls and reconciliation."""
    gateway: str = "simulator"  # simulator | stripe
    gateway_timeout_seconds: float = 12.0
    status_read_attempts: int = 3
    status_read_backoff_seconds: float = 0.4
    default_currency: str = "USD"
    idempotency_ttl_hours: int = 24

    # Exact subset-sum is used only while both bounds hold; greedy otherwise.
    reconcile_max_dp_items: int = 64
    reconcile_max_dp_target: int = 10_000_000
    reconcile_tolerance: int = 0  # minor units

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        settings = cls(
            gateway=os.getenv("PAYMENTS_GATEWAY", cls.gateway).lower(),
            gateway_timeout_seconds=_env_float(
                "GATEWAY_TIMEOUT_SECONDS", cls.gateway_timeout_seconds
            ),
            status_read_attempts=_env_int("STATUS_READ_ATTEMPTS", cls.status_read_attempts),
            status_read_backoff_seconds=_env_float(
                "STATUS_READ_BACKOFF_SECONDS", cls.status_read_backoff_seconds
            ),
            default_currency=os.getenv("DEFAULT_CURRENCY", cls.default_currency).upper(),
            idempotency_ttl_hours=_env_int("IDEMPOTENCY_TTL_HOURS", cls.idempotency_ttl_hours),
            reconcile_max_dp_items=_env_int("RECONCILE_MAX_DP_ITEMS", cls.reconcile_max_dp_items),
            reconcile_max_dp_target=_env_int(
                "RECONCILE_MAX_DP_TARGET", cls.reconcile_max_dp_target
            ),
            reconcile_tolerance=_env_int("RECONCILE_TOLERANCE", cls.reconcile_tolerance),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.gateway not in ("simulator", "stripe"):
            raise ValueError(f"Unsupported gateway: {self.gateway}")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("gateway_timeout_seconds must be positive")
        if self.status_read_attempts < 1:
            raise ValueError("status_read_attempts must be at least 1")
        if self.reconcile_tolerance < 0:
            raise ValueError("reconcile_tolerance cannot be negative")
        if self.reconcile_max_dp_items < 0 or self.reconcile_max_dp_target < 0:
            raise ValueError("reconciliation DP bounds cannot be negative")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
        logger.info(f"Loaded settings (gateway={_settings.gateway})")
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
