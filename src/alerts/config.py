"""Alerting configuration.

Controls critical-breach margins per metric kind, repeated-breach
detection, escalation tick cadence, attempt ceilings and caching. All
settings can be overridden via ``ALERTS_*`` environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AlertConfig(BaseSettings):
    """Configuration for reading evaluation and the alert lifecycle."""

    model_config = SettingsConfigDict(
        env_prefix="ALERTS_",
        case_sensitive=False,
        extra="ignore",
    )

    # Absolute margins beyond a bound at which a breach becomes critical
    temperature_critical_margin: float = Field(
        default=10.0,
        gt=0.0,
        description="Degrees beyond min/max at which a temperature breach is critical",
    )
    humidity_critical_margin: float = Field(
        default=20.0,
        gt=0.0,
        description="Percentage points beyond min/max at which a humidity breach is critical",
    )

    # Relative factors applied to the bound itself
    weight_critical_low_factor: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Weight below min * factor is critical",
    )
    weight_critical_high_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Weight above max * factor is critical",
    )
    pressure_critical_low_factor: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Pressure below min * factor is critical",
    )
    pressure_critical_high_factor: float = Field(
        default=1.3,
        ge=1.0,
        description="Pressure above max * factor is critical",
    )

    # Repeated breach: the Nth breach within the verification interval is critical
    repeat_breach_count: int = Field(
        default=3,
        ge=2,
        description="Consecutive breaches within the verification interval that make a reading critical",
    )

    # Escalation scheduler
    escalation_tick_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds between escalation scheduler ticks",
    )
    escalation_scan_page_size: int = Field(
        default=500,
        ge=1,
        description="Open alerts read per page while scanning for escalation",
    )
    deferred_batch_size: int = Field(
        default=100,
        ge=1,
        description="Deferred notifications drained per tick",
    )
    deferred_lease_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds a replaying deferred notification stays hidden from other workers",
    )
    deferred_retry_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Delay before a failed deferred replay is tried again",
    )

    # Defaults applied when a sensor has no stored alert configuration
    default_initial_timeout_minutes: int = Field(
        default=15,
        ge=1,
        description="Minutes at level 0 before the first escalation",
    )
    default_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Notification attempts per (alert, channel, recipient)",
    )

    # Threshold cache
    threshold_cache_ttl_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="TTL of the in-process threshold cache; bounds staleness when a Redis invalidation is missed",
    )

    # Queries
    history_default_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Default window for per-sensor alert history",
    )
