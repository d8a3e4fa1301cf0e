"""
Tariff Engine Configuration.
Settings for pricing, coverage calculation and the calculation cache.
Source: https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

import calendar
from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """
    Tariff engine configuration settings.

    Every field can be set through an environment variable prefixed with
    ``TARIFF_`` (for example ``TARIFF_CACHE_TTL_SECONDS=60``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="TARIFF_",
    )

    # =========================================================================
    # Money
    # =========================================================================
    CURRENCY_DECIMAL_PLACES: int = Field(
        default=0,
        ge=0,
        le=4,
        description="Decimal places of the smallest currency unit (0 = whole Rials)",
    )
    MAX_SERVICE_AMOUNT: Decimal = Field(
        default=Decimal("100000000"),
        gt=0,
        description="Largest service amount accepted by a calculation",
    )

    # =========================================================================
    # Financial Year
    # =========================================================================
    FINANCIAL_YEAR_START_MONTH: int = Field(
        default=1,
        ge=1,
        le=12,
        description="Month on which a financial year starts",
    )
    FINANCIAL_YEAR_START_DAY: int = Field(
        default=1,
        ge=1,
        le=31,
        description="Day of month on which a financial year starts",
    )

    # =========================================================================
    # Cache Configuration
    # =========================================================================
    CACHE_ENABLED: bool = Field(
        default=True,
        description="Cache tariff/factor lookups and whole calculation results",
    )
    CACHE_MAX_ENTRIES: int = Field(
        default=10000,
        ge=1,
        description="Maximum number of cache entries before LRU eviction",
    )
    CACHE_TTL_SECONDS: int = Field(
        default=300,
        ge=1,
        description="Lifetime of a cache entry (5 min)",
    )
    CACHE_MAX_COMPUTE_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        description="Recompute attempts when an invalidation overlaps a computation",
    )

    # =========================================================================
    # Calculation
    # =========================================================================
    CALCULATION_TIMEOUT_SECONDS: Optional[float] = Field(
        default=30.0,
        gt=0,
        description="Default timeout for one combined calculation (None = no timeout)",
    )

    # =========================================================================
    # Logging
    # =========================================================================
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=False, description="Emit JSON log lines")
    LOG_FILE: Optional[str] = Field(
        default=None, description="Calculation log file (stderr only when unset)"
    )
    LOG_ROTATION: str = Field(default="100 MB", description="Rotate the log file at this size")
    LOG_RETENTION: str = Field(default="30 days", description="Keep rotated log files this long")

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one loguru knows."""
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_financial_year_start(self) -> "EngineSettings":
        """Reject start days that do not exist in the start month."""
        # Leap day is never a valid start, so use a non-leap year
        days_in_month = calendar.monthrange(2001, self.FINANCIAL_YEAR_START_MONTH)[1]
        if self.FINANCIAL_YEAR_START_DAY > days_in_month:
            raise ValueError(
                f"FINANCIAL_YEAR_START_DAY {self.FINANCIAL_YEAR_START_DAY} does not exist "
                f"in month {self.FINANCIAL_YEAR_START_MONTH}"
            )
        return self

    @property
    def currency_quantum(self) -> Decimal:
        """Smallest currency unit as a Decimal exponent (e.g. Decimal('1'))."""
        return Decimal(1).scaleb(-self.CURRENCY_DECIMAL_PLACES)


# Singleton instance
_engine_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """
    Get cached engine settings instance.

    Returns:
        EngineSettings instance
    """
    global _engine_settings
    if _engine_settings is None:
        _engine_settings = EngineSettings()
    return _engine_settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _engine_settings
    _engine_settings = None
