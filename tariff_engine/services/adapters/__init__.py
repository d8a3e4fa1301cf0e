"""
Coverage Data Source Adapters.

Read contracts consumed by the engine and an in-memory implementation for
demo mode and tests.
"""

from tariff_engine.services.adapters.base import CoverageDataSource, FactorSettingRepository
from tariff_engine.services.adapters.in_memory import InMemoryCoverageDataSource


__all__ = [
    "CoverageDataSource",
    "FactorSettingRepository",
    "InMemoryCoverageDataSource",
]
