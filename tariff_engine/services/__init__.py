"""
Services Layer for the Tariff Calculation Engine.

Exports the pricing and coverage pipeline, the calculation cache and the
factor setting write path.
"""

from tariff_engine.services.calculation_cache import (
    CalculationCache,
    create_calculation_cache,
    get_calculation_cache,
)
from tariff_engine.services.factor_resolver import FactorResolver, financial_year_for
from tariff_engine.services.factor_settings import FactorSettingService
from tariff_engine.services.service_price_calculator import (
    ServicePriceCalculator,
    has_complete_components,
)
from tariff_engine.services.tariff_resolver import TariffResolver
from tariff_engine.services.business_rule_engine import BusinessRuleEngine
from tariff_engine.services.primary_coverage import PrimaryCoverageCalculator
from tariff_engine.services.supplementary_coverage import SupplementaryCoverageCalculator
from tariff_engine.services.combined_calculator import (
    CombinedInsuranceCalculator,
    create_combined_calculator,
)


__all__ = [
    # Cache
    "CalculationCache",
    "create_calculation_cache",
    "get_calculation_cache",
    # Pricing
    "FactorResolver",
    "financial_year_for",
    "FactorSettingService",
    "ServicePriceCalculator",
    "has_complete_components",
    "TariffResolver",
    # Coverage
    "BusinessRuleEngine",
    "PrimaryCoverageCalculator",
    "SupplementaryCoverageCalculator",
    "CombinedInsuranceCalculator",
    "create_combined_calculator",
]
