"""
Pydantic Schemas for the Tariff Calculation Engine.

Entity snapshots, business rule definitions and calculation values.
"""

from tariff_engine.schemas.entities import (
    FactorSetting,
    InsurancePlan,
    InsuranceTariff,
    Patient,
    PatientInsurance,
    Service,
    ServiceComponent,
)
from tariff_engine.schemas.rules import (
    BusinessRule,
    BusinessRuleValidationResult,
    CoveragePercentEffect,
    DeductibleAmountEffect,
    DeductiblePercentEffect,
    InsurancePlanCondition,
    PatientAgeCondition,
    PatientGenderCondition,
    PaymentCapEffect,
    PaymentLimitValidationEffect,
    ServiceAmountCondition,
    ServiceCategoryCondition,
    SupplementaryApplicableEffect,
)
from tariff_engine.schemas.calculation import (
    BatchCalculationResult,
    CacheInvalidatedEvent,
    CacheKey,
    CacheStats,
    CalculationOptions,
    CombinedInsuranceCalculationResult,
    Diagnostic,
    EffectiveTariff,
    FactorValidationResult,
    InsuranceCalculationContext,
    InsuranceCalculationResult,
    PaymentLimitCheck,
    PriceCalculationOptions,
    ResolvedFactor,
    RuleEvaluation,
    ServicePriceBreakdown,
    SupplementaryCoverageResult,
    SupplementaryOption,
    TariffStatistics,
)


__all__ = [
    # Entities
    "FactorSetting",
    "InsurancePlan",
    "InsuranceTariff",
    "Patient",
    "PatientInsurance",
    "Service",
    "ServiceComponent",
    # Rules
    "BusinessRule",
    "BusinessRuleValidationResult",
    "CoveragePercentEffect",
    "DeductibleAmountEffect",
    "DeductiblePercentEffect",
    "InsurancePlanCondition",
    "PatientAgeCondition",
    "PatientGenderCondition",
    "PaymentCapEffect",
    "PaymentLimitValidationEffect",
    "ServiceAmountCondition",
    "ServiceCategoryCondition",
    "SupplementaryApplicableEffect",
    # Calculation
    "BatchCalculationResult",
    "CacheInvalidatedEvent",
    "CacheKey",
    "CacheStats",
    "CalculationOptions",
    "CombinedInsuranceCalculationResult",
    "Diagnostic",
    "EffectiveTariff",
    "FactorValidationResult",
    "InsuranceCalculationContext",
    "InsuranceCalculationResult",
    "PaymentLimitCheck",
    "PriceCalculationOptions",
    "ResolvedFactor",
    "RuleEvaluation",
    "ServicePriceBreakdown",
    "SupplementaryCoverageResult",
    "SupplementaryOption",
    "TariffStatistics",
]
