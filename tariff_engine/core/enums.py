"""
Core Enumerations for the Tariff Calculation Engine.
"""

from enum import Enum


# =============================================================================
# Pricing Enums
# =============================================================================


class ComponentType(str, Enum):
    """Kind of a priced service component."""

    TECHNICAL = "technical"
    PROFESSIONAL = "professional"


class FactorScope(str, Enum):
    """Named scope of a coefficient (factor setting)."""

    GENERAL = "general"
    HASHTAG = "hashtag"  # Hashtag service code ranges
    DEPARTMENT = "department"  # Department-specific override
    DENTAL = "dental"


# =============================================================================
# Insurance Enums
# =============================================================================


class InsuranceTier(str, Enum):
    """Payer tier of an insurance plan."""

    PRIMARY = "primary"
    SUPPLEMENTARY = "supplementary"


class TariffSource(str, Enum):
    """Where the effective tariff values came from."""

    SERVICE_TARIFF = "service_tariff"  # Explicit tariff for the (plan, service) pair
    ALL_SERVICES_TARIFF = "all_services_tariff"  # Plan-wide tariff
    COMPUTED = "computed"  # No tariff, computed base price


class Gender(str, Enum):
    """Patient gender as used by rule conditions."""

    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


# =============================================================================
# Business Rule Enums
# =============================================================================


class BusinessRuleType(str, Enum):
    """Rule families looked up by the engine."""

    COVERAGE_PERCENT = "coverage_percent"
    DEDUCTIBLE = "deductible"
    PAYMENT_LIMIT = "payment_limit"
    SUPPLEMENTARY = "supplementary"
    VALIDATION = "validation"


class RuleScope(str, Enum):
    """Scope of a business rule, from least to most specific."""

    GLOBAL = "global"
    PLAN = "plan"
    SERVICE_CATEGORY = "service_category"

    @property
    def specificity(self) -> int:
        """Rank used when several scopes supply the same field."""
        return _RULE_SCOPE_SPECIFICITY[self]


_RULE_SCOPE_SPECIFICITY = {
    RuleScope.GLOBAL: 0,
    RuleScope.PLAN: 1,
    RuleScope.SERVICE_CATEGORY: 2,
}


class ConditionKind(str, Enum):
    """Closed set of rule condition kinds."""

    PATIENT_AGE = "patient_age"
    PATIENT_GENDER = "patient_gender"
    SERVICE_AMOUNT = "service_amount"
    SERVICE_CATEGORY = "service_category"
    INSURANCE_PLAN = "insurance_plan"


class EffectKind(str, Enum):
    """Closed set of rule effect kinds."""

    COVERAGE_PERCENT = "coverage_percent"
    DEDUCTIBLE_AMOUNT = "deductible_amount"
    DEDUCTIBLE_PERCENT = "deductible_percent"
    PAYMENT_CAP = "payment_cap"
    PAYMENT_LIMIT_VALIDATION = "payment_limit_validation"
    SUPPLEMENTARY_APPLICABLE = "supplementary_applicable"


# Effect kinds a rule of each type may carry
ALLOWED_EFFECTS: dict[BusinessRuleType, frozenset[EffectKind]] = {
    BusinessRuleType.COVERAGE_PERCENT: frozenset({EffectKind.COVERAGE_PERCENT}),
    BusinessRuleType.DEDUCTIBLE: frozenset(
        {EffectKind.DEDUCTIBLE_AMOUNT, EffectKind.DEDUCTIBLE_PERCENT}
    ),
    BusinessRuleType.PAYMENT_LIMIT: frozenset({EffectKind.PAYMENT_CAP}),
    BusinessRuleType.SUPPLEMENTARY: frozenset(
        {
            EffectKind.SUPPLEMENTARY_APPLICABLE,
            EffectKind.COVERAGE_PERCENT,
            EffectKind.PAYMENT_CAP,
        }
    ),
    BusinessRuleType.VALIDATION: frozenset({EffectKind.PAYMENT_LIMIT_VALIDATION}),
}


# =============================================================================
# Diagnostics & Cache Enums
# =============================================================================


class DiagnosticSeverity(str, Enum):
    """Severity of a non-fatal calculation note."""

    INFO = "info"
    WARNING = "warning"


class DiagnosticCode(str, Enum):
    """Non-fatal conditions attached to successful results."""

    INSURANCE_EXPIRED = "insurance_expired"
    NO_PRIMARY_INSURANCE = "no_primary_insurance"
    SERVICE_COMPONENTS_INCOMPLETE = "service_components_incomplete"
    PAYMENT_CAP_EXCEEDED = "payment_cap_exceeded"
    SUPPLEMENTARY_NOT_APPLICABLE = "supplementary_not_applicable"


class CacheBucket(str, Enum):
    """Cache buckets, each with its own generation counter."""

    FACTOR = "factor"
    TARIFF = "tariff"
    CALCULATION = "calculation"
    STATISTICS = "statistics"


class InvalidationType(str, Enum):
    """Kind of invalidation broadcast to cache subscribers."""

    ALL = "all"
    TARIFF = "tariff"
    PLAN = "plan"
    SERVICE = "service"
    FACTOR = "factor"
    PATIENT = "patient"
    STATISTICS = "statistics"
