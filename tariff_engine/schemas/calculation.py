"""
Pydantic Schemas for Price and Coverage Calculation.

Contexts, option structs, intermediate values and results threaded through
the calculation pipeline. Everything here is immutable once built; derived
values are produced with ``model_copy(update=...)``.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from tariff_engine.core.enums import (
    CacheBucket,
    ComponentType,
    DiagnosticCode,
    DiagnosticSeverity,
    FactorScope,
    Gender,
    InvalidationType,
    TariffSource,
)


class FrozenModel(BaseModel):
    """Base for immutable calculation values."""

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Diagnostics
# =============================================================================


class Diagnostic(FrozenModel):
    """Non-fatal condition attached to a successful result."""

    code: DiagnosticCode
    severity: DiagnosticSeverity = DiagnosticSeverity.WARNING
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def warning(cls, code: DiagnosticCode, message: str, **details: Any) -> "Diagnostic":
        return cls(code=code, severity=DiagnosticSeverity.WARNING, message=message, details=details)

    @classmethod
    def info(cls, code: DiagnosticCode, message: str, **details: Any) -> "Diagnostic":
        return cls(code=code, severity=DiagnosticSeverity.INFO, message=message, details=details)


# =============================================================================
# Options
# =============================================================================


class PriceCalculationOptions(FrozenModel):
    """Optional inputs of base price and tariff resolution."""

    department_override_id: Optional[int] = Field(
        default=None,
        description="Department whose factor overrides replace the general ones for this call",
    )
    financial_year: Optional[int] = Field(
        default=None,
        description="Financial year of the factors (derived from the date when omitted)",
    )
    use_cache: bool = Field(default=True, description="Read through the calculation cache")


class CalculationOptions(FrozenModel):
    """Optional inputs of a combined calculation."""

    department_id: Optional[int] = Field(
        default=None,
        description="Department override used when pricing the service",
    )
    financial_year: Optional[int] = Field(
        default=None,
        description="Financial year of the factors (derived from the date when omitted)",
    )
    use_cache: bool = Field(default=True, description="Read and populate the calculation cache")
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Abandon the calculation after this many seconds (settings default when omitted)",
    )
    include_supplementary: bool = Field(
        default=True,
        description="Apply the patient's supplementary policies to the primary remainder",
    )
    supplementary_plan_ids: Optional[tuple[int, ...]] = Field(
        default=None,
        description="Restrict supplementary coverage to these plans",
    )

    def price_options(self) -> PriceCalculationOptions:
        """Options forwarded to pricing and tariff resolution."""
        return PriceCalculationOptions(
            department_override_id=self.department_id,
            financial_year=self.financial_year,
            use_cache=self.use_cache,
        )


# =============================================================================
# Context
# =============================================================================


class InsuranceCalculationContext(FrozenModel):
    """Immutable input threaded through the coverage pipeline."""

    patient_id: int
    service_id: int
    service_category_id: Optional[int] = None
    plan_id: Optional[int] = None
    service_amount: Decimal = Field(..., ge=0)
    calculation_date: date
    patient_age: Optional[int] = None
    patient_gender: Optional[Gender] = None
    financial_year: Optional[int] = None
    department_id: Optional[int] = None

    def for_plan(self, plan_id: int) -> "InsuranceCalculationContext":
        """Derived context targeting another plan."""
        return self.model_copy(update={"plan_id": plan_id})

    def with_amount(self, amount: Decimal) -> "InsuranceCalculationContext":
        """Derived context for another amount."""
        return self.model_copy(update={"service_amount": amount})


# =============================================================================
# Pricing
# =============================================================================


class ResolvedFactor(FrozenModel):
    """Coefficient selected for one component kind."""

    factor_setting_id: int
    kind: ComponentType
    scope: FactorScope
    value: Decimal
    financial_year: int
    effective_from: date
    is_hashtagged: bool = False
    is_frozen: bool = False
    department_id: Optional[int] = None


class ComponentPrice(FrozenModel):
    """Contribution of one component to the base price."""

    component_id: int
    kind: ComponentType
    amount: Decimal
    factor: ResolvedFactor
    contribution: Decimal


class ServicePriceBreakdown(FrozenModel):
    """Base price of a service with the factors that produced it."""

    service_id: int
    as_of_date: date
    financial_year: int
    department_override_id: Optional[int] = None
    base_price: Decimal
    components: tuple[ComponentPrice, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()

    @property
    def applied_factor_ids(self) -> list[int]:
        return [c.factor.factor_setting_id for c in self.components]


class FactorValidationResult(FrozenModel):
    """Which required general factors are missing for a year."""

    financial_year: int
    is_valid: bool
    errors: tuple[str, ...] = ()


# =============================================================================
# Tariffs & Rules
# =============================================================================


class EffectiveTariff(FrozenModel):
    """Price and optional coverage overrides for a (plan, service, date)."""

    plan_id: int
    service_id: int
    as_of_date: date
    price: Decimal
    coverage_percent: Optional[Decimal] = None
    cap: Optional[Decimal] = None
    tariff_id: Optional[int] = None
    source: TariffSource
    applied_factor_ids: tuple[int, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


class TariffStatistics(FrozenModel):
    """Counts of a plan's tariffs effective on a date."""

    plan_id: int
    as_of_date: date
    effective_tariff_count: int = 0
    service_tariff_count: int = 0
    all_services_tariff_count: int = 0
    price_override_count: int = 0
    coverage_override_count: int = 0
    average_coverage_percent: Optional[Decimal] = None


class RuleEvaluation(FrozenModel):
    """Coverage terms derived from business rules and plan defaults."""

    coverage_percent: Decimal
    deductible: Decimal = Decimal("0")
    payment_cap: Optional[Decimal] = None
    supplementary_applicable: bool = True
    applied_rule_ids: tuple[int, ...] = ()


class PaymentLimitCheck(FrozenModel):
    """Insurer share after enforcing the payment cap."""

    requested_share: Decimal
    insurer_share: Decimal
    payment_cap: Optional[Decimal] = None
    excess: Decimal = Decimal("0")

    @property
    def was_clamped(self) -> bool:
        return self.excess > 0


# =============================================================================
# Results
# =============================================================================


class InsuranceCalculationResult(FrozenModel):
    """Split of a service amount between the primary insurer and the patient."""

    plan_id: Optional[int] = None
    patient_insurance_id: Optional[int] = None
    service_amount: Decimal
    coverage_percent: Decimal = Decimal("0")
    deductible: Decimal = Decimal("0")
    payment_cap: Optional[Decimal] = None
    insurer_share: Decimal
    patient_remainder: Decimal
    tariff_id: Optional[int] = None
    applied_rule_ids: tuple[int, ...] = ()
    applied_factor_ids: tuple[int, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


class SupplementaryCoverageResult(FrozenModel):
    """Supplementary insurer share taken from the primary remainder."""

    plan_id: int
    patient_insurance_id: Optional[int] = None
    remainder_before: Decimal
    coverage_percent: Decimal = Decimal("0")
    payment_cap: Optional[Decimal] = None
    insurer_share: Decimal
    remainder_after: Decimal
    is_applied: bool = True
    tariff_id: Optional[int] = None
    applied_rule_ids: tuple[int, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


class SupplementaryOption(FrozenModel):
    """One ranked candidate of a supplementary comparison."""

    rank: int
    result: SupplementaryCoverageResult


class CombinedInsuranceCalculationResult(FrozenModel):
    """Final settlement of one service between payers and the patient."""

    patient_id: int
    service_id: int
    calculation_date: date
    service_amount: Decimal
    primary_insurer_share: Decimal
    supplementary_insurer_share: Decimal
    patient_share: Decimal
    primary: Optional[InsuranceCalculationResult] = None
    supplementary: tuple[SupplementaryCoverageResult, ...] = ()
    applied_factor_ids: tuple[int, ...] = ()
    applied_tariff_ids: tuple[int, ...] = ()
    applied_rule_ids: tuple[int, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    calculated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_insurer_share(self) -> Decimal:
        return self.primary_insurer_share + self.supplementary_insurer_share

    @property
    def is_balanced(self) -> bool:
        """Whether the shares add up to the service amount."""
        return self.total_insurer_share + self.patient_share == self.service_amount

    @property
    def plan_ids(self) -> list[int]:
        ids = [self.primary.plan_id] if self.primary and self.primary.plan_id else []
        return ids + [s.plan_id for s in self.supplementary]


class BatchCalculationResult(FrozenModel):
    """Per-service results with totals equal to their sums."""

    patient_id: int
    calculation_date: date
    results: tuple[CombinedInsuranceCalculationResult, ...]
    total_service_amount: Decimal
    total_primary_insurer_share: Decimal
    total_supplementary_insurer_share: Decimal
    total_patient_share: Decimal

    @property
    def total_insurer_share(self) -> Decimal:
        return self.total_primary_insurer_share + self.total_supplementary_insurer_share


# =============================================================================
# Cache
# =============================================================================


class CacheKey(FrozenModel):
    """Normalized, hashable cache key."""

    bucket: CacheBucket
    parts: tuple[str, ...]

    @classmethod
    def build(cls, bucket: CacheBucket, *parts: Any) -> "CacheKey":
        return cls(bucket=bucket, parts=tuple("" if p is None else str(p) for p in parts))

    def __str__(self) -> str:
        return ":".join((self.bucket.value,) + self.parts)


class CacheInvalidatedEvent(FrozenModel):
    """Broadcast to subscribers after an invalidation."""

    invalidation_type: InvalidationType
    target_id: Optional[int] = None
    epoch: int
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CacheStats(FrozenModel):
    """Cache statistics."""

    entries: int
    max_entries: int
    hits: int
    misses: int
    evictions: int
    invalidations: int
    stale_rejections: int
    epoch: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0
