"""
Pydantic Schemas for Business Rules.

Rules are a closed, typed set: every condition and every effect is one
variant of a discriminated union keyed on ``kind``. Range checks are left to
``BusinessRuleEngine.validate_rules`` so that a bad rule set can be reported
as a whole instead of failing on the first record.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from tariff_engine.core.enums import (
    BusinessRuleType,
    ConditionKind,
    EffectKind,
    Gender,
    RuleScope,
)


class RuleModel(BaseModel):
    """Base for immutable rule parts."""

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Conditions
# =============================================================================


class PatientAgeCondition(RuleModel):
    """Patient age in whole years on the calculation date."""

    kind: Literal[ConditionKind.PATIENT_AGE] = ConditionKind.PATIENT_AGE
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    equals: Optional[int] = None


class PatientGenderCondition(RuleModel):
    """Patient gender must equal the configured one."""

    kind: Literal[ConditionKind.PATIENT_GENDER] = ConditionKind.PATIENT_GENDER
    gender: Gender


class ServiceAmountCondition(RuleModel):
    """Service amount thresholds (inclusive)."""

    kind: Literal[ConditionKind.SERVICE_AMOUNT] = ConditionKind.SERVICE_AMOUNT
    min_value: Optional[Decimal] = None
    max_value: Optional[Decimal] = None
    equals: Optional[Decimal] = None


class ServiceCategoryCondition(RuleModel):
    """Service category must be one of the listed ids."""

    kind: Literal[ConditionKind.SERVICE_CATEGORY] = ConditionKind.SERVICE_CATEGORY
    service_category_ids: tuple[int, ...]


class InsurancePlanCondition(RuleModel):
    """Plan must be one of the listed ids."""

    kind: Literal[ConditionKind.INSURANCE_PLAN] = ConditionKind.INSURANCE_PLAN
    plan_ids: tuple[int, ...]


RuleCondition = Annotated[
    Union[
        PatientAgeCondition,
        PatientGenderCondition,
        ServiceAmountCondition,
        ServiceCategoryCondition,
        InsurancePlanCondition,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# Effects
# =============================================================================


class CoveragePercentEffect(RuleModel):
    """Set the coverage percentage."""

    kind: Literal[EffectKind.COVERAGE_PERCENT] = EffectKind.COVERAGE_PERCENT
    percent: Decimal


class DeductibleAmountEffect(RuleModel):
    """Set a fixed deductible."""

    kind: Literal[EffectKind.DEDUCTIBLE_AMOUNT] = EffectKind.DEDUCTIBLE_AMOUNT
    amount: Decimal


class DeductiblePercentEffect(RuleModel):
    """Deductible as a percentage of the service amount, optionally bounded."""

    kind: Literal[EffectKind.DEDUCTIBLE_PERCENT] = EffectKind.DEDUCTIBLE_PERCENT
    percent: Decimal
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


class PaymentCapEffect(RuleModel):
    """Set the maximum insurer payment."""

    kind: Literal[EffectKind.PAYMENT_CAP] = EffectKind.PAYMENT_CAP
    amount: Decimal


class PaymentLimitValidationEffect(RuleModel):
    """Reject service amounts above the limit."""

    kind: Literal[EffectKind.PAYMENT_LIMIT_VALIDATION] = EffectKind.PAYMENT_LIMIT_VALIDATION
    limit: Decimal
    message: Optional[str] = None


class SupplementaryApplicableEffect(RuleModel):
    """Enable or disable a supplementary plan for matching contexts."""

    kind: Literal[EffectKind.SUPPLEMENTARY_APPLICABLE] = EffectKind.SUPPLEMENTARY_APPLICABLE
    applicable: bool


RuleEffect = Annotated[
    Union[
        CoveragePercentEffect,
        DeductibleAmountEffect,
        DeductiblePercentEffect,
        PaymentCapEffect,
        PaymentLimitValidationEffect,
        SupplementaryApplicableEffect,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# Rule Definition
# =============================================================================


class BusinessRule(RuleModel):
    """A complete business rule definition."""

    rule_id: int
    name: str = ""
    description: Optional[str] = None
    rule_type: BusinessRuleType
    scope: RuleScope = RuleScope.GLOBAL
    plan_id: Optional[int] = None
    service_category_id: Optional[int] = None
    priority: int = Field(default=0, description="Higher wins among rules of equal scope")
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    # Conditions - ALL must match for the rule to fire
    conditions: tuple[RuleCondition, ...] = ()
    effect: RuleEffect

    def is_effective_on(self, on: date) -> bool:
        """Whether the rule is active on a date."""
        if not self.is_active:
            return False
        if self.start_date is not None and on < self.start_date:
            return False
        if self.end_date is not None and on > self.end_date:
            return False
        return True


class BusinessRuleValidationResult(BaseModel):
    """Outcome of validating a rule set or a calculation context."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    # Rules whose problems concern coverage ranges
    coverage_range_rule_ids: list[int] = Field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
