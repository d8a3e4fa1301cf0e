"""
Pydantic Schemas for the entities read by the engine.

These are request-scoped, read-only snapshots of records owned by the
persistence layer. They are frozen so that cached copies can be shared
between concurrent calculations.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tariff_engine.core.enums import ComponentType, FactorScope, Gender, InsuranceTier


class EntitySnapshot(BaseModel):
    """Base for immutable entity snapshots."""

    model_config = ConfigDict(frozen=True)


def _window_covers(valid_from: Optional[date], valid_to: Optional[date], on: date) -> bool:
    if valid_from is not None and on < valid_from:
        return False
    if valid_to is not None and on > valid_to:
        return False
    return True


# =============================================================================
# Services & Coefficients
# =============================================================================


class ServiceComponent(EntitySnapshot):
    """Technical or professional part of a service."""

    component_id: int
    service_id: int
    kind: ComponentType
    amount: Decimal = Field(..., ge=0, description="Raw unit amount before the factor")
    is_active: bool = True
    is_deleted: bool = False

    @property
    def is_participating(self) -> bool:
        """Whether the component takes part in pricing."""
        return self.is_active and not self.is_deleted


class Service(EntitySnapshot):
    """A billable medical service."""

    service_id: int
    title: str = ""
    service_code: str = ""
    service_category_id: Optional[int] = None
    department_id: Optional[int] = None
    is_hashtagged: bool = False
    factor_scope: FactorScope = Field(
        default=FactorScope.GENERAL,
        description="Scope hint used when resolving this service's factors",
    )
    components: tuple[ServiceComponent, ...] = ()

    def participating_components(self, kind: ComponentType) -> list[ServiceComponent]:
        """Active, non-deleted components of one kind."""
        return [c for c in self.components if c.kind == kind and c.is_participating]


class FactorSetting(EntitySnapshot):
    """Yearly, scoped monetary coefficient for one component kind."""

    factor_setting_id: int
    kind: ComponentType
    scope: FactorScope = FactorScope.GENERAL
    department_id: Optional[int] = None
    is_hashtagged: bool = False
    value: Decimal = Field(..., gt=0)
    financial_year: int
    effective_from: date
    effective_to: Optional[date] = None
    is_active: bool = True
    is_deleted: bool = False
    is_frozen: bool = False
    frozen_at: Optional[datetime] = None
    frozen_by: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_scope(self) -> "FactorSetting":
        if self.scope == FactorScope.DEPARTMENT and self.department_id is None:
            raise ValueError("Department-scoped factor settings need a department_id")
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to is before effective_from")
        return self

    def is_effective_on(self, on: date) -> bool:
        """Whether the record's effective window covers a date."""
        return _window_covers(self.effective_from, self.effective_to, on)


# =============================================================================
# Insurance
# =============================================================================


class InsurancePlan(EntitySnapshot):
    """Primary or supplementary insurance plan."""

    plan_id: int
    provider_id: Optional[int] = None
    plan_code: str = ""
    name: str = ""
    tier: InsuranceTier = InsuranceTier.PRIMARY
    coverage_percent: Decimal = Field(default=Decimal("0"), description="Default coverage")
    deductible: Decimal = Field(default=Decimal("0"), description="Default fixed deductible")
    max_payment: Optional[Decimal] = Field(default=None, description="Default payment cap")
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    is_active: bool = True

    def is_valid_on(self, on: date) -> bool:
        """Whether the plan is usable on a date."""
        return self.is_active and _window_covers(self.valid_from, self.valid_to, on)


class InsuranceTariff(EntitySnapshot):
    """Plan-specific override of price and/or coverage for a service."""

    tariff_id: int
    plan_id: int
    service_id: Optional[int] = None
    covers_all_services: bool = False
    tariff_price: Optional[Decimal] = None
    coverage_percent: Optional[Decimal] = None
    max_payment: Optional[Decimal] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    is_active: bool = True
    is_deleted: bool = False

    @model_validator(mode="after")
    def _check_target(self) -> "InsuranceTariff":
        if self.service_id is None and not self.covers_all_services:
            raise ValueError("A tariff needs a service_id or covers_all_services=True")
        return self

    def is_effective_on(self, on: date) -> bool:
        """Whether the tariff takes part in resolution on a date."""
        return (
            self.is_active
            and not self.is_deleted
            and _window_covers(self.valid_from, self.valid_to, on)
        )


class Patient(EntitySnapshot):
    """Patient attributes used by rule conditions."""

    patient_id: int
    birth_date: Optional[date] = None
    gender: Optional[Gender] = None

    def age_on(self, on: date) -> Optional[int]:
        """Age in whole years on a date."""
        if self.birth_date is None:
            return None
        had_birthday = (on.month, on.day) >= (self.birth_date.month, self.birth_date.day)
        return on.year - self.birth_date.year - (0 if had_birthday else 1)


class PatientInsurance(EntitySnapshot):
    """Link between a patient and one insurance plan."""

    patient_insurance_id: int
    patient_id: int
    plan_id: int
    is_primary: bool = False
    priority: int = Field(default=1, description="Supplementary order, lower applies first")
    policy_number: str = ""
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True
    is_deleted: bool = False

    def is_valid_on(self, on: date) -> bool:
        """Whether the policy covers a date."""
        return (
            self.is_active
            and not self.is_deleted
            and _window_covers(self.start_date, self.end_date, on)
        )
