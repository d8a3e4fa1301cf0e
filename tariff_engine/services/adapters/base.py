"""
Coverage Data Source Adapters.

Abstract read contracts the engine needs from the persistence layer. The
engine only ever holds request-scoped snapshots returned by these calls.
"""

from abc import ABC, abstractmethod
from typing import Optional

from tariff_engine.core.enums import BusinessRuleType, ComponentType
from tariff_engine.schemas.entities import (
    FactorSetting,
    InsurancePlan,
    InsuranceTariff,
    Patient,
    PatientInsurance,
    Service,
)
from tariff_engine.schemas.rules import BusinessRule
from tariff_engine.services.calculation_cache import CalculationCache


class CoverageDataSource(ABC):
    """
    Abstract read-only source of pricing and coverage data.

    Implementations may block on I/O; every method is a coroutine so that a
    calculation timeout can abandon a pending fetch.
    """

    @property
    def cache(self) -> Optional[CalculationCache]:
        """Cache this source invalidates on writes, if any."""
        return None

    @abstractmethod
    async def get_service(self, service_id: int) -> Optional[Service]:
        """Get a service with its components."""
        pass

    @abstractmethod
    async def list_factor_settings(
        self,
        financial_year: int,
        kind: Optional[ComponentType] = None,
    ) -> list[FactorSetting]:
        """List non-deleted factor settings of a financial year."""
        pass

    @abstractmethod
    async def list_tariffs(self, plan_id: int, service_id: int) -> list[InsuranceTariff]:
        """List per-service tariffs of a (plan, service) pair."""
        pass

    @abstractmethod
    async def list_all_service_tariffs(self, plan_id: int) -> list[InsuranceTariff]:
        """List a plan's tariffs flagged as covering all services."""
        pass

    @abstractmethod
    async def list_plan_tariffs(self, plan_id: int) -> list[InsuranceTariff]:
        """List every tariff of a plan."""
        pass

    @abstractmethod
    async def get_plan(self, plan_id: int) -> Optional[InsurancePlan]:
        """Get an insurance plan."""
        pass

    @abstractmethod
    async def get_patient(self, patient_id: int) -> Optional[Patient]:
        """Get a patient."""
        pass

    @abstractmethod
    async def list_patient_insurances(self, patient_id: int) -> list[PatientInsurance]:
        """List every policy of a patient, valid or not."""
        pass

    @abstractmethod
    async def list_business_rules(
        self,
        rule_type: Optional[BusinessRuleType] = None,
        plan_id: Optional[int] = None,
        service_category_id: Optional[int] = None,
    ) -> list[BusinessRule]:
        """
        List rules that may apply to a plan and service category.

        Global rules are always returned; plan and service-category rules
        only when their id matches.
        """
        pass


class FactorSettingRepository(ABC):
    """Write contract for coefficient records."""

    @property
    def cache(self) -> Optional[CalculationCache]:
        """Cache this repository invalidates on writes, if any."""
        return None

    @abstractmethod
    async def get_factor_setting(self, factor_setting_id: int) -> Optional[FactorSetting]:
        """Get a factor setting, including deleted ones."""
        pass

    @abstractmethod
    async def list_year_factor_settings(self, financial_year: int) -> list[FactorSetting]:
        """List every record of a financial year, including deleted ones."""
        pass

    @abstractmethod
    async def save_factor_settings(self, settings: list[FactorSetting]) -> None:
        """Commit new or changed records."""
        pass

    @abstractmethod
    async def next_factor_setting_id(self) -> int:
        """Allocate an id for a new record."""
        pass
