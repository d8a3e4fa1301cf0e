"""
In-Memory Coverage Data Source.

Dictionary-backed implementation of the read contracts, used in demo mode
and in tests. Its write methods follow the invalidate-then-commit ordering:
the calculation cache is invalidated before the change becomes visible to
readers.
"""

from typing import Any, Optional

from tariff_engine.core.enums import BusinessRuleType, ComponentType, RuleScope
from tariff_engine.schemas.entities import (
    FactorSetting,
    InsurancePlan,
    InsuranceTariff,
    Patient,
    PatientInsurance,
    Service,
)
from tariff_engine.schemas.rules import BusinessRule
from tariff_engine.services.adapters.base import CoverageDataSource, FactorSettingRepository
from tariff_engine.services.calculation_cache import CalculationCache, get_calculation_cache
from tariff_engine.utils.errors import EntityNotFoundError
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)

# Tariff fields whose change cannot alter which tariff is selected
_TARIFF_VALUE_FIELDS = frozenset({"tariff_price", "coverage_percent", "max_payment"})


class InMemoryCoverageDataSource(CoverageDataSource, FactorSettingRepository):
    """
    Coverage data held in dictionaries.

    Reads return the stored frozen snapshots; writes replace them.
    """

    def __init__(self, cache: Optional[CalculationCache] = None):
        """
        Initialize the data source.

        Args:
            cache: Cache to invalidate on writes (singleton when omitted)
        """
        self._cache = cache or get_calculation_cache()
        self._services: dict[int, Service] = {}
        self._factor_settings: dict[int, FactorSetting] = {}
        self._plans: dict[int, InsurancePlan] = {}
        self._tariffs: dict[int, InsuranceTariff] = {}
        self._patients: dict[int, Patient] = {}
        self._patient_insurances: dict[int, PatientInsurance] = {}
        self._rules: dict[int, BusinessRule] = {}

    @property
    def cache(self) -> CalculationCache:
        return self._cache

    def seed(
        self,
        services: Optional[list[Service]] = None,
        factor_settings: Optional[list[FactorSetting]] = None,
        plans: Optional[list[InsurancePlan]] = None,
        tariffs: Optional[list[InsuranceTariff]] = None,
        patients: Optional[list[Patient]] = None,
        patient_insurances: Optional[list[PatientInsurance]] = None,
        rules: Optional[list[BusinessRule]] = None,
    ) -> None:
        """Load initial data and drop everything cached."""
        self._cache.invalidate_all(reason="seed")
        for service in services or []:
            self._services[service.service_id] = service
        for setting in factor_settings or []:
            self._factor_settings[setting.factor_setting_id] = setting
        for plan in plans or []:
            self._plans[plan.plan_id] = plan
        for tariff in tariffs or []:
            self._tariffs[tariff.tariff_id] = tariff
        for patient in patients or []:
            self._patients[patient.patient_id] = patient
        for policy in patient_insurances or []:
            self._patient_insurances[policy.patient_insurance_id] = policy
        for rule in rules or []:
            self._rules[rule.rule_id] = rule

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_service(self, service_id: int) -> Optional[Service]:
        return self._services.get(service_id)

    async def list_factor_settings(
        self,
        financial_year: int,
        kind: Optional[ComponentType] = None,
    ) -> list[FactorSetting]:
        return [
            s
            for s in self._factor_settings.values()
            if s.financial_year == financial_year
            and not s.is_deleted
            and (kind is None or s.kind == kind)
        ]

    async def list_tariffs(self, plan_id: int, service_id: int) -> list[InsuranceTariff]:
        return [
            t
            for t in self._tariffs.values()
            if t.plan_id == plan_id and t.service_id == service_id and not t.covers_all_services
        ]

    async def list_all_service_tariffs(self, plan_id: int) -> list[InsuranceTariff]:
        return [t for t in self._tariffs.values() if t.plan_id == plan_id and t.covers_all_services]

    async def list_plan_tariffs(self, plan_id: int) -> list[InsuranceTariff]:
        return [t for t in self._tariffs.values() if t.plan_id == plan_id]

    async def get_plan(self, plan_id: int) -> Optional[InsurancePlan]:
        return self._plans.get(plan_id)

    async def get_patient(self, patient_id: int) -> Optional[Patient]:
        return self._patients.get(patient_id)

    async def list_patient_insurances(self, patient_id: int) -> list[PatientInsurance]:
        return [p for p in self._patient_insurances.values() if p.patient_id == patient_id]

    async def list_business_rules(
        self,
        rule_type: Optional[BusinessRuleType] = None,
        plan_id: Optional[int] = None,
        service_category_id: Optional[int] = None,
    ) -> list[BusinessRule]:
        rules = []
        for rule in self._rules.values():
            if rule_type is not None and rule.rule_type != rule_type:
                continue
            if rule.scope == RuleScope.PLAN and rule.plan_id != plan_id:
                continue
            if rule.scope == RuleScope.SERVICE_CATEGORY and (
                rule.service_category_id != service_category_id
            ):
                continue
            rules.append(rule)
        return rules

    # =========================================================================
    # Factor setting repository
    # =========================================================================

    async def get_factor_setting(self, factor_setting_id: int) -> Optional[FactorSetting]:
        return self._factor_settings.get(factor_setting_id)

    async def list_year_factor_settings(self, financial_year: int) -> list[FactorSetting]:
        return [s for s in self._factor_settings.values() if s.financial_year == financial_year]

    async def save_factor_settings(self, settings: list[FactorSetting]) -> None:
        for setting in settings:
            self._factor_settings[setting.factor_setting_id] = setting

    async def next_factor_setting_id(self) -> int:
        return max(self._factor_settings, default=0) + 1

    # =========================================================================
    # Writes (invalidate, then commit)
    # =========================================================================

    async def upsert_service(self, service: Service) -> Service:
        """Create or replace a service and its components."""
        self._cache.invalidate_by_service(service.service_id, reason="service changed")
        self._services[service.service_id] = service
        return service

    async def upsert_factor_setting(self, setting: FactorSetting) -> FactorSetting:
        """Create or replace a factor setting without freeze checks (seeding/admin)."""
        self._cache.invalidate_factors(setting.financial_year, reason="factor setting changed")
        self._factor_settings[setting.factor_setting_id] = setting
        return setting

    async def upsert_plan(self, plan: InsurancePlan) -> InsurancePlan:
        """Create or replace a plan."""
        self._cache.invalidate_by_plan(plan.plan_id, reason="plan changed")
        self._plans[plan.plan_id] = plan
        return plan

    async def upsert_tariff(self, tariff: InsuranceTariff) -> InsuranceTariff:
        """Create or replace a tariff."""
        previous = self._tariffs.get(tariff.tariff_id)
        if previous is not None:
            self._cache.invalidate_tariff(previous.tariff_id, reason="tariff replaced")
            if previous.plan_id != tariff.plan_id:
                self._cache.invalidate_by_plan(previous.plan_id, reason="tariff moved")
        # A new or re-targeted tariff may shadow the computed price of any service
        self._cache.invalidate_by_plan(tariff.plan_id, reason="tariff changed")
        self._tariffs[tariff.tariff_id] = tariff
        return tariff

    async def update_tariff(self, tariff_id: int, **updates: Any) -> InsuranceTariff:
        """
        Update fields of an existing tariff.

        Value-only edits (price, coverage, cap) invalidate the tariff; edits
        that can change which tariff is selected also invalidate the plan.
        """
        current = self._tariffs.get(tariff_id)
        if current is None:
            raise EntityNotFoundError("Tariff not found", tariff_id=tariff_id)

        updated = InsuranceTariff.model_validate({**current.model_dump(), **updates})

        self._cache.invalidate_tariff(tariff_id, reason="tariff updated")
        if not set(updates) <= _TARIFF_VALUE_FIELDS:
            self._cache.invalidate_by_plan(current.plan_id, reason="tariff selection changed")
            if updated.plan_id != current.plan_id:
                self._cache.invalidate_by_plan(updated.plan_id, reason="tariff moved")
        self._tariffs[tariff_id] = updated
        logger.debug(f"Tariff {tariff_id} updated: {sorted(updates)}")
        return updated

    async def delete_tariff(self, tariff_id: int) -> bool:
        """Soft-delete a tariff."""
        current = self._tariffs.get(tariff_id)
        if current is None:
            return False
        self._cache.invalidate_tariff(tariff_id, reason="tariff deleted")
        self._cache.invalidate_by_plan(current.plan_id, reason="tariff deleted")
        self._tariffs[tariff_id] = current.model_copy(update={"is_deleted": True})
        return True

    async def upsert_patient(self, patient: Patient) -> Patient:
        """Create or replace a patient."""
        self._cache.invalidate_by_patient(patient.patient_id, reason="patient changed")
        self._patients[patient.patient_id] = patient
        return patient

    async def upsert_patient_insurance(self, policy: PatientInsurance) -> PatientInsurance:
        """Create or replace a patient's policy."""
        self._cache.invalidate_by_patient(policy.patient_id, reason="patient insurance changed")
        self._patient_insurances[policy.patient_insurance_id] = policy
        return policy

    async def upsert_business_rule(self, rule: BusinessRule) -> BusinessRule:
        """Create or replace a business rule."""
        previous = self._rules.get(rule.rule_id)
        plan_ids = {r.plan_id for r in (previous, rule) if r is not None}
        if None in plan_ids or any(r.scope != RuleScope.PLAN for r in (previous, rule) if r):
            # Global and category rules may touch any plan
            self._cache.invalidate_all(reason="business rule changed")
        else:
            for plan_id in plan_ids:
                self._cache.invalidate_by_plan(plan_id, reason="business rule changed")
        self._rules[rule.rule_id] = rule
        return rule
