"""
Tariff Resolver.

Finds the effective tariff for a (plan, service, date):

1. Per-service tariffs whose window covers the date
2. Otherwise the plan's "covers all services" tariffs
3. Otherwise the computed base price and the plan's defaults

Exactly one tariff may be selected from the group in use; two overlapping
records are data corruption and are refused rather than guessed between.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from tariff_engine.core.enums import CacheBucket, TariffSource
from tariff_engine.core.money import HUNDRED, ZERO, round_money
from tariff_engine.schemas.calculation import (
    CacheKey,
    EffectiveTariff,
    PriceCalculationOptions,
    TariffStatistics,
)
from tariff_engine.schemas.entities import InsuranceTariff
from tariff_engine.services.adapters.base import CoverageDataSource
from tariff_engine.services.calculation_cache import (
    CalculationCache,
    factors_tag,
    get_calculation_cache,
    plan_tag,
    service_tag,
    tariff_tag,
)
from tariff_engine.services.factor_resolver import financial_year_for
from tariff_engine.services.service_price_calculator import ServicePriceCalculator
from tariff_engine.utils.errors import (
    AmbiguousTariffError,
    EntityNotFoundError,
    InvalidCoverageRangeError,
    InvalidTariffError,
)
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)


def validate_tariff(tariff: InsuranceTariff) -> None:
    """
    Reject tariffs configured outside their valid ranges.

    Raises:
        InvalidCoverageRangeError: Coverage outside [0, 100]
        InvalidTariffError: Negative price or cap
    """
    if tariff.coverage_percent is not None and not (
        ZERO <= tariff.coverage_percent <= HUNDRED
    ):
        raise InvalidCoverageRangeError(
            "Tariff coverage percent is outside [0, 100]",
            tariff_id=tariff.tariff_id,
            coverage_percent=tariff.coverage_percent,
        )
    if tariff.tariff_price is not None and tariff.tariff_price < ZERO:
        raise InvalidTariffError(
            "Tariff price is negative", tariff_id=tariff.tariff_id, price=tariff.tariff_price
        )
    if tariff.max_payment is not None and tariff.max_payment < ZERO:
        raise InvalidTariffError(
            "Tariff payment cap is negative",
            tariff_id=tariff.tariff_id,
            max_payment=tariff.max_payment,
        )


class TariffResolver:
    """Resolves effective price and coverage overrides for a plan and service."""

    def __init__(
        self,
        data_source: CoverageDataSource,
        price_calculator: ServicePriceCalculator,
        cache: Optional[CalculationCache] = None,
    ):
        self.data_source = data_source
        self.price_calculator = price_calculator
        self.cache = cache or data_source.cache or get_calculation_cache()

    async def select_tariff(
        self, plan_id: int, service_id: int, as_of_date: date
    ) -> tuple[Optional[InsuranceTariff], TariffSource]:
        """
        Select the single effective tariff, if any.

        Raises:
            AmbiguousTariffError: Two effective tariffs in the group in use
        """
        per_service = [
            t
            for t in await self.data_source.list_tariffs(plan_id, service_id)
            if t.is_effective_on(as_of_date)
        ]
        if per_service:
            group, source = per_service, TariffSource.SERVICE_TARIFF
        else:
            group = [
                t
                for t in await self.data_source.list_all_service_tariffs(plan_id)
                if t.is_effective_on(as_of_date)
            ]
            source = TariffSource.ALL_SERVICES_TARIFF

        if len(group) > 1:
            raise AmbiguousTariffError(
                "More than one effective tariff for the plan and service",
                plan_id=plan_id,
                service_id=service_id,
                as_of_date=as_of_date.isoformat(),
                tariff_ids=sorted(t.tariff_id for t in group),
            )
        if not group:
            return None, TariffSource.COMPUTED
        return group[0], source

    async def _resolve(
        self,
        plan_id: int,
        service_id: int,
        as_of_date: date,
        options: PriceCalculationOptions,
    ) -> EffectiveTariff:
        service = await self.data_source.get_service(service_id)
        if service is None:
            raise EntityNotFoundError("Service not found", service_id=service_id)

        tariff, source = await self.select_tariff(plan_id, service_id, as_of_date)
        if tariff is not None:
            validate_tariff(tariff)

        if tariff is not None and tariff.tariff_price is not None:
            # Explicit price wins over the computed one
            return EffectiveTariff(
                plan_id=plan_id,
                service_id=service_id,
                as_of_date=as_of_date,
                price=round_money(tariff.tariff_price),
                coverage_percent=tariff.coverage_percent,
                cap=tariff.max_payment,
                tariff_id=tariff.tariff_id,
                source=source,
            )

        breakdown = await self.price_calculator.calculate_price_breakdown(
            service, as_of_date, options=options
        )
        return EffectiveTariff(
            plan_id=plan_id,
            service_id=service_id,
            as_of_date=as_of_date,
            price=breakdown.base_price,
            coverage_percent=tariff.coverage_percent if tariff else None,
            cap=tariff.max_payment if tariff else None,
            tariff_id=tariff.tariff_id if tariff else None,
            source=source,
            applied_factor_ids=tuple(breakdown.applied_factor_ids),
            diagnostics=breakdown.diagnostics,
        )

    async def resolve(
        self,
        plan_id: int,
        service_id: int,
        as_of_date: date,
        options: Optional[PriceCalculationOptions] = None,
    ) -> EffectiveTariff:
        """
        Resolve the effective tariff.

        Args:
            plan_id: Insurance plan
            service_id: Service being priced
            as_of_date: Date the tariff must be effective on
            options: Department override, financial year and cache usage

        Returns:
            EffectiveTariff with price and optional coverage/cap overrides

        Raises:
            AmbiguousTariffError: Overlapping tariffs for the pair
            InvalidCoverageRangeError: Selected tariff coverage outside [0, 100]
            InvalidTariffError: Selected tariff has a negative price or cap
            MissingFactorSettingError: Computed price needs a missing factor
        """
        options = options or PriceCalculationOptions()
        financial_year = options.financial_year or financial_year_for(as_of_date)
        key = CacheKey.build(
            CacheBucket.TARIFF,
            plan_id,
            service_id,
            as_of_date.isoformat(),
            financial_year,
            options.department_override_id,
        )

        def result_tags(result: EffectiveTariff) -> list:
            return [tariff_tag(result.tariff_id)] if result.tariff_id is not None else []

        effective = await self.cache.get_or_compute(
            key,
            lambda: self._resolve(plan_id, service_id, as_of_date, options),
            tags=[plan_tag(plan_id), service_tag(service_id), factors_tag(financial_year)],
            tags_from_result=result_tags,
            use_cache=options.use_cache,
        )
        logger.debug(
            f"Tariff for plan={plan_id} service={service_id}: price={effective.price}, "
            f"source={effective.source.value}, tariff_id={effective.tariff_id}"
        )
        return effective

    async def get_tariff_statistics(
        self, plan_id: int, as_of_date: date, use_cache: bool = True
    ) -> TariffStatistics:
        """Summarize a plan's tariffs effective on a date."""

        async def compute() -> TariffStatistics:
            tariffs = [
                t
                for t in await self.data_source.list_plan_tariffs(plan_id)
                if t.is_effective_on(as_of_date)
            ]
            coverages = [t.coverage_percent for t in tariffs if t.coverage_percent is not None]
            average: Optional[Decimal] = None
            if coverages:
                average = sum(coverages, ZERO) / Decimal(len(coverages))
            return TariffStatistics(
                plan_id=plan_id,
                as_of_date=as_of_date,
                effective_tariff_count=len(tariffs),
                service_tariff_count=sum(1 for t in tariffs if not t.covers_all_services),
                all_services_tariff_count=sum(1 for t in tariffs if t.covers_all_services),
                price_override_count=sum(1 for t in tariffs if t.tariff_price is not None),
                coverage_override_count=len(coverages),
                average_coverage_percent=average,
            )

        key = CacheKey.build(CacheBucket.STATISTICS, plan_id, as_of_date.isoformat())
        return await self.cache.get_or_compute(
            key, compute, tags=[plan_tag(plan_id)], use_cache=use_cache
        )
