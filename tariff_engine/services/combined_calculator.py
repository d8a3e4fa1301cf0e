"""
Combined Insurance Calculator.

Orchestrates the full settlement of a service:

1. Resolve the patient's primary policy and the effective tariff
2. Check VALIDATION rules against the amount
3. Primary insurer share
4. Supplementary shares on the remainder, in policy priority order
5. Patient share = what is left

Whole results are cached and tagged with every plan, tariff, service,
financial year and patient they depend on. Every result conserves money:
patient + primary + supplementary == service amount.
"""

import asyncio
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Optional

from tariff_engine.core.config import get_settings
from tariff_engine.core.enums import CacheBucket, DiagnosticCode
from tariff_engine.core.money import ZERO, round_money, sum_money, to_decimal
from tariff_engine.schemas.calculation import (
    BatchCalculationResult,
    CacheKey,
    CalculationOptions,
    CombinedInsuranceCalculationResult,
    Diagnostic,
    EffectiveTariff,
    InsuranceCalculationContext,
    InsuranceCalculationResult,
    SupplementaryCoverageResult,
)
from tariff_engine.schemas.entities import InsurancePlan, Patient, PatientInsurance, Service
from tariff_engine.services.adapters.base import CoverageDataSource
from tariff_engine.services.business_rule_engine import BusinessRuleEngine
from tariff_engine.services.calculation_cache import (
    CalculationCache,
    Tag,
    factors_tag,
    get_calculation_cache,
    patient_tag,
    plan_tag,
    service_tag,
    tariff_tag,
)
from tariff_engine.services.factor_resolver import FactorResolver, financial_year_for
from tariff_engine.services.primary_coverage import PrimaryCoverageCalculator
from tariff_engine.services.service_price_calculator import ServicePriceCalculator
from tariff_engine.services.supplementary_coverage import SupplementaryCoverageCalculator
from tariff_engine.services.tariff_resolver import TariffResolver
from tariff_engine.utils.errors import (
    AmbiguousPrimaryInsuranceError,
    BusinessRuleValidationError,
    CalculationInputError,
    CalculationTimeoutError,
    EntityNotFoundError,
    MoneyConservationError,
)
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)


def result_tags(result: CombinedInsuranceCalculationResult) -> list[Tag]:
    """Plan and tariff tags of a combined result."""
    tags = [plan_tag(plan_id) for plan_id in result.plan_ids]
    tags.extend(tariff_tag(tariff_id) for tariff_id in result.applied_tariff_ids)
    return tags


class CombinedInsuranceCalculator:
    """Primary + supplementary settlement for one or many services."""

    def __init__(
        self,
        data_source: CoverageDataSource,
        tariff_resolver: TariffResolver,
        rule_engine: BusinessRuleEngine,
        primary_calculator: PrimaryCoverageCalculator,
        supplementary_calculator: SupplementaryCoverageCalculator,
        cache: Optional[CalculationCache] = None,
    ):
        self.data_source = data_source
        self.tariff_resolver = tariff_resolver
        self.rule_engine = rule_engine
        self.primary_calculator = primary_calculator
        self.supplementary_calculator = supplementary_calculator
        self.cache = cache or data_source.cache or get_calculation_cache()
        self.settings = get_settings()

    # =========================================================================
    # Input validation
    # =========================================================================

    def _validate_input(
        self, patient_id: int, service_id: int, amount: Optional[Decimal]
    ) -> Optional[Decimal]:
        if patient_id <= 0:
            raise CalculationInputError("patient_id must be positive", patient_id=patient_id)
        if service_id <= 0:
            raise CalculationInputError("service_id must be positive", service_id=service_id)
        if amount is None:
            return None

        try:
            value = to_decimal(amount)
        except (TypeError, InvalidOperation) as e:
            raise CalculationInputError(
                "Service amount is not a decimal number", amount=amount
            ) from e
        if not value.is_finite() or value < ZERO:
            raise CalculationInputError("Service amount must not be negative", amount=amount)
        if value > self.settings.MAX_SERVICE_AMOUNT:
            raise CalculationInputError(
                "Service amount exceeds the maximum",
                amount=amount,
                maximum=self.settings.MAX_SERVICE_AMOUNT,
            )
        return round_money(value)

    def _timeout(self, options: CalculationOptions) -> Optional[float]:
        if options.timeout_seconds is not None:
            return options.timeout_seconds
        return self.settings.CALCULATION_TIMEOUT_SECONDS

    async def _with_timeout(
        self, coro: Awaitable[Any], options: CalculationOptions, **context: Any
    ) -> Any:
        timeout = self._timeout(options)
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Calculation abandoned after {timeout}s: {context}")
            raise CalculationTimeoutError(
                "Calculation did not finish in time", timeout_seconds=timeout, **context
            ) from e

    # =========================================================================
    # Policy selection
    # =========================================================================

    @staticmethod
    def select_primary_policy(
        policies: list[PatientInsurance], on: date
    ) -> tuple[Optional[PatientInsurance], bool]:
        """
        Pick the primary policy for a date.

        Returns:
            (policy, is_valid): the valid primary, else the latest lapsed one
            with is_valid=False, else (None, False)

        Raises:
            AmbiguousPrimaryInsuranceError: More than one valid primary policy
        """
        primaries = [p for p in policies if p.is_primary and not p.is_deleted]
        valid = [p for p in primaries if p.is_valid_on(on)]
        if len(valid) > 1:
            raise AmbiguousPrimaryInsuranceError(
                "Patient has more than one active primary insurance",
                patient_id=valid[0].patient_id,
                patient_insurance_ids=sorted(p.patient_insurance_id for p in valid),
                on=on.isoformat(),
            )
        if valid:
            return valid[0], True

        # Lapsed policies that started on or before the date
        lapsed = [p for p in primaries if p.start_date <= on]
        if lapsed:
            return max(lapsed, key=lambda p: (p.start_date, p.patient_insurance_id)), False
        return None, False

    async def _get_plan(self, plan_id: int) -> InsurancePlan:
        plan = await self.data_source.get_plan(plan_id)
        if plan is None:
            raise EntityNotFoundError("Insurance plan not found", plan_id=plan_id)
        return plan

    # =========================================================================
    # Single calculation
    # =========================================================================

    async def _compute(
        self,
        patient: Patient,
        service: Service,
        amount: Optional[Decimal],
        on: date,
        options: CalculationOptions,
        financial_year: int,
    ) -> CombinedInsuranceCalculationResult:
        price_options = options.price_options().model_copy(
            update={"financial_year": financial_year}
        )
        policies = await self.data_source.list_patient_insurances(patient.patient_id)
        primary_policy, primary_valid = self.select_primary_policy(policies, on)
        primary_plan = await self._get_plan(primary_policy.plan_id) if primary_policy else None

        tariff: Optional[EffectiveTariff] = None
        price_diagnostics: tuple[Diagnostic, ...] = ()
        factor_ids: tuple[int, ...] = ()
        if primary_plan is not None and primary_valid and primary_plan.is_valid_on(on):
            tariff = await self.tariff_resolver.resolve(
                primary_plan.plan_id, service.service_id, on, price_options
            )
            factor_ids = tariff.applied_factor_ids
            if amount is None:
                amount = tariff.price
        elif amount is None:
            breakdown = await self.tariff_resolver.price_calculator.calculate_price_breakdown(
                service, on, options=price_options
            )
            amount = breakdown.base_price
            price_diagnostics = breakdown.diagnostics
            factor_ids = tuple(breakdown.applied_factor_ids)

        context = InsuranceCalculationContext(
            patient_id=patient.patient_id,
            service_id=service.service_id,
            service_category_id=service.service_category_id,
            plan_id=primary_plan.plan_id if primary_plan else None,
            service_amount=amount,
            calculation_date=on,
            patient_age=patient.age_on(on),
            patient_gender=patient.gender,
            financial_year=financial_year,
            department_id=options.department_id,
        )

        validation = await self.rule_engine.validate_business_rules(context)
        if not validation.is_valid:
            raise BusinessRuleValidationError(
                "Service amount rejected by validation rules",
                validation_result=validation,
                patient_id=patient.patient_id,
                service_id=service.service_id,
            )

        # Primary stage
        if primary_policy is None:
            primary = InsuranceCalculationResult(
                service_amount=amount,
                insurer_share=ZERO,
                patient_remainder=amount,
                applied_factor_ids=factor_ids,
                diagnostics=price_diagnostics
                + (
                    Diagnostic.warning(
                        DiagnosticCode.NO_PRIMARY_INSURANCE,
                        f"Patient {patient.patient_id} has no primary insurance",
                        patient_id=patient.patient_id,
                    ),
                ),
            )
        elif tariff is None:
            primary = self.primary_calculator.expired_result(context, primary_policy, primary_plan)
            if price_diagnostics:
                primary = primary.model_copy(
                    update={
                        "diagnostics": price_diagnostics + primary.diagnostics,
                        "applied_factor_ids": factor_ids,
                    }
                )
        else:
            primary = await self.primary_calculator.calculate_primary(
                context, primary_policy, primary_plan, tariff
            )

        # Supplementary stage
        supplementary: list[SupplementaryCoverageResult] = []
        if options.include_supplementary:
            candidates = []
            for policy in policies:
                if policy.is_primary or policy.is_deleted:
                    continue
                if (
                    options.supplementary_plan_ids is not None
                    and policy.plan_id not in options.supplementary_plan_ids
                ):
                    continue
                candidates.append((policy, await self._get_plan(policy.plan_id)))
            supplementary = await self.supplementary_calculator.apply_supplementary_policies(
                context, primary, candidates
            )

        return self._assemble(patient.patient_id, service.service_id, on, amount, primary, supplementary)

    def _assemble(
        self,
        patient_id: int,
        service_id: int,
        on: date,
        amount: Decimal,
        primary: InsuranceCalculationResult,
        supplementary: list[SupplementaryCoverageResult],
    ) -> CombinedInsuranceCalculationResult:
        supplementary_share = sum_money(s.insurer_share for s in supplementary)
        patient_share = supplementary[-1].remainder_after if supplementary else primary.patient_remainder

        shares = [primary.insurer_share, patient_share] + [s.insurer_share for s in supplementary]
        if (
            any(s < ZERO for s in shares)
            or primary.insurer_share + supplementary_share + patient_share != amount
        ):
            raise MoneyConservationError(
                "Shares do not add up to the service amount",
                service_amount=amount,
                primary=primary.insurer_share,
                supplementary=supplementary_share,
                patient=patient_share,
            )

        tariff_ids = [primary.tariff_id] + [s.tariff_id for s in supplementary]
        rule_ids = set(primary.applied_rule_ids)
        diagnostics = list(primary.diagnostics)
        for s in supplementary:
            rule_ids.update(s.applied_rule_ids)
            diagnostics.extend(s.diagnostics)

        return CombinedInsuranceCalculationResult(
            patient_id=patient_id,
            service_id=service_id,
            calculation_date=on,
            service_amount=amount,
            primary_insurer_share=primary.insurer_share,
            supplementary_insurer_share=supplementary_share,
            patient_share=patient_share,
            primary=primary,
            supplementary=tuple(supplementary),
            applied_factor_ids=primary.applied_factor_ids,
            applied_tariff_ids=tuple(sorted({t for t in tariff_ids if t is not None})),
            applied_rule_ids=tuple(sorted(rule_ids)),
            diagnostics=tuple(diagnostics),
        )

    async def _calculate(
        self,
        patient_id: int,
        service_id: int,
        amount: Optional[Decimal],
        on: date,
        options: CalculationOptions,
    ) -> CombinedInsuranceCalculationResult:
        financial_year = options.financial_year or financial_year_for(on)

        async def compute() -> CombinedInsuranceCalculationResult:
            patient = await self.data_source.get_patient(patient_id)
            if patient is None:
                raise EntityNotFoundError("Patient not found", patient_id=patient_id)
            service = await self.data_source.get_service(service_id)
            if service is None:
                raise EntityNotFoundError("Service not found", service_id=service_id)
            return await self._compute(patient, service, amount, on, options, financial_year)

        key = CacheKey.build(
            CacheBucket.CALCULATION,
            patient_id,
            service_id,
            "tariff" if amount is None else amount,
            on.isoformat(),
            financial_year,
            options.department_id,
            options.include_supplementary,
            ",".join(str(p) for p in options.supplementary_plan_ids or ()),
        )
        return await self.cache.get_or_compute(
            key,
            compute,
            tags=[patient_tag(patient_id), service_tag(service_id), factors_tag(financial_year)],
            tags_from_result=result_tags,
            use_cache=options.use_cache,
        )

    async def calculate_combined(
        self,
        patient_id: int,
        service_id: int,
        amount: Optional[Decimal],
        calculation_date: date,
        options: Optional[CalculationOptions] = None,
    ) -> CombinedInsuranceCalculationResult:
        """
        Settle one service between primary, supplementary and patient.

        Args:
            patient_id: Patient receiving the service
            service_id: Service provided
            amount: Service amount (None = primary plan's effective tariff price)
            calculation_date: Date of service
            options: Department override, financial year, cache, timeout, supplementary selection

        Returns:
            CombinedInsuranceCalculationResult whose shares add up to the amount

        Raises:
            CalculationInputError: Malformed input
            CalculationTimeoutError: Timeout expired before a result was produced
            TariffEngineError: Any other fatal condition; no partial result is returned
        """
        options = options or CalculationOptions()
        amount = self._validate_input(patient_id, service_id, amount)
        result = await self._with_timeout(
            self._calculate(patient_id, service_id, amount, calculation_date, options),
            options,
            patient_id=patient_id,
            service_id=service_id,
        )
        logger.info(
            f"Calculated patient={patient_id} service={service_id}: amount={result.service_amount}, "
            f"primary={result.primary_insurer_share}, "
            f"supplementary={result.supplementary_insurer_share}, patient={result.patient_share}"
        )
        return result

    # =========================================================================
    # Batch
    # =========================================================================

    async def _calculate_batch(
        self,
        patient_id: int,
        service_ids: list[int],
        amounts: list[Optional[Decimal]],
        on: date,
        options: CalculationOptions,
    ) -> BatchCalculationResult:
        results = []
        for service_id, amount in zip(service_ids, amounts):
            results.append(await self._calculate(patient_id, service_id, amount, on, options))

        return BatchCalculationResult(
            patient_id=patient_id,
            calculation_date=on,
            results=tuple(results),
            total_service_amount=sum_money(r.service_amount for r in results),
            total_primary_insurer_share=sum_money(r.primary_insurer_share for r in results),
            total_supplementary_insurer_share=sum_money(
                r.supplementary_insurer_share for r in results
            ),
            total_patient_share=sum_money(r.patient_share for r in results),
        )

    async def calculate_combined_batch(
        self,
        patient_id: int,
        service_ids: list[int],
        amounts: Optional[list[Optional[Decimal]]],
        calculation_date: date,
        options: Optional[CalculationOptions] = None,
    ) -> BatchCalculationResult:
        """
        Settle several services independently and total the results.

        Totals are plain sums of the single-service results. Any fatal
        error fails the whole batch.

        Raises:
            CalculationInputError: Lists of different lengths or malformed entries
        """
        options = options or CalculationOptions()
        if amounts is None:
            amounts = [None] * len(service_ids)
        if len(service_ids) != len(amounts):
            raise CalculationInputError(
                "service_ids and amounts must have the same length",
                service_ids=len(service_ids),
                amounts=len(amounts),
            )
        validated = [
            self._validate_input(patient_id, service_id, amount)
            for service_id, amount in zip(service_ids, amounts)
        ]

        batch = await self._with_timeout(
            self._calculate_batch(patient_id, service_ids, validated, calculation_date, options),
            options,
            patient_id=patient_id,
            service_ids=service_ids,
        )
        logger.info(
            f"Calculated batch of {len(batch.results)} services for patient {patient_id}: "
            f"amount={batch.total_service_amount}, insurers={batch.total_insurer_share}, "
            f"patient={batch.total_patient_share}"
        )
        return batch


# =============================================================================
# Factory Functions
# =============================================================================


def create_combined_calculator(
    data_source: CoverageDataSource,
    cache: Optional[CalculationCache] = None,
) -> CombinedInsuranceCalculator:
    """
    Wire the full calculation pipeline over a data source.

    The pipeline reads from the cache the data source invalidates on writes.
    An explicit cache must be that same cache.

    Raises:
        ValueError: cache is not the data source's cache
    """
    if cache is not None and data_source.cache is not None and cache is not data_source.cache:
        raise ValueError("Calculator cache must be the cache the data source invalidates")
    cache = cache or data_source.cache or get_calculation_cache()
    factor_resolver = FactorResolver(data_source, cache)
    price_calculator = ServicePriceCalculator(factor_resolver)
    tariff_resolver = TariffResolver(data_source, price_calculator, cache)
    rule_engine = BusinessRuleEngine(data_source)
    return CombinedInsuranceCalculator(
        data_source=data_source,
        tariff_resolver=tariff_resolver,
        rule_engine=rule_engine,
        primary_calculator=PrimaryCoverageCalculator(rule_engine),
        supplementary_calculator=SupplementaryCoverageCalculator(
            data_source, rule_engine, tariff_resolver
        ),
        cache=cache,
    )
