"""
Combined Insurance Calculator Tests.

Tests for:
- Full primary + supplementary settlement of the reference services
- Policy selection (missing, lapsed, ambiguous primary)
- Batch totals
- Input validation, timeouts and validation rules
- Cache consistency after tariff and policy edits
- Money conservation as a property
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from conftest import CALCULATION_DATE, default_factors, make_service
from tariff_engine.core.enums import BusinessRuleType, DiagnosticCode, InsuranceTier
from tariff_engine.schemas.calculation import CalculationOptions
from tariff_engine.schemas.entities import (
    InsurancePlan,
    InsuranceTariff,
    Patient,
    PatientInsurance,
)
from tariff_engine.schemas.rules import BusinessRule, PaymentLimitValidationEffect
from tariff_engine.services.adapters.in_memory import InMemoryCoverageDataSource
from tariff_engine.services.calculation_cache import CalculationCache
from tariff_engine.services.combined_calculator import (
    CombinedInsuranceCalculator,
    create_combined_calculator,
)
from tariff_engine.utils.errors import (
    AmbiguousPrimaryInsuranceError,
    BusinessRuleValidationError,
    CalculationInputError,
    CalculationTimeoutError,
    EntityNotFoundError,
)


def codes(result) -> list[DiagnosticCode]:
    return [d.code for d in result.diagnostics]


@pytest.mark.unit
class TestCombinedSettlement:
    """Test the reference settlement"""

    @pytest.mark.asyncio
    async def test_primary_and_supplementary(self, calculator):
        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert result.service_amount == Decimal("900000")
        assert result.primary_insurer_share == Decimal("630000")
        assert result.supplementary_insurer_share == Decimal("100000")
        assert result.patient_share == Decimal("170000")
        assert result.is_balanced
        assert result.plan_ids == [1, 2]
        assert result.applied_factor_ids == (1, 2)
        assert DiagnosticCode.PAYMENT_CAP_EXCEEDED in codes(result)

    @pytest.mark.asyncio
    async def test_explicit_amount(self, calculator):
        result = await calculator.calculate_combined(1, 101, Decimal("900000"), CALCULATION_DATE)

        assert result.primary_insurer_share == Decimal("630000")
        assert result.patient_share == Decimal("170000")

    @pytest.mark.asyncio
    async def test_amount_rounded_to_currency_unit(self, calculator):
        result = await calculator.calculate_combined(1, 101, "1000.5", CALCULATION_DATE)

        assert result.service_amount == Decimal("1001")
        assert result.is_balanced

    @pytest.mark.asyncio
    async def test_primary_only(self, calculator):
        options = CalculationOptions(include_supplementary=False)

        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE, options)

        assert result.supplementary == ()
        assert result.patient_share == Decimal("270000")

    @pytest.mark.asyncio
    async def test_supplementary_plan_filter(self, calculator):
        options = CalculationOptions(supplementary_plan_ids=(99,))

        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE, options)

        assert result.supplementary_insurer_share == Decimal("0")

    @pytest.mark.asyncio
    async def test_department_override(self, calculator):
        options = CalculationOptions(department_id=7)

        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE, options)

        # 500,000 x 1.4 + 300,000 x 1.0
        assert result.service_amount == Decimal("1000000")
        assert result.primary_insurer_share == Decimal("700000")
        assert result.patient_share == Decimal("200000")

    @pytest.mark.asyncio
    async def test_unknown_patient_and_service(self, calculator):
        with pytest.raises(EntityNotFoundError):
            await calculator.calculate_combined(99, 101, None, CALCULATION_DATE)
        with pytest.raises(EntityNotFoundError):
            await calculator.calculate_combined(1, 999, None, CALCULATION_DATE)


@pytest.mark.unit
class TestPrimaryPolicySelection:
    """Test missing, lapsed and ambiguous primary policies"""

    @pytest.mark.asyncio
    async def test_no_primary_insurance(self, calculator, data_source):
        await data_source.upsert_patient(Patient(patient_id=2))
        await data_source.upsert_patient_insurance(
            PatientInsurance(
                patient_insurance_id=21, patient_id=2, plan_id=2, start_date=date(2025, 1, 1)
            )
        )

        result = await calculator.calculate_combined(2, 101, None, CALCULATION_DATE)

        assert result.primary_insurer_share == Decimal("0")
        # Supplementary applies to the full amount, capped at 100,000
        assert result.supplementary_insurer_share == Decimal("100000")
        assert result.patient_share == Decimal("800000")
        assert DiagnosticCode.NO_PRIMARY_INSURANCE in codes(result)

    @pytest.mark.asyncio
    async def test_lapsed_primary(self, calculator, data_source):
        lapsed = (await data_source.list_patient_insurances(1))[0].model_copy(
            update={"end_date": date(2025, 3, 31)}
        )
        await data_source.upsert_patient_insurance(lapsed)

        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert result.primary_insurer_share == Decimal("0")
        assert result.primary.plan_id == 1
        assert DiagnosticCode.INSURANCE_EXPIRED in codes(result)
        assert result.patient_share == Decimal("800000")

    @pytest.mark.asyncio
    async def test_ambiguous_primary(self, calculator, data_source):
        await data_source.upsert_patient_insurance(
            PatientInsurance(
                patient_insurance_id=13,
                patient_id=1,
                plan_id=1,
                is_primary=True,
                start_date=date(2025, 1, 1),
            )
        )

        with pytest.raises(AmbiguousPrimaryInsuranceError) as exc_info:
            await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert exc_info.value.context["patient_insurance_ids"] == [11, 13]

    def test_select_primary_policy_prefers_valid(self):
        valid = PatientInsurance(
            patient_insurance_id=1, patient_id=1, plan_id=1, is_primary=True, start_date=date(2025, 1, 1)
        )
        old = valid.model_copy(
            update={
                "patient_insurance_id": 2,
                "start_date": date(2020, 1, 1),
                "end_date": date(2020, 12, 31),
            }
        )

        assert CombinedInsuranceCalculator.select_primary_policy([old, valid], CALCULATION_DATE) == (
            valid,
            True,
        )
        assert CombinedInsuranceCalculator.select_primary_policy([old], CALCULATION_DATE) == (
            old,
            False,
        )
        assert CombinedInsuranceCalculator.select_primary_policy([], CALCULATION_DATE) == (
            None,
            False,
        )


@pytest.mark.unit
class TestBatch:
    """Test batch settlement"""

    @pytest.mark.asyncio
    async def test_batch_totals(self, calculator):
        batch = await calculator.calculate_combined_batch(1, [101, 102], None, CALCULATION_DATE)

        assert len(batch.results) == 2
        assert batch.total_service_amount == Decimal("1100000")
        assert batch.total_primary_insurer_share == Decimal("770000")
        assert batch.total_supplementary_insurer_share == Decimal("130000")
        assert batch.total_patient_share == Decimal("200000")
        assert batch.total_insurer_share + batch.total_patient_share == batch.total_service_amount

    @pytest.mark.asyncio
    async def test_batch_matches_single_calculations(self, calculator):
        batch = await calculator.calculate_combined_batch(
            1, [101, 102], [Decimal("900000"), Decimal("200000")], CALCULATION_DATE
        )
        single = await calculator.calculate_combined(1, 102, Decimal("200000"), CALCULATION_DATE)

        assert batch.results[1].patient_share == single.patient_share

    @pytest.mark.asyncio
    async def test_length_mismatch(self, calculator):
        with pytest.raises(CalculationInputError):
            await calculator.calculate_combined_batch(1, [101, 102], [None], CALCULATION_DATE)

    @pytest.mark.asyncio
    async def test_any_failure_fails_the_batch(self, calculator):
        with pytest.raises(EntityNotFoundError):
            await calculator.calculate_combined_batch(1, [101, 999], None, CALCULATION_DATE)


@pytest.mark.unit
class TestInputValidation:
    """Test rejected inputs"""

    @pytest.mark.parametrize(
        "patient_id,service_id,amount",
        [
            (0, 101, None),
            (1, -1, None),
            (1, 101, 1.5),
            (1, 101, "abc"),
            (1, 101, Decimal("NaN")),
            (1, 101, Decimal("-1")),
            (1, 101, Decimal("100000001")),
        ],
    )
    @pytest.mark.asyncio
    async def test_rejected(self, calculator, patient_id, service_id, amount):
        with pytest.raises(CalculationInputError):
            await calculator.calculate_combined(patient_id, service_id, amount, CALCULATION_DATE)

    @pytest.mark.asyncio
    async def test_zero_amount_accepted(self, calculator):
        result = await calculator.calculate_combined(1, 101, Decimal("0"), CALCULATION_DATE)

        assert result.patient_share == Decimal("0")
        assert result.is_balanced


@pytest.mark.unit
class TestFailures:
    """Test timeouts and validation rules"""

    @pytest.mark.asyncio
    async def test_timeout(self, cache):
        class SlowDataSource(InMemoryCoverageDataSource):
            async def get_patient(self, patient_id):
                await asyncio.sleep(1)
                return await super().get_patient(patient_id)

        source = SlowDataSource(cache=cache)
        source.seed(
            services=[make_service(101, Decimal("1"), Decimal("1"))],
            factor_settings=default_factors(),
            patients=[Patient(patient_id=1)],
        )
        calculator = create_combined_calculator(source, cache)

        with pytest.raises(CalculationTimeoutError):
            await calculator.calculate_combined(
                1, 101, None, CALCULATION_DATE, CalculationOptions(timeout_seconds=0.05)
            )

    @pytest.mark.asyncio
    async def test_validation_rule_rejects_amount(self, calculator, data_source):
        await data_source.upsert_business_rule(
            BusinessRule(
                rule_id=1,
                rule_type=BusinessRuleType.VALIDATION,
                effect=PaymentLimitValidationEffect(
                    limit=Decimal("500000"), message="Amount above the clinic limit"
                ),
            )
        )

        with pytest.raises(BusinessRuleValidationError) as exc_info:
            await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert exc_info.value.errors == ["Amount above the clinic limit"]


@pytest.mark.unit
class TestCacheConsistency:
    """Test that edits are reflected by the next calculation"""

    @pytest.mark.asyncio
    async def test_repeated_call_is_cached(self, calculator):
        first = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)
        second = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert second is first

    @pytest.mark.asyncio
    async def test_tariff_coverage_update(self, calculator, data_source):
        await data_source.upsert_tariff(
            InsuranceTariff(tariff_id=1, plan_id=1, service_id=101, coverage_percent=Decimal("90"))
        )
        before = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        await data_source.update_tariff(1, coverage_percent=Decimal("80"))
        after = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert before.primary_insurer_share == Decimal("810000")
        assert before.applied_tariff_ids == (1,)
        assert after.primary_insurer_share == Decimal("720000")
        assert after.supplementary_insurer_share == Decimal("90000")
        assert after.patient_share == Decimal("90000")

    @pytest.mark.asyncio
    async def test_factory_uses_data_source_cache(self, data_source, cache):
        calculator = create_combined_calculator(data_source)
        await data_source.upsert_tariff(
            InsuranceTariff(tariff_id=1, plan_id=1, service_id=101, coverage_percent=Decimal("90"))
        )
        before = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        await data_source.update_tariff(1, coverage_percent=Decimal("80"))
        after = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert calculator.cache is cache
        assert calculator.tariff_resolver.cache is cache
        assert before.primary_insurer_share == Decimal("810000")
        assert after.primary_insurer_share == Decimal("720000")

    def test_factory_rejects_foreign_cache(self, data_source):
        with pytest.raises(ValueError):
            create_combined_calculator(data_source, CalculationCache())

    @pytest.mark.asyncio
    async def test_plan_update(self, calculator, data_source):
        await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)
        plan = await data_source.get_plan(1)

        await data_source.upsert_plan(plan.model_copy(update={"coverage_percent": Decimal("50")}))
        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert result.primary_insurer_share == Decimal("450000")

    @pytest.mark.asyncio
    async def test_supplementary_plan_update(self, calculator, data_source):
        await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)
        plan = await data_source.get_plan(2)

        await data_source.upsert_plan(plan.model_copy(update={"max_payment": None}))
        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert result.supplementary_insurer_share == Decimal("135000")

    @pytest.mark.asyncio
    async def test_service_component_update(self, calculator, data_source):
        await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        await data_source.upsert_service(make_service(101, Decimal("1000000"), Decimal("300000")))
        result = await calculator.calculate_combined(1, 101, None, CALCULATION_DATE)

        assert result.service_amount == Decimal("1500000")


# =============================================================================
# Properties
# =============================================================================


def build_calculator(coverage: int, supplementary_coverage: int, cap):
    cache = CalculationCache(enabled=True)
    source = InMemoryCoverageDataSource(cache=cache)
    source.seed(
        services=[make_service(101, Decimal("500000"), Decimal("300000"))],
        factor_settings=default_factors(),
        plans=[
            InsurancePlan(plan_id=1, tier=InsuranceTier.PRIMARY, coverage_percent=Decimal(coverage)),
            InsurancePlan(
                plan_id=2,
                tier=InsuranceTier.SUPPLEMENTARY,
                coverage_percent=Decimal(supplementary_coverage),
                max_payment=None if cap is None else Decimal(cap),
            ),
        ],
        patients=[Patient(patient_id=1)],
        patient_insurances=[
            PatientInsurance(
                patient_insurance_id=1,
                patient_id=1,
                plan_id=1,
                is_primary=True,
                start_date=date(2025, 1, 1),
            ),
            PatientInsurance(
                patient_insurance_id=2, patient_id=1, plan_id=2, start_date=date(2025, 1, 1)
            ),
        ],
    )
    return create_combined_calculator(source, cache)


@pytest.mark.unit
class TestConservationProperty:
    """Shares always add up to the service amount"""

    @settings(
        max_examples=60,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(
        amount=st.integers(min_value=0, max_value=100_000_000),
        coverage=st.integers(min_value=0, max_value=100),
        supplementary_coverage=st.integers(min_value=0, max_value=100),
        cap=st.one_of(st.none(), st.integers(min_value=0, max_value=10_000_000)),
    )
    def test_money_is_conserved(self, amount, coverage, supplementary_coverage, cap):
        calculator = build_calculator(coverage, supplementary_coverage, cap)

        result = asyncio.run(
            calculator.calculate_combined(1, 101, Decimal(amount), CALCULATION_DATE)
        )

        assert result.is_balanced
        assert result.primary_insurer_share >= 0
        assert result.supplementary_insurer_share >= 0
        assert result.patient_share >= 0
        assert result.primary_insurer_share <= result.service_amount
        if cap is not None:
            assert result.supplementary_insurer_share <= Decimal(cap)
