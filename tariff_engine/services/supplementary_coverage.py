"""
Supplementary Coverage Calculator.

Applies supplementary plans to the remainder left by the primary insurer:

    insurer_share = min(remainder * coverage / 100, cap), never above remainder

The cap is compared with the remainder-based candidate, never with a share
of the original amount. Several policies are applied in priority order,
each on the remainder left by the previous one. Caps are per calculation.
"""

from decimal import Decimal
from typing import Optional

from tariff_engine.core.enums import DiagnosticCode
from tariff_engine.core.money import ZERO, percent_of, round_money
from tariff_engine.schemas.calculation import (
    Diagnostic,
    InsuranceCalculationContext,
    InsuranceCalculationResult,
    SupplementaryCoverageResult,
    SupplementaryOption,
)
from tariff_engine.schemas.entities import InsurancePlan, PatientInsurance
from tariff_engine.services.adapters.base import CoverageDataSource
from tariff_engine.services.business_rule_engine import BusinessRuleEngine
from tariff_engine.services.tariff_resolver import TariffResolver, validate_tariff
from tariff_engine.utils.errors import EntityNotFoundError
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)


class SupplementaryCoverageCalculator:
    """Second-payer share calculation."""

    def __init__(
        self,
        data_source: CoverageDataSource,
        rule_engine: BusinessRuleEngine,
        tariff_resolver: TariffResolver,
    ):
        self.data_source = data_source
        self.rule_engine = rule_engine
        self.tariff_resolver = tariff_resolver

    def _skipped(
        self,
        plan: InsurancePlan,
        policy: Optional[PatientInsurance],
        remainder: Decimal,
        diagnostic: Diagnostic,
        applied_rule_ids: tuple[int, ...] = (),
    ) -> SupplementaryCoverageResult:
        return SupplementaryCoverageResult(
            plan_id=plan.plan_id,
            patient_insurance_id=policy.patient_insurance_id if policy else None,
            remainder_before=remainder,
            insurer_share=ZERO,
            remainder_after=remainder,
            is_applied=False,
            applied_rule_ids=applied_rule_ids,
            diagnostics=(diagnostic,),
        )

    async def calculate_supplementary(
        self,
        context: InsuranceCalculationContext,
        primary_result: InsuranceCalculationResult,
        plan: InsurancePlan,
        policy: Optional[PatientInsurance] = None,
        remainder: Optional[Decimal] = None,
    ) -> SupplementaryCoverageResult:
        """
        Calculate one supplementary plan's share.

        Args:
            context: Calculation context
            primary_result: Result of the primary stage
            plan: Supplementary plan
            policy: Patient's policy for the plan (None when comparing plans)
            remainder: Amount still owed by the patient (primary remainder when omitted)

        Returns:
            SupplementaryCoverageResult; skipped plans have is_applied=False
        """
        remainder = primary_result.patient_remainder if remainder is None else remainder
        on = context.calculation_date

        if not plan.is_valid_on(on) or (policy is not None and not policy.is_valid_on(on)):
            return self._skipped(
                plan,
                policy,
                remainder,
                Diagnostic.warning(
                    DiagnosticCode.INSURANCE_EXPIRED,
                    f"Supplementary plan {plan.plan_id} is not valid on {on.isoformat()}",
                    plan_id=plan.plan_id,
                ),
            )

        context = context.for_plan(plan.plan_id)
        evaluation = await self.rule_engine.evaluate(context, plan)
        if not evaluation.supplementary_applicable:
            return self._skipped(
                plan,
                policy,
                remainder,
                Diagnostic.info(
                    DiagnosticCode.SUPPLEMENTARY_NOT_APPLICABLE,
                    f"Supplementary plan {plan.plan_id} does not apply to this service",
                    plan_id=plan.plan_id,
                ),
                evaluation.applied_rule_ids,
            )

        tariff, _ = await self.tariff_resolver.select_tariff(plan.plan_id, context.service_id, on)
        if tariff is not None:
            validate_tariff(tariff)
        coverage = evaluation.coverage_percent
        cap = evaluation.payment_cap
        if tariff is not None and tariff.coverage_percent is not None:
            coverage = tariff.coverage_percent
        if tariff is not None and tariff.max_payment is not None:
            cap = tariff.max_payment

        diagnostics = []
        check = self.rule_engine.validate_payment_limits(percent_of(remainder, coverage), cap)
        if check.was_clamped:
            diagnostics.append(
                Diagnostic.info(
                    DiagnosticCode.PAYMENT_CAP_EXCEEDED,
                    f"Supplementary share clamped to cap {cap}, {round_money(check.excess)} "
                    "left to the patient",
                    plan_id=plan.plan_id,
                    cap=str(cap),
                    excess=str(round_money(check.excess)),
                )
            )

        share = min(round_money(check.insurer_share), remainder)
        logger.debug(
            f"Supplementary plan {plan.plan_id}: remainder={remainder}, coverage={coverage}%, "
            f"cap={cap}, insurer={share}"
        )
        return SupplementaryCoverageResult(
            plan_id=plan.plan_id,
            patient_insurance_id=policy.patient_insurance_id if policy else None,
            remainder_before=remainder,
            coverage_percent=coverage,
            payment_cap=cap,
            insurer_share=share,
            remainder_after=remainder - share,
            tariff_id=tariff.tariff_id if tariff else None,
            applied_rule_ids=evaluation.applied_rule_ids,
            diagnostics=tuple(diagnostics),
        )

    async def apply_supplementary_policies(
        self,
        context: InsuranceCalculationContext,
        primary_result: InsuranceCalculationResult,
        policies: list[tuple[PatientInsurance, InsurancePlan]],
    ) -> list[SupplementaryCoverageResult]:
        """Apply policies in priority order, each on the previous remainder."""
        results = []
        remainder = primary_result.patient_remainder
        ordered = sorted(policies, key=lambda p: (p[0].priority, p[0].patient_insurance_id))
        for policy, plan in ordered:
            result = await self.calculate_supplementary(
                context, primary_result, plan, policy, remainder
            )
            results.append(result)
            remainder = result.remainder_after
        return results

    async def compare_supplementary_options(
        self,
        context: InsuranceCalculationContext,
        primary_result: InsuranceCalculationResult,
        plan_ids: list[int],
    ) -> list[SupplementaryOption]:
        """
        Rank candidate supplementary plans against the same primary result.

        Each plan is evaluated alone on the primary remainder. Ordered by
        insurer share descending, ties by plan id. Nothing is cached.

        Raises:
            EntityNotFoundError: A plan id does not exist
        """
        results = []
        for plan_id in plan_ids:
            plan = await self.data_source.get_plan(plan_id)
            if plan is None:
                raise EntityNotFoundError("Insurance plan not found", plan_id=plan_id)
            results.append(await self.calculate_supplementary(context, primary_result, plan))

        results.sort(key=lambda r: (-r.insurer_share, r.plan_id))
        return [SupplementaryOption(rank=i + 1, result=r) for i, r in enumerate(results)]
