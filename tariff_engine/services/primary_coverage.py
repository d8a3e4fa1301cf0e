"""
Primary Coverage Calculator.

Splits a service amount between the primary insurer and the patient:

    insurer_share = max(min(amount * coverage / 100, cap) - deductible, 0)
    patient_remainder = amount - insurer_share

Coverage comes from the tariff override, else the business rules, else the
plan default; the cap from the tariff, else the rules, else the plan.
"""

from typing import Optional

from tariff_engine.core.enums import DiagnosticCode
from tariff_engine.core.money import ZERO, percent_of, round_money
from tariff_engine.schemas.calculation import (
    Diagnostic,
    EffectiveTariff,
    InsuranceCalculationContext,
    InsuranceCalculationResult,
)
from tariff_engine.schemas.entities import InsurancePlan, PatientInsurance
from tariff_engine.services.business_rule_engine import BusinessRuleEngine
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)


class PrimaryCoverageCalculator:
    """First-payer share calculation."""

    def __init__(self, rule_engine: BusinessRuleEngine):
        self.rule_engine = rule_engine

    def expired_result(
        self,
        context: InsuranceCalculationContext,
        policy: Optional[PatientInsurance],
        plan: Optional[InsurancePlan],
        tariff: Optional[EffectiveTariff] = None,
    ) -> InsuranceCalculationResult:
        """Patient pays in full because the policy or plan is not valid on the date."""
        plan_id = plan.plan_id if plan else (policy.plan_id if policy else None)
        return InsuranceCalculationResult(
            plan_id=plan_id,
            patient_insurance_id=policy.patient_insurance_id if policy else None,
            service_amount=context.service_amount,
            insurer_share=ZERO,
            patient_remainder=context.service_amount,
            tariff_id=tariff.tariff_id if tariff else None,
            applied_factor_ids=tariff.applied_factor_ids if tariff else (),
            diagnostics=(tariff.diagnostics if tariff else ())
            + (
                Diagnostic.warning(
                    DiagnosticCode.INSURANCE_EXPIRED,
                    f"Primary insurance is not valid on {context.calculation_date.isoformat()}",
                    plan_id=plan_id,
                    patient_insurance_id=policy.patient_insurance_id if policy else None,
                ),
            ),
        )

    async def calculate_primary(
        self,
        context: InsuranceCalculationContext,
        policy: PatientInsurance,
        plan: InsurancePlan,
        tariff: EffectiveTariff,
    ) -> InsuranceCalculationResult:
        """
        Calculate the primary insurer share.

        Args:
            context: Calculation context (amount, date, patient attributes)
            policy: Patient's primary policy
            plan: Primary plan of the policy
            tariff: Effective tariff of the plan for the service

        Returns:
            InsuranceCalculationResult with insurer share and patient remainder

        Raises:
            InvalidCoverageRangeError: Rule or plan coverage outside [0, 100]
            BusinessRuleValidationError: Invalid rule set
        """
        on = context.calculation_date
        if not (policy.is_valid_on(on) and plan.is_valid_on(on)):
            logger.info(
                f"Primary policy {policy.patient_insurance_id} (plan {plan.plan_id}) "
                f"not valid on {on}, patient pays in full"
            )
            return self.expired_result(context, policy, plan, tariff)

        context = context.for_plan(plan.plan_id)
        evaluation = await self.rule_engine.evaluate(context, plan)

        coverage = (
            tariff.coverage_percent
            if tariff.coverage_percent is not None
            else evaluation.coverage_percent
        )
        cap = tariff.cap if tariff.cap is not None else evaluation.payment_cap
        deductible = evaluation.deductible
        amount = context.service_amount

        diagnostics = list(tariff.diagnostics)
        check = self.rule_engine.validate_payment_limits(percent_of(amount, coverage), cap)
        if check.was_clamped:
            diagnostics.append(
                Diagnostic.info(
                    DiagnosticCode.PAYMENT_CAP_EXCEEDED,
                    f"Primary share clamped to cap {cap}, {round_money(check.excess)} "
                    "shifted to the patient",
                    plan_id=plan.plan_id,
                    cap=str(cap),
                    excess=str(round_money(check.excess)),
                )
            )

        insurer_share = min(round_money(max(check.insurer_share - deductible, ZERO)), amount)
        result = InsuranceCalculationResult(
            plan_id=plan.plan_id,
            patient_insurance_id=policy.patient_insurance_id,
            service_amount=amount,
            coverage_percent=coverage,
            deductible=deductible,
            payment_cap=cap,
            insurer_share=insurer_share,
            patient_remainder=amount - insurer_share,
            tariff_id=tariff.tariff_id,
            applied_rule_ids=evaluation.applied_rule_ids,
            applied_factor_ids=tariff.applied_factor_ids,
            diagnostics=tuple(diagnostics),
        )
        logger.debug(
            f"Primary plan {plan.plan_id}: amount={amount}, coverage={coverage}%, "
            f"insurer={insurer_share}, remainder={result.patient_remainder}"
        )
        return result
