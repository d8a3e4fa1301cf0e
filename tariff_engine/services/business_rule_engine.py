"""
Business Rule Engine.

Evaluates the closed set of typed business rules to derive the coverage
terms of a plan for one calculation context:
- Coverage percentage
- Deductible (fixed or a percentage of the amount)
- Payment cap
- Whether a supplementary plan applies

Conditions and effects are tagged variants dispatched explicitly on their
``kind``. For each output field the most specific matching rule wins
(service category > plan > global), then the higher priority; fields no
rule supplies fall back to the plan defaults.

Rule families by plan tier: COVERAGE_PERCENT, DEDUCTIBLE and PAYMENT_LIMIT
rules apply to primary plans, SUPPLEMENTARY rules to supplementary plans.
VALIDATION rules are checked separately by ``validate_business_rules``.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Any, Optional

from tariff_engine.core.enums import (
    ALLOWED_EFFECTS,
    BusinessRuleType,
    ConditionKind,
    EffectKind,
    InsuranceTier,
    RuleScope,
)
from tariff_engine.core.money import HUNDRED, ZERO, percent_of, round_money
from tariff_engine.schemas.calculation import (
    InsuranceCalculationContext,
    PaymentLimitCheck,
    RuleEvaluation,
)
from tariff_engine.schemas.entities import InsurancePlan
from tariff_engine.schemas.rules import (
    BusinessRule,
    BusinessRuleValidationResult,
    DeductiblePercentEffect,
    RuleCondition,
    RuleEffect,
)
from tariff_engine.services.adapters.base import CoverageDataSource
from tariff_engine.utils.errors import BusinessRuleValidationError, InvalidCoverageRangeError
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)

# Output field set by each effect kind
EFFECT_FIELDS: dict[EffectKind, Optional[str]] = {
    EffectKind.COVERAGE_PERCENT: "coverage_percent",
    EffectKind.DEDUCTIBLE_AMOUNT: "deductible",
    EffectKind.DEDUCTIBLE_PERCENT: "deductible",
    EffectKind.PAYMENT_CAP: "payment_cap",
    EffectKind.SUPPLEMENTARY_APPLICABLE: "supplementary_applicable",
    EffectKind.PAYMENT_LIMIT_VALIDATION: None,
}

PRIMARY_RULE_TYPES = frozenset(
    {BusinessRuleType.COVERAGE_PERCENT, BusinessRuleType.DEDUCTIBLE, BusinessRuleType.PAYMENT_LIMIT}
)
SUPPLEMENTARY_RULE_TYPES = frozenset({BusinessRuleType.SUPPLEMENTARY})


def _in_percent_range(value: Decimal) -> bool:
    return ZERO <= value <= HUNDRED


def _effect_value(effect: RuleEffect) -> Any:
    """Configured value of an effect, used to detect contradictions."""
    return tuple(v for k, v in effect.model_dump().items() if k != "kind")


class BusinessRuleEngine:
    """Typed business rule evaluation for coverage calculation."""

    def __init__(self, data_source: CoverageDataSource):
        self.data_source = data_source

    # =========================================================================
    # Loading
    # =========================================================================

    @staticmethod
    def _applies_to_scope(
        rule: BusinessRule, plan_id: Optional[int], service_category_id: Optional[int]
    ) -> bool:
        if rule.scope == RuleScope.PLAN:
            return rule.plan_id == plan_id
        if rule.scope == RuleScope.SERVICE_CATEGORY:
            if rule.service_category_id != service_category_id:
                return False
            # A category rule may additionally be restricted to one plan
            return rule.plan_id is None or rule.plan_id == plan_id
        return True

    async def load_rules(
        self,
        context: InsuranceCalculationContext,
        plan_id: Optional[int],
        rule_types: Optional[frozenset[BusinessRuleType]] = None,
    ) -> list[BusinessRule]:
        """Rules of the given families that are in scope and effective for a context."""
        rules = await self.data_source.list_business_rules(
            plan_id=plan_id, service_category_id=context.service_category_id
        )
        return [
            r
            for r in rules
            if (rule_types is None or r.rule_type in rule_types)
            and r.is_effective_on(context.calculation_date)
            and self._applies_to_scope(r, plan_id, context.service_category_id)
        ]

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_rules(self, rules: list[BusinessRule]) -> BusinessRuleValidationResult:
        """
        Check a rule set for configuration errors.

        Reports coverage/percent ranges outside [0, 100], negative money,
        inverted thresholds, scopes missing their id, effects not allowed
        for the rule type, and rules that contradict each other (same
        scope, priority, conditions and field but different values).
        """
        result = BusinessRuleValidationResult()

        for rule in rules:
            label = f"Rule {rule.rule_id}"
            if rule.scope == RuleScope.PLAN and rule.plan_id is None:
                result.add_error(f"{label}: plan scope without plan_id")
            if rule.scope == RuleScope.SERVICE_CATEGORY and rule.service_category_id is None:
                result.add_error(f"{label}: service category scope without service_category_id")
            if rule.start_date and rule.end_date and rule.start_date > rule.end_date:
                result.add_error(f"{label}: start_date is after end_date")
            if rule.effect.kind not in ALLOWED_EFFECTS[rule.rule_type]:
                result.add_error(
                    f"{label}: effect {rule.effect.kind.value} is not allowed "
                    f"for {rule.rule_type.value} rules"
                )
            if not rule.is_active:
                result.add_warning(f"{label} is inactive")

            for condition in rule.conditions:
                self._validate_condition(label, condition, result)
            self._validate_effect(rule, result)

        self._find_contradictions(rules, result)
        return result

    def _validate_condition(
        self, label: str, condition: RuleCondition, result: BusinessRuleValidationResult
    ) -> None:
        kind = condition.kind
        if kind in (ConditionKind.PATIENT_AGE, ConditionKind.SERVICE_AMOUNT):
            bounds = [condition.min_value, condition.max_value, condition.equals]
            if any(b is not None and b < 0 for b in bounds):
                result.add_error(f"{label}: {kind.value} condition has a negative bound")
            if (
                condition.min_value is not None
                and condition.max_value is not None
                and condition.min_value > condition.max_value
            ):
                result.add_error(f"{label}: {kind.value} condition has min above max")
            if all(b is None for b in bounds):
                result.add_warning(f"{label}: {kind.value} condition has no bounds")
        elif kind == ConditionKind.SERVICE_CATEGORY:
            if not condition.service_category_ids:
                result.add_error(f"{label}: service category condition lists no categories")
        elif kind == ConditionKind.INSURANCE_PLAN:
            if not condition.plan_ids:
                result.add_error(f"{label}: insurance plan condition lists no plans")

    def _validate_effect(self, rule: BusinessRule, result: BusinessRuleValidationResult) -> None:
        label = f"Rule {rule.rule_id}"
        effect = rule.effect
        kind = effect.kind

        if kind == EffectKind.COVERAGE_PERCENT:
            if not _in_percent_range(effect.percent):
                result.add_error(f"{label}: coverage percent {effect.percent} is outside [0, 100]")
                result.coverage_range_rule_ids.append(rule.rule_id)
        elif kind == EffectKind.DEDUCTIBLE_PERCENT:
            if not _in_percent_range(effect.percent):
                result.add_error(f"{label}: deductible percent {effect.percent} is outside [0, 100]")
                result.coverage_range_rule_ids.append(rule.rule_id)
            if any(v is not None and v < 0 for v in (effect.min_amount, effect.max_amount)):
                result.add_error(f"{label}: deductible bounds must not be negative")
            if (
                effect.min_amount is not None
                and effect.max_amount is not None
                and effect.min_amount > effect.max_amount
            ):
                result.add_error(f"{label}: deductible min_amount is above max_amount")
        elif kind == EffectKind.DEDUCTIBLE_AMOUNT:
            if effect.amount < 0:
                result.add_error(f"{label}: deductible amount must not be negative")
        elif kind == EffectKind.PAYMENT_CAP:
            if effect.amount < 0:
                result.add_error(f"{label}: payment cap must not be negative")
        elif kind == EffectKind.PAYMENT_LIMIT_VALIDATION:
            if effect.limit < 0:
                result.add_error(f"{label}: payment limit must not be negative")

    def _find_contradictions(
        self, rules: list[BusinessRule], result: BusinessRuleValidationResult
    ) -> None:
        groups: dict[tuple, list[BusinessRule]] = defaultdict(list)
        for rule in rules:
            field = EFFECT_FIELDS[rule.effect.kind]
            if field is None or not rule.is_active:
                continue
            groups[
                (
                    rule.rule_type,
                    field,
                    rule.scope,
                    rule.plan_id,
                    rule.service_category_id,
                    rule.priority,
                    rule.conditions,
                )
            ].append(rule)

        for (_, field, scope, *_rest), members in groups.items():
            values = {(r.effect.kind, _effect_value(r.effect)) for r in members}
            if len(values) > 1:
                ids = ", ".join(str(r.rule_id) for r in sorted(members, key=lambda r: r.rule_id))
                result.add_error(
                    f"Rules {ids} set {field} to different values with the same "
                    f"{scope.value} scope, priority and conditions"
                )

    def _ensure_valid(self, rules: list[BusinessRule]) -> None:
        validation = self.validate_rules(rules)
        if validation.is_valid:
            return
        if validation.coverage_range_rule_ids:
            raise InvalidCoverageRangeError(
                "Business rule percentage is outside [0, 100]",
                rule_ids=validation.coverage_range_rule_ids,
                errors=validation.errors,
            )
        raise BusinessRuleValidationError(
            "Business rule set is invalid", validation_result=validation
        )

    @staticmethod
    def _ensure_valid_plan(plan: InsurancePlan) -> None:
        if not _in_percent_range(plan.coverage_percent):
            raise InvalidCoverageRangeError(
                "Plan coverage percent is outside [0, 100]",
                plan_id=plan.plan_id,
                coverage_percent=plan.coverage_percent,
            )
        if plan.deductible < 0 or (plan.max_payment is not None and plan.max_payment < 0):
            raise BusinessRuleValidationError(
                "Plan deductible and payment cap must not be negative", plan_id=plan.plan_id
            )

    # =========================================================================
    # Evaluation
    # =========================================================================

    def _evaluate_condition(
        self, condition: RuleCondition, context: InsuranceCalculationContext
    ) -> bool:
        """Evaluate a single condition."""
        kind = condition.kind

        if kind == ConditionKind.PATIENT_AGE:
            return self._within(context.patient_age, condition)
        elif kind == ConditionKind.SERVICE_AMOUNT:
            return self._within(context.service_amount, condition)
        elif kind == ConditionKind.PATIENT_GENDER:
            return context.patient_gender is not None and context.patient_gender == condition.gender
        elif kind == ConditionKind.SERVICE_CATEGORY:
            return context.service_category_id in condition.service_category_ids
        elif kind == ConditionKind.INSURANCE_PLAN:
            return context.plan_id in condition.plan_ids

        return False

    @staticmethod
    def _within(value: Any, condition: RuleCondition) -> bool:
        if value is None:
            return False
        if condition.equals is not None and value != condition.equals:
            return False
        if condition.min_value is not None and value < condition.min_value:
            return False
        if condition.max_value is not None and value > condition.max_value:
            return False
        return True

    def _matches(self, rule: BusinessRule, context: InsuranceCalculationContext) -> bool:
        return all(self._evaluate_condition(c, context) for c in rule.conditions)

    def _apply_effect(
        self, effect: RuleEffect, context: InsuranceCalculationContext
    ) -> tuple[str, Any]:
        """Output field and value produced by an effect."""
        kind = effect.kind

        if kind == EffectKind.COVERAGE_PERCENT:
            return "coverage_percent", effect.percent
        elif kind == EffectKind.DEDUCTIBLE_AMOUNT:
            return "deductible", effect.amount
        elif kind == EffectKind.DEDUCTIBLE_PERCENT:
            return "deductible", self._percent_deductible(effect, context.service_amount)
        elif kind == EffectKind.PAYMENT_CAP:
            return "payment_cap", effect.amount
        elif kind == EffectKind.SUPPLEMENTARY_APPLICABLE:
            return "supplementary_applicable", effect.applicable

        raise ValueError(f"Effect {kind.value} does not set a coverage field")

    @staticmethod
    def _percent_deductible(effect: DeductiblePercentEffect, amount: Decimal) -> Decimal:
        deductible = round_money(percent_of(amount, effect.percent))
        if effect.min_amount is not None:
            deductible = max(deductible, effect.min_amount)
        if effect.max_amount is not None:
            deductible = min(deductible, effect.max_amount)
        return deductible

    def evaluate_rules(
        self,
        context: InsuranceCalculationContext,
        plan: InsurancePlan,
        rules: list[BusinessRule],
    ) -> RuleEvaluation:
        """
        Derive coverage terms from an already-loaded rule set.

        Raises:
            InvalidCoverageRangeError: A rule or the plan sets a percentage outside [0, 100]
            BusinessRuleValidationError: The rule set is otherwise invalid
        """
        self._ensure_valid_plan(plan)
        self._ensure_valid(rules)
        context = context.for_plan(plan.plan_id)

        # field -> (rank, value, rule_id)
        winners: dict[str, tuple[tuple[int, int, int], Any, int]] = {}
        for rule in rules:
            if EFFECT_FIELDS[rule.effect.kind] is None or not self._matches(rule, context):
                continue
            field, value = self._apply_effect(rule.effect, context)
            rank = (rule.scope.specificity, rule.priority, rule.rule_id)
            if field not in winners or rank > winners[field][0]:
                winners[field] = (rank, value, rule.rule_id)

        def pick(field: str, default: Any) -> Any:
            return winners[field][1] if field in winners else default

        is_supplementary = plan.tier == InsuranceTier.SUPPLEMENTARY
        evaluation = RuleEvaluation(
            coverage_percent=pick("coverage_percent", plan.coverage_percent),
            deductible=ZERO if is_supplementary else pick("deductible", plan.deductible),
            payment_cap=pick("payment_cap", plan.max_payment),
            supplementary_applicable=pick("supplementary_applicable", True),
            applied_rule_ids=tuple(sorted(w[2] for w in winners.values())),
        )
        logger.debug(
            f"Rules for plan {plan.plan_id}: coverage={evaluation.coverage_percent}, "
            f"deductible={evaluation.deductible}, cap={evaluation.payment_cap}, "
            f"rules={list(evaluation.applied_rule_ids)}"
        )
        return evaluation

    async def evaluate(
        self, context: InsuranceCalculationContext, plan: InsurancePlan
    ) -> RuleEvaluation:
        """
        Evaluate the rules of a plan's tier for a context.

        Args:
            context: Calculation context
            plan: Plan whose defaults back fields no rule supplies

        Returns:
            RuleEvaluation with the winning values and the rules that supplied them
        """
        rule_types = (
            SUPPLEMENTARY_RULE_TYPES
            if plan.tier == InsuranceTier.SUPPLEMENTARY
            else PRIMARY_RULE_TYPES
        )
        rules = await self.load_rules(context, plan.plan_id, rule_types)
        return self.evaluate_rules(context, plan, rules)

    async def validate_business_rules(
        self, context: InsuranceCalculationContext
    ) -> BusinessRuleValidationResult:
        """
        Check the context against VALIDATION rules.

        Returns:
            Result listing every violated payment limit

        Raises:
            BusinessRuleValidationError: The validation rules themselves are invalid
        """
        rules = await self.load_rules(
            context, context.plan_id, frozenset({BusinessRuleType.VALIDATION})
        )
        self._ensure_valid(rules)

        result = BusinessRuleValidationResult()
        for rule in rules:
            effect = rule.effect
            if effect.kind != EffectKind.PAYMENT_LIMIT_VALIDATION or not self._matches(rule, context):
                continue
            if context.service_amount > effect.limit:
                result.add_error(
                    effect.message
                    or f"Service amount {context.service_amount} exceeds the payment limit "
                    f"{effect.limit} (rule {rule.rule_id})"
                )
        return result

    def validate_payment_limits(
        self, insurer_share: Decimal, payment_cap: Optional[Decimal]
    ) -> PaymentLimitCheck:
        """
        Clamp an insurer share to its cap.

        The excess is shifted to the patient by the caller; nothing is dropped.
        """
        if payment_cap is None or insurer_share <= payment_cap:
            return PaymentLimitCheck(
                requested_share=insurer_share,
                insurer_share=insurer_share,
                payment_cap=payment_cap,
            )
        return PaymentLimitCheck(
            requested_share=insurer_share,
            insurer_share=payment_cap,
            payment_cap=payment_cap,
            excess=insurer_share - payment_cap,
        )
