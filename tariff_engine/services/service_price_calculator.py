"""
Service Price Calculator.

Base price of a service from its technical and professional components:

    base_price = sum(round_half_up(component.amount * factor))

Each contribution is rounded to the currency unit before summing. A
department override replaces the general factors for one call only; the
Service snapshot is never modified.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from tariff_engine.core.enums import ComponentType, DiagnosticCode
from tariff_engine.core.money import ZERO, round_money, sum_money
from tariff_engine.schemas.calculation import (
    ComponentPrice,
    Diagnostic,
    PriceCalculationOptions,
    ServicePriceBreakdown,
)
from tariff_engine.schemas.entities import Service
from tariff_engine.services.factor_resolver import FactorResolver, financial_year_for
from tariff_engine.utils.errors import InvalidServiceComponentsError
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)

PRICED_KINDS = (ComponentType.TECHNICAL, ComponentType.PROFESSIONAL)


def has_complete_components(service: Service) -> bool:
    """Whether a service has exactly one technical and one professional component."""
    return all(len(service.participating_components(kind)) == 1 for kind in PRICED_KINDS)


class ServicePriceCalculator:
    """Computes base prices from components and resolved factors."""

    def __init__(self, factor_resolver: FactorResolver):
        self.factor_resolver = factor_resolver

    async def calculate_price_breakdown(
        self,
        service: Service,
        as_of_date: date,
        department_override_id: Optional[int] = None,
        options: Optional[PriceCalculationOptions] = None,
    ) -> ServicePriceBreakdown:
        """
        Price a service and report the factors used.

        Args:
            service: Service snapshot with its components
            as_of_date: Date the factors must be effective on
            department_override_id: Department whose factors replace the general ones
            options: Further pricing options

        Returns:
            ServicePriceBreakdown with the base price and per-component contributions

        Raises:
            InvalidServiceComponentsError: Two active components of the same kind
            MissingFactorSettingError: A present component has no factor
        """
        options = options or PriceCalculationOptions()
        department_id = (
            department_override_id
            if department_override_id is not None
            else options.department_override_id
        )
        financial_year = options.financial_year or financial_year_for(as_of_date)

        components: list[ComponentPrice] = []
        missing: list[str] = []
        for kind in PRICED_KINDS:
            present = service.participating_components(kind)
            if len(present) > 1:
                raise InvalidServiceComponentsError(
                    "Service has more than one active component of a kind",
                    service_id=service.service_id,
                    kind=kind.value,
                    component_ids=[c.component_id for c in present],
                )
            if not present:
                missing.append(kind.value)
                continue

            component = present[0]
            factor = await self.factor_resolver.resolve(
                kind=kind,
                scope_hint=service.factor_scope,
                financial_year=financial_year,
                is_hashtagged=service.is_hashtagged,
                as_of_date=as_of_date,
                department_id=department_id,
                use_cache=options.use_cache,
            )
            components.append(
                ComponentPrice(
                    component_id=component.component_id,
                    kind=kind,
                    amount=component.amount,
                    factor=factor,
                    contribution=round_money(component.amount * factor.value),
                )
            )

        diagnostics: list[Diagnostic] = []
        if missing:
            diagnostics.append(
                Diagnostic.warning(
                    DiagnosticCode.SERVICE_COMPONENTS_INCOMPLETE,
                    f"Service {service.service_id} is missing components: {', '.join(missing)}",
                    service_id=service.service_id,
                    missing=missing,
                )
            )

        base_price = sum_money(c.contribution for c in components) if components else ZERO
        logger.debug(
            f"Service {service.service_id} priced at {base_price} "
            f"(year={financial_year}, department={department_id})"
        )
        return ServicePriceBreakdown(
            service_id=service.service_id,
            as_of_date=as_of_date,
            financial_year=financial_year,
            department_override_id=department_id,
            base_price=round_money(base_price),
            components=tuple(components),
            diagnostics=tuple(diagnostics),
        )

    async def calculate_base_price(
        self,
        service: Service,
        as_of_date: date,
        department_override_id: Optional[int] = None,
        options: Optional[PriceCalculationOptions] = None,
    ) -> Decimal:
        """Base price of a service (see calculate_price_breakdown)."""
        breakdown = await self.calculate_price_breakdown(
            service, as_of_date, department_override_id, options
        )
        return breakdown.base_price
