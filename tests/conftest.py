"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.

The default dataset reproduces the reference scenarios:
- Service 101: technical 500,000 x 1.2 + professional 300,000 x 1.0 = 900,000
- Service 102: technical 100,000 x 1.2 + professional 80,000 x 1.0 = 200,000
- Plan 1 (primary): 70% coverage, no deductible
- Plan 2 (supplementary): 50% coverage capped at 100,000
"""

from datetime import date
from decimal import Decimal

import pytest

from tariff_engine.core.config import reset_settings
from tariff_engine.core.enums import ComponentType, FactorScope, Gender, InsuranceTier
from tariff_engine.schemas.entities import (
    FactorSetting,
    InsurancePlan,
    Patient,
    PatientInsurance,
    Service,
    ServiceComponent,
)
from tariff_engine.services.adapters.in_memory import InMemoryCoverageDataSource
from tariff_engine.services.calculation_cache import CalculationCache
from tariff_engine.services.combined_calculator import create_combined_calculator


CALCULATION_DATE = date(2025, 6, 15)
FINANCIAL_YEAR = 2025


# =============================================================================
# Builders
# =============================================================================


def make_service(
    service_id: int,
    technical: Decimal | None,
    professional: Decimal | None,
    **kwargs,
) -> Service:
    """Build a service with optional technical/professional components."""
    components = []
    if technical is not None:
        components.append(
            ServiceComponent(
                component_id=service_id * 10 + 1,
                service_id=service_id,
                kind=ComponentType.TECHNICAL,
                amount=technical,
            )
        )
    if professional is not None:
        components.append(
            ServiceComponent(
                component_id=service_id * 10 + 2,
                service_id=service_id,
                kind=ComponentType.PROFESSIONAL,
                amount=professional,
            )
        )
    kwargs.setdefault("service_category_id", 10)
    return Service(service_id=service_id, components=tuple(components), **kwargs)


def make_factor(factor_setting_id: int, kind: ComponentType, value: str, **kwargs) -> FactorSetting:
    """Build a factor setting effective from the start of the default year."""
    kwargs.setdefault("financial_year", FINANCIAL_YEAR)
    kwargs.setdefault("effective_from", date(kwargs["financial_year"], 1, 1))
    return FactorSetting(
        factor_setting_id=factor_setting_id,
        kind=kind,
        value=Decimal(value),
        **kwargs,
    )


def default_factors() -> list[FactorSetting]:
    return [
        make_factor(1, ComponentType.TECHNICAL, "1.2"),
        make_factor(2, ComponentType.PROFESSIONAL, "1.0"),
        make_factor(3, ComponentType.TECHNICAL, "1.5", is_hashtagged=True),
        make_factor(
            4,
            ComponentType.TECHNICAL,
            "1.4",
            scope=FactorScope.DEPARTMENT,
            department_id=7,
        ),
    ]


def default_plans() -> list[InsurancePlan]:
    return [
        InsurancePlan(
            plan_id=1,
            name="Basic Health",
            tier=InsuranceTier.PRIMARY,
            coverage_percent=Decimal("70"),
            deductible=Decimal("0"),
        ),
        InsurancePlan(
            plan_id=2,
            name="Supplementary Gold",
            tier=InsuranceTier.SUPPLEMENTARY,
            coverage_percent=Decimal("50"),
            max_payment=Decimal("100000"),
        ),
    ]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    """Isolate tests from the environment and cached settings."""
    for name in ("TARIFF_CURRENCY_DECIMAL_PLACES", "TARIFF_CACHE_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def calculation_date() -> date:
    return CALCULATION_DATE


@pytest.fixture
def cache() -> CalculationCache:
    """Fresh cache per test."""
    return CalculationCache(max_entries=1000, ttl_seconds=300, enabled=True)


@pytest.fixture
def data_source(cache) -> InMemoryCoverageDataSource:
    """In-memory data source seeded with the reference scenarios."""
    source = InMemoryCoverageDataSource(cache=cache)
    source.seed(
        services=[
            make_service(101, Decimal("500000"), Decimal("300000"), title="Visit"),
            make_service(102, Decimal("100000"), Decimal("80000"), title="Radiology"),
        ],
        factor_settings=default_factors(),
        plans=default_plans(),
        patients=[Patient(patient_id=1, birth_date=date(1980, 5, 5), gender=Gender.MALE)],
        patient_insurances=[
            PatientInsurance(
                patient_insurance_id=11,
                patient_id=1,
                plan_id=1,
                is_primary=True,
                start_date=date(2025, 1, 1),
            ),
            PatientInsurance(
                patient_insurance_id=12,
                patient_id=1,
                plan_id=2,
                is_primary=False,
                priority=1,
                start_date=date(2025, 1, 1),
            ),
        ],
    )
    return source


@pytest.fixture
def calculator(data_source, cache):
    """Fully wired combined calculator over the seeded data source."""
    return create_combined_calculator(data_source, cache)


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
