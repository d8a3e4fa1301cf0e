"""
Factor Resolver.

Selects the monetary coefficient applied to a service component for a
(component kind, scope, financial year, hashtag flag, date) combination.

Selection order among compatible records:
1. Department-specific override for the requested department
2. Exact scope match (hashtag, dental, ...)
3. General scope
then hashtag-flag match over mismatch, then the latest effective_from,
then the highest id so the choice is deterministic.
"""

from datetime import date
from typing import Optional

from tariff_engine.core.config import get_settings
from tariff_engine.core.enums import CacheBucket, ComponentType, FactorScope
from tariff_engine.schemas.calculation import CacheKey, FactorValidationResult, ResolvedFactor
from tariff_engine.schemas.entities import FactorSetting
from tariff_engine.services.adapters.base import CoverageDataSource
from tariff_engine.services.calculation_cache import (
    CalculationCache,
    factors_tag,
    get_calculation_cache,
)
from tariff_engine.utils.errors import MissingFactorSettingError
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)


def financial_year_for(on: date) -> int:
    """
    Financial year containing a date.

    A year is named after the calendar year in which it starts, using
    FINANCIAL_YEAR_START_MONTH/DAY from the settings.
    """
    settings = get_settings()
    start = (settings.FINANCIAL_YEAR_START_MONTH, settings.FINANCIAL_YEAR_START_DAY)
    return on.year if (on.month, on.day) >= start else on.year - 1


class FactorResolver:
    """Read-only coefficient selection over a data source."""

    def __init__(
        self,
        data_source: CoverageDataSource,
        cache: Optional[CalculationCache] = None,
    ):
        """
        Initialize the resolver.

        Args:
            data_source: Source of factor settings
            cache: Cache for per-year candidate lists (the data source's cache,
                then the singleton, when omitted)
        """
        self.data_source = data_source
        self.cache = cache or data_source.cache or get_calculation_cache()

    async def _load_year(
        self, kind: ComponentType, financial_year: int, use_cache: bool
    ) -> tuple[FactorSetting, ...]:
        async def load() -> tuple[FactorSetting, ...]:
            settings = await self.data_source.list_factor_settings(financial_year, kind)
            return tuple(settings)

        key = CacheKey.build(CacheBucket.FACTOR, financial_year, kind.value)
        return await self.cache.get_or_compute(
            key, load, tags=[factors_tag(financial_year)], use_cache=use_cache
        )

    @staticmethod
    def _is_candidate(setting: FactorSetting, kind: ComponentType, on: date) -> bool:
        return (
            setting.kind == kind
            and setting.is_active
            and not setting.is_deleted
            and setting.is_effective_on(on)
        )

    @staticmethod
    def _scope_rank(
        setting: FactorSetting,
        scope_hint: FactorScope,
        department_id: Optional[int],
    ) -> Optional[int]:
        """Rank of a record's scope, None when incompatible."""
        if setting.scope == FactorScope.DEPARTMENT:
            if department_id is not None and setting.department_id == department_id:
                return 2
            return None
        if setting.scope == scope_hint and scope_hint != FactorScope.GENERAL:
            return 1
        if setting.scope == FactorScope.GENERAL:
            return 0
        return None

    def select(
        self,
        settings: tuple[FactorSetting, ...] | list[FactorSetting],
        kind: ComponentType,
        scope_hint: FactorScope,
        is_hashtagged: bool,
        as_of_date: date,
        department_id: Optional[int] = None,
    ) -> Optional[FactorSetting]:
        """Pick the best record from already-loaded settings."""
        best: Optional[FactorSetting] = None
        best_key: Optional[tuple] = None
        for setting in settings:
            if not self._is_candidate(setting, kind, as_of_date):
                continue
            rank = self._scope_rank(setting, scope_hint, department_id)
            if rank is None:
                continue
            sort_key = (
                rank,
                1 if setting.is_hashtagged == is_hashtagged else 0,
                setting.effective_from,
                setting.factor_setting_id,
            )
            if best_key is None or sort_key > best_key:
                best, best_key = setting, sort_key
        return best

    async def resolve(
        self,
        kind: ComponentType,
        scope_hint: FactorScope,
        financial_year: int,
        is_hashtagged: bool,
        as_of_date: date,
        department_id: Optional[int] = None,
        use_cache: bool = True,
    ) -> ResolvedFactor:
        """
        Resolve the coefficient for a component.

        Args:
            kind: Component kind
            scope_hint: Scope requested by the service
            financial_year: Financial year of the factors
            is_hashtagged: Whether the service is in a hashtag range
            as_of_date: Date the factor must be effective on
            department_id: Department whose overrides take precedence
            use_cache: Read candidate lists through the cache

        Returns:
            ResolvedFactor snapshot of the selected record

        Raises:
            MissingFactorSettingError: No compatible record exists
        """
        settings = await self._load_year(kind, financial_year, use_cache)
        setting = self.select(
            settings, kind, scope_hint, is_hashtagged, as_of_date, department_id
        )
        if setting is None:
            raise MissingFactorSettingError(
                "No factor setting matches the component",
                kind=kind.value,
                scope=scope_hint.value,
                financial_year=financial_year,
                is_hashtagged=is_hashtagged,
                as_of_date=as_of_date.isoformat(),
                department_id=department_id,
            )

        logger.debug(
            f"Resolved {kind.value} factor {setting.factor_setting_id} "
            f"({setting.scope.value}, value={setting.value}) for year {financial_year}"
        )
        return ResolvedFactor(
            factor_setting_id=setting.factor_setting_id,
            kind=setting.kind,
            scope=setting.scope,
            value=setting.value,
            financial_year=setting.financial_year,
            effective_from=setting.effective_from,
            is_hashtagged=setting.is_hashtagged,
            is_frozen=setting.is_frozen,
            department_id=setting.department_id,
        )

    async def validate_required_factors(
        self, financial_year: int, as_of_date: date
    ) -> FactorValidationResult:
        """
        Check that the general factors every service may need exist.

        Required: a professional factor, a hashtagged technical factor and a
        plain technical factor, all with general scope.
        """
        required = [
            (ComponentType.PROFESSIONAL, None, "professional"),
            (ComponentType.TECHNICAL, True, "hashtagged technical"),
            (ComponentType.TECHNICAL, False, "technical"),
        ]
        errors = []
        for kind, hashtagged, label in required:
            settings = await self._load_year(kind, financial_year, use_cache=True)
            found = any(
                self._is_candidate(s, kind, as_of_date)
                and s.scope == FactorScope.GENERAL
                and (hashtagged is None or s.is_hashtagged == hashtagged)
                for s in settings
            )
            if not found:
                errors.append(
                    f"General {label} factor is missing for financial year {financial_year}"
                )

        return FactorValidationResult(
            financial_year=financial_year,
            is_valid=not errors,
            errors=tuple(errors),
        )
