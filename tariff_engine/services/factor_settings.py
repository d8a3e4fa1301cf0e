"""
Factor Setting Service.

Write path for coefficients: create, update, soft-delete and freeze a
financial year. Frozen records are immutable; a frozen year only accepts
new records in another year. Every mutation invalidates the cached factors
of the affected year before and again after committing.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from tariff_engine.core.enums import ComponentType, FactorScope
from tariff_engine.schemas.entities import FactorSetting
from tariff_engine.services.adapters.base import FactorSettingRepository
from tariff_engine.services.calculation_cache import CalculationCache, get_calculation_cache
from tariff_engine.utils.errors import (
    DuplicateFactorSettingError,
    EntityNotFoundError,
    FrozenFinancialYearError,
)
from tariff_engine.utils.logging import get_logger

logger = get_logger(__name__)

# Fields that never change through update_factor
_IMMUTABLE_FIELDS = frozenset({"factor_setting_id", "is_frozen", "frozen_at", "frozen_by"})


def _identity(setting: FactorSetting) -> tuple:
    return (
        setting.kind,
        setting.scope,
        setting.department_id,
        setting.is_hashtagged,
        setting.financial_year,
        setting.effective_from,
    )


class FactorSettingService:
    """Administrative operations on factor settings."""

    def __init__(
        self,
        repository: FactorSettingRepository,
        cache: Optional[CalculationCache] = None,
    ):
        self.repository = repository
        self.cache = cache or repository.cache or get_calculation_cache()

    async def is_financial_year_frozen(self, financial_year: int) -> bool:
        """Whether any live record of the year is frozen."""
        settings = await self.repository.list_year_factor_settings(financial_year)
        return any(s.is_frozen and not s.is_deleted for s in settings)

    async def _ensure_year_open(self, financial_year: int) -> None:
        if await self.is_financial_year_frozen(financial_year):
            raise FrozenFinancialYearError(
                "Financial year is frozen", financial_year=financial_year
            )

    async def _ensure_unique(self, candidate: FactorSetting) -> None:
        if not candidate.is_active or candidate.is_deleted:
            return
        for existing in await self.repository.list_year_factor_settings(candidate.financial_year):
            if (
                existing.factor_setting_id != candidate.factor_setting_id
                and existing.is_active
                and not existing.is_deleted
                and _identity(existing) == _identity(candidate)
            ):
                raise DuplicateFactorSettingError(
                    "An active factor setting with the same scope and start date exists",
                    existing_id=existing.factor_setting_id,
                    financial_year=candidate.financial_year,
                )

    async def _get(self, factor_setting_id: int) -> FactorSetting:
        setting = await self.repository.get_factor_setting(factor_setting_id)
        if setting is None or setting.is_deleted:
            raise EntityNotFoundError(
                "Factor setting not found", factor_setting_id=factor_setting_id
            )
        if setting.is_frozen:
            raise FrozenFinancialYearError(
                "Frozen factor settings cannot be changed",
                factor_setting_id=factor_setting_id,
                financial_year=setting.financial_year,
            )
        return setting

    async def _commit(self, settings: list[FactorSetting], years: set[int], reason: str) -> None:
        # Invalidate around the save: a reader running during the save may have
        # cached the old rows under the new generation.
        for year in sorted(years):
            self.cache.invalidate_factors(year, reason=reason)
        await self.repository.save_factor_settings(settings)
        for year in sorted(years):
            self.cache.invalidate_factors(year, reason=f"{reason} (committed)")

    async def create_factor(
        self,
        kind: ComponentType,
        value: Decimal,
        financial_year: int,
        effective_from: date,
        scope: FactorScope = FactorScope.GENERAL,
        department_id: Optional[int] = None,
        is_hashtagged: bool = False,
        effective_to: Optional[date] = None,
        description: Optional[str] = None,
    ) -> FactorSetting:
        """
        Create a factor setting in an open financial year.

        Raises:
            FrozenFinancialYearError: The year is frozen
            DuplicateFactorSettingError: Same kind/scope/flag/start already active
        """
        await self._ensure_year_open(financial_year)
        setting = FactorSetting(
            factor_setting_id=await self.repository.next_factor_setting_id(),
            kind=kind,
            scope=scope,
            department_id=department_id,
            is_hashtagged=is_hashtagged,
            value=value,
            financial_year=financial_year,
            effective_from=effective_from,
            effective_to=effective_to,
            description=description,
        )
        await self._ensure_unique(setting)

        await self._commit([setting], {financial_year}, "factor setting created")
        logger.info(
            f"Created {kind.value} factor {setting.factor_setting_id} "
            f"for year {financial_year}: {value}"
        )
        return setting

    async def update_factor(self, factor_setting_id: int, **updates: Any) -> FactorSetting:
        """
        Update fields of an unfrozen factor setting.

        Raises:
            EntityNotFoundError: Unknown or deleted record
            FrozenFinancialYearError: Record or target year is frozen
        """
        forbidden = set(updates) & _IMMUTABLE_FIELDS
        if forbidden:
            raise ValueError(f"Fields cannot be updated: {sorted(forbidden)}")

        current = await self._get(factor_setting_id)
        await self._ensure_year_open(current.financial_year)

        updated = FactorSetting.model_validate({**current.model_dump(), **updates})
        if updated.financial_year != current.financial_year:
            await self._ensure_year_open(updated.financial_year)
        await self._ensure_unique(updated)

        await self._commit(
            [updated],
            {current.financial_year, updated.financial_year},
            "factor setting updated",
        )
        logger.info(f"Updated factor {factor_setting_id}: {sorted(updates)}")
        return updated

    async def delete_factor(self, factor_setting_id: int) -> FactorSetting:
        """Soft-delete an unfrozen factor setting."""
        current = await self._get(factor_setting_id)
        await self._ensure_year_open(current.financial_year)

        deleted = current.model_copy(update={"is_deleted": True, "is_active": False})
        await self._commit([deleted], {current.financial_year}, "factor setting deleted")
        logger.info(f"Deleted factor {factor_setting_id}")
        return deleted

    async def freeze_financial_year(self, financial_year: int, user_id: str) -> int:
        """
        Freeze every live record of a financial year.

        Idempotent: records already frozen are left untouched, so a second
        call changes nothing and returns 0.

        Returns:
            Number of records frozen by this call
        """
        settings = await self.repository.list_year_factor_settings(financial_year)
        to_freeze = [s for s in settings if not s.is_deleted and not s.is_frozen]
        if not to_freeze:
            logger.info(f"Financial year {financial_year} has nothing left to freeze")
            return 0

        frozen_at = datetime.now(timezone.utc)
        frozen = [
            s.model_copy(update={"is_frozen": True, "frozen_at": frozen_at, "frozen_by": user_id})
            for s in to_freeze
        ]
        await self._commit(frozen, {financial_year}, "financial year frozen")
        logger.info(
            f"Froze {len(frozen)} factor settings of financial year {financial_year} "
            f"by {user_id}"
        )
        return len(frozen)
