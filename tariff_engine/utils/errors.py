"""
Custom Exceptions
Fatal errors raised by the tariff engine. A calculation that raises one of
these returns no result at all; non-fatal conditions are attached to results
as diagnostics instead.
"""

from typing import Any, Optional


class TariffEngineError(Exception):
    """Base exception for tariff engine errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


# =============================================================================
# Pricing
# =============================================================================


class MissingFactorSettingError(TariffEngineError):
    """Raised when no coefficient matches a component; the service cannot be priced."""

    pass


class InvalidServiceComponentsError(TariffEngineError):
    """Raised when a service has more than one active component of a kind."""

    pass


# =============================================================================
# Tariffs & Coverage
# =============================================================================


class AmbiguousTariffError(TariffEngineError):
    """Raised when two effective tariffs exist for the same (plan, service) pair."""

    pass


class InvalidTariffError(TariffEngineError):
    """Raised when a tariff carries a negative price or cap."""

    pass


class InvalidCoverageRangeError(TariffEngineError):
    """Raised when a rule, plan or tariff sets coverage outside [0, 100]."""

    pass


class AmbiguousPrimaryInsuranceError(TariffEngineError):
    """Raised when a patient has more than one active primary policy on a date."""

    pass


class BusinessRuleValidationError(TariffEngineError):
    """Raised when a rule set is invalid or a validation rule rejects the context."""

    def __init__(self, message: str, validation_result: Optional[Any] = None, **context: Any):
        super().__init__(message, **context)
        self.validation_result = validation_result

    @property
    def errors(self) -> list[str]:
        """Errors reported by the validation result."""
        if self.validation_result is None:
            return []
        return list(self.validation_result.errors)


# =============================================================================
# Calculation
# =============================================================================


class CalculationInputError(TariffEngineError):
    """Raised when calculation input is malformed."""

    pass


class EntityNotFoundError(TariffEngineError):
    """Raised when a referenced entity does not exist in the data source."""

    pass


class CalculationTimeoutError(TariffEngineError):
    """Raised when a calculation does not finish within its timeout."""

    pass


class MoneyConservationError(TariffEngineError):
    """Raised when shares do not add up to the service amount."""

    pass


# =============================================================================
# Factor Settings Write Path
# =============================================================================


class FrozenFinancialYearError(TariffEngineError):
    """Raised when a change targets a frozen financial year."""

    pass


class DuplicateFactorSettingError(TariffEngineError):
    """Raised when a factor setting duplicates an existing active record."""

    pass
