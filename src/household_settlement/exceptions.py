"""Custom exceptions for Household Settlement."""


class HouseholdSettlementError(Exception):
    """Base exception for all Household Settlement errors."""

    pass


class ConfigurationError(HouseholdSettlementError):
    """Raised when configuration is invalid or missing."""

    pass


class InvalidPeriodError(HouseholdSettlementError):
    """Raised when a year/month pair does not describe a calendar month."""

    pass


class SettlementNotFoundError(HouseholdSettlementError):
    """Raised when a settlement does not exist in the caller's household."""

    def __init__(self, settlement_id: int, message: str | None = None):
        self.settlement_id = settlement_id
        super().__init__(message or f"Settlement {settlement_id} not found")


class SettlementConflictError(HouseholdSettlementError):
    """Raised when a settlement change would overwrite a finalized settlement."""

    pass


class ForbiddenError(HouseholdSettlementError):
    """Raised when the caller lacks the privilege for an operation."""

    pass


class BalanceDriftError(HouseholdSettlementError):
    """Raised when merged balances drift further from zero than rounding allows."""

    def __init__(self, residual_yen: int, limit_yen: int):
        self.residual_yen = residual_yen
        self.limit_yen = limit_yen
        super().__init__(
            f"Balances do not net to zero:\n"
            f"  Residual: {residual_yen} yen\n"
            f"  Rounding limit: {limit_yen} yen\n"
            f"This likely indicates a data integrity issue."
        )
