"""Ports the settlement service depends on.

The service only needs these protocols; Database satisfies both, and tests
can substitute in-memory fakes or mocks.
"""

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from .models import (
    Income,
    Policy,
    ProposedSettlementLine,
    Settlement,
    Transaction,
    YearMonth,
)


class LedgerReader(Protocol):
    """Read-only views of a household's ledger."""

    def load_month_transactions(
        self, household_id: str, year_month: YearMonth
    ) -> list[Transaction]:
        """Non-deleted transactions dated within the month."""

    def load_month_incomes(
        self, household_id: str, year_month: YearMonth
    ) -> list[Income]:
        """Non-deleted incomes for the month."""

    def load_policy(self, household_id: str) -> Policy | None:
        """The household policy, or None when defaults apply."""


class SettlementStore(Protocol):
    """Persistence for settlements and their lines."""

    def unit_of_work(self) -> AbstractContextManager[None]:
        """Context manager making the enclosed operations atomic."""

    def get_settlement(
        self, settlement_id: int, household_id: str
    ) -> Settlement | None: ...

    def get_settlement_for_month(
        self, household_id: str, year_month: YearMonth
    ) -> Settlement | None: ...

    def list_settlements(self, household_id: str) -> list[Settlement]: ...

    def delete_draft_settlement(
        self, household_id: str, year_month: YearMonth
    ) -> int: ...

    def create_draft_settlement(
        self,
        household_id: str,
        year_month: YearMonth,
        lines: list[ProposedSettlementLine],
    ) -> Settlement: ...

    def finalize_settlement(
        self,
        settlement_id: int,
        household_id: str,
        finalized_by: str,
        finalized_at: datetime,
    ) -> Settlement | None: ...


__all__ = ["LedgerReader", "SettlementStore"]
