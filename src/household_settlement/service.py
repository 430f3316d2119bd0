"""Service layer that runs and finalizes household settlements.

The computation itself lives in engine.py and is side-effect free; this
module loads the month's ledger slices, hands them to the engine, and
persists the result through the settlement store inside one unit of work.
"""

import logging
from datetime import datetime

from .engine import compute_settlement, resolve_policy
from .exceptions import (
    ForbiddenError,
    SettlementConflictError,
    SettlementNotFoundError,
)
from .models import AuthContext, Settlement, SettlementComputation, YearMonth
from .ports import LedgerReader, SettlementStore

logger = logging.getLogger(__name__)


class SettlementService:
    """Service for running, finalizing and reading monthly settlements."""

    def __init__(self, ledger: LedgerReader, store: SettlementStore):
        """Initialize the settlement service."""
        self.ledger = ledger
        self.store = store

    def preview_settlement(
        self, household_id: str, year_month: YearMonth, auth: AuthContext
    ) -> SettlementComputation:
        """
        Compute a settlement without persisting anything.

        Args:
            household_id: Household to settle
            year_month: Month to settle
            auth: Caller identity

        Returns:
            Full computation trace, including the proposed lines
        """
        self._check_household(household_id, auth)
        return self._compute(household_id, year_month)

    def run_settlement(
        self, household_id: str, year_month: YearMonth, auth: AuthContext
    ) -> Settlement:
        """
        Compute the month's settlement and store it as a fresh DRAFT.

        Any existing DRAFT for the month is replaced. The finalized check,
        the delete and the insert run in one unit of work.

        Raises:
            ForbiddenError: If the caller belongs to another household
            SettlementConflictError: If the month is already finalized
        """
        self._check_household(household_id, auth)

        with self.store.unit_of_work():
            existing = self.store.get_settlement_for_month(household_id, year_month)
            if existing and existing.is_finalized:
                raise SettlementConflictError(
                    f"Settlement for {year_month} is already finalized"
                )

            computation = self._compute(household_id, year_month)

            replaced = self.store.delete_draft_settlement(household_id, year_month)
            settlement = self.store.create_draft_settlement(
                household_id, year_month, computation.lines
            )

        logger.info(
            f"Created draft settlement {settlement.id} for {household_id} "
            f"{year_month} with {len(settlement.lines)} lines"
            + (" (replaced previous draft)" if replaced else "")
        )
        return settlement

    def finalize_settlement(self, settlement_id: int, auth: AuthContext) -> Settlement:
        """
        Finalize a DRAFT settlement, making it immutable.

        Raises:
            ForbiddenError: If the caller is not an admin
            SettlementNotFoundError: If the settlement is not in the caller's household
            SettlementConflictError: If the settlement is already finalized
        """
        if not auth.is_admin:
            raise ForbiddenError("Only admin users can finalize settlements")

        with self.store.unit_of_work():
            finalized = self.store.finalize_settlement(
                settlement_id,
                auth.household_id,
                finalized_by=auth.user_id,
                finalized_at=datetime.now(),
            )
            if finalized is None:
                existing = self.store.get_settlement(settlement_id, auth.household_id)
                if existing is None:
                    raise SettlementNotFoundError(settlement_id)
                raise SettlementConflictError(
                    f"Settlement {settlement_id} is already finalized"
                )

        logger.info(f"Settlement {settlement_id} finalized by {auth.user_id}")
        return finalized

    def find_one(self, settlement_id: int, auth: AuthContext) -> Settlement:
        """Get a settlement in the caller's household."""
        settlement = self.store.get_settlement(settlement_id, auth.household_id)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id)
        return settlement

    def find_all(self, auth: AuthContext) -> list[Settlement]:
        """Get every settlement in the caller's household, newest month first."""
        return self.store.list_settlements(auth.household_id)

    def find_by_month(
        self, year_month: YearMonth, auth: AuthContext
    ) -> Settlement | None:
        """Get the caller's household settlement for a month, if any."""
        return self.store.get_settlement_for_month(auth.household_id, year_month)

    def _compute(
        self, household_id: str, year_month: YearMonth
    ) -> SettlementComputation:
        transactions = self.ledger.load_month_transactions(household_id, year_month)
        incomes = self.ledger.load_month_incomes(household_id, year_month)
        policy = resolve_policy(self.ledger.load_policy(household_id), household_id)

        logger.debug(
            f"Loaded {len(transactions)} transactions and {len(incomes)} incomes "
            f"for {household_id} {year_month}"
        )
        return compute_settlement(transactions, incomes, policy, year_month)

    @staticmethod
    def _check_household(household_id: str, auth: AuthContext):
        if auth.household_id != household_id:
            raise ForbiddenError(
                f"User {auth.user_id} does not belong to household {household_id}"
            )
