"""SQLite database operations for Household Settlement."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path

from .exceptions import SettlementConflictError
from .models import (
    ApportionmentPolicy,
    Income,
    Policy,
    ProposedSettlementLine,
    RoundingPolicy,
    Settlement,
    SettlementLine,
    SettlementStatus,
    ShouldPay,
    Transaction,
    TransactionType,
    YearMonth,
)

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager.

    The connection runs in autocommit mode; every write goes through
    unit_of_work(), which opens an IMMEDIATE transaction so the write lock is
    held from the first read of a read-modify-write sequence.
    """

    def __init__(self, db_path: Path, busy_timeout: float = 5.0):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(
            str(db_path), timeout=busy_timeout, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        with self.unit_of_work():
            cursor = self.conn.cursor()

            # Ledger tables
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    household_id TEXT NOT NULL,
                    amount_yen INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    should_pay TEXT NOT NULL,
                    payer_user_id TEXT NOT NULL,
                    should_pay_user_id TEXT,
                    occurred_on DATE NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    deleted_at TIMESTAMP
                )
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS ix_transactions_household_occurred_on
                ON transactions (household_id, occurred_on)
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS incomes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    household_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    month INTEGER NOT NULL,
                    gross_income_yen INTEGER NOT NULL,
                    deduction_yen INTEGER NOT NULL,
                    allocatable_yen INTEGER NOT NULL,
                    description TEXT,
                    deleted_at TIMESTAMP,
                    UNIQUE (user_id, year, month)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS policies (
                    household_id TEXT PRIMARY KEY,
                    apportionment_zero_income TEXT NOT NULL,
                    rounding TEXT NOT NULL
                )
            """
            )

            # Settlement tables
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS settlements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    household_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    month INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    finalized_by TEXT,
                    finalized_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    UNIQUE (household_id, year, month)
                )
            """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS settlement_lines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    settlement_id INTEGER NOT NULL
                        REFERENCES settlements (id) ON DELETE CASCADE,
                    from_user_id TEXT NOT NULL,
                    to_user_id TEXT NOT NULL,
                    amount_yen INTEGER NOT NULL CHECK (amount_yen > 0),
                    description TEXT NOT NULL
                )
            """
            )

    def close(self):
        """Close database connection."""
        self.conn.close()

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        """
        Run the enclosed statements as one atomic transaction.

        Nested calls join the outer transaction. Any exception rolls back
        everything and is re-raised.
        """
        if self.conn.in_transaction:
            yield
            return

        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # ========================================================================
    # Transaction operations
    # ========================================================================

    def save_transaction(self, transaction: Transaction) -> int:
        """Save a ledger transaction."""
        with self.unit_of_work():
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO transactions (
                    household_id, amount_yen, type, should_pay, payer_user_id,
                    should_pay_user_id, occurred_on, description, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction.household_id,
                    transaction.amount_yen,
                    transaction.type.value,
                    transaction.should_pay.value,
                    transaction.payer_user_id,
                    transaction.should_pay_user_id,
                    transaction.occurred_on.isoformat(),
                    transaction.description,
                    transaction.deleted_at.isoformat()
                    if transaction.deleted_at
                    else None,
                ),
            )
        row_id = cursor.lastrowid
        if row_id is None:
            raise RuntimeError("Failed to insert transaction")
        return row_id

    def delete_transaction(self, household_id: str, transaction_id: int) -> bool:
        """Soft-delete a transaction. Returns False if nothing was deleted."""
        with self.unit_of_work():
            cursor = self.conn.execute(
                """
                UPDATE transactions SET deleted_at = ?
                WHERE id = ? AND household_id = ? AND deleted_at IS NULL
                """,
                (datetime.now().isoformat(), transaction_id, household_id),
            )
        return cursor.rowcount > 0

    def load_month_transactions(
        self, household_id: str, year_month: YearMonth
    ) -> list[Transaction]:
        """Get the household's non-deleted transactions dated within the month."""
        cursor = self.conn.execute(
            """
            SELECT id, household_id, amount_yen, type, should_pay, payer_user_id,
                   should_pay_user_id, occurred_on, description
            FROM transactions
            WHERE household_id = ?
              AND occurred_on >= ?
              AND occurred_on < ?
              AND deleted_at IS NULL
            ORDER BY occurred_on, id
            """,
            (
                household_id,
                year_month.first_day.isoformat(),
                year_month.next_month_first_day.isoformat(),
            ),
        )
        return [
            Transaction(
                id=row["id"],
                household_id=row["household_id"],
                amount_yen=row["amount_yen"],
                type=TransactionType(row["type"]),
                should_pay=ShouldPay(row["should_pay"]),
                payer_user_id=row["payer_user_id"],
                should_pay_user_id=row["should_pay_user_id"],
                occurred_on=date.fromisoformat(row["occurred_on"]),
                description=row["description"],
            )
            for row in cursor.fetchall()
        ]

    # ========================================================================
    # Income operations
    # ========================================================================

    def save_income(self, income: Income) -> int:
        """Save an income, replacing any row for the same user and month."""
        with self.unit_of_work():
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO incomes (
                    household_id, user_id, year, month, gross_income_yen,
                    deduction_yen, allocatable_yen, description
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, year, month) DO UPDATE SET
                    household_id = excluded.household_id,
                    gross_income_yen = excluded.gross_income_yen,
                    deduction_yen = excluded.deduction_yen,
                    allocatable_yen = excluded.allocatable_yen,
                    description = excluded.description,
                    deleted_at = NULL
                """,
                (
                    income.household_id,
                    income.user_id,
                    income.year,
                    income.month,
                    income.gross_income_yen,
                    income.deduction_yen,
                    income.allocatable_yen,
                    income.description,
                ),
            )
            row = self.conn.execute(
                "SELECT id FROM incomes WHERE user_id = ? AND year = ? AND month = ?",
                (income.user_id, income.year, income.month),
            ).fetchone()
        if row is None:
            raise RuntimeError("Failed to insert income")
        return int(row["id"])

    def load_month_incomes(
        self, household_id: str, year_month: YearMonth
    ) -> list[Income]:
        """Get the household's non-deleted incomes for the month."""
        cursor = self.conn.execute(
            """
            SELECT id, household_id, user_id, year, month, gross_income_yen,
                   deduction_yen, description
            FROM incomes
            WHERE household_id = ? AND year = ? AND month = ? AND deleted_at IS NULL
            ORDER BY id
            """,
            (household_id, year_month.year, year_month.month),
        )
        return [
            Income(
                id=row["id"],
                household_id=row["household_id"],
                user_id=row["user_id"],
                year=row["year"],
                month=row["month"],
                gross_income_yen=row["gross_income_yen"],
                deduction_yen=row["deduction_yen"],
                description=row["description"],
            )
            for row in cursor.fetchall()
        ]

    # ========================================================================
    # Policy operations
    # ========================================================================

    def save_policy(self, policy: Policy):
        """Set the household policy."""
        with self.unit_of_work():
            self.conn.execute(
                """
                INSERT INTO policies (household_id, apportionment_zero_income, rounding)
                VALUES (?, ?, ?)
                ON CONFLICT(household_id) DO UPDATE SET
                    apportionment_zero_income = excluded.apportionment_zero_income,
                    rounding = excluded.rounding
                """,
                (
                    policy.household_id,
                    policy.apportionment_zero_income.value,
                    policy.rounding.value,
                ),
            )

    def load_policy(self, household_id: str) -> Policy | None:
        """Get the household policy, if one was set."""
        row = self.conn.execute(
            """
            SELECT household_id, apportionment_zero_income, rounding
            FROM policies WHERE household_id = ?
            """,
            (household_id,),
        ).fetchone()
        if not row:
            return None

        return Policy(
            household_id=row["household_id"],
            apportionment_zero_income=ApportionmentPolicy(
                row["apportionment_zero_income"]
            ),
            rounding=RoundingPolicy(row["rounding"]),
        )

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def get_settlement(
        self, settlement_id: int, household_id: str
    ) -> Settlement | None:
        """Get a settlement with its lines, scoped to one household."""
        row = self.conn.execute(
            f"{_SETTLEMENT_SELECT} WHERE id = ? AND household_id = ?",
            (settlement_id, household_id),
        ).fetchone()
        return self._row_to_settlement(row) if row else None

    def get_settlement_for_month(
        self, household_id: str, year_month: YearMonth
    ) -> Settlement | None:
        """Get the settlement for a household-month, whatever its status."""
        row = self.conn.execute(
            f"{_SETTLEMENT_SELECT} WHERE household_id = ? AND year = ? AND month = ?",
            (household_id, year_month.year, year_month.month),
        ).fetchone()
        return self._row_to_settlement(row) if row else None

    def list_settlements(self, household_id: str) -> list[Settlement]:
        """Get all settlements for a household, newest month first."""
        cursor = self.conn.execute(
            f"{_SETTLEMENT_SELECT} WHERE household_id = ? "
            f"ORDER BY year DESC, month DESC",
            (household_id,),
        )
        return [self._row_to_settlement(row) for row in cursor.fetchall()]

    def delete_draft_settlement(self, household_id: str, year_month: YearMonth) -> int:
        """Delete the DRAFT settlement (and its lines) for a household-month."""
        with self.unit_of_work():
            cursor = self.conn.execute(
                """
                DELETE FROM settlements
                WHERE household_id = ? AND year = ? AND month = ? AND status = ?
                """,
                (
                    household_id,
                    year_month.year,
                    year_month.month,
                    SettlementStatus.DRAFT.value,
                ),
            )
        if cursor.rowcount:
            logger.debug(f"Deleted draft settlement for {household_id} {year_month}")
        return cursor.rowcount

    def create_draft_settlement(
        self,
        household_id: str,
        year_month: YearMonth,
        lines: list[ProposedSettlementLine],
    ) -> Settlement:
        """
        Insert a DRAFT settlement with its lines.

        Raises:
            SettlementConflictError: If a settlement already exists for the month
        """
        with self.unit_of_work():
            cursor = self.conn.cursor()
            try:
                cursor.execute(
                    """
                    INSERT INTO settlements (
                        household_id, year, month, status, created_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        household_id,
                        year_month.year,
                        year_month.month,
                        SettlementStatus.DRAFT.value,
                        datetime.now().isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise SettlementConflictError(
                    f"A settlement for {year_month} already exists"
                ) from e

            settlement_id = cursor.lastrowid
            if settlement_id is None:
                raise RuntimeError("Failed to insert settlement")

            cursor.executemany(
                """
                INSERT INTO settlement_lines (
                    settlement_id, from_user_id, to_user_id, amount_yen, description
                ) VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        settlement_id,
                        line.from_user_id,
                        line.to_user_id,
                        line.amount_yen,
                        line.description,
                    )
                    for line in lines
                ],
            )

            settlement = self.get_settlement(settlement_id, household_id)

        if settlement is None:
            raise RuntimeError("Failed to insert settlement")
        return settlement

    def finalize_settlement(
        self,
        settlement_id: int,
        household_id: str,
        finalized_by: str,
        finalized_at: datetime,
    ) -> Settlement | None:
        """
        Flip a DRAFT settlement to FINALIZED.

        The status check and the update are one statement, so two concurrent
        finalizers cannot both succeed.

        Returns:
            The finalized settlement, or None if no DRAFT matched
        """
        with self.unit_of_work():
            cursor = self.conn.execute(
                """
                UPDATE settlements
                SET status = ?, finalized_by = ?, finalized_at = ?
                WHERE id = ? AND household_id = ? AND status = ?
                """,
                (
                    SettlementStatus.FINALIZED.value,
                    finalized_by,
                    finalized_at.isoformat(),
                    settlement_id,
                    household_id,
                    SettlementStatus.DRAFT.value,
                ),
            )
            if cursor.rowcount == 0:
                return None
            return self.get_settlement(settlement_id, household_id)

    def _get_settlement_lines(self, settlement_id: int) -> list[SettlementLine]:
        cursor = self.conn.execute(
            """
            SELECT id, settlement_id, from_user_id, to_user_id, amount_yen,
                   description
            FROM settlement_lines
            WHERE settlement_id = ?
            ORDER BY id
            """,
            (settlement_id,),
        )
        return [
            SettlementLine(
                id=row["id"],
                settlement_id=row["settlement_id"],
                from_user_id=row["from_user_id"],
                to_user_id=row["to_user_id"],
                amount_yen=row["amount_yen"],
                description=row["description"],
            )
            for row in cursor.fetchall()
        ]

    def _row_to_settlement(self, row: sqlite3.Row) -> Settlement:
        return Settlement(
            id=row["id"],
            household_id=row["household_id"],
            year=row["year"],
            month=row["month"],
            status=SettlementStatus(row["status"]),
            finalized_by=row["finalized_by"],
            finalized_at=datetime.fromisoformat(row["finalized_at"])
            if row["finalized_at"]
            else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            lines=self._get_settlement_lines(row["id"]),
        )


_SETTLEMENT_SELECT = """
    SELECT id, household_id, year, month, status, finalized_by, finalized_at,
           created_at
    FROM settlements
"""
