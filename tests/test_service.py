"""Tests for SettlementService layer."""

from contextlib import nullcontext
from datetime import date
from unittest.mock import MagicMock

import pytest

from household_settlement.db import Database
from household_settlement.exceptions import (
    ForbiddenError,
    SettlementConflictError,
    SettlementNotFoundError,
)
from household_settlement.models import (
    AuthContext,
    Income,
    Policy,
    RoundingPolicy,
    Settlement,
    SettlementStatus,
    Transaction,
    UserRole,
    YearMonth,
)
from household_settlement.service import SettlementService

HOUSEHOLD_ID = "household-1"
MARCH = YearMonth(year=2024, month=3)
APRIL = YearMonth(year=2024, month=4)


def line_tuples(settlement: Settlement) -> list[tuple[str, str, int]]:
    return [
        (line.from_user_id, line.to_user_id, line.amount_yen)
        for line in settlement.lines
    ]


@pytest.fixture
def mock_db(tmp_path):
    """Create a temporary database."""
    db_path = tmp_path / "test.db"
    db = Database(db_path)
    yield db
    db.close()


@pytest.fixture
def service(mock_db):
    """Create a SettlementService backed by the temporary database."""
    return SettlementService(ledger=mock_db, store=mock_db)


@pytest.fixture
def admin():
    return AuthContext(user_id="alice", household_id=HOUSEHOLD_ID, role=UserRole.ADMIN)


@pytest.fixture
def member():
    return AuthContext(user_id="bob", household_id=HOUSEHOLD_ID, role=UserRole.MEMBER)


@pytest.fixture
def seeded_db(mock_db):
    """Seed March 2024: alice earns 300,000, bob 100,000, alice pays 10,000."""
    for user_id, gross in (("alice", 300_000), ("bob", 100_000)):
        mock_db.save_income(
            Income(
                household_id=HOUSEHOLD_ID,
                user_id=user_id,
                year=2024,
                month=3,
                gross_income_yen=gross,
            )
        )
    mock_db.save_transaction(
        Transaction(
            household_id=HOUSEHOLD_ID,
            amount_yen=10_000,
            payer_user_id="alice",
            occurred_on=date(2024, 3, 5),
            description="Groceries",
        )
    )
    return mock_db


class TestRunSettlement:
    """Tests for run_settlement method."""

    def test_creates_draft_with_lines(self, service, seeded_db, admin):
        """Should persist a DRAFT with the netted transfer."""
        settlement = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        assert settlement.status == SettlementStatus.DRAFT
        assert settlement.household_id == HOUSEHOLD_ID
        assert settlement.year_month == MARCH
        assert line_tuples(settlement) == [("bob", "alice", 2_500)]
        assert settlement.lines[0].description == "Settlement transfer"

    def test_rerun_replaces_draft(self, service, seeded_db, admin):
        """Should leave exactly one settlement with identical lines on re-run."""
        first = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)
        second = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        assert line_tuples(second) == line_tuples(first)
        assert len(service.find_all(admin)) == 1
        assert second.id != first.id
        assert seeded_db.get_settlement(first.id, HOUSEHOLD_ID) is None

    def test_rerun_picks_up_ledger_changes(self, service, seeded_db, admin):
        """Should reflect transactions added after the previous run."""
        service.run_settlement(HOUSEHOLD_ID, MARCH, admin)
        seeded_db.save_transaction(
            Transaction(
                household_id=HOUSEHOLD_ID,
                amount_yen=4_000,
                payer_user_id="bob",
                occurred_on=date(2024, 3, 20),
            )
        )

        settlement = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        # Shares 10,500 / 3,500 against payments 10,000 / 4,000
        assert line_tuples(settlement) == [("alice", "bob", 500)]

    def test_refuses_finalized_month(self, service, seeded_db, admin):
        """Should raise SettlementConflictError and leave the record untouched."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)
        finalized = service.finalize_settlement(draft.id, admin)

        with pytest.raises(SettlementConflictError) as exc_info:
            service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        assert "already finalized" in str(exc_info.value)
        assert service.find_by_month(MARCH, admin) == finalized

    def test_rejects_other_household(self, service, seeded_db, admin):
        """Should raise ForbiddenError when settling a foreign household."""
        with pytest.raises(ForbiddenError):
            service.run_settlement("household-2", MARCH, admin)

        assert seeded_db.list_settlements("household-2") == []

    def test_member_can_run(self, service, seeded_db, member):
        """Should allow any household member to create a draft."""
        settlement = service.run_settlement(HOUSEHOLD_ID, MARCH, member)

        assert settlement.status == SettlementStatus.DRAFT

    def test_uses_stored_policy(self, service, mock_db, admin):
        """Should apply the household's stored rounding policy."""
        mock_db.save_policy(
            Policy(household_id=HOUSEHOLD_ID, rounding=RoundingPolicy.CEILING)
        )
        for user_id, gross in (("alice", 100_000), ("bob", 200_000)):
            mock_db.save_income(
                Income(
                    household_id=HOUSEHOLD_ID,
                    user_id=user_id,
                    year=2024,
                    month=4,
                    gross_income_yen=gross,
                )
            )
        mock_db.save_transaction(
            Transaction(
                household_id=HOUSEHOLD_ID,
                amount_yen=100,
                payer_user_id="alice",
                occurred_on=date(2024, 4, 1),
            )
        )

        settlement = service.run_settlement(HOUSEHOLD_ID, APRIL, admin)

        # CEILING shares are 34 / 67
        assert line_tuples(settlement) == [("bob", "alice", 66)]

    def test_empty_month_creates_draft_without_lines(self, service, mock_db, admin):
        """Should still record a DRAFT for a month with no activity."""
        settlement = service.run_settlement(HOUSEHOLD_ID, APRIL, admin)

        assert settlement.status == SettlementStatus.DRAFT
        assert settlement.lines == []

    def test_failed_insert_keeps_previous_draft(
        self, service, seeded_db, admin, monkeypatch
    ):
        """Should roll back the delete when the new draft cannot be written."""
        original = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        def fail(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(seeded_db, "create_draft_settlement", fail)

        with pytest.raises(RuntimeError):
            service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        kept = seeded_db.get_settlement(original.id, HOUSEHOLD_ID)
        assert kept is not None
        assert line_tuples(kept) == line_tuples(original)

    def test_finalized_month_is_not_recomputed(self, admin):
        """Should stop before touching the ledger or deleting anything."""
        finalized = Settlement(
            id=1,
            household_id=HOUSEHOLD_ID,
            year=2024,
            month=3,
            status=SettlementStatus.FINALIZED,
        )
        ledger = MagicMock()
        store = MagicMock()
        store.unit_of_work.return_value = nullcontext()
        store.get_settlement_for_month.return_value = finalized

        service = SettlementService(ledger=ledger, store=store)

        with pytest.raises(SettlementConflictError):
            service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        store.get_settlement_for_month.assert_called_once_with(HOUSEHOLD_ID, MARCH)
        store.delete_draft_settlement.assert_not_called()
        store.create_draft_settlement.assert_not_called()
        ledger.load_month_transactions.assert_not_called()


class TestPreviewSettlement:
    """Tests for preview_settlement method."""

    def test_returns_computation_without_persisting(self, service, seeded_db, admin):
        """Should compute lines but store nothing."""
        computation = service.preview_settlement(HOUSEHOLD_ID, MARCH, admin)

        assert computation.balances == {"alice": 2_500, "bob": -2_500}
        assert [line.amount_yen for line in computation.lines] == [2_500]
        assert service.find_by_month(MARCH, admin) is None

    def test_rejects_other_household(self, service, admin):
        """Should raise ForbiddenError for a foreign household."""
        with pytest.raises(ForbiddenError):
            service.preview_settlement("household-2", MARCH, admin)


class TestFinalizeSettlement:
    """Tests for finalize_settlement method."""

    def test_finalizes_draft(self, service, seeded_db, admin):
        """Should stamp status, finalizer and time."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        finalized = service.finalize_settlement(draft.id, admin)

        assert finalized.status == SettlementStatus.FINALIZED
        assert finalized.finalized_by == "alice"
        assert finalized.finalized_at is not None
        assert line_tuples(finalized) == line_tuples(draft)

    def test_member_cannot_finalize(self, service, seeded_db, admin, member):
        """Should raise ForbiddenError for non-admin callers."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        with pytest.raises(ForbiddenError):
            service.finalize_settlement(draft.id, member)

        assert service.find_one(draft.id, admin).status == SettlementStatus.DRAFT

    def test_second_finalize_conflicts(self, service, seeded_db, admin):
        """Should raise SettlementConflictError for an already finalized record."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)
        first = service.finalize_settlement(draft.id, admin)

        with pytest.raises(SettlementConflictError):
            service.finalize_settlement(draft.id, admin)

        assert service.find_one(draft.id, admin).finalized_at == first.finalized_at

    def test_unknown_settlement_not_found(self, service, admin):
        """Should raise SettlementNotFoundError for a missing id."""
        with pytest.raises(SettlementNotFoundError) as exc_info:
            service.finalize_settlement(999, admin)

        assert exc_info.value.settlement_id == 999

    def test_other_household_not_found(self, service, seeded_db, admin):
        """Should hide settlements of other households."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)
        outsider = AuthContext(
            user_id="carol", household_id="household-2", role=UserRole.ADMIN
        )

        with pytest.raises(SettlementNotFoundError):
            service.finalize_settlement(draft.id, outsider)

        assert service.find_one(draft.id, admin).status == SettlementStatus.DRAFT


class TestFindSettlements:
    """Tests for the read operations."""

    def test_find_all_newest_month_first(self, service, admin):
        """Should order settlements by year and month descending."""
        for year, month in ((2024, 3), (2023, 12), (2024, 4)):
            service.run_settlement(HOUSEHOLD_ID, YearMonth.of(year, month), admin)

        months = [str(s.year_month) for s in service.find_all(admin)]

        assert months == ["2024-04", "2024-03", "2023-12"]

    def test_find_one_other_household_not_found(self, service, admin):
        """Should raise SettlementNotFoundError outside the caller's household."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)
        outsider = AuthContext(user_id="carol", household_id="household-2")

        with pytest.raises(SettlementNotFoundError):
            service.find_one(draft.id, outsider)

    def test_find_by_month(self, service, seeded_db, admin):
        """Should return the month's settlement or None."""
        draft = service.run_settlement(HOUSEHOLD_ID, MARCH, admin)

        assert service.find_by_month(MARCH, admin).id == draft.id
        assert service.find_by_month(APRIL, admin) is None
