"""Core settlement computation for a household-month.

Every function here is pure: it works on already-loaded ledger slices and
returns new mappings. Money is integer yen throughout; weights are exact
fractions and rounding happens only in apply_rounding.
"""

import logging
import math
from collections.abc import Iterable, Mapping
from fractions import Fraction

from .exceptions import BalanceDriftError
from .models import (
    ApportionmentPolicy,
    Income,
    Policy,
    ProposedSettlementLine,
    RoundingPolicy,
    SettlementComputation,
    Transaction,
    YearMonth,
)

logger = logging.getLogger(__name__)

TRANSFER_DESCRIPTION = "Settlement transfer"


def resolve_policy(policy: Policy | None, household_id: str) -> Policy:
    """Return the household policy, falling back to EXCLUDE + ROUND."""
    if policy is not None:
        return policy
    return Policy(
        household_id=household_id,
        apportionment_zero_income=ApportionmentPolicy.EXCLUDE,
        rounding=RoundingPolicy.ROUND,
    )


def apply_rounding(amount: Fraction, rounding: RoundingPolicy) -> int:
    """
    Round a fractional yen amount to an integer.

    ROUND rounds half away from zero.

    Args:
        amount: Exact yen amount
        rounding: Household rounding policy

    Returns:
        Rounded amount in yen
    """
    if rounding == RoundingPolicy.CEILING:
        return math.ceil(amount)
    if rounding == RoundingPolicy.FLOOR:
        return math.floor(amount)
    magnitude = math.floor(abs(amount) + Fraction(1, 2))
    return magnitude if amount >= 0 else -magnitude


def compute_income_weights(
    incomes: Iterable[Income],
    apportionment_zero_income: ApportionmentPolicy,
) -> dict[str, Fraction]:
    """
    Convert allocatable incomes into apportionment weights.

    Args:
        incomes: Income rows for the month
        apportionment_zero_income: What to do when nobody has allocatable income

    Returns:
        Mapping of user_id to weight. Weights sum to exactly 1, or the
        mapping is empty when nobody carries shared costs.
    """
    incomes = list(incomes)
    total_allocatable = sum(income.allocatable_yen for income in incomes)

    if total_allocatable > 0:
        return {
            income.user_id: Fraction(income.allocatable_yen, total_allocatable)
            for income in incomes
        }

    if apportionment_zero_income == ApportionmentPolicy.EQUAL and incomes:
        equal_weight = Fraction(1, len(incomes))
        return {income.user_id: equal_weight for income in incomes}

    return {}


def apportion_expenses(
    expenses: Iterable[Transaction],
    weights: Mapping[str, Fraction],
    rounding: RoundingPolicy,
) -> dict[str, int]:
    """
    Compute each weighted member's fair share of the shared expenses.

    Rounding is applied per expense per member, so the shares may drift from
    the expense total by up to one yen per member per expense.
    """
    shares = {user_id: 0 for user_id in weights}

    for expense in expenses:
        total_amount = abs(expense.amount_yen)
        for user_id, weight in weights.items():
            shares[user_id] += apply_rounding(total_amount * weight, rounding)

    return shares


def calculate_actual_payments(expenses: Iterable[Transaction]) -> dict[str, int]:
    """Sum what each payer actually spent on shared expenses."""
    payments: dict[str, int] = {}
    for expense in expenses:
        payer_id = expense.payer_user_id
        payments[payer_id] = payments.get(payer_id, 0) + abs(expense.amount_yen)
    return payments


def compute_deltas(
    actual_payments: Mapping[str, int],
    shares: Mapping[str, int],
) -> dict[str, int]:
    """Compute paid - fair share for every member that paid or owes a share."""
    deltas: dict[str, int] = {}
    for user_id in _union_keys(actual_payments, shares):
        deltas[user_id] = actual_payments.get(user_id, 0) - shares.get(user_id, 0)
    return deltas


def build_reimbursements(personal_expenses: Iterable[Transaction]) -> dict[str, int]:
    """
    Net personal expenses paid by one member on behalf of another.

    The payer is owed the amount and the beneficiary owes it. Self-paid
    personal expenses are skipped.
    """
    reimbursements: dict[str, int] = {}

    for expense in personal_expenses:
        payer_id = expense.payer_user_id
        beneficiary_id = expense.should_pay_user_id
        if beneficiary_id is None or payer_id == beneficiary_id:
            continue

        amount = abs(expense.amount_yen)
        reimbursements[payer_id] = reimbursements.get(payer_id, 0) + amount
        reimbursements[beneficiary_id] = reimbursements.get(beneficiary_id, 0) - amount

    return reimbursements


def merge_balances(
    household_deltas: Mapping[str, int],
    reimbursements: Mapping[str, int],
) -> dict[str, int]:
    """Combine household deltas and reimbursements into one balance per member."""
    balances: dict[str, int] = {}
    for user_id in _union_keys(household_deltas, reimbursements):
        balances[user_id] = household_deltas.get(user_id, 0) + reimbursements.get(
            user_id, 0
        )
    return balances


def greedy_netting(balances: Mapping[str, int]) -> list[ProposedSettlementLine]:
    """
    Turn signed balances into transfers from debtors to creditors.

    Payers (negative balance) are visited most negative first and matched
    against receivers (positive balance) largest credit first. Both sorts are
    stable, so equal balances keep their mapping order.

    Args:
        balances: Mapping of user_id to balance (positive = owed money)

    Returns:
        Transfers with strictly positive amounts
    """
    working_balances = dict(balances)

    payers = sorted(
        ((user_id, bal) for user_id, bal in working_balances.items() if bal < 0),
        key=lambda item: item[1],
    )
    receivers = sorted(
        ((user_id, bal) for user_id, bal in working_balances.items() if bal > 0),
        key=lambda item: item[1],
        reverse=True,
    )

    lines: list[ProposedSettlementLine] = []

    for payer_id, payer_balance in payers:
        remaining = -payer_balance

        for receiver_id, _ in receivers:
            current_credit = working_balances[receiver_id]
            if remaining == 0 or current_credit <= 0:
                continue

            transfer_amount = min(remaining, current_credit)
            lines.append(
                ProposedSettlementLine(
                    from_user_id=payer_id,
                    to_user_id=receiver_id,
                    amount_yen=transfer_amount,
                    description=TRANSFER_DESCRIPTION,
                )
            )
            remaining -= transfer_amount
            working_balances[receiver_id] = current_credit - transfer_amount

        working_balances[payer_id] = -remaining
        if remaining:
            logger.warning(
                f"User {payer_id} still owes {remaining} yen after netting "
                f"(no creditor left)"
            )

    unmatched_credit = sum(bal for bal in working_balances.values() if bal > 0)
    if unmatched_credit:
        logger.warning(f"{unmatched_credit} yen of credit left unmatched by netting")

    return lines


def compute_settlement(
    transactions: Iterable[Transaction],
    incomes: Iterable[Income],
    policy: Policy,
    year_month: YearMonth,
) -> SettlementComputation:
    """
    Run the full settlement computation for one household-month.

    Steps:
    1. Weight members by allocatable income
    2. Apportion shared expenses and total what each member paid
    3. Compute household deltas and personal reimbursements
    4. Merge into balances and verify rounding drift is within bounds
    5. Net balances into transfers

    Args:
        transactions: Non-deleted transactions dated within the month
        incomes: Non-deleted incomes for the month
        policy: Fully resolved household policy
        year_month: The month being settled

    Returns:
        The computation trace including proposed settlement lines

    Raises:
        BalanceDriftError: If balances drift beyond the rounding bound
    """
    transactions = list(transactions)
    household_expenses = [t for t in transactions if t.is_household_expense]
    personal_expenses = [t for t in transactions if t.is_personal_expense]

    weights = compute_income_weights(incomes, policy.apportionment_zero_income)
    shares = apportion_expenses(household_expenses, weights, policy.rounding)
    payments = calculate_actual_payments(household_expenses)
    household_deltas = compute_deltas(payments, shares)
    reimbursements = build_reimbursements(personal_expenses)
    balances = merge_balances(household_deltas, reimbursements)

    weight_labels = {user_id: str(weight) for user_id, weight in weights.items()}
    logger.debug(
        f"{year_month}: weights={weight_labels}, shares={shares}, "
        f"payments={payments}, balances={balances}"
    )

    total_shared = sum(payments.values())
    unassigned = 0 if weights else total_shared
    residual = sum(balances.values())
    rounding_drift = residual - unassigned

    drift_limit = len(weights) * len(household_expenses)
    if abs(rounding_drift) > drift_limit:
        raise BalanceDriftError(rounding_drift, drift_limit)

    if unassigned:
        logger.warning(
            f"{year_month}: {unassigned} yen of shared expenses unassigned "
            f"(no allocatable income under {policy.apportionment_zero_income.value})"
        )
    elif rounding_drift:
        logger.info(f"{year_month}: rounding drift of {rounding_drift} yen in balances")

    lines = greedy_netting(balances)

    return SettlementComputation(
        year_month=year_month,
        policy=policy,
        weights=weights,
        shares=shares,
        payments=payments,
        household_deltas=household_deltas,
        reimbursements=reimbursements,
        balances=balances,
        lines=lines,
        residual_yen=residual,
        unassigned_yen=unassigned,
        shared_expense_count=len(household_expenses),
    )


def _union_keys(*mappings: Mapping[str, int]) -> list[str]:
    """Union of mapping keys, in first-seen order."""
    return list(dict.fromkeys(key for mapping in mappings for key in mapping))
