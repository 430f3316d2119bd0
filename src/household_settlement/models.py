"""Pydantic domain models for Household Settlement."""

from datetime import date, datetime
from enum import Enum
from fractions import Fraction

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    model_validator,
)

from .exceptions import InvalidPeriodError

# ============================================================================
# Enumerations
# ============================================================================


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class ShouldPay(str, Enum):
    """Who bears the cost of an expense."""

    HOUSEHOLD = "HOUSEHOLD"  # shared per income weight
    USER = "USER"  # personal, owed by should_pay_user_id


class ApportionmentPolicy(str, Enum):
    """How shared costs are split when nobody has allocatable income."""

    EXCLUDE = "EXCLUDE"
    EQUAL = "EQUAL"


class RoundingPolicy(str, Enum):
    CEILING = "CEILING"
    FLOOR = "FLOOR"
    ROUND = "ROUND"


class SettlementStatus(str, Enum):
    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"


class UserRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


# ============================================================================
# Ledger Models
# ============================================================================


class YearMonth(BaseModel):
    """A calendar month."""

    model_config = ConfigDict(frozen=True)

    year: int = Field(ge=1, le=9999)
    month: int = Field(ge=1, le=12)

    @classmethod
    def of(cls, year: int, month: int) -> "YearMonth":
        """Build a YearMonth, raising InvalidPeriodError for bad input."""
        try:
            return cls(year=year, month=month)
        except ValidationError as e:
            raise InvalidPeriodError(
                f"Invalid period {year}-{month}: expected year 1-9999, month 1-12"
            ) from e

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def next_month_first_day(self) -> date:
        """First day of the following month (exclusive upper bound)."""
        if self.month == 12:
            return date(self.year + 1, 1, 1)
        return date(self.year, self.month + 1, 1)

    def __str__(self) -> str:
        return f"{self.year}-{self.month:02d}"


class Transaction(BaseModel):
    """A household ledger transaction."""

    id: int | None = None
    household_id: str
    amount_yen: int  # signed; expenses are consumed via abs()
    type: TransactionType = TransactionType.EXPENSE
    should_pay: ShouldPay = ShouldPay.HOUSEHOLD
    payer_user_id: str
    should_pay_user_id: str | None = None
    occurred_on: date
    description: str = ""
    deleted_at: datetime | None = None

    @model_validator(mode="after")
    def _require_beneficiary_for_personal(self) -> "Transaction":
        if self.should_pay == ShouldPay.USER and not self.should_pay_user_id:
            raise ValueError("should_pay_user_id is required when should_pay=USER")
        return self

    @property
    def is_household_expense(self) -> bool:
        return (
            self.type == TransactionType.EXPENSE
            and self.should_pay == ShouldPay.HOUSEHOLD
        )

    @property
    def is_personal_expense(self) -> bool:
        return (
            self.type == TransactionType.EXPENSE and self.should_pay == ShouldPay.USER
        )


class Income(BaseModel):
    """A member's income for one month."""

    id: int | None = None
    household_id: str
    user_id: str
    year: int
    month: int = Field(ge=1, le=12)
    gross_income_yen: int = Field(ge=0)
    deduction_yen: int = Field(default=0, ge=0)
    description: str | None = None
    deleted_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def allocatable_yen(self) -> int:
        """Income available for household costs, never negative."""
        return max(0, self.gross_income_yen - self.deduction_yen)


class Policy(BaseModel):
    """Household apportionment and rounding policy."""

    household_id: str
    apportionment_zero_income: ApportionmentPolicy = ApportionmentPolicy.EXCLUDE
    rounding: RoundingPolicy = RoundingPolicy.ROUND


class AuthContext(BaseModel):
    """The authenticated caller of a settlement operation."""

    user_id: str
    household_id: str
    role: UserRole = UserRole.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# ============================================================================
# Settlement Models
# ============================================================================


class ProposedSettlementLine(BaseModel):
    """A transfer produced by netting, before it is persisted."""

    from_user_id: str
    to_user_id: str
    amount_yen: int = Field(gt=0)
    description: str = "Settlement transfer"


class SettlementLine(BaseModel):
    """A persisted transfer owned by a settlement."""

    id: int
    settlement_id: int
    from_user_id: str
    to_user_id: str
    amount_yen: int = Field(gt=0)
    description: str


class Settlement(BaseModel):
    """A settlement for one household-month."""

    id: int
    household_id: str
    year: int
    month: int
    status: SettlementStatus = SettlementStatus.DRAFT
    finalized_by: str | None = None
    finalized_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    lines: list[SettlementLine] = Field(default_factory=list)

    @property
    def year_month(self) -> YearMonth:
        return YearMonth(year=self.year, month=self.month)

    @property
    def is_finalized(self) -> bool:
        return self.status == SettlementStatus.FINALIZED


class SettlementComputation(BaseModel):
    """Every intermediate result of one settlement computation.

    balances holds paid - fair share + reimbursements per member: positive
    means the member is owed money, negative means the member owes.
    residual_yen is sum(balances): the drift left by per-expense rounding plus
    any shared spend left unassigned because no member carried a weight.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    year_month: YearMonth
    policy: Policy
    weights: dict[str, Fraction]
    shares: dict[str, int]
    payments: dict[str, int]
    household_deltas: dict[str, int]
    reimbursements: dict[str, int]
    balances: dict[str, int]
    lines: list[ProposedSettlementLine]
    residual_yen: int = 0
    unassigned_yen: int = 0  # shared spend nobody was weighted to carry
    shared_expense_count: int = 0
