"""Household Settlement - Monthly who-owes-whom settlements for shared households."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .engine import compute_settlement, greedy_netting, resolve_policy
from .models import (
    AuthContext,
    Income,
    Policy,
    Settlement,
    SettlementComputation,
    SettlementLine,
    Transaction,
    YearMonth,
)
from .service import SettlementService

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "compute_settlement",
    "greedy_netting",
    "resolve_policy",
    "AuthContext",
    "Income",
    "Policy",
    "Settlement",
    "SettlementComputation",
    "SettlementLine",
    "Transaction",
    "YearMonth",
    "SettlementService",
]
