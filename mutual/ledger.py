"""
Ledger module for cl-mutual

Account balances and the single value-transfer primitive used to move
funds in and out of the pool. The pool is the reserved account
POOL_ACCOUNT; its balance is the pool balance.

transfer() is failable and never overdraws. Callers that need several
movements to succeed or fail together wrap them in
MutualDatabase.transaction().
"""

from enum import Enum
from typing import Any, Dict, Optional

from .errors import PoolError, error_result


POOL_ACCOUNT = "__pool__"

# 21M BTC in sats; every balance, deposit and transfer stays within SQLite's INTEGER
MAX_AMOUNT = 2_100_000_000_000_000


class TransferResult(str, Enum):
    """Outcome of a ledger transfer."""
    OK = "ok"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_AMOUNT = "invalid_amount"


def is_valid_amount(amount: Any, allow_zero: bool = True) -> bool:
    """True for ints in [0, MAX_AMOUNT] (bools rejected)."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        return False
    if amount > MAX_AMOUNT:
        return False
    return amount >= 0 if allow_zero else amount > 0


class LedgerAdapter:
    """Balance lookups and transfers over the ledger_accounts table."""

    def __init__(self, database, plugin=None):
        self.db = database
        self.plugin = plugin

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Ledger] {msg}", level=level)

    def current_balance(self, account: str) -> int:
        return self.db.get_account_balance(account)

    def pool_balance(self) -> int:
        return self.db.get_account_balance(POOL_ACCOUNT)

    def transfer(self, amount: int, from_account: str, to_account: str) -> TransferResult:
        """
        Move amount from one account to another.

        A zero transfer is a successful no-op. Both legs run in one
        transaction, so a failed credit can never leave a debit behind.
        """
        if not is_valid_amount(amount):
            return TransferResult.INVALID_AMOUNT
        if amount == 0 or from_account == to_account:
            return TransferResult.OK

        with self.db.transaction():
            if not self.db.debit_account(from_account, amount):
                return TransferResult.INSUFFICIENT_FUNDS
            self.db.credit_account(to_account, amount)

        self._log(f"Transferred {amount} from {_short(from_account)} to {_short(to_account)}",
                  level="debug")
        return TransferResult.OK

    def credit(self, account: str, amount: int, now: int) -> Dict[str, Any]:
        """
        Record external funds arriving in an account.

        Returns:
            Dict with success status and the new balance
        """
        if not is_valid_amount(amount, allow_zero=False):
            return error_result(
                PoolError.INVALID_AMOUNT,
                f"Amount must be a positive integer up to {MAX_AMOUNT}"
            )
        if account == POOL_ACCOUNT:
            return error_result(PoolError.RESERVED_ACCOUNT, "The pool account cannot be credited directly")

        with self.db.transaction():
            supply = self.db.get_total_balance()
            if supply + amount > MAX_AMOUNT:
                return error_result(
                    PoolError.INVALID_AMOUNT,
                    f"Credit would raise total funds past {MAX_AMOUNT}",
                    total_funds=supply
                )
            self.db.credit_account(account, amount)
            self.db.log_pool_event(now, "credit", account=account, amount=amount)
            balance = self.db.get_account_balance(account)

        self._log(f"Credited {amount} to {_short(account)}")
        return {"success": True, "account": account, "balance": balance}


def _short(account: Optional[str]) -> str:
    if not account:
        return "?"
    if account == POOL_ACCOUNT:
        return "pool"
    return account[:16] + "..." if len(account) > 16 else account
