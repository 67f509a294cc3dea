"""
Membership module for cl-mutual

Implements the member registry: join, deposit and withdraw bookkeeping
against the ledger. A member's deposit is its voting power; an account
whose deposit reaches zero stops being a member.
"""

from typing import Any, Dict, List, Optional

from .errors import PoolError, error_result
from .ledger import MAX_AMOUNT, POOL_ACCOUNT, TransferResult, is_valid_amount


class MembershipRegistry:
    """Member registry and deposit bookkeeping."""

    def __init__(self, db, ledger, plugin=None):
        self.db = db
        self.ledger = ledger
        self.plugin = plugin

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Membership] {msg}", level=level)

    def _check_deposit(self, account: str, amount: int) -> Optional[Dict[str, Any]]:
        """Shared join/deposit argument checks; None if acceptable."""
        if account == POOL_ACCOUNT:
            return error_result(PoolError.RESERVED_ACCOUNT, "The pool account cannot be a member")
        if not is_valid_amount(amount, allow_zero=False):
            return error_result(
                PoolError.INVALID_AMOUNT,
                f"Deposit must be a positive integer up to {MAX_AMOUNT}"
            )
        return None

    def _deposit_cap_error(self, amount: int) -> Optional[Dict[str, Any]]:
        """Keep the sum of deposits within MAX_AMOUNT."""
        total = self.db.get_total_deposits()
        if total + amount > MAX_AMOUNT:
            return error_result(
                PoolError.INVALID_AMOUNT,
                f"Deposit would raise total deposits past {MAX_AMOUNT}",
                total_deposits=total
            )
        return None

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_member(self, account: str) -> Optional[Dict[str, Any]]:
        return self.db.get_member(account)

    def is_member(self, account: str) -> bool:
        return self.voting_power(account) > 0

    def voting_power(self, account: str) -> int:
        """Current deposit of account (0 for non-members)."""
        member = self.db.get_member(account)
        return member["deposit"] if member else 0

    def list_members(self) -> List[Dict[str, Any]]:
        return self.db.get_all_members()

    def total_voting_power(self) -> int:
        return self.db.get_total_deposits()

    # =========================================================================
    # DEPOSIT BOOKKEEPING
    # =========================================================================

    def join(self, account: str, amount: int, now: int) -> Dict[str, Any]:
        """
        Join the pool with an initial deposit.

        Args:
            account: Joining account
            amount: Initial deposit (must be positive)
            now: Current block height

        Returns:
            Dict with success status and the new deposit
        """
        error = self._check_deposit(account, amount)
        if error:
            return error

        with self.db.transaction():
            if self.db.get_member(account):
                return error_result(
                    PoolError.ALREADY_MEMBER,
                    "Account is already a pool member",
                    account=account
                )

            error = self._deposit_cap_error(amount)
            if error:
                return error

            if self.ledger.transfer(amount, account, POOL_ACCOUNT) != TransferResult.OK:
                return error_result(
                    PoolError.INSUFFICIENT_BALANCE,
                    f"Balance too low to deposit {amount}",
                    balance=self.ledger.current_balance(account)
                )

            self.db.add_member(account, amount, now)
            self.db.log_pool_event(now, "join", account=account, amount=amount)

        self._log(f"{account[:16]}... joined with deposit {amount}")
        return {
            "success": True,
            "account": account,
            "deposit": amount,
            "joined_at": now
        }

    def deposit(self, account: str, amount: int, now: int) -> Dict[str, Any]:
        """Add to an existing member's deposit."""
        error = self._check_deposit(account, amount)
        if error:
            return error

        with self.db.transaction():
            member = self.db.get_member(account)
            if not member:
                return error_result(PoolError.NOT_MEMBER, "Only members can add deposits")

            error = self._deposit_cap_error(amount)
            if error:
                return error

            if self.ledger.transfer(amount, account, POOL_ACCOUNT) != TransferResult.OK:
                return error_result(
                    PoolError.INSUFFICIENT_BALANCE,
                    f"Balance too low to deposit {amount}",
                    balance=self.ledger.current_balance(account)
                )

            new_deposit = member["deposit"] + amount
            self.db.set_member_deposit(account, new_deposit, now)
            self.db.log_pool_event(now, "deposit", account=account, amount=amount)

        self._log(f"{account[:16]}... deposited {amount} (total {new_deposit})")
        return {"success": True, "account": account, "deposit": new_deposit}

    def withdraw(self, account: str, amount: int, now: int) -> Dict[str, Any]:
        """
        Withdraw part or all of a member's deposit.

        Withdrawing the full deposit ends membership. Votes already cast
        keep the weight they were cast with.
        """
        if not is_valid_amount(amount, allow_zero=False):
            return error_result(PoolError.INVALID_AMOUNT, "Withdrawal must be a positive integer")

        with self.db.transaction():
            member = self.db.get_member(account)
            if not member:
                return error_result(PoolError.NOT_MEMBER, "Only members can withdraw")

            if amount > member["deposit"]:
                return error_result(
                    PoolError.INSUFFICIENT_WITHDRAWABLE_BALANCE,
                    f"Cannot withdraw {amount}, deposit is {member['deposit']}",
                    deposit=member["deposit"]
                )

            # Payouts may have left the pool below the sum of deposits
            if self.ledger.transfer(amount, POOL_ACCOUNT, account) != TransferResult.OK:
                return error_result(
                    PoolError.INSUFFICIENT_POOL_FUNDS,
                    f"Pool balance too low to withdraw {amount}",
                    pool_balance=self.ledger.pool_balance()
                )

            remaining = member["deposit"] - amount
            if remaining == 0:
                self.db.remove_member(account)
            else:
                self.db.set_member_deposit(account, remaining, now)
            self.db.log_pool_event(now, "withdraw", account=account, amount=amount)

        self._log(f"{account[:16]}... withdrew {amount} (remaining {remaining})")
        return {
            "success": True,
            "account": account,
            "deposit": remaining,
            "is_member": remaining > 0
        }
