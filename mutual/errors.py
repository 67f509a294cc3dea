"""
Error codes for cl-mutual

Every pool operation returns a dict. Failures carry one of the PoolError
codes below under the "error" key so callers can branch on them
programmatically; nothing in the domain layer raises for a rejected
operation.
"""

from enum import Enum
from typing import Any, Dict


class PoolError(str, Enum):
    """Discrete error codes for pool operations."""
    NOT_MEMBER = "not_member"
    ALREADY_MEMBER = "already_member"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_CLAIM_AMOUNT = "invalid_claim_amount"
    EMPTY_DESCRIPTION = "empty_description"
    DESCRIPTION_TOO_LONG = "description_too_long"
    CLAIM_NOT_FOUND = "claim_not_found"
    CLAIM_NOT_ACTIVE = "claim_not_active"
    ALREADY_VOTED = "already_voted"
    INVALID_VOTE = "invalid_vote"
    INVALID_STATUS = "invalid_status"
    INVALID_CONFIG = "invalid_config"
    RESERVED_ACCOUNT = "reserved_account"
    VOTING_WINDOW_STILL_OPEN = "voting_window_still_open"
    INSUFFICIENT_POOL_FUNDS = "insufficient_pool_funds"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_WITHDRAWABLE_BALANCE = "insufficient_withdrawable_balance"
    NOT_INITIALIZED = "not_initialized"


class ClaimNotActiveReason(str, Enum):
    """
    Sub-codes for PoolError.CLAIM_NOT_ACTIVE.

    VOTING_WINDOW_CLOSED: claim is still active but its window has passed
    ALREADY_FINALIZED: claim reached a terminal status
    """
    VOTING_WINDOW_CLOSED = "voting_window_closed"
    ALREADY_FINALIZED = "already_finalized"


def error_result(code: PoolError, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a failure result dict."""
    return {
        "success": False,
        "error": code.value,
        "message": message,
        **extra
    }

