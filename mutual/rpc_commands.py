"""
RPC Command Handlers for cl-mutual

This module contains the implementation logic for mutual-* RPC commands.
The actual @plugin.method() decorators remain in cl-mutual.py, which creates
thin wrappers that call these handler functions.

Design Pattern:
    - Each handler receives a MutualContext with all dependencies
    - Handlers are pure functions that can be easily tested
    - The local node is the caller; the clock is the current block height
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import __version__
from .claims import ClaimStatus
from .config import CONFIG_FIELD_TYPES
from .errors import PoolError, error_result
from .ledger import POOL_ACCOUNT


@dataclass
class MutualContext:
    """
    Context object holding all dependencies for RPC command handlers.

    This bundles the global state that commands need access to,
    making dependencies explicit and handlers testable.
    """
    database: Any  # MutualDatabase
    config: Any    # MutualConfig
    safe_plugin: Any  # ThreadSafePluginProxy
    our_pubkey: str
    ledger: Any = None  # LedgerAdapter
    membership: Any = None  # MembershipRegistry
    engine: Any = None  # ClaimLifecycleEngine
    get_blockheight: Callable[[], int] = None  # () -> current block height
    log: Callable[[str, str], None] = None  # Logger function: (msg, level) -> None


def _not_initialized() -> Dict[str, Any]:
    return error_result(PoolError.NOT_INITIALIZED, "Mutual pool not initialized")


def _ready(ctx: MutualContext) -> bool:
    return bool(ctx.database and ctx.engine and ctx.our_pubkey and ctx.get_blockheight)


def _parse_int(value: Any) -> Optional[int]:
    """Accept ints and decimal strings (lightning-cli may pass either)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _parse_vote(value: Any) -> Optional[bool]:
    """Map approve/reject style input to a bool (None if unrecognized)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("approve", "yes", "true", "1"):
            return True
        if lowered in ("reject", "no", "false", "0"):
            return False
    return None


# =============================================================================
# STATUS/CONFIG COMMANDS
# =============================================================================

def status(ctx: MutualContext) -> Dict[str, Any]:
    """
    Get current pool status.

    Returns:
        Dict with pool balance, member count, claim counts and block height.
    """
    if not _ready(ctx):
        return _not_initialized()

    members = ctx.membership.list_members()
    claim_counts = ctx.database.get_claim_count_by_status()

    return {
        "status": "active" if members else "empty",
        "blockheight": ctx.get_blockheight(),
        "pool_balance": ctx.ledger.pool_balance(),
        "members": {
            "count": len(members),
            "total_voting_power": sum(m["deposit"] for m in members),
        },
        "claims": {
            "active": claim_counts.get(ClaimStatus.ACTIVE.value, 0),
            "approved": claim_counts.get(ClaimStatus.APPROVED.value, 0),
            "rejected": claim_counts.get(ClaimStatus.REJECTED.value, 0),
        },
        "version": __version__,
    }


def get_config(ctx: MutualContext) -> Dict[str, Any]:
    """
    Get current pool configuration values.

    Returns:
        Dict with all current config values and metadata.
    """
    if not ctx.config:
        return _not_initialized()

    return {
        "config_version": ctx.config._version,
        "immutable": {
            "db_path": ctx.config.db_path,
        },
        "claims": {
            "claim_fee": ctx.config.claim_fee,
            "max_claim_amount": ctx.config.max_claim_amount,
            "max_description_length": ctx.config.max_description_length,
        },
        "voting": {
            "voting_period_blocks": ctx.config.voting_period_blocks,
            "approval_threshold_pct": ctx.config.approval_threshold_pct,
        },
    }


def set_config(ctx: MutualContext, key: str, value: Any) -> Dict[str, Any]:
    """
    Change a mutable config value at runtime.

    Claims already filed keep the voting window and threshold they were
    filed with.

    Args:
        ctx: MutualContext
        key: Config field name (e.g. 'claim_fee')
        value: New value

    Returns:
        Dict with previous and current value.
    """
    if not ctx.config:
        return _not_initialized()

    if CONFIG_FIELD_TYPES.get(key) is int:
        parsed = _parse_int(value)
        if parsed is None:
            return error_result(PoolError.INVALID_CONFIG, f"Config {key} requires an integer",
                                key=key, value=value)
        value = parsed

    previous = getattr(ctx.config, key, None)
    error = ctx.config.update(key, value)
    if error:
        return error_result(PoolError.INVALID_CONFIG, error, key=key)

    if ctx.log:
        ctx.log(f"cl-mutual: Config {key} changed from {previous} to {value}", 'info')

    return {
        "status": "ok",
        "key": key,
        "previous_value": previous,
        "current_value": value,
        "config_version": ctx.config._version,
    }


# =============================================================================
# MEMBERSHIP COMMANDS
# =============================================================================

def members(ctx: MutualContext) -> Dict[str, Any]:
    """
    List all pool members with their deposits.

    Returns:
        Dict with list of all members.
    """
    if not _ready(ctx):
        return _not_initialized()

    all_members = ctx.membership.list_members()
    return {
        "count": len(all_members),
        "total_voting_power": sum(m["deposit"] for m in all_members),
        "members": all_members,
    }


def join(ctx: MutualContext, amount) -> Dict[str, Any]:
    """Join the pool with an initial deposit."""
    if not _ready(ctx):
        return _not_initialized()

    parsed = _parse_int(amount)
    if parsed is None:
        return error_result(PoolError.INVALID_AMOUNT, "Amount must be an integer")
    return ctx.membership.join(ctx.our_pubkey, parsed, ctx.get_blockheight())


def deposit(ctx: MutualContext, amount) -> Dict[str, Any]:
    """Add to our deposit."""
    if not _ready(ctx):
        return _not_initialized()

    parsed = _parse_int(amount)
    if parsed is None:
        return error_result(PoolError.INVALID_AMOUNT, "Amount must be an integer")
    return ctx.membership.deposit(ctx.our_pubkey, parsed, ctx.get_blockheight())


def withdraw(ctx: MutualContext, amount) -> Dict[str, Any]:
    """Withdraw from our deposit."""
    if not _ready(ctx):
        return _not_initialized()

    parsed = _parse_int(amount)
    if parsed is None:
        return error_result(PoolError.INVALID_AMOUNT, "Amount must be an integer")
    return ctx.membership.withdraw(ctx.our_pubkey, parsed, ctx.get_blockheight())


def credit(ctx: MutualContext, account: str, amount) -> Dict[str, Any]:
    """
    Record external funds arriving for an account.

    Args:
        ctx: MutualContext
        account: Account (node pubkey) to credit
        amount: Positive amount

    Returns:
        Dict with the account's new balance.
    """
    if not _ready(ctx):
        return _not_initialized()

    parsed = _parse_int(amount)
    if parsed is None:
        return error_result(PoolError.INVALID_AMOUNT, "Amount must be an integer")
    return ctx.ledger.credit(account, parsed, ctx.get_blockheight())


def balance(ctx: MutualContext, account: str = None) -> Dict[str, Any]:
    """
    Get an account's external balance, deposit and voting power.

    Defaults to our own node.
    """
    if not _ready(ctx):
        return _not_initialized()

    account = account or ctx.our_pubkey
    power = ctx.membership.voting_power(account)
    return {
        "account": account,
        "balance": ctx.ledger.current_balance(account),
        "deposit": power,
        "voting_power": power,
        "is_member": power > 0,
    }


# =============================================================================
# CLAIM COMMANDS
# =============================================================================

def file_claim(ctx: MutualContext, amount, description: str) -> Dict[str, Any]:
    """
    File a claim against the pool on behalf of our node.

    Returns:
        Dict with the new claim_id, or an error.
    """
    if not _ready(ctx):
        return _not_initialized()

    parsed = _parse_int(amount)
    if parsed is None:
        return error_result(PoolError.INVALID_CLAIM_AMOUNT, "Amount must be an integer")
    return ctx.engine.file_claim(ctx.our_pubkey, parsed, description, ctx.get_blockheight())


def vote(ctx: MutualContext, claim_id, approve) -> Dict[str, Any]:
    """
    Vote on an active claim.

    Args:
        ctx: MutualContext
        claim_id: Claim to vote on
        approve: true/false or "approve"/"reject"

    Returns:
        Dict with the updated tally, or an error.
    """
    if not _ready(ctx):
        return _not_initialized()

    parsed_vote = _parse_vote(approve)
    if parsed_vote is None:
        return error_result(PoolError.INVALID_VOTE, "Vote must be approve or reject",
                            valid_options=["approve", "reject"])

    parsed_id = _parse_int(claim_id)
    if parsed_id is None:
        return error_result(PoolError.CLAIM_NOT_FOUND, f"Claim {claim_id} not found")
    return ctx.engine.vote_on_claim(ctx.our_pubkey, parsed_id, parsed_vote, ctx.get_blockheight())


def finalize(ctx: MutualContext, claim_id) -> Dict[str, Any]:
    """Finalize a claim whose voting window has closed."""
    if not _ready(ctx):
        return _not_initialized()

    parsed_id = _parse_int(claim_id)
    if parsed_id is None:
        return error_result(PoolError.CLAIM_NOT_FOUND, f"Claim {claim_id} not found")
    return ctx.engine.finalize_claim(ctx.our_pubkey, parsed_id, ctx.get_blockheight())


def claim(ctx: MutualContext, claim_id) -> Dict[str, Any]:
    """
    Get a claim with its tally, votes and whether it still accepts votes.
    """
    if not _ready(ctx):
        return _not_initialized()

    parsed_id = _parse_int(claim_id)
    record = ctx.engine.get_claim(parsed_id) if parsed_id is not None else None
    if record is None:
        return error_result(PoolError.CLAIM_NOT_FOUND, f"Claim {claim_id} not found")

    now = ctx.get_blockheight()
    return {
        "claim": record.to_dict(),
        "tally": ctx.engine.get_tally(parsed_id).to_dict(),
        "votes": ctx.engine.get_votes(parsed_id),
        "is_active": record.is_open(now),
        "blocks_remaining": max(0, record.voting_ends_at - now) if record.is_open(now) else 0,
    }


def claims(ctx: MutualContext, status: str = None, limit: int = 100) -> Dict[str, Any]:
    """List claims, newest first, optionally filtered by status."""
    if not _ready(ctx):
        return _not_initialized()

    status_filter = None
    if status not in (None, ""):
        try:
            status_filter = ClaimStatus(str(status).strip().lower())
        except ValueError:
            return error_result(
                PoolError.INVALID_STATUS,
                f"Invalid status: {status}",
                valid_statuses=[s.value for s in ClaimStatus]
            )

    records = ctx.engine.list_claims(status_filter, _parse_int(limit) or 100)
    return {
        "count": len(records),
        "claims": [r.to_dict() for r in records],
    }


# =============================================================================
# AUDIT COMMANDS
# =============================================================================

def audit(ctx: MutualContext) -> Dict[str, Any]:
    """Check that the pool balance matches deposits + fees - payouts."""
    if not _ready(ctx):
        return _not_initialized()
    return ctx.engine.audit_pool()


def history(ctx: MutualContext, limit: int = 50, claim_id=None) -> Dict[str, Any]:
    """Get recent pool events, optionally for one claim."""
    if not _ready(ctx):
        return _not_initialized()

    events = ctx.database.get_pool_events(
        limit=_parse_int(limit) or 50,
        claim_id=_parse_int(claim_id) if claim_id is not None else None
    )
    for event in events:
        if event.get("account") == POOL_ACCOUNT:
            event["account"] = "pool"
    return {
        "count": len(events),
        "events": events,
    }
