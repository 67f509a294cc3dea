#!/usr/bin/env python3
"""
cl-mutual: Community Mutual-Insurance Pool for Lightning Nodes

This plugin lets a group of nodes run a shared insurance pool:
- Members deposit into the pool; a member's deposit is its voting power
- Members file claims against the pool (paying an anti-spam fee)
- Members approve or reject claims with deposit-weighted votes
- After the voting window closes anyone may finalize a claim; approved
  claims are paid out of the pool in the same step

The logical clock is the node's block height. Voting windows are counted
in blocks and expiry is checked when a command runs; there are no
background threads.

DEPENDENCIES:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import threading
from typing import Dict, Optional, Any

from pyln.client import Plugin, RpcError

# Import our modules
from mutual import __version__
from mutual.config import MutualConfig
from mutual.database import MutualDatabase
from mutual.ledger import LedgerAdapter
from mutual.membership import MembershipRegistry
from mutual.tally import VoteTally
from mutual.claims import ClaimLifecycleEngine
from mutual import rpc_commands
from mutual.rpc_commands import MutualContext

# Initialize the plugin
plugin = Plugin()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# pyln-client's RPC is not inherently thread-safe for concurrent calls.
# This lock serializes all RPC calls to prevent race conditions.

RPC_LOCK = threading.Lock()

# Timeout for RPC lock acquisition to prevent global stalls
RPC_LOCK_TIMEOUT_SECONDS = 10


class RpcLockTimeoutError(TimeoutError):
    """Raised when RPC lock cannot be acquired within timeout."""
    pass


class ThreadSafeRpcProxy:
    """
    A thread-safe proxy for the plugin's RPC interface.

    Ensures all RPC calls are serialized through a lock, with a timeout
    on lock acquisition.
    """

    def __init__(self, rpc):
        """Wrap the original RPC object."""
        self._rpc = rpc

    def __getattr__(self, name):
        """Intercept attribute access to wrap RPC method calls."""
        original_method = getattr(self._rpc, name)

        if callable(original_method):
            def thread_safe_method(*args, **kwargs):
                acquired = RPC_LOCK.acquire(timeout=RPC_LOCK_TIMEOUT_SECONDS)
                if not acquired:
                    raise RpcLockTimeoutError(
                        f"RPC lock acquisition timed out after {RPC_LOCK_TIMEOUT_SECONDS}s"
                    )
                try:
                    return original_method(*args, **kwargs)
                finally:
                    RPC_LOCK.release()
            return thread_safe_method
        else:
            return original_method


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.

    Allows modules to use the same interface (self.plugin.rpc.method())
    while ensuring all RPC calls are serialized through the lock.
    """

    def __init__(self, plugin):
        """Wrap the original plugin with a thread-safe RPC proxy."""
        self._plugin = plugin
        self.rpc = ThreadSafeRpcProxy(plugin.rpc)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)


# =============================================================================
# GLOBAL INSTANCES (initialized in init)
# =============================================================================

database: Optional[MutualDatabase] = None
config: Optional[MutualConfig] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None
ledger: Optional[LedgerAdapter] = None
membership: Optional[MembershipRegistry] = None
engine: Optional[ClaimLifecycleEngine] = None
our_pubkey: Optional[str] = None


def _get_blockheight() -> int:
    """Current block height, the pool's logical clock."""
    return int(safe_plugin.rpc.getinfo()["blockheight"])


def _get_context() -> MutualContext:
    """Bundle the global instances for rpc_commands handlers."""
    return MutualContext(
        database=database,
        config=config,
        safe_plugin=safe_plugin,
        our_pubkey=our_pubkey,
        ledger=ledger,
        membership=membership,
        engine=engine,
        get_blockheight=_get_blockheight if safe_plugin else None,
        log=safe_plugin.log if safe_plugin else None,
    )


def _run(handler, *args, **kwargs) -> Dict[str, Any]:
    """
    Call an rpc_commands handler, turning lightningd RPC failures
    (e.g. getinfo while the node is shutting down) into error dicts.
    """
    try:
        return handler(_get_context(), *args, **kwargs)
    except (RpcError, RpcLockTimeoutError) as e:
        if safe_plugin:
            safe_plugin.log(f"cl-mutual: {handler.__name__} failed: {e}", level='warn')
        return {"error": f"lightningd RPC failed: {e}"}


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='mutual-db-path',
    default='~/.lightning/cl_mutual.db',
    description='Path to the SQLite database for pool state'
)

plugin.add_option(
    name='mutual-claim-fee',
    default='50000',
    description='Anti-spam fee paid into the pool when filing a claim'
)

plugin.add_option(
    name='mutual-max-claim-amount',
    default='10000000',
    description='Maximum payout a single claim may request'
)

plugin.add_option(
    name='mutual-voting-period',
    default='144',
    description='Voting window length in blocks'
)

plugin.add_option(
    name='mutual-approval-threshold',
    default='70',
    description='Percent of cast voting weight that must approve (70 = 70%)'
)

plugin.add_option(
    name='mutual-max-description-length',
    default='256',
    description='Maximum claim description length in characters'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the cl-mutual plugin.

    Steps:
    1. Parse and validate options
    2. Initialize database
    3. Create thread-safe plugin proxy
    4. Wire ledger, membership, tally and claim engine
    """
    global database, config, safe_plugin, ledger, membership, engine, our_pubkey

    plugin.log(f"cl-mutual v{__version__}: Initializing mutual pool...")

    # Create thread-safe plugin proxy
    safe_plugin = ThreadSafePluginProxy(plugin)

    # Build configuration from options
    config = MutualConfig(
        db_path=options.get('mutual-db-path', '~/.lightning/cl_mutual.db'),
        claim_fee=int(options.get('mutual-claim-fee', '50000')),
        max_claim_amount=int(options.get('mutual-max-claim-amount', '10000000')),
        voting_period_blocks=int(options.get('mutual-voting-period', '144')),
        approval_threshold_pct=int(options.get('mutual-approval-threshold', '70')),
        max_description_length=int(options.get('mutual-max-description-length', '256')),
    )
    error = config.validate()
    if error:
        plugin.log(f"cl-mutual: Invalid configuration: {error}", level='broken')
        return {"disable": f"Invalid configuration: {error}"}

    # Initialize database
    database = MutualDatabase(config.db_path, safe_plugin)
    database.initialize()
    plugin.log(f"cl-mutual: Database initialized at {config.db_path}")

    # Wire the pool components
    ledger = LedgerAdapter(database, safe_plugin)
    membership = MembershipRegistry(database, ledger, safe_plugin)
    engine = ClaimLifecycleEngine(
        database,
        ledger,
        membership,
        VoteTally(database),
        config,
        safe_plugin
    )

    info = safe_plugin.rpc.getinfo()
    our_pubkey = info['id']
    plugin.log(
        f"cl-mutual: Initialization complete at block {info.get('blockheight')} "
        f"(claim fee {config.claim_fee}, window {config.voting_period_blocks} blocks, "
        f"threshold {config.approval_threshold_pct}%)"
    )


# =============================================================================
# RPC COMMANDS
# =============================================================================

@plugin.method("mutual-status")
def mutual_status(plugin: Plugin):
    """
    Get current pool status.

    Returns:
        Dict with pool balance, member count, claim counts, block height.
    """
    return _run(rpc_commands.status)


@plugin.method("mutual-config")
def mutual_config(plugin: Plugin):
    """Get current pool configuration."""
    return _run(rpc_commands.get_config)


@plugin.method("mutual-set-config")
def mutual_set_config(plugin: Plugin, key: str, value):
    """
    Change a mutable config value at runtime.

    Open claims keep the voting window and threshold they were filed with.
    """
    return _run(rpc_commands.set_config, key, value)


@plugin.method("mutual-members")
def mutual_members(plugin: Plugin):
    """List all pool members with their deposits (voting power)."""
    return _run(rpc_commands.members)


@plugin.method("mutual-join")
def mutual_join(plugin: Plugin, amount):
    """Join the pool with an initial deposit."""
    return _run(rpc_commands.join, amount)


@plugin.method("mutual-deposit")
def mutual_deposit(plugin: Plugin, amount):
    """Add to this node's deposit."""
    return _run(rpc_commands.deposit, amount)


@plugin.method("mutual-withdraw")
def mutual_withdraw(plugin: Plugin, amount):
    """
    Withdraw from this node's deposit.

    Withdrawing everything ends membership. Votes already cast keep
    their weight.
    """
    return _run(rpc_commands.withdraw, amount)


@plugin.method("mutual-credit")
def mutual_credit(plugin: Plugin, account: str, amount):
    """Record external funds received for an account."""
    return _run(rpc_commands.credit, account, amount)


@plugin.method("mutual-balance")
def mutual_balance(plugin: Plugin, account: str = None):
    """Get external balance, deposit and voting power of an account."""
    return _run(rpc_commands.balance, account)


@plugin.method("mutual-file-claim")
def mutual_file_claim(plugin: Plugin, amount, description: str):
    """
    File a claim against the pool.

    The claim fee is moved from this node's balance into the pool.

    Returns:
        Dict with claim_id and voting deadline (block height).
    """
    return _run(rpc_commands.file_claim, amount, description)


@plugin.method("mutual-vote")
def mutual_vote(plugin: Plugin, claim_id, approve):
    """
    Vote on an active claim.

    Args:
        claim_id: Claim to vote on
        approve: true/false or "approve"/"reject"
    """
    return _run(rpc_commands.vote, claim_id, approve)


@plugin.method("mutual-finalize")
def mutual_finalize(plugin: Plugin, claim_id):
    """
    Finalize a claim after its voting window closed.

    Callable by any node. Returns status approved/rejected; fails with
    insufficient_pool_funds (claim left active) if the pool cannot pay.
    """
    return _run(rpc_commands.finalize, claim_id)


@plugin.method("mutual-claim")
def mutual_claim(plugin: Plugin, claim_id):
    """Get a claim with its tally and votes."""
    return _run(rpc_commands.claim, claim_id)


@plugin.method("mutual-claims")
def mutual_claims(plugin: Plugin, status: str = None, limit: int = 100):
    """List claims, optionally filtered by status (active/approved/rejected)."""
    return _run(rpc_commands.claims, status, limit)


@plugin.method("mutual-audit")
def mutual_audit(plugin: Plugin):
    """Check pool balance against deposits + fees - payouts."""
    return _run(rpc_commands.audit)


@plugin.method("mutual-history")
def mutual_history(plugin: Plugin, limit: int = 50, claim_id=None):
    """Get recent pool events."""
    return _run(rpc_commands.history, limit, claim_id)


# =============================================================================
# MAIN
# =============================================================================

plugin.run()
