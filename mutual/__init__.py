"""
Modules package for cl-mutual

This package contains the core modules for the mutual-insurance pool:
- config: Configuration dataclass and snapshot pattern
- database: SQLite persistence with thread-local connections
- errors: Error codes returned by every pool operation
- ledger: Account balances and the pool value-transfer primitive
- membership: Member registry (deposits are voting power)
- tally: Incremental approve/reject weight accumulator
- claims: Claim lifecycle engine (file, vote, finalize)
- rpc_commands: mutual-* RPC command handlers
"""

__version__ = "0.1.0-dev"
