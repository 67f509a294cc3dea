"""
Configuration module for cl-mutual

Contains the MutualConfig dataclass that holds all tunable parameters
for the mutual-insurance pool.

Uses the ConfigSnapshot pattern so every pool operation reads one
consistent set of values even if config is changed mid-call.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, FrozenSet


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'claim_fee': int,
    'max_claim_amount': int,
    'voting_period_blocks': int,
    'approval_threshold_pct': int,
    'max_description_length': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'claim_fee': (0, 10_000_000),
    'max_claim_amount': (1, 2_100_000_000_000_000),  # 21M BTC in sats
    'voting_period_blocks': (1, 52_560),              # Up to ~1 year of blocks
    'approval_threshold_pct': (1, 100),
    'max_description_length': (1, 4096),
}


@dataclass
class MutualConfig:
    """
    Configuration container for the mutual pool plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/cl_mutual.db'

    # Claim filing
    claim_fee: int = 50_000                 # Anti-spam fee paid into the pool
    max_claim_amount: int = 10_000_000      # Largest payout a claim may request
    max_description_length: int = 256       # Code points

    # Voting
    voting_period_blocks: int = 144         # ~1 day of blocks
    approval_threshold_pct: int = 70        # % of cast weight that must approve

    # Internal version tracking
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'MutualConfigSnapshot':
        """
        Create an immutable snapshot for a single pool operation.

        Operations MUST capture a snapshot at their start and use only
        that snapshot for the rest of the call.
        """
        return MutualConfigSnapshot.from_config(self)

    def validate(self) -> Optional[str]:
        """
        Validate configuration values.

        Returns:
            Error message if invalid, None if valid
        """
        for key, expected in CONFIG_FIELD_TYPES.items():
            value = getattr(self, key, None)
            if isinstance(value, bool) or not isinstance(value, expected):
                return f"Config {key}={value!r} must be of type {expected.__name__}"

        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key, None)
            if value is not None and not (min_val <= value <= max_val):
                return f"Config {key}={value} out of range [{min_val}, {max_val}]"

        return None

    def update(self, key: str, value) -> Optional[str]:
        """
        Change a single mutable config value at runtime.

        Returns:
            Error message if rejected, None if applied
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return f"Config {key} cannot be changed at runtime"
        if key not in CONFIG_FIELD_TYPES:
            return f"Unknown config key: {key}"

        previous = getattr(self, key)
        setattr(self, key, value)
        error = self.validate()
        if error:
            setattr(self, key, previous)
            return error

        self._version += 1
        return None


@dataclass(frozen=True)
class MutualConfigSnapshot:
    """
    Immutable configuration snapshot.

    This frozen dataclass prevents accidental mutation and keeps a
    single operation consistent when config is updated concurrently.
    """

    db_path: str
    claim_fee: int
    max_claim_amount: int
    max_description_length: int
    voting_period_blocks: int
    approval_threshold_pct: int
    version: int

    @classmethod
    def from_config(cls, config: MutualConfig) -> 'MutualConfigSnapshot':
        """Create a frozen snapshot from mutable config."""
        return cls(
            db_path=config.db_path,
            claim_fee=config.claim_fee,
            max_claim_amount=config.max_claim_amount,
            max_description_length=config.max_description_length,
            voting_period_blocks=config.voting_period_blocks,
            approval_threshold_pct=config.approval_threshold_pct,
            version=config._version,
        )
