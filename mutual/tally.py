"""
Vote tally for cl-mutual

Mechanical approve/reject weight accumulator, one row per claim. Each
vote adds its caster's power to exactly one side; nothing is ever
subtracted or recomputed from the vote ledger. Decision logic lives in
the claim lifecycle engine.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass(frozen=True)
class TallySnapshot:
    """Aggregated weights for one claim."""
    claim_id: int
    approve_weight: int = 0
    reject_weight: int = 0
    voter_count: int = 0

    @property
    def total_weight(self) -> int:
        return self.approve_weight + self.reject_weight

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["total_weight"] = self.total_weight
        return result


class VoteTally:
    """Incremental per-claim weight accumulator."""

    def __init__(self, db):
        self.db = db

    def initialize(self, claim_id: int) -> bool:
        """Create a {0, 0} tally for a new claim."""
        return self.db.init_claim_tally(claim_id)

    def record(self, claim_id: int, approve: bool, power: int) -> bool:
        return self.db.add_tally_weight(claim_id, approve, power)

    def read(self, claim_id: int) -> TallySnapshot:
        row = self.db.get_claim_tally(claim_id)
        if not row:
            return TallySnapshot(claim_id=claim_id)
        return TallySnapshot(
            claim_id=claim_id,
            approve_weight=row["approve_weight"],
            reject_weight=row["reject_weight"],
            voter_count=row["voter_count"],
        )
