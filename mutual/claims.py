"""
Claim lifecycle module for cl-mutual

Implements claim filing, deposit-weighted voting and finalization with
payout.

Claim state machine:
    active --(window closed, threshold met, pool can pay)--> approved
    active --(window closed, threshold not met)----------> rejected
    active --(window closed, threshold met, pool short)--> active (retry later)

approved and rejected are terminal.

Every operation takes the caller and the current block height
explicitly, validates all preconditions, then commits its writes in a
single MutualDatabase.transaction(). Expiry is evaluated lazily from
voting_ends_at; nothing runs in the background.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ClaimNotActiveReason, PoolError, error_result
from .ledger import POOL_ACCOUNT, TransferResult, is_valid_amount
from .tally import TallySnapshot


class ClaimStatus(str, Enum):
    """Claim status. ACTIVE is the only non-terminal status."""
    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ClaimStatus.ACTIVE


@dataclass(frozen=True)
class Claim:
    """A request for payout from the pool."""
    claim_id: int
    claimant: str
    amount: int
    description: str
    status: ClaimStatus
    created_at: int
    voting_ends_at: int
    approval_threshold_pct: int
    fee_paid: int = 0
    finalized_at: Optional[int] = None
    finalized_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Claim':
        return cls(
            claim_id=row["claim_id"],
            claimant=row["claimant"],
            amount=row["amount"],
            description=row["description"],
            status=ClaimStatus(row["status"]),
            created_at=row["created_at"],
            voting_ends_at=row["voting_ends_at"],
            approval_threshold_pct=row["approval_threshold_pct"],
            fee_paid=row.get("fee_paid", 0),
            finalized_at=row.get("finalized_at"),
            finalized_by=row.get("finalized_by"),
        )

    def is_open(self, now: int) -> bool:
        """True while the claim accepts votes."""
        return self.status is ClaimStatus.ACTIVE and now <= self.voting_ends_at

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["status"] = self.status.value
        return result


class _PayoutFailed(Exception):
    """Raised inside a finalize transaction to roll back the status change."""

    def __init__(self, pool_balance: int):
        super().__init__(f"pool balance {pool_balance} cannot cover payout")
        self.pool_balance = pool_balance


class ClaimLifecycleEngine:
    """
    Orchestrates the claim lifecycle.

    Responsibilities:
    - Claim filing (membership and limit checks, anti-spam fee)
    - Vote casting (exactly once per member per claim, power snapshot)
    - Finalization (threshold rule, coupled payout)
    - Read-only claim/tally queries and the pool conservation audit
    """

    def __init__(self, db, ledger, membership, tally, config, plugin=None):
        """
        Args:
            db: MutualDatabase
            ledger: LedgerAdapter
            membership: MembershipRegistry
            tally: VoteTally
            config: MutualConfig (snapshotted per operation)
            plugin: pyln Plugin (or proxy) for logging, optional
        """
        self.db = db
        self.ledger = ledger
        self.membership = membership
        self.tally = tally
        self.config = config
        self.plugin = plugin

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Claims] {msg}", level=level)

    # =========================================================================
    # FILING
    # =========================================================================

    def file_claim(self, caller: str, amount: int, description: str,
                   now: int) -> Dict[str, Any]:
        """
        File a new claim against the pool.

        The claim fee moves from the caller's balance into the pool in the
        same transaction that creates the claim; if the fee cannot be paid
        no claim is created and no identifier is consumed.

        Args:
            caller: Claimant account (must be a member)
            amount: Requested payout, 0 <= amount <= max_claim_amount
            description: Non-empty text within max_description_length
            now: Current block height

        Returns:
            Dict with claim_id and the claim record, or an error
        """
        cfg = self.config.snapshot()

        if not self.membership.is_member(caller):
            return error_result(PoolError.NOT_MEMBER, "Only members can file claims")

        if not is_valid_amount(amount):
            return error_result(
                PoolError.INVALID_CLAIM_AMOUNT,
                "Claim amount must be a non-negative integer"
            )
        if amount > cfg.max_claim_amount:
            return error_result(
                PoolError.INVALID_CLAIM_AMOUNT,
                f"Claim amount {amount} exceeds maximum {cfg.max_claim_amount}",
                max_claim_amount=cfg.max_claim_amount
            )

        if not isinstance(description, str) or not description.strip():
            return error_result(PoolError.EMPTY_DESCRIPTION, "Claim description is required")
        if len(description) > cfg.max_description_length:
            return error_result(
                PoolError.DESCRIPTION_TOO_LONG,
                f"Description exceeds {cfg.max_description_length} characters",
                max_description_length=cfg.max_description_length
            )

        with self.db.transaction():
            # Re-check under the write lock; a withdrawal may have landed
            if not self.membership.is_member(caller):
                return error_result(PoolError.NOT_MEMBER, "Only members can file claims")

            if self.ledger.transfer(cfg.claim_fee, caller, POOL_ACCOUNT) != TransferResult.OK:
                return error_result(
                    PoolError.INSUFFICIENT_BALANCE,
                    f"Balance too low to pay claim fee {cfg.claim_fee}",
                    claim_fee=cfg.claim_fee,
                    balance=self.ledger.current_balance(caller)
                )

            claim_id = self.db.allocate_claim_id()
            voting_ends_at = now + cfg.voting_period_blocks
            self.db.add_claim(
                claim_id=claim_id,
                claimant=caller,
                amount=amount,
                description=description,
                created_at=now,
                voting_ends_at=voting_ends_at,
                approval_threshold_pct=cfg.approval_threshold_pct,
                fee_paid=cfg.claim_fee,
            )
            self.tally.initialize(claim_id)
            self.db.log_pool_event(
                now, "claim_filed", account=caller, claim_id=claim_id,
                amount=amount, details={"fee": cfg.claim_fee}
            )
            claim = Claim.from_row(self.db.get_claim(claim_id))

        self._log(f"Claim #{claim_id} filed by {caller[:16]}... for {amount} "
                  f"(voting ends at {voting_ends_at})")
        return {
            "success": True,
            "claim_id": claim_id,
            "claim": claim.to_dict(),
        }

    # =========================================================================
    # VOTING
    # =========================================================================

    def vote_on_claim(self, caller: str, claim_id: int, approve: bool,
                      now: int) -> Dict[str, Any]:
        """
        Cast a deposit-weighted vote on an active claim.

        The caller's current deposit is recorded with the vote and added to
        one side of the tally. Later deposit changes do not alter it.

        Returns:
            Dict with the vote and the updated tally, or an error
        """
        if not isinstance(approve, bool):
            return error_result(PoolError.INVALID_VOTE, "approve must be true or false")

        with self.db.transaction():
            power = self.membership.voting_power(caller)
            if power <= 0:
                return error_result(PoolError.NOT_MEMBER, "Only members can vote")

            claim = self._load_claim(claim_id)
            if claim is None:
                return error_result(PoolError.CLAIM_NOT_FOUND, f"Claim {claim_id} not found",
                                    claim_id=claim_id)

            if claim.status.is_terminal:
                return _not_active(claim, ClaimNotActiveReason.ALREADY_FINALIZED)
            if now > claim.voting_ends_at:
                return _not_active(claim, ClaimNotActiveReason.VOTING_WINDOW_CLOSED)

            if self.db.get_claim_vote(claim_id, caller):
                return error_result(PoolError.ALREADY_VOTED,
                                    "You have already voted on this claim",
                                    claim_id=claim_id)

            if not self.db.add_claim_vote(claim_id, caller, approve, power, now):
                return error_result(PoolError.ALREADY_VOTED,
                                    "You have already voted on this claim",
                                    claim_id=claim_id)
            self.tally.record(claim_id, approve, power)
            self.db.log_pool_event(
                now, "vote_cast", account=caller, claim_id=claim_id,
                amount=power, details={"approve": approve}
            )
            tally = self.tally.read(claim_id)

        self._log(f"Vote on claim #{claim_id} by {caller[:16]}...: "
                  f"{'approve' if approve else 'reject'} with power {power}")
        return {
            "success": True,
            "claim_id": claim_id,
            "voter": caller,
            "approve": approve,
            "power": power,
            "tally": tally.to_dict(),
        }

    # =========================================================================
    # FINALIZATION
    # =========================================================================

    @staticmethod
    def evaluate(tally: TallySnapshot, threshold_pct: int) -> ClaimStatus:
        """
        Apply the approval rule to a closed claim's tally.

        No votes cast means rejected. Otherwise approved iff
        approve_weight * 100 >= threshold_pct * total_weight.
        """
        total = tally.total_weight
        if total == 0:
            return ClaimStatus.REJECTED
        if tally.approve_weight * 100 >= threshold_pct * total:
            return ClaimStatus.APPROVED
        return ClaimStatus.REJECTED

    def finalize_claim(self, caller: str, claim_id: int, now: int) -> Dict[str, Any]:
        """
        Finalize a claim whose voting window has closed.

        Anyone may call this. Approval and payout are one step: if the pool
        cannot cover the payout the claim stays active and the call fails
        with insufficient_pool_funds, so it can be retried later.

        Returns:
            Dict with the terminal status ("approved" or "rejected") and the
            payout, or an error
        """
        try:
            with self.db.transaction():
                claim = self._load_claim(claim_id)
                if claim is None:
                    return error_result(PoolError.CLAIM_NOT_FOUND, f"Claim {claim_id} not found",
                                        claim_id=claim_id)

                if claim.status.is_terminal:
                    return _not_active(claim, ClaimNotActiveReason.ALREADY_FINALIZED)

                if now <= claim.voting_ends_at:
                    return error_result(
                        PoolError.VOTING_WINDOW_STILL_OPEN,
                        f"Voting on claim {claim_id} is open until block {claim.voting_ends_at}",
                        claim_id=claim_id,
                        voting_ends_at=claim.voting_ends_at
                    )

                tally = self.tally.read(claim_id)
                decision = self.evaluate(tally, claim.approval_threshold_pct)

                if not self.db.finalize_claim_status(claim_id, decision.value, now, caller):
                    return _not_active(self._load_claim(claim_id), ClaimNotActiveReason.ALREADY_FINALIZED)

                payout = 0
                if decision is ClaimStatus.APPROVED:
                    result = self.ledger.transfer(claim.amount, POOL_ACCOUNT, claim.claimant)
                    if result != TransferResult.OK:
                        raise _PayoutFailed(self.ledger.pool_balance())
                    payout = claim.amount

                self.db.log_pool_event(
                    now, f"claim_{decision.value}", account=claim.claimant,
                    claim_id=claim_id, amount=payout,
                    details={"finalized_by": caller, **tally.to_dict()}
                )
        except _PayoutFailed as e:
            self._log(f"Claim #{claim_id} approved but pool balance {e.pool_balance} "
                      f"cannot pay {claim.amount}; left active", level="warn")
            return error_result(
                PoolError.INSUFFICIENT_POOL_FUNDS,
                f"Pool balance {e.pool_balance} cannot cover payout of {claim.amount}",
                claim_id=claim_id,
                pool_balance=e.pool_balance,
                amount=claim.amount
            )

        self._log(f"Claim #{claim_id} finalized as {decision.value} "
                  f"(approve={tally.approve_weight}, reject={tally.reject_weight}, payout={payout})")
        return {
            "success": True,
            "claim_id": claim_id,
            "status": decision.value,
            "payout": payout,
            "claimant": claim.claimant,
            "tally": tally.to_dict(),
        }

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _load_claim(self, claim_id: int) -> Optional[Claim]:
        if isinstance(claim_id, bool) or not isinstance(claim_id, int):
            return None
        row = self.db.get_claim(claim_id)
        return Claim.from_row(row) if row else None

    def get_claim(self, claim_id: int) -> Optional[Claim]:
        return self._load_claim(claim_id)

    def get_tally(self, claim_id: int) -> Optional[TallySnapshot]:
        if self._load_claim(claim_id) is None:
            return None
        return self.tally.read(claim_id)

    def is_claim_active(self, claim_id: int, now: int) -> bool:
        claim = self._load_claim(claim_id)
        return claim is not None and claim.is_open(now)

    def list_claims(self, status: Optional[ClaimStatus] = None,
                    limit: int = 100) -> List[Claim]:
        rows = self.db.get_claims(status.value if status else None, limit)
        return [Claim.from_row(row) for row in rows]

    def get_votes(self, claim_id: int) -> List[Dict[str, Any]]:
        votes = self.db.get_claim_votes(claim_id)
        for vote in votes:
            vote["approve"] = bool(vote["approve"])
        return votes

    def audit_pool(self) -> Dict[str, Any]:
        """
        Check pool conservation.

        pool_balance == deposits + fees collected - approved payouts
        """
        with self.db.transaction():
            deposits = self.db.get_total_deposits()
            fees = self.db.get_total_fees_collected()
            payouts = self.db.get_total_payouts()
            actual = self.ledger.pool_balance()

        expected = deposits + fees - payouts
        if expected != actual:
            self._log(f"Pool audit mismatch: expected {expected}, actual {actual}", level="warn")
        return {
            "balanced": expected == actual,
            "pool_balance": actual,
            "expected_balance": expected,
            "total_deposits": deposits,
            "total_fees": fees,
            "total_payouts": payouts,
        }


def _not_active(claim: Claim, reason: ClaimNotActiveReason) -> Dict[str, Any]:
    if reason is ClaimNotActiveReason.ALREADY_FINALIZED:
        message = f"Claim {claim.claim_id} is already {claim.status.value}"
    else:
        message = f"Voting on claim {claim.claim_id} closed at block {claim.voting_ends_at}"
    return error_result(
        PoolError.CLAIM_NOT_ACTIVE,
        message,
        reason=reason.value,
        claim_id=claim.claim_id,
        status=claim.status.value
    )
