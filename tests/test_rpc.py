"""
Tests for the mutual-* RPC command handlers.

Handlers are exercised through a MutualContext wired to a real database;
the block height comes from a settable clock instead of lightningd.
"""

import pytest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mutual.config import MutualConfig
from mutual.database import MutualDatabase
from mutual.ledger import LedgerAdapter
from mutual.membership import MembershipRegistry
from mutual.tally import VoteTally
from mutual.claims import ClaimLifecycleEngine
from mutual import rpc_commands
from mutual.rpc_commands import MutualContext


OUR_PUBKEY = '02' + 'a' * 64
PEER = '02' + 'b' * 64
START = 800_000


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def mock_plugin():
    """Create a mock plugin for testing."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def clock():
    """Settable block height."""
    return {"height": START}


@pytest.fixture
def ctx(mock_plugin, clock, tmp_path):
    database = MutualDatabase(str(tmp_path / "test_rpc.db"), mock_plugin)
    database.initialize()
    config = MutualConfig(db_path=str(tmp_path / "test_rpc.db"), claim_fee=1_000,
                          voting_period_blocks=10)
    ledger = LedgerAdapter(database, mock_plugin)
    membership = MembershipRegistry(database, ledger, mock_plugin)
    engine = ClaimLifecycleEngine(database, ledger, membership, VoteTally(database),
                                  config, mock_plugin)
    return MutualContext(
        database=database,
        config=config,
        safe_plugin=mock_plugin,
        our_pubkey=OUR_PUBKEY,
        ledger=ledger,
        membership=membership,
        engine=engine,
        get_blockheight=lambda: clock["height"],
        log=MagicMock(),
    )


@pytest.fixture
def joined(ctx):
    """Our node funded and joined with 100k deposit."""
    rpc_commands.credit(ctx, OUR_PUBKEY, "110000")
    assert rpc_commands.join(ctx, "100000")["success"] is True
    return ctx


# =============================================================================
# INITIALIZATION
# =============================================================================

class TestNotInitialized:

    def test_handlers_report_not_initialized(self):
        empty = MutualContext(database=None, config=None, safe_plugin=None, our_pubkey=None)
        for handler in (rpc_commands.status, rpc_commands.members, rpc_commands.audit):
            assert handler(empty)["error"] == "not_initialized"
        assert rpc_commands.vote(empty, 1, "approve")["error"] == "not_initialized"
        assert rpc_commands.get_config(empty)["error"] == "not_initialized"


# =============================================================================
# STATUS / CONFIG
# =============================================================================

class TestStatusAndConfig:

    def test_status_empty_pool(self, ctx):
        result = rpc_commands.status(ctx)
        assert result["status"] == "empty"
        assert result["blockheight"] == START
        assert result["pool_balance"] == 0
        assert result["claims"] == {"active": 0, "approved": 0, "rejected": 0}

    def test_status_with_member_and_claim(self, joined):
        rpc_commands.file_claim(joined, 5_000, "Routing loss")
        result = rpc_commands.status(joined)
        assert result["status"] == "active"
        assert result["members"]["count"] == 1
        assert result["members"]["total_voting_power"] == 100_000
        assert result["pool_balance"] == 101_000
        assert result["claims"]["active"] == 1

    def test_get_config(self, ctx):
        result = rpc_commands.get_config(ctx)
        assert result["claims"]["claim_fee"] == 1_000
        assert result["voting"]["voting_period_blocks"] == 10

    def test_set_config_parses_string(self, ctx):
        result = rpc_commands.set_config(ctx, "approval_threshold_pct", "55")
        assert result["status"] == "ok"
        assert result["previous_value"] == 70
        assert ctx.config.approval_threshold_pct == 55
        ctx.log.assert_called_once()

    def test_set_config_rejects_non_integer(self, ctx):
        result = rpc_commands.set_config(ctx, "claim_fee", "lots")
        assert result["success"] is False
        assert result["error"] == "invalid_config"
        assert ctx.config.claim_fee == 1_000

    def test_set_config_immutable_key(self, ctx):
        result = rpc_commands.set_config(ctx, "db_path", "/tmp/x.db")
        assert result["error"] == "invalid_config"
        assert "cannot be changed" in result["message"]

    def test_set_config_out_of_range(self, ctx):
        result = rpc_commands.set_config(ctx, "approval_threshold_pct", 0)
        assert result["error"] == "invalid_config"
        assert ctx.config.approval_threshold_pct == 70


# =============================================================================
# MEMBERSHIP
# =============================================================================

class TestMembershipCommands:

    def test_join_uses_our_pubkey(self, joined):
        result = rpc_commands.members(joined)
        assert result["count"] == 1
        assert result["members"][0]["account"] == OUR_PUBKEY

    def test_join_non_integer_amount(self, ctx):
        assert rpc_commands.join(ctx, "ten")["error"] == "invalid_amount"

    def test_deposit_and_withdraw(self, joined):
        rpc_commands.credit(joined, OUR_PUBKEY, 5_000)
        assert rpc_commands.deposit(joined, 5_000)["deposit"] == 105_000
        result = rpc_commands.withdraw(joined, "105000")
        assert result["is_member"] is False

    def test_balance_defaults_to_our_node(self, joined):
        result = rpc_commands.balance(joined)
        assert result["account"] == OUR_PUBKEY
        assert result["balance"] == 10_000
        assert result["voting_power"] == 100_000
        assert result["is_member"] is True

    def test_balance_of_other_account(self, joined):
        result = rpc_commands.balance(joined, PEER)
        assert result["voting_power"] == 0
        assert result["is_member"] is False


# =============================================================================
# CLAIMS
# =============================================================================

class TestClaimCommands:

    def test_full_claim_flow(self, joined, clock):
        filed = rpc_commands.file_claim(joined, "50000", "Force close fees")
        claim_id = filed["claim_id"]

        voted = rpc_commands.vote(joined, str(claim_id), "approve")
        assert voted["tally"]["approve_weight"] == 100_000

        early = rpc_commands.finalize(joined, claim_id)
        assert early["error"] == "voting_window_still_open"

        clock["height"] = START + 11
        final = rpc_commands.finalize(joined, claim_id)
        assert final["status"] == "approved"
        assert final["payout"] == 50_000

        assert rpc_commands.balance(joined)["balance"] == 10_000 - 1_000 + 50_000
        assert rpc_commands.audit(joined)["balanced"] is True

    @pytest.mark.parametrize("raw,expected", [
        ("approve", True), ("YES", True), (True, True),
        ("reject", False), ("no", False), (False, False),
    ])
    def test_vote_parsing(self, joined, raw, expected):
        claim_id = rpc_commands.file_claim(joined, 1, "x")["claim_id"]
        result = rpc_commands.vote(joined, claim_id, raw)
        assert result["approve"] is expected

    def test_vote_unrecognized(self, joined):
        claim_id = rpc_commands.file_claim(joined, 1, "x")["claim_id"]
        result = rpc_commands.vote(joined, claim_id, "maybe")
        assert result["error"] == "invalid_vote"
        assert result["valid_options"] == ["approve", "reject"]

    def test_vote_unknown_claim_id_string(self, joined):
        assert rpc_commands.vote(joined, "abc", "approve")["error"] == "claim_not_found"

    def test_claim_detail_while_open(self, joined, clock):
        claim_id = rpc_commands.file_claim(joined, 1, "x")["claim_id"]
        clock["height"] = START + 4

        result = rpc_commands.claim(joined, claim_id)

        assert result["is_active"] is True
        assert result["blocks_remaining"] == 6
        assert result["claim"]["status"] == "active"
        assert result["votes"] == []

    def test_claim_detail_after_window(self, joined, clock):
        claim_id = rpc_commands.file_claim(joined, 1, "x")["claim_id"]
        clock["height"] = START + 11
        result = rpc_commands.claim(joined, claim_id)
        assert result["is_active"] is False
        assert result["blocks_remaining"] == 0

    def test_claim_not_found(self, joined):
        assert rpc_commands.claim(joined, 77)["error"] == "claim_not_found"

    def test_claims_filter(self, joined, clock):
        first = rpc_commands.file_claim(joined, 1, "first")["claim_id"]
        rpc_commands.file_claim(joined, 2, "second")
        clock["height"] = START + 11
        rpc_commands.finalize(joined, first)

        assert rpc_commands.claims(joined)["count"] == 2
        rejected = rpc_commands.claims(joined, "rejected")
        assert [c["claim_id"] for c in rejected["claims"]] == [first]

    def test_claims_invalid_status(self, joined):
        result = rpc_commands.claims(joined, "pending")
        assert result["error"] == "invalid_status"
        assert "approved" in result["valid_statuses"]

    def test_claims_numeric_status(self, joined):
        result = rpc_commands.claims(joined, 5)
        assert result["success"] is False
        assert result["error"] == "invalid_status"

    def test_claims_status_case_insensitive(self, joined):
        rpc_commands.file_claim(joined, 1, "x")
        assert rpc_commands.claims(joined, " Active ")["count"] == 1

    def test_history_renders_pool_account(self, joined):
        rpc_commands.file_claim(joined, 1, "x")
        result = rpc_commands.history(joined, limit=10)
        types = [e["event_type"] for e in result["events"]]
        assert types[0] == "claim_filed"
        assert "join" in types
        assert all(e["account"] != "__pool__" for e in result["events"])

    def test_history_for_claim(self, joined):
        claim_id = rpc_commands.file_claim(joined, 1, "x")["claim_id"]
        rpc_commands.vote(joined, claim_id, "reject")
        result = rpc_commands.history(joined, claim_id=str(claim_id))
        assert [e["event_type"] for e in result["events"]] == ["vote_cast", "claim_filed"]
