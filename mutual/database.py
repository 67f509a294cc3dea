"""
Database module for cl-mutual

Handles SQLite persistence for:
- Ledger accounts (external balances and the pool account)
- Membership registry (deposits)
- Claim store, vote ledger and vote tallies
- Pool event audit trail

Thread Safety:
- Uses threading.local() to provide each thread with its own SQLite connection
- All writes that belong to one pool operation run inside transaction(),
  which serializes writers and commits or rolls back as a unit
"""

import sqlite3
import os
import time
import json
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Any


class MutualDatabase:
    """
    SQLite database manager for the mutual pool plugin.

    Provides persistence for:
    - Ledger accounts (account, balance)
    - Pool members (account, deposit)
    - Claims, claim votes and claim tallies
    - Pool events (audit trail)

    Thread Safety:
    - Each thread gets its own isolated SQLite connection via threading.local()
    - WAL mode enabled for better concurrent read/write performance
    - A process-wide lock plus BEGIN IMMEDIATE gives single-writer semantics
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin (or proxy) for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        # Thread-local storage for connections
        self._local = threading.local()
        # Serializes transactions across threads of this process
        self._write_lock = threading.RLock()

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"MutualDatabase: {msg}", level=level)

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create a thread-local database connection.

        Returns:
            sqlite3.Connection: Thread-local database connection
        """
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            # Ensure directory exists
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            # Create new connection for this thread
            self._local.conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,  # Autocommit mode; transactions are explicit
                timeout=30
            )
            self._local.conn.row_factory = sqlite3.Row

            # Enable Write-Ahead Logging for better multi-thread concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL;")

            self._log(
                f"Created thread-local connection (thread={threading.current_thread().name})",
                level='debug'
            )
        return self._local.conn

    @contextmanager
    def transaction(self):
        """
        Run a block of statements as one all-or-nothing unit.

        Any exception raised inside the block rolls back every write made
        in it and is re-raised. Nested calls on the same thread join the
        outer transaction.
        """
        conn = self._get_connection()
        with self._write_lock:
            if conn.in_transaction:
                yield conn
                return

            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # =====================================================================
        # LEDGER ACCOUNTS TABLE
        # =====================================================================
        # External balances; the pool itself is a reserved account row
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_accounts (
                account TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                updated_at INTEGER NOT NULL
            )
        """)

        # =====================================================================
        # POOL MEMBERS TABLE
        # =====================================================================
        # A row exists only while the member's deposit is positive
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pool_members (
                account TEXT PRIMARY KEY,
                deposit INTEGER NOT NULL CHECK (deposit > 0),
                joined_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # =====================================================================
        # POOL META TABLE
        # =====================================================================
        # Persisted counters (next_claim_id)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pool_meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)

        # =====================================================================
        # CLAIMS TABLE
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS claims (
                claim_id INTEGER PRIMARY KEY,
                claimant TEXT NOT NULL,
                amount INTEGER NOT NULL CHECK (amount >= 0),
                description TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                created_at INTEGER NOT NULL,
                voting_ends_at INTEGER NOT NULL,
                approval_threshold_pct INTEGER NOT NULL,
                fee_paid INTEGER NOT NULL DEFAULT 0,
                finalized_at INTEGER,
                finalized_by TEXT
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_claims_status
            ON claims(status, claim_id)
        """)

        # =====================================================================
        # CLAIM VOTES TABLE (write-once)
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS claim_votes (
                claim_id INTEGER NOT NULL,
                voter TEXT NOT NULL,
                approve INTEGER NOT NULL,
                power INTEGER NOT NULL,
                voted_at INTEGER NOT NULL,
                PRIMARY KEY (claim_id, voter)
            )
        """)

        # =====================================================================
        # CLAIM TALLIES TABLE
        # =====================================================================
        conn.execute("""
            CREATE TABLE IF NOT EXISTS claim_tallies (
                claim_id INTEGER PRIMARY KEY,
                approve_weight INTEGER NOT NULL DEFAULT 0,
                reject_weight INTEGER NOT NULL DEFAULT 0,
                voter_count INTEGER NOT NULL DEFAULT 0
            )
        """)

        # =====================================================================
        # POOL EVENTS TABLE
        # =====================================================================
        # Audit log written in the same transaction as the change it records
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pool_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                height INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                account TEXT,
                claim_id INTEGER,
                amount INTEGER,
                details TEXT,
                recorded_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_pool_events_claim
            ON pool_events(claim_id)
        """)

        conn.execute("PRAGMA optimize;")
        self._log("Schema initialized")

    # =========================================================================
    # LEDGER OPERATIONS
    # =========================================================================

    def get_account_balance(self, account: str) -> int:
        """Get an account's balance (0 for unknown accounts)."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT balance FROM ledger_accounts WHERE account = ?",
            (account,)
        ).fetchone()
        return row["balance"] if row else 0

    def get_total_balance(self) -> int:
        """Sum of every ledger balance, the pool included."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(balance), 0) AS total FROM ledger_accounts"
        ).fetchone()
        return row["total"]

    def credit_account(self, account: str, amount: int) -> None:
        """Add amount to an account, creating it if needed."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO ledger_accounts (account, balance, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(account) DO UPDATE SET
                balance = balance + excluded.balance,
                updated_at = excluded.updated_at
        """, (account, amount, int(time.time())))

    def debit_account(self, account: str, amount: int) -> bool:
        """
        Subtract amount from an account.

        Returns:
            True if debited, False if the balance is insufficient
        """
        conn = self._get_connection()
        result = conn.execute("""
            UPDATE ledger_accounts
            SET balance = balance - ?, updated_at = ?
            WHERE account = ? AND balance >= ?
        """, (amount, int(time.time()), account, amount))
        return result.rowcount > 0

    # =========================================================================
    # MEMBERSHIP OPERATIONS
    # =========================================================================

    def add_member(self, account: str, deposit: int, joined_at: int) -> bool:
        """
        Add a new member to the pool.

        Returns:
            True if successful, False if member already exists
        """
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO pool_members (account, deposit, joined_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (account, deposit, joined_at, joined_at))
            return True
        except sqlite3.IntegrityError:
            return False  # Already exists

    def get_member(self, account: str) -> Optional[Dict[str, Any]]:
        """Get member info by account."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM pool_members WHERE account = ?",
            (account,)
        ).fetchone()
        return dict(row) if row else None

    def get_all_members(self) -> List[Dict[str, Any]]:
        """Get all pool members, largest deposit first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM pool_members ORDER BY deposit DESC, joined_at"
        ).fetchall()
        return [dict(row) for row in rows]

    def set_member_deposit(self, account: str, deposit: int, updated_at: int) -> bool:
        """Overwrite a member's deposit."""
        conn = self._get_connection()
        result = conn.execute("""
            UPDATE pool_members SET deposit = ?, updated_at = ?
            WHERE account = ?
        """, (deposit, updated_at, account))
        return result.rowcount > 0

    def remove_member(self, account: str) -> bool:
        """Remove a member from the pool."""
        conn = self._get_connection()
        result = conn.execute(
            "DELETE FROM pool_members WHERE account = ?",
            (account,)
        )
        return result.rowcount > 0

    def get_total_deposits(self) -> int:
        """Sum of all current member deposits."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(deposit), 0) AS total FROM pool_members"
        ).fetchone()
        return row["total"]

    # =========================================================================
    # POOL META
    # =========================================================================

    def get_meta(self, key: str, default: int = 0) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM pool_meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: int) -> None:
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO pool_meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (key, value))

    def allocate_claim_id(self) -> int:
        """
        Reserve the next claim identifier (starting at 1).

        Must be called inside transaction() so a rolled-back filing
        does not consume an identifier.
        """
        claim_id = self.get_meta("next_claim_id", 1)
        self.set_meta("next_claim_id", claim_id + 1)
        return claim_id

    # =========================================================================
    # CLAIM OPERATIONS
    # =========================================================================

    def add_claim(self, claim_id: int, claimant: str, amount: int,
                  description: str, created_at: int, voting_ends_at: int,
                  approval_threshold_pct: int, fee_paid: int) -> bool:
        """Insert a new active claim."""
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO claims
                (claim_id, claimant, amount, description, status, created_at,
                 voting_ends_at, approval_threshold_pct, fee_paid)
                VALUES (?, ?, ?, ?, 'active', ?, ?, ?, ?)
            """, (claim_id, claimant, amount, description, created_at,
                  voting_ends_at, approval_threshold_pct, fee_paid))
            return True
        except sqlite3.IntegrityError:
            return False

    def get_claim(self, claim_id: int) -> Optional[Dict[str, Any]]:
        """Get a claim by ID."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM claims WHERE claim_id = ?",
            (claim_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_claims(self, status: Optional[str] = None,
                   limit: int = 100) -> List[Dict[str, Any]]:
        """Get claims, newest first, optionally filtered by status."""
        conn = self._get_connection()
        if status:
            rows = conn.execute("""
                SELECT * FROM claims WHERE status = ?
                ORDER BY claim_id DESC LIMIT ?
            """, (status, limit)).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM claims ORDER BY claim_id DESC LIMIT ?",
                (limit,)
            ).fetchall()
        return [dict(row) for row in rows]

    def finalize_claim_status(self, claim_id: int, status: str,
                              finalized_at: int, finalized_by: str) -> bool:
        """
        Move an active claim to a terminal status.

        Returns:
            True if the claim was active and is now finalized, False otherwise
        """
        conn = self._get_connection()
        result = conn.execute("""
            UPDATE claims
            SET status = ?, finalized_at = ?, finalized_by = ?
            WHERE claim_id = ? AND status = 'active'
        """, (status, finalized_at, finalized_by, claim_id))
        return result.rowcount > 0

    def get_claim_count_by_status(self) -> Dict[str, int]:
        """Get count of claims by status."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT status, COUNT(*) as count FROM claims GROUP BY status"
        ).fetchall()
        return {row['status']: row['count'] for row in rows}

    def get_total_fees_collected(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(fee_paid), 0) AS total FROM claims"
        ).fetchone()
        return row["total"]

    def get_total_payouts(self) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM claims WHERE status = 'approved'"
        ).fetchone()
        return row["total"]

    # =========================================================================
    # VOTE LEDGER
    # =========================================================================

    def add_claim_vote(self, claim_id: int, voter: str, approve: bool,
                       power: int, voted_at: int) -> bool:
        """
        Record a vote. Votes are write-once.

        Returns:
            True if recorded, False if this voter already voted on the claim
        """
        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO claim_votes (claim_id, voter, approve, power, voted_at)
                VALUES (?, ?, ?, ?, ?)
            """, (claim_id, voter, 1 if approve else 0, power, voted_at))
            return True
        except sqlite3.IntegrityError:
            return False

    def get_claim_vote(self, claim_id: int, voter: str) -> Optional[Dict[str, Any]]:
        """Get a specific vote on a claim."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT * FROM claim_votes
            WHERE claim_id = ? AND voter = ?
        """, (claim_id, voter)).fetchone()
        return dict(row) if row else None

    def get_claim_votes(self, claim_id: int) -> List[Dict[str, Any]]:
        """Get all votes for a claim."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM claim_votes WHERE claim_id = ? ORDER BY voted_at, voter",
            (claim_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # VOTE TALLIES
    # =========================================================================

    def init_claim_tally(self, claim_id: int) -> bool:
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT INTO claim_tallies (claim_id) VALUES (?)",
                (claim_id,)
            )
            return True
        except sqlite3.IntegrityError:
            return False

    def add_tally_weight(self, claim_id: int, approve: bool, power: int) -> bool:
        """Add power to exactly one side of a claim's tally."""
        conn = self._get_connection()
        column = "approve_weight" if approve else "reject_weight"
        result = conn.execute(f"""
            UPDATE claim_tallies
            SET {column} = {column} + ?, voter_count = voter_count + 1
            WHERE claim_id = ?
        """, (power, claim_id))
        return result.rowcount > 0

    def get_claim_tally(self, claim_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM claim_tallies WHERE claim_id = ?",
            (claim_id,)
        ).fetchone()
        return dict(row) if row else None

    # =========================================================================
    # POOL EVENTS
    # =========================================================================

    def log_pool_event(self, height: int, event_type: str,
                       account: Optional[str] = None,
                       claim_id: Optional[int] = None,
                       amount: Optional[int] = None,
                       details: Optional[Dict[str, Any]] = None) -> int:
        """Append an event to the audit trail."""
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO pool_events
            (height, event_type, account, claim_id, amount, details, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (height, event_type, account, claim_id, amount,
              json.dumps(details) if details else None, int(time.time())))
        return cursor.lastrowid

    def get_pool_events(self, limit: int = 50,
                        claim_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get recent pool events, newest first."""
        conn = self._get_connection()
        if claim_id is not None:
            rows = conn.execute("""
                SELECT * FROM pool_events WHERE claim_id = ?
                ORDER BY id DESC LIMIT ?
            """, (claim_id, limit)).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM pool_events ORDER BY id DESC LIMIT ?",
                (limit,)
            ).fetchall()

        events = []
        for row in rows:
            event = dict(row)
            if event.get("details"):
                event["details"] = json.loads(event["details"])
            events.append(event)
        return events
