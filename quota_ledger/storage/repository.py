"""
Repository pattern for data access.

Handles database operations and data persistence logic for the quota ledger.
Numeric counters are only ever changed with SQL increments or upserts, and
every multi-row write runs inside a single ``BEGIN IMMEDIATE`` transaction.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from quota_ledger.core.categories import UsageCategory
from quota_ledger.core.tiers import SubscriptionTier, parse_tier

from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import (
    BreakdownDimension,
    ConversationTurn,
    DailyUsage,
    LifetimeUsage,
    MonthlyAggregate,
    SubcallRecord,
    TransactionUsageRecord,
    UsageBreakdown,
    UserSubscription,
)

logger = logging.getLogger(__name__)

_CATEGORY_COLUMNS = "".join(
    f"{category.count_column} INTEGER NOT NULL DEFAULT 0,\n"
    f"                {category.tokens_column} INTEGER NOT NULL DEFAULT 0,\n"
    for category in UsageCategory
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS user_subscription (
        user_id TEXT PRIMARY KEY,
        tier TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_usage (
        user_id TEXT NOT NULL,
        transaction_id TEXT NOT NULL,
        type TEXT,
        model TEXT,
        created_at TEXT NOT NULL,
        month TEXT NOT NULL,
        total_prompt_tokens INTEGER NOT NULL DEFAULT 0,
        total_completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost REAL NOT NULL DEFAULT 0,
        completed INTEGER NOT NULL DEFAULT 0,
        last_updated TEXT,
        PRIMARY KEY (user_id, transaction_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_usage_subcall (
        user_id TEXT NOT NULL,
        transaction_id TEXT NOT NULL,
        subcall_type TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        estimated_cost REAL NOT NULL,
        model TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        PRIMARY KEY (user_id, transaction_id, subcall_type),
        FOREIGN KEY (user_id, transaction_id)
            REFERENCES token_usage (user_id, transaction_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS monthly_usage (
        user_id TEXT NOT NULL,
        month TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost REAL NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        {_CATEGORY_COLUMNS}        PRIMARY KEY (user_id, month)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_usage (
        user_id TEXT NOT NULL,
        day TEXT NOT NULL,
        operation_count INTEGER NOT NULL DEFAULT 0,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, day)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_breakdown (
        user_id TEXT NOT NULL,
        month TEXT NOT NULL,
        dimension TEXT NOT NULL,
        key TEXT NOT NULL,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost REAL NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, month, dimension, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lifetime_usage (
        user_id TEXT PRIMARY KEY,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost REAL NOT NULL DEFAULT 0,
        request_count INTEGER NOT NULL DEFAULT 0,
        last_updated TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_turn (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        transaction_id TEXT,
        user_message TEXT NOT NULL,
        assistant_message TEXT NOT NULL,
        model TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_conversation_turn_session
        ON conversation_turn (user_id, session_id, created_at)
    """,
]


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _upsert_increment(
    conn: sqlite3.Connection,
    table: str,
    keys: Dict[str, Any],
    increments: Dict[str, Any],
    assignments: Optional[Dict[str, Any]] = None,
) -> None:
    """Create the row identified by keys, or add increments to it.

    Column names come from code (schema constants and UsageCategory), never
    from caller data.
    """
    assignments = assignments or {}
    columns = list(keys) + list(increments) + list(assignments)
    values = list(keys.values()) + list(increments.values()) + list(assignments.values())
    updates = [f"{col} = {col} + excluded.{col}" for col in increments]
    updates += [f"{col} = excluded.{col}" for col in assignments]
    conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({', '.join('?' for _ in columns)}) "
        f"ON CONFLICT ({', '.join(keys)}) DO UPDATE SET {', '.join(updates)}",
        values,
    )


class LedgerRepository:
    """Store-client handle for the quota ledger.

    Opened once per process and passed to the accounting service and quota
    gate. Each call uses its own short-lived connection, so a repository may
    be shared across threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create all ledger tables if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                for statement in SCHEMA:
                    conn.execute(statement)
        finally:
            conn.close()
        logger.debug(f"Ledger schema ready at {self.db_path}")

    # Subscriptions

    def set_user_tier(self, user_id: str, tier: SubscriptionTier, updated_at: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO user_subscription (user_id, tier, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET tier = excluded.tier, updated_at = excluded.updated_at
                """,
                (user_id, tier.value, updated_at.isoformat()),
            )
        finally:
            conn.close()

    def get_user_subscription(self, user_id: str) -> UserSubscription:
        """Return the user's subscription, free when none was ever stored."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT tier, updated_at FROM user_subscription WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return UserSubscription(user_id=user_id, tier=SubscriptionTier.FREE)
        return UserSubscription(user_id=user_id, tier=parse_tier(row[0]), updated_at=_parse_time(row[1]))

    # Transactions

    def reset_transaction(
        self,
        user_id: str,
        transaction_id: str,
        category: UsageCategory,
        model: str,
        created_at: datetime,
        month: str,
    ) -> bool:
        """Create or reset a transaction record with zeroed counters.

        Re-initializing keeps the record's original month and category, so
        the transaction stays in the bucket it was first counted in. The
        monthly ``<category>_count`` is bumped once per transaction: when the
        record is new, or when a record created by an early subcall (no
        category yet) receives its category.

        Returns:
            True if the record did not exist before
        """
        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                existing = conn.execute(
                    "SELECT type, month FROM token_usage WHERE user_id = ? AND transaction_id = ?",
                    (user_id, transaction_id),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO token_usage
                    (user_id, transaction_id, type, model, created_at, month)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, transaction_id) DO UPDATE SET
                        type = COALESCE(token_usage.type, excluded.type),
                        model = excluded.model,
                        total_prompt_tokens = 0,
                        total_completion_tokens = 0,
                        total_tokens = 0,
                        estimated_cost = 0,
                        completed = 0,
                        last_updated = NULL
                    """,
                    (user_id, transaction_id, category.value, model, created_at.isoformat(), month),
                )
                if existing is None or existing[0] is None:
                    _upsert_increment(
                        conn,
                        "monthly_usage",
                        {"user_id": user_id, "month": month if existing is None else existing[1]},
                        {category.count_column: 1},
                    )
            return existing is None
        finally:
            conn.close()

    def apply_subcall(self, subcall: SubcallRecord, month: str, day: str) -> bool:
        """Record a subcall and roll its cost into every aggregate atomically.

        The subcall row is overwritten per subcall type; parent totals, the
        monthly aggregate and its per-model and per-source breakdown, and the
        daily and lifetime aggregates are incremented. A missing
        parent is created on the fly with the given month and no category.

        Args:
            subcall: The subcall to record
            month: Month bucket used when the parent does not exist
            day: Day bucket for the daily token counters

        Returns:
            True if the parent transaction already existed
        """
        conn = get_connection(self.db_path)
        timestamp = subcall.timestamp.isoformat()
        try:
            with write_transaction(conn):
                row = conn.execute(
                    "SELECT type, month FROM token_usage WHERE user_id = ? AND transaction_id = ?",
                    (subcall.user_id, subcall.transaction_id),
                ).fetchone()
                parent_existed = row is not None
                if parent_existed:
                    category = UsageCategory(row[0]) if row[0] else None
                    month = row[1]
                else:
                    category = None
                    conn.execute(
                        """
                        INSERT INTO token_usage (user_id, transaction_id, type, model, created_at, month)
                        VALUES (?, ?, NULL, ?, ?, ?)
                        """,
                        (subcall.user_id, subcall.transaction_id, subcall.model, timestamp, month),
                    )

                conn.execute(
                    """
                    INSERT INTO token_usage_subcall
                    (user_id, transaction_id, subcall_type, prompt_tokens, completion_tokens,
                     total_tokens, estimated_cost, model, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, transaction_id, subcall_type) DO UPDATE SET
                        prompt_tokens = excluded.prompt_tokens,
                        completion_tokens = excluded.completion_tokens,
                        total_tokens = excluded.total_tokens,
                        estimated_cost = excluded.estimated_cost,
                        model = excluded.model,
                        timestamp = excluded.timestamp
                    """,
                    (
                        subcall.user_id,
                        subcall.transaction_id,
                        subcall.subcall_type,
                        subcall.prompt_tokens,
                        subcall.completion_tokens,
                        subcall.total_tokens,
                        subcall.estimated_cost,
                        subcall.model,
                        timestamp,
                    ),
                )

                conn.execute(
                    """
                    UPDATE token_usage SET
                        total_prompt_tokens = total_prompt_tokens + ?,
                        total_completion_tokens = total_completion_tokens + ?,
                        total_tokens = total_tokens + ?,
                        estimated_cost = estimated_cost + ?,
                        last_updated = ?
                    WHERE user_id = ? AND transaction_id = ?
                    """,
                    (
                        subcall.prompt_tokens,
                        subcall.completion_tokens,
                        subcall.total_tokens,
                        subcall.estimated_cost,
                        timestamp,
                        subcall.user_id,
                        subcall.transaction_id,
                    ),
                )

                token_increments = {
                    "prompt_tokens": subcall.prompt_tokens,
                    "completion_tokens": subcall.completion_tokens,
                    "total_tokens": subcall.total_tokens,
                }
                monthly = dict(token_increments, estimated_cost=subcall.estimated_cost, request_count=1)
                if category is not None:
                    monthly[category.tokens_column] = subcall.total_tokens
                _upsert_increment(conn, "monthly_usage", {"user_id": subcall.user_id, "month": month}, monthly)
                for dimension, key in (
                    (BreakdownDimension.MODEL, subcall.model),
                    (BreakdownDimension.SOURCE, subcall.subcall_type),
                ):
                    _upsert_increment(
                        conn,
                        "usage_breakdown",
                        {"user_id": subcall.user_id, "month": month, "dimension": dimension.value, "key": key},
                        {"total_tokens": subcall.total_tokens, "estimated_cost": subcall.estimated_cost,
                         "request_count": 1},
                    )
                _upsert_increment(conn, "daily_usage", {"user_id": subcall.user_id, "day": day}, token_increments)
                _upsert_increment(
                    conn,
                    "lifetime_usage",
                    {"user_id": subcall.user_id},
                    dict(token_increments, estimated_cost=subcall.estimated_cost, request_count=1),
                    {"last_updated": timestamp},
                )
            return parent_existed
        finally:
            conn.close()

    def mark_completed(self, user_id: str, transaction_id: str, updated_at: datetime) -> bool:
        """Flag a transaction as finished.

        Returns:
            False if no such transaction exists
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE token_usage SET completed = 1, last_updated = ?
                WHERE user_id = ? AND transaction_id = ?
                """,
                (updated_at.isoformat(), user_id, transaction_id),
            )
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get_transaction(self, user_id: str, transaction_id: str) -> Optional[TransactionUsageRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT type, model, created_at, month, total_prompt_tokens,
                       total_completion_tokens, total_tokens, estimated_cost,
                       completed, last_updated
                FROM token_usage WHERE user_id = ? AND transaction_id = ?
                """,
                (user_id, transaction_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return TransactionUsageRecord(
            user_id=user_id,
            transaction_id=transaction_id,
            category=UsageCategory(row[0]) if row[0] else None,
            model=row[1],
            created_at=datetime.fromisoformat(row[2]),
            month=row[3],
            total_prompt_tokens=row[4],
            total_completion_tokens=row[5],
            total_tokens=row[6],
            estimated_cost=row[7],
            completed=bool(row[8]),
            last_updated=_parse_time(row[9]),
        )

    def get_subcalls(self, user_id: str, transaction_id: str) -> List[SubcallRecord]:
        """Return the subcalls of a transaction, oldest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT subcall_type, prompt_tokens, completion_tokens, total_tokens,
                       estimated_cost, model, timestamp
                FROM token_usage_subcall
                WHERE user_id = ? AND transaction_id = ?
                ORDER BY timestamp ASC, subcall_type ASC
                """,
                (user_id, transaction_id),
            ).fetchall()
        finally:
            conn.close()
        return [
            SubcallRecord(
                user_id=user_id,
                transaction_id=transaction_id,
                subcall_type=row[0],
                prompt_tokens=row[1],
                completion_tokens=row[2],
                total_tokens=row[3],
                estimated_cost=row[4],
                model=row[5],
                timestamp=datetime.fromisoformat(row[6]),
            )
            for row in rows
        ]

    def sum_transactions_for_month(self, user_id: str, month: str) -> Dict[str, float]:
        """Sum transaction totals created in a month, for reconciliation."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT COUNT(*), SUM(total_prompt_tokens), SUM(total_completion_tokens),
                       SUM(total_tokens), SUM(estimated_cost)
                FROM token_usage WHERE user_id = ? AND month = ?
                """,
                (user_id, month),
            ).fetchone()
        finally:
            conn.close()
        return {
            "transactions": row[0] or 0,
            "prompt_tokens": row[1] or 0,
            "completion_tokens": row[2] or 0,
            "total_tokens": row[3] or 0,
            "estimated_cost": float(row[4] or 0),
        }

    # Aggregates

    def get_monthly_aggregate(self, user_id: str, month: str) -> MonthlyAggregate:
        """Return a month's aggregate, all zeros when nothing was recorded."""
        category_columns = []
        for category in UsageCategory:
            category_columns += [category.count_column, category.tokens_column]
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"""
                SELECT prompt_tokens, completion_tokens, total_tokens, estimated_cost,
                       request_count, {', '.join(category_columns)}
                FROM monthly_usage WHERE user_id = ? AND month = ?
                """,
                (user_id, month),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return MonthlyAggregate(user_id=user_id, month=month)
        counts = {}
        tokens = {}
        for index, category in enumerate(UsageCategory):
            counts[category] = row[5 + 2 * index]
            tokens[category] = row[6 + 2 * index]
        return MonthlyAggregate(
            user_id=user_id,
            month=month,
            prompt_tokens=row[0],
            completion_tokens=row[1],
            total_tokens=row[2],
            estimated_cost=row[3],
            request_count=row[4],
            category_counts=counts,
            category_tokens=tokens,
        )

    def get_usage_breakdown(self, user_id: str, month: str) -> List[UsageBreakdown]:
        """Return a month's usage per model and per subcall type, largest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT dimension, key, total_tokens, estimated_cost, request_count
                FROM usage_breakdown
                WHERE user_id = ? AND month = ?
                ORDER BY dimension, total_tokens DESC, key
                """,
                (user_id, month),
            ).fetchall()
        finally:
            conn.close()
        return [
            UsageBreakdown(
                user_id=user_id,
                month=month,
                dimension=BreakdownDimension(row[0]),
                key=row[1],
                total_tokens=row[2],
                estimated_cost=row[3],
                request_count=row[4],
            )
            for row in rows
        ]

    def get_daily_usage(self, user_id: str, day: str) -> DailyUsage:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT operation_count, prompt_tokens, completion_tokens, total_tokens
                FROM daily_usage WHERE user_id = ? AND day = ?
                """,
                (user_id, day),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return DailyUsage(user_id=user_id, day=day)
        return DailyUsage(
            user_id=user_id,
            day=day,
            operation_count=row[0],
            prompt_tokens=row[1],
            completion_tokens=row[2],
            total_tokens=row[3],
        )

    def get_lifetime_usage(self, user_id: str) -> LifetimeUsage:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT prompt_tokens, completion_tokens, total_tokens, estimated_cost,
                       request_count, last_updated
                FROM lifetime_usage WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return LifetimeUsage(user_id=user_id)
        return LifetimeUsage(
            user_id=user_id,
            prompt_tokens=row[0],
            completion_tokens=row[1],
            total_tokens=row[2],
            estimated_cost=row[3],
            request_count=row[4],
            last_updated=_parse_time(row[5]),
        )

    # Quota counters

    def read_quota_counters(self, user_id: str, day: str, month: str) -> Tuple[SubscriptionTier, int, int]:
        """Return (tier, operations on day, tokens in month) in one snapshot."""
        conn = get_connection(self.db_path)
        try:
            return self._read_quota_counters(conn, user_id, day, month)
        finally:
            conn.close()

    def increment_daily_operations(self, user_id: str, day: str, amount: int = 1) -> None:
        conn = get_connection(self.db_path)
        try:
            _upsert_increment(conn, "daily_usage", {"user_id": user_id, "day": day}, {"operation_count": amount})
        finally:
            conn.close()

    def check_and_increment(
        self,
        user_id: str,
        day: str,
        month: str,
        decide: Callable[[SubscriptionTier, int, int], Any],
    ) -> Any:
        """Read quota counters, decide, and consume one operation atomically.

        ``decide(tier, operations_today, tokens_this_month)`` returns a
        decision object with an ``allowed`` attribute. The daily operation
        counter is incremented only when the decision allows, and the read
        and the increment share one write transaction.
        """
        conn = get_connection(self.db_path)
        try:
            with write_transaction(conn):
                tier, operations, tokens = self._read_quota_counters(conn, user_id, day, month)
                decision = decide(tier, operations, tokens)
                if decision.allowed:
                    _upsert_increment(
                        conn, "daily_usage", {"user_id": user_id, "day": day}, {"operation_count": 1}
                    )
            return decision
        finally:
            conn.close()

    @staticmethod
    def _read_quota_counters(
        conn: sqlite3.Connection, user_id: str, day: str, month: str
    ) -> Tuple[SubscriptionTier, int, int]:
        tier_row = conn.execute(
            "SELECT tier FROM user_subscription WHERE user_id = ?", (user_id,)
        ).fetchone()
        daily_row = conn.execute(
            "SELECT operation_count FROM daily_usage WHERE user_id = ? AND day = ?", (user_id, day)
        ).fetchone()
        monthly_row = conn.execute(
            "SELECT total_tokens FROM monthly_usage WHERE user_id = ? AND month = ?", (user_id, month)
        ).fetchone()
        tier = parse_tier(tier_row[0] if tier_row else None)
        return tier, daily_row[0] if daily_row else 0, monthly_row[0] if monthly_row else 0

    # Conversation history

    def append_conversation_turn(self, turn: ConversationTurn) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO conversation_turn
                (user_id, session_id, transaction_id, user_message, assistant_message, model, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn.user_id,
                    turn.session_id,
                    turn.transaction_id,
                    json.dumps(turn.user_message),
                    json.dumps(turn.assistant_message),
                    turn.model,
                    turn.created_at.isoformat(),
                ),
            )
        finally:
            conn.close()

    def fetch_conversation_history(
        self, user_id: str, session_id: str, limit: Optional[int] = None
    ) -> List[ConversationTurn]:
        """Return a session's turns in replay order (oldest first).

        With limit, only the most recent ``limit`` turns are returned.
        """
        query = """
            SELECT transaction_id, user_message, assistant_message, model, created_at
            FROM conversation_turn
            WHERE user_id = ? AND session_id = ?
            ORDER BY created_at DESC, id DESC
        """
        params: List[Any] = [user_id, session_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        rows.reverse()
        return [
            ConversationTurn(
                user_id=user_id,
                session_id=session_id,
                transaction_id=row[0],
                user_message=json.loads(row[1]),
                assistant_message=json.loads(row[2]),
                model=row[3],
                created_at=datetime.fromisoformat(row[4]),
            )
            for row in rows
        ]
