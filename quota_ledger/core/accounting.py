"""
Usage accounting for metered LLM operations.

Attributes token usage and estimated cost to a user, a transaction and a
time bucket. Accounting is best-effort: write operations never raise, they
log the failure and return it inside an AccountingResult so that a broken
ledger cannot take down the chat or analysis feature it is attached to.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Union

from .categories import UsageCategory, parse_category
from .periods import Clock, day_key, month_key, utc_now
from .pricing import PRICING_TABLE, PricingTable
from quota_ledger.storage.models import (
    ConversationTurn,
    LifetimeUsage,
    MonthlyAggregate,
    SubcallRecord,
    TransactionUsageRecord,
    UsageBreakdown,
)
from quota_ledger.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)

# Failures that are logged and returned instead of raised
_ACCOUNTING_ERRORS = (sqlite3.Error, ValueError, TypeError)


class AccountingError(Exception):
    """An accounting write that could not be completed."""
    def __init__(self, message: str, operation: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class AccountingStatus(Enum):
    RECORDED = "recorded"
    SKIPPED = "skipped"  # Anonymous caller, nothing metered
    FAILED = "failed"


@dataclass(frozen=True)
class AccountingResult:
    """Outcome of a best-effort accounting write."""
    status: AccountingStatus
    transaction_id: Optional[str] = None
    error: Optional[AccountingError] = None

    @property
    def ok(self) -> bool:
        """True unless the write failed."""
        return self.status != AccountingStatus.FAILED

    @classmethod
    def recorded(cls, transaction_id: Optional[str] = None) -> "AccountingResult":
        return cls(AccountingStatus.RECORDED, transaction_id)

    @classmethod
    def skipped(cls, transaction_id: Optional[str] = None) -> "AccountingResult":
        return cls(AccountingStatus.SKIPPED, transaction_id)

    @classmethod
    def failed(cls, error: AccountingError, transaction_id: Optional[str] = None) -> "AccountingResult":
        return cls(AccountingStatus.FAILED, transaction_id, error)


def new_transaction_id() -> str:
    return str(uuid.uuid4())


class UsageAccountingService:
    """Records transactions, subcalls and conversation history.

    The service holds no state of its own besides the injected repository,
    pricing table and clock; it can be created once per process and shared.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        pricing: PricingTable = PRICING_TABLE,
        clock: Optional[Clock] = None,
    ):
        """Initialize the accounting service.

        Args:
            repository: Ledger store handle
            pricing: Price table used for cost estimates
            clock: Returns the current time, defaults to UTC wall clock
        """
        if repository is None:
            raise ValueError("repository is required")
        self.repository = repository
        self.pricing = pricing
        self.clock = clock or utc_now

    def _fail(self, operation: str, message: str, cause: Optional[BaseException] = None,
              transaction_id: Optional[str] = None) -> AccountingResult:
        logger.error(f"[{operation}] {message}", exc_info=cause)
        return AccountingResult.failed(AccountingError(message, operation, cause), transaction_id)

    def initialize_transaction_usage(
        self,
        user_id: Optional[str],
        transaction_id: Optional[str],
        type: Union[str, UsageCategory],
        model: str,
    ) -> AccountingResult:
        """Create or reset the usage record for a logical operation.

        Call once per transaction before any subcall. Calling again with the
        same transaction id zeroes the counters again. A blank transaction id
        is replaced by a generated one, returned in the result.

        Args:
            user_id: Authenticated user, None for anonymous callers
            transaction_id: Caller-chosen id, or None to generate one
            type: Operation category
            model: Backing model identifier (not validated)

        Returns:
            AccountingResult carrying the effective transaction id
        """
        operation = "initialize_transaction_usage"
        transaction_id = transaction_id or new_transaction_id()
        if not user_id:
            return AccountingResult.skipped(transaction_id)
        try:
            category = parse_category(type)
            now = self.clock()
            created = self.repository.reset_transaction(
                user_id=user_id,
                transaction_id=transaction_id,
                category=category,
                model=model,
                created_at=now,
                month=month_key(now),
            )
        except _ACCOUNTING_ERRORS as e:
            return self._fail(operation, f"Could not initialize {transaction_id}: {e}", e, transaction_id)

        logger.debug(f"[{operation}] {'Created' if created else 'Reset'} {transaction_id} for user {user_id}")
        return AccountingResult.recorded(transaction_id)

    def record_transaction_subcall(
        self,
        user_id: Optional[str],
        transaction_id: str,
        subcall_type: str,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        model: str,
    ) -> AccountingResult:
        """Attribute one LLM call to a transaction.

        The subcall row keeps only the latest call per subcall type, while
        the parent totals and the monthly, daily and lifetime aggregates add
        every call. If the parent was never initialized it is created on the
        fly and a warning is logged.

        Args:
            user_id: Authenticated user, None for anonymous callers
            transaction_id: Parent transaction
            subcall_type: Label of the sub-operation, e.g. ``generate_response``
            prompt_tokens: Input tokens
            completion_tokens: Output tokens
            total_tokens: Total tokens as reported by the provider
            model: Model used for this call

        Returns:
            AccountingResult
        """
        operation = "record_transaction_subcall"
        if not user_id:
            return AccountingResult.skipped(transaction_id)
        if not transaction_id:
            return self._fail(operation, "transaction_id is required")
        if not subcall_type:
            return self._fail(operation, "subcall_type is required", transaction_id=transaction_id)
        counts = (prompt_tokens, completion_tokens, total_tokens)
        if not all(isinstance(count, int) and not isinstance(count, bool) for count in counts):
            return self._fail(
                operation,
                f"Token counts for {transaction_id}/{subcall_type} must be integers: "
                f"{prompt_tokens!r}/{completion_tokens!r}/{total_tokens!r}",
                transaction_id=transaction_id,
            )
        if min(counts) < 0:
            return self._fail(
                operation,
                f"Negative token counts for {transaction_id}/{subcall_type}: "
                f"{prompt_tokens}/{completion_tokens}/{total_tokens}",
                transaction_id=transaction_id,
            )

        try:
            now = self.clock()
            subcall = SubcallRecord(
                user_id=user_id,
                transaction_id=transaction_id,
                subcall_type=subcall_type,
                prompt_tokens=int(prompt_tokens),
                completion_tokens=int(completion_tokens),
                total_tokens=int(total_tokens),
                estimated_cost=self.pricing.calculate_cost(model, prompt_tokens, completion_tokens),
                model=model,
                timestamp=now,
            )
            parent_existed = self.repository.apply_subcall(subcall, month=month_key(now), day=day_key(now))
        except _ACCOUNTING_ERRORS as e:
            return self._fail(
                operation, f"Could not record {subcall_type} for {transaction_id}: {e}", e, transaction_id
            )

        if not parent_existed:
            logger.warning(
                f"[{operation}] Transaction {transaction_id} was not initialized; created it from {subcall_type}"
            )
        logger.debug(f"[{operation}] {subcall_type} recorded for {transaction_id}")
        return AccountingResult.recorded(transaction_id)

    def complete_transaction(self, user_id: Optional[str], transaction_id: str) -> AccountingResult:
        """Mark a transaction's work as finished."""
        operation = "complete_transaction"
        if not user_id:
            return AccountingResult.skipped(transaction_id)
        try:
            found = self.repository.mark_completed(user_id, transaction_id, self.clock())
        except _ACCOUNTING_ERRORS as e:
            return self._fail(operation, f"Could not complete {transaction_id}: {e}", e, transaction_id)
        if not found:
            return self._fail(operation, f"Unknown transaction {transaction_id}", transaction_id=transaction_id)
        return AccountingResult.recorded(transaction_id)

    def save_conversation_history(
        self,
        user_id: Optional[str],
        session_id: str,
        user_message: Any,
        assistant_message: Any,
        model: str,
        transaction_id: Optional[str],
    ) -> AccountingResult:
        """Append one conversation turn to a session's history.

        Messages are stored as given and must be JSON serializable.
        """
        operation = "save_conversation_history"
        if not user_id:
            return AccountingResult.skipped(transaction_id)
        if not session_id:
            return self._fail(operation, "session_id is required", transaction_id=transaction_id)
        try:
            self.repository.append_conversation_turn(ConversationTurn(
                user_id=user_id,
                session_id=session_id,
                transaction_id=transaction_id,
                user_message=user_message,
                assistant_message=assistant_message,
                model=model,
                created_at=self.clock(),
            ))
        except _ACCOUNTING_ERRORS as e:
            return self._fail(operation, f"Could not save turn for session {session_id}: {e}", e, transaction_id)

        logger.debug(f"[{operation}] Saved turn for session {session_id}")
        return AccountingResult.recorded(transaction_id)

    # Read queries. These raise on store errors like any other read.

    def get_conversation_history(
        self, user_id: str, session_id: str, limit: Optional[int] = None
    ) -> List[ConversationTurn]:
        return self.repository.fetch_conversation_history(user_id, session_id, limit)

    def get_transaction_usage(self, user_id: str, transaction_id: str) -> Optional[TransactionUsageRecord]:
        return self.repository.get_transaction(user_id, transaction_id)

    def get_subcalls(self, user_id: str, transaction_id: str) -> List[SubcallRecord]:
        return self.repository.get_subcalls(user_id, transaction_id)

    def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> MonthlyAggregate:
        """Return the aggregate for month, the current month by default."""
        return self.repository.get_monthly_aggregate(user_id, month or month_key(self.clock()))

    def get_usage_breakdown(self, user_id: str, month: Optional[str] = None) -> List[UsageBreakdown]:
        """Per-model and per-subcall-type usage for month, the current month by default."""
        return self.repository.get_usage_breakdown(user_id, month or month_key(self.clock()))

    def get_lifetime_usage(self, user_id: str) -> LifetimeUsage:
        return self.repository.get_lifetime_usage(user_id)
