"""
Shared metering flow for LLM client wrappers.

gate -> initialize transaction -> provider call -> record subcall.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from quota_ledger.core.accounting import UsageAccountingService, new_transaction_id
from quota_ledger.core.categories import UsageCategory, parse_category
from quota_ledger.core.quota import QuotaDecision, QuotaGate
from quota_ledger.core.token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeteredResponse:
    """Provider response together with its accounting context."""
    response: Any
    text: str
    usage: TokenUsage
    transaction_id: str


class MeteredClient:
    """Base class wiring a provider call into the quota gate and the ledger.

    Anonymous callers (no user id) are neither gated nor metered. Provider
    errors and quota denials propagate; accounting failures are logged by the
    accounting service and never interrupt the call.
    """

    def __init__(
        self,
        model: str,
        category: Union[str, UsageCategory],
        accounting: UsageAccountingService,
        gate: Optional[QuotaGate] = None,
    ):
        """Initialize the metered client.

        Args:
            model: Model name (required)
            category: Usage category of the transactions this client opens
            accounting: Accounting service recording usage
            gate: Quota gate consulted when a transaction starts, optional

        Raises:
            ValueError: If model is missing or category is unknown
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if accounting is None:
            raise ValueError("accounting is required")
        self.model = model
        self.category = parse_category(category)
        self.accounting = accounting
        self.gate = gate

    def begin_transaction(self, user_id: Optional[str], transaction_id: Optional[str] = None) -> str:
        """Enforce quota and open the transaction record.

        Returns:
            The effective transaction id

        Raises:
            QuotaExceeded: If the gate denies the user
        """
        transaction_id = transaction_id or new_transaction_id()
        if not user_id:
            return transaction_id
        if self.gate is not None:
            decision: QuotaDecision = self.gate.enforce(user_id)
            logger.debug(
                f"Quota ok for {user_id}: {decision.operations_today + 1} ops today on {decision.tier.value}"
            )
        self.accounting.initialize_transaction_usage(user_id, transaction_id, self.category, self.model)
        return transaction_id

    def record(self, user_id: Optional[str], transaction_id: str, subcall_type: str, usage: TokenUsage) -> None:
        self.accounting.record_transaction_subcall(
            user_id,
            transaction_id,
            subcall_type,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.total_tokens,
            self.model,
        )
