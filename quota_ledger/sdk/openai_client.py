"""
Metered OpenAI client wrapper.

Gates and records chat completions without modifying their behavior.
"""

from typing import Any, Dict, List, Optional, Union

from openai import OpenAI

from ..core.accounting import UsageAccountingService
from ..core.categories import UsageCategory
from ..core.quota import QuotaGate
from ..core.token_counter import TokenUsage
from .metering import MeteredClient, MeteredResponse


class MeteredOpenAI(MeteredClient):
    """OpenAI client wrapper that enforces quota and records usage."""

    def __init__(
        self,
        model: str,
        category: Union[str, UsageCategory],
        accounting: UsageAccountingService,
        gate: Optional[QuotaGate] = None,
        client: Optional[OpenAI] = None,
    ):
        super().__init__(model, category, accounting, gate)
        self.client = client or OpenAI()

    def chat(
        self,
        user_id: Optional[str],
        messages: List[Dict[str, str]],
        transaction_id: Optional[str] = None,
        subcall_type: str = "generate_response",
        start_transaction: bool = True,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> MeteredResponse:
        """Create chat completion with quota enforcement and usage recording.

        Args:
            user_id: Authenticated user, None for anonymous callers
            messages: List of message dictionaries (required)
            transaction_id: Existing transaction to attach to, or None
            subcall_type: Label recorded for this call
            start_transaction: Gate and initialize the transaction first;
                pass False to add a subcall to an already started transaction
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            MeteredResponse wrapping the unchanged OpenAI response

        Raises:
            ValueError: If messages is empty, or transaction_id is missing
                while start_transaction is False
            QuotaExceeded: If the user has no quota left
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        if start_transaction:
            transaction_id = self.begin_transaction(user_id, transaction_id)
        elif not transaction_id:
            raise ValueError("transaction_id is required when start_transaction is False")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = TokenUsage.from_openai(response.usage)
        self.record(user_id, transaction_id, subcall_type, usage)

        text = (response.choices[0].message.content or "") if response.choices else ""
        return MeteredResponse(response=response, text=text, usage=usage, transaction_id=transaction_id)
