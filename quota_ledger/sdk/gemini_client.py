"""
Metered Gemini client wrapper.

Gates and records ``generate_content`` calls made through google-genai.
"""

from typing import Any, Dict, List, Optional, Union

from google import genai

from ..core.accounting import UsageAccountingService
from ..core.categories import UsageCategory
from ..core.quota import QuotaGate
from ..core.token_counter import TokenUsage
from .metering import MeteredClient, MeteredResponse


def user_content(text: str) -> Dict[str, Any]:
    """A single user turn in Gemini's role-tagged parts format."""
    return {"role": "user", "parts": [{"text": text}]}


def model_content(text: str) -> Dict[str, Any]:
    return {"role": "model", "parts": [{"text": text}]}


class MeteredGemini(MeteredClient):
    """Gemini client wrapper that enforces quota and records usage."""

    def __init__(
        self,
        model: str,
        category: Union[str, UsageCategory],
        accounting: UsageAccountingService,
        gate: Optional[QuotaGate] = None,
        client: Optional[genai.Client] = None,
        api_key: Optional[str] = None,
    ):
        super().__init__(model, category, accounting, gate)
        self.client = client or genai.Client(api_key=api_key)

    def generate(
        self,
        user_id: Optional[str],
        contents: List[Dict[str, Any]],
        transaction_id: Optional[str] = None,
        subcall_type: str = "generate_response",
        start_transaction: bool = True,
        system_instruction: Optional[str] = None,
    ) -> MeteredResponse:
        """Generate content with quota enforcement and usage recording.

        Args:
            user_id: Authenticated user, None for anonymous callers
            contents: Role-tagged message parts
            transaction_id: Existing transaction to attach to, or None
            subcall_type: Label recorded for this call
            start_transaction: Gate and initialize the transaction first
            system_instruction: Optional system prompt

        Returns:
            MeteredResponse wrapping the unchanged Gemini response

        Raises:
            ValueError: If contents is empty, or transaction_id is missing
                while start_transaction is False
            QuotaExceeded: If the user has no quota left
            google-genai errors: Propagated without modification
        """
        if not contents:
            raise ValueError("contents is required and cannot be empty")
        if start_transaction:
            transaction_id = self.begin_transaction(user_id, transaction_id)
        elif not transaction_id:
            raise ValueError("transaction_id is required when start_transaction is False")

        request: Dict[str, Any] = {"model": self.model, "contents": contents}
        if system_instruction:
            request["config"] = {"system_instruction": system_instruction}
        response = self.client.models.generate_content(**request)

        usage = TokenUsage.from_gemini(response.usage_metadata)
        self.record(user_id, transaction_id, subcall_type, usage)

        return MeteredResponse(
            response=response,
            text=(response.text or "").strip(),
            usage=usage,
            transaction_id=transaction_id,
        )
