"""
SDK for the quota ledger.

Metered LLM client wrappers that gate and record every call.
"""

from .chat_turn import ChatTurnResult, ChatTurnRunner
from .gemini_client import MeteredGemini
from .metering import MeteredResponse
from .openai_client import MeteredOpenAI

__all__ = ["ChatTurnResult", "ChatTurnRunner", "MeteredGemini", "MeteredOpenAI", "MeteredResponse"]
