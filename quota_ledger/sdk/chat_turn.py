"""
Emotional support chat turn.

One user message is one transaction: an optional ``emotion_analysis``
subcall, then a ``generate_response`` subcall, then the turn is appended to
the session history.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from quota_ledger.core.token_counter import TokenUsage
from .gemini_client import MeteredGemini, model_content, user_content

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are Bubbas, a compassionate AI companion helping the user reflect on their emotions. "
    "Be supportive, non-judgmental, and insightful."
)

EMOTION_PROMPT = (
    "Analyze this message and return JSON:\n"
    "{{\n"
    '  "primaryEmotion": "happy",\n'
    '  "intensity": 7,\n'
    '  "briefExplanation": "The user is feeling upbeat about future events."\n'
    "}}\n"
    'Message: "{message}"'
)

NEUTRAL_EMOTION = {
    "primaryEmotion": "neutral",
    "intensity": 1,
    "briefExplanation": "Unable to determine emotion.",
}


@dataclass(frozen=True)
class ChatTurnResult:
    reply: str
    emotion: Optional[Dict[str, Any]]
    session_id: str
    transaction_id: str
    usage: TokenUsage


def parse_emotion(raw_text: str) -> Dict[str, Any]:
    """Parse the model's emotion JSON, falling back to neutral.

    Accepts output wrapped in a markdown code fence.
    """
    text = raw_text.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Emotion analysis returned non-JSON output: {raw_text[:200]!r}")
        return dict(NEUTRAL_EMOTION)
    if not isinstance(data, dict) or "primaryEmotion" not in data:
        return dict(NEUTRAL_EMOTION)
    return data


class ChatTurnRunner:
    """Runs metered emotional-support chat turns against Gemini."""

    def __init__(self, llm: MeteredGemini, analyze_emotion: bool = True, history_limit: Optional[int] = None):
        """Initialize the chat turn runner.

        Args:
            llm: Metered Gemini client, its category is used for every turn
            analyze_emotion: Run the emotion_analysis subcall before replying
            history_limit: Replay at most this many recent turns, all when None
        """
        self.llm = llm
        self.accounting = llm.accounting
        self.analyze_emotion = analyze_emotion
        self.history_limit = history_limit

    def _history(self, user_id: Optional[str], session_id: str) -> List[Dict[str, Any]]:
        if not user_id:
            return []
        contents = []
        for turn in self.accounting.get_conversation_history(user_id, session_id, self.history_limit):
            contents.append(turn.user_message)
            contents.append(turn.assistant_message)
        return contents

    def run(
        self,
        user_id: Optional[str],
        message: str,
        session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> ChatTurnResult:
        """Answer one user message.

        Raises:
            ValueError: If message is empty
            QuotaExceeded: If the user has no quota left
        """
        if not message or not message.strip():
            raise ValueError("message is required and cannot be empty")

        session_id = session_id or f"emotional-support-{uuid.uuid4().hex}"
        transaction_id = self.llm.begin_transaction(user_id, transaction_id)
        contents = self._history(user_id, session_id)
        contents.append(user_content(message))

        system_instruction = SYSTEM_PROMPT
        emotion = None
        if self.analyze_emotion:
            analysis = self.llm.generate(
                user_id,
                [user_content(EMOTION_PROMPT.format(message=message))],
                transaction_id=transaction_id,
                subcall_type="emotion_analysis",
                start_transaction=False,
            )
            emotion = parse_emotion(analysis.text)
            system_instruction += (
                f"\n\nUser is feeling {emotion.get('primaryEmotion')} "
                f"(intensity {emotion.get('intensity')}/10): {emotion.get('briefExplanation')}"
            )

        result = self.llm.generate(
            user_id,
            contents,
            transaction_id=transaction_id,
            subcall_type="generate_response",
            start_transaction=False,
            system_instruction=system_instruction,
        )

        self.accounting.save_conversation_history(
            user_id,
            session_id,
            user_content(message),
            model_content(result.text),
            self.llm.model,
            transaction_id,
        )
        self.accounting.complete_transaction(user_id, transaction_id)

        return ChatTurnResult(
            reply=result.text,
            emotion=emotion,
            session_id=session_id,
            transaction_id=transaction_id,
            usage=result.usage,
        )
