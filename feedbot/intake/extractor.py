"""
Feedback Extractor

LLM judgment of a single chat message.

Asks the model whether a message is actionable customer feedback and, if so,
for a category, task title, structured description, priority and confidence.
Malformed replies fail closed: the message is treated as not feedback.
An unreachable model raises ExtractorUnavailable so the caller can leave
the message for a later retry.
"""

import logging
from typing import Optional

from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json
from ..common.schemas import FeedbackJudgment

logger = logging.getLogger("feedbot.intake.extractor")


class ExtractorUnavailable(RuntimeError):
    """The model could not be asked (no client, API or transport error)."""


# Longest message excerpt sent to the model
MAX_MESSAGE_CHARS = 4000

FEEDBACK_PROMPT = """You are a customer feedback analyzer for a SaaS product. Analyze the following customer message and extract actionable feedback.

Message from {source}:
"{message}"

Respond in JSON format with these exact fields:
{{
  "isFeedback": boolean (true if this is genuine customer feedback/issue),
  "type": string (one of: "bug", "feature_request", "enhancement", "complaint", "praise", "other"),
  "title": string (concise 5-10 word task title),
  "description": string (structured description with sections below),
  "priority": string (one of: "High Priority", "Medium Priority", "Low Priority"),
  "confidence": number (0-100, how confident you are this needs a task)
}}

DESCRIPTION STRUCTURE (use exactly this format with section headers):
Brief Description: [2-3 sentences describing the issue/problem clearly]

Impact: [1-2 sentences explaining how this affects users or the product]

Why It Matters: [1-2 sentences explaining why solving this problem is important]

Important:
- Only extract clear, actionable feedback
- If unclear or not feedback, set isFeedback to false
- Use the exact section headers above (Brief Description, Impact, Why It Matters)
- Priority should reflect urgency/impact
- Respond ONLY with valid JSON, no additional text"""


class FeedbackExtractor:
    """
    LLM-backed feedback judge.

    `judge` returns a FeedbackJudgment for positive verdicts and None for
    "not feedback" or an unparseable reply. It raises ExtractorUnavailable
    when the model cannot be reached.
    """

    def __init__(self, llm: LLMClient, max_tokens: int = 500):
        self._llm = llm
        self._max_tokens = max_tokens

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    def judge(self, text: str, source_label: str = "#feedback") -> Optional[FeedbackJudgment]:
        """
        Judge whether `text` is actionable feedback.

        Args:
            text: Message text (attachments already flattened in)
            source_label: Where it was posted, e.g. "#feedback"

        Returns:
            FeedbackJudgment if the model says it is feedback, else None.
            The confidence threshold is the caller's decision.

        Raises:
            ExtractorUnavailable: if the LLM client is unavailable or the call fails
        """
        if not text or not text.strip():
            return None

        if not self.is_available:
            raise ExtractorUnavailable("LLM client is not available")

        prompt = FEEDBACK_PROMPT.format(source=source_label, message=text.strip()[:MAX_MESSAGE_CHARS])
        try:
            raw = self._llm.generate(prompt, max_tokens=self._max_tokens)
        except Exception as e:
            logger.error("Feedback analysis failed: %s", e)
            raise ExtractorUnavailable(f"Feedback analysis failed: {e}") from e

        return self._parse_response(raw)

    def _parse_response(self, raw: str) -> Optional[FeedbackJudgment]:
        """Parse the model's JSON reply; anything unusable is "not feedback"."""
        data = parse_llm_json(raw)
        if not data:
            logger.warning("No JSON in model reply, treating as not feedback: %.120r", raw)
            return None

        is_feedback = data.get("isFeedback", data.get("is_feedback", False))
        if not isinstance(is_feedback, bool):
            is_feedback = str(is_feedback).strip().lower() == "true"
        if not is_feedback:
            return None

        title = str(data.get("title") or "").strip()
        if not title:
            logger.warning("Model reply marked feedback but had no title, ignoring")
            return None

        try:
            return FeedbackJudgment(
                is_feedback=True,
                category=data.get("type", data.get("category")),
                title=title,
                description=str(data.get("description") or "").strip(),
                priority=data.get("priority"),
                confidence=data.get("confidence", 0),
            )
        except ValueError as e:
            logger.warning("Invalid feedback judgment, ignoring: %s", e)
            return None
