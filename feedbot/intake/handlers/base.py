"""
Base Handler

Abstract base class for source-specific event handlers.
Provides a common interface for converting events to Messages.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from datetime import datetime


@dataclass
class Message:
    """
    Common message format for all sources.

    `text` already includes any attached or forwarded content flattened in.
    """
    text: str
    user: str
    channel: str
    source: str  # "slack"
    timestamp: str
    channel_name: Optional[str] = None
    thread_ts: Optional[str] = None
    url: Optional[str] = None
    is_bot: bool = False
    forwarded_author: Optional[str] = None
    attachments: list = field(default_factory=list)
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def datetime(self) -> Optional[datetime]:
        """Parse timestamp to datetime"""
        try:
            return datetime.fromtimestamp(float(self.timestamp))
        except (ValueError, TypeError):
            return None

    @property
    def is_valid(self) -> bool:
        """Check if message has minimum required fields"""
        return bool(self.timestamp and self.text and self.text.strip())

    @property
    def is_thread_reply(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.timestamp

    @property
    def source_label(self) -> str:
        return f"#{self.channel_name or self.channel}"

    def snippet(self, length: int = 100) -> str:
        text = self.text.strip()
        return text[:length] + ("..." if len(text) > length else "")


class BaseHandler(ABC):
    """
    Abstract base class for source handlers.

    Each handler must implement:
    - parse_event: Convert raw event to Message
    - verify_signature: Verify webhook signature (if applicable)
    """

    def __init__(self, source_name: str):
        self.source_name = source_name

    @abstractmethod
    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        """
        Parse raw event data into a Message.

        Returns:
            Message object or None if event should be ignored
        """

    @abstractmethod
    def verify_signature(
        self,
        body: bytes,
        signature: str,
        timestamp: str
    ) -> bool:
        """
        Verify the webhook signature.

        Args:
            body: Raw request body
            signature: Signature from headers
            timestamp: Timestamp from headers

        Returns:
            True if signature is valid
        """

    def should_process(self, message: Message, min_length: int = 0) -> bool:
        """
        Check if message should be analyzed.

        Filters out bot messages, thread replies and empty or too-short text.
        """
        if not message.is_valid:
            return False

        if message.is_bot:
            return False

        if message.is_thread_reply:
            return False

        if len(message.text.strip()) < min_length:
            return False

        return True
