"""
Slack Handler

Handles Slack Events API and interactivity webhooks and converts message
events to Messages.
"""

import hmac
import hashlib
import json
import time
from typing import Optional, Dict, Any, List
from urllib.parse import parse_qs

from .base import BaseHandler, Message

# Message subtypes that never carry customer feedback
IGNORED_SUBTYPES = {
    "channel_join", "channel_leave", "channel_topic",
    "channel_purpose", "channel_name", "channel_archive",
    "message_deleted", "message_changed", "bot_message",
}


class SlackHandler(BaseHandler):
    """
    Handler for Slack Events API webhooks.

    Processes:
    - message events, including forwarded messages whose content is only
      in attachments

    Ignores:
    - Bot messages
    - Edits, deletions and channel housekeeping
    """

    def __init__(self, signing_secret: str = ""):
        super().__init__("slack")
        self._signing_secret = signing_secret

    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        """
        Parse Slack event into Message.

        Returns:
            Message object or None if event should be ignored

        Raises:
            ValueError: if the callback's event is not an object
        """
        if raw_data.get("type") != "event_callback":
            return None

        event = raw_data.get("event") or {}
        if not isinstance(event, dict):
            raise ValueError(f"event must be an object, got {type(event).__name__}")
        if event.get("type") != "message":
            return None

        return self.message_from_event(event)

    def message_from_event(self, event: Dict[str, Any], channel_name: Optional[str] = None) -> Optional[Message]:
        """Convert a Slack message object (event or history item) to a Message."""
        if event.get("subtype") in IGNORED_SUBTYPES:
            return None

        attachments = event.get("attachments") or []
        if not event.get("text") and not attachments:
            return None

        return Message(
            text=self.flatten_text(event),
            user=event.get("user", ""),
            channel=event.get("channel", ""),
            source="slack",
            timestamp=event.get("ts", ""),
            channel_name=channel_name,
            thread_ts=event.get("thread_ts"),
            is_bot=self.is_from_bot(event),
            forwarded_author=self.forwarded_author(event),
            attachments=attachments,
            raw_data=event,
        )

    @staticmethod
    def flatten_text(event: Dict[str, Any]) -> str:
        """Message text plus one line per attachment (text, else title, else fallback)."""
        parts: List[str] = [event.get("text") or ""]
        for attachment in event.get("attachments") or []:
            content = attachment.get("text") or attachment.get("title") or attachment.get("fallback")
            if content:
                parts.append(content)
        return "\n".join(parts).strip()

    @staticmethod
    def forwarded_author(event: Dict[str, Any]) -> Optional[str]:
        """Original sender of a forwarded message, if Slack included it."""
        for attachment in event.get("attachments") or []:
            if attachment.get("author_name"):
                return attachment["author_name"]
        return None

    @staticmethod
    def is_from_bot(event: Dict[str, Any]) -> bool:
        return bool(event.get("bot_id")) or event.get("subtype") == "bot_message"

    def verify_signature(
        self,
        body: bytes,
        signature: str,
        timestamp: str
    ) -> bool:
        """
        Verify Slack request signature.

        Args:
            body: Raw request body
            signature: X-Slack-Signature header
            timestamp: X-Slack-Request-Timestamp header

        Returns:
            True if signature is valid
        """
        if not self._signing_secret:
            # Skip verification if no secret configured
            return True

        if not signature or not timestamp:
            return False

        # Check timestamp is recent (within 5 minutes)
        try:
            ts = int(timestamp)
            if abs(time.time() - ts) > 300:
                return False
        except ValueError:
            return False

        sig_basestring = f"v0:{timestamp}:{body.decode('utf-8')}"
        expected_sig = "v0=" + hmac.new(
            self._signing_secret.encode('utf-8'),
            sig_basestring.encode('utf-8'),
            hashlib.sha256
        ).hexdigest()

        return hmac.compare_digest(expected_sig, signature)

    def is_url_verification(self, raw_data: Dict[str, Any]) -> bool:
        """Check if request is URL verification"""
        return raw_data.get("type") == "url_verification"

    def get_challenge(self, raw_data: Dict[str, Any]) -> Optional[str]:
        """Get challenge for URL verification"""
        if self.is_url_verification(raw_data):
            return raw_data.get("challenge")
        return None

    @staticmethod
    def parse_interaction(body: bytes, content_type: str = "") -> Dict[str, Any]:
        """
        Decode an interactivity payload.

        Slack posts ``payload=<json>`` form-encoded; a raw JSON body is also
        accepted.

        Raises:
            ValueError: if the body holds neither form
        """
        text = body.decode("utf-8")
        if "application/json" not in content_type:
            form = parse_qs(text)
            if "payload" in form:
                payload = json.loads(form["payload"][0])
                if not isinstance(payload, dict):
                    raise ValueError("Interaction payload is not an object")
                return payload

        payload = json.loads(text)
        if isinstance(payload, dict) and isinstance(payload.get("payload"), str):
            payload = json.loads(payload["payload"])
        if not isinstance(payload, dict):
            raise ValueError("Interaction payload is not an object")
        return payload
