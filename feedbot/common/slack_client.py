"""
Slack Client

Thin wrapper over slack_sdk's WebClient for the calls the feedback flow
needs: channel lookup, history listing, permalinks, user names, posting
prompts, opening modals and answering interaction response_urls.

All methods are synchronous; async callers run them in a worker thread.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.webhook import WebhookClient

logger = logging.getLogger("feedbot.common.slack_client")


class SlackClientError(RuntimeError):
    """Raised when Slack cannot be reached or refuses a required call."""


class SlackClient:
    """Message source and chat surface for the feedback bot."""

    def __init__(self, token: str = "", client: Optional[WebClient] = None):
        self._client = client or WebClient(token=token)
        self._channel_ids: Dict[str, str] = {}
        self.bot_user_id: Optional[str] = None

    def initialize(self) -> str:
        """Verify the bot token. Returns the bot's user id.

        Raises:
            SlackClientError: if the token is missing or rejected
        """
        try:
            response = self._client.auth_test()
        except SlackApiError as e:
            raise SlackClientError(f"Slack auth failed: {e.response.get('error', e)}") from e
        self.bot_user_id = response.get("user_id")
        logger.info("Slack client authenticated as %s (team %s)", response.get("user"), response.get("team"))
        return self.bot_user_id

    # ------------------------------------------------------------------
    # Channels and history
    # ------------------------------------------------------------------

    def find_channel_id(self, name: str) -> Optional[str]:
        """Resolve a channel name (with or without '#') to its id. Cached."""
        name = name.lstrip("#")
        if name in self._channel_ids:
            return self._channel_ids[name]

        cursor = None
        try:
            while True:
                response = self._client.conversations_list(
                    types="public_channel,private_channel",
                    exclude_archived=True,
                    limit=200,
                    cursor=cursor,
                )
                for channel in response.get("channels", []):
                    if channel.get("name") == name:
                        self._channel_ids[name] = channel["id"]
                        logger.info("Resolved #%s -> %s", name, channel["id"])
                        return channel["id"]
                cursor = (response.get("response_metadata") or {}).get("next_cursor")
                if not cursor:
                    break
        except SlackApiError as e:
            logger.error("Failed to list channels: %s", e.response.get("error", e))
            return None

        logger.warning("Channel #%s not found", name)
        return None

    def list_recent_messages(
        self,
        channel_id: str,
        lookback_days: float = 1,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Top-level messages from the last `lookback_days`, oldest first.

        Each item is the raw Slack message object with ``channel`` filled in,
        the same shape as a message event payload.
        """
        oldest = time.time() - lookback_days * 86400
        try:
            response = self._client.conversations_history(
                channel=channel_id,
                oldest=f"{oldest:.6f}",
                limit=limit,
            )
        except SlackApiError as e:
            logger.error("Failed to read history for %s: %s", channel_id, e.response.get("error", e))
            return []

        messages = []
        for msg in response.get("messages", []):
            msg = dict(msg)
            msg.setdefault("channel", channel_id)
            messages.append(msg)
        messages.sort(key=lambda m: float(m.get("ts", 0)))
        return messages[:limit]

    def resolve_permalink(self, channel_id: str, message_ts: str) -> Optional[str]:
        """Best effort; returns None on failure."""
        try:
            response = self._client.chat_getPermalink(channel=channel_id, message_ts=message_ts)
            return response.get("permalink")
        except SlackApiError as e:
            logger.warning("Could not get permalink for %s/%s: %s", channel_id, message_ts, e.response.get("error", e))
            return None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user_info(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._client.users_info(user=user_id)
            return response.get("user")
        except SlackApiError as e:
            logger.warning("Could not fetch user %s: %s", user_id, e.response.get("error", e))
            return None

    def resolve_user_display_name(self, user_id: str) -> Optional[str]:
        """Best available human name for a user.

        Order: real_name, profile.real_name, profile.display_name, name.
        """
        if not user_id:
            return None
        user = self.get_user_info(user_id)
        if not user:
            return None

        profile = user.get("profile") or {}
        for candidate in (
            user.get("real_name"),
            profile.get("real_name"),
            profile.get("display_name"),
            user.get("name"),
        ):
            if candidate and candidate.strip():
                return candidate.strip()

        logger.info("User %s has no name fields", user_id)
        return None

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_blocks(self, channel: str, text: str, blocks: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Post a Block Kit message. Returns {"channel", "ts"}.

        Raises:
            SlackClientError: if Slack rejects the message
        """
        try:
            response = self._client.chat_postMessage(channel=channel, text=text, blocks=blocks)
        except SlackApiError as e:
            raise SlackClientError(f"Failed to post to {channel}: {e.response.get('error', e)}") from e
        return {"channel": response.get("channel"), "ts": response.get("ts")}

    def open_view(self, trigger_id: str, view: Dict[str, Any]) -> bool:
        try:
            self._client.views_open(trigger_id=trigger_id, view=view)
            return True
        except SlackApiError as e:
            logger.error("Failed to open modal: %s", e.response.get("error", e))
            return False

    def respond(
        self,
        response_url: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
        replace_original: bool = True,
    ) -> bool:
        """Answer an interaction through its response_url."""
        try:
            response = WebhookClient(response_url).send(
                text=text,
                blocks=blocks,
                replace_original=replace_original,
            )
        except Exception as e:
            logger.error("Error sending Slack update: %s", e)
            return False
        if response.status_code != 200:
            logger.error("Slack update rejected (%s): %s", response.status_code, response.body)
            return False
        return True
