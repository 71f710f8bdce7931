"""
Feedbot Common Module

Configuration and the clients for Slack, Notion and the LLM.
"""

from .config import FeedbotConfig, load_config
from .llm_client import LLMClient
from .notion_client import NotionAPIError, NotionClient
from .slack_client import SlackClient, SlackClientError

__all__ = [
    "FeedbotConfig",
    "load_config",
    "LLMClient",
    "NotionAPIError",
    "NotionClient",
    "SlackClient",
    "SlackClientError",
]
