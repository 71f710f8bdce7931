"""
Source Handlers

Each handler converts source-specific webhook events to a common Message format.

Available Handlers:
- SlackHandler: Slack Events API and interactivity webhooks
"""

from .base import BaseHandler, Message
from .slack import SlackHandler

__all__ = [
    "BaseHandler",
    "Message",
    "SlackHandler",
]
