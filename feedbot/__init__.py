"""
Feedbot

Watches a Slack feedback channel, asks an LLM whether each message is
actionable product feedback, and turns approved items into Notion tasks.

Principles:
- Nothing reaches the backlog without a human approval click
- Every approval candidate survives a restart (persisted on each change)
- A message is analyzed at most once, and only marked done after its
  approval prompt was posted

Usage:
    from feedbot.common import load_config, SlackClient, NotionClient
    from feedbot.common.schemas import FeedbackCandidate, FeedbackJudgment
    from feedbot.intake import FeedbackOrchestrator, create_store
"""

__version__ = "0.1.0"
