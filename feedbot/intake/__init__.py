"""
Feedback Intake

From Slack message to approved Notion task.

Key Components:
- FeedbackExtractor: LLM judgment of a single message
- ApprovalStore: durable pending/approved/rejected candidates and the
  processed-message set (JSON file or SQLite)
- FeedbackOrchestrator: ingestion, approval resolution and maintenance
- WorkQueue: bounded background execution behind the webhook gateway
- Handlers: Slack event and interaction parsing
"""

from .approval_store import ApprovalStore, InvalidTransition, create_store
from .extractor import ExtractorUnavailable, FeedbackExtractor
from .orchestrator import FeedbackOrchestrator, IngestOutcome, OrchestratorSettings
from .work_queue import WorkQueue

__all__ = [
    "ApprovalStore",
    "InvalidTransition",
    "create_store",
    "ExtractorUnavailable",
    "FeedbackExtractor",
    "FeedbackOrchestrator",
    "IngestOutcome",
    "OrchestratorSettings",
    "WorkQueue",
]
