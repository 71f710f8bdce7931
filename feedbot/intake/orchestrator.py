"""
Feedback Orchestrator

Ties the collaborators together:

Ingestion (new message -> approval prompt):
1. Skip messages already processed (or currently being processed)
2. Ask the extractor for a judgment; below-threshold or "not feedback"
   messages are marked processed and dropped. An unreachable model raises
   and leaves the message unprocessed
3. Register a pending candidate and post the approval prompt
4. Mark the message processed only after the prompt was posted, so a failure
   part-way leaves it eligible for redelivery

Resolution (button click -> terminal state):
- approve: mark approved, create the task, remove on success; a failed
  creation leaves the candidate approved for a later retry
- reject: mark rejected, no task
- review: open the edit modal; its submission approves with overrides
- assign: attach a named person to an already created task

Maintenance: daily sweep of aged-out candidates; in poll mode, a periodic
cycle that also retries task creation for candidates still approved.

Remote calls (Slack, LLM, Notion) are synchronous clients run in worker
threads; store operations are short and never span a remote call.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..common.config import FeedbotConfig
from ..common.notion_client import NotionClient, page_url
from ..common.schemas import (
    CandidateStatus,
    FeedbackCandidate,
    SourceRef,
    TaskPayload,
    candidate_key,
)
from ..common.slack_client import SlackClient
from . import blocks
from .actions import ActionKind, ParsedAction
from .approval_store import ApprovalStore, InvalidTransition
from .extractor import FeedbackExtractor
from .handlers import Message, SlackHandler

logger = logging.getLogger("feedbot.intake.orchestrator")

UNKNOWN_REPORTER = "Unknown"


class IngestOutcome(str, Enum):
    PROMPTED = "prompted"
    NOT_FEEDBACK = "not_feedback"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    EMPTY = "empty"
    IGNORED = "ignored"


@dataclass
class OrchestratorSettings:
    feedback_channel_name: str = "feedback"
    feedback_channel_id: str = ""
    approval_channel_name: str = "bot-feedback"
    approval_channel_id: str = ""
    assignee_name: str = "John Rice"
    confidence_threshold: int = 60
    retention_days: float = 7
    lookback_days: float = 1
    max_messages_per_run: int = 50
    min_message_length: int = 20

    @classmethod
    def from_config(cls, config: FeedbotConfig) -> "OrchestratorSettings":
        return cls(
            feedback_channel_name=config.slack.feedback_channel_name,
            feedback_channel_id=config.slack.feedback_channel_id,
            approval_channel_name=config.slack.approval_channel_name,
            approval_channel_id=config.slack.approval_channel_id,
            assignee_name=config.slack.assignee_name,
            confidence_threshold=config.scheduler.confidence_threshold,
            retention_days=config.scheduler.retention_days,
            lookback_days=config.scheduler.lookback_days,
            max_messages_per_run=config.scheduler.max_messages_per_run,
            min_message_length=config.scheduler.min_message_length,
        )


class FeedbackOrchestrator:
    """Ingestion, resolution and maintenance paths over the approval store."""

    def __init__(
        self,
        store: ApprovalStore,
        slack: SlackClient,
        extractor: FeedbackExtractor,
        task_sink: NotionClient,
        handler: Optional[SlackHandler] = None,
        settings: Optional[OrchestratorSettings] = None,
    ):
        self.store = store
        self._slack = slack
        self._extractor = extractor
        self._sink = task_sink
        self._handler = handler or SlackHandler()
        self.settings = settings or OrchestratorSettings()

        self._feedback_channel_id: Optional[str] = self.settings.feedback_channel_id or None
        self._approval_channel: Optional[str] = self.settings.approval_channel_id or None
        self._in_flight: Set[str] = set()
        self._creating: Set[str] = set()
        self._cycle_running = False

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def feedback_channel_id(self) -> Optional[str]:
        if not self._feedback_channel_id:
            self._feedback_channel_id = await asyncio.to_thread(
                self._slack.find_channel_id, self.settings.feedback_channel_name
            )
        return self._feedback_channel_id

    async def approval_channel(self) -> str:
        if not self._approval_channel:
            channel_id = await asyncio.to_thread(
                self._slack.find_channel_id, self.settings.approval_channel_name
            )
            # chat.postMessage also accepts a channel name
            self._approval_channel = channel_id or f"#{self.settings.approval_channel_name.lstrip('#')}"
        return self._approval_channel

    # ------------------------------------------------------------------
    # Ingestion path
    # ------------------------------------------------------------------

    def is_processed(self, message_ts: str) -> bool:
        return self.store.is_processed(message_ts)

    async def on_message_event(self, message: Message) -> IngestOutcome:
        """Entry point for pushed message events: filter, then ingest."""
        feedback_channel = await self.feedback_channel_id()
        if not feedback_channel or message.channel != feedback_channel:
            return IngestOutcome.IGNORED
        if not self._handler.should_process(message):
            return IngestOutcome.IGNORED

        message.channel_name = message.channel_name or self.settings.feedback_channel_name
        logger.info("New message in #%s: %r", message.channel_name, message.snippet(50))
        return await self.ingest(message)

    async def ingest(self, message: Message) -> IngestOutcome:
        """Run one message through extraction and, if actionable, prompt for approval.

        Raises:
            ExtractorUnavailable: the model could not be asked; nothing is recorded
            SlackClientError: the prompt could not be posted; nothing is marked processed
        """
        ts = message.timestamp
        if self.store.is_processed(ts):
            logger.info("Message %s already processed, skipping", ts)
            return IngestOutcome.DUPLICATE
        if ts in self._in_flight:
            logger.info("Message %s is already being processed, skipping", ts)
            return IngestOutcome.IN_FLIGHT

        self._in_flight.add(ts)
        try:
            text = message.text.strip()
            if not text:
                logger.info("No text content in message %s, skipping", ts)
                return IngestOutcome.EMPTY

            judgment = await asyncio.to_thread(self._extractor.judge, text, message.source_label)
            threshold = self.settings.confidence_threshold
            if judgment is None or not judgment.is_actionable(threshold):
                if judgment is not None:
                    logger.info("Feedback below confidence threshold (%d < %d): %s",
                                judgment.confidence, threshold, judgment.title)
                else:
                    logger.info("No actionable feedback in message %s", ts)
                self.store.mark_processed(ts)
                return IngestOutcome.NOT_FEEDBACK

            key = candidate_key(ts)
            reporter = await self._resolve_reporter(message)
            permalink = await self._resolve_permalink(message)

            candidate = self.store.register(key, FeedbackCandidate(
                key=key,
                category=judgment.category,
                title=judgment.title,
                description=f"Task requested by {reporter}\n\n{judgment.description}",
                priority=judgment.priority,
                confidence=judgment.confidence,
                source=SourceRef(
                    channel=message.channel,
                    message_ts=ts,
                    permalink=permalink,
                    reporter=reporter,
                ),
                message_snippet=message.snippet(),
            ))

            prompt = blocks.approval_prompt(candidate)
            channel = await self.approval_channel()
            await asyncio.to_thread(self._slack.post_blocks, channel, prompt["text"], prompt["blocks"])
            logger.info("Approval message sent for %r (reported by %s)", candidate.title, reporter)

            self.store.mark_processed(ts)
            return IngestOutcome.PROMPTED
        finally:
            self._in_flight.discard(ts)

    async def _resolve_reporter(self, message: Message) -> str:
        """Profile name of the poster, else the forwarded author, else "Unknown"."""
        if message.user:
            try:
                name = await asyncio.to_thread(self._slack.resolve_user_display_name, message.user)
            except Exception as e:
                logger.warning("Could not fetch user info for %s: %s", message.user, e)
                name = None
            if name:
                return name
        if message.forwarded_author:
            return message.forwarded_author
        return UNKNOWN_REPORTER

    async def _resolve_permalink(self, message: Message) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._slack.resolve_permalink, message.channel, message.timestamp)
        except Exception as e:
            logger.warning("Permalink lookup failed for %s: %s", message.timestamp, e)
            return None

    # ------------------------------------------------------------------
    # Resolution path
    # ------------------------------------------------------------------

    async def handle_action(
        self,
        action: ParsedAction,
        trigger_id: Optional[str] = None,
        response_url: Optional[str] = None,
    ) -> None:
        logger.info("Action: %s, target: %s", action.kind.value, action.target)
        if action.kind == ActionKind.APPROVE:
            await self.approve(action.target, response_url=response_url)
        elif action.kind == ActionKind.REJECT:
            await self.reject(action.target, response_url=response_url)
        elif action.kind == ActionKind.REVIEW:
            await self.review(action.target, trigger_id=trigger_id, response_url=response_url)
        elif action.kind == ActionKind.ASSIGN:
            await self.assign(action.target, response_url=response_url)

    async def approve(
        self,
        key: str,
        response_url: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Approve and create the task. True if the task was created."""
        if self.store.get(key) is None:
            logger.warning("No pending approval found for %s", key)
            await self._respond(response_url, blocks.not_found())
            return False
        if key in self._creating:
            logger.info("Task creation for %s already in progress, ignoring duplicate click", key)
            return False

        try:
            candidate = self.store.approve(key, overrides)
        except InvalidTransition as e:
            logger.warning("%s", e)
            await self._respond(response_url, blocks.already_resolved(e.current.value))
            return False
        if candidate is None:
            # swept between the two calls
            await self._respond(response_url, blocks.not_found())
            return False

        logger.info("Marked %s as approved: %s", key, candidate.title)
        return await self._create_task(candidate, response_url)

    async def _create_task(
        self,
        candidate: FeedbackCandidate,
        response_url: Optional[str] = None,
        notify: bool = True,
    ) -> bool:
        if candidate.key in self._creating:
            return False
        payload = TaskPayload.from_candidate(candidate)
        self._creating.add(candidate.key)
        try:
            page = await asyncio.to_thread(self._sink.create_task, payload)
        except Exception as e:
            logger.error("Error creating Notion task for %s: %s", candidate.key, e)
            if notify:
                await self._respond(response_url, blocks.task_failed())
            return False
        finally:
            self._creating.discard(candidate.key)

        task_id = page["id"]
        self.store.remove(candidate.key)
        logger.info("Notion task created for %s: %s", candidate.key, task_id)
        if notify:
            await self._respond(
                response_url,
                blocks.task_created(candidate, task_id, page.get("url") or page_url(task_id),
                                    self.settings.assignee_name),
            )
        return True

    async def reject(self, key: str, response_url: Optional[str] = None) -> bool:
        existing = self.store.get(key)
        if existing is None:
            logger.warning("No pending approval found for %s", key)
            await self._respond(response_url, blocks.not_found())
            return False
        if existing.status == CandidateStatus.REJECTED:
            await self._respond(response_url, blocks.already_resolved(existing.status.value, existing.title))
            return False

        try:
            candidate = self.store.reject(key)
        except InvalidTransition as e:
            logger.warning("%s", e)
            await self._respond(response_url, blocks.already_resolved(e.current.value))
            return False
        if candidate is None:
            await self._respond(response_url, blocks.not_found())
            return False

        logger.info("Rejected %s: %s", key, candidate.title)
        await self._respond(response_url, blocks.rejected())
        return True

    async def review(self, key: str, trigger_id: Optional[str] = None, response_url: Optional[str] = None) -> bool:
        """Open the edit modal for a pending (or approved, not yet created) candidate."""
        candidate = self.store.get(key)
        if candidate is None:
            logger.warning("No pending approval found for %s", key)
            await self._respond(response_url, blocks.not_found())
            return False
        if candidate.status == CandidateStatus.REJECTED:
            await self._respond(response_url, blocks.already_resolved(candidate.status.value, candidate.title))
            return False
        if not trigger_id:
            logger.warning("Review requested for %s without a trigger_id", key)
            return False

        logger.info("Opening review modal for %s: %s", key, candidate.title)
        return await asyncio.to_thread(self._slack.open_view, trigger_id, blocks.review_modal(candidate))

    async def submit_review(self, key: str, overrides: Dict[str, Any]) -> bool:
        """Review modal submitted: approve with the edited fields."""
        logger.info("Review submitted for %s (%s)", key, ", ".join(sorted(overrides)) or "no changes")
        return await self.approve(key, overrides=overrides)

    async def assign(self, task_id: str, response_url: Optional[str] = None) -> bool:
        person = self.settings.assignee_name
        try:
            user = await asyncio.to_thread(self._sink.assign_person, task_id, person)
        except LookupError as e:
            logger.error("Error assigning task %s: %s", task_id, e)
            await self._respond(response_url, blocks.assign_failed(person, "no matching user"), replace_original=False)
            return False
        except Exception as e:
            logger.error("Error assigning task %s: %s", task_id, e)
            await self._respond(response_url, blocks.assign_failed(person), replace_original=False)
            return False

        await self._respond(response_url, blocks.assigned(user.get("name") or person), replace_original=False)
        return True

    async def _respond(self, response_url: Optional[str], message: Dict[str, Any], replace_original: bool = True) -> None:
        """Reply on the interaction's response_url, else in the approval channel. Best effort."""
        try:
            if response_url:
                await asyncio.to_thread(
                    self._slack.respond, response_url, message["text"], message["blocks"], replace_original
                )
            else:
                channel = await self.approval_channel()
                await asyncio.to_thread(self._slack.post_blocks, channel, message["text"], message["blocks"])
        except Exception as e:
            logger.error("Failed to report back to Slack: %s", e)

    # ------------------------------------------------------------------
    # Maintenance and polling
    # ------------------------------------------------------------------

    def sweep(self, max_age_days: Optional[float] = None) -> int:
        days = self.settings.retention_days if max_age_days is None else max_age_days
        removed = self.store.sweep(days)
        logger.info("Daily cleanup removed %d candidates older than %s days", removed, days)
        return removed

    async def reconcile_approved(self) -> int:
        """Retry task creation for approved candidates. Returns tasks created."""
        created = 0
        for candidate in self.store.list_approved():
            if await self._create_task(candidate, notify=False):
                created += 1
        return created

    async def run_poll_cycle(self) -> Optional[Dict[str, Any]]:
        """One scan of the feedback channel. Skipped if a cycle is already running."""
        if self._cycle_running:
            logger.info("Job already running, skipping this cycle")
            return None

        self._cycle_running = True
        started = time.monotonic()
        summary: Dict[str, Any] = {"fetched": 0, "analyzed": 0, "prompted": 0, "failed": 0, "tasks_created": 0}
        try:
            channel_id = await self.feedback_channel_id()
            if not channel_id:
                logger.error("Feedback channel #%s not found, skipping cycle", self.settings.feedback_channel_name)
                return summary

            raw_messages = await asyncio.to_thread(
                self._slack.list_recent_messages,
                channel_id,
                self.settings.lookback_days,
                self.settings.max_messages_per_run,
            )
            summary["fetched"] = len(raw_messages)

            for message in self._new_messages(raw_messages):
                summary["analyzed"] += 1
                try:
                    outcome = await self.ingest(message)
                except Exception:
                    summary["failed"] += 1
                    logger.exception("Failed to process message %s", message.timestamp)
                    continue
                if outcome == IngestOutcome.PROMPTED:
                    summary["prompted"] += 1

            summary["tasks_created"] = await self.reconcile_approved()
        finally:
            self._cycle_running = False

        summary["duration_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            "Cycle complete (%dms): analyzed=%d prompted=%d failed=%d tasks_created=%d | %s",
            summary["duration_ms"], summary["analyzed"], summary["prompted"],
            summary["failed"], summary["tasks_created"], self.store.stats(),
        )
        return summary

    def _new_messages(self, raw_messages: List[Dict[str, Any]]) -> List[Message]:
        messages = []
        for raw in raw_messages:
            message = self._handler.message_from_event(raw, channel_name=self.settings.feedback_channel_name)
            if message is None:
                continue
            if not self._handler.should_process(message, min_length=self.settings.min_message_length):
                continue
            if self.store.is_processed(message.timestamp):
                continue
            messages.append(message)
        return messages
