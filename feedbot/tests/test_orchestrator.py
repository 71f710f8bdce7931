"""
Tests for the feedback orchestrator

Slack, Notion and the LLM are replaced with in-memory fakes; the approval
store is the real JSON-file store in a temp directory.
"""

import asyncio
import threading

import pytest

from feedbot.common.notion_client import NotionAPIError
from feedbot.common.schemas import CandidateStatus, FeedbackJudgment
from feedbot.common.slack_client import SlackClientError
from feedbot.intake.actions import ActionKind, ParsedAction
from feedbot.intake.approval_store import JsonFileApprovalStore
from feedbot.intake.extractor import ExtractorUnavailable
from feedbot.intake.handlers import Message
from feedbot.intake.orchestrator import (
    FeedbackOrchestrator,
    IngestOutcome,
    OrchestratorSettings,
)


# =============================================================================
# Fakes
# =============================================================================

class FakeSlack:
    def __init__(self):
        self.channels = {"feedback": "CFEED", "bot-feedback": "CAPPR"}
        self.names = {"U1": "Ada Lovelace"}
        self.posts = []
        self.responses = []
        self.views = []
        self.history = []
        self.fail_post = False

    def find_channel_id(self, name):
        return self.channels.get(name.lstrip("#"))

    def resolve_user_display_name(self, user_id):
        return self.names.get(user_id)

    def resolve_permalink(self, channel_id, ts):
        return f"https://acme.slack.com/archives/{channel_id}/p{ts.replace('.', '')}"

    def post_blocks(self, channel, text, blocks):
        if self.fail_post:
            raise SlackClientError("channel_not_found")
        self.posts.append({"channel": channel, "text": text, "blocks": blocks})
        return {"ok": True}

    def respond(self, response_url, text, blocks=None, replace_original=True):
        self.responses.append({"url": response_url, "text": text, "replace_original": replace_original})
        return True

    def open_view(self, trigger_id, view):
        self.views.append((trigger_id, view))
        return True

    def list_recent_messages(self, channel_id, lookback_days=1, limit=50):
        return list(self.history)


class FakeExtractor:
    def __init__(self):
        self.judgment = _judgment()
        self.calls = []
        self.started = threading.Event()
        self.release = None
        self.outage = False

    @property
    def is_available(self):
        return True

    def judge(self, text, source_label="#feedback"):
        self.calls.append((text, source_label))
        self.started.set()
        if self.release is not None:
            self.release.wait(5)
        if self.outage:
            raise ExtractorUnavailable("Feedback analysis failed: overloaded")
        return self.judgment


class FakeSink:
    def __init__(self):
        self.created = []
        self.assigned = []
        self.fail_create = False
        self.known_people = {"John Rice"}
        self.release = None

    def create_task(self, payload):
        if self.release is not None:
            self.release.wait(5)
        if self.fail_create:
            raise NotionAPIError("validation_error", 400)
        self.created.append(payload)
        page_id = f"page-{len(self.created)}"
        return {"id": page_id, "url": f"https://notion.so/{page_id}"}

    def assign_person(self, page_id, name_query):
        if name_query not in self.known_people:
            raise LookupError(f'User "{name_query}" not found')
        self.assigned.append((page_id, name_query))
        return {"id": "user-1", "name": name_query}


def _judgment(**kwargs):
    data = dict(is_feedback=True, category="bug", title="CSV export times out",
                description="Brief Description: export fails", priority="High Priority",
                confidence=85)
    data.update(kwargs)
    return FeedbackJudgment(**data)


def _message(ts="111.222", user="U1", text="The CSV export keeps timing out on big files", **kwargs):
    return Message(text=text, user=user, channel="CFEED", source="slack", timestamp=ts,
                   channel_name="feedback", **kwargs)


@pytest.fixture
def slack():
    return FakeSlack()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def store(tmp_path):
    return JsonFileApprovalStore(tmp_path / "approvals.json")


@pytest.fixture
def orchestrator(store, slack, extractor, sink):
    return FeedbackOrchestrator(store, slack, extractor, sink, settings=OrchestratorSettings())


async def _prompted(orchestrator, ts="111.222"):
    assert await orchestrator.ingest(_message(ts)) == IngestOutcome.PROMPTED
    return f"msg_{ts.replace('.', '_')}"


# =============================================================================
# Ingestion
# =============================================================================

class TestIngest:
    @pytest.mark.asyncio
    async def test_feedback_message_prompts_for_approval(self, orchestrator, store, slack):
        outcome = await orchestrator.ingest(_message("111.222"))

        assert outcome == IngestOutcome.PROMPTED
        candidate = store.get("msg_111_222")
        assert candidate.status == CandidateStatus.PENDING
        assert candidate.description.startswith("Task requested by Ada Lovelace\n\n")
        assert candidate.source.reporter == "Ada Lovelace"
        assert candidate.source.permalink.endswith("/p111222")
        assert store.is_processed("111.222")

        assert len(slack.posts) == 1
        assert slack.posts[0]["channel"] == "CAPPR"
        action_ids = [e["action_id"] for b in slack.posts[0]["blocks"] if b["type"] == "actions"
                      for e in b["elements"]]
        assert "approve_msg_111_222" in action_ids

    @pytest.mark.asyncio
    async def test_ingest_is_idempotent(self, orchestrator, slack, extractor):
        await orchestrator.ingest(_message("111.222"))
        outcome = await orchestrator.ingest(_message("111.222"))

        assert outcome == IngestOutcome.DUPLICATE
        assert len(slack.posts) == 1
        assert len(extractor.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_post_once(self, orchestrator, slack, extractor):
        extractor.release = threading.Event()
        first = asyncio.create_task(orchestrator.ingest(_message("111.222")))
        while not extractor.started.is_set():
            await asyncio.sleep(0.01)

        second = await orchestrator.ingest(_message("111.222"))
        extractor.release.set()

        assert second == IngestOutcome.IN_FLIGHT
        assert await first == IngestOutcome.PROMPTED
        assert len(slack.posts) == 1

    @pytest.mark.asyncio
    async def test_below_threshold_marked_processed(self, orchestrator, store, slack, extractor):
        extractor.judgment = _judgment(confidence=59)

        outcome = await orchestrator.ingest(_message("111.222"))

        assert outcome == IngestOutcome.NOT_FEEDBACK
        assert store.is_processed("111.222")
        assert store.stats()["total"] == 0
        assert slack.posts == []

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self, orchestrator, extractor):
        extractor.judgment = _judgment(confidence=60)
        assert await orchestrator.ingest(_message("111.222")) == IngestOutcome.PROMPTED

    @pytest.mark.asyncio
    async def test_not_feedback_marked_processed(self, orchestrator, store, extractor):
        extractor.judgment = None

        outcome = await orchestrator.ingest(_message("111.222"))

        assert outcome == IngestOutcome.NOT_FEEDBACK
        assert store.is_processed("111.222")

    @pytest.mark.asyncio
    async def test_prompt_failure_leaves_message_retryable(self, orchestrator, store, slack):
        slack.fail_post = True
        with pytest.raises(SlackClientError):
            await orchestrator.ingest(_message("111.222"))
        assert not store.is_processed("111.222")

        slack.fail_post = False
        assert await orchestrator.ingest(_message("111.222")) == IngestOutcome.PROMPTED
        assert store.stats()["pending"] == 1

    @pytest.mark.asyncio
    async def test_llm_outage_leaves_message_retryable(self, orchestrator, store, slack, extractor):
        extractor.outage = True
        with pytest.raises(ExtractorUnavailable):
            await orchestrator.ingest(_message("111.222"))
        assert not store.is_processed("111.222")
        assert store.stats()["total"] == 0
        assert slack.posts == []

        extractor.outage = False
        assert await orchestrator.ingest(_message("111.222")) == IngestOutcome.PROMPTED
        assert store.is_processed("111.222")

    @pytest.mark.asyncio
    async def test_reporter_falls_back_to_forwarded_author(self, orchestrator, store):
        await orchestrator.ingest(_message("1.1", user="U404", forwarded_author="Grace Hopper"))
        assert store.get("msg_1_1").source.reporter == "Grace Hopper"

    @pytest.mark.asyncio
    async def test_reporter_unknown(self, orchestrator, store):
        await orchestrator.ingest(_message("1.1", user=""))
        assert store.get("msg_1_1").description.startswith("Task requested by Unknown\n\n")

    @pytest.mark.asyncio
    async def test_empty_text_skipped(self, orchestrator, extractor):
        assert await orchestrator.ingest(_message("1.1", text="  ")) == IngestOutcome.EMPTY
        assert extractor.calls == []


class TestMessageEvent:
    @pytest.mark.asyncio
    async def test_other_channel_ignored(self, orchestrator, extractor):
        message = _message()
        message.channel = "CRANDOM"
        assert await orchestrator.on_message_event(message) == IngestOutcome.IGNORED
        assert extractor.calls == []

    @pytest.mark.asyncio
    async def test_bot_and_thread_reply_ignored(self, orchestrator):
        assert await orchestrator.on_message_event(_message(is_bot=True)) == IngestOutcome.IGNORED
        assert await orchestrator.on_message_event(_message(thread_ts="100.000")) == IngestOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_feedback_channel_message_ingested(self, orchestrator):
        assert await orchestrator.on_message_event(_message()) == IngestOutcome.PROMPTED


# =============================================================================
# Resolution
# =============================================================================

class TestApprove:
    @pytest.mark.asyncio
    async def test_approve_creates_task_and_removes(self, orchestrator, store, sink, slack):
        key = await _prompted(orchestrator)

        await orchestrator.handle_action(ParsedAction(ActionKind.APPROVE, key), response_url="https://hooks/1")

        assert store.get(key) is None
        assert len(sink.created) == 1
        payload = sink.created[0]
        assert payload.title == "CSV export times out"
        assert payload.message_link.endswith("/p111222")
        assert slack.responses[-1]["url"] == "https://hooks/1"
        assert slack.responses[-1]["text"].startswith("Task created")

    @pytest.mark.asyncio
    async def test_failed_creation_leaves_candidate_approved(self, orchestrator, store, sink, slack):
        key = await _prompted(orchestrator)
        sink.fail_create = True

        assert await orchestrator.approve(key, response_url="https://hooks/1") is False

        assert store.get(key).status == CandidateStatus.APPROVED
        assert "failed" in slack.responses[-1]["text"]

        # the reconcile pass retries it
        sink.fail_create = False
        assert await orchestrator.reconcile_approved() == 1
        assert store.get(key) is None

    @pytest.mark.asyncio
    async def test_approve_again_retries_creation(self, orchestrator, store, sink):
        key = await _prompted(orchestrator)
        sink.fail_create = True
        await orchestrator.approve(key)

        sink.fail_create = False
        assert await orchestrator.approve(key) is True
        assert store.get(key) is None

    @pytest.mark.asyncio
    async def test_unknown_key(self, orchestrator, slack, sink, caplog):
        assert await orchestrator.approve("msg_9_9", response_url="https://hooks/1") is False
        assert "no longer pending" in slack.responses[-1]["text"]
        assert "No pending approval found" in caplog.text
        assert sink.created == []

    @pytest.mark.asyncio
    async def test_approve_after_reject_refused(self, orchestrator, store, sink, slack):
        key = await _prompted(orchestrator)
        await orchestrator.reject(key)

        assert await orchestrator.approve(key, response_url="https://hooks/1") is False
        assert store.get(key).status == CandidateStatus.REJECTED
        assert "already rejected" in slack.responses[-1]["text"]
        assert sink.created == []

    @pytest.mark.asyncio
    async def test_double_click_creates_one_task(self, orchestrator, store, sink):
        key = await _prompted(orchestrator)
        sink.release = threading.Event()

        first = asyncio.create_task(orchestrator.approve(key))
        await asyncio.sleep(0.05)
        second = await orchestrator.approve(key)
        sink.release.set()

        assert second is False
        assert await first is True
        assert len(sink.created) == 1
        assert store.get(key) is None

    @pytest.mark.asyncio
    async def test_two_keys_approved_concurrently(self, orchestrator, store, sink, tmp_path):
        key_a = await _prompted(orchestrator, "1.1")
        key_b = await _prompted(orchestrator, "2.2")
        sink.fail_create = True

        await asyncio.gather(orchestrator.approve(key_a), orchestrator.approve(key_b))

        reloaded = JsonFileApprovalStore(tmp_path / "approvals.json")
        assert reloaded.get(key_a).status == CandidateStatus.APPROVED
        assert reloaded.get(key_b).status == CandidateStatus.APPROVED


class TestReject:
    @pytest.mark.asyncio
    async def test_reject(self, orchestrator, store, sink, slack):
        key = await _prompted(orchestrator)

        assert await orchestrator.reject(key, response_url="https://hooks/1") is True

        assert store.get(key).status == CandidateStatus.REJECTED
        assert sink.created == []
        assert "rejected" in slack.responses[-1]["text"]

    @pytest.mark.asyncio
    async def test_reject_twice(self, orchestrator, slack):
        key = await _prompted(orchestrator)
        await orchestrator.reject(key)
        assert await orchestrator.reject(key, response_url="https://hooks/1") is False
        assert "already rejected" in slack.responses[-1]["text"]

    @pytest.mark.asyncio
    async def test_reject_after_approve_refused(self, orchestrator, store, sink, slack):
        key = await _prompted(orchestrator)
        sink.fail_create = True
        await orchestrator.approve(key)

        assert await orchestrator.reject(key, response_url="https://hooks/1") is False
        assert store.get(key).status == CandidateStatus.APPROVED
        assert "already approved" in slack.responses[-1]["text"]

    @pytest.mark.asyncio
    async def test_reject_unknown(self, orchestrator, slack):
        assert await orchestrator.reject("msg_9_9", response_url="https://hooks/1") is False
        assert "no longer pending" in slack.responses[-1]["text"]


class TestReviewAndAssign:
    @pytest.mark.asyncio
    async def test_review_opens_modal(self, orchestrator, slack):
        key = await _prompted(orchestrator)
        await orchestrator.handle_action(ParsedAction(ActionKind.REVIEW, key), trigger_id="trig-1")

        trigger_id, view = slack.views[0]
        assert trigger_id == "trig-1"
        assert view["callback_id"] == f"review_modal_{key}"

    @pytest.mark.asyncio
    async def test_submit_review_approves_with_edits(self, orchestrator, store, sink, slack):
        key = await _prompted(orchestrator)

        assert await orchestrator.submit_review(key, {"title": "Export to CSV fails over 10k rows"}) is True

        assert sink.created[0].title == "Export to CSV fails over 10k rows"
        assert store.get(key) is None
        # no response_url on modal submissions: confirmation goes to the approval channel
        assert slack.posts[-1]["channel"] == "CAPPR"
        assert slack.posts[-1]["text"].startswith("Task created")

    @pytest.mark.asyncio
    async def test_assign(self, orchestrator, sink, slack):
        await orchestrator.handle_action(ParsedAction(ActionKind.ASSIGN, "page-1"), response_url="https://hooks/1")

        assert sink.assigned == [("page-1", "John Rice")]
        assert "John Rice" in slack.responses[-1]["text"]
        assert slack.responses[-1]["replace_original"] is False

    @pytest.mark.asyncio
    async def test_assign_unknown_person(self, orchestrator, sink, slack):
        sink.known_people = set()
        assert await orchestrator.assign("page-1", response_url="https://hooks/1") is False
        assert "Failed to assign" in slack.responses[-1]["text"]


# =============================================================================
# Maintenance and polling
# =============================================================================

class TestMaintenance:
    @pytest.mark.asyncio
    async def test_sweep_uses_retention(self, orchestrator, store):
        await _prompted(orchestrator)
        assert orchestrator.sweep() == 0
        assert orchestrator.sweep(max_age_days=-1) == 1
        assert store.stats()["total"] == 0

    @pytest.mark.asyncio
    async def test_poll_cycle(self, orchestrator, store, slack, extractor):
        store.mark_processed("1.1")
        slack.history = [
            {"type": "message", "channel": "CFEED", "user": "U1", "ts": "1.1",
             "text": "Already seen message about exports"},
            {"type": "message", "channel": "CFEED", "user": "U1", "ts": "2.2",
             "text": "Dashboard charts do not load on Firefox"},
            {"type": "message", "channel": "CFEED", "user": "U1", "ts": "3.3", "text": "ok"},
            {"type": "message", "channel": "CFEED", "bot_id": "B1", "ts": "4.4",
             "text": "I am a bot posting a long message here"},
        ]

        summary = await orchestrator.run_poll_cycle()

        assert summary["fetched"] == 4
        assert summary["analyzed"] == 1
        assert summary["prompted"] == 1
        assert [c[0] for c in extractor.calls] == ["Dashboard charts do not load on Firefox"]
        assert store.get("msg_2_2") is not None

    @pytest.mark.asyncio
    async def test_poll_cycle_reconciles_approved(self, orchestrator, store, sink):
        key = await _prompted(orchestrator)
        sink.fail_create = True
        await orchestrator.approve(key)
        sink.fail_create = False

        summary = await orchestrator.run_poll_cycle()

        assert summary["tasks_created"] == 1
        assert store.get(key) is None

    @pytest.mark.asyncio
    async def test_poll_cycle_not_reentrant(self, orchestrator):
        orchestrator._cycle_running = True
        assert await orchestrator.run_poll_cycle() is None

    @pytest.mark.asyncio
    async def test_poll_cycle_isolates_failures(self, orchestrator, store, slack):
        slack.history = [
            {"type": "message", "channel": "CFEED", "user": "U1", "ts": "2.2",
             "text": "Dashboard charts do not load on Firefox"},
        ]
        slack.fail_post = True

        summary = await orchestrator.run_poll_cycle()

        assert summary["failed"] == 1
        assert not store.is_processed("2.2")

    @pytest.mark.asyncio
    async def test_poll_cycle_llm_outage_not_processed(self, orchestrator, store, slack, extractor):
        slack.history = [
            {"type": "message", "channel": "CFEED", "user": "U1", "ts": "3.3",
             "text": "Search returns nothing for quoted phrases"},
        ]
        extractor.outage = True

        summary = await orchestrator.run_poll_cycle()

        assert summary["failed"] == 1
        assert not store.is_processed("3.3")
