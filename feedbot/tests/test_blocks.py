"""Tests for the Block Kit messages posted by the bot."""

from feedbot.common.schemas import FeedbackCandidate, SourceRef
from feedbot.intake import blocks
from feedbot.intake.actions import ActionKind, parse_block_action, parse_review_callback_id


def _candidate(**kwargs):
    data = dict(
        key="msg_111_222",
        category="bug",
        title="CSV export times out",
        description="Task requested by Ada\n\nBrief Description: export fails",
        priority="high",
        confidence=85,
        source=SourceRef(channel="C1", message_ts="111.222", reporter="Ada",
                         permalink="https://acme.slack.com/archives/C1/p111222"),
        message_snippet="export keeps failing",
    )
    data.update(kwargs)
    return FeedbackCandidate(**data)


def _buttons(message):
    for block in message["blocks"]:
        if block["type"] == "actions":
            return block["elements"]
    return []


class TestApprovalPrompt:
    def test_buttons_route_back_to_candidate(self):
        message = blocks.approval_prompt(_candidate())
        parsed = [parse_block_action(b) for b in _buttons(message)]

        assert [p.kind for p in parsed] == [ActionKind.APPROVE, ActionKind.REJECT, ActionKind.REVIEW]
        assert {p.target for p in parsed} == {"msg_111_222"}

    def test_content(self):
        message = blocks.approval_prompt(_candidate())
        rendered = str(message["blocks"])

        assert message["text"] == "Feedback needs approval: CSV export times out"
        assert "High Priority" in rendered
        assert "Task requested by Ada" in rendered
        assert "export keeps failing" in rendered
        assert "p111222" in rendered

    def test_long_description_truncated(self):
        message = blocks.approval_prompt(_candidate(description="x" * 5000))
        for block in message["blocks"]:
            if block["type"] == "section" and "text" in block:
                assert len(block["text"]["text"]) <= 3000


class TestOutcomes:
    def test_task_created_has_link_and_assign(self):
        message = blocks.task_created(_candidate(), "page-1", "https://notion.so/page1", "John Rice")
        view, assign = _buttons(message)

        assert view["url"] == "https://notion.so/page1"
        parsed = parse_block_action(assign)
        assert parsed.kind == ActionKind.ASSIGN
        assert parsed.target == "page-1"
        assert "John Rice" in assign["text"]["text"]

    def test_already_resolved_mentions_state(self):
        assert "already rejected" in blocks.already_resolved("rejected")["text"]

    def test_every_outcome_has_text_and_blocks(self):
        for message in (blocks.task_failed(), blocks.rejected(), blocks.not_found(),
                        blocks.assigned("John Rice"), blocks.assign_failed("John Rice", "no matching user")):
            assert message["text"]
            assert message["blocks"]


class TestReviewModal:
    def test_modal_prefilled(self):
        view = blocks.review_modal(_candidate())
        assert parse_review_callback_id(view["callback_id"]) == "msg_111_222"
        assert view["blocks"][0]["element"]["initial_value"] == "CSV export times out"

    def test_review_values(self):
        view = {"state": {"values": {
            "title_block": {"title_input": {"type": "plain_text_input", "value": " Edited title "}},
            "description_block": {"description_input": {"type": "plain_text_input", "value": ""}},
        }}}
        assert blocks.review_values(view) == {"title": "Edited title"}

    def test_review_values_empty_view(self):
        assert blocks.review_values({}) == {}
