"""Tests for Slack event and interaction parsing."""

import hashlib
import hmac
import json
import time
from urllib.parse import urlencode

import pytest

from feedbot.intake.handlers import Message, SlackHandler


def _event(**fields):
    event = {"type": "message", "channel": "C1", "user": "U1", "ts": "111.222",
             "text": "The CSV export keeps timing out on large files"}
    event.update(fields)
    return {"type": "event_callback", "event": event}


def _sign(secret, body, timestamp):
    base = f"v0:{timestamp}:{body.decode('utf-8')}"
    return "v0=" + hmac.new(secret.encode(), base.encode(), hashlib.sha256).hexdigest()


class TestParseEvent:
    @pytest.mark.asyncio
    async def test_plain_message(self):
        message = await SlackHandler().parse_event(_event())

        assert isinstance(message, Message)
        assert message.channel == "C1"
        assert message.timestamp == "111.222"
        assert message.user == "U1"
        assert not message.is_bot

    @pytest.mark.asyncio
    async def test_forwarded_message_flattened(self):
        raw = _event(text="", attachments=[
            {"author_name": "Grace", "text": "Login fails on Safari"},
            {"title": "Screenshot"},
        ])
        message = await SlackHandler().parse_event(raw)

        assert message.text == "Login fails on Safari\nScreenshot"
        assert message.forwarded_author == "Grace"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("subtype", ["channel_join", "message_changed", "message_deleted"])
    async def test_ignored_subtypes(self, subtype):
        assert await SlackHandler().parse_event(_event(subtype=subtype)) is None

    @pytest.mark.asyncio
    async def test_non_message_events(self):
        handler = SlackHandler()
        assert await handler.parse_event({"type": "event_callback", "event": {"type": "reaction_added"}}) is None
        assert await handler.parse_event({"type": "url_verification", "challenge": "x"}) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", ["message", ["message"], 42])
    async def test_event_not_an_object(self, event):
        with pytest.raises(ValueError, match="event must be an object"):
            await SlackHandler().parse_event({"type": "event_callback", "event": event})

    @pytest.mark.asyncio
    async def test_bot_message_flagged(self):
        message = await SlackHandler().parse_event(_event(bot_id="B1"))
        assert message.is_bot


class TestShouldProcess:
    def _message(self, **kwargs):
        data = dict(text="The CSV export keeps timing out", user="U1", channel="C1",
                    source="slack", timestamp="111.222")
        data.update(kwargs)
        return Message(**data)

    def test_accepts_top_level_message(self):
        assert SlackHandler().should_process(self._message())

    def test_rejects_bot(self):
        assert not SlackHandler().should_process(self._message(is_bot=True))

    def test_rejects_thread_reply(self):
        assert not SlackHandler().should_process(self._message(thread_ts="100.000"))

    def test_thread_parent_accepted(self):
        assert SlackHandler().should_process(self._message(thread_ts="111.222"))

    def test_min_length(self):
        handler = SlackHandler()
        assert not handler.should_process(self._message(text="too short"), min_length=20)
        assert handler.should_process(self._message(text="too short"))

    def test_blank_text(self):
        assert not SlackHandler().should_process(self._message(text="   "))


class TestSignature:
    def test_valid_signature(self):
        handler = SlackHandler(signing_secret="s3cret")
        body = b'{"type":"event_callback"}'
        ts = str(int(time.time()))
        assert handler.verify_signature(body, _sign("s3cret", body, ts), ts)

    def test_wrong_secret(self):
        handler = SlackHandler(signing_secret="s3cret")
        body = b"{}"
        ts = str(int(time.time()))
        assert not handler.verify_signature(body, _sign("other", body, ts), ts)

    def test_stale_timestamp(self):
        handler = SlackHandler(signing_secret="s3cret")
        body = b"{}"
        ts = str(int(time.time()) - 600)
        assert not handler.verify_signature(body, _sign("s3cret", body, ts), ts)

    def test_missing_headers(self):
        assert not SlackHandler(signing_secret="s3cret").verify_signature(b"{}", "", "")

    def test_no_secret_skips_verification(self):
        assert SlackHandler().verify_signature(b"{}", "", "")


class TestUrlVerification:
    def test_challenge(self):
        handler = SlackHandler()
        data = {"type": "url_verification", "challenge": "abc123"}
        assert handler.is_url_verification(data)
        assert handler.get_challenge(data) == "abc123"
        assert handler.get_challenge({"type": "event_callback"}) is None


class TestParseInteraction:
    def test_form_encoded(self):
        payload = {"type": "block_actions", "actions": [{"action_id": "approve_msg_1_1"}]}
        body = urlencode({"payload": json.dumps(payload)}).encode()
        assert SlackHandler.parse_interaction(body, "application/x-www-form-urlencoded") == payload

    def test_raw_json(self):
        payload = {"type": "view_submission"}
        assert SlackHandler.parse_interaction(json.dumps(payload).encode(), "application/json") == payload

    def test_json_wrapping_payload_string(self):
        inner = {"type": "block_actions"}
        body = json.dumps({"payload": json.dumps(inner)}).encode()
        assert SlackHandler.parse_interaction(body, "application/json") == inner

    @pytest.mark.parametrize("body", [b"garbage", b"payload=not-json", b"[1,2]"])
    def test_unreadable(self, body):
        with pytest.raises(ValueError):
            SlackHandler.parse_interaction(body, "application/x-www-form-urlencoded")
