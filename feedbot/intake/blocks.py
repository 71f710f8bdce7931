"""
Slack Block Kit messages posted by the bot.

Approval prompts, the outcomes that replace them, and the review modal.
"""

from typing import Any, Dict, List, Optional

from ..common.schemas import Category, FeedbackCandidate
from .actions import ActionKind, encode_action_id, review_callback_id

CATEGORY_EMOJI = {
    Category.BUG: ":bug:",
    Category.FEATURE_REQUEST: ":bulb:",
    Category.ENHANCEMENT: ":sparkles:",
    Category.COMPLAINT: ":warning:",
    Category.PRAISE: ":tada:",
    Category.OTHER: ":speech_balloon:",
}

# Slack caps section text at 3000 chars
_MAX_SECTION = 2900


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text[:_MAX_SECTION]}}


def _button(text: str, **extra) -> Dict[str, Any]:
    button = {"type": "button", "text": {"type": "plain_text", "text": text, "emoji": True}}
    button.update(extra)
    return button


def approval_prompt(candidate: FeedbackCandidate) -> Dict[str, Any]:
    """Text + blocks asking a human to approve, reject or edit a candidate."""
    key = candidate.key
    emoji = CATEGORY_EMOJI.get(candidate.category, "")
    excerpt = candidate.message_snippet or ""
    source = candidate.source

    context = f"From <#{source.channel}>" if source.channel else "From Slack"
    if source.reporter:
        context += f" by {source.reporter}"
    if source.permalink:
        context += f" · <{source.permalink}|view message>"

    blocks: List[Dict[str, Any]] = [
        _section(f"{emoji} *New {candidate.category.value.replace('_', ' ')} detected* "
                 f"(confidence {candidate.confidence}%)"),
        {"type": "divider"},
        _section(f"*Suggested title:*\n{candidate.title}"),
        _section(f"*Description:*\n{candidate.description}"),
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Priority:*\n{candidate.priority.label}"},
                {"type": "mrkdwn", "text": f"*Type:*\n{candidate.category.label}"},
            ],
        },
    ]
    if excerpt:
        blocks.append(_section(f"*Original message:*\n> {excerpt}"))
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": context}]})
    blocks.append({
        "type": "actions",
        "block_id": f"approval_{key}",
        "elements": [
            _button(":white_check_mark: Approve", style="primary", value=key,
                    action_id=encode_action_id(ActionKind.APPROVE, key)),
            _button(":x: Reject", style="danger", value=key,
                    action_id=encode_action_id(ActionKind.REJECT, key)),
            _button(":pencil2: Review & Edit", value=key,
                    action_id=encode_action_id(ActionKind.REVIEW, key)),
        ],
    })

    return {"text": f"Feedback needs approval: {candidate.title}", "blocks": blocks}


def task_created(candidate: FeedbackCandidate, task_id: str, task_url: str, assignee_name: str) -> Dict[str, Any]:
    blocks = [
        _section(":white_check_mark: *Task Approved and Created in Notion*"),
        {"type": "divider"},
        _section(f"*Title:*\n{candidate.title}"),
        _section(f"*Description:*\n{candidate.description}"),
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Priority:*\n{candidate.priority.label}"},
                {"type": "mrkdwn", "text": f"*Type:*\n{candidate.category.label}"},
            ],
        },
        {
            "type": "actions",
            "elements": [
                _button(":book: View in Notion", url=task_url),
                _button(f":bust_in_silhouette: Assign to {assignee_name}", style="primary", value=task_id,
                        action_id=encode_action_id(ActionKind.ASSIGN, task_id)),
            ],
        },
    ]
    return {"text": f"Task created: {candidate.title}", "blocks": blocks}


def task_failed() -> Dict[str, Any]:
    text = ":x: Approved but failed to create Notion task. Check logs."
    return {"text": text, "blocks": [_section(":x: *Approved, but creating the Notion task failed. Check server logs.*")]}


def rejected() -> Dict[str, Any]:
    text = ":x: Feedback rejected - no task created"
    return {"text": text, "blocks": [_section(":x: *Feedback rejected - no task created in Notion*")]}


def already_resolved(status: str, title: Optional[str] = None) -> Dict[str, Any]:
    what = f" \"{title}\"" if title else ""
    text = f":information_source: Feedback{what} was already {status}; nothing changed."
    return {"text": text, "blocks": [_section(text)]}


def not_found() -> Dict[str, Any]:
    text = ":hourglass: This feedback is no longer pending (already handled or expired)."
    return {"text": text, "blocks": [_section(text)]}


def assigned(person: str) -> Dict[str, Any]:
    text = f":white_check_mark: Task assigned to {person} in Notion!"
    return {"text": text, "blocks": [_section(f":white_check_mark: *Task Assigned to {person}*")]}


def assign_failed(person: str, reason: str = "") -> Dict[str, Any]:
    detail = f" ({reason})" if reason else ""
    text = f":x: Failed to assign task to {person}{detail}. Check logs."
    return {"text": text, "blocks": [_section(f":x: *Failed to assign task to {person}.*{detail}")]}


def review_modal(candidate: FeedbackCandidate) -> Dict[str, Any]:
    """Editable title/description form; submitting it approves the candidate."""
    return {
        "type": "modal",
        "callback_id": review_callback_id(candidate.key),
        "private_metadata": candidate.key,
        "title": {"type": "plain_text", "text": "Review Feedback"},
        "submit": {"type": "plain_text", "text": "Approve"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            {
                "type": "input",
                "block_id": "title_block",
                "label": {"type": "plain_text", "text": "Title"},
                "element": {
                    "type": "plain_text_input",
                    "action_id": "title_input",
                    "initial_value": candidate.title,
                },
            },
            {
                "type": "input",
                "block_id": "description_block",
                "label": {"type": "plain_text", "text": "Description"},
                "element": {
                    "type": "plain_text_input",
                    "action_id": "description_input",
                    "multiline": True,
                    "initial_value": candidate.description,
                },
            },
        ],
    }


def review_values(view: Dict[str, Any]) -> Dict[str, str]:
    """Title/description overrides from a submitted review modal."""
    values = (view.get("state") or {}).get("values") or {}
    overrides = {}
    title = (values.get("title_block", {}).get("title_input") or {}).get("value")
    description = (values.get("description_block", {}).get("description_input") or {}).get("value")
    if title and title.strip():
        overrides["title"] = title.strip()
    if description and description.strip():
        overrides["description"] = description.strip()
    return overrides
