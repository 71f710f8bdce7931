"""
Button action tokens.

Every interactive element the bot posts carries its own routing data, so a
click can be dispatched without looking anything up:

    action_id = "<kind>_<target>"     e.g. "approve_msg_111_222"
    value     = "<target>"

`target` is the candidate key for approve/reject/review and the created
task's external id for assign.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ActionKind(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REVIEW = "review"
    ASSIGN = "assign"


# Older prompts used "assign_john_<page id>"
_LEGACY_PREFIXES = {"assign_john_": ActionKind.ASSIGN}

REVIEW_CALLBACK_PREFIX = "review_modal_"


class ActionParseError(ValueError):
    """Raised for action ids the bot did not issue."""


@dataclass
class ParsedAction:
    kind: ActionKind
    target: str  # candidate key, or task id for ASSIGN


def encode_action_id(kind: ActionKind, target: str) -> str:
    return f"{kind.value}_{target}"


def parse_action_id(action_id: str, value: Optional[str] = None) -> ParsedAction:
    """
    Decode a clicked action.

    The button value wins when present; otherwise the target is taken from
    the action id suffix.

    Raises:
        ActionParseError: if the prefix is unknown or no target is present
    """
    action_id = action_id or ""

    kind = None
    suffix = ""
    for prefix, legacy_kind in _LEGACY_PREFIXES.items():
        if action_id.startswith(prefix):
            kind, suffix = legacy_kind, action_id[len(prefix):]
            break
    if kind is None:
        for candidate in ActionKind:
            prefix = f"{candidate.value}_"
            if action_id.startswith(prefix):
                kind, suffix = candidate, action_id[len(prefix):]
                break
    if kind is None:
        raise ActionParseError(f"Unknown action id: {action_id!r}")

    target = (value or "").strip() or suffix
    if not target:
        raise ActionParseError(f"Action {action_id!r} carries no target")
    return ParsedAction(kind=kind, target=target)


def parse_block_action(action: Dict[str, Any]) -> ParsedAction:
    """Decode one element of a block_actions payload's ``actions`` list."""
    return parse_action_id(action.get("action_id", ""), action.get("value"))


def review_callback_id(key: str) -> str:
    return f"{REVIEW_CALLBACK_PREFIX}{key}"


def parse_review_callback_id(callback_id: str) -> Optional[str]:
    """Candidate key from a review modal's callback id, or None."""
    if callback_id and callback_id.startswith(REVIEW_CALLBACK_PREFIX):
        return callback_id[len(REVIEW_CALLBACK_PREFIX):] or None
    return None
