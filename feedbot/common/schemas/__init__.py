"""
Feedbot Schemas

Feedback candidates and the payloads exchanged with the task sink.
"""

from .feedback import (
    Category,
    Priority,
    CandidateStatus,
    SourceRef,
    FeedbackJudgment,
    FeedbackCandidate,
    TaskPayload,
    EDITABLE_FIELDS,
    candidate_key,
    normalize_category,
    normalize_priority,
)

__all__ = [
    "Category",
    "Priority",
    "CandidateStatus",
    "SourceRef",
    "FeedbackJudgment",
    "FeedbackCandidate",
    "TaskPayload",
    "EDITABLE_FIELDS",
    "candidate_key",
    "normalize_category",
    "normalize_priority",
]
