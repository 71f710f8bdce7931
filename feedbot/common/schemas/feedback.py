"""
Feedback Candidate Schema

A candidate is one piece of customer feedback detected in a chat message,
carried from detection through human approval to task creation.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum


# ============================================================================
# Enums
# ============================================================================

class Category(str, Enum):
    """Feedback category, mapped to the backlog's Area property"""
    BUG = "bug"
    FEATURE_REQUEST = "feature_request"
    ENHANCEMENT = "enhancement"
    COMPLAINT = "complaint"
    PRAISE = "praise"
    OTHER = "other"

    @property
    def label(self) -> str:
        """Backlog select label ("Feature_request" style, first letter capitalised)"""
        return self.value[:1].upper() + self.value[1:].lower()


class Priority(str, Enum):
    """Task priority"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def label(self) -> str:
        """Backlog select label, e.g. "High Priority" """
        return f"{self.value.capitalize()} Priority"


class CandidateStatus(str, Enum):
    """Approval lifecycle state"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def normalize_category(value: Any) -> Category:
    """Map free-form model output onto a Category; unknown values become OTHER."""
    if isinstance(value, Category):
        return value
    text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Category(text)
    except ValueError:
        return Category.OTHER


def normalize_priority(value: Any) -> Priority:
    """Accept "High Priority", "high", "HIGH" etc.; unknown values become MEDIUM."""
    if isinstance(value, Priority):
        return value
    text = str(value or "").strip().lower()
    if text.endswith("priority"):
        text = text[: -len("priority")].strip()
    try:
        return Priority(text)
    except ValueError:
        return Priority.MEDIUM


def candidate_key(message_ts: str) -> str:
    """Derive the candidate key from a Slack message timestamp.

    Slack timestamps are unique per channel, so "111.222" -> "msg_111_222".
    """
    return f"msg_{message_ts.replace('.', '_')}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Models
# ============================================================================

class SourceRef(BaseModel):
    """Where a candidate came from"""
    channel: str
    message_ts: str
    permalink: Optional[str] = None
    reporter: Optional[str] = None


class FeedbackJudgment(BaseModel):
    """Structured verdict returned by the feedback extractor"""
    is_feedback: bool = False
    category: Category = Category.OTHER
    title: str = ""
    description: str = ""
    priority: Priority = Priority.MEDIUM
    confidence: int = Field(default=0, ge=0, le=100)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return normalize_category(v)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, v):
        return normalize_priority(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        try:
            return max(0, min(100, int(float(v))))
        except (TypeError, ValueError):
            return 0

    def is_actionable(self, threshold: int = 60) -> bool:
        return self.is_feedback and self.confidence >= threshold


class FeedbackCandidate(BaseModel):
    """A feedback item awaiting or having received an approval decision"""
    key: str
    category: Category = Category.OTHER
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    confidence: int = Field(default=0, ge=0, le=100)
    source: SourceRef
    message_snippet: str = ""
    due_date: Optional[str] = None  # YYYY-MM-DD

    status: CandidateStatus = CandidateStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return normalize_category(v)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, v):
        return normalize_priority(v)

    @property
    def is_resolved(self) -> bool:
        return self.status != CandidateStatus.PENDING


# Fields a reviewer may change when approving
EDITABLE_FIELDS = ("title", "description", "priority", "category", "due_date")


class TaskPayload(BaseModel):
    """What the task sink needs to create a backlog entry"""
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    category: Category = Category.OTHER
    message_link: Optional[str] = None
    due_date: Optional[str] = None

    @classmethod
    def from_candidate(cls, candidate: FeedbackCandidate) -> "TaskPayload":
        return cls(
            title=candidate.title,
            description=candidate.description,
            priority=candidate.priority,
            category=candidate.category,
            message_link=candidate.source.permalink,
            due_date=candidate.due_date,
        )
