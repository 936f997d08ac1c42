"""
Domain Records

Immutable records persisted in the shared KV store, plus the status
vocabulary used to classify free-text item statuses.

All records are frozen dataclasses. State transitions produce NEW records
(dataclasses.replace) which callers then write back; nothing is mutated in
place.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------------------------------------------------------
# Status Vocabulary
# -----------------------------------------------------------------------------
class StatusCategory(str, Enum):
    """Status of a tracked item, resolved once at ingestion."""
    ACTIVE = "active"
    COMPLETED = "completed"
    UNKNOWN = "unknown"


# Case-insensitive SUBSTRING match. A status such as "Not Done" therefore
# resolves to COMPLETED; this mirrors the upstream data source conventions.
COMPLETED_STATUS_VOCABULARY: Tuple[str, ...] = (
    "完了",
    "Done",
    "Closed",
    "完了済み",
    "Completed",
    "Resolved",
    "終了",
    "クローズ",
)

ACTIVE_STATUS_VOCABULARY: Tuple[str, ...] = (
    "Active",
    "進行中",
    "In Progress",
    "実行中",
    # Board columns named "Doing" count as active so stagnation checks cover them.
    "Doing",
)


def _matches(status: str, vocabulary: Tuple[str, ...]) -> bool:
    lowered = status.lower()
    return any(term.lower() in lowered for term in vocabulary)


def resolve_status(status: Optional[str]) -> StatusCategory:
    """Map a free-text status to a StatusCategory. Completed wins over active."""
    if not status:
        return StatusCategory.UNKNOWN
    if _matches(status, COMPLETED_STATUS_VOCABULARY):
        return StatusCategory.COMPLETED
    if _matches(status, ACTIVE_STATUS_VOCABULARY):
        return StatusCategory.ACTIVE
    return StatusCategory.UNKNOWN


def is_completed_status(status: Optional[str]) -> bool:
    return resolve_status(status) == StatusCategory.COMPLETED


# -----------------------------------------------------------------------------
# Tracked Item
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TrackedItem:
    """
    One unit of tracked work as captured in a snapshot.

    category is derived from status at construction time and is not
    serialized; it is re-derived whenever an item is loaded.
    """
    id: str
    name: str
    status: Optional[str] = None
    size: Optional[float] = None
    category: StatusCategory = field(default=StatusCategory.UNKNOWN, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "category", resolve_status(self.status))

    @property
    def is_completed(self) -> bool:
        return self.category == StatusCategory.COMPLETED

    @property
    def is_active(self) -> bool:
        return self.category == StatusCategory.ACTIVE

    @property
    def size_or_zero(self) -> float:
        return self.size if isinstance(self.size, (int, float)) else 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "status": self.status, "size": self.size}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedItem":
        size = data.get("size")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            status=data.get("status"),
            size=size if isinstance(size, (int, float)) else None,
        )


# -----------------------------------------------------------------------------
# Check-in Thread
# -----------------------------------------------------------------------------
class ThreadStatus(str, Enum):
    PENDING = "pending"
    REPLIED = "replied"


@dataclass(frozen=True)
class ThreadState:
    """Per-assignee daily check-in thread."""
    assignee_name: str
    items: Tuple[TrackedItem, ...]
    state: str  # ThreadStatus value
    date: str  # civil date YYYY-MM-DD
    channel: str

    def __post_init__(self):
        if self.state not in [s.value for s in ThreadStatus]:
            raise ValueError(f"Invalid thread state: {self.state}")

    @property
    def is_pending(self) -> bool:
        return self.state == ThreadStatus.PENDING.value

    def mark_replied(self) -> "ThreadState":
        return replace(self, state=ThreadStatus.REPLIED.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignee_name": self.assignee_name,
            "items": [item.to_dict() for item in self.items],
            "state": self.state,
            "date": self.date,
            "channel": self.channel,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadState":
        return cls(
            assignee_name=data["assignee_name"],
            items=tuple(TrackedItem.from_dict(i) for i in data.get("items", [])),
            state=data["state"],
            date=data["date"],
            channel=data["channel"],
        )


# -----------------------------------------------------------------------------
# Report Thread
# -----------------------------------------------------------------------------
class ReportStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"


@dataclass(frozen=True)
class ReportThreadState:
    """The once-per-day report thread awaiting a decision."""
    channel: str
    message_id: str
    proposal_json: str
    state: str  # ReportStatus value

    def __post_init__(self):
        if self.state not in [s.value for s in ReportStatus]:
            raise ValueError(f"Invalid report state: {self.state}")

    @property
    def is_pending(self) -> bool:
        return self.state == ReportStatus.PENDING.value

    def matches(self, channel: str, message_id: str) -> bool:
        return self.channel == channel and self.message_id == message_id

    def mark_processed(self) -> "ReportThreadState":
        return replace(self, state=ReportStatus.PROCESSED.value)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReportThreadState":
        return cls(
            channel=data["channel"],
            message_id=data["message_id"],
            proposal_json=data["proposal_json"],
            state=data["state"],
        )


# -----------------------------------------------------------------------------
# Replies and Thread Index
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class StoredReply:
    text: str
    user_id: str
    received_at: str  # ISO format

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredReply":
        return cls(text=data["text"], user_id=data.get("user_id", ""), received_at=data["received_at"])


@dataclass(frozen=True)
class ActiveThread:
    channel: str
    message_id: str
    assignee_name: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActiveThread":
        return cls(channel=data["channel"], message_id=data["message_id"], assignee_name=data["assignee_name"])


# -----------------------------------------------------------------------------
# Pending Actions (human-approval gate)
# -----------------------------------------------------------------------------
class ActionType(str, Enum):
    """Mutations that may be proposed against the task data source."""
    UPDATE_ASSIGNEE = "update_assignee"
    UPDATE_DUE = "update_due"
    UPDATE_SIZE = "update_size"
    UPDATE_STATUS = "update_status"
    UPDATE_COLLECTION = "update_collection"
    CREATE_ITEM = "create_item"


@dataclass(frozen=True)
class ProposedAction:
    """
    One proposed mutation.

    For CREATE_ITEM, new_value is a JSON object describing the new item and
    item_id is empty. For UPDATE_COLLECTION an empty new_value means backlog.
    """
    action: str  # ActionType value
    item_id: str
    item_name: str
    new_value: str

    def __post_init__(self):
        if self.action not in [a.value for a in ActionType]:
            raise ValueError(f"Invalid action: {self.action}")

    @property
    def is_create(self) -> bool:
        return self.action == ActionType.CREATE_ITEM.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposedAction":
        return cls(
            action=data["action"],
            item_id=data.get("item_id", ""),
            item_name=data.get("item_name", ""),
            new_value=str(data.get("new_value", "")),
        )


@dataclass(frozen=True)
class PendingAction:
    """Proposed mutations awaiting approval, keyed by confirmation message."""
    actions: Tuple[ProposedAction, ...]
    requested_by: str
    requested_at: str  # ISO format
    thread_id: Optional[str] = None

    @property
    def create_actions(self) -> List[ProposedAction]:
        return [a for a in self.actions if a.is_create]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actions": [a.to_dict() for a in self.actions],
            "requested_by": self.requested_by,
            "requested_at": self.requested_at,
            "thread_id": self.thread_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingAction":
        return cls(
            actions=tuple(ProposedAction.from_dict(a) for a in data.get("actions", [])),
            requested_by=data.get("requested_by", ""),
            requested_at=data.get("requested_at", ""),
            thread_id=data.get("thread_id"),
        )


@dataclass(frozen=True)
class PendingActionRef:
    """Back-reference from a conversation thread to its live confirmation message."""
    confirmation_message_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingActionRef":
        return cls(confirmation_message_id=data["confirmation_message_id"])


# -----------------------------------------------------------------------------
# Disambiguation
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SelectionCandidate:
    id: str
    name: str


@dataclass(frozen=True)
class PendingSelection:
    """A numbered choice offered to the requester (e.g. which project)."""
    draft: Dict[str, Any]
    candidates: Tuple[SelectionCandidate, ...]
    requested_by: str
    requested_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft": self.draft,
            "candidates": [asdict(c) for c in self.candidates],
            "requested_by": self.requested_by,
            "requested_at": self.requested_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingSelection":
        return cls(
            draft=dict(data.get("draft", {})),
            candidates=tuple(SelectionCandidate(id=c["id"], name=c["name"]) for c in data.get("candidates", [])),
            requested_by=data.get("requested_by", ""),
            requested_at=data.get("requested_at", ""),
        )


# -----------------------------------------------------------------------------
# Reminder Subscriptions
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ReminderSubscription:
    user_id: str
    channel: str
    thread_id: str
    created_at: str
    last_reminded_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReminderSubscription":
        return cls(
            user_id=data["user_id"],
            channel=data["channel"],
            thread_id=data["thread_id"],
            created_at=data["created_at"],
            last_reminded_at=data["last_reminded_at"],
        )


@dataclass(frozen=True)
class ReminderDmRef:
    """Maps a reminder DM back to its subscription so a reaction can stop it."""
    user_id: str
    channel: str
    thread_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReminderDmRef":
        return cls(user_id=data["user_id"], channel=data["channel"], thread_id=data["thread_id"])


# -----------------------------------------------------------------------------
# Mention Conversation History
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MentionTurn:
    role: str  # "user" | "assistant"
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MentionTurn":
        return cls(role=data["role"], content=data["content"])
