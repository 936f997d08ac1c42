"""
External Collaborator Contracts

Interfaces for everything the orchestrator talks to but does not own:

1. MessagingGateway  - chat platform (post, update, DM, history)
2. TaskSource        - task data source (items, collections, members)
3. ReplyClassifier   - judges whether a check-in reply is specific enough
4. ProposalAnalyzer  - builds and interprets reallocation proposals
5. MentionInterpreter - turns a free-form request into an intent

Implementations live outside this package except for the Slack gateway
(slack_gateway.py). Tests use in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .models import MentionTurn, ProposedAction, SelectionCandidate, TrackedItem


# -----------------------------------------------------------------------------
# Messaging Gateway
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PostedMessage:
    """Stable (channel, message_id) pair usable as a store key."""
    channel: str
    message_id: str


@dataclass(frozen=True)
class ChatMessage:
    user: str
    text: str
    message_id: str
    thread_id: Optional[str] = None
    reply_count: int = 0


class MessagingGateway(ABC):
    """Outbound chat calls. Implementations retry via with_retry."""

    @abstractmethod
    async def post_message(
        self,
        channel: str,
        text: str,
        thread_id: Optional[str] = None,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> PostedMessage:
        ...

    @abstractmethod
    async def update_message(
        self,
        channel: str,
        message_id: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        ...

    @abstractmethod
    async def open_direct_conversation(self, user_id: str) -> Optional[str]:
        """Return the DM channel id, or None when it cannot be opened."""

    @abstractmethod
    async def fetch_thread(self, channel: str, thread_id: str, limit: int = 100) -> List[ChatMessage]:
        ...

    @abstractmethod
    async def fetch_channel_history(self, channel: str, limit: int = 50) -> List[ChatMessage]:
        ...


# -----------------------------------------------------------------------------
# Task Source
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Collection:
    """A time-boxed group of items (e.g. a sprint)."""
    id: str
    name: str
    start_date: str
    end_date: str
    planned_size: Optional[float] = None
    completed_size: Optional[float] = None

    @property
    def remaining_size(self) -> Optional[float]:
        if self.planned_size is None or self.completed_size is None:
            return None
        return self.planned_size - self.completed_size


@dataclass(frozen=True)
class SourceItem:
    id: str
    name: str
    status: Optional[str] = None
    size: Optional[float] = None
    assignee: Optional[str] = None

    def to_tracked(self) -> TrackedItem:
        return TrackedItem(id=self.id, name=self.name, status=self.status, size=self.size)


@dataclass(frozen=True)
class Member:
    name: str
    chat_user_id: Optional[str] = None


class TaskSource(ABC):
    """Task data source. update/create/move raise on failure."""

    @abstractmethod
    async def current_collection(self) -> Collection:
        ...

    @abstractmethod
    async def list_items(self, collection_id: str) -> List[SourceItem]:
        ...

    @abstractmethod
    async def update_field(self, item_id: str, field_name: str, value: Any) -> None:
        ...

    @abstractmethod
    async def create_item(self, fields: Dict[str, Any]) -> str:
        """Create an item and return its id."""

    @abstractmethod
    async def move_to_collection(self, item_id: str, collection_id: Optional[str]) -> None:
        """collection_id=None moves the item to the backlog."""

    async def list_collections(self) -> List[Collection]:
        return []

    async def list_members(self) -> List[Member]:
        return []

    async def user_directory(self) -> Dict[str, str]:
        """Display name -> task-source user id."""
        return {}

    async def search_parents(self, name: str) -> List[SelectionCandidate]:
        """Parent records (e.g. projects) matching a free-text name."""
        return []


# -----------------------------------------------------------------------------
# Classifier / Generator
# -----------------------------------------------------------------------------
class ReplyClassifier(ABC):
    @abstractmethod
    async def is_sufficient(self, text: str, subject_name: str, known_items: Sequence[TrackedItem]) -> bool:
        """Raises after the classifier's own retry budget is exhausted."""


class ProposalAnalyzer(ABC):
    @abstractmethod
    async def propose_allocation(self, context: Dict[str, Any]) -> Dict[str, Any]:
        """Build a reallocation proposal. Must contain a "summary" text field."""

    @abstractmethod
    async def interpret_reply(self, proposal: Dict[str, Any], text: str) -> List[ProposedAction]:
        """Turn a free-text decision about a proposal into concrete actions."""


class MentionIntent(str, Enum):
    QUERY = "query"
    UPDATE = "update"
    CREATE_ITEM = "create_item"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MentionRequest:
    text: str
    requester_name: Optional[str]
    items: List[SourceItem]
    context: Dict[str, Any]
    history: List[MentionTurn] = field(default_factory=list)
    pending_actions: List[ProposedAction] = field(default_factory=list)
    thread_messages: List[ChatMessage] = field(default_factory=list)
    channel_context: List[ChatMessage] = field(default_factory=list)


@dataclass(frozen=True)
class MentionResult:
    intent: str  # MentionIntent value
    response_text: str
    actions: List[ProposedAction] = field(default_factory=list)
    new_items: List[Dict[str, Any]] = field(default_factory=list)


class MentionInterpreter(ABC):
    @abstractmethod
    async def interpret(self, request: MentionRequest) -> MentionResult:
        ...


# -----------------------------------------------------------------------------
# Request-scoped Lookup Cache
# -----------------------------------------------------------------------------
class LookupCache:
    """
    Memoizes lookups (name -> id maps, member lists) for ONE flow or request.

    Create a new instance per invocation and pass it down the call chain.
    """

    def __init__(self):
        self._values: Dict[str, Any] = {}

    async def get_or_load(self, name: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        if name not in self._values:
            self._values[name] = await loader()
        return self._values[name]
