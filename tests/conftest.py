"""
Pytest configuration for Standup Orchestrator tests.

This module provides:
1. Async test support without pytest-asyncio
2. In-memory fakes for every external collaborator
3. Common fixtures wiring the workflow components together
"""

import asyncio
import functools
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from standup.checkin import CheckinMachine
from standup.collaborators import (
    ChatMessage,
    Collection,
    Member,
    MentionInterpreter,
    MentionRequest,
    MentionResult,
    MessagingGateway,
    PostedMessage,
    ProposalAnalyzer,
    ReplyClassifier,
    SourceItem,
    TaskSource,
)
from standup.kv_store import InMemoryKVStore
from standup.models import ProposedAction, SelectionCandidate, TrackedItem
from standup.pending_actions import ActionExecutor, PendingActionService
from standup.quality_gate import ReplyQualityGate
from standup.reminders import ReminderService
from standup.report_thread import ReportThreadMachine
from standup.selection import DisambiguationService
from standup.snapshots import FlowClock, SnapshotStore
from standup.state_store import WorkflowStateStore


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------
class FakeClock:
    """Settable epoch clock for KV TTLs and signature windows."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway(MessagingGateway):
    """Records every outbound call; message ids are sequential."""

    def __init__(self):
        self.posts: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.threads: Dict[str, List[ChatMessage]] = {}
        self.history: List[ChatMessage] = []
        self.history_error: Optional[Exception] = None
        self.dm_channels: Dict[str, Optional[str]] = {}
        self.fetch_error: Optional[Exception] = None
        self._counter = 0

    async def post_message(self, channel, text, thread_id=None, blocks=None) -> PostedMessage:
        self._counter += 1
        message_id = f"1700000000.{self._counter:06d}"
        self.posts.append({
            "channel": channel,
            "text": text,
            "thread_id": thread_id,
            "blocks": blocks,
            "message_id": message_id,
        })
        return PostedMessage(channel=channel, message_id=message_id)

    async def update_message(self, channel, message_id, text, blocks=None) -> None:
        self.updates.append({"channel": channel, "message_id": message_id, "text": text, "blocks": blocks})

    async def open_direct_conversation(self, user_id: str) -> Optional[str]:
        return self.dm_channels.get(user_id, f"D{user_id}")

    async def fetch_thread(self, channel, thread_id, limit=100) -> List[ChatMessage]:
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.threads.get(thread_id, [])[:limit]

    async def fetch_channel_history(self, channel, limit=50) -> List[ChatMessage]:
        if self.history_error is not None:
            raise self.history_error
        return self.history[:limit]

    def texts(self) -> List[str]:
        return [p["text"] for p in self.posts]

    def last_post(self) -> Dict[str, Any]:
        return self.posts[-1]


class FakeTaskSource(TaskSource):

    def __init__(self, items: Optional[List[SourceItem]] = None, collection: Optional[Collection] = None):
        self.collection = collection or Collection(
            id="coll-1",
            name="Sprint 42",
            start_date="2026-10-12",
            end_date="2026-10-25",
            planned_size=40.0,
            completed_size=10.0,
        )
        self.items = items or []
        self.collections: List[Collection] = [self.collection]
        self.members: List[Member] = []
        self.directory: Dict[str, str] = {}
        self.parents: List[SelectionCandidate] = []
        self.updates: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.moves: List[tuple] = []
        self.fail_on: set = set()
        self.directory_loads = 0

    async def current_collection(self) -> Collection:
        return self.collection

    async def list_items(self, collection_id: str) -> List[SourceItem]:
        return list(self.items)

    async def update_field(self, item_id, field_name, value) -> None:
        if item_id in self.fail_on:
            raise RuntimeError(f"update rejected for {item_id}")
        self.updates.append((item_id, field_name, value))

    async def create_item(self, fields: Dict[str, Any]) -> str:
        self.created.append(dict(fields))
        return f"new-{len(self.created)}"

    async def move_to_collection(self, item_id, collection_id) -> None:
        self.moves.append((item_id, collection_id))

    async def list_collections(self) -> List[Collection]:
        return list(self.collections)

    async def list_members(self) -> List[Member]:
        return list(self.members)

    async def user_directory(self) -> Dict[str, str]:
        self.directory_loads += 1
        return dict(self.directory)

    async def search_parents(self, name: str) -> List[SelectionCandidate]:
        return [p for p in self.parents if name in p.name]


class FakeClassifier(ReplyClassifier):

    def __init__(self, verdict: bool = True, error: Optional[Exception] = None):
        self.verdict = verdict
        self.error = error
        self.calls: List[str] = []

    async def is_sufficient(self, text: str, subject_name: str, known_items: Sequence[TrackedItem]) -> bool:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.verdict


class FakeAnalyzer(ProposalAnalyzer):

    def __init__(self, actions: Optional[List[ProposedAction]] = None):
        self.actions = actions or []
        self.contexts: List[Dict[str, Any]] = []
        self.interpretations: List[str] = []

    async def propose_allocation(self, context: Dict[str, Any]) -> Dict[str, Any]:
        self.contexts.append(context)
        return {"summary": "Move 2 points from A to B", "moves": []}

    async def interpret_reply(self, proposal: Dict[str, Any], text: str) -> List[ProposedAction]:
        self.interpretations.append(text)
        return list(self.actions)


class FakeInterpreter(MentionInterpreter):

    def __init__(self, result: Optional[MentionResult] = None):
        self.result = result or MentionResult(intent="query", response_text="All good.")
        self.requests: List[MentionRequest] = []

    async def interpret(self, request: MentionRequest) -> MentionResult:
        self.requests.append(request)
        return self.result


def status_action(item_id: str = "item-1", value: str = "Done") -> ProposedAction:
    return ProposedAction(action="update_status", item_id=item_id, item_name=f"Item {item_id}", new_value=value)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return InMemoryKVStore(clock=clock)


@pytest.fixture
def store(kv):
    return WorkflowStateStore(kv)


@pytest.fixture
def snapshots(kv):
    return SnapshotStore(kv)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def source():
    return FakeTaskSource(items=[
        SourceItem(id="item-1", name="Login page", status="In Progress", size=3.0, assignee="Alice"),
        SourceItem(id="item-2", name="Signup API", status="Todo", size=5.0, assignee="Bob"),
        SourceItem(id="item-3", name="Release notes", status="Done", size=1.0, assignee="Alice"),
    ])


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def analyzer():
    return FakeAnalyzer(actions=[status_action()])


@pytest.fixture
def interpreter():
    return FakeInterpreter()


@pytest.fixture
def executor(source):
    return ActionExecutor(source)


@pytest.fixture
def pending(store, gateway, executor):
    return PendingActionService(store, gateway, executor, notify_channel="C-NOTIFY")


@pytest.fixture
def checkin(store, gateway, classifier):
    return CheckinMachine(store, gateway, ReplyQualityGate(classifier))


@pytest.fixture
def report(store, gateway, analyzer, pending, executor):
    return ReportThreadMachine(store, gateway, analyzer, pending, executor)


@pytest.fixture
def selection(store, gateway, pending):
    return DisambiguationService(store, gateway, pending)


@pytest.fixture
def reminders(store, gateway):
    return ReminderService(store, gateway)


@pytest.fixture
def flow_clock():
    # 2026-10-18 09:00 at UTC+9
    return FlowClock.capture(9, datetime(2026, 10, 18, 0, 0, tzinfo=timezone.utc))
