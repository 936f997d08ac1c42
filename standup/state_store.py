"""
Workflow State Store

Typed persistence for per-conversation finite-state records over the shared
KV store:

1. Check-in threads (ThreadState) and their reply logs
2. The daily report thread (ReportThreadState)
3. The active-thread index built by the check-in flow
4. Pending actions and their thread back-references
5. Pending selections, reminder subscriptions, mention history

CONSTRAINTS:
- The store has no transactions; every read-modify-write here is last-write-wins
- Records are immutable values; callers write back new records
- Nothing here talks to the messaging gateway or the task source
"""

import json
import logging
from typing import Any, Dict, List, Optional

from .kv_store import KVStore
from .models import (
    ActiveThread,
    MentionTurn,
    PendingAction,
    PendingActionRef,
    PendingSelection,
    ReminderDmRef,
    ReminderSubscription,
    ReportThreadState,
    StoredReply,
    ThreadState,
)

logger = logging.getLogger("standup.state_store")

# -----------------------------------------------------------------------------
# TTLs
# -----------------------------------------------------------------------------
DEFAULT_TTL_SECONDS = 7 * 24 * 3600
REMINDER_TTL_SECONDS = 30 * 24 * 3600
SELECTION_TTL_SECONDS = 3600
MENTION_HISTORY_TTL_SECONDS = 24 * 3600
MAX_MENTION_HISTORY_TURNS = 10

# -----------------------------------------------------------------------------
# Key Builders
# -----------------------------------------------------------------------------
REMINDER_PREFIX = "reminder:"


def thread_key(channel: str, message_id: str) -> str:
    return f"thread:{channel}:{message_id}"


def report_thread_key(date: str) -> str:
    return f"report-thread:{date}"


def reply_key(channel: str, thread_id: str) -> str:
    return f"reply:{channel}:{thread_id}"


def active_threads_key(date: str) -> str:
    return f"active-threads:{date}"


def pending_action_key(channel: str, confirmation_message_id: str) -> str:
    return f"pending-action:{channel}:{confirmation_message_id}"


def pending_ref_key(channel: str, thread_id: str) -> str:
    return f"pending-ref:{channel}:{thread_id}"


def selection_key(channel: str, thread_id: str) -> str:
    return f"selection:{channel}:{thread_id}"


def reminder_key(user_id: str, channel: str, thread_id: str) -> str:
    return f"{REMINDER_PREFIX}{user_id}:{channel}:{thread_id}"


def reminder_dm_key(dm_channel: str, dm_message_id: str) -> str:
    return f"reminder-dm:{dm_channel}:{dm_message_id}"


def mention_history_key(channel: str, thread_id: str) -> str:
    return f"mention-history:{channel}:{thread_id}"


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class WorkflowStateStore:
    """Typed CRUD for workflow records. One instance per KV namespace."""

    def __init__(self, kv: KVStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._kv = kv
        self._ttl = ttl_seconds

    async def _get_json(self, key: str) -> Optional[Any]:
        raw = await self._kv.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def _put_json(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        await self._kv.put(key, json.dumps(value, ensure_ascii=False), ttl_seconds)

    # -------------------------------------------------------------------------
    # Check-in threads
    # -------------------------------------------------------------------------
    async def get_thread(self, channel: str, message_id: str) -> Optional[ThreadState]:
        data = await self._get_json(thread_key(channel, message_id))
        return ThreadState.from_dict(data) if data else None

    async def save_thread(self, channel: str, message_id: str, state: ThreadState) -> None:
        await self._put_json(thread_key(channel, message_id), state.to_dict(), self._ttl)

    async def get_replies(self, channel: str, thread_id: str) -> List[StoredReply]:
        data = await self._get_json(reply_key(channel, thread_id)) or []
        return [StoredReply.from_dict(r) for r in data]

    async def append_reply(self, channel: str, thread_id: str, reply: StoredReply) -> None:
        key = reply_key(channel, thread_id)
        replies = await self._get_json(key) or []
        replies.append(reply.to_dict())
        await self._put_json(key, replies, self._ttl)

    async def get_active_threads(self, date: str) -> List[ActiveThread]:
        data = await self._get_json(active_threads_key(date)) or []
        return [ActiveThread.from_dict(t) for t in data]

    async def add_active_thread(self, date: str, entry: ActiveThread) -> None:
        key = active_threads_key(date)
        threads = await self._get_json(key) or []
        threads.append(entry.to_dict())
        await self._put_json(key, threads, self._ttl)

    # -------------------------------------------------------------------------
    # Report thread
    # -------------------------------------------------------------------------
    async def get_report_thread(self, date: str) -> Optional[ReportThreadState]:
        data = await self._get_json(report_thread_key(date))
        return ReportThreadState.from_dict(data) if data else None

    async def save_report_thread(self, date: str, state: ReportThreadState) -> None:
        await self._put_json(report_thread_key(date), state.to_dict(), self._ttl)

    # -------------------------------------------------------------------------
    # Pending actions + back-references
    # -------------------------------------------------------------------------
    async def get_pending_action(self, channel: str, message_id: str) -> Optional[PendingAction]:
        data = await self._get_json(pending_action_key(channel, message_id))
        return PendingAction.from_dict(data) if data else None

    async def save_pending_action(self, channel: str, message_id: str, action: PendingAction) -> None:
        await self._put_json(pending_action_key(channel, message_id), action.to_dict(), self._ttl)

    async def delete_pending_action(self, channel: str, message_id: str) -> None:
        await self._kv.delete(pending_action_key(channel, message_id))

    async def get_pending_ref(self, channel: str, thread_id: str) -> Optional[PendingActionRef]:
        data = await self._get_json(pending_ref_key(channel, thread_id))
        return PendingActionRef.from_dict(data) if data else None

    async def save_pending_ref(self, channel: str, thread_id: str, ref: PendingActionRef) -> None:
        await self._put_json(pending_ref_key(channel, thread_id), ref.to_dict(), self._ttl)

    async def delete_pending_ref(self, channel: str, thread_id: str) -> None:
        await self._kv.delete(pending_ref_key(channel, thread_id))

    # -------------------------------------------------------------------------
    # Pending selection
    # -------------------------------------------------------------------------
    async def get_selection(self, channel: str, thread_id: str) -> Optional[PendingSelection]:
        data = await self._get_json(selection_key(channel, thread_id))
        return PendingSelection.from_dict(data) if data else None

    async def save_selection(self, channel: str, thread_id: str, selection: PendingSelection) -> None:
        await self._put_json(selection_key(channel, thread_id), selection.to_dict(), SELECTION_TTL_SECONDS)

    async def delete_selection(self, channel: str, thread_id: str) -> None:
        await self._kv.delete(selection_key(channel, thread_id))

    # -------------------------------------------------------------------------
    # Reminder subscriptions
    # -------------------------------------------------------------------------
    async def get_reminder(self, user_id: str, channel: str, thread_id: str) -> Optional[ReminderSubscription]:
        data = await self._get_json(reminder_key(user_id, channel, thread_id))
        return ReminderSubscription.from_dict(data) if data else None

    async def save_reminder(self, subscription: ReminderSubscription) -> None:
        key = reminder_key(subscription.user_id, subscription.channel, subscription.thread_id)
        await self._put_json(key, subscription.to_dict(), REMINDER_TTL_SECONDS)

    async def delete_reminder(self, user_id: str, channel: str, thread_id: str) -> None:
        await self._kv.delete(reminder_key(user_id, channel, thread_id))

    async def list_all_reminders(self) -> List[ReminderSubscription]:
        reminders: List[ReminderSubscription] = []
        for key in await self._kv.list_all(REMINDER_PREFIX):
            data = await self._get_json(key)
            if data:
                reminders.append(ReminderSubscription.from_dict(data))
        return reminders

    async def get_reminder_dm(self, dm_channel: str, dm_message_id: str) -> Optional[ReminderDmRef]:
        data = await self._get_json(reminder_dm_key(dm_channel, dm_message_id))
        return ReminderDmRef.from_dict(data) if data else None

    async def save_reminder_dm(self, dm_channel: str, dm_message_id: str, ref: ReminderDmRef) -> None:
        await self._put_json(reminder_dm_key(dm_channel, dm_message_id), ref.to_dict(), REMINDER_TTL_SECONDS)

    # -------------------------------------------------------------------------
    # Mention history
    # -------------------------------------------------------------------------
    async def get_mention_history(self, channel: str, thread_id: str) -> List[MentionTurn]:
        data = await self._get_json(mention_history_key(channel, thread_id)) or []
        return [MentionTurn.from_dict(t) for t in data]

    async def append_mention_history(
        self,
        channel: str,
        thread_id: str,
        user_message: str,
        assistant_message: str,
    ) -> None:
        """Append one user/assistant exchange, keeping only the most recent turns."""
        key = mention_history_key(channel, thread_id)
        history: List[Dict[str, Any]] = await self._get_json(key) or []
        history.append(MentionTurn(role="user", content=user_message).to_dict())
        history.append(MentionTurn(role="assistant", content=assistant_message).to_dict())
        await self._put_json(key, history[-MAX_MENTION_HISTORY_TURNS:], MENTION_HISTORY_TTL_SECONDS)
