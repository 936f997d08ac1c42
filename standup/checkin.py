"""
Assignee Check-in State Machine

    pending --(reply accepted by quality gate)--> replied

- An insufficient reply leaves the thread pending and is NOT logged, so the
  reminder flow keeps firing for it.
- Once replied, further messages are still shown to the quality gate; a
  substantive one is appended to the log but the state never changes again.
- End-of-day quick-reply buttons close a pending thread with a canned reply.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .collaborators import MessagingGateway, PostedMessage
from .models import ActiveThread, StoredReply, ThreadState, ThreadStatus, TrackedItem, utc_now_iso
from .quality_gate import ReplyQualityGate
from .state_store import WorkflowStateStore

logger = logging.getLogger("standup.checkin")

# -----------------------------------------------------------------------------
# Acknowledgement texts
# -----------------------------------------------------------------------------
ACCEPTED_TEXT = "Got it, thanks! Let's make today count :muscle:"
ASK_FOR_MORE_TEXT = "Could you be a little more specific?"
EXTRA_INFO_TEXT = "Thanks for the extra detail, I'll take it into account :+1:"
CASUAL_TEXT = "Thanks! Good luck today :blush:"

QUICK_REPLY_TEXTS: Dict[str, str] = {
    "eod_updated": "Item statuses are already up to date.",
    "eod_in_progress": "Still working on it, will update later.",
    "eod_no_progress": "No progress today.",
}
QUICK_REPLY_FALLBACK_TEXT = "Answered"


class CheckinOutcome(str, Enum):
    ACCEPTED = "accepted"
    NEEDS_DETAIL = "needs_detail"
    ADDITIONAL_INFO = "additional_info"
    CASUAL = "casual"


def build_quick_reply_blocks(text: str) -> List[Dict[str, Any]]:
    """Message blocks for a check-in with end-of-day quick-reply buttons."""
    buttons = [
        ("eod_updated", "Updated"),
        ("eod_in_progress", "In progress"),
        ("eod_no_progress", "No progress today"),
    ]
    return [
        {"type": "section", "text": {"type": "mrkdwn", "text": text}},
        {
            "type": "actions",
            "block_id": "eod_reminder_buttons",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": label, "emoji": True},
                    "action_id": action_id,
                }
                for action_id, label in buttons
            ],
        },
    ]


class CheckinMachine:

    def __init__(self, store: WorkflowStateStore, gateway: MessagingGateway, gate: ReplyQualityGate):
        self._store = store
        self._gateway = gateway
        self._gate = gate

    async def open_thread(
        self,
        channel: str,
        assignee_name: str,
        items: Sequence[TrackedItem],
        date: str,
        text: str,
    ) -> PostedMessage:
        """Post the check-in, then record it as pending and index it for the day."""
        posted = await self._gateway.post_message(channel, text)
        state = ThreadState(
            assignee_name=assignee_name,
            items=tuple(items),
            state=ThreadStatus.PENDING.value,
            date=date,
            channel=posted.channel,
        )
        await self._store.save_thread(posted.channel, posted.message_id, state)
        await self._store.add_active_thread(
            date,
            ActiveThread(channel=posted.channel, message_id=posted.message_id, assignee_name=assignee_name),
        )
        logger.info(f"CHECKIN OPENED: assignee={assignee_name} | channel={posted.channel} | message_id={posted.message_id}")
        return posted

    async def handle_reply(
        self,
        channel: str,
        thread_id: str,
        text: str,
        user_id: str,
    ) -> Optional[CheckinOutcome]:
        """
        Process a message posted in a check-in thread.

        Returns:
            The outcome, or None when the thread is not a check-in thread
        """
        state = await self._store.get_thread(channel, thread_id)
        if state is None:
            return None

        if not state.is_pending:
            substantive = await self._gate.is_sufficient(text, state.assignee_name, state.items, settled=True)
            if substantive:
                await self._store.append_reply(channel, thread_id, StoredReply(text=text, user_id=user_id, received_at=utc_now_iso()))
                await self._gateway.post_message(channel, EXTRA_INFO_TEXT, thread_id=thread_id)
                logger.info(f"CHECKIN: additional info | assignee={state.assignee_name} | thread={thread_id}")
                return CheckinOutcome.ADDITIONAL_INFO
            await self._gateway.post_message(channel, CASUAL_TEXT, thread_id=thread_id)
            return CheckinOutcome.CASUAL

        sufficient = await self._gate.is_sufficient(text, state.assignee_name, state.items, settled=False)
        if not sufficient:
            await self._gateway.post_message(channel, ASK_FOR_MORE_TEXT, thread_id=thread_id)
            logger.info(f"CHECKIN: insufficient reply | assignee={state.assignee_name} | thread={thread_id}")
            return CheckinOutcome.NEEDS_DETAIL

        await self._store.append_reply(channel, thread_id, StoredReply(text=text, user_id=user_id, received_at=utc_now_iso()))
        await self._store.save_thread(channel, thread_id, state.mark_replied())
        await self._gateway.post_message(channel, ACCEPTED_TEXT, thread_id=thread_id)
        logger.info(f"CHECKIN: replied | assignee={state.assignee_name} | thread={thread_id}")
        return CheckinOutcome.ACCEPTED

    async def handle_quick_reply(
        self,
        channel: str,
        message_id: str,
        thread_id: str,
        action_id: str,
        user_id: str,
        original_text: str,
    ) -> str:
        """Record an end-of-day button answer. Only a pending thread transitions."""
        response_text = QUICK_REPLY_TEXTS.get(action_id, QUICK_REPLY_FALLBACK_TEXT)
        await self._gateway.update_message(
            channel,
            message_id,
            f"{original_text}\n\n<@{user_id}>: {response_text}",
            blocks=[{"type": "section", "text": {"type": "mrkdwn", "text": f"<@{user_id}>: {response_text}"}}],
        )

        state = await self._store.get_thread(channel, thread_id)
        if state is not None and state.is_pending:
            await self._store.save_thread(channel, thread_id, state.mark_replied())
            await self._store.append_reply(channel, thread_id, StoredReply(text=response_text, user_id=user_id, received_at=utc_now_iso()))
        logger.info(f"CHECKIN: quick reply | action_id={action_id} | user={user_id}")
        return response_text

    async def pending_threads(self, date: str) -> List[Tuple[ActiveThread, ThreadState]]:
        """Today's check-in threads still waiting for an accepted reply."""
        pending = []
        for entry in await self._store.get_active_threads(date):
            state = await self._store.get_thread(entry.channel, entry.message_id)
            if state is not None and state.is_pending:
                pending.append((entry, state))
        return pending
