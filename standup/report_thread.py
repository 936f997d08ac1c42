"""
Report-Thread State Machine

    pending --(free-text reply | explicit approval)--> processed

One report thread is opened per civil day. Exactly one decision may move it
to processed; every later signal is a no-op, decided by re-reading the record
(the record is kept for audit, never deleted).

- Free-text reply: analyzer -> proposed actions -> approval gate
  (PendingAction + back-reference to the report thread).
- Explicit approval (reaction or button): the analyzer receives a canned
  "approve all" instruction, and its actions are executed directly.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from .collaborators import LookupCache, MessagingGateway, PostedMessage, ProposalAnalyzer
from .models import ReportStatus, ReportThreadState
from .pending_actions import (
    ActionExecutor,
    ActionResult,
    PendingActionService,
    summarize_results,
    text_section,
)
from .state_store import WorkflowStateStore

logger = logging.getLogger("standup.report_thread")

APPROVE_ALL_TEXT = "Approve all proposals"
REPORT_APPROVE_ACTION_ID = "report_approve"
NO_ACTIONS_TEXT = "I couldn't find any concrete changes in that reply. Could you be more specific?"


def build_report_blocks(text: str) -> List[Dict[str, Any]]:
    return [
        text_section(text),
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "OK", "emoji": True},
                    "style": "primary",
                    "action_id": REPORT_APPROVE_ACTION_ID,
                }
            ],
        },
    ]


class ReportThreadMachine:

    def __init__(
        self,
        store: WorkflowStateStore,
        gateway: MessagingGateway,
        analyzer: ProposalAnalyzer,
        pending: PendingActionService,
        executor: ActionExecutor,
    ):
        self._store = store
        self._gateway = gateway
        self._analyzer = analyzer
        self._pending = pending
        self._executor = executor
        self._locks: Dict[str, asyncio.Lock] = {}

    async def open_report(self, date: str, channel: str, proposal: Dict[str, Any], text: str) -> PostedMessage:
        posted = await self._gateway.post_message(channel, text, blocks=build_report_blocks(text))
        state = ReportThreadState(
            channel=posted.channel,
            message_id=posted.message_id,
            proposal_json=json.dumps(proposal, ensure_ascii=False),
            state=ReportStatus.PENDING.value,
        )
        await self._store.save_report_thread(date, state)
        logger.info(f"REPORT OPENED: date={date} | channel={posted.channel} | message_id={posted.message_id}")
        return posted

    def _lock_for(self, date: str) -> asyncio.Lock:
        return self._locks.setdefault(date, asyncio.Lock())

    def _release_lock(self, date: str) -> None:
        lock = self._locks.get(date)
        if lock is not None and not lock.locked():
            del self._locks[date]

    async def _pending_record(self, date: str, channel: str, message_id: str) -> Optional[ReportThreadState]:
        state = await self._store.get_report_thread(date)
        if state is None or not state.is_pending or not state.matches(channel, message_id):
            return None
        return state

    async def handle_reply(self, date: str, channel: str, thread_id: str, text: str, user_id: str) -> bool:
        """
        Interpret a free-text reply in today's report thread.

        Returns:
            True when the reply belonged to the pending report thread
        """
        try:
            async with self._lock_for(date):
                state = await self._pending_record(date, channel, thread_id)
                if state is None:
                    return False

                actions = await self._analyzer.interpret_reply(json.loads(state.proposal_json), text)
                await self._store.save_report_thread(date, state.mark_processed())
        finally:
            self._release_lock(date)

        if actions:
            await self._pending.propose(channel, thread_id, actions, user_id)
        else:
            await self._gateway.post_message(channel, NO_ACTIONS_TEXT, thread_id=thread_id)
        logger.info(f"REPORT PROCESSED: via reply | date={date} | actions={len(actions)}")
        return True

    async def approve(
        self,
        date: str,
        channel: str,
        message_id: str,
        user_id: str,
        cache: Optional[LookupCache] = None,
        original_text: Optional[str] = None,
    ) -> Optional[List[ActionResult]]:
        """
        Explicit approval of the whole proposal.

        Returns:
            Per-action results, or None when the record is absent, already
            processed, or belongs to another message
        """
        try:
            async with self._lock_for(date):
                state = await self._pending_record(date, channel, message_id)
                if state is None:
                    logger.info(f"REPORT APPROVE NO-OP: date={date} | channel={channel} | message_id={message_id}")
                    return None

                actions = await self._analyzer.interpret_reply(json.loads(state.proposal_json), APPROVE_ALL_TEXT)
                await self._store.save_report_thread(date, state.mark_processed())
        finally:
            self._release_lock(date)

        results = await self._executor.execute(actions, cache)
        summary = summarize_results(results)
        if original_text is not None:
            await self._gateway.update_message(
                channel,
                message_id,
                f"{original_text}\n\n{summary}",
                blocks=[text_section(original_text), text_section(f"<@{user_id}> approved\n\n{summary}")],
            )
        else:
            await self._gateway.post_message(channel, summary, thread_id=message_id)
        await self._pending.notify_completion(results)

        logger.info(f"REPORT PROCESSED: via approval | date={date} | by={user_id} | actions={len(actions)}")
        return results
