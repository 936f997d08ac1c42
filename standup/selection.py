"""
Disambiguation Replies

When a new item's parent (e.g. project) name matches several records, the
requester is offered a numbered list. Their next reply in the thread is
either a number (pick), a cancel word, or gets re-prompted. Only the original
requester can answer. Selections expire after one hour.
"""

import json
import logging
import re
from typing import Any, Dict, Sequence

from .collaborators import MessagingGateway
from .models import ActionType, PendingSelection, ProposedAction, SelectionCandidate, utc_now_iso
from .pending_actions import PendingActionService
from .state_store import WorkflowStateStore

logger = logging.getLogger("standup.selection")

CANCEL_WORDS = ("cancel", "キャンセル", "やめる", "中止")
MENTION_TOKEN_PATTERN = re.compile(r"<@[A-Z0-9]+>")
NUMBER_PATTERN = re.compile(r"^\d+$")


def strip_mentions(text: str) -> str:
    return MENTION_TOKEN_PATTERN.sub("", text or "").strip()


def is_cancel(text: str) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in CANCEL_WORDS)


def looks_like_selection(text: str) -> bool:
    """A bare number or a cancel word."""
    return bool(NUMBER_PATTERN.match(text)) or text.lower() in CANCEL_WORDS


class DisambiguationService:

    def __init__(self, store: WorkflowStateStore, gateway: MessagingGateway, pending: PendingActionService):
        self._store = store
        self._gateway = gateway
        self._pending = pending

    async def offer(
        self,
        channel: str,
        thread_id: str,
        draft: Dict[str, Any],
        candidates: Sequence[SelectionCandidate],
        requested_by: str,
    ) -> None:
        lines = [f"{i}. {c.name}" for i, c in enumerate(candidates, start=1)]
        text = (
            f"<@{requested_by}> Several matches for \"{draft.get('parent', '')}\". Reply with a number:\n"
            + "\n".join(lines)
        )
        await self._gateway.post_message(channel, text, thread_id=thread_id)
        await self._store.save_selection(
            channel,
            thread_id,
            PendingSelection(
                draft=dict(draft),
                candidates=tuple(candidates),
                requested_by=requested_by,
                requested_at=utc_now_iso(),
            ),
        )
        logger.info(f"SELECTION OFFERED: channel={channel} | thread={thread_id} | candidates={len(candidates)}")

    async def handle_reply(self, channel: str, thread_id: str, text: str, user_id: str) -> bool:
        """
        Returns:
            True when the message was consumed as a selection answer
        """
        selection = await self._store.get_selection(channel, thread_id)
        if selection is None or selection.requested_by != user_id:
            return False

        answer = strip_mentions(text)
        if is_cancel(answer):
            await self._store.delete_selection(channel, thread_id)
            await self._gateway.post_message(channel, f"<@{user_id}> Cancelled.", thread_id=thread_id)
            logger.info(f"SELECTION CANCELLED: channel={channel} | thread={thread_id}")
            return True

        count = len(selection.candidates)
        choice = int(answer) if NUMBER_PATTERN.match(answer) else 0
        if choice < 1 or choice > count:
            await self._gateway.post_message(
                channel,
                f"<@{user_id}> Please reply with a number from 1 to {count} (or \"cancel\").",
                thread_id=thread_id,
            )
            return True

        selected = selection.candidates[choice - 1]
        await self._store.delete_selection(channel, thread_id)

        fields = dict(selection.draft)
        fields["parent_ids"] = [selected.id]
        fields["parent"] = selected.name
        action = ProposedAction(
            action=ActionType.CREATE_ITEM.value,
            item_id="",
            item_name=fields.get("name", ""),
            new_value=json.dumps(fields, ensure_ascii=False),
        )
        await self._pending.supersede(channel, thread_id, [action], user_id)
        logger.info(f"SELECTION RESOLVED: channel={channel} | thread={thread_id} | parent={selected.id}")
        return True
