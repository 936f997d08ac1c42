"""
Direct-Mention Handler

Handles requests addressed to the orchestrator (and thread messages that
modify a live proposal). Context is gathered concurrently and best-effort,
the interpreter decides the intent, and any resulting mutation goes through
the approval gate. A proposal made in a thread that already has one
supersedes it (old pair deleted first).
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional

from .collaborators import (
    ChatMessage,
    Collection,
    LookupCache,
    Member,
    MentionInterpreter,
    MentionIntent,
    MentionRequest,
    MessagingGateway,
    TaskSource,
)
from .models import ActionType, MentionTurn, ProposedAction, StoredReply, utc_now_iso
from .pending_actions import PendingActionService
from .retry import best_effort
from .selection import DisambiguationService, looks_like_selection, strip_mentions
from .snapshots import FlowClock, SnapshotStore, collect_analytics
from .state_store import WorkflowStateStore

logger = logging.getLogger("standup.mention")

HELP_TEXT = "How can I help? Ask me about item status or request an update."
MAX_THREAD_CONTEXT_MESSAGES = 20
MAX_THREAD_MESSAGE_CHARS = 500
CHANNEL_CONTEXT_LIMIT = 50
CHANNEL_CONTEXT_MAX_THREADS = 5
CHANNEL_CONTEXT_THREAD_REPLIES = 10
MENTION_ID_PATTERN = re.compile(r"<@([A-Z0-9]+)>")

MEMBERS_CACHE_KEY = "members"
COLLECTIONS_CACHE_KEY = "collections"


def _match_name(candidates: List[Collection], name: str) -> Optional[Collection]:
    for c in candidates:
        if c.name == name:
            return c
    for c in candidates:
        if name in c.name or c.name in name:
            return c
    return None


class MentionHandler:

    def __init__(
        self,
        store: WorkflowStateStore,
        gateway: MessagingGateway,
        source: TaskSource,
        interpreter: MentionInterpreter,
        pending: PendingActionService,
        selection: DisambiguationService,
        snapshots: SnapshotStore,
    ):
        self._store = store
        self._gateway = gateway
        self._source = source
        self._interpreter = interpreter
        self._pending = pending
        self._selection = selection
        self._snapshots = snapshots

    async def handle(
        self,
        channel: str,
        thread_id: str,
        text: str,
        user_id: str,
        clock: FlowClock,
        cache: LookupCache,
        in_thread: bool = True,
    ) -> None:
        user_text = strip_mentions(text)
        mention = f"<@{user_id}> " if user_id else ""

        if not user_text:
            await self._gateway.post_message(channel, mention + HELP_TEXT, thread_id=thread_id)
            return

        if looks_like_selection(user_text):
            if await self._selection.handle_reply(channel, thread_id, user_text, user_id):
                return

        try:
            await self._interpret_and_act(channel, thread_id, user_text, user_id, clock, cache, in_thread)
        except Exception as e:
            logger.error(f"MENTION FAILED: channel={channel} | thread={thread_id} | error={e}", exc_info=True)
            await self._gateway.post_message(channel, f"{mention}Something went wrong: {e}", thread_id=thread_id)

    async def _interpret_and_act(
        self,
        channel: str,
        thread_id: str,
        user_text: str,
        user_id: str,
        clock: FlowClock,
        cache: LookupCache,
        in_thread: bool,
    ) -> None:
        mention = f"<@{user_id}> " if user_id else ""
        collection = await self._source.current_collection()
        items = await self._source.list_items(collection.id)
        tracked = [i.to_tracked() for i in items]

        (
            members,
            collections,
            analytics,
            thread_messages,
            channel_messages,
            thread_state,
            history,
            resolved,
        ) = await asyncio.gather(
            best_effort(cache.get_or_load(MEMBERS_CACHE_KEY, self._source.list_members), [], "members"),
            best_effort(cache.get_or_load(COLLECTIONS_CACHE_KEY, self._source.list_collections), [], "collections"),
            collect_analytics(
                self._snapshots,
                collection.id,
                clock.today,
                tracked,
                period_start=collection.start_date,
                period_end=collection.end_date,
                planned_size=collection.planned_size,
                current_remaining=collection.remaining_size,
            ),
            best_effort(self._fetch_thread(channel, thread_id) if in_thread else _empty(), [], "thread context"),
            best_effort(self._fetch_channel_context(channel) if in_thread else _empty(), [], "channel context"),
            best_effort(self._store.get_thread(channel, thread_id), None, "thread state"),
            best_effort(self._store.get_mention_history(channel, thread_id), [], "mention history"),
            best_effort(self._pending.resolve_for_thread(channel, thread_id), None, "pending action"),
        )

        if thread_state is not None:
            await self._store.append_reply(channel, thread_id, StoredReply(text=user_text, user_id=user_id, received_at=utc_now_iso()))
            if thread_state.is_pending:
                await self._store.save_thread(channel, thread_id, thread_state.mark_replied())
            if not history:
                listing = "\n".join(f"- {i.name} (status: {i.status or '-'}, size: {i.size if i.size is not None else '-'})" for i in thread_state.items)
                history = [MentionTurn(role="assistant", content=f"Check-in for {thread_state.assignee_name}:\n{listing}")]

        names = _member_names(members)
        context: Dict[str, Any] = {
            "collection": {
                "id": collection.id,
                "name": collection.name,
                "start_date": collection.start_date,
                "end_date": collection.end_date,
                "planned_size": collection.planned_size,
                "remaining_size": collection.remaining_size,
            },
            "collections": [{"id": c.id, "name": c.name} for c in collections],
            "analytics": analytics.to_context(),
        }
        request = MentionRequest(
            text=user_text,
            requester_name=names.get(user_id),
            items=items,
            context=context,
            history=list(history),
            pending_actions=list(resolved[1].actions) if resolved else [],
            thread_messages=[
                ChatMessage(
                    user=names.get(m.user, m.user),
                    text=_resolve_mentions(m.text, names)[:MAX_THREAD_MESSAGE_CHARS],
                    message_id=m.message_id,
                    thread_id=m.thread_id,
                )
                for m in thread_messages[:MAX_THREAD_CONTEXT_MESSAGES]
            ],
            channel_context=[
                ChatMessage(
                    user=names.get(m.user, m.user),
                    text=_resolve_mentions(m.text, names)[:MAX_THREAD_MESSAGE_CHARS],
                    message_id=m.message_id,
                    thread_id=m.thread_id,
                )
                for m in channel_messages
            ],
        )

        result = await self._interpreter.interpret(request)
        logger.info(f"MENTION: intent={result.intent} | actions={len(result.actions)} | new_items={len(result.new_items)}")

        if result.intent == MentionIntent.CREATE_ITEM.value and result.new_items:
            await self._propose_creates(channel, thread_id, user_id, result.new_items, collections)
        elif result.intent == MentionIntent.UPDATE.value and result.actions:
            await self._pending.supersede(channel, thread_id, result.actions, user_id, text=mention + result.response_text)
        else:
            await self._gateway.post_message(channel, mention + result.response_text, thread_id=thread_id)

        await self._store.append_mention_history(channel, thread_id, user_text, result.response_text)

    async def _fetch_thread(self, channel: str, thread_id: str) -> List[ChatMessage]:
        return await self._gateway.fetch_thread(channel, thread_id, limit=30)

    async def _fetch_channel_context(self, channel: str) -> List[ChatMessage]:
        """Recent channel messages plus replies of the first few threaded ones."""
        messages = await self._gateway.fetch_channel_history(channel, CHANNEL_CONTEXT_LIMIT)
        result: List[ChatMessage] = []
        threads_fetched = 0
        for message in messages:
            if not message.text:
                continue
            result.append(message)
            if message.reply_count > 0 and threads_fetched < CHANNEL_CONTEXT_MAX_THREADS:
                replies = await best_effort(
                    self._gateway.fetch_thread(
                        channel, message.thread_id or message.message_id, limit=CHANNEL_CONTEXT_THREAD_REPLIES
                    ),
                    None,
                    f"replies of {message.message_id}",
                )
                if replies is not None:
                    result.extend(replies)
                    threads_fetched += 1
        logger.info(f"CHANNEL CONTEXT: channel={channel} | messages={len(result)}")
        return result[:CHANNEL_CONTEXT_LIMIT]

    async def _propose_creates(
        self,
        channel: str,
        thread_id: str,
        user_id: str,
        new_items: List[Dict[str, Any]],
        collections: List[Collection],
    ) -> None:
        actions: List[ProposedAction] = []
        for draft in new_items:
            fields = dict(draft)

            collection_name = fields.get("collection")
            if collection_name:
                matched = _match_name(collections, collection_name)
                if matched is not None:
                    fields["collection_id"] = matched.id
                    fields["collection"] = matched.name

            parent_name = fields.get("parent")
            if parent_name:
                candidates = await self._source.search_parents(parent_name)
                if len(candidates) > 1 and len(new_items) == 1:
                    await self._selection.offer(channel, thread_id, fields, candidates, user_id)
                    return
                if candidates:
                    fields["parent_ids"] = [candidates[0].id]
                    fields["parent"] = candidates[0].name

            actions.append(ProposedAction(
                action=ActionType.CREATE_ITEM.value,
                item_id="",
                item_name=fields.get("name", ""),
                new_value=json.dumps(fields, ensure_ascii=False),
            ))

        await self._pending.supersede(channel, thread_id, actions, user_id)


async def _empty() -> List[ChatMessage]:
    return []


def _member_names(members: List[Member]) -> Dict[str, str]:
    return {m.chat_user_id: m.name for m in members if m.chat_user_id}


def _resolve_mentions(text: str, names: Dict[str, str]) -> str:
    """Replace <@U123> tokens with @Name where the member is known."""
    def substitute(match: "re.Match[str]") -> str:
        name = names.get(match.group(1))
        return f"@{name}" if name else match.group(0)
    return MENTION_ID_PATTERN.sub(substitute, text or "")
