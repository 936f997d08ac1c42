"""
Event Router

Classifies inbound chat events and interactive payloads, resolves which
handler they belong to, and submits the work through a WorkSubmitter so the
webhook can acknowledge immediately.

Event kinds:
- reaction_added / reaction_removed
- thread_message   (plain message inside a thread)
- direct_mention   (app_mention addressed to this bot)
- interactive_button / message_shortcut
- ignored

Thread messages are offered to handlers in strict priority order and stop at
the first match:
1. answer to an outstanding disambiguation
2. thread has a live pending-action back-reference -> modification
3. check-in reply, then report-thread reply
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .checkin import CheckinMachine
from .collaborators import LookupCache
from .errors import PayloadValidationError
from .mention import MentionHandler
from .pending_actions import APPROVE_SUFFIX, CANCEL_SUFFIX, MODIFY_SUFFIX, TASK_ACTION_PREFIX, PendingActionService
from .reminders import PHONE_REACTIONS, SET_REMINDER_CALLBACK_ID, ReminderService
from .report_thread import REPORT_APPROVE_ACTION_ID, ReportThreadMachine
from .selection import MENTION_TOKEN_PATTERN, DisambiguationService
from .snapshots import FlowClock
from .submitter import WorkSubmitter

logger = logging.getLogger("standup.router")

APPROVE_REACTION = "white_check_mark"
QUICK_REPLY_PREFIX = "eod_"


# -----------------------------------------------------------------------------
# Payload Models
# -----------------------------------------------------------------------------
class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class ReactionItem(_Payload):
    type: str = ""
    channel: str = ""
    ts: str = ""


class SlackEvent(_Payload):
    type: str
    user: Optional[str] = None
    text: Optional[str] = None
    channel: Optional[str] = None
    ts: Optional[str] = None
    thread_ts: Optional[str] = None
    bot_id: Optional[str] = None
    subtype: Optional[str] = None
    reaction: Optional[str] = None
    item: Optional[ReactionItem] = None


class Authorization(_Payload):
    user_id: Optional[str] = None


class EventEnvelope(_Payload):
    type: str
    challenge: Optional[str] = None
    event: Optional[SlackEvent] = None
    authorizations: List[Authorization] = Field(default_factory=list)

    @property
    def bot_user_id(self) -> Optional[str]:
        return self.authorizations[0].user_id if self.authorizations else None


class InteractionRef(_Payload):
    id: str


class InteractionMessage(_Payload):
    ts: str
    text: str = ""
    thread_ts: Optional[str] = None


class InteractionAction(_Payload):
    action_id: str


class InteractionPayload(_Payload):
    type: str
    callback_id: Optional[str] = None
    user: InteractionRef
    channel: Optional[InteractionRef] = None
    message: Optional[InteractionMessage] = None
    actions: List[InteractionAction] = Field(default_factory=list)


def parse_envelope(raw: Dict[str, Any]) -> EventEnvelope:
    try:
        return EventEnvelope.model_validate(raw)
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid event payload: {e.error_count()} error(s)")


def parse_interaction(raw: Dict[str, Any]) -> InteractionPayload:
    try:
        return InteractionPayload.model_validate(raw)
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid interaction payload: {e.error_count()} error(s)")


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------
class EventKind(str, Enum):
    REACTION_ADDED = "reaction_added"
    REACTION_REMOVED = "reaction_removed"
    THREAD_MESSAGE = "thread_message"
    DIRECT_MENTION = "direct_mention"
    INTERACTIVE_BUTTON = "interactive_button"
    MESSAGE_SHORTCUT = "message_shortcut"
    IGNORED = "ignored"


def mentions_bot(text: str, bot_user_id: Optional[str]) -> bool:
    """Exact identity match; any mention token counts only when the bot id is unknown."""
    if bot_user_id:
        return f"<@{bot_user_id}>" in text
    return bool(MENTION_TOKEN_PATTERN.search(text))


def classify_event(envelope: EventEnvelope, bot_user_id: Optional[str] = None) -> EventKind:
    if envelope.type != "event_callback" or envelope.event is None:
        return EventKind.IGNORED

    event = envelope.event
    if event.type == "reaction_added":
        return EventKind.REACTION_ADDED
    if event.type == "reaction_removed":
        return EventKind.REACTION_REMOVED
    if event.bot_id:
        return EventKind.IGNORED
    if event.type == "app_mention":
        return EventKind.DIRECT_MENTION
    if event.type != "message" or event.subtype:
        return EventKind.IGNORED
    if not event.channel or not event.thread_ts:
        return EventKind.IGNORED

    # A message that mentions this bot is also delivered as app_mention.
    if mentions_bot(event.text or "", envelope.bot_user_id or bot_user_id):
        return EventKind.IGNORED
    return EventKind.THREAD_MESSAGE


def classify_interaction(payload: InteractionPayload) -> EventKind:
    if payload.type == "message_action":
        if payload.callback_id == SET_REMINDER_CALLBACK_ID:
            return EventKind.MESSAGE_SHORTCUT
        return EventKind.IGNORED
    if payload.type == "block_actions" and payload.actions and payload.channel and payload.message:
        return EventKind.INTERACTIVE_BUTTON
    return EventKind.IGNORED


def is_redelivery(retry_num: Optional[str]) -> bool:
    if not retry_num:
        return False
    try:
        return int(retry_num) > 0
    except ValueError:
        return False


# -----------------------------------------------------------------------------
# Router
# -----------------------------------------------------------------------------
class EventRouter:

    def __init__(
        self,
        checkin: CheckinMachine,
        report: ReportThreadMachine,
        pending: PendingActionService,
        mention: MentionHandler,
        selection: DisambiguationService,
        reminders: ReminderService,
        utc_offset_hours: int,
        bot_user_id: Optional[str] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._checkin = checkin
        self._report = report
        self._pending = pending
        self._mention = mention
        self._selection = selection
        self._reminders = reminders
        self._utc_offset_hours = utc_offset_hours
        self._bot_user_id = bot_user_id
        self._now = now

    def _clock(self) -> FlowClock:
        return FlowClock.capture(self._utc_offset_hours, self._now() if self._now else None)

    async def route_event(
        self,
        envelope: EventEnvelope,
        submitter: WorkSubmitter,
        retry_num: Optional[str] = None,
    ) -> EventKind:
        if is_redelivery(retry_num):
            logger.info(f"ROUTER: dropped gateway redelivery | retry_num={retry_num}")
            return EventKind.IGNORED

        kind = classify_event(envelope, self._bot_user_id)
        event = envelope.event
        if kind == EventKind.IGNORED or event is None:
            return EventKind.IGNORED

        logger.info(f"ROUTER: event | kind={kind.value} | channel={event.channel or (event.item.channel if event.item else '')}")
        if kind == EventKind.REACTION_ADDED:
            await submitter.submit(kind.value, lambda: self.on_reaction_added(event))
        elif kind == EventKind.REACTION_REMOVED:
            await submitter.submit(kind.value, lambda: self.on_reaction_removed(event))
        elif kind == EventKind.DIRECT_MENTION:
            await submitter.submit(kind.value, lambda: self.on_direct_mention(event))
        elif kind == EventKind.THREAD_MESSAGE:
            await submitter.submit(kind.value, lambda: self.on_thread_message(event))
        return kind

    async def route_interaction(self, payload: InteractionPayload, submitter: WorkSubmitter) -> EventKind:
        kind = classify_interaction(payload)
        if kind == EventKind.MESSAGE_SHORTCUT:
            await submitter.submit(kind.value, lambda: self.on_set_reminder(payload))
        elif kind == EventKind.INTERACTIVE_BUTTON:
            action_id = payload.actions[0].action_id
            logger.info(f"ROUTER: button | action_id={action_id} | user={payload.user.id}")
            await submitter.submit(f"{kind.value}:{action_id}", lambda: self.on_button(payload, action_id))
        return kind

    # -------------------------------------------------------------------------
    # Event handlers
    # -------------------------------------------------------------------------
    async def on_reaction_added(self, event: SlackEvent) -> None:
        item = event.item
        if item is None or item.type != "message":
            return
        user_id = event.user or ""
        reaction = event.reaction or ""

        if reaction in PHONE_REACTIONS:
            await self._reminders.subscribe(user_id, item.channel, item.ts)
            return
        if await self._reminders.handle_dm_reaction(item.channel, item.ts):
            return
        if reaction != APPROVE_REACTION:
            return

        cache = LookupCache()
        results = await self._pending.approve(item.channel, item.ts, user_id, cache)
        if results is None:
            await self._report.approve(self._clock().today, item.channel, item.ts, user_id, cache)

    async def on_reaction_removed(self, event: SlackEvent) -> None:
        item = event.item
        if item is None or item.type != "message" or event.reaction not in PHONE_REACTIONS:
            return
        await self._reminders.unsubscribe(event.user or "", item.channel, item.ts)

    async def on_direct_mention(self, event: SlackEvent) -> None:
        channel = event.channel or ""
        thread_id = event.thread_ts or event.ts or ""
        await self._mention.handle(
            channel,
            thread_id,
            event.text or "",
            event.user or "",
            self._clock(),
            LookupCache(),
            in_thread=bool(event.thread_ts),
        )

    async def on_thread_message(self, event: SlackEvent) -> None:
        channel = event.channel or ""
        thread_id = event.thread_ts or ""
        text = event.text or ""
        user_id = event.user or ""

        if await self._selection.handle_reply(channel, thread_id, text, user_id):
            return

        clock = self._clock()
        if await self._pending.resolve_for_thread(channel, thread_id) is not None:
            await self._mention.handle(channel, thread_id, text, user_id, clock, LookupCache())
            return

        if await self._checkin.handle_reply(channel, thread_id, text, user_id) is not None:
            return
        await self._report.handle_reply(clock.today, channel, thread_id, text, user_id)

    # -------------------------------------------------------------------------
    # Interaction handlers
    # -------------------------------------------------------------------------
    async def on_set_reminder(self, payload: InteractionPayload) -> None:
        if payload.channel is None or payload.message is None:
            return
        thread_id = payload.message.thread_ts or payload.message.ts
        await self._reminders.subscribe(payload.user.id, payload.channel.id, thread_id, whole_thread=True)

    async def on_button(self, payload: InteractionPayload, action_id: str) -> None:
        channel = payload.channel.id
        message = payload.message
        user_id = payload.user.id

        if action_id == TASK_ACTION_PREFIX + APPROVE_SUFFIX:
            await self._pending.approve(channel, message.ts, user_id, LookupCache(), original_text=message.text)
        elif action_id == TASK_ACTION_PREFIX + CANCEL_SUFFIX:
            await self._pending.reject(channel, message.ts, user_id, original_text=message.text)
        elif action_id == TASK_ACTION_PREFIX + MODIFY_SUFFIX:
            await self._pending.request_modification(
                channel, message.ts, message.thread_ts or message.ts, user_id, original_text=message.text
            )
        elif action_id == REPORT_APPROVE_ACTION_ID:
            await self._report.approve(
                self._clock().today, channel, message.ts, user_id, LookupCache(), original_text=message.text
            )
        elif action_id.startswith(QUICK_REPLY_PREFIX):
            await self._checkin.handle_quick_reply(
                channel, message.ts, message.thread_ts or message.ts, action_id, user_id, message.text
            )
        else:
            logger.info(f"ROUTER: unhandled action_id={action_id}")
