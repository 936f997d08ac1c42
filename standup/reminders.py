"""
Reminder Subscriptions

A user subscribes to a message (phone reaction or the "set reminder" message
shortcut) and receives an hourly DM until they unsubscribe, either by
removing the reaction or by reacting to any reminder DM.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

import httpx

from .collaborators import ChatMessage, MessagingGateway
from .errors import StandupError
from .models import ReminderDmRef, ReminderSubscription, utc_now_iso
from .state_store import WorkflowStateStore

logger = logging.getLogger("standup.reminders")

PHONE_REACTIONS = ("phone", "telephone_receiver")
SET_REMINDER_CALLBACK_ID = "set_reminder"
DEFAULT_REMINDER_INTERVAL_SECONDS = 3600
ARCHIVE_BASE_URL = "https://slack.com/archives"

STOP_HINT = "_I'll remind you every hour. React to this message to stop._"


def permalink(channel: str, message_id: str) -> str:
    return f"{ARCHIVE_BASE_URL}/{channel}/p{message_id.replace('.', '')}"


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class ReminderService:

    def __init__(
        self,
        store: WorkflowStateStore,
        gateway: MessagingGateway,
        interval_seconds: int = DEFAULT_REMINDER_INTERVAL_SECONDS,
    ):
        self._store = store
        self._gateway = gateway
        self._interval = timedelta(seconds=interval_seconds)

    async def _fetch_content(self, channel: str, thread_id: str, whole_thread: bool) -> List[ChatMessage]:
        try:
            messages = await self._gateway.fetch_thread(channel, thread_id, limit=100 if whole_thread else 1)
        except (StandupError, httpx.HTTPError) as e:
            logger.warning(f"REMINDER: could not fetch content, sending link only | channel={channel} | thread={thread_id} | error={e}")
            return []
        return messages if whole_thread else messages[:1]

    async def subscribe(self, user_id: str, channel: str, thread_id: str, whole_thread: bool = False) -> bool:
        """
        Start reminders for a message (or a whole thread via the shortcut).

        Returns:
            False when no DM channel could be opened
        """
        messages = await self._fetch_content(channel, thread_id, whole_thread)
        link = permalink(channel, thread_id)
        text = f":telephone_receiver: *Reminder set*\n<{link}|Open message>\n\n"
        if messages:
            content = "\n\n".join(f"<@{m.user}>: {m.text}" for m in messages)
            text += f"{content}\n\n"
        text += STOP_HINT

        dm_channel = await self._gateway.open_direct_conversation(user_id)
        if not dm_channel:
            logger.error(f"REMINDER: failed to open DM | user={user_id}")
            return False

        posted = await self._gateway.post_message(dm_channel, text)
        now = utc_now_iso()
        await self._store.save_reminder(ReminderSubscription(
            user_id=user_id,
            channel=channel,
            thread_id=thread_id,
            created_at=now,
            last_reminded_at=now,
        ))
        await self._store.save_reminder_dm(
            posted.channel,
            posted.message_id,
            ReminderDmRef(user_id=user_id, channel=channel, thread_id=thread_id),
        )
        logger.info(f"REMINDER SUBSCRIBED: user={user_id} | channel={channel} | thread={thread_id}")
        return True

    async def unsubscribe(self, user_id: str, channel: str, thread_id: str) -> None:
        await self._store.delete_reminder(user_id, channel, thread_id)
        dm_channel = await self._gateway.open_direct_conversation(user_id)
        if dm_channel:
            await self._gateway.post_message(dm_channel, ":telephone_receiver: Reminder cancelled.")
        logger.info(f"REMINDER UNSUBSCRIBED: user={user_id} | channel={channel} | thread={thread_id}")

    async def handle_dm_reaction(self, dm_channel: str, dm_message_id: str) -> bool:
        """Any reaction on a reminder DM stops that reminder."""
        ref = await self._store.get_reminder_dm(dm_channel, dm_message_id)
        if ref is None:
            return False
        await self._store.delete_reminder(ref.user_id, ref.channel, ref.thread_id)
        await self._gateway.post_message(dm_channel, ":white_check_mark: Reminder stopped.")
        logger.info(f"REMINDER STOPPED: via DM reaction | user={ref.user_id} | thread={ref.thread_id}")
        return True

    async def send_due_reminders(self, now: datetime) -> int:
        """DM every subscription whose last reminder is at least one interval old."""
        sent = 0
        for subscription in await self._store.list_all_reminders():
            last = _parse_iso(subscription.last_reminded_at)
            if last is not None and now - last < self._interval:
                continue
            try:
                dm_channel = await self._gateway.open_direct_conversation(subscription.user_id)
                if not dm_channel:
                    continue
                link = permalink(subscription.channel, subscription.thread_id)
                posted = await self._gateway.post_message(
                    dm_channel,
                    f":telephone_receiver: Reminder\n<{link}|Open message>\n\n{STOP_HINT}",
                )
                await self._store.save_reminder_dm(
                    posted.channel,
                    posted.message_id,
                    ReminderDmRef(user_id=subscription.user_id, channel=subscription.channel, thread_id=subscription.thread_id),
                )
                await self._store.save_reminder(replace(subscription, last_reminded_at=now.isoformat()))
                sent += 1
            except (StandupError, httpx.HTTPError) as e:
                logger.error(f"REMINDER FAILED: user={subscription.user_id} | thread={subscription.thread_id} | error={e}")
        logger.info(f"REMINDERS SENT: count={sent}")
        return sent
